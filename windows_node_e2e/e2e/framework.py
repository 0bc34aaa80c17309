"""Harness state and the setup / execute / teardown phases.

One :class:`E2EFramework` is built per process and passed around explicitly.
Its session handles are only touched after the setup step that opens them has
succeeded.
"""

from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from ..cloud import CloudProvider, Credentials, cloud_provider_factory
from ..config import HarnessConfig
from ..errors import AssertionFailure, HarnessError
from ..log_utils import FAILURE_MARKER, contains_failure_marker, sanitize_log
from ..remote import SFTPTransfer, WinRMClient, configure_openssh_server, create_remote_dir

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[HarnessConfig], CloudProvider]
WinRMFactory = Callable[[Credentials, HarnessConfig], WinRMClient]
TransferFactory = Callable[[Credentials, HarnessConfig], SFTPTransfer]


def default_provider_factory(config: HarnessConfig) -> CloudProvider:
    return cloud_provider_factory(
        config.kubeconfig,
        config.aws_credentials_file,
        config.credentials_profile,
        config.artifact_dir,
        config.image_id,
        config.instance_type,
        config.key_name,
        config.private_key_path,
        region=config.region,
    )


def default_winrm_factory(credentials: Credentials, config: HarnessConfig) -> WinRMClient:
    return WinRMClient(
        credentials.address,
        credentials.password,
        transport=config.winrm_transport,
        read_timeout_s=config.winrm_read_timeout_s,
        operation_timeout_s=config.winrm_operation_timeout_s,
    )


def default_transfer_factory(credentials: Credentials, config: HarnessConfig) -> SFTPTransfer:
    return SFTPTransfer(credentials.address, credentials.password)


@dataclass
class UnitTestOutcome:
    """Result of transferring and running the test binary."""

    passed: bool
    output: str = ""
    remote_rc: Optional[int] = None
    error: Optional[HarnessError] = None

    @property
    def message(self) -> str:
        if self.error is not None:
            return str(self.error)
        return "ok" if self.passed else "failed"


@dataclass
class E2EFramework:
    config: HarnessConfig
    provider_factory: ProviderFactory = default_provider_factory
    winrm_factory: WinRMFactory = default_winrm_factory
    transfer_factory: TransferFactory = default_transfer_factory
    sleep: Callable[[float], None] = time.sleep

    cloud_provider: Optional[CloudProvider] = None
    credentials: Optional[Credentials] = None
    winrm: Optional[WinRMClient] = None
    transfer: Optional[SFTPTransfer] = None
    # Files to copy to the VM. Exactly one binary for now.
    file_names: List[Path] = field(default_factory=list)
    phase: Optional[str] = None

    _torn_down: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.file_names and self.config.binary_to_be_transferred is not None:
            self.file_names = [Path(self.config.binary_to_be_transferred)]

    @property
    def remote_dir(self) -> str:
        return self.config.remote_dir

    # -------------------------
    # setup
    # -------------------------
    def setup(self) -> None:
        """Provision the VM and open both remote sessions.

        Any :class:`HarnessError` raised here is fatal for the run.
        """

        self.create_windows_vm()
        self.setup_winrm_client()
        self.configure_openssh_server()
        self.create_remote_dir()
        self.get_ssh_client()

    def create_windows_vm(self) -> None:
        self.phase = "provision"
        logger.info("Creating Windows VM (%s, %s)", self.config.image_id, self.config.instance_type)
        self.cloud_provider = self.provider_factory(self.config)
        self.credentials = self.cloud_provider.create_windows_vm()

    def setup_winrm_client(self) -> None:
        self.phase = "winrm"
        assert self.credentials is not None
        self.winrm = self.winrm_factory(self.credentials, self.config)

    def configure_openssh_server(self) -> None:
        self.phase = "openssh"
        assert self.winrm is not None
        configure_openssh_server(
            self.winrm,
            timeout_s=self.config.service_wait_timeout_s,
            interval_s=self.config.service_poll_interval_s,
            sleep=self.sleep,
        )

    def create_remote_dir(self) -> None:
        self.phase = "remote_dir"
        assert self.winrm is not None
        create_remote_dir(self.winrm, self.remote_dir)

    def get_ssh_client(self) -> None:
        self.phase = "ssh"
        assert self.credentials is not None
        transfer = self.transfer_factory(self.credentials, self.config)
        transfer.connect()
        self.transfer = transfer

    # -------------------------
    # test
    # -------------------------
    def run_unit_tests(self) -> UnitTestOutcome:
        """Copy the binary to the VM, run it with ``--test.v`` and check its output.

        Failures here are reported in the returned outcome rather than raised.
        """

        assert self.winrm is not None and self.transfer is not None
        binary = self.file_names[0] if self.file_names else None

        self.phase = "transfer"
        try:
            with self.transfer:
                self.transfer.upload(binary, self.config.remote_binary_path)
        except HarnessError as e:
            logger.error("Transfer failed: %s", e)
            return UnitTestOutcome(passed=False, error=e)

        self.phase = "execute"
        captured = io.StringIO()
        try:
            rc = self.winrm.run(self.config.remote_binary_path + " --test.v", stdout=captured, stderr=captured)
        except HarnessError as e:
            logger.error("Error while executing the test binary remotely: %s", e)
            return UnitTestOutcome(passed=False, output=sanitize_log(captured.getvalue()), error=e)

        output = sanitize_log(captured.getvalue())
        for line in output.splitlines():
            logger.info("[remote] %s", line)

        if contains_failure_marker(output):
            err = AssertionFailure(f"remote test output contains {FAILURE_MARKER!r}")
            logger.error("%s", err)
            return UnitTestOutcome(passed=False, output=output, remote_rc=rc, error=err)
        if rc != 0:
            logger.warning("Test binary exited with rc=%d but reported no failures", rc)
        return UnitTestOutcome(passed=True, output=output, remote_rc=rc)

    # -------------------------
    # teardown
    # -------------------------
    def tear_down(self) -> None:
        """Close sessions and destroy the VM. Only the first call does anything."""

        if self._torn_down:
            return
        self._torn_down = True
        self.phase = "teardown"

        if self.transfer is not None:
            self.transfer.close()
        if self.winrm is not None:
            self.winrm.close()
        if self.cloud_provider is None:
            logger.info("No cloud provider was created, nothing to tear down")
            return
        self.cloud_provider.destroy_windows_vms()
