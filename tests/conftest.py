from __future__ import annotations

import io
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional

import pytest
import requests

from windows_node_e2e.cloud import Credentials
from windows_node_e2e.config import HarnessConfig
from windows_node_e2e.e2e import E2EFramework
from windows_node_e2e.errors import ProvisioningError
from windows_node_e2e.remote import SFTPTransfer, WinRMClient


class FakeProvider:
    def __init__(self, events: List, *, fail_create: bool = False, fail_destroy: bool = False):
        self.events = events
        self.fail_create = fail_create
        self.fail_destroy = fail_destroy
        self.created = 0
        self.destroyed = 0

    def create_windows_vm(self) -> Credentials:
        self.events.append("create_vm")
        if self.fail_create:
            raise ProvisioningError("quota exceeded")
        self.created += 1
        return Credentials(address="10.0.0.5", password="s3cret", instance_id="i-0123")

    def destroy_windows_vms(self) -> None:
        self.events.append("destroy_vm")
        if self.fail_destroy:
            raise ProvisioningError("instance stuck in shutting-down")
        self.destroyed += self.created


class FakeWinRMSession:
    """Stands in for ``winrm.Session``; answers by matching the command text."""

    def __init__(
        self,
        events: List,
        *,
        test_output: str = "=== RUN   TestX\n--- PASS: TestX (0.00s)\nPASS\n",
        service_replies: Optional[List[str]] = None,
        fail_matching: Optional[str] = None,
        rc_for: Optional[Dict[str, int]] = None,
        unreachable_polls: int = 0,
    ):
        self.events = events
        self.test_output = test_output
        self.service_replies = list(service_replies or ["ssh-agent=Running\r\nsshd=Running\r\n"])
        self.fail_matching = fail_matching
        self.rc_for = rc_for or {}
        # Number of Get-Service calls that fail as if the listener were not up.
        self.unreachable_polls = unreachable_polls
        self.commands: List[str] = []
        self.closed = 0
        self.protocol = SimpleNamespace(transport=SimpleNamespace(close_session=self._close_session))

    def _close_session(self) -> None:
        self.closed += 1
        self.events.append("winrm_close")

    def run_cmd(self, command: str):
        self.commands.append(command)
        self.events.append(("winrm", command))
        if self.fail_matching and self.fail_matching in command:
            from winrm.exceptions import WinRMTransportError

            raise WinRMTransportError("http", 500, "boom")
        if "Get-Service" in command and self.unreachable_polls > 0:
            self.unreachable_polls -= 1
            raise requests.exceptions.ConnectionError("connection refused")
        out = ""
        if "Get-Service" in command:
            out = self.service_replies.pop(0) if len(self.service_replies) > 1 else self.service_replies[0]
        elif "--test.v" in command:
            out = self.test_output
        rc = 0
        for needle, code in self.rc_for.items():
            if needle in command:
                rc = code
        return SimpleNamespace(std_out=out.encode("utf-8"), std_err=b"", status_code=rc)


class FakeRemoteFile:
    def __init__(self, events: List, files: Dict[str, bytes], path: str):
        self.events = events
        self.files = files
        self.path = path
        self.buf = io.BytesIO()
        self.pipelined = False

    def set_pipelined(self, flag: bool = True) -> None:
        self.pipelined = flag

    def write(self, data: bytes) -> None:
        self.buf.write(data)

    def close(self) -> None:
        self.files[self.path] = self.buf.getvalue()
        self.events.append(("remote_close", self.path))

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class FakeSFTP:
    def __init__(self, events: List, files: Dict[str, bytes]):
        self.events = events
        self.files = files

    def open(self, path: str, mode: str = "r"):
        self.events.append(("remote_open", path))
        return FakeRemoteFile(self.events, self.files, path)

    def close(self) -> None:
        self.events.append("sftp_close")


class FakeSSHClient:
    """Stands in for ``paramiko.SSHClient``."""

    def __init__(self, events: List, files: Dict[str, bytes], *, connect_error: Optional[Exception] = None):
        self.events = events
        self.files = files
        self.connect_error = connect_error
        self.policy = None
        self.connect_kwargs: Dict = {}

    def set_missing_host_key_policy(self, policy) -> None:
        self.policy = policy

    def connect(self, **kwargs) -> None:
        self.connect_kwargs = kwargs
        self.events.append("ssh_connect")
        if self.connect_error is not None:
            raise self.connect_error

    def open_sftp(self) -> FakeSFTP:
        return FakeSFTP(self.events, self.files)

    def close(self) -> None:
        self.events.append("ssh_close")


@pytest.fixture
def events() -> List:
    return []


@pytest.fixture
def remote_files() -> Dict[str, bytes]:
    return {}


@pytest.fixture
def binary(tmp_path: Path) -> Path:
    p = tmp_path / "wmcb_unit_test.exe"
    p.write_bytes(b"MZ" + b"\x00" * 2048)
    return p


@pytest.fixture
def config(tmp_path: Path, binary: Path) -> HarnessConfig:
    return HarnessConfig(
        kubeconfig=tmp_path / "kubeconfig",
        aws_credentials_file=tmp_path / "aws_credentials",
        artifact_dir=tmp_path / "artifacts",
        private_key_path=tmp_path / "libra.pem",
        binary_to_be_transferred=binary,
        service_wait_timeout_s=30.0,
        service_poll_interval_s=1.0,
    )


@pytest.fixture
def make_framework(events, remote_files) -> Callable[..., E2EFramework]:
    """Build an E2EFramework wired to in-memory fakes.

    Returns ``(framework, provider, session)``.
    """

    def _make(
        config: HarnessConfig,
        *,
        provider: Optional[FakeProvider] = None,
        session: Optional[FakeWinRMSession] = None,
        ssh_connect_error: Optional[Exception] = None,
    ):
        provider = provider or FakeProvider(events)
        session = session or FakeWinRMSession(events)
        fw = E2EFramework(
            config,
            provider_factory=lambda cfg: provider,
            winrm_factory=lambda cred, cfg: WinRMClient(cred.address, cred.password, session=session),
            transfer_factory=lambda cred, cfg: SFTPTransfer(
                cred.address,
                cred.password,
                client_factory=lambda: FakeSSHClient(events, remote_files, connect_error=ssh_connect_error),
            ),
            sleep=lambda s: None,
        )
        return fw, provider, session

    return _make
