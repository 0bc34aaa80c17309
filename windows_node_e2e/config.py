"""Harness configuration.

Values are resolved in this order: explicit overrides (CLI flags), environment
variables, the persisted :class:`~windows_node_e2e.settings.SettingsStore`
and finally the built-in defaults below.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigError

# Account created by the Windows image; both WinRM and SSH log in with it.
USER = "Administrator"

# Every remote command is run through this prefix on the WinRM shell.
REMOTE_POWERSHELL_CMD_PREFIX = "powershell.exe -NonInteractive -ExecutionPolicy Bypass "

WINRM_PORT = 5986
SSH_PORT = 22

REMOTE_DIR = "C:\\Temp"
REMOTE_BINARY_NAME = "wmcb_unit_test.exe"

# Windows Server 2019 with containers, us-east-1.
DEFAULT_IMAGE_ID = "ami-0b8d82dea356226d3"
DEFAULT_INSTANCE_TYPE = "m4.large"
DEFAULT_KEY_NAME = "libra"
DEFAULT_REGION = "us-east-1"
DEFAULT_CREDENTIALS_PROFILE = "default"

DEFAULT_SERVICE_WAIT_TIMEOUT_S = 300.0
DEFAULT_SERVICE_POLL_INTERVAL_S = 10.0

# Required environment variables -> HarnessConfig attribute.
REQUIRED_ENV = {
    "KUBECONFIG": "kubeconfig",
    "AWS_SHARED_CREDENTIALS_FILE": "aws_credentials_file",
    "ARTIFACT_DIR": "artifact_dir",
    "KUBE_SSH_KEY_PATH": "private_key_path",
}

# Optional environment overrides -> HarnessConfig attribute.
OPTIONAL_ENV = {
    "AWS_REGION": "region",
    "WINDOWS_NODE_E2E_IMAGE_ID": "image_id",
    "WINDOWS_NODE_E2E_INSTANCE_TYPE": "instance_type",
    "WINDOWS_NODE_E2E_KEY_NAME": "key_name",
    "WINDOWS_NODE_E2E_SERVICE_WAIT_TIMEOUT_S": "service_wait_timeout_s",
}


@dataclass
class HarnessConfig:
    kubeconfig: Path
    aws_credentials_file: Path
    artifact_dir: Path
    private_key_path: Path

    region: str = DEFAULT_REGION
    image_id: str = DEFAULT_IMAGE_ID
    instance_type: str = DEFAULT_INSTANCE_TYPE
    key_name: str = DEFAULT_KEY_NAME
    credentials_profile: str = DEFAULT_CREDENTIALS_PROFILE

    remote_dir: str = REMOTE_DIR
    remote_binary_name: str = REMOTE_BINARY_NAME
    binary_to_be_transferred: Optional[Path] = None

    service_wait_timeout_s: float = DEFAULT_SERVICE_WAIT_TIMEOUT_S
    service_poll_interval_s: float = DEFAULT_SERVICE_POLL_INTERVAL_S

    # WinRM transport options. None keeps pywinrm's defaults.
    winrm_transport: str = "basic"
    winrm_read_timeout_s: Optional[int] = None
    winrm_operation_timeout_s: Optional[int] = None

    @property
    def remote_binary_path(self) -> str:
        return self.remote_dir + "\\" + self.remote_binary_name

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        *,
        settings: Optional[Mapping[str, Any]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> "HarnessConfig":
        """Build a config from the environment.

        Raises :class:`ConfigError` listing every missing required variable.
        """

        env = os.environ if environ is None else environ

        missing = [name for name in REQUIRED_ENV if not (env.get(name) or "").strip()]
        if missing:
            raise ConfigError("missing required environment variable(s): " + ", ".join(missing))

        values: Dict[str, Any] = {attr: Path(env[name]).expanduser() for name, attr in REQUIRED_ENV.items()}

        for key, value in (settings or {}).items():
            values[key] = value
        for name, attr in OPTIONAL_ENV.items():
            raw = (env.get(name) or "").strip()
            if raw:
                values[attr] = raw
        for key, value in (overrides or {}).items():
            if value is not None:
                values[key] = value

        try:
            values["service_wait_timeout_s"] = float(
                values.get("service_wait_timeout_s", DEFAULT_SERVICE_WAIT_TIMEOUT_S)
            )
        except (TypeError, ValueError):
            raise ConfigError(
                f"service wait timeout must be a number, got {values.get('service_wait_timeout_s')!r}"
            ) from None
        if values["service_wait_timeout_s"] <= 0:
            raise ConfigError("service wait timeout must be positive")

        binary = values.get("binary_to_be_transferred")
        if binary:
            values["binary_to_be_transferred"] = Path(binary).expanduser()

        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in values.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        for k, v in list(d.items()):
            if isinstance(v, Path):
                d[k] = str(v)
        return d
