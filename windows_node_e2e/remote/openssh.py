"""OpenSSH server configuration over WinRM.

The OpenSSH server capability is installed by the VM's first-boot script; the
services show up in the service list some time after WinRM becomes reachable.
Instead of sleeping a fixed amount we poll ``Get-Service`` until both services
are registered, configure them, and poll again until they are running.
"""

from __future__ import annotations

import io
import logging
import time
from typing import Callable, Dict, Iterable, Optional, Sequence

from ..config import DEFAULT_SERVICE_POLL_INTERVAL_S, DEFAULT_SERVICE_WAIT_TIMEOUT_S
from ..errors import RemoteExecutionError, ServiceReadinessTimeout
from ..waiting import wait_for
from .winrm_client import WinRMClient

logger = logging.getLogger(__name__)

OPENSSH_SERVICES: Sequence[str] = ("ssh-agent", "sshd")

# NuGet >= 2.8.5.201 is required to install OpenSSHUtils.
INSTALL_DEPENDENT_PACKAGES = "Install-PackageProvider -Name NuGet -MinimumVersion 2.8.5.201 -Force"
# TODO: limit the module scope to the Administrator account.
INSTALL_OPENSSH_UTILS = "Install-Module -Force OpenSSHUtils -Scope AllUsers"


def service_status_command(names: Iterable[str]) -> str:
    """PowerShell that prints one ``name=Status`` line per existing service.

    The script is double quoted so cmd.exe on the WinRM side passes it to
    PowerShell untouched.
    """

    joined = ", ".join(names)
    return (
        f'"(Get-Service -Name {joined} -ErrorAction SilentlyContinue)'
        ".ForEach({ $_.Name + '=' + $_.Status })\""
    )


def parse_service_status(text: str) -> Dict[str, str]:
    """Parse ``name=Status`` lines into a dict. Other lines are ignored."""

    status: Dict[str, str] = {}
    for line in (text or "").splitlines():
        line = line.strip()
        if "=" not in line:
            continue
        name, _, value = line.partition("=")
        name = name.strip()
        value = value.strip()
        if name and value:
            status[name] = value
    return status


def query_services(client: WinRMClient, names: Sequence[str]) -> Dict[str, str]:
    buf = io.StringIO()
    # A non-zero exit code only means the service list is not ready yet.
    client.run(service_status_command(names), stdout=buf, stderr=io.StringIO())
    return parse_service_status(buf.getvalue())


def wait_for_services(
    client: WinRMClient,
    names: Sequence[str] = OPENSSH_SERVICES,
    *,
    status: Optional[str] = None,
    timeout_s: float = DEFAULT_SERVICE_WAIT_TIMEOUT_S,
    interval_s: float = DEFAULT_SERVICE_POLL_INTERVAL_S,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, str]:
    """Poll until every service in ``names`` exists (and has ``status``, if given).

    WinRM transport errors while polling count as "not ready yet". Raises
    :class:`ServiceReadinessTimeout` when ``timeout_s`` expires.
    """

    wanted = status.lower() if status else None

    def probe() -> Optional[Dict[str, str]]:
        try:
            current = query_services(client, names)
        except RemoteExecutionError as e:
            # The WinRM listener comes up during first boot too.
            logger.info("WinRM not reachable yet: %s", e)
            return None
        missing = [n for n in names if n not in current]
        if missing:
            logger.info("Services not registered yet: %s", ", ".join(missing))
            return None
        if wanted is not None:
            pending = [n for n in names if current[n].lower() != wanted]
            if pending:
                logger.info(
                    "Services not %s yet: %s", status, ", ".join(f"{n}={current[n]}" for n in pending)
                )
                return None
        return current

    what = ", ".join(names) + (f" to be {status}" if status else " to be registered")
    return wait_for(
        probe,
        description=what,
        timeout_s=timeout_s,
        interval_s=interval_s,
        error_cls=ServiceReadinessTimeout,
        sleep=sleep,
    )


def configure_openssh_server(
    client: WinRMClient,
    *,
    timeout_s: float = DEFAULT_SERVICE_WAIT_TIMEOUT_S,
    interval_s: float = DEFAULT_SERVICE_POLL_INTERVAL_S,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Install OpenSSHUtils and bring ``ssh-agent`` and ``sshd`` up.

    Steps run strictly in order; later ones depend on earlier ones.
    """

    wait_for_services(client, OPENSSH_SERVICES, timeout_s=timeout_s, interval_s=interval_s, sleep=sleep)

    client.run_checked(INSTALL_DEPENDENT_PACKAGES, what="install dependent packages for OpenSSH server")
    client.run_checked(INSTALL_OPENSSH_UTILS, what="configure OpenSSHUtils for all users")
    for name in OPENSSH_SERVICES:
        client.run_checked(
            f"Set-Service -Name {name} -StartupType 'Automatic'",
            what=f"set up {name} Windows service",
        )
    for name in OPENSSH_SERVICES:
        client.run_checked(f"Start-Service {name}", what=f"start {name}")

    wait_for_services(
        client, OPENSSH_SERVICES, status="Running", timeout_s=timeout_s, interval_s=interval_s, sleep=sleep
    )
    logger.info("OpenSSH server is running")


def create_remote_dir(client: WinRMClient, remote_dir: str) -> None:
    """Create ``remote_dir`` on the VM (no error if it already exists)."""

    client.run_checked(f"mkdir -Force {remote_dir}", what=f"create remote dir {remote_dir}")
