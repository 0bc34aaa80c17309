"""Remote access to the Windows VM (WinRM commands, SFTP uploads)."""

from .openssh import configure_openssh_server, create_remote_dir, wait_for_services
from .sftp_transfer import SFTPTransfer
from .winrm_client import WinRMClient

__all__ = [
    "SFTPTransfer",
    "WinRMClient",
    "configure_openssh_server",
    "create_remote_dir",
    "wait_for_services",
]
