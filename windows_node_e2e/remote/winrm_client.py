"""WinRM command client.

Wraps a pywinrm session bound to one VM. Output goes to writers supplied per
call instead of the process-wide ``sys.stdout``, so callers can capture it
without swapping global streams.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional, TextIO

import requests
import winrm
from winrm.exceptions import WinRMError, WinRMOperationTimeoutError, WinRMTransportError

from ..config import REMOTE_POWERSHELL_CMD_PREFIX, USER, WINRM_PORT
from ..errors import RemoteExecutionError

logger = logging.getLogger(__name__)

# pywinrm's transport and timeout errors do not derive from WinRMError.
_TRANSPORT_ERRORS = (
    WinRMError,
    WinRMTransportError,
    WinRMOperationTimeoutError,
    requests.exceptions.RequestException,
)


def _decode(data: Any) -> str:
    if not data:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


def winrm_endpoint(host: str, port: int = WINRM_PORT, https: bool = True) -> str:
    scheme = "https" if https else "http"
    return f"{scheme}://{host}:{int(port)}/wsman"


class WinRMClient:
    """Run PowerShell commands on one Windows VM over WinRM/HTTPS."""

    def __init__(
        self,
        host: str,
        password: str,
        *,
        user: str = USER,
        port: int = WINRM_PORT,
        transport: str = "basic",
        read_timeout_s: Optional[int] = None,
        operation_timeout_s: Optional[int] = None,
        session: Optional[Any] = None,
    ):
        self.host = host
        self.user = user
        self.port = int(port)
        if session is None:
            kwargs: dict[str, Any] = {
                "auth": (user, password),
                "transport": transport,
                # The VM uses a self-signed certificate.
                "server_cert_validation": "ignore",
            }
            if read_timeout_s is not None:
                kwargs["read_timeout_sec"] = int(read_timeout_s)
            if operation_timeout_s is not None:
                kwargs["operation_timeout_sec"] = int(operation_timeout_s)
            try:
                session = winrm.Session(winrm_endpoint(host, self.port), **kwargs)
            except (WinRMError, ValueError) as e:
                raise RemoteExecutionError(f"failed to set up winrm client for {host}: {e}") from e
        self._session = session

    def run(self, command: str, stdout: Optional[TextIO] = None, stderr: Optional[TextIO] = None) -> int:
        """Run ``command`` through the PowerShell prefix and return its exit code.

        Blocks until the remote command finishes. Output is written to
        ``stdout``/``stderr`` (the current ``sys`` streams when omitted).
        Transport and authentication failures raise
        :class:`RemoteExecutionError`; a non-zero exit code does not.
        """

        full = REMOTE_POWERSHELL_CMD_PREFIX + command
        logger.info("[winrm] %s $ %s", self.host, command)
        try:
            result = self._session.run_cmd(full)
        except _TRANSPORT_ERRORS as e:
            raise RemoteExecutionError(f"winrm call to {self.host} failed: {e}", command=command) from e

        out_w = stdout if stdout is not None else sys.stdout
        err_w = stderr if stderr is not None else sys.stderr
        out = _decode(result.std_out)
        err = _decode(result.std_err)
        if out:
            out_w.write(out)
            out_w.flush()
        if err:
            err_w.write(err)
            err_w.flush()
        return int(result.status_code)

    def run_checked(self, command: str, *, what: str, stdout: Optional[TextIO] = None) -> None:
        """Like :meth:`run` but a non-zero exit code raises as well."""

        rc = self.run(command, stdout=stdout)
        if rc != 0:
            raise RemoteExecutionError(f"failed to {what} (rc={rc})", command=command, exit_code=rc)

    def close(self) -> None:
        transport = getattr(getattr(self._session, "protocol", None), "transport", None)
        close_session = getattr(transport, "close_session", None)
        if callable(close_session):
            try:
                close_session()
            except requests.exceptions.RequestException as e:
                logger.warning("[winrm] closing session to %s failed: %s", self.host, e)
