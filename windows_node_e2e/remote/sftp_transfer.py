"""SFTP file transfer to the Windows VM.

Uses paramiko with password auth. Host keys are not verified: the VM was
created by this run and its key is unknown in advance.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Any, Callable, Optional, Union

import paramiko

from ..config import SSH_PORT, USER
from ..errors import TransferError

logger = logging.getLogger(__name__)

COPY_CHUNK_BYTES = 1024 * 1024


class SFTPTransfer:
    """One SSH connection and at most one SFTP session on top of it."""

    def __init__(
        self,
        address: str,
        password: str,
        *,
        user: str = USER,
        port: int = SSH_PORT,
        timeout_s: float = 30.0,
        client_factory: Callable[[], Any] = paramiko.SSHClient,
    ):
        self.address = address
        self.user = user
        self.port = int(port)
        self.timeout_s = timeout_s
        self._password = password
        self._client_factory = client_factory
        self._client: Optional[Any] = None
        self._sftp: Optional[Any] = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    def connect(self) -> None:
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        logger.info("[ssh] connecting to %s@%s:%d", self.user, self.address, self.port)
        try:
            client.connect(
                hostname=self.address,
                port=self.port,
                username=self.user,
                password=self._password,
                look_for_keys=False,
                allow_agent=False,
                timeout=self.timeout_s,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise TransferError(f"failed to dial to ssh server {self.address}:{self.port}: {e}") from e
        self._client = client

    def _open_sftp(self) -> Any:
        if self._client is None:
            raise TransferError("ssh client is not connected")
        if self._sftp is None:
            try:
                self._sftp = self._client.open_sftp()
            except (paramiko.SSHException, OSError) as e:
                raise TransferError(f"sftp client initialization failed: {e}") from e
        return self._sftp

    def upload(self, local_path: Union[str, Path, None], remote_path: str) -> int:
        """Copy ``local_path`` to ``remote_path`` and return the bytes copied.

        The remote file handle is closed before this returns, so the file can
        be executed right away.
        """

        if not local_path or not str(local_path).strip():
            raise TransferError("no binary to transfer was given")
        local = Path(local_path)
        if not local.is_file():
            raise TransferError(f"error opening binary file to be transferred: {local} does not exist")

        sftp = self._open_sftp()
        logger.info("[sftp-upload] %s -> %s:%s", local, self.address, remote_path)
        try:
            with open(local, "rb") as src:
                with sftp.open(remote_path, "wb") as dst:
                    dst.set_pipelined(True)
                    shutil.copyfileobj(src, dst, COPY_CHUNK_BYTES)
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(f"error copying {local} to the Windows VM ({remote_path}): {e}") from e

        size = os.path.getsize(local)
        logger.info("[sftp-upload] copied %d bytes", size)
        return size

    def close(self) -> None:
        sftp, self._sftp = self._sftp, None
        client, self._client = self._client, None
        if sftp is not None:
            sftp.close()
        if client is not None:
            client.close()

    def __enter__(self) -> "SFTPTransfer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
