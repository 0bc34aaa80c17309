from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class Credentials:
    """How to reach a freshly created Windows VM.

    Read-only after creation; the VM itself owns the lifetime.
    """

    address: str
    password: str
    instance_id: Optional[str] = None

    def __repr__(self) -> str:
        return f"Credentials(address={self.address!r}, password='***', instance_id={self.instance_id!r})"


class CloudProvider(Protocol):
    """Cloud provider contract.

    - create exactly one Windows VM per call and return its credentials
    - destroy every VM created by this provider's runs
    """

    def create_windows_vm(self) -> Credentials: ...

    def destroy_windows_vms(self) -> None: ...
