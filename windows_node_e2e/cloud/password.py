"""Decrypt the Administrator password EC2 generates for Windows instances.

EC2 encrypts it with the public half of the launch key pair using RSA
PKCS#1 v1.5 and returns it base64 encoded from ``GetPasswordData``.
"""

from __future__ import annotations

import base64
import binascii
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding

from ..errors import ProvisioningError


def decrypt_windows_password(password_data: str, private_key_path: Path) -> str:
    try:
        pem = Path(private_key_path).read_bytes()
    except OSError as e:
        raise ProvisioningError(f"cannot read private key {private_key_path}: {e}") from e

    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError) as e:
        raise ProvisioningError(f"cannot load private key {private_key_path}: {e}") from e

    try:
        encrypted = base64.b64decode(password_data.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProvisioningError(f"password data is not valid base64: {e}") from e

    try:
        plain = key.decrypt(encrypted, padding.PKCS1v15())  # type: ignore[union-attr]
        return plain.decode("utf-8")
    except (ValueError, AttributeError, TypeError) as e:
        raise ProvisioningError(f"cannot decrypt Windows password with {private_key_path}: {e}") from e
