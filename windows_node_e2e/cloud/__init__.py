"""Cloud provisioning of the Windows VM under test."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from .aws import AwsProvider, ResourceRecord, make_ec2_client
from .base import CloudProvider, Credentials
from .kubeconfig import cluster_name_from_kubeconfig

__all__ = [
    "AwsProvider",
    "CloudProvider",
    "Credentials",
    "ResourceRecord",
    "cloud_provider_factory",
]


def cloud_provider_factory(
    kubeconfig: Path,
    credentials_path: Path,
    profile: str,
    artifact_dir: Path,
    image_id: str,
    instance_type: str,
    key_name: str,
    private_key_path: Path,
    *,
    region: str,
    ec2: Optional[Any] = None,
) -> CloudProvider:
    """Build the provider for the cluster described by ``kubeconfig``.

    Only AWS is supported. ``ec2`` lets callers inject a prepared client.
    """

    cluster_name = cluster_name_from_kubeconfig(kubeconfig)
    if ec2 is None:
        ec2 = make_ec2_client(credentials_path, profile, region)
    return AwsProvider(
        ec2,
        cluster_name=cluster_name,
        artifact_dir=artifact_dir,
        image_id=image_id,
        instance_type=instance_type,
        key_name=key_name,
        private_key_path=private_key_path,
    )
