"""Minimal kubeconfig reading.

We only need the name of the cluster the Windows VM is meant to join, to tag
and name the cloud resources we create. A full Kubernetes client would be
overkill for that.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..errors import ProvisioningError

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9-]+")


def load_kubeconfig(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise ProvisioningError(f"cannot read kubeconfig {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ProvisioningError(f"kubeconfig {path} is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ProvisioningError(f"kubeconfig {path} root is not a mapping")
    return data


def _named(entries: Any, name: Optional[str]) -> Optional[Dict[str, Any]]:
    for entry in entries or []:
        if isinstance(entry, dict) and entry.get("name") == name:
            return entry
    return None


def cluster_name_from_kubeconfig(path: Path) -> str:
    """Return a resource-name-safe cluster name for the current context.

    Falls back to the first listed cluster when ``current-context`` is unset.
    """

    data = load_kubeconfig(path)
    context = _named(data.get("contexts"), data.get("current-context"))
    name: Optional[str] = None
    if context is not None:
        name = (context.get("context") or {}).get("cluster")
    if not name:
        clusters = data.get("clusters") or []
        if clusters and isinstance(clusters[0], dict):
            name = clusters[0].get("name")
    if not name:
        raise ProvisioningError(f"no cluster found in kubeconfig {path}")

    safe = _UNSAFE_NAME_RE.sub("-", str(name)).strip("-").lower()
    logger.debug("kubeconfig cluster %r -> %r", name, safe)
    return safe or "cluster"
