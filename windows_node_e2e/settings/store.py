from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Keys a settings file may use to override built-in VM defaults.
VM_DEFAULT_KEYS = ("region", "image_id", "instance_type", "key_name", "service_wait_timeout_s")

# Keys that must never be persisted.
_SECRET_KEYS = {"password", "admin_password", "private_key"}


def _harness_home() -> Path:
    return Path.home() / ".windows_node_e2e"


def default_settings() -> Dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "last_saved_at": None,
        # Overrides for the built-in VM profile, see VM_DEFAULT_KEYS.
        "vm_defaults": {},
    }


@dataclass
class SettingsStore:
    """Load/save persistent settings.

    Settings stay a plain dict so unknown keys from newer versions survive a
    load/save cycle.
    """

    filename: str = "settings.json"
    home: Path = field(default_factory=_harness_home)

    def path(self) -> Path:
        return self.home / self.filename

    def load(self) -> Dict[str, Any]:
        path = self.path()
        base = default_settings()

        if not path.exists():
            return base

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("settings.json root is not an object")
            merged = dict(base)
            merged.update(data)
            if not isinstance(merged.get("vm_defaults"), dict):
                merged["vm_defaults"] = {}
            return merged
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable settings file %s: %s", path, e)
            ts = time.strftime("%Y%m%d_%H%M%S")
            bak = path.with_name(f"{path.name}.bak.{ts}")
            try:
                bak.write_bytes(path.read_bytes())
            except OSError:
                logger.warning("Could not back up %s", path)
            return base

    def save(self, data: Dict[str, Any]) -> None:
        self.home.mkdir(parents=True, exist_ok=True)
        path = self.path()
        tmp = path.with_suffix(path.suffix + ".tmp")

        payload = {k: v for k, v in dict(data or {}).items() if k not in _SECRET_KEYS}
        payload.setdefault("schema_version", SCHEMA_VERSION)
        payload["last_saved_at"] = time.strftime("%Y-%m-%dT%H:%M:%S")

        # Atomic write
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, path)

    # Convenience helpers -------------------------------------------------
    def get(self, key: str, default: Any = None) -> Any:
        return self.load().get(key, default)

    def update(self, patch: Dict[str, Any]) -> None:
        data = self.load()
        data.update(patch)
        self.save(data)

    def vm_defaults(self) -> Dict[str, Any]:
        """Return only the recognised VM default overrides."""
        raw = self.load().get("vm_defaults") or {}
        return {k: raw[k] for k in VM_DEFAULT_KEYS if raw.get(k) not in (None, "")}
