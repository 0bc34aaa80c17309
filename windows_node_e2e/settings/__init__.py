"""Persistent defaults for the e2e harness.

CI jobs configure the harness through environment variables. Developers who
run it by hand tend to reuse the same region, image and key pair, so those
values can be pinned in a single versioned JSON file under the user's home.

Design goals:
  * Atomic writes (no corrupted settings on crash)
  * Resilient loads (backup and fall back to defaults)
  * No secrets (Administrator passwords, private keys etc.)
"""

from .store import SettingsStore, default_settings

__all__ = ["SettingsStore", "default_settings"]
