#!/usr/bin/env python3
"""Convenience entry point.

The harness lives in the `windows_node_e2e` package; this wrapper lets CI
scripts call it straight from a checkout.
"""

from windows_node_e2e.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
