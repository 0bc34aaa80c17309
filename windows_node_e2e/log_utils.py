"""Logging-related utilities.

This module has no third-party dependencies so it can be shared by the CLI,
the driver and the remote clients.
"""

from __future__ import annotations

import contextlib
import logging
import re
import sys
from pathlib import Path
from typing import Iterator, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

# Go's `testing` package prints this for every failed test and for the summary.
FAILURE_MARKER = "FAIL"

# A reasonably complete ANSI escape sequence matcher (CSI + single-character).
_ANSI_ESCAPE_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


def sanitize_log(text: str) -> str:
    """Sanitize captured remote output for logs and artifacts.

    - Normalize CRLF and lone CR into LF. WinRM hands back Windows line
      endings and PowerShell progress output uses bare CRs.
    - Strip ANSI escape sequences.
    - Prefix Go test failure lines (``--- FAIL: ...``) with ``[error]`` so they
      stand out in ``runner.log``.

    Nothing is filtered out; only formatting artifacts are normalized.
    """

    if not text:
        return ""

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _ANSI_ESCAPE_RE.sub("", text)

    out_lines: list[str] = []
    for line in text.split("\n"):
        if line.lstrip().startswith("--- FAIL") and not line.startswith("[error]"):
            line = "[error] " + line
        out_lines.append(line)

    return "\n".join(out_lines)


def contains_failure_marker(text: str) -> bool:
    return FAILURE_MARKER in (text or "")


def configure_logging(log_path: Optional[Path] = None, *, level: int = logging.INFO) -> None:
    """Send harness logs to stdout and, when given, to ``log_path``.

    Handlers installed by a previous call are replaced; handlers installed by
    an embedding application are left alone.
    """

    root = logging.getLogger()
    root.setLevel(level)
    fmt = logging.Formatter(LOG_FORMAT)

    for h in list(root.handlers):
        if getattr(h, "_windows_node_e2e", False):
            root.removeHandler(h)
            h.close()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_path is not None:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(log_path), mode="a", encoding="utf-8"))

    for h in handlers:
        h.setFormatter(fmt)
        h._windows_node_e2e = True  # type: ignore[attr-defined]
        root.addHandler(h)

    # botocore and paramiko are chatty at INFO.
    for name in ("botocore", "boto3", "urllib3", "paramiko"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


@contextlib.contextmanager
def log_to_file(log_path: Path, *, level: int = logging.INFO) -> Iterator[logging.Handler]:
    """Temporarily mirror root logging into ``log_path`` (the run transcript)."""

    Path(log_path).parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(str(log_path), mode="a", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(handler)
    try:
        yield handler
    finally:
        root.removeHandler(handler)
        handler.close()
