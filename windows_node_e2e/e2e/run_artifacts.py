"""Local run folder for one e2e run.

Layout (under ``$ARTIFACT_DIR/e2e_runs/<run_id>/``)::

    run_meta.json        what was requested (no secrets)
    run_status.json      placeholder "failed", finalized at the end
    logs/runner.log      harness log transcript
    logs/remote_stdout.txt  captured output of the remote test binary

The folder is created before any cloud or remote activity so debugging
artifacts exist even when provisioning fails.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

RUN_STATUS_SCHEMA_VERSION = 1


def utc_now_iso() -> str:
    """UTC timestamp in ISO-8601 with 'Z'."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def make_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")


def write_json(path: Path, obj: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False)


def _touch(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        with open(path, "w", encoding="utf-8"):
            pass


def read_tail_lines(path: Path, *, max_lines: int = 100, max_bytes: int = 64_000) -> list[str]:
    """Read last N lines from a text file with a hard byte cap.

    Returns [] if the file doesn't exist.
    """
    if not path.exists():
        return []
    data = path.read_bytes()
    if len(data) > max_bytes:
        data = data[-max_bytes:]
    lines = data.decode("utf-8", errors="replace").splitlines()
    return lines[-max_lines:]


def run_dir_for(artifact_dir: Path, run_id: str) -> Path:
    return Path(artifact_dir).expanduser().resolve() / "e2e_runs" / run_id


def init_run_artifacts(run_dir: Path, run_meta: dict[str, Any]) -> None:
    logs_dir = run_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    _touch(logs_dir / "runner.log")
    _touch(logs_dir / "remote_stdout.txt")

    write_json(run_dir / "run_meta.json", run_meta)
    write_json(
        run_dir / "run_status.json",
        {
            "schema_version": RUN_STATUS_SCHEMA_VERSION,
            "status": "failed",
            "phase": None,
            "started_at": run_meta.get("started_at"),
            "ended_at": None,
            "remote_rc": None,
            "fail_reason": {
                "message": "Run started but not finalized.",
                "exception": None,
                "output_tail": [],
            },
        },
    )


def finalize_run_status(
    run_dir: Path,
    *,
    status: str,
    phase: Optional[str],
    started_at: str,
    remote_rc: Optional[int],
    fail_message: Optional[str] = None,
    exception_text: Optional[str] = None,
) -> dict[str, Any]:
    """Write the final run_status.json and return its payload."""

    payload: dict[str, Any] = {
        "schema_version": RUN_STATUS_SCHEMA_VERSION,
        "status": status,
        "phase": phase,
        "started_at": started_at,
        "ended_at": utc_now_iso(),
        "remote_rc": remote_rc,
    }
    if status != "ok":
        tail = read_tail_lines(run_dir / "logs" / "remote_stdout.txt")
        if not tail:
            tail = read_tail_lines(run_dir / "logs" / "runner.log")
        payload["fail_reason"] = {
            "message": fail_message or "Run failed.",
            "exception": exception_text,
            "output_tail": tail,
        }
    else:
        payload["fail_reason"] = None
    write_json(run_dir / "run_status.json", payload)
    return payload
