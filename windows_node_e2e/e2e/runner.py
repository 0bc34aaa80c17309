from __future__ import annotations

import logging
import time
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .. import __version__
from ..config import HarnessConfig
from ..errors import HarnessError
from ..log_utils import log_to_file
from .framework import E2EFramework, UnitTestOutcome
from .run_artifacts import finalize_run_status, init_run_artifacts, make_run_id, run_dir_for, utc_now_iso

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_TEST_FAILED = 1
EXIT_SETUP_FAILED = 2
EXIT_TEARDOWN_FAILED = 3


@dataclass
class RunResult:
    status: str  # 'ok' | 'failed' | 'setup_failed' | 'teardown_failed'
    exit_code: int
    run_dir: Path
    phase: Optional[str] = None
    outcome: Optional[UnitTestOutcome] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def _run_meta(config: HarnessConfig, run_id: str, started_at: str) -> dict:
    return {
        "schema_version": 1,
        "run_id": run_id,
        "tool_version": __version__,
        "started_at": started_at,
        "binary": str(config.binary_to_be_transferred) if config.binary_to_be_transferred else None,
        "remote_path": config.remote_binary_path,
        "vm": {
            "region": config.region,
            "image_id": config.image_id,
            "instance_type": config.instance_type,
            "key_name": config.key_name,
        },
    }


def run_e2e(
    config: HarnessConfig,
    *,
    framework: Optional[E2EFramework] = None,
    run_id: Optional[str] = None,
) -> RunResult:
    """Run setup, the remote unit tests and teardown once.

    Teardown runs exactly once whatever happened before it. Exit codes:
    0 pass, 1 test failure, 2 setup failure, 3 teardown failure (which wins
    over the others since it may leave a VM behind).
    """

    t0 = time.time()
    run_id = run_id or make_run_id()
    run_dir = run_dir_for(config.artifact_dir, run_id)
    started_at = utc_now_iso()
    init_run_artifacts(run_dir, _run_meta(config, run_id, started_at))

    fw = framework if framework is not None else E2EFramework(config)

    setup_error: Optional[HarnessError] = None
    teardown_error: Optional[HarnessError] = None
    outcome: Optional[UnitTestOutcome] = None
    failed_phase: Optional[str] = None
    exception_text: Optional[str] = None

    with log_to_file(run_dir / "logs" / "runner.log"):
        logger.info("Run %s started, artifacts in %s", run_id, run_dir)
        try:
            try:
                fw.setup()
            except HarnessError as e:
                setup_error = e
                failed_phase = fw.phase
                exception_text = traceback.format_exc()
                logger.error("Setup failed in phase %s: %s", fw.phase, e)

            if setup_error is None:
                outcome = fw.run_unit_tests()
                (run_dir / "logs" / "remote_stdout.txt").write_text(outcome.output, encoding="utf-8")
                if not outcome.passed:
                    failed_phase = fw.phase
        except BaseException:
            failed_phase = fw.phase
            finalize_run_status(
                run_dir,
                status="failed",
                phase=failed_phase,
                started_at=started_at,
                remote_rc=outcome.remote_rc if outcome else None,
                fail_message="Run aborted by an unexpected error.",
                exception_text=traceback.format_exc(),
            )
            raise
        finally:
            try:
                fw.tear_down()
            except HarnessError as e:
                teardown_error = e
                logger.error("Failed tearing down the Windows VM: %s", e)

        if teardown_error is not None:
            status, exit_code, message = "teardown_failed", EXIT_TEARDOWN_FAILED, str(teardown_error)
            failed_phase = "teardown"
        elif setup_error is not None:
            status, exit_code, message = "setup_failed", EXIT_SETUP_FAILED, str(setup_error)
        elif outcome is not None and outcome.passed:
            status, exit_code, message = "ok", EXIT_OK, None
        else:
            status, exit_code = "failed", EXIT_TEST_FAILED
            message = outcome.message if outcome else "Run failed."

        finalize_run_status(
            run_dir,
            status=status,
            phase=failed_phase,
            started_at=started_at,
            remote_rc=outcome.remote_rc if outcome else None,
            fail_message=message,
            exception_text=exception_text,
        )
        logger.info("DONE in %.1fs: %s (exit %d). Results in: %s", time.time() - t0, status, exit_code, run_dir)

    return RunResult(
        status=status,
        exit_code=exit_code,
        run_dir=run_dir,
        phase=failed_phase,
        outcome=outcome,
        error=message,
    )
