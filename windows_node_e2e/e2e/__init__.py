"""The end-to-end driver: set up the VM, run the remote unit tests, tear down."""

from .framework import E2EFramework, UnitTestOutcome
from .runner import (
    EXIT_OK,
    EXIT_SETUP_FAILED,
    EXIT_TEARDOWN_FAILED,
    EXIT_TEST_FAILED,
    RunResult,
    run_e2e,
)

__all__ = [
    "E2EFramework",
    "EXIT_OK",
    "EXIT_SETUP_FAILED",
    "EXIT_TEARDOWN_FAILED",
    "EXIT_TEST_FAILED",
    "RunResult",
    "UnitTestOutcome",
    "run_e2e",
]
