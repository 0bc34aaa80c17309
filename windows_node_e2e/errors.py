"""Exception taxonomy for the e2e harness.

Setup-phase errors (config, provisioning, remote access, transfer) abort the
run. Execution-phase errors are turned into a failed test result by the
driver. Teardown errors are reported separately.
"""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for all harness errors."""


class ConfigError(HarnessError):
    """Missing environment variable or invalid command line value."""


class ProvisioningError(HarnessError):
    """The cloud provider could not create or destroy a Windows VM."""


class RemoteExecutionError(HarnessError):
    """A WinRM call failed or a setup command exited non-zero."""

    def __init__(self, message: str, *, command: str | None = None, exit_code: int | None = None):
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code


class ServiceReadinessTimeout(RemoteExecutionError):
    """Windows services did not reach the expected state in time."""


class TransferError(HarnessError):
    """Opening or copying a file to the VM failed."""


class AssertionFailure(HarnessError):
    """The captured remote output contains the failure marker."""
