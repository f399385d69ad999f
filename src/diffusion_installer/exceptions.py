"""Centralized exception hierarchy for the installer.

Workers report expected failures as result models. Exceptions are reserved for
conditions that must cross the executor boundary: cancellation, timeouts and
configuration errors detected before any external tool runs.
"""


class InstallerError(Exception):
    """Base exception for all installer-specific errors."""

    def __init__(self, message: str, retriable: bool = False, **params: object) -> None:
        """
        Initialize the error.

        Args:
            message: English message describing the failure
            retriable: Whether the operation can be retried
            **params: Extra context included when the error is rendered
        """
        super().__init__(message)
        self.message = message
        self.retriable = retriable
        self.params = params

    def __str__(self) -> str:
        if not self.params:
            return self.message
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.message} ({params_str})"


class ConfigurationError(InstallerError):
    """Raised when the installation configuration is missing a required value."""


class OperationCancelledError(InstallerError):
    """Raised when an operation is cancelled cooperatively."""

    def __init__(self, message: str = "Operation was cancelled") -> None:
        super().__init__(message)


class ProcessTimeoutError(OperationCancelledError):
    """Raised when a child process exceeds its timeout and is terminated."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(f"Process timed out after {timeout:g}s: {command}")
        self.command = command
        self.timeout = timeout
