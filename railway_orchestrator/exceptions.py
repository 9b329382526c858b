"""
Error taxonomy for deployment orchestration.

Validation errors are raised before anything runs. Transient errors are
retried up to the attempt ceiling. Permanent errors fail immediately.
"""

from typing import Optional


class DeploymentError(Exception):
    """Base class for all orchestration errors."""


class CommandValidationError(DeploymentError):
    """A command, argument, domain or variable name was rejected before execution."""


class CliExecutionError(DeploymentError):
    """The Railway CLI process could not be started."""


class TransientError(DeploymentError):
    """Marker base for failures that may succeed when retried."""


class CliTimeoutError(TransientError):
    """The CLI process exceeded its timeout and was terminated."""

    def __init__(
        self,
        command: str,
        timeout_ms: int,
        duration_ms: int,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(f"Railway CLI command '{command}' timed out after {timeout_ms}ms")
        self.command = command
        self.timeout_ms = timeout_ms
        self.duration_ms = duration_ms
        self.stdout = stdout
        self.stderr = stderr


class TransientCliError(TransientError):
    """Non-zero exit caused by a network-class failure (connection reset, 503, ...)."""

    def __init__(self, command: str, exit_code: int, stderr: str):
        super().__init__(f"Railway CLI command '{command}' failed transiently (exit {exit_code}): {stderr}")
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class CliCommandFailedError(DeploymentError):
    """Permanent non-zero exit of a single-shot CLI operation."""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class ServiceNotFoundError(DeploymentError):
    """No service with that id exists in the caller's workspace."""


class DeploymentNotFoundError(DeploymentError):
    """No deployment with that id exists in the caller's workspace."""


class RollbackValidationError(DeploymentError):
    """The rollback target cannot be redeployed."""


class DeploymentInProgressError(DeploymentError):
    """Another orchestration stream already holds the service lock."""


class InvalidStateTransitionError(DeploymentError):
    """A deployment status change violates the lifecycle state machine."""


class ServiceNotReadyError(DeploymentError):
    """A freshly provisioned service did not report active before the deadline."""
