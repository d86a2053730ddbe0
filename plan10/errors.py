"""
Error taxonomy for Plan 10.

Request-level errors (ConfigError, ValidationError) abort an invocation
before any network activity. Remote errors (RemoteConnectionError,
ExecutionError) are scoped to one target and are captured into that
target's DeploymentResult by the orchestrator.
"""

from typing import Optional


class Plan10Error(Exception):
    """Base class for every error raised by this package."""
    pass


# =============================================================================
# Request errors (fail fast)
# =============================================================================

class ConfigError(Plan10Error):
    """Malformed or missing configuration / registry file."""
    pass


class ValidationError(Plan10Error):
    """The request itself is ill-formed (bad name, unknown target, ...)."""
    pass


class DuplicateName(ValidationError):
    """A server with this name is already registered."""

    def __init__(self, name: str):
        super().__init__(f"Server '{name}' already exists")
        self.name = name


class NotFound(ValidationError):
    """No server with this name is registered."""

    def __init__(self, name: str):
        super().__init__(f"Server '{name}' not found")
        self.name = name


class InvalidTransition(Plan10Error):
    """A deployment task was asked to move to a state it cannot enter."""
    pass


# =============================================================================
# Connection errors
# =============================================================================

class RemoteConnectionError(Plan10Error):
    """Failed to establish a session with a remote host."""

    retryable = False

    def __init__(self, message: str, host: Optional[str] = None):
        super().__init__(message)
        self.host = host


class AuthFailure(RemoteConnectionError):
    """Credentials rejected or host key not trusted. Never retried."""
    retryable = False


class ConnectTimeout(RemoteConnectionError):
    retryable = True


class NetworkUnreachable(RemoteConnectionError):
    retryable = True


# =============================================================================
# Execution errors
# =============================================================================

class ExecutionError(Plan10Error):
    """A remote operation failed on an established session."""
    pass


class NonZeroExit(ExecutionError):
    """Remote command exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int, stderr: str = ""):
        detail = stderr.strip()
        message = f"Command '{command}' failed with exit code {exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class CommandTimeout(ExecutionError):
    pass


class Disconnected(ExecutionError):
    """The session dropped underneath a running operation."""
    pass


class TransferError(ExecutionError):
    """File transfer to a remote host failed."""
    pass


class TransferIOError(TransferError):
    pass


class PermissionDenied(TransferError):
    pass
