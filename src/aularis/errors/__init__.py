"""Centralized error definitions for Aularis.

Every failure the pipeline reports to an operator derives from
:class:`AularisError`, so callers at the CLI or dashboard boundary can turn
any of them into a readable message.

Usage:
    from aularis.errors import AularisError, format_error_for_cli

    try:
        await orchestrator.run(TriggerType.MANUAL)
    except AularisError as e:
        print(format_error_for_cli(e))
"""

from __future__ import annotations

from aularis.errors.user_messages import (
    format_error_for_cli,
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class AularisError(Exception):
    """Base exception for all Aularis errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        recoverable: Whether the error is potentially recoverable
        details: Additional error details for debugging
    """

    code: str = "AULARIS_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self._user_message = user_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Get user-friendly message."""
        if self._user_message:
            return self._user_message
        return get_user_message(self)

    @property
    def recovery_suggestion(self) -> str:
        """Get recovery suggestion."""
        return get_recovery_suggestion(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(AularisError):
    """Configuration is missing or invalid."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"


class CollaboratorError(ConfigurationError):
    """An external collaborator could not be loaded."""

    code = "COLLABORATOR_ERROR"
    default_message = "External collaborator unavailable"


# =============================================================================
# Orchestration Errors
# =============================================================================


class RunConflictError(AularisError):
    """A top-level run was requested while another one is active."""

    code = "RUN_CONFLICT"
    default_message = "Another batch run is already active"

    def __init__(
        self,
        message: str | None = None,
        *,
        active_since: str | None = None,
        process_type: str | None = None,
    ) -> None:
        self.active_since = active_since
        self.process_type = process_type
        super().__init__(
            message,
            details={"active_since": active_since, "process_type": process_type},
        )


class StateStoreError(AularisError):
    """Shared process state could not be written."""

    code = "STATE_STORE_ERROR"
    default_message = "Process state store unavailable"


class QueueError(AularisError):
    """Work queue persistence failed."""

    code = "QUEUE_ERROR"
    default_message = "Work queue operation failed"


# =============================================================================
# Remote Data Errors
# =============================================================================


class TunnelError(AularisError):
    """Base error for the forwarded remote data connection.

    Tunnel errors are infrastructure failures: a batch run that hits one
    stops, since no further remote data can be read.
    """

    code = "TUNNEL_ERROR"
    default_message = "Remote data tunnel failed"


class TunnelConnectionError(TunnelError):
    """The tunnel or the database behind it could not be reached."""

    code = "TUNNEL_CONNECTION_ERROR"
    default_message = "Cannot reach the remote database through the tunnel"


class QueryError(AularisError):
    """A remote statement failed for a reason other than connectivity."""

    code = "QUERY_ERROR"
    default_message = "Remote query failed"
    recoverable = False


__all__ = [
    "AularisError",
    "ConfigurationError",
    "CollaboratorError",
    "RunConflictError",
    "StateStoreError",
    "QueueError",
    "TunnelError",
    "TunnelConnectionError",
    "QueryError",
    "format_error_for_cli",
]
