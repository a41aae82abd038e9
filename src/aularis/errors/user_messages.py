"""User-friendly error messages for Aularis.

Operators see these instead of raw tracebacks. Credentials never appear in
the rendered output.
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    "CONFIGURATION_ERROR": "There's a configuration issue.",
    "COLLABORATOR_ERROR": "A configured content fetcher or analysis executor could not be loaded.",
    "RUN_CONFLICT": "A batch run is already in progress.",
    "STATE_STORE_ERROR": "The shared process state could not be updated.",
    "QUEUE_ERROR": "The analysis queue could not be updated.",
    "TUNNEL_ERROR": "The connection to the remote enrolment database failed.",
    "TUNNEL_CONNECTION_ERROR": "Cannot reach the remote enrolment database.",
    "QUERY_ERROR": "A query against the remote enrolment database failed.",
    "UNKNOWN_ERROR": "Something went wrong.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    "CONFIGURATION_ERROR": "Check the configuration file and AULARIS_* environment variables.",
    "COLLABORATOR_ERROR": "Verify the 'collaborators' import paths in the configuration.",
    "RUN_CONFLICT": "Wait for the active run to finish, then trigger again.",
    "STATE_STORE_ERROR": "Check that the state path is writable by every worker process.",
    "QUEUE_ERROR": "Check that the queue database is writable and not corrupted.",
    "TUNNEL_ERROR": "Check the SSH host and credentials in the 'tunnel' section.",
    "TUNNEL_CONNECTION_ERROR": "Check the SSH host, key file and database endpoint.",
    "QUERY_ERROR": "Check the database schema and the account's permissions.",
    "UNKNOWN_ERROR": "Retry the operation; if it keeps failing, check the logs.",
}


# =============================================================================
# Helper Functions
# =============================================================================


def _error_code(error: Any) -> str:
    if hasattr(error, "code"):
        return error.code
    if isinstance(error, str):
        return error
    return type(error).__name__.upper()


def get_user_message(error: Any) -> str:
    """Get a user-friendly message for an error or error code."""
    return ERROR_MESSAGES.get(_error_code(error), ERROR_MESSAGES["UNKNOWN_ERROR"])


def get_recovery_suggestion(error: Any) -> str:
    """Get a recovery suggestion for an error or error code."""
    return RECOVERY_SUGGESTIONS.get(
        _error_code(error), RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"]
    )


def format_error_for_cli(error: Any) -> str:
    """Format an error for terminal output, including safe details."""
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)
    code = getattr(error, "code", "ERROR")

    lines = [f"Error [{code}]: {message}"]
    technical = getattr(error, "message", None)
    if technical and technical != message:
        lines.append(f"  {technical}")
    lines.extend(["", f"Suggestion: {suggestion}"])

    details = getattr(error, "details", None)
    if details:
        lines.append("")
        lines.append("Details:")
        for key, value in details.items():
            # Don't expose credentials
            if key not in ("password", "token", "private_key") and value is not None:
                lines.append(f"  {key}: {value}")

    return "\n".join(lines)
