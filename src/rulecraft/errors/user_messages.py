"""User-friendly error messages for Rulecraft.

Human-readable messages and recovery suggestions keyed by error code, so the
UI and CLI never show raw provider responses.

Privacy Note:
- Error messages NEVER include token material
- Details named like secrets are filtered before display
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Credential errors
    "CREDENTIAL_ERROR": "There was a problem with your GitHub credentials.",
    "CREDENTIAL_NOT_FOUND": "Your GitHub account isn't connected yet.",
    "TOKEN_EXPIRED_OR_REVOKED": "Your GitHub access has expired or been revoked.",
    "APP_NOT_INSTALLED": "The GitHub App isn't installed on your account.",
    "OAUTH_EXCHANGE_ERROR": "GitHub didn't accept the authorization request.",
    "OAUTH_STATE_ERROR": "The GitHub authorization request expired.",
    # Provider errors
    "PROVIDER_ERROR": "GitHub returned an unexpected error.",
    "RATE_LIMITED": "GitHub's rate limit was reached.",
    "PROVIDER_UNAVAILABLE": "GitHub is unreachable right now.",
    "PROVIDER_FORBIDDEN": "GitHub denied access to this resource.",
    "RESOURCE_NOT_FOUND": "The repository or file wasn't found.",
    "CREDENTIAL_STORE_ERROR": "Stored credentials couldn't be read or written.",
    # Issuer errors
    "ISSUER_ERROR": "The GitHub App couldn't issue an access token.",
    "ISSUER_NOT_CONFIGURED": "The GitHub App isn't configured on this server.",
    "ISSUER_REJECTED": "GitHub refused to issue an installation token.",
    "ISSUER_UNAVAILABLE": "GitHub App authentication is temporarily unavailable.",
    # Configuration errors
    "CONFIGURATION_ERROR": "There's a configuration issue.",
    "INVALID_CONFIG": "The configuration is invalid. Check settings.",
    "MISSING_CONFIG": "Required configuration is missing.",
    # Generic
    "RULECRAFT_ERROR": "An unexpected error occurred. Please try again.",
    "UNKNOWN_ERROR": "Something went wrong. Please try again.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    # Credential errors
    "CREDENTIAL_ERROR": "Reconnect GitHub: rulecraft github authorize-url",
    "CREDENTIAL_NOT_FOUND": "Connect GitHub first: rulecraft github authorize-url",
    "TOKEN_EXPIRED_OR_REVOKED": "Reconnect your GitHub account to grant access again.",
    "APP_NOT_INSTALLED": "Install the GitHub App on your account, then retry the migration.",
    "OAUTH_EXCHANGE_ERROR": "Restart the connection flow from the beginning.",
    "OAUTH_STATE_ERROR": "Start the connection again and finish within five minutes.",
    # Provider errors
    "PROVIDER_ERROR": "Retry the request. Report the issue if it persists.",
    "RATE_LIMITED": "Wait for the rate limit window to reset, then retry.",
    "PROVIDER_UNAVAILABLE": "Check your network connection and retry shortly.",
    "PROVIDER_FORBIDDEN": "Check the repository permissions granted to Rulecraft.",
    "RESOURCE_NOT_FOUND": "Verify the repository name, branch and path.",
    "CREDENTIAL_STORE_ERROR": "Check disk space and permissions for the credentials file.",
    # Issuer errors
    "ISSUER_ERROR": "Retry later or reconnect with your personal GitHub authorization.",
    "ISSUER_NOT_CONFIGURED": "Set RULECRAFT_GITHUB_APP_ID and RULECRAFT_GITHUB_APP_PRIVATE_KEY.",
    "ISSUER_REJECTED": "Make sure the GitHub App is still installed with the required permissions.",
    "ISSUER_UNAVAILABLE": "Retry in a few moments.",
    # Configuration errors
    "CONFIGURATION_ERROR": "Check config: rulecraft config show",
    "INVALID_CONFIG": "Fix the configuration file or remove it to regenerate defaults.",
    "MISSING_CONFIG": "Set the required environment variables and retry.",
    # Generic
    "RULECRAFT_ERROR": "If this persists, please report the issue.",
    "UNKNOWN_ERROR": "Try again. Report if the issue continues.",
}

_SENSITIVE_DETAIL_KEYS = ("token", "access_token", "refresh_token", "private_key", "password")


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
    """Get user-friendly message for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        User-friendly error message
    """
    return ERROR_MESSAGES.get(_error_code(error), ERROR_MESSAGES["UNKNOWN_ERROR"])


def get_recovery_suggestion(error: Any) -> str:
    """Get recovery suggestion for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        Recovery suggestion
    """
    return RECOVERY_SUGGESTIONS.get(
        _error_code(error), RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"]
    )


def format_error_for_user(error: Any) -> str:
    """Format a complete user-friendly error message with recovery suggestion."""
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)

    return f"{message}\n\nSuggestion: {suggestion}"


def format_error_for_cli(error: Any) -> str:
    """Format error for CLI output.

    Args:
        error: The error to format

    Returns:
        CLI-formatted error message
    """
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)
    code = getattr(error, "code", "ERROR")

    lines = [
        f"Error [{code}]: {message}",
        "",
        f"Suggestion: {suggestion}",
    ]

    details = getattr(error, "details", None)
    if details:
        lines.append("")
        lines.append("Details:")
        for key, value in details.items():
            if key in _SENSITIVE_DETAIL_KEYS or value is None:
                continue
            lines.append(f"  {key}: {value}")

    return "\n".join(lines)


def format_error_for_ui(error: Any) -> dict:
    """Format error for UI/frontend display."""
    payload = {
        "message": get_user_message(error),
        "suggestion": get_recovery_suggestion(error),
        "code": getattr(error, "code", "UNKNOWN_ERROR"),
        "recoverable": getattr(error, "recoverable", False),
    }
    retry_after = getattr(error, "retry_after_seconds", None)
    if retry_after is not None:
        payload["retry_after_seconds"] = retry_after
    return payload


__all__ = [
    "ERROR_MESSAGES",
    "RECOVERY_SUGGESTIONS",
    "get_user_message",
    "get_recovery_suggestion",
    "format_error_for_user",
    "format_error_for_cli",
    "format_error_for_ui",
]
