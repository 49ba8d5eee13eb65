"""Centralized error definitions for Rulecraft.

Every failure the source-hosting integration layer can surface maps to one of
the error kinds below. Callers branch on the class (or on ``code`` once the
error has been serialized) to decide between prompting the user to reconnect,
backing off, or giving up.

Usage:
    from rulecraft.errors import (
        RulecraftError,
        TokenExpiredOrRevokedError,
        handle_error,
    )

    try:
        tree = service.get_file_tree(user_id, "octo/repo")
    except TokenExpiredOrRevokedError:
        prompt_reconnect()
    except RulecraftError as e:
        print(handle_error(e))
"""

from __future__ import annotations

from typing import Optional

from rulecraft.errors.user_messages import (
    format_error_for_cli,
    format_error_for_ui,
    format_error_for_user,
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class RulecraftError(Exception):
    """Base exception for all Rulecraft errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        recoverable: Whether retrying (possibly after a delay) can succeed
        details: Additional error details for debugging
    """

    code: str = "RULECRAFT_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = False

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
# Credential Errors
# =============================================================================


class CredentialError(RulecraftError):
    """Base error for credential lookups and token handling."""

    code = "CREDENTIAL_ERROR"
    default_message = "Credential operation failed"


class CredentialNotFoundError(CredentialError):
    """No credential record exists for the (user, provider) pair."""

    code = "CREDENTIAL_NOT_FOUND"
    default_message = "No credentials stored for this provider"

    def __init__(
        self,
        user_id: str,
        provider: str,
        *,
        message: str | None = None,
    ) -> None:
        self.user_id = user_id
        self.provider = provider
        super().__init__(
            message or f"No {provider} credentials stored for user {user_id}",
            details={"user_id": user_id, "provider": provider},
        )


class TokenExpiredOrRevokedError(CredentialError):
    """Provider rejected a stored token as expired or revoked."""

    code = "TOKEN_EXPIRED_OR_REVOKED"
    default_message = (
        "The access token has expired or been revoked. Please reconnect your account."
    )


class AppNotInstalledError(CredentialError):
    """Migration requested but the app is not installed for the user."""

    code = "APP_NOT_INSTALLED"
    default_message = (
        "The GitHub App is not installed for this user. Please install the GitHub App first."
    )


class OAuthExchangeError(CredentialError):
    """Authorization code could not be exchanged for a token."""

    code = "OAUTH_EXCHANGE_ERROR"
    default_message = "Failed to exchange the authorization code"


class OAuthStateError(CredentialError):
    """OAuth state parameter is missing, malformed or expired."""

    code = "OAUTH_STATE_ERROR"
    default_message = "OAuth state is invalid or expired. Please try again."


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(RulecraftError):
    """Base error for calls to the hosting provider."""

    code = "PROVIDER_ERROR"
    default_message = "Hosting provider request failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: Optional[int] = None,
        details: dict | None = None,
    ) -> None:
        self.status_code = status_code
        details = dict(details or {})
        if status_code is not None:
            details.setdefault("status_code", status_code)
        super().__init__(message, details=details)


class RateLimitedError(ProviderError):
    """Provider signalled quota exhaustion."""

    code = "RATE_LIMITED"
    default_message = "GitHub API rate limit exceeded. Please try again later."
    recoverable = True

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after_seconds: Optional[int] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            message,
            status_code=status_code,
            details={"retry_after_seconds": retry_after_seconds},
        )


class ProviderUnavailableError(ProviderError):
    """Network failure, timeout or non-auth 5xx from the provider."""

    code = "PROVIDER_UNAVAILABLE"
    default_message = "GitHub is currently unreachable"
    recoverable = True


class ProviderForbiddenError(ProviderError):
    """Provider refused access for a reason other than rate limiting."""

    code = "PROVIDER_FORBIDDEN"
    default_message = (
        "GitHub API access forbidden. Please check your permissions and try reconnecting."
    )


class ResourceNotFoundError(ProviderError):
    """Repository, branch or path does not exist or is not visible."""

    code = "RESOURCE_NOT_FOUND"
    default_message = "Repository not found or access denied"


class CredentialStoreError(ProviderUnavailableError):
    """Backing store for credential records failed."""

    code = "CREDENTIAL_STORE_ERROR"
    default_message = "Credential storage is unavailable"


# =============================================================================
# Installation Issuer Errors
# =============================================================================


class IssuerError(RulecraftError):
    """Base error for installation token issuance."""

    code = "ISSUER_ERROR"
    default_message = "Installation token request failed"


class IssuerNotConfiguredError(IssuerError):
    """GitHub App credentials are absent."""

    code = "ISSUER_NOT_CONFIGURED"
    default_message = (
        "GitHub App not configured. Please set the GitHub App ID and private key."
    )


class IssuerRejectedError(IssuerError):
    """Provider refused to mint a token (installation removed, permissions revoked)."""

    code = "ISSUER_REJECTED"
    default_message = "GitHub refused to issue an installation token"


class IssuerUnavailableError(IssuerError):
    """Issuer endpoint timed out or failed transiently."""

    code = "ISSUER_UNAVAILABLE"
    default_message = "GitHub App authentication is temporarily unavailable"
    recoverable = True


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(RulecraftError):
    """Base error for configuration issues."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"


class InvalidConfigError(ConfigurationError):
    """Configuration is invalid."""

    code = "INVALID_CONFIG"
    default_message = "Invalid configuration"


class MissingConfigError(ConfigurationError):
    """Required configuration is missing."""

    code = "MISSING_CONFIG"
    default_message = "Missing required configuration"


# =============================================================================
# Error Handler
# =============================================================================


def handle_error(error: Exception) -> str:
    """Handle an error and return a user-friendly message.

    Args:
        error: The exception to handle

    Returns:
        User-friendly error message with recovery suggestion
    """
    return format_error_for_user(error)


def is_recoverable(error: Exception) -> bool:
    """Check if an error is potentially recoverable.

    Args:
        error: The exception to check

    Returns:
        True if the error is recoverable
    """
    if isinstance(error, RulecraftError):
        return error.recoverable
    return False


__all__ = [
    # Base
    "RulecraftError",
    # Credentials
    "CredentialError",
    "CredentialNotFoundError",
    "TokenExpiredOrRevokedError",
    "AppNotInstalledError",
    "OAuthExchangeError",
    "OAuthStateError",
    # Provider
    "ProviderError",
    "RateLimitedError",
    "ProviderUnavailableError",
    "ProviderForbiddenError",
    "ResourceNotFoundError",
    "CredentialStoreError",
    # Issuer
    "IssuerError",
    "IssuerNotConfiguredError",
    "IssuerRejectedError",
    "IssuerUnavailableError",
    # Configuration
    "ConfigurationError",
    "InvalidConfigError",
    "MissingConfigError",
    # Handlers
    "format_error_for_cli",
    "format_error_for_ui",
    "handle_error",
    "is_recoverable",
]
