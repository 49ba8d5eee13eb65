"""GitHub App authentication: installation tokens and installation lookup.

Installation tokens are minted with the App's private key (GitHubKit signs the
App JWT for us) and live for about an hour. They are not tied to a user's OAuth
grant, so they keep working after the user revokes the OAuth App, as long as
the App stays installed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from githubkit import AppAuthStrategy, GitHub, TokenAuthStrategy
from githubkit.exception import (
    RateLimitExceeded,
    RequestError,
    RequestFailed,
    RequestTimeout,
)
from pydantic import BaseModel, Field

from ...configuration.settings import GitHubAppSettings
from ...errors import (
    IssuerNotConfiguredError,
    IssuerRejectedError,
    IssuerUnavailableError,
    RateLimitedError,
    TokenExpiredOrRevokedError,
)

logger = logging.getLogger(__name__)

DEFAULT_INSTALLATION_TOKEN_LIFETIME = timedelta(hours=1)

_REJECTED_STATUSES = {401, 403, 404, 422}
_TRANSPORT_ERRORS = (RequestFailed, RequestTimeout, RequestError)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class MintedToken(BaseModel):
    """A freshly issued installation token."""

    token: str = Field(..., description="Installation access token")
    expires_at: datetime = Field(..., description="Provider-advertised expiry")
    installation_id: int = Field(..., description="Installation the token acts for")


class InstallationAccount(BaseModel):
    login: str = ""
    type: str = "Organization"
    id: int = 0


class InstallationDetails(BaseModel):
    """Summary of an App installation."""

    id: int
    account: InstallationAccount
    permissions: Dict[str, str] = Field(default_factory=dict)
    events: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------


@dataclass
class InstallationTokenIssuer:
    """Mints installation tokens and discovers installations for a user."""

    app_settings: GitHubAppSettings = field(default_factory=GitHubAppSettings)
    api_base_url: Optional[str] = None
    timeout: float = 15.0
    client_factory: Callable[..., Any] = GitHub
    _now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)

    def __post_init__(self) -> None:
        if not self.is_configured():
            logger.warning(
                "GitHub App credentials not configured. "
                "Installation token generation will not be available."
            )

    def is_configured(self) -> bool:
        return self.app_settings.is_configured

    def mint_installation_token(self, installation_id: int) -> MintedToken:
        """Create an installation access token.

        Raises:
            IssuerNotConfiguredError: App id or private key missing
            IssuerRejectedError: Installation removed or permissions revoked
            RateLimitedError: GitHub rate limit hit, with the advertised backoff
            IssuerUnavailableError: Timeout, network failure or provider 5xx
        """
        client = self._app_client()

        try:
            response = client.rest.apps.create_installation_access_token(installation_id)
        except _TRANSPORT_ERRORS as exc:
            raise self._classify(exc, f"installation {installation_id}") from exc

        data = response.parsed_data
        expires_at = _as_utc(getattr(data, "expires_at", None)) or (
            self._now() + DEFAULT_INSTALLATION_TOKEN_LIFETIME
        )

        logger.info(f"Generated installation token for installation {installation_id}")
        return MintedToken(
            token=data.token, expires_at=expires_at, installation_id=installation_id
        )

    def find_installation_for_delegated_token(self, delegated_token: str) -> Optional[int]:
        """Return this App's installation id visible to the user's token.

        Zero installations, or none belonging to this App, yield ``None``.

        Raises:
            TokenExpiredOrRevokedError: The delegated token was rejected
            RateLimitedError: GitHub rate limit hit, with the advertised backoff
            IssuerUnavailableError: Timeout, network failure or provider 5xx
        """
        client = self.client_factory(
            TokenAuthStrategy(delegated_token), **self._client_config()
        )

        try:
            response = client.rest.apps.list_installations_for_authenticated_user()
        except RequestFailed as exc:
            if exc.response.status_code == 401:
                raise TokenExpiredOrRevokedError(
                    "GitHub rejected the user token while listing installations"
                ) from exc
            raise self._classify(exc, "installation lookup") from exc
        except (RequestTimeout, RequestError) as exc:
            raise self._classify(exc, "installation lookup") from exc

        installations = getattr(response.parsed_data, "installations", None) or []
        app_id = self._app_id()
        for installation in installations:
            if getattr(installation, "app_id", None) == app_id:
                return int(installation.id)

        logger.info(
            f"No installation of app {app_id} among {len(installations)} visible installations"
        )
        return None

    def get_installation_details(self, installation_id: int) -> InstallationDetails:
        client = self._app_client()

        try:
            response = client.rest.apps.get_installation(installation_id)
        except _TRANSPORT_ERRORS as exc:
            raise self._classify(exc, f"installation {installation_id}") from exc

        data = response.parsed_data
        account = getattr(data, "account", None)
        permissions = getattr(data, "permissions", None)
        if hasattr(permissions, "model_dump"):
            permissions = permissions.model_dump(exclude_none=True)

        return InstallationDetails(
            id=data.id,
            account=InstallationAccount(
                login=getattr(account, "login", None) or getattr(account, "name", None) or "",
                type=getattr(account, "type", None) or "Organization",
                id=getattr(account, "id", None) or 0,
            ),
            permissions={k: str(v) for k, v in (permissions or {}).items()},
            events=list(getattr(data, "events", None) or []),
            created_at=_as_utc(getattr(data, "created_at", None)),
            updated_at=_as_utc(getattr(data, "updated_at", None)),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _app_client(self) -> Any:
        if not self.is_configured():
            raise IssuerNotConfiguredError()
        private_key = self.app_settings.private_key.get_secret_value()
        return self.client_factory(
            AppAuthStrategy(self.app_settings.app_id, private_key),
            **self._client_config(),
        )

    def _client_config(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {"timeout": self.timeout, "auto_retry": False}
        if self.api_base_url:
            config["base_url"] = self.api_base_url
        return config

    def _app_id(self) -> Optional[int]:
        try:
            return int(self.app_settings.app_id)
        except (TypeError, ValueError):
            return None

    def _classify(self, exc: Exception, context: str) -> Exception:
        if isinstance(exc, RequestTimeout):
            logger.warning(f"Timed out contacting GitHub for {context}")
            return IssuerUnavailableError(f"Timed out contacting GitHub for {context}")
        if isinstance(exc, RateLimitExceeded):
            # Primary and secondary limits arrive as 403 as well as 429.
            retry_after = getattr(exc, "retry_after", None)
            retry_after_seconds = (
                int(retry_after.total_seconds()) if retry_after is not None else None
            )
            logger.warning(f"GitHub rate limit hit during {context}")
            return RateLimitedError(
                f"Rate limited during {context}",
                retry_after_seconds=retry_after_seconds,
                status_code=exc.response.status_code,
            )
        if isinstance(exc, RequestFailed):
            status = exc.response.status_code
            if status == 429:
                return RateLimitedError(
                    f"Rate limited during {context}",
                    retry_after_seconds=_retry_after_header(exc.response),
                    status_code=status,
                )
            if status in _REJECTED_STATUSES:
                logger.error(f"GitHub rejected token request for {context}: {status}")
                return IssuerRejectedError(
                    f"GitHub rejected token request for {context} ({status})",
                    details={"status_code": status},
                )
            return IssuerUnavailableError(
                f"GitHub returned {status} for {context}",
                details={"status_code": status},
            )
        return IssuerUnavailableError(f"Network error during {context}: {exc}")


def _retry_after_header(response: Any) -> Optional[int]:
    headers = getattr(response, "headers", None) or {}
    value = headers.get("retry-after") or headers.get("Retry-After")
    if value is not None and str(value).isdigit():
        return int(value)
    return None


def _as_utc(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


__all__ = [
    "DEFAULT_INSTALLATION_TOKEN_LIFETIME",
    "InstallationAccount",
    "InstallationDetails",
    "InstallationTokenIssuer",
    "MintedToken",
]
