"""OAuth web (authorization-code) flow for connecting a GitHub account.

The browser is sent to GitHub's authorize page with a ``state`` parameter that
carries the requesting user id and a timestamp. GitHub redirects back with a
one-time ``code``; the callback decodes ``state`` to recover the user and
exchanges the code for a delegated access token.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlencode

import requests
from pydantic import BaseModel, Field

from ...configuration.settings import GitHubOAuthSettings
from ...errors import (
    MissingConfigError,
    OAuthExchangeError,
    OAuthStateError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class OAuthState(BaseModel):
    """Decoded ``state`` parameter."""

    user_id: str
    issued_at: datetime


class OAuthExchangeResult(BaseModel):
    """Token material returned by the code exchange."""

    access_token: str = Field(..., description="Delegated access token")
    refresh_token: Optional[str] = Field(default=None)
    expires_in: Optional[int] = Field(default=None, description="Lifetime in seconds")
    token_type: str = Field(default="bearer")
    scopes: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# GitHub OAuth Web Flow
# ---------------------------------------------------------------------------


@dataclass
class GitHubOAuthWebFlow:
    """Builds authorize URLs and completes the code exchange."""

    settings: GitHubOAuthSettings = field(default_factory=GitHubOAuthSettings)
    timeout: int = 15
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)

    def build_authorize_url(self, user_id: str) -> Tuple[str, str]:
        """Return ``(url, state)`` for redirecting ``user_id`` to GitHub.

        Raises:
            MissingConfigError: No OAuth client id configured
        """
        if not self.settings.client_id:
            raise MissingConfigError("GitHub OAuth client ID not configured")

        state = self.encode_state(user_id)
        query = urlencode(
            {
                "client_id": self.settings.client_id,
                "redirect_uri": self.settings.redirect_uri,
                "scope": ",".join(self.settings.scopes),
                "state": state,
            }
        )
        return f"{self.settings.authorization_endpoint}?{query}", state

    def encode_state(self, user_id: str) -> str:
        payload = {
            "userId": user_id,
            "timestamp": int(self.clock().timestamp() * 1000),
        }
        raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii")

    def decode_state(self, state: str) -> OAuthState:
        """Recover the user from ``state``.

        Raises:
            OAuthStateError: Missing, malformed or older than the allowed age
        """
        if not state:
            raise OAuthStateError("State parameter is missing")

        try:
            padded = state + "=" * (-len(state) % 4)
            payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
            user_id = str(payload["userId"])
            issued_at = datetime.fromtimestamp(
                int(payload["timestamp"]) / 1000, tz=timezone.utc
            )
        except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as exc:
            raise OAuthStateError("State parameter is malformed") from exc

        max_age = timedelta(seconds=self.settings.state_max_age_seconds)
        if self.clock() - issued_at > max_age:
            raise OAuthStateError("OAuth state expired. Please try again.")

        return OAuthState(user_id=user_id, issued_at=issued_at)

    def exchange_code(self, code: str) -> OAuthExchangeResult:
        """Exchange an authorization code for a delegated token.

        Raises:
            MissingConfigError: Client id or secret not configured
            OAuthExchangeError: GitHub refused the code
            ProviderUnavailableError: GitHub could not be reached
        """
        client_secret = (
            self.settings.client_secret.get_secret_value()
            if self.settings.client_secret
            else ""
        )
        if not self.settings.client_id or not client_secret:
            raise MissingConfigError("GitHub OAuth credentials not configured")

        try:
            response = requests.post(
                self.settings.token_endpoint,
                json={
                    "client_id": self.settings.client_id,
                    "client_secret": client_secret,
                    "code": code,
                    "redirect_uri": self.settings.redirect_uri,
                },
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProviderUnavailableError(f"GitHub OAuth request failed: {exc}") from exc

        if response.status_code != 200:
            raise OAuthExchangeError(
                f"GitHub OAuth error: {response.status_code} - {response.text}"
            )

        data = response.json()
        if "error" in data:
            raise OAuthExchangeError(
                f"GitHub OAuth error: {data.get('error_description') or data['error']}",
                details={"error": data["error"]},
            )
        if not data.get("access_token"):
            raise OAuthExchangeError("GitHub OAuth response did not include a token")

        logger.info("Exchanged OAuth code for a delegated GitHub token")
        return OAuthExchangeResult(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            token_type=data.get("token_type", "bearer"),
            scopes=parse_scopes(data.get("scope", "")),
        )


def parse_scopes(scope: str) -> List[str]:
    """GitHub reports granted scopes comma separated; tolerate spaces too."""
    return [item for item in re.split(r"[,\s]+", scope or "") if item]


__all__ = [
    "GitHubOAuthWebFlow",
    "OAuthExchangeResult",
    "OAuthState",
    "parse_scopes",
]
