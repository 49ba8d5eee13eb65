"""Choose, refresh and migrate the access token used for GitHub API calls.

Delegated (OAuth) tokens are returned untouched: if GitHub has expired or
revoked one, the 401 surfaces from the API client as
``TokenExpiredOrRevokedError`` so the user can re-authorize.

Installation tokens are re-minted once fewer than ``refresh_buffer`` remain
before expiry, so no caller receives a token that can lapse mid-request. The
refresh runs under the store's per-record lock and re-reads the record inside
it; a request that lost the race reuses the token its peer just minted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from ...audit import AuditLogger, emit_credential_event
from ...errors import (
    AppNotInstalledError,
    IssuerError,
    IssuerNotConfiguredError,
    RateLimitedError,
)
from .credentials import (
    DEFAULT_PROVIDER,
    AuthKind,
    CredentialStore,
    DelegatedCredential,
    InstallationCredential,
)
from .installation_issuer import InstallationTokenIssuer

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_BUFFER = timedelta(minutes=5)

AnyCredential = Union[DelegatedCredential, InstallationCredential]


@dataclass
class TokenLifecycleManager:
    """Returns a currently usable access token for a (user, provider)."""

    store: CredentialStore
    issuer: InstallationTokenIssuer
    refresh_buffer: timedelta = DEFAULT_REFRESH_BUFFER
    fail_fast_on_refresh_error: bool = False
    audit_logger: Optional[AuditLogger] = None
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_valid_access_token(
        self, user_id: str, provider: str = DEFAULT_PROVIDER
    ) -> str:
        """Return a token for API calls, refreshing installation tokens as needed.

        Raises:
            CredentialNotFoundError: Nothing stored for (user, provider)
            CredentialStoreError: The store could not be read or written
            IssuerError: Only when ``fail_fast_on_refresh_error`` is set
        """
        record = self.store.get(user_id, provider)
        return self.resolve_token(record)

    def resolve_token(self, record: AnyCredential) -> str:
        if isinstance(record, DelegatedCredential):
            return record.access_token

        if record.is_valid_at(self._utcnow(), self.refresh_buffer):
            return record.access_token

        return self._refresh_installation_token(record)

    def migrate_to_installation(
        self,
        user_id: str,
        provider: str = DEFAULT_PROVIDER,
        *,
        operator: Optional[str] = None,
    ) -> InstallationCredential:
        """Switch a delegated record to installation tokens in one write.

        Raises:
            IssuerNotConfiguredError: GitHub App credentials are absent
            AppNotInstalledError: No installation of the App for this user
            IssuerRejectedError / IssuerUnavailableError: Minting failed
        """
        if not self.issuer.is_configured():
            raise IssuerNotConfiguredError(
                "GitHub App not configured. Cannot migrate to installation tokens."
            )

        record = self.store.get(user_id, provider)
        if isinstance(record, InstallationCredential):
            logger.info("Credential already uses installation tokens; nothing to migrate")
            return record

        installation_id = self.issuer.find_installation_for_delegated_token(
            record.access_token
        )
        if installation_id is None:
            emit_credential_event(
                self.audit_logger,
                action="credential_migrate",
                status="app_not_installed",
                user_id=user_id,
                provider=provider,
                operator=operator,
            )
            raise AppNotInstalledError(details={"provider": provider})

        minted = self.issuer.mint_installation_token(installation_id)

        migrated = self.store.upsert(
            user_id,
            provider,
            {
                "auth_kind": AuthKind.INSTALLATION.value,
                "installation_id": installation_id,
                "access_token": minted.token,
                "installation_token_expires_at": minted.expires_at,
            },
        )

        emit_credential_event(
            self.audit_logger,
            action="credential_migrate",
            status="success",
            user_id=user_id,
            provider=provider,
            metadata={"installation_id": installation_id},
            operator=operator,
        )
        logger.info(f"Migrated credential to installation {installation_id}")
        return migrated

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _refresh_installation_token(self, record: InstallationCredential) -> str:
        user_id, provider = record.user_id, record.provider

        with self.store.lock(user_id, provider):
            current = self.store.get(user_id, provider)
            if not isinstance(current, InstallationCredential):
                return current.access_token
            if current.is_valid_at(self._utcnow(), self.refresh_buffer):
                logger.debug("Installation token refreshed by a concurrent request")
                return current.access_token

            logger.info(
                f"Installation token for installation {current.installation_id} "
                "expired or expiring, generating new one"
            )

            try:
                minted = self.issuer.mint_installation_token(current.installation_id)
            except (IssuerError, RateLimitedError) as exc:
                emit_credential_event(
                    self.audit_logger,
                    action="installation_token_refresh_failed",
                    status="failure",
                    user_id=user_id,
                    provider=provider,
                    metadata={"installation_id": current.installation_id, "error": exc.code},
                )
                if self.fail_fast_on_refresh_error:
                    raise
                logger.warning(
                    f"Failed to refresh installation token for installation "
                    f"{current.installation_id}: {exc}. Falling back to stored token."
                )
                return current.access_token

            self.store.upsert(
                user_id,
                provider,
                {
                    "access_token": minted.token,
                    "installation_token_expires_at": minted.expires_at,
                },
            )

        emit_credential_event(
            self.audit_logger,
            action="installation_token_refresh",
            status="success",
            user_id=user_id,
            provider=provider,
            metadata={"installation_id": current.installation_id},
        )
        return minted.token

    def _utcnow(self) -> datetime:
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now


__all__ = [
    "DEFAULT_REFRESH_BUFFER",
    "TokenLifecycleManager",
]
