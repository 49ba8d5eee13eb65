"""Request-level orchestration of the GitHub integration.

Every repository read first asks the token lifecycle manager for a usable
token, hands it to a fresh API client, and normalizes the response into the
tree shapes the UI renders.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, ContextManager, Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field

from ...audit import AuditLogger, emit_credential_event
from ...configuration.settings import Settings
from ...errors import CredentialNotFoundError
from ...trees.file_tree import TreeNode, build_file_tree
from ...trees.rule_tree import RuleRow, project_rules_tree
from .api_client import (
    GitHubAPIClient,
    RepositoryInfo,
    RepositoryLink,
    create_api_client,
)
from .credentials import (
    DEFAULT_PROVIDER,
    AuthKind,
    CredentialStore,
    DelegatedCredential,
    InMemoryCredentialStore,
    InstallationCredential,
    JsonFileCredentialStore,
    KeyringCredentialStore,
)
from .installation_issuer import InstallationDetails, InstallationTokenIssuer
from .oauth_flow import GitHubOAuthWebFlow
from .token_lifecycle import TokenLifecycleManager

logger = logging.getLogger(__name__)


class IntegrationStatus(BaseModel):
    """Connection summary safe to show in the UI (no token material)."""

    connected: bool
    provider: str = DEFAULT_PROVIDER
    username: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    auth_kind: Optional[AuthKind] = None
    installation_id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class GitHubIntegrationService:
    store: CredentialStore
    lifecycle: TokenLifecycleManager
    oauth_flow: GitHubOAuthWebFlow
    client_factory: Callable[[str], GitHubAPIClient] = create_api_client
    audit_logger: Optional[AuditLogger] = None
    provider: str = DEFAULT_PROVIDER

    @classmethod
    def from_settings(
        cls, settings: Settings, *, audit_logger: Optional[AuditLogger] = None
    ) -> "GitHubIntegrationService":
        """Wire the store, issuer, lifecycle manager and OAuth flow from settings."""
        store = build_credential_store(settings)
        github = settings.github
        issuer = InstallationTokenIssuer(
            app_settings=github.app,
            api_base_url=github.api_base_url,
            timeout=float(github.request_timeout_seconds),
        )
        lifecycle = TokenLifecycleManager(
            store=store,
            issuer=issuer,
            refresh_buffer=timedelta(seconds=github.refresh_buffer_seconds),
            fail_fast_on_refresh_error=github.fail_fast_on_refresh_error,
            audit_logger=audit_logger,
        )
        return cls(
            store=store,
            lifecycle=lifecycle,
            oauth_flow=GitHubOAuthWebFlow(settings=github.oauth),
            client_factory=lambda token: create_api_client(token, github),
            audit_logger=audit_logger,
        )

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def complete_oauth_callback(self, code: str, state: str) -> DelegatedCredential:
        """Finish the OAuth web flow and store the delegated token.

        Reconnecting replaces whatever was stored before, including an
        installation-kind record.
        """
        decoded = self.oauth_flow.decode_state(state)
        user_id = decoded.user_id

        result = self.oauth_flow.exchange_code(code)
        with self._api_client(result.access_token) as client:
            github_user = client.get_authenticated_user()

        token_expires_at = None
        if result.expires_in:
            token_expires_at = datetime.now(timezone.utc) + timedelta(
                seconds=result.expires_in
            )

        existed = self._exists(user_id)
        record = self.store.upsert(
            user_id,
            self.provider,
            {
                "auth_kind": AuthKind.DELEGATED.value,
                "access_token": result.access_token,
                "refresh_token": result.refresh_token,
                "token_expires_at": token_expires_at,
                "scopes": result.scopes,
                "provider_user_id": str(github_user.id),
                "provider_username": github_user.login,
            },
        )

        emit_credential_event(
            self.audit_logger,
            action="credential_update" if existed else "credential_create",
            status="success",
            user_id=user_id,
            provider=self.provider,
            metadata={"scopes": result.scopes},
        )
        logger.info(f"Connected GitHub account {github_user.login}")
        return record

    def get_status(self, user_id: str) -> IntegrationStatus:
        try:
            record = self.store.get(user_id, self.provider)
        except CredentialNotFoundError:
            return IntegrationStatus(connected=False, provider=self.provider)

        return IntegrationStatus(
            connected=True,
            provider=self.provider,
            username=record.provider_username,
            scopes=list(record.scopes),
            auth_kind=AuthKind(record.auth_kind),
            installation_id=(
                record.installation_id
                if isinstance(record, InstallationCredential)
                else None
            ),
            created_at=record.created_at,
        )

    def disconnect(self, user_id: str) -> None:
        """Forget the stored credential.

        Raises:
            CredentialNotFoundError: Nothing was connected
        """
        if not self.store.delete(user_id, self.provider):
            raise CredentialNotFoundError(user_id, self.provider)

        emit_credential_event(
            self.audit_logger,
            action="credential_delete",
            status="success",
            user_id=user_id,
            provider=self.provider,
        )
        logger.info("Disconnected GitHub integration")

    def migrate_to_installation(
        self, user_id: str, *, operator: Optional[str] = None
    ) -> InstallationCredential:
        return self.lifecycle.migrate_to_installation(
            user_id, self.provider, operator=operator
        )

    def get_installation_details(self, user_id: str) -> Optional[InstallationDetails]:
        """Describe the App installation behind the user's credential.

        Returns ``None`` while the user is still on a delegated token.
        """
        record = self.store.get(user_id, self.provider)
        if not isinstance(record, InstallationCredential):
            return None
        return self.lifecycle.issuer.get_installation_details(record.installation_id)

    # ------------------------------------------------------------------
    # Repository views
    # ------------------------------------------------------------------

    def list_repositories(
        self, user_id: str, page: int = 1, per_page: int = 30
    ) -> List[RepositoryInfo]:
        with self._client(user_id) as client:
            return client.list_repositories(page=page, per_page=per_page)

    def get_repository_link(self, user_id: str, full_name: str) -> RepositoryLink:
        owner, repo = split_full_name(full_name)
        with self._client(user_id) as client:
            info = client.get_repository(owner, repo)
        return RepositoryLink(
            full_name=info.full_name,
            default_branch=info.default_branch,
            credential_record_ref=(user_id, self.provider),
        )

    def get_file_tree(
        self, user_id: str, full_name: str, branch: Optional[str] = None
    ) -> List[TreeNode]:
        owner, repo = split_full_name(full_name)
        with self._client(user_id) as client:
            entries = client.get_file_tree_entries(owner, repo, branch)
        return build_file_tree(entries)

    def get_file_content(
        self, user_id: str, full_name: str, path: str, ref: Optional[str] = None
    ) -> str:
        owner, repo = split_full_name(full_name)
        with self._client(user_id) as client:
            return client.get_file_content(owner, repo, path, ref)

    def get_rules_tree(self, rows: Iterable[RuleRow]) -> TreeNode:
        return project_rules_tree(row for row in rows if row.deleted_at is None)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self, user_id: str) -> ContextManager[GitHubAPIClient]:
        token = self.lifecycle.get_valid_access_token(user_id, self.provider)
        return self._api_client(token)

    @contextmanager
    def _api_client(self, token: str) -> Iterator[GitHubAPIClient]:
        client = self.client_factory(token)
        try:
            yield client
        finally:
            client.close()

    def _exists(self, user_id: str) -> bool:
        try:
            self.store.get(user_id, self.provider)
        except CredentialNotFoundError:
            return False
        return True


def split_full_name(full_name: str) -> Tuple[str, str]:
    """Split ``owner/repo``; raises ``ValueError`` for anything else."""
    owner, sep, repo = full_name.strip().partition("/")
    if not sep or not owner or not repo or "/" in repo:
        raise ValueError(f"Repository must be in 'owner/repo' format, got {full_name!r}")
    return owner, repo


def build_credential_store(settings: Settings) -> CredentialStore:
    storage = settings.storage
    if storage.backend == "memory":
        return InMemoryCredentialStore()
    if storage.backend == "keyring":
        return KeyringCredentialStore(
            lock_dir=storage.credentials_path.parent / "locks"
        )
    return JsonFileCredentialStore(path=storage.credentials_path)


__all__ = [
    "GitHubIntegrationService",
    "IntegrationStatus",
    "build_credential_store",
    "split_full_name",
]
