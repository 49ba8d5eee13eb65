"""GitHub source-hosting integration for Rulecraft.

This package stores per-user GitHub credentials, mints and refreshes GitHub
App installation tokens, migrates OAuth-connected users onto installation
tokens, and reads repositories (listings, file trees, file contents) on their
behalf.
"""

from .api_client import (
    GitHubAPIClient,
    GitHubUser,
    RepositoryInfo,
    RepositoryLink,
    create_api_client,
    raise_for_github_status,
)
from .credentials import (
    DEFAULT_PROVIDER,
    AuthKind,
    CredentialRecord,
    CredentialStore,
    DelegatedCredential,
    InMemoryCredentialStore,
    InstallationCredential,
    JsonFileCredentialStore,
    KeyringCredentialStore,
    parse_credential_record,
)
from .installation_issuer import (
    InstallationAccount,
    InstallationDetails,
    InstallationTokenIssuer,
    MintedToken,
)
from .integration_service import (
    GitHubIntegrationService,
    IntegrationStatus,
    build_credential_store,
    split_full_name,
)
from .oauth_flow import GitHubOAuthWebFlow, OAuthExchangeResult, OAuthState, parse_scopes
from .token_lifecycle import TokenLifecycleManager

__all__ = [
    "AuthKind",
    "CredentialRecord",
    "CredentialStore",
    "DEFAULT_PROVIDER",
    "DelegatedCredential",
    "GitHubAPIClient",
    "GitHubIntegrationService",
    "GitHubOAuthWebFlow",
    "GitHubUser",
    "InMemoryCredentialStore",
    "InstallationAccount",
    "InstallationCredential",
    "InstallationDetails",
    "InstallationTokenIssuer",
    "IntegrationStatus",
    "JsonFileCredentialStore",
    "KeyringCredentialStore",
    "MintedToken",
    "OAuthExchangeResult",
    "OAuthState",
    "RepositoryInfo",
    "RepositoryLink",
    "TokenLifecycleManager",
    "build_credential_store",
    "create_api_client",
    "parse_credential_record",
    "parse_scopes",
    "raise_for_github_status",
    "split_full_name",
]
