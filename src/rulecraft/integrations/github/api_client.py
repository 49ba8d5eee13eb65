"""GitHub REST client for the repository views.

Thin request/response mapping over ``requests``: list and fetch repositories,
read the recursive file listing and raw file contents. The only logic here is
status-code classification into the error kinds callers branch on. Nothing is
retried; retry policy belongs to the caller.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests
from pydantic import BaseModel, Field

from ...configuration.settings import GitHubSettings
from ...errors import (
    ProviderError,
    ProviderForbiddenError,
    ProviderUnavailableError,
    RateLimitedError,
    ResourceNotFoundError,
    TokenExpiredOrRevokedError,
)
from ...trees.file_tree import FlatTreeEntry

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.github.com"
DEFAULT_API_VERSION = "2022-11-28"
JSON_MEDIA_TYPE = "application/vnd.github+json"
RAW_MEDIA_TYPE = "application/vnd.github.raw+json"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class RepositoryInfo(BaseModel):
    """GitHub repository metadata."""

    id: int = Field(..., description="Provider repository id")
    owner: str = Field(..., description="Repository owner login")
    name: str = Field(..., description="Repository name")
    full_name: str = Field(..., description="Full repository name (owner/repo)")
    description: Optional[str] = Field(default=None)
    private: bool = Field(default=False)
    default_branch: str = Field(default="main")
    html_url: Optional[str] = Field(default=None)
    language: Optional[str] = Field(default=None)
    fork: bool = Field(default=False)
    archived: bool = Field(default=False)
    updated_at: Optional[datetime] = Field(default=None)
    pushed_at: Optional[datetime] = Field(default=None)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RepositoryInfo":
        owner = (data.get("owner") or {}).get("login") or data["full_name"].split("/")[0]
        return cls(
            id=data["id"],
            owner=owner,
            name=data["name"],
            full_name=data["full_name"],
            description=data.get("description"),
            private=data.get("private", False),
            default_branch=data.get("default_branch") or "main",
            html_url=data.get("html_url"),
            language=data.get("language"),
            fork=data.get("fork", False),
            archived=data.get("archived", False),
            updated_at=data.get("updated_at"),
            pushed_at=data.get("pushed_at"),
        )


class GitHubUser(BaseModel):
    """The principal a token acts for."""

    id: int
    login: str
    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None


class RepositoryLink(BaseModel):
    """A connected repository and the credential record used to reach it."""

    model_config = {"frozen": True}

    full_name: str = Field(..., description="owner/name")
    default_branch: str
    credential_record_ref: Tuple[str, str] = Field(
        ..., description="(user_id, provider) key of the credential record"
    )

    @property
    def owner(self) -> str:
        return self.full_name.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.full_name.split("/", 1)[1]


# ---------------------------------------------------------------------------
# GitHub API Client
# ---------------------------------------------------------------------------


@dataclass
class GitHubAPIClient:
    """REST client bound to a single access token."""

    token: str
    api_base_url: str = DEFAULT_API_BASE_URL
    api_version: str = DEFAULT_API_VERSION
    timeout: int = 30

    def __post_init__(self) -> None:
        self.api_base_url = self.api_base_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {self.token}",
                "Accept": JSON_MEDIA_TYPE,
                "X-GitHub-Api-Version": self.api_version,
                "User-Agent": "Rulecraft-GitHub-Integration",
            }
        )

    def close(self) -> None:
        self.session.close()

    def list_repositories(self, page: int = 1, per_page: int = 30) -> List[RepositoryInfo]:
        """Repositories the user owns or collaborates on, most recently updated first."""
        params = {
            "page": max(page, 1),
            "per_page": min(max(per_page, 1), 100),
            "sort": "updated",
            "affiliation": "owner,collaborator",
        }
        response = self._request("GET", "/user/repos", params=params)
        return [RepositoryInfo.from_api(item) for item in response.json()]

    def get_repository(self, owner: str, repo: str) -> RepositoryInfo:
        response = self._request("GET", f"/repos/{owner}/{repo}")
        return RepositoryInfo.from_api(response.json())

    def get_file_tree_entries(
        self, owner: str, repo: str, branch: Optional[str] = None
    ) -> List[FlatTreeEntry]:
        """Flat recursive listing of a branch (the default branch when omitted).

        Raises:
            ResourceNotFoundError: Repository or branch does not exist
        """
        if branch is None:
            branch = self.get_repository(owner, repo).default_branch

        response = self._request(
            "GET",
            f"/repos/{owner}/{repo}/git/trees/{quote(branch, safe='')}",
            params={"recursive": "1"},
        )
        data = response.json()
        if data.get("truncated"):
            logger.warning(
                f"Tree listing for {owner}/{repo}@{branch} was truncated by GitHub"
            )
        return [FlatTreeEntry.from_git_tree_item(item) for item in data.get("tree", [])]

    def get_file_content(
        self, owner: str, repo: str, path: str, ref: Optional[str] = None
    ) -> str:
        params = {"ref": ref} if ref else None
        response = self._request(
            "GET",
            f"/repos/{owner}/{repo}/contents/{quote(path.lstrip('/'))}",
            params=params,
            headers={"Accept": RAW_MEDIA_TYPE},
        )
        return response.text

    def get_authenticated_user(self) -> GitHubUser:
        response = self._request("GET", "/user")
        data = response.json()
        return GitHubUser(
            id=data["id"],
            login=data["login"],
            name=data.get("name"),
            email=data.get("email"),
            avatar_url=data.get("avatar_url"),
        )

    def validate_token(self) -> bool:
        """Whether GitHub still accepts the token.

        Only an authentication failure yields False; outages still raise.
        """
        try:
            self.get_authenticated_user()
        except TokenExpiredOrRevokedError:
            return False
        return True

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        url = f"{self.api_base_url}{path}"
        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise ProviderUnavailableError(f"GitHub request timed out: {method} {path}") from exc
        except requests.RequestException as exc:
            raise ProviderUnavailableError(f"GitHub request failed: {exc}") from exc

        raise_for_github_status(response)
        return response


# ---------------------------------------------------------------------------
# Status classification
# ---------------------------------------------------------------------------


def raise_for_github_status(response: requests.Response) -> None:
    """Map an error response onto the provider error kinds."""
    status = response.status_code
    if status < 400:
        return

    message = _error_message(response)

    if status in (403, 429) and _is_rate_limited(response, message):
        retry_after = _retry_after_seconds(response)
        logger.warning(f"GitHub rate limit hit; retry after {retry_after}s")
        raise RateLimitedError(
            f"GitHub API rate limit exceeded: {message}",
            retry_after_seconds=retry_after,
            status_code=status,
        )
    if status == 401:
        raise TokenExpiredOrRevokedError(
            "GitHub rejected the access token. It may be expired or revoked."
        )
    if status == 403:
        raise ProviderForbiddenError(
            f"GitHub API access forbidden: {message}", status_code=status
        )
    if status == 404:
        raise ResourceNotFoundError(
            f"Repository not found or access denied: {message}", status_code=status
        )
    if status >= 500:
        raise ProviderUnavailableError(
            f"GitHub API error: {status} - {message}", status_code=status
        )
    raise ProviderError(f"GitHub API error: {status} - {message}", status_code=status)


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason or ""
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.reason or ""


def _is_rate_limited(response: requests.Response, message: str) -> bool:
    if response.status_code == 429:
        return True
    if response.headers.get("X-RateLimit-Remaining") == "0":
        return True
    if "Retry-After" in response.headers:
        return True
    return "rate limit" in message.lower()


def _retry_after_seconds(response: requests.Response) -> Optional[int]:
    retry_after = response.headers.get("Retry-After")
    if retry_after is not None and retry_after.isdigit():
        return int(retry_after)
    reset = response.headers.get("X-RateLimit-Reset")
    if reset is not None and reset.isdigit():
        return max(0, int(reset) - int(time.time()))
    return None


# ---------------------------------------------------------------------------
# Convenience functions
# ---------------------------------------------------------------------------


def create_api_client(
    token: str, settings: Optional[GitHubSettings] = None
) -> GitHubAPIClient:
    """Create a client for ``token`` using the configured endpoint and timeout."""
    settings = settings or GitHubSettings()
    return GitHubAPIClient(
        token=token,
        api_base_url=settings.api_base_url,
        api_version=settings.api_version,
        timeout=settings.request_timeout_seconds,
    )


__all__ = [
    "GitHubAPIClient",
    "GitHubUser",
    "RepositoryInfo",
    "RepositoryLink",
    "create_api_client",
    "raise_for_github_status",
]
