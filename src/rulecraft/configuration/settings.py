"""Typed settings management for the Rulecraft backend.

User configuration is wrapped in Pydantic models so CLI commands and services
can rely on validated settings. Secrets (GitHub App private key, OAuth client
secret) are held as ``SecretStr`` and masked whenever settings are written back
to disk.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from ..errors import InvalidConfigError


DEFAULT_CONFIG_PATH = Path.home() / ".rulecraft" / "config.json"
DEFAULT_CREDENTIALS_PATH = Path.home() / ".rulecraft" / "credentials" / "github.json"
DEFAULT_AUDIT_DIR = Path.home() / ".rulecraft" / "audit"


class GitHubAppSettings(BaseModel):
    """GitHub App credentials used to mint installation tokens."""

    app_id: str = Field(default="", description="GitHub App identifier")
    private_key: Optional[SecretStr] = Field(
        default=None, description="PEM encoded GitHub App private key"
    )

    @field_validator("private_key", mode="before")
    @classmethod
    def _normalize_private_key(cls, value: Any) -> Any:
        # Keys pasted into env files often carry literal "\n" sequences.
        if isinstance(value, str):
            return value.replace("\\n", "\n")
        return value

    @property
    def is_configured(self) -> bool:
        return bool(self.app_id) and self.private_key is not None and bool(
            self.private_key.get_secret_value()
        )


class GitHubOAuthSettings(BaseModel):
    """OAuth App configuration for the authorization-code flow."""

    client_id: str = Field(default="", description="OAuth App client ID")
    client_secret: Optional[SecretStr] = Field(
        default=None, description="OAuth App client secret"
    )
    redirect_uri: str = Field(
        default="http://localhost:4000/api/auth/github/callback",
        description="Callback URL registered with the OAuth App",
    )
    authorization_endpoint: str = Field(
        default="https://github.com/login/oauth/authorize"
    )
    token_endpoint: str = Field(default="https://github.com/login/oauth/access_token")
    scopes: List[str] = Field(
        default_factory=lambda: ["repo", "read:user", "user:email"],
        description="Scopes requested during authorization",
    )
    state_max_age_seconds: int = Field(300, ge=30, le=3600)


class GitHubSettings(BaseModel):
    """Settings for the GitHub integration layer."""

    api_base_url: str = Field(default="https://api.github.com")
    api_version: str = Field(default="2022-11-28")
    request_timeout_seconds: int = Field(30, ge=1, le=300)
    refresh_buffer_seconds: int = Field(
        300, ge=0, le=3600, description="Refresh installation tokens this early"
    )
    fail_fast_on_refresh_error: bool = Field(
        False,
        description="Raise issuer errors instead of returning the stale token",
    )
    app: GitHubAppSettings = Field(default_factory=GitHubAppSettings)
    oauth: GitHubOAuthSettings = Field(default_factory=GitHubOAuthSettings)


class StorageSettings(BaseModel):
    """Where credential records and audit logs live."""

    backend: str = Field(default="file", description="file, keyring or memory")
    credentials_path: Path = Field(default=DEFAULT_CREDENTIALS_PATH)
    audit_dir: Path = Field(default=DEFAULT_AUDIT_DIR)

    @field_validator("backend")
    @classmethod
    def _validate_backend(cls, value: str) -> str:
        if value not in {"file", "keyring", "memory"}:
            raise ValueError("backend must be one of: file, keyring, memory")
        return value


class Settings(BaseModel):
    """Root configuration state."""

    github: GitHubSettings = Field(default_factory=GitHubSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


def load_settings(path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from disk or raise if invalid."""

    if not path.exists():
        raise FileNotFoundError(f"Settings file not found at {path}")
    payload = json.loads(path.read_text())
    try:
        return Settings.model_validate(payload)
    except ValidationError as exc:
        raise InvalidConfigError(f"Invalid configuration: {exc}") from exc


def save_settings(settings: Settings, path: Path = DEFAULT_CONFIG_PATH) -> None:
    """Persist settings to disk with masked secrets."""

    payload = settings.model_dump(mode="json")
    payload = _mask_secret_fields(payload)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2))


def bootstrap_settings(
    *,
    path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Load settings (or defaults when no file exists) and apply overrides.

    Precedence, lowest first: file, explicit ``overrides``, ``RULECRAFT_*``
    environment variables. Nothing is written back, so secrets supplied via
    the environment never reach disk.
    """

    overrides = overrides or {}

    if path is not None and path.exists():
        settings = load_settings(path)
    else:
        settings = Settings()

    merged = settings.model_dump(mode="python")
    _unwrap_secrets(merged)
    merged = _apply_overrides(merged, overrides)
    merged = _apply_env_overrides(merged)

    try:
        return Settings.model_validate(merged)
    except ValidationError as exc:
        raise InvalidConfigError(f"Invalid configuration: {exc}") from exc


def _apply_overrides(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = base.copy()
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _apply_overrides(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    github = data.setdefault("github", {})
    _set_env_override(github, "api_base_url", "RULECRAFT_GITHUB_API_BASE_URL")
    _set_env_override(
        github, "refresh_buffer_seconds", "RULECRAFT_REFRESH_BUFFER_SECONDS", cast_int=True
    )
    _set_env_override(
        github,
        "fail_fast_on_refresh_error",
        "RULECRAFT_FAIL_FAST_ON_REFRESH_ERROR",
        cast_bool=True,
    )

    app = github.setdefault("app", {})
    _set_env_override(app, "app_id", "RULECRAFT_GITHUB_APP_ID")
    _set_env_override(app, "private_key", "RULECRAFT_GITHUB_APP_PRIVATE_KEY")
    encoded_key = os.getenv("RULECRAFT_GITHUB_APP_PRIVATE_KEY_BASE64")
    if encoded_key:
        app["private_key"] = _decode_base64_key(encoded_key)

    oauth = github.setdefault("oauth", {})
    _set_env_override(oauth, "client_id", "RULECRAFT_GITHUB_CLIENT_ID")
    _set_env_override(oauth, "client_secret", "RULECRAFT_GITHUB_CLIENT_SECRET")
    _set_env_override(oauth, "redirect_uri", "RULECRAFT_GITHUB_REDIRECT_URI")

    storage = data.setdefault("storage", {})
    _set_env_override(storage, "backend", "RULECRAFT_CREDENTIALS_BACKEND")
    _set_env_override(storage, "credentials_path", "RULECRAFT_CREDENTIALS_PATH")
    _set_env_override(storage, "audit_dir", "RULECRAFT_AUDIT_DIR")
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    *,
    cast_bool: bool = False,
    cast_int: bool = False,
) -> None:
    raw = os.getenv(env_name)
    if raw is None:
        return
    if cast_bool:
        mapping[key] = raw.lower() in {"1", "true", "yes"}
    elif cast_int:
        try:
            mapping[key] = int(raw)
        except ValueError as exc:
            raise InvalidConfigError(f"{env_name} must be an integer, got {raw!r}") from exc
    else:
        mapping[key] = raw


def _decode_base64_key(encoded: str) -> str:
    try:
        return base64.b64decode(encoded).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise InvalidConfigError(
            "RULECRAFT_GITHUB_APP_PRIVATE_KEY_BASE64 is not valid base64"
        ) from exc


def _unwrap_secrets(payload: Dict[str, Any]) -> None:
    github = payload.get("github", {})
    for section, key in (("app", "private_key"), ("oauth", "client_secret")):
        value = github.get(section, {}).get(key)
        if isinstance(value, SecretStr):
            github[section][key] = value.get_secret_value()


def _mask_secret_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    github = payload.get("github", {})
    if github.get("app", {}).get("private_key"):
        github["app"]["private_key"] = None
    if github.get("oauth", {}).get("client_secret"):
        github["oauth"]["client_secret"] = None
    return payload
