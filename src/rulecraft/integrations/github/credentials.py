"""Credential records and durable storage for the GitHub integration.

A credential record is either a *delegated* token (long-lived, obtained through
the OAuth authorization-code flow, revocable by the user) or an *installation*
token (short-lived, minted on demand for a GitHub App installation). The two
variants are modelled as a discriminated union so that installation metadata
can never be attached to a delegated record and vice versa.

Stores keep exactly one record per ``(user_id, provider)`` pair and apply every
upsert as a single whole-record write under a per-record lock.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from hashlib import sha256
from pathlib import Path
from typing import Annotated, Any, Callable, Dict, Iterator, List, Literal, Optional, Union

from filelock import FileLock
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

try:
    import keyring  # type: ignore
except ModuleNotFoundError:
    keyring = None  # type: ignore

from ...errors import CredentialNotFoundError, CredentialStoreError

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "github"


# ---------------------------------------------------------------------------
# Models and enums
# ---------------------------------------------------------------------------


class AuthKind(str, Enum):
    """Which token branch applies to a credential record."""

    DELEGATED = "delegated"  # OAuth user-to-server token
    INSTALLATION = "installation"  # GitHub App installation token


class _CredentialBase(BaseModel):
    """Fields shared by both credential variants."""

    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(..., description="Owning user")
    provider: str = Field(default=DEFAULT_PROVIDER, description="Hosting provider")
    provider_user_id: Optional[str] = Field(
        default=None, description="User id at the provider"
    )
    provider_username: Optional[str] = Field(
        default=None, description="Login at the provider"
    )
    access_token: str = Field(..., description="Current bearer token")
    scopes: List[str] = Field(default_factory=list, description="Granted scopes")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = Field(default=0, ge=0, description="Incremented on every write")

    @field_validator("created_at", "updated_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class DelegatedCredential(_CredentialBase):
    """Long-lived OAuth token. Returned as-is; never silently refreshed."""

    auth_kind: Literal["delegated"] = "delegated"
    refresh_token: Optional[str] = Field(default=None)
    token_expires_at: Optional[datetime] = Field(default=None)

    @field_validator("token_expires_at")
    @classmethod
    def _ensure_expiry_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class InstallationCredential(_CredentialBase):
    """Short-lived GitHub App installation token."""

    auth_kind: Literal["installation"] = "installation"
    installation_id: int = Field(..., description="GitHub App installation id")
    installation_token_expires_at: datetime = Field(
        ..., description="Instant the current access token stops working"
    )

    @field_validator("installation_token_expires_at")
    @classmethod
    def _ensure_expiry_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def is_valid_at(self, now: datetime, buffer: timedelta) -> bool:
        """True while more than ``buffer`` remains before expiry."""
        return self.installation_token_expires_at - now > buffer


CredentialRecord = Annotated[
    Union[DelegatedCredential, InstallationCredential],
    Field(discriminator="auth_kind"),
]

_record_adapter: TypeAdapter = TypeAdapter(CredentialRecord)

_LEGACY_AUTH_KINDS = {"oauth": AuthKind.DELEGATED.value}


def parse_credential_record(
    payload: Dict[str, Any],
) -> Union[DelegatedCredential, InstallationCredential]:
    """Validate a stored payload into the matching credential variant.

    Payloads without ``auth_kind`` predate installation support and are
    treated as delegated.
    """
    data = dict(payload)
    kind = data.get("auth_kind") or AuthKind.DELEGATED.value
    if isinstance(kind, AuthKind):
        kind = kind.value
    data["auth_kind"] = _LEGACY_AUTH_KINDS.get(kind, kind)
    return _record_adapter.validate_python(data)


def record_key(user_id: str, provider: str) -> str:
    return f"{user_id}:{provider}"


def _parse_stored(
    payload: Any, user_id: str, provider: str
) -> Union[DelegatedCredential, InstallationCredential]:
    if not isinstance(payload, dict):
        raise CredentialStoreError(
            f"Stored {provider} credential for user {user_id} is not an object"
        )
    try:
        return parse_credential_record(payload)
    except ValidationError as exc:
        raise CredentialStoreError(
            f"Stored {provider} credential for user {user_id} is corrupt",
            details={"errors": exc.error_count()},
        ) from exc


# ---------------------------------------------------------------------------
# Store contract
# ---------------------------------------------------------------------------


class CredentialStore(ABC):
    """One credential record per (user, provider), last writer wins.

    Subclasses provide raw payload persistence and a per-record lock; the
    merge, validation and version bump live here so every backend applies
    an upsert as one whole-record write.
    """

    def get(
        self, user_id: str, provider: str = DEFAULT_PROVIDER
    ) -> Union[DelegatedCredential, InstallationCredential]:
        """Load a record or raise ``CredentialNotFoundError``."""
        payload = self._guarded(self._read, record_key(user_id, provider))
        if payload is None:
            raise CredentialNotFoundError(user_id, provider)
        return _parse_stored(payload, user_id, provider)

    def upsert(
        self,
        user_id: str,
        provider: str,
        patch: Dict[str, Any],
    ) -> Union[DelegatedCredential, InstallationCredential]:
        """Merge ``patch`` into the stored record (creating it if absent).

        The merged payload is re-validated as a whole, so switching
        ``auth_kind`` drops the other variant's fields in the same write.
        """
        key = record_key(user_id, provider)
        with self.lock(user_id, provider):
            existing = self._guarded(self._read, key)
            if existing is not None:
                _parse_stored(existing, user_id, provider)
            now = self._now()

            payload: Dict[str, Any] = dict(existing or {})
            payload.update(patch)
            payload["user_id"] = user_id
            payload["provider"] = provider
            payload.setdefault("created_at", now)
            payload["updated_at"] = now
            payload["version"] = int((existing or {}).get("version", 0)) + 1

            record = parse_credential_record(payload)
            self._guarded(self._write, key, record.model_dump(mode="json"))

        logger.debug(
            f"Stored {record.auth_kind} credential {_key_digest(key)} v{record.version}"
        )
        return record

    def delete(self, user_id: str, provider: str = DEFAULT_PROVIDER) -> bool:
        """Remove a record; returns False when nothing was stored."""
        key = record_key(user_id, provider)
        with self.lock(user_id, provider):
            return bool(self._guarded(self._remove, key))

    @abstractmethod
    def lock(self, user_id: str, provider: str = DEFAULT_PROVIDER):
        """Reentrant per-record mutex usable as a context manager."""

    @abstractmethod
    def _read(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def _write(self, key: str, payload: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def _remove(self, key: str) -> bool:
        ...

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _guarded(self, operation: Callable[..., Any], *args: Any) -> Any:
        try:
            return operation(*args)
        except CredentialStoreError:
            raise
        except (OSError, json.JSONDecodeError) as exc:
            raise CredentialStoreError(
                f"Credential store operation failed: {exc}"
            ) from exc


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


@dataclass
class InMemoryCredentialStore(CredentialStore):
    """Process-local store; records are deep-copied on the way in and out."""

    _records: Dict[str, Dict[str, Any]] = field(default_factory=dict, init=False)
    _locks: Dict[str, threading.RLock] = field(default_factory=dict, init=False)
    _guard: threading.Lock = field(default_factory=threading.Lock, init=False)

    @contextmanager
    def lock(self, user_id: str, provider: str = DEFAULT_PROVIDER) -> Iterator[None]:
        key = record_key(user_id, provider)
        with self._guard:
            record_lock = self._locks.setdefault(key, threading.RLock())
        with record_lock:
            yield

    def _read(self, key: str) -> Optional[Dict[str, Any]]:
        with self._guard:
            payload = self._records.get(key)
            return copy.deepcopy(payload) if payload is not None else None

    def _write(self, key: str, payload: Dict[str, Any]) -> None:
        with self._guard:
            self._records[key] = copy.deepcopy(payload)

    def _remove(self, key: str) -> bool:
        with self._guard:
            return self._records.pop(key, None) is not None


@dataclass
class JsonFileCredentialStore(CredentialStore):
    """All records in one JSON document, written atomically.

    A document-level ``FileLock`` guards each read-modify-write of the file
    while per-record lock files serialize token refreshes across processes.
    """

    path: Path = Path.home() / ".rulecraft" / "credentials" / "github.json"
    lock_timeout: float = 10.0

    def __post_init__(self) -> None:
        self.path = Path(self.path).expanduser().resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock_dir = self.path.parent / f".{self.path.stem}.locks"
        self._lock_dir.mkdir(parents=True, exist_ok=True)
        self._document_lock = FileLock(
            str(self.path.with_suffix(".lock")), timeout=self.lock_timeout
        )
        self._record_locks: Dict[str, FileLock] = {}
        self._guard = threading.Lock()

        if not self.path.exists():
            self._write_document({})

    def lock(self, user_id: str, provider: str = DEFAULT_PROVIDER) -> FileLock:
        key = record_key(user_id, provider)
        with self._guard:
            if key not in self._record_locks:
                lock_path = self._lock_dir / f"{_key_digest(key)}.lock"
                self._record_locks[key] = FileLock(
                    str(lock_path), timeout=self.lock_timeout
                )
            return self._record_locks[key]

    def _read(self, key: str) -> Optional[Dict[str, Any]]:
        return self._load_document().get(key)

    def _write(self, key: str, payload: Dict[str, Any]) -> None:
        with self._document_lock:
            document = self._load_document()
            document[key] = payload
            self._write_document(document)

    def _remove(self, key: str) -> bool:
        with self._document_lock:
            document = self._load_document()
            if document.pop(key, None) is None:
                return False
            self._write_document(document)
            return True

    def _load_document(self) -> Dict[str, Dict[str, Any]]:
        with self._document_lock:
            if not self.path.exists():
                return {}
            document = json.loads(self.path.read_text() or "{}")
        if not isinstance(document, dict):
            raise CredentialStoreError(
                f"Credentials file {self.path} does not hold a JSON object"
            )
        return document

    def _write_document(self, document: Dict[str, Dict[str, Any]]) -> None:
        with self._document_lock:
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps(document, indent=2))
            os.replace(tmp, self.path)


@dataclass
class KeyringCredentialStore(CredentialStore):
    """One OS keychain secret per record holding the full JSON payload."""

    keyring_module: Any = keyring
    service_name: str = "rulecraft.github"
    lock_dir: Path = Path.home() / ".rulecraft" / "credentials" / "locks"
    lock_timeout: float = 10.0

    def __post_init__(self) -> None:
        if self.keyring_module is None:
            raise RuntimeError(
                "keyring module is unavailable; install 'keyring' to manage credentials"
            )
        self.lock_dir = Path(self.lock_dir).expanduser().resolve()
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        self._record_locks: Dict[str, FileLock] = {}
        self._guard = threading.Lock()

    def lock(self, user_id: str, provider: str = DEFAULT_PROVIDER) -> FileLock:
        key = record_key(user_id, provider)
        with self._guard:
            if key not in self._record_locks:
                self._record_locks[key] = FileLock(
                    str(self.lock_dir / f"{_key_digest(key)}.lock"),
                    timeout=self.lock_timeout,
                )
            return self._record_locks[key]

    def _read(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self.keyring_module.get_password(self.service_name, key)
        except self._backend_errors() as exc:
            raise CredentialStoreError(f"Keychain read failed: {exc}") from exc
        if raw is None:
            return None
        return json.loads(raw)

    def _write(self, key: str, payload: Dict[str, Any]) -> None:
        try:
            self.keyring_module.set_password(self.service_name, key, json.dumps(payload))
        except self._backend_errors() as exc:
            raise CredentialStoreError(f"Keychain write failed: {exc}") from exc

    def _remove(self, key: str) -> bool:
        if self._read(key) is None:
            return False
        try:
            self.keyring_module.delete_password(self.service_name, key)
        except self._backend_errors() as exc:
            raise CredentialStoreError(f"Keychain delete failed: {exc}") from exc
        return True

    def _backend_errors(self) -> tuple:
        errors = getattr(self.keyring_module, "errors", None)
        keyring_error = getattr(errors, "KeyringError", None)
        if keyring_error is None:
            return (OSError,)
        return (keyring_error, OSError)


def _key_digest(key: str) -> str:
    return sha256(key.encode("utf-8")).hexdigest()[:16]


__all__ = [
    "AuthKind",
    "CredentialRecord",
    "CredentialStore",
    "DEFAULT_PROVIDER",
    "DelegatedCredential",
    "InMemoryCredentialStore",
    "InstallationCredential",
    "JsonFileCredentialStore",
    "KeyringCredentialStore",
    "parse_credential_record",
    "record_key",
]
