"""Tests for credential records and credential stores."""

import json
import threading
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from rulecraft.errors import CredentialNotFoundError, CredentialStoreError
from rulecraft.integrations.github.credentials import (
    DelegatedCredential,
    InMemoryCredentialStore,
    InstallationCredential,
    JsonFileCredentialStore,
    KeyringCredentialStore,
    parse_credential_record,
)


EXPIRY = datetime(2026, 1, 15, 13, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Record model tests
# ---------------------------------------------------------------------------


def test_legacy_payload_without_auth_kind_is_delegated():
    record = parse_credential_record({"user_id": "u1", "access_token": "gho_abc"})

    assert isinstance(record, DelegatedCredential)
    assert record.auth_kind == "delegated"
    assert record.provider == "github"


def test_oauth_auth_kind_alias_is_delegated():
    record = parse_credential_record(
        {"user_id": "u1", "access_token": "gho_abc", "auth_kind": "oauth"}
    )
    assert isinstance(record, DelegatedCredential)


def test_installation_record_requires_both_installation_fields():
    with pytest.raises(ValidationError):
        parse_credential_record(
            {"user_id": "u1", "access_token": "ghs_x", "auth_kind": "installation", "installation_id": 1}
        )
    with pytest.raises(ValidationError):
        parse_credential_record(
            {
                "user_id": "u1",
                "access_token": "ghs_x",
                "auth_kind": "installation",
                "installation_token_expires_at": EXPIRY,
            }
        )


def test_delegated_record_drops_installation_fields():
    record = parse_credential_record(
        {
            "user_id": "u1",
            "access_token": "gho_abc",
            "auth_kind": "delegated",
            "installation_id": 99,
            "installation_token_expires_at": EXPIRY,
        }
    )
    dumped = record.model_dump()

    assert "installation_id" not in dumped
    assert "installation_token_expires_at" not in dumped


def test_naive_expiry_is_treated_as_utc():
    record = parse_credential_record(
        {
            "user_id": "u1",
            "access_token": "ghs_x",
            "auth_kind": "installation",
            "installation_id": 1,
            "installation_token_expires_at": datetime(2026, 1, 15, 13, 0),
        }
    )
    assert record.installation_token_expires_at.tzinfo is not None


def test_installation_validity_uses_strict_buffer():
    record = InstallationCredential(
        user_id="u1",
        access_token="ghs_x",
        installation_id=1,
        installation_token_expires_at=EXPIRY,
    )
    buffer = timedelta(minutes=5)

    assert record.is_valid_at(EXPIRY - timedelta(minutes=10), buffer)
    assert not record.is_valid_at(EXPIRY - timedelta(minutes=5), buffer)
    assert not record.is_valid_at(EXPIRY - timedelta(minutes=4), buffer)


# ---------------------------------------------------------------------------
# Store contract tests (shared across backends)
# ---------------------------------------------------------------------------


@pytest.fixture(params=["memory", "file", "keyring"])
def store(request, tmp_path, mock_keyring):
    if request.param == "memory":
        return InMemoryCredentialStore()
    if request.param == "file":
        return JsonFileCredentialStore(path=tmp_path / "credentials" / "github.json")
    return KeyringCredentialStore(keyring_module=mock_keyring, lock_dir=tmp_path / "locks")


def test_get_missing_record_raises(store):
    with pytest.raises(CredentialNotFoundError) as exc_info:
        store.get("nobody", "github")

    assert exc_info.value.details == {"user_id": "nobody", "provider": "github"}


def test_upsert_creates_then_merges(store):
    created = store.upsert("u1", "github", {"access_token": "gho_1", "scopes": ["repo"]})
    assert created.version == 1

    updated = store.upsert("u1", "github", {"access_token": "gho_2"})

    assert updated.version == 2
    assert updated.access_token == "gho_2"
    assert updated.scopes == ["repo"]
    assert updated.created_at == created.created_at
    assert store.get("u1", "github").access_token == "gho_2"


def test_records_are_keyed_per_user_and_provider(store):
    store.upsert("u1", "github", {"access_token": "a"})
    store.upsert("u2", "github", {"access_token": "b"})
    store.upsert("u1", "gitlab", {"access_token": "c"})

    assert store.get("u1", "github").access_token == "a"
    assert store.get("u2", "github").access_token == "b"
    assert store.get("u1", "gitlab").access_token == "c"


def test_switching_auth_kind_is_one_write(store):
    store.upsert("u1", "github", {"access_token": "gho_1", "refresh_token": "r1"})

    migrated = store.upsert(
        "u1",
        "github",
        {
            "auth_kind": "installation",
            "installation_id": 42,
            "access_token": "ghs_1",
            "installation_token_expires_at": EXPIRY,
        },
    )

    assert isinstance(migrated, InstallationCredential)
    assert migrated.version == 2
    reloaded = store.get("u1", "github")
    assert isinstance(reloaded, InstallationCredential)
    assert reloaded.installation_id == 42
    assert not hasattr(reloaded, "refresh_token")


def test_invalid_patch_leaves_record_untouched(store):
    store.upsert("u1", "github", {"access_token": "gho_1"})

    with pytest.raises(ValidationError):
        store.upsert("u1", "github", {"auth_kind": "installation", "installation_id": 1})

    record = store.get("u1", "github")
    assert isinstance(record, DelegatedCredential)
    assert record.version == 1


def test_delete(store):
    store.upsert("u1", "github", {"access_token": "gho_1"})

    assert store.delete("u1", "github") is True
    assert store.delete("u1", "github") is False
    with pytest.raises(CredentialNotFoundError):
        store.get("u1", "github")


def test_lock_is_reentrant(store):
    with store.lock("u1", "github"):
        with store.lock("u1", "github"):
            store.upsert("u1", "github", {"access_token": "gho_1"})

    assert store.get("u1", "github").access_token == "gho_1"


# ---------------------------------------------------------------------------
# Backend specifics
# ---------------------------------------------------------------------------


def test_memory_store_returns_copies():
    store = InMemoryCredentialStore()
    store.upsert("u1", "github", {"access_token": "gho_1", "scopes": ["repo"]})

    record = store.get("u1", "github")
    record.scopes.append("admin")

    assert store.get("u1", "github").scopes == ["repo"]


def test_memory_store_concurrent_upserts_do_not_lose_versions():
    store = InMemoryCredentialStore()
    store.upsert("u1", "github", {"access_token": "gho_0"})

    def worker(index):
        for _ in range(20):
            store.upsert("u1", "github", {"access_token": f"gho_{index}"})

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.get("u1", "github").version == 101


def test_file_store_persists_between_instances(temp_credentials_path):
    JsonFileCredentialStore(path=temp_credentials_path).upsert(
        "u1", "github", {"access_token": "gho_1"}
    )

    reopened = JsonFileCredentialStore(path=temp_credentials_path)

    assert reopened.get("u1", "github").access_token == "gho_1"
    document = json.loads(temp_credentials_path.read_text())
    assert "u1:github" in document


def test_file_store_wraps_corrupt_document(temp_credentials_path):
    store = JsonFileCredentialStore(path=temp_credentials_path)
    temp_credentials_path.write_text("{not json")

    with pytest.raises(CredentialStoreError):
        store.get("u1", "github")

    temp_credentials_path.write_text("[]")

    with pytest.raises(CredentialStoreError):
        store.get("u1", "github")
    with pytest.raises(CredentialStoreError):
        store.upsert("u1", "github", {"access_token": "gho_1"})


def test_record_failing_validation_is_a_store_error(memory_store):
    memory_store._records["u1:github"] = {
        "auth_kind": "installation",
        "user_id": "u1",
        "provider": "github",
        "access_token": "ghs_x",
    }

    with pytest.raises(CredentialStoreError):
        memory_store.get("u1", "github")
    with pytest.raises(CredentialStoreError):
        memory_store.upsert("u1", "github", {"access_token": "ghs_y"})


def test_keyring_store_wraps_non_object_payload(mock_keyring, tmp_path):
    mock_keyring.set_password("rulecraft.github", "u1:github", '"just a string"')
    store = KeyringCredentialStore(keyring_module=mock_keyring, lock_dir=tmp_path)

    with pytest.raises(CredentialStoreError):
        store.get("u1", "github")


def test_keyring_store_writes_whole_record(mock_keyring, tmp_path):
    store = KeyringCredentialStore(keyring_module=mock_keyring, lock_dir=tmp_path)
    store.upsert("u1", "github", {"access_token": "gho_1"})

    raw = mock_keyring.get_password("rulecraft.github", "u1:github")

    assert json.loads(raw)["access_token"] == "gho_1"


def test_keyring_store_wraps_backend_errors(tmp_path):
    class BrokenKeyring:
        def get_password(self, service, username):
            raise OSError("keychain locked")

    store = KeyringCredentialStore(keyring_module=BrokenKeyring(), lock_dir=tmp_path)

    with pytest.raises(CredentialStoreError):
        store.get("u1", "github")


def test_keyring_store_requires_keyring_module(tmp_path):
    with pytest.raises(RuntimeError):
        KeyringCredentialStore(keyring_module=None, lock_dir=tmp_path)
