"""Tests for access-token selection, refresh and migration."""

import threading
import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from rulecraft.audit import AuditLogger
from rulecraft.errors import (
    AppNotInstalledError,
    CredentialNotFoundError,
    IssuerNotConfiguredError,
    IssuerRejectedError,
    IssuerUnavailableError,
    RateLimitedError,
)
from rulecraft.integrations.github.credentials import (
    DelegatedCredential,
    InMemoryCredentialStore,
    InstallationCredential,
    JsonFileCredentialStore,
)
from rulecraft.integrations.github.installation_issuer import MintedToken
from rulecraft.integrations.github.token_lifecycle import TokenLifecycleManager


@pytest.fixture
def manager(memory_store, mock_issuer, clock):
    return TokenLifecycleManager(store=memory_store, issuer=mock_issuer, clock=clock)


def _store_installation(store, now, *, expires_in: timedelta, token="ghs_old"):
    return store.upsert(
        "u1",
        "github",
        {
            "auth_kind": "installation",
            "installation_id": 777,
            "access_token": token,
            "installation_token_expires_at": now + expires_in,
        },
    )


# ---------------------------------------------------------------------------
# Delegated tokens
# ---------------------------------------------------------------------------


def test_missing_record_raises(manager):
    with pytest.raises(CredentialNotFoundError):
        manager.get_valid_access_token("u1")


def test_delegated_token_returned_as_is(manager, memory_store, mock_issuer, now):
    memory_store.upsert(
        "u1",
        "github",
        {"access_token": "gho_user", "token_expires_at": now - timedelta(days=1)},
    )

    assert manager.get_valid_access_token("u1") == "gho_user"
    mock_issuer.mint_installation_token.assert_not_called()


# ---------------------------------------------------------------------------
# Installation tokens: buffer
# ---------------------------------------------------------------------------


def test_installation_token_outside_buffer_is_reused(manager, memory_store, mock_issuer, now):
    _store_installation(memory_store, now, expires_in=timedelta(minutes=10))

    assert manager.get_valid_access_token("u1") == "ghs_old"
    mock_issuer.mint_installation_token.assert_not_called()


def test_installation_token_inside_buffer_is_refreshed(manager, memory_store, mock_issuer, now):
    _store_installation(memory_store, now, expires_in=timedelta(minutes=4))

    token = manager.get_valid_access_token("u1")

    assert token == "ghs_new_777"
    mock_issuer.mint_installation_token.assert_called_once_with(777)
    record = memory_store.get("u1", "github")
    assert record.access_token == "ghs_new_777"
    assert record.installation_token_expires_at == now + timedelta(hours=1)


def test_installation_token_exactly_at_buffer_is_refreshed(manager, memory_store, mock_issuer, now):
    _store_installation(memory_store, now, expires_in=timedelta(minutes=5))

    assert manager.get_valid_access_token("u1") == "ghs_new_777"


def test_expired_installation_token_is_refreshed(manager, memory_store, now):
    _store_installation(memory_store, now, expires_in=-timedelta(minutes=30))

    assert manager.get_valid_access_token("u1") == "ghs_new_777"


def test_refreshed_token_is_reused_until_next_buffer(manager, memory_store, mock_issuer, clock, now):
    _store_installation(memory_store, now, expires_in=timedelta(minutes=1))

    manager.get_valid_access_token("u1")
    clock.advance(minutes=30)
    manager.get_valid_access_token("u1")
    clock.advance(minutes=26)
    manager.get_valid_access_token("u1")

    assert mock_issuer.mint_installation_token.call_count == 2


def test_custom_refresh_buffer(memory_store, mock_issuer, clock, now):
    manager = TokenLifecycleManager(
        store=memory_store,
        issuer=mock_issuer,
        refresh_buffer=timedelta(minutes=15),
        clock=clock,
    )
    _store_installation(memory_store, now, expires_in=timedelta(minutes=10))

    assert manager.get_valid_access_token("u1") == "ghs_new_777"


# ---------------------------------------------------------------------------
# Installation tokens: issuer failures
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error",
    [
        IssuerUnavailableError("timeout"),
        IssuerRejectedError("installation removed"),
        RateLimitedError("slow down", retry_after_seconds=30),
    ],
)
def test_issuer_failure_falls_back_to_stale_token(manager, memory_store, mock_issuer, now, error):
    _store_installation(memory_store, now, expires_in=timedelta(minutes=2))
    mock_issuer.mint_installation_token.side_effect = error

    assert manager.get_valid_access_token("u1") == "ghs_old"
    assert memory_store.get("u1", "github").version == 1


def test_fail_fast_reraises_issuer_error(memory_store, mock_issuer, clock, now):
    manager = TokenLifecycleManager(
        store=memory_store,
        issuer=mock_issuer,
        fail_fast_on_refresh_error=True,
        clock=clock,
    )
    _store_installation(memory_store, now, expires_in=timedelta(minutes=2))
    mock_issuer.mint_installation_token.side_effect = IssuerUnavailableError("timeout")

    with pytest.raises(IssuerUnavailableError):
        manager.get_valid_access_token("u1")


def test_refresh_failure_is_audited(memory_store, mock_issuer, clock, now, tmp_path):
    audit_logger = AuditLogger(tmp_path / "audit")
    manager = TokenLifecycleManager(
        store=memory_store, issuer=mock_issuer, clock=clock, audit_logger=audit_logger
    )
    _store_installation(memory_store, now, expires_in=timedelta(minutes=2))
    mock_issuer.mint_installation_token.side_effect = IssuerRejectedError("gone")

    manager.get_valid_access_token("u1")

    events = list(audit_logger.iter_events())
    assert events[-1]["action"] == "installation_token_refresh_failed"
    assert events[-1]["metadata"]["error"] == "ISSUER_REJECTED"
    assert "ghs_old" not in audit_logger.path.read_text()


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_concurrent_refresh_mints_once(memory_store, mock_issuer, clock, now):
    _store_installation(memory_store, now, expires_in=timedelta(minutes=1))
    minted = MintedToken(
        token="ghs_fresh", expires_at=now + timedelta(hours=1), installation_id=777
    )

    def slow_mint(installation_id):
        time.sleep(0.05)
        return minted

    mock_issuer.mint_installation_token.side_effect = slow_mint
    manager = TokenLifecycleManager(store=memory_store, issuer=mock_issuer, clock=clock)

    results = []

    def worker():
        results.append(manager.get_valid_access_token("u1"))

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == ["ghs_fresh"] * 5
    assert mock_issuer.mint_installation_token.call_count == 1


def test_mint_happens_under_record_lock(mock_issuer, clock, now, tmp_path):
    store = JsonFileCredentialStore(path=tmp_path / "github.json")
    manager = TokenLifecycleManager(store=store, issuer=mock_issuer, clock=clock)
    _store_installation(store, now, expires_in=timedelta(minutes=1))
    held = []

    def mint(installation_id):
        held.append(store.lock("u1", "github").is_locked)
        return MintedToken(
            token="ghs_fresh", expires_at=now + timedelta(hours=1), installation_id=installation_id
        )

    mock_issuer.mint_installation_token.side_effect = mint

    assert manager.get_valid_access_token("u1") == "ghs_fresh"
    assert held == [True]


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


def test_migrate_to_installation(manager, memory_store, mock_issuer, now):
    memory_store.upsert(
        "u1", "github", {"access_token": "gho_user", "refresh_token": "r", "scopes": ["repo"]}
    )

    migrated = manager.migrate_to_installation("u1")

    assert isinstance(migrated, InstallationCredential)
    assert migrated.installation_id == 777
    assert migrated.access_token == "ghs_new_777"
    assert migrated.installation_token_expires_at == now + timedelta(hours=1)
    assert migrated.scopes == ["repo"]
    mock_issuer.find_installation_for_delegated_token.assert_called_once_with("gho_user")
    assert memory_store.get("u1", "github").version == 2


def test_migrate_is_a_single_write(manager, memory_store):
    memory_store.upsert("u1", "github", {"access_token": "gho_user"})

    with patch.object(memory_store, "_write", wraps=memory_store._write) as write_spy:
        manager.migrate_to_installation("u1")

    assert write_spy.call_count == 1
    payload = write_spy.call_args[0][1]
    assert payload["auth_kind"] == "installation"
    assert payload["installation_id"] == 777
    assert payload["installation_token_expires_at"] is not None


def test_concurrent_readers_never_see_partial_migration(mock_issuer, clock):
    store = InMemoryCredentialStore()
    store.upsert("u1", "github", {"access_token": "gho_user"})
    manager = TokenLifecycleManager(store=store, issuer=mock_issuer, clock=clock)
    observed = []
    done = threading.Event()

    def reader():
        while not done.is_set():
            observed.append(store.get("u1", "github"))

    thread = threading.Thread(target=reader)
    thread.start()
    try:
        manager.migrate_to_installation("u1")
    finally:
        done.set()
        thread.join()

    for record in observed:
        if record.auth_kind == "installation":
            assert record.installation_id == 777
        else:
            assert isinstance(record, DelegatedCredential)


def test_migrate_requires_configured_issuer(manager, memory_store, mock_issuer):
    memory_store.upsert("u1", "github", {"access_token": "gho_user"})
    mock_issuer.is_configured.return_value = False

    with pytest.raises(IssuerNotConfiguredError):
        manager.migrate_to_installation("u1")

    assert isinstance(memory_store.get("u1", "github"), DelegatedCredential)


def test_migrate_without_installation(manager, memory_store, mock_issuer):
    memory_store.upsert("u1", "github", {"access_token": "gho_user"})
    mock_issuer.find_installation_for_delegated_token.return_value = None

    with pytest.raises(AppNotInstalledError):
        manager.migrate_to_installation("u1")

    mock_issuer.mint_installation_token.assert_not_called()
    assert isinstance(memory_store.get("u1", "github"), DelegatedCredential)


def test_migrate_mint_failure_leaves_record_delegated(manager, memory_store, mock_issuer):
    memory_store.upsert("u1", "github", {"access_token": "gho_user"})
    mock_issuer.mint_installation_token.side_effect = IssuerRejectedError("no access")

    with pytest.raises(IssuerRejectedError):
        manager.migrate_to_installation("u1")

    record = memory_store.get("u1", "github")
    assert isinstance(record, DelegatedCredential)
    assert record.access_token == "gho_user"


def test_migrate_installation_record_is_noop(manager, memory_store, mock_issuer, now):
    _store_installation(memory_store, now, expires_in=timedelta(minutes=30))

    record = manager.migrate_to_installation("u1")

    assert record.access_token == "ghs_old"
    mock_issuer.find_installation_for_delegated_token.assert_not_called()


def test_migrate_is_audited(memory_store, mock_issuer, clock, tmp_path):
    audit_logger = AuditLogger(tmp_path / "audit")
    manager = TokenLifecycleManager(
        store=memory_store, issuer=mock_issuer, clock=clock, audit_logger=audit_logger
    )
    memory_store.upsert("u1", "github", {"access_token": "gho_user"})

    manager.migrate_to_installation("u1", operator="cli")

    events = list(audit_logger.iter_events())
    assert events[-1]["action"] == "credential_migrate"
    assert events[-1]["status"] == "success"
    assert events[-1]["operator_action"] == "cli"
    assert audit_logger.verify()
