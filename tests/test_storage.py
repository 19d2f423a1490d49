"""Tests for zkpersona.storage — backends and the credential store."""

import json

import pytest

from zkpersona.config import Settings
from zkpersona.events import EventBus, EventType
from zkpersona.scoring import DAY, Credential
from zkpersona.sessions import VerificationCriterion, VerificationResult
from zkpersona.storage import (
    CredentialStore,
    FileBackend,
    MemoryBackend,
    SQLiteBackend,
    backend_from_settings,
)

from conftest import NOW, WALLET


@pytest.fixture(params=["memory", "sqlite", "file"])
def backend(request, tmp_path):
    if request.param == "memory":
        b = MemoryBackend()
    elif request.param == "sqlite":
        b = SQLiteBackend(str(tmp_path / "test.db"))
    else:
        b = FileBackend(str(tmp_path / "data"))
    yield b
    b.close()


# ─── Backends ──────────────────────────────────────────────────────

class TestBackends:
    def test_save_load(self, backend):
        backend.save("k1", {"a": 1})
        assert backend.load("k1") == {"a": 1}

    def test_missing(self, backend):
        assert backend.load("nope") is None
        assert not backend.exists("nope")

    def test_overwrite(self, backend):
        backend.save("k1", {"a": 1})
        backend.save("k1", {"a": 2})
        assert backend.load("k1") == {"a": 2}

    def test_delete(self, backend):
        backend.save("k1", {"a": 1})
        assert backend.delete("k1")
        assert backend.load("k1") is None
        assert not backend.delete("k1")

    def test_list_keys_prefix(self, backend):
        backend.save("verifications:a", {})
        backend.save("verifications:b", {})
        backend.save("other", {})
        assert sorted(backend.list_keys("verifications:")) == ["verifications:a", "verifications:b"]
        assert len(backend.list_keys()) == 3

    def test_loaded_value_is_a_copy(self, backend):
        backend.save("k1", {"a": [1]})
        backend.load("k1")["a"].append(2)
        assert backend.load("k1") == {"a": [1]}


def test_sqlite_like_wildcards_are_literal(tmp_path):
    b = SQLiteBackend(str(tmp_path / "t.db"))
    b.save("a_b", {})
    b.save("axb", {})
    b.save("a%c", {})
    assert b.list_keys("a_") == ["a_b"]
    assert b.list_keys("a%") == ["a%c"]
    b.close()


def test_sqlite_persists_across_connections(tmp_path):
    path = str(tmp_path / "t.db")
    b = SQLiteBackend(path)
    b.save("k", {"v": 1})
    b.close()
    assert SQLiteBackend(path).load("k") == {"v": 1}


def test_file_backend_compact(tmp_path):
    b = FileBackend(str(tmp_path))
    b.save("k1", {"v": 1})
    b.save("k1", {"v": 2})
    b.save("k2", {"v": 3})
    b.delete("k2")
    assert len(b.path.read_text().splitlines()) == 4
    assert b.compact() == 1
    lines = b.path.read_text().splitlines()
    assert [json.loads(line) for line in lines] == [{"key": "k1", "data": {"v": 2}}]


def test_backend_from_settings(tmp_path):
    assert isinstance(backend_from_settings(Settings()), MemoryBackend)
    sqlite = backend_from_settings(Settings(storage_backend="sqlite", storage_path=str(tmp_path / "x.db")))
    assert isinstance(sqlite, SQLiteBackend)
    sqlite.close()
    assert isinstance(backend_from_settings(Settings(storage_backend="file", storage_path=str(tmp_path))), FileBackend)


# ─── Credential store ─────────────────────────────────────────────

@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def store(backend, bus):
    return CredentialStore(backend, bus=bus, clock=lambda: NOW)


def github_result(**kw):
    defaults = dict(
        provider="github",
        subject_id="github:1234",
        score=22,
        criteria=[VerificationCriterion("account_age_1y", 10, "Account older than a year")],
        verified_at=NOW - DAY,
    )
    defaults.update(kw)
    return VerificationResult(**defaults)


class TestCredentialStore:
    def test_empty_wallet(self, store):
        assert store.load(WALLET) == {}
        assert store.get(WALLET, "github") is None

    def test_save_and_get(self, store):
        store.save(WALLET, Credential(provider="github", verified=True, score=20, verified_at=NOW))
        c = store.get(WALLET, "github")
        assert c.score == 20
        assert c.verified

    def test_save_overwrites_same_provider(self, store):
        store.save(WALLET, Credential(provider="github", verified=True, score=20, verified_at=NOW))
        store.save(WALLET, Credential(provider="github", verified=True, score=5, verified_at=NOW))
        assert store.get(WALLET, "github").score == 5
        assert len(store.load(WALLET)) == 1

    def test_providers_accumulate(self, store):
        store.save(WALLET, Credential(provider="github", verified=True, score=20, verified_at=NOW))
        store.save(WALLET, Credential(provider="ethereum", verified=True, score=30, verified_at=NOW))
        assert set(store.load(WALLET)) == {"github", "evm"}

    def test_save_result_builds_credential(self, store):
        c = store.save_result(WALLET, github_result())
        assert c.verified
        assert c.score == 22
        assert c.verified_at == NOW - DAY
        assert c.expires_at == NOW - DAY + 90 * DAY
        assert c.commitment.endswith("field")
        assert c.criteria[0]["condition"] == "account_age_1y"

    def test_subject_id_never_stored(self, store, backend):
        store.save_result(WALLET, github_result())
        raw = json.dumps(backend.load(f"verifications:{WALLET}"))
        assert "github:1234" not in raw

    def test_commitment_binds_wallet(self, store):
        a = store.save_result(WALLET, github_result())
        b = store.save_result("aleo1other", github_result())
        assert a.commitment != b.commitment

    def test_existing_commitment_kept(self, store):
        c = store.save_result(WALLET, github_result(commitment="77field"))
        assert c.commitment == "77field"

    def test_missing_verified_at_uses_clock(self, store):
        c = store.save_result(WALLET, github_result(verified_at=0))
        assert c.verified_at == NOW

    def test_remove(self, store, backend):
        store.save_result(WALLET, github_result())
        store.save_result(WALLET, github_result(provider="twitter"))
        assert store.remove(WALLET, "github")
        assert set(store.load(WALLET)) == {"twitter"}
        assert store.remove(WALLET, "twitter")
        assert backend.load(f"verifications:{WALLET}") is None
        assert not store.remove(WALLET, "twitter")

    def test_clear_and_wallets(self, store):
        store.save_result(WALLET, github_result())
        store.save_result("aleo1other", github_result())
        assert sorted(store.wallets()) == sorted([WALLET, "aleo1other"])
        assert store.clear(WALLET)
        assert store.wallets() == ["aleo1other"]

    def test_events(self, store, bus):
        seen = []
        bus.subscribe("credential.*", seen.append)
        store.save_result(WALLET, github_result())
        store.remove(WALLET, "github")
        assert [e.event_type for e in seen] == [EventType.CREDENTIAL_SAVED.value, EventType.CREDENTIAL_REMOVED.value]
        assert seen[0].payload.wallet == WALLET
        assert seen[0].payload.status == "connected"
