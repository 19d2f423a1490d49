"""
zkpersona.storage — Pluggable key-value backends and the per-wallet credential store.

Backends: MemoryBackend, SQLiteBackend, FileBackend
Store:    CredentialStore — one record per wallet holding a provider-keyed
          mapping of credentials.

Writes to a wallet record are last-write-wins: two concurrent
verifications for the same wallet each read the record, update their own
provider entry and write the whole record back, so the later write can
drop the earlier provider's entry. Re-running the lost verification
restores it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .commitments import CommitmentEngine
from .events import CredentialChanged, EventBus, EventType
from .providers import normalize_provider
from .scoring import Credential, coerce_credentials

if TYPE_CHECKING:
    from .config import Settings
    from .sessions import VerificationResult

logger = logging.getLogger(__name__)

WALLET_PREFIX = "verifications:"


# ─── Abstract Backend ──────────────────────────────────────────────

class StorageBackend(ABC):
    """Opaque string-keyed JSON document store."""

    @abstractmethod
    def save(self, key: str, data: dict) -> None: ...

    @abstractmethod
    def load(self, key: str) -> Optional[dict]: ...

    @abstractmethod
    def delete(self, key: str) -> bool: ...

    @abstractmethod
    def list_keys(self, prefix: str = "") -> list[str]: ...

    def exists(self, key: str) -> bool:
        return self.load(key) is not None

    def close(self) -> None:
        pass


# ─── Memory Backend ────────────────────────────────────────────────

class MemoryBackend(StorageBackend):
    """In-process dict, the default for tests and single-process servers."""

    def __init__(self):
        self._store: dict[str, str] = {}
        self._lock = threading.Lock()

    # Values are kept serialised so callers never share mutable state.
    def save(self, key: str, data: dict) -> None:
        with self._lock:
            self._store[key] = json.dumps(data)

    def load(self, key: str) -> Optional[dict]:
        with self._lock:
            raw = self._store.get(key)
        return json.loads(raw) if raw is not None else None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def list_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [k for k in self._store if k.startswith(prefix)]


# ─── SQLite Backend ────────────────────────────────────────────────

class SQLiteBackend(StorageBackend):
    """File-based SQLite with WAL mode, thread-safe."""

    def __init__(self, db_path: str = "zkpersona.db"):
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.commit()

    def save(self, key: str, data: dict) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv (key, data, updated_at) VALUES (?, ?, ?)",
                (key, json.dumps(data), datetime.now(timezone.utc).isoformat()),
            )
            self._conn.commit()

    def load(self, key: str) -> Optional[dict]:
        with self._lock:
            row = self._conn.execute("SELECT data FROM kv WHERE key = ?", (key,)).fetchone()
        return json.loads(row[0]) if row else None

    def delete(self, key: str) -> bool:
        with self._lock:
            cur = self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            self._conn.commit()
            return cur.rowcount > 0

    def list_keys(self, prefix: str = "") -> list[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._lock:
            rows = self._conn.execute(
                "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\'", (escaped + "%",)
            ).fetchall()
        return [r[0] for r in rows]

    def close(self) -> None:
        self._conn.close()


# ─── File Backend ──────────────────────────────────────────────────

class FileBackend(StorageBackend):
    """Append-only JSONL file with delete markers; compacted on demand."""

    def __init__(self, base_dir: str = "zkpersona_data", namespace: str = "credentials"):
        self._base_dir = Path(base_dir)
        self._namespace = namespace
        self._base_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._base_dir / f"{self._namespace}.jsonl"

    def _read_all(self) -> dict[str, dict]:
        records: dict[str, dict] = {}
        if not self.path.exists():
            return records
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = json.loads(line)
                key = entry.get("key")
                if entry.get("deleted"):
                    records.pop(key, None)
                else:
                    records[key] = entry.get("data", {})
        return records

    def _append(self, entry: dict) -> None:
        with open(self.path, "a") as f:
            f.write(json.dumps(entry) + "\n")

    def save(self, key: str, data: dict) -> None:
        with self._lock:
            self._append({"key": key, "data": data})

    def load(self, key: str) -> Optional[dict]:
        with self._lock:
            return self._read_all().get(key)

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._read_all():
                return False
            self._append({"key": key, "deleted": True})
            return True

    def list_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [k for k in self._read_all() if k.startswith(prefix)]

    def compact(self) -> int:
        """Rewrite the file with live records only. Returns the record count."""
        with self._lock:
            records = self._read_all()
            with open(self.path, "w") as f:
                for key, data in records.items():
                    f.write(json.dumps({"key": key, "data": data}) + "\n")
            return len(records)


def backend_from_settings(settings: "Settings") -> StorageBackend:
    if settings.storage_backend == "sqlite":
        return SQLiteBackend(settings.storage_path)
    if settings.storage_backend == "file":
        return FileBackend(settings.storage_path)
    return MemoryBackend()


# ─── Credential store ─────────────────────────────────────────────

class CredentialStore:
    """Per-wallet credential records on top of any StorageBackend."""

    def __init__(
        self,
        backend: Optional[StorageBackend] = None,
        *,
        engine: Optional[CommitmentEngine] = None,
        bus: Optional[EventBus] = None,
        clock=time.time,
    ):
        self.backend = backend or MemoryBackend()
        self.engine = engine or CommitmentEngine()
        self.bus = bus
        self._clock = clock

    @staticmethod
    def _key(wallet: str) -> str:
        return f"{WALLET_PREFIX}{wallet}"

    def load(self, wallet: str) -> dict[str, Credential]:
        """All credentials for ``wallet`` keyed by provider (empty if none)."""
        record = self.backend.load(self._key(wallet)) or {}
        return {c.provider: c for c in coerce_credentials(record)}

    def get(self, wallet: str, provider: str) -> Optional[Credential]:
        return self.load(wallet).get(normalize_provider(provider))

    def _write(self, wallet: str, credentials: dict[str, Credential]) -> None:
        self.backend.save(self._key(wallet), {p: c.to_dict() for p, c in credentials.items()})

    def save(self, wallet: str, credential: Credential) -> Credential:
        """Insert or overwrite the credential for its provider."""
        credentials = self.load(wallet)
        credentials[credential.provider] = credential
        self._write(wallet, credentials)
        logger.info("Saved %s credential for %s (score=%s)", credential.provider, wallet, credential.score)
        if self.bus is not None:
            self.bus.emit(
                EventType.CREDENTIAL_SAVED,
                CredentialChanged(wallet, credential.provider, credential.score, credential.status(self._clock()).value),
                source="store",
            )
        return credential

    def save_result(self, wallet: str, result: "VerificationResult") -> Credential:
        """Turn a verified session result into a stored credential.

        The stored commitment binds the provider subject to the wallet; the
        subject id itself is never persisted.
        """
        verified_at = result.verified_at or self._clock()
        commitment = result.commitment or self.engine.identity_commitment(
            result.subject_id, wallet, int(verified_at * 1000),
        )
        credential = Credential(
            provider=result.provider,
            verified=True,
            score=result.score,
            criteria=[c.to_dict() for c in result.criteria],
            verified_at=verified_at,
            commitment=commitment,
        )
        credential.expires_at = credential.effective_expires_at
        return self.save(wallet, credential)

    def remove(self, wallet: str, provider: str) -> bool:
        """Delete one provider's credential. Returns False if it was not there."""
        credentials = self.load(wallet)
        key = normalize_provider(provider)
        if key not in credentials:
            return False
        del credentials[key]
        if credentials:
            self._write(wallet, credentials)
        else:
            self.backend.delete(self._key(wallet))
        logger.info("Removed %s credential for %s", key, wallet)
        if self.bus is not None:
            self.bus.emit(EventType.CREDENTIAL_REMOVED, CredentialChanged(wallet, key), source="store")
        return True

    def clear(self, wallet: str) -> bool:
        return self.backend.delete(self._key(wallet))

    def wallets(self) -> list[str]:
        return [k[len(WALLET_PREFIX):] for k in self.backend.list_keys(WALLET_PREFIX)]
