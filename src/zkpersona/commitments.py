"""zkpersona.commitments — Hiding commitments over scores, stamps and identities.

Two interchangeable schemes:

    keyed       BLAKE2b keyed with the secret (or the configured salt),
                personalised per use, reduced into the field. Default.
    arithmetic  The placeholder formulas compiled into the ledger program,
                kept so locally computed values match on-chain ones:
                    commitment(score, secret) = score*secret + score^2
                    stamps(ids[5])            = sum(ids[i]^2 * (i+1) * 17)
                    nullifier(nonce, app)     = (n*7919 + a*7907)*(n+a) + n*a
                These are trivially invertible and must not protect real data.

Usage:
    engine = CommitmentEngine(scheme="keyed", secret_salt="s3cret")
    engine.score_commitment(42, "123field")
    engine.stamps_commitment([3, 7, 9])
    engine.identity_commitment("github:1234", "aleo1...", 1700000000000)
"""

from __future__ import annotations

import hashlib
import time
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

import nacl.encoding
import nacl.hash

from .field import FIELD_MODULUS, field_to_int, hex_to_field, to_field

STAMP_SLOTS = 5
STAMP_MIXER = 17
NULLIFIER_PRIME_NONCE = 7919
NULLIFIER_PRIME_APP = 7907

# Ledger platform ids used in social commitments.
PLATFORM_IDS = {
    "discord": 1,
    "twitter": 2,
    "github": 3,
    "telegram": 4,
    "evm": 6,
    "solana": 7,
    "google": 8,
    "steam": 9,
}


def _pad_ids(stamp_ids: Optional[Iterable[Any]]) -> list[int]:
    ids = [field_to_int(s) for s in (stamp_ids or [])][:STAMP_SLOTS]
    return ids + [0] * (STAMP_SLOTS - len(ids))


def _int_bytes(value: int) -> bytes:
    return value.to_bytes(32, "big")


# ─── Schemes ───────────────────────────────────────────────────────

class CommitmentScheme(ABC):
    """Integer-valued primitives; callers tag results as field strings."""

    name: str = ""

    @abstractmethod
    def score_commitment(self, score: int, secret: int) -> int: ...

    @abstractmethod
    def stamps_commitment(self, stamp_ids: list[int]) -> int: ...

    @abstractmethod
    def nullifier(self, nonce: int, app_id: int) -> int: ...

    @abstractmethod
    def identity_commitment(self, subject_id: str, wallet_address: str, timestamp: int) -> int: ...


class ArithmeticScheme(CommitmentScheme):
    """Ledger-compatible placeholder arithmetic."""

    name = "arithmetic"

    def __init__(self, salt: str = ""):
        self._salt = salt

    def score_commitment(self, score: int, secret: int) -> int:
        return (score * secret + score * score) % FIELD_MODULUS

    def stamps_commitment(self, stamp_ids: list[int]) -> int:
        total = sum(sid * sid * (i + 1) * STAMP_MIXER for i, sid in enumerate(_pad_ids(stamp_ids)))
        return total % FIELD_MODULUS

    def nullifier(self, nonce: int, app_id: int) -> int:
        mixed = nonce * NULLIFIER_PRIME_NONCE + app_id * NULLIFIER_PRIME_APP
        return (mixed * (nonce + app_id) + nonce * app_id) % FIELD_MODULUS

    def identity_commitment(self, subject_id: str, wallet_address: str, timestamp: int) -> int:
        digest = hashlib.sha256(
            f"{subject_id}:{wallet_address}:{timestamp}:{self._salt}".encode()
        ).hexdigest()
        return int(digest, 16) % FIELD_MODULUS


class KeyedScheme(CommitmentScheme):
    """BLAKE2b with per-purpose personalisation."""

    name = "keyed"

    def __init__(self, salt: str = ""):
        self._salt_key = self._derive_key(salt.encode())

    @staticmethod
    def _derive_key(material: bytes) -> bytes:
        # blake2b keys are capped at 64 bytes, so always compress first
        return nacl.hash.blake2b(material, digest_size=32, encoder=nacl.encoding.RawEncoder)

    @staticmethod
    def _digest(data: bytes, key: bytes, person: bytes) -> int:
        hexed = nacl.hash.blake2b(
            data, digest_size=32, key=key, person=person, encoder=nacl.encoding.HexEncoder,
        )
        return int(hexed, 16) % FIELD_MODULUS

    def score_commitment(self, score: int, secret: int) -> int:
        key = self._derive_key(_int_bytes(secret))
        return self._digest(_int_bytes(score), key, b"zkp.score")

    def stamps_commitment(self, stamp_ids: list[int]) -> int:
        data = b"".join(_int_bytes(sid) for sid in _pad_ids(stamp_ids))
        return self._digest(data, self._salt_key, b"zkp.stamps")

    def nullifier(self, nonce: int, app_id: int) -> int:
        key = self._derive_key(_int_bytes(nonce))
        return self._digest(_int_bytes(app_id), key, b"zkp.nullifier")

    def identity_commitment(self, subject_id: str, wallet_address: str, timestamp: int) -> int:
        data = f"{subject_id}:{wallet_address}:{timestamp}".encode()
        return self._digest(data, self._salt_key, b"zkp.identity")


_SCHEMES = {
    ArithmeticScheme.name: ArithmeticScheme,
    KeyedScheme.name: KeyedScheme,
}


def get_scheme(name: str = "keyed", salt: str = "") -> CommitmentScheme:
    """Instantiate a scheme by name."""
    try:
        return _SCHEMES[name](salt)
    except KeyError:
        raise ValueError(f"Unknown commitment scheme: {name!r}") from None


# ─── Engine ────────────────────────────────────────────────────────

class CommitmentEngine:
    """Field-tagged commitments. Pure and deterministic for a fixed scheme and salt."""

    def __init__(self, scheme: str | CommitmentScheme = "keyed", secret_salt: str = ""):
        self._salt = secret_salt
        self.scheme = scheme if isinstance(scheme, CommitmentScheme) else get_scheme(scheme, secret_salt)

    @classmethod
    def from_settings(cls, settings) -> "CommitmentEngine":
        return cls(settings.commitment_scheme, settings.secret_salt)

    def score_commitment(self, score: Any, secret: Any) -> str:
        return to_field(self.scheme.score_commitment(field_to_int(score), field_to_int(secret)))

    def stamps_commitment(self, stamp_ids: Optional[Iterable[Any]]) -> str:
        return to_field(self.scheme.stamps_commitment(_pad_ids(stamp_ids)))

    def identity_commitment(
        self,
        subject_id: Any,
        wallet_address: Any,
        timestamp: Optional[int] = None,
    ) -> str:
        """Bind a provider subject to a wallet at a point in time (epoch ms)."""
        if timestamp is None:
            timestamp = int(time.time() * 1000)
        return to_field(self.scheme.identity_commitment(
            str(subject_id or ""), str(wallet_address or ""), int(timestamp),
        ))

    def social_commitment(self, platform_id: Any, user_id: Any) -> str:
        """SHA-256 of ``platform:user:salt`` reduced into the field."""
        if isinstance(platform_id, str) and platform_id in PLATFORM_IDS:
            platform_id = PLATFORM_IDS[platform_id]
        digest = hashlib.sha256(f"{platform_id}:{user_id}:{self._salt}".encode()).hexdigest()
        return hex_to_field(digest)
