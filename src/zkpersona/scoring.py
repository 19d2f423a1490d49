"""zkpersona.scoring — Credential model, 90-day expiry and score aggregation.

A credential is one provider's verification for one wallet. It counts
toward the holder's score while it is verified and unexpired; expired
credentials stay on record (status ``expired``) but contribute nothing.

Usage:
    agg = ScoreAggregator()
    agg.get_total_score(store.load(wallet))
    agg.get_breakdown(store.load(wallet)).to_dict()
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from .providers import max_score_for, normalize_provider

DAY = 24 * 60 * 60
VALIDITY_DAYS = 90
VALIDITY_PERIOD = VALIDITY_DAYS * DAY


class CredentialStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    EXPIRED = "expired"


# ─── Expiry helpers (timestamps are epoch seconds) ────────────────

def expiry_date(verified_at: float) -> float:
    return verified_at + VALIDITY_PERIOD


def is_expired(verified_at: Optional[float], now: Optional[float] = None) -> bool:
    """A missing timestamp counts as expired."""
    if not verified_at:
        return True
    now = time.time() if now is None else now
    return expiry_date(verified_at) <= now


def days_remaining(verified_at: Optional[float], now: Optional[float] = None) -> int:
    if not verified_at:
        return 0
    now = time.time() if now is None else now
    return max(0, math.ceil((expiry_date(verified_at) - now) / DAY))


def credential_status(verified_at: Optional[float], now: Optional[float] = None) -> CredentialStatus:
    if not verified_at:
        return CredentialStatus.DISCONNECTED
    if is_expired(verified_at, now):
        return CredentialStatus.EXPIRED
    return CredentialStatus.CONNECTED


def to_iso(ts: Optional[float]) -> Optional[str]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _as_float(value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return result if math.isfinite(result) else 0.0


# ─── Credential ───────────────────────────────────────────────────

@dataclass
class Credential:
    """A provider verification held for a wallet."""
    provider: str
    verified: bool = False
    score: float = 0.0
    criteria: list[dict] = field(default_factory=list)
    verified_at: float = 0.0
    commitment: str = ""
    max_score: float = 0.0
    expires_at: Optional[float] = None

    def __post_init__(self):
        self.provider = normalize_provider(self.provider)
        if not self.max_score:
            self.max_score = max_score_for(self.provider)

    @property
    def effective_expires_at(self) -> Optional[float]:
        """Explicit expiry, else 90 days after verification, else None."""
        if self.expires_at:
            return self.expires_at
        if self.verified_at:
            return expiry_date(self.verified_at)
        return None

    def is_valid(self, now: Optional[float] = None) -> bool:
        if not self.verified:
            return False
        expires = self.effective_expires_at
        if expires is None:
            return True
        now = time.time() if now is None else now
        return expires > now

    def status(self, now: Optional[float] = None) -> CredentialStatus:
        if not self.verified:
            return CredentialStatus.DISCONNECTED
        expires = self.effective_expires_at
        now = time.time() if now is None else now
        if expires is not None and expires <= now:
            return CredentialStatus.EXPIRED
        if not self.verified_at:
            return CredentialStatus.DISCONNECTED
        return CredentialStatus.CONNECTED

    def days_remaining(self, now: Optional[float] = None) -> int:
        expires = self.effective_expires_at
        if not self.verified_at or expires is None:
            return 0
        now = time.time() if now is None else now
        return max(0, math.ceil((expires - now) / DAY))

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "verified": self.verified,
            "score": self.score,
            "criteria": list(self.criteria),
            "verifiedAt": self.verified_at,
            "commitment": self.commitment,
            "maxScore": self.max_score,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], provider: str = "") -> "Credential":
        """Tolerant of snake_case, camelCase and missing fields."""
        def pick(*names, default=None):
            for n in names:
                if n in data and data[n] is not None:
                    return data[n]
            return default

        criteria = pick("criteria", default=[])
        expires = pick("expiresAt", "expires_at")
        return cls(
            provider=str(pick("provider", default=provider) or provider),
            verified=bool(pick("verified", default=False)),
            score=_as_float(pick("score", default=0)),
            criteria=list(criteria) if isinstance(criteria, list) else [],
            verified_at=_as_float(pick("verifiedAt", "verified_at", "timestamp", default=0)),
            commitment=str(pick("commitment", "metadataHash", default="")),
            max_score=_as_float(pick("maxScore", "max_score", default=0)),
            expires_at=_as_float(expires) or None,
        )

    def to_view(self, now: Optional[float] = None) -> dict:
        """Public listing shape used by the API and CLI."""
        return {
            "provider": self.provider,
            "score": self.score,
            "maxScore": self.max_score,
            "status": self.status(now).value,
            "criteria": list(self.criteria),
            "verifiedAt": to_iso(self.verified_at),
            "expiresAt": to_iso(self.effective_expires_at),
            "daysRemaining": self.days_remaining(now),
        }


CredentialsInput = Union[Mapping[str, Union[Credential, Mapping[str, Any]]], Iterable[Credential], None]


def coerce_credentials(credentials: CredentialsInput) -> list[Credential]:
    """Accept a provider-keyed mapping or an iterable of Credential objects."""
    if not credentials:
        return []
    if isinstance(credentials, Mapping):
        items = []
        for provider, value in credentials.items():
            if isinstance(value, Credential):
                items.append(value)
            elif isinstance(value, Mapping):
                items.append(Credential.from_dict(value, provider=provider))
        return items
    return [c for c in credentials if isinstance(c, Credential)]


# ─── Aggregation ──────────────────────────────────────────────────

@dataclass
class ScoreBreakdown:
    total_score: float
    verified_count: int
    total_providers: int
    breakdown: dict[str, dict] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "totalScore": self.total_score,
            "verifiedCount": self.verified_count,
            "totalProviders": self.total_providers,
            "breakdown": self.breakdown,
        }


class ScoreAggregator:
    """Sums verified, unexpired credentials. Pure apart from the clock."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    def valid_credentials(self, credentials: CredentialsInput, now: Optional[float] = None) -> list[Credential]:
        """Valid credentials, one per provider: the most recently verified wins."""
        now = self._clock() if now is None else now
        latest: dict[str, Credential] = {}
        for c in coerce_credentials(credentials):
            if not c.is_valid(now):
                continue
            current = latest.get(c.provider)
            if current is None or (c.verified_at, c.score) > (current.verified_at, current.score):
                latest[c.provider] = c
        return [latest[p] for p in sorted(latest)]

    def get_total_score(self, credentials: CredentialsInput, now: Optional[float] = None) -> float:
        # fsum keeps the total independent of iteration order
        return math.fsum(c.score for c in self.valid_credentials(credentials, now))

    def get_breakdown(self, credentials: CredentialsInput, now: Optional[float] = None) -> ScoreBreakdown:
        valid = self.valid_credentials(credentials, now)
        breakdown = {
            c.provider: {
                "score": c.score,
                "maxScore": c.max_score,
                "verifiedAt": to_iso(c.verified_at),
            }
            for c in valid
        }
        return ScoreBreakdown(
            total_score=math.fsum(c.score for c in valid),
            verified_count=len(valid),
            total_providers=len(breakdown),
            breakdown=breakdown,
        )
