"""zkpersona.selection — Fixed-arity stamp selection for the proof circuit.

The ledger transitions take exactly five stamp records, so a holder's
variable-size stamp collection is filtered, ordered and padded here
before it is handed to the credential agent.

Usage:
    slots = prepare_for_proof(stamps)            # top 5 by points
    slots = prepare_for_aggregation(stamps)      # first 5 by stamp_id
    can_meet_score_requirement(stamps, 20)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, asdict
from typing import Any, Iterable, Optional

DEFAULT_SLOTS = 5
POINTS_PER_STAMP = 5
POINTS_DIVISOR = 100
MAX_SCORE = 100

# `name: value` pairs inside a ledger record plaintext
_RECORD_FIELD = re.compile(r"(\w+)\s*:\s*([^,\n}]+)")
_TYPE_SUFFIX = re.compile(r"(u8|u16|u32|u64|u128|i64|field|group|scalar)$")

_FIELD_ALIASES = {
    "owner": "owner",
    "passport_owner": "owner",
    "stamp_id": "stamp_id",
    "stampId": "stamp_id",
    "points": "points",
    "issuer": "issuer",
    "issued_at": "issued_at",
    "issuedAt": "issued_at",
    "earned_at": "issued_at",
}


def _as_int(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value and abs(value) != float("inf") else 0
    if isinstance(value, str):
        cleaned = _TYPE_SUFFIX.sub("", value.strip())
        try:
            return int(cleaned)
        except ValueError:
            return 0
    return 0


@dataclass
class StampRecord:
    """A holder-owned stamp. Only stamp_id and points drive selection."""
    owner: Optional[str] = None
    stamp_id: int = 0
    points: int = 0
    issuer: str = ""
    issued_at: int = 0
    plaintext: Optional[str] = None

    @classmethod
    def from_plaintext(cls, text: str) -> "StampRecord":
        """Parse a ledger record plaintext (``{ owner: aleo1...private, stamp_id: 3u32.private, ... }``)."""
        values: dict[str, Any] = {}
        for name, raw in _RECORD_FIELD.findall(text or ""):
            key = _FIELD_ALIASES.get(name)
            if key is None or key in values:
                continue
            raw = raw.strip()
            for visibility in (".private", ".public"):
                if raw.endswith(visibility):
                    raw = raw[: -len(visibility)]
            values[key] = raw
        return cls(
            owner=values.get("owner"),
            stamp_id=_as_int(values.get("stamp_id")),
            points=_as_int(values.get("points")),
            issuer=str(values.get("issuer", "")),
            issued_at=_as_int(values.get("issued_at")),
            plaintext=text,
        )

    @classmethod
    def coerce(cls, item: Any) -> Optional["StampRecord"]:
        """Normalise a record, dict or plaintext. Returns None for unusable input."""
        if item is None:
            return None
        if isinstance(item, StampRecord):
            return item
        if isinstance(item, str):
            return cls.from_plaintext(item)
        if isinstance(item, dict):
            data: dict[str, Any] = {}
            for name, value in item.items():
                key = _FIELD_ALIASES.get(name)
                if key is not None and key not in data:
                    data[key] = value
            owner = data.get("owner")
            return cls(
                owner=None if owner is None else str(owner),
                stamp_id=_as_int(data.get("stamp_id")),
                points=_as_int(data.get("points")),
                issuer=str(data.get("issuer") or ""),
                issued_at=_as_int(data.get("issued_at")),
                plaintext=item.get("plaintext"),
            )
        return None

    @classmethod
    def padding(cls, owner: Optional[str]) -> "StampRecord":
        return cls(owner=owner or "", stamp_id=0, points=0, issuer="", issued_at=0)

    @property
    def is_padding(self) -> bool:
        return self.stamp_id == 0

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("plaintext")
        return d


def _normalise(stamps: Optional[Iterable[Any]]) -> list[StampRecord]:
    records = (StampRecord.coerce(s) for s in (stamps or []))
    return [r for r in records if r is not None and r.stamp_id != 0]


def _selectable(stamps: Optional[Iterable[Any]]) -> list[StampRecord]:
    return [r for r in _normalise(stamps) if r.owner is not None]


def _pad(selected: list[StampRecord], max_slots: int) -> list[StampRecord]:
    owner = selected[0].owner if selected else ""
    return selected + [StampRecord.padding(owner) for _ in range(max_slots - len(selected))]


def prepare_for_aggregation(stamps: Optional[Iterable[Any]], max_slots: int = DEFAULT_SLOTS) -> list[StampRecord]:
    """Deterministic slots: lowest stamp ids first, zero-padded to ``max_slots``."""
    valid = sorted(_selectable(stamps), key=lambda r: r.stamp_id)
    return _pad(valid[:max_slots], max_slots)


def prepare_for_proof(stamps: Optional[Iterable[Any]], max_slots: int = DEFAULT_SLOTS) -> list[StampRecord]:
    """Score-maximising slots: highest points first, zero-padded to ``max_slots``."""
    valid = sorted(_selectable(stamps), key=lambda r: r.points, reverse=True)
    return _pad(valid[:max_slots], max_slots)


def calculate_stamp_score(stamps: Optional[Iterable[Any]]) -> int:
    """``min(100, count*5 + floor(total_points/100))`` over non-zero stamps."""
    valid = _normalise(stamps)
    total_points = sum(r.points for r in valid)
    return min(MAX_SCORE, len(valid) * POINTS_PER_STAMP + total_points // POINTS_DIVISOR)


def can_meet_score_requirement(stamps: Optional[Iterable[Any]], min_score: int) -> bool:
    return calculate_stamp_score(stamps) >= min_score
