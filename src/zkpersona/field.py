"""zkpersona.field — Helpers for ledger field elements.

Field elements travel as decimal strings tagged with a ``field`` suffix
(``"123field"``). Every value produced here is reduced below the
BLS12-377 scalar field modulus used by the ledger.

Usage:
    to_field(42)                    # "42field"
    field_to_int("42field")         # 42
    string_to_field("my-app")       # SHA-256 of the UTF-8 bytes, reduced
    is_valid_field("42field")       # True
"""

from __future__ import annotations

import hashlib
import math
import re
from typing import Any

FIELD_MODULUS = 8444461749428370424248824938781546531375899335154063827935233455917409239041
FIELD_SUFFIX = "field"

_DECIMAL = re.compile(r"^\d+$")


def to_field(value: int) -> str:
    """Reduce ``value`` into the field and tag it."""
    return f"{int(value) % FIELD_MODULUS}{FIELD_SUFFIX}"


def strip_field(value: str) -> str:
    """Drop a trailing ``field`` tag, if present."""
    value = value.strip()
    if value.endswith(FIELD_SUFFIX):
        return value[: -len(FIELD_SUFFIX)]
    return value


def is_valid_field(value: Any) -> bool:
    """True for a tagged decimal in ``[0, FIELD_MODULUS)``."""
    if not isinstance(value, str) or not value.endswith(FIELD_SUFFIX):
        return False
    digits = value[: -len(FIELD_SUFFIX)]
    if not _DECIMAL.match(digits):
        return False
    return int(digits) < FIELD_MODULUS


def string_to_field(text: str) -> int:
    """Hash arbitrary text into the field.

    The whole UTF-8 encoding is hashed, so ids sharing a long prefix stay
    distinct and no text collides with a small numeric id.
    """
    if not text:
        return 0
    return int(hashlib.sha256(text.encode("utf-8")).hexdigest(), 16) % FIELD_MODULUS


def is_numeric(value: str) -> bool:
    """True for a plain or ``field``-tagged decimal string."""
    return bool(_DECIMAL.match(strip_field(value)))


def hex_to_field(hex_digest: str) -> str:
    """Reduce a hex digest (with or without ``0x``) into a tagged field."""
    clean = hex_digest[2:] if hex_digest.lower().startswith("0x") else hex_digest
    return to_field(int(clean, 16))


def field_to_int(value: Any) -> int:
    """Best-effort conversion of a loosely typed input to a field integer.

    Integers pass through; decimal strings (tagged or not) are parsed;
    any other string is hashed with :func:`string_to_field`. ``None``,
    booleans and unparseable objects become ``0``. The result is always
    reduced below the modulus.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value % FIELD_MODULUS
    if isinstance(value, float):
        return int(value) % FIELD_MODULUS if math.isfinite(value) else 0
    if isinstance(value, str):
        digits = strip_field(value)
        if not digits:
            return 0
        if _DECIMAL.match(digits):
            return int(digits) % FIELD_MODULUS
        return string_to_field(value.strip()) % FIELD_MODULUS
    return 0
