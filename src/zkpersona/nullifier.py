"""zkpersona.nullifier — Per-application nullifiers.

A nullifier is a pure function of ``(nonce, app_id)``: the same holder
produces the same nullifier for an application every time (replay
detection), and unrelated nullifiers for different applications
(no cross-app linkage). Whether a nullifier was already spent is tracked
by the ledger, not here.
"""

from __future__ import annotations

from typing import Any

from .commitments import CommitmentScheme, get_scheme
from .field import field_to_int, to_field


class NullifierDerivation:

    def __init__(self, scheme: str | CommitmentScheme = "keyed", secret_salt: str = ""):
        self.scheme = scheme if isinstance(scheme, CommitmentScheme) else get_scheme(scheme, secret_salt)

    @classmethod
    def from_settings(cls, settings) -> "NullifierDerivation":
        return cls(settings.commitment_scheme, settings.secret_salt)

    def derive(self, nonce: Any, app_id: Any) -> str:
        """Nullifier for ``app_id``.

        ``nonce`` is usually the holder's ``"<n>field"`` record value; the
        suffix is stripped. Non-numeric application ids (``"my-app"``) are
        packed into a field first, so they are never silently zero.
        """
        return to_field(self.scheme.nullifier(field_to_int(nonce), field_to_int(app_id)))
