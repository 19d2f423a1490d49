"""zkpersona.providers — Registry of credential providers.

Each provider has a verification kind (an OAuth redirect flow or a wallet
signature), the maximum score it can contribute and its ledger platform id.
The kind decides how often a pending session is polled.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .commitments import PLATFORM_IDS
from .errors import UnknownProviderError


class ProviderKind(str, Enum):
    OAUTH = "oauth"
    SIGNATURE = "signature"


POLL_INTERVALS = {
    ProviderKind.OAUTH: 1.0,
    ProviderKind.SIGNATURE: 0.5,
}


@dataclass(frozen=True)
class Provider:
    name: str
    kind: ProviderKind
    max_score: float
    platform_id: Optional[int] = None

    @property
    def poll_interval(self) -> float:
        return POLL_INTERVALS[self.kind]


PROVIDERS: dict[str, Provider] = {
    p.name: p
    for p in (
        Provider("google", ProviderKind.OAUTH, 15, PLATFORM_IDS["google"]),
        Provider("twitter", ProviderKind.OAUTH, 30, PLATFORM_IDS["twitter"]),
        Provider("github", ProviderKind.OAUTH, 25, PLATFORM_IDS["github"]),
        Provider("discord", ProviderKind.OAUTH, 7.8, PLATFORM_IDS["discord"]),
        Provider("telegram", ProviderKind.OAUTH, 10, PLATFORM_IDS["telegram"]),
        Provider("tiktok", ProviderKind.OAUTH, 10),
        Provider("steam", ProviderKind.OAUTH, 2.8, PLATFORM_IDS["steam"]),
        Provider("evm", ProviderKind.SIGNATURE, 35, PLATFORM_IDS["evm"]),
        Provider("solana", ProviderKind.SIGNATURE, 40, PLATFORM_IDS["solana"]),
    )
}

# Older clients report EVM credentials under "ethereum".
ALIASES = {"ethereum": "evm"}


def normalize_provider(name: str) -> str:
    key = (name or "").strip().lower()
    return ALIASES.get(key, key)


def get_provider(name: str) -> Provider:
    """Look up a provider, raising UnknownProviderError for unsupported names."""
    key = normalize_provider(name)
    try:
        return PROVIDERS[key]
    except KeyError:
        raise UnknownProviderError(name) from None


def is_known_provider(name: str) -> bool:
    return normalize_provider(name) in PROVIDERS


def max_score_for(name: str, default: float = 0) -> float:
    """Maximum contribution of a provider; ``default`` for unknown names."""
    provider = PROVIDERS.get(normalize_provider(name))
    return provider.max_score if provider else default


def poll_interval_for(name: str) -> float:
    """Polling cadence for a provider's sessions; unknown providers poll as OAuth."""
    provider = PROVIDERS.get(normalize_provider(name))
    return provider.poll_interval if provider else POLL_INTERVALS[ProviderKind.OAUTH]
