"""zkpersona.config — Runtime settings read from the environment.

Configuration via environment:
    BACKEND_URL          — status backend base URL (default http://localhost:3001)
    SESSION_TTL          — server-side session lifetime in seconds (default 60)
    POLL_TIMEOUT         — client polling ceiling in seconds (default 60)
    WALLET_TIMEOUT       — per-attempt wallet call timeout in seconds (default 30)
    WALLET_MAX_RETRIES   — wallet call attempts (default 3)
    WALLET_RETRY_DELAY   — seconds between attempts (default 2)
    COMMITMENT_SCHEME    — "keyed" (default) or "arithmetic"
    SECRET_SALT          — salt/key for commitments
    PROGRAM_ID           — ledger program (default passportapp.aleo)
    NETWORK              — ledger network name (default testnetbeta)
    EXPLORER_URL         — ledger explorer REST base URL
    VERIFIER_URL         — proof verifier service URL (optional)
    STORAGE_BACKEND      — memory | sqlite | file (default memory)
    STORAGE_PATH         — database file or data directory
    ALLOWED_ORIGINS      — comma-separated CORS origins
    ADMIN_API_KEY        — key required by provider callbacks
    LOG_LEVEL            — logging level (default INFO)
    ZKPERSONA_PRODUCTION — hide interactive docs when set
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_PROGRAM_ID = "passportapp.aleo"
SCHEMES = ("keyed", "arithmetic")
STORAGE_BACKENDS = ("memory", "sqlite", "file")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    backend_url: str = "http://localhost:3001"
    session_ttl: float = 60.0
    poll_timeout: float = 60.0
    wallet_timeout: float = 30.0
    wallet_max_retries: int = 3
    wallet_retry_delay: float = 2.0
    commitment_scheme: str = "keyed"
    secret_salt: str = ""
    program_id: str = DEFAULT_PROGRAM_ID
    network: str = "testnetbeta"
    explorer_url: str = "https://api.explorer.provable.com/v1"
    verifier_url: Optional[str] = None
    storage_backend: str = "memory"
    storage_path: str = "zkpersona.db"
    allowed_origins: list[str] = field(default_factory=list)
    admin_api_key: str = ""
    log_level: str = "INFO"
    production: bool = False

    def __post_init__(self):
        if self.commitment_scheme not in SCHEMES:
            raise ValueError(f"commitment_scheme must be one of {SCHEMES}, got {self.commitment_scheme!r}")
        if self.storage_backend not in STORAGE_BACKENDS:
            raise ValueError(f"storage_backend must be one of {STORAGE_BACKENDS}, got {self.storage_backend!r}")
        if self.wallet_max_retries < 1:
            raise ValueError("wallet_max_retries must be >= 1")
        if self.session_ttl <= 0 or self.poll_timeout <= 0 or self.wallet_timeout <= 0:
            raise ValueError("timeouts must be positive")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        defaults = cls()
        return cls(
            backend_url=os.environ.get("BACKEND_URL", defaults.backend_url).rstrip("/"),
            session_ttl=_env_float("SESSION_TTL", defaults.session_ttl),
            poll_timeout=_env_float("POLL_TIMEOUT", defaults.poll_timeout),
            wallet_timeout=_env_float("WALLET_TIMEOUT", defaults.wallet_timeout),
            wallet_max_retries=_env_int("WALLET_MAX_RETRIES", defaults.wallet_max_retries),
            wallet_retry_delay=_env_float("WALLET_RETRY_DELAY", defaults.wallet_retry_delay),
            commitment_scheme=os.environ.get("COMMITMENT_SCHEME", defaults.commitment_scheme).lower(),
            secret_salt=os.environ.get("SECRET_SALT", ""),
            program_id=os.environ.get("PROGRAM_ID", defaults.program_id),
            network=os.environ.get("NETWORK", defaults.network),
            explorer_url=os.environ.get("EXPLORER_URL", defaults.explorer_url).rstrip("/"),
            verifier_url=os.environ.get("VERIFIER_URL") or None,
            storage_backend=os.environ.get("STORAGE_BACKEND", defaults.storage_backend).lower(),
            storage_path=os.environ.get("STORAGE_PATH", defaults.storage_path),
            allowed_origins=_env_list("ALLOWED_ORIGINS"),
            admin_api_key=os.environ.get("ADMIN_API_KEY", ""),
            log_level=os.environ.get("LOG_LEVEL", defaults.log_level),
            production=bool(os.environ.get("ZKPERSONA_PRODUCTION")),
        )

    def wallet_call_options(self) -> dict:
        """Keyword arguments for :func:`zkpersona.resilience.with_timeout`."""
        return {
            "timeout": self.wallet_timeout,
            "max_retries": self.wallet_max_retries,
            "retry_delay": self.wallet_retry_delay,
        }
