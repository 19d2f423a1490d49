"""zkpersona.sessions — Asynchronous provider verification sessions.

A verification starts a provider flow (OAuth redirect or wallet signature)
that finishes out of band. The backend tracks it as a session; the client
polls until the session is terminal.

    in_progress ──► verified   (credential saved once)
         │
         └────────► failed

Terminal states are final. Client side, :class:`VerificationSessionMachine`
polls through a :class:`StatusClient`; server side, :class:`SessionRegistry`
holds sessions in memory with a short TTL.

Usage:
    async with StatusClient("http://localhost:3001") as client:
        machine = VerificationSessionMachine(client, on_verified=save)
        session_id = await machine.start("github", wallet)
        session = await machine.await_terminal(session_id, "github")
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from .errors import SessionFailedError, SessionTimeoutError, TransientError
from .events import EventBus, EventType, SessionSettled
from .providers import normalize_provider, poll_interval_for
from .tasks import CancellableTask

logger = logging.getLogger(__name__)

DEFAULT_POLL_TIMEOUT = 60.0
DEFAULT_SESSION_TTL = 60.0


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    VERIFIED = "verified"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.IN_PROGRESS


# ─── Data model ────────────────────────────────────────────────────

@dataclass
class VerificationCriterion:
    condition: str
    points: float = 0.0
    description: str = ""
    achieved: bool = True

    def to_dict(self) -> dict:
        return {
            "condition": self.condition,
            "points": self.points,
            "description": self.description,
            "achieved": self.achieved,
        }

    @classmethod
    def from_dict(cls, d: Any) -> Optional["VerificationCriterion"]:
        if not isinstance(d, dict) or not d.get("condition"):
            return None
        try:
            points = float(d.get("points") or 0)
        except (TypeError, ValueError):
            points = 0.0
        return cls(
            condition=str(d["condition"]),
            points=points,
            description=str(d.get("description") or ""),
            achieved=bool(d.get("achieved", True)),
        )


@dataclass
class VerificationResult:
    """What a provider reports for a finished verification.

    ``subject_id`` is the provider-side account id. It is hashed into the
    credential commitment and never stored as-is.
    """
    provider: str
    subject_id: str = ""
    score: float = 0.0
    criteria: list[VerificationCriterion] = field(default_factory=list)
    commitment: str = ""
    verified_at: float = 0.0

    def to_dict(self, include_subject: bool = True) -> dict:
        d = {
            "provider": self.provider,
            "score": self.score,
            "criteria": [c.to_dict() for c in self.criteria],
            "commitment": self.commitment,
            "verifiedAt": self.verified_at,
        }
        if include_subject:
            d["subjectId"] = self.subject_id
        return d

    @classmethod
    def from_dict(cls, d: Any, provider: str = "") -> Optional["VerificationResult"]:
        if not isinstance(d, dict):
            return None
        try:
            score = float(d.get("score") or 0)
        except (TypeError, ValueError):
            score = 0.0
        try:
            verified_at = float(d.get("verifiedAt") or d.get("verified_at") or 0)
        except (TypeError, ValueError):
            verified_at = 0.0
        criteria = [
            c for c in (VerificationCriterion.from_dict(x) for x in (d.get("criteria") or []))
            if c is not None
        ]
        return cls(
            provider=normalize_provider(str(d.get("provider") or provider)),
            subject_id=str(d.get("subjectId") or d.get("subject_id") or d.get("userId") or ""),
            score=score,
            criteria=criteria,
            commitment=str(d.get("commitment") or d.get("metadataHash") or ""),
            verified_at=verified_at,
        )


@dataclass
class VerificationSession:
    session_id: str
    provider: str
    status: SessionStatus = SessionStatus.IN_PROGRESS
    result: Optional[VerificationResult] = None
    wallet_id: str = ""
    reason: str = ""
    started_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_payload(self) -> dict:
        """Wire shape of ``GET /auth/{provider}/status``."""
        result: Any = self.result.to_dict(include_subject=False) if self.result else None
        if self.status is SessionStatus.FAILED and self.reason:
            result = {"error": self.reason}
        return {
            "provider": self.provider,
            "session": self.session_id,
            "status": self.status.value,
            "result": result,
        }

    @classmethod
    def from_payload(cls, payload: Any, *, session_id: str, provider: str) -> Optional["VerificationSession"]:
        """Parse a status response. Unrecognised shapes mean "not available yet"."""
        if not isinstance(payload, dict):
            return None
        try:
            status = SessionStatus(payload.get("status"))
        except ValueError:
            return None
        raw_result = payload.get("result")
        reason = ""
        if status is SessionStatus.FAILED and isinstance(raw_result, dict):
            reason = str(raw_result.get("error") or "")
        result = None
        if status is SessionStatus.VERIFIED:
            result = VerificationResult.from_dict(raw_result, provider=provider)
        return cls(
            session_id=str(payload.get("session") or session_id),
            provider=normalize_provider(str(payload.get("provider") or provider)),
            status=status,
            result=result,
            reason=reason,
        )


# ─── Server-side registry ─────────────────────────────────────────

class SessionRegistry:
    """In-memory session table with TTL expiry. Transitions only leave in_progress."""

    def __init__(self, ttl: float = DEFAULT_SESSION_TTL, clock: Callable[[], float] = time.time):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self._clock = clock
        self._sessions: dict[str, VerificationSession] = {}
        self._lock = threading.Lock()

    def _expired(self, session: VerificationSession, now: float) -> bool:
        return session.started_at + self.ttl <= now

    def create(self, provider: str, wallet_id: str) -> VerificationSession:
        provider = normalize_provider(provider)
        session = VerificationSession(
            session_id=f"{provider}_{uuid.uuid4()}",
            provider=provider,
            wallet_id=wallet_id,
            started_at=self._clock(),
        )
        with self._lock:
            purged = self._purge_locked(session.started_at)
            self._sessions[session.session_id] = session
        if purged:
            logger.debug("Purged %d expired session(s)", purged)
        logger.info("Session %s started for %s", session.session_id, provider)
        return session

    def get(self, session_id: str) -> Optional[VerificationSession]:
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and self._expired(session, now):
                del self._sessions[session_id]
                logger.info("Session %s expired", session_id)
                return None
            return session

    def _transition(self, session_id: str, status: SessionStatus, **changes) -> bool:
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or self._expired(session, now):
                return False
            if session.is_terminal:
                logger.warning("Ignoring %s for session %s already %s",
                               status.value, session_id, session.status.value)
                return False
            session.status = status
            for name, value in changes.items():
                setattr(session, name, value)
        logger.info("Session %s -> %s", session_id, status.value)
        return True

    def complete(self, session_id: str, result: VerificationResult) -> bool:
        """Mark verified. Returns False if unknown, expired or already terminal."""
        return self._transition(session_id, SessionStatus.VERIFIED, result=result)

    def fail(self, session_id: str, reason: str = "") -> bool:
        return self._transition(session_id, SessionStatus.FAILED, reason=reason)

    def consume(self, session_id: str) -> Optional[VerificationSession]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def _purge_locked(self, now: float) -> int:
        stale = [sid for sid, s in self._sessions.items() if self._expired(s, now)]
        for sid in stale:
            del self._sessions[sid]
        return len(stale)

    def purge_expired(self) -> int:
        """Drop every expired session; also runs on each create()."""
        now = self._clock()
        with self._lock:
            return self._purge_locked(now)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


# ─── Status client ────────────────────────────────────────────────

class StatusClient:
    """HTTP client for the session endpoints of the backend."""

    def __init__(self, base_url: str = "", *, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    @classmethod
    def from_settings(cls, settings, *, client: Optional[httpx.AsyncClient] = None) -> "StatusClient":
        return cls(settings.backend_url, client=client)

    async def __aenter__(self) -> "StatusClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def start(self, provider: str, wallet_id: str) -> str:
        """Open a provider flow and return its session id."""
        try:
            resp = await self._client.get(f"/auth/{provider}/start", params={"walletId": wallet_id})
            resp.raise_for_status()
            session_id = resp.json().get("sessionId")
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            raise TransientError(f"Could not start {provider} verification: {exc}") from exc
        if not session_id:
            raise TransientError(f"Backend returned no session id for {provider}")
        return str(session_id)

    async def fetch_status(self, session_id: str, provider: str) -> Optional[VerificationSession]:
        """One status read. Any transport or decoding problem yields None."""
        try:
            resp = await self._client.get(f"/auth/{provider}/status", params={"session": session_id})
        except httpx.HTTPError as exc:
            logger.debug("Status poll for %s failed: %s", session_id, exc)
            return None
        if resp.status_code != 200:
            logger.debug("Status poll for %s returned HTTP %d", session_id, resp.status_code)
            return None
        try:
            payload = resp.json()
        except ValueError:
            logger.debug("Status poll for %s returned non-JSON body", session_id)
            return None
        return VerificationSession.from_payload(payload, session_id=session_id, provider=provider)


# ─── Client-side state machine ────────────────────────────────────

VerifiedHook = Callable[[VerificationSession], Union[None, Awaitable[None]]]


class VerificationSessionMachine:
    """Polls sessions to a terminal state and applies the verified side effect once.

    Per session id the machine remembers the first terminal observation;
    later polls return that record, so a verified session can never be
    seen going back to in_progress or over to failed.
    """

    def __init__(
        self,
        client: StatusClient,
        *,
        on_verified: Optional[VerifiedHook] = None,
        bus: Optional[EventBus] = None,
        timeout: float = DEFAULT_POLL_TIMEOUT,
    ):
        self.client = client
        self.on_verified = on_verified
        self.bus = bus
        self.timeout = timeout
        self._terminal: dict[str, VerificationSession] = {}
        self._settled: set[str] = set()
        self._settling: set[str] = set()

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        client: Optional[StatusClient] = None,
        on_verified: Optional[VerifiedHook] = None,
        bus: Optional[EventBus] = None,
    ) -> "VerificationSessionMachine":
        """Machine talking to ``BACKEND_URL`` with the ``POLL_TIMEOUT`` ceiling."""
        return cls(
            client or StatusClient.from_settings(settings),
            on_verified=on_verified,
            bus=bus,
            timeout=settings.poll_timeout,
        )

    async def start(self, provider: str, wallet_id: str) -> str:
        session_id = await self.client.start(normalize_provider(provider), wallet_id)
        logger.info("Started %s verification session %s", provider, session_id)
        return session_id

    async def _observe(self, session_id: str, provider: str) -> Optional[VerificationSession]:
        session = self._terminal.get(session_id)
        if session is not None:
            return session
        fetched = await self.client.fetch_status(session_id, provider)
        if fetched is None:
            return None
        # a concurrent poll may have recorded a terminal state meanwhile
        session = self._terminal.get(session_id)
        if session is None:
            if not fetched.is_terminal:
                return fetched
            self._terminal[session_id] = session = fetched
        return session

    async def poll(self, session_id: str, provider: str) -> Optional[VerificationSession]:
        """Fetch the current status once; None means "not available yet"."""
        session = await self._observe(session_id, provider)
        if session is not None and session.is_terminal:
            await self._settle(session)
        return session

    async def _settle(self, session: VerificationSession) -> None:
        sid = session.session_id
        if sid in self._settled or sid in self._settling:
            return
        self._settling.add(sid)
        try:
            if session.status is SessionStatus.VERIFIED and self.on_verified is not None:
                outcome = self.on_verified(session)
                if inspect.isawaitable(outcome):
                    await outcome
            self._settled.add(sid)
        finally:
            self._settling.discard(sid)

        score = session.result.score if session.result else 0.0
        if session.status is SessionStatus.VERIFIED:
            logger.info("Session %s verified (%s, score=%s)", sid, session.provider, score)
            event_type = EventType.SESSION_VERIFIED
        else:
            logger.info("Session %s failed (%s): %s", sid, session.provider, session.reason or "no reason")
            event_type = EventType.SESSION_FAILED
        if self.bus is not None:
            self.bus.emit(
                event_type,
                SessionSettled(sid, session.provider, session.status.value, score, session.reason),
                source="sessions",
                dedup_key=sid,
            )

    async def await_terminal(
        self,
        session_id: str,
        provider: str,
        *,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> VerificationSession:
        """Poll until verified (returned) or failed (SessionFailedError).

        Polls immediately, then every ``interval`` seconds (1.0 for OAuth
        providers, 0.5 for signature providers by default). Raises
        SessionTimeoutError once ``timeout`` seconds pass without a
        terminal status. The deadline bounds status fetches only; once a
        terminal status is seen, the verified hook runs to completion.
        """
        interval = poll_interval_for(provider) if interval is None else interval
        timeout = self.timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                session = await asyncio.wait_for(self._observe(session_id, provider), remaining)
            except asyncio.TimeoutError:
                break
            if session is not None and session.is_terminal:
                # the deadline bounds observation only; a terminal state always settles
                await self._settle(session)
                if session.status is SessionStatus.VERIFIED:
                    return session
                if session.status is SessionStatus.FAILED:
                    raise SessionFailedError(session_id, session.provider, session.reason)
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval, remaining))

        logger.warning("Session %s timed out after %.1fs", session_id, timeout)
        if self.bus is not None:
            self.bus.emit(
                EventType.SESSION_TIMED_OUT,
                SessionSettled(session_id, normalize_provider(provider), "timeout"),
                source="sessions",
                dedup_key=session_id,
            )
        raise SessionTimeoutError(session_id, timeout)

    def watch(
        self,
        session_id: str,
        provider: str,
        *,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> CancellableTask[VerificationSession]:
        """Run :meth:`await_terminal` in the background; cancel() stops interval and deadline together."""
        return CancellableTask(
            self.await_terminal(session_id, provider, interval=interval, timeout=timeout),
            name=f"watch:{session_id}",
        )

    async def verify(self, provider: str, wallet_id: str, **kwargs) -> VerificationSession:
        """Start a flow and wait for its outcome."""
        session_id = await self.start(provider, wallet_id)
        return await self.await_terminal(session_id, provider, **kwargs)
