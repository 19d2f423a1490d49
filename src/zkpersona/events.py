"""
zkpersona.events — Typed publish/subscribe channel between components.

The session machine, credential store and prover announce state changes
here instead of through ambient globals: each component receives the bus
it should publish on, and listeners subscribe with glob patterns.

Usage:
    bus = EventBus()
    bus.subscribe("credential.*", on_credential)
    bus.emit(EventType.SESSION_VERIFIED, SessionSettled(...), dedup_key=session_id)

A ``dedup_key`` makes delivery idempotent: a second emit with the same
type and key is dropped, so a terminal session observed twice notifies
listeners once.
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field, asdict, is_dataclass
from enum import Enum
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CREDENTIAL_SAVED = "credential.saved"
    CREDENTIAL_REMOVED = "credential.removed"
    SESSION_VERIFIED = "session.verified"
    SESSION_FAILED = "session.failed"
    SESSION_TIMED_OUT = "session.timed_out"
    PROOF_GENERATED = "proof.generated"
    PROOF_REJECTED = "proof.rejected"


# ─── Payloads ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class CredentialChanged:
    wallet: str
    provider: str
    score: float = 0.0
    status: str = ""


@dataclass(frozen=True)
class SessionSettled:
    session_id: str
    provider: str
    status: str
    score: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class ProofIssued:
    app_id: str
    nullifier: str
    valid: bool
    transaction_id: Optional[str] = None


Payload = Union[CredentialChanged, SessionSettled, ProofIssued]


@dataclass
class Event:
    event_type: str
    payload: Any = None
    timestamp: float = 0.0
    source: str = ""
    event_id: str = ""

    def __post_init__(self):
        if isinstance(self.event_type, EventType):
            self.event_type = self.event_type.value
        if not self.timestamp:
            self.timestamp = time.time()
        if not self.event_id:
            self.event_id = uuid.uuid4().hex[:16]

    def to_dict(self) -> dict:
        payload = asdict(self.payload) if is_dataclass(self.payload) else self.payload
        return {
            "event_type": self.event_type,
            "payload": payload,
            "timestamp": self.timestamp,
            "source": self.source,
            "event_id": self.event_id,
        }


def dedup_id(event_type: str, key: str) -> str:
    return hashlib.sha256(f"{event_type}:{key}".encode()).hexdigest()[:16]


@dataclass
class Subscription:
    subscriber_id: str
    patterns: list[str]
    callback: Callable[[Event], None]
    created_at: float = field(default_factory=time.time)

    def matches(self, event_type: str) -> bool:
        return any(fnmatch.fnmatch(event_type, p) for p in self.patterns)


class EventBus:
    """
    In-process event bus.

    Thread-safe. Callbacks run synchronously in the emitting task; a
    failing callback is logged and does not stop delivery to the others.
    """

    def __init__(self, max_history: int = 1000, max_dedup_keys: int = 10000):
        self._subscriptions: dict[str, Subscription] = {}
        self._history: list[Event] = []
        self._max_history = max_history
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._max_dedup_keys = max_dedup_keys
        self._lock = threading.Lock()

    def subscribe(
        self,
        patterns: str | list[str],
        callback: Callable[[Event], None],
        subscriber_id: Optional[str] = None,
    ) -> str:
        """Register ``callback`` for event types matching glob pattern(s). Returns the subscription id."""
        if isinstance(patterns, str):
            patterns = [patterns]
        patterns = [p.value if isinstance(p, EventType) else p for p in patterns]
        if not subscriber_id:
            subscriber_id = f"sub:{uuid.uuid4().hex[:8]}"

        with self._lock:
            self._subscriptions[subscriber_id] = Subscription(
                subscriber_id=subscriber_id, patterns=patterns, callback=callback,
            )
        return subscriber_id

    def unsubscribe(self, subscriber_id: str) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscriber_id, None) is not None

    def emit(
        self,
        event_type: str | EventType,
        payload: Any = None,
        source: str = "",
        dedup_key: Optional[str] = None,
    ) -> Optional[Event]:
        """
        Publish an event to every matching subscriber.

        Returns:
            The emitted Event, or None when ``dedup_key`` was already seen
            for this event type.
        """
        event = Event(event_type=event_type, payload=payload, source=source)

        with self._lock:
            if dedup_key is not None:
                event.event_id = dedup_id(event.event_type, dedup_key)
                if event.event_id in self._seen:
                    logger.debug("Dropping duplicate %s event for %s", event.event_type, dedup_key)
                    return None
                self._seen[event.event_id] = None
                if len(self._seen) > self._max_dedup_keys:
                    self._seen.popitem(last=False)
            self._history.append(event)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]
            subs = [s for s in self._subscriptions.values() if s.matches(event.event_type)]

        for sub in subs:
            try:
                sub.callback(event)
            except Exception:
                logger.exception("Subscriber %s failed on %s", sub.subscriber_id, event.event_type)

        return event

    def history(self, event_type: Optional[str] = None, limit: int = 50) -> list[Event]:
        with self._lock:
            events = list(self._history)
        if event_type:
            events = [e for e in events if fnmatch.fnmatch(e.event_type, event_type)]
        return events[-limit:]

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)
