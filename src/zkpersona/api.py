"""
zkpersona.api — REST surface for scores, credentials and verification sessions.

Endpoints:
    GET    /health
    GET    /user/{user_id}/score
    GET    /user/{user_id}/verifications
    DELETE /user/{user_id}/verifications/{provider}
    GET    /auth/{provider}/start?walletId=...
    GET    /auth/{provider}/status?session=...
    POST   /auth/{provider}/callback              (X-Admin-Key)

State (settings, credential store, session registry, event bus) lives on
``app.state`` and is built by :func:`create_app`; pass your own instances
to share them with other components or tests.

Run:
    uvicorn zkpersona.api:create_app --factory
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from . import __version__
from .commitments import CommitmentEngine
from .config import Settings
from .events import EventBus, EventType, SessionSettled
from .providers import get_provider, normalize_provider
from .scoring import ScoreAggregator
from .security import (
    apply_security,
    limiter,
    require_admin_key,
    setup_structured_logging,
    validate_user_id,
)
from .sessions import SessionRegistry, SessionStatus, VerificationResult
from .storage import CredentialStore, backend_from_settings

logger = logging.getLogger(__name__)

router = APIRouter()


# ─── Models ────────────────────────────────────────────────────────

class SessionStarted(BaseModel):
    sessionId: str
    walletId: str
    provider: str
    status: str


class SessionOutcome(BaseModel):
    """Terminal report from a provider adapter."""
    session: str = Field(..., min_length=1, max_length=300)
    status: Literal["verified", "failed"]
    result: Optional[dict] = None
    error: str = Field("", max_length=1000)


# ─── Dependencies ─────────────────────────────────────────────────

def get_store(request: Request) -> CredentialStore:
    return request.app.state.store


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_aggregator(request: Request) -> ScoreAggregator:
    return request.app.state.aggregator


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _provider_name(provider: str) -> str:
    return get_provider(provider).name


# ─── Routes: health ───────────────────────────────────────────────

@router.get("/health")
async def health(request: Request):
    return {
        "status": "ok",
        "version": __version__,
        "sessions": len(request.app.state.registry),
        "timestamp": _now_iso(),
    }


# ─── Routes: user ─────────────────────────────────────────────────

@router.get("/user/{user_id}/score")
@limiter.limit("120/minute")
async def user_score(
    user_id: str,
    request: Request,
    store: CredentialStore = Depends(get_store),
    aggregator: ScoreAggregator = Depends(get_aggregator),
):
    validate_user_id(user_id)
    summary = aggregator.get_breakdown(store.load(user_id))
    return {"userId": user_id, **summary.to_dict(), "timestamp": _now_iso()}


@router.get("/user/{user_id}/verifications")
@limiter.limit("120/minute")
async def user_verifications(
    user_id: str,
    request: Request,
    store: CredentialStore = Depends(get_store),
):
    validate_user_id(user_id)
    now = time.time()
    views = [c.to_view(now) for c in store.load(user_id).values() if c.verified]
    views.sort(key=lambda v: v["provider"])
    return {"userId": user_id, "verifications": views, "count": len(views)}


@router.delete("/user/{user_id}/verifications/{provider}")
@limiter.limit("30/minute")
async def delete_verification(
    user_id: str,
    provider: str,
    request: Request,
    store: CredentialStore = Depends(get_store),
):
    validate_user_id(user_id)
    name = normalize_provider(provider)
    if not store.remove(user_id, name):
        raise HTTPException(status_code=404, detail="Verification not found")
    return {
        "userId": user_id,
        "provider": name,
        "deleted": True,
        "message": f"{name} verification removed",
    }


# ─── Routes: sessions ─────────────────────────────────────────────

@router.get("/auth/{provider}/start", response_model=SessionStarted)
@limiter.limit("20/minute")
async def start_session(
    provider: str,
    request: Request,
    walletId: str = Query("", max_length=255),
    registry: SessionRegistry = Depends(get_registry),
):
    name = _provider_name(provider)
    if not walletId:
        raise HTTPException(status_code=400, detail="walletId is required")
    validate_user_id(walletId)
    session = registry.create(name, walletId)
    return SessionStarted(
        sessionId=session.session_id,
        walletId=walletId,
        provider=name,
        status=session.status.value,
    )


@router.get("/auth/{provider}/status")
@limiter.limit("240/minute")
async def session_status(
    provider: str,
    request: Request,
    session: str = Query("", max_length=300),
    registry: SessionRegistry = Depends(get_registry),
):
    name = _provider_name(provider)
    if not session:
        raise HTTPException(status_code=400, detail="session is required")
    record = registry.get(session)
    if record is None or record.provider != name:
        raise HTTPException(status_code=404, detail="Session not found")
    return record.to_payload()


@router.post("/auth/{provider}/callback", dependencies=[Depends(require_admin_key)])
async def session_callback(
    provider: str,
    body: SessionOutcome,
    request: Request,
    registry: SessionRegistry = Depends(get_registry),
    store: CredentialStore = Depends(get_store),
):
    name = _provider_name(provider)
    record = registry.get(body.session)
    if record is None or record.provider != name:
        raise HTTPException(status_code=404, detail="Session not found")

    bus: EventBus = request.app.state.bus
    if body.status == SessionStatus.FAILED.value:
        applied = registry.fail(body.session, body.error)
        if applied:
            bus.emit(EventType.SESSION_FAILED,
                     SessionSettled(body.session, name, "failed", reason=body.error),
                     source="api", dedup_key=body.session)
        return {"session": body.session, "status": "failed", "applied": applied}

    result = VerificationResult.from_dict(body.result or {}, provider=name)
    result.provider = name
    if not result.verified_at:
        result.verified_at = time.time()
    if not result.commitment:
        result.commitment = store.engine.identity_commitment(
            result.subject_id, record.wallet_id, int(result.verified_at * 1000),
        )

    applied = registry.complete(body.session, result)
    if applied:
        store.save_result(record.wallet_id, result)
        bus.emit(EventType.SESSION_VERIFIED,
                 SessionSettled(body.session, name, "verified", result.score),
                 source="api", dedup_key=body.session)
    return {"session": body.session, "status": "verified", "applied": applied}


# ─── App factory ──────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("zkpersona API starting (storage=%s)", app.state.settings.storage_backend)
    yield
    app.state.store.backend.close()
    logger.info("zkpersona API stopped")


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[CredentialStore] = None,
    registry: Optional[SessionRegistry] = None,
    bus: Optional[EventBus] = None,
) -> FastAPI:
    """Build the API with its own state; defaults come from the environment."""
    settings = settings or Settings.from_env()
    setup_structured_logging(settings.log_level)
    bus = bus or EventBus()
    if store is None:
        store = CredentialStore(
            backend_from_settings(settings),
            engine=CommitmentEngine.from_settings(settings),
            bus=bus,
        )

    app = FastAPI(
        title="zkpersona API",
        description="Privacy-preserving humanity credentials",
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.production else "/docs",
        redoc_url=None if settings.production else "/redoc",
    )
    app.state.settings = settings
    app.state.bus = bus
    app.state.store = store
    app.state.registry = registry or SessionRegistry(ttl=settings.session_ttl)
    app.state.aggregator = ScoreAggregator()

    apply_security(app, settings.allowed_origins)
    app.include_router(router)
    return app
