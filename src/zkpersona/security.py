"""
zkpersona.security — Shared HTTP concerns: structured logging, rate limiting,
request ids, CORS, input validation and admin authentication.
"""

import hmac
import logging
import os
import re
import time
import uuid
from contextvars import ContextVar
from typing import Optional

from fastapi import HTTPException, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import APIKeyHeader
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .errors import (
    AgentUnavailableError,
    PassportError,
    ReplayRejectedError,
    SessionFailedError,
    SessionTimeoutError,
    TransientError,
    UnknownProviderError,
    UserRejectedError,
)

# ─── Per-request context ───────────────────────────────────────────

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
wallet_var: ContextVar[str] = ContextVar("wallet", default="")
provider_var: ContextVar[str] = ContextVar("provider", default="")

_USER_PATH = re.compile(r"^/user/([^/]+)")
_AUTH_PATH = re.compile(r"^/auth/([^/]+)/(start|status|callback)$")


def request_context(request: Request) -> tuple[str, str]:
    """(wallet, provider) a request is about, from its path and query."""
    path = request.url.path
    match = _USER_PATH.match(path)
    if match:
        return match.group(1), ""
    match = _AUTH_PATH.match(path)
    if match:
        return request.query_params.get("walletId", ""), match.group(1).lower()
    return "", ""


# ─── Structured JSON logging ──────────────────────────────────────

class RequestContextFilter(logging.Filter):
    """Stamps request id, wallet and provider on records that lack them."""

    def filter(self, record):
        record.request_id = request_id_var.get("")
        if not getattr(record, "wallet", ""):
            record.wallet = wallet_var.get("")
        if not getattr(record, "provider", ""):
            record.provider = provider_var.get("")
        return True


def setup_structured_logging(level: Optional[str] = None) -> logging.Logger:
    """JSON logs with request ids on the ``zkpersona`` logger tree."""
    from pythonjsonlogger.json import JsonFormatter

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    logger = logging.getLogger("zkpersona")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(wallet)s %(provider)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        )
        handler.setFormatter(formatter)
        handler.addFilter(RequestContextFilter())
        logger.addHandler(handler)

    return logger


logger = setup_structured_logging()


# ─── Rate Limiter (slowapi) ───────────────────────────────────────

limiter = Limiter(key_func=get_remote_address)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    wallet, provider = request_context(request)
    logger.warning("Rate limit hit on %s", request.url.path,
                   extra={"event": "rate_limited", "wallet": wallet, "provider": provider})
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests, slow down", "error": "RateLimitExceeded"},
        headers={"Retry-After": "60"},
    )


# ─── Request ID + Logging Middleware ──────────────────────────────

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access log line per call, tagged with the wallet or provider it concerns."""

    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        wallet, provider = request_context(request)
        request_id_var.set(rid)
        wallet_var.set(wallet)
        provider_var.set(provider)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("%s %s failed", request.method, request.url.path)
            raise

        logger.info(
            "%s %s -> %d", request.method, request.url.path, response.status_code,
            extra={
                "status": response.status_code,
                "elapsed_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )

        response.headers["X-Request-ID"] = rid
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response


# ─── CORS configuration ──────────────────────────────────────────

def configure_cors(app, allowed_origins: Optional[list[str]] = None):
    """CORS for the configured origins; every origin when none are set."""
    origins = allowed_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        # credentials cannot be combined with a wildcard origin
        allow_credentials=origins != ["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )


# ─── Input validation ─────────────────────────────────────────────

USER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9._@-]+$")
MAX_USER_ID_LENGTH = 255


def validate_user_id(user_id: str) -> str:
    """Wallet addresses and opaque user ids only. Raises HTTPException(400)."""
    if not user_id or len(user_id) > MAX_USER_ID_LENGTH or not USER_ID_PATTERN.match(user_id):
        raise HTTPException(status_code=400, detail="Invalid userId format")
    return user_id


# ─── Admin auth dependency ───────────────────────────────────────

_admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


async def require_admin_key(request: Request, key: Optional[str] = Security(_admin_key_header)):
    """Guards the provider callback: only adapters holding ADMIN_API_KEY may settle sessions."""
    settings = getattr(request.app.state, "settings", None)
    admin_key = getattr(settings, "admin_api_key", "") or os.environ.get("ADMIN_API_KEY", "")
    if not admin_key:
        raise HTTPException(status_code=503, detail="Provider callbacks are disabled (ADMIN_API_KEY unset)")
    if not key:
        _reject_callback(request, "no X-Admin-Key header")
        raise HTTPException(status_code=401, detail="Missing admin key")
    if not hmac.compare_digest(key.encode(), admin_key.encode()):
        _reject_callback(request, "wrong X-Admin-Key")
        raise HTTPException(status_code=403, detail="Invalid admin key")
    return True


def _reject_callback(request: Request, reason: str) -> None:
    _, provider = request_context(request)
    logger.warning(
        "Rejected %s callback: %s", provider or "provider", reason,
        extra={"event": "callback_rejected", "provider": provider,
               "client": request.client.host if request.client else "unknown"},
    )


# ─── Exception handlers (never leak internals) ───────────────────

_STATUS_BY_ERROR = (
    (UnknownProviderError, 400),
    (UserRejectedError, 403),
    (ReplayRejectedError, 409),
    (SessionFailedError, 422),
    (AgentUnavailableError, 503),
    (SessionTimeoutError, 504),
    (TransientError, 503),
)


async def passport_error_handler(request: Request, exc: PassportError):
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status = 500
    logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


async def generic_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s: %s", request.url.path, type(exc).__name__)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ─── Apply all security to a FastAPI app ──────────────────────────

def apply_security(app, allowed_origins: Optional[list[str]] = None):
    """One-call setup: CORS, rate limiting, logging middleware, error handlers."""
    configure_cors(app, allowed_origins)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(PassportError, passport_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
    app.add_middleware(RequestLoggingMiddleware)
