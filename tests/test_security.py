"""Tests for zkpersona.security — validation, error mapping, CORS and logging."""

import json
import logging

import pytest
from fastapi import FastAPI, HTTPException, Request
from httpx import ASGITransport, AsyncClient

from zkpersona.errors import (
    AgentUnavailableError,
    PassportError,
    ProofExtractionError,
    ReplayRejectedError,
    RetriesExhaustedError,
    SessionFailedError,
    SessionTimeoutError,
    UnknownProviderError,
    UserRejectedError,
)
from zkpersona.security import (
    apply_security,
    provider_var,
    request_context,
    request_id_var,
    setup_structured_logging,
    validate_user_id,
    wallet_var,
)


class TestValidateUserId:
    @pytest.mark.parametrize("user_id", ["aleo1abc", "user@example.com", "a.b_c-d", "x" * 255])
    def test_valid(self, user_id):
        assert validate_user_id(user_id) == user_id

    @pytest.mark.parametrize("user_id", ["", "bad id", "semi;colon", "<script>", "x" * 256, "slash/"])
    def test_invalid(self, user_id):
        with pytest.raises(HTTPException) as exc_info:
            validate_user_id(user_id)
        assert exc_info.value.status_code == 400


def _error_app(exc: Exception) -> FastAPI:
    app = FastAPI()
    apply_security(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return app


@pytest.mark.asyncio
@pytest.mark.parametrize("exc,status", [
    (UnknownProviderError("myspace"), 400),
    (UserRejectedError("declined"), 403),
    (ReplayRejectedError("1field"), 409),
    (SessionFailedError("s1", "github", "denied"), 422),
    (AgentUnavailableError("decrypt"), 503),
    (SessionTimeoutError("s1", 60), 504),
    (RetriesExhaustedError(3, RuntimeError("x")), 503),
    (ProofExtractionError("at1"), 500),
    (PassportError("generic"), 500),
])
async def test_error_status_mapping(exc, status):
    app = _error_app(exc)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        r = await c.get("/boom")
    assert r.status_code == status
    assert r.json()["error"] == type(exc).__name__


@pytest.mark.asyncio
async def test_cors_wildcard_without_credentials():
    app = FastAPI()
    apply_security(app)

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        r = await c.get("/ping", headers={"Origin": "https://dapp.example"})
    assert r.headers["access-control-allow-origin"] == "*"
    assert "access-control-allow-credentials" not in r.headers


@pytest.mark.asyncio
async def test_cors_explicit_origins():
    app = FastAPI()
    apply_security(app, ["https://dapp.example"])

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        allowed = await c.get("/ping", headers={"Origin": "https://dapp.example"})
        other = await c.get("/ping", headers={"Origin": "https://evil.example"})
    assert allowed.headers["access-control-allow-origin"] == "https://dapp.example"
    assert allowed.headers["access-control-allow-credentials"] == "true"
    assert "access-control-allow-origin" not in other.headers


def test_structured_logging_is_json():
    logger = setup_structured_logging()
    assert logger.name == "zkpersona"
    assert len(logger.handlers) == 1
    # idempotent
    setup_structured_logging()
    assert len(logger.handlers) == 1

    handler = logger.handlers[0]
    record = logging.LogRecord("zkpersona.test", logging.INFO, __file__, 1, "hello", None, None)
    record.wallet = "aleo1abc"
    token = request_id_var.set("req-42")
    try:
        assert handler.filter(record)
    finally:
        request_id_var.reset(token)
    data = json.loads(handler.format(record))
    assert data["message"] == "hello"
    assert data["level"] == "INFO"
    assert data["request_id"] == "req-42"
    assert data["wallet"] == "aleo1abc"


def _request(path, query=b""):
    return Request({"type": "http", "method": "GET", "path": path, "query_string": query, "headers": []})


@pytest.mark.parametrize("path,query,expected", [
    ("/user/aleo1abc/score", b"", ("aleo1abc", "")),
    ("/user/aleo1abc/verifications/github", b"", ("aleo1abc", "")),
    ("/auth/GitHub/start", b"walletId=aleo1abc", ("aleo1abc", "github")),
    ("/auth/discord/callback", b"", ("", "discord")),
    ("/health", b"", ("", "")),
])
def test_request_context(path, query, expected):
    assert request_context(_request(path, query)) == expected


def test_log_records_carry_wallet_and_provider():
    handler = setup_structured_logging().handlers[0]
    record = logging.LogRecord("zkpersona.api", logging.INFO, __file__, 1, "GET /auth/github/start -> 200",
                               None, None)
    tokens = [wallet_var.set("aleo1abc"), provider_var.set("github")]
    try:
        assert handler.filter(record)
    finally:
        provider_var.reset(tokens[1])
        wallet_var.reset(tokens[0])
    data = json.loads(handler.format(record))
    assert data["wallet"] == "aleo1abc"
    assert data["provider"] == "github"


@pytest.mark.asyncio
async def test_callback_rejection_is_logged(caplog):
    from zkpersona.api import create_app
    from zkpersona.config import Settings

    app = create_app(Settings(admin_api_key="k"))
    with caplog.at_level(logging.WARNING, logger="zkpersona"):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            r = await c.post("/auth/github/callback", json={"session": "s", "status": "failed"},
                             headers={"X-Admin-Key": "wrong"})
    assert r.status_code == 403
    rejected = [rec for rec in caplog.records if getattr(rec, "event", "") == "callback_rejected"]
    assert rejected and rejected[0].provider == "github"
