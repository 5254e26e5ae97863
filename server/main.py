"""FastAPI server exposing the polling game API and the external agent API."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
import secrets
import signal
from typing import Any, AsyncIterator

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from engine.agents.env_utils import getenv_any, getenv_bool
from engine.auth import AgentCredentials
from engine.errors import EngineError
from engine.identity import HttpIdentityGateway, IdentityGateway, StaticIdentityGateway
from engine.service import GameService
from server.persona_factory import generator_from_env
from server.schemas import (
    AgentReplyRequest,
    ChatRequest,
    IdentityRequest,
    LockVoteRequest,
    PersonaRequest,
    RegisterRequest,
    VoteRequest,
)
from server.ticker import DeadlineTicker

logging.basicConfig(
    level=getenv_any("LOG_LEVEL", default="INFO") or "INFO",
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _identity_from_env() -> IdentityGateway:
    if (getenv_any("IDENTITY_PROVIDER", default="static") or "static").lower() == "neynar":
        return HttpIdentityGateway()
    return StaticIdentityGateway(auto_register=True)


service = GameService.from_env(identity=_identity_from_env(), generator=generator_from_env())


def _terminate(exc: BaseException) -> None:
    """Stop the server process after a fatal ticker error."""
    logger.critical("Shutting down after ticker failure: %s", exc)
    os.kill(os.getpid(), signal.SIGTERM)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    ticker = None
    if getenv_bool("RUN_TICKER", True):
        ticker = DeadlineTicker(service, service.config.tick_interval_sec, on_fatal=_terminate)
        ticker.start()
    try:
        yield
    finally:
        if ticker is not None:
            ticker.stop()
        service.shutdown()


app = FastAPI(title="Detective Arena API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=(getenv_any("CORS_ORIGINS", default="http://localhost:3000") or "").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error(exc: EngineError) -> HTTPException:
    """Translate a typed engine rejection into an HTTP error."""
    headers = None
    retry_after = getattr(exc, "retry_after_sec", None)
    if retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict(), headers=headers)


def _require_bearer(authorization: str | None, secret: str | None, *, name: str) -> None:
    if not secret:
        raise HTTPException(status_code=403, detail=f"{name} endpoint is disabled")
    token = (authorization or "").removeprefix("Bearer ").strip()
    if not token or not secrets.compare_digest(token, secret):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _agent_credentials(
    signature: str | None,
    controller: str | None,
    timestamp: str | None,
    shared_secret: str | None,
    forwarded_for: str | None,
) -> AgentCredentials:
    source = (forwarded_for or "unknown").split(",")[0].strip() or "unknown"
    return AgentCredentials(
        controller=controller,
        signature=signature,
        timestamp=timestamp,
        shared_secret=shared_secret,
        source=source,
    )


@app.get("/api/health")
def health() -> dict[str, str]:
    """Healthcheck endpoint."""
    return {"status": "ok"}


@app.get("/api/game/status")
def game_status() -> dict[str, Any]:
    """Current cycle phase, round, counts, and server time."""
    return service.status()


@app.post("/api/game/register")
def register(request: RegisterRequest) -> dict[str, Any]:
    """Join the cycle that is currently in registration."""
    try:
        return service.register(request.handle)
    except EngineError as exc:
        raise _http_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=f"Identity lookup failed: {exc}") from exc


@app.post("/api/game/leave")
def leave(request: IdentityRequest) -> dict[str, Any]:
    try:
        return service.leave(request.identity)
    except EngineError as exc:
        raise _http_error(exc) from exc


@app.post("/api/game/ready")
def ready(request: IdentityRequest) -> dict[str, Any]:
    """Mark a participant ready; the cycle starts once everyone at quorum is ready."""
    try:
        return service.ready(request.identity)
    except EngineError as exc:
        raise _http_error(exc) from exc


@app.get("/api/match/active")
def active_matches(identity: int = Query(...)) -> dict[str, Any]:
    """Polling endpoint: active matches, round status, recent results, server time."""
    return service.poll(identity)


@app.post("/api/match/vote")
def submit_vote(request: VoteRequest) -> dict[str, Any]:
    """Set or toggle the current vote; accepted only before lock."""
    try:
        return service.vote(request.match_id, request.identity, request.vote)
    except EngineError as exc:
        raise _http_error(exc) from exc


@app.put("/api/match/vote")
def lock_vote(request: LockVoteRequest) -> dict[str, Any]:
    """Lock the caller's vote now; repeat calls return the same result."""
    try:
        return service.lock_vote(request.match_id, request.identity)
    except EngineError as exc:
        raise _http_error(exc) from exc


@app.post("/api/chat/send")
def send_chat(request: ChatRequest) -> dict[str, Any]:
    try:
        return service.send_message(request.match_id, request.identity, request.text)
    except EngineError as exc:
        raise _http_error(exc) from exc


@app.get("/api/agent/pending")
def agent_pending(
    bot_identity: int | None = Query(default=None),
    x_agent_signature: str | None = Header(default=None),
    x_agent_controller: str | None = Header(default=None),
    x_agent_timestamp: str | None = Header(default=None),
    x_agent_secret: str | None = Header(default=None),
    x_forwarded_for: str | None = Header(default=None),
) -> dict[str, Any]:
    """Matches waiting on a reply from bots the caller controls."""
    credentials = _agent_credentials(
        x_agent_signature, x_agent_controller, x_agent_timestamp, x_agent_secret, x_forwarded_for
    )
    try:
        return {"matches": service.agent_pending(credentials, bot_identity)}
    except EngineError as exc:
        raise _http_error(exc) from exc


@app.post("/api/agent/reply")
def agent_reply(
    request: AgentReplyRequest,
    x_agent_signature: str | None = Header(default=None),
    x_agent_controller: str | None = Header(default=None),
    x_agent_timestamp: str | None = Header(default=None),
    x_agent_secret: str | None = Header(default=None),
    x_forwarded_for: str | None = Header(default=None),
) -> dict[str, Any]:
    """Externally authenticated persona reply."""
    credentials = _agent_credentials(
        x_agent_signature, x_agent_controller, x_agent_timestamp, x_agent_secret, x_forwarded_for
    )
    try:
        return service.agent_reply(
            credentials,
            match_id=request.match_id,
            bot_identity=request.bot_identity,
            text=request.text,
            body=request.model_dump(),
        )
    except EngineError as exc:
        raise _http_error(exc) from exc
    except Exception as exc:
        logger.exception("Agent reply failed for match %s", request.match_id)
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.get("/api/leaderboard/current")
def current_leaderboard() -> dict[str, Any]:
    return service.leaderboard()


@app.get("/api/leaderboard/cycle/{cycle_id}")
def cycle_leaderboard(cycle_id: str) -> dict[str, Any]:
    try:
        return service.leaderboard(cycle_id)
    except EngineError as exc:
        raise _http_error(exc) from exc


@app.get("/api/stats/career")
def career_stats(identity: int = Query(...)) -> dict[str, Any]:
    """Persisted career aggregates for one participant."""
    try:
        return service.career(identity)
    except EngineError as exc:
        raise _http_error(exc) from exc


@app.post("/api/cron/tick")
def cron_tick(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    """Deadline enforcement for deployments without the background ticker."""
    _require_bearer(authorization, service.config.cron_secret, name="Cron")
    return service.tick()


@app.get("/api/admin/personas")
def list_personas(authorization: str | None = Header(default=None)) -> list[dict[str, Any]]:
    _require_bearer(authorization, service.config.admin_secret, name="Admin")
    return service.list_personas()


@app.post("/api/admin/personas")
def add_persona(request: PersonaRequest, authorization: str | None = Header(default=None)) -> dict[str, Any]:
    """Register a shared persona, optionally bound to an external controller."""
    _require_bearer(authorization, service.config.admin_secret, name="Admin")
    try:
        return service.add_persona(request.model_dump())
    except EngineError as exc:
        raise _http_error(exc) from exc


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("server.main:app", host="0.0.0.0", port=8000, reload=True)
