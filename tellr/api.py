"""HTTP transport: JSON commands plus a per-election SSE event stream.

Every authenticated route lives under ``/api/elections/{code}`` and takes an
``Authorization: Bearer <token>`` header; the token must belong to ``code``.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sse_starlette.sse import EventSourceResponse

from .config import Config, load_config
from .db import Database
from .elections import MAX_ELECTION_NAME, MAX_PARTICIPANT_NAME, ElectionService
from .errors import Conflict, Forbidden, NotFound, TellrError, Unauthorized, ValidationFailed
from .models import DisclosureLevel, Election, Participant
from .notifier import Notifier, Subscription
from .rounds import MAX_DESCRIPTION, MAX_OFFICE, RoundService

log = structlog.get_logger(__name__)

_STATUS_CODES = {
    Unauthorized: 401,
    Forbidden: 403,
    NotFound: 404,
    Conflict: 409,
    ValidationFailed: 422,
}


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateElectionRequest(_Body):
    name: str = Field(min_length=1, max_length=MAX_ELECTION_NAME)
    teller_name: str = Field(alias="tellerName", min_length=1, max_length=MAX_PARTICIPANT_NAME)
    body_size: Optional[int] = Field(default=None, alias="bodySize", ge=1)


class JoinElectionRequest(_Body):
    code: str = Field(min_length=1, max_length=16)
    name: str = Field(min_length=1, max_length=MAX_PARTICIPANT_NAME)


class UpdateNameRequest(_Body):
    name: str = Field(min_length=1, max_length=MAX_PARTICIPANT_NAME)


class PromoteRequest(_Body):
    participant_id: str = Field(alias="participantId", min_length=1)


class BodySizeRequest(_Body):
    body_size: Optional[int] = Field(default=None, alias="bodySize", ge=1)


class StartRoundRequest(_Body):
    office: str = Field(min_length=1, max_length=MAX_OFFICE)
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION)


class VoteRequest(_Body):
    candidate_id: Optional[str] = Field(alias="candidateId")  # null = abstain


class EndRoundRequest(_Body):
    disclosure_level: DisclosureLevel = Field(alias="disclosureLevel")


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

@dataclass
class Caller:
    election: Election
    participant: Participant


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


async def get_caller(
    request: Request,
    code: str,
    authorization: Optional[str] = Header(default=None),
) -> Caller:
    elections: ElectionService = request.app.state.elections
    election, participant = await elections.authenticate(_bearer(authorization), code)
    return Caller(election=election, participant=participant)


def _elections(request: Request) -> ElectionService:
    return request.app.state.elections


def _rounds(request: Request) -> RoundService:
    return request.app.state.rounds


OK = {"success": True}

router = APIRouter()


# ---------------------------------------------------------------------------
# Public commands
# ---------------------------------------------------------------------------

@router.post("/api/elections")
async def create_election(body: CreateElectionRequest, request: Request) -> dict:
    creds = await _elections(request).create_election(body.name, body.teller_name, body.body_size)
    return {"code": creds.code, "token": creds.token, "participantId": creds.participant_id}


@router.post("/api/elections/join")
async def join_election(body: JoinElectionRequest, request: Request) -> dict:
    creds = await _elections(request).join_election(body.code, body.name)
    return {"code": creds.code, "token": creds.token, "participantId": creds.participant_id}


# ---------------------------------------------------------------------------
# Session commands
# ---------------------------------------------------------------------------

@router.post("/api/elections/{code}/rejoin")
async def rejoin(caller: Caller = Depends(get_caller)) -> dict:
    return {"valid": True, "participantId": caller.participant.id}


@router.get("/api/elections/{code}/state")
async def get_state(request: Request, caller: Caller = Depends(get_caller)) -> dict:
    state = await _elections(request).get_state(caller.election, caller.participant)
    return state.to_dict()


@router.post("/api/elections/{code}/name")
async def update_name(body: UpdateNameRequest, request: Request, caller: Caller = Depends(get_caller)) -> dict:
    await _elections(request).update_name(caller.participant, body.name)
    return OK


@router.post("/api/elections/{code}/tellers")
async def promote_to_teller(body: PromoteRequest, request: Request, caller: Caller = Depends(get_caller)) -> dict:
    await _elections(request).promote_to_teller(caller.participant, body.participant_id)
    return OK


@router.post("/api/elections/{code}/tellers/step-down")
async def step_down_as_teller(request: Request, caller: Caller = Depends(get_caller)) -> dict:
    await _elections(request).step_down_as_teller(caller.participant)
    return OK


@router.put("/api/elections/{code}/body-size")
async def set_body_size(body: BodySizeRequest, request: Request, caller: Caller = Depends(get_caller)) -> dict:
    await _elections(request).set_body_size(caller.participant, body.body_size)
    return OK


# ---------------------------------------------------------------------------
# Round commands
# ---------------------------------------------------------------------------

@router.post("/api/elections/{code}/rounds")
async def start_round(body: StartRoundRequest, request: Request, caller: Caller = Depends(get_caller)) -> dict:
    rnd = await _rounds(request).start_round(caller.participant, body.office, body.description)
    return rnd.to_dict()


@router.post("/api/elections/{code}/rounds/{round_id}/votes")
async def cast_vote(
    round_id: str, body: VoteRequest, request: Request, caller: Caller = Depends(get_caller)
) -> dict:
    await _rounds(request).cast_vote(caller.participant, round_id, body.candidate_id)
    return OK


@router.post("/api/elections/{code}/rounds/{round_id}/close")
async def close_voting(round_id: str, request: Request, caller: Caller = Depends(get_caller)) -> dict:
    verdict = await _rounds(request).close_voting(caller.participant, round_id)
    return verdict.to_dict()


@router.post("/api/elections/{code}/rounds/{round_id}/end")
async def end_round(
    round_id: str, body: EndRoundRequest, request: Request, caller: Caller = Depends(get_caller)
) -> dict:
    await _rounds(request).end_round(caller.participant, round_id, body.disclosure_level)
    return OK


@router.post("/api/elections/{code}/rounds/{round_id}/cancel")
async def cancel_round(round_id: str, request: Request, caller: Caller = Depends(get_caller)) -> dict:
    await _rounds(request).cancel_round(caller.participant, round_id)
    return OK


# ---------------------------------------------------------------------------
# Event stream
# ---------------------------------------------------------------------------

async def event_stream(
    notifier: Notifier,
    sub: Subscription,
    heartbeat_sec: float,
) -> AsyncIterator[dict]:
    """SSE frames for one subscription, ending with its removal.

    Sends a keepalive comment whenever nothing happened for ``heartbeat_sec``.
    Stops once the subscriber overflowed; the client reconnects and refetches.
    """
    try:
        yield {"event": "connected", "data": json.dumps({"participantId": sub.participant_id})}
        while not sub.overflowed:
            try:
                event = await asyncio.wait_for(sub.queue.get(), timeout=heartbeat_sec)
            except asyncio.TimeoutError:
                yield {"comment": "keepalive"}
                continue
            yield {"event": event.name, "data": json.dumps(event.data), "id": str(event.id)}
        log.warning("sse_subscriber_overflowed", election_id=sub.election_id)
    finally:
        notifier.unsubscribe(sub)
        log.info("sse_disconnected", election_id=sub.election_id, participant_id=sub.participant_id)


@router.get("/events/{code}")
async def stream_events(request: Request, caller: Caller = Depends(get_caller)) -> EventSourceResponse:
    """Push election events to one participant.

    Nothing is replayed: after a reconnect the client refetches the state.
    """
    notifier: Notifier = request.app.state.notifier
    sub = notifier.subscribe(caller.election.id, caller.participant.id)
    log.info("sse_connected", election_id=caller.election.id, participant_id=caller.participant.id)
    return EventSourceResponse(
        event_stream(notifier, sub, request.app.state.config.server.heartbeat_sec),
        headers={"X-Accel-Buffering": "no", "Cache-Control": "no-cache"},
    )


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

async def _handle_tellr_error(request: Request, exc: TellrError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 400)
    log.info("command_rejected", path=request.url.path, kind=exc.kind, status=status)
    return JSONResponse(status_code=status, content=exc.to_dict())


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg', 'invalid')}" if field else first.get("msg", "Invalid input")
    return JSONResponse(status_code=422, content=ValidationFailed(message).to_dict())


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(config: Config | None = None) -> FastAPI:
    config = config or load_config(Path.cwd())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db_path = config.db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        db = Database(db_path)
        await db.init()
        notifier = Notifier(webhook_url=config.notify.webhook_url, events=config.notify.events)

        app.state.config = config
        app.state.db = db
        app.state.notifier = notifier
        app.state.elections = ElectionService(db, notifier, config.elections)
        app.state.rounds = RoundService(db, notifier)
        log.info("server_started", db_path=db_path)
        try:
            yield
        finally:
            await notifier.close()
            await db.close()

    app = FastAPI(title="tellr", lifespan=lifespan)
    app.add_exception_handler(TellrError, _handle_tellr_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.include_router(router)
    return app
