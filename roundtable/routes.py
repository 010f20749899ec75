"""FastAPI endpoints under /api.

Thin layer over the Orchestrator: submit input, complete or continue a
round, read the live round and message log, and stream scene events over
a websocket. Scene CRUD is not exposed here; scenes are created through
storage directly.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from roundtable.dispatch import BroadcastEventSink, scene_channel
from roundtable.models import TurnResult
from roundtable.pipeline import Orchestrator
from roundtable.prompts import PromptError
from roundtable.storage import PersistenceError, SceneNotFound

logger = logging.getLogger(__name__)

router = APIRouter()


class InputBody(BaseModel):
    message: str
    persona: str = "default"
    active_characters: list[str] | None = None


class CompleteBody(BaseModel):
    active_characters: list[str] | None = None


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, SceneNotFound):
        return HTTPException(404, "Scene not found")
    if isinstance(e, PersistenceError):
        logger.error("storage failure: %s", e)
        return HTTPException(503, f"Storage unavailable: {e}")
    return HTTPException(500, f"Prompt template error: {e}")


@router.post("/scenes/{scene_id}/input")
async def submit_input(scene_id: str, body: InputBody, request: Request) -> TurnResult:
    """Run one turn for the user's message."""
    try:
        return await _orchestrator(request).process_input(
            body.message,
            persona_name=body.persona,
            active_characters=body.active_characters,
            scene_id=scene_id,
        )
    except (PersistenceError, PromptError) as e:
        raise _http_error(e)


@router.post("/scenes/{scene_id}/complete")
async def complete_round(scene_id: str, request: Request, body: CompleteBody | None = None):
    """Close the current round and open the next."""
    try:
        next_round = await _orchestrator(request).complete_round(
            scene_id, body.active_characters if body else None,
        )
    except PersistenceError as e:
        raise _http_error(e)
    return {"next_round_number": next_round}


@router.post("/scenes/{scene_id}/continue")
async def continue_round(scene_id: str, request: Request):
    """Let the characters carry the scene on, then close the round."""
    orchestrator = _orchestrator(request)
    try:
        result = await orchestrator.continue_round(scene_id)
    except (PersistenceError, PromptError) as e:
        raise _http_error(e)
    rnd = orchestrator.current_round(scene_id)
    return {**result.model_dump(), "round_number": rnd.round_number if rnd else None}


@router.get("/scenes/{scene_id}/round")
async def get_round(scene_id: str, request: Request):
    """The live round, loaded from storage on first access."""
    orchestrator = _orchestrator(request)
    rnd = orchestrator.current_round(scene_id)
    if rnd is None:
        try:
            rnd = await orchestrator.ledger.initialize(scene_id)
        except PersistenceError as e:
            raise _http_error(e)
    return rnd.model_dump(mode="json")


@router.get("/scenes/{scene_id}/messages")
async def get_messages(scene_id: str, request: Request, round_number: int | None = None):
    """Logged messages, optionally for one round only."""
    storage = request.app.state.storage
    try:
        await storage.load_scene(scene_id)
        if round_number is not None:
            messages = await storage.get_messages_for_round(scene_id, round_number)
        else:
            messages = await storage.get_messages(scene_id)
    except PersistenceError as e:
        raise _http_error(e)
    return [m.model_dump() for m in messages]


@router.websocket("/scenes/{scene_id}/events")
async def scene_events(websocket: WebSocket, scene_id: str):
    """Stream agentStatus / stateUpdated / roundCompleted events for a scene."""
    events: BroadcastEventSink = websocket.app.state.events
    channel = scene_channel(scene_id)
    queue = events.subscribe(channel)
    try:
        await websocket.accept()
        while True:
            await websocket.send_json(await queue.get())
    except WebSocketDisconnect:
        logger.debug("event stream for %s closed", channel)
    finally:
        events.unsubscribe(channel, queue)
