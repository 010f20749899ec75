"""Side effects that must never fail a turn.

Status events and memory capture run as background tasks with their own
error boundary. State persistence is awaited by the caller, but the
notification that follows it is isolated, so a broken sink cannot undo or
fail a save that already happened.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from collections.abc import Coroutine
from typing import Any, Protocol

from roundtable.models import ChatMessage, Trackers
from roundtable.storage import Persistence

logger = logging.getLogger(__name__)


def scene_channel(scene_id: str) -> str:
    return f"scene-{scene_id}"


# ---------------------------------------------------------------------------
# Event sinks
# ---------------------------------------------------------------------------

class EventSink(Protocol):
    async def emit(self, channel: str, event: str, payload: dict[str, Any]) -> None: ...


class NullEventSink:
    """Drops every event."""

    async def emit(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        logger.debug("event %s on %s dropped", event, channel)


class BroadcastEventSink:
    """Fans events out to in-process subscriber queues, one set per channel.

    The websocket route subscribes a queue per connection; events are put
    without waiting, and a full queue drops the event for that subscriber.
    """

    def __init__(self, maxsize: int = 100) -> None:
        self._maxsize = maxsize
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, channel: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers[channel].add(queue)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        subs = self._subscribers.get(channel)
        if subs is None:
            return
        subs.discard(queue)
        if not subs:
            del self._subscribers[channel]

    async def emit(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        message = {"event": event, "payload": payload}
        for queue in list(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("subscriber queue full on %s, dropping %s", channel, event)


# ---------------------------------------------------------------------------
# Memory capture target
# ---------------------------------------------------------------------------

class MemoryCapture(Protocol):
    async def capture(
        self,
        scene_id: str,
        round_number: int,
        messages: list[ChatMessage],
        active_characters: list[str],
        world_id: str,
    ) -> None: ...


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class SideEffectDispatcher:
    def __init__(
        self,
        persistence: Persistence,
        events: EventSink | None = None,
        memory: MemoryCapture | None = None,
    ) -> None:
        self._persistence = persistence
        self._events = events or NullEventSink()
        self._memory = memory
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.create_task(self._guarded(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _guarded(coro: Coroutine[Any, Any, None], name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("side effect %s failed", name)

    def notify(self, scene_id: str, event: str, payload: dict[str, Any]) -> None:
        """Emit an event on the scene channel without waiting for delivery."""
        self._spawn(
            self._events.emit(scene_channel(scene_id), event, payload),
            f"notify:{event}",
        )

    async def persist_state(
        self,
        scene_id: str,
        world_state: dict[str, Any],
        trackers: Trackers,
        character_states: dict[str, dict[str, Any]],
    ) -> None:
        """Save scene state, then announce it.

        PersistenceError from the save propagates. The stateUpdated
        notification afterwards cannot raise.
        """
        await self._persistence.save_scene(scene_id, {
            "world_state": world_state,
            "trackers": trackers.model_dump(),
            "character_states": character_states,
        })
        logger.debug("scene=%s state persisted", scene_id)
        self.notify(scene_id, "stateUpdated", {
            "scene_id": scene_id,
            "world_state": copy.deepcopy(world_state),
            "trackers": trackers.model_dump(),
            "character_states": copy.deepcopy(character_states),
        })

    def dispatch_memory_capture(
        self,
        scene_id: str,
        round_number: int,
        messages: list[ChatMessage],
        active_characters: list[str],
        world_id: str = "default",
    ) -> None:
        if self._memory is None:
            logger.debug("scene=%s no memory writer, round %d not captured", scene_id, round_number)
            return
        self._spawn(
            self._memory.capture(scene_id, round_number, messages, active_characters, world_id),
            f"memory:{scene_id}:{round_number}",
        )

    async def drain(self) -> None:
        """Wait for every outstanding job, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
