"""Round ledger — round numbering and participants per scene.

A scene's round moves  uninitialized → in_progress → completing →
in_progress(n+1). The persisted round number is the source of truth; the
in-memory Round only mirrors it between turns.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone

from roundtable.dispatch import SideEffectDispatcher
from roundtable.models import Round
from roundtable.storage import Persistence, PersistenceError

logger = logging.getLogger(__name__)


class RoundLedger:
    def __init__(self, persistence: Persistence, dispatcher: SideEffectDispatcher) -> None:
        self._persistence = persistence
        self._dispatcher = dispatcher
        self._rounds: dict[str, Round] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def initialize(self, scene_id: str) -> Round:
        """Load the persisted round number and start with no participants."""
        scene = await self._persistence.load_scene(scene_id)
        rnd = Round(
            scene_id=scene_id,
            round_number=scene.current_round_number or 1,
            world_id=scene.world_id,
        )
        self._rounds[scene_id] = rnd
        logger.debug("scene=%s round %d initialized", scene_id, rnd.round_number)
        return rnd

    async def refresh(self, scene_id: str) -> Round:
        """Re-read the round from persistence in case it moved out-of-band."""
        previous = self._rounds.get(scene_id)
        rnd = await self.initialize(scene_id)
        if previous is not None and previous.round_number != rnd.round_number:
            logger.info(
                "scene=%s round moved from %d to %d outside the engine",
                scene_id, previous.round_number, rnd.round_number,
            )
        return rnd

    def current(self, scene_id: str) -> Round | None:
        return self._rounds.get(scene_id)

    def track_participant(self, scene_id: str, name: str) -> None:
        rnd = self._rounds.get(scene_id)
        if rnd is None:
            logger.warning("scene=%s participant %s tracked before round init", scene_id, name)
            return
        rnd.active_characters.add(name)

    async def complete(self, scene_id: str, override_active: list[str] | None = None) -> int:
        """Close the current round and open the next. Returns the new round number.

        Completions for one scene are serialized, so each call advances the
        round by exactly one. A persistence failure propagates and leaves the
        in-memory round where it was.
        """
        async with self._locks[scene_id]:
            rnd = self._rounds.get(scene_id)
            if rnd is None:
                rnd = await self.initialize(scene_id)

            active = list(override_active) if override_active is not None else sorted(rnd.active_characters)
            closed = rnd.round_number
            rnd.status = "completing"
            try:
                next_number = await self._persistence.record_round_completion(scene_id, active)
            except Exception:
                rnd.status = "in_progress"
                raise

            if next_number != closed + 1:
                logger.warning(
                    "scene=%s in-memory round %d out of step, persisted next round is %d",
                    scene_id, closed, next_number,
                )
                closed = next_number - 1
            logger.info("scene=%s round %d completed, next %d", scene_id, closed, next_number)

            self._dispatcher.notify(scene_id, "roundCompleted", {
                "scene_id": scene_id,
                "round_number": closed,
                "next_round_number": next_number,
                "active_characters": active,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })

            rnd.round_number = next_number
            rnd.active_characters = set()
            rnd.status = "in_progress"

            try:
                messages = await self._persistence.get_messages_for_round(scene_id, closed)
            except PersistenceError as e:
                logger.warning("scene=%s messages for round %d unavailable: %s", scene_id, closed, e)
            else:
                self._dispatcher.dispatch_memory_capture(
                    scene_id, closed, messages, active, world_id=rnd.world_id,
                )
            return next_number
