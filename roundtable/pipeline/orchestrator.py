"""Pipeline orchestrator — runs one turn of a scene end-to-end.

Turn flow (full path):
  1. Open the round and seed scene state from storage.
  2. Slash commands and describe requests branch off early.
  3. Append the user line to history and log it under the current round.
  4. Summarize when history grows past the limit; keep the newest entries.
  5. Director picks the responding characters and gives guidance.
  6. World agent updates world state and trackers.
  7. Each selected character answers, in order, seeing earlier answers.
  8. Persist outstanding state and return the responses.

Every structured agent call goes through recovery.recover(). Steps are
strictly sequential; each sees the state left by the one before. Turns,
completions and continuations for the same scene are serialized on a
per-scene lock.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from roundtable.agents import AgentSet
from roundtable.dispatch import EventSink, SideEffectDispatcher
from roundtable.ledger import RoundLedger
from roundtable.llm import LLMError
from roundtable.lorebook import KeywordLoreMatcher, LoreMatcher, format_lore
from roundtable.memory import (
    MemoryQuery,
    MemoryRetriever,
    format_memories,
    memory_scope,
    retrieve_memories,
)
from roundtable.models import (
    AgentResponse,
    CharacterRecord,
    ChatMessage,
    MessageSource,
    Round,
    SceneRecord,
    TurnResult,
)
from roundtable.pipeline.commands import (
    ImageGenerator,
    SlashCommands,
    is_describe_request,
    parse_slash_command,
)
from roundtable.pipeline.context import TurnContext
from roundtable.recovery import Failed, Ok, StructuredResult, has_text, recover
from roundtable.state import SceneState, StateStore, default_character_state
from roundtable.storage import Persistence

logger = logging.getLogger(__name__)

NARRATOR_FALLBACK = "The scene remains as it was. The environment is quiet and unchanged."
NO_SCENE = "Scene context required for full interaction"

# Lock key for calls made without a scene id; their state is never kept
_UNSCOPED = ""

ResponseCallback = Callable[[AgentResponse], Any]


@dataclass
class EngineSettings:
    max_json_attempts: int = 3
    history_limit: int = 10
    history_keep: int = 5
    scan_depth: int = 4
    token_budget: int = 2048
    character_memory_top_k: int = 5
    narrator_memory_top_k: int = 3
    memory_min_similarity: float = 0.3
    visual_enabled: bool = False


# ---------------------------------------------------------------------------
# Director output
# ---------------------------------------------------------------------------

def _director_valid(data: dict[str, Any]) -> bool:
    return isinstance(data.get("guidance"), str) or isinstance(data.get("characters"), list)


def _names(value: Any) -> list[str]:
    names = []
    for item in value if isinstance(value, list) else []:
        if isinstance(item, str) and item.strip():
            names.append(item.strip())
        elif isinstance(item, dict) and isinstance(item.get("name"), str):
            names.append(item["name"].strip())
    return names


def parse_legacy_director(text: str) -> tuple[str, list[str]]:
    """Read the old line format: "Guidance: ..." and "Characters: A, B"."""
    guidance = ""
    characters: list[str] = []
    match = re.search(r"Guidance:\s*(.+?)(?:\n|$)", text, re.IGNORECASE)
    if match:
        guidance = match.group(1).strip()
    match = re.search(r"Characters:\s*(.+?)(?:\n|$)", text, re.IGNORECASE)
    if match and match.group(1).strip().lower() != "none":
        characters = [c.strip() for c in match.group(1).split(",") if c.strip()]
    return guidance, characters


def names_in_text(text: str, roster: list[CharacterRecord]) -> list[str]:
    return [
        c.name for c in roster
        if re.search(rf"\b{re.escape(c.name)}\b", text, re.IGNORECASE)
    ]


def find_character(roster: list[CharacterRecord], ref: str) -> CharacterRecord | None:
    """Match by case-insensitive name, id or slug."""
    lowered = ref.strip().lower()
    for c in roster:
        if c.name.lower() == lowered or c.id == ref or (c.slug and c.slug == lowered):
            return c
    return None


def continuation_input(messages: list[ChatMessage]) -> str:
    lines = [f"{m.sender}: {m.content}" for m in messages if m.source != "user"]
    if not lines:
        return "[System: Continue scene]"
    joined = "\n\n".join(lines)
    return (
        f"[System: Continue scene. Previous character messages:\n{joined}\n\n"
        "Decide which characters should continue the scene.]"
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class Orchestrator:
    def __init__(
        self,
        persistence: Persistence,
        agents: AgentSet,
        *,
        dispatcher: SideEffectDispatcher | None = None,
        events: EventSink | None = None,
        memory_retriever: MemoryRetriever | None = None,
        lore_matcher: LoreMatcher | None = None,
        image_generator: ImageGenerator | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self.persistence = persistence
        self.agents = agents
        self.settings = settings or EngineSettings()
        self.dispatcher = dispatcher or SideEffectDispatcher(persistence, events)
        self.ledger = RoundLedger(persistence, self.dispatcher)
        self.state = StateStore()
        self._memories = memory_retriever
        self._lore = lore_matcher or KeywordLoreMatcher()
        self._commands = SlashCommands(
            agents,
            persistence.list_characters,
            image_generator=image_generator,
            visual_enabled=self.settings.visual_enabled,
        )
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def process_input(
        self,
        user_input: str,
        persona_name: str = "default",
        active_characters: list[str] | None = None,
        scene_id: str | None = None,
        on_response: ResponseCallback | None = None,
    ) -> TurnResult:
        async with self._locks[scene_id or _UNSCOPED]:
            return await self._process(
                user_input, persona_name, active_characters, scene_id, on_response,
            )

    async def complete_round(self, scene_id: str, active_characters: list[str] | None = None) -> int:
        async with self._locks[scene_id]:
            return await self.ledger.complete(scene_id, active_characters)

    async def continue_round(self, scene_id: str, on_response: ResponseCallback | None = None) -> TurnResult:
        """Let the characters carry on without user input, then close the round."""
        async with self._locks[scene_id]:
            rnd = await self.ledger.refresh(scene_id)
            previous = rnd.round_number - 1
            messages = (
                await self.persistence.get_messages_for_round(scene_id, previous)
                if previous > 0 else []
            )
            scene = await self.persistence.load_scene(scene_id)
            logger.info("scene=%s continuing round %d", scene_id, rnd.round_number)
            result = await self._process(
                continuation_input(messages),
                "system",
                list(scene.active_characters),
                scene_id,
                on_response,
                continuation=True,
            )
            await self.ledger.complete(scene_id)
            return result

    def current_round(self, scene_id: str) -> Round | None:
        return self.ledger.current(scene_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _status(self, scene_id: str | None, agent: str, status: str) -> None:
        if scene_id:
            self.dispatcher.notify(scene_id, "agentStatus", {"agent": agent, "status": status})

    def _result_status(self, result: StructuredResult) -> str:
        return "complete" if result.ok else "failed_json_validation"

    async def _recover(self, agent, context: TurnContext, label: str, validate=None) -> StructuredResult:
        return await recover(
            None,
            lambda: agent.run(context),
            max_attempts=self.settings.max_json_attempts,
            validate=validate,
            label=label,
        )

    async def _persist(self, scene_id: str, state: SceneState) -> None:
        await self.dispatcher.persist_state(
            scene_id, state.world_state, state.trackers, state.character_states,
        )
        state.dirty = False

    async def _log(self, scene_id: str, sender: str, content: str, source: MessageSource) -> None:
        rnd = self.ledger.current(scene_id)
        await self.persistence.append_message(ChatMessage(
            scene_id=scene_id,
            round_number=rnd.round_number if rnd else 1,
            sender=sender,
            content=content,
            source=source,
        ))

    async def _roster(self, scene: SceneRecord | None, refs: list[str] | None) -> list[CharacterRecord]:
        if scene is None:
            return []
        roster: list[CharacterRecord] = []
        for ref in refs if refs is not None else scene.active_characters:
            record = await self.persistence.get_character(ref)
            if record is None:
                logger.warning("scene=%s active character %r not found", scene.id, ref)
            elif all(r.id != record.id for r in roster):
                roster.append(record)
        return roster

    async def _match_lore(self, scene: SceneRecord | None, state: SceneState, user_input: str) -> tuple[list[str], str]:
        if scene is None:
            return [], ""
        entries = await self.persistence.get_lore_entries(scene.id)
        if not entries:
            return [], ""
        depth = self.settings.scan_depth
        scan = "\n".join([scene.description, *state.history[-depth:], user_input])
        match = self._lore.match(entries, scan, depth, self.settings.token_budget)
        return [e.get("content", "") for e in match.selected_entries], format_lore(match.selected_entries)

    async def _notify_response(self, on_response: ResponseCallback | None, response: AgentResponse) -> None:
        if on_response is None:
            return
        try:
            result = on_response(response)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("response callback failed for %s", response.sender)

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def _process(
        self,
        user_input: str,
        persona_name: str,
        active_characters: list[str] | None,
        scene_id: str | None,
        on_response: ResponseCallback | None,
        *,
        continuation: bool = False,
    ) -> TurnResult:
        scene: SceneRecord | None = None
        if scene_id:
            await self.ledger.initialize(scene_id)
            scene = await self.persistence.load_scene(scene_id)
            state = self.state.seed(scene)
        else:
            state = SceneState(scene_id=_UNSCOPED)

        persona_key = persona_name or "user"
        persona = await self.persistence.get_persona(persona_key)
        roster = await self._roster(scene, active_characters)
        lore, lore_text = await self._match_lore(scene, state, user_input)

        context = TurnContext(
            user_input=user_input,
            history=state.history,
            summary=state.summary,
            scene=scene,
            persona=persona,
            persona_state=state.character_states.get(persona_key, {}),
            characters=roster,
            character_states=state.character_states,
            world_state=state.world_state,
            trackers=state.trackers,
            lore=lore,
            lore_text=lore_text,
        )

        if not continuation:
            command = parse_slash_command(user_input)
            if command is not None:
                return await self._commands.handle(
                    command[0], command[1], context,
                    lambda agent, status: self._status(scene_id, agent, status),
                )
            if is_describe_request(user_input):
                return await self._describe(scene, state, context)

        state.history.append(f"User: {user_input}")
        if scene is None:
            return TurnResult(responses=[AgentResponse(sender="System", content=NO_SCENE)])
        if not continuation:
            await self._log(scene.id, persona.name, user_input, "user")

        await self._summarize(scene, state, context)
        context = replace(context, history=state.history, summary=state.summary)

        selected, guidance = await self._direct(scene, context, roster, active_characters, user_input)
        context = replace(context, guidance=guidance)

        self.state.ensure_character(scene.id, persona_key, default_character_state(persona, scene.location))
        for record in roster:
            self.state.ensure_character(scene.id, record.name, default_character_state(record, scene.location))
        await self._update_world(scene, state, replace(
            context, persona_state=state.character_states.get(persona_key, {}),
        ), persona_key)

        responses = await self._characters(
            scene, state, context, roster, selected,
            "continue-round" if continuation else "character", on_response,
        )

        if state.dirty:
            await self._persist(scene.id, state)
        return TurnResult(responses=responses, lore=lore)

    async def _describe(self, scene: SceneRecord | None, state: SceneState, context: TurnContext) -> TurnResult:
        """Narrate the surroundings. Reads state, never writes it."""
        state.history.append(f"User: {context.user_input}")
        scene_id = scene.id if scene else None
        if scene is not None:
            hits = await retrieve_memories(self._memories, MemoryQuery(
                scope=memory_scope(scene.world_id),
                query=f"{context.user_input} {state.summary}".strip(),
                top_k=self.settings.narrator_memory_top_k,
                min_similarity=self.settings.memory_min_similarity,
            ))
            context = replace(context, memories=format_memories(hits))

        self._status(scene_id, "Narrator", "start")
        try:
            narration = await self.agents.narrator.run(replace(context, history=state.history))
        except LLMError as e:
            logger.warning("narrator failed, using fallback: %s", e)
            self._status(scene_id, "Narrator", "error")
            narration = NARRATOR_FALLBACK
        else:
            self._status(scene_id, "Narrator", "complete")
        state.history.append(f"Narrator: {narration}")
        return TurnResult(
            responses=[AgentResponse(sender="Narrator", content=narration)],
            lore=context.lore,
        )

    async def _summarize(self, scene: SceneRecord, state: SceneState, context: TurnContext) -> None:
        if len(state.history) <= self.settings.history_limit:
            return
        self._status(scene.id, "Summarize", "start")
        try:
            result = await self._recover(
                self.agents.summarizer,
                replace(context, history=state.history, summary=state.summary),
                "summarize",
                has_text("summary"),
            )
        except LLMError as e:
            logger.warning("scene=%s summarizer failed: %s", scene.id, e)
            self._status(scene.id, "Summarize", "error")
            return
        self._status(scene.id, "Summarize", self._result_status(result))
        if isinstance(result, Failed):
            logger.warning("scene=%s summary not recovered (%s); history kept", scene.id, result.kind)
            return
        state.summary = result.value["summary"].strip()
        state.history[:] = state.history[-self.settings.history_keep:]
        await self.persistence.save_scene(scene.id, {"summary": state.summary})
        logger.info("scene=%s history summarized, %d entries kept", scene.id, len(state.history))

    async def _direct(
        self,
        scene: SceneRecord,
        context: TurnContext,
        roster: list[CharacterRecord],
        explicit: list[str] | None,
        user_input: str,
    ) -> tuple[list[str], str]:
        """Return (selected character names, guidance)."""
        first_explicit: list[str] = []
        if explicit:
            record = find_character(roster, explicit[0])
            first_explicit = [record.name if record else explicit[0]]

        self._status(scene.id, "Director", "start")
        try:
            result = await self._recover(self.agents.director, context, "director", _director_valid)
        except LLMError as e:
            logger.warning("scene=%s director failed: %s", scene.id, e)
            self._status(scene.id, "Director", "error")
            return names_in_text(user_input, roster) or first_explicit, ""
        self._status(scene.id, "Director", self._result_status(result))

        if isinstance(result, Ok):
            guidance = result.value.get("guidance")
            guidance = guidance.strip() if isinstance(guidance, str) else ""
            selected = _names(result.value.get("characters"))
            raw = result.raw_text
        else:
            guidance, selected = parse_legacy_director(result.last_raw)
            raw = result.last_raw

        if not guidance and not selected:
            logger.warning("scene=%s director gave nothing usable: %r", scene.id, raw[:200])
            guidance = raw.strip()
            selected = first_explicit
        logger.debug("scene=%s director selected %s", scene.id, selected)
        return selected, guidance

    async def _update_world(
        self, scene: SceneRecord, state: SceneState, context: TurnContext, persona_key: str,
    ) -> None:
        self._status(scene.id, "WorldAgent", "start")
        try:
            result = await self._recover(self.agents.world, context, "world")
        except LLMError as e:
            logger.warning("scene=%s world agent failed: %s", scene.id, e)
            self._status(scene.id, "WorldAgent", "error")
            result = None
        else:
            self._status(scene.id, "WorldAgent", self._result_status(result))

        if isinstance(result, Ok):
            if self.state.apply_world_update(scene.id, result.value, persona_key):
                logger.debug("scene=%s world state changed", scene.id)
        elif isinstance(result, Failed):
            logger.warning("scene=%s world update not recovered (%s)", scene.id, result.kind)

        if state.dirty:
            await self._persist(scene.id, state)

    async def _characters(
        self,
        scene: SceneRecord,
        state: SceneState,
        context: TurnContext,
        roster: list[CharacterRecord],
        selected: list[str],
        source: MessageSource,
        on_response: ResponseCallback | None,
    ) -> list[AgentResponse]:
        responses: list[AgentResponse] = []
        for name in selected:
            record = find_character(roster, name)
            if record is None:
                logger.warning("scene=%s selected character %r is not active, skipped", scene.id, name)
                self.dispatcher.notify(scene.id, "characterSkipped", {"scene_id": scene.id, "name": name})
                continue

            char_state = self.state.ensure_character(
                scene.id, record.name, default_character_state(record, scene.location),
            )
            hits = await retrieve_memories(self._memories, MemoryQuery(
                scope=memory_scope(scene.world_id, record.name),
                query=f"{context.user_input} {' '.join(state.history)[:500]}",
                top_k=self.settings.character_memory_top_k,
                min_similarity=self.settings.memory_min_similarity,
            ))
            char_ctx = context.for_character(record, char_state, responses, format_memories(hits))

            self._status(scene.id, record.name, "start")
            try:
                result = await self._recover(
                    self.agents.character, char_ctx, record.name, has_text("response"),
                )
            except LLMError as e:
                logger.warning("scene=%s character %s failed: %s", scene.id, record.name, e)
                self._status(scene.id, record.name, "error")
                continue
            self._status(scene.id, record.name, self._result_status(result))

            if isinstance(result, Ok):
                content = result.value["response"].strip()
                update = result.value.get("characterState")
            else:
                content = result.last_raw.strip()
                update = None
            if not content:
                logger.warning("scene=%s character %s returned nothing", scene.id, record.name)
                continue

            if isinstance(update, dict) and self.state.apply_character_state(scene.id, record.name, update):
                await self._persist(scene.id, state)

            response = AgentResponse(sender=record.name, content=content)
            responses.append(response)
            state.history.append(f"{record.name}: {content}")
            await self._log(scene.id, record.name, content, source)
            self.ledger.track_participant(scene.id, record.name)
            await self._notify_response(on_response, response)
        return responses
