"""Agents — one Handlebars template and one LLM stage each.

Every agent takes a TurnContext and returns the model's text. Parsing is
not done here: agents that answer in JSON are wrapped in
roundtable.recovery.recover() by the orchestrator.

MemoryWriter is the odd one out. It makes no LLM call; it turns a closed
round's messages into a memory snippet and stores it per character.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol

from roundtable.llm import LLM
from roundtable.memory import MemoryStore, memory_scope
from roundtable.models import ChatMessage
from roundtable.prompts import DEFAULT_TEMPLATES, render_prompt

if TYPE_CHECKING:
    from roundtable.pipeline.context import TurnContext

logger = logging.getLogger(__name__)

_THINKING = re.compile(r"<think(?:ing)?>.*?</think(?:ing)?>", re.DOTALL | re.IGNORECASE)

SNIPPET_MESSAGE_LIMIT = 150


class Agent(Protocol):
    name: str

    async def run(self, context: TurnContext) -> str: ...


def clean_output(text: str) -> str:
    """Drop reasoning blocks some models emit before the answer."""
    return _THINKING.sub("", text or "").strip()


class PromptAgent:
    """Render `template` from the context and send it to the LLM as `stage`."""

    stage = ""

    def __init__(self, llm: LLM, template: str | None = None, name: str | None = None) -> None:
        self._llm = llm
        self._template = template or DEFAULT_TEMPLATES[self.stage]
        self.name = name or self.stage.capitalize()

    def prompt(self, context: TurnContext) -> str:
        return render_prompt(self._template, context.template_vars())

    async def run(self, context: TurnContext) -> str:
        prompt = self.prompt(context)
        logger.debug("%s prompt (%d chars) %s", self.name, len(prompt), context.describe())
        text = clean_output(await self._llm(self.stage, prompt))
        logger.debug("%s output: %r", self.name, text[:200])
        return text


class DirectorAgent(PromptAgent):
    stage = "director"


class WorldAgent(PromptAgent):
    stage = "world"


class CharacterAgent(PromptAgent):
    stage = "character"


class SummarizeAgent(PromptAgent):
    stage = "summarize"


class NarratorAgent(PromptAgent):
    stage = "narrator"


class CreatorAgent(PromptAgent):
    stage = "creator"


class VisualAgent(PromptAgent):
    stage = "visual"


@dataclass
class AgentSet:
    director: Agent
    world: Agent
    character: Agent
    summarizer: Agent
    narrator: Agent
    creator: Agent
    visual: Agent

    @classmethod
    def from_llm(cls, llm: LLM, templates: dict[str, str] | None = None) -> AgentSet:
        """Build every agent on one (usually routed) LLM, with optional template overrides."""
        templates = templates or {}
        return cls(
            director=DirectorAgent(llm, templates.get("director")),
            world=WorldAgent(llm, templates.get("world"), name="WorldAgent"),
            character=CharacterAgent(llm, templates.get("character")),
            summarizer=SummarizeAgent(llm, templates.get("summarize")),
            narrator=NarratorAgent(llm, templates.get("narrator")),
            creator=CreatorAgent(llm, templates.get("creator")),
            visual=VisualAgent(llm, templates.get("visual")),
        )


# ---------------------------------------------------------------------------
# MemoryWriter
# ---------------------------------------------------------------------------

def round_snippet(round_number: int, messages: list[ChatMessage], active_characters: list[str]) -> str:
    """One line per round: "Round N (A, B): speaker: text | speaker: text"."""
    events = []
    for msg in messages:
        content = (msg.content or "").strip()
        if not content:
            continue
        if len(content) > SNIPPET_MESSAGE_LIMIT:
            content = content[:SNIPPET_MESSAGE_LIMIT] + "..."
        events.append(f"{msg.sender or 'narrator'}: {content}")
    if not events:
        return ""
    return f"Round {round_number} ({', '.join(active_characters)}): {' | '.join(events)}"


class MemoryWriter:
    """Stores each closed round in every participant's scope and the shared one."""

    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    async def capture(
        self,
        scene_id: str,
        round_number: int,
        messages: list[ChatMessage],
        active_characters: list[str],
        world_id: str,
    ) -> None:
        if not messages or not active_characters:
            logger.debug("scene=%s round %d has nothing to remember", scene_id, round_number)
            return
        snippet = round_snippet(round_number, messages, active_characters)
        if not snippet:
            return

        now = datetime.now(timezone.utc)
        metadata = {
            "round_number": round_number,
            "scene_id": scene_id,
            "actors": list(active_characters),
            "timestamp": now.isoformat(),
            "type": "round_memory",
        }
        stamp = int(now.timestamp() * 1000)
        stored = 0
        for name in active_characters:
            try:
                await self._store.add_memory(
                    f"round_{round_number}_{name}_{stamp}",
                    snippet,
                    {**metadata, "character_name": name},
                    memory_scope(world_id, name),
                )
                stored += 1
            except Exception as e:
                logger.warning("scene=%s memory for %s not stored: %s", scene_id, name, e)
        await self._store.add_memory(
            f"round_{round_number}_multi_{stamp}", snippet, metadata, memory_scope(world_id),
        )
        logger.info(
            "scene=%s round %d remembered by %d/%d characters",
            scene_id, round_number, stored, len(active_characters),
        )
