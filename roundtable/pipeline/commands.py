"""Slash commands and the describe-my-surroundings shortcut.

  /create <request>   Creator agent writes new content for the world.
  /image <prompt>     Visual agent writes an image prompt for the named
                      characters (or the raw prompt); the image generator,
                      if configured, turns it into a picture.
  /scenepicture       Narrator describes the scene as a still picture,
                      then the Visual agent and image generator take over.

Commands are side flows: they never touch world state, trackers or rounds.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import replace
from typing import Protocol

from roundtable.agents import AgentSet
from roundtable.llm import LLMError
from roundtable.models import AgentResponse, CharacterRecord, TurnResult
from roundtable.pipeline.context import TurnContext

logger = logging.getLogger(__name__)

DESCRIBE_PHRASES = (
    "what do i see",
    "describe the scene",
    "where am i",
    "what's around me",
    "look around",
    "survey the area",
)

VISUAL_DISABLED = "Visual agent is disabled in configuration."
CREATOR_FALLBACK = "Unable to create content at this time."

StatusCallback = Callable[[str, str], None]


class ImageGenerator(Protocol):
    async def generate(self, prompt: str) -> str: ...


def parse_slash_command(text: str) -> tuple[str, list[str]] | None:
    """Split a command line; None when `text` is not a command.

    /image Ava at the docks -> ("image", ["Ava", "at", "the", "docks"])
    """
    if not text.startswith("/"):
        return None
    parts = text[1:].split(" ")
    return parts[0], [p for p in parts[1:] if p]


def is_describe_request(text: str) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in DESCRIBE_PHRASES)


def search_entities(prompt: str, characters: list[CharacterRecord]) -> list[CharacterRecord]:
    """Characters whose name appears in `prompt` as a whole word."""
    found = []
    for char in characters:
        if re.search(rf"\b{re.escape(char.name)}\b", prompt, re.IGNORECASE):
            found.append(char)
    return found


def image_markdown(prompt: str, url: str) -> str:
    meta = {"prompt": prompt, "urls": [url], "current": 0}
    return f"![{json.dumps(meta)}]({url})"


def _reply(sender: str, content: str, lore: list[str] | None = None) -> TurnResult:
    return TurnResult(responses=[AgentResponse(sender=sender, content=content)], lore=lore or [])


class SlashCommands:
    def __init__(
        self,
        agents: AgentSet,
        list_characters: Callable,
        *,
        image_generator: ImageGenerator | None = None,
        visual_enabled: bool = False,
    ) -> None:
        self._agents = agents
        self._list_characters = list_characters
        self._images = image_generator
        self._visual_enabled = visual_enabled

    async def handle(
        self, command: str, args: list[str], context: TurnContext, status: StatusCallback,
    ) -> TurnResult:
        logger.info("slash command /%s", command)
        if command == "create":
            return await self._create(" ".join(args), context, status)
        if command == "image":
            return await self._image(" ".join(args), context, status)
        if command == "scenepicture":
            return await self._scene_picture(context, status)
        return _reply("System", f"Unknown command: /{command}")

    async def _create(self, request: str, context: TurnContext, status: StatusCallback) -> TurnResult:
        ctx = replace(context, user_input=request, request=request)
        status("Creator", "start")
        try:
            text = await self._agents.creator.run(ctx)
        except LLMError as e:
            logger.warning("creator failed: %s", e)
            status("Creator", "error")
            return _reply("Creator", CREATOR_FALLBACK)
        status("Creator", "complete")
        return _reply("Creator", text)

    async def _render_image(self, prompt: str) -> str:
        if self._images is None:
            return prompt
        url = await self._images.generate(prompt)
        return image_markdown(prompt, url)

    async def _image(self, prompt: str, context: TurnContext, status: StatusCallback) -> TurnResult:
        if not self._visual_enabled:
            return _reply("System", VISUAL_DISABLED)
        entities = search_entities(prompt, await self._list_characters())
        logger.debug("/image matched %s", [e.name for e in entities])
        ctx = replace(
            context,
            user_input=prompt,
            entities=[{"name": e.name, "description": e.description} for e in entities],
        )
        status("Visual", "start")
        try:
            sd_prompt = await self._agents.visual.run(ctx)
            content = await self._render_image(sd_prompt)
        except Exception:
            logger.exception("image generation failed")
            status("Visual", "error")
            return _reply("System", "Image generation failed.")
        status("Visual", "complete")
        return _reply("Visual", content, context.lore)

    async def _scene_picture(self, context: TurnContext, status: StatusCallback) -> TurnResult:
        if not self._visual_enabled:
            return _reply("System", VISUAL_DISABLED)
        status("Narrator", "start")
        try:
            narration = await self._agents.narrator.run(
                replace(context, user_input="Describe the scene", scene_picture=True)
            )
        except LLMError as e:
            logger.warning("scene picture narration failed: %s", e)
            status("Narrator", "error")
            return _reply("System", "Scene picture generation failed.")
        status("Narrator", "complete")

        status("Visual", "start")
        try:
            sd_prompt = await self._agents.visual.run(replace(
                context,
                user_input="Generate an image prompt for this scene",
                scene_picture=True,
                scene_description=narration,
            ))
            content = await self._render_image(sd_prompt)
        except Exception:
            logger.exception("scene picture generation failed")
            status("Visual", "error")
            return _reply("System", "Scene picture generation failed.")
        status("Visual", "complete")
        return _reply("Visual", content)
