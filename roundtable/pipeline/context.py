"""TurnContext — everything an agent sees during one turn.

Built fresh for each turn and narrowed per agent with dataclasses.replace();
never persisted.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any

from roundtable.models import AgentResponse, CharacterRecord, Persona, SceneRecord, Trackers


def render_history(history: list[str], summary: str = "", turn_responses: list[AgentResponse] | None = None) -> str:
    """Flatten rolling history for a prompt.

    With a summary the result reads "[SCENE SUMMARY]\\n...\\n\\n[MESSAGES]\\n...".
    Responses given earlier in the same turn are appended under
    "[Other Characters in this turn:]".
    """
    body = "\n".join(history)
    if summary:
        body = f"[SCENE SUMMARY]\n{summary}\n\n[MESSAGES]\n{body}"
    if turn_responses:
        others = "\n".join(f"{r.sender}: {r.content}" for r in turn_responses)
        body = f"{body}\n\n[Other Characters in this turn:]\n{others}"
    return body


def _state_text(state: dict[str, Any]) -> str:
    return ", ".join(f"{k}: {v}" for k, v in state.items() if v)


@dataclass
class TurnContext:
    user_input: str
    history: list[str] = field(default_factory=list)
    summary: str = ""
    scene: SceneRecord | None = None
    persona: Persona = field(default_factory=Persona)
    persona_state: dict[str, Any] = field(default_factory=dict)
    characters: list[CharacterRecord] = field(default_factory=list)
    character_states: dict[str, dict[str, Any]] = field(default_factory=dict)
    world_state: dict[str, Any] = field(default_factory=dict)
    trackers: Trackers = field(default_factory=Trackers)
    lore: list[str] = field(default_factory=list)
    lore_text: str = ""
    memories: str = ""
    guidance: str = ""
    turn_responses: list[AgentResponse] = field(default_factory=list)

    # Single-agent fields
    character: CharacterRecord | None = None
    character_state: dict[str, Any] = field(default_factory=dict)
    scene_picture: bool = False
    request: str = ""
    entities: list[dict[str, Any]] = field(default_factory=list)
    scene_description: str = ""

    def for_character(
        self,
        record: CharacterRecord,
        state: dict[str, Any],
        turn_responses: list[AgentResponse],
        memories: str = "",
    ) -> TurnContext:
        return replace(
            self,
            character=record,
            character_state=dict(state),
            turn_responses=list(turn_responses),
            memories=memories,
        )

    def rendered_history(self) -> str:
        return render_history(self.history, self.summary, self.turn_responses)

    def template_vars(self) -> dict[str, Any]:
        """Variables for render_prompt()."""
        scene = self.scene
        names = [c.name for c in self.characters]
        return {
            "user_input": self.user_input,
            "history": self.rendered_history(),
            "summary": self.summary,
            "scene": {
                "title": scene.title if scene else "",
                "location": scene.location if scene else "",
                "time_of_day": scene.time_of_day if scene else "",
                "description": scene.description if scene else "",
            },
            "persona": self.persona.model_dump(),
            "persona_state": self.persona_state,
            "characters": [
                {
                    **c.model_dump(),
                    "state": self.character_states.get(c.name, {}),
                    "state_text": _state_text(self.character_states.get(c.name, {})),
                }
                for c in self.characters
            ],
            "active_names": ", ".join(names) if names else "None",
            "world_state": self.world_state,
            "trackers": self.trackers.model_dump(),
            "lore": self.lore_text,
            "memories": self.memories,
            "guidance": self.guidance,
            "character": self.character.model_dump() if self.character else {},
            "character_state": self.character_state,
            "scene_picture": self.scene_picture,
            "request": self.request,
            "entities": self.entities,
            "scene_description": self.scene_description,
        }

    def describe(self) -> str:
        """Short debug line."""
        return json.dumps({
            "input": self.user_input[:60],
            "history": len(self.history),
            "characters": [c.name for c in self.characters],
            "character": self.character.name if self.character else None,
        })
