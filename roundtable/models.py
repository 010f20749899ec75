"""Core domain models.

Every engine component and the storage layer operate on these types.
Pydantic is used for validation and serialisation at every data boundary;
the ephemeral turn context lives in roundtable.pipeline.context instead.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

MessageSource = Literal[
    "user",
    "character",
    "narrator",
    "continue-round",
    "system",
]

RoundStatus = Literal["in_progress", "completing", "completed"]


class Trackers(BaseModel):
    """Scene trackers: free-form stats, ordered objectives, relationships."""

    stats: dict[str, Any] = Field(default_factory=dict)
    objectives: list[str] = Field(default_factory=list)
    relationships: dict[str, str] = Field(default_factory=dict)


class SceneRecord(BaseModel):
    """A scene as stored on disk. Lifecycle is owned outside the engine."""

    id: str
    title: str = ""
    description: str = ""
    location: str = ""
    time_of_day: str = ""
    world_id: str = "default"
    world_state: dict[str, Any] = Field(default_factory=dict)
    trackers: Trackers = Field(default_factory=Trackers)
    character_states: dict[str, dict[str, Any]] = Field(default_factory=dict)
    current_round_number: int = 1
    active_characters: list[str] = Field(default_factory=list)  # ids or names
    summary: str = ""


class Round(BaseModel):
    """Live round bookkeeping for one scene."""

    scene_id: str
    round_number: int = Field(default=1, ge=1)
    active_characters: set[str] = Field(default_factory=set)
    status: RoundStatus = "in_progress"
    world_id: str = "default"


class RoundRecord(BaseModel):
    """One row of a scene's round timeline."""

    round_number: int
    status: RoundStatus
    active_characters: list[str] = Field(default_factory=list)
    completed_at: str | None = None


class ChatMessage(BaseModel):
    """A single logged message, tagged with the round it belongs to."""

    scene_id: str
    round_number: int
    sender: str
    content: str
    source: MessageSource = "character"
    ts: str = ""


class CharacterRecord(BaseModel):
    """An NPC that can be selected to respond."""

    id: str
    name: str
    slug: str = ""
    description: str = ""
    personality: str = ""
    occupation: str = ""
    current_outfit: str = ""
    appearance: dict[str, Any] = Field(default_factory=dict)


class Persona(BaseModel):
    """The user-controlled persona."""

    name: str = "Default"
    description: str = "A user in the story."
    personality: str = ""
    occupation: str = ""
    current_outfit: str = ""
    appearance: dict[str, Any] = Field(default_factory=dict)


class AgentResponse(BaseModel):
    sender: str
    content: str


class TurnResult(BaseModel):
    """What one call into the engine returns to its caller."""

    responses: list[AgentResponse] = Field(default_factory=list)
    lore: list[str] = Field(default_factory=list)
