"""Per-scene state projection and its merge rules.

The store keeps one SceneState per scene id: world state, trackers,
character states, plus the rolling history and scene summary that only
live in memory between turns. World/tracker/character fields are seeded
from persistence at the start of each turn and written back through the
dispatcher whenever they change.

Merge rules:
  world state      merged key-by-key, never replaced
  trackers         stats/relationships merged key-by-key; objectives
                   normalized to a list of strings and replaced
  character state  "default" (any case) and empty values never overwrite
"""

from __future__ import annotations

import copy
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from roundtable.models import CharacterRecord, Persona, SceneRecord, Trackers

logger = logging.getLogger(__name__)

# World agents may smuggle the user's persona state under this key.
PERSONA_STATE_KEY = "userPersonaState"

SENTINEL = "default"

_MOOD_KEYWORDS = (
    "cheerful", "happy", "sad", "angry", "calm", "anxious", "confident", "shy",
    "curious", "determined", "amused", "serious", "playful", "reserved", "outgoing",
)

_CLOTHING_PATTERNS = (
    re.compile(r"wearing\s+(.+?)(?:\.|,|\band\b)", re.IGNORECASE),
    re.compile(r"dressed in\s+(.+?)(?:\.|,|\band\b)", re.IGNORECASE),
    re.compile(r"outfit:\s+(.+?)(?:\.|,|\band\b)", re.IGNORECASE),
    re.compile(r"clothes?:\s+(.+?)(?:\.|,|\band\b)", re.IGNORECASE),
)

_ACTIVITY_PATTERNS = (
    re.compile(r"(?:works? as|acts? as)\s+(?:an?\s+)?(.+?)(?:\.|,|\band\b)", re.IGNORECASE),
    re.compile(r"occupation:\s+(.+?)(?:\.|,|\band\b)", re.IGNORECASE),
    re.compile(r"role:\s+(.+?)(?:\.|,|\band\b)", re.IGNORECASE),
)


def is_sentinel(value: Any) -> bool:
    """True for values that carry no information and must not overwrite."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip() or value.strip().lower() == SENTINEL
    return False


def merge_character_state(current: dict[str, Any], update: dict[str, Any]) -> bool:
    """Apply `update` onto `current` in place. Returns True if anything changed."""
    changed = False
    for key, value in update.items():
        if is_sentinel(value):
            continue
        if current.get(key) != value:
            current[key] = value
            changed = True
    return changed


def normalize_objectives(value: Any) -> list[str]:
    """Coerce an objectives payload into an ordered list of readable strings.

    {"0": "find the key", "1": "escape"} -> ["find the key", "escape"]
    """
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, dict):
        keys = list(value.keys())
        if keys and all(str(k).strip().lstrip("-").isdigit() for k in keys):
            keys.sort(key=lambda k: int(str(k).strip()))
        items = [value[k] for k in keys]
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        items = [value]

    result = []
    for item in items:
        if isinstance(item, str):
            result.append(item)
        elif isinstance(item, dict) and isinstance(item.get("description"), str):
            result.append(item["description"])
        else:
            result.append(json.dumps(item, ensure_ascii=False))
    return result


def merge_trackers(trackers: Trackers, update: dict[str, Any]) -> bool:
    """Merge a tracker delta into `trackers` in place. Returns True if changed."""
    before = trackers.model_dump()
    if isinstance(update.get("stats"), dict):
        trackers.stats.update(update["stats"])
    if isinstance(update.get("relationships"), dict):
        trackers.relationships.update(
            {str(k): v if isinstance(v, str) else json.dumps(v, ensure_ascii=False)
             for k, v in update["relationships"].items()}
        )
    if "objectives" in update:
        trackers.objectives = normalize_objectives(update["objectives"])
    return trackers.model_dump() != before


def state_from_description(description: str) -> dict[str, str]:
    """Best-effort clothing/mood/activity guesses from a free-text description."""
    state: dict[str, str] = {}
    if not description:
        return state
    for pattern in _CLOTHING_PATTERNS:
        match = pattern.search(description)
        if match:
            state["clothingWorn"] = match.group(1).strip()
            break
    lowered = description.lower()
    for mood in _MOOD_KEYWORDS:
        if re.search(rf"\b{mood}\b", lowered):
            state["mood"] = mood
            break
    for pattern in _ACTIVITY_PATTERNS:
        match = pattern.search(description)
        if match:
            state["activity"] = match.group(1).strip()
            break
    return state


def _first_trait(personality: str) -> str:
    return personality.split(",")[0].strip() if personality else ""


def default_character_state(record: CharacterRecord | Persona, location: str) -> dict[str, Any]:
    """Initial state for an entity seen for the first time in a scene."""
    extracted = state_from_description(record.description)
    aesthetic = record.appearance.get("aesthetic", "") if record.appearance else ""
    is_persona = isinstance(record, Persona)
    return {
        "clothingWorn": extracted.get("clothingWorn") or record.current_outfit or aesthetic or "casual attire",
        "mood": extracted.get("mood") or _first_trait(record.personality) or "neutral",
        "activity": (
            extracted.get("activity") or record.occupation
            or ("interacting" if is_persona else "present")
        ),
        "location": location or "unknown",
        "position": "standing",
    }


@dataclass
class SceneState:
    """Mutable projection of one scene."""

    scene_id: str
    world_state: dict[str, Any] = field(default_factory=dict)
    trackers: Trackers = field(default_factory=Trackers)
    character_states: dict[str, dict[str, Any]] = field(default_factory=dict)
    history: list[str] = field(default_factory=list)
    summary: str = ""
    location: str = ""
    dirty: bool = False


class StateStore:
    """Scene-keyed in-memory state. One engine may serve many scenes."""

    def __init__(self) -> None:
        self._scenes: dict[str, SceneState] = {}

    def get(self, scene_id: str) -> SceneState:
        state = self._scenes.get(scene_id)
        if state is None:
            state = SceneState(scene_id=scene_id)
            self._scenes[scene_id] = state
        return state

    def seed(self, record: SceneRecord) -> SceneState:
        """Replace the persisted fields with `record`; history stays in memory.

        The summary is only taken from the record if none is held yet.
        """
        state = self.get(record.id)
        state.world_state = copy.deepcopy(record.world_state)
        state.trackers = record.trackers.model_copy(deep=True)
        state.character_states = copy.deepcopy(record.character_states)
        state.location = record.location
        state.dirty = False
        if not state.summary and record.summary:
            state.summary = record.summary
        return state

    # ------------------------------------------------------------------
    # Character states
    # ------------------------------------------------------------------

    def ensure_character(self, scene_id: str, name: str, defaults: dict[str, Any]) -> dict[str, Any]:
        state = self.get(scene_id)
        if name not in state.character_states:
            state.character_states[name] = dict(defaults)
            state.dirty = True
            logger.debug("scene=%s initialized character state for %s", scene_id, name)
        return state.character_states[name]

    def apply_character_state(self, scene_id: str, name: str, update: dict[str, Any]) -> bool:
        state = self.get(scene_id)
        current = state.character_states.setdefault(name, {})
        changed = merge_character_state(current, update)
        if changed:
            state.dirty = True
        return changed

    # ------------------------------------------------------------------
    # World updates
    # ------------------------------------------------------------------

    def apply_world_update(self, scene_id: str, update: dict[str, Any], persona_key: str) -> bool:
        """Merge a world-agent payload. Returns True if any state changed.

        Payload shape: {"unchanged"?: bool, "worldState"?: {...}, "trackers"?: {...}}
        """
        if update.get("unchanged"):
            return False
        state = self.get(scene_id)
        changed = False

        world = update.get("worldState")
        if isinstance(world, dict):
            world = dict(world)
            persona_update = world.pop(PERSONA_STATE_KEY, None)
            if isinstance(persona_update, dict):
                if self.apply_character_state(scene_id, persona_key, persona_update):
                    changed = True
            state.world_state.pop(PERSONA_STATE_KEY, None)
            for key, value in world.items():
                if state.world_state.get(key) != value:
                    state.world_state[key] = value
                    changed = True

        trackers = update.get("trackers")
        if isinstance(trackers, dict) and merge_trackers(state.trackers, trackers):
            changed = True

        if changed:
            state.dirty = True
        return changed
