"""Persistence — the Persistence protocol and its JSON file implementation.

The engine only talks to the async Persistence protocol below. JsonStorage
keeps everything in flat JSON files under a configurable base directory;
there is no database or ORM, reads and writes go through plain helper
methods that load and dump JSON.

Directory layout:

    {base}/
      characters.json         ← list of CharacterRecord objects
      personas.json           ← list of Persona objects
      scenes/
        {id}.json             ← SceneRecord (state, round number, summary)
        {id}/
          messages.json       ← append-only ChatMessage log
          rounds.json         ← RoundRecord timeline
          lorebook.json       ← lore entry dicts
"""

from __future__ import annotations

import json
import logging
import re
import unicodedata
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from roundtable.models import (
    CharacterRecord,
    ChatMessage,
    Persona,
    RoundRecord,
    SceneRecord,
)

logger = logging.getLogger(__name__)

_M = TypeVar("_M", bound=BaseModel)


class PersistenceError(RuntimeError):
    """Raised when scene state cannot be read or written."""


class SceneNotFound(PersistenceError):
    """Raised when a scene id does not exist."""


def slugify(title: str) -> str:
    """Convert a name to a filesystem-safe slug.

    "Ava the Bold" → "ava-the-bold"
    """
    text = unicodedata.normalize("NFKD", title)
    text = text.encode("ascii", "ignore").decode("ascii")
    text = text.lower()
    text = re.sub(r"['\"]", "", text)
    text = re.sub(r"[^a-z0-9]+", "-", text)
    text = text.strip("-")
    return text or "untitled"


# ---------------------------------------------------------------------------
# Protocol — what the engine needs from a storage backend
# ---------------------------------------------------------------------------

class Persistence(Protocol):
    async def load_scene(self, scene_id: str) -> SceneRecord: ...

    async def save_scene(self, scene_id: str, fields: dict[str, Any]) -> SceneRecord: ...

    async def record_round_completion(self, scene_id: str, active_characters: list[str]) -> int: ...

    async def get_messages_for_round(self, scene_id: str, round_number: int) -> list[ChatMessage]: ...

    async def append_message(self, message: ChatMessage) -> None: ...

    async def get_character(self, ref: str) -> CharacterRecord | None: ...

    async def list_characters(self) -> list[CharacterRecord]: ...

    async def get_persona(self, name: str) -> Persona: ...

    async def get_lore_entries(self, scene_id: str) -> list[dict[str, Any]]: ...


# ---------------------------------------------------------------------------
# JsonStorage
# ---------------------------------------------------------------------------

_SCENE_FIELDS = set(SceneRecord.model_fields) - {"id"}


class JsonStorage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._scene_root = base_path / "scenes"
        self._scene_root.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _scene_file(self, scene_id: str) -> Path:
        if not scene_id or "/" in scene_id or "\\" in scene_id or scene_id.startswith("."):
            raise PersistenceError(f"Invalid scene id {scene_id!r}")
        return self._scene_root / f"{scene_id}.json"

    def _scene_dir(self, scene_id: str) -> Path:
        self._scene_file(scene_id)
        return self._scene_root / scene_id

    def _read_json(self, path: Path, default: Any = None) -> Any:
        if not path.is_file():
            return default
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Cannot read {path}: {e}") from e

    def _write_json(self, path: Path, data: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(data, indent=2, ensure_ascii=False))
        except OSError as e:
            raise PersistenceError(f"Cannot write {path}: {e}") from e

    def _validate_rows(self, model: type[_M], rows: list[Any], path: Path) -> list[_M]:
        try:
            return [model.model_validate(r) for r in rows]
        except (ValidationError, TypeError) as e:
            raise PersistenceError(f"Invalid row in {path}: {e}") from e

    # ------------------------------------------------------------------
    # Scenes
    # ------------------------------------------------------------------

    async def create_scene(self, scene: SceneRecord) -> SceneRecord:
        self._write_json(self._scene_file(scene.id), scene.model_dump(mode="json"))
        self._scene_dir(scene.id).mkdir(exist_ok=True)
        return scene

    async def load_scene(self, scene_id: str) -> SceneRecord:
        data = self._read_json(self._scene_file(scene_id))
        if data is None:
            raise SceneNotFound(f"Scene {scene_id!r} not found")
        try:
            return SceneRecord.model_validate(data)
        except ValidationError as e:
            raise PersistenceError(f"Scene {scene_id!r} is corrupt: {e}") from e

    async def save_scene(self, scene_id: str, fields: dict[str, Any]) -> SceneRecord:
        """Partial update; unknown field names are ignored."""
        scene = await self.load_scene(scene_id)
        data = scene.model_dump(mode="json")
        for key, value in fields.items():
            if key in _SCENE_FIELDS:
                data[key] = value
        try:
            updated = SceneRecord.model_validate(data)
        except ValidationError as e:
            raise PersistenceError(f"Invalid scene fields for {scene_id!r}: {e}") from e
        self._write_json(self._scene_file(scene_id), updated.model_dump(mode="json"))
        return updated

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    async def get_rounds(self, scene_id: str) -> list[RoundRecord]:
        path = self._scene_dir(scene_id) / "rounds.json"
        return self._validate_rows(RoundRecord, self._read_json(path, []), path)

    async def record_round_completion(self, scene_id: str, active_characters: list[str]) -> int:
        """Close the scene's current round, open the next. Returns the new number."""
        scene = await self.load_scene(scene_id)
        current = scene.current_round_number
        rounds = await self.get_rounds(scene_id)
        now = datetime.now(timezone.utc).isoformat()

        closed = RoundRecord(
            round_number=current,
            status="completed",
            active_characters=list(active_characters),
            completed_at=now,
        )
        for i, r in enumerate(rounds):
            if r.round_number == current:
                rounds[i] = closed
                break
        else:
            rounds.append(closed)
        rounds.append(RoundRecord(round_number=current + 1, status="in_progress"))

        self._write_json(
            self._scene_dir(scene_id) / "rounds.json",
            [r.model_dump(mode="json") for r in rounds],
        )
        await self.save_scene(scene_id, {"current_round_number": current + 1})
        logger.info("scene=%s round %d closed, round %d opened", scene_id, current, current + 1)
        return current + 1

    # ------------------------------------------------------------------
    # Messages (append-only)
    # ------------------------------------------------------------------

    async def get_messages(self, scene_id: str) -> list[ChatMessage]:
        path = self._scene_dir(scene_id) / "messages.json"
        return self._validate_rows(ChatMessage, self._read_json(path, []), path)

    async def get_messages_for_round(self, scene_id: str, round_number: int) -> list[ChatMessage]:
        return [m for m in await self.get_messages(scene_id) if m.round_number == round_number]

    async def append_message(self, message: ChatMessage) -> None:
        if not message.ts:
            message = message.model_copy(update={"ts": datetime.now(timezone.utc).isoformat()})
        existing = await self.get_messages(message.scene_id)
        existing.append(message)
        self._write_json(
            self._scene_dir(message.scene_id) / "messages.json",
            [m.model_dump(mode="json") for m in existing],
        )

    # ------------------------------------------------------------------
    # Characters
    # ------------------------------------------------------------------

    async def list_characters(self) -> list[CharacterRecord]:
        path = self._base / "characters.json"
        return self._validate_rows(CharacterRecord, self._read_json(path, []), path)

    async def save_character(self, character: CharacterRecord) -> CharacterRecord:
        """Upsert a character by id."""
        if not character.slug:
            character = character.model_copy(update={"slug": slugify(character.name)})
        chars = await self.list_characters()
        for i, c in enumerate(chars):
            if c.id == character.id:
                chars[i] = character
                break
        else:
            chars.append(character)
        self._write_json(self._base / "characters.json", [c.model_dump(mode="json") for c in chars])
        return character

    async def get_character(self, ref: str) -> CharacterRecord | None:
        """Look a character up by id, slug or case-insensitive name."""
        lowered = ref.lower()
        for c in await self.list_characters():
            if c.id == ref or c.slug == ref or c.name.lower() == lowered:
                return c
        return None

    # ------------------------------------------------------------------
    # Personas
    # ------------------------------------------------------------------

    async def save_persona(self, persona: Persona) -> None:
        """Upsert a persona by name."""
        raw = self._read_json(self._base / "personas.json", [])
        personas = [Persona.model_validate(p) for p in raw]
        for i, p in enumerate(personas):
            if p.name == persona.name:
                personas[i] = persona
                break
        else:
            personas.append(persona)
        self._write_json(self._base / "personas.json", [p.model_dump(mode="json") for p in personas])

    async def get_persona(self, name: str) -> Persona:
        """Return the named persona, or the generic default persona."""
        raw = self._read_json(self._base / "personas.json", [])
        for p in raw:
            if p.get("name") == name:
                return Persona.model_validate(p)
        return Persona()

    # ------------------------------------------------------------------
    # Lorebook
    # ------------------------------------------------------------------

    async def get_lore_entries(self, scene_id: str) -> list[dict[str, Any]]:
        return self._read_json(self._scene_dir(scene_id) / "lorebook.json", [])

    async def save_lore_entries(self, scene_id: str, entries: list[dict[str, Any]]) -> None:
        self._write_json(self._scene_dir(scene_id) / "lorebook.json", entries)
