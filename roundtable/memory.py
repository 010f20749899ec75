"""Round memories — scopes, retrieval and prompt formatting.

Memories are stored per scope:

    world_{world_id}_char_{name}   one character's view of past rounds
    world_{world_id}_multi         everything said in a round, for narration

The engine only needs the two protocols below. InMemoryMemoryStore is a
small lexical-overlap store for development and tests; a vector-backed
store can be dropped in without touching the engine.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

_WORD = re.compile(r"[a-z0-9']+")


def memory_scope(world_id: str, character: str | None = None) -> str:
    if character is None:
        return f"world_{world_id}_multi"
    return f"world_{world_id}_char_{character}"


@dataclass
class MemoryQuery:
    scope: str
    query: str
    top_k: int = 5
    min_similarity: float = 0.3


@dataclass
class MemoryHit:
    text: str
    similarity: float
    metadata: dict[str, Any] = field(default_factory=dict)


class MemoryRetriever(Protocol):
    async def retrieve(self, query: MemoryQuery) -> list[MemoryHit]: ...


class MemoryStore(Protocol):
    async def add_memory(self, memory_id: str, text: str, metadata: dict[str, Any], scope: str) -> None: ...


async def retrieve_memories(retriever: MemoryRetriever | None, query: MemoryQuery) -> list[MemoryHit]:
    """Query `retriever`, treating any failure as "no memories"."""
    if retriever is None or not query.query.strip():
        return []
    try:
        return await retriever.retrieve(query)
    except Exception as e:
        logger.warning("memory retrieval failed for %s: %s", query.scope, e)
        return []


def format_memories(hits: list[MemoryHit]) -> str:
    """Render hits for a prompt, dropping the leading speaker label.

    [MemoryHit("Ava: the key is gone", 0.82)] ->
        "## Relevant Memories\\n- [82%] the key is gone\\n"
    """
    if not hits:
        return ""
    lines = ["## Relevant Memories"]
    for hit in hits:
        text = hit.text or ""
        if ": " in text:
            text = text.split(": ", 1)[1]
        lines.append(f"- [{round((hit.similarity or 0) * 100)}%] {text}")
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# InMemoryMemoryStore
# ---------------------------------------------------------------------------

def _tokens(text: str) -> set[str]:
    return set(_WORD.findall(text.lower()))


def _similarity(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


class InMemoryMemoryStore:
    """Both protocols over a plain dict of scopes. Scored by word overlap."""

    def __init__(self) -> None:
        self._scopes: dict[str, dict[str, tuple[str, dict[str, Any]]]] = {}

    async def add_memory(self, memory_id: str, text: str, metadata: dict[str, Any], scope: str) -> None:
        self._scopes.setdefault(scope, {})[memory_id] = (text, dict(metadata))
        logger.debug("memory %s stored in %s", memory_id, scope)

    async def retrieve(self, query: MemoryQuery) -> list[MemoryHit]:
        wanted = _tokens(query.query)
        hits = []
        for text, metadata in self._scopes.get(query.scope, {}).values():
            score = _similarity(wanted, _tokens(text))
            if score >= query.min_similarity:
                hits.append(MemoryHit(text, score, metadata))
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:query.top_k]

    def scope_size(self, scope: str) -> int:
        return len(self._scopes.get(scope, {}))
