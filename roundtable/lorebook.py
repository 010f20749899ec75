"""Lorebook matching — pick lore entries whose keys appear in recent text.

Entries are plain dicts in the usual lorebook shape:

    {"key": ["harbor", "/ship(s)?/"], "content": "...", "enabled": true,
     "insertion_order": 100, "insertion_position": "Before Char Defs",
     "selective": false, "optional_filter": [], "selectiveLogic": 0,
     "group": "", "caseSensitive": false, "matchWholeWords": false}

Keys wrapped in slashes are regular expressions. Selective entries also
need their optional_filter keys to satisfy selectiveLogic
(0 any, 1 all, 2 none, 3 not all). Within a group only the entry with the
lowest insertion_order survives. Selected entries are sorted by
insertion_order and cut off at the token budget.
"""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

DEFAULT_POSITION = "Before Char Defs"
DEFAULT_ORDER = 100


def estimate_tokens(text: str) -> int:
    """Rough token count, about four characters per token."""
    return (len(text) + 3) // 4


@dataclass
class LoreMatch:
    selected_entries: list[dict[str, Any]] = field(default_factory=list)
    total_tokens: int = 0


class LoreMatcher(Protocol):
    def match(
        self,
        entries: list[dict[str, Any]],
        scan_context: str,
        scan_depth: int,
        token_budget: int,
    ) -> LoreMatch: ...


def _keys(value: Any) -> list[str]:
    if isinstance(value, str):
        return [k.strip() for k in value.split(",") if k.strip()]
    if isinstance(value, list):
        return [str(k) for k in value if str(k).strip()]
    return []


def _key_matches(key: str, text: str, entry: dict[str, Any]) -> bool:
    flags = 0 if entry.get("caseSensitive") else re.IGNORECASE
    if len(key) > 2 and key.startswith("/") and key.endswith("/"):
        try:
            pattern = re.compile(key[1:-1], flags)
        except re.error:
            logger.warning("invalid lore key regex %r", key)
            return False
    else:
        escaped = re.escape(key)
        if entry.get("matchWholeWords"):
            escaped = rf"\b{escaped}\b"
        pattern = re.compile(escaped, flags)
    return pattern.search(text) is not None


def _selective_passes(matched: int, total: int, logic: int) -> bool:
    if logic == 1:
        return matched == total
    if logic == 2:
        return matched == 0
    if logic == 3:
        return matched < total
    return matched > 0


def _order(entry: dict[str, Any]) -> int:
    return entry.get("insertion_order") or DEFAULT_ORDER


class KeywordLoreMatcher:
    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def _matched_keys(self, entry: dict[str, Any], text: str) -> list[str]:
        matched = [k for k in _keys(entry.get("key")) if _key_matches(k, text, entry)]
        if not matched:
            return []
        filters = _keys(entry.get("optional_filter"))
        if entry.get("selective") and filters:
            hits = sum(1 for f in filters if _key_matches(f, text, entry))
            if not _selective_passes(hits, len(filters), int(entry.get("selectiveLogic") or 0)):
                return []
        if entry.get("useProbability") and entry.get("probability") is not None:
            if self._rng.random() * 100 > float(entry["probability"]):
                return []
        return matched

    def match(
        self,
        entries: list[dict[str, Any]],
        scan_context: str,
        scan_depth: int = 4,
        token_budget: int = 2048,
    ) -> LoreMatch:
        """`scan_depth` is accepted for interface parity; recursive scans are not done."""
        selected: list[dict[str, Any]] = []
        groups: dict[str, list[dict[str, Any]]] = {}

        for entry in entries:
            if not entry.get("enabled", True):
                continue
            keys = self._matched_keys(entry, scan_context)
            if not keys:
                continue
            matched = {**entry, "matched_keys": keys}
            group = entry.get("group")
            if group:
                groups.setdefault(group, []).append(matched)
            else:
                selected.append(matched)

        for members in groups.values():
            members.sort(key=_order)
            selected.append(members[0])

        selected.sort(key=_order)

        result = LoreMatch()
        for entry in selected:
            cost = estimate_tokens(entry.get("content", ""))
            if result.total_tokens + cost > token_budget:
                break
            result.selected_entries.append(entry)
            result.total_tokens += cost
        logger.debug(
            "lore: %d of %d entries selected, %d tokens",
            len(result.selected_entries), len(entries), result.total_tokens,
        )
        return result


def format_lore(entries: list[dict[str, Any]]) -> str:
    """Group entry contents under one labelled section per insertion position."""
    by_position: dict[str, list[str]] = {}
    for entry in entries:
        position = entry.get("insertion_position") or DEFAULT_POSITION
        by_position.setdefault(position, []).append(entry.get("content", ""))
    return "\n\n".join(
        f"[LORE - {position}]\n" + "\n".join(contents)
        for position, contents in by_position.items()
    )
