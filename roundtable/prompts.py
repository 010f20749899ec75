"""Handlebars prompt rendering for the agents."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pybars

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}

JSON_ONLY = "Return ONLY a JSON object. Do not include prose or markdown."


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}} — iterate over the first N items."""
    result = []
    for item in list(items or [])[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} — iterate over the last N items."""
    n = int(count)
    result = []
    for item in (list(items or [])[-n:] if n > 0 else []):
        result.extend(options["fn"](item))
    return result


def _helper_json(this, value):
    """{{{json value}}} — pretty JSON. Use triple braces to skip HTML escaping."""
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def _helper_join(this, items, sep=", "):
    """{{{join names ", "}}}"""
    return sep.join(str(i) for i in (items or []))


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "last": _helper_last,
    "json": _helper_json,
    "join": _helper_join,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Default templates ────────────────────────────────────
#
# Every variable is rendered with triple braces: prompts are plain text and
# must not be HTML-escaped.

_SCENE = """{{#if scene.title}}Scene: {{{scene.title}}}
{{/if}}{{#if scene.location}}Location: {{{scene.location}}}{{#if scene.time_of_day}} ({{{scene.time_of_day}}}){{/if}}
{{/if}}{{#if scene.description}}{{{scene.description}}}
{{/if}}"""

_LORE_AND_MEMORIES = """{{#if lore}}
{{{lore}}}
{{/if}}{{#if memories}}
{{{memories}}}{{/if}}"""

DIRECTOR = _SCENE + _LORE_AND_MEMORIES + """
You direct a collaborative roleplay scene. Decide which characters should
respond to the latest input and give brief guidance for the scene.

Active characters: {{{active_names}}}

History:
{{{history}}}

Latest input from {{{persona.name}}}: {{{user_input}}}

""" + JSON_ONLY + """
{"guidance": "<one or two sentences>", "characters": ["<name>", ...]}
"""

WORLD = _SCENE + """
You track the state of the world in a roleplay scene.

Current world state:
{{{json world_state}}}

Trackers:
{{{json trackers}}}

State of {{{persona.name}}}:
{{{json persona_state}}}

History:
{{{history}}}

Latest input: {{{user_input}}}

""" + JSON_ONLY + """
If nothing changed return {"unchanged": true}. Otherwise return
{"worldState": {...changed keys...}, "trackers": {"stats": {}, "objectives": [], "relationships": {}}}
Put changes to {{{persona.name}}} under worldState.userPersonaState.
"""

CHARACTER = _SCENE + _LORE_AND_MEMORIES + """
You are {{{character.name}}}.
{{#if character.description}}{{{character.description}}}
{{/if}}{{#if character.personality}}Personality: {{{character.personality}}}
{{/if}}
Your current state:
{{{json character_state}}}

You are talking with {{{persona.name}}}: {{{persona.description}}}
{{#if guidance}}
Director: {{{guidance}}}
{{/if}}
History:
{{{history}}}

Latest input: {{{user_input}}}

Reply in character. """ + JSON_ONLY + """
{"response": "<what you say and do>", "characterState": {"mood": "...", "activity": "...", "clothingWorn": "...", "position": "...", "location": "..."}}
Use "default" for any state field that did not change.
"""

SUMMARIZE = """Summarize the roleplay so far in a short paragraph. Keep names,
places, open goals and anything the characters promised.
{{#if summary}}
Previous summary:
{{{summary}}}
{{/if}}
History:
{{{history}}}

""" + JSON_ONLY + """
{"summary": "<summary>"}
"""

NARRATOR = _SCENE + _LORE_AND_MEMORIES + """
You are the narrator.{{#if scene_picture}} Describe the scene as one still
picture: who is where, what they wear, the light and the mood.{{else}} Describe
what {{{persona.name}}} perceives right now, in second person.{{/if}}

World state:
{{{json world_state}}}
{{#each characters}}
{{{name}}}: {{{state_text}}}
{{/each}}
History:
{{{history}}}

{{{persona.name}}}: {{{user_input}}}
"""

CREATOR = """Create content for a roleplay world from this request:
{{{request}}}

World state:
{{{json world_state}}}

""" + JSON_ONLY + """
Describe the creation with fields such as name, description, personality,
occupation and appearance.
"""

VISUAL = """Write a comma-separated image generation prompt.
{{#if entities}}
Subjects:
{{#each entities}}- {{{name}}}: {{{description}}}
{{/each}}{{/if}}{{#if scene_description}}
Scene:
{{{scene_description}}}
{{/if}}
Request: {{{user_input}}}

Return only the prompt text.
"""

DEFAULT_TEMPLATES: dict[str, str] = {
    "director": DIRECTOR,
    "world": WORLD,
    "character": CHARACTER,
    "summarize": SUMMARIZE,
    "narrator": NARRATOR,
    "creator": CREATOR,
    "visual": VISUAL,
}
