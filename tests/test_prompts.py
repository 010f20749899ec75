"""Tests for Handlebars prompt rendering: helpers, error handling and the
default agent templates rendered from a TurnContext."""

import pytest

from roundtable.models import AgentResponse, CharacterRecord, Persona, SceneRecord
from roundtable.pipeline.context import TurnContext, render_history
from roundtable.prompts import DEFAULT_TEMPLATES, PromptError, render_prompt


# ── render_prompt ────────────────────────────────────────────


def test_render_simple_variable():
    assert render_prompt("Hello {{name}}!", {"name": "World"}) == "Hello World!"


def test_render_missing_variable():
    assert render_prompt("Hello {{name}}!", {}) == "Hello !"


def test_triple_stash_skips_escaping():
    assert render_prompt("{{{text}}}", {"text": "<b>&</b>"}) == "<b>&</b>"


def test_render_invalid_template():
    with pytest.raises(PromptError):
        render_prompt("{{> missing_partial}}", {})


def test_take_helper():
    tpl = "{{#take items 2}}{{this}} {{/take}}"
    assert render_prompt(tpl, {"items": ["a", "b", "c"]}) == "a b "


def test_last_helper():
    tpl = "{{#last items 2}}{{this}} {{/last}}"
    assert render_prompt(tpl, {"items": ["a", "b", "c"]}) == "b c "


def test_last_helper_zero_renders_nothing():
    tpl = "{{#last items 0}}{{this}} {{/last}}"
    assert render_prompt(tpl, {"items": ["a", "b", "c"]}) == ""


def test_json_helper():
    assert render_prompt("{{{json data}}}", {"data": {"a": 1}}) == '{\n  "a": 1\n}'


def test_join_helper():
    assert render_prompt('{{{join names ", "}}}', {"names": ["Ava", "Ben"]}) == "Ava, Ben"


# ── History rendering ────────────────────────────────────────


def test_render_history_plain():
    assert render_history(["User: hi", "Ava: hello"]) == "User: hi\nAva: hello"


def test_render_history_with_summary_and_turn():
    text = render_history(["User: hi"], "They met.", [AgentResponse(sender="Ava", content="Ahoy")])
    assert text == (
        "[SCENE SUMMARY]\nThey met.\n\n[MESSAGES]\nUser: hi"
        "\n\n[Other Characters in this turn:]\nAva: Ahoy"
    )


# ── Default templates ────────────────────────────────────────


@pytest.fixture
def context():
    ava = CharacterRecord(id="ava", name="Ava", description="A sailor.", personality="bold")
    return TurnContext(
        user_input="Where is the <map>?",
        history=["User: hello"],
        scene=SceneRecord(id="s", title="The Harbor", location="the docks", time_of_day="night"),
        persona=Persona(name="Wanderer", description="A traveller."),
        characters=[ava],
        character_states={"Ava": {"mood": "calm", "activity": ""}},
        world_state={"weather": "fog"},
        lore_text="[LORE - World Info]\nThe Gull is fast.",
    )


def _render(stage, ctx):
    return render_prompt(DEFAULT_TEMPLATES[stage], ctx.template_vars())


def test_director_template(context):
    text = _render("director", context)
    assert "Scene: The Harbor" in text
    assert "Location: the docks (night)" in text
    assert "Active characters: Ava" in text
    assert "Latest input from Wanderer: Where is the <map>?" in text
    assert "The Gull is fast." in text


def test_world_template_shows_state_as_json(context):
    text = _render("world", context)
    assert '"weather": "fog"' in text
    assert "worldState.userPersonaState" in text


def test_character_template(context):
    ctx = context.for_character(context.characters[0], {"mood": "calm"}, [], "## Relevant Memories\n- [90%] x\n")
    text = _render("character", ctx)
    assert "You are Ava." in text
    assert "Personality: bold" in text
    assert '"mood": "calm"' in text
    assert "## Relevant Memories" in text


def test_narrator_template_lists_character_state(context):
    text = _render("narrator", context)
    assert "Ava: mood: calm" in text
    assert "in second person" in text


def test_narrator_scene_picture_branch(context):
    ctx = TurnContext(user_input="Describe the scene", scene_picture=True)
    assert "one still" in _render("narrator", ctx)


def test_visual_template_lists_entities():
    ctx = TurnContext(user_input="Ava at dawn", entities=[{"name": "Ava", "description": "A sailor."}])
    text = _render("visual", ctx)
    assert "- Ava: A sailor." in text
    assert "Request: Ava at dawn" in text


def test_every_stage_has_a_template():
    assert set(DEFAULT_TEMPLATES) == {
        "director", "world", "character", "summarize", "narrator", "creator", "visual",
    }
