from pathlib import Path

import pytest

from roundtable.agents import AgentSet
from roundtable.llm import LLMError
from roundtable.models import CharacterRecord, SceneRecord
from roundtable.pipeline import Orchestrator
from roundtable.storage import JsonStorage

SCENE_ID = "harbor"

# Answers used when a stage has nothing scripted
STAGE_DEFAULTS = {
    "director": '{"guidance": "Keep the scene moving.", "characters": []}',
    "world": '{"unchanged": true}',
    "summarize": '{"summary": "Nothing much happened."}',
}


class StubLLM:
    """Scripted LLM. Each stage pops its own queue of canned responses.

    An Exception instance in a queue is raised instead of returned.
    Every call is recorded as a (stage, prompt) tuple.
    """

    def __init__(self):
        self.queues = {}
        self.calls = []

    def script(self, stage, *responses):
        self.queues.setdefault(stage, []).extend(responses)
        return self

    def fail(self, stage, message="backend down"):
        return self.script(stage, LLMError(message))

    async def __call__(self, stage, prompt):
        self.calls.append((stage, prompt))
        queue = self.queues.get(stage)
        if queue:
            item = queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return STAGE_DEFAULTS.get(stage, "")

    @property
    def stages(self):
        return [stage for stage, _ in self.calls]

    def prompts(self, stage):
        return [prompt for s, prompt in self.calls if s == stage]


class RecordingSink:
    """EventSink that keeps every event in order."""

    def __init__(self):
        self.events = []

    async def emit(self, channel, event, payload):
        self.events.append((channel, event, payload))

    def named(self, event):
        return [payload for _, name, payload in self.events if name == event]


@pytest.fixture
def llm():
    return StubLLM()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def storage(tmp_path: Path):
    return JsonStorage(tmp_path)


@pytest.fixture
async def scene(storage):
    """A scene at the docks with Ava and Ben active."""
    await storage.save_character(CharacterRecord(
        id="ava",
        name="Ava",
        description="A cheerful sailor wearing a blue coat.",
        personality="bold, warm",
        occupation="first mate",
    ))
    await storage.save_character(CharacterRecord(
        id="ben",
        name="Ben",
        description="A quiet harbor clerk.",
        personality="careful",
    ))
    return await storage.create_scene(SceneRecord(
        id=SCENE_ID,
        title="The Harbor",
        description="Ships creak against the pier.",
        location="the docks",
        time_of_day="night",
        world_id="w1",
        active_characters=["ava", "ben"],
    ))


@pytest.fixture
def engine(storage, llm, sink):
    return Orchestrator(storage, AgentSet.from_llm(llm), events=sink)
