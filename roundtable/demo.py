"""Create a demo scene for development/testing."""

import shutil

from roundtable.models import CharacterRecord, Persona, SceneRecord
from roundtable.storage import JsonStorage

DEMO_SCENE_ID = "dragons-hollow"

DEMO_CHARACTERS = [
    CharacterRecord(
        id="gareth",
        name="Gareth",
        description="A grizzled guard captain wearing dented plate armor, and a red cloak.",
        personality="gruff, loyal, suspicious of strangers",
        occupation="captain of the village watch",
    ),
    CharacterRecord(
        id="elena",
        name="Elena",
        description="The village healer. She is curious and warm, dressed in a green apron.",
        personality="kind, curious",
        occupation="healer",
    ),
]

DEMO_LORE = [
    {
        "key": ["dragon", "wyrm"],
        "content": "The young dragon Emberwing nests in the caves above the village.",
        "enabled": True,
        "insertion_order": 10,
        "insertion_position": "World Info",
    },
    {
        "key": ["/temple|shrine/"],
        "content": "The burned shrine once held a silver bell said to calm beasts.",
        "enabled": True,
        "insertion_order": 20,
    },
]


async def create_demo_data(storage: JsonStorage) -> SceneRecord:
    """Wipe existing scenes and create the Dragon's Hollow scene."""
    scene_root = storage.base_path / "scenes"
    if scene_root.exists():
        shutil.rmtree(scene_root)
    scene_root.mkdir(parents=True)

    for char in DEMO_CHARACTERS:
        await storage.save_character(char)
    await storage.save_persona(Persona(
        name="Wanderer",
        description="A travelling sellsword looking for work.",
        personality="wry, patient",
        occupation="sellsword",
    ))

    scene = await storage.create_scene(SceneRecord(
        id=DEMO_SCENE_ID,
        title="Dragon's Hollow",
        description="A mountain village half burned by a young dragon.",
        location="the village square",
        time_of_day="dusk",
        world_id="hollow",
        active_characters=[c.id for c in DEMO_CHARACTERS],
    ))
    await storage.save_lore_entries(DEMO_SCENE_ID, DEMO_LORE)
    return scene
