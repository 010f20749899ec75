"""Turn pipeline.

Executes one round of a scene for a user input:
  1. Open the round (ledger) and seed scene state from storage.
  2. Slash commands (/create, /image, /scenepicture) and describe requests
     ("look around", "where am i", ...) are answered directly.
  3. Summarize long history, run the director, update the world, then let
     each selected character answer in order.

Continuation (continue_round) feeds the previous round's character
messages back in as a system input and closes the round afterwards.

Agent stages (each with a Handlebars template and a routed LLM connection):
  director, world, character, summarize, narrator, creator, visual
"""

from .commands import (  # noqa: F401
    ImageGenerator,
    SlashCommands,
    is_describe_request,
    parse_slash_command,
)
from .context import TurnContext, render_history  # noqa: F401
from .orchestrator import EngineSettings, Orchestrator  # noqa: F401
