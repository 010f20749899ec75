"""Engine configuration and wiring.

Config is a JSON file merged over _CONFIG_DEFAULTS; environment variables
(loaded from .env by python-dotenv) override both:

  ROUNDTABLE_LLM_URL       adds an "env" connection and makes it the default
  ROUNDTABLE_LLM_API_KEY   bearer token for that connection
  ROUNDTABLE_LLM_FORMAT    "koboldcpp" (default), "openai", or "echo" (no URL
                           needed; every stage gets its prompt back)
  ROUNDTABLE_LLM_MODEL     model name for the openai format
  ROUNDTABLE_LOG_LEVEL     root log level (default INFO)
  DATA_DIR                 storage directory, read by roundtable.app

Merge rules: llm_connections is replaced wholesale, agents/templates/lore/
memory are merged key-by-key, scalars are overwritten.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from roundtable.agents import AgentSet, MemoryWriter
from roundtable.dispatch import EventSink, SideEffectDispatcher
from roundtable.llm import EchoLLM, HttpLLM, LLM, RoutedLLM
from roundtable.memory import InMemoryMemoryStore
from roundtable.pipeline import EngineSettings, ImageGenerator, Orchestrator
from roundtable.storage import Persistence

logger = logging.getLogger(__name__)

load_dotenv()

STAGES = ("director", "world", "character", "summarize", "narrator", "creator", "visual")

_CONFIG_DEFAULTS: dict[str, Any] = {
    "llm_connections": [],
    "default_connection": "",
    "agents": {stage: "" for stage in STAGES},
    "templates": {},
    "max_json_attempts": 3,
    "history_limit": 10,
    "history_keep": 5,
    "lore": {"scan_depth": 4, "token_budget": 2048},
    "memory": {"character_top_k": 5, "narrator_top_k": 3, "min_similarity": 0.3},
    "visual_enabled": False,
    "log_level": "INFO",
}

_MERGED_KEYS = ("agents", "templates", "lore", "memory")


def _apply_env(config: dict[str, Any]) -> None:
    url = os.getenv("ROUNDTABLE_LLM_URL", "")
    fmt = os.getenv("ROUNDTABLE_LLM_FORMAT", "koboldcpp")
    if url or fmt == "echo":
        conn = {
            "name": "env",
            "provider_url": url,
            "api_key": os.getenv("ROUNDTABLE_LLM_API_KEY", ""),
            "provider_format": fmt,
            "model": os.getenv("ROUNDTABLE_LLM_MODEL", ""),
        }
        config["llm_connections"] = [
            c for c in config["llm_connections"] if c.get("name") != "env"
        ] + [conn]
        config["default_connection"] = "env"
    level = os.getenv("ROUNDTABLE_LOG_LEVEL", "")
    if level:
        config["log_level"] = level.upper()


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Read config, returning defaults merged with stored values and env overrides."""
    config = copy.deepcopy(_CONFIG_DEFAULTS)
    if path is not None and path.is_file():
        stored = json.loads(path.read_text())
        for key, value in stored.items():
            if key in _MERGED_KEYS and isinstance(value, dict):
                config[key].update(value)
            elif key in config:
                config[key] = value
            else:
                logger.warning("unknown config key %r ignored", key)
    _apply_env(config)
    return config


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def settings_from_config(config: dict[str, Any]) -> EngineSettings:
    return EngineSettings(
        max_json_attempts=config["max_json_attempts"],
        history_limit=config["history_limit"],
        history_keep=config["history_keep"],
        scan_depth=config["lore"]["scan_depth"],
        token_budget=config["lore"]["token_budget"],
        character_memory_top_k=config["memory"]["character_top_k"],
        narrator_memory_top_k=config["memory"]["narrator_top_k"],
        memory_min_similarity=config["memory"]["min_similarity"],
        visual_enabled=bool(config["visual_enabled"]),
    )


def build_llm(config: dict[str, Any]) -> RoutedLLM:
    """One HttpLLM per connection, routed by the agents mapping.

    Stages mapped to "" use default_connection; with no default either,
    calls for that stage fail with LLMError.
    """
    connections: dict[str, LLM] = {}
    for conn in config["llm_connections"]:
        if conn.get("provider_format") == "echo":
            connections[conn["name"]] = EchoLLM()
            continue
        connections[conn["name"]] = HttpLLM(
            provider_url=conn["provider_url"],
            api_key=conn.get("api_key", ""),
            provider_format=conn.get("provider_format", "koboldcpp"),
            model=conn.get("model", ""),
            timeout=conn.get("timeout", 120.0),
            max_tokens=conn.get("max_tokens", 0),
        )

    routes: dict[str, LLM] = {}
    for stage, name in config["agents"].items():
        if not name:
            continue
        if name not in connections:
            logger.warning("agent %s assigned to unknown connection %r", stage, name)
            continue
        routes[stage] = connections[name]

    default = connections.get(config["default_connection"]) if config["default_connection"] else None
    if default is None and not routes:
        logger.warning("no LLM connection configured; every agent call will fail")
    return RoutedLLM(routes, default=default)


def build_orchestrator(
    config: dict[str, Any],
    storage: Persistence,
    *,
    llm: LLM | None = None,
    events: EventSink | None = None,
    memory: InMemoryMemoryStore | None = None,
    image_generator: ImageGenerator | None = None,
) -> Orchestrator:
    """Wire agents, memory, dispatcher and settings into an Orchestrator."""
    memory = memory if memory is not None else InMemoryMemoryStore()
    agents = AgentSet.from_llm(llm or build_llm(config), config["templates"])
    dispatcher = SideEffectDispatcher(storage, events, MemoryWriter(memory))
    return Orchestrator(
        storage,
        agents,
        dispatcher=dispatcher,
        memory_retriever=memory,
        image_generator=image_generator,
        settings=settings_from_config(config),
    )
