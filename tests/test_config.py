"""Tests for config loading, env overrides and engine wiring."""

import json

import pytest

from roundtable.config import build_llm, build_orchestrator, load_config, settings_from_config
from roundtable.llm import EchoLLM, HttpLLM
from roundtable.pipeline import TurnContext


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "ROUNDTABLE_LLM_URL",
        "ROUNDTABLE_LLM_API_KEY",
        "ROUNDTABLE_LLM_FORMAT",
        "ROUNDTABLE_LLM_MODEL",
        "ROUNDTABLE_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))
    return path


def test_defaults_when_no_file(tmp_path):
    config = load_config(tmp_path / "missing.json")
    assert config["llm_connections"] == []
    assert config["agents"]["director"] == ""
    assert config["max_json_attempts"] == 3
    assert config["lore"] == {"scan_depth": 4, "token_budget": 2048}
    assert config["log_level"] == "INFO"


def test_nested_sections_merge(tmp_path):
    config = load_config(_write(tmp_path, {
        "agents": {"narrator": "big"},
        "lore": {"token_budget": 512},
        "history_limit": 20,
    }))
    assert config["agents"]["narrator"] == "big"
    assert config["agents"]["director"] == ""
    assert config["lore"] == {"scan_depth": 4, "token_budget": 512}
    assert config["history_limit"] == 20


def test_unknown_keys_ignored(tmp_path, caplog):
    config = load_config(_write(tmp_path, {"story_roles": {}}))
    assert "story_roles" not in config
    assert "unknown config key 'story_roles'" in caplog.text


def test_env_connection_becomes_default(tmp_path, monkeypatch):
    monkeypatch.setenv("ROUNDTABLE_LLM_URL", "http://gpu:5001")
    monkeypatch.setenv("ROUNDTABLE_LLM_FORMAT", "openai")
    monkeypatch.setenv("ROUNDTABLE_LOG_LEVEL", "debug")
    config = load_config(_write(tmp_path, {
        "llm_connections": [{"name": "local", "provider_url": "http://localhost:5001"}],
    }))
    assert [c["name"] for c in config["llm_connections"]] == ["local", "env"]
    assert config["llm_connections"][1]["provider_format"] == "openai"
    assert config["default_connection"] == "env"
    assert config["log_level"] == "DEBUG"


async def test_echo_format_needs_no_url(monkeypatch):
    monkeypatch.setenv("ROUNDTABLE_LLM_FORMAT", "echo")
    config = load_config()
    assert config["default_connection"] == "env"
    llm = build_llm(config)
    assert isinstance(llm.route("director"), EchoLLM)
    assert await llm("narrator", "Describe the pier.") == "Describe the pier."


def test_settings_from_config():
    config = load_config()
    config["memory"]["narrator_top_k"] = 7
    config["visual_enabled"] = True
    settings = settings_from_config(config)
    assert settings.narrator_memory_top_k == 7
    assert settings.visual_enabled
    assert settings.history_keep == 5


class TestBuildLLM:
    def _config(self, **overrides):
        config = load_config()
        config["llm_connections"] = [
            {"name": "small", "provider_url": "http://small:5001"},
            {"name": "big", "provider_url": "http://big:8080", "provider_format": "openai"},
        ]
        config.update(overrides)
        return config

    def test_routes_by_agent_assignment(self) -> None:
        config = self._config(default_connection="small")
        config["agents"]["narrator"] = "big"
        llm = build_llm(config)
        assert isinstance(llm.route("narrator"), HttpLLM)
        assert llm.route("narrator") is not llm.route("director")
        assert llm.route("director") is llm.route("world")

    def test_unknown_connection_falls_back_to_default(self, caplog) -> None:
        config = self._config(default_connection="small")
        config["agents"]["world"] = "missing"
        llm = build_llm(config)
        assert llm.route("world") is llm.route("director")
        assert "unknown connection 'missing'" in caplog.text

    def test_no_default_leaves_stage_unrouted(self) -> None:
        config = self._config()
        config["agents"]["director"] = "small"
        llm = build_llm(config)
        assert llm.route("director") is not None
        assert llm.route("narrator") is None


def test_build_orchestrator_applies_settings(storage, llm):
    config = load_config()
    config["history_limit"] = 4
    config["templates"] = {"narrator": "Custom narrator: {{{user_input}}}"}
    orchestrator = build_orchestrator(config, storage, llm=llm)
    assert orchestrator.settings.history_limit == 4
    assert orchestrator.agents.narrator.prompt(TurnContext(user_input="look")) == "Custom narrator: look"