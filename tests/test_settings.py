from __future__ import annotations

import os
from pathlib import Path

import pytest

from axon_engine.settings import RuntimeSettings, load_project_env


def test_runtime_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("AXON_AGENT_COMMAND", "AXON_AGENT_TIMEOUT_SECONDS", "AXON_LLM_MODE", "AXON_GRAPH_PATH"):
        monkeypatch.delenv(name, raising=False)
    settings = RuntimeSettings.from_env()
    assert settings.agent_command == "opencode"
    assert settings.agent_name == "sisyphus"
    assert settings.agent_timeout_seconds == 600.0
    assert settings.llm_mode == ""


def test_runtime_settings_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AXON_PROJECT_ROOT", str(tmp_path))
    monkeypatch.setenv("AXON_AGENT_COMMAND", "  npx opencode  ")
    monkeypatch.setenv("AXON_AGENT_TIMEOUT_SECONDS", "1.5")
    monkeypatch.setenv("AXON_LLM_MODE", "Direct")
    monkeypatch.setenv("AXON_GRAPH_PATH", "plans/graph.json")

    settings = RuntimeSettings.from_env()

    assert settings.agent_command == "npx opencode"
    assert settings.agent_timeout_seconds == 1.5
    assert settings.llm_mode == "direct"
    assert settings.graph_file == tmp_path / "plans" / "graph.json"
    assert settings.verify_config_file == tmp_path / ".axon" / "verify.json"


def test_absolute_paths_are_not_rebased(tmp_path: Path) -> None:
    settings = RuntimeSettings(project_root="/srv/project", graph_path=str(tmp_path / "graph.json"))
    assert settings.graph_file == tmp_path / "graph.json"
    assert settings.skills_path == Path("/srv/project/.axon/skills")


def test_runtime_settings_rejects_invalid_llm_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AXON_LLM_MODE", "magic")
    with pytest.raises(ValueError, match="AXON_LLM_MODE"):
        RuntimeSettings.from_env()


def test_runtime_settings_rejects_non_numeric_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AXON_AGENT_TIMEOUT_SECONDS", "ten minutes")
    with pytest.raises(ValueError, match="AXON_AGENT_TIMEOUT_SECONDS must be a number"):
        RuntimeSettings.from_env()


def test_runtime_settings_rejects_out_of_range_limit(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AXON_DAILY_TOKEN_LIMIT", "0")
    with pytest.raises(ValueError, match="AXON_DAILY_TOKEN_LIMIT must be >= 1"):
        RuntimeSettings.from_env()


def test_runtime_settings_rejects_window_larger_than_buffer(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AXON_SENTINEL_WINDOW_CHARS", "5000")
    monkeypatch.setenv("AXON_MAX_OUTPUT_CHARS", "2048")
    with pytest.raises(ValueError, match="AXON_SENTINEL_WINDOW_CHARS must be <="):
        RuntimeSettings.from_env()


def test_runtime_settings_rejects_blank_agent_command() -> None:
    with pytest.raises(ValueError, match="AXON_AGENT_COMMAND"):
        RuntimeSettings(agent_command="   ").normalized()


def test_load_project_env_does_not_override(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("OPENAI_API_KEY=from-file\nAXON_AGENT_NAME=oracle\n", encoding="utf-8")
    monkeypatch.setenv("OPENAI_API_KEY", "from-shell")
    monkeypatch.setenv("AXON_AGENT_NAME", "unset")
    monkeypatch.delenv("AXON_AGENT_NAME")

    assert load_project_env(tmp_path) is True

    assert os.environ["OPENAI_API_KEY"] == "from-shell"
    assert os.environ["AXON_AGENT_NAME"] == "oracle"


def test_load_project_env_without_file(tmp_path: Path) -> None:
    assert load_project_env(tmp_path) is False
