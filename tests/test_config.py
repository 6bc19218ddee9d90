from __future__ import annotations

from pathlib import Path

import pytest

from reply_engine.config import DEFAULTS, load_config
from reply_engine.engine import ReplyEngine
from reply_engine.errors import ConfigError
from reply_engine.storage import InMemoryStore


def test_missing_file_falls_back_to_defaults(tmp_path: Path, clean_env):
    cfg = load_config(str(tmp_path / "nope.yaml"))
    assert cfg == DEFAULTS
    assert cfg is not DEFAULTS


def test_file_values_merge_over_defaults(tmp_path: Path, clean_env):
    path = tmp_path / "cfg.yaml"
    path.write_text("api:\n  model: tiny\nsummary:\n  interval: 5\n", encoding="utf-8")
    cfg = load_config(str(path))
    assert cfg["api"]["model"] == "tiny"
    assert cfg["api"]["temperature"] == 0.7
    assert cfg["summary"]["interval"] == 5
    assert cfg["summary"]["enabled"] is True


def test_env_var_selects_file(tmp_path: Path, clean_env, monkeypatch):
    path = tmp_path / "other.yaml"
    path.write_text("engine:\n  debounce_seconds: 30\n", encoding="utf-8")
    monkeypatch.setenv("REPLY_ENGINE_CONFIG", str(path))
    assert load_config()["engine"]["debounce_seconds"] == 30


def test_env_overrides_parse_simple_types(tmp_path: Path, clean_env, monkeypatch):
    monkeypatch.setenv("REPLY_ENGINE__API__BASE_URL", "https://llm.test/v1")
    monkeypatch.setenv("REPLY_ENGINE__API__TEMPERATURE", "0.2")
    monkeypatch.setenv("REPLY_ENGINE__SUMMARY__ENABLED", "false")
    monkeypatch.setenv("REPLY_ENGINE__ENGINE__CONTEXT_MESSAGES", "12")
    cfg = load_config(str(tmp_path / "nope.yaml"))
    assert cfg["api"]["base_url"] == "https://llm.test/v1"
    assert cfg["api"]["temperature"] == 0.2
    assert cfg["summary"]["enabled"] is False
    assert cfg["engine"]["context_messages"] == 12


def test_invalid_yaml_raises(tmp_path: Path, clean_env):
    path = tmp_path / "bad.yaml"
    path.write_text("api: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(path))


def test_non_mapping_yaml_raises(tmp_path: Path, clean_env):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(path))


def test_shipped_default_config_loads(clean_env):
    path = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
    cfg = load_config(str(path))
    assert "hug" in cfg["emoji"]["catalog"]
    assert cfg["engine"]["debounce_seconds"] == 180


def test_engine_from_config(tmp_path: Path, clean_env):
    cfg = load_config(str(tmp_path / "nope.yaml"))
    cfg["emoji"]["catalog"] = {"hug": "🤗"}
    cfg["personas"] = {"c1": "You are Lin."}
    cfg["summary"]["interval"] = 4
    engine = ReplyEngine.from_config(cfg, store=InMemoryStore())
    assert engine.debounce_ms == 180_000
    assert engine.catalog.keys() == ["hug"]
    assert engine.personas("c1") == "You are Lin."
    assert engine.summarizer.settings.interval == 4
    assert engine.client.config.configured is False
