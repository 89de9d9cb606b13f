"""Tests for config.py: data dir resolution and conf.json overlay."""

from __future__ import annotations

from pathlib import Path

from chatrelay.config import ChatRelayConfig, get_chatrelay_dir, load_conf, save_conf


def test_chatrelay_dir_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("CHATRELAY_DIR", str(tmp_path / "custom"))
    assert get_chatrelay_dir() == tmp_path / "custom"


def test_chatrelay_dir_default(monkeypatch):
    monkeypatch.delenv("CHATRELAY_DIR", raising=False)
    assert get_chatrelay_dir() == Path.home() / ".config" / "chatrelay"


def test_load_conf_missing_returns_defaults():
    assert load_conf() == ChatRelayConfig()


def test_save_then_load(monkeypatch, tmp_path):
    monkeypatch.setenv("CHATRELAY_DIR", str(tmp_path / "fresh"))
    save_conf(ChatRelayConfig(default_model="claude-3-haiku-20240307", storage_max_retries=5))
    conf = load_conf()
    assert conf.default_model == "claude-3-haiku-20240307"
    assert conf.storage_max_retries == 5
    assert conf.cors_allow_all_origins is None


def test_corrupt_conf_returns_defaults(_isolate_chatrelay_dir, caplog):
    (_isolate_chatrelay_dir / "conf.json").write_text("not json")
    assert load_conf() == ChatRelayConfig()
    assert "Failed to parse" in caplog.text
