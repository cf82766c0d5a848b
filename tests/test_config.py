"""
tests/test_config.py — Tests for the YAML configuration loader.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from carecompanion.core.config import CompanionConfig, load_config


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "carecompanion.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:

    def test_shipped_config_loads(self) -> None:
        config = load_config(Path(__file__).parent.parent / "config" / "carecompanion.yaml")
        assert isinstance(config, CompanionConfig)
        assert config.conversation.silence_timeout_s > 0
        assert "hey google" in config.conversation.activation_phrases
        assert "chest pain" in config.intent.emergency_keywords["en"]
        assert config.datastore.backend == "memory"

    def test_empty_file_uses_defaults(self, tmp_path: Path) -> None:
        config = load_config(_write(tmp_path, ""))
        assert config == CompanionConfig()

    def test_overrides_are_applied(self, tmp_path: Path) -> None:
        config = load_config(_write(tmp_path, (
            "conversation:\n"
            "  silence_timeout_s: 12\n"
            "  activation_phrases: ['  Hello Friend ']\n"
            "web:\n"
            "  port: 8080\n"
        )))
        assert config.conversation.silence_timeout_s == 12
        assert config.conversation.activation_phrases == ("hello friend",)
        assert config.web.port == 8080

    def test_keyword_tables_normalised(self, tmp_path: Path) -> None:
        config = load_config(_write(tmp_path, (
            "intent:\n"
            "  emergency_keywords:\n"
            "    en: ['Mayday', ' ']\n"
        )))
        assert config.intent.emergency_keywords == {"en": ("mayday",)}

    def test_missing_explicit_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_environment_variable_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CARECOMPANION_CONFIG", str(_write(tmp_path, "web:\n  port: 9000\n")))
        assert load_config().web.port == 9000

    def test_environment_variable_missing_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CARECOMPANION_CONFIG", str(tmp_path / "gone.yaml"))
        with pytest.raises(FileNotFoundError):
            load_config()

    @pytest.mark.parametrize("text", [
        "- just\n- a list\n",
        "conversation:\n  unknown_field: 1\n",
        "conversation:\n  silence_timeout_s: 0\n",
        "conversation:\n  min_activation_chars: 0\n",
        "conversation:\n  activation_phrases: []\n",
        "conversation:\n  default_language: fr\n",
        "intent:\n  confidence: 1.5\n",
        "intent:\n  health_keywords: ['flat list']\n",
        "generation:\n  timeout_s: -1\n",
        "datastore:\n  backend: sqlite\n",
        "tts:\n  volume: 2\n",
        "web:\n  port: 70000\n",
    ])
    def test_invalid_values_rejected(self, tmp_path: Path, text: str) -> None:
        with pytest.raises(ValueError):
            load_config(_write(tmp_path, text))

    def test_secrets_come_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        config = CompanionConfig()
        monkeypatch.setenv(config.generation.api_key_env, "  secret  ")
        assert config.generation.api_key == "secret"
        monkeypatch.setenv(config.generation.api_key_env, "")
        assert config.generation.api_key is None
