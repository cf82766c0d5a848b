"""
carecompanion/core/config.py — Typed configuration loader for CareCompanion.

Loads config/carecompanion.yaml and validates all values into typed dataclasses.
All downstream modules import from this module; never read YAML directly.
Secrets (API keys, data store URL) are never stored in YAML; the config only
names the environment variables that hold them.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from carecompanion.core.constants import C

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Dataclass hierarchy (mirrors carecompanion.yaml)
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class ConversationConfig:
    """Turn-taking timers and activation phrase settings."""

    settle_delay_s: float = C.SETTLE_DELAY_S
    silence_timeout_s: float = C.SILENCE_TIMEOUT_S
    passive_restart_s: float = C.PASSIVE_RESTART_S
    auto_start: bool = True
    auto_start_delay_s: float = C.AUTO_START_DELAY_S
    min_activation_chars: int = C.MIN_ACTIVATION_CHARS
    activation_phrases: tuple[str, ...] = (
        "hey google",
        "hello",
        "hi there",
        "നമസ്ക്കാരം",
        "ഹലോ",
    )
    default_language: str = "en"


@dataclass(frozen=True)
class IntentConfig:
    """Keyword lists for the intent classifier, keyed by language code."""

    confidence: float = C.INTENT_CONFIDENCE
    emergency_keywords: dict[str, tuple[str, ...]] = field(default_factory=lambda: {
        "en": (
            "emergency", "help", "chest pain", "heart attack", "stroke",
            "fall", "cant breathe", "can't breathe", "severe pain",
        ),
        "ml": ("അസുഖം", "വേദന", "നെഞ്ചുവേദന", "തലവേദന", "ചക്കരം", "സഹായം", "അപകടം"),
    })
    health_keywords: dict[str, tuple[str, ...]] = field(default_factory=lambda: {
        "en": (
            "medication", "medicine", "not feeling well", "sick", "tired",
            "dizzy", "nauseous",
        ),
        "ml": ("മരുന്ന്", "ആരോഗ്യം", "ബുദ്ധിമുട്ട്", "സുഖമില്ല", "ക്ഷീണം"),
    })


@dataclass(frozen=True)
class GenerationConfig:
    """Remote generative-language endpoint configuration."""

    model: str = "gemini-2.0-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    api_key_env: str = "GEMINI_API_KEY"
    temperature: float = 0.7
    max_output_tokens: int = 256
    timeout_s: float = 20.0
    max_retries: int = 2

    @property
    def api_key(self) -> Optional[str]:
        """Return the API key from the environment, or None when unset."""
        value = os.environ.get(self.api_key_env, "").strip()
        return value or None


@dataclass(frozen=True)
class DataStoreConfig:
    """Data store backend selection and connection settings."""

    backend: str = "memory"
    url_env: str = "SUPABASE_URL"
    key_env: str = "SUPABASE_ANON_KEY"
    senior_id: str = "senior-1"
    timeout_s: float = 10.0

    @property
    def url(self) -> Optional[str]:
        """Return the Supabase project URL from the environment."""
        return os.environ.get(self.url_env, "").strip() or None

    @property
    def api_key(self) -> Optional[str]:
        """Return the Supabase anon key from the environment."""
        return os.environ.get(self.key_env, "").strip() or None


@dataclass(frozen=True)
class TTSConfig:
    """Offline text-to-speech engine configuration."""

    rate: int = 120
    volume: float = 1.0
    voice_id: Optional[str] = None


@dataclass(frozen=True)
class RemindersConfig:
    """Medication reminder loop configuration."""

    enabled: bool = True
    check_interval_s: float = 30.0
    escalate_after: int = 2


@dataclass(frozen=True)
class AlertsConfig:
    """Family alert fan-out configuration."""

    primary_contacts_only: bool = True
    emergency_primary_only: bool = False


@dataclass(frozen=True)
class WebConfig:
    """FastAPI web server configuration."""

    host: str = "0.0.0.0"
    port: int = 7860


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    log_dir: str = "logs"


@dataclass(frozen=True)
class CompanionConfig:
    """Root configuration object — single source of truth for all settings."""

    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    intent: IntentConfig = field(default_factory=IntentConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    datastore: DataStoreConfig = field(default_factory=DataStoreConfig)
    tts: TTSConfig = field(default_factory=TTSConfig)
    reminders: RemindersConfig = field(default_factory=RemindersConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    web: WebConfig = field(default_factory=WebConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ──────────────────────────────────────────────
# Loader
# ──────────────────────────────────────────────


def _keyword_table(raw: Any, section: str) -> dict[str, tuple[str, ...]]:
    """
    Convert a YAML ``{lang: [keyword, ...]}`` mapping into tuples.

    Raises:
        ValueError: If the mapping or any keyword list is malformed.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"intent.{section} must be a mapping of language → list")
    table: dict[str, tuple[str, ...]] = {}
    for lang, words in raw.items():
        if not isinstance(words, (list, tuple)):
            raise ValueError(f"intent.{section}.{lang} must be a list of strings")
        table[str(lang)] = tuple(str(w).strip().lower() for w in words if str(w).strip())
    return table


def load_config(config_path: Path | str | None = None) -> CompanionConfig:
    """
    Load, validate, and return a CompanionConfig from a YAML file.

    The search order for the config file is:
    1. *config_path* argument (if provided)
    2. CARECOMPANION_CONFIG environment variable
    3. ``config/carecompanion.yaml`` relative to the project root
    4. Built-in defaults (no file required)

    Args:
        config_path: Optional path to a ``carecompanion.yaml`` file.

    Returns:
        A fully populated and frozen :class:`CompanionConfig` instance.

    Raises:
        ValueError: If a YAML field has an invalid type or value.
        FileNotFoundError: If *config_path* is explicitly given but does not exist.
    """
    resolved_path: Path | None = None

    if config_path is not None:
        resolved_path = Path(config_path)
        if not resolved_path.exists():
            raise FileNotFoundError(f"Config file not found: {resolved_path}")
    elif "CARECOMPANION_CONFIG" in os.environ:
        resolved_path = Path(os.environ["CARECOMPANION_CONFIG"])
        if not resolved_path.exists():
            raise FileNotFoundError(
                f"CARECOMPANION_CONFIG points to missing file: {resolved_path}"
            )
    else:
        here = Path(__file__).resolve()
        for parent in [here.parent.parent.parent, here.parent.parent]:
            candidate = parent / "config" / "carecompanion.yaml"
            if candidate.exists():
                resolved_path = candidate
                break

    raw: dict = {}
    if resolved_path is not None:
        logger.info("Loading config from: %s", resolved_path)
        with resolved_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must be a YAML mapping, got: {type(loaded)}")
        raw = loaded
    else:
        logger.info("No config file found — using built-in defaults")

    try:
        conv_raw = dict(raw.get("conversation") or {})
        if "activation_phrases" in conv_raw:
            conv_raw["activation_phrases"] = tuple(
                str(p).strip().lower() for p in conv_raw["activation_phrases"] or ()
            )
        conv_cfg = ConversationConfig(**conv_raw)

        intent_raw = dict(raw.get("intent") or {})
        for section in ("emergency_keywords", "health_keywords"):
            if section in intent_raw:
                intent_raw[section] = _keyword_table(intent_raw[section], section)
        intent_cfg = IntentConfig(**intent_raw)

        gen_cfg = GenerationConfig(**(raw.get("generation") or {}))
        store_cfg = DataStoreConfig(**(raw.get("datastore") or {}))
        tts_cfg = TTSConfig(**(raw.get("tts") or {}))
        rem_cfg = RemindersConfig(**(raw.get("reminders") or {}))
        alerts_cfg = AlertsConfig(**(raw.get("alerts") or {}))
        web_cfg = WebConfig(**(raw.get("web") or {}))
        log_cfg = LoggingConfig(**(raw.get("logging") or {}))

    except TypeError as exc:
        raise ValueError(f"Invalid config value: {exc}") from exc

    _validate_config(conv_cfg, intent_cfg, gen_cfg, store_cfg, tts_cfg, web_cfg)

    config = CompanionConfig(
        conversation=conv_cfg,
        intent=intent_cfg,
        generation=gen_cfg,
        datastore=store_cfg,
        tts=tts_cfg,
        reminders=rem_cfg,
        alerts=alerts_cfg,
        web=web_cfg,
        logging=log_cfg,
    )
    logger.debug("Config loaded: %s", config)
    return config


def _validate_config(
    conversation: ConversationConfig,
    intent: IntentConfig,
    generation: GenerationConfig,
    datastore: DataStoreConfig,
    tts: TTSConfig,
    web: WebConfig,
) -> None:
    """
    Validate cross-field constraints on the loaded configuration.

    Raises:
        ValueError: If any configured value violates a hard constraint.
    """
    if conversation.silence_timeout_s <= 0:
        raise ValueError(
            f"conversation.silence_timeout_s must be positive, got {conversation.silence_timeout_s}"
        )
    if conversation.settle_delay_s < 0 or conversation.passive_restart_s < 0:
        raise ValueError("conversation delays must not be negative")
    if conversation.min_activation_chars < 1:
        raise ValueError(
            f"conversation.min_activation_chars must be ≥1, got {conversation.min_activation_chars}"
        )
    if not conversation.activation_phrases:
        raise ValueError("conversation.activation_phrases must not be empty")
    if conversation.default_language not in {"en", "ml"}:
        raise ValueError(
            f"conversation.default_language must be 'en' or 'ml', got '{conversation.default_language}'"
        )
    if not (0.0 <= intent.confidence <= 1.0):
        raise ValueError(f"intent.confidence must be in [0, 1], got {intent.confidence}")
    if generation.max_output_tokens <= 0:
        raise ValueError(
            f"generation.max_output_tokens must be positive, got {generation.max_output_tokens}"
        )
    if generation.timeout_s <= 0:
        raise ValueError(f"generation.timeout_s must be positive, got {generation.timeout_s}")
    if datastore.backend not in {"memory", "supabase"}:
        raise ValueError(
            f"datastore.backend must be 'memory' or 'supabase', got '{datastore.backend}'"
        )
    if not (0.0 <= tts.volume <= 1.0):
        raise ValueError(f"tts.volume must be in [0, 1], got {tts.volume}")
    if not (0 < web.port < 65536):
        raise ValueError(f"web.port must be a valid TCP port, got {web.port}")
