"""
carecompanion/core/constants.py — System constants for CareCompanion.

Enums shared by the conversation core (phases, speech purposes, languages)
and a frozen dataclass of timing and threshold constants. Values here are
the built-in defaults; ``config/carecompanion.yaml`` may override the
tunable ones through :mod:`carecompanion.core.config`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar


# ──────────────────────────────────────────────────────────────
# Conversation phases
# ──────────────────────────────────────────────────────────────

class ConversationState(Enum):
    """All valid phases of the turn-taking conversation state machine."""

    IDLE = "IDLE"
    AWAITING_ACTIVATION = "AWAITING_ACTIVATION"
    LISTENING = "LISTENING"
    PROCESSING = "PROCESSING"
    SPEAKING = "SPEAKING"


class SpeechPurpose(Enum):
    """Why the controller is currently speaking."""

    GREETING = "GREETING"
    REPLY = "REPLY"
    FAREWELL = "FAREWELL"
    ANNOUNCEMENT = "ANNOUNCEMENT"


class Language(Enum):
    """Languages the companion understands and speaks."""

    EN = "en"
    ML = "ml"

    @classmethod
    def parse(cls, value: "str | Language") -> "Language":
        """
        Coerce a language code (``'en'``, ``'ml'``) into a :class:`Language`.

        Raises:
            ValueError: If the code is not supported.
        """
        if isinstance(value, Language):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unsupported language: {value!r}") from None


# ──────────────────────────────────────────────────────────────
# Frozen constants dataclass
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CompanionConstants:
    """
    Frozen dataclass holding CareCompanion timing and threshold defaults.

    Use the class attributes directly — do not instantiate this class.

    Example::

        from carecompanion.core.constants import C

        print(C.SILENCE_TIMEOUT_S)   # 8.0
    """

    # ── Timing (seconds) ──────────────────────────────────────
    SETTLE_DELAY_S: ClassVar[float] = 1.0
    """Pause after speech output completes before the microphone reopens."""

    SILENCE_TIMEOUT_S: ClassVar[float] = 8.0
    """Inactivity deadline that ends a conversation with a farewell."""

    PASSIVE_RESTART_S: ClassVar[float] = 2.0
    """Backoff before restarting recognition after it ends on its own."""

    AUTO_START_DELAY_S: ClassVar[float] = 2.0
    """Delay after launch before the listening session starts automatically."""

    # ── Thresholds ────────────────────────────────────────────
    MIN_ACTIVATION_CHARS: ClassVar[int] = 3
    """Transcripts shorter than this never count as an activation phrase."""

    INTENT_CONFIDENCE: ClassVar[float] = 0.8
    """Fixed confidence reported by the keyword intent classifier."""

    HISTORY_PROMPT_MESSAGES: ClassVar[int] = 4
    """Number of recent messages rendered into the general-chat prompt."""

    # ── Alerts ────────────────────────────────────────────────
    ALERT_PREFIX: ClassVar[str] = "HEALTH ALERT: "
    """Prefix added to every manual family alert message."""


#: Convenience alias: ``from carecompanion.core.constants import C``
C = CompanionConstants

# ── Scripted speech (consumed by the conversation controller) ────────────────

GREETINGS: dict[Language, str] = {
    Language.EN: "Hi! I'm listening. How can I help you today?",
    Language.ML: "ഹലോ! ഞാൻ കേൾക്കുന്നു. എനിക്ക് നിങ്ങളെ എങ്ങനെ സഹായിക്കാം?",
}
"""Spoken when an activation phrase opens a conversation."""

FAREWELLS: dict[Language, str] = {
    Language.EN: (
        "Okay, I'm here if you need anything else. "
        'Just say "Hey Google" to talk again.'
    ),
    Language.ML: "ശരി, ഞാൻ ഇവിടെയുണ്ട് നിങ്ങൾക്ക് എന്തെങ്കിലും വേണമെങ്കിൽ വിളിക്കുക.",
}
"""Spoken when a conversation ends by silence or by request."""

PERMISSION_NOTICE: str = (
    "Microphone access was denied. Please allow microphone access and press Start."
)
"""User-visible notice published when recognition permission is refused."""
