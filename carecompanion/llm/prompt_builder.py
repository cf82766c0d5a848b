"""
carecompanion/llm/prompt_builder.py — Prompt construction for companion replies.

Builds the health-concern and general-conversation prompts sent to the
generative-language endpoint, in English or Malayalam. Inputs are validated
with pydantic before formatting so a blank transcript or a malformed history
entry can never reach the model.
"""

from __future__ import annotations

import logging
from typing import Literal, Sequence

from pydantic import BaseModel, field_validator

from carecompanion.core.constants import C, Language

logger = logging.getLogger(__name__)


class HistoryEntry(BaseModel):
    """One prior message rendered into the general prompt."""

    role: Literal["user", "assistant"]
    content: str

    @field_validator("content")
    @classmethod
    def strip_content(cls, v: str) -> str:
        return " ".join(v.split())


class PromptInput(BaseModel):
    """
    Pydantic-validated inputs for the prompt builder.

    Ensures the transcript is a non-empty string before the prompt is
    constructed, preventing empty model requests.
    """

    transcript: str
    history: list[HistoryEntry] = []

    @field_validator("transcript")
    @classmethod
    def must_be_non_empty(cls, v: str) -> str:
        """
        Validate that the transcript is a non-empty string.

        Raises:
            ValueError: If the string is empty or whitespace-only.
        """
        if not v or not v.strip():
            raise ValueError("Transcript must not be empty")
        return v.strip()


_HEALTH_TEMPLATES: dict[Language, str] = {
    Language.EN: (
        "You are a caring health assistant.\n"
        'The user said: "{transcript}"\n\n'
        "This is a health concern. Please:\n"
        "1. Respond with empathy\n"
        "2. Reassure their worries\n"
        "3. Provide gentle advice\n"
        "4. Suggest contacting a doctor if needed\n"
        "5. Ask follow-up questions to understand how they feel\n\n"
        "Respond conversationally and ask more questions to help them."
    ),
    Language.ML: (
        "നിങ്ങൾ ഒരു കരുതലുള്ള ആരോഗ്യ സഹായിയാണ്.\n"
        'ഉപയോക്താവ് പറഞ്ഞു: "{transcript}"\n\n'
        "ഇതൊരു ആരോഗ്യ പ്രശ്നമാണ്. ദയവായി:\n"
        "1. സഹാനുഭൂതിയോടെ പ്രതികരിക്കുക\n"
        "2. അവരുടെ ആശങ്കകൾ ശമിപ്പിക്കുക\n"
        "3. ലളിതമായ ഉപദേശം നൽകുക\n"
        "4. ആവശ്യമെങ്കിൽ ഡോക്ടറെ ബന്ധപ്പെടാൻ നിർദ്ദേശിക്കുക\n"
        "5. അവരുടെ അവസ്ഥ മനസ്സിലാക്കാൻ തുടർചോദ്യങ്ങൾ ചോദിക്കുക\n\n"
        "മലയാളത്തിൽ സംഭാഷണ രീതിയിൽ മറുപടി നൽകുക."
    ),
}

_GENERAL_TEMPLATES: dict[Language, str] = {
    Language.EN: (
        "You are a friendly home assistant. You speak warmly with seniors "
        "like a caring family member.\n\n"
        "Recent conversation:\n{history}\n\n"
        'User just said: "{transcript}"\n\n'
        "Please:\n"
        "- Respond conversationally\n"
        "- Ask follow-up questions\n"
        "- Show interest in their life\n"
        "- Offer helpful suggestions\n"
        "- Talk like a caring family member\n\n"
        "Keep the response short and friendly."
    ),
    Language.ML: (
        "നിങ്ങൾ ഒരു സൗഹൃദപരമായ വീട്ടുസഹായിയാണ്. ഒരു കുടുംബാംഗത്തെപ്പോലെ "
        "മുതിർന്നവരോട് സ്നേഹത്തോടെ സംസാരിക്കുക.\n\n"
        "സമീപകാല സംഭാഷണം:\n{history}\n\n"
        'ഉപയോക്താവ് ഇപ്പോൾ പറഞ്ഞു: "{transcript}"\n\n'
        "ദയവായി:\n"
        "- സംഭാഷണ രീതിയിൽ മറുപടി നൽകുക\n"
        "- തുടർചോദ്യങ്ങൾ ചോദിക്കുക\n"
        "- അവരുടെ ജീവിതത്തിൽ താൽപ്പര്യം കാണിക്കുക\n"
        "- സഹായകരമായ നിർദ്ദേശങ്ങൾ നൽകുക\n\n"
        "മറുപടി ചെറുതും സൗഹൃദപരവുമാക്കുക, മലയാളത്തിൽ."
    ),
}

_ROLE_LABELS: dict[Language, dict[str, str]] = {
    Language.EN: {"user": "User", "assistant": "Assistant"},
    Language.ML: {"user": "ഉപയോക്താവ്", "assistant": "സഹായി"},
}


class PromptBuilder:
    """
    Formats validated prompt inputs into model-ready prompt strings.

    Args:
        history_messages: How many recent messages the general prompt includes.
    """

    def __init__(self, history_messages: int = C.HISTORY_PROMPT_MESSAGES) -> None:
        self._history_messages = history_messages

    def build_health(self, transcript: str, language: Language) -> str:
        """
        Build the health-concern prompt.

        Raises:
            ValueError: If *transcript* fails validation.
        """
        data = PromptInput(transcript=transcript)
        prompt = _HEALTH_TEMPLATES[language].format(transcript=data.transcript)
        logger.debug("PromptBuilder: health prompt (%d chars)", len(prompt))
        return prompt

    def build_general(
        self,
        transcript: str,
        language: Language,
        history: Sequence[tuple[str, str]] = (),
    ) -> str:
        """
        Build the general-conversation prompt with recent history.

        Args:
            transcript: What the user just said.
            language: Reply language.
            history: ``(role, content)`` pairs, oldest first; only the last
                few are rendered.

        Raises:
            ValueError: If *transcript* or any history entry fails validation.
        """
        recent = list(history)[-self._history_messages:] if self._history_messages else []
        data = PromptInput(
            transcript=transcript,
            history=[HistoryEntry(role=role, content=content) for role, content in recent],
        )
        labels = _ROLE_LABELS[language]
        rendered = "\n".join(f"{labels[h.role]}: {h.content}" for h in data.history) or "-"
        prompt = _GENERAL_TEMPLATES[language].format(
            history=rendered, transcript=data.transcript
        )
        logger.debug(
            "PromptBuilder: general prompt (%d chars, %d history)",
            len(prompt), len(data.history),
        )
        return prompt
