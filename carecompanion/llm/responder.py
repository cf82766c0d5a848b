"""
carecompanion/llm/responder.py — Reply generation for one conversation turn.

Classifies the transcript, then produces the reply text:

- EMERGENCY       → a fixed calming script; the model is never consulted
- HEALTH_CONCERN  → health prompt to the generative-language endpoint
- GENERAL         → general prompt with recent history

If the endpoint is unconfigured or fails, a fixed fallback sentence in the
detected language is returned instead, so the caller always gets a
speakable reply. Each turn is also filed as an issue report; a failed report is
logged and never affects the reply.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from carecompanion.core.constants import Language, SpeechPurpose
from carecompanion.intent.classifier import IntentCategory, IntentClassifier, IntentResult
from carecompanion.llm.gemini import GeminiClient, GenerationUnavailableError
from carecompanion.llm.prompt_builder import PromptBuilder
from carecompanion.speech.channels import Utterance
from carecompanion.store.records import CareRepository, IssueReport, IssueType

logger = logging.getLogger(__name__)

EMERGENCY_REPLIES: dict[Language, str] = {
    Language.EN: (
        "I understand this is serious. Please try to stay calm. "
        "I'm immediately notifying your family and doctor. "
        "Please sit in a safe place and breathe slowly."
    ),
    Language.ML: (
        "ഇത് ഗുരുതരമാണെന്ന് എനിക്ക് മനസ്സിലായി. ദയവായി ശാന്തമായിരിക്കുക. "
        "ഞാൻ ഉടൻ തന്നെ നിങ്ങളുടെ കുടുംബത്തെയും ഡോക്ടറെയും അറിയിക്കുന്നു. "
        "സുരക്ഷിതമായ സ്ഥലത്ത് ഇരുന്ന് പതുക്കെ ശ്വസിക്കുക."
    ),
}

HEALTH_FALLBACKS: dict[Language, str] = {
    Language.EN: "Sorry, I'm having trouble. I'm concerned about your health. Please call your doctor.",
    Language.ML: "ക്ഷമിക്കണം, എനിക്ക് ബുദ്ധിമുട്ടുണ്ട്. നിങ്ങളുടെ ആരോഗ്യത്തെക്കുറിച്ച് എനിക്ക് ആശങ്കയുണ്ട്. ദയവായി ഡോക്ടറെ വിളിക്കുക.",
}

GENERAL_FALLBACKS: dict[Language, str] = {
    Language.EN: "Sorry, I didn't catch that. Could you say that again?",
    Language.ML: "ക്ഷമിക്കണം, എനിക്ക് മനസ്സിലായില്ല. ഒന്നുകൂടി പറയാമോ?",
}

UNAVAILABLE_REPLIES: dict[Language, str] = {
    Language.EN: "AI assistant unavailable.",
    Language.ML: "AI സഹായി ലഭ്യമല്ല.",
}

_REPORT_TYPES: dict[IntentCategory, tuple[IssueType, str]] = {
    IntentCategory.EMERGENCY: (IssueType.EMERGENCY, "Emergency detected"),
    IntentCategory.HEALTH_CONCERN: (IssueType.HEALTH_CONCERN, "Health concern"),
    IntentCategory.GENERAL: (IssueType.GENERAL, "Conversation"),
}


@dataclass(frozen=True)
class Reply:
    """
    The companion's answer to one turn.

    Attributes:
        utterance: What to speak.
        intent: Classification of the user's transcript.
        fallback: True if a fixed fallback replaced a model reply.
    """

    utterance: Utterance
    intent: IntentResult
    fallback: bool = False


class ResponseGenerator:
    """
    Turns a final transcript into a :class:`Reply`. Blocking; run off-thread.

    Args:
        classifier: Intent classifier.
        client: Gemini client, or None when no endpoint is configured.
        prompts: Prompt builder.
        repository: Optional care repository for issue reports.
    """

    def __init__(
        self,
        classifier: IntentClassifier,
        client: Optional[GeminiClient],
        prompts: Optional[PromptBuilder] = None,
        repository: Optional[CareRepository] = None,
    ) -> None:
        self._classifier = classifier
        self._client = client
        self._prompts = prompts or PromptBuilder()
        self._repo = repository

    def respond(self, transcript: str, history: Sequence[tuple[str, str]] = ()) -> Reply:
        """
        Produce the reply for *transcript*.

        Args:
            transcript: The user's final transcript.
            history: Earlier ``(role, text)`` messages, oldest first.

        Returns:
            A :class:`Reply`; never raises for generation failures.
        """
        t0 = time.perf_counter()
        intent = self._classifier.classify(transcript)
        lang = intent.language
        fallback = False

        if intent.category is IntentCategory.EMERGENCY:
            text = EMERGENCY_REPLIES[lang]
        elif self._client is None or not self._client.available:
            text = UNAVAILABLE_REPLIES[lang]
            fallback = True
        else:
            try:
                if intent.category is IntentCategory.HEALTH_CONCERN:
                    prompt = self._prompts.build_health(transcript, lang)
                else:
                    prompt = self._prompts.build_general(transcript, lang, history)
                text = self._client.generate(prompt)
            except (GenerationUnavailableError, ValueError) as exc:
                logger.warning("Generation failed (%s) — using fallback reply", exc)
                text = self._fallback(intent)
                fallback = True

        self._file_report(transcript, text, intent)
        logger.info(
            "Reply ready: intent=%s lang=%s fallback=%s in %.0f ms",
            intent.category.value, lang.value, fallback,
            (time.perf_counter() - t0) * 1000.0,
        )
        return Reply(
            utterance=Utterance(text=text, language=lang, purpose=SpeechPurpose.REPLY),
            intent=intent,
            fallback=fallback,
        )

    @staticmethod
    def _fallback(intent: IntentResult) -> str:
        if intent.category is IntentCategory.HEALTH_CONCERN:
            return HEALTH_FALLBACKS[intent.language]
        return GENERAL_FALLBACKS[intent.language]

    def _file_report(self, transcript: str, reply: str, intent: IntentResult) -> None:
        if self._repo is None:
            return
        issue_type, label = _REPORT_TYPES[intent.category]
        report = IssueReport(
            senior_id=self._repo.senior_id,
            issue_type=issue_type,
            description=f"{label}: {transcript}",
            voice_transcript=transcript,
            ai_response=reply,
            confidence_level=intent.confidence,
            language=intent.language.value,
        )
        try:
            self._repo.save_issue_report(report)
        except Exception as exc:  # noqa: BLE001
            logger.error("Issue report not saved: %s", exc)
