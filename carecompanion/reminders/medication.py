"""
carecompanion/reminders/medication.py — Spoken medication reminders.

Once a minute-matching medication is due, a reminder is announced through the
conversation controller. The senior answers while the companion is waiting
for its activation phrase, or straight after a reminder heard mid-conversation;
those answers reach :meth:`MedicationReminder.handle_transcript`
through the controller's command hook:

- a confirmation ("I took it", "yes", …) marks the medication taken;
- a refusal ("stop", "no", …) dismisses it, escalating to the family once the
  medication has been reminded ``escalate_after`` times today.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from carecompanion.core.config import RemindersConfig
from carecompanion.core.constants import Language, SpeechPurpose
from carecompanion.core.logger import get_logger
from carecompanion.safety.emergency import FamilyNotifier
from carecompanion.speech.channels import Utterance
from carecompanion.store.records import CareRepository, Medication

logger = logging.getLogger(__name__)
_log = get_logger()

CONFIRM_WORDS: tuple[str, ...] = (
    "i took it", "yes", "done", "taken", "ok", "okay",
    "ഞാൻ കഴിച്ചു", "കഴിച്ചു", "ആയി", "ശരി",
)
STOP_WORDS: tuple[str, ...] = ("stop", "no", "cancel", "നിർത്തുക", "വേണ്ട", "ഇല്ല")

_REMINDER_TEXT: dict[Language, str] = {
    Language.EN: "Time to take your {name}. {instructions} Please say \"I took it\" when you're done.",
    Language.ML: "നിങ്ങളുടെ {name} കഴിക്കാനുള്ള സമയമായി. {instructions} കഴിച്ചു കഴിഞ്ഞാൽ \"ഞാൻ കഴിച്ചു\" എന്ന് പറയുക.",
}
_CONFIRMED_TEXT: dict[Language, str] = {
    Language.EN: "Well done! Your medication has been recorded.",
    Language.ML: "നന്നായി! നിങ്ങളുടെ മരുന്ന് രേഖപ്പെടുത്തി.",
}
_DISMISSED_TEXT: dict[Language, str] = {
    Language.EN: "Okay. I'll remind you again later.",
    Language.ML: "ശരി. ഞാൻ പിന്നീട് വീണ്ടും ഓർമ്മിപ്പിക്കാം.",
}


def _contains_word(text: str, words: tuple[str, ...]) -> bool:
    padded = f" {text} "
    return any(f" {w} " in padded for w in words)


class MedicationReminder:
    """
    Announces due medications and interprets the senior's spoken answer.

    Args:
        repository: Medication records and daily intake state.
        notifier: Used for missed-medication escalation.
        announce: Speaks an utterance between conversation turns and reports
            through the callback whether it was spoken.
        config: Loop interval and escalation threshold.
        language: Returns the current conversation language.
    """

    def __init__(
        self,
        repository: CareRepository,
        notifier: FamilyNotifier,
        announce: Callable[[Utterance, Callable[[bool], None]], None],
        config: Optional[RemindersConfig] = None,
        language: Callable[[], Language] = lambda: Language.EN,
    ) -> None:
        self._repo = repository
        self._notifier = notifier
        self._announce = announce
        self._cfg = config or RemindersConfig()
        self._language = language
        self._lock = threading.Lock()
        self._pending: Optional[Medication] = None
        self._reminded: set[tuple[str, str]] = set()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def pending(self) -> Optional[Medication]:
        """The medication awaiting an answer, if any."""
        with self._lock:
            return self._pending

    def check(self, now: Optional[datetime] = None) -> list[Medication]:
        """
        Announce every untaken medication due at the current minute.

        The reminder is counted, and becomes the pending question, only once
        the controller actually starts speaking it. A reminder the controller
        drops can be announced again by a later check in the same minute.

        Returns:
            The medications handed to the controller by this call.
        """
        now = now or datetime.now()
        minute = now.strftime("%H:%M")
        stamp = now.strftime("%Y-%m-%d ") + minute
        try:
            due = [m for m in self._repo.list_medications() if m.time == minute and not m.taken]
        except Exception as exc:  # noqa: BLE001
            _log.error("reminders", "list_failed", {"error": str(exc)})
            return []

        reminded: list[Medication] = []
        for med in due:
            key = (med.id, stamp)
            with self._lock:
                if key in self._reminded:
                    continue
                self._reminded.add(key)
            lang = self._language()
            text = _REMINDER_TEXT[lang].format(name=med.name, instructions=med.instructions).replace("  ", " ")
            self._announce(Utterance(text, lang, SpeechPurpose.ANNOUNCEMENT),
                           lambda spoken, med=med, key=key: self._announced(med, key, spoken))
            reminded.append(med)
        return reminded

    def _announced(self, med: Medication, key: tuple[str, str], spoken: bool) -> None:
        if not spoken:
            with self._lock:
                self._reminded.discard(key)
            _log.info("reminders", "not_spoken", {"medication": med.name})
            return
        with self._lock:
            self._pending = med
        try:
            med.reminder_count = self._repo.record_reminder(med.id)
        except Exception as exc:  # noqa: BLE001
            _log.error("reminders", "record_failed", {"medication": med.name, "error": str(exc)})
        _log.info("reminders", "due", {"medication": med.name, "count": med.reminder_count})

    def handle_transcript(self, text: str) -> Optional[Utterance]:
        """
        Interpret an answer to the pending reminder.

        Returns:
            The utterance to speak in response, or None if *text* is not an
            answer (or nothing is pending).
        """
        with self._lock:
            med = self._pending
        if med is None:
            return None
        lowered = " ".join(text.lower().replace(".", " ").replace(",", " ").split())
        lang = self._language()

        if _contains_word(lowered, CONFIRM_WORDS):
            self._repo.mark_taken(med.id)
            with self._lock:
                self._pending = None
            _log.info("reminders", "taken", {"medication": med.name})
            return Utterance(_CONFIRMED_TEXT[lang], lang, SpeechPurpose.ANNOUNCEMENT)

        if _contains_word(lowered, STOP_WORDS):
            with self._lock:
                self._pending = None
            _log.warn("reminders", "dismissed", {"medication": med.name, "count": med.reminder_count})
            if med.reminder_count >= self._cfg.escalate_after:
                self._notifier.notify_medication_missed(med)
            return Utterance(_DISMISSED_TEXT[lang], lang, SpeechPurpose.ANNOUNCEMENT)

        return None

    # ──────────────────────────────────────────
    # Background loop
    # ──────────────────────────────────────────

    def start(self) -> None:
        """Start checking every ``check_interval_s`` on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="medication-reminders", daemon=True)
        self._thread.start()
        logger.info("Medication reminders running every %.0fs", self._cfg.check_interval_s)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.check()
            self._stop_event.wait(self._cfg.check_interval_s)
