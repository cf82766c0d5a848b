"""
carecompanion/pipeline/companion.py — CompanionPipeline: wires every subsystem together.

Builds the companion in dependency order and exposes one object that the
console simulator and the web server drive::

    speech input ─► ConversationController ─► ResponseGenerator ─► speech output
                              │                    │
                              └── FamilyNotifier ◄─┘ (emergencies)
                              ▲
                MedicationReminder (announcements, command hook)

An internal event bus lets the UI subscribe to conversation events without
holding references to internal modules.
"""

from __future__ import annotations

import time
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from carecompanion.conversation.controller import ConversationController
from carecompanion.conversation.history import ConversationHistory, Message
from carecompanion.core.config import CompanionConfig, load_config
from carecompanion.core.constants import Language
from carecompanion.core.logger import get_logger
from carecompanion.core.scheduling import (
    Dispatcher,
    Scheduler,
    ThreadDispatcher,
    ThreadScheduler,
    TimerHandle,
)
from carecompanion.intent.classifier import IntentClassifier
from carecompanion.llm.gemini import GeminiClient
from carecompanion.llm.prompt_builder import PromptBuilder
from carecompanion.llm.responder import Reply, ResponseGenerator
from carecompanion.reminders.medication import MedicationReminder
from carecompanion.safety.emergency import AlertEvent, FamilyNotifier
from carecompanion.speech.browser import BrowserSpeechBridge, SendFn
from carecompanion.speech.channels import SpeechInputChannel, SpeechOutputChannel
from carecompanion.speech.simulated import SimulatedInputChannel, SimulatedOutputChannel
from carecompanion.store.client import InMemoryTableStore, TableStore, create_store
from carecompanion.store.records import CareRepository

_log = get_logger()

# ── EventBus event-name constants ─────────────────────────────────────────────

ON_STATE_CHANGE       = "ON_STATE_CHANGE"
"""Fired on every conversation phase transition."""

ON_INTERIM            = "ON_INTERIM"
"""Fired with partial recognition text while the senior is speaking."""

ON_USER_MESSAGE       = "ON_USER_MESSAGE"
"""Fired when a final transcript starts a turn."""

ON_ASSISTANT_MESSAGE  = "ON_ASSISTANT_MESSAGE"
"""Fired when a reply has been accepted for speaking."""

ON_SPEAKING           = "ON_SPEAKING"
"""Fired just before any utterance (greeting, reply, farewell, announcement) starts."""

ON_NOTICE             = "ON_NOTICE"
"""Fired with a user-facing notice, e.g. microphone permission denied."""

ON_ALERT              = "ON_ALERT"
"""Fired when a family alert is raised, delivered, or resolved."""

ON_LANGUAGE           = "ON_LANGUAGE"
"""Fired when the conversation language changes."""

ON_DROPPED            = "ON_DROPPED"
"""Fired when a transcript arrives while a turn is already in progress."""

_CONTROLLER_EVENTS: Dict[str, str] = {
    "state": ON_STATE_CHANGE,
    "interim": ON_INTERIM,
    "transcript": ON_USER_MESSAGE,
    "reply": ON_ASSISTANT_MESSAGE,
    "speaking": ON_SPEAKING,
    "notice": ON_NOTICE,
    "announcement_rejected": ON_NOTICE,
    "language": ON_LANGUAGE,
    "dropped": ON_DROPPED,
}

#: Demonstration records loaded into the in-memory store.
DEMO_SEED: Dict[str, List[Dict[str, Any]]] = {
    "senior_profiles": [
        {"id": "senior-1", "full_name": "Mary Thomas", "age": 78,
         "health_conditions": ["hypertension"], "family_id": "family-1"},
    ],
    "emergency_contacts": [
        {"id": "contact-1", "senior_id": "senior-1", "name": "Anna Thomas",
         "relationship": "daughter", "phone": "+1-555-0100", "is_primary": True},
        {"id": "contact-2", "senior_id": "senior-1", "name": "Dr. Nair",
         "relationship": "doctor", "phone": "+1-555-0199", "is_primary": False},
    ],
    "medications": [
        {"id": "med-1", "senior_id": "senior-1", "name": "Amlodipine",
         "dosage": "5 mg", "frequency": "daily", "instructions": "Take with water.",
         "time": "08:00"},
    ],
}


class CompanionPipeline:
    """
    The assembled companion.

    Initialisation order:

    1.  Data store and :class:`~carecompanion.store.records.CareRepository`
    2.  :class:`~carecompanion.intent.classifier.IntentClassifier`
    3.  :class:`~carecompanion.llm.gemini.GeminiClient` (None without an API key)
    4.  :class:`~carecompanion.llm.responder.ResponseGenerator`
    5.  :class:`~carecompanion.safety.emergency.FamilyNotifier`
    6.  Speech channels (simulated, browser bridge, or injected)
    7.  :class:`~carecompanion.conversation.controller.ConversationController`
    8.  :class:`~carecompanion.reminders.medication.MedicationReminder`

    Args:
        config: Loaded configuration.
        mode: ``'sim'`` (simulated input, console output) or ``'web'``
            (browser speech bridge). Ignored for a channel passed explicitly.
        input_channel: Optional speech input channel to use instead.
        output_channel: Optional speech output channel to use instead.
        scheduler: Timer factory; defaults to threading timers.
        dispatcher: Background runner; defaults to daemon threads.
        store: Optional table store; defaults to the configured back-end.
        browser_send: Outbound message function for the browser bridge.
        echo: Optional callable given each spoken text in simulator mode.
    """

    def __init__(
        self,
        config: Optional[CompanionConfig] = None,
        mode: str = "sim",
        input_channel: Optional[SpeechInputChannel] = None,
        output_channel: Optional[SpeechOutputChannel] = None,
        scheduler: Optional[Scheduler] = None,
        dispatcher: Optional[Dispatcher] = None,
        store: Optional[TableStore] = None,
        browser_send: Optional[SendFn] = None,
        echo: Optional[Callable[[str], None]] = None,
    ) -> None:
        if mode not in ("sim", "web"):
            raise ValueError(f"mode must be 'sim' or 'web', got {mode!r}")
        self.config = config or CompanionConfig()
        self.mode = mode
        self._scheduler = scheduler or ThreadScheduler()
        self._dispatcher = dispatcher or ThreadDispatcher()
        self._subscribers: Dict[str, List[Callable[[Dict[str, Any]], None]]] = defaultdict(list)
        self._auto_start: Optional[TimerHandle] = None
        self.history = ConversationHistory()

        # ── 1. Data store ─────────────────────────────────────────────────
        _t = time.perf_counter()
        if store is None:
            store = create_store(self.config.datastore)
            if isinstance(store, InMemoryTableStore):
                store = InMemoryTableStore(seed=DEMO_SEED)
        self.repository = CareRepository(store, self.config.datastore.senior_id)
        _log.perf("pipeline", "init_store", (time.perf_counter() - _t) * 1_000.0,
                  {"backend": self.config.datastore.backend})

        # ── 2–4. Classifier, model client, responder ──────────────────────
        self.classifier = IntentClassifier(self.config.intent)
        client = GeminiClient(self.config.generation)
        if not client.available:
            _log.warn("pipeline", "generation_unconfigured",
                      {"env": self.config.generation.api_key_env})
            client = None
        self.generator = ResponseGenerator(
            self.classifier,
            client,
            prompts=PromptBuilder(),
            repository=self.repository,
        )

        # ── 5. Family notifier ────────────────────────────────────────────
        self.notifier = FamilyNotifier(
            self.repository,
            self._dispatcher,
            config=self.config.alerts,
            on_alert=self._on_alert,
        )

        # ── 6. Speech channels ────────────────────────────────────────────
        self.bridge: Optional[BrowserSpeechBridge] = None
        if mode == "web" and (input_channel is None or output_channel is None):
            self.bridge = BrowserSpeechBridge(browser_send or (lambda _msg: False))
        if input_channel is None:
            input_channel = self.bridge.input if self.bridge else SimulatedInputChannel()
        if output_channel is None:
            output_channel = (
                self.bridge.output if self.bridge
                else SimulatedOutputChannel(auto_complete=True, echo=echo)
            )
        self.input = input_channel
        self.output = output_channel

        # ── 7. Conversation controller ────────────────────────────────────
        self.reminders: Optional[MedicationReminder] = None
        self.controller = ConversationController(
            input_channel,
            output_channel,
            responder=self._respond,
            scheduler=self._scheduler,
            dispatcher=self._dispatcher,
            config=self.config.conversation,
            notifier=self.notifier,
            command_handler=self._handle_command,
            on_event=self._relay,
        )

        # ── 8. Medication reminders ───────────────────────────────────────
        self.reminders = MedicationReminder(
            self.repository,
            self.notifier,
            announce=self.controller.announce,
            config=self.config.reminders,
            language=lambda: self.controller.language,
        )

        _log.info("pipeline", "pipeline_ready", {
            "mode": mode,
            "generation": client is not None,
            "datastore": self.config.datastore.backend,
        })

    @classmethod
    def from_config_file(cls, path: Path | str | None = None, **kwargs: Any) -> "CompanionPipeline":
        """Load configuration (see :func:`load_config`) and build the pipeline."""
        return cls(load_config(path), **kwargs)

    # ── EventBus ──────────────────────────────────────────────────────────────

    def subscribe(self, event: str, callback: Callable[[Dict[str, Any]], None]) -> None:
        """
        Register *callback* for *event* (one of the ``ON_*`` constants).

        Callbacks run synchronously on the publishing thread; exceptions are
        logged and never reach the conversation.
        """
        self._subscribers[event].append(callback)

    def publish(self, event: str, data: Dict[str, Any]) -> None:
        for cb in self._subscribers.get(event, []):
            try:
                cb(data)
            except Exception as exc:  # noqa: BLE001
                _log.error("pipeline", "event_callback_error", {"event": event, "error": str(exc)})

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Schedule the conversation auto-start and run the reminder loop."""
        conv = self.config.conversation
        if conv.auto_start and self._auto_start is None:
            self._auto_start = self._scheduler.call_later(conv.auto_start_delay_s, self.controller.auto_start)
            _log.info("pipeline", "auto_start_scheduled", {"delay_s": conv.auto_start_delay_s})
        if self.config.reminders.enabled and self.reminders is not None:
            self.reminders.start()

    def shutdown(self) -> None:
        """Stop the conversation, the reminder loop, and speech output."""
        _log.info("pipeline", "shutdown_requested", {})
        if self._auto_start is not None:
            self._auto_start.cancel()
            self._auto_start = None
        self.controller.stop()
        if self.reminders is not None:
            self.reminders.stop()
        stop_output = getattr(self.output, "shutdown", None)
        if callable(stop_output):
            stop_output()

    def set_language(self, language: Language | str) -> Language:
        lang = Language.parse(language)
        if self.bridge is not None:
            self.bridge.set_language(lang)
        self.controller.set_language(lang)
        return lang

    def snapshot(self) -> Dict[str, Any]:
        """Controller state plus recent messages and alerts, for the UI."""
        data = self.controller.snapshot()
        data["messages"] = [m.to_dict() for m in self.history.snapshot()]
        data["alerts"] = [a.to_dict() for a in self.notifier.session_log]
        return data

    # ── Wiring callbacks ──────────────────────────────────────────────────────

    def _respond(self, transcript: str) -> Reply:
        """Responder given to the controller; runs on the dispatcher."""
        pairs = self.history.pairs()
        if pairs and pairs[-1] == ("user", transcript):
            pairs = pairs[:-1]
        return self.generator.respond(transcript, pairs)

    def _handle_command(self, text: str):
        if self.reminders is None:
            return None
        return self.reminders.handle_transcript(text)

    def _relay(self, kind: str, data: Dict[str, Any]) -> None:
        """Translate controller events into bus events, recording messages."""
        if kind == "transcript":
            self.history.add(Message("user", data["text"], language=self.controller.language.value))
        elif kind == "reply":
            self.history.add(Message(
                "assistant", data["text"], language=data["language"], intent=data["intent"],
            ))
        elif kind == "language" and self.bridge is not None:
            self.bridge.set_language(Language.parse(data["language"]))
        event = _CONTROLLER_EVENTS.get(kind)
        if event is not None:
            self.publish(event, data)

    def _on_alert(self, alert: AlertEvent) -> None:
        self.publish(ON_ALERT, alert.to_dict())
