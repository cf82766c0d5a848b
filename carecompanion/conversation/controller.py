"""
carecompanion/conversation/controller.py — Turn-taking conversation controller.

Mediates between the microphone (speech input channel) and the speaker
(speech output channel) so that only one is ever active, and interprets
final transcripts according to the current phase::

    IDLE ─start─► AWAITING_ACTIVATION ─"hey google"─► SPEAKING(greeting)
                        ▲                                   │ done + settle
                        │ farewell done                     ▼
                  SPEAKING(farewell) ◄─silence/end── LISTENING ◄─ done + settle
                                                        │ final transcript
                                                        ▼
                                     PROCESSING ─reply─► SPEAKING(reply)

Every input (channel callbacks, timer fires, generation results, UI
commands) is posted as an :class:`Event` into one serialized queue and
handled by a single transition function, so ordering and exclusivity are
enforced in one place. All mutable session flags live in
:class:`ControllerState`; nothing is ambient.

Restart ownership is explicit (:class:`RestartAuthority`): every
programmatic stop of the input channel first hands restart authority to the
completion path (or to nobody), so the channel's own late ``ended`` event can
never trigger an unwanted restart.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from carecompanion.core.config import ConversationConfig
from carecompanion.core.constants import (
    FAREWELLS,
    GREETINGS,
    PERMISSION_NOTICE,
    ConversationState,
    Language,
    SpeechPurpose,
)
from carecompanion.core.fsm import ConversationFSM
from carecompanion.core.logger import get_logger
from carecompanion.core.scheduling import Dispatcher, Scheduler, TimerHandle
from carecompanion.intent.classifier import detect_language
from carecompanion.llm.responder import Reply
from carecompanion.speech.channels import (
    AlreadyActiveError,
    ChannelErrorKind,
    InputListener,
    SpeechInputChannel,
    SpeechOutputChannel,
    Transcript,
    Utterance,
)

_log = get_logger()

S = ConversationState


# ──────────────────────────────────────────────────────────────
# Events and state
# ──────────────────────────────────────────────────────────────

class Event(Enum):
    """Everything that can drive the controller."""

    START = "START"
    AUTO_START = "AUTO_START"
    STOP = "STOP"
    END_CONVERSATION = "END_CONVERSATION"
    SET_LANGUAGE = "SET_LANGUAGE"
    ANNOUNCE = "ANNOUNCE"
    FINAL_TRANSCRIPT = "FINAL_TRANSCRIPT"
    INTERIM_TRANSCRIPT = "INTERIM_TRANSCRIPT"
    INPUT_ERROR = "INPUT_ERROR"
    INPUT_ENDED = "INPUT_ENDED"
    OUTPUT_DONE = "OUTPUT_DONE"
    REPLY_READY = "REPLY_READY"
    SETTLE_ELAPSED = "SETTLE_ELAPSED"
    SILENCE_ELAPSED = "SILENCE_ELAPSED"
    RESTART_ELAPSED = "RESTART_ELAPSED"


class RestartAuthority(Enum):
    """Who may restart the input channel next."""

    PASSIVE = "PASSIVE"
    """The channel's own ``ended`` event may schedule a restart."""

    COMPLETION = "COMPLETION"
    """Only an output-completion path (via the settle timer) may restart it."""

    NONE = "NONE"
    """Nothing restarts it until the next explicit start."""


_SETTLE = "settle"
_SILENCE = "silence"
_RESTART = "restart"


AnnounceCallback = Callable[[bool], None]
"""Told whether an announcement was spoken (True) or dropped (False)."""


@dataclass
class ControllerState:
    """
    Mutable session state, owned and mutated only by the transition function.

    The phase itself lives in :class:`~carecompanion.core.fsm.ConversationFSM`.
    """

    language: Language = Language.EN
    purpose: Optional[SpeechPurpose] = None
    resume_phase: Optional[ConversationState] = None
    conversation_active: bool = False
    manually_stopped: bool = False
    end_requested: bool = False
    answer_expected: bool = False
    authority: RestartAuthority = RestartAuthority.NONE
    turn_id: int = 0
    speech_id: int = 0
    timer_seq: int = 0
    timers: dict[str, tuple[int, TimerHandle]] = field(default_factory=dict)
    deferred: deque[tuple[Utterance, Optional[AnnounceCallback]]] = field(default_factory=deque)


class EmergencySink(Protocol):
    """Receives one call per emergency turn (fire-and-forget)."""

    def notify_emergency(self, transcript: str, response: str) -> Any: ...


Responder = Callable[[str], Reply]
CommandHandler = Callable[[str], Optional[Utterance]]
EventListener = Callable[[str, dict], None]


# ──────────────────────────────────────────────────────────────
# Controller
# ──────────────────────────────────────────────────────────────

class ConversationController:
    """
    Turn-taking state machine owning one input and one output channel.

    Args:
        input_channel: Continuous speech recogniser.
        output_channel: Speech synthesiser.
        responder: Blocking function producing the :class:`Reply` for a
            transcript; always run on *dispatcher*.
        scheduler: Creates the settle, silence and restart timers.
        dispatcher: Runs *responder* off the event thread.
        config: Timers, activation phrases and default language.
        notifier: Optional emergency fan-out, invoked once per emergency turn.
        command_handler: Optional hook for non-activating transcripts heard
            while awaiting activation, and for the first answer after an
            announcement made mid-conversation; a returned utterance is
            announced.
        on_event: Optional listener for UI events ``(kind, data)``.
    """

    def __init__(
        self,
        input_channel: SpeechInputChannel,
        output_channel: SpeechOutputChannel,
        responder: Responder,
        scheduler: Scheduler,
        dispatcher: Dispatcher,
        config: Optional[ConversationConfig] = None,
        notifier: Optional[EmergencySink] = None,
        command_handler: Optional[CommandHandler] = None,
        on_event: Optional[EventListener] = None,
    ) -> None:
        self._cfg = config or ConversationConfig()
        self._input = input_channel
        self._output = output_channel
        self._responder = responder
        self._scheduler = scheduler
        self._dispatcher = dispatcher
        self._notifier = notifier
        self._command_handler = command_handler
        self._listeners: list[EventListener] = [on_event] if on_event else []

        self._state = ControllerState(language=Language.parse(self._cfg.default_language))
        self._phrases = tuple(p.lower() for p in self._cfg.activation_phrases)
        self._fsm = ConversationFSM(on_transition=self._on_transition)

        self._queue: deque[tuple[Event, Any]] = deque()
        self._queue_lock = threading.Lock()
        self._draining = False

        self._input.set_listener(InputListener(
            on_final=lambda text: self.post(Event.FINAL_TRANSCRIPT, Transcript(text, True)),
            on_interim=lambda text: self.post(Event.INTERIM_TRANSCRIPT, Transcript(text, False)),
            on_error=lambda kind: self.post(Event.INPUT_ERROR, kind),
            on_ended=lambda: self.post(Event.INPUT_ENDED),
        ))

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def start(self) -> None:
        """Begin a session: listen for an activation phrase."""
        self.post(Event.START)

    def auto_start(self) -> None:
        """Like :meth:`start`, but ignored once the user has stopped the session."""
        self.post(Event.AUTO_START)

    def stop(self) -> None:
        """Stop everything and stay idle until :meth:`start` is called."""
        self.post(Event.STOP)

    def end_conversation(self) -> None:
        """Say goodbye and go back to waiting for the activation phrase."""
        self.post(Event.END_CONVERSATION)

    def set_language(self, language: Language | str) -> None:
        """Language for greetings and farewells until a reply changes it."""
        self.post(Event.SET_LANGUAGE, Language.parse(language))

    def announce(self, utterance: Utterance, on_result: Optional[AnnounceCallback] = None) -> None:
        """
        Speak a system message (e.g. a reminder) between turns.

        Announcements that arrive mid-turn wait until the microphone would
        reopen. *on_result* is called on the event thread with True when the
        announcement starts playing, or False if the session stops first.
        """
        self.post(Event.ANNOUNCE, (utterance, on_result))

    def subscribe(self, listener: EventListener) -> None:
        """Register an additional UI event listener."""
        self._listeners.append(listener)

    @property
    def state(self) -> ConversationState:
        return self._fsm.current_state

    @property
    def language(self) -> Language:
        return self._state.language

    @property
    def conversation_active(self) -> bool:
        return self._state.conversation_active

    @property
    def manually_stopped(self) -> bool:
        return self._state.manually_stopped

    @property
    def restart_authority(self) -> RestartAuthority:
        return self._state.authority

    @property
    def pending_timers(self) -> list[str]:
        """Names of the timers currently armed."""
        return sorted(self._state.timers)

    @property
    def history(self) -> list[dict]:
        return self._fsm.get_history()

    def snapshot(self) -> dict:
        """JSON-friendly view of the session for the UI."""
        s = self._state
        return {
            "state": self.state.value,
            "purpose": s.purpose.value if s.purpose else None,
            "language": s.language.value,
            "conversation_active": s.conversation_active,
            "manually_stopped": s.manually_stopped,
            "listening": self._input.active,
            "speaking": self._output.active,
        }

    # ──────────────────────────────────────────
    # Event queue
    # ──────────────────────────────────────────

    def post(self, event: Event, payload: Any = None) -> None:
        """
        Enqueue an event and drain the queue unless another caller is draining.

        Events posted while a handler runs (re-entrantly or from another
        thread) are handled after it, in arrival order — never concurrently.
        """
        with self._queue_lock:
            self._queue.append((event, payload))
            if self._draining:
                return
            self._draining = True
        while True:
            with self._queue_lock:
                if not self._queue:
                    self._draining = False
                    return
                event, payload = self._queue.popleft()
            try:
                self._handle(event, payload)
            except Exception as exc:  # noqa: BLE001
                _log.error("conversation", "handler_failed",
                           {"event": event.value, "error": repr(exc)})

    def _handle(self, event: Event, payload: Any) -> None:
        """The single transition function: dispatch *event* to its handler."""
        getattr(self, f"_on_{event.value.lower()}")(payload)

    # ──────────────────────────────────────────
    # Handlers: session control
    # ──────────────────────────────────────────

    def _on_start(self, _: Any) -> None:
        if self.state is not S.IDLE:
            return
        self._state.manually_stopped = False
        self._fsm.transition(S.AWAITING_ACTIVATION, "start")
        self._listen_passively()

    def _on_auto_start(self, _: Any) -> None:
        if self._state.manually_stopped:
            _log.info("conversation", "auto_start_skipped", {"reason": "manually stopped"})
            return
        self._on_start(None)

    def _on_stop(self, _: Any) -> None:
        self._halt("stopped by user")

    def _on_end_conversation(self, _: Any) -> None:
        phase = self.state
        if phase in (S.LISTENING, S.PROCESSING):
            self._say_farewell("ended by user")
        elif phase is S.SPEAKING and self._state.purpose in (SpeechPurpose.GREETING, SpeechPurpose.REPLY):
            self._state.end_requested = True

    def _on_set_language(self, language: Language) -> None:
        self._state.language = language
        self._publish("language", {"language": language.value})

    def _on_announce(self, payload: tuple[Utterance, Optional[AnnounceCallback]]) -> None:
        utterance, on_result = payload
        phase = self.state
        if self._state.manually_stopped or phase is S.IDLE:
            _log.info("conversation", "announcement_rejected",
                      {"phase": phase.value, "text": utterance.text[:60]})
            self._publish("announcement_rejected", {"text": utterance.text})
            self._announce_result(on_result, False)
        elif phase in (S.PROCESSING, S.SPEAKING):
            _log.info("conversation", "announcement_deferred",
                      {"phase": phase.value, "text": utterance.text[:60]})
            self._state.deferred.append((utterance, on_result))
        else:
            self._speak_announcement(utterance, on_result)

    # ──────────────────────────────────────────
    # Handlers: input channel
    # ──────────────────────────────────────────

    def _on_final_transcript(self, transcript: Transcript) -> None:
        text = transcript.text.strip()
        phase = self.state
        s = self._state

        if phase is S.AWAITING_ACTIVATION:
            if not text:
                return
            if len(text) >= self._cfg.min_activation_chars and self._is_activation(text):
                self._activate(text)
            elif self._command_handler is not None:
                self._run_command(text)
        elif phase is S.LISTENING:
            if not text:
                return
            if s.answer_expected:
                s.answer_expected = False
                if self._run_command(text):
                    return
            self._begin_turn(text)
        elif phase in (S.PROCESSING, S.SPEAKING):
            _log.info("conversation", "transcript_dropped",
                      {"phase": phase.value, "text": text[:60]})
            self._publish("dropped", {"text": text, "phase": phase.value})

    def _on_interim_transcript(self, transcript: Transcript) -> None:
        phase = self.state
        if phase not in (S.AWAITING_ACTIVATION, S.LISTENING):
            return
        if phase is S.LISTENING and _SILENCE in self._state.timers:
            self._arm_timer(_SILENCE, self._cfg.silence_timeout_s, Event.SILENCE_ELAPSED)
        self._publish("interim", {"text": transcript.text})

    def _on_input_error(self, kind: ChannelErrorKind) -> None:
        if kind.is_terminal:
            _log.error("conversation", "permission_denied", {"phase": self.state.value})
            self._publish("notice", {"level": "error", "message": PERMISSION_NOTICE})
            self._halt("permission denied")
        elif kind.is_silent:
            _log.info("conversation", "input_quiet", {"kind": kind.value})
        else:
            _log.warn("conversation", "input_error", {"kind": kind.value,
                                                      "phase": self.state.value})

    def _on_input_ended(self, _: Any) -> None:
        s = self._state
        if s.manually_stopped or s.authority is not RestartAuthority.PASSIVE:
            return
        if self.state not in (S.AWAITING_ACTIVATION, S.LISTENING):
            return
        self._arm_timer(_RESTART, self._cfg.passive_restart_s, Event.RESTART_ELAPSED)

    # ──────────────────────────────────────────
    # Handlers: output channel and generation
    # ──────────────────────────────────────────

    def _on_output_done(self, payload: tuple[int, Optional[Exception]]) -> None:
        speech_id, error = payload
        s = self._state
        if speech_id != s.speech_id or self.state is not S.SPEAKING:
            return
        if error is not None:
            _log.warn("conversation", "synthesis_error", {"error": str(error)})

        purpose, s.purpose = s.purpose, None
        if purpose is SpeechPurpose.FAREWELL:
            s.conversation_active = False
            self._fsm.transition(S.IDLE, "farewell spoken")
            if not s.manually_stopped:
                self._fsm.transition(S.AWAITING_ACTIVATION, "session continues")
                self._settle_then_listen()
        elif purpose is SpeechPurpose.ANNOUNCEMENT:
            resume, s.resume_phase = s.resume_phase, None
            if resume is S.LISTENING and s.conversation_active:
                s.answer_expected = True
                self._enter_listening("announcement spoken")
            else:
                self._fsm.transition(S.AWAITING_ACTIVATION, "announcement spoken")
                self._settle_then_listen()
        else:
            self._enter_listening(f"{purpose.value.lower() if purpose else 'speech'} spoken")
            if s.end_requested:
                self._say_farewell("ended by user")

    def _on_reply_ready(self, payload: tuple[int, str, Optional[Reply]]) -> None:
        turn_id, transcript, reply = payload
        if reply is not None and reply.intent.is_emergency and self._notifier is not None:
            try:
                self._notifier.notify_emergency(transcript, reply.utterance.text)
            except Exception as exc:  # noqa: BLE001
                _log.error("conversation", "notify_failed", {"error": str(exc)})

        if turn_id != self._state.turn_id or self.state is not S.PROCESSING:
            _log.info("conversation", "stale_reply_discarded",
                      {"turn": turn_id, "current": self._state.turn_id})
            return
        if reply is None:
            self._enter_listening("no reply")
            return

        self._state.language = reply.utterance.language
        self._publish("reply", {
            "text": reply.utterance.text,
            "language": reply.utterance.language.value,
            "intent": reply.intent.category.value,
            "fallback": reply.fallback,
        })
        self._speak(reply.utterance)

    # ──────────────────────────────────────────
    # Handlers: timers
    # ──────────────────────────────────────────

    def _on_settle_elapsed(self, seq: int) -> None:
        if not self._timer_fired(_SETTLE, seq):
            return
        if self.state not in (S.AWAITING_ACTIVATION, S.LISTENING):
            return
        if self._state.deferred:
            self._speak_announcement(*self._state.deferred.popleft())
        else:
            self._listen_passively()

    def _on_silence_elapsed(self, seq: int) -> None:
        if not self._timer_fired(_SILENCE, seq):
            return
        if self.state is S.LISTENING:
            self._say_farewell("silence timeout")

    def _on_restart_elapsed(self, seq: int) -> None:
        if not self._timer_fired(_RESTART, seq):
            return
        s = self._state
        if (
            not s.manually_stopped
            and s.authority is RestartAuthority.PASSIVE
            and self.state in (S.AWAITING_ACTIVATION, S.LISTENING)
        ):
            self._start_input()

    # ──────────────────────────────────────────
    # Transition helpers
    # ──────────────────────────────────────────

    def _is_activation(self, text: str) -> bool:
        lowered = text.lower()
        return any(phrase in lowered for phrase in self._phrases)

    def _activate(self, text: str) -> None:
        # Input goes down before anything else so buffered audio cannot re-trigger.
        self._stop_input(RestartAuthority.COMPLETION)
        self._cancel_timer(_RESTART)
        s = self._state
        s.conversation_active = True
        s.end_requested = False
        if detect_language(text) is Language.ML:
            s.language = Language.ML
        _log.info("conversation", "activated", {"text": text[:60], "language": s.language.value})
        self._speak(Utterance(GREETINGS[s.language], s.language, SpeechPurpose.GREETING))

    def _begin_turn(self, text: str) -> None:
        self._stop_input(RestartAuthority.COMPLETION)
        self._cancel_timer(_SILENCE)
        self._cancel_timer(_SETTLE)
        self._cancel_timer(_RESTART)
        s = self._state
        s.turn_id += 1
        turn = s.turn_id
        self._fsm.transition(S.PROCESSING, "final transcript")
        self._publish("transcript", {"text": text, "turn": turn})
        self._dispatcher.submit(lambda: self._generate(turn, text), name=f"reply-{turn}")

    def _generate(self, turn: int, text: str) -> None:
        """Runs on the dispatcher; posts the result back to the event queue."""
        try:
            reply: Optional[Reply] = self._responder(text)
        except Exception as exc:  # noqa: BLE001
            _log.error("conversation", "responder_failed", {"turn": turn, "error": repr(exc)})
            reply = None
        self.post(Event.REPLY_READY, (turn, text, reply))

    def _run_command(self, text: str) -> bool:
        """Offer *text* to the command hook; True if it answered."""
        if self._command_handler is None:
            return False
        try:
            utterance = self._command_handler(text)
        except Exception as exc:  # noqa: BLE001
            _log.error("conversation", "command_failed", {"error": repr(exc)})
            return False
        if utterance is None:
            return False
        self._speak_announcement(utterance, None)
        return True

    def _speak_announcement(self, utterance: Utterance, on_result: Optional[AnnounceCallback]) -> None:
        self._state.resume_phase = self.state
        self._state.answer_expected = False
        self._stop_input(RestartAuthority.COMPLETION)
        for name in (_SETTLE, _SILENCE, _RESTART):
            self._cancel_timer(name)
        self._speak(replace(utterance, purpose=SpeechPurpose.ANNOUNCEMENT))
        self._announce_result(on_result, True)

    def _announce_result(self, on_result: Optional[AnnounceCallback], spoken: bool) -> None:
        if on_result is None:
            return
        try:
            on_result(spoken)
        except Exception as exc:  # noqa: BLE001
            _log.error("conversation", "announce_callback_failed", {"error": repr(exc)})

    def _say_farewell(self, reason: str) -> None:
        s = self._state
        self._stop_input(RestartAuthority.COMPLETION)
        for name in (_SETTLE, _SILENCE, _RESTART):
            self._cancel_timer(name)
        s.turn_id += 1
        s.end_requested = False
        s.answer_expected = False
        _log.info("conversation", "farewell", {"reason": reason})
        self._speak(Utterance(FAREWELLS[s.language], s.language, SpeechPurpose.FAREWELL))

    def _enter_listening(self, reason: str) -> None:
        """Open a user turn: microphone after the settle delay, silence deadline now."""
        self._fsm.transition(S.LISTENING, reason)
        self._arm_timer(_SILENCE, self._cfg.silence_timeout_s, Event.SILENCE_ELAPSED)
        self._settle_then_listen()

    def _settle_then_listen(self) -> None:
        self._state.authority = RestartAuthority.COMPLETION
        self._arm_timer(_SETTLE, self._cfg.settle_delay_s, Event.SETTLE_ELAPSED)

    def _listen_passively(self) -> None:
        self._state.authority = RestartAuthority.PASSIVE
        self._start_input()

    def _speak(self, utterance: Utterance) -> None:
        if self._input.active:
            self._stop_input(RestartAuthority.COMPLETION)
        s = self._state
        self._fsm.transition(S.SPEAKING, utterance.purpose.value.lower())
        s.purpose = utterance.purpose
        s.speech_id += 1
        speech_id = s.speech_id
        self._publish("speaking", {"text": utterance.text,
                                   "purpose": utterance.purpose.value,
                                   "language": utterance.language.value})

        def _done(error: Optional[Exception]) -> None:
            self.post(Event.OUTPUT_DONE, (speech_id, error))

        try:
            if self._output.active:
                self._output.cancel()
            self._output.speak(utterance, _done)
        except Exception as exc:  # noqa: BLE001
            _log.error("conversation", "speak_failed", {"error": repr(exc)})
            self.post(Event.OUTPUT_DONE, (speech_id, exc))

    def _start_input(self) -> None:
        if self._output.active:
            _log.warn("conversation", "input_start_blocked", {"reason": "output active"})
            return
        try:
            self._input.start()
        except AlreadyActiveError:
            return
        except Exception as exc:  # noqa: BLE001
            _log.warn("conversation", "input_start_failed", {"error": repr(exc)})
            if not self._state.manually_stopped and self._state.authority is RestartAuthority.PASSIVE:
                self._arm_timer(_RESTART, self._cfg.passive_restart_s, Event.RESTART_ELAPSED)

    def _stop_input(self, authority: RestartAuthority) -> None:
        # Authority changes first: the channel may report "ended" synchronously.
        self._state.authority = authority
        self._input.stop()

    def _halt(self, reason: str) -> None:
        s = self._state
        s.manually_stopped = True
        s.authority = RestartAuthority.NONE
        for name in list(s.timers):
            self._cancel_timer(name)
        self._input.stop()
        s.turn_id += 1
        s.speech_id += 1
        self._output.cancel()
        s.conversation_active = False
        s.end_requested = False
        s.purpose = None
        s.resume_phase = None
        s.answer_expected = False
        dropped, s.deferred = list(s.deferred), deque()
        self._fsm.reset(reason)
        for _utterance, on_result in dropped:
            self._announce_result(on_result, False)

    # ──────────────────────────────────────────
    # Timers
    # ──────────────────────────────────────────

    def _arm_timer(self, name: str, delay_s: float, event: Event) -> None:
        """(Re)arm the logical timer *name*; any earlier instance is cancelled."""
        self._cancel_timer(name)
        s = self._state
        s.timer_seq += 1
        seq = s.timer_seq
        handle = self._scheduler.call_later(delay_s, lambda: self.post(event, seq))
        s.timers[name] = (seq, handle)

    def _cancel_timer(self, name: str) -> None:
        entry = self._state.timers.pop(name, None)
        if entry is not None:
            entry[1].cancel()

    def _timer_fired(self, name: str, seq: int) -> bool:
        """Consume the fire of *name* if *seq* is its current instance."""
        entry = self._state.timers.get(name)
        if entry is None or entry[0] != seq:
            return False
        del self._state.timers[name]
        return True

    # ──────────────────────────────────────────
    # Publishing
    # ──────────────────────────────────────────

    def _on_transition(self, from_state: ConversationState, to_state: ConversationState, reason: str) -> None:
        self._publish("state", {"from": from_state.value, "state": to_state.value, "reason": reason})

    def _publish(self, kind: str, data: dict) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, data)
            except Exception as exc:  # noqa: BLE001
                _log.warn("conversation", "listener_failed", {"kind": kind, "error": str(exc)})
