"""
tests/test_controller.py — Turn-taking behaviour of ConversationController.

Driven entirely by simulated channels, a manual clock, and inline or
deferred dispatchers: no threads, no sleeps.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Optional
from unittest.mock import MagicMock

import pytest

from carecompanion.conversation import controller as controller_module
from carecompanion.conversation.controller import ConversationController, Event, RestartAuthority
from carecompanion.core.config import ConversationConfig
from carecompanion.core.constants import (
    FAREWELLS,
    GREETINGS,
    PERMISSION_NOTICE,
    ConversationState,
    Language,
    SpeechPurpose,
)
from carecompanion.intent.classifier import IntentCategory, IntentClassifier
from carecompanion.llm.responder import EMERGENCY_REPLIES, ResponseGenerator
from carecompanion.speech.channels import (
    ChannelErrorKind,
    SpeechOutputChannel,
    Transcript,
    Utterance,
)
from carecompanion.speech.simulated import SimulatedInputChannel, SimulatedOutputChannel
from conftest import (
    DeferredDispatcher,
    FakeNotifier,
    InlineDispatcher,
    ManualScheduler,
    ScriptedResponder,
    make_reply,
)

S = ConversationState


# ──────────────────────────────────────────────────────────────
# Harness
# ──────────────────────────────────────────────────────────────

@dataclass
class Harness:
    controller: ConversationController
    mic: SimulatedInputChannel
    speaker: SpeechOutputChannel
    scheduler: ManualScheduler
    responder: ScriptedResponder
    notifier: FakeNotifier
    events: list = field(default_factory=list)
    overlaps: list = field(default_factory=list)
    changes: list = field(default_factory=list)

    @property
    def state(self) -> ConversationState:
        return self.controller.state

    def kinds(self, kind: str) -> list[dict]:
        return [d for k, d in self.events if k == kind]

    def idle_entries(self) -> int:
        return sum(1 for rec in self.controller.history if rec["to"] == "IDLE")

    # ── common journeys ──────────────────────────────────────

    def activate(self) -> None:
        """IDLE → greeting finished → LISTENING with the microphone open."""
        self.controller.start()
        assert self.mic.say("hey google")
        self.speaker.complete()
        self.scheduler.advance(self.controller._cfg.settle_delay_s)
        assert self.state is S.LISTENING and self.mic.active


def build(
    scheduler: ManualScheduler,
    dispatcher=None,
    responder: Optional[ScriptedResponder] = None,
    speaker: Optional[SpeechOutputChannel] = None,
    config: Optional[ConversationConfig] = None,
    command_handler=None,
) -> Harness:
    holder: dict = {}

    def _check() -> None:
        h = holder.get("h")
        if h is None:
            return
        h.changes.append(("mic", h.mic.active, "speaker", h.speaker.active))
        if h.mic.active and h.speaker.active:
            h.overlaps.append(h.controller.state)

    mic = SimulatedInputChannel(on_change=_check)
    speaker = speaker or SimulatedOutputChannel(on_change=_check)
    speaker._on_change = _check
    responder = responder or ScriptedResponder()
    notifier = FakeNotifier()
    events: list = []
    ctrl = ConversationController(
        mic,
        speaker,
        responder=responder,
        scheduler=scheduler,
        dispatcher=dispatcher or InlineDispatcher(),
        config=config or ConversationConfig(),
        notifier=notifier,
        command_handler=command_handler,
        on_event=lambda kind, data: events.append((kind, data)),
    )
    h = Harness(ctrl, mic, speaker, scheduler, responder, notifier, events)
    holder["h"] = h
    return h


@pytest.fixture()
def h(scheduler: ManualScheduler) -> Harness:
    return build(scheduler)


# ──────────────────────────────────────────────────────────────
# Activation
# ──────────────────────────────────────────────────────────────

class TestActivation:

    def test_start_listens_for_activation(self, h: Harness) -> None:
        h.controller.start()
        assert h.state is S.AWAITING_ACTIVATION
        assert h.mic.active
        assert h.controller.restart_authority is RestartAuthority.PASSIVE

    def test_hey_google_greets_with_microphone_stopped_first(self, h: Harness) -> None:
        h.controller.start()
        h.mic.say("Hey Google")

        assert h.state is S.SPEAKING
        assert h.speaker.spoken_texts == [GREETINGS[Language.EN]]
        assert not h.mic.active
        assert h.mic.stop_count == 1
        mic_off = h.changes.index(("mic", False, "speaker", False))
        speaker_on = h.changes.index(("mic", False, "speaker", True))
        assert mic_off < speaker_on
        assert h.controller.conversation_active

    def test_microphone_restarts_only_after_settle(self, h: Harness) -> None:
        h.controller.start()
        h.mic.say("hey google")
        h.scheduler.advance(30.0)
        assert h.mic.start_count == 1, "no restart while the greeting plays"

        h.speaker.complete()
        assert h.state is S.LISTENING
        assert not h.mic.active
        h.scheduler.advance(0.5)
        assert not h.mic.active
        h.scheduler.advance(0.5)
        assert h.mic.active
        assert h.mic.start_count == 2
        assert h.overlaps == []

    @pytest.mark.parametrize("text", ["", " ", "hi", "ok", "  a ", "ഹാ"])
    def test_short_transcripts_never_activate(self, h: Harness, text: str) -> None:
        h.controller.start()
        h.mic.say(text)
        assert h.state is S.AWAITING_ACTIVATION
        assert h.speaker.spoken == []
        assert h.mic.active

    def test_non_activating_speech_is_ignored(self, h: Harness) -> None:
        h.controller.start()
        h.mic.say("what a nice day")
        assert h.state is S.AWAITING_ACTIVATION
        assert h.speaker.spoken == []

    def test_activation_phrase_inside_sentence(self, h: Harness) -> None:
        h.controller.start()
        h.mic.say("oh hello there")
        assert h.state is S.SPEAKING
        assert h.speaker.spoken[0].purpose is SpeechPurpose.GREETING

    def test_malayalam_activation_greets_in_malayalam(self, h: Harness) -> None:
        h.controller.start()
        h.mic.say("ഹലോ")
        assert h.speaker.spoken_texts == [GREETINGS[Language.ML]]
        assert h.controller.language is Language.ML

    def test_set_language_changes_greeting(self, h: Harness) -> None:
        h.controller.set_language("ml")
        h.controller.start()
        h.mic.say("hey google")
        assert h.speaker.spoken[0].language is Language.ML
        assert h.kinds("language") == [{"language": "ml"}]

    def test_start_twice_is_harmless(self, h: Harness) -> None:
        h.controller.start()
        h.controller.start()
        assert h.mic.start_count == 1
        assert h.state is S.AWAITING_ACTIVATION


# ──────────────────────────────────────────────────────────────
# Turns
# ──────────────────────────────────────────────────────────────

class TestTurns:

    def test_turn_produces_spoken_reply_then_listens_again(self, h: Harness) -> None:
        h.activate()
        h.mic.say("how is the weather")

        assert h.responder.calls == ["how is the weather"]
        assert h.state is S.SPEAKING
        assert h.speaker.spoken_texts[-1] == "That sounds lovely."
        assert h.kinds("transcript") == [{"text": "how is the weather", "turn": 1}]
        assert h.kinds("reply")[0]["intent"] == "general"

        h.speaker.complete()
        assert h.state is S.LISTENING
        h.scheduler.advance(1.0)
        assert h.mic.active
        assert h.overlaps == []

    def test_processing_passes_through_phase(self, scheduler: ManualScheduler) -> None:
        deferred = DeferredDispatcher()
        h = build(scheduler, dispatcher=deferred)
        h.activate()
        h.mic.say("tell me a story")
        assert h.state is S.PROCESSING
        assert not h.mic.active and not h.speaker.active
        assert h.controller.pending_timers == []

        deferred.run_all()
        assert h.state is S.SPEAKING

    def test_empty_final_in_listening_is_ignored(self, h: Harness) -> None:
        h.activate()
        h.mic.say("   ")
        assert h.state is S.LISTENING
        assert h.responder.calls == []
        assert h.mic.active

    def test_back_to_back_finals_drop_the_second(self, scheduler: ManualScheduler) -> None:
        deferred = DeferredDispatcher()
        h = build(scheduler, dispatcher=deferred)
        h.activate()
        h.mic.say("first question")
        h.controller.post(Event.FINAL_TRANSCRIPT, Transcript("second question"))

        deferred.run_all()
        assert h.responder.calls == ["first question"]
        assert h.kinds("dropped") == [{"text": "second question", "phase": "PROCESSING"}]

    def test_final_during_speaking_is_dropped(self, h: Harness) -> None:
        h.activate()
        h.mic.say("question")
        h.controller.post(Event.FINAL_TRANSCRIPT, Transcript("echo of the reply"))
        assert h.responder.calls == ["question"]
        assert h.kinds("dropped")[0]["phase"] == "SPEAKING"

    def test_responder_failure_returns_to_listening(self, scheduler: ManualScheduler) -> None:
        h = build(scheduler, responder=ScriptedResponder(error=RuntimeError("boom")))
        h.activate()
        h.mic.say("anything")
        assert h.state is S.LISTENING
        assert not h.speaker.active
        scheduler.advance(1.0)
        assert h.mic.active

    def test_reply_language_is_adopted(self, scheduler: ManualScheduler) -> None:
        reply = make_reply("നന്നായി", language=Language.ML)
        h = build(scheduler, responder=ScriptedResponder(reply))
        h.activate()
        h.mic.say("സുഖമാണോ")
        assert h.controller.language is Language.ML


# ──────────────────────────────────────────────────────────────
# Ending conversations
# ──────────────────────────────────────────────────────────────

class TestEnding:

    def test_silence_timeout_gives_exactly_one_farewell(self, h: Harness) -> None:
        h.activate()
        h.scheduler.advance(7.0)        # silence deadline is 8 s after entering LISTENING
        assert h.state is S.SPEAKING
        assert h.speaker.spoken[-1].purpose is SpeechPurpose.FAREWELL

        h.speaker.complete()
        h.scheduler.advance(120.0)
        farewells = [u for u in h.speaker.spoken if u.purpose is SpeechPurpose.FAREWELL]
        assert len(farewells) == 1
        assert farewells[0].text == FAREWELLS[Language.EN]
        assert h.idle_entries() == 1
        assert h.state is S.AWAITING_ACTIVATION
        assert h.mic.active
        assert not h.controller.conversation_active

    def test_interim_speech_postpones_silence_timeout(self, h: Harness) -> None:
        h.activate()                    # t = 1
        h.scheduler.advance(6.0)        # t = 7
        h.mic.say_partial("well I was")
        h.scheduler.advance(7.0)        # t = 14, re-armed deadline is 15
        assert h.state is S.LISTENING
        assert h.kinds("interim") == [{"text": "well I was"}]
        h.scheduler.advance(1.5)
        assert h.state is S.SPEAKING

    def test_end_conversation_from_listening(self, h: Harness) -> None:
        h.activate()
        h.controller.end_conversation()
        assert h.speaker.spoken[-1].purpose is SpeechPurpose.FAREWELL
        assert not h.mic.active
        h.speaker.complete()
        assert h.state is S.AWAITING_ACTIVATION

    def test_end_conversation_while_speaking_waits_for_reply(self, h: Harness) -> None:
        h.activate()
        h.mic.say("question")
        h.controller.end_conversation()
        assert h.speaker.spoken[-1].purpose is SpeechPurpose.REPLY

        h.speaker.complete()
        assert h.speaker.spoken[-1].purpose is SpeechPurpose.FAREWELL
        assert h.state is S.SPEAKING

    def test_end_conversation_discards_pending_reply(self, scheduler: ManualScheduler) -> None:
        deferred = DeferredDispatcher()
        h = build(scheduler, dispatcher=deferred)
        h.activate()
        h.mic.say("question")
        h.controller.end_conversation()

        deferred.run_all()
        assert "That sounds lovely." not in h.speaker.spoken_texts
        assert h.speaker.spoken[-1].purpose is SpeechPurpose.FAREWELL

    def test_end_conversation_while_awaiting_is_ignored(self, h: Harness) -> None:
        h.controller.start()
        h.controller.end_conversation()
        assert h.state is S.AWAITING_ACTIVATION
        assert h.speaker.spoken == []


# ──────────────────────────────────────────────────────────────
# Stop
# ──────────────────────────────────────────────────────────────

def _reach(h: Harness, deferred: DeferredDispatcher, target: str) -> None:
    if target == "idle":
        return
    h.controller.start()
    if target == "awaiting":
        return
    h.mic.say("hey google")
    if target == "greeting":
        return
    h.speaker.complete()
    if target == "settling":
        return
    h.scheduler.advance(1.0)
    if target == "listening":
        return
    h.mic.say("a question")
    if target == "processing":
        return
    deferred.run_all()
    if target == "reply":
        return
    h.speaker.complete()
    h.scheduler.advance(1.0)
    h.controller.end_conversation()
    assert target == "farewell"


_TARGETS = ["idle", "awaiting", "greeting", "settling", "listening", "processing", "reply", "farewell"]


class TestStop:

    @pytest.mark.parametrize("target", _TARGETS)
    def test_stop_from_any_state(self, scheduler: ManualScheduler, target: str) -> None:
        deferred = DeferredDispatcher()
        h = build(scheduler, dispatcher=deferred)
        _reach(h, deferred, target)

        h.controller.stop()
        assert h.state is S.IDLE
        assert not h.mic.active
        assert not h.speaker.active
        assert h.controller.pending_timers == []
        assert h.controller.manually_stopped
        assert h.controller.restart_authority is RestartAuthority.NONE

        spoken_before = len(h.speaker.spoken)
        starts_before = h.mic.start_count
        deferred.run_all()
        scheduler.advance(600.0)
        assert h.state is S.IDLE
        assert len(h.speaker.spoken) == spoken_before
        assert h.mic.start_count == starts_before

    @pytest.mark.parametrize("target", _TARGETS)
    def test_stop_is_idempotent(self, scheduler: ManualScheduler, target: str) -> None:
        deferred = DeferredDispatcher()
        h = build(scheduler, dispatcher=deferred)
        _reach(h, deferred, target)

        h.controller.stop()
        first = (h.controller.snapshot(), len(h.controller.history), h.controller.pending_timers)
        h.controller.stop()
        second = (h.controller.snapshot(), len(h.controller.history), h.controller.pending_timers)
        assert first == second

    def test_start_after_stop_resumes(self, h: Harness) -> None:
        h.activate()
        h.controller.stop()
        h.controller.start()
        assert h.state is S.AWAITING_ACTIVATION
        assert h.mic.active
        assert not h.controller.manually_stopped

    def test_auto_start_after_stop_is_ignored(self, h: Harness) -> None:
        h.controller.stop()
        h.controller.auto_start()
        assert h.state is S.IDLE
        assert not h.mic.active
        assert h.controller.manually_stopped

    def test_auto_start_from_fresh_idle(self, h: Harness) -> None:
        h.controller.auto_start()
        assert h.state is S.AWAITING_ACTIVATION
        assert h.mic.active


# ──────────────────────────────────────────────────────────────
# Channel failures and restarts
# ──────────────────────────────────────────────────────────────

class _FailingOutput(SpeechOutputChannel):
    def _synthesize(self, utterance: Utterance, token: int) -> None:
        raise RuntimeError("no audio device")


class TestChannelFailures:

    def test_permission_denied_is_terminal_with_notice(self, h: Harness) -> None:
        h.controller.start()
        h.mic.fail(ChannelErrorKind.PERMISSION_DENIED)

        assert h.state is S.IDLE
        assert h.controller.manually_stopped
        assert h.kinds("notice") == [{"level": "error", "message": PERMISSION_NOTICE}]
        h.scheduler.advance(60.0)
        assert h.mic.start_count == 1

    def test_no_speech_restarts_passively(self, h: Harness) -> None:
        h.controller.start()
        h.mic.fail(ChannelErrorKind.NO_SPEECH)
        assert not h.mic.active
        assert h.kinds("notice") == []

        h.scheduler.advance(2.0)
        assert h.mic.active
        assert h.mic.start_count == 2

    def test_network_error_restarts_passively(self, h: Harness) -> None:
        h.activate()
        h.mic.fail(ChannelErrorKind.NETWORK)
        h.scheduler.advance(2.0)
        assert h.mic.active
        assert h.state is S.LISTENING

    def test_programmatic_stop_never_restarts(self, h: Harness) -> None:
        h.activate()
        h.mic.say("question")           # stops the microphone, which reports "ended"
        h.scheduler.advance(5.0)        # reply still playing
        assert not h.mic.active
        assert h.mic.start_count == 2

    def test_synthesis_error_still_completes(self, h: Harness) -> None:
        h.controller.start()
        h.mic.say("hey google")
        h.speaker.fail("device busy")
        assert h.state is S.LISTENING
        h.scheduler.advance(1.0)
        assert h.mic.active

    def test_speak_raising_synchronously_counts_as_done(self, scheduler: ManualScheduler) -> None:
        h = build(scheduler, speaker=_FailingOutput())
        h.controller.start()
        h.mic.say("hey google")
        assert h.state is S.LISTENING
        assert not h.speaker.active


# ──────────────────────────────────────────────────────────────
# Emergencies
# ──────────────────────────────────────────────────────────────

class TestEmergency:

    def _responder(self) -> ResponseGenerator:
        return ResponseGenerator(IntentClassifier(), client=None)

    def test_chest_pain_notifies_exactly_once(self, scheduler: ManualScheduler) -> None:
        generator = self._responder()
        h = build(scheduler)
        h.controller._responder = generator.respond
        h.activate()
        h.mic.say("I have chest pain")

        assert h.notifier.emergencies == [
            ("I have chest pain", EMERGENCY_REPLIES[Language.EN]),
        ]
        assert h.speaker.spoken_texts[-1] == EMERGENCY_REPLIES[Language.EN]
        assert h.kinds("reply")[0]["intent"] == IntentCategory.EMERGENCY.value

        h.speaker.complete()
        h.scheduler.advance(30.0)
        assert len(h.notifier.emergencies) == 1

    def test_emergency_notified_even_after_stop(self, scheduler: ManualScheduler) -> None:
        deferred = DeferredDispatcher()
        h = build(scheduler, dispatcher=deferred)
        h.controller._responder = self._responder().respond
        h.activate()
        h.mic.say("help me please")
        h.controller.stop()
        deferred.run_all()

        assert len(h.notifier.emergencies) == 1
        assert h.state is S.IDLE
        assert EMERGENCY_REPLIES[Language.EN] not in h.speaker.spoken_texts


# ──────────────────────────────────────────────────────────────
# Announcements and the command hook
# ──────────────────────────────────────────────────────────────

class TestAnnouncements:

    def test_announcement_while_awaiting_resumes_awaiting(self, h: Harness) -> None:
        h.controller.start()
        h.controller.announce(Utterance("Time to take your Aspirin."))
        assert h.state is S.SPEAKING
        assert h.speaker.spoken[-1].purpose is SpeechPurpose.ANNOUNCEMENT
        assert not h.mic.active

        h.speaker.complete()
        assert h.state is S.AWAITING_ACTIVATION
        h.scheduler.advance(1.0)
        assert h.mic.active

    def test_announcement_during_conversation_resumes_listening(self, h: Harness) -> None:
        h.activate()
        h.controller.announce(Utterance("Reminder"))
        h.speaker.complete()
        assert h.state is S.LISTENING
        assert h.controller.conversation_active

    def test_announcement_waits_while_processing(self, scheduler: ManualScheduler) -> None:
        deferred = DeferredDispatcher()
        h = build(scheduler, dispatcher=deferred)
        results: list[bool] = []
        h.activate()
        h.mic.say("question")
        h.controller.announce(Utterance("Reminder"), results.append)
        assert h.state is S.PROCESSING
        assert results == []

        deferred.run_all()
        assert h.speaker.spoken[-1].purpose is SpeechPurpose.REPLY
        h.speaker.complete()
        h.scheduler.advance(1.0)
        assert h.speaker.spoken_texts[-1] == "Reminder"
        assert not h.mic.active
        assert results == [True]

        h.speaker.complete()
        assert h.state is S.LISTENING
        h.scheduler.advance(1.0)
        assert h.mic.active

    def test_announcement_rejected_after_stop(self, h: Harness) -> None:
        results: list[bool] = []
        h.controller.start()
        h.controller.stop()
        h.controller.announce(Utterance("Reminder"), results.append)
        assert h.state is S.IDLE
        assert h.speaker.spoken == []
        assert results == [False]
        assert h.kinds("announcement_rejected") == [{"text": "Reminder"}]

    def test_waiting_announcement_dropped_on_stop(self, h: Harness) -> None:
        results: list[bool] = []
        h.controller.start()
        h.mic.say("hey google")
        h.controller.announce(Utterance("Reminder"), results.append)
        h.controller.stop()
        assert results == [False]
        h.scheduler.advance(60.0)
        assert "Reminder" not in h.speaker.spoken_texts

    def test_command_hook_answers_non_activating_speech(self, scheduler: ManualScheduler) -> None:
        heard: list[str] = []

        def handler(text: str) -> Optional[Utterance]:
            heard.append(text)
            return Utterance("Well done!") if "took" in text else None

        h = build(scheduler, command_handler=handler)
        h.controller.start()
        h.mic.say("what time is it")
        assert h.state is S.AWAITING_ACTIVATION

        h.mic.say("I took it")
        assert heard == ["what time is it", "I took it"]
        assert h.speaker.spoken_texts == ["Well done!"]
        h.speaker.complete()
        assert h.state is S.AWAITING_ACTIVATION
        assert not h.controller.conversation_active

    @pytest.mark.parametrize("answer", ["ok", "no"])
    def test_short_answers_reach_command_hook(self, scheduler: ManualScheduler, answer: str) -> None:
        heard: list[str] = []

        def handler(text: str) -> Optional[Utterance]:
            heard.append(text)
            return Utterance("Noted.")

        h = build(scheduler, command_handler=handler)
        h.controller.start()
        h.mic.say(answer)
        assert heard == [answer]
        assert h.speaker.spoken_texts == ["Noted."]

    def test_answer_after_announcement_mid_conversation(self, scheduler: ManualScheduler) -> None:
        heard: list[str] = []

        def handler(text: str) -> Optional[Utterance]:
            heard.append(text)
            return Utterance("Well done!") if "took" in text else None

        h = build(scheduler, command_handler=handler)
        h.activate()
        h.controller.announce(Utterance("Time to take your Aspirin."))
        h.speaker.complete()
        h.scheduler.advance(1.0)

        h.mic.say("I took it")
        assert heard == ["I took it"]
        assert h.responder.calls == []
        assert h.speaker.spoken_texts[-1] == "Well done!"
        h.speaker.complete()
        assert h.state is S.LISTENING
        assert h.controller.conversation_active

        h.scheduler.advance(1.0)
        h.mic.say("tell me a joke")
        assert h.responder.calls == ["tell me a joke"]

    def test_other_speech_after_announcement_is_a_turn(self, scheduler: ManualScheduler) -> None:
        h = build(scheduler, command_handler=lambda text: None)
        h.activate()
        h.controller.announce(Utterance("Reminder"))
        h.speaker.complete()
        h.scheduler.advance(1.0)
        h.mic.say("how is the weather")
        assert h.responder.calls == ["how is the weather"]
        assert h.speaker.spoken[-1].purpose is SpeechPurpose.REPLY

    def test_conversation_speech_skips_command_hook(self, scheduler: ManualScheduler) -> None:
        handler = MagicMock(return_value=Utterance("Well done!"))
        h = build(scheduler, command_handler=handler)
        h.activate()
        h.mic.say("I took it")
        handler.assert_not_called()
        assert h.responder.calls == ["I took it"]


# ──────────────────────────────────────────────────────────────
# Exclusivity under random interleavings
# ──────────────────────────────────────────────────────────────

_PHRASES = ["hey google", "hello", "hi", "", "how are you", "I have chest pain", "ok"]


def _random_step(rng: random.Random, h: Harness, dispatcher) -> None:
    op = rng.randrange(13)
    if op == 0:
        h.mic.say(rng.choice(_PHRASES))
    elif op == 1:
        h.mic.say_partial("um")
    elif op == 2:
        h.controller.post(Event.FINAL_TRANSCRIPT, Transcript(rng.choice(_PHRASES)))
    elif op == 3:
        h.speaker.complete()
    elif op == 4:
        h.speaker.fail()
    elif op == 5:
        h.scheduler.advance(rng.choice([0.1, 0.5, 1.0, 2.0, 8.0]))
    elif op == 6:
        h.mic.end()
    elif op == 7:
        h.mic.fail(rng.choice([ChannelErrorKind.NO_SPEECH, ChannelErrorKind.NETWORK,
                               ChannelErrorKind.ABORTED]))
    elif op == 8:
        h.controller.end_conversation()
    elif op == 9:
        h.controller.start()
    elif op == 10:
        if rng.random() < 0.2:
            h.controller.stop()
    elif op == 11:
        if isinstance(dispatcher, DeferredDispatcher) and dispatcher.jobs:
            dispatcher.run_next()
    else:
        h.controller.announce(Utterance("Reminder"))


@pytest.mark.parametrize("seed", range(25))
@pytest.mark.parametrize("deferred_work", [False, True])
def test_channels_never_overlap(
    monkeypatch: pytest.MonkeyPatch, seed: int, deferred_work: bool
) -> None:
    log = MagicMock()
    monkeypatch.setattr(controller_module, "_log", log)
    rng = random.Random(seed)
    scheduler = ManualScheduler()
    dispatcher = DeferredDispatcher() if deferred_work else InlineDispatcher()
    h = build(scheduler, dispatcher=dispatcher)
    h.controller.start()

    for _ in range(300):
        _random_step(rng, h, dispatcher)
        assert not (h.mic.active and h.speaker.active)
        if h.speaker.active:
            assert h.state is S.SPEAKING
        if h.mic.active:
            assert h.state in (S.AWAITING_ACTIVATION, S.LISTENING)

    assert h.overlaps == []
    failures = [c for c in log.error.call_args_list if c.args[1] == "handler_failed"]
    assert failures == []
