"""
carecompanion/speech/simulated.py — In-process speech channels.

Used by the console simulator and the test suite. The input side is driven
by calling :meth:`SimulatedInputChannel.say` (and friends); the output side
records everything it is asked to speak and completes either immediately or
when :meth:`SimulatedOutputChannel.complete` is called.
"""

from __future__ import annotations

from typing import Callable, Optional

from carecompanion.speech.channels import (
    ChannelErrorKind,
    SpeechInputChannel,
    SpeechOutputChannel,
    SynthesisError,
    Utterance,
)


class SimulatedInputChannel(SpeechInputChannel):
    """
    Speech recogniser fed by the caller.

    Args:
        ended_on_stop: If True, :meth:`stop` reports ``on_ended`` like a real
            recogniser does after a programmatic stop.
        on_change: Optional hook called after every change of ``active``.
    """

    def __init__(
        self,
        ended_on_stop: bool = True,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        super().__init__(on_change=on_change)
        self._ended_on_stop = ended_on_stop
        self.start_count = 0
        self.stop_count = 0

    def _open(self) -> None:
        self.start_count += 1

    def _close(self) -> None:
        self.stop_count += 1
        if self._ended_on_stop:
            self._emit_ended()

    # ── driving the simulation ───────────────────────────────

    def say(self, text: str) -> bool:
        """
        Deliver a final transcript if the channel is listening.

        Returns:
            True if the transcript was delivered, False if the microphone was off.
        """
        if not self.active:
            return False
        self._emit_final(text)
        return True

    def say_partial(self, text: str) -> bool:
        """Deliver an interim transcript if the channel is listening."""
        if not self.active:
            return False
        self._emit_interim(text)
        return True

    def fail(self, kind: ChannelErrorKind, end: bool = True) -> None:
        """Report a recogniser error, optionally followed by the session end."""
        self._emit_error(kind)
        if end:
            self._emit_ended()

    def end(self) -> None:
        """Report that the recogniser stopped on its own."""
        self._emit_ended()


class SimulatedOutputChannel(SpeechOutputChannel):
    """
    Speech synthesiser that records utterances instead of playing them.

    Args:
        auto_complete: If True, every utterance completes as soon as it starts.
        on_change: Optional hook called after every change of ``active``.
        echo: Optional callable given each spoken text (console simulator).
    """

    def __init__(
        self,
        auto_complete: bool = False,
        on_change: Optional[Callable[[], None]] = None,
        echo: Optional[Callable[[str], None]] = None,
    ) -> None:
        super().__init__(on_change=on_change)
        self._auto_complete = auto_complete
        self._echo = echo
        self.spoken: list[Utterance] = []
        self._current_token = 0

    def _synthesize(self, utterance: Utterance, token: int) -> None:
        self.spoken.append(utterance)
        self._current_token = token
        if self._echo is not None:
            self._echo(utterance.text)
        if self._auto_complete:
            self._finish(token, None)

    def complete(self) -> None:
        """Finish the current utterance successfully."""
        self._finish(self._current_token, None)

    def fail(self, message: str = "synthesis failed") -> None:
        """Finish the current utterance with a synthesis error."""
        self._finish(self._current_token, SynthesisError(message))

    @property
    def spoken_texts(self) -> list[str]:
        """Texts spoken so far, oldest first."""
        return [u.text for u in self.spoken]
