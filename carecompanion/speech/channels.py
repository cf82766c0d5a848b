"""
carecompanion/speech/channels.py — Speech input/output channel contracts.

The conversation controller owns exactly one input channel (continuous speech
recognition) and one output channel (speech synthesis). Concrete channels
(simulated, pyttsx3, browser bridge) subclass the two base classes here and
implement only the device-specific hooks; activity bookkeeping and the
single-terminal-callback guarantee live in the base classes.

Input channel contract
----------------------
``start()``  raises :class:`AlreadyActiveError` if running
``stop()``   idempotent
events       ``on_final(text)``, ``on_interim(text)``, ``on_error(kind)``, ``on_ended()``

Output channel contract
-----------------------
``speak(utterance, on_done)``  exactly one ``on_done(error_or_None)`` per call;
                               raises :class:`AlreadyActiveError` if busy
``cancel()``                   stops playback; the pending ``on_done`` still fires
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from carecompanion.core.constants import Language, SpeechPurpose

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Value types
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Transcript:
    """
    A single speech-recognition result.

    Attributes:
        text: Recognised text, as delivered by the recogniser.
        is_final: True for a completed result, False for an interim one.
        observed_at: Unix timestamp when the result was received.
    """

    text: str
    is_final: bool = True
    observed_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Utterance:
    """
    Text to be spoken, with its language and the reason it is spoken.

    Attributes:
        text: The sentence(s) to synthesise.
        language: Spoken language; selects the synthesis voice.
        purpose: Why the controller is speaking it.
    """

    text: str
    language: Language = Language.EN
    purpose: SpeechPurpose = SpeechPurpose.REPLY


class ChannelErrorKind(Enum):
    """Speech recognition error classes and how the controller treats them."""

    PERMISSION_DENIED = "permission_denied"
    NO_SPEECH = "no_speech"
    ABORTED = "aborted"
    NETWORK = "network"
    OTHER = "other"

    @classmethod
    def classify(cls, code: str) -> "ChannelErrorKind":
        """
        Map a recogniser error code (Web Speech API names) onto a kind.

        Args:
            code: Error string such as ``'not-allowed'`` or ``'no-speech'``.

        Returns:
            The matching :class:`ChannelErrorKind`; unknown codes map to OTHER.
        """
        return _ERROR_CODES.get((code or "").strip().lower(), cls.OTHER)

    @property
    def is_terminal(self) -> bool:
        """True if the error ends the session until the user intervenes."""
        return self is ChannelErrorKind.PERMISSION_DENIED

    @property
    def is_silent(self) -> bool:
        """True if the error is expected noise and not worth a warning."""
        return self in (ChannelErrorKind.NO_SPEECH, ChannelErrorKind.ABORTED)


_ERROR_CODES: dict[str, ChannelErrorKind] = {
    "not-allowed": ChannelErrorKind.PERMISSION_DENIED,
    "service-not-allowed": ChannelErrorKind.PERMISSION_DENIED,
    "permission_denied": ChannelErrorKind.PERMISSION_DENIED,
    "no-speech": ChannelErrorKind.NO_SPEECH,
    "no_speech": ChannelErrorKind.NO_SPEECH,
    "aborted": ChannelErrorKind.ABORTED,
    "network": ChannelErrorKind.NETWORK,
    "audio-capture": ChannelErrorKind.OTHER,
}


# ──────────────────────────────────────────────────────────────
# Exceptions
# ──────────────────────────────────────────────────────────────

class AlreadyActiveError(RuntimeError):
    """Raised when a channel is started (or asked to speak) while already active."""


class SynthesisError(RuntimeError):
    """Speech synthesis failed. Delivered through ``on_done``, never raised."""


# ──────────────────────────────────────────────────────────────
# Input channel
# ──────────────────────────────────────────────────────────────

@dataclass
class InputListener:
    """Callbacks an input channel delivers recognition events to."""

    on_final: Callable[[str], None] = lambda text: None
    on_interim: Callable[[str], None] = lambda text: None
    on_error: Callable[[ChannelErrorKind], None] = lambda kind: None
    on_ended: Callable[[], None] = lambda: None


class SpeechInputChannel(ABC):
    """
    Base class for continuous speech recognition sessions.

    Subclasses implement :meth:`_open` and :meth:`_close` and call the
    ``_emit_*`` helpers when the device reports something. Listener callbacks
    are always invoked outside the internal lock.

    Args:
        on_change: Optional hook called after every change of :attr:`active`.
    """

    def __init__(self, on_change: Optional[Callable[[], None]] = None) -> None:
        self._lock = threading.Lock()
        self._active = False
        self._listener = InputListener()
        self._on_change = on_change

    def set_listener(self, listener: InputListener) -> None:
        """Route recognition events to *listener*."""
        self._listener = listener

    @property
    def active(self) -> bool:
        """True while a recognition session is running."""
        with self._lock:
            return self._active

    def start(self) -> None:
        """
        Begin a recognition session.

        Raises:
            AlreadyActiveError: If a session is already running.
        """
        with self._lock:
            if self._active:
                raise AlreadyActiveError(f"{type(self).__name__} is already listening")
            self._active = True
        self._changed()
        try:
            self._open()
        except Exception:
            with self._lock:
                self._active = False
            self._changed()
            raise

    def stop(self) -> None:
        """End the recognition session. Stopping an inactive channel is a no-op."""
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._changed()
        self._close()

    # ── hooks for subclasses ─────────────────────────────────

    @abstractmethod
    def _open(self) -> None:
        """Start the underlying recogniser."""

    @abstractmethod
    def _close(self) -> None:
        """Stop the underlying recogniser."""

    def _emit_final(self, text: str) -> None:
        self._listener.on_final(text)

    def _emit_interim(self, text: str) -> None:
        self._listener.on_interim(text)

    def _emit_error(self, kind: ChannelErrorKind) -> None:
        self._listener.on_error(kind)

    def _emit_ended(self) -> None:
        """Report that the session ended, marking the channel inactive first."""
        with self._lock:
            was_active = self._active
            self._active = False
        if was_active:
            self._changed()
        self._listener.on_ended()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()


# ──────────────────────────────────────────────────────────────
# Output channel
# ──────────────────────────────────────────────────────────────

DoneCallback = Callable[[Optional[Exception]], None]


class SpeechOutputChannel(ABC):
    """
    Base class for speech synthesis back-ends.

    Every :meth:`speak` call receives a token; :meth:`_finish` fires the
    caller's ``on_done`` at most once per token, so late or duplicate engine
    events can never produce a second completion.

    Args:
        on_change: Optional hook called after every change of :attr:`active`.
    """

    def __init__(self, on_change: Optional[Callable[[], None]] = None) -> None:
        self._lock = threading.Lock()
        self._active = False
        self._token = 0
        self._pending: Optional[DoneCallback] = None
        self._on_change = on_change

    @property
    def active(self) -> bool:
        """True while an utterance is being synthesised or played."""
        with self._lock:
            return self._active

    def speak(self, utterance: Utterance, on_done: DoneCallback) -> None:
        """
        Synthesise *utterance* and call ``on_done(error)`` exactly once.

        Raises:
            AlreadyActiveError: If the channel is still speaking.
        """
        with self._lock:
            if self._active:
                raise AlreadyActiveError(f"{type(self).__name__} is already speaking")
            self._active = True
            self._token += 1
            token = self._token
            self._pending = on_done
        self._changed()
        try:
            self._synthesize(utterance, token)
        except Exception as exc:  # noqa: BLE001
            logger.error("Speech synthesis could not start: %s", exc)
            self._finish(token, SynthesisError(str(exc)))

    def cancel(self) -> None:
        """Interrupt the current utterance; its ``on_done`` fires with no error."""
        with self._lock:
            if not self._active:
                return
            token = self._token
        self._halt()
        self._finish(token, None)

    # ── hooks for subclasses ─────────────────────────────────

    @abstractmethod
    def _synthesize(self, utterance: Utterance, token: int) -> None:
        """Begin speaking; call :meth:`_finish` with *token* when done."""

    def _halt(self) -> None:
        """Stop playback immediately. Default: nothing to stop."""

    def _finish(self, token: int, error: Optional[Exception]) -> None:
        """Deliver the terminal callback for *token* if it is still pending."""
        with self._lock:
            if token != self._token or self._pending is None:
                return
            callback = self._pending
            self._pending = None
            self._active = False
        self._changed()
        callback(error)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()
