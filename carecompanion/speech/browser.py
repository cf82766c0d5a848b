"""
carecompanion/speech/browser.py — Speech channels bridged to a browser page.

The web page runs the Web Speech API (``SpeechRecognition`` and
``speechSynthesis``); this module turns its WebSocket messages into channel
events and turns channel commands into WebSocket messages.

Messages sent to the browser:
  {"type": "recognition", "action": "start" | "stop", "lang": "en-US"}
  {"type": "speak", "id": 3, "text": "...", "lang": "ml-IN"}
  {"type": "speak_cancel", "id": 3}

Messages accepted from the browser:
  {"type": "transcript", "text": "...", "final": true}
  {"type": "recognition_error", "error": "not-allowed"}
  {"type": "recognition_end"}
  {"type": "speech_end", "id": 3}
  {"type": "speech_error", "id": 3, "error": "synthesis-failed"}
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict

from carecompanion.core.constants import Language
from carecompanion.speech.channels import (
    ChannelErrorKind,
    SpeechInputChannel,
    SpeechOutputChannel,
    SynthesisError,
    Utterance,
)

logger = logging.getLogger(__name__)

#: Sends one JSON-able message to the page; returns False if nobody received it.
SendFn = Callable[[Dict[str, Any]], bool]

_BCP47: dict[Language, str] = {
    Language.EN: "en-US",
    Language.ML: "ml-IN",
}


class BrowserInputChannel(SpeechInputChannel):
    """Speech recognition running in the browser page."""

    def __init__(self, send: SendFn) -> None:
        super().__init__()
        self._send = send
        self.language: Language = Language.EN

    def _open(self) -> None:
        self._send({"type": "recognition", "action": "start",
                    "lang": _BCP47[self.language]})

    def _close(self) -> None:
        self._send({"type": "recognition", "action": "stop"})


class BrowserOutputChannel(SpeechOutputChannel):
    """Speech synthesis running in the browser page."""

    def __init__(self, send: SendFn) -> None:
        super().__init__()
        self._send = send
        self._current = 0

    def _synthesize(self, utterance: Utterance, token: int) -> None:
        self._current = token
        delivered = self._send({
            "type": "speak",
            "id": token,
            "text": utterance.text,
            "lang": _BCP47[utterance.language],
        })
        if not delivered:
            self._finish(token, SynthesisError("no browser connected"))

    def _halt(self) -> None:
        self._send({"type": "speak_cancel", "id": self._current})

    def abandon(self, reason: str) -> None:
        """Fail the utterance in flight, e.g. when the page disconnects."""
        self._finish(self._current, SynthesisError(reason))


class BrowserSpeechBridge:
    """
    Pair of browser-backed channels plus the inbound message router.

    Args:
        send: Function that pushes a message to the connected page(s).
    """

    def __init__(self, send: SendFn) -> None:
        self.input = BrowserInputChannel(send)
        self.output = BrowserOutputChannel(send)

    def set_language(self, language: Language) -> None:
        """Language used for the next recognition session."""
        self.input.language = language

    def handle_message(self, data: Dict[str, Any]) -> bool:
        """
        Route one message from the page to the matching channel event.

        Returns:
            True if the message was a speech message, False otherwise.
        """
        kind = data.get("type")
        if kind == "transcript":
            text = str(data.get("text", ""))
            if not self.input.active:
                logger.debug("Dropping transcript received while not listening: %r", text[:60])
                return True
            if data.get("final", True):
                self.input._emit_final(text)
            else:
                self.input._emit_interim(text)
        elif kind == "recognition_error":
            self.input._emit_error(ChannelErrorKind.classify(str(data.get("error", ""))))
        elif kind == "recognition_end":
            if self.input.active:
                self.input._emit_ended()
        elif kind == "speech_end":
            self.output._finish(int(data.get("id", -1)), None)
        elif kind == "speech_error":
            self.output._finish(
                int(data.get("id", -1)),
                SynthesisError(str(data.get("error", "speech error"))),
            )
        else:
            return False
        return True

    def disconnected(self) -> None:
        """The last page went away: end recognition and fail pending speech."""
        if self.input.active:
            self.input._emit_ended()
        self.output.abandon("browser disconnected")

    def reconnected(self) -> None:
        """A page (re)connected: resume recognition if a session is open."""
        if self.input.active:
            self.input._open()
