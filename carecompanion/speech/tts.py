"""
carecompanion/speech/tts.py — Offline speech output channel using pyttsx3.

Speech requests run on a dedicated background worker thread so the
conversation controller never blocks on audio. The channel always reports
completion: a failed or unavailable engine still calls ``on_done`` (with a
:class:`~carecompanion.speech.channels.SynthesisError`) so the controller can
never be stranded in SPEAKING.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Optional

import pyttsx3  # type: ignore[import]

from carecompanion.core.config import TTSConfig
from carecompanion.core.constants import Language
from carecompanion.speech.channels import SpeechOutputChannel, SynthesisError, Utterance

logger = logging.getLogger(__name__)

_STOP = object()


class Pyttsx3OutputChannel(SpeechOutputChannel):
    """
    Speech output channel wrapping a pyttsx3 engine.

    pyttsx3 engines are not thread-safe, so the engine is created and used
    only inside the worker thread.

    Args:
        config: TTS configuration (rate, volume, voice selection).
    """

    def __init__(self, config: TTSConfig) -> None:
        super().__init__()
        self._cfg = config
        self._jobs: "queue.Queue[object]" = queue.Queue()
        self._engine: Optional[pyttsx3.Engine] = None
        self._engine_ready = threading.Event()
        self._worker = threading.Thread(
            target=self._worker_loop, name="tts-worker", daemon=True
        )
        self._worker.start()

    # ── SpeechOutputChannel hooks ────────────────────────────

    def _synthesize(self, utterance: Utterance, token: int) -> None:
        self._jobs.put((utterance, token))

    def _halt(self) -> None:
        engine = self._engine
        if engine is not None:
            try:
                engine.stop()
            except Exception as exc:  # noqa: BLE001
                logger.debug("TTS stop ignored: %s", exc)

    # ── lifecycle ────────────────────────────────────────────

    def shutdown(self) -> None:
        """Stop the worker thread. Safe to call multiple times."""
        self.cancel()
        self._jobs.put(_STOP)
        self._worker.join(timeout=3.0)
        logger.info("Pyttsx3OutputChannel shut down")

    # ── worker ───────────────────────────────────────────────

    def _init_engine(self) -> None:
        try:
            self._engine = pyttsx3.init()
            self._engine.setProperty("rate", self._cfg.rate)
            self._engine.setProperty("volume", self._cfg.volume)
            if self._cfg.voice_id:
                self._engine.setProperty("voice", self._cfg.voice_id)
            logger.info(
                "TTS engine initialised (rate=%d, volume=%.1f)",
                self._cfg.rate, self._cfg.volume,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("TTS engine init failed: %s — speech will be skipped", exc)
            self._engine = None
        finally:
            self._engine_ready.set()

    def _select_voice(self, language: Language) -> None:
        """Pick an installed voice for *language* unless one is pinned in config."""
        if self._engine is None or self._cfg.voice_id:
            return
        try:
            for voice in self._engine.getProperty("voices") or []:
                langs = " ".join(str(x) for x in (getattr(voice, "languages", None) or []))
                if language.value in langs.lower() or language.value in str(voice.id).lower():
                    self._engine.setProperty("voice", voice.id)
                    return
        except Exception as exc:  # noqa: BLE001
            logger.debug("Voice selection failed: %s", exc)

    def _worker_loop(self) -> None:
        self._init_engine()
        while True:
            job = self._jobs.get()
            if job is _STOP:
                break
            utterance, token = job  # type: ignore[misc]
            if self._engine is None:
                self._finish(token, SynthesisError("TTS engine unavailable"))
                continue
            error: Optional[Exception] = None
            try:
                self._select_voice(utterance.language)
                self._engine.say(utterance.text)
                self._engine.runAndWait()
            except Exception as exc:  # noqa: BLE001
                logger.error("TTS speak error: %s", exc)
                error = SynthesisError(str(exc))
            self._finish(token, error)
