"""
tests/conftest.py — Shared fakes and fixtures.

ManualScheduler replaces wall-clock timers with an explicit clock, and the
inline/deferred dispatchers replace background threads, so every
conversation test is deterministic.
"""

from __future__ import annotations

import heapq
import itertools
import os
import tempfile
from typing import Callable, Optional

import pytest

# Structured logs go to a scratch directory, set before the logger module loads.
os.environ.setdefault("CARECOMPANION_LOG_DIR", tempfile.mkdtemp(prefix="care-logs-"))

from carecompanion.core.constants import Language, SpeechPurpose
from carecompanion.intent.classifier import IntentCategory, IntentResult
from carecompanion.llm.responder import Reply
from carecompanion.speech.channels import Utterance


# ──────────────────────────────────────────────────────────────
# Scheduling fakes
# ──────────────────────────────────────────────────────────────

class _ManualTimer:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose clock only moves when :meth:`advance` is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self._seq = itertools.count()
        self._heap: list[tuple[float, int, _ManualTimer]] = []

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> _ManualTimer:
        timer = _ManualTimer(self.now + max(0.0, delay_s), callback)
        heapq.heappush(self._heap, (timer.due, next(self._seq), timer))
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for _, _, t in self._heap if not t.cancelled)

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self.now + seconds
        while self._heap and self._heap[0][0] <= target:
            due, _, timer = heapq.heappop(self._heap)
            self.now = due
            if not timer.cancelled:
                timer.cancelled = True
                timer.callback()
        self.now = target


class InlineDispatcher:
    """Runs submitted work immediately on the caller's thread."""

    def __init__(self) -> None:
        self.submitted: list[str] = []

    def submit(self, fn: Callable[[], None], name: str = "work") -> None:
        self.submitted.append(name)
        fn()


class DeferredDispatcher:
    """Queues submitted work until :meth:`run_all` (or :meth:`run_next`) is called."""

    def __init__(self) -> None:
        self.jobs: list[tuple[str, Callable[[], None]]] = []

    def submit(self, fn: Callable[[], None], name: str = "work") -> None:
        self.jobs.append((name, fn))

    def run_next(self) -> None:
        _, fn = self.jobs.pop(0)
        fn()

    def run_all(self) -> None:
        while self.jobs:
            self.run_next()


# ──────────────────────────────────────────────────────────────
# Collaborator fakes
# ──────────────────────────────────────────────────────────────

class FakeNotifier:
    def __init__(self) -> None:
        self.emergencies: list[tuple[str, str]] = []

    def notify_emergency(self, transcript: str, response: str) -> None:
        self.emergencies.append((transcript, response))


def make_reply(
    text: str = "That sounds lovely.",
    category: IntentCategory = IntentCategory.GENERAL,
    language: Language = Language.EN,
    fallback: bool = False,
) -> Reply:
    return Reply(
        utterance=Utterance(text, language, SpeechPurpose.REPLY),
        intent=IntentResult(category, 0.8, language),
        fallback=fallback,
    )


class ScriptedResponder:
    """Responder returning *reply* (or raising *error*) and recording calls."""

    def __init__(self, reply: Optional[Reply] = None, error: Optional[Exception] = None) -> None:
        self.reply = reply or make_reply()
        self.error = error
        self.calls: list[str] = []

    def __call__(self, text: str) -> Reply:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return self.reply


# ──────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def inline() -> InlineDispatcher:
    return InlineDispatcher()


@pytest.fixture()
def deferred() -> DeferredDispatcher:
    return DeferredDispatcher()
