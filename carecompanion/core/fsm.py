"""
carecompanion/core/fsm.py — Validated phase machine for the conversation controller.

Thread-safe FSM with an explicit transition map, transition history (last 50),
and structured logging. The conversation controller drives it; it never
decides anything on its own; it only refuses transitions that should be
impossible.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from carecompanion.core.constants import ConversationState

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Custom exception
# ──────────────────────────────────────────────────────────────

class InvalidTransitionError(RuntimeError):
    """
    Raised when a requested phase transition is not in the valid transition map.

    Args:
        from_state: Current state at the time of the illegal attempt.
        to_state: Requested (invalid) target state.
        reason: Caller-supplied reason string.
    """

    def __init__(
        self,
        from_state: ConversationState,
        to_state: ConversationState,
        reason: str = "",
    ) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        super().__init__(
            f"Invalid transition {from_state.value} → {to_state.value}"
            + (f" (reason: {reason})" if reason else "")
        )


# ──────────────────────────────────────────────────────────────
# Valid transition map
# ──────────────────────────────────────────────────────────────

_VALID_TRANSITIONS: dict[ConversationState, list[ConversationState]] = {
    ConversationState.IDLE: [
        ConversationState.AWAITING_ACTIVATION,
    ],
    ConversationState.AWAITING_ACTIVATION: [
        ConversationState.SPEAKING,      # greeting or announcement
        ConversationState.IDLE,
    ],
    ConversationState.LISTENING: [
        ConversationState.PROCESSING,
        ConversationState.SPEAKING,      # farewell or announcement
        ConversationState.IDLE,
    ],
    ConversationState.PROCESSING: [
        ConversationState.SPEAKING,      # reply or farewell
        ConversationState.LISTENING,     # no reply produced
        ConversationState.IDLE,
    ],
    ConversationState.SPEAKING: [
        ConversationState.LISTENING,
        ConversationState.AWAITING_ACTIVATION,  # after an announcement
        ConversationState.IDLE,
    ],
}

_MAX_HISTORY = 50


# ──────────────────────────────────────────────────────────────
# FSM class
# ──────────────────────────────────────────────────────────────

class ConversationFSM:
    """
    Thread-safe phase machine for one conversation session.

    Enforces the transition map defined in :data:`_VALID_TRANSITIONS`.
    Illegal transitions raise :class:`InvalidTransitionError` immediately.
    The last 50 transitions are retained in :meth:`get_history`.

    Args:
        on_transition: Optional callback invoked after every successful
            transition with signature ``(from_state, to_state, reason)``.
    """

    def __init__(
        self,
        on_transition: Callable[[ConversationState, ConversationState, str], None] | None = None,
    ) -> None:
        self._state: ConversationState = ConversationState.IDLE
        self._lock = threading.Lock()
        self._history: list[dict] = []
        self._external_callback = on_transition
        self._last_transition: dict | None = None

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    @property
    def current_state(self) -> ConversationState:
        """Return the current phase (thread-safe read)."""
        with self._lock:
            return self._state

    def transition(self, new_state: ConversationState, reason: str = "") -> None:
        """
        Attempt a validated phase transition.

        Args:
            new_state: Target state to transition to.
            reason: Human-readable reason for the transition (for logs/history).

        Raises:
            InvalidTransitionError: If the transition is not in the valid map.
        """
        with self._lock:
            from_state = self._state
            if new_state not in _VALID_TRANSITIONS.get(from_state, []):
                raise InvalidTransitionError(from_state, new_state, reason)
            self._state = new_state
            self._record(from_state, new_state, reason)

        logger.info(
            "FSM: %s → %s%s",
            from_state.value,
            new_state.value,
            f" [{reason}]" if reason else "",
        )
        self._notify(from_state, new_state, reason)

    def reset(self, reason: str = "RESET") -> None:
        """
        Force the FSM back to IDLE unconditionally.

        Used by the external stop action, which is honoured from every phase.
        A reset while already IDLE is a no-op and is not recorded.
        """
        with self._lock:
            from_state = self._state
            if from_state is ConversationState.IDLE:
                return
            self._state = ConversationState.IDLE
            self._record(from_state, ConversationState.IDLE, reason)

        logger.warning("FSM: %s from %s → IDLE", reason, from_state.value)
        self._notify(from_state, ConversationState.IDLE, reason)

    def get_history(self) -> list[dict]:
        """
        Return a copy of the last (up to 50) transition records.

        Each record is a dict with keys ``from``, ``to``, ``reason`` and
        ``timestamp`` (Unix epoch float), oldest first.
        """
        with self._lock:
            return list(self._history)

    def can_transition(self, target: ConversationState) -> bool:
        """Return True if ``target`` is reachable from the current state."""
        return target in _VALID_TRANSITIONS.get(self._state, [])

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _record(
        self,
        from_state: ConversationState,
        to_state: ConversationState,
        reason: str,
    ) -> None:
        """Append a history record. Caller holds ``self._lock``."""
        record = {
            "from": from_state.value,
            "to": to_state.value,
            "reason": reason,
            "timestamp": time.time(),
        }
        self._history.append(record)
        if len(self._history) > _MAX_HISTORY:
            self._history.pop(0)
        self._last_transition = record

    def _notify(
        self,
        from_state: ConversationState,
        to_state: ConversationState,
        reason: str,
    ) -> None:
        if self._external_callback is None:
            return
        try:
            self._external_callback(from_state, to_state, reason)
        except Exception as exc:  # noqa: BLE001
            logger.warning("FSM external callback raised: %s", exc)

    def __repr__(self) -> str:
        with self._lock:
            state_str = self._state.value
            if self._last_transition:
                last = f"{self._last_transition['from']}→{self._last_transition['to']}"
            else:
                last = "none"
        return f"ConversationFSM(state={state_str}, last={last})"
