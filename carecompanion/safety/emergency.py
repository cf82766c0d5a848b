"""
carecompanion/safety/emergency.py — Family alert fan-out.

Delivers a message to each registered emergency contact by inserting one
``family_notifications`` row per contact. Used for:

- emergencies detected in conversation (all contacts, no model involved),
- quick alerts and custom alerts sent from the UI (primary contacts by default),
- missed-medication escalation from the reminder loop.

Delivery is fire-and-forget: :class:`FamilyNotifier` records an
:class:`AlertEvent` immediately, hands the fan-out to a dispatcher, and
returns. Every alert stays in the in-session audit log until the process
exits; resolving an alert marks it, it never deletes it.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from carecompanion.core.config import AlertsConfig
from carecompanion.core.constants import C
from carecompanion.core.logger import get_logger
from carecompanion.core.scheduling import Dispatcher
from carecompanion.store.records import (
    CareRepository,
    EmergencyContact,
    FamilyNotification,
    Medication,
    NotificationType,
)

_log = get_logger()

QUICK_ALERTS: dict[str, str] = {
    "feeling_unwell": "I'm not feeling well and may need assistance. Please check on me.",
    "medication_help": "I need help with my medications. Please contact me.",
    "emergency": "This is an emergency. Please come immediately or call 911.",
    "check_in": "Please give me a call when you have a moment.",
}
"""Pre-written alert messages offered as one-tap buttons."""


@dataclass
class AlertEvent:
    """
    Audit record of one alert.

    Attributes:
        id: Short unique identifier used by the UI to resolve the alert.
        message: Message text (before per-contact personalisation).
        notification_type: Category written to every notification row.
        is_emergency: True for emergencies; the family app highlights these.
        source: What raised the alert (``'conversation'``, ``'quick:check_in'``,
            ``'custom'``, ``'medication'``).
        timestamp: Unix timestamp of the request.
        delivered: Number of contacts notified once fan-out finished.
        error: Delivery failure description, if any.
        resolved: Set by :meth:`FamilyNotifier.resolve`.
    """

    message: str
    notification_type: NotificationType
    is_emergency: bool
    source: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    timestamp: float = field(default_factory=time.time)
    delivered: int = 0
    error: Optional[str] = None
    resolved: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "message": self.message,
            "notification_type": self.notification_type.value,
            "is_emergency": self.is_emergency,
            "source": self.source,
            "timestamp": self.timestamp,
            "delivered": self.delivered,
            "error": self.error,
            "resolved": self.resolved,
        }


MessageFor = Callable[[EmergencyContact], str]


class FamilyNotifier:
    """
    Fans alerts out to the senior's emergency contacts.

    Args:
        repository: Care record access (contacts, notification inserts).
        dispatcher: Runs deliveries in the background.
        config: Which contacts each kind of alert goes to.
        on_alert: Optional hook called with each new :class:`AlertEvent`
            and again when its delivery finishes.
    """

    def __init__(
        self,
        repository: CareRepository,
        dispatcher: Dispatcher,
        config: Optional[AlertsConfig] = None,
        on_alert: Optional[Callable[[AlertEvent], None]] = None,
    ) -> None:
        self._repo = repository
        self._dispatcher = dispatcher
        self._cfg = config or AlertsConfig()
        self._on_alert = on_alert
        self._lock = threading.Lock()
        self._session_log: list[AlertEvent] = []

    # ──────────────────────────────────────────
    # Alert sources
    # ──────────────────────────────────────────

    def notify_emergency(self, transcript: str, response: str) -> AlertEvent:
        """
        Alert contacts about an emergency heard in conversation.

        Args:
            transcript: What the senior said.
            response: What the companion answered.
        """
        event = AlertEvent(
            message=f'Emergency detected: "{transcript}"',
            notification_type=NotificationType.EMERGENCY,
            is_emergency=True,
            source="conversation",
        )

        def message_for(contact: EmergencyContact) -> str:
            return (
                f'{contact.name}, urgent alert from your senior: "{transcript}". '
                f'AI response: "{response}"'
            )

        return self._submit(event, message_for, primary_only=self._cfg.emergency_primary_only)

    def send_quick_alert(self, key: str) -> AlertEvent:
        """
        Send one of the :data:`QUICK_ALERTS`.

        Raises:
            ValueError: If *key* is not a known quick alert.
        """
        if key not in QUICK_ALERTS:
            raise ValueError(f"Unknown quick alert: {key!r}")
        is_emergency = key == "emergency"
        event = AlertEvent(
            message=C.ALERT_PREFIX + QUICK_ALERTS[key],
            notification_type=(
                NotificationType.EMERGENCY if is_emergency else NotificationType.HEALTH_CONCERN
            ),
            is_emergency=is_emergency,
            source=f"quick:{key}",
        )
        return self._submit(event, None, primary_only=self._cfg.primary_contacts_only)

    def send_custom_alert(self, message: str, is_emergency: bool = False) -> AlertEvent:
        """
        Send a free-text alert typed by the senior.

        Raises:
            ValueError: If *message* is blank.
        """
        if not message or not message.strip():
            raise ValueError("Alert message must not be empty")
        event = AlertEvent(
            message=C.ALERT_PREFIX + message.strip(),
            notification_type=(
                NotificationType.EMERGENCY if is_emergency else NotificationType.GENERAL
            ),
            is_emergency=is_emergency,
            source="custom",
        )
        return self._submit(event, None, primary_only=self._cfg.primary_contacts_only)

    def notify_medication_missed(self, medication: Medication) -> AlertEvent:
        """Tell contacts a reminded medication was declined."""
        event = AlertEvent(
            message=(
                f"{medication.name} was not taken after "
                f"{medication.reminder_count} reminders."
            ),
            notification_type=NotificationType.MEDICATION_MISSED,
            is_emergency=False,
            source="medication",
        )
        return self._submit(event, None, primary_only=self._cfg.primary_contacts_only)

    # ──────────────────────────────────────────
    # Audit log
    # ──────────────────────────────────────────

    @property
    def session_log(self) -> list[AlertEvent]:
        """Return copies of all alerts raised in this session, oldest first."""
        with self._lock:
            return [replace(e) for e in self._session_log]

    def resolve(self, alert_id: str) -> bool:
        """
        Mark an alert as resolved.

        Returns:
            True if the alert exists, False otherwise.
        """
        with self._lock:
            for event in self._session_log:
                if event.id == alert_id:
                    event.resolved = True
                    break
            else:
                return False
        _log.info("alerts", "resolved", {"id": alert_id})
        self._emit(event)
        return True

    # ──────────────────────────────────────────
    # Delivery
    # ──────────────────────────────────────────

    def _submit(
        self,
        event: AlertEvent,
        message_for: Optional[MessageFor],
        primary_only: bool,
    ) -> AlertEvent:
        with self._lock:
            self._session_log.append(event)
        if event.is_emergency:
            _log.critical("alerts", "raised", event.to_dict())
        else:
            _log.info("alerts", "raised", event.to_dict())
        self._emit(event)
        self._dispatcher.submit(
            lambda: self._deliver(event, message_for, primary_only),
            name=f"alert-{event.id}",
        )
        return event

    def _deliver(
        self,
        event: AlertEvent,
        message_for: Optional[MessageFor],
        primary_only: bool,
    ) -> None:
        t0 = time.perf_counter()
        try:
            contacts = self._repo.list_contacts(primary_only=primary_only)
            rows = [
                FamilyNotification(
                    contact_id=contact.id,
                    senior_id=self._repo.senior_id,
                    notification_type=event.notification_type,
                    message=message_for(contact) if message_for else event.message,
                    is_emergency=event.is_emergency,
                )
                for contact in contacts
            ]
            delivered = self._repo.insert_notifications(rows)
        except Exception as exc:  # noqa: BLE001
            with self._lock:
                event.error = str(exc)
            _log.error("alerts", "delivery_failed", {"id": event.id, "error": str(exc)})
        else:
            with self._lock:
                event.delivered = delivered
            if delivered == 0:
                _log.warn("alerts", "no_contacts", {"id": event.id, "primary_only": primary_only})
            _log.perf(
                "alerts", "delivered",
                (time.perf_counter() - t0) * 1000.0,
                {"id": event.id, "contacts": delivered},
            )
        self._emit(event)

    def _emit(self, event: AlertEvent) -> None:
        if self._on_alert is None:
            return
        try:
            self._on_alert(event)
        except Exception as exc:  # noqa: BLE001
            _log.warn("alerts", "listener_failed", {"error": str(exc)})
