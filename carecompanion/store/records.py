"""
carecompanion/store/records.py — Care records and the repository over them.

Typed records for the tables the companion reads and writes, and
:class:`CareRepository`, the only module that knows table and column names.

Tables
------
medications           id, senior_id, name, dosage, frequency, instructions, time
senior_profiles       id, family_id, full_name, age, health_conditions, emergency_contact
emergency_contacts    id, senior_id, name, relationship, phone, email, is_primary
issue_reports         senior_id, issue_type, description, voice_transcript,
                      ai_response, confidence_level, language
family_notifications  contact_id, senior_id, notification_type, message,
                      is_emergency, is_read, sent_at

Daily intake state (taken today, reminders given today) is kept in process
and cleared by :meth:`CareRepository.reset_daily`; it is not a table.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from carecompanion.store.client import DataStoreError, Row, TableStore

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_TIME = "08:00"


class IssueType(Enum):
    """Category of an issue report."""

    HEALTH_CONCERN = "health_concern"
    MEDICATION_ISSUE = "medication_issue"
    EMERGENCY = "emergency"
    GENERAL = "general"


class NotificationType(Enum):
    """Category of a family notification."""

    EMERGENCY = "emergency"
    HEALTH_CONCERN = "health_concern"
    MEDICATION_MISSED = "medication_missed"
    GENERAL = "general"


@dataclass
class Medication:
    """
    A prescribed medication with today's intake state.

    Attributes:
        time: Daily reminder time, ``HH:MM`` 24-hour.
        taken: Whether today's dose has been confirmed.
        reminder_count: Reminders spoken today.
    """

    id: str
    senior_id: str
    name: str
    dosage: str = ""
    frequency: str = ""
    instructions: str = ""
    time: str = DEFAULT_REMINDER_TIME
    taken: bool = False
    reminder_count: int = 0


@dataclass(frozen=True)
class SeniorProfile:
    id: str
    full_name: str
    family_id: Optional[str] = None
    age: Optional[int] = None
    health_conditions: tuple[str, ...] = ()
    emergency_contact: Optional[str] = None


@dataclass(frozen=True)
class EmergencyContact:
    id: str
    senior_id: str
    name: str
    relationship: str = ""
    phone: str = ""
    email: str = ""
    is_primary: bool = False


@dataclass(frozen=True)
class IssueReport:
    """One processed conversation turn, persisted for the family dashboard."""

    senior_id: str
    issue_type: IssueType
    description: str
    voice_transcript: str
    ai_response: str
    confidence_level: float
    language: str

    def to_row(self) -> Row:
        row = asdict(self)
        row["issue_type"] = self.issue_type.value
        return row


@dataclass(frozen=True)
class FamilyNotification:
    contact_id: str
    senior_id: str
    notification_type: NotificationType
    message: str
    is_emergency: bool = False
    is_read: bool = False
    sent_at: str = field(
        default_factory=lambda: datetime.now(tz=timezone.utc).isoformat()
    )

    def to_row(self) -> Row:
        row = asdict(self)
        row["notification_type"] = self.notification_type.value
        return row


def _medication_from_row(row: Row) -> Medication:
    return Medication(
        id=str(row["id"]),
        senior_id=str(row.get("senior_id", "")),
        name=str(row.get("name", "")),
        dosage=str(row.get("dosage") or ""),
        frequency=str(row.get("frequency") or ""),
        instructions=str(row.get("instructions") or ""),
        time=str(row.get("time") or DEFAULT_REMINDER_TIME),
    )


class CareRepository:
    """
    Reads and writes care records for one senior.

    Args:
        store: Table store back-end (Supabase or in-memory).
        senior_id: The senior this companion serves.
    """

    def __init__(self, store: TableStore, senior_id: str) -> None:
        self._store = store
        self.senior_id = senior_id
        self._lock = threading.Lock()
        self._taken: set[str] = set()
        self._reminders: dict[str, int] = {}

    # ── medications ──────────────────────────────────────────

    def list_medications(self) -> list[Medication]:
        """Return the senior's medications ordered by name, with today's state."""
        rows = self._store.select("medications", {"senior_id": self.senior_id}, order="name")
        meds = [_medication_from_row(r) for r in rows]
        with self._lock:
            for med in meds:
                med.taken = med.id in self._taken
                med.reminder_count = self._reminders.get(med.id, 0)
        return meds

    def get_medication(self, medication_id: str) -> Optional[Medication]:
        for med in self.list_medications():
            if med.id == medication_id:
                return med
        return None

    def add_medication(
        self,
        name: str,
        dosage: str = "",
        frequency: str = "",
        instructions: str = "",
        time: str = DEFAULT_REMINDER_TIME,
    ) -> Medication:
        """
        Insert a medication for the senior.

        Raises:
            ValueError: If *name* is blank or *time* is not ``HH:MM``.
            DataStoreError: If the insert fails.
        """
        if not name or not name.strip():
            raise ValueError("Medication name must not be empty")
        _check_hhmm(time)
        rows = self._store.insert("medications", [{
            "senior_id": self.senior_id,
            "name": name.strip(),
            "dosage": dosage,
            "frequency": frequency,
            "instructions": instructions,
            "time": time,
        }])
        if not rows:
            raise DataStoreError("insert into medications returned no row")
        return _medication_from_row(rows[0])

    def mark_taken(self, medication_id: str, taken: bool = True) -> None:
        with self._lock:
            if taken:
                self._taken.add(medication_id)
            else:
                self._taken.discard(medication_id)

    def record_reminder(self, medication_id: str) -> int:
        """Count one more reminder for today and return the new count."""
        with self._lock:
            count = self._reminders.get(medication_id, 0) + 1
            self._reminders[medication_id] = count
            return count

    def reset_daily(self) -> None:
        """Clear taken flags and reminder counts for a new day."""
        with self._lock:
            self._taken.clear()
            self._reminders.clear()
        logger.info("Daily medication state reset for %s", self.senior_id)

    # ── people ───────────────────────────────────────────────

    def get_profile(self) -> Optional[SeniorProfile]:
        rows = self._store.select("senior_profiles", {"id": self.senior_id})
        if not rows:
            return None
        row = rows[0]
        return SeniorProfile(
            id=str(row["id"]),
            full_name=str(row.get("full_name", "")),
            family_id=row.get("family_id"),
            age=row.get("age"),
            health_conditions=tuple(row.get("health_conditions") or ()),
            emergency_contact=row.get("emergency_contact"),
        )

    def list_contacts(self, primary_only: bool = False) -> list[EmergencyContact]:
        filters: dict[str, Any] = {"senior_id": self.senior_id}
        if primary_only:
            filters["is_primary"] = True
        return [
            EmergencyContact(
                id=str(r["id"]),
                senior_id=str(r.get("senior_id", "")),
                name=str(r.get("name", "")),
                relationship=str(r.get("relationship") or ""),
                phone=str(r.get("phone") or ""),
                email=str(r.get("email") or ""),
                is_primary=bool(r.get("is_primary", False)),
            )
            for r in self._store.select("emergency_contacts", filters, order="name")
        ]

    # ── reports and notifications ────────────────────────────

    def save_issue_report(self, report: IssueReport) -> None:
        self._store.insert("issue_reports", [report.to_row()])

    def insert_notifications(self, notifications: list[FamilyNotification]) -> int:
        """Insert notification rows; returns how many were written."""
        if not notifications:
            return 0
        return len(self._store.insert("family_notifications", [n.to_row() for n in notifications]))


def _check_hhmm(value: str) -> None:
    try:
        datetime.strptime(value, "%H:%M")
    except (TypeError, ValueError):
        raise ValueError(f"Reminder time must be HH:MM, got {value!r}") from None
