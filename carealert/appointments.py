"""
Appointment Store
=================
Appointment records and their durable reminders.

Status changes go through ``transition`` which checks the lifecycle
edge and applies it with a compare-and-set on the previous status, so
two concurrent updates cannot both win.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Optional

from carealert.database import Database
from carealert.errors import AppointmentNotFound, InvalidTransition
from carealert.models import (
    Appointment,
    AppointmentStatus,
    ConsultationMode,
    as_utc,
    can_transition,
)

logger = logging.getLogger(__name__)

REMINDER_SCHEDULED = "scheduled"
REMINDER_FIRED = "fired"
REMINDER_CANCELLED = "cancelled"


def new_appointment_id() -> str:
    return f"APT-{uuid.uuid4().hex[:10].upper()}"


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return as_utc(datetime.fromisoformat(value)) if value else None


def _appointment_from_row(row: sqlite3.Row) -> Appointment:
    return Appointment(
        id=row["id"],
        patient_id=row["patient_id"],
        provider_id=row["provider_id"],
        mode=ConsultationMode(row["mode"]),
        status=AppointmentStatus(row["status"]),
        scheduled_at=_parse_ts(row["scheduled_at"]),
        is_emergency=bool(row["is_emergency"]),
        description=row["description"] or "",
    )


class AppointmentStore:
    """Appointment lifecycle persistence."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------

    def create(
        self,
        patient_id: str,
        provider_id: str,
        mode: ConsultationMode = ConsultationMode.CLINIC,
        scheduled_at: Optional[datetime] = None,
        is_emergency: bool = False,
        description: str = "",
        status: AppointmentStatus = AppointmentStatus.PENDING,
    ) -> Appointment:
        """Book a new appointment, ``pending`` unless told otherwise.

        Emergency consultations are created already ``confirmed``.
        """
        appointment = Appointment(
            id=new_appointment_id(),
            patient_id=patient_id,
            provider_id=provider_id,
            mode=ConsultationMode(mode),
            status=AppointmentStatus(status),
            scheduled_at=as_utc(scheduled_at) if scheduled_at else None,
            is_emergency=is_emergency,
            description=description,
        )
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO appointments (
                    id, patient_id, provider_id, mode, status,
                    scheduled_at, is_emergency, description
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    appointment.id,
                    appointment.patient_id,
                    appointment.provider_id,
                    appointment.mode.value,
                    appointment.status.value,
                    appointment.scheduled_at.isoformat() if appointment.scheduled_at else None,
                    int(appointment.is_emergency),
                    appointment.description,
                ),
            )
        logger.info(
            "Appointment %s booked (%s with %s).",
            appointment.id, patient_id, provider_id,
        )
        return appointment

    def get(self, appointment_id: str) -> Optional[Appointment]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM appointments WHERE id = ?", (appointment_id,)
            ).fetchone()
        return _appointment_from_row(row) if row else None

    def require(self, appointment_id: str) -> Appointment:
        appointment = self.get(appointment_id)
        if appointment is None:
            raise AppointmentNotFound(appointment_id)
        return appointment

    def transition(
        self,
        appointment_id: str,
        new_status: AppointmentStatus,
        scheduled_at: Optional[datetime] = None,
    ) -> tuple[AppointmentStatus, Appointment]:
        """Move an appointment along one lifecycle edge.

        Args:
            appointment_id: Appointment to update.
            new_status: Target status.
            scheduled_at: New start time; only meaningful for
                ``rescheduled``.

        Returns:
            ``(old_status, updated_appointment)``.

        Raises:
            AppointmentNotFound: unknown id.
            InvalidTransition: edge not allowed, or another writer changed
                the status first.
        """
        new_status = AppointmentStatus(new_status)
        current = self.require(appointment_id)
        old_status = current.status
        if not can_transition(old_status, new_status):
            raise InvalidTransition(old_status.value, new_status.value)

        new_time = as_utc(scheduled_at) if scheduled_at else current.scheduled_at
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE appointments
                SET status = ?, scheduled_at = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status = ?
                """,
                (
                    new_status.value,
                    new_time.isoformat() if new_time else None,
                    appointment_id,
                    old_status.value,
                ),
            )
            changed = cur.rowcount
        if changed == 0:
            latest = self.require(appointment_id)
            raise InvalidTransition(latest.status.value, new_status.value)

        logger.info(
            "Appointment %s status %s → %s.",
            appointment_id, old_status.value, new_status.value,
        )
        current.status = new_status
        current.scheduled_at = new_time
        return old_status, current

    def confirmed_between(self, start: datetime, end: datetime) -> list[Appointment]:
        """Confirmed appointments with a start time in ``[start, end)``."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM appointments
                WHERE status = 'confirmed'
                  AND scheduled_at IS NOT NULL
                  AND scheduled_at >= ? AND scheduled_at < ?
                ORDER BY scheduled_at ASC
                """,
                (as_utc(start).isoformat(), as_utc(end).isoformat()),
            ).fetchall()
        return [_appointment_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def save_reminder(self, appointment_id: str, remind_at: datetime) -> None:
        """Create or re-arm the single reminder for an appointment."""
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO reminders (appointment_id, remind_at, state, updated_at)
                VALUES (?, ?, 'scheduled', CURRENT_TIMESTAMP)
                ON CONFLICT(appointment_id) DO UPDATE SET
                    remind_at = excluded.remind_at,
                    state = 'scheduled',
                    updated_at = CURRENT_TIMESTAMP
                """,
                (appointment_id, as_utc(remind_at).isoformat()),
            )

    def claim_reminder(self, appointment_id: str) -> bool:
        """scheduled → fired. False means it was cancelled or already fired."""
        return self._move_reminder(appointment_id, REMINDER_FIRED)

    def cancel_reminder(self, appointment_id: str) -> bool:
        """scheduled → cancelled. False means nothing was pending."""
        return self._move_reminder(appointment_id, REMINDER_CANCELLED)

    def release_reminder(self, appointment_id: str) -> bool:
        """fired → scheduled, for a reminder whose alert could not be stored."""
        return self._move_reminder(appointment_id, REMINDER_SCHEDULED, from_state=REMINDER_FIRED)

    def _move_reminder(
        self, appointment_id: str, state: str, from_state: str = REMINDER_SCHEDULED
    ) -> bool:
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE reminders SET state = ?, updated_at = CURRENT_TIMESTAMP
                WHERE appointment_id = ? AND state = ?
                """,
                (state, appointment_id, from_state),
            )
            return cur.rowcount > 0

    def reminder_state(self, appointment_id: str) -> Optional[str]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT state FROM reminders WHERE appointment_id = ?", (appointment_id,)
            ).fetchone()
        return row["state"] if row else None

    def scheduled_reminders(self) -> list[tuple[str, datetime]]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT appointment_id, remind_at FROM reminders WHERE state = 'scheduled'"
            ).fetchall()
        return [(r["appointment_id"], _parse_ts(r["remind_at"])) for r in rows]
