"""
Appointment Notifier
====================
Emits notifications tied to the appointment lifecycle:

  - one ``status_change`` alert to patient and provider on every
    status transition
  - one ``appointment_reminder`` alert per appointment at a scheduled
    time, cancellable until it fires

Reminders are stored durably and armed on a JobScheduler. Firing and
cancelling both claim the stored reminder with a compare-and-set, so
exactly one of them wins: a reminder that has fired stays fired, and a
cancelled one never fires.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Optional

from dotenv import load_dotenv

from carealert.alert_dispatcher import AlertDispatcher
from carealert.appointments import AppointmentStore
from carealert.errors import StorageError
from carealert.models import Alert, AlertKind, AppointmentStatus, as_utc, utcnow
from carealert.scheduler import JobScheduler

load_dotenv()
logger = logging.getLogger(__name__)

SYSTEM_ORIGIN = "system"

# Statuses after which a pending reminder is meaningless
_REMINDER_KILLERS = frozenset({
    AppointmentStatus.CANCELLED,
    AppointmentStatus.REJECTED,
    AppointmentStatus.NO_SHOW,
    AppointmentStatus.COMPLETED,
    AppointmentStatus.RESCHEDULED,
})


def _job_key(appointment_id: str) -> str:
    return f"reminder:{appointment_id}"


class AppointmentNotifier:
    """Status-change notifications and appointment reminders.

    Attributes:
        reminder_lead: How long before the appointment the automatic
            reminder fires (``REMINDER_LEAD_HOURS``, default 24).
        retry_delay: Seconds before a reminder whose alert could not be
            stored is tried again (``REMINDER_RETRY_SECONDS``, default 60).
    """

    def __init__(
        self,
        dispatcher: AlertDispatcher,
        appointments: AppointmentStore,
        scheduler: JobScheduler,
        reminder_lead: Optional[timedelta] = None,
        retry_delay: Optional[float] = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.appointments = appointments
        self.scheduler = scheduler
        self.reminder_lead = reminder_lead or timedelta(
            hours=float(os.getenv("REMINDER_LEAD_HOURS", "24"))
        )
        self.retry_delay = float(
            retry_delay if retry_delay is not None
            else os.getenv("REMINDER_RETRY_SECONDS", "60")
        )

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def on_status_change(
        self,
        appointment_id: str,
        old_status: AppointmentStatus,
        new_status: AppointmentStatus,
        changed_by: Optional[str] = None,
    ) -> Alert:
        """Notify both parties of a transition and keep reminders in step.

        Returns:
            The ``status_change`` alert that was raised.
        """
        old_status = AppointmentStatus(old_status)
        new_status = AppointmentStatus(new_status)

        alert = self.dispatcher.raise_alert(
            changed_by or SYSTEM_ORIGIN,
            AlertKind.STATUS_CHANGE,
            {
                "appointment_id": appointment_id,
                "old_status": old_status.value,
                "new_status": new_status.value,
            },
        )

        if new_status in _REMINDER_KILLERS:
            self.cancel_reminder(appointment_id)
        elif new_status is AppointmentStatus.CONFIRMED:
            self._auto_schedule(appointment_id)
        return alert

    def _auto_schedule(self, appointment_id: str) -> None:
        appointment = self.appointments.get(appointment_id)
        if appointment is None or appointment.scheduled_at is None:
            return
        remind_at = appointment.scheduled_at - self.reminder_lead
        if remind_at <= utcnow():
            logger.info(
                "Appointment %s starts within the reminder lead; no reminder.",
                appointment_id,
            )
            return
        self.schedule_reminder(appointment_id, remind_at)

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def schedule_reminder(self, appointment_id: str, when_utc: datetime) -> None:
        """Arm (or re-arm) the reminder for an appointment.

        Raises:
            AppointmentNotFound: unknown appointment.
        """
        self.appointments.require(appointment_id)
        when_utc = as_utc(when_utc)
        self.appointments.save_reminder(appointment_id, when_utc)
        self.scheduler.schedule_at(
            _job_key(appointment_id), when_utc,
            lambda: self._fire_reminder(appointment_id),
        )
        logger.info("Reminder for %s scheduled at %s.", appointment_id, when_utc.isoformat())

    def cancel_reminder(self, appointment_id: str) -> bool:
        """Cancel a pending reminder.

        Returns:
            True if a pending reminder was cancelled; False (not an
            error) if there was none or it had already fired.
        """
        self.scheduler.cancel(_job_key(appointment_id))
        cancelled = self.appointments.cancel_reminder(appointment_id)
        if cancelled:
            logger.info("Reminder for %s cancelled.", appointment_id)
        return cancelled

    def restore_reminders(self) -> int:
        """Re-arm every stored reminder that has not fired yet."""
        restored = 0
        for appointment_id, remind_at in self.appointments.scheduled_reminders():
            self.scheduler.schedule_at(
                _job_key(appointment_id), remind_at,
                lambda appointment_id=appointment_id: self._fire_reminder(appointment_id),
            )
            restored += 1
        if restored:
            logger.info("Restored %d pending reminder(s).", restored)
        return restored

    def schedule_upcoming(self, lead: Optional[timedelta] = None) -> int:
        """Arm reminders for confirmed appointments starting within ``lead``.

        Appointments whose reminder already fired or was cancelled are
        left alone.
        """
        lead = lead or self.reminder_lead
        now = utcnow()
        armed = 0
        for appointment in self.appointments.confirmed_between(now, now + lead):
            if self.appointments.reminder_state(appointment.id) is not None:
                continue
            self.schedule_reminder(appointment.id, now)
            armed += 1
        return armed

    def _fire_reminder(self, appointment_id: str) -> Optional[Alert]:
        if not self.appointments.claim_reminder(appointment_id):
            logger.info("Reminder for %s no longer pending; skipped.", appointment_id)
            return None

        try:
            appointment = self.appointments.get(appointment_id)
            if appointment is None or appointment.status in _REMINDER_KILLERS:
                logger.info("Appointment %s no longer active; reminder dropped.", appointment_id)
                return None
            return self.dispatcher.raise_alert(
                SYSTEM_ORIGIN,
                AlertKind.APPOINTMENT_REMINDER,
                {"appointment_id": appointment_id},
            )
        except StorageError as exc:
            logger.error(
                "Reminder for %s could not be stored (%s); retrying in %.0fs.",
                appointment_id, exc, self.retry_delay,
            )
            if self.appointments.release_reminder(appointment_id):
                self.scheduler.schedule_in(
                    _job_key(appointment_id), self.retry_delay,
                    lambda: self._fire_reminder(appointment_id),
                )
            return None
