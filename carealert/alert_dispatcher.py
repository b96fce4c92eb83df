"""
Alert Dispatcher
================
Turns a client action into a stored alert and fans it out.

  1. Resolve recipients:
       emergency            → nearest available providers, widening the
                              search radius until enough are found
       appointment_reminder → the appointment's patient and provider
       status_change        → the appointment's patient and provider
  2. Persist the alert with that fixed recipient list (all pending).
  3. Publish one event per recipient through the notification channel.

A storage failure in step 2 aborts the call. Anything that goes wrong in
step 3 is per-recipient and leaves that recipient pending for replay.
"""

from __future__ import annotations

import logging
import os
from typing import Optional, Union

from dotenv import load_dotenv

from carealert.alert_store import AlertStore, new_alert_id
from carealert.appointments import AppointmentStore
from carealert.directory import ProfileDirectory
from carealert.errors import CareAlertError, InvalidCoordinate, StorageError
from carealert.events import build_event
from carealert.geo_matcher import GeoMatcher, Match
from carealert.models import (
    Alert,
    AlertKind,
    AlertRecipient,
    AppointmentStatus,
    ConsultationMode,
    DeliveryStatus,
    Location,
    Role,
    User,
    utcnow,
)
from carealert.notification_channel import NotificationChannel

load_dotenv()
logger = logging.getLogger(__name__)

DEFAULT_EMERGENCY_MESSAGE = "Emergency consultation required"


class AlertDispatcher:
    """Creates alerts and delivers them to their recipients.

    Emergency search policy (all overridable via constructor or env):
        initial_radius_km  EMERGENCY_INITIAL_RADIUS_KM  10
        radius_factor      EMERGENCY_RADIUS_FACTOR      2
        max_attempts       EMERGENCY_MAX_ATTEMPTS       3
        min_recipients     EMERGENCY_MIN_RECIPIENTS     3
    """

    def __init__(
        self,
        alerts: AlertStore,
        directory: ProfileDirectory,
        appointments: AppointmentStore,
        geo: GeoMatcher,
        channel: NotificationChannel,
        initial_radius_km: Optional[float] = None,
        radius_factor: Optional[float] = None,
        max_attempts: Optional[int] = None,
        min_recipients: Optional[int] = None,
    ) -> None:
        self.alerts = alerts
        self.directory = directory
        self.appointments = appointments
        self.geo = geo
        self.channel = channel

        self.initial_radius_km = float(
            initial_radius_km if initial_radius_km is not None
            else os.getenv("EMERGENCY_INITIAL_RADIUS_KM", "10")
        )
        self.radius_factor = float(
            radius_factor if radius_factor is not None
            else os.getenv("EMERGENCY_RADIUS_FACTOR", "2")
        )
        self.max_attempts = max(1, int(
            max_attempts if max_attempts is not None
            else os.getenv("EMERGENCY_MAX_ATTEMPTS", "3")
        ))
        self.min_recipients = max(1, int(
            min_recipients if min_recipients is not None
            else os.getenv("EMERGENCY_MIN_RECIPIENTS", "3")
        ))
        logger.info(
            "Emergency policy: %.1f km ×%.1f, %d attempt(s), min %d recipient(s).",
            self.initial_radius_km, self.radius_factor,
            self.max_attempts, self.min_recipients,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def raise_alert(
        self,
        origin_user_id: str,
        kind: AlertKind,
        payload: Optional[dict] = None,
        location: Union[Location, dict, None] = None,
    ) -> Alert:
        """Create, persist, and deliver one alert.

        Args:
            origin_user_id: Already-authenticated user raising the alert
                (``"system"`` for scheduled reminders).
            kind: Alert kind.
            payload: Free-form data. Reminders and status changes must
                include ``appointment_id``. Emergencies may include
                ``message``, ``role`` (doctor / pharmacy) and ``specialty``.
                A doctor emergency with recipients also opens a confirmed
                online emergency appointment with the nearest doctor and
                records its id as ``appointment_id``.
            location: Emergency location override; defaults to the
                origin user's last-known location.

        Returns:
            The stored alert, with delivery status as of return.

        Raises:
            InvalidCoordinate: emergency without a usable location.
            AppointmentNotFound: reminder / status change for an unknown
                appointment.
            StorageError: the alert could not be persisted.
        """
        kind = AlertKind(kind)
        payload = dict(payload or {})

        if kind is AlertKind.EMERGENCY:
            recipients, payload = self._emergency_recipients(origin_user_id, payload, location)
            if recipients and payload["provider_role"] == Role.DOCTOR.value:
                self._open_emergency_appointment(origin_user_id, recipients[0], payload)
        else:
            recipients, payload = self._appointment_recipients(payload)

        alert = Alert(
            id=new_alert_id(),
            origin_user_id=origin_user_id,
            kind=kind,
            payload=payload,
            created_at=utcnow().isoformat(),
            recipients=recipients,
        )
        self.alerts.create_alert(alert)

        if not recipients:
            logger.warning(
                "Alert %s (%s) from %s has no recipients; stored for audit.",
                alert.id, kind.value, origin_user_id,
            )
            return alert

        self._fan_out(alert)
        try:
            return self.alerts.get_alert(alert.id) or alert
        except StorageError as exc:
            # Already stored and published; report what was sent.
            logger.error("Could not re-read alert %s: %s", alert.id, exc)
            return alert

    def redeliver(self, alert_id: str) -> int:
        """Push an alert again to every recipient still pending.

        Returns:
            Number of recipients reached this time.
        """
        alert = self.alerts.get_alert(alert_id)
        if alert is None:
            return 0
        pending = [r for r in alert.recipients if r.status is DeliveryStatus.PENDING]
        return sum(1 for r in pending if self._publish(alert, r))

    # ------------------------------------------------------------------
    # Recipient resolution
    # ------------------------------------------------------------------

    def _emergency_recipients(
        self,
        origin_user_id: str,
        payload: dict,
        location: Union[Location, dict, None],
    ) -> tuple[list[AlertRecipient], dict]:
        if isinstance(location, dict):
            location = Location.from_dict(location)
        user: Optional[User] = self.directory.get_user(origin_user_id)
        if location is None and user is not None:
            location = user.location
        if location is None:
            raise InvalidCoordinate("Emergency requires a location")

        role = Role(payload.pop("role", None) or Role.DOCTOR)
        provider_filter: dict = {"available": True}
        if payload.get("specialty"):
            provider_filter["specialty"] = payload["specialty"]

        matches, radius, attempts = self._search_with_escalation(
            origin_user_id, location, role, provider_filter
        )

        recipients = []
        for match in matches:
            recipients.append(AlertRecipient(
                recipient_id=match.provider_id,
                distance_km=round(match.distance_km, 2),
                eta_minutes=self._eta_minutes(location, match),
            ))

        payload.update({
            "message": payload.get("message") or DEFAULT_EMERGENCY_MESSAGE,
            "location": location.to_dict(),
            "patient_name": user.name if user else "",
            "patient_phone": user.phone if user else "",
            "provider_role": role.value,
            "search_radius_km": radius,
            "search_attempts": attempts,
        })
        return recipients, payload

    def _search_with_escalation(
        self,
        origin_user_id: str,
        location: Location,
        role: Role,
        provider_filter: dict,
    ) -> tuple[list[Match], float, int]:
        radius = self.initial_radius_km
        matches: list[Match] = []
        for attempt in range(1, self.max_attempts + 1):
            matches = [
                m for m in self.geo.find_nearby(
                    location.lat, location.lon, radius, role, provider_filter
                )
                if m.provider_id != origin_user_id
            ]
            if len(matches) >= self.min_recipients or attempt == self.max_attempts:
                return matches, radius, attempt
            logger.info(
                "Only %d %s(s) within %.1f km of emergency; widening search.",
                len(matches), role.value, radius,
            )
            radius *= self.radius_factor
        return matches, radius, self.max_attempts

    def _eta_minutes(self, origin: Location, match: Match) -> Optional[int]:
        # Straight-line only: no outbound calls before the alert is stored.
        if match.location is None:
            return None
        return self.geo.straight_line_eta(match.location, origin)["eta_minutes"]

    def _open_emergency_appointment(
        self, patient_id: str, nearest: AlertRecipient, payload: dict
    ) -> None:
        try:
            appointment = self.appointments.create(
                patient_id=patient_id,
                provider_id=nearest.recipient_id,
                mode=ConsultationMode.ONLINE,
                scheduled_at=utcnow(),
                is_emergency=True,
                description=payload.get("message") or DEFAULT_EMERGENCY_MESSAGE,
                status=AppointmentStatus.CONFIRMED,
            )
        except StorageError as exc:
            logger.error("Emergency appointment for %s not created: %s", patient_id, exc)
            return
        payload["appointment_id"] = appointment.id

    def _appointment_recipients(self, payload: dict) -> tuple[list[AlertRecipient], dict]:
        appointment_id = payload.get("appointment_id")
        if not appointment_id:
            raise ValueError("appointment_id is required for appointment alerts")
        appointment = self.appointments.require(appointment_id)

        recipient_ids: list[str] = []
        for party in appointment.parties:
            if party and party not in recipient_ids:
                recipient_ids.append(party)

        payload.setdefault("patient_id", appointment.patient_id)
        payload.setdefault("provider_id", appointment.provider_id)
        payload.setdefault("mode", appointment.mode.value)
        payload.setdefault(
            "scheduled_at",
            appointment.scheduled_at.isoformat() if appointment.scheduled_at else None,
        )
        return [AlertRecipient(recipient_id=r) for r in recipient_ids], payload

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _fan_out(self, alert: Alert) -> None:
        reached = sum(1 for r in alert.recipients if self._publish(alert, r))
        logger.info(
            "Alert %s delivered live to %d/%d recipient(s).",
            alert.id, reached, len(alert.recipients),
        )

    def _publish(self, alert: Alert, recipient: AlertRecipient) -> bool:
        try:
            return self.channel.publish(
                recipient.recipient_id,
                build_event(alert, recipient),
                alert_id=alert.id,
                kind=alert.kind,
            )
        except CareAlertError as exc:
            logger.error(
                "Delivery of alert %s to %s failed: %s",
                alert.id, recipient.recipient_id, exc,
            )
            return False
