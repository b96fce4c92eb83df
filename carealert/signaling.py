"""
Inbound Event Dispatch
======================
Messages a connected client may send, mapped explicitly from event name
to handler:

  video_call:*    relayed to the other party of the appointment
  send_message    chat to both appointment parties, or to one user
  typing          typing indicator to the other appointment party
  share_location  emergency location broadcast to online doctors
  alert:read      marks an inbox alert read

Only ``alert:read`` touches storage; everything else is ephemeral.
"""

from __future__ import annotations

import logging
import uuid
from typing import Callable, Optional

from carealert.appointments import AppointmentStore
from carealert.connections import Connection
from carealert.errors import InvalidCoordinate, StorageError
from carealert.events import (
    EVENT_ALERT_READ,
    EVENT_EMERGENCY_LOCATION,
    EVENT_NEW_MESSAGE,
    EVENT_SEND_MESSAGE,
    EVENT_SHARE_LOCATION,
    EVENT_TYPING,
    EVENT_USER_TYPING,
    SIGNALING_EVENTS,
    error_event,
)
from carealert.models import Appointment, Location, Role, User, utcnow
from carealert.notification_channel import NotificationChannel

logger = logging.getLogger(__name__)

Handler = Callable[[str, Connection, str, dict], None]


class EventDispatcher:
    """Routes ``(event, data)`` from a client connection to its handler."""

    def __init__(self, channel: NotificationChannel, appointments: AppointmentStore) -> None:
        self.channel = channel
        self.appointments = appointments
        self._handlers: dict[str, Handler] = {
            name: self._relay_call for name in SIGNALING_EVENTS
        }
        self._handlers.update({
            EVENT_SEND_MESSAGE: self._send_message,
            EVENT_TYPING: self._typing,
            EVENT_SHARE_LOCATION: self._share_location,
            EVENT_ALERT_READ: self._mark_read,
        })

    @property
    def events(self) -> list[str]:
        return sorted(self._handlers)

    def dispatch(self, user_id: str, conn: Connection, event: str, data: dict) -> bool:
        """Handle one inbound message. Returns False for unknown events."""
        handler = self._handlers.get(event)
        if handler is None:
            logger.info("Ignoring unknown event %r from %s.", event, user_id)
            return False
        handler(user_id, conn, event, data if isinstance(data, dict) else {})
        return True

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _appointment_for(
        self, user_id: str, conn: Connection, event: str, data: dict
    ) -> Optional[Appointment]:
        appointment_id = data.get("appointment_id")
        appointment = self.appointments.get(appointment_id) if appointment_id else None
        if appointment is None or user_id not in appointment.parties:
            logger.warning("Rejected %s from %s for appointment %s.", event, user_id, appointment_id)
            conn.send(*error_event("You are not part of this appointment.", event=event))
            return None
        return appointment

    @staticmethod
    def _peer(appointment: Appointment, user_id: str) -> str:
        if user_id == appointment.patient_id:
            return appointment.provider_id
        return appointment.patient_id

    def _sender(self, user_id: str) -> Optional[User]:
        directory = self.channel.directory
        return directory.get_user(user_id) if directory else None

    def _relay_call(self, user_id: str, conn: Connection, event: str, data: dict) -> None:
        appointment = self._appointment_for(user_id, conn, event, data)
        if appointment is None:
            return

        peer = self._peer(appointment, user_id)
        relayed = self.channel.send_event(peer, event, {**data, "from": user_id})
        if not relayed:
            conn.send(*error_event(
                "The other participant is not online.",
                event=event, code="peer_offline",
            ))

    def _send_message(self, user_id: str, conn: Connection, event: str, data: dict) -> None:
        text = data.get("message")
        if not text:
            conn.send(*error_event("message is required.", event=event))
            return

        if data.get("appointment_id"):
            appointment = self._appointment_for(user_id, conn, event, data)
            if appointment is None:
                return
            targets = list(appointment.parties)
        elif data.get("to"):
            targets = [data["to"], user_id]
        else:
            conn.send(*error_event("appointment_id or to is required.", event=event))
            return

        sender = self._sender(user_id)
        message = {
            "id": uuid.uuid4().hex,
            "from": user_id,
            "from_name": sender.name if sender else "",
            "from_role": sender.role.value if sender else "",
            "message": text,
            "appointment_id": data.get("appointment_id"),
            "timestamp": utcnow().isoformat(),
        }
        for target in dict.fromkeys(targets):
            self.channel.send_event(target, EVENT_NEW_MESSAGE, message)

    def _typing(self, user_id: str, conn: Connection, event: str, data: dict) -> None:
        appointment = self._appointment_for(user_id, conn, event, data)
        if appointment is None:
            return
        sender = self._sender(user_id)
        self.channel.send_event(self._peer(appointment, user_id), EVENT_USER_TYPING, {
            "appointment_id": appointment.id,
            "from": user_id,
            "from_name": sender.name if sender else "",
            "is_typing": bool(data.get("is_typing")),
        })

    def _share_location(self, user_id: str, conn: Connection, event: str, data: dict) -> None:
        if not data.get("is_emergency"):
            return
        raw = data.get("location")
        try:
            location = Location.from_dict(raw) if isinstance(raw, dict) else None
        except InvalidCoordinate as exc:
            conn.send(*error_event(str(exc), event=event))
            return
        if location is None:
            conn.send(*error_event("location is required.", event=event))
            return

        sender = self._sender(user_id)
        reached = self.channel.send_event_to_role(Role.DOCTOR, EVENT_EMERGENCY_LOCATION, {
            "patient_id": user_id,
            "patient_name": sender.name if sender else "",
            "location": location.to_dict(),
            "timestamp": utcnow().isoformat(),
        })
        logger.info("Emergency location from %s sent to %d doctor(s).", user_id, reached)

    def _mark_read(self, user_id: str, conn: Connection, event: str, data: dict) -> None:
        alert_id = data.get("alert_id")
        if not alert_id:
            conn.send(*error_event("alert_id is required.", event=event))
            return
        try:
            self.channel.mark_read(user_id, alert_id)
        except StorageError:
            conn.send(*error_event("Could not update the notification right now.", event=event))
