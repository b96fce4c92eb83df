"""
Wire Events
===========
Event names exchanged with clients and the builders that turn a stored
alert into the event a given recipient receives. The names are part of
the client contract and must not change.
"""

from __future__ import annotations

from carealert.models import Alert, AlertKind, AlertRecipient, utcnow

# Server → client
EVENT_NOTIFICATION = "notification"
EVENT_APPOINTMENT_REMINDER = "appointment_reminder"
EVENT_EMERGENCY_ALERT = "emergency_alert"
EVENT_ERROR = "error"

# Call signaling (relayed between the two parties of an appointment)
VIDEO_CALL_START = "video_call:start"
VIDEO_CALL_ACCEPT = "video_call:accept"
VIDEO_CALL_END = "video_call:end"
VIDEO_CALL_OFFER = "video_call:offer"
VIDEO_CALL_ANSWER = "video_call:answer"
VIDEO_CALL_ICE_CANDIDATE = "video_call:ice-candidate"

SIGNALING_EVENTS = (
    VIDEO_CALL_START,
    VIDEO_CALL_ACCEPT,
    VIDEO_CALL_END,
    VIDEO_CALL_OFFER,
    VIDEO_CALL_ANSWER,
    VIDEO_CALL_ICE_CANDIDATE,
)

# Chat and presence
EVENT_SEND_MESSAGE = "send_message"
EVENT_NEW_MESSAGE = "new_message"
EVENT_TYPING = "typing"
EVENT_USER_TYPING = "user_typing"
EVENT_SHARE_LOCATION = "share_location"
EVENT_EMERGENCY_LOCATION = "emergency_location"

# Client → server
EVENT_ALERT_READ = "alert:read"

# Notification types carried in the ``type`` field of ``notification``
TYPE_STATUS_UPDATED = "appointment_status_updated"
TYPE_APPOINTMENT_REMINDER = "appointment_reminder"
TYPE_EMERGENCY_ALERT = "emergency_alert"

PUSH_TITLES = {
    TYPE_STATUS_UPDATED: "📅 Appointment Updated",
    TYPE_APPOINTMENT_REMINDER: "⏰ Appointment Reminder",
    TYPE_EMERGENCY_ALERT: "🚨 EMERGENCY ALERT",
}

DEFAULT_TITLE = "Smart Healthcare"


def push_body(kind: str, data: dict) -> str:
    if kind == TYPE_STATUS_UPDATED:
        return f"Your appointment status: {data.get('new_status', 'updated')}"
    if kind == TYPE_APPOINTMENT_REMINDER:
        when = data.get("scheduled_at") or "soon"
        return f"You have an appointment at {when}"
    if kind == TYPE_EMERGENCY_ALERT:
        who = data.get("patient_name") or "A patient"
        return f"{who} needs immediate medical attention"
    return "You have a new notification"


def build_event(alert: Alert, recipient: AlertRecipient) -> tuple[str, dict]:
    """The ``(event_name, data)`` pair a recipient receives for an alert."""
    payload = alert.payload
    common = {
        "alert_id": alert.id,
        "timestamp": alert.created_at,
    }

    if alert.kind is AlertKind.EMERGENCY:
        return EVENT_EMERGENCY_ALERT, {
            **common,
            "message": payload.get("message", ""),
            "location": payload.get("location"),
            "patient_id": alert.origin_user_id,
            "patient_name": payload.get("patient_name", ""),
            "patient_phone": payload.get("patient_phone", ""),
            "distance_km": recipient.distance_km,
            "eta_minutes": recipient.eta_minutes,
            "appointment_id": payload.get("appointment_id"),
        }

    if alert.kind is AlertKind.APPOINTMENT_REMINDER:
        return EVENT_APPOINTMENT_REMINDER, {
            **common,
            "appointment_id": payload.get("appointment_id"),
            "scheduled_at": payload.get("scheduled_at"),
            "mode": payload.get("mode"),
            "title": PUSH_TITLES[TYPE_APPOINTMENT_REMINDER],
            "body": push_body(TYPE_APPOINTMENT_REMINDER, payload),
        }

    return EVENT_NOTIFICATION, {
        **common,
        "type": TYPE_STATUS_UPDATED,
        "title": PUSH_TITLES.get(TYPE_STATUS_UPDATED, DEFAULT_TITLE),
        "body": push_body(TYPE_STATUS_UPDATED, payload),
        "data": payload,
    }


def error_event(message: str, **extra) -> tuple[str, dict]:
    return EVENT_ERROR, {"message": message, "timestamp": utcnow().isoformat(), **extra}


def role_notification(kind: str, data: dict) -> tuple[str, dict]:
    """A ``notification`` event addressed to every user of a role."""
    return EVENT_NOTIFICATION, {
        "type": kind,
        "title": PUSH_TITLES.get(kind, DEFAULT_TITLE),
        "body": push_body(kind, data),
        "data": data,
        "timestamp": utcnow().isoformat(),
    }
