"""
Domain Records
==============
Plain records passed between the stores, the matcher, and the
dispatcher. Everything that enters the core is checked here once, so
downstream code never has to guess whether a field is present.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from carealert.errors import InvalidCoordinate


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Enums

class Role(str, enum.Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    PHARMACY = "pharmacy"
    ADMIN = "admin"


PROVIDER_ROLES = (Role.DOCTOR, Role.PHARMACY)


class AlertKind(str, enum.Enum):
    EMERGENCY = "emergency"
    APPOINTMENT_REMINDER = "appointment_reminder"
    STATUS_CHANGE = "status_change"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    READ = "read"


class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    NO_SHOW = "no-show"
    RESCHEDULED = "rescheduled"


class ConsultationMode(str, enum.Enum):
    CLINIC = "clinic"
    HOME = "home"
    ONLINE = "online"


# Appointment lifecycle edges
ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset({
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.REJECTED,
        AppointmentStatus.CANCELLED,
    }),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.RESCHEDULED,
    }),
    AppointmentStatus.RESCHEDULED: frozenset({AppointmentStatus.PENDING}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.REJECTED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}


def can_transition(old: AppointmentStatus, new: AppointmentStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[old]


# Records

@dataclass(frozen=True)
class Location:
    """A validated WGS84 point in degrees."""

    lat: float
    lon: float

    def __post_init__(self) -> None:
        validate_coordinate(self.lat, self.lon)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["Location"]:
        """Build a Location from ``{"lat": .., "lon": ..}`` or return None.

        A dict that is present but incomplete is rejected rather than
        silently ignored.
        """
        if not data:
            return None
        if "lat" not in data or "lon" not in data:
            raise InvalidCoordinate("Location requires both 'lat' and 'lon'")
        return cls(lat=data["lat"], lon=data["lon"])

    def to_dict(self) -> dict:
        return {"lat": self.lat, "lon": self.lon}


def validate_coordinate(lat: Any, lon: Any) -> None:
    """Raise InvalidCoordinate unless lat ∈ [-90, 90] and lon ∈ [-180, 180]."""
    for name, value, bound in (("latitude", lat, 90), ("longitude", lon, 180)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidCoordinate(f"{name} must be a number, got {value!r}")
        if math.isnan(value) or not -bound <= value <= bound:
            raise InvalidCoordinate(f"{name} {value!r} outside [-{bound}, {bound}]")


@dataclass
class User:
    id: str
    name: str
    role: Role
    active: bool = True
    location: Optional[Location] = None
    phone: str = ""


@dataclass
class Provider(User):
    specialty: str = ""
    available: bool = True
    service_radius_km: Optional[float] = None
    verified: bool = False
    rating: float = 0.0


@dataclass
class AlertRecipient:
    recipient_id: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None
    delivered_at: Optional[str] = None
    read_at: Optional[str] = None


@dataclass
class Alert:
    id: str
    origin_user_id: str
    kind: AlertKind
    payload: dict
    created_at: str
    recipients: list[AlertRecipient] = field(default_factory=list)

    @property
    def recipient_ids(self) -> list[str]:
        return [r.recipient_id for r in self.recipients]

    def recipient(self, recipient_id: str) -> Optional[AlertRecipient]:
        return next(
            (r for r in self.recipients if r.recipient_id == recipient_id), None
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "origin_user_id": self.origin_user_id,
            "kind": self.kind.value,
            "payload": self.payload,
            "created_at": self.created_at,
            "recipients": [
                {
                    "recipient_id": r.recipient_id,
                    "status": r.status.value,
                    "distance_km": r.distance_km,
                    "eta_minutes": r.eta_minutes,
                    "delivered_at": r.delivered_at,
                    "read_at": r.read_at,
                }
                for r in self.recipients
            ],
        }


@dataclass
class Appointment:
    id: str
    patient_id: str
    provider_id: str
    mode: ConsultationMode
    status: AppointmentStatus = AppointmentStatus.PENDING
    scheduled_at: Optional[datetime] = None
    is_emergency: bool = False
    description: str = ""

    @property
    def parties(self) -> tuple[str, str]:
        return (self.patient_id, self.provider_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "provider_id": self.provider_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "is_emergency": self.is_emergency,
            "description": self.description,
        }
