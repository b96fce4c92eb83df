"""
CareAlert — Emergency Dispatch & Notification Server
=====================================================
FastAPI backend for location-aware emergency alerts, appointment
notifications, and per-user real-time delivery over WebSocket.

Run:
    pip install -e .
    python alert_server.py

Then open: http://localhost:8002/docs
Socket:    ws://localhost:8002/ws?user_id=<user id>
"""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Literal, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from carealert.alert_dispatcher import AlertDispatcher
from carealert.alert_store import AlertStore
from carealert.appointment_notifier import AppointmentNotifier
from carealert.appointments import AppointmentStore
from carealert.connections import ConnectionRegistry, RegistryClosed
from carealert.database import Database
from carealert.directory import ProfileDirectory
from carealert.errors import (
    AppointmentNotFound,
    CareAlertError,
    InvalidCoordinate,
    InvalidTransition,
    StorageError,
    UnknownUser,
)
from carealert.events import error_event
from carealert.geo_matcher import GeoMatcher
from carealert.models import (
    AlertKind,
    AppointmentStatus,
    ConsultationMode,
    DeliveryStatus,
    Location,
    Provider,
    Role,
    User,
)
from carealert.notification_channel import NotificationChannel
from carealert.scheduler import JobScheduler
from carealert.signaling import EventDispatcher
from carealert.sms_gateway import SmsGateway
from carealert.transport import WebSocketConnection

load_dotenv()
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

NO_PROVIDERS_MESSAGE = (
    "No providers are currently available near you. Your alert has been "
    "recorded. If this is life-threatening, call your local emergency number."
)
HELP_ON_THE_WAY_MESSAGE = (
    "Medical assistance is being arranged. Please stay calm and wait for help."
)

# Human-readable messages per error kind and caller role.
USER_MESSAGES: dict[type, dict[str, str]] = {
    InvalidCoordinate: {
        "default": "We could not read your location. Please share your location again and retry.",
    },
    StorageError: {
        "patient": (
            "We could not send your request right now. If this is an emergency, "
            "call your local emergency number immediately."
        ),
        "default": "The service is temporarily unavailable. Please try again in a moment.",
    },
    AppointmentNotFound: {"default": "We could not find that appointment."},
    UnknownUser: {"default": "We could not find that account."},
    InvalidTransition: {
        "patient": "This appointment can no longer be changed that way.",
        "default": "That status change is not allowed for this appointment.",
    },
}

ERROR_STATUS = {
    InvalidCoordinate: 422,
    StorageError: 503,
    AppointmentNotFound: 404,
    UnknownUser: 404,
    InvalidTransition: 409,
}


# ── service wiring ────────────────────────────────────────────────────────────

class Services:
    """Everything the endpoints need, created once per process."""

    def __init__(self, db_path: Optional[str] = None, timer_factory: Optional[Callable] = None) -> None:
        self.db = Database(db_path)
        self.directory = ProfileDirectory(self.db)
        self.alerts = AlertStore(self.db)
        self.appointments = AppointmentStore(self.db)
        self.registry = ConnectionRegistry()
        self.scheduler = JobScheduler(timer_factory) if timer_factory else JobScheduler()
        self.geo = GeoMatcher(self.directory)
        self.channel = NotificationChannel(
            self.registry, self.alerts, directory=self.directory, sms=SmsGateway()
        )
        self.dispatcher = AlertDispatcher(
            self.alerts, self.directory, self.appointments, self.geo, self.channel
        )
        self.notifier = AppointmentNotifier(self.dispatcher, self.appointments, self.scheduler)
        self.events = EventDispatcher(self.channel, self.appointments)

    def start(self) -> None:
        self.registry.start()
        self.notifier.restore_reminders()
        self.notifier.schedule_upcoming()
        interval = float(os.getenv("REDELIVERY_INTERVAL_SECONDS", "30"))
        if interval > 0:
            self._schedule_redelivery(interval)
        logger.info("CareAlert services started.")

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        self.registry.shutdown()
        logger.info("CareAlert services stopped.")

    def _schedule_redelivery(self, interval: float) -> None:
        def sweep() -> None:
            try:
                self.channel.redeliver_pending()
            finally:
                self.scheduler.schedule_in("redelivery", interval, sweep)

        self.scheduler.schedule_in("redelivery", interval, sweep)


# ── request / response schemas ────────────────────────────────────────────────

class LocationIn(BaseModel):
    lat: float
    lon: float


class EmergencyIn(BaseModel):
    message: str = ""
    location: Optional[LocationIn] = None
    role: Literal["doctor", "pharmacy"] = "doctor"
    specialty: Optional[str] = None


class AppointmentIn(BaseModel):
    provider_id: str
    mode: ConsultationMode = ConsultationMode.CLINIC
    scheduled_at: Optional[datetime] = None
    description: str = ""
    is_emergency: bool = False


class StatusChangeIn(BaseModel):
    status: AppointmentStatus
    scheduled_at: Optional[datetime] = None


class ReminderIn(BaseModel):
    when_utc: datetime


class BroadcastIn(BaseModel):
    role: Role
    type: str
    data: dict = Field(default_factory=dict)


class AlertOut(BaseModel):
    alert_id: str
    kind: str
    recipients: list[str] = Field(default_factory=list)


# ── helpers ───────────────────────────────────────────────────────────────────

def _services(request: Request) -> Services:
    return request.app.state.services


def _caller_id(x_user_id: Optional[str]) -> str:
    if not x_user_id:
        raise HTTPException(401, "Please authenticate")
    return x_user_id


def _caller_role(request: Request) -> str:
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        return "default"
    try:
        user = _services(request).directory.get_user(user_id)
    except StorageError:
        return "default"
    return user.role.value if user else "default"


def _user_message(exc: CareAlertError, role: str) -> str:
    for cls in type(exc).__mro__:
        messages = USER_MESSAGES.get(cls)
        if messages:
            return messages.get(role, messages["default"])
    return "Something went wrong. Please try again."


async def _care_alert_error_handler(request: Request, exc: CareAlertError) -> JSONResponse:
    status = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500
    )
    logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    role = await run_in_threadpool(_caller_role, request)
    return JSONResponse(
        status_code=status,
        content={"ok": False, "message": _user_message(exc, role)},
    )


def _require_party(services: Services, appointment_id: str, user_id: str):
    appointment = services.appointments.require(appointment_id)
    if user_id not in appointment.parties:
        user = services.directory.get_user(user_id)
        if user is None or user.role is not Role.ADMIN:
            raise HTTPException(403, "You do not have permission to access this resource")
    return appointment


# ── app factory ───────────────────────────────────────────────────────────────

def create_app(db_path: Optional[str] = None, timer_factory: Optional[Callable] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        db_path: SQLite file; defaults to ``CAREALERT_DB_PATH``.
        timer_factory: Timer constructor for the job scheduler (tests).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = Services(db_path, timer_factory)
        services.start()
        app.state.services = services
        try:
            yield
        finally:
            services.shutdown()

    app = FastAPI(title="CareAlert Dispatch API", version="1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("FRONTEND_URL", "http://localhost:3000").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(CareAlertError, _care_alert_error_handler)

    # ── health ────────────────────────────────────────────────────────────

    @app.get("/health")
    def health(request: Request):
        services = _services(request)
        return {
            "ok": True,
            "connections": len(services.registry),
            "scheduled_jobs": len(services.scheduler.pending()),
        }

    # ── providers ─────────────────────────────────────────────────────────

    @app.get("/api/providers/nearby")
    def api_nearby_providers(
        request: Request,
        lat: float,
        lon: float,
        radius_km: float = Query(10, gt=0, le=500),
        role: Literal["doctor", "pharmacy"] = "doctor",
        specialty: Optional[str] = None,
    ):
        """Active providers near a point, nearest first."""
        services = _services(request)
        provider_filter = {"specialty": specialty} if specialty else None
        matches = services.geo.find_nearby(lat, lon, radius_km, Role(role), provider_filter)
        results = []
        for m in matches:
            provider = services.directory.get_provider(m.provider_id)
            results.append({
                **m.to_dict(),
                "name": provider.name if provider else "",
                "specialty": provider.specialty if provider else "",
                "available": provider.available if provider else False,
                "rating": m.rating,
            })
        return results

    @app.get("/api/providers/{provider_id}/eta")
    def api_provider_eta(
        request: Request,
        provider_id: str,
        lat: float,
        lon: float,
    ):
        """Route ETA from a provider to a point (Azure Maps when configured)."""
        services = _services(request)
        destination = Location(lat, lon)
        origin = services.geo.provider_location(provider_id)
        if origin is None:
            raise HTTPException(404, "Provider location unknown")
        return {"ok": True, "provider_id": provider_id, **services.geo.estimate_eta(origin, destination)}

    @app.put("/api/users/me/location")
    def api_update_location(
        request: Request, body: LocationIn, x_user_id: Optional[str] = Header(None)
    ):
        user_id = _caller_id(x_user_id)
        location = Location(body.lat, body.lon)
        _services(request).directory.update_location(user_id, location)
        return {"ok": True, "location": location.to_dict()}

    # ── emergency ─────────────────────────────────────────────────────────

    @app.post("/api/emergency")
    def api_emergency(request: Request, body: EmergencyIn, x_user_id: Optional[str] = Header(None)):
        """Raise an emergency and notify the nearest available providers."""
        user_id = _caller_id(x_user_id)
        services = _services(request)
        payload = {"message": body.message, "role": body.role}
        if body.specialty:
            payload["specialty"] = body.specialty
        location = Location(body.location.lat, body.location.lon) if body.location else None

        alert = services.dispatcher.raise_alert(
            user_id, AlertKind.EMERGENCY, payload, location=location
        )

        if not alert.recipients:
            return {"ok": True, "alert_id": alert.id, "notified": [], "message": NO_PROVIDERS_MESSAGE}

        notified = []
        for r in alert.recipients:
            provider = services.directory.get_provider(r.recipient_id)
            notified.append({
                "provider_id": r.recipient_id,
                "name": provider.name if provider else "",
                "phone": provider.phone if provider else "",
                "distance_km": r.distance_km,
                "eta_minutes": r.eta_minutes,
                "status": r.status.value,
            })
        return {
            "ok": True,
            "alert_id": alert.id,
            "notified": notified,
            "search_radius_km": alert.payload.get("search_radius_km"),
            "appointment_id": alert.payload.get("appointment_id"),
            "message": HELP_ON_THE_WAY_MESSAGE,
        }

    # ── alerts / inbox ────────────────────────────────────────────────────

    @app.get("/api/alerts/inbox")
    def api_inbox(
        request: Request,
        status: Optional[DeliveryStatus] = None,
        limit: int = Query(50, ge=1, le=200),
        x_user_id: Optional[str] = Header(None),
    ):
        user_id = _caller_id(x_user_id)
        alerts = _services(request).alerts.list_for_user(user_id, status=status, limit=limit)
        return [a.to_dict() for a in alerts]

    @app.get("/api/alerts/{alert_id}")
    def api_alert_detail(request: Request, alert_id: str, x_user_id: Optional[str] = Header(None)):
        user_id = _caller_id(x_user_id)
        services = _services(request)
        alert = services.alerts.get_alert(alert_id)
        if alert is None:
            raise HTTPException(404, "Alert not found")
        if user_id != alert.origin_user_id and user_id not in alert.recipient_ids:
            user = services.directory.get_user(user_id)
            if user is None or user.role is not Role.ADMIN:
                raise HTTPException(403, "You do not have permission to access this resource")
        return alert.to_dict()

    @app.post("/api/alerts/{alert_id}/read")
    def api_mark_read(request: Request, alert_id: str, x_user_id: Optional[str] = Header(None)):
        user_id = _caller_id(x_user_id)
        changed = _services(request).channel.mark_read(user_id, alert_id)
        return {"ok": True, "alert_id": alert_id, "changed": changed}

    # ── appointments ──────────────────────────────────────────────────────

    @app.post("/api/appointments")
    def api_book_appointment(
        request: Request, body: AppointmentIn, x_user_id: Optional[str] = Header(None)
    ):
        user_id = _caller_id(x_user_id)
        services = _services(request)
        provider = services.directory.get_provider(body.provider_id)
        if provider is None or provider.role is not Role.DOCTOR:
            raise HTTPException(404, "Doctor not found")
        appointment = services.appointments.create(
            patient_id=user_id,
            provider_id=body.provider_id,
            mode=body.mode,
            scheduled_at=body.scheduled_at,
            is_emergency=body.is_emergency,
            description=body.description,
        )
        return {"ok": True, "appointment": appointment.to_dict()}

    @app.patch("/api/appointments/{appointment_id}/status")
    def api_change_status(
        request: Request,
        appointment_id: str,
        body: StatusChangeIn,
        x_user_id: Optional[str] = Header(None),
    ):
        """Move an appointment along its lifecycle and notify both parties."""
        user_id = _caller_id(x_user_id)
        services = _services(request)
        _require_party(services, appointment_id, user_id)
        old_status, appointment = services.appointments.transition(
            appointment_id, body.status, scheduled_at=body.scheduled_at
        )
        alert = services.notifier.on_status_change(
            appointment_id, old_status, appointment.status, changed_by=user_id
        )
        return {
            "ok": True,
            "appointment": appointment.to_dict(),
            "alert": AlertOut(
                alert_id=alert.id, kind=alert.kind.value, recipients=alert.recipient_ids
            ).model_dump(),
        }

    @app.post("/api/appointments/{appointment_id}/reminder")
    def api_schedule_reminder(
        request: Request,
        appointment_id: str,
        body: ReminderIn,
        x_user_id: Optional[str] = Header(None),
    ):
        user_id = _caller_id(x_user_id)
        services = _services(request)
        _require_party(services, appointment_id, user_id)
        services.notifier.schedule_reminder(appointment_id, body.when_utc)
        return {"ok": True, "appointment_id": appointment_id, "when_utc": body.when_utc.isoformat()}

    @app.delete("/api/appointments/{appointment_id}/reminder")
    def api_cancel_reminder(
        request: Request, appointment_id: str, x_user_id: Optional[str] = Header(None)
    ):
        user_id = _caller_id(x_user_id)
        services = _services(request)
        _require_party(services, appointment_id, user_id)
        cancelled = services.notifier.cancel_reminder(appointment_id)
        return {"ok": True, "appointment_id": appointment_id, "cancelled": cancelled}

    # ── admin ─────────────────────────────────────────────────────────────

    @app.post("/api/admin/clear")
    def api_clear(request: Request):
        """Clear all data (testing only)."""
        _services(request).db.clear()
        return {"ok": True}

    @app.post("/api/admin/seed")
    def api_seed(request: Request):
        """Seed a demo patient and providers around central Bengaluru."""
        directory = _services(request).directory
        directory.save_user(User(
            id="patient-demo", name="Asha Rao", role=Role.PATIENT,
            location=Location(12.9716, 77.5946), phone="+919800000001",
        ))
        demo_providers = [
            ("doc-cardio-1", "Dr. Kiran Shetty", Role.DOCTOR, "Cardiology", 12.9352, 77.6245, 4.8),
            ("doc-general-1", "Dr. Meera Iyer", Role.DOCTOR, "General Medicine", 12.9784, 77.6408, 4.5),
            ("doc-neuro-1", "Dr. Arjun Nair", Role.DOCTOR, "Neurology", 13.0358, 77.5970, 4.6),
            ("doc-peds-1", "Dr. Farah Khan", Role.DOCTOR, "Pediatrics", 12.9141, 77.6101, 4.2),
            ("doc-ortho-1", "Dr. Vikram Joshi", Role.DOCTOR, "Orthopedics", 13.1007, 77.5963, 4.4),
            ("pharm-1", "HealthPlus Pharmacy", Role.PHARMACY, "Retail", 12.9698, 77.7500, 4.3),
            ("pharm-2", "MedCare 24x7", Role.PHARMACY, "Retail", 12.9592, 77.5870, 4.7),
        ]
        for pid, name, role, specialty, lat, lon, rating in demo_providers:
            directory.save_provider(Provider(
                id=pid, name=name, role=role, location=Location(lat, lon),
                phone="", specialty=specialty, available=True,
                verified=True, rating=rating,
            ))
        return {"ok": True, "seeded": len(demo_providers) + 1}

    @app.post("/api/admin/broadcast")
    def api_broadcast(request: Request, body: BroadcastIn):
        """Push a notification to every online user of a role."""
        reached = _services(request).channel.broadcast_to_role(body.role, body.type, body.data)
        return {"ok": True, "role": body.role.value, "reached": reached}

    # ── real-time channel ─────────────────────────────────────────────────

    @app.websocket("/ws")
    async def notifications_socket(websocket: WebSocket, user_id: str = Query(...)):
        """Per-user channel: pending replay, then live events both ways."""
        services: Services = websocket.app.state.services
        await websocket.accept()
        conn = WebSocketConnection(websocket, asyncio.get_running_loop(), user_id)

        try:
            await run_in_threadpool(services.channel.subscribe, user_id, conn)
        except RegistryClosed:
            await websocket.close(code=1013)
            return

        try:
            while True:
                try:
                    message = await websocket.receive_json()
                except ValueError:
                    name, data = error_event("Messages must be JSON objects.")
                    await websocket.send_json({"event": name, "data": data})
                    continue
                if not isinstance(message, dict) or not message.get("event"):
                    continue
                try:
                    await run_in_threadpool(
                        services.events.dispatch,
                        user_id, conn, message["event"], message.get("data") or {},
                    )
                except CareAlertError as exc:
                    logger.error("Socket event %s from %s failed: %s", message["event"], user_id, exc)
                    name, data = error_event(_user_message(exc, "default"), event=message["event"])
                    await websocket.send_json({"event": name, "data": data})
        except WebSocketDisconnect:
            logger.info("Socket %s for %s disconnected.", conn.connection_id, user_id)
        finally:
            services.channel.unsubscribe(conn)

    return app


app = create_app()


# ── Entry point ───────────────────────────────────────────────────────────────
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8002"))
    print("\n" + "═" * 58)
    print("  🚑  CareAlert — Emergency Dispatch & Notifications")
    print("═" * 58)
    print(f"  ➜  API docs:   http://localhost:{port}/docs")
    print(f"  ➜  Socket:     ws://localhost:{port}/ws?user_id=<id>")
    print("═" * 58 + "\n")
    uvicorn.run(app, host="0.0.0.0", port=port, reload=False, log_level="warning")
