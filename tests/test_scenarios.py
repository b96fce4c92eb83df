"""
Test Scenarios
==============
Automated scenarios for the CareAlert core: provider matching, emergency
dispatch with radius escalation, per-user delivery and replay,
appointment status notifications, reminders, and call signaling.

Run with: python -m pytest tests/test_scenarios.py -v
Or:       python tests/test_scenarios.py
"""

from __future__ import annotations

import os
import shutil
import sys
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from carealert.alert_dispatcher import AlertDispatcher
from carealert.alert_store import AlertStore
from carealert.appointment_notifier import AppointmentNotifier
from carealert.appointments import (
    REMINDER_CANCELLED,
    REMINDER_FIRED,
    REMINDER_SCHEDULED,
    AppointmentStore,
)
from carealert.connections import ConnectionRegistry, RegistryClosed
from carealert.database import Database
from carealert.directory import ProfileDirectory
from carealert.errors import (
    AppointmentNotFound,
    InvalidCoordinate,
    InvalidTransition,
    StorageError,
)
from carealert.events import (
    EVENT_ALERT_READ,
    EVENT_APPOINTMENT_REMINDER,
    EVENT_EMERGENCY_ALERT,
    EVENT_EMERGENCY_LOCATION,
    EVENT_ERROR,
    EVENT_NEW_MESSAGE,
    EVENT_NOTIFICATION,
    EVENT_SEND_MESSAGE,
    EVENT_SHARE_LOCATION,
    EVENT_TYPING,
    EVENT_USER_TYPING,
    VIDEO_CALL_OFFER,
)
from carealert.geo_matcher import GeoMatcher, haversine_km
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

BENGALURU = (12.9716, 77.5946)
KM_PER_DEGREE_LAT = 6371 * 3.141592653589793 / 180


def north_of(origin: tuple, km: float) -> Location:
    """A point ``km`` due north of ``origin``."""
    return Location(origin[0] + km / KM_PER_DEGREE_LAT, origin[1])


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeConnection:
    """Records every event sent to it; optionally fails every write."""

    _counter = 0

    def __init__(self, fail: bool = False):
        FakeConnection._counter += 1
        self.connection_id = f"conn-{FakeConnection._counter}"
        self.fail = fail
        self.sent: list[tuple[str, dict]] = []
        self.closed = False

    def send(self, event: str, data: dict) -> None:
        if self.fail:
            raise ConnectionError("socket is gone")
        self.sent.append((event, data))

    def close(self) -> None:
        self.closed = True

    def events(self, name: str) -> list[dict]:
        return [data for event, data in self.sent if event == name]


class SubscribingConnection(FakeConnection):
    """Runs ``on_send`` from inside its Nth write, like a second device
    attaching while this one is still being replayed to."""

    def __init__(self, on_send, at_write: int):
        super().__init__()
        self.on_send = on_send
        self.at_write = at_write

    def send(self, event: str, data: dict) -> None:
        super().send(event, data)
        if len(self.sent) == self.at_write:
            self.on_send()


class ManualTimer:
    """Timer that only runs when the test calls ``fire``."""

    created: list["ManualTimer"] = []

    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.started = False
        self.cancelled = False
        ManualTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.callback()


class CoreTestCase(unittest.TestCase):
    """Builds the whole core on a throwaway database per test."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="carealert-test-")
        self.db = Database(db_path=str(Path(self.tmpdir) / "test.db"))
        self.directory = ProfileDirectory(self.db)
        self.alerts = AlertStore(self.db)
        self.appointments = AppointmentStore(self.db)
        self.registry = ConnectionRegistry()
        self.registry.start()
        self.geo = GeoMatcher(self.directory)
        self.geo._maps_enabled = False  # straight-line ETA only
        self.channel = NotificationChannel(self.registry, self.alerts, directory=self.directory)
        self.dispatcher = AlertDispatcher(
            self.alerts, self.directory, self.appointments, self.geo, self.channel,
            initial_radius_km=10, radius_factor=2, max_attempts=3, min_recipients=3,
        )
        ManualTimer.created = []
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        self.scheduler = JobScheduler(timer_factory=ManualTimer, clock=lambda: self.now)
        self.notifier = AppointmentNotifier(
            self.dispatcher, self.appointments, self.scheduler,
            reminder_lead=timedelta(hours=24),
        )

    def tearDown(self):
        self.scheduler.shutdown()
        self.registry.shutdown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def add_patient(self, user_id="patient-1", location=BENGALURU, phone=""):
        loc = Location(*location) if location else None
        return self.directory.save_user(User(
            id=user_id, name="Asha Rao", role=Role.PATIENT, location=loc, phone=phone,
        ))

    def add_provider(self, provider_id, location, role=Role.DOCTOR, rating=4.0, **extra):
        return self.directory.save_provider(Provider(
            id=provider_id, name=f"Provider {provider_id}", role=role,
            location=location, rating=rating, **extra,
        ))


# ---------------------------------------------------------------------------
# Geo matching
# ---------------------------------------------------------------------------

class TestGeoMatcher(CoreTestCase):
    """Nearest-provider search."""

    def test_haversine_known_distance(self):
        """One degree of latitude is about 111.2 km."""
        self.assertAlmostEqual(haversine_km(0, 0, 1, 0), 111.195, places=2)
        self.assertEqual(haversine_km(12.97, 77.59, 12.97, 77.59), 0)

    def test_sorted_by_distance(self):
        self.add_provider("far", north_of(BENGALURU, 8))
        self.add_provider("near", north_of(BENGALURU, 2))
        self.add_provider("mid", north_of(BENGALURU, 5))

        matches = self.geo.find_nearby(*BENGALURU, 10)

        self.assertEqual([m.provider_id for m in matches], ["near", "mid", "far"])
        self.assertAlmostEqual(matches[0].distance_km, 2, places=2)

    def test_ties_broken_by_rating_then_id(self):
        spot = north_of(BENGALURU, 3)
        self.add_provider("doc-b", spot, rating=4.0)
        self.add_provider("doc-a", spot, rating=4.0)
        self.add_provider("doc-c", spot, rating=4.9)

        matches = self.geo.find_nearby(*BENGALURU, 10)

        self.assertEqual([m.provider_id for m in matches], ["doc-c", "doc-a", "doc-b"])

    def test_radius_excludes_beyond(self):
        self.add_provider("inside", north_of(BENGALURU, 4.5))
        self.add_provider("outside", north_of(BENGALURU, 6))
        matches = self.geo.find_nearby(*BENGALURU, 5)
        self.assertEqual([m.provider_id for m in matches], ["inside"])

    def test_radius_compares_unrounded_distance(self):
        """10.0004 km rounds to 10.0 but is still outside a 10 km radius."""
        self.add_provider("just-inside", north_of(BENGALURU, 9.9996))
        self.add_provider("just-outside", north_of(BENGALURU, 10.0004))

        matches = self.geo.find_nearby(*BENGALURU, 10)

        self.assertEqual([m.provider_id for m in matches], ["just-inside"])
        self.assertEqual(matches[0].distance_km, 10.0)

    def test_nothing_in_range_returns_empty(self):
        self.add_provider("far-away", north_of(BENGALURU, 80))
        self.assertEqual(self.geo.find_nearby(*BENGALURU, 10), [])

    def test_inactive_and_unlocated_providers_excluded(self):
        self.add_provider("active", north_of(BENGALURU, 1))
        self.add_provider("gone", north_of(BENGALURU, 1))
        self.add_provider("nowhere", None)
        self.directory.deactivate("gone")

        matches = self.geo.find_nearby(*BENGALURU, 10)
        self.assertEqual([m.provider_id for m in matches], ["active"])

    def test_role_and_filter(self):
        self.add_provider("doc", north_of(BENGALURU, 1), specialty="Cardiology")
        self.add_provider("doc-2", north_of(BENGALURU, 2), specialty="Neurology")
        self.add_provider("pharm", north_of(BENGALURU, 1), role=Role.PHARMACY)

        pharmacies = self.geo.find_nearby(*BENGALURU, 10, role=Role.PHARMACY)
        cardio = self.geo.find_nearby(*BENGALURU, 10, provider_filter={"specialty": "Cardiology"})
        rated = self.geo.find_nearby(*BENGALURU, 10, provider_filter=lambda p: p.id == "doc-2")

        self.assertEqual([m.provider_id for m in pharmacies], ["pharm"])
        self.assertEqual([m.provider_id for m in cardio], ["doc"])
        self.assertEqual([m.provider_id for m in rated], ["doc-2"])

    def test_invalid_coordinates_rejected(self):
        for lat, lon in ((91, 0), (-90.5, 0), (0, 181), (float("nan"), 0), ("12", 77)):
            with self.assertRaises(InvalidCoordinate):
                self.geo.find_nearby(lat, lon, 10)

    def test_invalid_radius_rejected(self):
        with self.assertRaises(ValueError):
            self.geo.find_nearby(*BENGALURU, 0)

    def test_partial_location_dict_rejected(self):
        with self.assertRaises(InvalidCoordinate):
            Location.from_dict({"lat": 12.9})
        self.assertIsNone(Location.from_dict(None))

    def test_fallback_eta(self):
        eta = self.geo.estimate_eta(Location(*BENGALURU), north_of(BENGALURU, 10))
        self.assertEqual(eta["source"], "estimated")
        self.assertEqual(eta["eta_minutes"], 26)  # 10 km × 1.3 at 30 km/h

    def test_malformed_route_response_falls_back(self):
        self.geo._maps_enabled = True
        response = mock.Mock()
        response.json.return_value = {"routes": ["not-a-route"]}
        with mock.patch("carealert.geo_matcher.requests.get", return_value=response):
            eta = self.geo.estimate_eta(Location(*BENGALURU), north_of(BENGALURU, 10))

        self.assertEqual(eta["source"], "estimated")
        self.assertEqual(eta["eta_minutes"], 26)

    def test_route_eta_from_azure_maps(self):
        self.geo._maps_enabled = True
        response = mock.Mock()
        response.json.return_value = {
            "routes": [{"summary": {"travelTimeInSeconds": 1260, "lengthInMeters": 11800}}]
        }
        with mock.patch("carealert.geo_matcher.requests.get", return_value=response) as get:
            eta = self.geo.estimate_eta(Location(*BENGALURU), north_of(BENGALURU, 10))

        self.assertEqual(eta["source"], "azure_maps")
        self.assertEqual(eta["eta_minutes"], 21)
        self.assertEqual(eta["distance_km"], 11.8)
        self.assertTrue(get.call_args.kwargs["params"]["query"].startswith(f"{BENGALURU[0]},"))


# ---------------------------------------------------------------------------
# Emergency dispatch
# ---------------------------------------------------------------------------

class TestEmergencyDispatch(CoreTestCase):
    """Emergency alerts with an escalating search radius."""

    def test_bengaluru_two_nearby_doctors_offline(self):
        """Two doctors 3 and 7 km away, both offline: both are recorded pending."""
        self.add_patient()
        self.add_provider("doc-3km", north_of(BENGALURU, 3))
        self.add_provider("doc-7km", north_of(BENGALURU, 7))

        alert = self.dispatcher.raise_alert(
            "patient-1", AlertKind.EMERGENCY, {"message": "Chest pain"}
        )

        self.assertEqual(alert.recipient_ids, ["doc-3km", "doc-7km"])
        for r in alert.recipients:
            self.assertIs(r.status, DeliveryStatus.PENDING)
            self.assertIsNotNone(r.eta_minutes)
        # Too few providers: searched at 10, 20 and 40 km
        self.assertEqual(alert.payload["search_attempts"], 3)
        self.assertEqual(alert.payload["search_radius_km"], 40)
        self.assertEqual(alert.payload["message"], "Chest pain")
        self.assertEqual(alert.payload["location"], {"lat": BENGALURU[0], "lon": BENGALURU[1]})

    def test_escalation_stops_once_enough_found(self):
        """Eleven doctors: one within 10 km, four within 20 km, stops at 20 km."""
        self.add_patient()
        self.add_provider("doc-5", north_of(BENGALURU, 5))
        for km in (12, 15, 18):
            self.add_provider(f"doc-{km}", north_of(BENGALURU, km))
        for km in (25, 30, 45, 50, 55, 60, 70):
            self.add_provider(f"doc-{km}", north_of(BENGALURU, km))

        alert = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)

        self.assertEqual(alert.payload["search_radius_km"], 20)
        self.assertEqual(alert.payload["search_attempts"], 2)
        self.assertEqual(alert.recipient_ids, ["doc-5", "doc-12", "doc-15", "doc-18"])

    def test_unavailable_doctor_skipped(self):
        self.add_patient()
        self.add_provider("busy", north_of(BENGALURU, 1))
        self.add_provider("free", north_of(BENGALURU, 2))
        self.directory.set_availability("busy", False)

        alert = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)
        self.assertEqual(alert.recipient_ids, ["free"])

    def test_explicit_location_overrides_profile(self):
        self.add_patient(location=(28.6139, 77.2090))  # Delhi on file
        self.add_provider("blr-doc", north_of(BENGALURU, 2))

        alert = self.dispatcher.raise_alert(
            "patient-1", AlertKind.EMERGENCY,
            location={"lat": BENGALURU[0], "lon": BENGALURU[1]},
        )
        self.assertEqual(alert.recipient_ids, ["blr-doc"])

    def test_no_location_rejected(self):
        self.add_patient(location=None)
        with self.assertRaises(InvalidCoordinate):
            self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)

    def test_no_providers_alert_still_stored(self):
        self.add_patient()
        alert = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)

        self.assertEqual(alert.recipients, [])
        stored = self.alerts.get_alert(alert.id)
        self.assertIsNotNone(stored)
        self.assertIs(stored.kind, AlertKind.EMERGENCY)

    def test_online_doctor_receives_emergency_event(self):
        self.add_patient()
        self.add_provider("doc-1", north_of(BENGALURU, 2))
        conn = FakeConnection()
        self.channel.subscribe("doc-1", conn)

        alert = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY, {"message": "Help"})

        received = conn.events(EVENT_EMERGENCY_ALERT)
        self.assertEqual(len(received), 1)
        self.assertEqual(received[0]["alert_id"], alert.id)
        self.assertEqual(received[0]["patient_id"], "patient-1")
        self.assertAlmostEqual(received[0]["distance_km"], 2, places=1)
        self.assertIs(alert.recipient("doc-1").status, DeliveryStatus.DELIVERED)

    def test_pharmacy_emergency(self):
        self.add_patient()
        self.add_provider("doc", north_of(BENGALURU, 1))
        self.add_provider("pharm", north_of(BENGALURU, 1), role=Role.PHARMACY)

        alert = self.dispatcher.raise_alert(
            "patient-1", AlertKind.EMERGENCY, {"role": "pharmacy"}
        )
        self.assertEqual(alert.recipient_ids, ["pharm"])
        self.assertEqual(alert.payload["provider_role"], "pharmacy")
        self.assertNotIn("appointment_id", alert.payload)
        today = datetime.now(timezone.utc)
        self.assertEqual(
            self.appointments.confirmed_between(today - timedelta(days=1), today + timedelta(days=1)), []
        )

    def test_dispatch_makes_no_route_calls(self):
        """ETAs are straight-line even when Azure Maps is configured."""
        self.geo._maps_enabled = True
        self.add_patient()
        self.add_provider("doc-1", north_of(BENGALURU, 10))

        with mock.patch("carealert.geo_matcher.requests.get") as get:
            alert = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)

        get.assert_not_called()
        self.assertEqual(alert.recipient("doc-1").eta_minutes, 26)

    def test_doctor_emergency_opens_confirmed_appointment(self):
        self.add_patient()
        self.add_provider("doc-near", north_of(BENGALURU, 2))
        self.add_provider("doc-far", north_of(BENGALURU, 6))
        conn = FakeConnection()
        self.channel.subscribe("doc-near", conn)

        alert = self.dispatcher.raise_alert(
            "patient-1", AlertKind.EMERGENCY, {"message": "Chest pain"}
        )

        appointment = self.appointments.get(alert.payload["appointment_id"])
        self.assertEqual(appointment.parties, ("patient-1", "doc-near"))
        self.assertIs(appointment.status, AppointmentStatus.CONFIRMED)
        self.assertIs(appointment.mode, ConsultationMode.ONLINE)
        self.assertTrue(appointment.is_emergency)
        self.assertEqual(appointment.description, "Chest pain")
        received = conn.events(EVENT_EMERGENCY_ALERT)
        self.assertEqual(received[0]["appointment_id"], appointment.id)

    def test_emergency_proceeds_when_appointment_cannot_be_stored(self):
        self.add_patient()
        self.add_provider("doc-1", north_of(BENGALURU, 2))

        with mock.patch.object(self.appointments, "create", side_effect=StorageError("disk full")):
            alert = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)

        self.assertEqual(alert.recipient_ids, ["doc-1"])
        self.assertNotIn("appointment_id", alert.payload)
        self.assertIsNotNone(self.alerts.get_alert(alert.id))

    def test_no_appointment_without_recipients(self):
        self.add_patient()
        alert = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)
        self.assertNotIn("appointment_id", alert.payload)


# ---------------------------------------------------------------------------
# Delivery and replay
# ---------------------------------------------------------------------------

class TestNotificationChannel(CoreTestCase):
    """Per-user delivery, replay on subscribe, and stale connections."""

    def _emergency_for(self, doctor_id="doc-1"):
        self.add_patient()
        self.add_provider(doctor_id, north_of(BENGALURU, 2))
        return self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)

    def test_pending_alert_replayed_on_subscribe(self):
        alert = self._emergency_for()
        self.assertIs(alert.recipient("doc-1").status, DeliveryStatus.PENDING)

        conn = FakeConnection()
        replayed = self.channel.subscribe("doc-1", conn)

        self.assertEqual(replayed, 1)
        self.assertEqual([d["alert_id"] for d in conn.events(EVENT_EMERGENCY_ALERT)], [alert.id])
        stored = self.alerts.get_alert(alert.id)
        self.assertIs(stored.recipient("doc-1").status, DeliveryStatus.DELIVERED)

        # Already delivered, so a second device gets nothing replayed
        second = FakeConnection()
        self.assertEqual(self.channel.subscribe("doc-1", second), 0)
        self.assertEqual(second.sent, [])

    def test_replay_is_most_recent_first(self):
        self.add_patient()
        self.add_provider("doc-1", north_of(BENGALURU, 2))
        first = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)
        second = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)

        conn = FakeConnection()
        self.channel.subscribe("doc-1", conn)

        ids = [d["alert_id"] for d in conn.events(EVENT_EMERGENCY_ALERT)]
        self.assertEqual(ids, [second.id, first.id])

    def test_overlapping_subscribes_each_get_full_replay(self):
        """A second device attaching mid-replay still receives every pending alert."""
        self.add_patient()
        self.add_provider("doc-1", north_of(BENGALURU, 2))
        first = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)
        second = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)

        laptop = FakeConnection()
        phone = SubscribingConnection(lambda: self.channel.subscribe("doc-1", laptop), at_write=2)
        self.channel.subscribe("doc-1", phone)

        for conn in (phone, laptop):
            ids = {d["alert_id"] for d in conn.events(EVENT_EMERGENCY_ALERT)}
            self.assertEqual(ids, {first.id, second.id})
        self.assertEqual(self.alerts.pending_for("doc-1"), [])

        # Both replays finished; a later device starts from the inbox again
        tablet = FakeConnection()
        self.assertEqual(self.channel.subscribe("doc-1", tablet), 0)

    def test_broadcast_to_role_reaches_online_doctors_only(self):
        self.add_patient()
        self.add_provider("doc-1", north_of(BENGALURU, 2))
        self.add_provider("doc-2", north_of(BENGALURU, 3))
        self.add_provider("pharm", north_of(BENGALURU, 1), role=Role.PHARMACY)
        doctor, pharmacy, patient = FakeConnection(), FakeConnection(), FakeConnection()
        self.channel.subscribe("doc-1", doctor)
        self.channel.subscribe("pharm", pharmacy)
        self.channel.subscribe("patient-1", patient)

        reached = self.channel.broadcast_to_role(
            Role.DOCTOR, "system_notice", {"text": "Maintenance at 22:00"}
        )

        self.assertEqual(reached, 1)
        notices = doctor.events(EVENT_NOTIFICATION)
        self.assertEqual(len(notices), 1)
        self.assertEqual(notices[0]["type"], "system_notice")
        self.assertEqual(notices[0]["data"], {"text": "Maintenance at 22:00"})
        self.assertEqual(pharmacy.sent, [])
        self.assertEqual(patient.sent, [])
        self.assertEqual(self.alerts.list_alerts(), [])

    def test_stale_connection_dropped_without_failing_publish(self):
        self.add_patient()
        self.add_provider("doc-1", north_of(BENGALURU, 2))
        good, dead = FakeConnection(), FakeConnection(fail=True)
        self.channel.subscribe("doc-1", good)
        self.channel.subscribe("doc-1", dead)

        alert = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)

        self.assertIs(alert.recipient("doc-1").status, DeliveryStatus.DELIVERED)
        self.assertEqual(len(good.events(EVENT_EMERGENCY_ALERT)), 1)
        self.assertEqual(
            [c.connection_id for c in self.registry.connections_for("doc-1")],
            [good.connection_id],
        )

    def test_all_connections_dead_leaves_pending(self):
        self.add_patient()
        self.add_provider("doc-1", north_of(BENGALURU, 2))
        self.channel.subscribe("doc-1", FakeConnection(fail=True))

        alert = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)

        self.assertIs(alert.recipient("doc-1").status, DeliveryStatus.PENDING)
        self.assertFalse(self.registry.is_online("doc-1"))

    def test_status_never_goes_backwards(self):
        alert = self._emergency_for()
        self.assertTrue(self.alerts.mark_read(alert.id, "doc-1"))
        self.assertFalse(self.alerts.mark_delivered(alert.id, "doc-1"))
        self.assertFalse(self.alerts.mark_read(alert.id, "doc-1"))

        stored = self.alerts.get_alert(alert.id).recipient("doc-1")
        self.assertIs(stored.status, DeliveryStatus.READ)
        self.assertIsNotNone(stored.delivered_at)
        self.assertIsNotNone(stored.read_at)

    def test_inbox_filters_by_status(self):
        alert = self._emergency_for()
        self.assertEqual(len(self.alerts.list_for_user("doc-1", status=DeliveryStatus.PENDING)), 1)
        self.channel.mark_read("doc-1", alert.id)
        self.assertEqual(self.alerts.list_for_user("doc-1", status=DeliveryStatus.PENDING), [])
        inbox = self.alerts.list_for_user("doc-1")
        self.assertEqual(len(inbox), 1)
        self.assertEqual(inbox[0].recipient_ids, ["doc-1"])

    def test_redeliver_pending_sweeps_online_users(self):
        alert = self._emergency_for()
        conn = FakeConnection()
        # Register without replay, as if the socket attached mid-publish
        self.registry.add("doc-1", conn)

        self.assertEqual(self.channel.redeliver_pending(), 1)
        self.assertEqual(self.channel.redeliver_pending(), 0)
        self.assertEqual(len(conn.events(EVENT_EMERGENCY_ALERT)), 1)
        self.assertEqual(self.dispatcher.redeliver(alert.id), 0)

    def test_registry_refuses_after_shutdown(self):
        self.registry.shutdown()
        with self.assertRaises(RegistryClosed):
            self.channel.subscribe("doc-1", FakeConnection())

    def test_shutdown_closes_connections(self):
        conn = FakeConnection()
        self.channel.subscribe("doc-1", conn)
        self.registry.shutdown()
        self.assertTrue(conn.closed)
        self.assertEqual(len(self.registry), 0)

    def test_unsubscribe_unknown_connection(self):
        self.assertIsNone(self.channel.unsubscribe(FakeConnection()))


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

class TestAppointmentNotifications(CoreTestCase):
    """Status-change alerts and reminders."""

    def setUp(self):
        super().setUp()
        self.add_patient()
        self.add_provider("doc-1", north_of(BENGALURU, 2))
        self.appointment = self.appointments.create(
            "patient-1", "doc-1", scheduled_at=self.now + timedelta(days=2)
        )

    def _reminder_timer(self):
        return [t for t in ManualTimer.created if not t.cancelled][-1]

    def test_status_change_notifies_both_parties_once(self):
        patient_conn, doctor_conn = FakeConnection(), FakeConnection()
        self.channel.subscribe("patient-1", patient_conn)
        self.channel.subscribe("doc-1", doctor_conn)

        old, appt = self.appointments.transition(self.appointment.id, AppointmentStatus.CONFIRMED)
        alert = self.notifier.on_status_change(appt.id, old, appt.status, changed_by="doc-1")

        self.assertEqual(set(alert.recipient_ids), {"patient-1", "doc-1"})
        self.assertEqual(len(self.alerts.list_alerts(kind=AlertKind.STATUS_CHANGE)), 1)
        for conn in (patient_conn, doctor_conn):
            events = conn.events(EVENT_NOTIFICATION)
            self.assertEqual(len(events), 1)
            self.assertEqual(events[0]["data"]["old_status"], "pending")
            self.assertEqual(events[0]["data"]["new_status"], "confirmed")

    def test_illegal_transition_rejected(self):
        with self.assertRaises(InvalidTransition):
            self.appointments.transition(self.appointment.id, AppointmentStatus.COMPLETED)
        self.assertIs(
            self.appointments.get(self.appointment.id).status, AppointmentStatus.PENDING
        )

    def test_unknown_appointment(self):
        with self.assertRaises(AppointmentNotFound):
            self.dispatcher.raise_alert(
                "system", AlertKind.STATUS_CHANGE, {"appointment_id": "APT-missing"}
            )
        with self.assertRaises(ValueError):
            self.dispatcher.raise_alert("system", AlertKind.APPOINTMENT_REMINDER, {})

    def test_reminder_fires_once(self):
        conn = FakeConnection()
        self.channel.subscribe("patient-1", conn)
        self.notifier.schedule_reminder(self.appointment.id, self.now + timedelta(hours=24))

        timer = self._reminder_timer()
        self.assertEqual(timer.delay, 24 * 3600)
        timer.fire()
        timer.fire()

        reminders = conn.events(EVENT_APPOINTMENT_REMINDER)
        self.assertEqual(len(reminders), 1)
        self.assertEqual(reminders[0]["appointment_id"], self.appointment.id)
        self.assertEqual(self.appointments.reminder_state(self.appointment.id), REMINDER_FIRED)
        self.assertFalse(self.notifier.cancel_reminder(self.appointment.id))

    def test_reminder_rearmed_when_alert_cannot_be_stored(self):
        self.notifier.retry_delay = 90
        self.notifier.schedule_reminder(self.appointment.id, self.now + timedelta(hours=24))
        timer = self._reminder_timer()

        with mock.patch.object(self.alerts, "create_alert", side_effect=StorageError("disk full")):
            timer.fire()

        self.assertEqual(self.appointments.reminder_state(self.appointment.id), REMINDER_SCHEDULED)
        self.assertEqual(self.scheduler.pending(), [f"reminder:{self.appointment.id}"])
        retry = self._reminder_timer()
        self.assertIsNot(retry, timer)
        self.assertEqual(retry.delay, 90)

        retry.fire()
        self.assertEqual(self.appointments.reminder_state(self.appointment.id), REMINDER_FIRED)
        self.assertEqual(len(self.alerts.list_alerts(kind=AlertKind.APPOINTMENT_REMINDER)), 1)

    def test_cancelled_reminder_never_fires(self):
        """Reminder for T+24h cancelled at T+1h: nothing is ever sent."""
        self.notifier.schedule_reminder(self.appointment.id, self.now + timedelta(hours=24))
        timer = ManualTimer.created[-1]

        self.now += timedelta(hours=1)
        self.assertTrue(self.notifier.cancel_reminder(self.appointment.id))
        self.assertTrue(timer.cancelled)

        # Even if the timer thread had already been released, the claim fails
        timer.fire()
        self.assertEqual(self.alerts.list_alerts(kind=AlertKind.APPOINTMENT_REMINDER), [])
        self.assertEqual(self.appointments.reminder_state(self.appointment.id), REMINDER_CANCELLED)

    def test_cancel_is_idempotent(self):
        self.assertFalse(self.notifier.cancel_reminder(self.appointment.id))
        self.notifier.schedule_reminder(self.appointment.id, self.now + timedelta(hours=3))
        self.assertTrue(self.notifier.cancel_reminder(self.appointment.id))
        self.assertFalse(self.notifier.cancel_reminder(self.appointment.id))

    def test_rescheduling_replaces_previous_reminder(self):
        self.notifier.schedule_reminder(self.appointment.id, self.now + timedelta(hours=3))
        first = ManualTimer.created[-1]
        self.notifier.schedule_reminder(self.appointment.id, self.now + timedelta(hours=5))

        self.assertTrue(first.cancelled)
        self.assertEqual(self.scheduler.pending(), [f"reminder:{self.appointment.id}"])

    def test_cancellation_status_cancels_reminder(self):
        old, appt = self.appointments.transition(self.appointment.id, AppointmentStatus.CONFIRMED)
        self.notifier.schedule_reminder(appt.id, self.now + timedelta(hours=3))
        old, appt = self.appointments.transition(appt.id, AppointmentStatus.CANCELLED)
        self.notifier.on_status_change(appt.id, old, appt.status)

        self.assertEqual(self.appointments.reminder_state(appt.id), REMINDER_CANCELLED)
        self.assertEqual(self.scheduler.pending(), [])

    def test_restore_reminders_rearms_stored(self):
        self.appointments.save_reminder(self.appointment.id, self.now + timedelta(hours=2))
        self.assertEqual(self.notifier.restore_reminders(), 1)
        ManualTimer.created[-1].fire()
        self.assertEqual(len(self.alerts.list_alerts(kind=AlertKind.APPOINTMENT_REMINDER)), 1)


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------

class TestSignaling(CoreTestCase):
    """Video-call relay and read receipts over the socket."""

    def setUp(self):
        super().setUp()
        self.add_patient()
        self.add_provider("doc-1", north_of(BENGALURU, 2))
        self.appointment = self.appointments.create("patient-1", "doc-1")
        self.events = EventDispatcher(self.channel, self.appointments)
        self.patient_conn, self.doctor_conn = FakeConnection(), FakeConnection()
        self.channel.subscribe("patient-1", self.patient_conn)

    def test_offer_relayed_to_other_party(self):
        self.channel.subscribe("doc-1", self.doctor_conn)
        handled = self.events.dispatch(
            "patient-1", self.patient_conn, VIDEO_CALL_OFFER,
            {"appointment_id": self.appointment.id, "sdp": "v=0"},
        )

        self.assertTrue(handled)
        relayed = self.doctor_conn.events(VIDEO_CALL_OFFER)
        self.assertEqual(len(relayed), 1)
        self.assertEqual(relayed[0]["from"], "patient-1")
        self.assertEqual(relayed[0]["sdp"], "v=0")

    def test_offline_peer_reported(self):
        self.events.dispatch(
            "patient-1", self.patient_conn, VIDEO_CALL_OFFER,
            {"appointment_id": self.appointment.id},
        )
        errors = self.patient_conn.events(EVENT_ERROR)
        self.assertEqual(errors[-1]["code"], "peer_offline")

    def test_outsider_rejected(self):
        outsider = FakeConnection()
        self.channel.subscribe("intruder", outsider)
        self.channel.subscribe("doc-1", self.doctor_conn)

        self.events.dispatch(
            "intruder", outsider, VIDEO_CALL_OFFER, {"appointment_id": self.appointment.id}
        )

        self.assertEqual(len(outsider.events(EVENT_ERROR)), 1)
        self.assertEqual(self.doctor_conn.events(VIDEO_CALL_OFFER), [])

    def test_alert_read_over_socket(self):
        self.channel.subscribe("doc-1", self.doctor_conn)
        alert = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)

        self.events.dispatch("doc-1", self.doctor_conn, EVENT_ALERT_READ, {"alert_id": alert.id})

        self.assertIs(
            self.alerts.get_alert(alert.id).recipient("doc-1").status, DeliveryStatus.READ
        )

    def test_chat_message_reaches_both_parties(self):
        self.channel.subscribe("doc-1", self.doctor_conn)

        self.events.dispatch(
            "patient-1", self.patient_conn, EVENT_SEND_MESSAGE,
            {"appointment_id": self.appointment.id, "message": "Running 5 min late"},
        )

        for conn in (self.patient_conn, self.doctor_conn):
            messages = conn.events(EVENT_NEW_MESSAGE)
            self.assertEqual(len(messages), 1)
            self.assertEqual(messages[0]["from"], "patient-1")
            self.assertEqual(messages[0]["from_name"], "Asha Rao")
            self.assertEqual(messages[0]["from_role"], "patient")
            self.assertEqual(messages[0]["message"], "Running 5 min late")
        self.assertEqual(
            self.patient_conn.events(EVENT_NEW_MESSAGE)[0]["id"],
            self.doctor_conn.events(EVENT_NEW_MESSAGE)[0]["id"],
        )

    def test_direct_message_and_missing_target(self):
        self.channel.subscribe("doc-1", self.doctor_conn)

        self.events.dispatch(
            "doc-1", self.doctor_conn, EVENT_SEND_MESSAGE, {"to": "patient-1", "message": "Hello"}
        )
        self.events.dispatch("doc-1", self.doctor_conn, EVENT_SEND_MESSAGE, {"message": "Hello?"})

        self.assertEqual(len(self.patient_conn.events(EVENT_NEW_MESSAGE)), 1)
        self.assertEqual(len(self.doctor_conn.events(EVENT_NEW_MESSAGE)), 1)
        self.assertEqual(len(self.doctor_conn.events(EVENT_ERROR)), 1)

    def test_outsider_cannot_chat_on_appointment(self):
        outsider = FakeConnection()
        self.channel.subscribe("intruder", outsider)

        self.events.dispatch(
            "intruder", outsider, EVENT_SEND_MESSAGE,
            {"appointment_id": self.appointment.id, "message": "hi"},
        )

        self.assertEqual(len(outsider.events(EVENT_ERROR)), 1)
        self.assertEqual(self.patient_conn.events(EVENT_NEW_MESSAGE), [])

    def test_typing_goes_to_peer_only(self):
        self.channel.subscribe("doc-1", self.doctor_conn)

        self.events.dispatch(
            "doc-1", self.doctor_conn, EVENT_TYPING,
            {"appointment_id": self.appointment.id, "is_typing": True},
        )

        typing = self.patient_conn.events(EVENT_USER_TYPING)
        self.assertEqual(len(typing), 1)
        self.assertEqual(typing[0]["from"], "doc-1")
        self.assertEqual(typing[0]["from_name"], "Provider doc-1")
        self.assertTrue(typing[0]["is_typing"])
        self.assertEqual(self.doctor_conn.events(EVENT_USER_TYPING), [])

    def test_emergency_location_shared_with_online_doctors(self):
        self.add_provider("pharm", north_of(BENGALURU, 1), role=Role.PHARMACY)
        pharmacy = FakeConnection()
        self.channel.subscribe("doc-1", self.doctor_conn)
        self.channel.subscribe("pharm", pharmacy)

        self.events.dispatch(
            "patient-1", self.patient_conn, EVENT_SHARE_LOCATION,
            {"is_emergency": True, "location": {"lat": BENGALURU[0], "lon": BENGALURU[1]}},
        )
        # Routine location updates are not broadcast
        self.events.dispatch(
            "patient-1", self.patient_conn, EVENT_SHARE_LOCATION,
            {"location": {"lat": BENGALURU[0], "lon": BENGALURU[1]}},
        )

        shared = self.doctor_conn.events(EVENT_EMERGENCY_LOCATION)
        self.assertEqual(len(shared), 1)
        self.assertEqual(shared[0]["patient_id"], "patient-1")
        self.assertEqual(shared[0]["patient_name"], "Asha Rao")
        self.assertEqual(shared[0]["location"], {"lat": BENGALURU[0], "lon": BENGALURU[1]})
        self.assertEqual(pharmacy.sent, [])

    def test_emergency_location_rejects_bad_coordinates(self):
        self.events.dispatch(
            "patient-1", self.patient_conn, EVENT_SHARE_LOCATION,
            {"is_emergency": True, "location": {"lat": 123, "lon": 0}},
        )
        self.assertEqual(len(self.patient_conn.events(EVENT_ERROR)), 1)

    def test_unknown_event_ignored(self):
        self.assertFalse(self.events.dispatch("patient-1", self.patient_conn, "bogus", {}))
        self.assertIn(EVENT_ALERT_READ, self.events.events)


# ---------------------------------------------------------------------------
# SMS fallback
# ---------------------------------------------------------------------------

class RecordingSms:
    def __init__(self):
        self.sent = []

    def send_emergency_alert(self, to, patient_name, location):
        self.sent.append((to, patient_name, location))
        return True


class TestSmsFallback(CoreTestCase):
    """Offline emergency recipients are texted; the alert stays pending."""

    def test_offline_doctor_gets_sms(self):
        sms = RecordingSms()
        self.channel.sms = sms
        self.add_patient()
        self.add_provider("doc-1", north_of(BENGALURU, 2), phone="+919800000002")

        alert = self.dispatcher.raise_alert("patient-1", AlertKind.EMERGENCY)

        self.assertEqual(len(sms.sent), 1)
        to, name, location = sms.sent[0]
        self.assertEqual(to, "+919800000002")
        self.assertEqual(name, "Asha Rao")
        self.assertEqual(location, {"lat": BENGALURU[0], "lon": BENGALURU[1]})
        self.assertIs(alert.recipient("doc-1").status, DeliveryStatus.PENDING)

    def test_no_sms_for_non_emergency(self):
        sms = RecordingSms()
        self.channel.sms = sms
        self.add_patient()
        self.add_provider("doc-1", north_of(BENGALURU, 2), phone="+919800000002")
        appointment = self.appointments.create("patient-1", "doc-1")

        self.notifier.on_status_change(
            appointment.id, AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED
        )
        self.assertEqual(sms.sent, [])

    def test_publish_kind_selects_sms_fallback(self):
        sms = RecordingSms()
        self.channel.sms = sms
        self.add_patient()
        self.add_provider("doc-1", north_of(BENGALURU, 2), phone="+919800000002")
        event = (EVENT_EMERGENCY_ALERT, {"patient_id": "patient-1", "location": None})

        self.assertFalse(self.channel.publish("doc-1", event, kind=AlertKind.STATUS_CHANGE))
        self.assertEqual(sms.sent, [])
        self.assertFalse(self.channel.publish("doc-1", event, kind=AlertKind.EMERGENCY))
        self.assertEqual(len(sms.sent), 1)

    def test_gateway_disabled_without_credentials(self):
        env = {"TWILIO_ACCOUNT_SID": "", "TWILIO_AUTH_TOKEN": "", "TWILIO_FROM_NUMBER": ""}
        with mock.patch.dict(os.environ, env):
            gateway = SmsGateway()
        self.assertFalse(gateway.enabled)
        self.assertFalse(gateway.send("+919800000002", "hello"))

    def test_gateway_posts_to_twilio(self):
        env = {
            "TWILIO_ACCOUNT_SID": "AC0123456789abcdef",
            "TWILIO_AUTH_TOKEN": "secret",
            "TWILIO_FROM_NUMBER": "+15550001111",
        }
        with mock.patch.dict(os.environ, env):
            gateway = SmsGateway()
        response = mock.Mock()
        response.json.return_value = {"sid": "SM1"}
        with mock.patch("carealert.sms_gateway.requests.post", return_value=response) as post:
            ok = gateway.send_emergency_alert("+919800000002", "Asha Rao", {"lat": 12.9716, "lon": 77.5946})

        self.assertTrue(ok)
        self.assertEqual(post.call_args.kwargs["data"]["To"], "+919800000002")
        self.assertIn("Asha Rao", post.call_args.kwargs["data"]["Body"])


# ---------------------------------------------------------------------------
# Run tests
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    print("=" * 60)
    print("  CAREALERT CORE — TEST SUITE")
    print("=" * 60)
    unittest.main(verbosity=2)
