"""
Notification Channel
====================
Per-user real-time delivery on top of the connection registry and the
persisted alert inbox.

  - publish: push to every live connection of a recipient; on success
    the recipient's alert status moves pending → delivered.
  - subscribe: register a connection, replay the user's pending alerts
    most-recent-first, then keep the connection for live pushes.
  - A failed socket write marks that connection stale and drops it; it
    never fails the publish as a whole.

Alerts are always persisted before they are published, so an alert that
reaches no live connection is still waiting in the inbox.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional

from carealert.alert_store import AlertStore
from carealert.connections import Connection, ConnectionRegistry
from carealert.directory import ProfileDirectory
from carealert.errors import StorageError
from carealert.events import build_event, role_notification
from carealert.models import Alert, AlertKind, Role
from carealert.sms_gateway import SmsGateway

logger = logging.getLogger(__name__)

Event = tuple[str, dict]


class NotificationChannel:
    """Publish / subscribe delivery of alerts and live events."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        alerts: AlertStore,
        directory: Optional[ProfileDirectory] = None,
        sms: Optional[SmsGateway] = None,
    ) -> None:
        self.registry = registry
        self.alerts = alerts
        self.directory = directory
        self.sms = sms
        self._replay_lock = threading.RLock()
        # user_id -> connection_id -> alerts that connection is replaying
        self._replays: dict[str, dict[str, dict[str, Alert]]] = {}

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, user_id: str, connection: Connection) -> int:
        """Bind a connection to a user and replay the pending inbox.

        The connection is registered before the replay so nothing
        published in between is lost; such an alert may arrive twice,
        which clients de-duplicate by ``alert_id``. Alerts another
        connection of the same user is still replaying count as pending
        for this one, so overlapping subscribes each get the full replay.

        Returns:
            Number of alerts replayed to this connection.
        """
        self.registry.add(user_id, connection)
        logger.info("User %s subscribed (connection %s).", user_id, connection.connection_id)
        snapshot = self._start_replay(user_id, connection)
        try:
            replayed = self._replay(user_id, connection, snapshot)
        finally:
            self._finish_replay(user_id, connection)
        if replayed:
            logger.info("Replayed %d pending alert(s) to user %s.", replayed, user_id)
        return replayed

    def unsubscribe(self, connection: Connection) -> Optional[str]:
        user_id = self.registry.remove(connection)
        if user_id is not None:
            logger.info("User %s unsubscribed (connection %s).", user_id, connection.connection_id)
        return user_id

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def publish(
        self,
        recipient_id: str,
        event: Event,
        alert_id: Optional[str] = None,
        kind: Optional[AlertKind] = None,
    ) -> bool:
        """Push one event to every live connection of ``recipient_id``.

        Args:
            recipient_id: Target user.
            event: ``(event_name, data)``.
            alert_id: Stored alert this event belongs to, if any. Its
                recipient status is moved to ``delivered`` when at least
                one connection accepted the event.
            kind: Kind of the stored alert, if any. Emergencies
                additionally fall back to SMS when the recipient is offline.

        Returns:
            True if at least one live connection accepted the event.
        """
        name, data = event
        emergency = kind is not None and AlertKind(kind) is AlertKind.EMERGENCY
        delivered = self._send_all(recipient_id, self.registry.connections_for(recipient_id), name, data)

        if delivered and alert_id:
            self._mark_delivered(alert_id, recipient_id)
        elif not delivered:
            if emergency:
                logger.warning(
                    "Emergency alert %s: recipient %s offline, kept in inbox.",
                    alert_id, recipient_id,
                )
                self._sms_fallback(recipient_id, data)
            else:
                logger.info("Recipient %s offline; %s kept in inbox.", recipient_id, alert_id or name)
        return delivered

    def send_event(self, user_id: str, name: str, data: dict) -> bool:
        """Ephemeral push with no inbox (e.g. call signaling)."""
        return self._send_all(user_id, self.registry.connections_for(user_id), name, data)

    def broadcast_to_role(self, role: Role, kind: str, data: dict) -> int:
        """Send a ``notification`` to every online user with ``role``.

        Ephemeral like ``send_event``: nothing is stored for offline users.

        Returns:
            Number of users that received it.
        """
        name, payload = role_notification(kind, data)
        reached = self.send_event_to_role(role, name, payload)
        logger.info("Broadcast %s to %d online %s(s).", kind, reached, Role(role).value)
        return reached

    def send_event_to_role(self, role: Role, name: str, data: dict) -> int:
        """Ephemeral ``send_event`` to every online, active user with ``role``."""
        if self.directory is None:
            raise RuntimeError("role delivery needs a profile directory")
        role = Role(role)
        reached = 0
        for user_id in self.registry.online_users():
            user = self.directory.get_user(user_id)
            if user is None or user.role is not role or not user.active:
                continue
            if self.send_event(user_id, name, data):
                reached += 1
        return reached

    def mark_read(self, user_id: str, alert_id: str) -> bool:
        changed = self.alerts.mark_read(alert_id, user_id)
        if changed:
            logger.info("Alert %s read by %s.", alert_id, user_id)
        return changed

    def redeliver_pending(self) -> int:
        """Retry pending alerts for every user that is currently online."""
        total = 0
        for user_id in self.alerts.users_with_pending():
            connections = self.registry.connections_for(user_id)
            if connections:
                total += self._deliver_pending(user_id, connections)
        if total:
            logger.info("Redelivery sweep pushed %d pending alert(s).", total)
        return total

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start_replay(self, user_id: str, connection: Connection) -> list[Alert]:
        with self._replay_lock:
            snapshot = {a.id: a for a in self.alerts.pending_for(user_id)}
            for in_flight in self._replays.get(user_id, {}).values():
                for alert_id, alert in in_flight.items():
                    snapshot.setdefault(alert_id, alert)
            self._replays.setdefault(user_id, {})[connection.connection_id] = snapshot
        return sorted(snapshot.values(), key=lambda a: a.created_at, reverse=True)

    def _finish_replay(self, user_id: str, connection: Connection) -> None:
        with self._replay_lock:
            in_flight = self._replays.get(user_id, {})
            in_flight.pop(connection.connection_id, None)
            if not in_flight:
                self._replays.pop(user_id, None)

    def _replay(self, user_id: str, connection: Connection, alerts: list[Alert]) -> int:
        sent = 0
        for alert in alerts:
            name, data = build_event(alert, alert.recipients[0])
            if not self._send_all(user_id, [connection], name, data):
                break
            self._mark_delivered(alert.id, user_id)
            sent += 1
        return sent

    def _deliver_pending(self, user_id: str, connections: Iterable[Connection]) -> int:
        connections = list(connections)
        sent = 0
        for alert in self.alerts.pending_for(user_id):
            name, data = build_event(alert, alert.recipients[0])
            if not self._send_all(user_id, connections, name, data):
                break
            self._mark_delivered(alert.id, user_id)
            sent += 1
            connections = [c for c in connections if self._is_live(user_id, c)]
        return sent

    def _send_all(self, user_id: str, connections: list[Connection], name: str, data: dict) -> bool:
        delivered = False
        for conn in connections:
            try:
                conn.send(name, data)
                delivered = True
            except Exception as exc:
                logger.warning(
                    "Send of %s to %s (connection %s) failed: %s. Dropping stale connection.",
                    name, user_id, conn.connection_id, exc,
                )
                self.registry.remove(conn)
        return delivered

    def _is_live(self, user_id: str, conn: Connection) -> bool:
        return any(
            c.connection_id == conn.connection_id
            for c in self.registry.connections_for(user_id)
        )

    def _mark_delivered(self, alert_id: str, recipient_id: str) -> None:
        try:
            self.alerts.mark_delivered(alert_id, recipient_id)
        except StorageError as exc:
            # Stays pending and is replayed again later.
            logger.error("Could not mark alert %s delivered to %s: %s", alert_id, recipient_id, exc)

    def _sms_fallback(self, recipient_id: str, data: dict) -> None:
        if self.sms is None or self.directory is None:
            return
        user = self.directory.get_user(recipient_id)
        if user is None or not user.phone:
            return
        self.sms.send_emergency_alert(user.phone, data.get("patient_name", ""), data.get("location"))
