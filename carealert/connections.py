"""
Connection Registry
===================
Process-wide map of live client connections, keyed by user id. A user
may hold several connections at once (tabs, devices).

The registry is created at process start, handed to the notification
channel, and torn down at shutdown. Subscribe / unsubscribe arrive from
arbitrary connection-lifecycle threads, so every access goes through
one lock.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """What the core needs from a transport-level connection."""

    connection_id: str

    def send(self, event: str, data: dict) -> None:
        """Deliver one event. Raises on write failure."""

    def close(self) -> None:
        """Close the underlying transport."""


class RegistryClosed(RuntimeError):
    """The registry is not accepting subscriptions."""


class ConnectionRegistry:
    """Thread-safe ``user_id → {connection_id: connection}`` map."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._by_user: dict[str, dict[str, Connection]] = {}
        self._owner: dict[str, str] = {}
        self._open = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            self._open = True
        logger.info("Connection registry started.")

    def shutdown(self) -> None:
        """Stop accepting subscriptions and close every live connection."""
        with self._lock:
            self._open = False
            connections = [c for conns in self._by_user.values() for c in conns.values()]
            self._by_user.clear()
            self._owner.clear()

        for conn in connections:
            try:
                conn.close()
            except Exception as exc:
                logger.warning("Error closing connection %s: %s", conn.connection_id, exc)
        logger.info("Connection registry shut down (%d closed).", len(connections))

    @property
    def is_open(self) -> bool:
        return self._open

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add(self, user_id: str, conn: Connection) -> None:
        with self._lock:
            if not self._open:
                raise RegistryClosed("Connection registry is not running")
            previous = self._owner.get(conn.connection_id)
            if previous is not None and previous != user_id:
                self._by_user.get(previous, {}).pop(conn.connection_id, None)
            self._by_user.setdefault(user_id, {})[conn.connection_id] = conn
            self._owner[conn.connection_id] = user_id

    def remove(self, conn: Connection) -> Optional[str]:
        """Forget a connection. Returns its user id, or None if unknown."""
        with self._lock:
            user_id = self._owner.pop(conn.connection_id, None)
            if user_id is None:
                return None
            conns = self._by_user.get(user_id, {})
            conns.pop(conn.connection_id, None)
            if not conns:
                self._by_user.pop(user_id, None)
            return user_id

    def connections_for(self, user_id: str) -> list[Connection]:
        """Snapshot of a user's live connections."""
        with self._lock:
            return list(self._by_user.get(user_id, {}).values())

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return bool(self._by_user.get(user_id))

    def online_users(self) -> list[str]:
        with self._lock:
            return list(self._by_user)

    def __len__(self) -> int:
        with self._lock:
            return len(self._owner)
