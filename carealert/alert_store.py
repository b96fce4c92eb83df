"""
Alert Store
===========
Append-only alert records with a fixed recipient list. The only field
that ever changes is each recipient's delivery status, and it only
moves forward: pending → delivered → read.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from typing import Optional

from carealert.database import Database
from carealert.models import (
    Alert,
    AlertKind,
    AlertRecipient,
    DeliveryStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


def new_alert_id() -> str:
    return f"ALT-{uuid.uuid4().hex[:12].upper()}"


def _recipient_from_row(row: sqlite3.Row) -> AlertRecipient:
    return AlertRecipient(
        recipient_id=row["recipient_id"],
        status=DeliveryStatus(row["status"]),
        distance_km=row["distance_km"],
        eta_minutes=row["eta_minutes"],
        delivered_at=row["delivered_at"],
        read_at=row["read_at"],
    )


def _alert_from_row(row: sqlite3.Row, recipients: list[AlertRecipient]) -> Alert:
    try:
        payload = json.loads(row["payload"] or "{}")
    except (json.JSONDecodeError, TypeError):
        payload = {}
    return Alert(
        id=row["id"],
        origin_user_id=row["origin_user_id"],
        kind=AlertKind(row["kind"]),
        payload=payload,
        created_at=row["created_at"],
        recipients=recipients,
    )


class AlertStore:
    """Durable alert records and per-recipient inbox state."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_alert(self, alert: Alert) -> Alert:
        """Persist an alert and its recipients in one transaction.

        Raises:
            StorageError: if the write fails; nothing is stored then.
        """
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO alerts (id, origin_user_id, kind, payload, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    alert.id,
                    alert.origin_user_id,
                    alert.kind.value,
                    json.dumps(alert.payload),
                    alert.created_at,
                ),
            )
            conn.executemany(
                """
                INSERT INTO alert_recipients (
                    alert_id, recipient_id, status, distance_km, eta_minutes
                ) VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (
                        alert.id,
                        r.recipient_id,
                        DeliveryStatus.PENDING.value,
                        r.distance_km,
                        r.eta_minutes,
                    )
                    for r in alert.recipients
                ],
            )
        logger.info(
            "Alert %s (%s) stored with %d recipient(s).",
            alert.id, alert.kind.value, len(alert.recipients),
        )
        return alert

    def mark_delivered(self, alert_id: str, recipient_id: str) -> bool:
        """pending → delivered. Returns False if already delivered or read."""
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE alert_recipients
                SET status = 'delivered', delivered_at = ?
                WHERE alert_id = ? AND recipient_id = ? AND status = 'pending'
                """,
                (utcnow().isoformat(), alert_id, recipient_id),
            )
            return cur.rowcount > 0

    def mark_read(self, alert_id: str, recipient_id: str) -> bool:
        """pending/delivered → read. Returns False if already read or unknown."""
        now = utcnow().isoformat()
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE alert_recipients
                SET status = 'read',
                    delivered_at = COALESCE(delivered_at, ?),
                    read_at = ?
                WHERE alert_id = ? AND recipient_id = ?
                  AND status IN ('pending', 'delivered')
                """,
                (now, now, alert_id, recipient_id),
            )
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
            if row is None:
                return None
            recipients = conn.execute(
                "SELECT * FROM alert_recipients WHERE alert_id = ? ORDER BY rowid",
                (alert_id,),
            ).fetchall()
        return _alert_from_row(row, [_recipient_from_row(r) for r in recipients])

    def pending_for(self, user_id: str) -> list[Alert]:
        """Undelivered alerts addressed to ``user_id``, most recent first.

        Each returned alert carries only the caller's own recipient entry.
        """
        return self.list_for_user(user_id, status=DeliveryStatus.PENDING, limit=None)

    def list_for_user(
        self,
        user_id: str,
        status: Optional[DeliveryStatus] = None,
        limit: Optional[int] = 50,
    ) -> list[Alert]:
        """Inbox view for one user, most recent first."""
        query = """
            SELECT a.*, r.recipient_id, r.status, r.distance_km, r.eta_minutes,
                   r.delivered_at, r.read_at
            FROM alerts a
            JOIN alert_recipients r ON r.alert_id = a.id
            WHERE r.recipient_id = ?
        """
        params: list = [user_id]
        if status is not None:
            query += " AND r.status = ?"
            params.append(DeliveryStatus(status).value)
        query += " ORDER BY a.created_at DESC, a.rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self.db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_alert_from_row(row, [_recipient_from_row(row)]) for row in rows]

    def users_with_pending(self) -> list[str]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT recipient_id FROM alert_recipients WHERE status = 'pending'"
            ).fetchall()
        return [r["recipient_id"] for r in rows]

    def list_alerts(self, kind: Optional[AlertKind] = None, limit: int = 50) -> list[Alert]:
        """Audit listing across all users, most recent first."""
        query = "SELECT id FROM alerts"
        params: list = []
        if kind is not None:
            query += " WHERE kind = ?"
            params.append(AlertKind(kind).value)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        with self.db.connect() as conn:
            ids = [r["id"] for r in conn.execute(query, params).fetchall()]
        return [a for a in (self.get_alert(i) for i in ids) if a is not None]
