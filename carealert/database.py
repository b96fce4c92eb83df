"""
CareAlert Database
==================
SQLite storage shared by the profile directory, the alert store, and
the appointment store.

Schema:
  users             — identity, role, active flag, last-known location
  providers         — doctor / pharmacy details keyed by user id
  alerts            — one row per raised alert (append-only)
  alert_recipients  — fixed recipient list with per-recipient delivery status
  appointments      — patient / provider pairing and lifecycle status
  reminders         — durable one-shot appointment reminders
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from dotenv import load_dotenv

from carealert.errors import StorageError

load_dotenv()
logger = logging.getLogger(__name__)

DB_PATH = Path(__file__).parent.parent / "data" / "carealert.db"

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    role        TEXT NOT NULL,
    active      INTEGER NOT NULL DEFAULT 1,
    lat         REAL,
    lon         REAL,
    phone       TEXT DEFAULT '',
    updated_at  TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS providers (
    user_id           TEXT PRIMARY KEY,
    specialty         TEXT DEFAULT '',
    available         INTEGER NOT NULL DEFAULT 1,
    service_radius_km REAL,
    verified          INTEGER NOT NULL DEFAULT 0,
    rating            REAL NOT NULL DEFAULT 0,
    FOREIGN KEY (user_id) REFERENCES users(id)
);

CREATE TABLE IF NOT EXISTS alerts (
    id              TEXT PRIMARY KEY,
    origin_user_id  TEXT NOT NULL,
    kind            TEXT NOT NULL,
    payload         TEXT NOT NULL DEFAULT '{}',
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS alert_recipients (
    alert_id      TEXT NOT NULL,
    recipient_id  TEXT NOT NULL,
    status        TEXT NOT NULL DEFAULT 'pending',
    distance_km   REAL,
    eta_minutes   INTEGER,
    delivered_at  TEXT,
    read_at       TEXT,
    PRIMARY KEY (alert_id, recipient_id),
    FOREIGN KEY (alert_id) REFERENCES alerts(id)
);

CREATE INDEX IF NOT EXISTS idx_recipients_inbox
    ON alert_recipients (recipient_id, status);

CREATE TABLE IF NOT EXISTS appointments (
    id            TEXT PRIMARY KEY,
    patient_id    TEXT NOT NULL,
    provider_id   TEXT NOT NULL,
    mode          TEXT NOT NULL,
    status        TEXT NOT NULL DEFAULT 'pending',
    scheduled_at  TEXT,
    is_emergency  INTEGER NOT NULL DEFAULT 0,
    description   TEXT DEFAULT '',
    created_at    TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at    TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS reminders (
    appointment_id  TEXT PRIMARY KEY,
    remind_at       TEXT NOT NULL,
    state           TEXT NOT NULL DEFAULT 'scheduled',
    updated_at      TEXT DEFAULT CURRENT_TIMESTAMP
);
"""


class Database:
    """Thin wrapper around a SQLite file.

    A fresh connection is opened per unit of work so the object can be
    shared freely between request threads, timer threads, and the
    socket layer.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialise the database and create tables if needed.

        Args:
            db_path: Optional custom path. Falls back to
                ``CAREALERT_DB_PATH`` and then the bundled data directory.
        """
        configured = db_path or os.getenv("CAREALERT_DB_PATH")
        self.db_path = Path(configured) if configured else DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            conn.executescript(SCHEMA)
        logger.info("CareAlert database ready at %s.", self.db_path)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection; commit on success, roll back on error.

        Raises:
            StorageError: on any sqlite3 failure.
        """
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=10)
        except sqlite3.Error as exc:
            logger.error("Cannot open database %s: %s", self.db_path, exc)
            raise StorageError(str(exc)) from exc

        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            logger.error("Database error: %s", exc)
            raise StorageError(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def clear(self) -> None:
        """Delete every row. Used for demos and tests."""
        with self.connect() as conn:
            for table in (
                "reminders", "appointments", "alert_recipients",
                "alerts", "providers", "users",
            ):
                conn.execute(f"DELETE FROM {table}")
        logger.info("CareAlert database cleared.")
