"""
Profile Directory
=================
Identity and provider profiles as seen by the dispatch core: role,
active flag, last-known location, and the provider attributes used for
matching (specialty, availability, rating).
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from carealert.database import Database
from carealert.errors import InvalidCoordinate, UnknownUser
from carealert.models import PROVIDER_ROLES, Location, Provider, Role, User

logger = logging.getLogger(__name__)


def _location(row: sqlite3.Row) -> Optional[Location]:
    if row["lat"] is None or row["lon"] is None:
        return None
    try:
        return Location(row["lat"], row["lon"])
    except InvalidCoordinate:
        logger.warning("User %s has a corrupt stored location; ignoring it.", row["id"])
        return None


def _user_from_row(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        role=Role(row["role"]),
        active=bool(row["active"]),
        location=_location(row),
        phone=row["phone"] or "",
    )


def _provider_from_row(row: sqlite3.Row) -> Provider:
    return Provider(
        id=row["id"],
        name=row["name"],
        role=Role(row["role"]),
        active=bool(row["active"]),
        location=_location(row),
        phone=row["phone"] or "",
        specialty=row["specialty"] or "",
        available=bool(row["available"]),
        service_radius_km=row["service_radius_km"],
        verified=bool(row["verified"]),
        rating=row["rating"] or 0.0,
    )


_PROVIDER_SELECT = """
    SELECT u.id, u.name, u.role, u.active, u.lat, u.lon, u.phone,
           p.specialty, p.available, p.service_radius_km, p.verified, p.rating
    FROM users u JOIN providers p ON p.user_id = u.id
"""


class ProfileDirectory:
    """Reads and writes user / provider profiles."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def save_user(self, user: User) -> User:
        """Insert or replace a user's identity row."""
        loc = user.location
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO users (id, name, role, active, lat, lon, phone, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name, role = excluded.role,
                    active = excluded.active, lat = excluded.lat,
                    lon = excluded.lon, phone = excluded.phone,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    user.id, user.name, user.role.value, int(user.active),
                    loc.lat if loc else None, loc.lon if loc else None,
                    user.phone,
                ),
            )
        return user

    def save_provider(self, provider: Provider) -> Provider:
        """Insert or replace a provider (identity row plus provider row)."""
        if provider.role not in PROVIDER_ROLES:
            raise ValueError(f"{provider.role.value} accounts cannot be providers")
        self.save_user(provider)
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO providers (
                    user_id, specialty, available, service_radius_km, verified, rating
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    provider.id, provider.specialty, int(provider.available),
                    provider.service_radius_km, int(provider.verified),
                    provider.rating,
                ),
            )
        logger.info("Provider %s (%s) saved.", provider.id, provider.role.value)
        return provider

    def get_user(self, user_id: str) -> Optional[User]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def require_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise UnknownUser(user_id)
        return user

    def get_provider(self, provider_id: str) -> Optional[Provider]:
        with self.db.connect() as conn:
            row = conn.execute(
                _PROVIDER_SELECT + " WHERE u.id = ?", (provider_id,)
            ).fetchone()
        return _provider_from_row(row) if row else None

    def list_active_providers(self, role: Role) -> list[Provider]:
        """Active providers of one role that have a usable location."""
        with self.db.connect() as conn:
            rows = conn.execute(
                _PROVIDER_SELECT
                + " WHERE u.role = ? AND u.active = 1"
                  " AND u.lat IS NOT NULL AND u.lon IS NOT NULL",
                (Role(role).value,),
            ).fetchall()
        providers = [_provider_from_row(r) for r in rows]
        return [p for p in providers if p.location is not None]

    def update_location(self, user_id: str, location: Location) -> None:
        with self.db.connect() as conn:
            cur = conn.execute(
                "UPDATE users SET lat = ?, lon = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (location.lat, location.lon, user_id),
            )
            changed = cur.rowcount
        if changed == 0:
            raise UnknownUser(user_id)

    def set_availability(self, provider_id: str, available: bool) -> None:
        with self.db.connect() as conn:
            cur = conn.execute(
                "UPDATE providers SET available = ? WHERE user_id = ?",
                (int(available), provider_id),
            )
            changed = cur.rowcount
        if changed == 0:
            raise UnknownUser(provider_id)

    def deactivate(self, user_id: str) -> None:
        """Soft-deactivate; users are never hard-deleted."""
        with self.db.connect() as conn:
            cur = conn.execute(
                "UPDATE users SET active = 0, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (user_id,),
            )
            changed = cur.rowcount
        if changed == 0:
            raise UnknownUser(user_id)
        logger.info("User %s deactivated.", user_id)
