"""
Error Types
===========
Exceptions raised by the CareAlert core. The HTTP layer maps each of
these to a human-readable message; the exception text itself is meant
for logs only.
"""

from __future__ import annotations


class CareAlertError(Exception):
    """Base class for all CareAlert errors."""


class InvalidCoordinate(CareAlertError, ValueError):
    """Latitude/longitude missing, malformed, or out of range."""


class StorageError(CareAlertError):
    """The persistence layer could not complete a read or write."""


class UnknownUser(CareAlertError, LookupError):
    """No user exists with the given id."""


class AppointmentNotFound(CareAlertError, LookupError):
    """No appointment exists with the given id."""


class InvalidTransition(CareAlertError):
    """Requested appointment status change is not an edge of the state machine."""

    def __init__(self, old_status: str, new_status: str) -> None:
        super().__init__(f"Cannot move appointment from {old_status} to {new_status}")
        self.old_status = old_status
        self.new_status = new_status
