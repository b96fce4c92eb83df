"""
SMS Gateway Module
==================
Optional text-message fallback for emergency alerts whose recipient has
no live connection. Talks to the Twilio Messages REST API; without
credentials it only logs what would have been sent.
"""

from __future__ import annotations

import logging
import os

import requests
from dotenv import load_dotenv

load_dotenv()
logger = logging.getLogger(__name__)

TWILIO_API = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


class SmsGateway:
    """Sends plain-text SMS through Twilio.

    Attributes:
        account_sid: Twilio account SID.
        from_number: Sender phone number.
    """

    def __init__(self) -> None:
        """Initialise the gateway from environment credentials."""
        self.account_sid: str = os.getenv("TWILIO_ACCOUNT_SID", "")
        self._auth_token: str = os.getenv("TWILIO_AUTH_TOKEN", "")
        self.from_number: str = os.getenv("TWILIO_FROM_NUMBER", "")
        self._initialized = bool(
            self.account_sid.startswith("AC")
            and len(self.account_sid) > 10
            and self._auth_token
            and self.from_number
        )

        if not self._initialized:
            logger.warning(
                "Twilio credentials not configured. "
                "SMS fallback will only be logged."
            )
        else:
            logger.info("SMS gateway initialized (from=%s).", self.from_number)

    @property
    def enabled(self) -> bool:
        return self._initialized

    def send(self, to: str, message: str) -> bool:
        """Send one SMS.

        Args:
            to: Recipient phone number in E.164 format.
            message: Text body.

        Returns:
            True if Twilio accepted the message.
        """
        if not to:
            return False
        if not self._initialized:
            logger.info("SMS (not sent, gateway disabled) to %s: %s", to, message)
            return False

        try:
            response = requests.post(
                TWILIO_API.format(sid=self.account_sid),
                data={"To": to, "From": self.from_number, "Body": message},
                auth=(self.account_sid, self._auth_token),
                timeout=10,
            )
            response.raise_for_status()
            logger.info("SMS sent to %s (sid=%s).", to, response.json().get("sid"))
            return True
        except (requests.RequestException, ValueError) as exc:
            logger.error("SMS send error to %s: %s", to, exc)
            return False

    def send_emergency_alert(self, to: str, patient_name: str, location: dict) -> bool:
        where = (
            f"{location.get('lat'):.5f},{location.get('lon'):.5f}"
            if location else "an unknown location"
        )
        message = (
            f"🚨 EMERGENCY: Patient {patient_name or 'unknown'} needs immediate "
            f"medical attention at {where}. Please respond ASAP."
        )
        return self.send(to, message)
