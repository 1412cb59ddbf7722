"""OTP delivery providers.

The store generates the code; a provider only carries it to the phone.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Optional

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from phonevault.config import get_settings
from phonevault.errors import DeliveryFailed
from phonevault.identity.phone import mask_phone

logger = logging.getLogger(__name__)

MESSAGE_TEMPLATE = "Your Vault verification code is {code}"


class OtpDelivery(ABC):
    """Sends a verification code to a phone number."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name."""
        pass

    @abstractmethod
    async def send_code(self, phone: str, code: str) -> None:
        """Deliver `code` to `phone`.

        Raises:
            DeliveryFailed: If the provider did not accept the message
        """
        pass


class TwilioOtpDelivery(OtpDelivery):
    """SMS delivery through Twilio Programmable Messaging."""

    def __init__(self, account_sid: str, auth_token: str, from_number: str):
        if not account_sid or not auth_token:
            raise ValueError("Twilio credentials not configured")

        self.client = Client(account_sid, auth_token)
        self.from_number = from_number

    @property
    def name(self) -> str:
        return "twilio"

    async def send_code(self, phone: str, code: str) -> None:
        # The Twilio client is blocking
        try:
            message = await asyncio.to_thread(
                self.client.messages.create,
                body=MESSAGE_TEMPLATE.format(code=code),
                from_=self.from_number,
                to=phone,
            )
        except TwilioException as e:
            logger.error(f"[OTP][Twilio] Failed to send SMS to {mask_phone(phone)}: {e}")
            raise DeliveryFailed(f"SMS provider rejected the message: {e}")
        except OSError as e:
            logger.error(f"[OTP][Twilio] SMS provider unreachable for {mask_phone(phone)}: {e}")
            raise DeliveryFailed(f"SMS provider unreachable: {e}")

        logger.info(f"[OTP][Twilio] SMS sent to {mask_phone(phone)}, SID: {message.sid}")


class LoggingOtpDelivery(OtpDelivery):
    """Dry-run provider: logs delivery and keeps codes in memory.

    Codes are only kept for development and tests; they are never logged.
    """

    def __init__(self):
        self.sent: dict[str, list[str]] = defaultdict(list)
        self.fail_next = 0

    @property
    def name(self) -> str:
        return "logging"

    @property
    def send_count(self) -> int:
        return sum(len(codes) for codes in self.sent.values())

    def last_code(self, phone: str) -> Optional[str]:
        codes = self.sent.get(phone)
        return codes[-1] if codes else None

    async def send_code(self, phone: str, code: str) -> None:
        if self.fail_next:
            self.fail_next -= 1
            raise DeliveryFailed("simulated delivery failure")
        self.sent[phone].append(code)
        logger.info(f"[OTP][DryRun] Code issued for {mask_phone(phone)}")


# Cached provider instance
_delivery: Optional[OtpDelivery] = None


def get_otp_delivery() -> OtpDelivery:
    """Get the configured delivery provider."""
    global _delivery
    if _delivery is not None:
        return _delivery

    settings = get_settings()
    if settings.has_twilio and not settings.dry_run:
        _delivery = TwilioOtpDelivery(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
        )
    else:
        if not settings.dry_run:
            logger.warning("Twilio not configured - OTP codes will not be sent")
        _delivery = LoggingOtpDelivery()

    return _delivery


def reset_otp_delivery() -> None:
    """Drop the cached provider (useful for testing)."""
    global _delivery
    _delivery = None
