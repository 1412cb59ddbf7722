"""One-time-passcode challenges and their delivery."""

from phonevault.otp.delivery import (
    LoggingOtpDelivery,
    OtpDelivery,
    TwilioOtpDelivery,
    get_otp_delivery,
)
from phonevault.otp.store import OtpChallengeStore

__all__ = [
    "LoggingOtpDelivery",
    "OtpChallengeStore",
    "OtpDelivery",
    "TwilioOtpDelivery",
    "get_otp_delivery",
]
