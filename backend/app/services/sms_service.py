"""
SMS delivery for one-time login codes.
"""
import httpx
import logging
from app.core.config import settings

logger = logging.getLogger(__name__)


class SmsDeliveryError(Exception):
    """Raised when an SMS could not be sent."""


class LogSmsSender:
    """Development sender that writes messages to the log."""

    def send(self, phone_number: str, message: str):
        logger.info(f"SMS to ***{phone_number[-4:]}: {message}")


class TwilioSmsSender:
    """Twilio Messages API client."""

    def __init__(self, account_sid: str = None, auth_token: str = None, from_number: str = None,
                 api_url: str = None):
        self.account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number or settings.TWILIO_FROM_NUMBER
        self.api_url = (api_url or settings.TWILIO_API_URL).rstrip("/")

    def send(self, phone_number: str, message: str):
        if not self.account_sid or not self.auth_token:
            logger.error("TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN are not configured.")
            raise SmsDeliveryError("Twilio credentials are required")
        url = f"{self.api_url}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = httpx.post(
                url,
                data={"To": phone_number, "From": self.from_number, "Body": message},
                auth=(self.account_sid, self.auth_token),
                timeout=10.0,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Twilio API error {e.response.status_code}: {e.response.text}")
            raise SmsDeliveryError(f"Twilio HTTP error: {e.response.status_code}")
        except httpx.HTTPError as e:
            logger.error(f"Twilio network error: {e}")
            raise SmsDeliveryError(f"Twilio network error: {str(e)}")


def get_sms_sender():
    """Select the SMS sender from SMS_PROVIDER."""
    provider = settings.SMS_PROVIDER.lower()
    if provider == "twilio":
        return TwilioSmsSender()
    if provider == "log":
        return LogSmsSender()
    raise ValueError(f"Unknown SMS_PROVIDER: {settings.SMS_PROVIDER}")
