"""
Wasiliana SMS gateway client.

Sends OTP messages over the Wasiliana bulk SMS HTTP API. Every failure mode
(non-2xx status, timeout, transport error, unreadable body) is reported as an
unsuccessful SMSResult instead of an exception, so callers have a single
branch to run their compensation on.
"""

import logging
from typing import Optional

import httpx

from src.config import settings
from src.models.internal_models import SMSResult
from src.utils.phone import mask_phone

logger = logging.getLogger(__name__)

SEND_PATH = "/api/v1/send/sms"


class WasilianaSMSClient:
    """SMS gateway backed by the Wasiliana API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sender_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the SMS client.

        Args:
            base_url: Wasiliana API base URL
            api_key: API key sent in the ApiKey header
            sender_id: Registered sender name
            timeout: Request timeout in seconds, covering connect and read
            transport: Optional httpx transport, used by tests
        """
        self.base_url = (base_url or settings.sms_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.sms_api_key
        self.sender_id = sender_id or settings.sms_sender_id
        self.timeout = timeout or settings.sms_timeout_seconds
        self._transport = transport

    async def send(self, recipient: str, message: str) -> SMSResult:
        """
        Send a single SMS.

        Args:
            recipient: Phone number in 254XXXXXXXXX form
            message: Message body

        Returns:
            SMSResult with provider reference on success, reason on failure
        """
        url = f"{self.base_url}{SEND_PATH}"
        payload = {
            "recipients": [recipient],
            "message": message,
            "from": self.sender_id,
        }
        headers = {"Content-Type": "application/json", "ApiKey": self.api_key}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                logger.info(f"Sending SMS to {mask_phone(recipient)}")
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()

                reference = None
                try:
                    body = response.json()
                    if isinstance(body, dict):
                        data = body.get("data")
                        reference = body.get("id") or body.get("message_id") or (
                            data.get("id") if isinstance(data, dict) else None
                        )
                except ValueError:
                    logger.warning("SMS gateway returned a non-JSON success body")

                logger.info(f"SMS accepted for {mask_phone(recipient)}, reference={reference}")
                return SMSResult(success=True, provider_reference=str(reference) if reference else None)

        except httpx.TimeoutException as e:
            logger.error(f"Timeout sending SMS to {mask_phone(recipient)}: {e}")
            return SMSResult(success=False, reason=f"SMS gateway timed out after {self.timeout}s")
        except httpx.HTTPStatusError as e:
            logger.error(f"SMS gateway rejected message to {mask_phone(recipient)}: {e.response.status_code}")
            return SMSResult(
                success=False,
                reason=f"SMS API error: {e.response.status_code} - {e.response.text[:200]}"
            )
        except httpx.HTTPError as e:
            logger.error(f"Transport error sending SMS to {mask_phone(recipient)}: {e}")
            return SMSResult(success=False, reason=f"SMS transport error: {e}")


def signup_message(otp_code: str, ttl_minutes: int) -> str:
    return f"Welcome to SmartPlanner! Your signup code: {otp_code}. Valid for {ttl_minutes} minutes."


def login_message(otp_code: str, ttl_minutes: int) -> str:
    return f"SmartPlanner login code: {otp_code}. Valid for {ttl_minutes} minutes."
