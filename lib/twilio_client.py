from dataclasses import dataclass
from typing import Callable, Dict, Optional
import asyncio
import logging

from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from lib.error_handler import AppError
from lib.executor import run_blocking

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    sid: str
    status: Optional[str] = None


class TwilioClient:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        phone_number: str,
        timeout: float = 10.0,
        client_factory: Callable[..., Client] = Client
    ):
        # The HTTP timeout bounds the SDK call itself; run_blocking bounds the wait for it
        self.client = client_factory(account_sid, auth_token, http_client=TwilioHttpClient(timeout=timeout))
        self.phone_number = phone_number
        self.timeout = timeout

    async def send_message(self, to_number: str, message: str) -> SendResult:
        """Send an SMS message and return its SID and delivery status."""
        try:
            # Run Twilio API call in a worker thread to prevent blocking
            sent = await run_blocking(
                lambda: self.client.messages.create(
                    body=message,
                    from_=self.phone_number,
                    to=to_number
                ),
                timeout=self.timeout
            )
            logger.info(f"Message sent successfully to {to_number}: {sent.sid}")
            return SendResult(sid=sent.sid, status=sent.status)
        except asyncio.TimeoutError:
            logger.error(f"Timed out sending message to {to_number}")
            raise AppError(f"Sending to {to_number} timed out after {self.timeout}s", status_code=504)
        except TwilioRestException as e:
            logger.error(f"Twilio error sending message: {str(e)}")
            if e.code == 21608:  # Unverified number
                raise AppError("This phone number is not verified with our test account.")
            elif e.code == 21211:  # Invalid phone number
                raise AppError("Invalid phone number format.")
            elif e.code == 21610:  # Recipient replied STOP at the carrier level
                raise AppError("This phone number has unsubscribed from our messages.")
            else:
                raise AppError(f"Failed to send message: {str(e)}")
        except Exception as e:
            logger.error(f"Unexpected error sending message to {to_number}: {str(e)}")
            raise AppError(f"An unexpected error occurred while sending the message: {str(e)}")


def validate_signature(auth_token: str, url: str, params: Dict[str, str], signature: str) -> bool:
    """Check the X-Twilio-Signature header against the request URL and form params."""
    if not signature:
        return False
    return RequestValidator(auth_token).validate(url, params, signature)
