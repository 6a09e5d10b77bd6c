import logging
from typing import Callable, List
import asyncio

from twilio.rest import Client

from api.services.opt_in import INVITED_STATUS
from api.services.storage import StorageService
from lib.config import DEFAULT_OPTIN_MESSAGE, Settings
from lib.database import Database
from lib.error_handler import AppError, ConfigurationMissing
from lib.twilio_client import SendResult, TwilioClient

logger = logging.getLogger(__name__)


class SMSService:
    """Outbound side of the assistant: delivers stored reply segments and invitations."""

    def __init__(self, database: Database, settings: Settings, client_factory: Callable[..., Client] = Client):
        self.database = database
        self.settings = settings
        self.client_factory = client_factory

    def _twilio_client(self) -> TwilioClient:
        with self.database.session_scope() as session:
            twilio_settings = StorageService(session).get_twilio_settings()
            if twilio_settings is None or not twilio_settings.is_complete:
                raise ConfigurationMissing("Twilio credentials not configured")
            return TwilioClient(
                account_sid=twilio_settings.account_sid,
                auth_token=twilio_settings.auth_token,
                phone_number=twilio_settings.phone_number,
                timeout=self.settings.twilio_timeout,
                client_factory=self.client_factory
            )

    async def deliver(self, result) -> List[SendResult]:
        """
        Send the segments of a processed webhook, in order.

        Each part is awaited before the next one goes out, with a short pause
        between parts so carriers keep them in order. Stops at the first
        failed send and re-raises; the parts already sent keep their SIDs.
        """
        if not result.segments:
            return []

        client = self._twilio_client()
        sent: List[SendResult] = []
        try:
            for position, segment in enumerate(result.segments):
                if position and self.settings.sms_send_delay > 0:
                    await asyncio.sleep(self.settings.sms_send_delay)
                logger.info(
                    f"Sending part {segment.index}/{segment.total} to {result.to_number}: {segment.text[:20]}..."
                )
                sent.append(await client.send_message(result.to_number, segment.text))
        except AppError as e:
            logger.error(
                f"Delivery to {result.to_number} stopped after {len(sent)} of {len(result.segments)} part(s): {e.message}"
            )
            raise
        finally:
            self._record_sids(result.outbound_message_ids, sent)

        logger.info(f"Delivered {len(sent)} part(s) to {result.to_number}")
        return sent

    def _record_sids(self, message_ids: List[int], sent: List[SendResult]) -> None:
        if not message_ids or not sent:
            return
        with self.database.session_scope() as session:
            store = StorageService(session)
            for message_id, send_result in zip(message_ids, sent):
                store.record_delivery(message_id, send_result.sid)

    async def send_invite(self, member_id: int) -> SendResult:
        """Text the opt-in prompt to a member and mark them invited"""
        with self.database.session_scope() as session:
            store = StorageService(session)
            member = store.get_member(member_id)
            if member is None:
                raise AppError(f"Organization user {member_id} not found", status_code=404)
            twilio_settings = store.get_twilio_settings()
            prompt = (twilio_settings.optin_message if twilio_settings else None) or DEFAULT_OPTIN_MESSAGE
            phone = member.phone

        client = self._twilio_client()
        sent = await client.send_message(phone, prompt)

        with self.database.session_scope() as session:
            store = StorageService(session)
            store.set_member_status(store.get_member(member_id, for_update=True), INVITED_STATUS)
        logger.info(f"Invitation sent to member {member_id}: {sent.sid}")
        return sent
