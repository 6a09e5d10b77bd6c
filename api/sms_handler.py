import asyncio
import logging
import time
from dataclasses import dataclass, field
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from api.services.chat import ChatService, HistoryEntry
from api.services.opt_in import (
    ACTIVE_STATUS,
    OPTED_OUT_STATUS,
    STOP_CONFIRMATION,
    Classification,
    OptInState,
    classify,
    conversation_state,
    welcome_message,
)
from api.services.segmenter import Segment, split
from api.services.storage import StorageService, normalize_e164
from lib.config import DEFAULT_OPTIN_MESSAGE, Settings
from lib.database import Database
from lib.error_handler import (
    ConfigurationMissing,
    ErrorHandler,
    InvalidPayload,
    PersistenceError,
    UpstreamUnavailable,
)

logger = logging.getLogger(__name__)

# Result statuses
PROCESSED = 'processed'
FALLBACK = 'fallback'
OPTED_IN = 'opted_in'
OPTED_OUT = 'opted_out'
AWAITING_OPT_IN = 'awaiting_opt_in'
IGNORED = 'ignored'
DUPLICATE = 'duplicate'

MEDIA_NOT_SUPPORTED_MESSAGE = (
    "Sorry, I can only read text messages. Please describe your RV issue in a text."
)


def _first(webhook_data: Dict[str, Any], key: str) -> Optional[str]:
    """Form values arrive either flat or as lists (request.form.to_dict(flat=False))."""
    value = webhook_data.get(key)
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    return value


@dataclass
class InboundSMS:
    from_number: str
    to_number: Optional[str]
    body: str
    message_sid: str
    num_media: int = 0
    account_sid: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_webhook(cls, webhook_data: Dict[str, Any]) -> 'InboundSMS':
        from_number = _first(webhook_data, 'From')
        body = _first(webhook_data, 'Body')
        message_sid = _first(webhook_data, 'MessageSid') or _first(webhook_data, 'SmsMessageSid')

        missing = [
            name for name, value in (('From', from_number), ('Body', body), ('MessageSid', message_sid))
            if value is None or (name != 'Body' and not value.strip())
        ]
        if missing:
            raise InvalidPayload(f"Missing required webhook fields: {', '.join(missing)}")

        try:
            num_media = int(_first(webhook_data, 'NumMedia') or 0)
        except ValueError:
            raise InvalidPayload("NumMedia must be an integer")
        if not body.strip() and num_media == 0:
            raise InvalidPayload("Body is empty and the message has no media")

        try:
            from_number = normalize_e164(from_number)
        except ValueError:
            raise InvalidPayload(f"From is not a phone number: {from_number}")

        return cls(
            from_number=from_number,
            to_number=_first(webhook_data, 'To'),
            body=body,
            message_sid=message_sid.strip(),
            num_media=num_media,
            account_sid=_first(webhook_data, 'AccountSid'),
            raw={key: _first(webhook_data, key) for key in webhook_data},
        )


@dataclass
class WebhookResult:
    status: str
    to_number: str
    message_sid: str
    segments: List[Segment] = field(default_factory=list)
    outbound_message_ids: List[int] = field(default_factory=list)
    member_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'to': self.to_number,
            'messageSid': self.message_sid,
            'memberId': self.member_id,
            'segments': [segment.text for segment in self.segments],
        }


@dataclass
class _MemberView:
    """What the handler needs from the member row outside of a session."""
    id: int
    first_name: str
    status: str


class SMSHandler:
    """Drives one inbound SMS turn from webhook payload to stored reply segments.

    The handler never sends anything itself: the returned WebhookResult lists
    the segments for the caller to deliver, in order.
    """

    def __init__(self, database: Database, chat_service: ChatService, settings: Settings):
        self.database = database
        self.chat_service = chat_service
        self.settings = settings
        self.error_handler = ErrorHandler()

    async def handle_incoming_message(
        self,
        webhook_data: Dict[str, Any],
        is_test: bool = False,
        webhook_url: Optional[str] = None
    ) -> WebhookResult:
        """Handle incoming SMS webhook from Twilio"""
        started = time.monotonic()
        sms = InboundSMS.from_webhook(webhook_data)
        logger.info(f"Incoming SMS {sms.message_sid} from {sms.from_number}: {sms.body[:100]}")

        def log_webhook(store: StorageService, status: str, error: Optional[str] = None) -> None:
            store.record_webhook(
                message_sid=sms.message_sid,
                from_number=sms.from_number,
                to_number=sms.to_number,
                body=sms.body,
                status=status,
                account_sid=sms.account_sid,
                num_media=sms.num_media,
                error_message=error,
                webhook_url=webhook_url,
                is_test=is_test,
                processing_time_ms=int((time.monotonic() - started) * 1000),
                raw_payload=sms.raw,
            )

        # Read phase: nothing is held open while the completion runs
        with self.database.session_scope() as session:
            store = StorageService(session)
            if store.is_duplicate_delivery(sms.message_sid):
                logger.info(f"Duplicate delivery of {sms.message_sid}, skipping")
                return WebhookResult(DUPLICATE, sms.from_number, sms.message_sid)

            member_row = store.find_member_by_phone(sms.from_number)
            if member_row is None:
                logger.info(f"No organization user found for phone: {sms.from_number}")
                log_webhook(store, 'ignored', 'Phone number not registered with any organization')
                return WebhookResult(IGNORED, sms.from_number, sms.message_sid)

            member = _MemberView(member_row.id, member_row.first_name, member_row.status)
            history: List[HistoryEntry] = []
            conversation = store.latest_conversation(member_row)
            has_recent_conversation = (
                conversation is not None
                and store.is_recent(conversation, self.settings.inactivity_window)
            )
            if has_recent_conversation:
                history = [
                    HistoryEntry(m.content, m.is_bot, m.sms_batch_index, m.is_error)
                    for m in store.recent_history(conversation, self.settings.history_window)
                ]
            optin_prompt = None
            twilio_settings = store.get_twilio_settings()
            if twilio_settings is not None:
                optin_prompt = twilio_settings.optin_message

        state = conversation_state(member.status)
        decision = classify(member.status, sms.body)
        logger.info(f"Member {member.id} is {state.value}; message classified as {decision.value}")

        try:
            if decision == Classification.STOP:
                return self._finish_control_turn(
                    sms, member, OPTED_OUT_STATUS, STOP_CONFIRMATION, OPTED_OUT, log_webhook
                )

            if state == OptInState.OPTED_OUT:
                logger.info(f"Member {member.id} has opted out, ignoring message")
                return self._finish_control_turn(
                    sms, member, None, None, IGNORED, log_webhook, log_status='ignored'
                )

            if decision == Classification.OPT_IN:
                return self._finish_control_turn(
                    sms, member, ACTIVE_STATUS, welcome_message(member.first_name), OPTED_IN, log_webhook
                )

            if state == OptInState.AWAITING_OPT_IN and not self.settings.implicit_opt_in:
                logger.info(f"Member {member.id} has not opted in, re-sending opt-in prompt")
                return self._finish_control_turn(
                    sms, member, None, optin_prompt or DEFAULT_OPTIN_MESSAGE, AWAITING_OPT_IN, log_webhook
                )

            if not sms.body.strip():
                logger.info(f"Media-only message from member {member.id}, {sms.num_media} attachment(s)")
                return self._finish_control_turn(
                    sms, member, None, MEDIA_NOT_SUPPORTED_MESSAGE, PROCESSED, log_webhook
                )

            return await self._process_chat_message(
                sms, member, state, history, has_recent_conversation, log_webhook
            )
        except _ConcurrentDuplicate:
            return WebhookResult(DUPLICATE, sms.from_number, sms.message_sid)

    def _finish_control_turn(
        self,
        sms: InboundSMS,
        member: _MemberView,
        new_status: Optional[str],
        reply: Optional[str],
        result_status: str,
        log_webhook,
        log_status: str = 'processed'
    ) -> WebhookResult:
        """Opt-in, stop and ignored turns: status change plus at most one static segment."""
        with self._write_scope(sms) as store:
            if store is None:
                return WebhookResult(DUPLICATE, sms.from_number, sms.message_sid)
            if new_status is not None:
                row = store.get_member(member.id, for_update=True)
                store.set_member_status(row, new_status)
            log_webhook(store, log_status)

        segments = [Segment.single(reply)] if reply else []
        return WebhookResult(result_status, sms.from_number, sms.message_sid, segments, member_id=member.id)

    async def _process_chat_message(
        self,
        sms: InboundSMS,
        member: _MemberView,
        state: OptInState,
        history: List[HistoryEntry],
        has_recent_conversation: bool,
        log_webhook
    ) -> WebhookResult:
        is_error = False
        error_detail = None
        title = None
        try:
            title, reply = await self._generate(sms, history, has_recent_conversation)
        except ConfigurationMissing as e:
            reply = self.error_handler.handle_configuration_error(e)
            is_error, error_detail = True, e.message
        except UpstreamUnavailable as e:
            reply = self.error_handler.handle_upstream_error(e)
            is_error, error_detail = True, e.message

        segments = split(reply, self.settings.sms_segment_budget, self.settings.sms_hard_limit)

        outbound_ids = []
        with self._write_scope(sms) as store:
            if store is None:
                return WebhookResult(DUPLICATE, sms.from_number, sms.message_sid)
            row = store.get_member(member.id, for_update=True)
            if state == OptInState.AWAITING_OPT_IN:
                # First substantive reply counts as consent
                logger.info(f"Recording implicit opt-in for member {member.id}")
                store.set_member_status(row, ACTIVE_STATUS)

            conversation, _ = store.find_or_create_conversation(
                row,
                self.settings.inactivity_window,
                title or self.chat_service.fallback_title(sms.body)
            )
            store.append_message(conversation, sms.body, is_bot=False, sms_message_sid=sms.message_sid)
            for segment in segments:
                batched = segment.is_batched
                message = store.append_message(
                    conversation,
                    segment.body,
                    is_bot=True,
                    batch_index=segment.index if batched else None,
                    batch_total=segment.total if batched else None,
                    is_error=is_error,
                )
                outbound_ids.append(message.id)
            log_webhook(store, 'failed' if is_error else 'processed', error_detail)

        status = FALLBACK if is_error else PROCESSED
        logger.info(f"Chat message {sms.message_sid} processed: {status}, {len(segments)} segment(s)")
        return WebhookResult(status, sms.from_number, sms.message_sid, segments, outbound_ids, member.id)

    async def _generate(
        self,
        sms: InboundSMS,
        history: List[HistoryEntry],
        has_recent_conversation: bool
    ) -> Tuple[Optional[str], str]:
        """Reply text, plus a title when the message opens a new conversation. Both calls run at once."""
        if has_recent_conversation:
            return None, await self.chat_service.generate(history, sms.body)

        title, reply = await asyncio.gather(
            self.chat_service.generate_title(sms.body),
            self.chat_service.generate(history, sms.body),
            return_exceptions=True
        )
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(title, BaseException):
            logger.warning(f"Title generation failed for {sms.message_sid}: {str(title)}")
            title = None
        return title, reply

    @contextmanager
    def _write_scope(self, sms: InboundSMS) -> Iterator[Optional[StorageService]]:
        """
        Transaction for the write phase of a turn.

        Yields None when another request logged the same provider id while
        this one was generating, and turns a commit that trips the unique
        provider id into _ConcurrentDuplicate.
        """
        try:
            with self.database.session_scope() as session:
                store = StorageService(session)
                if store.is_duplicate_delivery(sms.message_sid):
                    logger.info(f"{sms.message_sid} was processed concurrently, skipping write")
                    yield None
                    return
                yield store
        except PersistenceError as e:
            if isinstance(e.__cause__, IntegrityError) and self._already_recorded(sms.message_sid):
                raise _ConcurrentDuplicate(sms.message_sid) from e
            raise

    def _already_recorded(self, message_sid: str) -> bool:
        with self.database.session_scope() as session:
            return StorageService(session).is_duplicate_delivery(message_sid)


class _ConcurrentDuplicate(Exception):
    pass
