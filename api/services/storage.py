import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from lib.models import AiSetting, Conversation, Member, Message, TwilioLog, TwilioSetting

logger = logging.getLogger(__name__)


def normalize_e164(phone: str) -> str:
    """Normalize a phone number to E.164 (+ followed by digits)."""
    digits = re.sub(r'\D', '', phone or '')
    if not digits:
        raise ValueError("Phone number must contain digits")
    return f"+{digits}"


class StorageService:
    """Conversation store for one unit of work.

    Only this class creates or changes conversation and message rows. The
    caller owns the session and its transaction (see Database.session_scope).
    """

    def __init__(self, session: Session):
        self.session = session

    # Members

    def find_member_by_phone(self, phone: str, for_update: bool = False) -> Optional[Member]:
        query = select(Member).where(Member.phone == normalize_e164(phone)).order_by(Member.id)
        if for_update:
            query = query.with_for_update()
        return self.session.execute(query.limit(1)).scalar_one_or_none()

    def get_member(self, member_id: int, for_update: bool = False) -> Optional[Member]:
        query = select(Member).where(Member.id == member_id)
        if for_update:
            query = query.with_for_update()
        return self.session.execute(query).scalar_one_or_none()

    def set_member_status(self, member: Member, status: str) -> None:
        if member.status != status:
            logger.info(f"Member {member.id} status {member.status} -> {status}")
            member.status = status

    # Conversations

    def latest_conversation(self, member: Member) -> Optional[Conversation]:
        query = (
            select(Conversation)
            .where(Conversation.organization_user_id == member.id, Conversation.channel == 'sms')
            .order_by(Conversation.last_activity_at.desc(), Conversation.id.desc())
            .limit(1)
        )
        return self.session.execute(query).scalar_one_or_none()

    @staticmethod
    def is_recent(conversation: Conversation, inactivity_window: timedelta, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return now - conversation.last_activity_at <= inactivity_window

    def find_or_create_conversation(
        self,
        member: Member,
        inactivity_window: timedelta,
        title: str,
        now: Optional[datetime] = None
    ) -> Tuple[Conversation, bool]:
        """Reuse the member's latest SMS conversation unless it has gone quiet for longer than the window."""
        now = now or datetime.utcnow()
        conversation = self.latest_conversation(member)
        if conversation is not None and self.is_recent(conversation, inactivity_window, now):
            return conversation, False

        conversation = Conversation(
            organization_user_id=member.id,
            channel='sms',
            title=title,
            last_activity_at=now,
            created_at=now,
        )
        conversation.check_counterparty()
        self.session.add(conversation)
        self.session.flush()
        logger.info(f"Created new SMS chat {conversation.id} for member {member.id}: {title}")
        return conversation, True

    # Messages

    def append_message(
        self,
        conversation: Conversation,
        content: str,
        is_bot: bool,
        sms_message_sid: Optional[str] = None,
        batch_index: Optional[int] = None,
        batch_total: Optional[int] = None,
        is_error: bool = False,
        now: Optional[datetime] = None
    ) -> Message:
        now = now or datetime.utcnow()
        message = Message(
            chat_id=conversation.id,
            content=content,
            is_bot=is_bot,
            is_error=is_error,
            sms_message_sid=sms_message_sid,
            sms_batch_index=batch_index,
            sms_batch_total=batch_total,
            created_at=now,
        )
        message.check_batch()
        self.session.add(message)
        conversation.last_activity_at = now
        self.session.flush()
        return message

    def recent_history(self, conversation: Conversation, limit: int) -> List[Message]:
        """Last `limit` messages of the conversation, oldest first."""
        query = (
            select(Message)
            .where(Message.chat_id == conversation.id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
        )
        return list(reversed(self.session.execute(query).scalars().all()))

    def record_delivery(self, message_id: int, provider_sid: str) -> None:
        message = self.session.get(Message, message_id)
        if message is not None:
            message.sms_message_sid = provider_sid

    # Webhook log / idempotency

    def is_duplicate_delivery(self, message_sid: str) -> bool:
        logged = self.session.execute(
            select(TwilioLog.id).where(TwilioLog.message_sid == message_sid).limit(1)
        ).first()
        if logged is not None:
            return True
        stored = self.session.execute(
            select(Message.id).where(Message.sms_message_sid == message_sid).limit(1)
        ).first()
        return stored is not None

    def record_webhook(
        self,
        message_sid: str,
        from_number: str,
        to_number: Optional[str],
        body: str,
        status: str,
        account_sid: Optional[str] = None,
        num_media: int = 0,
        error_message: Optional[str] = None,
        webhook_url: Optional[str] = None,
        is_test: bool = False,
        processing_time_ms: Optional[int] = None,
        raw_payload: Optional[Dict[str, Any]] = None
    ) -> TwilioLog:
        log = TwilioLog(
            message_sid=message_sid,
            account_sid=account_sid,
            from_number=from_number,
            to_number=to_number,
            message_body=body or '',
            message_type='inbound',
            status=status,
            error_message=error_message,
            num_media=num_media,
            webhook_url=webhook_url,
            is_test_message=is_test,
            processing_time_ms=processing_time_ms,
            raw_payload=raw_payload,
        )
        self.session.add(log)
        self.session.flush()
        logger.info(f"Twilio webhook logged: {message_sid} ({status})")
        return log

    def list_webhook_logs(
        self,
        limit: int = 50,
        offset: int = 0,
        is_test: Optional[bool] = None,
        status: Optional[str] = None
    ) -> Tuple[List[TwilioLog], int]:
        query = select(TwilioLog)
        count_query = select(func.count(TwilioLog.id))
        if is_test is not None:
            query = query.where(TwilioLog.is_test_message == is_test)
            count_query = count_query.where(TwilioLog.is_test_message == is_test)
        if status:
            query = query.where(TwilioLog.status == status)
            count_query = count_query.where(TwilioLog.status == status)

        total = self.session.execute(count_query).scalar_one()
        logs = self.session.execute(
            query.order_by(TwilioLog.created_at.desc(), TwilioLog.id.desc()).limit(limit).offset(offset)
        ).scalars().all()
        return list(logs), total

    # Settings records

    def get_ai_settings(self) -> Optional[AiSetting]:
        return self.session.execute(select(AiSetting).order_by(AiSetting.id).limit(1)).scalar_one_or_none()

    def get_twilio_settings(self) -> Optional[TwilioSetting]:
        return self.session.execute(select(TwilioSetting).order_by(TwilioSetting.id).limit(1)).scalar_one_or_none()
