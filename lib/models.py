"""SQLAlchemy models for members, conversations, messages and settings."""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

from lib.config import DEFAULT_OPTIN_MESSAGE, DEFAULT_SYSTEM_PROMPT

Base = declarative_base()

MEMBER_STATUSES = ("new", "invited", "active", "inactive", "suspended")
CHANNELS = ("web", "sms")
WEBHOOK_STATUSES = ("received", "processed", "failed", "error", "ignored")


class Member(Base):
    """Organization-scoped end user reachable by phone."""

    __tablename__ = "organization_users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, nullable=False, index=True)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=False, default="")
    phone = Column(String(20), nullable=False, index=True)
    status = Column(Enum(*MEMBER_STATUSES, name="member_status"), nullable=False, default="new")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    conversations = relationship("Conversation", back_populates="member")

    def __repr__(self) -> str:
        return f"<Member(id={self.id}, phone={self.phone}, status={self.status})>"


class Conversation(Base):
    """A thread of messages with one member (SMS) or one web user."""

    __tablename__ = "chats"
    __table_args__ = (
        CheckConstraint(
            "(organization_user_id IS NULL AND user_id IS NOT NULL) OR "
            "(organization_user_id IS NOT NULL AND user_id IS NULL)",
            name="ck_chats_single_counterparty",
        ),
        Index("ix_chats_member_activity", "organization_user_id", "last_activity_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_user_id = Column(Integer, ForeignKey("organization_users.id"), nullable=True)
    user_id = Column(Integer, nullable=True)
    channel = Column(Enum(*CHANNELS, name="chat_channel"), nullable=False, default="sms")
    title = Column(Text, nullable=False)
    last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    member = relationship("Member", back_populates="conversations")
    messages = relationship(
        "Message",
        back_populates="conversation",
        order_by="Message.id",
    )

    def check_counterparty(self) -> None:
        if (self.organization_user_id is None) == (self.user_id is None):
            raise ValueError("A conversation needs exactly one of a member or a web user")

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id}, channel={self.channel}, title={self.title!r})>"


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "(sms_batch_index IS NULL AND sms_batch_total IS NULL) OR "
            "(sms_batch_index IS NOT NULL AND sms_batch_total IS NOT NULL "
            "AND sms_batch_index >= 1 AND sms_batch_index <= sms_batch_total)",
            name="ck_messages_sms_batch",
        ),
        Index("ix_messages_chat_created", "chat_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=False)
    content = Column(Text, nullable=False)
    is_bot = Column(Boolean, nullable=False, default=False)
    is_error = Column(Boolean, nullable=False, default=False)
    sms_message_sid = Column(String(64), nullable=True, unique=True)
    sms_batch_index = Column(Integer, nullable=True)
    sms_batch_total = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    conversation = relationship("Conversation", back_populates="messages")

    def check_batch(self) -> None:
        index, total = self.sms_batch_index, self.sms_batch_total
        if (index is None) != (total is None):
            raise ValueError("sms_batch_index and sms_batch_total must be set together")
        if total is not None and not 1 <= index <= total:
            raise ValueError(f"Invalid SMS batch position {index}/{total}")

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, chat_id={self.chat_id}, is_bot={self.is_bot})>"


class AiSetting(Base):
    """Completion provider configuration, edited from the admin panel."""

    __tablename__ = "settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(Text, nullable=True)
    chat_model = Column(Text, nullable=True)
    output_tokens = Column(Integer, nullable=True)
    system_prompt = Column(Text, nullable=True, default=DEFAULT_SYSTEM_PROMPT)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class TwilioSetting(Base):
    __tablename__ = "twilio_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_sid = Column(Text, nullable=True)
    auth_token = Column(Text, nullable=True)
    phone_number = Column(Text, nullable=True)
    optin_message = Column(Text, nullable=True, default=DEFAULT_OPTIN_MESSAGE)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def is_complete(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.phone_number)


class TwilioLog(Base):
    """One row per inbound webhook; also the idempotency ledger."""

    __tablename__ = "twilio_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_sid = Column(String(64), nullable=False, unique=True)
    account_sid = Column(String(64), nullable=True, index=True)
    from_number = Column(String(32), nullable=False, index=True)
    to_number = Column(String(32), nullable=True)
    message_body = Column(Text, nullable=False, default="")
    message_type = Column(Enum("inbound", "outbound", name="twilio_message_type"), nullable=False, default="inbound")
    status = Column(Enum(*WEBHOOK_STATUSES, name="twilio_log_status"), nullable=False, default="received", index=True)
    error_message = Column(Text, nullable=True)
    num_media = Column(Integer, nullable=True, default=0)
    webhook_url = Column(String(512), nullable=True)
    is_test_message = Column(Boolean, nullable=False, default=False, index=True)
    processing_time_ms = Column(Integer, nullable=True)
    raw_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'messageSid': self.message_sid,
            'accountSid': self.account_sid,
            'fromNumber': self.from_number,
            'toNumber': self.to_number,
            'messageBody': self.message_body,
            'messageType': self.message_type,
            'status': self.status,
            'errorMessage': self.error_message,
            'numMedia': self.num_media,
            'isTestMessage': self.is_test_message,
            'processingTimeMs': self.processing_time_ms,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }
