import enum
from datetime import datetime, timezone
from typing import Optional, List
from sqlalchemy import String, Boolean, ForeignKey, Integer, Float, DateTime, JSON, Text, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func, text
from comms.database.core import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums
class CompanyStatus(str, enum.Enum):
    active = "active"
    suspended = "suspended"
    trial = "trial"

class PropertyStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"

class StayStatus(str, enum.Enum):
    booked = "booked"
    checked_in = "checked_in"
    checked_out = "checked_out"
    cancelled = "cancelled"

class PreferredChannel(str, enum.Enum):
    sms = "sms"
    email = "email"
    both = "both"

class ThreadStatus(str, enum.Enum):
    open = "open"
    needs_human = "needs_human"
    closed = "closed"

class Channel(str, enum.Enum):
    sms = "sms"
    email = "email"

class Provider(str, enum.Enum):
    twilio = "twilio"
    mailchannels = "mailchannels"

class Direction(str, enum.Enum):
    inbound = "inbound"
    outbound = "outbound"

class MessageKind(str, enum.Enum):
    guest = "guest"
    auto_reply = "auto_reply"
    staff_reply = "staff_reply"
    reminder = "reminder"

class MessageStatus(str, enum.Enum):
    received = "received"
    queued = "queued"
    sent = "sent"
    delivered = "delivered"
    failed = "failed"

class CreditType(str, enum.Enum):
    purchase = "purchase"
    sms_usage = "sms_usage"
    sms_manual_usage = "sms_manual_usage"
    email_usage = "email_usage"
    email_manual_usage = "email_manual_usage"
    trial_grant = "trial_grant"
    adjustment = "adjustment"
    refund = "refund"

class RuleKey(str, enum.Enum):
    T_MINUS_3 = "T_MINUS_3"
    T_MINUS_1 = "T_MINUS_1"
    DAY_OF = "DAY_OF"

class ReminderStatus(str, enum.Enum):
    sending = "sending"
    retry = "retry"
    sent = "sent"
    failed = "failed"
    cancelled = "cancelled"

class NotificationKind(str, enum.Enum):
    escalation = "escalation"
    auto_reply = "auto_reply"

class IntegrationLogStatus(str, enum.Enum):
    success = "success"
    partial = "partial"
    failed = "failed"


# 1. Company (tenant, owns the credit ledger)
class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[Optional[str]] = mapped_column(String, unique=True)
    status: Mapped[CompanyStatus] = mapped_column(String, default=CompanyStatus.trial.value)

    # Cached projection of credit_transactions, mutated only by ledger_service
    credit_balance: Mapped[int] = mapped_column(Integer, default=0)
    allow_negative_balance: Mapped[bool] = mapped_column(Boolean, default=False)
    trial_credits_granted: Mapped[bool] = mapped_column(Boolean, default=False)
    features_enabled: Mapped[dict] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    properties: Mapped[List["Property"]] = relationship(back_populates="company")
    automation_settings: Mapped[Optional["AutomationSettings"]] = relationship(back_populates="company", uselist=False)


# 2. Property
class Property(Base):
    __tablename__ = "properties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String)
    timezone: Mapped[str] = mapped_column(String, default="Australia/Sydney")
    address_text: Mapped[Optional[str]] = mapped_column(String)
    support_phone_e164: Mapped[Optional[str]] = mapped_column(String, index=True)
    support_email: Mapped[Optional[str]] = mapped_column(String, index=True)
    status: Mapped[PropertyStatus] = mapped_column(String, default=PropertyStatus.active.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    company: Mapped["Company"] = relationship(back_populates="properties")
    settings: Mapped[Optional["PropertySettings"]] = relationship(back_populates="property", uselist=False)
    stays: Mapped[List["Stay"]] = relationship(back_populates="property")


# 3. Per-property automation settings
class PropertySettings(Base):
    __tablename__ = "property_settings"

    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id", ondelete="CASCADE"), primary_key=True)
    auto_reply_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    sms_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    # Local wall-clock times "HH:MM" in the property's timezone
    schedule_t3_time: Mapped[str] = mapped_column(String(5), default="10:00")
    schedule_t1_time: Mapped[str] = mapped_column(String(5), default="16:00")
    schedule_day_of_time: Mapped[str] = mapped_column(String(5), default="09:00")
    checkin_time: Mapped[str] = mapped_column(String(5), default="14:00")
    checkout_time: Mapped[str] = mapped_column(String(5), default="10:00")

    property: Mapped["Property"] = relationship(back_populates="settings")


# 4. Company-wide automation settings
class AutomationSettings(Base):
    __tablename__ = "automation_settings"

    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), primary_key=True)
    auto_reply_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    confidence_threshold: Mapped[float] = mapped_column(Float, default=0.7)
    quiet_hours_start: Mapped[str] = mapped_column(String(5), default="22:00")
    quiet_hours_end: Mapped[str] = mapped_column(String(5), default="08:00")
    escalation_intents: Mapped[list] = mapped_column(JSON, default=lambda: ["refund", "payment", "complaint"])

    company: Mapped["Company"] = relationship(back_populates="automation_settings")


# 5. Stay
class Stay(Base):
    __tablename__ = "stays"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id", ondelete="CASCADE"), index=True)
    guest_name: Mapped[str] = mapped_column(String)
    guest_phone_e164: Mapped[Optional[str]] = mapped_column(String, index=True)
    guest_email: Mapped[Optional[str]] = mapped_column(String, index=True)
    checkin_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    checkout_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[StayStatus] = mapped_column(String, default=StayStatus.booked.value)
    preferred_channel: Mapped[PreferredChannel] = mapped_column(String, default=PreferredChannel.sms.value)
    notes_internal: Mapped[Optional[str]] = mapped_column(Text)
    is_placeholder: Mapped[bool] = mapped_column(Boolean, default=False)  # unmatched inbound sender
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    property: Mapped["Property"] = relationship(back_populates="stays")
    thread: Mapped[Optional["Thread"]] = relationship(back_populates="stay", uselist=False)
    reminder_jobs: Mapped[List["ReminderJob"]] = relationship(back_populates="stay")

    # One placeholder per unknown sender and property
    __table_args__ = (
        Index(
            "uq_stays_placeholder_phone", "property_id", "guest_phone_e164", unique=True,
            postgresql_where=text("is_placeholder"), sqlite_where=text("is_placeholder"),
        ),
        Index(
            "uq_stays_placeholder_email", "property_id", "guest_email", unique=True,
            postgresql_where=text("is_placeholder"), sqlite_where=text("is_placeholder"),
        ),
    )


# 6. Thread (one per stay)
class Thread(Base):
    __tablename__ = "threads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    stay_id: Mapped[int] = mapped_column(ForeignKey("stays.id", ondelete="CASCADE"), unique=True)
    status: Mapped[ThreadStatus] = mapped_column(String, default=ThreadStatus.open.value, index=True)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_channel: Mapped[Optional[Channel]] = mapped_column(String)
    assigned_user_id: Mapped[Optional[int]] = mapped_column(Integer)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=utcnow)

    stay: Mapped["Stay"] = relationship(back_populates="thread")
    messages: Mapped[List["Message"]] = relationship(back_populates="thread", order_by="Message.sequence")


# 7. Message (append-only, ordered by sequence within a thread)
class Message(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    thread_id: Mapped[int] = mapped_column(ForeignKey("threads.id", ondelete="CASCADE"))
    sequence: Mapped[int] = mapped_column(Integer)
    direction: Mapped[Direction] = mapped_column(String)
    channel: Mapped[Channel] = mapped_column(String)
    kind: Mapped[MessageKind] = mapped_column(String, default=MessageKind.guest.value)
    rule_key: Mapped[Optional[RuleKey]] = mapped_column(String)

    from_addr: Mapped[Optional[str]] = mapped_column(String)
    to_addr: Mapped[Optional[str]] = mapped_column(String)
    subject: Mapped[Optional[str]] = mapped_column(String)
    body_text: Mapped[str] = mapped_column(Text, default="")

    provider: Mapped[Optional[Provider]] = mapped_column(String)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String, unique=True)
    status: Mapped[MessageStatus] = mapped_column(String, default=MessageStatus.queued.value)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    attempts: Mapped[int] = mapped_column(Integer, default=0)

    # Deferred (quiet hours) outbound replies wait until this instant
    send_after: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)

    # Set once, when the ledger debit for this message succeeds
    credits_deducted: Mapped[Optional[int]] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    thread: Mapped["Thread"] = relationship(back_populates="messages")

    __table_args__ = (
        UniqueConstraint("thread_id", "sequence", name="uq_message_thread_sequence"),
    )


# 8. Credit ledger (append-only)
class CreditTransaction(Base):
    __tablename__ = "credit_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"))
    amount: Mapped[int] = mapped_column(Integer)  # signed: negative = usage
    type: Mapped[CreditType] = mapped_column(String)
    reference_type: Mapped[Optional[str]] = mapped_column(String)
    reference_id: Mapped[Optional[int]] = mapped_column(Integer)
    description: Mapped[Optional[str]] = mapped_column(String)
    balance_after: Mapped[int] = mapped_column(Integer)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String)
    created_by: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("company_id", "idempotency_key", name="uq_credit_txn_idempotency"),
        Index("ix_credit_txn_company_created", "company_id", "created_at"),
    )


class CreditConfig(Base):
    __tablename__ = "credit_config"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[int] = mapped_column(Integer)
    description: Mapped[Optional[str]] = mapped_column(String)


# 9. Message templates, versioned per (channel, rule_key)
class Template(Base):
    __tablename__ = "templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[Optional[int]] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"))  # NULL = platform default
    channel: Mapped[Channel] = mapped_column(String)
    rule_key: Mapped[str] = mapped_column(String)
    version: Mapped[int] = mapped_column(Integer, default=1)
    subject: Mapped[Optional[str]] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("company_id", "channel", "rule_key", "version", name="uq_template_version"),
    )


# 10. Reminder idempotency marker, one per (stay, rule, channel)
class ReminderJob(Base):
    __tablename__ = "reminder_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    stay_id: Mapped[int] = mapped_column(ForeignKey("stays.id", ondelete="CASCADE"))
    rule_key: Mapped[RuleKey] = mapped_column(String)
    channel: Mapped[Channel] = mapped_column(String)
    send_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[ReminderStatus] = mapped_column(String, default=ReminderStatus.sending.value)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    message_id: Mapped[Optional[int]] = mapped_column(ForeignKey("messages.id", ondelete="SET NULL"))
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=utcnow)

    stay: Mapped["Stay"] = relationship(back_populates="reminder_jobs")

    __table_args__ = (
        UniqueConstraint("stay_id", "rule_key", "channel", name="uq_reminder_stay_rule_channel"),
    )


# 11. Stored suggestions (latest per thread is the current draft)
class SuggestionDraft(Base):
    __tablename__ = "suggestion_drafts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    thread_id: Mapped[int] = mapped_column(ForeignKey("threads.id", ondelete="CASCADE"), index=True)
    message_id: Mapped[Optional[int]] = mapped_column(ForeignKey("messages.id", ondelete="SET NULL"))
    payload: Mapped[dict] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# 12. Escalation notification targets and their audit log
class IntegrationConfig(Base):
    __tablename__ = "integration_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), index=True)
    property_id: Mapped[Optional[int]] = mapped_column(ForeignKey("properties.id", ondelete="CASCADE"))  # NULL = whole company
    name: Mapped[str] = mapped_column(String, default="telegram")
    telegram_chat_ids: Mapped[list] = mapped_column(JSON, default=list)
    rate_limit_per_min: Mapped[int] = mapped_column(Integer, default=60)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_on_auto_reply: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class IntegrationLog(Base):
    __tablename__ = "integration_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    config_id: Mapped[Optional[int]] = mapped_column(ForeignKey("integration_configs.id", ondelete="SET NULL"))
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), index=True)
    thread_id: Mapped[Optional[int]] = mapped_column(ForeignKey("threads.id", ondelete="SET NULL"))
    kind: Mapped[NotificationKind] = mapped_column(String)
    status: Mapped[IntegrationLogStatus] = mapped_column(String)
    recipients: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
