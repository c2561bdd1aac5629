import re
from typing import Optional, List, Literal

from pydantic import BaseModel, Field, field_validator, ConfigDict

HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
EMAIL_ADDR_RE = re.compile(r"<([^<>]+)>")


def _check_hhmm(v):
    if v is None:
        return v
    v = str(v).strip()
    if len(v) == 4 and v[1] == ":":
        v = "0" + v
    assert HHMM_RE.match(v), "Must be HH:MM (24h)"
    return v


# ========== Suggestion (external language model output) ==========

class Suggestion(BaseModel):
    model_config = ConfigDict(extra="ignore")

    intent: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    needs_human: bool = False
    auto_reply_ok: bool = False
    reply_channel: Literal["sms", "email"]
    reply_text: str = ""
    reply_subject: Optional[str] = None
    internal_note: Optional[str] = None

    @field_validator('intent', mode='before')
    def normalize_intent(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
        return v


# ========== Provider webhooks ==========

class TwilioSmsWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    MessageSid: str = Field(min_length=1)
    From: str = Field(min_length=1)
    To: str = Field(min_length=1)
    Body: str = ""


class TwilioStatusCallback(BaseModel):
    model_config = ConfigDict(extra="ignore")

    MessageSid: str = Field(min_length=1)
    MessageStatus: str
    ErrorCode: Optional[str] = None
    ErrorMessage: Optional[str] = None


class MailChannelsInbound(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    from_: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    subject: Optional[str] = None
    text: str = ""
    messageId: Optional[str] = None

    @field_validator('to', mode='before')
    def first_recipient(cls, v):
        if isinstance(v, list):
            v = v[0] if v else ""
        return v


class MailChannelsEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str
    message_id: str = Field(min_length=1)
    reason: Optional[str] = None


def split_email_address(raw: str):
    """'Jane Doe <jane@example.com>' -> ('jane@example.com', 'Jane Doe')"""
    match = EMAIL_ADDR_RE.search(raw)
    if match:
        name = raw[:match.start()].strip().strip('"') or None
        return match.group(1).strip().lower(), name
    return raw.strip().lower(), None


# ========== Reply API ==========

class ManualReply(BaseModel):
    channel: Literal["sms", "email"]
    body: str = Field(min_length=1)
    subject: Optional[str] = None
    resolve: bool = False  # close the thread instead of leaving it open
    user_id: Optional[int] = None


# ========== Settings updates ==========

class AutomationSettingsModel(BaseModel):
    auto_reply_enabled: bool = True
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "08:00"
    escalation_intents: List[str] = Field(default_factory=lambda: ["refund", "payment", "complaint"])

    @field_validator('quiet_hours_start', 'quiet_hours_end', mode='before')
    def validate_time(cls, v):
        return _check_hhmm(v)

    @field_validator('escalation_intents', mode='before')
    def normalize_intents(cls, v):
        if isinstance(v, str):
            v = v.split(",")
        return [str(item).strip().lower() for item in v if str(item).strip()]


class PropertySettingsModel(BaseModel):
    auto_reply_enabled: bool = True
    sms_enabled: bool = True
    email_enabled: bool = True
    schedule_t3_time: str = "10:00"
    schedule_t1_time: str = "16:00"
    schedule_day_of_time: str = "09:00"
    checkin_time: str = "14:00"
    checkout_time: str = "10:00"

    @field_validator(
        'schedule_t3_time', 'schedule_t1_time', 'schedule_day_of_time',
        'checkin_time', 'checkout_time', mode='before'
    )
    def validate_time(cls, v):
        return _check_hhmm(v)
