"""Twilio SMS transport"""

import base64
import hashlib
import hmac
import logging
import re
from typing import Optional, Mapping, Any

import aiohttp

from comms.database.models import Channel, Provider, MessageStatus
from comms.errors import TransportTransient, TransportPermanent
from comms.schemas.validation import TwilioSmsWebhook, TwilioStatusCallback
from .base import Transport, OutboundMessage, SendResult, InboundMessage, StatusUpdate

E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")

# Invalid "To", unreachable, opted out, not SMS capable...
PERMANENT_ERROR_CODES = {21211, 21214, 21408, 21606, 21610, 21612, 21614}

STATUS_MAP = {
    "accepted": MessageStatus.queued,
    "queued": MessageStatus.queued,
    "sending": MessageStatus.queued,
    "scheduled": MessageStatus.queued,
    "sent": MessageStatus.sent,
    "delivered": MessageStatus.delivered,
    "received": MessageStatus.delivered,
    "undelivered": MessageStatus.failed,
    "failed": MessageStatus.failed,
    "canceled": MessageStatus.failed,
}


def compute_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """X-Twilio-Signature: base64(HMAC-SHA1(url + sorted key/value pairs))"""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


class TwilioSmsTransport(Transport):
    channel = Channel.sms
    provider = Provider.twilio

    API_BASE = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        from_number: Optional[str],
        status_callback_url: Optional[str] = None,
        timeout: float = 15
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.status_callback_url = status_callback_url
        self.timeout = timeout

    @property
    def from_addr(self) -> Optional[str]:
        return self.from_number

    def is_available(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def validate_address(self, address: Optional[str]) -> bool:
        return bool(address) and bool(E164_RE.match(address))

    def validate_signature(self, url: str, params: Mapping[str, str], signature: Optional[str]) -> bool:
        if not signature or not self.auth_token:
            return False
        expected = compute_signature(self.auth_token, url, params)
        return hmac.compare_digest(expected, signature)

    async def send(self, message: OutboundMessage) -> SendResult:
        if not self.is_available():
            raise TransportPermanent("Twilio is not configured", provider=self.provider.value)

        url = f"{self.API_BASE}/Accounts/{self.account_sid}/Messages.json"
        data = {"To": message.to_addr, "From": self.from_number, "Body": message.body}
        if self.status_callback_url:
            data["StatusCallback"] = self.status_callback_url

        try:
            async with aiohttp.ClientSession(auth=aiohttp.BasicAuth(self.account_sid, self.auth_token)) as session:
                async with session.post(url, data=data, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                    status_code = response.status
                    payload = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise TransportTransient(f"Twilio request failed: {e}", provider=self.provider.value) from e

        if status_code >= 400:
            self._raise_for_error(status_code, payload or {})

        sid = (payload or {}).get("sid")
        if not sid:
            raise TransportTransient("Twilio response without sid", provider=self.provider.value)

        status = STATUS_MAP.get(payload.get("status"), MessageStatus.queued)
        if status == MessageStatus.delivered:
            status = MessageStatus.sent
        logging.info(f"Twilio accepted {sid} ({payload.get('status')})")
        return SendResult(sid, status)

    def _raise_for_error(self, status_code: int, payload: Mapping[str, Any]):
        code = payload.get("code")
        detail = payload.get("message") or f"HTTP {status_code}"
        text = f"Twilio error {code or status_code}: {detail}"

        if status_code == 429 or status_code >= 500:
            raise TransportTransient(text, provider=self.provider.value, code=str(code or status_code))
        if code in PERMANENT_ERROR_CODES or 400 <= status_code < 500:
            raise TransportPermanent(text, provider=self.provider.value, code=str(code or status_code))
        raise TransportTransient(text, provider=self.provider.value, code=str(code or status_code))

    def normalize_inbound(self, payload: Mapping[str, Any]) -> InboundMessage:
        data = TwilioSmsWebhook.model_validate(dict(payload))
        return InboundMessage(
            channel=self.channel,
            provider=self.provider,
            from_addr=data.From.strip(),
            to_addr=data.To.strip(),
            body_text=data.Body,
            provider_message_id=data.MessageSid,
        )

    def normalize_status(self, payload: Mapping[str, Any]) -> StatusUpdate:
        data = TwilioStatusCallback.model_validate(dict(payload))
        status = STATUS_MAP.get(data.MessageStatus.lower())
        if status is None:
            raise ValueError(f"Unknown Twilio status '{data.MessageStatus}'")

        error = None
        if status == MessageStatus.failed:
            error = data.ErrorMessage or (f"Twilio error {data.ErrorCode}" if data.ErrorCode else data.MessageStatus)
        return StatusUpdate(data.MessageSid, status, error)
