"""MailChannels email transport"""

import logging
import re
import uuid
from typing import Optional, Mapping, Any

import aiohttp

from comms.database.models import Channel, Provider, MessageStatus
from comms.errors import TransportTransient, TransportPermanent
from comms.schemas.validation import MailChannelsInbound, MailChannelsEvent, split_email_address
from .base import Transport, OutboundMessage, SendResult, InboundMessage, StatusUpdate

EMAIL_RE = re.compile(r"^[^@\s<>]+@[^@\s<>]+\.[^@\s<>]+$")

EVENT_MAP = {
    "processed": MessageStatus.sent,
    "delivered": MessageStatus.delivered,
    "soft-bounced": MessageStatus.sent,
    "hard-bounced": MessageStatus.failed,
    "dropped": MessageStatus.failed,
}


class MailChannelsEmailTransport(Transport):
    channel = Channel.email
    provider = Provider.mailchannels

    API_URL = "https://api.mailchannels.net/tx/v1/send"

    def __init__(
        self,
        api_key: Optional[str],
        from_email: Optional[str],
        from_name: str = "Guest Support",
        timeout: float = 15
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout

    @property
    def from_addr(self) -> Optional[str]:
        return self.from_email

    def is_available(self) -> bool:
        return bool(self.api_key and self.from_email)

    def validate_address(self, address: Optional[str]) -> bool:
        return bool(address) and bool(EMAIL_RE.match(address))

    async def send(self, message: OutboundMessage) -> SendResult:
        if not self.is_available():
            raise TransportPermanent("MailChannels is not configured", provider=self.provider.value)

        # Our own id so delivery events can be matched back to the message
        message_id = f"<{uuid.uuid4().hex}@{self.from_email.split('@')[-1]}>"
        headers = {"Message-ID": message_id}
        if message.reply_to_message_id:
            headers["In-Reply-To"] = message.reply_to_message_id
            headers["References"] = message.reply_to_message_id

        payload = {
            "personalizations": [{"to": [{"email": message.to_addr}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": message.subject or "",
            "headers": headers,
            "content": [{"type": "text/plain", "value": message.body}],
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.API_URL,
                    json=payload,
                    headers={"X-Api-Key": self.api_key},
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    status_code = response.status
                    text = await response.text()
        except aiohttp.ClientError as e:
            raise TransportTransient(f"MailChannels request failed: {e}", provider=self.provider.value) from e

        if status_code == 429 or status_code >= 500:
            raise TransportTransient(
                f"MailChannels error {status_code}: {text[:200]}",
                provider=self.provider.value, code=str(status_code)
            )
        if status_code >= 400:
            raise TransportPermanent(
                f"MailChannels rejected message ({status_code}): {text[:200]}",
                provider=self.provider.value, code=str(status_code)
            )

        logging.info(f"MailChannels accepted {message_id}")
        return SendResult(message_id, MessageStatus.sent)

    def normalize_inbound(self, payload: Mapping[str, Any]) -> InboundMessage:
        data = MailChannelsInbound.model_validate(dict(payload))
        from_addr, from_name = split_email_address(data.from_)
        to_addr, _ = split_email_address(data.to)
        return InboundMessage(
            channel=self.channel,
            provider=self.provider,
            from_addr=from_addr,
            to_addr=to_addr,
            body_text=data.text,
            provider_message_id=data.messageId,
            subject=data.subject,
            from_name=from_name,
        )

    def normalize_status(self, payload: Mapping[str, Any]) -> StatusUpdate:
        data = MailChannelsEvent.model_validate(dict(payload))
        status = EVENT_MAP.get(data.event.lower())
        if status is None:
            raise ValueError(f"Unknown MailChannels event '{data.event}'")
        error = (data.reason or data.event) if status == MessageStatus.failed else None
        return StatusUpdate(data.message_id, status, error)
