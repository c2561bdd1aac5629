"""Base transport interface"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Mapping, Any

from comms.database.models import Channel, Provider, MessageStatus, Direction


@dataclass(frozen=True)
class OutboundMessage:
    to_addr: str
    body: str
    subject: Optional[str] = None
    reply_to_message_id: Optional[str] = None


@dataclass(frozen=True)
class SendResult:
    """Provider accepted the message"""
    provider_message_id: str
    status: MessageStatus = MessageStatus.sent


@dataclass(frozen=True)
class InboundMessage:
    """Provider-independent inbound message"""
    channel: Channel
    provider: Provider
    from_addr: str
    to_addr: str
    body_text: str
    provider_message_id: Optional[str] = None
    subject: Optional[str] = None
    from_name: Optional[str] = None

    @property
    def direction(self) -> Direction:
        return Direction.inbound


@dataclass(frozen=True)
class StatusUpdate:
    provider_message_id: str
    status: MessageStatus
    error_message: Optional[str] = None


class Transport(ABC):
    """One outbound/inbound channel backed by a single provider"""

    channel: Channel
    provider: Provider

    @property
    @abstractmethod
    def from_addr(self) -> Optional[str]:
        """Sender identity used for outbound messages"""
        pass

    @abstractmethod
    def validate_address(self, address: Optional[str]) -> bool:
        pass

    @abstractmethod
    async def send(self, message: OutboundMessage) -> SendResult:
        """
        Hand a message to the provider.

        Raises TransportTransient for timeouts/throttling/5xx and
        TransportPermanent for rejected recipients or payloads.
        """
        pass

    @abstractmethod
    def normalize_inbound(self, payload: Mapping[str, Any]) -> InboundMessage:
        pass

    @abstractmethod
    def normalize_status(self, payload: Mapping[str, Any]) -> StatusUpdate:
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Credentials present"""
        pass

    @property
    def name(self) -> str:
        return f"{self.provider.value}_{self.channel.value}"
