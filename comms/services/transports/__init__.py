"""Provider transports for outbound/inbound guest messages"""

from .base import Transport, OutboundMessage, SendResult, InboundMessage, StatusUpdate
from .twilio import TwilioSmsTransport
from .mailchannels import MailChannelsEmailTransport

__all__ = [
    'Transport', 'OutboundMessage', 'SendResult', 'InboundMessage', 'StatusUpdate',
    'TwilioSmsTransport', 'MailChannelsEmailTransport',
]
