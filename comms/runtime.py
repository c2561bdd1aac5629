from dataclasses import dataclass
from typing import Optional

from aiohttp import web

from comms.config import config
from comms.services.channel_service import ChannelDispatcher
from comms.services.notification_service import NotificationService
from comms.services.suggestion_service import SuggestionProvider, HttpSuggestionProvider
from comms.services.transports import TwilioSmsTransport, MailChannelsEmailTransport
from comms.database.models import Channel


@dataclass
class Runtime:
    """Collaborators shared by webhooks, the escalation bot and the scheduler"""
    dispatcher: ChannelDispatcher
    session_factory: object
    notifier: Optional[NotificationService] = None
    suggestion_provider: Optional[SuggestionProvider] = None
    twilio: Optional[TwilioSmsTransport] = None


RUNTIME_KEY = web.AppKey("runtime", Runtime)


def build_runtime(session_factory, bot=None) -> Runtime:
    """Wire transports and services from process configuration"""
    twilio = TwilioSmsTransport(
        config.TWILIO_ACCOUNT_SID,
        config.TWILIO_AUTH_TOKEN,
        config.TWILIO_FROM_NUMBER,
        status_callback_url=config.TWILIO_STATUS_CALLBACK_URL,
        timeout=config.SEND_TIMEOUT_SECONDS,
    )
    mailchannels = MailChannelsEmailTransport(
        config.MAILCHANNELS_API_KEY,
        config.MAILCHANNELS_FROM_EMAIL,
        from_name=config.MAILCHANNELS_FROM_NAME,
        timeout=config.SEND_TIMEOUT_SECONDS,
    )

    dispatcher = ChannelDispatcher(
        {Channel.sms: twilio, Channel.email: mailchannels},
        max_attempts=config.SEND_MAX_ATTEMPTS,
        backoff_seconds=config.SEND_BACKOFF_SECONDS,
        timeout_seconds=config.SEND_TIMEOUT_SECONDS,
    )

    notifier = NotificationService(
        bot,
        session_factory,
        fallback_chat_id=config.TELEGRAM_CHAT_ID,
        admin_url=config.ADMIN_URL,
    )

    provider = None
    if config.SUGGESTION_URL:
        provider = HttpSuggestionProvider(
            config.SUGGESTION_URL, config.SUGGESTION_API_KEY, timeout=config.SUGGESTION_TIMEOUT_SECONDS
        )

    return Runtime(
        dispatcher=dispatcher,
        session_factory=session_factory,
        notifier=notifier,
        suggestion_provider=provider,
        twilio=twilio,
    )
