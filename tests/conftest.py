from datetime import datetime
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from comms.database.core import Base
import comms.database.models  # noqa: F401
from comms.database.models import CreditType, MessageStatus, PreferredChannel
from comms.runtime import Runtime
from comms.services import ledger_service, stay_service
from comms.services.channel_service import ChannelDispatcher
from comms.services.notification_service import NotificationService
from comms.services.suggestion_service import SuggestionProvider
from comms.services.transports import (
    TwilioSmsTransport, MailChannelsEmailTransport, OutboundMessage, SendResult
)

SYDNEY = ZoneInfo("Australia/Sydney")
PROPERTY_PHONE = "+61299990000"
PROPERTY_EMAIL = "stay@harbour.example"
GUEST_PHONE = "+61400111222"
GUEST_EMAIL = "jane@example.com"


def local(*args) -> datetime:
    """Aware datetime in the test property's timezone"""
    return datetime(*args, tzinfo=SYDNEY)


# ========== Fakes ==========

class FakeSmsTransport(TwilioSmsTransport):
    """Real Twilio parsing/validation, no network"""

    def __init__(self):
        super().__init__("ACtest", "twilio-token", PROPERTY_PHONE)
        self.sent: List[OutboundMessage] = []
        self.failures: List[Exception] = []

    async def send(self, message: OutboundMessage) -> SendResult:
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(message)
        return SendResult(f"SM{len(self.sent):06d}", MessageStatus.sent)


class FakeEmailTransport(MailChannelsEmailTransport):
    def __init__(self):
        super().__init__("mc-key", PROPERTY_EMAIL, from_name="Harbour Stays")
        self.sent: List[OutboundMessage] = []
        self.failures: List[Exception] = []

    async def send(self, message: OutboundMessage) -> SendResult:
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(message)
        return SendResult(f"<out-{len(self.sent)}@harbour.example>", MessageStatus.sent)


class FakeSuggestionProvider(SuggestionProvider):
    def __init__(self):
        self.response: Any = None
        self.error: Optional[Exception] = None
        self.requests: List[Dict[str, Any]] = []

    @property
    def name(self) -> str:
        return "fake"

    async def suggest(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response


class FakeBot:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.failing_chats = set()

    async def send_message(self, chat_id, text, parse_mode=None, reply_markup=None):
        if str(chat_id) in self.failing_chats:
            raise RuntimeError("chat not found")
        self.sent.append({"chat_id": str(chat_id), "text": text, "reply_markup": reply_markup})


async def no_sleep(_seconds):
    return None


def suggestion(**overrides) -> Dict[str, Any]:
    data = {
        "intent": "wifi",
        "confidence": 0.9,
        "needs_human": False,
        "auto_reply_ok": True,
        "reply_channel": "sms",
        "reply_text": "Hi {{guest_first_name}}, the wifi password is on the fridge.",
    }
    data.update(overrides)
    return data


# ========== Fixtures ==========

@pytest_asyncio.fixture
async def engine(tmp_path):
    # File database so separate sessions see each other's commits
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def sms():
    return FakeSmsTransport()


@pytest.fixture
def email():
    return FakeEmailTransport()


@pytest.fixture
def dispatcher(sms, email):
    return ChannelDispatcher({"sms": sms, "email": email}, max_attempts=3, backoff_seconds=0.01, sleep=no_sleep)


@pytest.fixture
def bot():
    return FakeBot()


@pytest.fixture
def provider():
    return FakeSuggestionProvider()


@pytest.fixture
def runtime(dispatcher, session_factory, bot, provider, sms):
    notifier = NotificationService(bot, session_factory, fallback_chat_id="1001", admin_url="https://admin.example")
    return Runtime(
        dispatcher=dispatcher,
        session_factory=session_factory,
        notifier=notifier,
        suggestion_provider=provider,
        twilio=sms,
    )


async def seed_company(session, balance: int = 100, name: str = "Harbour Stays"):
    company = await stay_service.create_company(session, name)
    if balance:
        await ledger_service.credit(session, company.id, balance, CreditType.purchase, description="Seed")
    return company


@pytest_asyncio.fixture
async def seeded(async_session):
    """Company with 100 credits, one Sydney property, one booked stay (check-in 10 Jun 2024 15:00)"""
    company = await seed_company(async_session)
    property = await stay_service.create_property(
        async_session, company.id, "Harbour View",
        timezone_name="Australia/Sydney",
        address_text="1 Harbour St, Sydney",
        support_phone_e164=PROPERTY_PHONE,
        support_email=PROPERTY_EMAIL,
    )
    stay = await stay_service.create_stay(
        async_session, property.id, "Jane Doe",
        checkin_at=local(2024, 6, 10, 15, 0),
        checkout_at=local(2024, 6, 13, 10, 0),
        guest_phone_e164=GUEST_PHONE,
        guest_email=GUEST_EMAIL,
        preferred_channel=PreferredChannel.sms,
    )
    return SimpleNamespace(company_id=company.id, property_id=property.id, stay_id=stay.id)
