from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from comms.config import config
from comms.database.models import Channel, Provider, ThreadStatus
from comms.handlers.escalation import OperatorFilter, send_draft_callback, ignore_callback
from comms.services import inbox_service, thread_service
from comms.services.transports import InboundMessage

from conftest import GUEST_PHONE, PROPERTY_PHONE, suggestion


class FakeCall:
    def __init__(self, data, user_id=5):
        self.data = data
        self.from_user = SimpleNamespace(id=user_id)
        self.answers = []
        self.edits = []
        self.message = SimpleNamespace(html_text="<b>Needs attention</b>", edit_text=self._edit)

    async def _edit(self, text, **kwargs):
        self.edits.append(text)

    async def answer(self, text=None, show_alert=False, **kwargs):
        self.answers.append((text, show_alert))


async def _escalated_thread(session, runtime, provider):
    provider.response = suggestion(needs_human=True)
    inbound = InboundMessage(
        channel=Channel.sms, provider=Provider.twilio, from_addr=GUEST_PHONE, to_addr=PROPERTY_PHONE,
        body_text="Can we bring a dog?", provider_message_id="SMdog",
    )
    outcome = await inbox_service.handle_inbound(
        session, runtime, inbound, now=datetime(2024, 6, 8, 2, 0, tzinfo=timezone.utc)
    )
    return outcome.thread_id


@pytest.mark.asyncio
async def test_send_button_sends_draft(async_session, runtime, provider, sms, seeded):
    thread_id = await _escalated_thread(async_session, runtime, provider)
    call = FakeCall(f"send:{thread_id}")

    await send_draft_callback(call, async_session, runtime)

    assert len(sms.sent) == 1
    assert "thread closed" in call.edits[0]
    thread = await thread_service.get_thread(async_session, thread_id)
    assert thread.status == ThreadStatus.closed.value
    assert thread.assigned_user_id == 5


@pytest.mark.asyncio
async def test_send_button_without_draft_alerts(async_session, runtime, seeded):
    thread = await thread_service.get_or_create_thread(async_session, seeded.stay_id)
    call = FakeCall(f"send:{thread.id}")

    await send_draft_callback(call, async_session, runtime)

    assert call.edits == []
    text, show_alert = call.answers[0]
    assert text.startswith("Not sent")
    assert show_alert is True


@pytest.mark.asyncio
async def test_ignore_button_closes_thread(async_session, runtime, provider, sms, seeded):
    thread_id = await _escalated_thread(async_session, runtime, provider)
    call = FakeCall(f"ignore:{thread_id}")

    await ignore_callback(call, async_session)

    assert sms.sent == []
    thread = await thread_service.get_thread(async_session, thread_id)
    assert thread.status == ThreadStatus.closed.value


@pytest.mark.asyncio
async def test_operator_filter(monkeypatch):
    event = SimpleNamespace(from_user=SimpleNamespace(id=6))
    assert await OperatorFilter()(event) is True

    monkeypatch.setattr(config, "OPERATOR_IDS", [5])
    assert await OperatorFilter()(event) is False
    assert await OperatorFilter()(SimpleNamespace(from_user=SimpleNamespace(id=5))) is True
