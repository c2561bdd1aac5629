import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, func

from comms.database.models import (
    Channel, IntegrationLog, Message, MessageKind, MessageStatus, Provider, Stay, ThreadStatus, CreditType
)
from comms.errors import NotFound, TransportPermanent
from comms.services import inbox_service, ledger_service, settings_service, suggestion_service, thread_service
from comms.services.transports import InboundMessage

from conftest import GUEST_PHONE, GUEST_EMAIL, PROPERTY_PHONE, PROPERTY_EMAIL, suggestion

NOON_SYDNEY = datetime(2024, 6, 8, 2, 0, tzinfo=timezone.utc)
LATE_SYDNEY = datetime(2024, 6, 8, 13, 0, tzinfo=timezone.utc)
NEXT_MORNING_SYDNEY = datetime(2024, 6, 8, 22, 5, tzinfo=timezone.utc)


def _sms(sid="SMin1", body="What's the wifi password?", from_addr=GUEST_PHONE, to_addr=PROPERTY_PHONE):
    return InboundMessage(
        channel=Channel.sms, provider=Provider.twilio,
        from_addr=from_addr, to_addr=to_addr, body_text=body, provider_message_id=sid,
    )


async def _logs(session):
    result = await session.execute(select(IntegrationLog))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_low_confidence_escalates_without_sending(async_session, runtime, provider, sms, bot, seeded):
    await settings_service.update_automation_settings(async_session, seeded.company_id, {"confidence_threshold": 0.6})
    provider.response = suggestion(confidence=0.40)

    outcome = await inbox_service.handle_inbound(async_session, runtime, _sms(), now=NOON_SYDNEY)

    assert outcome.status == "escalate"
    assert sms.sent == []
    thread = await thread_service.get_thread(async_session, outcome.thread_id)
    assert thread.status == ThreadStatus.needs_human.value

    logs = await _logs(async_session)
    assert len(logs) == 1
    assert logs[0].kind == "escalation"
    assert logs[0].status == "success"
    assert [m["chat_id"] for m in bot.sent] == ["1001"]
    assert await ledger_service.get_balance(async_session, seeded.company_id) == 100


@pytest.mark.asyncio
async def test_confident_reply_is_sent_and_charged(async_session, runtime, provider, sms, bot, seeded):
    provider.response = suggestion(confidence=0.70)

    outcome = await inbox_service.handle_inbound(async_session, runtime, _sms(), now=NOON_SYDNEY)

    assert outcome.status == "auto_reply"
    assert [m.body for m in sms.sent] == ["Hi Jane, the wifi password is on the fridge."]
    assert outcome.gate.message.kind == MessageKind.auto_reply.value
    assert outcome.gate.message.credits_deducted == 2
    assert await ledger_service.get_balance(async_session, seeded.company_id) == 98

    history = provider.requests[0]
    assert history["guest_name"] == "Jane Doe"
    assert [m["body"] for m in history["messages"]] == ["What's the wifi password?"]

    # No operator heads-up unless an integration opted in
    assert bot.sent == []
    assert await _logs(async_session) == []


@pytest.mark.asyncio
async def test_duplicate_webhook_is_processed_once(async_session, runtime, provider, sms, seeded):
    provider.response = suggestion()

    first = await inbox_service.handle_inbound(async_session, runtime, _sms(), now=NOON_SYDNEY)
    second = await inbox_service.handle_inbound(async_session, runtime, _sms(), now=NOON_SYDNEY)

    assert first.status == "auto_reply"
    assert second.status == "duplicate"
    assert second.message_id == first.message_id
    assert len(sms.sent) == 1
    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_quiet_hours_queue_the_reply(async_session, runtime, provider, sms, seeded):
    provider.response = suggestion()

    outcome = await inbox_service.handle_inbound(async_session, runtime, _sms(), now=LATE_SYDNEY)

    assert outcome.status == "defer"
    assert sms.sent == []
    queued = outcome.gate.message
    assert queued.status == MessageStatus.queued.value
    assert queued.body_text == "Hi Jane, the wifi password is on the fridge."

    thread = await thread_service.get_thread(async_session, outcome.thread_id)
    assert thread.status == ThreadStatus.open.value
    assert await ledger_service.get_balance(async_session, seeded.company_id) == 100


@pytest.mark.asyncio
async def test_quiet_hours_keep_one_pending_reply(async_session, runtime, provider, sms, seeded):
    provider.response = suggestion()

    first = await inbox_service.handle_inbound(async_session, runtime, _sms("SM1"), now=LATE_SYDNEY)
    second = await inbox_service.handle_inbound(
        async_session, runtime, _sms("SM2", "Also, where do we park?"), now=LATE_SYDNEY + timedelta(minutes=5)
    )
    assert first.status == second.status == "defer"

    sent = await runtime.dispatcher.flush_deferred(runtime.session_factory, now=NEXT_MORNING_SYDNEY)

    assert sent == [second.gate.message.id]
    assert len(sms.sent) == 1
    assert await ledger_service.get_balance(async_session, seeded.company_id) == 98
    replaced = await async_session.get(Message, first.gate.message.id, populate_existing=True)
    assert replaced.status == MessageStatus.failed.value


@pytest.mark.asyncio
async def test_staff_reply_drops_pending_auto_reply(async_session, runtime, provider, sms, seeded):
    provider.response = suggestion()
    outcome = await inbox_service.handle_inbound(async_session, runtime, _sms(), now=LATE_SYDNEY)
    assert outcome.status == "defer"

    await inbox_service.send_staff_reply(async_session, runtime, outcome.thread_id, Channel.sms, "Staff: code is 1234")
    sent = await runtime.dispatcher.flush_deferred(runtime.session_factory, now=NEXT_MORNING_SYDNEY)

    assert sent == []
    assert [m.body for m in sms.sent] == ["Staff: code is 1234"]
    assert await ledger_service.get_balance(async_session, seeded.company_id) == 99
    dropped = await async_session.get(Message, outcome.gate.message.id, populate_existing=True)
    assert dropped.status == MessageStatus.failed.value
    assert dropped.error_message == "Superseded: staff replied"

@pytest.mark.asyncio
async def test_escalated_thread_stays_with_humans(async_session, runtime, provider, sms, seeded):
    provider.response = suggestion(intent="complaint")
    first = await inbox_service.handle_inbound(async_session, runtime, _sms("SM1"), now=NOON_SYDNEY)
    assert first.gate.decision.reason == "escalation_intent:complaint"

    provider.response = suggestion(confidence=0.99)
    second = await inbox_service.handle_inbound(async_session, runtime, _sms("SM2", "Thanks"), now=NOON_SYDNEY)

    assert second.status == "escalate"
    assert second.gate.decision.reason == "thread_needs_human"
    assert sms.sent == []


@pytest.mark.asyncio
async def test_provider_failure_escalates(async_session, runtime, provider, seeded):
    provider.error = RuntimeError("model timed out")

    outcome = await inbox_service.handle_inbound(async_session, runtime, _sms(), now=NOON_SYDNEY)

    assert outcome.status == "escalate"
    assert outcome.gate.decision.reason == "suggestion_unavailable"
    assert await suggestion_service.get_suggestion(async_session, outcome.thread_id) is None


@pytest.mark.asyncio
async def test_out_of_credit_auto_reply_is_blocked(async_session, runtime, provider, sms, seeded):
    await ledger_service.credit(async_session, seeded.company_id, -99, CreditType.adjustment)
    provider.response = suggestion()

    outcome = await inbox_service.handle_inbound(async_session, runtime, _sms(), now=NOON_SYDNEY)

    assert outcome.status == "blocked"
    assert "Insufficient credits" in outcome.gate.error
    assert sms.sent == []
    thread = await thread_service.get_thread(async_session, outcome.thread_id)
    assert thread.status == ThreadStatus.open.value


@pytest.mark.asyncio
async def test_unknown_sender_at_known_property(async_session, runtime, provider, seeded):
    outcome = await inbox_service.handle_inbound(
        async_session, runtime, _sms(from_addr="+61400999888"), now=NOON_SYDNEY
    )

    assert outcome.status == "escalate"
    assert outcome.gate.decision.reason == "unknown_sender"
    assert provider.requests == []

    thread = await thread_service.get_thread(async_session, outcome.thread_id)
    stay = await async_session.get(Stay, thread.stay_id)
    assert stay.is_placeholder is True
    assert stay.property_id == seeded.property_id


@pytest.mark.asyncio
async def test_concurrent_messages_from_unknown_sender_share_a_thread(async_session, session_factory, runtime, seeded):
    async def deliver(sid):
        async with session_factory() as session:
            return await inbox_service.handle_inbound(
                session, runtime, _sms(sid, from_addr="+61400999888"), now=NOON_SYDNEY
            )

    outcomes = await asyncio.gather(deliver("SMa"), deliver("SMb"))

    assert {o.status for o in outcomes} == {"escalate"}
    assert len({o.thread_id for o in outcomes}) == 1
    count = await async_session.execute(select(func.count(Stay.id)).where(Stay.is_placeholder.is_(True)))
    assert count.scalar() == 1
    timeline = await thread_service.get_timeline(async_session, outcomes[0].thread_id)
    assert len(timeline.messages) == 2

@pytest.mark.asyncio
async def test_unknown_property_is_dropped(async_session, runtime, seeded):
    outcome = await inbox_service.handle_inbound(
        async_session, runtime, _sms(from_addr="+61400999888", to_addr="+61255550000"), now=NOON_SYDNEY
    )
    assert outcome.status == "dropped"
    assert outcome.thread_id is None


@pytest.mark.asyncio
async def test_email_reply_keeps_subject_thread(async_session, runtime, provider, email, seeded):
    provider.response = suggestion(reply_channel="email")
    inbound = InboundMessage(
        channel=Channel.email, provider=Provider.mailchannels,
        from_addr=GUEST_EMAIL, to_addr=PROPERTY_EMAIL,
        subject="Parking", body_text="Is there parking?", provider_message_id="<in-1@example.com>",
    )

    outcome = await inbox_service.handle_inbound(async_session, runtime, inbound, now=NOON_SYDNEY)

    assert outcome.status == "auto_reply"
    assert email.sent[0].subject == "Re: Parking"
    assert email.sent[0].reply_to_message_id == "<in-1@example.com>"
    assert await ledger_service.get_balance(async_session, seeded.company_id) == 99


@pytest.mark.asyncio
async def test_staff_reply_resolves_escalated_thread(async_session, runtime, provider, sms, seeded):
    provider.response = suggestion(needs_human=True)
    outcome = await inbox_service.handle_inbound(async_session, runtime, _sms(), now=NOON_SYDNEY)

    message = await inbox_service.send_staff_reply(
        async_session, runtime, outcome.thread_id, Channel.sms, "Sorted, see you soon", resolve=True, user_id=42
    )

    assert message.kind == MessageKind.staff_reply.value
    assert message.credits_deducted == 1
    thread = await thread_service.get_thread(async_session, outcome.thread_id)
    assert thread.status == ThreadStatus.closed.value
    assert thread.assigned_user_id == 42

    latest = (await ledger_service.list_transactions(async_session, seeded.company_id))[0]
    assert latest.type == CreditType.sms_manual_usage.value
    assert latest.created_by == 42


@pytest.mark.asyncio
async def test_send_draft_uses_stored_suggestion(async_session, runtime, provider, sms, seeded):
    provider.response = suggestion(needs_human=True)
    outcome = await inbox_service.handle_inbound(async_session, runtime, _sms(), now=NOON_SYDNEY)

    await inbox_service.send_draft(async_session, runtime, outcome.thread_id)

    assert sms.sent[-1].body == "Hi Jane, the wifi password is on the fridge."
    thread = await thread_service.get_thread(async_session, outcome.thread_id)
    assert thread.status == ThreadStatus.closed.value


@pytest.mark.asyncio
async def test_send_draft_without_suggestion(async_session, runtime, seeded):
    thread = await thread_service.get_or_create_thread(async_session, seeded.stay_id)
    with pytest.raises(NotFound):
        await inbox_service.send_draft(async_session, runtime, thread.id)


@pytest.mark.asyncio
async def test_staff_reply_needs_guest_contact(async_session, runtime, seeded):
    stay = await async_session.get(Stay, seeded.stay_id)
    stay.guest_email = None
    await async_session.commit()
    thread = await thread_service.get_or_create_thread(async_session, seeded.stay_id)

    with pytest.raises(TransportPermanent):
        await inbox_service.send_staff_reply(async_session, runtime, thread.id, Channel.email, "Hello")
