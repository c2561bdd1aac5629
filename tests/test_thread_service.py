import asyncio

import pytest
from sqlalchemy import select, func

from comms.database.models import Channel, Provider, Thread, ThreadStatus, MessageStatus, MessageKind
from comms.errors import InvalidStateTransition
from comms.services import thread_service
from comms.services.thread_service import ThreadEvent, next_status
from comms.services.transports import InboundMessage
from comms.utils.timeutil import utc

from conftest import GUEST_PHONE, PROPERTY_PHONE


def _sms(sid="SMin1", body="Hello"):
    return InboundMessage(
        channel=Channel.sms, provider=Provider.twilio,
        from_addr=GUEST_PHONE, to_addr=PROPERTY_PHONE,
        body_text=body, provider_message_id=sid,
    )


@pytest.mark.parametrize("current,event,target,expected", [
    (ThreadStatus.open, ThreadEvent.inbound, None, ThreadStatus.open),
    (ThreadStatus.closed, ThreadEvent.inbound, None, ThreadStatus.open),
    (ThreadStatus.needs_human, ThreadEvent.inbound, None, ThreadStatus.needs_human),
    (ThreadStatus.open, ThreadEvent.escalate, None, ThreadStatus.needs_human),
    (ThreadStatus.open, ThreadEvent.auto_reply, None, ThreadStatus.open),
    (ThreadStatus.needs_human, ThreadEvent.staff_reply, None, ThreadStatus.open),
    (ThreadStatus.needs_human, ThreadEvent.staff_reply, ThreadStatus.closed, ThreadStatus.closed),
    (ThreadStatus.closed, ThreadEvent.system, None, ThreadStatus.closed),
    (ThreadStatus.needs_human, ThreadEvent.close, None, ThreadStatus.closed),
])
def test_next_status(current, event, target, expected):
    assert next_status(current, event, target) == expected


@pytest.mark.parametrize("current,event,target", [
    (ThreadStatus.needs_human, ThreadEvent.auto_reply, None),
    (ThreadStatus.closed, ThreadEvent.auto_reply, None),
    (ThreadStatus.closed, ThreadEvent.escalate, None),
    (ThreadStatus.open, ThreadEvent.staff_reply, ThreadStatus.needs_human),
])
def test_invalid_transitions_raise(current, event, target):
    with pytest.raises(InvalidStateTransition) as exc:
        next_status(current, event, target, thread_id=5)
    assert exc.value.current == current.value
    assert exc.value.event == event.value


@pytest.mark.asyncio
async def test_inbound_creates_thread_and_dedupes(async_session, seeded):
    first = await thread_service.record_inbound(async_session, seeded.stay_id, _sms())
    again = await thread_service.record_inbound(async_session, seeded.stay_id, _sms())

    assert first.duplicate is False
    assert first.message.sequence == 1
    assert first.message.status == MessageStatus.received.value
    assert first.thread.status == ThreadStatus.open.value
    assert first.thread.last_channel == Channel.sms.value

    assert again.duplicate is True
    assert again.message.id == first.message.id

    timeline = await thread_service.get_timeline(async_session, first.thread.id)
    assert [m.sequence for m in timeline.messages] == [1]


@pytest.mark.asyncio
async def test_one_thread_per_stay_under_concurrency(async_session, session_factory, seeded):
    async def create():
        async with session_factory() as session:
            thread = await thread_service.get_or_create_thread(session, seeded.stay_id)
            return thread.id

    ids = await asyncio.gather(*(create() for _ in range(5)))

    assert len(set(ids)) == 1
    count = await async_session.execute(select(func.count(Thread.id)).where(Thread.stay_id == seeded.stay_id))
    assert count.scalar() == 1


@pytest.mark.asyncio
async def test_closed_thread_reopens_on_inbound(async_session, seeded):
    first = await thread_service.record_inbound(async_session, seeded.stay_id, _sms("SM1"))
    await thread_service.close_thread(async_session, first.thread.id)

    second = await thread_service.record_inbound(async_session, seeded.stay_id, _sms("SM2", "One more thing"))

    assert second.thread.id == first.thread.id
    assert second.thread.status == ThreadStatus.open.value
    assert second.thread.closed_at is None
    assert second.message.sequence == 2


@pytest.mark.asyncio
async def test_delivery_applies_event_atomically(async_session, seeded):
    inbound = await thread_service.record_inbound(async_session, seeded.stay_id, _sms())
    thread_id = inbound.thread.id
    await thread_service.escalate_thread(async_session, thread_id, "test")

    outbound = await thread_service.append_outbound(
        async_session, thread_id, Channel.sms, GUEST_PHONE, "On it", kind=MessageKind.staff_reply
    )
    assert outbound.status == MessageStatus.queued.value

    thread = await thread_service.record_delivery(
        async_session, outbound.id, "SMout1", MessageStatus.sent, ThreadEvent.staff_reply, ThreadStatus.closed
    )

    assert thread.status == ThreadStatus.closed.value
    assert thread.closed_at is not None
    assert outbound.provider_message_id == "SMout1"
    assert outbound.sequence == 2


@pytest.mark.asyncio
async def test_stale_transition_keeps_message_update(async_session, seeded):
    inbound = await thread_service.record_inbound(async_session, seeded.stay_id, _sms())
    thread_id = inbound.thread.id
    outbound = await thread_service.append_outbound(async_session, thread_id, Channel.sms, GUEST_PHONE, "Auto")

    # Escalated by someone else while the auto-reply was in flight
    await thread_service.escalate_thread(async_session, thread_id, "race")

    with pytest.raises(InvalidStateTransition):
        await thread_service.record_delivery(
            async_session, outbound.id, "SMout2", MessageStatus.sent, ThreadEvent.auto_reply
        )

    timeline = await thread_service.get_timeline(async_session, thread_id)
    assert timeline.thread.status == ThreadStatus.needs_human.value
    assert timeline.messages[-1].status == MessageStatus.sent.value
    assert timeline.messages[-1].provider_message_id == "SMout2"


@pytest.mark.asyncio
async def test_failed_outbound_does_not_touch_thread(async_session, seeded):
    inbound = await thread_service.record_inbound(async_session, seeded.stay_id, _sms())
    thread_id = inbound.thread.id
    last_at = utc(inbound.thread.last_message_at)

    outbound = await thread_service.append_outbound(async_session, thread_id, Channel.email, "bad", "x")
    await thread_service.mark_failed(async_session, outbound.id, "Invalid email address")

    thread = await thread_service.get_thread(async_session, thread_id)
    assert thread.status == ThreadStatus.open.value
    assert thread.last_channel == Channel.sms.value
    assert utc(thread.last_message_at) == last_at
