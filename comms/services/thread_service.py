"""
Conversation lifecycle per stay.

States: open, needs_human, closed. Status changes are always committed
together with the message that caused them, under a per-thread lock and a
row lock on the thread.
"""
import enum
import logging
from datetime import datetime, timezone
from typing import Optional, List, NamedTuple

from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from comms.database.models import (
    Thread, ThreadStatus, Message, MessageStatus, MessageKind, Direction,
    Channel, Provider, Stay, Property
)
from comms.errors import InvalidStateTransition, NotFound
from comms.utils.locks import thread_locks, stay_locks
from comms.utils.timeutil import utc


class ThreadEvent(str, enum.Enum):
    inbound = "inbound"
    escalate = "escalate"
    auto_reply = "auto_reply"
    staff_reply = "staff_reply"
    system = "system"  # scheduled reminders
    close = "close"


TRANSITIONS = {
    (ThreadEvent.inbound, ThreadStatus.open): ThreadStatus.open,
    (ThreadEvent.inbound, ThreadStatus.needs_human): ThreadStatus.needs_human,  # sticky
    (ThreadEvent.inbound, ThreadStatus.closed): ThreadStatus.open,
    (ThreadEvent.escalate, ThreadStatus.open): ThreadStatus.needs_human,
    (ThreadEvent.escalate, ThreadStatus.needs_human): ThreadStatus.needs_human,
    (ThreadEvent.auto_reply, ThreadStatus.open): ThreadStatus.open,
}


def next_status(
    current: ThreadStatus,
    event: ThreadEvent,
    target: Optional[ThreadStatus] = None,
    thread_id: Optional[int] = None
) -> ThreadStatus:
    """
    Pure transition function.

    staff_reply moves to `target` (open or closed, default open), system keeps
    the current status, close is valid from anywhere.
    """
    current = ThreadStatus(current)
    event = ThreadEvent(event)

    if event == ThreadEvent.close:
        return ThreadStatus.closed
    if event == ThreadEvent.system:
        return current
    if event == ThreadEvent.staff_reply:
        target = ThreadStatus(target or ThreadStatus.open)
        if target == ThreadStatus.needs_human:
            raise InvalidStateTransition(thread_id, current.value, event.value)
        return target

    new_status = TRANSITIONS.get((event, current))
    if new_status is None:
        raise InvalidStateTransition(thread_id, current.value, event.value)
    return new_status


class InboundResult(NamedTuple):
    thread: Thread
    message: Message
    duplicate: bool


class ThreadTimeline(NamedTuple):
    thread: Thread
    messages: List[Message]


async def _find_thread(session: AsyncSession, stay_id: int) -> Optional[Thread]:
    stmt = select(Thread).where(Thread.stay_id == stay_id).execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def _lock_thread(session: AsyncSession, thread_id: int) -> Thread:
    stmt = (
        select(Thread)
        .where(Thread.id == thread_id)
        .with_for_update()  # Row-level lock
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    thread = result.scalar_one_or_none()
    if not thread:
        raise NotFound(f"Thread {thread_id} not found")
    return thread


async def _next_sequence(session: AsyncSession, thread_id: int) -> int:
    stmt = select(func.coalesce(func.max(Message.sequence), 0)).where(Message.thread_id == thread_id)
    result = await session.execute(stmt)
    return int(result.scalar()) + 1


def _apply(thread: Thread, event: ThreadEvent, target: Optional[ThreadStatus] = None) -> ThreadStatus:
    previous = thread.status
    try:
        new_status = next_status(thread.status, event, target, thread_id=thread.id)
    except InvalidStateTransition as e:
        logging.error(f"Invalid thread transition: {e}")
        raise

    thread.status = new_status.value
    if new_status == ThreadStatus.closed:
        thread.closed_at = datetime.now(timezone.utc)
    elif previous == ThreadStatus.closed.value:
        thread.closed_at = None

    if previous != new_status.value:
        logging.info(f"Thread {thread.id}: {previous} -> {new_status.value} ({ThreadEvent(event).value})")
    return new_status


async def _supersede_pending(session: AsyncSession, thread_id: int, reason: str) -> int:
    # Conditional on send_after so a reply already claimed by the scheduler is left alone
    result = await session.execute(
        update(Message)
        .where(
            Message.thread_id == thread_id,
            Message.direction == Direction.outbound.value,
            Message.status == MessageStatus.queued.value,
            Message.send_after.is_not(None),
        )
        .values(status=MessageStatus.failed.value, error_message=reason, send_after=None)
    )
    if result.rowcount:
        logging.info(f"Thread {thread_id}: {result.rowcount} deferred reply(ies) superseded ({reason})")
    return result.rowcount


def _touch(thread: Thread, message: Message, at: Optional[datetime] = None):
    thread.last_message_at = at or message.created_at or datetime.now(timezone.utc)
    thread.last_channel = message.channel


async def get_thread(session: AsyncSession, thread_id: int) -> Thread:
    thread = await session.get(Thread, thread_id, populate_existing=True)
    if not thread:
        raise NotFound(f"Thread {thread_id} not found")
    return thread


async def get_thread_for_stay(session: AsyncSession, stay_id: int) -> Optional[Thread]:
    return await _find_thread(session, stay_id)


async def get_or_create_thread(
    session: AsyncSession,
    stay_id: int,
    initial_status: ThreadStatus = ThreadStatus.open
) -> Thread:
    """One thread per stay. Created on the first message for the stay."""
    async with stay_locks.hold(stay_id):
        thread = await _find_thread(session, stay_id)
        if thread:
            return thread

        thread = Thread(stay_id=stay_id, status=ThreadStatus(initial_status).value)
        session.add(thread)
        try:
            await session.commit()
        except IntegrityError:
            # Another worker created it first
            await session.rollback()
            thread = await _find_thread(session, stay_id)
            if thread is None:
                raise
            return thread

        logging.info(f"Opened thread {thread.id} for stay {stay_id} ({thread.status})")
        return thread


async def company_id_for_thread(session: AsyncSession, thread_id: int) -> int:
    stmt = (
        select(Property.company_id)
        .join(Stay, Stay.property_id == Property.id)
        .join(Thread, Thread.stay_id == Stay.id)
        .where(Thread.id == thread_id)
    )
    result = await session.execute(stmt)
    company_id = result.scalar_one_or_none()
    if company_id is None:
        raise NotFound(f"Thread {thread_id} not found")
    return company_id


async def find_by_provider_id(session: AsyncSession, provider_message_id: str) -> Optional[Message]:
    stmt = (
        select(Message)
        .where(Message.provider_message_id == provider_message_id)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def record_inbound(session: AsyncSession, stay_id: int, inbound) -> InboundResult:
    """
    Persist a normalized inbound message and apply the `inbound` event.

    Idempotent on provider_message_id: a redelivered webhook returns the
    stored message with duplicate=True and changes nothing.
    """
    if inbound.provider_message_id:
        existing = await find_by_provider_id(session, inbound.provider_message_id)
        if existing:
            logging.info(f"Duplicate inbound {inbound.provider_message_id}, ignoring")
            return InboundResult(await get_thread(session, existing.thread_id), existing, True)

    thread = await get_or_create_thread(session, stay_id)

    async with thread_locks.hold(thread.id):
        thread = await _lock_thread(session, thread.id)
        message = Message(
            thread_id=thread.id,
            sequence=await _next_sequence(session, thread.id),
            direction=Direction.inbound.value,
            channel=Channel(inbound.channel).value,
            kind=MessageKind.guest.value,
            from_addr=inbound.from_addr,
            to_addr=inbound.to_addr,
            subject=inbound.subject,
            body_text=inbound.body_text or "",
            provider=Provider(inbound.provider).value if inbound.provider else None,
            provider_message_id=inbound.provider_message_id,
            status=MessageStatus.received.value,
            created_at=datetime.now(timezone.utc),
        )
        session.add(message)
        _apply(thread, ThreadEvent.inbound)
        _touch(thread, message)

        try:
            await session.commit()
        except IntegrityError:
            # Same provider message delivered concurrently
            await session.rollback()
            existing = await find_by_provider_id(session, inbound.provider_message_id) if inbound.provider_message_id else None
            if existing is None:
                raise
            return InboundResult(await get_thread(session, existing.thread_id), existing, True)

    logging.info(f"Inbound {message.channel} message {message.id} on thread {thread.id}")
    return InboundResult(thread, message, False)


async def ensure_transition(
    session: AsyncSession,
    thread_id: int,
    event: ThreadEvent,
    target: Optional[ThreadStatus] = None
) -> ThreadStatus:
    """Check (without applying) that `event` is currently allowed."""
    thread = await get_thread(session, thread_id)
    try:
        return next_status(thread.status, event, target, thread_id=thread_id)
    except InvalidStateTransition as e:
        logging.error(f"Invalid thread transition: {e}")
        raise


async def append_outbound(
    session: AsyncSession,
    thread_id: int,
    channel: Channel,
    to_addr: str,
    body: str,
    subject: Optional[str] = None,
    kind: MessageKind = MessageKind.staff_reply,
    provider: Optional[Provider] = None,
    from_addr: Optional[str] = None,
    rule_key: Optional[str] = None,
    status: MessageStatus = MessageStatus.queued,
    send_after: Optional[datetime] = None,
    error_message: Optional[str] = None,
) -> Message:
    """
    Append an outbound message. Thread status and last_* are untouched until delivery.

    A thread holds at most one deferred reply: appending one with `send_after`
    supersedes any reply still waiting on that thread.
    """
    async with thread_locks.hold(thread_id):
        await _lock_thread(session, thread_id)
        if send_after is not None:
            await _supersede_pending(session, thread_id, "Superseded: newer deferred reply")
        message = Message(
            thread_id=thread_id,
            sequence=await _next_sequence(session, thread_id),
            direction=Direction.outbound.value,
            channel=Channel(channel).value,
            kind=MessageKind(kind).value,
            rule_key=rule_key,
            from_addr=from_addr,
            to_addr=to_addr,
            subject=subject,
            body_text=body,
            provider=Provider(provider).value if provider else None,
            status=MessageStatus(status).value,
            send_after=send_after,
            error_message=error_message,
            created_at=datetime.now(timezone.utc),
        )
        session.add(message)
        await session.commit()
    return message


async def record_delivery(
    session: AsyncSession,
    message_id: int,
    provider_message_id: Optional[str],
    status: MessageStatus,
    event: ThreadEvent,
    target: Optional[ThreadStatus] = None,
    attempts: int = 1
) -> Thread:
    """
    Mark an outbound message accepted by its provider and apply `event`.

    Message status and thread status/last_* go out in one commit. If the
    transition is no longer valid (thread changed while sending) the message
    update is still committed and InvalidStateTransition is raised.
    """
    message = await session.get(Message, message_id)
    if not message:
        raise NotFound(f"Message {message_id} not found")

    async with thread_locks.hold(message.thread_id):
        thread = await _lock_thread(session, message.thread_id)
        now = datetime.now(timezone.utc)

        message.status = MessageStatus(status).value
        message.provider_message_id = provider_message_id
        message.attempts = attempts
        message.sent_at = now
        message.send_after = None
        message.error_message = None
        _touch(thread, message, now)

        try:
            _apply(thread, event, target)
        finally:
            await session.commit()

    return thread


async def mark_failed(session: AsyncSession, message_id: int, error: str, attempts: Optional[int] = None) -> Message:
    """Failed sends stay in the timeline. Thread status is not touched."""
    message = await session.get(Message, message_id)
    if not message:
        raise NotFound(f"Message {message_id} not found")
    message.status = MessageStatus.failed.value
    message.error_message = error[:1000]
    message.send_after = None
    if attempts is not None:
        message.attempts = attempts
    await session.commit()
    logging.warning(f"Message {message_id} failed: {error}")
    return message


async def supersede_deferred(session: AsyncSession, thread_id: int, reason: str) -> int:
    """Fail every deferred reply still waiting on the thread. Returns how many."""
    async with thread_locks.hold(thread_id):
        await _lock_thread(session, thread_id)
        count = await _supersede_pending(session, thread_id, reason)
        await session.commit()
    return count


async def has_staff_reply_after(session: AsyncSession, thread_id: int, sequence: int) -> bool:
    stmt = select(func.count(Message.id)).where(
        Message.thread_id == thread_id,
        Message.sequence > sequence,
        Message.kind == MessageKind.staff_reply.value,
        Message.status.in_([MessageStatus.sent.value, MessageStatus.delivered.value]),
    )
    result = await session.execute(stmt)
    return result.scalar() > 0


async def escalate_thread(session: AsyncSession, thread_id: int, reason: str = "") -> Thread:
    async with thread_locks.hold(thread_id):
        thread = await _lock_thread(session, thread_id)
        _apply(thread, ThreadEvent.escalate)
        await session.commit()
    logging.info(f"Thread {thread_id} escalated: {reason}")
    return thread


async def close_thread(session: AsyncSession, thread_id: int) -> Thread:
    async with thread_locks.hold(thread_id):
        thread = await _lock_thread(session, thread_id)
        _apply(thread, ThreadEvent.close)
        await session.commit()
    return thread


async def assign_thread(session: AsyncSession, thread_id: int, user_id: Optional[int]) -> Thread:
    async with thread_locks.hold(thread_id):
        thread = await _lock_thread(session, thread_id)
        thread.assigned_user_id = user_id
        await session.commit()
    return thread


def _is_delivered_activity(message: Message) -> bool:
    if message.direction == Direction.inbound.value:
        return True
    return message.status in (MessageStatus.sent.value, MessageStatus.delivered.value)


async def reconcile_thread(session: AsyncSession, thread_id: int) -> Thread:
    """
    Bring last_message_at / last_channel in line with the message log.

    Repairs a thread whose summary fields were left behind by a partial
    failure. Status itself is never guessed.
    """
    async with thread_locks.hold(thread_id):
        thread = await _lock_thread(session, thread_id)
        stmt = (
            select(Message)
            .where(Message.thread_id == thread_id)
            .order_by(Message.sequence.desc())
        )
        result = await session.execute(stmt)
        latest = next((m for m in result.scalars() if _is_delivered_activity(m)), None)

        if latest is None:
            await session.commit()
            return thread

        latest_at = utc(latest.sent_at or latest.created_at)
        if utc(thread.last_message_at) != latest_at or thread.last_channel != latest.channel:
            logging.warning(f"Reconciling thread {thread_id}: last message {latest.id}")
            thread.last_message_at = latest_at
            thread.last_channel = latest.channel
        await session.commit()
    return thread


async def get_timeline(session: AsyncSession, thread_id: int) -> ThreadTimeline:
    thread = await reconcile_thread(session, thread_id)
    stmt = (
        select(Message)
        .where(Message.thread_id == thread_id)
        .order_by(Message.sequence)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return ThreadTimeline(thread, list(result.scalars().all()))
