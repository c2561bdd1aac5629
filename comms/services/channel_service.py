"""
Channel dispatcher.

One send/receive contract over the SMS and email transports. Owns outbound
status tracking: the message row is written before the provider call,
updated on acceptance or failure, and later moved forward by delivery
callbacks. Credits are debited only after a provider accepted the message.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Mapping, Any, Callable, Awaitable, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from comms.database.models import (
    Channel, CreditType, Message, MessageKind, MessageStatus, Direction, ThreadStatus
)
from comms.errors import (
    LedgerError, TransportError, TransportTransient, TransportPermanent, InvalidStateTransition
)
from comms.services import ledger_service, thread_service
from comms.services.thread_service import ThreadEvent
from comms.services.transports import Transport, OutboundMessage, SendResult, InboundMessage, StatusUpdate

STATUS_RANK = {
    MessageStatus.queued.value: 0,
    MessageStatus.sent.value: 1,
    MessageStatus.delivered.value: 2,
}


@dataclass(frozen=True)
class Charge:
    """Who pays for a send and how much"""
    company_id: int
    amount: int
    txn_type: CreditType
    created_by: Optional[int] = None


class ChannelDispatcher:
    def __init__(
        self,
        transports: Mapping[Channel, Transport],
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        timeout_seconds: float = 15,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.transports: Dict[Channel, Transport] = {Channel(k): v for k, v in transports.items()}
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep

    def transport_for(self, channel: Channel) -> Transport:
        transport = self.transports.get(Channel(channel))
        if transport is None:
            raise TransportPermanent(f"No transport configured for {Channel(channel).value}")
        return transport

    # ========== Inbound ==========

    def receive(self, channel: Channel, payload: Mapping[str, Any]) -> InboundMessage:
        """Normalize a raw provider webhook payload"""
        return self.transport_for(channel).normalize_inbound(payload)

    # ========== Outbound ==========

    async def send(
        self,
        session: AsyncSession,
        thread_id: int,
        channel: Channel,
        to_addr: Optional[str],
        body: str,
        subject: Optional[str] = None,
        kind: MessageKind = MessageKind.staff_reply,
        event: ThreadEvent = ThreadEvent.staff_reply,
        target: Optional[ThreadStatus] = None,
        charge: Optional[Charge] = None,
        rule_key: Optional[str] = None,
        reply_to_message_id: Optional[str] = None,
        message: Optional[Message] = None,
    ) -> Message:
        """
        Send one outbound message on a thread.

        Returns the Message with status sent (or queued if the provider only
        queued it). Raises TransportPermanent / TransportTransient after the
        message has been marked failed, or LedgerError if the charge cannot
        be covered. No debit happens unless the provider accepted the message.
        """
        channel = Channel(channel)
        transport = self.transport_for(channel)

        await thread_service.ensure_transition(session, thread_id, event, target)

        if message is None:
            message = await thread_service.append_outbound(
                session, thread_id, channel, to_addr or "", body,
                subject=subject if channel == Channel.email else None,
                kind=kind,
                provider=transport.provider,
                from_addr=transport.from_addr,
                rule_key=rule_key,
            )

        if not transport.validate_address(to_addr):
            await thread_service.mark_failed(session, message.id, f"Invalid {channel.value} address: {to_addr}")
            raise TransportPermanent(f"Invalid {channel.value} address: {to_addr}", provider=transport.provider.value)

        if charge is not None:
            try:
                await ledger_service.check_credits(session, charge.company_id, charge.amount)
            except LedgerError as e:
                await thread_service.mark_failed(session, message.id, str(e))
                raise

        outbound = OutboundMessage(
            to_addr=to_addr,
            body=body,
            subject=subject if channel == Channel.email else None,
            reply_to_message_id=reply_to_message_id,
        )

        try:
            result, attempts = await self._deliver(transport, outbound, message.id)
        except TransportError as e:
            await thread_service.mark_failed(session, message.id, str(e), attempts=getattr(e, "attempts", None))
            raise

        transition_error = None
        try:
            await thread_service.record_delivery(
                session, message.id, result.provider_message_id, result.status, event, target, attempts
            )
        except InvalidStateTransition as e:
            transition_error = e

        if charge is not None:
            await self._charge(session, charge, message)

        if transition_error is not None:
            raise transition_error

        logging.info(
            f"Sent {channel.value} message {message.id} on thread {thread_id} "
            f"via {transport.name} ({result.provider_message_id})"
        )
        return message

    async def _deliver(self, transport: Transport, outbound: OutboundMessage, message_id: int):
        """Call the transport, retrying transient failures with exponential backoff."""
        delay = self.backoff_seconds
        last_error: Optional[TransportTransient] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                result: SendResult = await asyncio.wait_for(transport.send(outbound), timeout=self.timeout_seconds)
                return result, attempt
            except asyncio.TimeoutError:
                last_error = TransportTransient(
                    f"{transport.name} send timed out after {self.timeout_seconds}s",
                    provider=transport.provider.value
                )
            except TransportTransient as e:
                last_error = e
            except TransportPermanent as e:
                e.attempts = attempt
                raise

            logging.warning(f"Message {message_id}: attempt {attempt}/{self.max_attempts} failed: {last_error}")
            if attempt < self.max_attempts:
                await self._sleep(delay)
                delay *= 2

        last_error.attempts = self.max_attempts
        raise last_error

    async def _charge(self, session: AsyncSession, charge: Charge, message: Message):
        try:
            await ledger_service.debit(
                session,
                charge.company_id,
                charge.amount,
                charge.txn_type,
                reference_id=message.id,
                reference_type="message",
                description=f"{message.kind} {message.channel} message",
                message=message,
                idempotency_key=f"debit:message:{message.id}",
                created_by=charge.created_by,
            )
        except LedgerError as e:
            # Provider already accepted the message; it stays sent but unbilled
            logging.error(f"Message {message.id} sent but could not be charged: {e}")

    # ========== Delivery status callbacks ==========

    async def apply_status_callback(
        self,
        session: AsyncSession,
        channel: Channel,
        payload: Mapping[str, Any]
    ) -> Optional[Message]:
        update_ = self.transport_for(channel).normalize_status(payload)
        return await self.apply_status(session, update_)

    async def apply_status(self, session: AsyncSession, status_update: StatusUpdate) -> Optional[Message]:
        """
        Move an existing message forward. Never creates a message.

        queued < sent < delivered; failed is terminal. Repeated or stale
        callbacks are no-ops. A failure after a debit refunds it once.
        """
        message = await thread_service.find_by_provider_id(session, status_update.provider_message_id)
        if not message:
            logging.warning(f"Status callback for unknown message {status_update.provider_message_id}")
            return None

        current = message.status
        new = MessageStatus(status_update.status).value

        if current in (MessageStatus.failed.value, MessageStatus.received.value):
            return message
        if new != MessageStatus.failed.value:
            if STATUS_RANK.get(new, -1) <= STATUS_RANK.get(current, -1):
                return message
        elif current == MessageStatus.delivered.value:
            return message

        message.status = new
        if new == MessageStatus.failed.value:
            message.error_message = status_update.error_message
        await session.commit()
        logging.info(f"Message {message.id}: {current} -> {new}")

        if new == MessageStatus.failed.value and message.credits_deducted:
            await ledger_service.refund_message(session, message, reason=status_update.error_message or "delivery failed")

        return message

    # ========== Deferred (quiet hours) replies ==========

    async def queue_deferred(
        self,
        session: AsyncSession,
        thread_id: int,
        channel: Channel,
        to_addr: str,
        body: str,
        send_after: datetime,
        subject: Optional[str] = None,
        kind: MessageKind = MessageKind.auto_reply,
    ) -> Message:
        transport = self.transport_for(channel)
        message = await thread_service.append_outbound(
            session, thread_id, channel, to_addr, body,
            subject=subject if Channel(channel) == Channel.email else None,
            kind=kind,
            provider=transport.provider,
            from_addr=transport.from_addr,
            send_after=send_after,
        )
        logging.info(f"Deferred {Channel(channel).value} reply {message.id} on thread {thread_id} until {send_after}")
        return message

    async def flush_deferred(self, session_factory, now: Optional[datetime] = None) -> List[int]:
        """Send deferred replies whose send_after has passed. Returns sent message ids."""
        now = now or datetime.now(timezone.utc)

        async with session_factory() as session:
            stmt = select(Message.id).where(
                Message.direction == Direction.outbound.value,
                Message.status == MessageStatus.queued.value,
                Message.send_after.is_not(None),
                Message.send_after <= now,
            ).order_by(Message.id)
            result = await session.execute(stmt)
            due_ids = list(result.scalars().all())

        sent = []
        for message_id in due_ids:
            async with session_factory() as session:
                try:
                    if await self._send_deferred(session, message_id):
                        sent.append(message_id)
                except (TransportError, LedgerError, InvalidStateTransition) as e:
                    logging.warning(f"Deferred reply {message_id} not sent: {e}")
                except Exception as e:
                    logging.error(f"Error sending deferred reply {message_id}: {e}")
                    await session.rollback()
        return sent

    async def _send_deferred(self, session: AsyncSession, message_id: int) -> bool:
        # Claim: only one tick may clear send_after
        claim = await session.execute(
            update(Message)
            .where(
                Message.id == message_id,
                Message.status == MessageStatus.queued.value,
                Message.send_after.is_not(None),
            )
            .values(send_after=None)
        )
        await session.commit()
        if claim.rowcount != 1:
            return False

        message = await session.get(Message, message_id, populate_existing=True)
        thread = await thread_service.get_thread(session, message.thread_id)

        if thread.status != ThreadStatus.open.value:
            await thread_service.mark_failed(session, message_id, f"Superseded: thread is {thread.status}")
            return False

        if await thread_service.has_staff_reply_after(session, thread.id, message.sequence):
            await thread_service.mark_failed(session, message_id, "Superseded: staff replied")
            return False

        company_id = await thread_service.company_id_for_thread(session, thread.id)
        costs = await ledger_service.get_credit_costs(session)
        charge = Charge(
            company_id=company_id,
            amount=costs.cost_for(message.channel, automated=True),
            txn_type=ledger_service.usage_type_for(message.channel, automated=True),
        )

        await self.send(
            session, thread.id, message.channel, message.to_addr, message.body_text,
            subject=message.subject,
            kind=MessageKind(message.kind),
            event=ThreadEvent.auto_reply,
            charge=charge,
            message=message,
        )
        return True
