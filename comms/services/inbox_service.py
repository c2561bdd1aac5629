"""
Inbound message flow and human replies.

inbound webhook -> match stay -> record message (thread opens/reopens)
-> fetch suggestion -> gate -> auto-reply / defer / escalate
"""
import logging
from datetime import datetime, timezone
from typing import Optional, NamedTuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from comms.database.models import Channel, Message, MessageKind, ThreadStatus
from comms.errors import SuggestionUnavailable, NotFound, TransportPermanent
from comms.services import (
    gate_service, ledger_service, settings_service, stay_service,
    suggestion_service, template_service, thread_service
)
from comms.services.channel_service import Charge
from comms.services.gate_service import GateAction, GateContext, GateDecision, GateOutcome
from comms.services.thread_service import ThreadEvent
from comms.services.transports import InboundMessage

HISTORY_LIMIT = 20


class InboundOutcome(NamedTuple):
    status: str  # dropped | duplicate | escalate | defer | auto_reply | blocked
    thread_id: Optional[int] = None
    message_id: Optional[int] = None
    gate: Optional[GateOutcome] = None


async def _history(session: AsyncSession, thread_id: int):
    stmt = (
        select(Message)
        .where(Message.thread_id == thread_id)
        .order_by(Message.sequence.desc())
        .limit(HISTORY_LIMIT)
    )
    result = await session.execute(stmt)
    return list(reversed(result.scalars().all()))


async def handle_inbound(
    session: AsyncSession,
    runtime,
    inbound: InboundMessage,
    now: Optional[datetime] = None
) -> InboundOutcome:
    now = now or datetime.now(timezone.utc)
    channel = Channel(inbound.channel)

    stay = await stay_service.find_stay_by_contact(session, channel, inbound.from_addr, inbound.to_addr, now)
    if stay is None:
        property = await stay_service.find_property_by_address(session, channel, inbound.to_addr)
        if property is None:
            logging.warning(f"Dropping inbound {channel.value} from {inbound.from_addr}: no matching stay or property")
            return InboundOutcome("dropped")
        stay = await stay_service.create_placeholder_stay(session, property.id, channel, inbound.from_addr, now)

    recorded = await thread_service.record_inbound(session, stay.id, inbound)
    thread_id = recorded.thread.id
    if recorded.duplicate:
        return InboundOutcome("duplicate", thread_id, recorded.message.id)

    stay, property, property_settings = await stay_service.get_stay_context(session, stay.id)
    settings = await settings_service.load_settings(session, property.id)

    suggestion = None
    if stay.is_placeholder:
        decision = GateDecision(GateAction.escalate, "unknown_sender")
    else:
        request = suggestion_service.build_request(
            await _history(session, thread_id), stay.guest_name, property.name, channel.value
        )
        try:
            suggestion = await suggestion_service.fetch_suggestion(runtime.suggestion_provider, request)
            await suggestion_service.save_draft(session, thread_id, suggestion, recorded.message.id)
        except SuggestionUnavailable as e:
            logging.warning(f"No suggestion for thread {thread_id}: {e}")
            suggestion = None

        thread = await thread_service.get_thread(session, thread_id)
        decision = gate_service.evaluate(suggestion, settings, now, thread.status)

    logging.info(f"Gate for thread {thread_id}: {decision.action.value} ({decision.reason})")
    context = GateContext(thread_id, stay, property, property_settings, recorded.message)
    outcome = await gate_service.apply_decision(session, runtime, context, suggestion, decision)

    status = outcome.decision.action.value
    if outcome.decision.action == GateAction.auto_reply and outcome.message is None:
        status = "blocked"

    return InboundOutcome(status, thread_id, recorded.message.id, outcome)


def _contact(stay, channel: Channel) -> Optional[str]:
    return stay.guest_phone_e164 if channel == Channel.sms else stay.guest_email


async def send_staff_reply(
    session: AsyncSession,
    runtime,
    thread_id: int,
    channel: Channel,
    body: str,
    subject: Optional[str] = None,
    resolve: bool = False,
    user_id: Optional[int] = None
) -> Message:
    """
    Human-authored reply. Bypasses the gate, charged at the manual cost.

    The thread ends up open (staff took over) or closed when `resolve`.
    Auto-replies still waiting for quiet hours to end are dropped.
    """
    channel = Channel(channel)
    thread = await thread_service.get_thread(session, thread_id)
    stay, property, _ = await stay_service.get_stay_context(session, thread.stay_id)

    to_addr = _contact(stay, channel)
    if not to_addr:
        raise TransportPermanent(f"Guest has no {channel.value} contact")

    if channel == Channel.email and not subject:
        subject = f"Re: Your stay at {property.name}"

    costs = await ledger_service.get_credit_costs(session)
    charge = Charge(
        company_id=property.company_id,
        amount=costs.cost_for(channel, automated=False),
        txn_type=ledger_service.usage_type_for(channel, automated=False),
        created_by=user_id,
    )

    message = await runtime.dispatcher.send(
        session, thread_id, channel, to_addr, body,
        subject=subject,
        kind=MessageKind.staff_reply,
        event=ThreadEvent.staff_reply,
        target=ThreadStatus.closed if resolve else ThreadStatus.open,
        charge=charge,
    )

    await thread_service.supersede_deferred(session, thread_id, "Superseded: staff replied")
    if user_id is not None and thread.assigned_user_id is None:
        await thread_service.assign_thread(session, thread_id, user_id)
    return message


async def send_draft(session: AsyncSession, runtime, thread_id: int, user_id: Optional[int] = None) -> Message:
    """Send the latest stored suggestion as a staff reply and close the thread"""
    suggestion = await suggestion_service.get_suggestion(session, thread_id)
    if suggestion is None or not suggestion.reply_text:
        raise NotFound(f"No draft reply for thread {thread_id}")

    thread = await thread_service.get_thread(session, thread_id)
    stay, property, property_settings = await stay_service.get_stay_context(session, thread.stay_id)
    variables = template_service.build_variables(stay, property, property_settings)
    rendered = template_service.render_message(
        suggestion.reply_channel, suggestion.reply_text, variables, subject=suggestion.reply_subject
    )

    return await send_staff_reply(
        session, runtime, thread_id, suggestion.reply_channel, rendered.body,
        subject=rendered.subject, resolve=True, user_id=user_id
    )
