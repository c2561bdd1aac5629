"""
Suggestion gate.

`evaluate` is a pure decision over (suggestion, settings, now, thread status).
`apply_decision` carries it out: escalate, defer until quiet hours end, or
auto-reply through the dispatcher at the AI cost.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Optional, NamedTuple

from sqlalchemy.ext.asyncio import AsyncSession

from comms.database.models import (
    Channel, Message, MessageKind, Stay, Property, PropertySettings, ThreadStatus
)
from comms.errors import LedgerError, TransportError
from comms.schemas.validation import Suggestion
from comms.services import ledger_service, thread_service, template_service
from comms.services.channel_service import Charge
from comms.services.settings_service import EffectiveSettings
from comms.services.thread_service import ThreadEvent
from comms.utils.timeutil import get_zone, utc


class GateAction(str, enum.Enum):
    auto_reply = "auto_reply"
    escalate = "escalate"
    defer = "defer"


@dataclass(frozen=True)
class GateDecision:
    action: GateAction
    reason: str
    send_at: Optional[datetime] = None  # defer only, UTC


class GateContext(NamedTuple):
    thread_id: int
    stay: Stay
    property: Property
    property_settings: Optional[PropertySettings]
    inbound: Optional[Message] = None


class GateOutcome(NamedTuple):
    decision: GateDecision
    message: Optional[Message] = None
    error: Optional[str] = None


def in_quiet_hours(local_time: time, start: time, end: time) -> bool:
    """Window may wrap midnight (22:00-08:00). start == end means no quiet hours."""
    if start == end:
        return False
    local_time = local_time.replace(second=0, microsecond=0, tzinfo=None)
    if start < end:
        return start <= local_time < end
    return local_time >= start or local_time < end


def quiet_hours_end(now: datetime, settings: EffectiveSettings) -> datetime:
    """Next end of the quiet window after `now`, as UTC"""
    zone = get_zone(settings.timezone)
    local_now = utc(now).astimezone(zone)
    end_local = datetime.combine(local_now.date(), settings.quiet_hours_end, tzinfo=zone)
    if end_local <= local_now:
        end_local = datetime.combine(local_now.date() + timedelta(days=1), settings.quiet_hours_end, tzinfo=zone)
    return utc(end_local)


def evaluate(
    suggestion: Optional[Suggestion],
    settings: EffectiveSettings,
    now: datetime,
    thread_status: Optional[ThreadStatus] = None
) -> GateDecision:
    """
    Decide what to do with a suggestion.

    1. needs_human, an escalation intent or confidence below the threshold
       (strict <) always escalates.
    2. Replies that could otherwise be sent automatically are deferred while
       the property is inside quiet hours.
    3. auto_reply_ok false, auto-reply switched off or the reply channel
       disabled escalates.
    4. Otherwise auto-reply.
    A missing suggestion, or a thread already waiting for a human, escalates.
    """
    if suggestion is None:
        return GateDecision(GateAction.escalate, "suggestion_unavailable")

    if thread_status is not None and ThreadStatus(thread_status) == ThreadStatus.needs_human:
        return GateDecision(GateAction.escalate, "thread_needs_human")

    if suggestion.needs_human:
        return GateDecision(GateAction.escalate, "needs_human")
    if suggestion.intent.lower() in settings.escalation_intents:
        return GateDecision(GateAction.escalate, f"escalation_intent:{suggestion.intent}")
    if suggestion.confidence < settings.confidence_threshold:
        return GateDecision(
            GateAction.escalate,
            f"low_confidence:{suggestion.confidence:.2f}<{settings.confidence_threshold:.2f}"
        )

    blocked = None
    if not suggestion.auto_reply_ok:
        blocked = "auto_reply_not_ok"
    elif not settings.auto_reply_enabled:
        blocked = "auto_reply_disabled"
    elif not settings.channel_enabled(suggestion.reply_channel):
        blocked = f"channel_disabled:{suggestion.reply_channel}"

    local_now = utc(now).astimezone(get_zone(settings.timezone))
    if blocked is None and in_quiet_hours(local_now.time(), settings.quiet_hours_start, settings.quiet_hours_end):
        return GateDecision(GateAction.defer, "quiet_hours", send_at=quiet_hours_end(now, settings))

    if blocked is not None:
        return GateDecision(GateAction.escalate, blocked)

    return GateDecision(GateAction.auto_reply, "ok")


def _contact_for(stay: Stay, channel: Channel) -> Optional[str]:
    if Channel(channel) == Channel.sms:
        return stay.guest_phone_e164
    return stay.guest_email


def _reply_subject(suggestion: Suggestion, inbound: Optional[Message]) -> Optional[str]:
    if suggestion.reply_subject:
        return suggestion.reply_subject
    if inbound is not None and inbound.subject:
        subject = inbound.subject
        return subject if subject.lower().startswith("re:") else f"Re: {subject}"
    return None


async def _escalate(session, runtime, context: GateContext, decision: GateDecision, suggestion) -> GateOutcome:
    await thread_service.escalate_thread(session, context.thread_id, decision.reason)
    if runtime.notifier is not None:
        await runtime.notifier.notify_escalation(context.thread_id, decision.reason, suggestion)
    return GateOutcome(decision)


async def apply_decision(
    session: AsyncSession,
    runtime,
    context: GateContext,
    suggestion: Optional[Suggestion],
    decision: GateDecision
) -> GateOutcome:
    if decision.action == GateAction.escalate:
        return await _escalate(session, runtime, context, decision, suggestion)

    channel = Channel(suggestion.reply_channel)
    to_addr = _contact_for(context.stay, channel)
    if not to_addr:
        fallback = GateDecision(GateAction.escalate, f"no_guest_{channel.value}")
        return await _escalate(session, runtime, context, fallback, suggestion)

    variables = template_service.build_variables(context.stay, context.property, context.property_settings)
    rendered = template_service.render_message(
        channel, suggestion.reply_text, variables, subject=_reply_subject(suggestion, context.inbound)
    )

    if decision.action == GateAction.defer:
        message = await runtime.dispatcher.queue_deferred(
            session, context.thread_id, channel, to_addr, rendered.body, decision.send_at,
            subject=rendered.subject,
        )
        return GateOutcome(decision, message)

    costs = await ledger_service.get_credit_costs(session)
    charge = Charge(
        company_id=context.property.company_id,
        amount=costs.cost_for(channel, automated=True),
        txn_type=ledger_service.usage_type_for(channel, automated=True),
    )

    try:
        message = await runtime.dispatcher.send(
            session, context.thread_id, channel, to_addr, rendered.body,
            subject=rendered.subject,
            kind=MessageKind.auto_reply,
            event=ThreadEvent.auto_reply,
            charge=charge,
            reply_to_message_id=context.inbound.provider_message_id if context.inbound is not None else None,
        )
    except LedgerError as e:
        logging.warning(f"Auto-reply on thread {context.thread_id} not sent: {e}")
        return GateOutcome(decision, error=str(e))
    except TransportError as e:
        logging.warning(f"Auto-reply on thread {context.thread_id} failed, escalating: {e}")
        fallback = GateDecision(GateAction.escalate, "send_failed")
        outcome = await _escalate(session, runtime, context, fallback, suggestion)
        return outcome._replace(error=str(e))

    if runtime.notifier is not None:
        await runtime.notifier.notify_auto_reply(context.thread_id, rendered.body, suggestion)
    return GateOutcome(decision, message)
