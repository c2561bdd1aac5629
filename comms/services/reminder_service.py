"""
Check-in reminders (T-3, T-1, day-of).

Each (stay, rule, channel) has one durable ReminderJob marker. The marker is
inserted and committed before anything is sent; the unique constraint makes
that insert the atomic claim, so overlapping ticks or a restart mid-run
never send the same reminder twice.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Optional, List, NamedTuple, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from comms.config import config
from comms.database.models import (
    Stay, Property, PropertyStatus, PropertySettings, AutomationSettings,
    ReminderJob, ReminderStatus, RuleKey, Channel, PreferredChannel, MessageKind
)
from comms.errors import TransportTransient, TransportError, LedgerError, InvalidStateTransition
from comms.services import ledger_service, stay_service, template_service, thread_service
from comms.services.channel_service import ChannelDispatcher, Charge
from comms.services.settings_service import EffectiveSettings, build_settings
from comms.services.thread_service import ThreadEvent
from comms.utils.timeutil import get_zone, to_local, utc, parse_hhmm

RULE_OFFSETS = {
    RuleKey.T_MINUS_3: -3,
    RuleKey.T_MINUS_1: -1,
    RuleKey.DAY_OF: 0,
}

OPEN_JOB_STATUSES = (ReminderStatus.sending.value, ReminderStatus.retry.value)


class ReminderCandidate(NamedTuple):
    stay_id: int
    rule_key: RuleKey
    channel: Channel
    send_at: datetime


@dataclass
class TickReport:
    sent: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    deferred_sent: int = 0


def compute_send_time(
    checkin_at: datetime,
    days_offset: int,
    at: Union[time, str],
    tz_name: str
) -> datetime:
    """
    UTC instant of local wall-clock `at` on (local check-in date + offset).

    Check-in 2024-06-10 15:00 local, offset -3, 09:00 -> 2024-06-07 09:00 local.
    """
    if isinstance(at, str):
        at = parse_hhmm(at)
    zone = get_zone(tz_name)
    target_date = to_local(checkin_at, tz_name).date() + timedelta(days=days_offset)
    return utc(datetime.combine(target_date, at, tzinfo=zone))


def channels_for(stay: Stay, settings: EffectiveSettings) -> List[Channel]:
    """Preferred channel(s), filtered by property toggles and available contact data"""
    preferred = PreferredChannel(stay.preferred_channel)
    if preferred == PreferredChannel.both:
        wanted = [Channel.sms, Channel.email]
    else:
        wanted = [Channel(preferred.value)]

    channels = []
    for channel in wanted:
        if not settings.channel_enabled(channel):
            continue
        contact = stay.guest_phone_e164 if channel == Channel.sms else stay.guest_email
        if contact:
            channels.append(channel)
    return channels


def due_rules(stay: Stay, settings: EffectiveSettings, now: datetime, window: timedelta) -> List[ReminderCandidate]:
    """Rules whose send time has just been crossed: send_at <= now < send_at + window"""
    candidates = []
    for rule_key, offset in RULE_OFFSETS.items():
        send_at = compute_send_time(stay.checkin_at, offset, settings.schedule_time(rule_key), settings.timezone)
        if not (send_at <= now < send_at + window):
            continue
        for channel in channels_for(stay, settings):
            candidates.append(ReminderCandidate(stay.id, rule_key, channel, send_at))
    return candidates


async def find_due_reminders(session: AsyncSession, now: datetime, window: timedelta) -> List[ReminderCandidate]:
    stmt = (
        select(Stay)
        .join(Property, Stay.property_id == Property.id)
        .where(
            Stay.status.in_(stay_service.ACTIVE_STAY_STATUSES),
            Stay.is_placeholder == False,
            Property.status == PropertyStatus.active.value,
            # Nothing can be due for stays whose check-in is long past
            Stay.checkin_at >= now - timedelta(days=2),
            Stay.checkin_at <= now + timedelta(days=5),
        )
        .options(selectinload(Stay.property))
    )
    result = await session.execute(stmt)
    stays = list(result.scalars().all())
    if not stays:
        return []

    marker_stmt = select(ReminderJob.stay_id, ReminderJob.rule_key, ReminderJob.channel).where(
        ReminderJob.stay_id.in_([s.id for s in stays])
    )
    marker_result = await session.execute(marker_stmt)
    existing = {(stay_id, rule_key, channel) for stay_id, rule_key, channel in marker_result.all()}

    candidates = []
    for stay in stays:
        property = stay.property
        automation = await session.get(AutomationSettings, property.company_id)
        property_settings = await session.get(PropertySettings, property.id)
        settings = build_settings(property, automation, property_settings)
        if not settings.auto_reply_enabled:
            continue

        for candidate in due_rules(stay, settings, now, window):
            if (candidate.stay_id, candidate.rule_key.value, candidate.channel.value) in existing:
                continue
            candidates.append(candidate)
    return candidates


async def claim(session: AsyncSession, candidate: ReminderCandidate) -> Optional[int]:
    """Insert the marker. Returns its id, or None if another tick already owns it."""
    job = ReminderJob(
        stay_id=candidate.stay_id,
        rule_key=candidate.rule_key.value,
        channel=candidate.channel.value,
        send_at=candidate.send_at,
        status=ReminderStatus.sending.value,
        attempts=1,
    )
    session.add(job)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logging.info(f"Reminder {candidate.rule_key.value}/{candidate.channel.value} for stay {candidate.stay_id} already claimed")
        return None
    return job.id


async def claim_retry(session: AsyncSession, job_id: int) -> bool:
    result = await session.execute(
        update(ReminderJob)
        .where(ReminderJob.id == job_id, ReminderJob.status == ReminderStatus.retry.value)
        .values(status=ReminderStatus.sending.value, attempts=ReminderJob.attempts + 1)
    )
    await session.commit()
    return result.rowcount == 1


async def send_reminder(
    session: AsyncSession,
    dispatcher: ChannelDispatcher,
    job_id: int,
    now: datetime,
    max_attempts: int,
    retry_minutes: int
) -> ReminderStatus:
    """Render and send a claimed reminder, then settle its marker."""
    job = await session.get(ReminderJob, job_id, populate_existing=True)
    stay, property, property_settings = await stay_service.get_stay_context(session, job.stay_id)
    channel = Channel(job.channel)

    if stay.status not in stay_service.ACTIVE_STAY_STATUSES:
        job.status = ReminderStatus.cancelled.value
        await session.commit()
        return ReminderStatus.cancelled

    raw = await template_service.resolve_template(session, channel, job.rule_key, property.company_id)
    variables = template_service.build_variables(stay, property, property_settings)
    rendered = template_service.render_message(channel, raw.body, variables, subject=raw.subject)
    to_addr = stay.guest_phone_e164 if channel == Channel.sms else stay.guest_email

    thread = await thread_service.get_or_create_thread(session, stay.id)
    costs = await ledger_service.get_credit_costs(session)
    charge = Charge(
        company_id=property.company_id,
        amount=costs.cost_for(channel, automated=True),
        txn_type=ledger_service.usage_type_for(channel, automated=True),
    )

    try:
        message = await dispatcher.send(
            session, thread.id, channel, to_addr, rendered.body,
            subject=rendered.subject,
            kind=MessageKind.reminder,
            event=ThreadEvent.system,
            charge=charge,
            rule_key=job.rule_key,
        )
    except TransportTransient as e:
        job.last_error = str(e)[:1000]
        if job.attempts >= max_attempts:
            job.status = ReminderStatus.failed.value
            logging.error(f"Reminder {job.rule_key} for stay {stay.id} failed after {job.attempts} attempts: {e}")
        else:
            job.status = ReminderStatus.retry.value
            job.next_attempt_at = now + timedelta(minutes=retry_minutes)
            logging.warning(f"Reminder {job.rule_key} for stay {stay.id} will retry at {job.next_attempt_at}: {e}")
        await session.commit()
        return ReminderStatus(job.status)
    except (TransportError, LedgerError, InvalidStateTransition) as e:
        job.status = ReminderStatus.failed.value
        job.last_error = str(e)[:1000]
        await session.commit()
        logging.warning(f"Reminder {job.rule_key} for stay {stay.id} not sent: {e}")
        return ReminderStatus.failed

    job.status = ReminderStatus.sent.value
    job.message_id = message.id
    job.last_error = None
    await session.commit()
    logging.info(f"Reminder {job.rule_key} ({channel.value}) sent for stay {stay.id}")
    return ReminderStatus.sent


def _count(report: TickReport, status: ReminderStatus):
    if status == ReminderStatus.sent:
        report.sent += 1
    elif status == ReminderStatus.retry:
        report.retried += 1
    elif status == ReminderStatus.failed:
        report.failed += 1
    else:
        report.skipped += 1


async def run_reminder_tick(
    session_factory,
    dispatcher: ChannelDispatcher,
    now: Optional[datetime] = None,
    catchup_minutes: Optional[int] = None,
    max_attempts: Optional[int] = None,
    retry_minutes: Optional[int] = None,
) -> TickReport:
    """One scheduler pass. Each stay is processed in its own session."""
    now = utc(now) if now else datetime.now(timezone.utc)
    window = timedelta(minutes=catchup_minutes if catchup_minutes is not None else config.REMINDER_CATCHUP_MINUTES)
    max_attempts = max_attempts or config.REMINDER_MAX_ATTEMPTS
    retry_minutes = retry_minutes or config.REMINDER_RETRY_MINUTES
    report = TickReport()

    async with session_factory() as session:
        candidates = await find_due_reminders(session, now, window)
        retry_stmt = select(ReminderJob.id).where(
            ReminderJob.status == ReminderStatus.retry.value,
            ReminderJob.next_attempt_at <= now,
        )
        retry_ids = list((await session.execute(retry_stmt)).scalars().all())

    for candidate in candidates:
        async with session_factory() as session:
            try:
                job_id = await claim(session, candidate)
                if job_id is None:
                    report.skipped += 1
                    continue
                status = await send_reminder(session, dispatcher, job_id, now, max_attempts, retry_minutes)
                _count(report, status)
            except Exception as e:
                logging.error(f"Error sending reminder {candidate.rule_key.value} for stay {candidate.stay_id}: {e}")
                await session.rollback()
                report.failed += 1

    for job_id in retry_ids:
        async with session_factory() as session:
            try:
                if not await claim_retry(session, job_id):
                    report.skipped += 1
                    continue
                status = await send_reminder(session, dispatcher, job_id, now, max_attempts, retry_minutes)
                _count(report, status)
            except Exception as e:
                logging.error(f"Error retrying reminder job {job_id}: {e}")
                await session.rollback()
                report.failed += 1

    report.deferred_sent = len(await dispatcher.flush_deferred(session_factory, now))

    if candidates or retry_ids or report.deferred_sent:
        logging.info(f"Reminder tick: {report}")
    return report


async def cancel_stay_reminders(session: AsyncSession, stay_id: int) -> int:
    """Cancel open markers; future rules are skipped because the stay is no longer active."""
    result = await session.execute(
        update(ReminderJob)
        .where(ReminderJob.stay_id == stay_id, ReminderJob.status == ReminderStatus.retry.value)
        .values(status=ReminderStatus.cancelled.value)
    )
    await session.commit()
    if result.rowcount:
        logging.info(f"Cancelled {result.rowcount} pending reminder(s) for stay {stay_id}")
    return result.rowcount
