import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from comms.database.models import (
    Company, CompanyStatus, Property, PropertySettings, AutomationSettings,
    Stay, StayStatus, PreferredChannel, Channel, ThreadStatus
)
from comms.errors import NotFound
from comms.services import thread_service
from comms.utils.locks import contact_locks
from comms.utils.timeutil import utc

ACTIVE_STAY_STATUSES = (StayStatus.booked.value, StayStatus.checked_in.value)

# Allowed forward moves; cancelled and checked_out are terminal
STAY_TRANSITIONS = {
    StayStatus.booked.value: {StayStatus.checked_in.value, StayStatus.cancelled.value},
    StayStatus.checked_in.value: {StayStatus.checked_out.value, StayStatus.cancelled.value},
    StayStatus.checked_out.value: set(),
    StayStatus.cancelled.value: set(),
}


async def create_company(
    session: AsyncSession,
    name: str,
    slug: Optional[str] = None,
    allow_negative_balance: bool = False,
    status: CompanyStatus = CompanyStatus.trial
) -> Company:
    company = Company(
        name=name,
        slug=slug,
        status=CompanyStatus(status).value,
        credit_balance=0,
        allow_negative_balance=allow_negative_balance,
        features_enabled={},
    )
    session.add(company)
    await session.flush()
    session.add(AutomationSettings(company_id=company.id))
    await session.commit()
    logging.info(f"Created company {company.id} ({name})")
    return company


async def create_property(
    session: AsyncSession,
    company_id: int,
    name: str,
    timezone_name: str = "Australia/Sydney",
    address_text: Optional[str] = None,
    support_phone_e164: Optional[str] = None,
    support_email: Optional[str] = None,
) -> Property:
    property = Property(
        company_id=company_id,
        name=name,
        timezone=timezone_name,
        address_text=address_text,
        support_phone_e164=support_phone_e164,
        support_email=support_email.lower() if support_email else None,
    )
    session.add(property)
    await session.flush()
    session.add(PropertySettings(property_id=property.id))
    await session.commit()
    return property


async def create_stay(
    session: AsyncSession,
    property_id: int,
    guest_name: str,
    checkin_at: datetime,
    checkout_at: datetime,
    guest_phone_e164: Optional[str] = None,
    guest_email: Optional[str] = None,
    preferred_channel: PreferredChannel = PreferredChannel.sms,
    status: StayStatus = StayStatus.booked,
) -> Stay:
    if checkin_at.tzinfo is None or checkout_at.tzinfo is None:
        raise ValueError("Stay dates must be timezone-aware")
    if checkout_at <= checkin_at:
        raise ValueError("Check-out must be after check-in")

    stay = Stay(
        property_id=property_id,
        guest_name=guest_name,
        guest_phone_e164=guest_phone_e164,
        guest_email=guest_email.lower() if guest_email else None,
        checkin_at=utc(checkin_at),
        checkout_at=utc(checkout_at),
        preferred_channel=PreferredChannel(preferred_channel).value,
        status=StayStatus(status).value,
    )
    session.add(stay)
    await session.commit()
    logging.info(f"Created stay {stay.id} for property {property_id}")
    return stay


async def transition_stay(session: AsyncSession, stay_id: int, new_status: StayStatus) -> Stay:
    """Move a stay forward. Cancelling also cancels its pending reminders."""
    stmt = select(Stay).where(Stay.id == stay_id).with_for_update()
    result = await session.execute(stmt)
    stay = result.scalar_one_or_none()
    if not stay:
        raise NotFound(f"Stay {stay_id} not found")

    new_status = StayStatus(new_status).value

    # IDEMPOTENCY CHECK
    if stay.status == new_status:
        return stay

    if new_status not in STAY_TRANSITIONS[stay.status]:
        raise ValueError(f"Stay {stay_id} cannot move from {stay.status} to {new_status}")

    stay.status = new_status
    await session.commit()
    logging.info(f"Stay {stay_id} -> {new_status}")

    if new_status == StayStatus.cancelled.value:
        from comms.services.reminder_service import cancel_stay_reminders
        await cancel_stay_reminders(session, stay_id)

    return stay


async def find_property_by_address(session: AsyncSession, channel: Channel, to_addr: Optional[str]) -> Optional[Property]:
    """Property that owns the number/mailbox a guest wrote to"""
    if not to_addr:
        return None
    column = Property.support_phone_e164 if Channel(channel) == Channel.sms else Property.support_email
    value = to_addr if Channel(channel) == Channel.sms else to_addr.lower()
    stmt = select(Property).where(column == value).order_by(Property.id).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_stay_by_contact(
    session: AsyncSession,
    channel: Channel,
    from_addr: str,
    to_addr: Optional[str] = None,
    now: Optional[datetime] = None
) -> Optional[Stay]:
    """
    Match an inbound sender to a stay.

    Prefers stays on the property that owns `to_addr`, then active stays,
    then the check-in closest to now.
    """
    now = now or datetime.now(timezone.utc)
    if Channel(channel) == Channel.sms:
        contact_filter = Stay.guest_phone_e164 == from_addr
    else:
        contact_filter = Stay.guest_email == (from_addr or "").lower()

    stmt = select(Stay).where(contact_filter)
    property = await find_property_by_address(session, channel, to_addr)
    if property is not None:
        stmt = stmt.where(Stay.property_id == property.id)

    result = await session.execute(stmt)
    stays = list(result.scalars().all())
    if not stays:
        return None

    def rank(stay: Stay):
        active = stay.status in ACTIVE_STAY_STATUSES
        distance = abs((utc(stay.checkin_at) - now).total_seconds())
        return (0 if active else 1, distance)

    return sorted(stays, key=rank)[0]


async def _find_placeholder(session: AsyncSession, property_id: int, channel: Channel, contact: str) -> Optional[Stay]:
    column = Stay.guest_phone_e164 if Channel(channel) == Channel.sms else Stay.guest_email
    stmt = (
        select(Stay)
        .where(Stay.property_id == property_id, Stay.is_placeholder.is_(True), column == contact)
        .order_by(Stay.id)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_placeholder_stay(
    session: AsyncSession,
    property_id: int,
    channel: Channel,
    from_addr: str,
    now: Optional[datetime] = None
) -> Stay:
    """
    Stay for an unknown sender so the conversation can be handled by a human.

    Returns the sender's existing placeholder on this property if there is
    one, so concurrent webhooks from the same number share a thread.
    """
    now = now or datetime.now(timezone.utc)
    is_sms = Channel(channel) == Channel.sms
    contact = from_addr if is_sms else from_addr.lower()

    async with contact_locks.hold((property_id, Channel(channel).value, contact)):
        existing = await _find_placeholder(session, property_id, channel, contact)
        if existing is not None:
            return existing

        stay = Stay(
            property_id=property_id,
            guest_name=f"Unknown ({from_addr})",
            guest_phone_e164=contact if is_sms else None,
            guest_email=None if is_sms else contact,
            checkin_at=now,
            checkout_at=now + timedelta(days=1),
            preferred_channel=Channel(channel).value,
            status=StayStatus.booked.value,
            is_placeholder=True,
            notes_internal="Created automatically from an unmatched inbound message",
        )
        session.add(stay)
        try:
            await session.commit()
        except IntegrityError:
            # Another worker created it first
            await session.rollback()
            existing = await _find_placeholder(session, property_id, channel, contact)
            if existing is None:
                raise
            return existing

        await thread_service.get_or_create_thread(session, stay.id, initial_status=ThreadStatus.needs_human)

    logging.warning(f"Created placeholder stay {stay.id} for unknown sender {from_addr}")
    return stay


async def get_stay_context(session: AsyncSession, stay_id: int):
    """(stay, property, property_settings)"""
    stay = await session.get(Stay, stay_id)
    if not stay:
        raise NotFound(f"Stay {stay_id} not found")
    property = await session.get(Property, stay.property_id)
    property_settings = await session.get(PropertySettings, stay.property_id)
    return stay, property, property_settings
