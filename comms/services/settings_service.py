"""
Automation settings.

Company-wide and per-property settings are read once per request or
scheduler tick into an immutable EffectiveSettings value that is passed
explicitly to the gate and the scheduler.
"""
import logging
from dataclasses import dataclass
from datetime import time
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from comms.database.models import AutomationSettings, PropertySettings, Property, Channel, RuleKey
from comms.schemas.validation import AutomationSettingsModel, PropertySettingsModel
from comms.errors import NotFound
from comms.utils.timeutil import parse_hhmm


@dataclass(frozen=True)
class EffectiveSettings:
    company_id: int
    property_id: int
    timezone: str

    # Company-wide
    global_auto_reply_enabled: bool = True
    confidence_threshold: float = 0.7
    quiet_hours_start: time = time(22, 0)
    quiet_hours_end: time = time(8, 0)
    escalation_intents: Tuple[str, ...] = ("refund", "payment", "complaint")

    # Per property
    property_auto_reply_enabled: bool = True
    sms_enabled: bool = True
    email_enabled: bool = True
    schedule_t3_time: time = time(10, 0)
    schedule_t1_time: time = time(16, 0)
    schedule_day_of_time: time = time(9, 0)

    @property
    def auto_reply_enabled(self) -> bool:
        return self.global_auto_reply_enabled and self.property_auto_reply_enabled

    def channel_enabled(self, channel: Channel) -> bool:
        if Channel(channel) == Channel.sms:
            return self.sms_enabled
        return self.email_enabled

    def schedule_time(self, rule_key: RuleKey) -> time:
        return {
            RuleKey.T_MINUS_3: self.schedule_t3_time,
            RuleKey.T_MINUS_1: self.schedule_t1_time,
            RuleKey.DAY_OF: self.schedule_day_of_time,
        }[RuleKey(rule_key)]


def build_settings(
    property: Property,
    automation: Optional[AutomationSettings],
    property_settings: Optional[PropertySettings]
) -> EffectiveSettings:
    values = dict(company_id=property.company_id, property_id=property.id, timezone=property.timezone)

    if automation is not None:
        values.update(
            global_auto_reply_enabled=bool(automation.auto_reply_enabled),
            confidence_threshold=float(automation.confidence_threshold),
            quiet_hours_start=parse_hhmm(automation.quiet_hours_start),
            quiet_hours_end=parse_hhmm(automation.quiet_hours_end),
            escalation_intents=tuple(i.strip().lower() for i in (automation.escalation_intents or [])),
        )

    if property_settings is not None:
        values.update(
            property_auto_reply_enabled=bool(property_settings.auto_reply_enabled),
            sms_enabled=bool(property_settings.sms_enabled),
            email_enabled=bool(property_settings.email_enabled),
            schedule_t3_time=parse_hhmm(property_settings.schedule_t3_time),
            schedule_t1_time=parse_hhmm(property_settings.schedule_t1_time),
            schedule_day_of_time=parse_hhmm(property_settings.schedule_day_of_time),
        )

    return EffectiveSettings(**values)


async def load_settings(session: AsyncSession, property_id: int) -> EffectiveSettings:
    property = await session.get(Property, property_id)
    if not property:
        raise NotFound(f"Property {property_id} not found")
    automation = await session.get(AutomationSettings, property.company_id)
    property_settings = await session.get(PropertySettings, property_id)
    return build_settings(property, automation, property_settings)


def _merge(model_cls, existing, data: dict):
    """Validate a partial update on top of the stored values"""
    current = {}
    if existing is not None:
        current = {name: getattr(existing, name) for name in model_cls.model_fields}
        current = {k: v for k, v in current.items() if v is not None}
    current.update(data)
    return model_cls.model_validate(current)


async def update_automation_settings(session: AsyncSession, company_id: int, data: dict) -> AutomationSettings:
    settings = await session.get(AutomationSettings, company_id)
    validated = _merge(AutomationSettingsModel, settings, data)

    if settings is None:
        settings = AutomationSettings(company_id=company_id)
        session.add(settings)

    for key, value in validated.model_dump().items():
        setattr(settings, key, value)

    await session.commit()
    logging.info(f"Automation settings updated for company {company_id}")
    return settings


async def update_property_settings(session: AsyncSession, property_id: int, data: dict) -> PropertySettings:
    stmt = select(PropertySettings).where(PropertySettings.property_id == property_id)
    result = await session.execute(stmt)
    settings = result.scalar_one_or_none()
    validated = _merge(PropertySettingsModel, settings, data)

    if settings is None:
        settings = PropertySettings(property_id=property_id)
        session.add(settings)

    for key, value in validated.model_dump().items():
        setattr(settings, key, value)

    await session.commit()
    logging.info(f"Property settings updated for property {property_id}")
    return settings
