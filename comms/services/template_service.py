"""
Message templates and placeholder rendering.

Placeholders look like {{ guest_name }}. Rendering is pure: the same
template and variables always give the same text.
"""
import re
import logging
from typing import Optional, Mapping, Dict, List, NamedTuple

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from comms.database.models import Template, Channel, RuleKey, Stay, Property, PropertySettings
from comms.errors import MissingVariable
from comms.utils.timeutil import to_local

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

DEFAULT_SUBJECT = "Message from your host"

# Built-in bodies used when neither the company nor the platform has a template
DEFAULT_TEMPLATES = {
    (Channel.sms, RuleKey.T_MINUS_3): (
        None,
        "Hi {{guest_first_name}}, your stay at {{property_name}} starts on {{checkin_date}}. "
        "Check-in is from {{checkin_time}}. Reply here if you have any questions."
    ),
    (Channel.sms, RuleKey.T_MINUS_1): (
        None,
        "Hi {{guest_first_name}}, see you tomorrow at {{property_name}}, {{property_address}}. "
        "Check-in from {{checkin_time}}."
    ),
    (Channel.sms, RuleKey.DAY_OF): (
        None,
        "Welcome {{guest_first_name}}! {{property_name}} is ready from {{checkin_time}} today. "
        "Need help? Call {{support_phone}}."
    ),
    (Channel.email, RuleKey.T_MINUS_3): (
        "Your upcoming stay at {{property_name}}",
        "Hi {{guest_name}},\n\nWe're looking forward to hosting you at {{property_name}} "
        "from {{checkin_date}} to {{checkout_date}}.\n\nCheck-in is from {{checkin_time}}, "
        "check-out by {{checkout_time}}.\n\nAddress: {{property_address}}"
    ),
    (Channel.email, RuleKey.T_MINUS_1): (
        "See you tomorrow at {{property_name}}",
        "Hi {{guest_name}},\n\nA quick reminder that your stay at {{property_name}} starts "
        "tomorrow. Check-in is from {{checkin_time}}.\n\nAddress: {{property_address}}"
    ),
    (Channel.email, RuleKey.DAY_OF): (
        "Welcome to {{property_name}}",
        "Hi {{guest_name}},\n\nToday's the day! {{property_name}} is ready from {{checkin_time}}.\n\n"
        "Questions? Reply to this email or call {{support_phone}}."
    ),
}


class RenderedMessage(NamedTuple):
    subject: Optional[str]
    body: str


def find_placeholders(template: str) -> List[str]:
    return PLACEHOLDER_RE.findall(template or "")


def render(template: str, variables: Mapping[str, object], strict: bool = False) -> str:
    """
    Substitute {{ name }} placeholders.

    Unknown placeholders are left verbatim unless `strict`, in which case
    MissingVariable lists every name that had no value.
    """
    if not template:
        return ""

    if strict:
        missing = [name for name in find_placeholders(template) if variables.get(name) is None]
        if missing:
            raise MissingVariable(missing)

    def _replace(match):
        value = variables.get(match.group(1))
        if value is None:
            return match.group(0)
        return str(value)

    return PLACEHOLDER_RE.sub(_replace, template)


def render_message(
    channel: Channel,
    body: str,
    variables: Mapping[str, object],
    subject: Optional[str] = None,
    strict: bool = False
) -> RenderedMessage:
    """Render subject and body separately. SMS carries no subject."""
    rendered_body = render(body, variables, strict=strict)
    if Channel(channel) == Channel.sms:
        return RenderedMessage(None, rendered_body)
    rendered_subject = render(subject or DEFAULT_SUBJECT, variables, strict=strict)
    return RenderedMessage(rendered_subject, rendered_body)


def build_variables(
    stay: Stay,
    property: Property,
    settings: Optional[PropertySettings] = None
) -> Dict[str, str]:
    """Variables available to every template, dates in the property's timezone"""
    checkin_local = to_local(stay.checkin_at, property.timezone)
    checkout_local = to_local(stay.checkout_at, property.timezone)
    guest_name = (stay.guest_name or "").strip() or "Guest"

    return {
        "guest_name": guest_name,
        "guest_first_name": guest_name.split()[0],
        "property_name": property.name or "the property",
        "property_address": property.address_text or "",
        "checkin_date": checkin_local.strftime("%d %b %Y"),
        "checkout_date": checkout_local.strftime("%d %b %Y"),
        "checkin_time": settings.checkin_time if settings else "14:00",
        "checkout_time": settings.checkout_time if settings else "10:00",
        "support_phone": property.support_phone_e164 or "",
        "support_email": property.support_email or "",
    }


# ========== Stored templates ==========

async def get_active_template(
    session: AsyncSession,
    channel: Channel,
    rule_key: str,
    company_id: Optional[int] = None
) -> Optional[Template]:
    """Latest active version: company-specific first, then the platform default."""
    for owner in (company_id, None) if company_id is not None else (None,):
        stmt = (
            select(Template)
            .where(
                Template.channel == Channel(channel).value,
                Template.rule_key == rule_key,
                Template.is_active == True,
                Template.company_id == owner if owner is not None else Template.company_id.is_(None),
            )
            .order_by(Template.version.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        template = result.scalar_one_or_none()
        if template:
            return template
    return None


async def resolve_template(
    session: AsyncSession,
    channel: Channel,
    rule_key: RuleKey,
    company_id: Optional[int] = None
) -> RenderedMessage:
    """Raw (unrendered) subject/body for a rule, falling back to the built-in text."""
    template = await get_active_template(session, channel, RuleKey(rule_key).value, company_id)
    if template:
        return RenderedMessage(template.subject, template.body)

    logging.info(f"No stored template for {channel}/{rule_key}, using built-in")
    subject, body = DEFAULT_TEMPLATES[(Channel(channel), RuleKey(rule_key))]
    return RenderedMessage(subject, body)


async def save_template(
    session: AsyncSession,
    channel: Channel,
    rule_key: str,
    body: str,
    subject: Optional[str] = None,
    company_id: Optional[int] = None
) -> Template:
    """Store a new version and deactivate the older ones."""
    owner_filter = Template.company_id == company_id if company_id is not None else Template.company_id.is_(None)
    channel = Channel(channel).value

    version_stmt = select(func.coalesce(func.max(Template.version), 0)).where(
        owner_filter, Template.channel == channel, Template.rule_key == rule_key
    )
    result = await session.execute(version_stmt)
    next_version = int(result.scalar()) + 1

    await session.execute(
        update(Template)
        .where(owner_filter, Template.channel == channel, Template.rule_key == rule_key)
        .values(is_active=False)
    )

    template = Template(
        company_id=company_id,
        channel=channel,
        rule_key=rule_key,
        version=next_version,
        subject=subject if channel == Channel.email.value else None,
        body=body,
        is_active=True,
    )
    session.add(template)
    await session.commit()

    logging.info(f"Saved template {channel}/{rule_key} v{next_version} (company {company_id})")
    return template


async def list_templates(session: AsyncSession, company_id: Optional[int] = None) -> List[Template]:
    stmt = select(Template).where(Template.is_active == True)
    if company_id is not None:
        stmt = stmt.where((Template.company_id == company_id) | Template.company_id.is_(None))
    else:
        stmt = stmt.where(Template.company_id.is_(None))
    result = await session.execute(stmt.order_by(Template.channel, Template.rule_key))
    return list(result.scalars().all())
