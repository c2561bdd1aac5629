"""
Escalation / auto-reply notifications to operators over Telegram.

Fire-and-forget from the caller's point of view: every attempt is written to
integration_logs and nothing is ever raised back into the message flow.
"""
import logging
from typing import Optional, List, NamedTuple

from aiogram import Bot
from sqlalchemy import select, or_
from sqlalchemy.orm import selectinload

from comms.database.models import (
    IntegrationConfig, IntegrationLog, IntegrationLogStatus, NotificationKind,
    Thread, Stay, Message, Direction
)
from comms.schemas.validation import Suggestion
from comms.utils.rate_limit import SlidingWindowLimiter
from comms.utils.timeutil import to_local
from comms.utils.ui import UIKeyboards, format_escalation, format_auto_reply, format_datetime


class _ThreadInfo(NamedTuple):
    company_id: int
    property_id: int
    property_name: str
    guest_name: str
    checkin: str
    checkout: str
    last_inbound: str


class NotificationService:
    def __init__(
        self,
        bot: Optional[Bot],
        session_factory,
        fallback_chat_id: Optional[str] = None,
        admin_url: str = ""
    ):
        self.bot = bot
        self.session_factory = session_factory
        self.fallback_chat_id = fallback_chat_id
        self.admin_url = admin_url
        self.limiter = SlidingWindowLimiter(per=60)

    async def notify_escalation(self, thread_id: int, reason: str, suggestion: Optional[Suggestion] = None) -> Optional[IntegrationLog]:
        """Tell operators a thread needs a human"""
        try:
            async with self.session_factory() as session:
                info = await self._thread_info(session, thread_id)
                text = format_escalation(
                    guest_name=info.guest_name,
                    property_name=info.property_name,
                    checkin=info.checkin,
                    checkout=info.checkout,
                    last_message=info.last_inbound,
                    reason=reason,
                    intent=suggestion.intent if suggestion else None,
                    confidence=suggestion.confidence if suggestion else None,
                    suggested_reply=suggestion.reply_text if suggestion else None,
                    thread_id=thread_id,
                    admin_url=self.admin_url,
                )
                keyboard = UIKeyboards.escalation_actions(thread_id, self.admin_url)
                return await self._deliver(session, info, thread_id, NotificationKind.escalation, text, keyboard)
        except Exception as e:
            logging.error(f"Escalation notification for thread {thread_id} failed: {e}")
            return None

    async def notify_auto_reply(self, thread_id: int, reply_text: str, suggestion: Optional[Suggestion] = None) -> Optional[IntegrationLog]:
        """Optional heads-up after an automatic reply (per integration opt-in)"""
        try:
            async with self.session_factory() as session:
                info = await self._thread_info(session, thread_id)
                text = format_auto_reply(
                    info.guest_name, info.property_name, reply_text,
                    intent=suggestion.intent if suggestion else None,
                )
                return await self._deliver(
                    session, info, thread_id, NotificationKind.auto_reply, text, None, auto_reply=True
                )
        except Exception as e:
            logging.error(f"Auto-reply notification for thread {thread_id} failed: {e}")
            return None

    async def _thread_info(self, session, thread_id: int) -> _ThreadInfo:
        stmt = (
            select(Thread)
            .where(Thread.id == thread_id)
            .options(selectinload(Thread.stay).selectinload(Stay.property))
        )
        result = await session.execute(stmt)
        thread = result.scalar_one()
        stay = thread.stay
        property = stay.property

        last_stmt = (
            select(Message.body_text)
            .where(Message.thread_id == thread_id, Message.direction == Direction.inbound.value)
            .order_by(Message.sequence.desc())
            .limit(1)
        )
        last_result = await session.execute(last_stmt)

        return _ThreadInfo(
            company_id=property.company_id,
            property_id=property.id,
            property_name=property.name,
            guest_name=stay.guest_name,
            checkin=format_datetime(to_local(stay.checkin_at, property.timezone), with_time=False),
            checkout=format_datetime(to_local(stay.checkout_at, property.timezone), with_time=False),
            last_inbound=last_result.scalar_one_or_none() or "",
        )

    async def _configs(self, session, company_id: int, property_id: int) -> List[IntegrationConfig]:
        stmt = (
            select(IntegrationConfig)
            .where(
                IntegrationConfig.company_id == company_id,
                IntegrationConfig.enabled == True,
                or_(IntegrationConfig.property_id.is_(None), IntegrationConfig.property_id == property_id),
            )
            .order_by(IntegrationConfig.property_id.is_(None), IntegrationConfig.id)
        )
        result = await session.execute(stmt)
        configs = list(result.scalars().all())
        # A property-specific integration replaces the company-wide one
        specific = [c for c in configs if c.property_id is not None]
        return specific or configs

    async def _deliver(self, session, info: _ThreadInfo, thread_id: int, kind: NotificationKind, text: str, keyboard, auto_reply: bool = False):
        configs = await self._configs(session, info.company_id, info.property_id)
        if auto_reply:
            configs = [c for c in configs if c.notify_on_auto_reply]
            if not configs:
                return None

        if configs:
            config_row = configs[0]
            chat_ids = [str(c) for c in (config_row.telegram_chat_ids or [])]
            rate = config_row.rate_limit_per_min
            config_id = config_row.id
        else:
            chat_ids = [self.fallback_chat_id] if self.fallback_chat_id else []
            rate = 60
            config_id = None

        status, delivered, error = await self._send_all(config_id or "fallback", rate, chat_ids, text, keyboard)

        log = IntegrationLog(
            config_id=config_id,
            company_id=info.company_id,
            thread_id=thread_id,
            kind=kind.value,
            status=status.value,
            recipients=delivered,
            error_message=error,
        )
        session.add(log)
        await session.commit()

        if status != IntegrationLogStatus.success:
            logging.warning(f"{kind.value} notification for thread {thread_id}: {status.value} ({error})")
        else:
            logging.info(f"{kind.value} notification for thread {thread_id} sent to {delivered} chat(s)")
        return log

    async def _send_all(self, limiter_key, rate: int, chat_ids: List[str], text: str, keyboard):
        if self.bot is None:
            return IntegrationLogStatus.failed, 0, "Telegram bot not configured"
        if not chat_ids:
            return IntegrationLogStatus.failed, 0, "No notification recipients configured"
        if not self.limiter.allow(limiter_key, rate):
            return IntegrationLogStatus.failed, 0, f"Rate limit exceeded ({rate}/min)"

        delivered = 0
        errors = []
        for chat_id in chat_ids:
            try:
                await self.bot.send_message(chat_id, text, parse_mode="HTML", reply_markup=keyboard)
                delivered += 1
            except Exception as e:
                logging.warning(f"Failed to notify chat {chat_id}: {e}")
                errors.append(f"{chat_id}: {e}")

        if delivered == len(chat_ids):
            return IntegrationLogStatus.success, delivered, None
        if delivered:
            return IntegrationLogStatus.partial, delivered, "; ".join(errors)[:1000]
        return IntegrationLogStatus.failed, 0, "; ".join(errors)[:1000]
