import logging

from aiogram import Router, F
from aiogram.filters import Filter
from aiogram.types import CallbackQuery
from sqlalchemy.ext.asyncio import AsyncSession

from comms.config import config
from comms.errors import CommsError
from comms.services import inbox_service, thread_service
from comms.utils.ui import UIMessages


class OperatorFilter(Filter):
    async def __call__(self, event) -> bool:
        if not config.OPERATOR_IDS:
            return True
        if hasattr(event, 'from_user') and event.from_user:
            return event.from_user.id in config.OPERATOR_IDS
        return False


router = Router()
router.callback_query.filter(OperatorFilter())


def _thread_id(call: CallbackQuery) -> int:
    return int(call.data.split(":", 1)[1])


@router.callback_query(F.data.startswith("send:"))
async def send_draft_callback(call: CallbackQuery, session: AsyncSession, runtime):
    thread_id = _thread_id(call)
    operator = call.from_user.id if call.from_user else None

    try:
        message = await inbox_service.send_draft(session, runtime, thread_id, user_id=operator)
    except CommsError as e:
        logging.warning(f"Operator {operator} could not send draft for thread {thread_id}: {e}")
        await call.answer(f"Not sent: {e}", show_alert=True)
        return

    await call.message.edit_text(
        call.message.html_text + "\n\n" + UIMessages.success(f"Sent via {message.channel}, thread closed.")
    )
    await call.answer()


@router.callback_query(F.data.startswith("ignore:"))
async def ignore_callback(call: CallbackQuery, session: AsyncSession):
    thread_id = _thread_id(call)

    await thread_service.close_thread(session, thread_id)
    logging.info(f"Thread {thread_id} closed from Telegram by {call.from_user.id if call.from_user else '?'}")

    await call.message.edit_text(call.message.html_text + "\n\n" + UIMessages.success("Ignored, thread closed."))
    await call.answer()
