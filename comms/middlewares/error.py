import logging
from typing import Callable, Dict, Any, Awaitable
from aiogram import BaseMiddleware
from aiogram.exceptions import TelegramAPIError
from aiogram.types import TelegramObject, Message, CallbackQuery
from comms.utils.ui import UIMessages


class GlobalErrorMiddleware(BaseMiddleware):
    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any]
    ) -> Any:
        try:
            return await handler(event, data)
        except Exception as e:
            logging.exception(f"Unhandled exception in bot update: {e}")

            # Let the operator know the button did nothing
            try:
                if isinstance(event, Message):
                    await event.answer(UIMessages.error("Technical error. Please use the admin panel."))
                elif isinstance(event, CallbackQuery):
                    await event.answer("⚠️ Something went wrong. Try again later.", show_alert=True)
            except TelegramAPIError as answer_error:
                logging.warning(f"Could not report error to operator: {answer_error}")

            # Swallowed so polling keeps running; logged above
            return None
