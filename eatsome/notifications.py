# eatsome/notifications.py
from typing import Optional

import structlog
from aiogram.enums import ParseMode
from aiogram.types import InlineKeyboardMarkup

from .errors import EatsomeError, NotFound
from .storage import Storage

logger = structlog.get_logger()


class TelegramNotifier:
    """
    Sends bot messages and keeps the (chat, entity) → message log current.

    Messages sent for an entity are recorded so a later stage can edit the
    same message in place instead of posting a new one.
    """

    def __init__(self, bot, storage: Storage):
        self.bot = bot
        self.storage = storage

    async def send(
        self,
        chat_id: int,
        entity_id: int,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
    ) -> int:
        message = await self.bot.send_message(
            chat_id=chat_id, text=text, reply_markup=reply_markup, parse_mode=ParseMode.HTML
        )

        try:
            self.storage.record_sent_message(chat_id, entity_id, message.message_id)
        except EatsomeError as e:
            logger.error("⚠️ Failed to store message id", chat_id=chat_id, entity_id=entity_id, error=str(e))

        return message.message_id

    async def edit(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
    ):
        await self.bot.edit_message_text(
            text=text,
            chat_id=chat_id,
            message_id=message_id,
            reply_markup=reply_markup,
            parse_mode=ParseMode.HTML,
        )

    async def edit_last(
        self,
        chat_id: int,
        entity_id: int,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
    ) -> bool:
        """Edit the latest message sent for the entity; False when there is none."""
        try:
            message_id = self.storage.get_last_message_id(chat_id, entity_id)
        except NotFound:
            logger.warning("📭 No message to edit", chat_id=chat_id, entity_id=entity_id)
            return False

        await self.edit(chat_id, message_id, text, reply_markup)
        return True
