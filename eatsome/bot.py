# eatsome/bot.py
"""
Telegram webhook handling.

The bot is the capture surface: users send meal photos to it, the photo is
stored, a hidden post is created and enrichment runs in the background. The
"getting insights" reply is later edited in place with the result.
"""
import asyncio
import random
from typing import Optional

import structlog
from aiogram.exceptions import TelegramAPIError
from aiogram.types import (
    CallbackQuery,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    MenuButtonWebApp,
    Message,
    Update,
    WebAppInfo,
)
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import EatsomeError, NotFound
from .locales import message as t
from .media import MediaStore, random_name
from .models import User
from .notifications import TelegramNotifier
from .pipeline import PipelineRunner
from .storage import Storage

logger = structlog.get_logger()

SHARE_PREFIX = "share_"
FALLBACK_AVATARS = 40


def new_user(
    chat_id: int,
    username: Optional[str],
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    language_code: Optional[str] = None,
    is_premium: Optional[bool] = False,
) -> User:
    return User(
        chat_id=chat_id,
        username=username or f"user_{chat_id}",
        first_name=first_name,
        last_name=last_name,
        language="ru" if language_code == "ru" else "en",
        is_premium=bool(is_premium),
    )


class BotHandler:
    def __init__(
        self,
        bot,
        storage: Storage,
        media: MediaStore,
        notifier: TelegramNotifier,
        runner: PipelineRunner,
        settings: Settings,
    ):
        self.bot = bot
        self.storage = storage
        self.media = media
        self.notifier = notifier
        self.runner = runner
        self.settings = settings

    async def handle_update(self, payload: dict):
        update = Update.model_validate(payload, context={"bot": self.bot})
        if update.message:
            await self.handle_message(update.message)
        elif update.callback_query:
            await self.handle_callback(update.callback_query)

    async def handle_message(self, message: Message):
        if message.chat.type != "private" or message.from_user is None or message.from_user.is_bot:
            return

        chat_id = message.chat.id
        log = logger.bind(chat_id=chat_id, message_id=message.message_id)

        try:
            user = self.storage.get_user_by_chat_id(chat_id)
        except NotFound:
            await self._welcome(message)
            return

        if message.text == "/reset":
            await self._reset(user)
        elif message.photo:
            await self._capture_photo(user, message, log)
        elif message.document:
            await self.bot.send_message(chat_id=chat_id, text=t(user.language, "photoAddError"))
        else:
            await self.bot.send_message(
                chat_id=chat_id,
                text=t(user.language, "openWebApp"),
                reply_markup=self._web_app_keyboard(user.language),
            )

    async def handle_callback(self, callback: CallbackQuery):
        data = callback.data or ""
        if not data.startswith(SHARE_PREFIX) or callback.message is None:
            return

        try:
            post_id = int(data[len(SHARE_PREFIX):])
        except ValueError:
            logger.warning("⚠️ Malformed callback data", data=data)
            return

        chat_id = callback.message.chat.id
        user = self.storage.get_user_by_chat_id(chat_id)
        self.storage.set_post_hidden(user.id, post_id, hidden=False)
        logger.info("📣 Post shared", post_id=post_id, user_id=user.id)

        keyboard = InlineKeyboardMarkup(
            inline_keyboard=[[
                InlineKeyboardButton(
                    text=t(user.language, "openApp"),
                    url=f"{self.settings.bot_web_app_url}?startapp=p{post_id}",
                )
            ]]
        )
        await self.notifier.edit(
            chat_id, callback.message.message_id, t(user.language, "checkInApp"), keyboard
        )
        await self.bot.answer_callback_query(callback_query_id=callback.id)

    async def _welcome(self, message: Message):
        sender = message.from_user
        user = self.storage.create_user(
            new_user(
                chat_id=message.chat.id,
                username=sender.username,
                first_name=sender.first_name,
                last_name=sender.last_name,
                language_code=sender.language_code,
                is_premium=sender.is_premium,
            )
        )
        logger.info("👋 New user", user_id=user.id, chat_id=user.chat_id, language=user.language)

        await self.bot.send_message(
            chat_id=user.chat_id,
            text=t(user.language, "welcome"),
            reply_markup=self._web_app_keyboard(user.language),
        )

        supervisor = self.runner.supervisor
        supervisor.spawn(self.import_avatar(user), name=f"avatar-{user.id}")
        supervisor.spawn(self.set_menu_button(user), name=f"menu-button-{user.id}")

    async def _reset(self, user: User):
        try:
            self.storage.delete_user(user.id)
        except EatsomeError as e:
            logger.error("❌ Failed to delete user", user_id=user.id, error=str(e))
            await self.bot.send_message(chat_id=user.chat_id, text=t(user.language, "userDeleteFailed"))
            return
        await self.bot.send_message(chat_id=user.chat_id, text=t(user.language, "userDeleted"))

    async def _capture_photo(self, user: User, message: Message, log):
        largest = message.photo[-1]
        try:
            data = await self._download(largest.file_id)
            key = f"media/{user.id}/{random_name()}.jpg"
            photo_url = await asyncio.to_thread(self.media.upload_bytes, key, data)
            post = self.storage.create_post(user.id, photo_url, text=message.caption, hidden=True)
        except (EatsomeError, TelegramAPIError, BotoCoreError, ClientError) as e:
            log.error("❌ Photo capture failed", user_id=user.id, error=str(e))
            await self.bot.send_message(chat_id=user.chat_id, text=t(user.language, "uploadError"))
            return

        log.info("📸 Post created from photo", post_id=post.id, user_id=user.id)
        try:
            await self.notifier.send(user.chat_id, post.id, t(user.language, "gettingInsights"))
        except TelegramAPIError as e:
            log.warning("⚠️ Failed to acknowledge photo", post_id=post.id, error=str(e))
        self.runner.submit(post.id, user.id, user.language)

    async def _download(self, file_id: str) -> bytes:
        file = await self.bot.get_file(file_id)
        buffer = await self.bot.download_file(file.file_path)
        return buffer.read()

    async def import_avatar(self, user: User):
        """Copy the user's Telegram profile photo, or pick a stock avatar."""
        url = None
        photos = await self.bot.get_user_profile_photos(user_id=user.chat_id, limit=1)
        if photos.total_count > 0 and photos.photos:
            data = await self._download(photos.photos[0][-1].file_id)
            key = f"avatars/{user.id}/{user.chat_id}.jpg"
            url = await asyncio.to_thread(self.media.upload_bytes, key, data)

        if url is None:
            url = self.settings.avatar_fallback_url.format(n=random.randint(1, FALLBACK_AVATARS))

        self.storage.update_user_avatar(user.id, url)
        logger.info("🖼️ Avatar set", user_id=user.id, avatar_url=url)

    async def set_menu_button(self, user: User):
        await self.bot.set_chat_menu_button(
            chat_id=user.chat_id,
            menu_button=MenuButtonWebApp(
                text=t(user.language, "menuButton"),
                web_app=WebAppInfo(url=self.settings.web_app_url),
            ),
        )

    def _web_app_keyboard(self, language: str) -> InlineKeyboardMarkup:
        return InlineKeyboardMarkup(
            inline_keyboard=[[
                InlineKeyboardButton(
                    text=t(language, "openApp"),
                    web_app=WebAppInfo(url=self.settings.web_app_url),
                )
            ]]
        )
