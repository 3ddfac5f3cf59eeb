import logging
from dataclasses import dataclass

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from aiogram.types import InlineKeyboardMarkup, Message

logger = logging.getLogger(__name__)

CAPTION_LIMIT = 1024


@dataclass(frozen=True)
class Surface:
    chat_id: int
    thread_id: int | None = None


def _caption(text: str) -> str:
    if len(text) <= CAPTION_LIMIT:
        return text
    return text[:CAPTION_LIMIT - 1] + "…"


class Notifier:
    """Best-effort delivery to users and chats.

    Telegram failures are logged and returned as None (False for edits);
    the transition that triggered the message stands either way.
    """

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send_to_user(
        self,
        telegram_id: int,
        text: str,
        reply_markup: InlineKeyboardMarkup | None = None,
        photo: str | None = None,
    ) -> Message | None:
        return await self.send_to_surface(Surface(telegram_id), text, reply_markup=reply_markup, photo=photo)

    async def send_to_surface(
        self,
        surface: Surface,
        text: str,
        reply_markup: InlineKeyboardMarkup | None = None,
        photo: str | None = None,
    ) -> Message | None:
        try:
            if photo:
                return await self.bot.send_photo(
                    surface.chat_id,
                    photo,
                    caption=_caption(text),
                    reply_markup=reply_markup,
                    message_thread_id=surface.thread_id,
                )
            return await self.bot.send_message(
                surface.chat_id,
                text,
                reply_markup=reply_markup,
                message_thread_id=surface.thread_id,
            )
        except TelegramAPIError as e:
            logger.warning("Could not deliver message to %s: %s", surface.chat_id, e)
            return None

    async def send_document(
        self,
        telegram_id: int,
        document,
        caption: str | None = None,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> Message | None:
        try:
            return await self.bot.send_document(
                telegram_id,
                document,
                caption=_caption(caption) if caption else None,
                reply_markup=reply_markup,
            )
        except TelegramAPIError as e:
            logger.warning("Could not deliver document to %s: %s", telegram_id, e)
            return None

    async def create_topic(self, chat_id: int, name: str) -> int | None:
        try:
            topic = await self.bot.create_forum_topic(chat_id, name)
        except TelegramAPIError as e:
            logger.warning("Could not create topic %r in %s: %s", name, chat_id, e)
            return None
        return topic.message_thread_id

    async def edit_announcement(
        self,
        surface: Surface,
        message_id: int,
        text: str,
        reply_markup: InlineKeyboardMarkup | None,
        has_photo: bool,
    ) -> bool:
        try:
            if has_photo:
                await self.bot.edit_message_caption(
                    chat_id=surface.chat_id,
                    message_id=message_id,
                    caption=_caption(text),
                    reply_markup=reply_markup,
                )
            else:
                await self.bot.edit_message_text(
                    text=text,
                    chat_id=surface.chat_id,
                    message_id=message_id,
                    reply_markup=reply_markup,
                )
            return True
        except TelegramAPIError as e:
            logger.warning("Could not update announcement %s in %s: %s", message_id, surface.chat_id, e)
            return False
