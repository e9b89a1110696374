# calwatch/adapters/telegram_adapter.py
from __future__ import annotations

import contextlib
import logging
from typing import Any, Dict, Iterable, Optional

from aiogram import Bot, Dispatcher, F
from aiogram.filters import Command, CommandStart
from aiogram.types import (
    CallbackQuery,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    Message,
)

from calwatch.core.channel import SyncBatch, TriggeredReminder
from calwatch.core.i18n import MESSAGES, fmt
from calwatch.core.logging_utils import kv
from calwatch.core.reminder_state import ReminderKey

DISMISS_DATA = "rem:dismiss"
MAX_TRACKED_MESSAGES = 500


class TelegramAdapter:
    """
    Aiogram 3.x presentation bridge:

    • Each triggered reminder becomes one persistent chat message with a Dismiss button.
    • Tapping Dismiss silences that reminder permanently (host -> engine dismiss command).
    • /sync asks the sync scheduler for an immediate run; /start re-surfaces missed reminders.
    """

    def __init__(
        self,
        bot_token: str,
        host: Any,
        chat_id: int,
        max_tracked: int = MAX_TRACKED_MESSAGES,
    ) -> None:
        self.bot = Bot(token=bot_token)
        self.dp = Dispatcher()

        self.host = host
        self.chat_id = chat_id

        self.log = logging.getLogger("calwatch.adapter")

        # message_id -> reminder key, for resolving Dismiss taps; oldest evicted first
        self.max_tracked = max_tracked
        self._msg_to_key: Dict[int, ReminderKey] = {}

        # ---- Handlers (commands first, then callbacks) ----
        self.dp.message.register(self.on_start, CommandStart())
        self.dp.message.register(self.on_sync, Command("sync"))
        self.dp.callback_query.register(self.on_callback, F.data == DISMISS_DATA)

    def attach_host(self, host: Any) -> None:
        self.host = host

    # ------------------------------------------------------------------------------
    # Keyboard
    # ------------------------------------------------------------------------------
    def build_reminder_keyboard(self) -> InlineKeyboardMarkup:
        return InlineKeyboardMarkup(
            inline_keyboard=[
                [InlineKeyboardButton(text=MESSAGES["btn_dismiss"], callback_data=DISMISS_DATA)]
            ]
        )

    # ------------------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------------------
    async def show_reminders(self, reminders: Iterable[TriggeredReminder]) -> None:
        for r in reminders:
            msg_id = await self.send_message(
                render_reminder(r), reply_markup=self.build_reminder_keyboard()
            )
            self._track_message(msg_id, r.key)

    async def send_sync_summary(self, batch: SyncBatch) -> None:
        lines = [fmt("sync_summary", ok=batch.success_count, errors=batch.error_count)]
        for r in batch.results:
            if not r.success:
                lines.append(fmt("sync_error_line", calendar=r.calendar, error=r.error))
        await self.send_message("\n".join(lines))

    def _track_message(self, message_id: int, key: ReminderKey) -> None:
        self._msg_to_key[message_id] = key
        while len(self._msg_to_key) > self.max_tracked:
            oldest = next(iter(self._msg_to_key))
            del self._msg_to_key[oldest]
            self.log.debug("msg.track.evict " + kv(message_id=oldest))

    async def send_message(self, text: str, reply_markup: Any | None = None) -> int:
        self.log.info("msg.out " + kv(chat_id=self.chat_id, text=text))
        msg = await self.bot.send_message(
            chat_id=self.chat_id, text=text, reply_markup=reply_markup
        )
        return msg.message_id

    # ------------------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------------------
    async def on_start(self, message: Message) -> None:
        if message.chat.id != self.chat_id:
            self.log.debug("msg.in.ignored " + kv(chat_id=message.chat.id))
            return
        await self.host.on_focus()

    async def on_sync(self, message: Message) -> None:
        if message.chat.id != self.chat_id:
            self.log.debug("msg.in.ignored " + kv(chat_id=message.chat.id))
            return
        await self.host.sync_now()

    async def on_callback(self, callback: CallbackQuery) -> None:
        message_id: Optional[int] = callback.message.message_id if callback.message else None
        key = self._msg_to_key.pop(message_id, None) if message_id is not None else None

        if key is None:
            with contextlib.suppress(Exception):
                await callback.answer(MESSAGES["cb_unknown"], show_alert=False)
            self.log.info("cb.dismiss.unknown " + kv(message_id=message_id))
            return

        await self.host.dismiss(key)
        self.log.info("cb.dismiss " + kv(message_id=message_id, key=key.as_id()))

        # Acknowledge the callback to clear the Telegram spinner
        with contextlib.suppress(Exception):
            await callback.answer(MESSAGES["cb_dismissed"], show_alert=False)
        if callback.message is not None:
            with contextlib.suppress(Exception):
                await self.bot.edit_message_reply_markup(
                    chat_id=self.chat_id, message_id=message_id, reply_markup=None
                )

    async def run_polling(self) -> None:
        self.log.debug("polling.run")
        await self.bot.delete_webhook(drop_pending_updates=True)
        await self.dp.start_polling(self.bot)


def render_reminder(r: TriggeredReminder) -> str:
    start = r.event.start_time.strftime("%Y-%m-%d %H:%M")
    if r.event.location:
        return fmt(
            "reminder_line_location",
            title=r.event.title,
            label=r.label,
            start=start,
            location=r.event.location,
        )
    return fmt("reminder_line", title=r.event.title, label=r.label, start=start)


__all__ = ["TelegramAdapter", "render_reminder", "DISMISS_DATA"]
