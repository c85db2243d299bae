import logging
from typing import List

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup

from remindsync.models.payload import NotificationAction, NotificationPayload

logger = logging.getLogger(__name__)


def format_notification(payload: NotificationPayload) -> str:
    """Message text for a fired reminder."""
    text = f"🔔 Reminder: {payload.title}"
    if payload.category:
        text += f"\n📂 {payload.category}"
    return text


class TelegramNotifier:
    """Deliver fired reminders as Telegram messages."""

    def __init__(self, bot: Bot, chat_id: int):
        self.bot = bot
        self.chat_id = chat_id

    async def notify(self, payload: NotificationPayload):
        """
        Send the notification for a fired reminder.

        Args:
            payload: Payload of the fired reminder; the action buttons carry
                ``action:id`` callback data
        """
        keyboard = [
            [
                InlineKeyboardButton(
                    "✅ Complete",
                    callback_data=f"{NotificationAction.COMPLETE}:{payload.record_id}",
                ),
                InlineKeyboardButton(
                    "⏰ Snooze",
                    callback_data=f"{NotificationAction.SNOOZE}:{payload.record_id}",
                ),
                InlineKeyboardButton(
                    "✖️ Dismiss",
                    callback_data=f"{NotificationAction.DISMISS}:{payload.record_id}",
                ),
            ]
        ]
        await self.bot.send_message(
            chat_id=self.chat_id,
            text=format_notification(payload),
            reply_markup=InlineKeyboardMarkup(keyboard),
        )
        logger.info(f"Sent reminder {payload.record_id} to chat {self.chat_id}")


class LoggingNotifier:
    """Notifier used when no bot is configured; keeps delivered payloads."""

    def __init__(self):
        self.delivered: List[NotificationPayload] = []

    async def notify(self, payload: NotificationPayload):
        self.delivered.append(payload)
        logger.info(f"Reminder {payload.record_id} due: {payload.title} ({payload.category})")
