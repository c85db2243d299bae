import logging
from typing import Optional, Tuple

from telegram import Update
from telegram.constants import ParseMode
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes

from remindsync.errors import ReminderError
from remindsync.models.payload import NotificationAction
from remindsync.models.record import ReminderStatus

logger = logging.getLogger(__name__)

DEFAULT_SNOOZE_MINUTES = 10


def parse_action(data: str) -> Optional[Tuple[str, int]]:
    """Split ``action:id`` callback data, returning None if it is malformed."""
    action, _, raw_id = (data or "").partition(":")
    if not NotificationAction.is_valid(action):
        return None
    try:
        return action, int(raw_id)
    except ValueError:
        return None


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle the /start command."""
    await update.message.reply_text(
        "🔔 *Reminders*\n\n"
        "I will message you when your reminders are due.\n"
        "Use /reminders to see what is coming up.",
        parse_mode=ParseMode.MARKDOWN,
    )


async def list_reminders_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle the /reminders command."""
    service = context.bot_data["reminder_service"]
    records = [
        r for r in await service.list_reminders()
        if r.status in (ReminderStatus.ACTIVE, ReminderStatus.SNOOZED)
    ]
    if not records:
        await update.message.reply_text("You don't have any active reminders.")
        return

    records.sort(key=lambda r: (r.next_fire_at is None, r.next_fire_at))
    text = "🔔 *Your Active Reminders:*\n\n"
    for i, record in enumerate(records, 1):
        text += f"{i}. *{record.title}*\n   📅 {service.describe_next(record)}\n\n"
    await update.message.reply_text(text, parse_mode=ParseMode.MARKDOWN)


async def callback_query_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle the action buttons of a reminder notification."""
    query = update.callback_query
    await query.answer()

    parsed = parse_action(query.data)
    if parsed is None:
        logger.warning(f"Ignoring unknown callback data: {query.data}")
        return
    action, record_id = parsed
    service = context.bot_data["reminder_service"]

    try:
        if action == NotificationAction.COMPLETE:
            record = await service.mark_completed(record_id)
            await query.edit_message_text(f"✅ Done: {record.title}\nNext: {service.describe_next(record)}")
        elif action == NotificationAction.SNOOZE:
            record = await service.snooze(record_id, DEFAULT_SNOOZE_MINUTES)
            await query.edit_message_text(f"⏰ Snoozed for {DEFAULT_SNOOZE_MINUTES} minutes: {record.title}")
        elif action == NotificationAction.DISMISS:
            await query.edit_message_reply_markup(reply_markup=None)
    except ReminderError as e:
        logger.error(f"Error handling {action} for reminder {record_id}: {str(e)}")
        await query.edit_message_text(f"❌ {e}")


def setup_handlers(bot_app: Application, reminder_service) -> None:
    """Register bot handlers."""
    bot_app.bot_data["reminder_service"] = reminder_service
    bot_app.add_handler(CommandHandler("start", start_command))
    bot_app.add_handler(CommandHandler("reminders", list_reminders_command))
    bot_app.add_handler(CallbackQueryHandler(callback_query_handler))
