from telegram import Update
from telegram.ext import ContextTypes, MessageHandler, filters


def live_until_ts(message) -> float | None:
    location = message.location
    live_period = getattr(location, "live_period", None)
    if not live_period or message.date is None:
        return None
    return message.date.timestamp() + float(live_period)


def build_location_handlers(session_store, logger):
    async def handle_location_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        user = update.effective_user
        if not message or not user or not message.location:
            return

        session = session_store.get(user.id)
        is_edit = update.edited_message is not None
        if session is None:
            if not is_edit:
                await message.reply_text("Please sign in first: /login <email> <password>")
            return

        location = message.location
        live_until = live_until_ts(message)
        position = session.feed.push(
            location.latitude,
            location.longitude,
            getattr(location, "horizontal_accuracy", None),
            live_until=live_until,
            captured_at=message.edit_date or message.date,
        )
        logger.info(
            "LOCATION_IN user=%s tech_id=%s lat=%s lng=%s acc=%s live=%s edit=%s",
            user.id,
            session.identity,
            position.lat,
            position.lng,
            position.accuracy_m,
            live_until is not None,
            is_edit,
        )

        if is_edit:
            return
        if live_until is None:
            await message.reply_text(
                "Thanks! For job tracking, please share your *Live* Location "
                "(attach → Location → Share My Live Location → 8 hours)."
            )
            return
        await message.reply_text("📡 Live location received. You can start jobs now: /jobs")

    return [
        MessageHandler(filters.UpdateType.MESSAGE & filters.LOCATION, handle_location_message),
        MessageHandler(filters.UpdateType.EDITED_MESSAGE & filters.LOCATION, handle_location_message),
    ]
