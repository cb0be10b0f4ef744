import time

from telegram.error import TelegramError
from telegram.ext import ContextTypes

from fieldtrack import config
from fieldtrack.models import MODE_TRACKING


def build_job_check_stale(session_store, logger):
    async def job_check_stale(context: ContextTypes.DEFAULT_TYPE) -> None:
        if session_store.is_empty():
            return

        now = time.time()
        for session in list(session_store.values()):
            if session.tracking.mode != MODE_TRACKING:
                continue

            age = session.feed.last_update_age_sec()
            live = session.feed.is_live
            if live and (age is None or age < config.STALE_AFTER_SEC):
                continue
            if (now - session.last_stale_notify_ts) < config.STALE_NOTIFY_COOLDOWN_SEC:
                continue

            session.last_stale_notify_ts = now
            logger.info(
                "STALE_FEED user=%s tech_id=%s age=%s live=%s job_id=%s",
                session.user_id,
                session.identity,
                f"{age:.1f}" if age is not None else "—",
                live,
                session.tracking.job_id,
            )
            reason = "We are not receiving your location." if live else "Your live location sharing has ended."
            text = f"⚠️ {reason} Please share your Live Location again (attach → Location → Share My Live Location)."
            try:
                await context.bot.send_message(chat_id=session.chat_id, text=text)
            except TelegramError as exc:
                logger.error("STALE_NOTIFY_FAIL chat_id=%s error=%s", session.chat_id, exc)

    return job_check_stale
