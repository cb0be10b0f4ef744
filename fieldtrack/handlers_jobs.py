import asyncio

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.error import TelegramError
from telegram.ext import CallbackQueryHandler, CommandHandler, ContextTypes

from fieldtrack.errors import FieldTrackError, TrackingStopFailed
from fieldtrack.models import (
    JOB_ACCEPTED,
    JOB_ASSIGNED,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_IN_PROGRESS,
    MODE_TRACKING,
)

STATUS_LABELS = {
    JOB_ASSIGNED: "🆕 Assigned",
    JOB_ACCEPTED: "👍 Accepted",
    JOB_IN_PROGRESS: "🚚 In progress",
    JOB_COMPLETED: "✅ Completed",
    JOB_CANCELLED: "❌ Cancelled",
}


def job_keyboard(job) -> InlineKeyboardMarkup | None:
    if job.status == JOB_ASSIGNED:
        button = InlineKeyboardButton("Accept", callback_data=f"job:accept:{job.id}")
    elif job.status == JOB_ACCEPTED:
        button = InlineKeyboardButton("▶️ Start", callback_data=f"job:start:{job.id}")
    elif job.status == JOB_IN_PROGRESS:
        button = InlineKeyboardButton("🏁 Complete", callback_data=f"job:complete:{job.id}")
    else:
        return None
    return InlineKeyboardMarkup([[button]])


def format_job(job) -> str:
    lines = [f"{job.title}", STATUS_LABELS.get(job.status, job.status)]
    address = job.raw.get("address") or job.raw.get("location")
    if isinstance(address, str) and address:
        lines.append(f"📍 {address}")
    return "\n".join(lines)


def format_status(status, stats: dict) -> str:
    if status.mode == MODE_TRACKING and status.standalone:
        tracking = "sharing location (no job)"
    elif status.mode == MODE_TRACKING:
        tracking = f"tracking job {status.job_id}"
    else:
        tracking = status.mode.replace("_", " ")
    return (
        f"Server: {'connected' if status.is_connected else 'offline'}\n"
        f"Tracking: {tracking}\n"
        f"Jobs: {stats['total']} total, {stats['pending']} pending, "
        f"{stats['active']} active, {stats['completed']} completed"
    )


class ProgressMessage:
    """Sync progress reporter that edits one chat message in place."""

    def __init__(self, message, logger) -> None:
        self.message = message
        self.logger = logger
        self.last_text = message.text if message is not None else None
        self._tasks: set[asyncio.Task] = set()

    def __call__(self, text: str) -> None:
        if self.message is None or text == self.last_text:
            return
        self.last_text = text
        task = asyncio.get_running_loop().create_task(self.message.edit_text(f"⏳ {text}"))
        self._tasks.add(task)
        task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.info("PROGRESS_EDIT_FAILED error=%s", task.exception())

    async def finish(self, text: str) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self.message is None:
            return
        try:
            await self.message.edit_text(text)
        except TelegramError as exc:
            self.logger.info("PROGRESS_EDIT_FAILED error=%s", exc)


def build_job_handlers(session_store, logger):
    async def require_session(update: Update):
        user = update.effective_user
        msg = update.effective_message
        if not user or not msg:
            return None
        session = session_store.get(user.id)
        if session is None:
            await msg.reply_text("Please sign in first: /login <email> <password>")
        return session

    async def cmd_jobs(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        session = await require_session(update)
        if not session:
            return
        msg = update.effective_message
        try:
            jobs = await session.coordinator.refresh_jobs()
        except FieldTrackError as exc:
            logger.warning("JOBS_FETCH_FAILED tech_id=%s error=%s", session.identity, exc)
            await msg.reply_text(f"Could not load jobs: {exc.user_text()}")
            return

        open_jobs = [job for job in jobs if job.status not in {JOB_COMPLETED, JOB_CANCELLED}]
        stats = session.coordinator.stats()
        await msg.reply_text(
            f"Jobs: {stats['total']} total, {stats['pending']} pending, "
            f"{stats['active']} active, {stats['completed']} completed."
        )
        if not open_jobs:
            await msg.reply_text("No open jobs right now.")
            return
        for job in open_jobs:
            await msg.reply_text(format_job(job), reply_markup=job_keyboard(job))

    async def run_job_action(update: Update, session, action: str, job_id: str) -> None:
        query = update.callback_query
        coordinator = session.coordinator
        progress = ProgressMessage(await query.message.reply_text("⏳ Working..."), logger)
        try:
            if action == "accept":
                job = await coordinator.accept(job_id)
            elif action == "start":
                job = await coordinator.start(job_id, session.identity, progress)
            elif action == "complete":
                job = await coordinator.complete(job_id, session.identity, progress)
            else:
                logger.warning("JOB_ACTION_UNKNOWN action=%s job_id=%s", action, job_id)
                await progress.finish("Unknown action.")
                return
        except TrackingStopFailed as exc:
            logger.warning("JOB_ACTION_PARTIAL action=%s job_id=%s error=%s", action, job_id, exc)
            await progress.finish(f"✅ Job completed.\n⚠️ {exc.__cause__ or exc}")
            await query.edit_message_text(format_job(exc.job))
            return
        except FieldTrackError as exc:
            logger.warning("JOB_ACTION_FAILED action=%s job_id=%s error=%s", action, job_id, exc)
            await progress.finish(f"❌ {exc.user_text()}")
            return

        done_text = {
            "accept": "👍 Job accepted.",
            "start": "🚚 Job started. Your route is being tracked.",
            "complete": "✅ Job completed. Tracking stopped.",
        }[action]
        await progress.finish(done_text)
        await query.edit_message_text(format_job(job), reply_markup=job_keyboard(job))

    async def job_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        if not query or not query.message:
            return
        await query.answer()
        session = await require_session(update)
        if not session:
            return
        try:
            _, action, job_id = query.data.split(":", maxsplit=2)
        except ValueError:
            logger.warning("JOB_CALLBACK_BAD_DATA data=%s", query.data)
            return
        await run_job_action(update, session, action, job_id)

    async def cmd_share(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        session = await require_session(update)
        if not session:
            return
        msg = update.effective_message
        status = session.coordinator.status()
        enabled = not (status.standalone and status.mode == MODE_TRACKING)
        progress = ProgressMessage(
            await msg.reply_text("⏳ Starting location sharing..." if enabled else "⏳ Stopping location sharing..."),
            logger,
        )
        try:
            position = await session.coordinator.share_location(enabled, progress)
        except FieldTrackError as exc:
            logger.info("SHARE_TOGGLE_FAILED tech_id=%s enabled=%s error=%s", session.identity, enabled, exc)
            await progress.finish(f"❌ {exc.user_text()}")
            return
        if not enabled:
            await progress.finish("Location sharing is off.")
        elif position is not None:
            await progress.finish(f"📡 Sharing your location ({position.lat:.6f}, {position.lng:.6f}).")
        else:
            await progress.finish("📡 Location sharing is already on.")

    async def cmd_locate(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        session = await require_session(update)
        if not session:
            return
        progress = ProgressMessage(await update.effective_message.reply_text("⏳ Getting your location..."), logger)
        try:
            position = await session.coordinator.send_location_now(progress)
        except FieldTrackError as exc:
            await progress.finish(f"❌ {exc.user_text()}")
            return
        await progress.finish(f"📍 Location sent: {position.lat:.6f}, {position.lng:.6f}")

    async def cmd_status(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        session = await require_session(update)
        if not session:
            return
        coordinator = session.coordinator
        await update.effective_message.reply_text(format_status(coordinator.status(), coordinator.stats()))

    return [
        CommandHandler("jobs", cmd_jobs),
        CommandHandler("share", cmd_share),
        CommandHandler("locate", cmd_locate),
        CommandHandler("status", cmd_status),
        CallbackQueryHandler(job_callback, pattern=r"^job:(accept|start|complete):"),
    ]
