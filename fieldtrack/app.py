from telegram import BotCommand
from telegram.ext import Application

from fieldtrack import config
from fieldtrack.handlers_auth import build_auth_handlers
from fieldtrack.handlers_jobs import build_job_handlers
from fieldtrack.handlers_location import build_location_handlers
from fieldtrack.handlers_register import build_registration_handler
from fieldtrack.jobs import build_job_check_stale
from fieldtrack.session_store import SessionStore


class FieldTrackApp:
    def __init__(self, logger) -> None:
        self.logger = logger
        self.session_store = SessionStore()

        if not config.BOT_TOKEN:
            raise RuntimeError("BOT_TOKEN is empty.")
        if not config.JOB_API_BASE or not config.SOCKET_URL:
            raise RuntimeError("JOB_API_BASE and SOCKET_URL are required.")

        self.application = (
            Application.builder()
            .token(config.BOT_TOKEN)
            # location updates must reach the feed while a job action awaits a fix
            .concurrent_updates(True)
            .post_init(self._post_init)
            .post_shutdown(self._post_shutdown)
            .build()
        )

    async def _post_init(self, app: Application) -> None:
        commands = [
            BotCommand("start", "Open the menu"),
            BotCommand("register", "Create an account"),
            BotCommand("login", "Sign in: /login <email> <password>"),
            BotCommand("jobs", "Show my jobs"),
            BotCommand("share", "Start/stop sharing my location"),
            BotCommand("locate", "Send my location now"),
            BotCommand("status", "Tracking status"),
            BotCommand("profile", "My profile and availability"),
            BotCommand("logout", "Sign out"),
            BotCommand("help", "How it works"),
        ]
        await app.bot.set_my_commands(commands)

    async def _post_shutdown(self, app: Application) -> None:
        for session in list(self.session_store.values()):
            self.session_store.pop(session.user_id)
            await session.close()

    def register_handlers(self, app: Application) -> None:
        app.add_handler(build_registration_handler(self.session_store, self.logger))
        for handler in build_auth_handlers(self.session_store, self.logger):
            app.add_handler(handler)
        for handler in build_job_handlers(self.session_store, self.logger):
            app.add_handler(handler)
        for handler in build_location_handlers(self.session_store, self.logger):
            app.add_handler(handler)

        if config.ENABLE_STALE_CHECK:
            if app.job_queue is None:
                raise RuntimeError(
                    "JobQueue is missing. Install:\n"
                    "python -m pip install \"python-telegram-bot[job-queue]\""
                )
            app.job_queue.run_repeating(
                build_job_check_stale(self.session_store, self.logger),
                interval=config.STALE_CHECK_EVERY_SEC,
                first=config.STALE_CHECK_EVERY_SEC,
            )

    def run(self) -> None:
        self.register_handlers(self.application)
        self.logger.info("BOT_STARTED mode=polling")
        self.application.run_polling(
            allowed_updates=["message", "edited_message", "callback_query"],
        )
