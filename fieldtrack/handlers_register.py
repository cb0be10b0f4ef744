from telegram import ReplyKeyboardRemove, Update
from telegram.error import TelegramError
from telegram.ext import CommandHandler, ContextTypes, ConversationHandler, MessageHandler, filters

from fieldtrack import config
from fieldtrack.errors import ExternalServiceError
from fieldtrack.handlers_auth import default_job_client_factory, open_session
from fieldtrack.session_store import build_technician_session


def looks_like_email(raw: str) -> bool:
    local, sep, domain = raw.partition("@")
    return bool(local and sep and "." in domain and " " not in raw)


def build_registration_handler(
    session_store,
    logger,
    *,
    job_client_factory=default_job_client_factory,
    session_factory=build_technician_session,
) -> ConversationHandler:
    async def cmd_register(update: Update, context: ContextTypes.DEFAULT_TYPE) -> int:
        user = update.effective_user
        if not user or not update.message:
            return ConversationHandler.END

        session = session_store.get(user.id)
        if session:
            await update.message.reply_text(f"You are already signed in as {session.name}. Use /logout first.")
            return ConversationHandler.END

        logger.info("REG_START user=%s", user.id)
        context.user_data["reg"] = {}
        await update.message.reply_text("Let's create your account. Send your full name.\n/cancel to stop.")
        return config.REG_NAME

    async def reg_name(update: Update, context: ContextTypes.DEFAULT_TYPE) -> int:
        if not update.message:
            return config.REG_NAME

        name = (update.message.text or "").strip()
        if not name:
            await update.message.reply_text("Send your name as text.")
            return config.REG_NAME

        context.user_data.setdefault("reg", {})["name"] = name
        await update.message.reply_text("Now send your work email.")
        return config.REG_EMAIL

    async def reg_email(update: Update, context: ContextTypes.DEFAULT_TYPE) -> int:
        if not update.message:
            return config.REG_EMAIL

        email = (update.message.text or "").strip()
        if not looks_like_email(email):
            await update.message.reply_text("That does not look like an email address. Try again.")
            return config.REG_EMAIL

        context.user_data.setdefault("reg", {})["email"] = email
        await update.message.reply_text(
            f"Choose a password (at least {config.REG_MIN_PASSWORD_LEN} characters). "
            "The message will be deleted."
        )
        return config.REG_PASSWORD

    async def reg_password(update: Update, context: ContextTypes.DEFAULT_TYPE) -> int:
        user = update.effective_user
        chat = update.effective_chat
        msg = update.message
        if not user or not chat or not msg:
            return ConversationHandler.END

        password = msg.text or ""
        try:
            await msg.delete()
        except TelegramError as exc:
            logger.info("REG_MESSAGE_DELETE_FAILED user=%s error=%s", user.id, exc)

        if len(password) < config.REG_MIN_PASSWORD_LEN:
            await context.bot.send_message(
                chat_id=chat.id,
                text=f"Password is too short, use at least {config.REG_MIN_PASSWORD_LEN} characters.",
            )
            return config.REG_PASSWORD

        reg = context.user_data.pop("reg", {})
        job_client = job_client_factory(logger)
        try:
            technician = await job_client.register(reg.get("name", ""), reg.get("email", ""), password)
        except ExternalServiceError as exc:
            await job_client.aclose()
            logger.info("REG_FAIL user=%s reason=%s", user.id, exc)
            await context.bot.send_message(chat_id=chat.id, text=f"Registration failed: {exc}\nStart again with /register.")
            return ConversationHandler.END

        logger.info("REG_DONE user=%s tech_id=%s", user.id, technician.get("id"))
        await open_session(
            context.bot,
            user_id=user.id,
            chat_id=chat.id,
            technician=technician,
            job_client=job_client,
            session_store=session_store,
            logger=logger,
            session_factory=session_factory,
        )
        return ConversationHandler.END

    async def cmd_cancel(update: Update, context: ContextTypes.DEFAULT_TYPE) -> int:
        context.user_data.pop("reg", None)
        if update.message:
            await update.message.reply_text("Registration cancelled.", reply_markup=ReplyKeyboardRemove())
        return ConversationHandler.END

    return ConversationHandler(
        entry_points=[CommandHandler("register", cmd_register)],
        states={
            config.REG_NAME: [MessageHandler(filters.TEXT & ~filters.COMMAND, reg_name)],
            config.REG_EMAIL: [MessageHandler(filters.TEXT & ~filters.COMMAND, reg_email)],
            config.REG_PASSWORD: [MessageHandler(filters.TEXT & ~filters.COMMAND, reg_password)],
        },
        fallbacks=[CommandHandler("cancel", cmd_cancel)],
        allow_reentry=True,
    )
