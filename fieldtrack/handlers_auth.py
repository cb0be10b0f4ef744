from telegram import InlineKeyboardButton, InlineKeyboardMarkup, KeyboardButton, ReplyKeyboardMarkup, ReplyKeyboardRemove, Update
from telegram.error import TelegramError
from telegram.ext import CallbackQueryHandler, CommandHandler, ContextTypes

from fieldtrack import config
from fieldtrack.channel import EVENT_CONNECTION_LOST, EVENT_TRACKING_ERROR
from fieldtrack.errors import ExternalServiceError, NotConnected
from fieldtrack.job_client import JobServiceClient
from fieldtrack.session_store import build_technician_session

BTN_SHARE_LIVE_LOCATION = "📍 Share location"

HELP_TEXT = (
    "Commands:\n"
    "/register — create an account\n"
    "/login <email> <password> — sign in\n"
    "/jobs — your jobs\n"
    "/share — start/stop sharing your location\n"
    "/locate — send your current location now\n"
    "/status — tracking status\n"
    "/profile — your profile and availability\n"
    "/logout — sign out\n\n"
    "For tracking, share your Live Location with this chat: "
    "attach → Location → Share My Live Location → 8 hours."
)


def location_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        [[KeyboardButton(BTN_SHARE_LIVE_LOCATION, request_location=True)]],
        resize_keyboard=True,
        one_time_keyboard=False,
    )


def default_job_client_factory(logger) -> JobServiceClient:
    return JobServiceClient(config.JOB_API_BASE, logger, timeout_sec=config.HTTP_TIMEOUT_SEC)


def availability_keyboard(is_available: bool) -> InlineKeyboardMarkup:
    if is_available:
        button = InlineKeyboardButton("⏸ Go unavailable", callback_data="avail:off")
    else:
        button = InlineKeyboardButton("▶️ Go available", callback_data="avail:on")
    return InlineKeyboardMarkup([[button]])


def format_profile(profile: dict, stats: dict, permission_granted: bool) -> str:
    available = bool(profile.get("isTracking"))
    return (
        f"👤 {profile.get('name') or '—'}\n"
        f"Email: {profile.get('email') or '—'}\n"
        f"Status: {profile.get('status') or 'OFFLINE'}\n"
        f"Jobs: {stats['total']} total, {stats['active']} active, {stats['completed']} completed\n"
        f"Available for tracking: {'yes' if available else 'no'}\n"
        f"Location shared: {'yes' if permission_granted else 'no'}"
    )


def relay_channel_events(session, bot, logger) -> None:
    async def on_tracking_error(payload) -> None:
        message = payload.get("message") if isinstance(payload, dict) else payload
        logger.warning("TRACKING_ERROR_FROM_SERVER tech_id=%s message=%s", session.identity, message)
        await bot.send_message(chat_id=session.chat_id, text=f"⚠️ Dispatch server: {message or 'tracking error'}")

    async def on_connection_lost(payload) -> None:
        message = payload.get("message") if isinstance(payload, dict) else None
        await bot.send_message(chat_id=session.chat_id, text=f"🔌 {message or 'Lost connection to the dispatch server.'}")

    session.channel.subscribe(EVENT_TRACKING_ERROR, on_tracking_error)
    session.channel.subscribe(EVENT_CONNECTION_LOST, on_connection_lost)


async def open_session(
    bot,
    *,
    user_id: int,
    chat_id: int,
    technician: dict,
    job_client,
    session_store,
    logger,
    session_factory=build_technician_session,
):
    """Builds the technician's session after a successful login or registration.

    Opens the dispatch channel and greets the technician. Returns ``None``
    when the technician record is unusable; the job client is closed then.
    """
    try:
        session = session_factory(
            user_id=user_id,
            chat_id=chat_id,
            technician=technician,
            job_client=job_client,
            logger=logger,
        )
    except ValueError as exc:
        await job_client.aclose()
        logger.error("LOGIN_BAD_TECHNICIAN user=%s error=%s", user_id, exc)
        await bot.send_message(chat_id=chat_id, text="Sign-in failed: invalid server response.")
        return None

    session_store.add(session)
    relay_channel_events(session, bot, logger)
    logger.info("LOGIN_OK user=%s tech_id=%s", user_id, session.identity)

    try:
        await session.channel.connect(session.identity)
    except NotConnected as exc:
        logger.warning("LOGIN_CHANNEL_OFFLINE user=%s tech_id=%s error=%s", user_id, session.identity, exc)
        await bot.send_message(
            chat_id=chat_id,
            text=f"Signed in as {session.name}, but live tracking is offline. {exc.user_text()}",
        )
        return session

    await bot.send_message(
        chat_id=chat_id,
        text=(
            f"✅ Signed in as {session.name}.\n"
            "Share your Live Location (8 hours) so jobs can be tracked, then open /jobs."
        ),
        reply_markup=location_keyboard(),
    )
    return session


def build_auth_handlers(
    session_store,
    logger,
    *,
    job_client_factory=default_job_client_factory,
    session_factory=build_technician_session,
):
    async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        msg = update.effective_message
        if not user or not msg:
            return
        session = session_store.get(user.id)
        if session:
            await msg.reply_text(f"You are signed in as {session.name}.\n\n{HELP_TEXT}")
            return
        await msg.reply_text(f"Hi! Sign in to receive your jobs.\n\n{HELP_TEXT}")

    async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.effective_message:
            await update.effective_message.reply_text(HELP_TEXT)

    async def cmd_login(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        chat = update.effective_chat
        msg = update.effective_message
        if not user or not chat or not msg:
            return

        args = context.args or []
        if len(args) != 2:
            await msg.reply_text("Usage: /login <email> <password>")
            return
        email, password = args

        # the command carries a password
        try:
            await msg.delete()
        except TelegramError as exc:
            logger.info("LOGIN_MESSAGE_DELETE_FAILED user=%s error=%s", user.id, exc)

        existing = session_store.get(user.id)
        if existing:
            await context.bot.send_message(chat_id=chat.id, text=f"Already signed in as {existing.name}. Use /logout first.")
            return

        job_client = job_client_factory(logger)
        try:
            technician = await job_client.login(email, password)
        except ExternalServiceError as exc:
            await job_client.aclose()
            logger.info("LOGIN_FAILED user=%s error=%s", user.id, exc)
            await context.bot.send_message(chat_id=chat.id, text=f"Login failed: {exc}")
            return

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

    async def cmd_profile(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        msg = update.effective_message
        if not user or not msg:
            return
        session = session_store.get(user.id)
        if not session:
            await msg.reply_text("Please sign in first: /login <email> <password>")
            return

        try:
            profile = await session.job_client.get_profile(session.identity)
        except ExternalServiceError as exc:
            logger.warning("PROFILE_FETCH_FAILED user=%s tech_id=%s error=%s", user.id, session.identity, exc)
            await msg.reply_text(f"Could not load your profile: {exc}")
            return

        text = format_profile(profile, session.coordinator.stats(), await session.feed.permission_granted())
        await msg.reply_text(text, reply_markup=availability_keyboard(bool(profile.get("isTracking"))))

    async def availability_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        user = update.effective_user
        if not query or not user:
            return
        await query.answer()

        session = session_store.get(user.id)
        if not session:
            await query.message.reply_text("Please sign in first: /login <email> <password>")
            return

        enabled = query.data == "avail:on"
        if enabled and not await session.feed.permission_granted():
            await query.message.reply_text(
                "Share your location with this chat first, then try again.",
                reply_markup=location_keyboard(),
            )
            return

        try:
            profile = await session.job_client.toggle_availability(session.identity, enabled)
        except ExternalServiceError as exc:
            logger.warning("AVAILABILITY_TOGGLE_FAILED user=%s tech_id=%s error=%s", user.id, session.identity, exc)
            await query.message.reply_text(f"Could not change availability: {exc}")
            return

        profile.setdefault("isTracking", enabled)
        logger.info("AVAILABILITY_SET user=%s tech_id=%s available=%s", user.id, session.identity, enabled)
        text = format_profile(profile, session.coordinator.stats(), await session.feed.permission_granted())
        await query.edit_message_text(text, reply_markup=availability_keyboard(bool(profile["isTracking"])))

    async def cmd_logout(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        msg = update.effective_message
        if not user or not msg:
            return
        session = session_store.pop(user.id)
        if not session:
            await msg.reply_text("You are not signed in.")
            return
        await session.close()
        logger.info("LOGOUT user=%s tech_id=%s", user.id, session.identity)
        await msg.reply_text("Signed out. Location sharing stopped.", reply_markup=ReplyKeyboardRemove())

    return [
        CommandHandler("start", cmd_start),
        CommandHandler("help", cmd_help),
        CommandHandler("login", cmd_login),
        CommandHandler("profile", cmd_profile),
        CallbackQueryHandler(availability_callback, pattern=r"^avail:(on|off)$"),
        CommandHandler("logout", cmd_logout),
    ]
