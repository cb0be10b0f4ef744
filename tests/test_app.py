import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

from telegram.ext import ConversationHandler

from fieldtrack import config
from fieldtrack.app import FieldTrackApp
from fieldtrack.channel import ConnectionManager
from fieldtrack.handlers_jobs import build_job_handlers
from fieldtrack.handlers_location import build_location_handlers
from fieldtrack.session_store import SessionStore, build_technician_session


class DummyLogger:
    def info(self, *args, **kwargs):
        pass

    def warning(self, *args, **kwargs):
        pass

    def error(self, *args, **kwargs):
        pass

    def exception(self, *args, **kwargs):
        pass


class FakeSocketClient:
    def __init__(self):
        self.emitted = []

    def on(self, event, handler):
        pass

    async def connect(self, url, **kwargs):
        pass

    async def emit(self, event, data=None):
        self.emitted.append((event, data))

    async def disconnect(self):
        pass


class DummyJobClient:
    async def aclose(self):
        pass


class DummyMessage:
    def __init__(self, *, text=None, location=None, date=None):
        self.text = text
        self.location = location
        self.date = date
        self.edit_date = None
        self.replies = []
        self.edits = []

    async def reply_text(self, text, **kwargs):
        self.replies.append(text)
        return DummyMessage(text=text)

    async def edit_text(self, text, **kwargs):
        self.edits.append(text)


def make_app():
    with patch.object(config, "BOT_TOKEN", "123456:TEST-TOKEN"):
        return FieldTrackApp(DummyLogger())


class ApplicationTests(unittest.TestCase):
    def test_updates_are_processed_concurrently(self):
        app = make_app()

        self.assertGreater(app.application.concurrent_updates, 1)

    def test_register_handlers_adds_registration_conversation(self):
        app = make_app()

        with patch.object(config, "ENABLE_STALE_CHECK", False):
            app.register_handlers(app.application)

        handlers = app.application.handlers[0]
        self.assertIsInstance(handlers[0], ConversationHandler)
        commands = set()
        for handler in handlers + handlers[0].entry_points:
            commands.update(getattr(handler, "commands", ()))
        self.assertTrue({"login", "register", "profile", "jobs", "locate", "share", "status", "logout"} <= commands)

    def test_missing_token_is_rejected(self):
        with patch.object(config, "BOT_TOKEN", ""):
            with self.assertRaises(RuntimeError):
                FieldTrackApp(DummyLogger())


class ConcurrentUpdateTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = make_app()
        self.store = SessionStore()
        self.socket = FakeSocketClient()
        channel = ConnectionManager(
            "http://dispatch.test",
            DummyLogger(),
            reconnect_delay_sec=0,
            client_factory=lambda: self.socket,
        )
        self.session = build_technician_session(
            user_id=7,
            chat_id=70,
            technician={"id": "tech-9", "name": "Asha"},
            job_client=DummyJobClient(),
            logger=DummyLogger(),
            channel=channel,
        )
        self.store.add(self.session)
        await channel.connect("tech-9")
        self.socket.emitted.clear()

    async def asyncTearDown(self):
        await self.session.close()

    def handler(self, handlers, command):
        return next(h for h in handlers if command in getattr(h, "commands", ())).callback

    async def test_location_update_reaches_a_waiting_locate_command(self):
        now = datetime.now(timezone.utc)
        # live share running, but the last fix is too old to reuse
        self.session.feed.push(
            12.9,
            77.6,
            10.0,
            live_until=now.timestamp() + 3600,
            captured_at=now - timedelta(minutes=20),
        )
        cmd_locate = self.handler(build_job_handlers(self.store, DummyLogger()), "locate")
        on_location = build_location_handlers(self.store, DummyLogger())[0].callback
        processor = self.app.application.update_processor

        locate_message = DummyMessage(text="/locate")
        locate_update = SimpleNamespace(
            effective_user=SimpleNamespace(id=7),
            effective_message=locate_message,
            edited_message=None,
        )
        locate = asyncio.create_task(processor.process_update(locate_update, cmd_locate(locate_update, SimpleNamespace())))
        for _ in range(100):
            if self.session.feed._waiters:
                break
            await asyncio.sleep(0.01)
        self.assertTrue(self.session.feed._waiters)

        location_message = DummyMessage(
            location=SimpleNamespace(latitude=12.91, longitude=77.61, live_period=28800, horizontal_accuracy=8.0),
            date=datetime.now(timezone.utc),
        )
        location_update = SimpleNamespace(
            effective_user=SimpleNamespace(id=7),
            effective_message=location_message,
            edited_message=None,
        )
        await asyncio.wait_for(
            processor.process_update(location_update, on_location(location_update, SimpleNamespace())),
            timeout=2,
        )
        await asyncio.wait_for(locate, timeout=2)

        self.assertEqual(
            self.socket.emitted,
            [("updateLocation", {"techId": "tech-9", "jobId": None, "lat": 12.91, "lng": 77.61})],
        )
        self.assertIn("Live location received", location_message.replies[0])


if __name__ == "__main__":
    unittest.main()
