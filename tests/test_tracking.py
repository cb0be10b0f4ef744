import asyncio
import unittest

from fieldtrack.channel import ConnectionManager
from fieldtrack.errors import (
    JobMismatch,
    LocationUnavailable,
    NotConnected,
    OperationInProgress,
    SessionBusy,
)
from fieldtrack.models import MODE_ACQUIRING_FIX, MODE_OFF, MODE_STOPPING_REQUESTED, MODE_TRACKING, Position
from fieldtrack.telegram_device import TelegramLocationFeed
from fieldtrack.tracking import Sampler, TrackingSession

# ~50 m and ~5 m of latitude
FAR = 0.00045
NEAR = 0.000045


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
        self.handlers = {}
        self.emitted = []

    def on(self, event, handler):
        self.handlers[event] = handler

    async def connect(self, url, **kwargs):
        pass

    async def emit(self, event, data=None):
        self.emitted.append((event, data))

    async def disconnect(self):
        pass


class FakeEngine:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0
        self.gate = None

    async def acquire(self, progress=None):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0) if self.results else Position(12.9, 77.6)
        if isinstance(result, Exception):
            raise result
        return result


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TrackingTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.client = FakeSocketClient()
        self.channel = ConnectionManager(
            "http://dispatch.test",
            DummyLogger(),
            reconnect_delay_sec=0,
            client_factory=lambda: self.client,
        )
        await self.channel.connect("tech-9")
        self.client.emitted.clear()
        self.feed = TelegramLocationFeed()
        self.clock = FakeClock()

    def make_session(self, engine):
        return TrackingSession(
            engine,
            self.channel,
            self.feed,
            DummyLogger(),
            job_interval_sec=5,
            job_min_distance_m=10,
            standalone_interval_sec=10,
            standalone_min_distance_m=20,
            clock=self.clock,
        )

    def events(self):
        return [event for event, _ in self.client.emitted]


class StartStopTests(TrackingTestCase):
    async def test_start_emits_start_route_with_fix(self):
        session = self.make_session(FakeEngine(Position(12.9, 77.6)))

        position = await session.start_for_job("job-1")

        self.assertEqual((position.lat, position.lng), (12.9, 77.6))
        self.assertEqual(
            self.client.emitted,
            [("startRoute", {"techId": "tech-9", "jobId": "job-1", "lat": 12.9, "lng": 77.6})],
        )
        self.assertEqual(session.mode, MODE_TRACKING)
        self.assertEqual(session.job_id, "job-1")
        self.assertEqual(session.interval_sec, 5)
        self.assertEqual(session.min_distance_m, 10)
        self.assertTrue(session.sampler.armed)

    async def test_start_then_stop_emits_one_of_each_in_order(self):
        session = self.make_session(FakeEngine(Position(12.9, 77.6), Position(12.95, 77.65)))

        await session.start_for_job("job-1")
        await session.stop_for_job("job-1")

        self.assertEqual(self.events(), ["startRoute", "endRoute"])
        self.assertEqual(
            self.client.emitted[1][1],
            {"techId": "tech-9", "jobId": "job-1", "lat": 12.95, "lng": 77.65},
        )
        self.assertEqual(session.mode, MODE_OFF)
        self.assertIsNone(session.job_id)
        self.assertIsNone(session.sampler)

    async def test_stop_ends_off_when_final_fix_fails(self):
        session = self.make_session(FakeEngine(Position(12.9, 77.6), LocationUnavailable("no fix")))
        await session.start_for_job("job-1")

        with self.assertRaises(LocationUnavailable):
            await session.stop_for_job("job-1")

        self.assertEqual(session.mode, MODE_OFF)
        self.assertEqual(self.events(), ["startRoute", "endRoute"])
        self.assertEqual(
            self.client.emitted[1][1],
            {"techId": "tech-9", "jobId": "job-1", "lat": 12.9, "lng": 77.6},
        )
        self.assertEqual(self.feed._watchers, [])

    async def test_failed_final_fix_ends_route_at_last_sample(self):
        session = self.make_session(FakeEngine(Position(12.9, 77.6), LocationUnavailable("no fix")))
        await session.start_for_job("job-1")
        self.clock.now += 6
        self.feed.push(12.9 + FAR, 77.6)

        with self.assertRaises(LocationUnavailable):
            await session.stop_for_job("job-1")

        self.assertEqual(self.events(), ["startRoute", "updateLocation", "endRoute"])
        self.assertEqual(self.client.emitted[-1][1]["lat"], 12.9 + FAR)

    async def test_start_failure_returns_to_off(self):
        engine = FakeEngine(LocationUnavailable("no fix"))
        session = self.make_session(engine)

        with self.assertRaises(LocationUnavailable):
            await session.start_for_job("job-1")

        self.assertEqual(session.mode, MODE_OFF)
        self.assertIsNone(session.job_id)
        self.assertEqual(self.client.emitted, [])

    async def test_start_requires_connected_channel(self):
        engine = FakeEngine()
        session = self.make_session(engine)
        await self.channel.disconnect()

        with self.assertRaises(NotConnected):
            await session.start_for_job("job-1")

        self.assertEqual(engine.calls, 0)
        self.assertEqual(session.mode, MODE_OFF)

    async def test_start_while_tracking_is_busy(self):
        session = self.make_session(FakeEngine())
        await session.start_for_job("job-1")

        with self.assertRaises(SessionBusy):
            await session.start_for_job("job-2")

        self.assertEqual(session.job_id, "job-1")
        self.assertEqual(self.events(), ["startRoute"])

    async def test_stop_for_other_job_leaves_session_unchanged(self):
        session = self.make_session(FakeEngine())
        await session.start_for_job("job-1")
        sampler = session.sampler

        with self.assertRaises(JobMismatch):
            await session.stop_for_job("job-2")

        self.assertEqual(session.mode, MODE_TRACKING)
        self.assertEqual(session.job_id, "job-1")
        self.assertIs(session.sampler, sampler)
        self.assertTrue(sampler.armed)
        self.assertEqual(self.events(), ["startRoute"])

    async def test_stop_when_off_is_noop(self):
        engine = FakeEngine()
        session = self.make_session(engine)

        self.assertIsNone(await session.stop_for_job("job-1"))

        self.assertEqual(engine.calls, 0)
        self.assertEqual(self.client.emitted, [])

    async def test_stop_enters_stopping_requested_while_fix_in_flight(self):
        engine = FakeEngine(Position(12.9, 77.6))
        session = self.make_session(engine)
        await session.start_for_job("job-1")

        engine.gate = asyncio.Event()
        task = asyncio.create_task(session.stop_for_job("job-1"))
        await asyncio.sleep(0)

        self.assertEqual(session.mode, MODE_STOPPING_REQUESTED)
        self.assertIsNone(session.job_id)
        self.assertIsNone(session.sampler)
        with self.assertRaises(SessionBusy):
            await session.stop_for_job("job-1")

        engine.gate.set()
        await task
        self.assertEqual(session.mode, MODE_OFF)

    async def test_close_route_for_job_started_earlier(self):
        session = self.make_session(FakeEngine(Position(13.0, 77.7)))

        await session.close_route("job-7")

        self.assertEqual(
            self.client.emitted,
            [("endRoute", {"techId": "tech-9", "jobId": "job-7", "lat": 13.0, "lng": 77.7})],
        )
        self.assertEqual(session.mode, MODE_OFF)

    async def test_close_route_without_fix_sends_nothing(self):
        session = self.make_session(FakeEngine(LocationUnavailable("no fix")))

        with self.assertRaises(LocationUnavailable):
            await session.close_route("job-7")

        self.assertEqual(self.client.emitted, [])
        self.assertEqual(session.mode, MODE_OFF)

    async def test_close_route_while_tracking_is_busy(self):
        session = self.make_session(FakeEngine())
        await session.start_for_job("job-1")

        with self.assertRaises(SessionBusy):
            await session.close_route("job-7")

        self.assertEqual(session.job_id, "job-1")


class DisconnectTests(TrackingTestCase):
    async def test_disconnect_during_acquisition_discards_late_fix(self):
        engine = FakeEngine(Position(12.9, 77.6))
        engine.gate = asyncio.Event()
        session = self.make_session(engine)

        task = asyncio.create_task(session.start_for_job("job-1"))
        await asyncio.sleep(0)
        self.assertEqual(session.mode, MODE_ACQUIRING_FIX)

        await self.channel.disconnect()
        self.assertEqual(session.mode, MODE_OFF)

        engine.gate.set()
        with self.assertRaises(NotConnected):
            await task

        self.assertEqual(session.mode, MODE_OFF)
        self.assertIsNone(session.sampler)
        self.assertEqual(self.client.emitted, [])

    async def test_reset_is_synchronous_and_disarms(self):
        session = self.make_session(FakeEngine())
        await session.start_for_job("job-1")
        sampler = session.sampler

        session.reset("test")

        self.assertEqual(session.mode, MODE_OFF)
        self.assertFalse(sampler.armed)
        self.assertEqual(self.feed._watchers, [])


class SamplingTests(TrackingTestCase):
    async def test_sample_requires_interval_and_distance(self):
        session = self.make_session(FakeEngine(Position(12.9, 77.6)))
        await session.start_for_job("job-1")
        self.client.emitted.clear()

        # far enough but too soon
        self.clock.now += 1
        self.feed.push(12.9 + FAR, 77.6)
        # late enough but too close
        self.clock.now += 10
        self.feed.push(12.9 + NEAR, 77.6)
        # late enough and far enough
        self.feed.push(12.9 + FAR, 77.6)
        await self.channel.flush()

        self.assertEqual(
            self.client.emitted,
            [("updateLocation", {"techId": "tech-9", "jobId": "job-1", "lat": 12.9 + FAR, "lng": 77.6})],
        )

    async def test_distance_is_measured_from_last_forwarded_fix(self):
        session = self.make_session(FakeEngine(Position(12.9, 77.6)))
        await session.start_for_job("job-1")
        self.client.emitted.clear()

        self.clock.now += 6
        self.feed.push(12.9 + FAR, 77.6)
        self.clock.now += 6
        self.feed.push(12.9 + FAR + NEAR, 77.6)
        self.clock.now += 6
        self.feed.push(12.9 + 2 * FAR, 77.6)
        await self.channel.flush()

        lats = [data["lat"] for _, data in self.client.emitted]
        self.assertEqual(lats, [12.9 + FAR, 12.9 + 2 * FAR])

    async def test_no_samples_after_stop(self):
        session = self.make_session(FakeEngine(Position(12.9, 77.6), Position(12.9, 77.6)))
        await session.start_for_job("job-1")
        self.clock.now += 6
        self.feed.push(12.9 + FAR, 77.6)
        await session.stop_for_job("job-1")

        self.clock.now += 60
        self.feed.push(12.9 + 3 * FAR, 77.6)
        await self.channel.flush()

        self.assertEqual(self.events(), ["startRoute", "updateLocation", "endRoute"])

    def test_sampler_ignores_offers_when_disarmed(self):
        sent = []
        clock = FakeClock()
        sampler = Sampler(
            job_id="job-1",
            anchor=Position(12.9, 77.6),
            interval_sec=5,
            min_distance_m=10,
            forward=lambda position, job_id: sent.append((position.lat, job_id)),
            clock=clock,
        )
        clock.now += 10

        self.assertFalse(sampler.offer(Position(12.9 + FAR, 77.6)))
        sampler.armed = True
        self.assertTrue(sampler.offer(Position(12.9 + FAR, 77.6)))
        sampler.disarm()
        clock.now += 10
        self.assertFalse(sampler.offer(Position(12.9 + 2 * FAR, 77.6)))

        self.assertEqual(sent, [(12.9 + FAR, "job-1")])


class StandaloneTests(TrackingTestCase):
    async def test_enable_and_disable_standalone(self):
        session = self.make_session(FakeEngine(Position(12.9, 77.6)))

        await session.toggle_standalone(True)
        self.assertEqual(session.mode, MODE_TRACKING)
        self.assertTrue(session.standalone)
        self.assertIsNone(session.job_id)
        self.assertEqual(session.interval_sec, 10)
        self.assertEqual(session.min_distance_m, 20)

        await session.toggle_standalone(False)

        self.assertEqual(
            self.client.emitted,
            [
                ("toggleTracking", {"techId": "tech-9", "enabled": True, "lat": 12.9, "lng": 77.6}),
                ("toggleTracking", {"techId": "tech-9", "enabled": False}),
            ],
        )
        self.assertEqual(session.mode, MODE_OFF)
        self.assertFalse(session.standalone)

    async def test_concurrent_enable_is_rejected(self):
        engine = FakeEngine(Position(12.9, 77.6))
        engine.gate = asyncio.Event()
        session = self.make_session(engine)

        first = asyncio.create_task(session.toggle_standalone(True))
        await asyncio.sleep(0)
        with self.assertRaises(OperationInProgress):
            await session.toggle_standalone(True)

        engine.gate.set()
        await first

        self.assertEqual(engine.calls, 1)
        self.assertEqual(len(self.feed._watchers), 1)
        self.assertEqual(self.events(), ["toggleTracking"])

    async def test_enable_twice_is_noop(self):
        engine = FakeEngine()
        session = self.make_session(engine)

        await session.toggle_standalone(True)
        self.assertIsNone(await session.toggle_standalone(True))

        self.assertEqual(engine.calls, 1)
        self.assertEqual(len(self.feed._watchers), 1)

    async def test_standalone_and_job_tracking_exclude_each_other(self):
        session = self.make_session(FakeEngine())
        await session.start_for_job("job-1")

        with self.assertRaises(SessionBusy):
            await session.toggle_standalone(True)
        with self.assertRaises(SessionBusy):
            await session.toggle_standalone(False)
        self.assertEqual(session.job_id, "job-1")

        await session.stop_for_job("job-1")
        await session.toggle_standalone(True)
        with self.assertRaises(SessionBusy):
            await session.start_for_job("job-2")
        with self.assertRaises(JobMismatch):
            await session.stop_for_job("job-2")

    async def test_standalone_sample_has_no_job(self):
        session = self.make_session(FakeEngine(Position(12.9, 77.6)))
        await session.toggle_standalone(True)
        self.client.emitted.clear()

        self.clock.now += 11
        self.feed.push(12.9 + FAR, 77.6)
        await self.channel.flush()

        self.assertEqual(
            self.client.emitted,
            [("updateLocation", {"techId": "tech-9", "jobId": None, "lat": 12.9 + FAR, "lng": 77.6})],
        )


class ManualLocationTests(TrackingTestCase):
    async def test_send_current_location_carries_active_job(self):
        session = self.make_session(FakeEngine(Position(12.9, 77.6), Position(13.0, 77.7)))
        await session.start_for_job("job-1")

        await session.send_current_location()

        self.assertEqual(
            self.client.emitted[-1],
            ("updateLocation", {"techId": "tech-9", "jobId": "job-1", "lat": 13.0, "lng": 77.7}),
        )

    async def test_send_current_location_when_off(self):
        session = self.make_session(FakeEngine(Position(13.0, 77.7)))

        await session.send_current_location()

        self.assertEqual(
            self.client.emitted,
            [("updateLocation", {"techId": "tech-9", "jobId": None, "lat": 13.0, "lng": 77.7})],
        )
        self.assertEqual(session.mode, MODE_OFF)


if __name__ == "__main__":
    unittest.main()
