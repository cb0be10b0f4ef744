import asyncio
import inspect
from typing import Any, Callable, Optional

import socketio

from fieldtrack.errors import ConnectionLost, NotConnected
from fieldtrack.models import (
    CHANNEL_CONNECTED,
    CHANNEL_CONNECTING,
    CHANNEL_DISCONNECTED,
    CHANNEL_RECONNECTING,
)

EVENT_AFFILIATE = "affiliate"
EVENT_START_ROUTE = "startRoute"
EVENT_END_ROUTE = "endRoute"
EVENT_UPDATE_LOCATION = "updateLocation"
EVENT_TOGGLE_TRACKING = "toggleTracking"

EVENT_LOCATION_ACKNOWLEDGED = "locationAcknowledged"
EVENT_TRACKING_ERROR = "trackingError"
EVENT_ROUTE_STARTED = "routeStarted"
EVENT_ROUTE_COMPLETED = "routeCompleted"
INBOUND_EVENTS = (
    EVENT_LOCATION_ACKNOWLEDGED,
    EVENT_TRACKING_ERROR,
    EVENT_ROUTE_STARTED,
    EVENT_ROUTE_COMPLETED,
)

# Raised locally, never sent by the server
EVENT_CONNECTION_LOST = "connectionLost"


def default_client_factory() -> socketio.AsyncClient:
    # Reconnection is driven by ConnectionManager so that affiliation is re-sent.
    return socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)


class ConnectionManager:
    """Owns the real-time channel to the dispatch server for one technician.

    State moves ``disconnected -> connecting -> connected``; a transport drop
    moves it to ``reconnecting``, where up to ``reconnect_attempts`` attempts
    are made with a fixed ``reconnect_delay_sec`` between them. Exhausting the
    attempts returns to ``disconnected`` and publishes ``connectionLost``.
    The ``affiliate`` event is emitted on every entry into ``connected``.
    """

    def __init__(
        self,
        url: str,
        logger,
        *,
        reconnect_attempts: int = 5,
        reconnect_delay_sec: float = 1.0,
        connect_timeout_sec: float = 10.0,
        transports: tuple[str, ...] = ("websocket", "polling"),
        client_factory: Callable[[], Any] = default_client_factory,
    ) -> None:
        self.url = url
        self.logger = logger
        self.reconnect_attempts = max(int(reconnect_attempts), 0)
        self.reconnect_delay_sec = reconnect_delay_sec
        self.connect_timeout_sec = connect_timeout_sec
        self.transports = tuple(transports)
        self._client_factory = client_factory

        self.state = CHANNEL_DISCONNECTED
        self.identity: Optional[str] = None
        self._client = None
        self._closing = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()
        self._subscribers: dict[str, list[Callable]] = {}
        self._teardown_listeners: list[Callable[[str], None]] = []

    @property
    def is_connected(self) -> bool:
        return self.state == CHANNEL_CONNECTED

    def add_teardown_listener(self, callback: Callable[[str], None]) -> None:
        self._teardown_listeners.append(callback)

    def subscribe(self, event: str, callback: Callable) -> Callable[[], None]:
        callbacks = self._subscribers.setdefault(event, [])
        callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    async def connect(self, identity: str) -> None:
        if not identity:
            raise ValueError("identity is required to open the channel")
        if self.state == CHANNEL_CONNECTED:
            self.logger.info("CHANNEL_CONNECT_NOOP tech_id=%s state=%s", self.identity, self.state)
            return
        if self.state in {CHANNEL_CONNECTING, CHANNEL_RECONNECTING}:
            self.logger.info("CHANNEL_CONNECT_IN_PROGRESS tech_id=%s state=%s", self.identity, self.state)
            return

        self.identity = str(identity)
        self._closing = False
        self.state = CHANNEL_CONNECTING
        client = self._client_factory()
        self._client = client
        self._bind(client)
        self.logger.info("CHANNEL_CONNECTING url=%s tech_id=%s", self.url, self.identity)

        try:
            opened = await self._open_with_retries(client, first_delay=False, attempts=self.reconnect_attempts + 1)
        except BaseException as exc:
            if client is self._client:
                self.state = CHANNEL_DISCONNECTED
                self._client = None
            self.logger.error("CHANNEL_CONNECT_ABORTED tech_id=%s error_type=%s error=%s", self.identity, type(exc).__name__, exc)
            raise
        if self._closing or client is not self._client:
            await self._close_client(client)
            raise NotConnected("Disconnected while connecting.")
        if not opened:
            self.state = CHANNEL_DISCONNECTED
            self._client = None
            raise NotConnected("Could not connect to the dispatch server.")

        await self._enter_connected()

    async def disconnect(self) -> None:
        previous = self.state
        self._closing = True
        self.state = CHANNEL_DISCONNECTED

        # Runs before any await so tracking is already off when this returns control.
        for listener in list(self._teardown_listeners):
            try:
                listener("disconnect")
            except Exception as exc:
                self.logger.error("CHANNEL_TEARDOWN_LISTENER_FAILED error=%s", exc)

        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        for pending in list(self._pending):
            pending.cancel()

        client = self._client
        self._client = None
        if client is not None:
            await self._close_client(client)
        self.logger.info("CHANNEL_DISCONNECTED tech_id=%s previous=%s", self.identity, previous)
        self.identity = None

    async def emit(self, event: str, payload: dict) -> None:
        client = self._client
        if self.state != CHANNEL_CONNECTED or client is None:
            raise NotConnected(f"Cannot send {event}: channel is {self.state}.")
        try:
            await client.emit(event, payload)
        except socketio.exceptions.SocketIOError as exc:
            raise NotConnected(f"Cannot send {event}: {exc}") from exc
        self.logger.info("CHANNEL_EMIT event=%s tech_id=%s", event, self.identity)

    def emit_nowait(self, event: str, payload: dict) -> bool:
        if self.state != CHANNEL_CONNECTED or self._client is None:
            self.logger.info("CHANNEL_EMIT_DROPPED event=%s reason=not_connected state=%s", event, self.state)
            return False
        task = asyncio.get_running_loop().create_task(self._emit_quietly(event, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _emit_quietly(self, event: str, payload: dict) -> None:
        try:
            await self.emit(event, payload)
        except NotConnected as exc:
            self.logger.info("CHANNEL_EMIT_DROPPED event=%s reason=%s", event, exc)

    async def _open_transport(self, client) -> None:
        await client.connect(
            self.url,
            transports=list(self.transports),
            wait_timeout=self.connect_timeout_sec,
        )

    async def _open_with_retries(self, client, *, first_delay: bool, attempts: int) -> bool:
        for attempt in range(1, attempts + 1):
            if first_delay or attempt > 1:
                await asyncio.sleep(self.reconnect_delay_sec)
            if self._closing or client is not self._client:
                return False
            try:
                await self._open_transport(client)
            except socketio.exceptions.ConnectionError as exc:
                self.logger.warning(
                    "CHANNEL_CONNECT_FAILED attempt=%s/%s tech_id=%s error=%s",
                    attempt,
                    attempts,
                    self.identity,
                    exc,
                )
                continue
            return True
        return False

    async def _enter_connected(self) -> None:
        self.state = CHANNEL_CONNECTED
        self.logger.info("CHANNEL_CONNECTED tech_id=%s", self.identity)
        try:
            await self.emit(EVENT_AFFILIATE, {"techId": self.identity})
        except NotConnected as exc:
            self.logger.warning("CHANNEL_AFFILIATE_FAILED tech_id=%s error=%s", self.identity, exc)

    async def _reconnect(self, client) -> None:
        opened = await self._open_with_retries(client, first_delay=True, attempts=self.reconnect_attempts)
        if self._closing or client is not self._client:
            return
        self._reconnect_task = None
        if opened:
            self.logger.info("CHANNEL_RECONNECTED tech_id=%s", self.identity)
            await self._enter_connected()
            return

        self.state = CHANNEL_DISCONNECTED
        self._client = None
        self.logger.error(
            "CHANNEL_RECONNECT_EXHAUSTED tech_id=%s attempts=%s",
            self.identity,
            self.reconnect_attempts,
        )
        error = ConnectionLost("Lost connection to the dispatch server.")
        await self._dispatch(EVENT_CONNECTION_LOST, {"message": error.user_text()})

    async def _handle_drop(self, client, reason) -> None:
        if self._closing or client is not self._client or self.state != CHANNEL_CONNECTED:
            return
        self.logger.warning("CHANNEL_DROPPED tech_id=%s reason=%s", self.identity, reason)
        self.state = CHANNEL_RECONNECTING
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect(client))

    async def _close_client(self, client) -> None:
        try:
            await client.disconnect()
        except socketio.exceptions.SocketIOError as exc:
            self.logger.warning("CHANNEL_CLOSE_FAILED error=%s", exc)

    async def _dispatch(self, event: str, payload) -> None:
        for callback in list(self._subscribers.get(event, [])):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception("CHANNEL_SUBSCRIBER_FAILED event=%s", event)

    def _bind(self, client) -> None:
        async def on_connect():
            self.logger.info("CHANNEL_TRANSPORT_UP tech_id=%s", self.identity)

        async def on_connect_error(*args):
            self.logger.warning("CHANNEL_CONNECT_ERROR tech_id=%s data=%s", self.identity, args[0] if args else None)

        async def on_disconnect(*args):
            await self._handle_drop(client, args[0] if args else None)

        client.on("connect", on_connect)
        client.on("connect_error", on_connect_error)
        client.on("disconnect", on_disconnect)

        for event in INBOUND_EVENTS:
            client.on(event, self._inbound_handler(event))

    def _inbound_handler(self, event: str):
        async def handler(*args):
            payload = args[0] if args else None
            self.logger.info("CHANNEL_EVENT event=%s tech_id=%s", event, self.identity)
            await self._dispatch(event, payload)

        return handler
