"""Socket.IO event-stream session.

One ``TransportSession`` owns one connection to the quiz server. It retries
the handshake with a bounded attempt budget, reconnects by itself after an
unexpected drop, and fans server pushes out to subscribed handlers in
registration order on the running event loop.

Automatic reconnection is driven here rather than by python-socketio so that
the same attempt budget, backoff and ``ConnectFailure`` reporting apply to
the first connect and to every reconnect.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketIOConnectionError
from socketio.exceptions import SocketIOError

from quiz_client.errors import ConnectFailure, NotConnected


log = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class ConnectionState(str, Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'


class Subscription:
    """Handle for one handler registration; ``cancel()`` removes exactly it."""

    def __init__(self, session: 'TransportSession', event: str, handler: Handler):
        self.session = session
        self.event = event
        self.handler = handler
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self.session._remove_subscription(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.cancel()

    def __repr__(self):
        return f"<Subscription event={self.event!r} active={self.active}>"


def _default_client_factory():
    return socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)


class TransportSession:
    def __init__(
        self,
        url: str,
        *,
        socketio_path: str = 'socket.io',
        transports=('websocket', 'polling'),
        connect_timeout: float = 10,
        max_attempts: int = 5,
        retry_delay: float = 1.0,
        backoff: str = 'fixed',
        retry_delay_max: float = 10.0,
        client_factory: Optional[Callable[[], Any]] = None,
    ):
        if backoff not in ('fixed', 'exponential'):
            raise ValueError(f"unknown backoff policy: {backoff!r}")
        if max_attempts < 1:
            raise ValueError('max_attempts must be at least 1')
        self.url = url
        self.socketio_path = socketio_path
        self.transports = list(transports)
        self.connect_timeout = connect_timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.backoff = backoff
        self.retry_delay_max = retry_delay_max
        self.latency_ms = -1
        self.failure_count = 0

        self._client_factory = client_factory or _default_client_factory
        self._client = None
        self._state = ConnectionState.DISCONNECTED
        # Bumped by disconnect(); continuations from an older epoch are discarded
        self._epoch = 0
        self._connect_task: Optional[asyncio.Task] = None
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._pending_acks: set = set()
        # Serializes dispatch; python-engineio delivers each message on its own task
        self._dispatch_lock: Optional[asyncio.Lock] = None
        self._state_listeners: List[Callable[[ConnectionState], Any]] = []
        self._error_listeners: List[Callable[[Exception], Any]] = []

    @classmethod
    def from_config(cls, config, **kwargs) -> 'TransportSession':
        return cls(
            config.SERVER_URL,
            socketio_path=config.SOCKETIO_PATH,
            connect_timeout=config.CONNECT_TIMEOUT_SEC,
            max_attempts=config.MAX_CONNECT_ATTEMPTS,
            retry_delay=config.RECONNECT_DELAY_SEC,
            backoff=config.RECONNECT_BACKOFF,
            retry_delay_max=config.RECONNECT_DELAY_MAX_SEC,
            **kwargs,
        )

    # ---- state ----

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def add_state_listener(self, listener: Callable[[ConnectionState], Any]) -> Callable[[], None]:
        self._state_listeners.append(listener)
        return lambda: self._discard(self._state_listeners, listener)

    def add_error_listener(self, listener: Callable[[Exception], Any]) -> Callable[[], None]:
        self._error_listeners.append(listener)
        return lambda: self._discard(self._error_listeners, listener)

    @staticmethod
    def _discard(listeners: list, listener) -> None:
        if listener in listeners:
            listeners.remove(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        log.info(f"[state] {previous.value} -> {state.value}")
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                log.exception(f"[state-listener-error] listener={listener!r}")

    def _notify_error(self, exc: Exception) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(exc)
            except Exception:
                log.exception(f"[error-listener-error] listener={listener!r}")

    # ---- lifecycle ----

    async def connect(self) -> None:
        """Connect, or join the attempt already running.

        Raises ``ConnectFailure`` once ``max_attempts`` consecutive attempts
        have failed, or when ``disconnect()`` abandons the attempt.
        """
        if self.is_connected:
            return
        task = self._connect_task
        if task is None or task.done():
            task = self._start_attempts(background=False)
        await asyncio.shield(task)

    async def disconnect(self) -> None:
        """Close the connection and drop every subscription and pending ack."""
        self._epoch += 1
        self._connect_task = None
        for subscriptions in self._subscriptions.values():
            for sub in subscriptions:
                sub.active = False
        self._subscriptions.clear()
        for future in list(self._pending_acks):
            if not future.done():
                future.set_exception(NotConnected('session closed while waiting for acknowledgement'))
        self._pending_acks.clear()
        await self._teardown_client()
        self.latency_ms = -1
        self._set_state(ConnectionState.DISCONNECTED)

    def _start_attempts(self, background: bool) -> asyncio.Task:
        epoch = self._epoch
        task = asyncio.get_running_loop().create_task(self._run_attempts(epoch))
        task.add_done_callback(lambda t: self._attempts_done(t, background, epoch))
        self._connect_task = task
        return task

    def _attempts_done(self, task: asyncio.Task, background: bool, epoch: int) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        # Attempts abandoned by disconnect() are not reported
        if exc is not None and background and epoch == self._epoch:
            self._notify_error(exc)

    def _backoff_delay(self, attempt: int) -> float:
        if self.backoff == 'exponential':
            return min(self.retry_delay * (2 ** (attempt - 1)), self.retry_delay_max)
        return self.retry_delay

    async def _run_attempts(self, epoch: int) -> None:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            if epoch != self._epoch:
                raise ConnectFailure('connect abandoned: session was disconnected', attempt - 1)
            self._set_state(ConnectionState.CONNECTING)
            await self._teardown_client()
            client = self._client_factory()
            self._bind(client)
            self._client = client
            try:
                await client.connect(
                    self.url,
                    transports=self.transports,
                    socketio_path=self.socketio_path,
                    wait_timeout=self.connect_timeout,
                )
            except (SocketIOConnectionError, OSError, asyncio.TimeoutError) as exc:
                last_error = exc
                self.failure_count += 1
                log.warning(f"[connect-failed] attempt={attempt}/{self.max_attempts} url={self.url} error={exc}")
                if attempt < self.max_attempts:
                    delay = self._backoff_delay(attempt)
                    log.info(f"[connect-retry] attempt={attempt + 1}/{self.max_attempts} delay={delay}s")
                    await asyncio.sleep(delay)
                continue

            if epoch != self._epoch:
                if self._client is client:
                    self._client = None
                await self._close_client(client)
                raise ConnectFailure('connect abandoned: session was disconnected', attempt)
            self.failure_count = 0
            self._set_state(ConnectionState.CONNECTED)
            log.info(f"[connected] url={self.url} attempt={attempt}")
            return

        if epoch == self._epoch:
            await self._teardown_client()
            self._set_state(ConnectionState.DISCONNECTED)
        raise ConnectFailure(
            f"Failed to connect after {self.max_attempts} attempts", self.max_attempts
        ) from last_error

    async def _teardown_client(self) -> None:
        # Detach first so the client's own disconnect callback is ignored
        client, self._client = self._client, None
        if client is not None:
            await self._close_client(client)

    async def _close_client(self, client) -> None:
        try:
            await client.disconnect()
        except Exception as exc:
            log.debug(f"[teardown] ignoring error while closing client: {exc}")

    def _bind(self, client) -> None:
        async def on_disconnect(*args):
            await self._handle_drop(client, args[0] if args else None)

        async def on_event(event, *args):
            await self._dispatch(client, event, args[0] if args else None)

        client.on('disconnect', on_disconnect)
        client.on('*', on_event)

    async def _handle_drop(self, client, reason) -> None:
        if client is not self._client or not self.is_connected:
            return
        log.warning(f"[connection-lost] reason={reason} reconnecting")
        self._client = None
        self.latency_ms = -1
        for future in list(self._pending_acks):
            if not future.done():
                future.set_exception(NotConnected('connection lost while waiting for acknowledgement'))
        self._pending_acks.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        self._start_attempts(background=True)

    # ---- publish / subscribe ----

    def _require_client(self):
        if not self.is_connected or self._client is None:
            raise NotConnected('Socket not connected')
        return self._client

    async def publish(self, event: str, payload: Optional[dict] = None) -> None:
        """Send an event without waiting for an acknowledgement."""
        client = self._require_client()
        log.debug(f"[publish] event={event}")
        try:
            await client.emit(event, payload)
        except SocketIOError as exc:
            raise NotConnected(f"send failed: {exc}") from exc

    async def emit_with_ack(self, event: str, payload: Optional[dict] = None) -> Any:
        """Send an event and wait for the server's acknowledgement.

        There is no timeout; the wait ends with ``NotConnected`` if the
        connection goes away first.
        """
        client = self._require_client()
        future = asyncio.get_running_loop().create_future()
        self._pending_acks.add(future)

        def on_ack(*args):
            if not future.done():
                future.set_result(args[0] if args else None)

        try:
            try:
                await client.emit(event, payload, callback=on_ack)
            except SocketIOError as exc:
                raise NotConnected(f"send failed: {exc}") from exc
            return await future
        finally:
            self._pending_acks.discard(future)

    def subscribe(self, event: str, handler: Handler) -> Subscription:
        sub = Subscription(self, event, handler)
        self._subscriptions.setdefault(event, []).append(sub)
        return sub

    def unsubscribe(self, event: str, handler: Handler) -> None:
        """Remove every registration of ``handler`` for ``event``."""
        for sub in list(self._subscriptions.get(event, ())):
            if sub.handler == handler:
                sub.cancel()

    def _remove_subscription(self, sub: Subscription) -> None:
        subscriptions = self._subscriptions.get(sub.event)
        if subscriptions and sub in subscriptions:
            subscriptions.remove(sub)
            if not subscriptions:
                del self._subscriptions[sub.event]

    def handler_count(self, event: str) -> int:
        return len(self._subscriptions.get(event, ()))

    async def _dispatch(self, client, event: str, payload: Any) -> None:
        """Run one event's handlers; the next event waits until they finish."""
        if self._dispatch_lock is None:
            self._dispatch_lock = asyncio.Lock()
        async with self._dispatch_lock:
            # The client may have been replaced while this event waited
            if client is not self._client:
                return
            for sub in list(self._subscriptions.get(event, ())):
                if not sub.active:
                    continue
                try:
                    result = sub.handler(payload)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    log.exception(f"[handler-error] event={event} handler={sub.handler!r}")
