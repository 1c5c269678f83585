"""
Client side of the realtime channel.

Every event is treated as a cache invalidation: the subscriber hands the
affected workflow id to ``on_invalidate`` and the caller re-fetches the
authoritative workflow. After every (re)connect ``on_reconcile`` runs so
events missed while disconnected are covered by a full re-fetch.

The transport is injected as a connector coroutine returning a
``Connection``; the bearer token is sent as the first message of every
connection.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from clearance.config import settings
from clearance.exceptions import ConnectivityError
from clearance.realtime.events import WorkflowEvent

logger = logging.getLogger(__name__)


class Connection(Protocol):
    async def send(self, message: dict[str, Any]) -> None:
        ...

    async def receive(self) -> dict[str, Any]:
        """Next message; raises ConnectionError once the peer has gone."""
        ...

    async def close(self) -> None:
        ...


Connector = Callable[[], Awaitable[Connection]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    OFFLINE = "offline"


class HeartbeatTimeout(ConnectionError):
    pass


CONTROL_MESSAGES = {"pong", "heartbeat", "authenticated", "subscribed"}


class RealtimeSubscriber:
    """
    Keeps a realtime connection alive and turns events into invalidations.

    Usage:
        subscriber = RealtimeSubscriber(connect, lambda: token, on_invalidate, on_reconcile)
        await subscriber.run()   # until stop(), or ConnectivityError once offline
    """

    def __init__(
        self,
        connector: Connector,
        token_provider: Callable[[], str],
        on_invalidate: Callable[[Optional[str], WorkflowEvent], Any],
        on_reconcile: Optional[Callable[[], Any]] = None,
        on_state_change: Optional[Callable[[ConnectionState], Any]] = None,
        heartbeat_interval: Optional[float] = None,
        heartbeat_timeout: Optional[float] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.connector = connector
        self.token_provider = token_provider
        self.on_invalidate = on_invalidate
        self.on_reconcile = on_reconcile
        self.on_state_change = on_state_change
        self.heartbeat_interval = heartbeat_interval or settings.heartbeat_interval_seconds
        self.heartbeat_timeout = heartbeat_timeout or settings.heartbeat_timeout_seconds
        self.base_delay = base_delay if base_delay is not None else settings.reconnect_base_delay_seconds
        self.max_delay = max_delay if max_delay is not None else settings.reconnect_max_delay_seconds
        self.max_attempts = max_attempts if max_attempts is not None else settings.max_reconnect_attempts
        self._sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self.connections = 0
        self.last_event: Optional[WorkflowEvent] = None
        self._connection: Optional[Connection] = None
        self._stopped = False

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def run(self) -> None:
        """
        Connect and process events until ``stop()``.

        Raises:
            ConnectivityError: Reconnect attempts exhausted; state is offline.
        """
        self._stopped = False
        while not self._stopped:
            connection = None
            try:
                await self._set_state(
                    ConnectionState.RECONNECTING if self.attempts else ConnectionState.CONNECTING
                )
                connection = await self.connector()
                await connection.send({"type": "authenticate", "token": self.token_provider()})
                self._connection = connection
                self.connections += 1
                self.attempts = 0
                await self._set_state(ConnectionState.CONNECTED)
                logger.info(f"Realtime connected (connection #{self.connections})")

                if self.on_reconcile is not None:
                    await _call(self.on_reconcile)
                await self._session(connection)
            except (ConnectionError, OSError, asyncio.TimeoutError) as e:
                logger.warning(f"Realtime connection lost: {e!r}")
            finally:
                self._connection = None
                if connection is not None:
                    await self._close(connection)

            if self._stopped:
                break

            self.attempts += 1
            if self.attempts > self.max_attempts:
                await self._set_state(ConnectionState.OFFLINE)
                logger.error(f"Realtime offline after {self.max_attempts} reconnect attempts")
                raise ConnectivityError(
                    f"Realtime channel unavailable after {self.max_attempts} reconnect attempts"
                )

            delay = self.backoff_delay(self.attempts)
            await self._set_state(ConnectionState.RECONNECTING)
            logger.warning(
                f"Reconnecting in {delay:.1f}s (attempt {self.attempts}/{self.max_attempts})"
            )
            await self._sleep(delay)

        await self._set_state(ConnectionState.DISCONNECTED)

    async def stop(self) -> None:
        self._stopped = True
        if self._connection is not None:
            await self._close(self._connection)

    async def _session(self, connection: Connection) -> None:
        loop = asyncio.get_running_loop()
        next_ping = loop.time() + self.heartbeat_interval
        pong_deadline: Optional[float] = None

        while not self._stopped:
            now = loop.time()
            if pong_deadline is not None and now >= pong_deadline:
                raise HeartbeatTimeout(f"No pong within {self.heartbeat_timeout}s")
            if now >= next_ping:
                await connection.send({"type": "ping"})
                next_ping = now + self.heartbeat_interval
                if pong_deadline is None:
                    pong_deadline = now + self.heartbeat_timeout
                continue

            wait = next_ping - now
            if pong_deadline is not None:
                wait = min(wait, pong_deadline - now)
            try:
                message = await asyncio.wait_for(connection.receive(), timeout=wait)
            except asyncio.TimeoutError:
                continue

            kind = message.get("type")
            if kind == "pong":
                pong_deadline = None
                continue
            if kind == "ping":
                await connection.send({"type": "pong"})
                continue
            if kind in CONTROL_MESSAGES:
                continue
            if kind == "error":
                logger.warning(f"Realtime server error: {message.get('message')}")
                continue

            try:
                event = WorkflowEvent.from_message(message)
            except (KeyError, ValueError) as e:
                logger.warning(f"Ignoring malformed realtime message: {e}")
                continue
            self.last_event = event
            await _call(self.on_invalidate, event.workflow_id, event)

    async def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        self.state = state
        if self.on_state_change is not None:
            await _call(self.on_state_change, state)

    async def _close(self, connection: Connection) -> None:
        try:
            await connection.close()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error closing realtime connection: {e}")


async def _call(callback: Callable[..., Any], *args: Any) -> Any:
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result
