"""Transport gateway: rate-limited, single-in-flight delivery to the peripheral.

The link to the peripheral is slow and accepts one write at a time, so the
gateway is deliberately lossy:

- at most one send every `min_interval` seconds; faster frames are dropped
  (newest wins, nothing is queued)
- at most one write outstanding; a send attempted while one is in flight
  is dropped
- sends outside the Connected state are no-ops

Link lifecycle:

    DISCONNECTED --connect--> CONNECTING --ok--> CONNECTED
                                         --fail--> ERROR
    CONNECTED --disconnect / link loss--> DISCONNECTED

There is no automatic reconnection.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from gesture_link.protocol import STOP_MESSAGE, ProtocolError, frame_message

logger = logging.getLogger("gesture_link.transport")

DEFAULT_MIN_INTERVAL = 0.1  # seconds between sends


class LinkError(ConnectionError):
    """Raised by links when a handshake or write fails."""


class LinkState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Link(abc.ABC):
    """Connect / disconnect / write primitive for the wireless serial link.

    Implementations call `on_lost()` when the link drops on its own.
    """

    name = "link"

    def __init__(self):
        self.on_lost: Optional[Callable[[], None]] = None

    @abc.abstractmethod
    async def open(self) -> None:
        """Perform the handshake. Raise on failure."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Tear the link down."""

    @abc.abstractmethod
    async def write(self, data: bytes) -> None:
        """Deliver one frame. Raise on failure."""

    def _lost(self):
        if self.on_lost:
            self.on_lost()


class MemoryLink(Link):
    """In-process link that records every frame written to it.

    Used for dry runs and tests. Failures and write latency can be injected.
    """

    name = "memory"

    def __init__(
        self,
        write_delay: float = 0.0,
        fail_open: bool = False,
        fail_writes: bool = False,
    ):
        super().__init__()
        self.write_delay = write_delay
        self.fail_open = fail_open
        self.fail_writes = fail_writes
        self.is_open = False
        self.frames: list[bytes] = []
        self.open_attempts = 0
        self.write_attempts = 0

    async def open(self) -> None:
        self.open_attempts += 1
        await asyncio.sleep(0)
        if self.fail_open:
            raise LinkError("handshake failed")
        self.is_open = True

    async def close(self) -> None:
        self.is_open = False

    async def write(self, data: bytes) -> None:
        self.write_attempts += 1
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if not self.is_open:
            raise LinkError("link is closed")
        if self.fail_writes:
            raise LinkError("write failed")
        self.frames.append(data)

    def lose(self):
        """Simulate the peripheral dropping the connection."""
        self.is_open = False
        self._lost()

    @property
    def messages(self) -> list[str]:
        return [f.decode("ascii").rstrip("\n") for f in self.frames]


class WebSocketLink(Link):
    """Link to a UART bridge that relays WebSocket text messages to the peripheral."""

    name = "websocket"

    def __init__(self, url: str, open_timeout: float = 10.0):
        super().__init__()
        self.url = url
        self.open_timeout = open_timeout
        self._ws = None
        self._watch_task: Optional[asyncio.Task] = None

    async def open(self) -> None:
        try:
            self._ws = await websockets.connect(
                self.url,
                open_timeout=self.open_timeout,
                ping_interval=20,
                ping_timeout=10,
                close_timeout=5,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise LinkError(f"could not reach bridge at {self.url}: {e}") from e
        self._watch_task = asyncio.get_running_loop().create_task(self._watch(self._ws))

    async def _watch(self, ws):
        try:
            async for message in ws:
                logger.debug("Bridge says: %s", message)
        except ConnectionClosed:
            pass
        if ws is self._ws:
            self._ws = None
            self._lost()

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._watch_task:
            self._watch_task.cancel()
            self._watch_task = None

    async def write(self, data: bytes) -> None:
        if self._ws is None:
            raise LinkError("link is closed")
        try:
            await self._ws.send(data.decode("ascii"))
        except WebSocketException as e:
            raise LinkError(str(e)) from e


@dataclass
class GatewayStats:
    """Counters for outbound traffic."""
    sent: int = 0
    failed: int = 0
    dropped_rate: int = 0
    dropped_busy: int = 0
    dropped_disconnected: int = 0
    last_message: Optional[str] = None
    last_send_time: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "dropped_rate": self.dropped_rate,
            "dropped_busy": self.dropped_busy,
            "dropped_disconnected": self.dropped_disconnected,
            "last_message": self.last_message,
        }


class TransportGateway:
    """Owns the link state machine and the outbound send discipline.

    All mutation happens on the event loop thread, so the in-flight flag and
    the last-send timestamp need no lock.

    Usage:
        gateway = TransportGateway(MemoryLink())
        await gateway.connect()
        gateway.offer("IDfist")      # per frame, from the event loop
        await gateway.send_stop()
        await gateway.disconnect()
    """

    def __init__(
        self,
        link: Link,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.link = link
        self.min_interval = min_interval
        self._clock = clock
        self.state = LinkState.DISCONNECTED
        self.status = "disconnected"
        self.stats = GatewayStats()

        self._sending = False
        self._last_send: Optional[float] = None
        self._inflight: Optional[asyncio.Task] = None
        # bumped on every connect/disconnect; stale writes compare against it
        self._generation = 0

        link.on_lost = self._on_link_lost

    @property
    def connected(self) -> bool:
        return self.state == LinkState.CONNECTED

    @property
    def sending(self) -> bool:
        return self._sending

    def _set_state(self, state: LinkState, status: str):
        if state != self.state:
            logger.info("Link %s: %s -> %s (%s)", self.link.name, self.state.value, state.value, status)
        self.state = state
        self.status = status

    def _reset_session(self):
        self._generation += 1
        self._sending = False
        self._last_send = None
        self._inflight = None

    # --- lifecycle ---

    async def connect(self) -> bool:
        """Run the link handshake. Returns True once Connected."""
        if self.state == LinkState.CONNECTED:
            return True
        if self.state == LinkState.CONNECTING:
            return False

        self._set_state(LinkState.CONNECTING, "connecting")
        try:
            await self.link.open()
        except asyncio.CancelledError:
            self._set_state(LinkState.ERROR, "connection cancelled")
            raise
        except Exception as e:
            logger.warning("Handshake with %s failed: %s", self.link.name, e)
            self._set_state(LinkState.ERROR, f"connection failed: {e}")
            return False

        if self.state != LinkState.CONNECTING:
            # disconnect() arrived during the handshake
            await self._close_link()
            return False

        self._reset_session()
        self._set_state(LinkState.CONNECTED, f"connected: {self.link.name}")
        return True

    async def disconnect(self):
        """Close the link. Pending and future sends become no-ops."""
        previous = self.state
        self._reset_session()
        self._set_state(LinkState.DISCONNECTED, "disconnected")
        if previous == LinkState.CONNECTED:
            await self._close_link()

    async def _close_link(self):
        try:
            await self.link.close()
        except Exception as e:
            logger.warning("Closing %s failed: %s", self.link.name, e)

    def _on_link_lost(self):
        if self.state != LinkState.CONNECTED:
            return
        self._reset_session()
        self._set_state(LinkState.DISCONNECTED, "link lost")

    # --- sending ---

    def _admit(self, now: float) -> bool:
        if self.state != LinkState.CONNECTED:
            self.stats.dropped_disconnected += 1
            return False
        if self._sending:
            self.stats.dropped_busy += 1
            logger.debug("Dropping frame: write in flight")
            return False
        if self._last_send is not None and now - self._last_send < self.min_interval:
            self.stats.dropped_rate += 1
            return False
        return True

    def _dispatch(self, message: str, now: float) -> Optional[asyncio.Task]:
        try:
            data = frame_message(message)
        except ProtocolError as e:
            self.stats.failed += 1
            logger.warning("Cannot encode %r: %s", message, e)
            return None

        loop = asyncio.get_running_loop()
        self._sending = True
        self._last_send = now
        self.stats.last_send_time = now
        self._inflight = loop.create_task(self._write(data, message, self._generation))
        return self._inflight

    def offer(self, message: str) -> bool:
        """Attempt a send for this frame without waiting for it.

        Must be called from the event loop. Returns True if a write was
        started, False if the frame was dropped.
        """
        now = self._clock()
        if not self._admit(now):
            return False
        return self._dispatch(message, now) is not None

    async def send(self, message: str) -> bool:
        """Attempt a send and wait for the write. Returns True if delivered."""
        now = self._clock()
        if not self._admit(now):
            return False
        task = self._dispatch(message, now)
        if task is None:
            return False
        return await task

    async def send_stop(self) -> bool:
        """Send the stop message, bypassing the rate limit.

        Waits for an in-flight write to finish first so there is never more
        than one write outstanding.
        """
        while self._sending and self._inflight is not None:
            await asyncio.shield(self._inflight)
        if self.state != LinkState.CONNECTED:
            self.stats.dropped_disconnected += 1
            return False
        task = self._dispatch(STOP_MESSAGE, self._clock())
        if task is None:
            return False
        return await task

    async def _write(self, data: bytes, message: str, generation: int) -> bool:
        try:
            await self.link.write(data)
        except Exception as e:
            if generation == self._generation:
                self.stats.failed += 1
                logger.warning("Write of %r failed: %s", message, e)
            return False
        else:
            if generation != self._generation:
                logger.debug("Discarding result of %r written before disconnect", message)
                return False
            self.stats.sent += 1
            self.stats.last_message = message
            return True
        finally:
            if generation == self._generation:
                self._sending = False

    async def drain(self):
        """Wait for the in-flight write, if any."""
        if self._inflight is not None and not self._inflight.done():
            await asyncio.shield(self._inflight)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "status": self.status,
            "link": self.link.name,
            "sending": self._sending,
            **self.stats.to_dict(),
        }
