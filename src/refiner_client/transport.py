"""WebSocket transport for a single workspace, with fixed-delay reconnect.

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> (CLOSING | ERRORED) -> DISCONNECTED

Any closure other than 1000 while a target URL is still set schedules one
reconnect attempt after ``reconnect_delay`` seconds. Attempts repeat without
backoff or cap until ``disconnect()`` is called.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .frames import Frame, decode_frame

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006
DEFAULT_RECONNECT_DELAY = 3.0

Connector = Callable[[str], Awaitable[Any]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    ERRORED = "errored"


async def open_websocket(url: str):
    """Default connector: a ``websockets`` client connection."""
    return await ws_connect(url)


class WorkspaceTransport:
    """Owns at most one socket and at most one pending reconnect."""

    def __init__(
        self,
        on_frame: Callable[[Frame], Awaitable[None]],
        on_open: Optional[Callable[[], None]] = None,
        on_close: Optional[Callable[[int], None]] = None,
        connector: Optional[Connector] = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        should_reconnect: Optional[Callable[[], bool]] = None,
    ):
        self._on_frame = on_frame
        self._on_open = on_open
        self._on_close = on_close
        self._connector = connector or open_websocket
        self._should_reconnect = should_reconnect or (lambda: True)
        self.reconnect_delay = reconnect_delay

        self.state = ConnectionState.DISCONNECTED
        self.url: Optional[str] = None
        self.reconnect_attempts = 0
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self.state is ConnectionState.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None

    async def connect(self, url: str) -> bool:
        """Open a socket to ``url``. Returns False if nothing new was opened."""
        if self.url == url and self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            logger.debug("Already connected to %s", url)
            return False

        if self._ws is not None:
            await self._drop_socket()
        self._cancel_reconnect()

        self.url = url
        self.state = ConnectionState.CONNECTING
        logger.info("Connecting to WebSocket: %s", url)
        try:
            ws = await self._connector(url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error("Failed to open WebSocket %s: %s", url, e)
            if self.url == url:
                self.state = ConnectionState.ERRORED
                self._closed(ABNORMAL_CLOSURE)
            return False

        if self.url != url or self.state is not ConnectionState.CONNECTING:
            # disconnected or retargeted while the handshake was in flight
            await self._close_quietly(ws)
            return False

        self._ws = ws
        self.state = ConnectionState.CONNECTED
        logger.info("WebSocket connected: %s", url)
        if self._on_open is not None:
            self._on_open()
        self._reader = asyncio.create_task(self._read(ws))
        return True

    async def disconnect(self) -> None:
        """Close cleanly with code 1000. Safe to call in any state."""
        self._cancel_reconnect()
        was_active = self._ws is not None or self.state is not ConnectionState.DISCONNECTED
        self.url = None
        await self._drop_socket()
        self.state = ConnectionState.DISCONNECTED
        if was_active and self._on_close is not None:
            self._on_close(NORMAL_CLOSURE)

    async def send(self, text: str) -> bool:
        if not self.is_open:
            return False
        try:
            await self._ws.send(text)
        except ConnectionClosed as e:
            logger.warning("Send on closed WebSocket: %s", e)
            return False
        return True

    async def _drop_socket(self) -> None:
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        if ws is not None:
            self.state = ConnectionState.CLOSING
            await self._close_quietly(ws)
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    async def _close_quietly(self, ws) -> None:
        try:
            await ws.close(NORMAL_CLOSURE, "User disconnected")
        except (ConnectionClosed, OSError) as e:
            logger.debug("Error while closing WebSocket: %s", e)

    async def _read(self, ws) -> None:
        try:
            async for raw in ws:
                frame = decode_frame(raw)
                if frame is None:
                    continue
                try:
                    await self._on_frame(frame)
                except Exception:
                    logger.exception("Frame handler failed for %s frame", frame.tag)
        except ConnectionClosed:
            pass

        if ws is not self._ws:
            return
        code = ws.close_code or ABNORMAL_CLOSURE
        logger.info("WebSocket closed: %s", code)
        self._ws = None
        self._reader = None
        if code != NORMAL_CLOSURE:
            self.state = ConnectionState.ERRORED
        self._closed(code)

    def _closed(self, code: int) -> None:
        self.state = ConnectionState.DISCONNECTED
        if self._on_close is not None:
            self._on_close(code)
        if code != NORMAL_CLOSURE and self.url is not None and self._should_reconnect():
            logger.info("Reconnecting in %s seconds...", self.reconnect_delay)
            self._reconnect_task = asyncio.create_task(self._reconnect_later(self.url))

    async def _reconnect_later(self, url: str) -> None:
        await asyncio.sleep(self.reconnect_delay)
        self._reconnect_task = None
        self.reconnect_attempts += 1
        await self.connect(url)

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
