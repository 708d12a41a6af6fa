"""
Realtime Transport

The text-frame duplex connection the connection manager owns. Transports
report lifecycle through callbacks, all invoked on the event loop.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import TransportError
from .protocol import WS_CLOSE_NORMAL, ConnectionState

logger = structlog.get_logger()

# Close code reported when the connection ends without a close frame
WS_CLOSE_ABNORMAL = 1006


def _noop(*args: Any) -> None:
    pass


class Transport(ABC):
    """
    Minimal duplex text transport.

    The owner assigns on_open, on_message, on_close and on_error before
    calling connect().
    """

    def __init__(self) -> None:
        self.on_open: Callable[[], Any] = _noop
        self.on_message: Callable[[str], Any] = _noop
        self.on_close: Callable[[int, str], Any] = _noop
        self.on_error: Callable[[Exception], Any] = _noop
        self.state = ConnectionState.CLOSED

    @abstractmethod
    def connect(self, url: str) -> None:
        """Start opening the connection."""

    @abstractmethod
    def send(self, data: str) -> None:
        """Queue a text frame for transmission."""

    @abstractmethod
    def close(self, code: int = WS_CLOSE_NORMAL, reason: str | None = None) -> None:
        """Start closing the connection."""


class WebSocketTransport(Transport):
    """Transport backed by the websockets client."""

    def __init__(
        self,
        headers: dict[str, str] | None = None,
        open_timeout: float = 10.0,
    ) -> None:
        super().__init__()
        self.headers = headers or {}
        self.open_timeout = open_timeout

        self._websocket: ClientConnection | None = None
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._closer: asyncio.Task | None = None

    def connect(self, url: str) -> None:
        if self._task is not None and not self._task.done():
            return
        self.state = ConnectionState.CONNECTING
        self._task = asyncio.get_running_loop().create_task(self._run(url))

    def send(self, data: str) -> None:
        if self.state is not ConnectionState.OPEN:
            raise TransportError(f"cannot send while {self.state.value}")
        self._outbox.put_nowait(data)

    def close(self, code: int = WS_CLOSE_NORMAL, reason: str | None = None) -> None:
        if self.state is ConnectionState.CLOSED:
            return

        self.state = ConnectionState.CLOSING
        if self._websocket is not None:
            self._closer = asyncio.ensure_future(self._websocket.close(code, reason or ""))
        elif self._task is not None:
            self._task.cancel()

    async def _run(self, url: str) -> None:
        code, reason = WS_CLOSE_ABNORMAL, ""
        try:
            async with connect(
                url,
                additional_headers=self.headers,
                open_timeout=self.open_timeout,
                ping_interval=None,
            ) as websocket:
                self._websocket = websocket
                self.state = ConnectionState.OPEN
                self.on_open()

                writer = asyncio.create_task(self._write(websocket))
                try:
                    async for raw in websocket:
                        if isinstance(raw, bytes):
                            raw = raw.decode("utf-8")
                        self.on_message(raw)
                finally:
                    writer.cancel()

                code = websocket.close_code or WS_CLOSE_NORMAL
                reason = websocket.close_reason or ""
        except ConnectionClosed as e:
            if e.rcvd is not None:
                code, reason = e.rcvd.code, e.rcvd.reason
            self.on_error(TransportError(str(e)))
        except (OSError, TimeoutError, WebSocketException) as e:
            logger.warning("WebSocket connection failed", url=url, error=str(e))
            self.on_error(TransportError(str(e)))
        finally:
            self._websocket = None
            self.state = ConnectionState.CLOSED
            self.on_close(code, reason)

    async def _write(self, websocket: ClientConnection) -> None:
        while True:
            data = await self._outbox.get()
            try:
                await websocket.send(data)
            except ConnectionClosed:
                return
