"""Websocket transport for one conversation's realtime channel."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus, InvalidURI

from ..errors import TransportClosedError

logger = logging.getLogger(__name__)

# Close code used when the socket dropped without a close frame.
ABNORMAL_CLOSURE = 1006
NORMAL_CLOSURE = 1000


@dataclass(frozen=True)
class CloseEvent:
    """Why a transport closed."""

    code: int
    reason: str = ""
    http_status: int | None = None


@dataclass
class TransportHandlers:
    """Lifecycle callbacks a transport reports to its owner."""

    on_open: Callable[[], None]
    on_message: Callable[[str], None]
    on_error: Callable[[BaseException], None]
    on_close: Callable[[CloseEvent], None]


class Transport(Protocol):
    """A bidirectional realtime channel, driven by callbacks."""

    @property
    def is_open(self) -> bool: ...

    def open(self) -> None: ...

    def send(self, payload: str) -> None: ...

    def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None: ...


TransportFactory = Callable[[str, TransportHandlers], Transport]


class WebSocketTransport:
    """
    Websocket client for a single conversation endpoint.

    ``open()`` starts a background task on the running event loop that
    connects, reports ``on_open``, feeds every received payload to
    ``on_message`` and finally reports exactly one ``on_close``. Connection
    failures are reported through ``on_error`` before the close. Outbound
    frames are queued and written in order by a writer task.
    """

    def __init__(
        self,
        url: str,
        handlers: TransportHandlers,
        *,
        ping_interval: float | None = 20.0,
        ping_timeout: float | None = 20.0,
        max_size: int | None = 2**20,
    ) -> None:
        self.url = url
        self._handlers = handlers
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._max_size = max_size

        self._ws: Any = None
        self._task: asyncio.Task[None] | None = None
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._closing = False
        self._background_tasks: set[asyncio.Task[Any]] = set()

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closing

    def open(self) -> None:
        """Start connecting in the background."""
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def send(self, payload: str) -> None:
        """Queue a text frame for sending."""
        if not self.is_open:
            raise TransportClosedError("Websocket is not open")
        self._outbox.put_nowait(payload)

    def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        """Close the socket, or abandon the connection attempt if still opening."""
        if self._closing:
            return
        self._closing = True
        if self._ws is not None:
            self._spawn(self._ws.close(code, reason))
        elif self._task is not None and not self._task.done():
            self._task.cancel()

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _run(self) -> None:
        close = CloseEvent(ABNORMAL_CLOSURE)
        try:
            async with websockets.connect(
                self.url,
                open_timeout=None,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_timeout,
                max_size=self._max_size,
            ) as ws:
                self._ws = ws
                if self._closing:
                    await ws.close(NORMAL_CLOSURE, "")
                else:
                    self._handlers.on_open()
                writer = asyncio.create_task(self._write_loop(ws))
                try:
                    async for raw in ws:
                        if isinstance(raw, bytes):
                            raw = raw.decode("utf-8", errors="replace")
                        try:
                            self._handlers.on_message(raw)
                        except Exception:
                            logger.exception("Error handling websocket payload")
                finally:
                    writer.cancel()
                close = CloseEvent(
                    getattr(ws, "close_code", None) or NORMAL_CLOSURE,
                    getattr(ws, "close_reason", None) or "",
                )
        except ConnectionClosed as e:
            if e.rcvd is not None:
                close = CloseEvent(e.rcvd.code, e.rcvd.reason)
        except InvalidStatus as e:
            status = e.response.status_code
            logger.warning("Websocket handshake rejected with HTTP %d: %s", status, self.url_for_log)
            close = CloseEvent(ABNORMAL_CLOSURE, f"HTTP {status}", http_status=status)
        except asyncio.CancelledError:
            self._ws = None
            self._handlers.on_close(CloseEvent(NORMAL_CLOSURE, "cancelled"))
            raise
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as e:
            logger.info("Websocket connection failed: %s", e)
            self._handlers.on_error(e)
            close = CloseEvent(ABNORMAL_CLOSURE, str(e))
        finally:
            self._ws = None
        self._handlers.on_close(close)

    async def _write_loop(self, ws: Any) -> None:
        while True:
            payload = await self._outbox.get()
            try:
                await ws.send(payload)
            except ConnectionClosed:
                return

    @property
    def url_for_log(self) -> str:
        """The URL without its query string, which carries the token."""
        return self.url.split("?", 1)[0]
