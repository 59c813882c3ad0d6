"""Shared fakes for the sync core tests."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pytest

from bbbab_messenger.api.websocket import CloseEvent, TransportHandlers
from bbbab_messenger.errors import TransportClosedError
from bbbab_messenger.sync.service import ChatSyncService

WS_BASE = "ws://chat.test/api"
NOW_MS = 1_700_000_000_000


class FakeTimer:
    def __init__(self, when: float, callback: Callable[..., Any], args: tuple[Any, ...]) -> None:
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Manual clock implementing the scheduler protocol."""

    def __init__(self) -> None:
        self.now = 0.0
        self.timers: list[FakeTimer] = []

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> FakeTimer:
        timer = FakeTimer(self.now + delay, callback, args)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self.now + seconds
        while True:
            due = [t for t in self.pending if t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self.timers.remove(timer)
            self.now = timer.when
            timer.callback(*timer.args)
        self.now = target


class FakeTransport:
    """Transport driven by the test instead of a network."""

    def __init__(self, url: str, handlers: TransportHandlers) -> None:
        self.url = url
        self.handlers = handlers
        self.sent: list[str] = []
        self.opened = False
        self.closed: tuple[int, str] | None = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self.opened = True

    def send(self, payload: str) -> None:
        if not self._open:
            raise TransportClosedError("not open")
        self.sent.append(payload)

    def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)
        self._open = False

    # Test drivers

    def accept(self) -> None:
        self._open = True
        self.handlers.on_open()

    def receive(self, payload: str | dict[str, Any]) -> None:
        if isinstance(payload, dict):
            payload = json.dumps(payload)
        self.handlers.on_message(payload)

    def drop(self, code: int = 1006, reason: str = "", http_status: int | None = None) -> None:
        self._open = False
        self.handlers.on_close(CloseEvent(code, reason, http_status))

    def fail(self, exc: BaseException) -> None:
        self._open = False
        self.handlers.on_error(exc)

    @property
    def frames(self) -> list[dict[str, Any]]:
        return [json.loads(p) for p in self.sent]


class TransportRecorder:
    """Transport factory that keeps every transport it built."""

    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []

    def __call__(self, url: str, handlers: TransportHandlers) -> FakeTransport:
        transport = FakeTransport(url, handlers)
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def transports() -> TransportRecorder:
    return TransportRecorder()


@pytest.fixture
def service(scheduler: FakeScheduler, transports: TransportRecorder) -> ChatSyncService:
    svc = ChatSyncService(
        WS_BASE,
        transport_factory=transports,
        scheduler=scheduler,
        clock=lambda: NOW_MS,
    )
    yield svc
    svc.dispose()


def message(id: int, ts: int, text: str = "", **extra: Any) -> dict[str, Any]:
    """Realtime-shaped message payload."""
    return {"id": id, "chat_id": extra.pop("chat_id", 42), "sender_id": 7, "message": text or f"m{id}", "timestamp": ts, **extra}
