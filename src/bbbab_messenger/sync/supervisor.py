"""Per-conversation connection ownership and the reconnect policy."""

from __future__ import annotations

import itertools
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import quote

from ..api.websocket import (
    ABNORMAL_CLOSURE,
    NORMAL_CLOSURE,
    CloseEvent,
    Transport,
    TransportFactory,
    TransportHandlers,
    WebSocketTransport,
)
from ..errors import NotConnectedError, TransportClosedError
from ..utils.config import SyncSettings
from ..utils.debounce import Scheduler, TimerHandle, default_scheduler

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class StatusKind(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    RECONNECT_FAILED = "reconnect_failed"
    UNAUTHORIZED = "unauthorized"


@dataclass(frozen=True)
class StatusEvent:
    """A connection status change of one conversation."""

    conversation_id: int
    kind: StatusKind
    attempt: int = 0
    delay: float | None = None
    code: int | None = None
    reason: str = ""


@dataclass
class _Slot:
    generation: int = 0
    transport: Transport | None = None
    state: ConnectionState = ConnectionState.DISCONNECTED
    credential: str | None = field(default=None, repr=False)
    attempts: int = 0
    timer: TimerHandle | None = None


StatusListener = Callable[[StatusEvent], None]
PayloadListener = Callable[[int, str], None]


class ReconnectionSupervisor:
    """
    Owns at most one transport per conversation and reconnects it.

    Every transport is opened under a fresh generation number and its
    callbacks carry that number. Retiring a slot (``connect`` again or
    ``disconnect``) bumps the generation before closing the old transport,
    so anything the old transport reports afterwards is ignored and never
    schedules a reconnect.
    """

    def __init__(
        self,
        ws_base_url: str,
        transport_factory: TransportFactory | None = None,
        settings: SyncSettings | None = None,
        scheduler: Scheduler | None = None,
        on_status: StatusListener | None = None,
        on_payload: PayloadListener | None = None,
    ) -> None:
        self.ws_base_url = ws_base_url.rstrip("/")
        self.transport_factory: TransportFactory = transport_factory or WebSocketTransport
        self.settings = settings or SyncSettings()
        self._scheduler = scheduler
        self.on_status = on_status
        self.on_payload = on_payload
        self._slots: dict[int, _Slot] = {}
        self._generations = itertools.count(1)

    @property
    def scheduler(self) -> Scheduler:
        if self._scheduler is None:
            self._scheduler = default_scheduler()
        return self._scheduler

    def url_for(self, conversation_id: int, token: str) -> str:
        return f"{self.ws_base_url}/chat/{conversation_id}/ws?token={quote(token, safe='')}"

    # Caller operations

    def connect(self, conversation_id: int, credential: str) -> None:
        """Open (or replace) the conversation's transport."""
        slot = self._slots.setdefault(conversation_id, _Slot())
        self._retire(slot, "superseded")
        slot.credential = credential
        slot.attempts = 0
        self._open(conversation_id, slot)

    def disconnect(self, conversation_id: int) -> None:
        """Tear down the conversation's transport without reconnecting."""
        slot = self._slots.pop(conversation_id, None)
        if slot is None:
            return
        self._retire(slot, "client disconnect")
        slot.credential = None
        logger.info("Disconnected from chat %d", conversation_id)
        self._publish(StatusEvent(conversation_id, StatusKind.DISCONNECTED, code=NORMAL_CLOSURE))

    def disconnect_all(self) -> None:
        for conversation_id in list(self._slots):
            self.disconnect(conversation_id)

    def dispose(self) -> None:
        self.disconnect_all()
        self.on_status = None
        self.on_payload = None

    def send(self, conversation_id: int, frame: dict[str, Any]) -> None:
        """Write a frame on the open transport or raise ``NotConnectedError``."""
        slot = self._slots.get(conversation_id)
        if (
            slot is None
            or slot.state is not ConnectionState.CONNECTED
            or slot.transport is None
            or not slot.transport.is_open
        ):
            raise NotConnectedError(conversation_id)
        try:
            slot.transport.send(json.dumps(frame))
        except TransportClosedError as e:
            raise NotConnectedError(conversation_id) from e
        logger.debug("Sent %s frame to chat %d", frame.get("type"), conversation_id)

    # Queries

    def state(self, conversation_id: int) -> ConnectionState:
        slot = self._slots.get(conversation_id)
        return slot.state if slot else ConnectionState.DISCONNECTED

    def attempts(self, conversation_id: int) -> int:
        slot = self._slots.get(conversation_id)
        return slot.attempts if slot else 0

    def has_pending_reconnect(self, conversation_id: int) -> bool:
        slot = self._slots.get(conversation_id)
        return slot is not None and slot.timer is not None

    def is_connected(self, conversation_id: int) -> bool:
        return self.state(conversation_id) is ConnectionState.CONNECTED

    def conversation_ids(self) -> list[int]:
        return list(self._slots)

    # Reconnect policy

    def schedule_reconnect(self, conversation_id: int) -> float | None:
        """
        Arm the reconnect timer; returns the delay, or None if nothing was scheduled.

        A no-op while a timer is pending, while connecting or connected, or
        once the credential is gone. Past the attempt cap a terminal
        ``reconnect_failed`` status is published instead.
        """
        slot = self._slots.get(conversation_id)
        if (
            slot is None
            or slot.timer is not None
            or slot.state is not ConnectionState.DISCONNECTED
            or slot.credential is None
        ):
            return None

        if slot.attempts >= self.settings.reconnect_max_attempts:
            logger.warning(
                "Giving up on chat %d after %d reconnect attempts", conversation_id, slot.attempts
            )
            self._publish(
                StatusEvent(conversation_id, StatusKind.RECONNECT_FAILED, attempt=slot.attempts)
            )
            return None

        delay = self.settings.backoff_delay(slot.attempts)
        slot.attempts += 1
        slot.timer = self.scheduler.call_later(
            delay, self._reconnect, conversation_id, slot.generation
        )
        logger.info(
            "Reconnecting to chat %d in %.1fs (attempt %d)", conversation_id, delay, slot.attempts
        )
        self._publish(
            StatusEvent(
                conversation_id,
                StatusKind.RECONNECT_SCHEDULED,
                attempt=slot.attempts,
                delay=delay,
            )
        )
        return delay

    def _reconnect(self, conversation_id: int, generation: int) -> None:
        slot = self._slots.get(conversation_id)
        if slot is None or slot.generation != generation:
            return
        slot.timer = None
        if slot.credential is None or slot.state is not ConnectionState.DISCONNECTED:
            return
        self._open(conversation_id, slot)

    # Transport lifecycle

    def _open(self, conversation_id: int, slot: _Slot) -> None:
        generation = next(self._generations)
        slot.generation = generation
        slot.state = ConnectionState.CONNECTING

        handlers = TransportHandlers(
            on_open=lambda: self._handle_open(conversation_id, generation, transport),
            on_message=lambda raw: self._handle_message(conversation_id, generation, raw),
            on_error=lambda exc: self._handle_error(conversation_id, generation, exc),
            on_close=lambda event: self._handle_close(conversation_id, generation, event),
        )
        transport = self.transport_factory(
            self.url_for(conversation_id, slot.credential or ""), handlers
        )
        slot.transport = transport

        logger.info("Connecting to chat %d (attempt %d)", conversation_id, slot.attempts)
        self._publish(StatusEvent(conversation_id, StatusKind.CONNECTING, attempt=slot.attempts))
        transport.open()

    def _retire(self, slot: _Slot, reason: str) -> None:
        slot.generation = next(self._generations)
        if slot.timer is not None:
            slot.timer.cancel()
            slot.timer = None
        transport, slot.transport = slot.transport, None
        slot.state = ConnectionState.DISCONNECTED
        if transport is not None:
            transport.close(NORMAL_CLOSURE, reason)

    def _live_slot(self, conversation_id: int, generation: int) -> _Slot | None:
        slot = self._slots.get(conversation_id)
        if slot is None or slot.generation != generation or slot.transport is None:
            return None
        return slot

    def _handle_open(self, conversation_id: int, generation: int, transport: Transport) -> None:
        slot = self._live_slot(conversation_id, generation)
        if slot is None:
            logger.debug("Closing late open of a retired transport for chat %d", conversation_id)
            transport.close(NORMAL_CLOSURE, "superseded")
            return
        slot.state = ConnectionState.CONNECTED
        slot.attempts = 0
        logger.info("Connected to chat %d", conversation_id)
        self._publish(StatusEvent(conversation_id, StatusKind.CONNECTED))

    def _handle_message(self, conversation_id: int, generation: int, raw: str) -> None:
        if self._live_slot(conversation_id, generation) is None:
            return
        if self.on_payload is not None:
            self.on_payload(conversation_id, raw)

    def _handle_error(self, conversation_id: int, generation: int, exc: BaseException) -> None:
        if self._live_slot(conversation_id, generation) is None:
            return
        logger.warning("Transport error on chat %d: %s", conversation_id, exc)
        self._handle_close(conversation_id, generation, CloseEvent(ABNORMAL_CLOSURE, str(exc)))

    def _handle_close(self, conversation_id: int, generation: int, event: CloseEvent) -> None:
        slot = self._live_slot(conversation_id, generation)
        if slot is None:
            logger.debug("Ignoring close of a retired transport for chat %d", conversation_id)
            return

        slot.transport = None
        slot.state = ConnectionState.DISCONNECTED
        logger.info(
            "Chat %d closed (code=%d reason=%r)", conversation_id, event.code, event.reason
        )
        self._publish(
            StatusEvent(
                conversation_id,
                StatusKind.DISCONNECTED,
                attempt=slot.attempts,
                code=event.code,
                reason=event.reason,
            )
        )

        if self.settings.is_auth_failure(event.code, event.reason, event.http_status):
            logger.warning("Chat %d rejected our credential; not reconnecting", conversation_id)
            slot.credential = None
            self._publish(
                StatusEvent(
                    conversation_id,
                    StatusKind.UNAUTHORIZED,
                    code=event.code,
                    reason=event.reason,
                )
            )
            return

        if event.code in self.settings.normal_close_codes:
            logger.info("Chat %d closed normally by the server", conversation_id)
            return

        self.schedule_reconnect(conversation_id)

    def _publish(self, event: StatusEvent) -> None:
        if self.on_status is not None:
            self.on_status(event)
