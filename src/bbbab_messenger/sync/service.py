"""The chat sync service: one object owning every registry of the core."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from typing import Any

from ..api.client import ChatApiClient
from ..api.frames import FrameDecoder
from ..api.models import (
    Dialog,
    HistoryFrame,
    InboundFrame,
    Message,
    MessageFrame,
    TypingFrame,
    User,
)
from ..api.websocket import TransportFactory
from ..errors import ApiError, AuthenticationError
from ..state.dialogs import DialogIndex
from ..state.presence import TypingTracker, TypingUser
from ..state.profiles import UserProfileCache
from ..state.timeline import TimelineChange, TimelinePage, TimelineStore, UpsertResult
from ..utils.bus import (
    DIALOGS_TOPIC,
    UNAUTHORIZED_TOPIC,
    Handler,
    SubscriptionBus,
    Unsubscribe,
    history_topic,
    message_topic,
    server_event_topic,
    status_topic,
    typing_topic,
)
from ..utils.config import SyncSettings, TokenProvider
from ..utils.debounce import Scheduler
from .supervisor import ConnectionState, ReconnectionSupervisor, StatusEvent, StatusKind

logger = logging.getLogger(__name__)

DELETED_TEXT = "[Deleted]"


def _now_ms() -> int:
    return int(time.time() * 1000)


class ChatSyncService:
    """
    Realtime chat synchronization for every open conversation.

    Connect to a conversation and subscribe to its topics; inbound frames
    are merged into the timeline store, typing tracker and dialog index,
    and consumers are notified through the subscription bus. All state
    lives on this object and ``dispose()`` releases all of it.
    """

    def __init__(
        self,
        ws_base_url: str,
        api: ChatApiClient | None = None,
        token_provider: TokenProvider | None = None,
        settings: SyncSettings | None = None,
        transport_factory: TransportFactory | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        """
        Initialize the service.

        Args:
            ws_base_url: Websocket root, e.g. ``ws://localhost:8080/api``
            api: REST client for history, chat list and user lookups
            token_provider: Default credential source for ``connect``
            settings: Reconnect, typing and cache tunables
            transport_factory: Builds a transport for a URL (tests inject fakes)
            scheduler: Timer source; defaults to the running event loop
            clock: Current time in epoch milliseconds, for outbound frames
        """
        self.api = api
        self.token_provider = token_provider
        self.settings = settings or SyncSettings()
        self._clock = clock

        self.bus = SubscriptionBus()
        self.decoder = FrameDecoder()
        self.timeline = TimelineStore()
        self.dialog_index = DialogIndex(self.timeline, on_change=self._publish_dialogs)
        self.typing = TypingTracker(
            quiet_period=self.settings.typing_quiet_period,
            scheduler=scheduler,
            on_change=self._publish_typing,
        )
        self.profiles = UserProfileCache(self._fetch_user, ttl=self.settings.profile_ttl)
        self.supervisor = ReconnectionSupervisor(
            ws_base_url,
            transport_factory=transport_factory,
            settings=self.settings,
            scheduler=scheduler,
            on_status=self._on_status,
            on_payload=self._on_payload,
        )

        self._remove_timeline_listener = self.timeline.add_listener(self._on_timeline_change)
        self._unauthorized_raised = False
        self._cursors: dict[int, str | None] = {}
        self._exhausted: set[int] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._disposed = False

    # Subscriptions

    def on_message(self, conversation_id: int, handler: Handler) -> Unsubscribe:
        """Called with each inserted or changed ``Message``."""
        return self.bus.subscribe(message_topic(conversation_id), handler)

    def on_history(self, conversation_id: int, handler: Handler) -> Unsubscribe:
        """Called with the list of messages a history merge changed."""
        return self.bus.subscribe(history_topic(conversation_id), handler)

    def on_status(self, conversation_id: int, handler: Handler) -> Unsubscribe:
        return self.bus.subscribe(status_topic(conversation_id), handler)

    def on_typing(self, conversation_id: int, handler: Handler) -> Unsubscribe:
        return self.bus.subscribe(typing_topic(conversation_id), handler)

    def on_server_event(self, conversation_id: int, handler: Handler) -> Unsubscribe:
        return self.bus.subscribe(server_event_topic(conversation_id), handler)

    def on_dialogs_changed(self, handler: Handler) -> Unsubscribe:
        return self.bus.subscribe(DIALOGS_TOPIC, handler)

    def on_unauthorized(self, handler: Handler) -> Unsubscribe:
        return self.bus.subscribe(UNAUTHORIZED_TOPIC, handler)

    # Connection management

    def set_current_user(self, user_id: int | None) -> None:
        """Set the local user, whose own typing events are ignored."""
        self.typing.local_user_id = user_id

    def connect(self, conversation_id: int, token: str | None = None) -> None:
        """Open the realtime channel of a conversation (replacing any existing one)."""
        if token is None and self.token_provider is not None:
            token = self.token_provider.get_token()
        if not token:
            raise AuthenticationError("No token available", status=401)
        self.dialog_index.register(conversation_id)
        self.supervisor.connect(conversation_id, token)

    def disconnect(self, conversation_id: int) -> None:
        self.supervisor.disconnect(conversation_id)
        self.typing.clear(conversation_id)

    def disconnect_all(self) -> None:
        for conversation_id in self.supervisor.conversation_ids():
            self.disconnect(conversation_id)

    def state(self, conversation_id: int) -> ConnectionState:
        return self.supervisor.state(conversation_id)

    # Outbound actions

    def send_message(self, conversation_id: int, text: str) -> None:
        if not text or not text.strip():
            raise ValueError("Message text must not be empty")
        self.supervisor.send(
            conversation_id,
            {"type": "message", "message": text, "timestamp": self._clock()},
        )

    def send_typing(self, conversation_id: int, is_typing: bool) -> None:
        self.supervisor.send(
            conversation_id,
            {"type": "typing", "message": "true" if is_typing else "false"},
        )

    def send_read_receipt(self, conversation_id: int, message_id: int) -> None:
        self.supervisor.send(
            conversation_id,
            {"type": "read_receipt", "message_id": message_id, "timestamp": self._clock()},
        )

    def edit_message(self, conversation_id: int, message_id: int, text: str) -> None:
        """Send an edit and apply it locally without waiting for the echo."""
        if not text or not text.strip():
            raise ValueError("Message text must not be empty")
        now = self._clock()
        self.supervisor.send(
            conversation_id,
            {"type": "message_edit", "message_id": message_id, "message": text, "timestamp": now},
        )
        existing = self.timeline.get(conversation_id, message_id)
        if existing is not None:
            edited_at = max(now, existing.version + 1)
            self.timeline.upsert(
                conversation_id,
                existing.model_copy(update={"text": text, "updated_at": edited_at}),
            )

    def delete_message(self, conversation_id: int, message_id: int) -> None:
        """Send a delete and soft-delete the message locally."""
        now = self._clock()
        self.supervisor.send(
            conversation_id,
            {"type": "message_delete", "message_id": message_id, "timestamp": now},
        )
        existing = self.timeline.get(conversation_id, message_id)
        if existing is not None:
            deleted_at = max(now, existing.version + 1)
            self.timeline.upsert(
                conversation_id,
                existing.model_copy(
                    update={"text": DELETED_TEXT, "is_deleted": True, "updated_at": deleted_at}
                ),
            )

    # Reads

    def page(
        self,
        conversation_id: int,
        before: int | None = None,
        limit: int = 20,
        before_id: int | None = None,
    ) -> TimelinePage:
        return self.timeline.page(conversation_id, before=before, limit=limit, before_id=before_id)

    def messages(self, conversation_id: int) -> list[Message]:
        return self.timeline.messages(conversation_id)

    def merge_history(self, conversation_id: int, messages: list[Message]) -> list[Message]:
        return self.timeline.merge_history(conversation_id, messages)

    def upsert(self, conversation_id: int, message: Message) -> UpsertResult:
        return self.timeline.upsert(conversation_id, message)

    def typing_users(self, conversation_id: int) -> list[TypingUser]:
        return self.typing.users(conversation_id)

    def dialogs(self) -> list[Dialog]:
        return self.dialog_index.dialogs()

    # REST backed operations

    async def load_dialogs(self) -> list[Dialog]:
        """Fetch the chat list, register every chat and seed last messages."""
        api = self._require_api()
        try:
            chats = await api.list_chats()
        except AuthenticationError:
            self._raise_unauthorized(None)
            raise

        self.dialog_index.set_chats(chats)
        for chat in chats:
            if chat.last_message is not None:
                self.timeline.upsert(chat.id, chat.last_message)
        return self.dialog_index.recompute()

    async def load_older(
        self,
        conversation_id: int,
        before: int | None = None,
        limit: int | None = None,
        before_id: int | None = None,
    ) -> TimelinePage:
        """
        Page backwards through a conversation.

        Messages already in memory are served first. When fewer than
        ``limit`` messages older than ``before`` are held locally and the
        server may have more, the next REST page is fetched and merged
        before reading again.
        """
        limit = limit or self.settings.history_page_size
        local = self.timeline.page(conversation_id, before=before, limit=limit, before_id=before_id)
        if (
            len(local.messages) >= limit
            or self.api is None
            or conversation_id in self._exhausted
        ):
            return local

        try:
            page = await self.api.get_chat_messages(
                conversation_id,
                cursor=self._cursors.get(conversation_id),
                limit=limit,
            )
        except AuthenticationError:
            self._raise_unauthorized(conversation_id)
            raise

        self._cursors[conversation_id] = page.next_cursor
        if not page.has_more or not page.next_cursor:
            self._exhausted.add(conversation_id)
        self.timeline.merge_history(conversation_id, page.messages)

        result = self.timeline.page(conversation_id, before=before, limit=limit, before_id=before_id)
        return TimelinePage(
            messages=result.messages,
            has_more=result.has_more or conversation_id not in self._exhausted,
            next_cursor=result.next_cursor,
            next_cursor_id=result.next_cursor_id,
        )

    async def get_user(self, user_id: int) -> User:
        return await self.profiles.get(user_id)

    async def _fetch_user(self, user_id: int) -> User:
        if self.api is None:
            raise ApiError("No REST client configured")
        return await self.api.get_user(user_id)

    def _require_api(self) -> ChatApiClient:
        if self.api is None:
            raise ApiError("No REST client configured")
        return self.api

    async def _replay_history(self, conversation_id: int) -> None:
        """Merge the newest history page after a (re)connect."""
        api = self._require_api()
        try:
            page = await api.get_chat_messages(
                conversation_id, limit=self.settings.history_page_size
            )
        except AuthenticationError:
            self._raise_unauthorized(conversation_id)
            return
        except ApiError as e:
            logger.warning("History replay for chat %d failed: %s", conversation_id, e)
            return
        if conversation_id not in self._cursors:
            self._cursors[conversation_id] = page.next_cursor
            if not page.has_more or not page.next_cursor:
                self._exhausted.add(conversation_id)
        self.timeline.merge_history(conversation_id, page.messages)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any] | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug("No running event loop; skipping background task")
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed", exc_info=exc)

    # Inbound routing

    def _on_payload(self, conversation_id: int, raw: str) -> None:
        for frame in self.decoder.decode(raw):
            self._dispatch(conversation_id, frame)

    def _dispatch(self, conversation_id: int, frame: InboundFrame) -> None:
        if isinstance(frame, MessageFrame):
            self.timeline.upsert(conversation_id, frame.message)
        elif isinstance(frame, HistoryFrame):
            self.timeline.merge_history(conversation_id, frame.messages)
        elif isinstance(frame, TypingFrame):
            name = frame.username
            if not name:
                cached = self.profiles.peek(frame.user_id)
                name = cached.label if cached else None
            self.typing.on_typing_event(conversation_id, frame.user_id, frame.is_typing, name)
        else:
            logger.debug("Server event %s on chat %d", frame.type, conversation_id)
            self.bus.publish(server_event_topic(conversation_id), frame)

    def _on_timeline_change(self, change: TimelineChange) -> None:
        self.dialog_index.recompute(change.conversation_id)
        if change.from_history:
            self.bus.publish(history_topic(change.conversation_id), change.messages)
        else:
            for message in change.messages:
                self.bus.publish(message_topic(change.conversation_id), message)

    def _on_status(self, event: StatusEvent) -> None:
        conversation_id = event.conversation_id
        if event.kind is StatusKind.CONNECTED:
            self._unauthorized_raised = False
        elif event.kind is StatusKind.DISCONNECTED:
            self.typing.clear(conversation_id)

        self.bus.publish(status_topic(conversation_id), event)

        if event.kind is StatusKind.CONNECTED and self.api is not None:
            self._spawn(self._replay_history(conversation_id))
        elif event.kind is StatusKind.UNAUTHORIZED:
            self._raise_unauthorized(conversation_id)

    def _raise_unauthorized(self, conversation_id: int | None) -> None:
        if self._unauthorized_raised:
            return
        self._unauthorized_raised = True
        logger.warning("Credential rejected; signalling unauthorized")
        self.bus.publish(UNAUTHORIZED_TOPIC, conversation_id)

    def _publish_dialogs(self, dialogs: list[Dialog]) -> None:
        self.bus.publish(DIALOGS_TOPIC, dialogs)

    def _publish_typing(self, conversation_id: int, users: list[TypingUser]) -> None:
        self.bus.publish(typing_topic(conversation_id), users)

    # Lifecycle

    def logout(self, forget_token: bool = False) -> None:
        """Disconnect everything and clear all in-memory state."""
        self.disconnect_all()
        self.timeline.clear_all()
        self.dialog_index.clear()
        self.typing.clear_all()
        self.profiles.clear()
        self._cursors.clear()
        self._exhausted.clear()
        self._unauthorized_raised = False
        if forget_token and self.token_provider is not None:
            self.token_provider.clear_token()
        self._publish_dialogs([])

    def dispose(self) -> None:
        """Release everything: connections, timers, tasks and subscriptions."""
        if self._disposed:
            return
        self._disposed = True
        self.logout()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self.supervisor.dispose()
        self._remove_timeline_listener()
        self.bus.clear()
