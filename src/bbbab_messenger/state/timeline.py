"""In-memory per-conversation message timelines."""

from __future__ import annotations

import logging
from bisect import bisect_left, insort
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from ..api.models import Message

logger = logging.getLogger(__name__)


class UpsertResult(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"

    @property
    def changed(self) -> bool:
        return self in (UpsertResult.INSERTED, UpsertResult.UPDATED)


@dataclass(frozen=True)
class TimelineChange:
    """Messages inserted or overwritten by one store operation."""

    conversation_id: int
    messages: list[Message]
    from_history: bool = False


@dataclass(frozen=True)
class TimelinePage:
    messages: list[Message]
    has_more: bool
    next_cursor: int | None
    next_cursor_id: int | None = None


TimelineListener = Callable[[TimelineChange], None]


def _sort_key(message: Message) -> tuple[int, int]:
    return (message.timestamp, message.id)


def _timestamp(message: Message) -> int:
    return message.timestamp


def merge_message(existing: Message, incoming: Message) -> Message | None:
    """
    Decide whether ``incoming`` should replace ``existing`` (same id).

    Returns the message to store, or None when ``incoming`` is a duplicate
    or a stale copy. Copies are ordered by version (the later of creation
    and edit time). At equal versions an incoming copy wins only if it
    changes the text, newly marks the message deleted, or adds readers;
    an undeleted copy never revives a deleted message. Reader sets are
    always unioned.
    """
    readers = existing.read_by | incoming.read_by

    if incoming.version < existing.version:
        return None

    if incoming.version > existing.version:
        chosen = incoming
    else:
        if existing.is_deleted and not incoming.is_deleted:
            return None
        if incoming.text != existing.text or (incoming.is_deleted and not existing.is_deleted):
            chosen = incoming
        elif readers != existing.read_by:
            chosen = existing
        else:
            return None

    if chosen.read_by != readers:
        chosen = chosen.model_copy(update={"read_by": readers})
    return chosen


class TimelineStore:
    """
    Ordered, deduplicated message collections keyed by conversation id.

    Every timeline is kept sorted ascending by creation timestamp (ties by
    id) and unique by message id after every mutation. Listeners are told
    about inserts and overwrites; dropped duplicates are silent.
    """

    def __init__(self) -> None:
        self._timelines: dict[int, list[Message]] = {}
        self._index: dict[int, dict[int, Message]] = {}
        self._listeners: list[TimelineListener] = []

    def add_listener(self, listener: TimelineListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, change: TimelineChange) -> None:
        for listener in list(self._listeners):
            listener(change)

    # Mutations

    def upsert(self, conversation_id: int, incoming: Message) -> UpsertResult:
        """Insert a message or overwrite the stored copy if the incoming one is newer."""
        result, stored = self._apply(conversation_id, incoming)
        if result.changed and stored is not None:
            self._notify(TimelineChange(conversation_id, [stored]))
        return result

    def merge_history(self, conversation_id: int, messages: Iterable[Message]) -> list[Message]:
        """
        Merge a history page message by message.

        The existing timeline is never replaced, so live messages that
        arrived while the page was in flight survive. Listeners get one
        notification carrying every changed message, or none at all.
        """
        changed: list[Message] = []
        rejected = 0
        for message in messages:
            result, stored = self._apply(conversation_id, message)
            if result.changed and stored is not None:
                changed.append(stored)
            elif result is UpsertResult.REJECTED:
                rejected += 1

        logger.debug(
            "Merged history for chat %d: %d changed, %d rejected",
            conversation_id,
            len(changed),
            rejected,
        )
        if changed:
            changed.sort(key=_sort_key)
            self._notify(TimelineChange(conversation_id, changed, from_history=True))
        return changed

    def _apply(self, conversation_id: int, incoming: Message) -> tuple[UpsertResult, Message | None]:
        if incoming.id <= 0:
            logger.debug("Rejecting message without id in chat %d", conversation_id)
            return UpsertResult.REJECTED, None

        if incoming.conversation_id != conversation_id:
            incoming = incoming.model_copy(update={"conversation_id": conversation_id})

        timeline = self._timelines.setdefault(conversation_id, [])
        index = self._index.setdefault(conversation_id, {})

        existing = index.get(incoming.id)
        if existing is None:
            insort(timeline, incoming, key=_sort_key)
            index[incoming.id] = incoming
            return UpsertResult.INSERTED, incoming

        merged = merge_message(existing, incoming)
        if merged is None:
            return UpsertResult.DUPLICATE, None

        pos = bisect_left(timeline, _sort_key(existing), key=_sort_key)
        del timeline[pos]
        insort(timeline, merged, key=_sort_key)
        index[merged.id] = merged
        return UpsertResult.UPDATED, merged

    def clear(self, conversation_id: int) -> None:
        self._timelines.pop(conversation_id, None)
        self._index.pop(conversation_id, None)

    def clear_all(self) -> None:
        self._timelines.clear()
        self._index.clear()

    # Reads

    def get(self, conversation_id: int, message_id: int) -> Message | None:
        return self._index.get(conversation_id, {}).get(message_id)

    def messages(self, conversation_id: int) -> list[Message]:
        """Snapshot of a conversation's timeline, oldest first."""
        return list(self._timelines.get(conversation_id, ()))

    def last(self, conversation_id: int) -> Message | None:
        timeline = self._timelines.get(conversation_id)
        return timeline[-1] if timeline else None

    def count(self, conversation_id: int) -> int:
        return len(self._timelines.get(conversation_id, ()))

    def conversation_ids(self) -> list[int]:
        return list(self._timelines)

    def page(
        self,
        conversation_id: int,
        before: int | None = None,
        limit: int = 20,
        before_id: int | None = None,
    ) -> TimelinePage:
        """
        Read up to ``limit`` messages strictly older than ``before``.

        Without ``before`` the newest ``limit`` messages are returned.
        ``next_cursor`` is the timestamp of the oldest returned message, to
        be passed as ``before`` on the next call. Messages sharing that
        timestamp are only reachable when ``next_cursor_id`` is passed back
        as ``before_id`` too, which makes the cursor the full
        ``(timestamp, id)`` ordering key.
        """
        if limit <= 0:
            raise ValueError("limit must be positive")

        timeline = self._timelines.get(conversation_id, [])
        if before is None:
            end = len(timeline)
        elif before_id is None:
            end = bisect_left(timeline, before, key=_timestamp)
        else:
            end = bisect_left(timeline, (before, before_id), key=_sort_key)
        start = max(0, end - limit)
        window = timeline[start:end]
        return TimelinePage(
            messages=window,
            has_more=start > 0,
            next_cursor=window[0].timestamp if window else None,
            next_cursor_id=window[0].id if window else None,
        )
