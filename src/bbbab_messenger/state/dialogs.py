"""Conversation summaries derived from the timeline store."""

from __future__ import annotations

from collections.abc import Callable, Iterable

from ..api.models import Chat, Dialog
from .timeline import TimelineStore

DialogsListener = Callable[[list[Dialog]], None]


class DialogIndex:
    """
    Known conversations and their last-message summaries.

    Summaries are never stored: the last message text and time are read
    from the timeline store each time the list is built, so they cannot
    drift from the timelines.
    """

    def __init__(self, timeline: TimelineStore, on_change: DialogsListener | None = None) -> None:
        self._timeline = timeline
        self.on_change = on_change
        # Insertion ordered; ties in the sorted list keep this order.
        self._names: dict[int, str] = {}

    def set_chats(self, chats: Iterable[Chat]) -> list[Dialog]:
        """Replace the known conversations with a chat list and publish."""
        self._names = {chat.id: chat.title for chat in chats}
        return self.recompute()

    def register(self, conversation_id: int, name: str | None = None) -> bool:
        """Make a conversation known; returns True if it was new."""
        if conversation_id in self._names:
            if name:
                self._names[conversation_id] = name
            return False
        self._names[conversation_id] = name or f"Chat {conversation_id}"
        return True

    def summary(self, conversation_id: int) -> Dialog:
        last = self._timeline.last(conversation_id)
        return Dialog(
            id=conversation_id,
            name=self._names.get(conversation_id, f"Chat {conversation_id}"),
            last_message=last.text if last else None,
            last_time=last.timestamp if last else None,
        )

    def dialogs(self) -> list[Dialog]:
        """Summaries sorted by last message time, newest first; empty ones last."""
        summaries = [self.summary(cid) for cid in self._names]
        summaries.sort(key=lambda d: (d.last_time is None, -(d.last_time or 0)))
        return summaries

    def recompute(self, conversation_id: int | None = None) -> list[Dialog]:
        """Rebuild the summary list (registering ``conversation_id``) and publish it."""
        if conversation_id is not None:
            self.register(conversation_id)
        dialogs = self.dialogs()
        if self.on_change is not None:
            self.on_change(dialogs)
        return dialogs

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._names

    def clear(self) -> None:
        self._names.clear()
