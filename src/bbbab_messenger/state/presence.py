"""Typing indicators with per-user expiry."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from ..utils.debounce import CallDebouncer, Scheduler, default_scheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TypingUser:
    user_id: int
    display_name: str
    expires_at: float


TypingListener = Callable[[int, list[TypingUser]], None]


class TypingTracker:
    """
    Tracks who is typing in each conversation.

    A typing=true event inserts or refreshes the user and re-arms their
    expiry timer; with no refresh the entry drops out after the quiet
    period. typing=false removes it at once. Inserts and removals call the
    listener with the full typing set of that conversation.
    """

    def __init__(
        self,
        quiet_period: float = 3.0,
        scheduler: Scheduler | None = None,
        on_change: TypingListener | None = None,
    ) -> None:
        self.quiet_period = quiet_period
        self.local_user_id: int | None = None
        self.on_change = on_change
        self._scheduler = scheduler
        self._entries: dict[int, dict[int, TypingUser]] = {}
        self._timers: dict[int, dict[int, CallDebouncer]] = {}

    @property
    def scheduler(self) -> Scheduler:
        if self._scheduler is None:
            self._scheduler = default_scheduler()
        return self._scheduler

    def on_typing_event(
        self,
        conversation_id: int,
        user_id: int,
        is_typing: bool,
        display_name: str | None = None,
    ) -> bool:
        """Apply a typing event; returns True when the typing set changed."""
        if self.local_user_id is not None and user_id == self.local_user_id:
            return False
        if is_typing:
            return self._start(conversation_id, user_id, display_name or f"User {user_id}")
        return self._stop(conversation_id, user_id)

    def _start(self, conversation_id: int, user_id: int, display_name: str) -> bool:
        entries = self._entries.setdefault(conversation_id, {})
        timers = self._timers.setdefault(conversation_id, {})

        timer = timers.get(user_id)
        if timer is None:
            timer = CallDebouncer(
                lambda: self._expire(conversation_id, user_id),
                self.quiet_period,
                self.scheduler,
            )
            timers[user_id] = timer
        timer.call()

        previous = entries.get(user_id)
        entries[user_id] = TypingUser(user_id, display_name, timer.deadline or 0.0)
        if previous is None or previous.display_name != display_name:
            self._publish(conversation_id)
            return True
        return False

    def _stop(self, conversation_id: int, user_id: int) -> bool:
        timer = self._timers.get(conversation_id, {}).pop(user_id, None)
        if timer is not None:
            timer.cancel()
        entries = self._entries.get(conversation_id)
        if not entries or entries.pop(user_id, None) is None:
            return False
        self._publish(conversation_id)
        return True

    def _expire(self, conversation_id: int, user_id: int) -> None:
        logger.debug("Typing expired for user %d in chat %d", user_id, conversation_id)
        self._stop(conversation_id, user_id)

    def _publish(self, conversation_id: int) -> None:
        if self.on_change is not None:
            self.on_change(conversation_id, self.users(conversation_id))

    def users(self, conversation_id: int) -> list[TypingUser]:
        """Current typing set of a conversation."""
        return list(self._entries.get(conversation_id, {}).values())

    def clear(self, conversation_id: int) -> None:
        """Drop a conversation's typing set and cancel its expiry timers."""
        for timer in self._timers.pop(conversation_id, {}).values():
            timer.cancel()
        if self._entries.pop(conversation_id, None):
            if self.on_change is not None:
                self.on_change(conversation_id, [])

    def clear_all(self) -> None:
        for conversation_id in list(set(self._entries) | set(self._timers)):
            self.clear(conversation_id)

    def pending_timers(self, conversation_id: int) -> int:
        return sum(1 for t in self._timers.get(conversation_id, {}).values() if t.is_pending)
