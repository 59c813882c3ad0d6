"""Topic based publish/subscribe registry."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]
Unsubscribe = Callable[[], None]


class SubscriptionBus:
    """
    Maps topic names to handler lists.

    Handlers run synchronously in subscription order. A handler that raises
    is logged and does not stop delivery to the remaining handlers.
    Handlers may unsubscribe (themselves or others) while an event is being
    delivered; the change applies from the next publish.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def subscribe(self, topic: str, handler: Handler) -> Unsubscribe:
        """Register ``handler`` for ``topic`` and return its unsubscribe callable."""
        self._handlers.setdefault(topic, []).append(handler)
        active = True

        def unsubscribe() -> None:
            nonlocal active
            if active:
                active = False
                self._remove(topic, handler)

        return unsubscribe

    def _remove(self, topic: str, handler: Handler) -> None:
        handlers = self._handlers.get(topic)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._handlers[topic]

    def publish(self, topic: str, payload: Any) -> int:
        """Deliver ``payload`` to every handler of ``topic``; returns the handler count."""
        handlers = list(self._handlers.get(topic, ()))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception("Error in subscriber for %s", topic)
        return len(handlers)

    def has_subscribers(self, topic: str) -> bool:
        return bool(self._handlers.get(topic))

    def clear(self) -> None:
        """Drop every subscription."""
        self._handlers.clear()


# Topic names


def message_topic(conversation_id: int) -> str:
    return f"msg:{conversation_id}"


def history_topic(conversation_id: int) -> str:
    return f"history:{conversation_id}"


def status_topic(conversation_id: int) -> str:
    return f"status:{conversation_id}"


def typing_topic(conversation_id: int) -> str:
    return f"typing:{conversation_id}"


def server_event_topic(conversation_id: int) -> str:
    return f"server:{conversation_id}"


DIALOGS_TOPIC = "dialogs:updated"
UNAUTHORIZED_TOPIC = "auth:unauthorized"
