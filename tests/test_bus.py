"""Tests for the subscription bus."""

from unittest.mock import MagicMock

from bbbab_messenger.utils.bus import SubscriptionBus, message_topic


class TestSubscriptionBus:
    """Test topic delivery and unsubscription."""

    def test_publish_reaches_subscribers_in_order(self) -> None:
        bus = SubscriptionBus()
        calls: list[str] = []
        bus.subscribe("t", lambda p: calls.append(f"a:{p}"))
        bus.subscribe("t", lambda p: calls.append(f"b:{p}"))

        assert bus.publish("t", 1) == 2
        assert calls == ["a:1", "b:1"]

    def test_topics_are_isolated(self) -> None:
        bus = SubscriptionBus()
        handler = MagicMock()
        bus.subscribe(message_topic(1), handler)
        bus.publish(message_topic(2), "x")
        handler.assert_not_called()

    def test_unsubscribe_is_idempotent(self) -> None:
        bus = SubscriptionBus()
        handler = MagicMock()
        unsubscribe = bus.subscribe("t", handler)
        unsubscribe()
        unsubscribe()

        bus.publish("t", 1)
        handler.assert_not_called()
        assert not bus.has_subscribers("t")

    def test_unsubscribe_leaves_other_registration_of_same_handler(self) -> None:
        bus = SubscriptionBus()
        handler = MagicMock()
        first = bus.subscribe("t", handler)
        bus.subscribe("t", handler)
        first()
        first()

        bus.publish("t", 1)
        handler.assert_called_once_with(1)

    def test_failing_handler_does_not_block_others(self, caplog) -> None:
        bus = SubscriptionBus()
        after = MagicMock()
        bus.subscribe("t", MagicMock(side_effect=RuntimeError("boom")))
        bus.subscribe("t", after)

        bus.publish("t", 1)
        after.assert_called_once_with(1)
        assert "Error in subscriber for t" in caplog.text

    def test_unsubscribe_during_delivery(self) -> None:
        bus = SubscriptionBus()
        calls: list[str] = []
        unsubscribe_b = None

        def a(payload: object) -> None:
            calls.append("a")
            unsubscribe_b()

        bus.subscribe("t", a)
        unsubscribe_b = bus.subscribe("t", lambda p: calls.append("b"))

        bus.publish("t", 1)
        bus.publish("t", 2)
        assert calls == ["a", "b", "a"]

    def test_clear(self) -> None:
        bus = SubscriptionBus()
        bus.subscribe("t", MagicMock())
        bus.clear()
        assert not bus.has_subscribers("t")
