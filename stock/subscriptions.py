import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Hashable

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    token: int
    topic: Hashable
    callback: Callable[[Any], None]
    loader: Callable[[], Any]


class SubscriptionRegistry:
    """Observer registry that delivers full snapshots per topic.

    A topic is any hashable key (e.g. ``("meat_logs", item_id)``). Each
    subscription carries a loader that produces the current snapshot; the
    snapshot is delivered once on registration and again on every publish of
    the topic until the returned disposer is called.
    """

    def __init__(self):
        self._subscriptions: dict[int, Subscription] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()

    def register(self, topic, callback, loader):
        with self._lock:
            subscription = Subscription(token=next(self._tokens), topic=topic, callback=callback, loader=loader)
            self._subscriptions[subscription.token] = subscription

        self._deliver(subscription)

        def dispose():
            with self._lock:
                self._subscriptions.pop(subscription.token, None)

        return dispose

    def publish(self, *topics):
        wanted = set(topics)
        with self._lock:
            targets = [subscription for subscription in self._subscriptions.values() if subscription.topic in wanted]

        for subscription in targets:
            # Disposed while an earlier observer was running.
            if subscription.token not in self._subscriptions:
                continue
            self._deliver(subscription)

    def subscriber_count(self, topic=None):
        with self._lock:
            if topic is None:
                return len(self._subscriptions)
            return sum(1 for subscription in self._subscriptions.values() if subscription.topic == topic)

    def _deliver(self, subscription):
        try:
            subscription.callback(subscription.loader())
        except Exception:
            logger.exception("subscription_delivery_failed topic=%s", subscription.topic)
