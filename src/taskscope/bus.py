"""Synchronous fan-out of telemetry payloads to registered listeners."""

import itertools
import logging
import weakref
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]


class Subscription:
    """
    Cancellation handle returned by SubscriptionBus.subscribe().

    Holds only a weak reference to its bus, so keeping a handle around never
    keeps the bus alive.
    """

    __slots__ = ("_bus_ref", "_token", "_callback", "_cancelled", "__weakref__")

    def __init__(self, bus: "SubscriptionBus", token: int, callback: Callback) -> None:
        self._bus_ref = weakref.ref(bus)
        self._token = token
        self._callback = callback
        self._cancelled = False

    @property
    def token(self) -> int:
        return self._token

    @property
    def active(self) -> bool:
        return not self._cancelled

    def cancel(self) -> None:
        """Unregister from the bus. Safe to call more than once."""
        self._cancelled = True
        bus = self._bus_ref()
        if bus is not None:
            bus._remove(self._token)

    def __call__(self, payload: Any) -> None:
        self._callback(payload)


class SubscriptionBus:
    """Registry of subscriber callbacks, invoked in registration order."""

    def __init__(self) -> None:
        self._subscriptions: dict[int, Subscription] = {}
        self._tokens = itertools.count(1)
        self._closed = False

    def __len__(self) -> int:
        return len(self._subscriptions)

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, callback: Callback) -> Subscription:
        """Register a callback and return its cancellation handle."""
        if self._closed:
            raise RuntimeError("Cannot subscribe to a closed bus")
        subscription = Subscription(self, next(self._tokens), callback)
        self._subscriptions[subscription.token] = subscription
        return subscription

    def cancel(self, subscription: Subscription) -> None:
        subscription.cancel()

    def _remove(self, token: int) -> None:
        self._subscriptions.pop(token, None)

    def publish(self, payload: Any) -> int:
        """
        Deliver payload to every current subscriber, synchronously.

        Subscribers added during the pass wait for the next publish; ones
        cancelled during the pass are skipped. A failing callback is logged
        and does not stop delivery to the rest. Returns the number of
        callbacks invoked.
        """
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if not subscription.active:
                continue
            try:
                subscription(payload)
            except Exception:
                logger.exception("Subscriber %d raised during publish", subscription.token)
            delivered += 1
        return delivered

    def close(self) -> None:
        """Cancel every subscription and refuse new ones."""
        for subscription in list(self._subscriptions.values()):
            subscription.cancel()
        self._subscriptions.clear()
        self._closed = True
