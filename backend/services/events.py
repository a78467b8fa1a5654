"""
Typed event bus for billing domain events.

Handlers are registered per event class. Matching is on the exact class, so
a ``SubscriptionUpdated`` handler does not also receive ``TierChanged``;
registering for ``BillingEvent`` receives everything.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from core.domain.catalog import SubjectType
from core.domain.events import BillingEvent

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=BillingEvent)
Handler = Callable[[Any], Awaitable[None] | None]


@dataclass
class _Subscription:
    event_type: type[BillingEvent]
    handler: Handler
    subject_type: SubjectType | None
    once: bool

    def matches(self, event: BillingEvent) -> bool:
        if self.event_type is not BillingEvent and type(event) is not self.event_type:
            return False
        if self.subject_type is None:
            return True
        return getattr(event, "subject_type", None) == self.subject_type


class EventBus:
    """Dispatches domain events to registered handlers in registration order."""

    def __init__(self):
        self._subscriptions: list[_Subscription] = []

    def on(
        self,
        event_type: type[E],
        handler: Callable[[E], Awaitable[None] | None],
        subject_type: SubjectType | None = None,
    ) -> Callable[[E], Awaitable[None] | None]:
        """
        Register a handler.

        Args:
            event_type: Event class to listen for
            handler: Sync or async callable receiving the event
            subject_type: Only deliver events about this kind of subject

        Returns:
            The handler, so ``on`` can be used to build decorators
        """
        self._subscriptions.append(_Subscription(event_type, handler, subject_type, once=False))
        return handler

    def once(
        self,
        event_type: type[E],
        handler: Callable[[E], Awaitable[None] | None],
        subject_type: SubjectType | None = None,
    ) -> Callable[[E], Awaitable[None] | None]:
        """Register a handler that is removed after its first delivery."""
        self._subscriptions.append(_Subscription(event_type, handler, subject_type, once=True))
        return handler

    def off(self, event_type: type[BillingEvent], handler: Handler | None = None) -> None:
        """Remove one handler, or every handler of ``event_type`` when none is given."""
        self._subscriptions = [
            sub
            for sub in self._subscriptions
            if not (sub.event_type is event_type and (handler is None or sub.handler == handler))
        ]

    def handler_count(self, event_type: type[BillingEvent] | None = None) -> int:
        if event_type is None:
            return len(self._subscriptions)
        return sum(1 for sub in self._subscriptions if sub.event_type is event_type)

    async def emit(self, event: BillingEvent) -> int:
        """
        Deliver an event to every matching handler.

        Handler exceptions propagate to the caller; handlers registered after
        the failing one are not called.

        Returns:
            Number of handlers called
        """
        matching = [sub for sub in self._subscriptions if sub.matches(event)]
        if not matching:
            logger.debug(f"No handlers for {type(event).__name__}")
            return 0

        called = 0
        for sub in matching:
            if sub.once:
                self._remove(sub)
            result = sub.handler(event)
            if inspect.isawaitable(result):
                await result
            called += 1
        return called

    def _remove(self, subscription: _Subscription) -> None:
        self._subscriptions = [sub for sub in self._subscriptions if sub is not subscription]
