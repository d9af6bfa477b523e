"""
Event bus — In-process publish/subscribe for monitor and security events.

Producers emit named events without knowing who listens. Subscribers may
be plain callables or coroutine functions; a failing subscriber is logged
and never breaks the producer or the other subscribers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

SUSPICIOUS_ACTIVITY = "suspicious_activity"
ALERT_THRESHOLD_EXCEEDED = "alert_threshold_exceeded"
SECURITY_ALERT = "security_alert"

Handler = Callable[..., Any]


class EventBus:
    """Multi-subscriber notification channel keyed by event name."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        """
        Register ``handler`` for ``event``.

        Returns:
            A callable that removes the subscription.
        """
        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)

        return unsubscribe

    def emit(self, event: str, **payload: Any) -> None:
        """Deliver ``payload`` to every subscriber of ``event``."""
        for handler in list(self._handlers.get(event, ())):
            try:
                outcome = handler(**payload)
            except Exception as exc:
                logger.warning("Handler for %s failed: %s", event, exc)
                continue
            if inspect.isawaitable(outcome):
                self._schedule(event, outcome)

    def _schedule(self, event: str, awaitable: Any) -> None:
        """Run an async subscriber in the background."""
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._pending.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                logger.warning("Async handler for %s failed: %s", event, finished.exception())

        task.add_done_callback(_done)

    def subscriber_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))
