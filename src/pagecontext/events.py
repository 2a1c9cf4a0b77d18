# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Typed publish/subscribe channel for pipeline events.

Subscribers are plain callables invoked synchronously on publish; async
consumers use ``stream()`` which yields events through an asyncio.Queue.
A failing subscriber is logged and skipped, it never breaks the publisher.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    CONTEXT_UPDATED = "context_updated"
    PRIVACY_CONFIG_CHANGED = "privacy_config_changed"
    CONSENT_CHANGED = "consent_changed"
    DOM_CHANGED = "dom_changed"
    INTERACTION = "interaction"
    NETWORK_ACTIVITY = "network_activity"
    COMPONENT_ERROR = "component_error"
    COMPONENT_RECOVERED = "component_recovered"


@dataclass(frozen=True, slots=True)
class Event:
    type: EventType
    payload: Any = None
    timestamp: float = field(default_factory=time.time)


Handler = Callable[[Event], None]


class EventBus:
    """In-process event channel, one subscriber list per EventType."""

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[Handler]] = {}
        self._published = 0

    @property
    def published_count(self) -> int:
        return self._published

    def subscribe(self, event_type: EventType, handler: Handler) -> Callable[[], None]:
        """Register *handler*; returns a callable that unsubscribes it (idempotent)."""
        handlers = self._handlers.setdefault(event_type, [])
        handlers.append(handler)

        def _unsubscribe() -> None:
            try:
                handlers.remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._handlers.get(event_type, ()))

    def publish(self, event_type: EventType, payload: Any = None) -> Event:
        event = Event(type=event_type, payload=payload)
        self._published += 1
        # Copy: handlers may unsubscribe while being dispatched
        for handler in list(self._handlers.get(event_type, ())):
            try:
                handler(event)
            except Exception:
                logger.warning("Event handler failed for %s", event_type.value, exc_info=True)
        return event

    async def stream(self, event_type: EventType, *, maxsize: int = 100) -> AsyncIterator[Event]:
        """Async iterator over future events of one type.

        When the consumer falls behind by ``maxsize`` events, the oldest
        queued event is dropped.
        """
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)

        def _enqueue(event: Event) -> None:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)

        unsubscribe = self.subscribe(event_type, _enqueue)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
