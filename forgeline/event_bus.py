"""
FORGELINE Event Bus

Decouples the scheduler from whoever is watching it (CLI, audit log,
tests). Emission is synchronous and never raises; queue subscribers
are fed without blocking so a slow observer cannot stall a stream.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel, Field


class FeatureEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    feature_id: str | None = None
    project_path: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


Subscriber = Callable[[FeatureEvent], None]


class EventBus:
    """A lightweight, synchronous event bus for FORGELINE observability."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(
        self,
        event_type: str,
        feature_id: str | None = None,
        project_path: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> FeatureEvent:
        """Construct and broadcast a FeatureEvent to all subscribers."""
        event = FeatureEvent(
            event_type=event_type,
            feature_id=feature_id,
            project_path=project_path,
            payload=payload or {},
        )

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as e:
                logger.warning(f"[EVENTS] Subscriber {subscriber!r} failed on {event_type}: {e}")

        return event

    def open_queue(self, maxsize: int = 1000) -> asyncio.Queue[FeatureEvent]:
        """
        Subscribe an asyncio.Queue to the bus.

        When the queue is full the oldest event is dropped, so emit()
        never waits on a consumer.
        """
        queue: asyncio.Queue[FeatureEvent] = asyncio.Queue(maxsize=maxsize)

        def _feed(event: FeatureEvent) -> None:
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)

        self.subscribe(_feed)
        return queue
