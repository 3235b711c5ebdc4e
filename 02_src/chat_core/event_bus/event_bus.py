"""EventBus implementation for state-changed notifications."""

import asyncio
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

from ..logging_config import get_logger
from ..models import StateEvent, Topic

logger = get_logger(__name__)


TopicHandler = Callable[[StateEvent], Awaitable[None]]

DEFAULT_JOURNAL_SIZE = 500


class IEventBus(Protocol):
    """In-memory pub/sub for exchanging StateEvents."""

    def subscribe(self, topic: Topic, handler: TopicHandler) -> None:
        """Subscribe a handler to a topic."""
        ...

    def unsubscribe(self, topic: Topic, handler: TopicHandler) -> None:
        """Remove a previously subscribed handler."""
        ...

    async def publish(
        self, topic: Topic, payload: dict, source: str
    ) -> StateEvent:
        """Publish a StateEvent: calls subscriber callbacks, records it in the journal."""
        ...

    def recent(
        self,
        after: datetime | None = None,
        topics: list[Topic] | None = None,
        limit: int = 100,
    ) -> list[StateEvent]:
        """Journaled events, oldest first."""
        ...


class EventBus:
    """In-memory pub/sub event bus with a bounded journal."""

    def __init__(self, journal_size: int = DEFAULT_JOURNAL_SIZE):
        self._subscribers: dict[Topic, list[TopicHandler]] = {
            topic: [] for topic in Topic
        }
        self._journal: deque[StateEvent] = deque(maxlen=journal_size)

    def subscribe(self, topic: Topic, handler: TopicHandler) -> None:
        """Subscribe a handler to a topic."""
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: Topic, handler: TopicHandler) -> None:
        """Remove a previously subscribed handler."""
        if handler in self._subscribers[topic]:
            self._subscribers[topic].remove(handler)

    async def publish(
        self, topic: Topic, payload: dict, source: str
    ) -> StateEvent:
        """Publish a StateEvent: calls subscriber callbacks, records it in the journal."""
        event = StateEvent(
            id=str(uuid.uuid4()),
            topic=topic,
            payload=payload,
            source=source,
            timestamp=datetime.now(timezone.utc),
        )
        self._journal.append(event)

        # Snapshot so handlers may (un)subscribe while being called
        handlers = list(self._subscribers.get(topic, []))

        if handlers:
            results = await asyncio.gather(
                *[handler(event) for handler in handlers],
                return_exceptions=True,
            )

            for i, result in enumerate(results):
                if isinstance(result, Exception):
                    logger.error(
                        "Error in %s handler %s: %s",
                        topic.value,
                        i,
                        result,
                        exc_info=result,
                    )

        return event

    def recent(
        self,
        after: datetime | None = None,
        topics: list[Topic] | None = None,
        limit: int = 100,
    ) -> list[StateEvent]:
        """Journaled events, oldest first."""
        events = [
            event
            for event in self._journal
            if (after is None or event.timestamp > after)
            and (not topics or event.topic in topics)
        ]
        return events[-limit:] if limit else []
