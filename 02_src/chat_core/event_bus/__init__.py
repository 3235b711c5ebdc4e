"""State-change EventBus module."""

from .event_bus import EventBus, IEventBus, TopicHandler

__all__ = ["EventBus", "IEventBus", "TopicHandler"]
