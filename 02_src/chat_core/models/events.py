"""Event models: local state notifications and backend pushes."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .messages import Message
from .polls import Poll, PollVote


class Topic(str, Enum):
    """EventBus topics the presentation layer can subscribe to."""

    CONVERSATIONS_CHANGED = "conversations_changed"
    MESSAGES_CHANGED = "messages_changed"
    POLL_TALLY_CHANGED = "poll_tally_changed"
    VIEW_CHANGED = "view_changed"


@dataclass
class StateEvent:
    """A state-changed notification exchanged through EventBus."""

    id: str
    topic: Topic
    payload: dict  # varies by topic
    source: str  # component that published
    timestamp: datetime


class RemoteEventKind(str, Enum):
    MESSAGE_CREATED = "message_created"
    VOTE_RECORDED = "vote_recorded"
    POLL_CLOSED = "poll_closed"


@dataclass
class RemoteEvent:
    """A change pushed by the backend's realtime channel."""

    kind: RemoteEventKind
    conversation_id: str
    message: Message | None = None
    poll: Poll | None = None  # snapshot for a freshly created poll message
    vote: PollVote | None = None
    poll_id: str | None = None
