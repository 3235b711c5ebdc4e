"""Message-related data models."""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Union


class DeliveryStatus(str, Enum):
    """Delivery state of a message as seen by the local session."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class PayloadKind(str, Enum):
    TEXT = "text"
    POLL = "poll"
    ATTACHMENT = "attachment"


@dataclass(frozen=True)
class TextPayload:
    """Plain text content."""

    text: str

    @property
    def kind(self) -> PayloadKind:
        return PayloadKind.TEXT

    def content_key(self) -> str:
        return self.text

    def preview(self) -> str:
        return self.text


@dataclass(frozen=True)
class PollPayload:
    """Reference to the poll hosted by a message."""

    poll_id: str
    question: str = ""

    @property
    def kind(self) -> PayloadKind:
        return PayloadKind.POLL

    def content_key(self) -> str:
        return f"poll:{self.poll_id}:{self.question}"

    def preview(self) -> str:
        return f"Poll: {self.question}" if self.question else "Poll"


@dataclass(frozen=True)
class AttachmentPayload:
    """Reference to a file attached to a message."""

    attachment_id: str
    file_name: str
    content_type: str
    size: int
    storage_ref: str | None = None  # set once the upload is ready

    @property
    def kind(self) -> PayloadKind:
        return PayloadKind.ATTACHMENT

    def content_key(self) -> str:
        return f"file:{self.file_name}:{self.size}"

    def preview(self) -> str:
        return f"Attachment: {self.file_name}"


MessagePayload = Union[TextPayload, PollPayload, AttachmentPayload]


@dataclass
class Message:
    """A single message in a conversation."""

    id: str
    conversation_id: str
    author_id: str
    created_at: datetime
    payload: MessagePayload
    status: DeliveryStatus = DeliveryStatus.SENT
    error: str | None = None

    @property
    def sort_key(self) -> tuple[datetime, str]:
        """Total order inside a conversation: (timestamp, id)."""
        return (self.created_at, self.id)

    def fingerprint(self, bucket_seconds: int) -> tuple[str, str, int, str]:
        """Reconciliation key: conversation, author, timestamp bucket, content."""
        bucket = math.floor(self.created_at.timestamp() / bucket_seconds)
        return (
            self.conversation_id,
            self.author_id,
            bucket,
            self.payload.content_key(),
        )


@dataclass
class OutgoingMessage:
    """A locally created message handed to the backend for posting.

    Poll and attachment travel with their hosting message so the backend can
    create them in the same transaction.
    """

    id: str
    conversation_id: str
    author_id: str
    payload: MessagePayload
    poll_options: list[str] = field(default_factory=list)
