"""Core data models for the school chat."""

from .attachments import Attachment, AttachmentKind, FileHandle, UploadStatus
from .conversations import Conversation
from .events import RemoteEvent, RemoteEventKind, StateEvent, Topic
from .messages import (
    AttachmentPayload,
    DeliveryStatus,
    Message,
    MessagePayload,
    OutgoingMessage,
    PayloadKind,
    PollPayload,
    TextPayload,
)
from .polls import Poll, PollOption, PollVote
from .view import LayoutMode, ViewState

__all__ = [
    # Conversations
    "Conversation",
    # Messages
    "Message",
    "MessagePayload",
    "OutgoingMessage",
    "DeliveryStatus",
    "PayloadKind",
    "TextPayload",
    "PollPayload",
    "AttachmentPayload",
    # Polls
    "Poll",
    "PollOption",
    "PollVote",
    # Attachments
    "Attachment",
    "AttachmentKind",
    "FileHandle",
    "UploadStatus",
    # Events
    "StateEvent",
    "Topic",
    "RemoteEvent",
    "RemoteEventKind",
    # View
    "LayoutMode",
    "ViewState",
]
