"""Core module."""

from .app import Application, IApplication
from .attachments import AttachmentUploader, IAttachmentUploader, UploadHandle
from .backend import IChatBackend, SqliteBackend
from .config import ChatSettings
from .errors import (
    AlreadyVotedError,
    ChatError,
    InvalidInputError,
    InvalidOptionError,
    InvariantViolation,
    NotFoundError,
    PollClosedError,
    TooLargeError,
    TransportError,
    UnsupportedTypeError,
)
from .event_bus import EventBus, IEventBus
from .models import (
    Attachment,
    Conversation,
    DeliveryStatus,
    FileHandle,
    LayoutMode,
    Message,
    Poll,
    StateEvent,
    Topic,
    ViewState,
)
from .polls import PollEngine
from .store import ConversationStore, IConversationStore
from .view import IViewCoordinator, ViewCoordinator

__all__ = [
    # Application
    "Application",
    "IApplication",
    "ChatSettings",
    # Models
    "Conversation",
    "Message",
    "DeliveryStatus",
    "Poll",
    "Attachment",
    "FileHandle",
    "StateEvent",
    "Topic",
    "LayoutMode",
    "ViewState",
    # Errors
    "ChatError",
    "NotFoundError",
    "InvalidInputError",
    "AlreadyVotedError",
    "PollClosedError",
    "InvalidOptionError",
    "TransportError",
    "TooLargeError",
    "UnsupportedTypeError",
    "InvariantViolation",
    # Components
    "IChatBackend",
    "SqliteBackend",
    "IEventBus",
    "EventBus",
    "PollEngine",
    "IAttachmentUploader",
    "AttachmentUploader",
    "UploadHandle",
    "IConversationStore",
    "ConversationStore",
    "IViewCoordinator",
    "ViewCoordinator",
]
