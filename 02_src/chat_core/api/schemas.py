"""Request and response models shared by the API routers."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..models import (
    Attachment,
    AttachmentPayload,
    Conversation,
    Message,
    Poll,
    PollPayload,
    StateEvent,
    TextPayload,
    ViewState,
)
from ..store import ConversationStore


class ConversationResponse(BaseModel):
    """Response model for a conversation list entry."""

    id: str
    display_name: str
    participant_ids: list[str]
    last_activity: datetime
    unread_count: int
    is_group: bool
    last_message_preview: str | None = None


class AttachmentResponse(BaseModel):
    """Response model for attachment."""

    id: str
    message_id: str
    file_name: str
    content_type: str
    size: int
    kind: str
    status: str
    storage_ref: str | None = None
    failure: str | None = None


class MessageResponse(BaseModel):
    """Response model for message."""

    id: str
    conversation_id: str
    author_id: str
    created_at: datetime
    kind: str
    status: str
    error: str | None = None
    text: str | None = None
    poll_id: str | None = None
    question: str | None = None
    attachment: AttachmentResponse | None = None


class PollOptionResponse(BaseModel):
    text: str
    votes: int


class PollResponse(BaseModel):
    """Response model for poll."""

    id: str
    message_id: str
    conversation_id: str
    question: str
    options: list[PollOptionResponse]
    voters: dict[str, int]
    total_votes: int
    closed: bool


class ViewStateResponse(BaseModel):
    layout_mode: str
    selected_conversation_id: str | None = None
    list_visible: bool
    chat_visible: bool


class StateEventResponse(BaseModel):
    """Response model for a journaled state event."""

    id: str
    topic: str
    source: str
    payload: dict[str, Any]
    timestamp: datetime


class StatusResponse(BaseModel):
    """Response model for status."""

    status: str


class CreateConversationRequest(BaseModel):
    participant_ids: list[str] = Field(min_length=1)
    display_name: str
    is_group: bool = False


class SendMessageRequest(BaseModel):
    text: str


class CreatePollRequest(BaseModel):
    options: list[str]
    question: str = ""


class VoteRequest(BaseModel):
    option_index: int
    voter_id: str | None = None  # defaults to the session user


class AttachFileRequest(BaseModel):
    file_name: str
    content_type: str
    content_base64: str


class ViewportRequest(BaseModel):
    width: int = Field(gt=0)


class SelectConversationRequest(BaseModel):
    conversation_id: str


def conversation_to_dict(conversation: Conversation) -> dict:
    return {
        "id": conversation.id,
        "display_name": conversation.display_name,
        "participant_ids": conversation.participant_ids,
        "last_activity": conversation.last_activity,
        "unread_count": conversation.unread_count,
        "is_group": conversation.is_group,
        "last_message_preview": conversation.last_message_preview,
    }


def attachment_to_dict(attachment: Attachment) -> dict:
    return {
        "id": attachment.id,
        "message_id": attachment.message_id,
        "file_name": attachment.file_name,
        "content_type": attachment.content_type,
        "size": attachment.size,
        "kind": attachment.kind.value,
        "status": attachment.status.value,
        "storage_ref": attachment.storage_ref,
        "failure": attachment.failure.value if attachment.failure else None,
    }


def message_to_dict(message: Message, store: ConversationStore) -> dict:
    """Flatten a message; attachment messages embed their upload state."""
    payload = message.payload
    data = {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "author_id": message.author_id,
        "created_at": message.created_at,
        "kind": payload.kind.value,
        "status": message.status.value,
        "error": message.error,
    }
    if isinstance(payload, TextPayload):
        data["text"] = payload.text
    elif isinstance(payload, PollPayload):
        data["poll_id"] = payload.poll_id
        data["question"] = payload.question
    elif isinstance(payload, AttachmentPayload):
        data["attachment"] = attachment_to_dict(store.get_attachment(payload.attachment_id))
    return data


def poll_to_dict(poll: Poll) -> dict:
    return {
        "id": poll.id,
        "message_id": poll.message_id,
        "conversation_id": poll.conversation_id,
        "question": poll.question,
        "options": [{"text": option.text, "votes": option.votes} for option in poll.options],
        "voters": poll.voters,
        "total_votes": poll.total_votes,
        "closed": poll.closed,
    }


def view_to_dict(state: ViewState) -> dict:
    return {
        "layout_mode": state.layout_mode.value,
        "selected_conversation_id": state.selected_conversation_id,
        "list_visible": state.list_visible,
        "chat_visible": state.chat_visible,
    }


def event_to_dict(event: StateEvent) -> dict:
    return {
        "id": event.id,
        "topic": event.topic.value,
        "source": event.source,
        "payload": event.payload,
        "timestamp": event.timestamp,
    }
