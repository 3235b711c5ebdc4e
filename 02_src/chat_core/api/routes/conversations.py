"""Conversation and message API routes."""

from fastapi import APIRouter, HTTPException, Query

from ...app import Application
from ...errors import ChatError
from ..errors import http_error
from ..schemas import (
    ConversationResponse,
    CreateConversationRequest,
    MessageResponse,
    SendMessageRequest,
    StatusResponse,
    conversation_to_dict,
    message_to_dict,
)


def create_conversations_router(app: Application) -> APIRouter:
    """Create conversations router."""
    router = APIRouter(prefix="/api", tags=["conversations"])

    @router.get("/conversations", response_model=list[ConversationResponse])
    async def list_conversations(
        search: str | None = Query(None, description="Filter by name or last message"),
    ) -> list[dict]:
        """Conversations by last activity, newest first."""
        try:
            return [
                conversation_to_dict(c) for c in app.store.list_conversations(search)
            ]
        except ChatError as e:
            raise http_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post(
        "/conversations", response_model=ConversationResponse, status_code=201
    )
    async def start_conversation(request: CreateConversationRequest) -> dict:
        """Start a conversation between the session user and the given participants."""
        try:
            conversation = await app.store.start_conversation(
                request.participant_ids, request.display_name, request.is_group
            )
            return conversation_to_dict(conversation)
        except ChatError as e:
            raise http_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get(
        "/conversations/{conversation_id}/messages",
        response_model=list[MessageResponse],
    )
    async def load_messages(conversation_id: str) -> list[dict]:
        """Ordered messages of a conversation."""
        try:
            messages = await app.store.load_messages(conversation_id)
            return [message_to_dict(m, app.store) for m in messages]
        except ChatError as e:
            raise http_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post(
        "/conversations/{conversation_id}/messages",
        response_model=MessageResponse,
        status_code=201,
    )
    async def send_message(conversation_id: str, request: SendMessageRequest) -> dict:
        """Send a text message; it is returned pending and delivered in the background."""
        try:
            message = await app.store.send_message(conversation_id, request.text)
            return message_to_dict(message, app.store)
        except ChatError as e:
            raise http_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post(
        "/messages/{message_id}/resubmit",
        response_model=MessageResponse,
        status_code=201,
    )
    async def resubmit_message(message_id: str) -> dict:
        """Retry a failed message as a new pending entry."""
        try:
            message = await app.store.resubmit(message_id)
            return message_to_dict(message, app.store)
        except ChatError as e:
            raise http_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.delete("/messages/{message_id}", response_model=StatusResponse)
    async def discard_message(message_id: str) -> dict:
        """Discard a failed message or cancel a running upload."""
        try:
            await app.store.discard(message_id)
            return {"status": "ok"}
        except ChatError as e:
            raise http_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
