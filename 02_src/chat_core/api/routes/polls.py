"""Poll API routes."""

from fastapi import APIRouter, HTTPException

from ...app import Application
from ...errors import ChatError
from ..errors import http_error
from ..schemas import (
    CreatePollRequest,
    MessageResponse,
    PollResponse,
    VoteRequest,
    message_to_dict,
    poll_to_dict,
)


def create_polls_router(app: Application) -> APIRouter:
    """Create polls router."""
    router = APIRouter(prefix="/api", tags=["polls"])

    @router.post(
        "/conversations/{conversation_id}/polls",
        response_model=MessageResponse,
        status_code=201,
    )
    async def create_poll(conversation_id: str, request: CreatePollRequest) -> dict:
        """Create a poll; the hosting message is returned pending."""
        try:
            message = await app.store.create_poll(
                conversation_id, request.options, request.question
            )
            return message_to_dict(message, app.store)
        except ChatError as e:
            raise http_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/polls/{poll_id}", response_model=PollResponse)
    async def get_poll(poll_id: str) -> dict:
        try:
            return poll_to_dict(app.store.get_poll(poll_id))
        except ChatError as e:
            raise http_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/polls/{poll_id}/votes", response_model=PollResponse)
    async def vote(poll_id: str, request: VoteRequest) -> dict:
        """Record one vote for the voter."""
        try:
            poll = await app.store.vote_on_poll(
                poll_id,
                request.voter_id or app.store.user_id,
                request.option_index,
            )
            return poll_to_dict(poll)
        except ChatError as e:
            raise http_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/polls/{poll_id}/close", response_model=PollResponse)
    async def close_poll(poll_id: str) -> dict:
        try:
            return poll_to_dict(await app.store.close_poll(poll_id))
        except ChatError as e:
            raise http_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
