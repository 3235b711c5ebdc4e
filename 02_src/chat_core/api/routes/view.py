"""View-state API routes."""

from fastapi import APIRouter, HTTPException

from ...app import Application
from ...errors import ChatError
from ..errors import http_error
from ..schemas import (
    SelectConversationRequest,
    ViewportRequest,
    ViewStateResponse,
    view_to_dict,
)


def create_view_router(app: Application) -> APIRouter:
    """Create view router."""
    router = APIRouter(prefix="/api/view", tags=["view"])

    @router.get("", response_model=ViewStateResponse)
    async def get_view() -> dict:
        return view_to_dict(app.coordinator.state)

    @router.post("/viewport", response_model=ViewStateResponse)
    async def set_viewport(request: ViewportRequest) -> dict:
        """Report the client's viewport width."""
        try:
            return view_to_dict(await app.coordinator.set_viewport_width(request.width))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/select", response_model=ViewStateResponse)
    async def select_conversation(request: SelectConversationRequest) -> dict:
        """Open a conversation in the chat pane."""
        try:
            app.store.get_conversation(request.conversation_id)
            state = await app.coordinator.select_conversation(request.conversation_id)
            return view_to_dict(state)
        except ChatError as e:
            raise http_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/back", response_model=ViewStateResponse)
    async def go_back() -> dict:
        try:
            return view_to_dict(await app.coordinator.go_back())
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
