"""Observability API routes."""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query

from ...app import Application
from ...models import Topic
from ..schemas import StateEventResponse, event_to_dict


def create_events_router(app: Application) -> APIRouter:
    """Create events router."""
    router = APIRouter(prefix="/api", tags=["observability"])

    @router.get("/events", response_model=list[StateEventResponse])
    async def get_events(
        after: str | None = Query(None, description="ISO timestamp filter"),
        limit: int = Query(100, ge=1, le=1000),
        topic: str | None = Query(None, description="Filter by topic"),
    ) -> list[dict]:
        """Get journaled state events with optional filters."""
        try:
            # Parse after timestamp
            after_dt = None
            if after:
                try:
                    after_dt = datetime.fromisoformat(after)
                except ValueError:
                    raise HTTPException(
                        status_code=400, detail="Invalid after timestamp format"
                    )

            topics = None
            if topic:
                try:
                    topics = [Topic(topic)]
                except ValueError:
                    raise HTTPException(status_code=400, detail=f"Unknown topic {topic}")

            events = app.event_bus.recent(after=after_dt, topics=topics, limit=limit)
            return [event_to_dict(e) for e in events]

        except HTTPException:
            raise
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
