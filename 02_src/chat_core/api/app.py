"""FastAPI application setup."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..app import Application
from .routes import attachments, control, conversations, events, polls, view


# Global application instance
_app: Application | None = None


def get_app() -> Application:
    """Get the global application instance."""
    global _app
    if not _app:
        _app = Application()
    return _app


def create_fastapi_app(application: Application | None = None) -> FastAPI:
    """Create and configure FastAPI application."""
    application = application or get_app()

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        """Manage application lifespan."""
        # Startup
        await application.start()
        sim_instance = control.get_sim_instance()
        if sim_instance and hasattr(sim_instance, "set_backend"):
            sim_instance.set_backend(
                application.backend, application.settings.session_user_id
            )
        yield
        # Shutdown
        if sim_instance:
            await sim_instance.stop()
        await application.stop()

    fastapi_app = FastAPI(
        title="School Chat API",
        description="Messaging core of the music school dashboard",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Enable CORS
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:5174"],  # Vite default
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    fastapi_app.include_router(conversations.create_conversations_router(application))
    fastapi_app.include_router(polls.create_polls_router(application))
    fastapi_app.include_router(attachments.create_attachments_router(application))
    fastapi_app.include_router(view.create_view_router(application))
    fastapi_app.include_router(events.create_events_router(application))
    fastapi_app.include_router(control.create_control_router(application))

    return fastapi_app
