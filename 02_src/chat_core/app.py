"""Application bootstrap and lifecycle management."""

import os
from typing import Protocol

from .attachments import AttachmentUploader
from .backend import SqliteBackend
from .config import ChatSettings, resolve_db_path
from .errors import NotFoundError
from .event_bus import EventBus
from .logging_config import get_logger
from .models import StateEvent, Topic
from .polls import PollEngine
from .store import ConversationStore
from .view import ViewCoordinator

logger = get_logger(__name__)

DEFAULT_VIEWPORT_WIDTH = 1280


class IApplication(Protocol):
    """Bootstrap and lifecycle."""

    async def start(self) -> None:
        """Initialize components in dependency order."""
        ...

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        ...

    async def reset(self) -> None:
        """Reset data between test runs."""
        ...


class Application:
    """Main application bootstrap."""

    def __init__(
        self,
        db_path: str | None = None,
        settings: ChatSettings | None = None,
        viewport_width: int = DEFAULT_VIEWPORT_WIDTH,
    ):
        env_db_path = os.getenv("DATABASE_URL") if db_path is None else db_path
        self._db_path = resolve_db_path(env_db_path)
        self._settings = settings or ChatSettings.from_env()
        self._viewport_width = viewport_width

        # Components (will be initialized in start())
        self._backend: SqliteBackend | None = None
        self._event_bus: EventBus | None = None
        self._coordinator: ViewCoordinator | None = None
        self._uploader: AttachmentUploader | None = None
        self._store: ConversationStore | None = None

    async def start(self) -> None:
        """Initialize components in dependency order."""
        logger.info("Starting application")

        # 1. Backend (no dependencies)
        self._backend = SqliteBackend(self._db_path, self._settings)
        await self._backend.init()
        logger.info("Backend initialized")

        # 2. EventBus (no dependencies)
        self._event_bus = EventBus()

        # 3. ViewCoordinator (depends on EventBus)
        self._coordinator = ViewCoordinator(
            self._event_bus,
            viewport_width=self._viewport_width,
            breakpoint=self._settings.mobile_breakpoint,
        )

        # 4. AttachmentUploader (depends on Backend)
        self._uploader = AttachmentUploader(self._backend, self._settings)

        # 5. ConversationStore (depends on all of the above)
        self._store = ConversationStore(
            backend=self._backend,
            event_bus=self._event_bus,
            uploader=self._uploader,
            settings=self._settings,
            poll_engine=PollEngine(self._settings.max_poll_options),
            is_chat_visible=self._coordinator.is_showing,
        )
        await self._store.start()
        self._event_bus.subscribe(Topic.VIEW_CHANGED, self._on_view_changed)
        logger.info("All components initialized successfully")

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        if self._event_bus:
            self._event_bus.unsubscribe(Topic.VIEW_CHANGED, self._on_view_changed)
        if self._store:
            await self._store.stop()
        if self._backend:
            await self._backend.close()
            logger.info("Backend closed")

    async def reset(self) -> None:
        """Reset data between test runs."""
        # 1. Settle deliveries and the notifications they caused
        if self._store:
            await self._store.drain()
        if self._backend:
            await self._backend.drain()

        # 2. Clear backend, then local state
        if self._backend:
            await self._backend.clear()
            logger.info("Backend cleared")
        if self._store:
            await self._store.reset()

        # 3. Back to an empty selection
        if self._coordinator:
            await self._coordinator.reset()
        logger.info("Reset complete")

    async def _on_view_changed(self, event: StateEvent) -> None:
        """Opening a conversation clears its unread counter."""
        conversation_id = event.payload.get("selected_conversation_id")
        if not conversation_id or not self.coordinator.is_showing(conversation_id):
            return
        try:
            await self.store.mark_read(conversation_id)
        except NotFoundError:
            logger.warning(
                "Selected conversation is unknown",
                extra={"conversation_id": conversation_id},
            )

    @property
    def settings(self) -> ChatSettings:
        return self._settings

    @property
    def backend(self) -> SqliteBackend:
        """Get backend instance."""
        if not self._backend:
            raise RuntimeError("Application not started")
        return self._backend

    @property
    def event_bus(self) -> EventBus:
        """Get event bus instance."""
        if not self._event_bus:
            raise RuntimeError("Application not started")
        return self._event_bus

    @property
    def store(self) -> ConversationStore:
        """Get conversation store instance."""
        if not self._store:
            raise RuntimeError("Application not started")
        return self._store

    @property
    def coordinator(self) -> ViewCoordinator:
        """Get view coordinator instance."""
        if not self._coordinator:
            raise RuntimeError("Application not started")
        return self._coordinator
