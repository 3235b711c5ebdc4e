"""Pytest configuration and fixtures."""

import sys
import uuid
from pathlib import Path

import pytest
import pytest_asyncio

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

SESSION_USER = "director"


@pytest.fixture
def settings():
    """Small limits so tests can hit them cheaply."""
    from chat_core.config import ChatSettings

    return ChatSettings(
        session_user_id=SESSION_USER,
        max_upload_bytes=1024,
        max_concurrent_uploads=2,
    )


@pytest_asyncio.fixture
async def backend(settings):
    """Create in-memory backend for testing."""
    from chat_core.backend import SqliteBackend

    be = SqliteBackend(":memory:", settings)
    await be.init()
    yield be
    await be.close()


@pytest.fixture
def event_bus():
    """Create EventBus."""
    from chat_core.event_bus import EventBus

    return EventBus()


@pytest.fixture
def recorded_events(event_bus):
    """Every StateEvent published on the bus, in order."""
    from chat_core.models import Topic

    events = []

    async def record(event):
        events.append(event)

    for topic in Topic:
        event_bus.subscribe(topic, record)
    return events


@pytest.fixture
def coordinator(event_bus):
    """ViewCoordinator starting in desktop layout."""
    from chat_core.view import ViewCoordinator

    return ViewCoordinator(event_bus, viewport_width=1280)


@pytest.fixture
def uploader(backend, settings):
    from chat_core.attachments import AttachmentUploader

    return AttachmentUploader(backend, settings)


@pytest_asyncio.fixture
async def conversation(backend):
    """Direct conversation between the session user and a teacher."""
    return await backend.create_conversation(
        [SESSION_USER, "teacher_anna"], "Anna Petrova"
    )


@pytest_asyncio.fixture
async def group(backend):
    """Group conversation with two teachers and a student."""
    return await backend.create_conversation(
        [SESSION_USER, "teacher_anna", "teacher_mark", "student_lena"],
        "Spring recital",
        is_group=True,
    )


@pytest_asyncio.fixture
async def store(backend, event_bus, uploader, coordinator, settings, conversation, group):
    """Started ConversationStore that already knows both conversations."""
    from chat_core.store import ConversationStore

    st = ConversationStore(
        backend=backend,
        event_bus=event_bus,
        uploader=uploader,
        settings=settings,
        is_chat_visible=coordinator.is_showing,
    )
    await st.start()
    yield st
    await st.stop()


@pytest.fixture
def settle(backend, store):
    """Wait until deliveries, uploads and realtime notifications are done."""

    async def _settle():
        for _ in range(3):
            await store.drain()
            await backend.drain()

    return _settle


@pytest.fixture
def post_remote(backend):
    """Post a text message as another participant, straight into the backend."""
    from chat_core.models import OutgoingMessage, TextPayload

    async def _post(conversation_id, author_id, text):
        return await backend.post_message(
            OutgoingMessage(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                author_id=author_id,
                payload=TextPayload(text=text),
            )
        )

    return _post


@pytest.fixture
def file_handle():
    """Create a small accepted file."""
    from chat_core.models import FileHandle

    return FileHandle(name="scales.pdf", content_type="application/pdf", data=b"%PDF-1.4 scales")
