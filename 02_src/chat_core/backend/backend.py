"""Contract of the persistence/transport collaborator."""

from typing import Awaitable, Callable, Protocol

from ..models import (
    Conversation,
    FileHandle,
    Message,
    OutgoingMessage,
    Poll,
    RemoteEvent,
)

RemoteHandler = Callable[[RemoteEvent], Awaitable[None]]
Unsubscribe = Callable[[], None]


class IChatBackend(Protocol):
    """Hosted relational backend as seen by the messaging core.

    Every method may raise TransportError on network/backend failure.
    """

    async def create_conversation(
        self,
        participant_ids: list[str],
        display_name: str,
        is_group: bool = False,
    ) -> Conversation:
        """Create a conversation among the given participants."""
        ...

    async def fetch_conversations(self, participant_id: str) -> list[Conversation]:
        """Conversations the participant belongs to."""
        ...

    async def fetch_messages(self, conversation_id: str) -> list[Message]:
        """Canonical messages of a conversation, ordered by (created_at, id)."""
        ...

    async def fetch_polls(self, conversation_id: str) -> list[Poll]:
        """Polls of a conversation with their recorded votes."""
        ...

    async def post_message(self, draft: OutgoingMessage) -> Message:
        """Persist a message (idempotent on draft.id) and return the canonical copy."""
        ...

    async def post_vote(self, poll_id: str, voter_id: str, option_index: int) -> None:
        """Record a vote; raises AlreadyVoted/PollClosed/InvalidOption/NotFound."""
        ...

    async def close_poll(self, poll_id: str) -> None:
        """Stop accepting votes on a poll."""
        ...

    async def store_file(self, file_handle: FileHandle) -> str:
        """Store a file and return its storage reference."""
        ...

    async def read_file(self, storage_ref: str) -> bytes:
        """Read back a stored file."""
        ...

    def subscribe(self, participant_id: str, handler: RemoteHandler) -> Unsubscribe:
        """Receive realtime events for the participant's conversations."""
        ...
