"""SQLite stand-in for the hosted chat backend."""

import asyncio
import copy
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Callable

import aiosqlite

from ..config import ChatSettings, resolve_db_path
from ..errors import (
    AlreadyVotedError,
    InvalidInputError,
    InvalidOptionError,
    NotFoundError,
    PollClosedError,
    TransportError,
)
from ..logging_config import get_logger
from ..models import (
    AttachmentPayload,
    Conversation,
    FileHandle,
    Message,
    OutgoingMessage,
    PayloadKind,
    Poll,
    PollOption,
    PollPayload,
    PollVote,
    RemoteEvent,
    RemoteEventKind,
    TextPayload,
)
from ..validation import validate_file
from .backend import RemoteHandler, Unsubscribe

logger = get_logger(__name__)

_MESSAGE_SELECT = """
    SELECT m.id, m.conversation_id, m.author_id, m.created_at, m.kind,
           m.text_content, m.poll_id, p.question, m.attachment_id,
           a.file_name, a.content_type, a.size, a.storage_ref
    FROM messages m
    LEFT JOIN polls p ON p.id = m.poll_id
    LEFT JOIN attachments a ON a.id = m.attachment_id
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(ts: datetime) -> str:
    # Fixed-width ISO strings keep lexical and chronological order identical
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _message_from_row(row) -> Message:
    kind = PayloadKind(row[4])
    if kind == PayloadKind.POLL:
        payload = PollPayload(poll_id=row[6], question=row[7] or "")
    elif kind == PayloadKind.ATTACHMENT:
        payload = AttachmentPayload(
            attachment_id=row[8],
            file_name=row[9],
            content_type=row[10],
            size=row[11],
            storage_ref=row[12],
        )
    else:
        payload = TextPayload(text=row[5] or "")

    return Message(
        id=row[0],
        conversation_id=row[1],
        author_id=row[2],
        created_at=_from_db(row[3]),
        payload=payload,
    )


class SqliteBackend:
    """aiosqlite implementation of IChatBackend with an in-process realtime channel."""

    def __init__(
        self,
        db_path: str | Path | None = None,
        settings: ChatSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        if db_path is None:
            self._db_path = resolve_db_path()
        else:
            self._db_path = resolve_db_path(db_path)
        self._settings = settings or ChatSettings()
        self._clock = clock or _utcnow
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._subscribers: list[tuple[str, RemoteHandler]] = []
        self._dispatches: set[asyncio.Task] = set()

    async def init(self) -> None:
        """Open the database and create tables."""
        self._conn = await aiosqlite.connect(self._db_path)

        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, "r", encoding="utf-8") as f:
            schema_sql = f.read()
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

    async def close(self) -> None:
        """Flush pending notifications and close the database connection."""
        await self.drain()
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def drain(self) -> None:
        """Wait until every dispatched realtime notification has been handled."""
        while self._dispatches:
            await asyncio.gather(*list(self._dispatches), return_exceptions=True)

    @asynccontextmanager
    async def _session(self, write: bool = False) -> AsyncIterator[aiosqlite.Connection]:
        """Serialized access to the connection; storage errors become TransportError."""
        if not self._conn:
            raise RuntimeError("Backend not initialized")

        conn = self._conn
        async with self._lock:
            try:
                yield conn
                if write:
                    await conn.commit()
            except aiosqlite.Error as e:
                if write:
                    await conn.rollback()
                raise TransportError(f"Backend storage error: {e}") from e
            except BaseException:
                if write:
                    await conn.rollback()
                raise

    # Realtime channel
    def subscribe(self, participant_id: str, handler: RemoteHandler) -> Unsubscribe:
        """Receive realtime events for the participant's conversations."""
        entry = (participant_id, handler)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def _dispatch(self, participants: set[str], event: RemoteEvent) -> None:
        """Fan an event out to subscribed participants, outside the caller's flow."""
        for participant_id, handler in list(self._subscribers):
            if participant_id not in participants:
                continue
            task = asyncio.create_task(self._deliver(handler, copy.deepcopy(event)))
            self._dispatches.add(task)
            task.add_done_callback(self._dispatches.discard)

    async def _deliver(self, handler: RemoteHandler, event: RemoteEvent) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.error(
                "Error in realtime handler for %s: %s",
                event.kind.value,
                e,
                exc_info=True,
            )

    # Conversations
    async def create_conversation(
        self,
        participant_ids: list[str],
        display_name: str,
        is_group: bool = False,
    ) -> Conversation:
        """Create a conversation among the given participants."""
        participants = list(dict.fromkeys(participant_ids))
        if len(participants) < 2:
            raise InvalidInputError("A conversation needs at least two participants")
        if not display_name.strip():
            raise InvalidInputError("Conversation name must not be empty")

        conversation_id = str(uuid.uuid4())
        now = self._clock()

        async with self._session(write=True) as conn:
            await conn.execute(
                """
                INSERT INTO conversations (id, display_name, is_group, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation_id, display_name.strip(), int(is_group), _to_db(now), _to_db(now)),
            )
            await conn.executemany(
                """
                INSERT INTO conversation_participants
                (conversation_id, profile_id, position, joined_at)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (conversation_id, profile_id, position, _to_db(now))
                    for position, profile_id in enumerate(participants)
                ],
            )

        logger.info(
            "Conversation created",
            extra={"conversation_id": conversation_id, "context": {"participants": participants}},
        )
        return Conversation(
            id=conversation_id,
            display_name=display_name.strip(),
            last_activity=now,
            participant_ids=participants,
            is_group=is_group,
        )

    async def fetch_conversations(self, participant_id: str) -> list[Conversation]:
        """Conversations the participant belongs to."""
        async with self._session() as conn:
            cursor = await conn.execute(
                """
                SELECT c.id, c.display_name, c.is_group, c.updated_at
                FROM conversations c
                JOIN conversation_participants p ON p.conversation_id = c.id
                WHERE p.profile_id = ?
                ORDER BY c.id
                """,
                (participant_id,),
            )
            rows = await cursor.fetchall()

            conversations = []
            for row in rows:
                participants = await self._participants(conn, row[0])
                last_message = await self._last_message(conn, row[0])
                conversations.append(
                    Conversation(
                        id=row[0],
                        display_name=row[1],
                        is_group=bool(row[2]),
                        last_activity=(
                            last_message.created_at if last_message else _from_db(row[3])
                        ),
                        participant_ids=participants,
                        last_message_preview=(
                            last_message.payload.preview() if last_message else None
                        ),
                    )
                )

        return conversations

    async def _participants(self, conn: aiosqlite.Connection, conversation_id: str) -> list[str]:
        cursor = await conn.execute(
            """
            SELECT profile_id FROM conversation_participants
            WHERE conversation_id = ?
            ORDER BY position
            """,
            (conversation_id,),
        )
        return [row[0] for row in await cursor.fetchall()]

    async def _last_message(
        self, conn: aiosqlite.Connection, conversation_id: str
    ) -> Message | None:
        cursor = await conn.execute(
            _MESSAGE_SELECT
            + " WHERE m.conversation_id = ? ORDER BY m.created_at DESC, m.id DESC LIMIT 1",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        return _message_from_row(row) if row else None

    async def _require_conversation(self, conn: aiosqlite.Connection, conversation_id: str) -> None:
        cursor = await conn.execute(
            "SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)
        )
        if not await cursor.fetchone():
            raise NotFoundError(f"Conversation {conversation_id} not found")

    # Messages
    async def fetch_messages(self, conversation_id: str) -> list[Message]:
        """Canonical messages of a conversation, ordered by (created_at, id)."""
        async with self._session() as conn:
            await self._require_conversation(conn, conversation_id)
            cursor = await conn.execute(
                _MESSAGE_SELECT
                + " WHERE m.conversation_id = ? ORDER BY m.created_at ASC, m.id ASC",
                (conversation_id,),
            )
            rows = await cursor.fetchall()

        return [_message_from_row(row) for row in rows]

    async def _get_message(self, conn: aiosqlite.Connection, message_id: str) -> Message | None:
        cursor = await conn.execute(_MESSAGE_SELECT + " WHERE m.id = ?", (message_id,))
        row = await cursor.fetchone()
        return _message_from_row(row) if row else None

    async def post_message(self, draft: OutgoingMessage) -> Message:
        """Persist a message (idempotent on draft.id) and return the canonical copy."""
        poll: Poll | None = None

        async with self._session(write=True) as conn:
            await self._require_conversation(conn, draft.conversation_id)
            participants = await self._participants(conn, draft.conversation_id)
            if draft.author_id not in participants:
                raise InvalidInputError(
                    f"{draft.author_id} is not a participant of {draft.conversation_id}"
                )

            existing = await self._get_message(conn, draft.id)
            if existing:
                # Retried post of an already stored message
                return existing

            created_at = self._clock()
            payload = draft.payload
            await conn.execute(
                """
                INSERT INTO messages
                (id, conversation_id, author_id, created_at, kind, text_content, poll_id, attachment_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    draft.id,
                    draft.conversation_id,
                    draft.author_id,
                    _to_db(created_at),
                    payload.kind.value,
                    payload.text if isinstance(payload, TextPayload) else None,
                    payload.poll_id if isinstance(payload, PollPayload) else None,
                    payload.attachment_id if isinstance(payload, AttachmentPayload) else None,
                ),
            )

            if isinstance(payload, PollPayload):
                poll = await self._insert_poll(conn, draft, payload)
            elif isinstance(payload, AttachmentPayload):
                await self._insert_attachment(conn, draft, payload)

            await conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (_to_db(created_at), draft.conversation_id),
            )
            message = await self._get_message(conn, draft.id)

        self._dispatch(
            set(participants),
            RemoteEvent(
                kind=RemoteEventKind.MESSAGE_CREATED,
                conversation_id=draft.conversation_id,
                message=message,
                poll=poll,
            ),
        )
        return message

    async def _insert_poll(
        self, conn: aiosqlite.Connection, draft: OutgoingMessage, payload: PollPayload
    ) -> Poll:
        if len(draft.poll_options) < 2:
            raise InvalidInputError("A poll needs at least two options")

        await conn.execute(
            """
            INSERT INTO polls (id, message_id, conversation_id, question, closed)
            VALUES (?, ?, ?, ?, 0)
            """,
            (payload.poll_id, draft.id, draft.conversation_id, payload.question),
        )
        await conn.executemany(
            "INSERT INTO poll_options (poll_id, position, text) VALUES (?, ?, ?)",
            [
                (payload.poll_id, position, text)
                for position, text in enumerate(draft.poll_options)
            ],
        )
        return Poll(
            id=payload.poll_id,
            message_id=draft.id,
            conversation_id=draft.conversation_id,
            question=payload.question,
            options=[PollOption(text=text) for text in draft.poll_options],
        )

    async def _insert_attachment(
        self, conn: aiosqlite.Connection, draft: OutgoingMessage, payload: AttachmentPayload
    ) -> None:
        if not payload.storage_ref:
            raise InvalidInputError("Attachment has not been uploaded")
        cursor = await conn.execute(
            "SELECT 1 FROM files WHERE storage_ref = ?", (payload.storage_ref,)
        )
        if not await cursor.fetchone():
            raise NotFoundError(f"Stored file {payload.storage_ref} not found")

        await conn.execute(
            """
            INSERT INTO attachments (id, message_id, storage_ref, file_name, content_type, size)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                payload.attachment_id,
                draft.id,
                payload.storage_ref,
                payload.file_name,
                payload.content_type,
                payload.size,
            ),
        )

    # Polls
    async def fetch_polls(self, conversation_id: str) -> list[Poll]:
        """Polls of a conversation with their recorded votes."""
        async with self._session() as conn:
            await self._require_conversation(conn, conversation_id)
            cursor = await conn.execute(
                """
                SELECT id, message_id, question, closed
                FROM polls
                WHERE conversation_id = ?
                """,
                (conversation_id,),
            )
            rows = await cursor.fetchall()

            polls = []
            for row in rows:
                opt_cursor = await conn.execute(
                    "SELECT text FROM poll_options WHERE poll_id = ? ORDER BY position",
                    (row[0],),
                )
                options = [PollOption(text=opt[0]) for opt in await opt_cursor.fetchall()]

                vote_cursor = await conn.execute(
                    "SELECT voter_id, option_index FROM poll_votes WHERE poll_id = ?",
                    (row[0],),
                )
                voters = {vote[0]: vote[1] for vote in await vote_cursor.fetchall()}
                for option_index in voters.values():
                    options[option_index].votes += 1

                polls.append(
                    Poll(
                        id=row[0],
                        message_id=row[1],
                        conversation_id=conversation_id,
                        question=row[2],
                        options=options,
                        voters=voters,
                        closed=bool(row[3]),
                    )
                )

        return polls

    async def post_vote(self, poll_id: str, voter_id: str, option_index: int) -> None:
        """Record a vote; raises AlreadyVoted/PollClosed/InvalidOption/NotFound."""
        async with self._session(write=True) as conn:
            cursor = await conn.execute(
                "SELECT conversation_id, closed FROM polls WHERE id = ?", (poll_id,)
            )
            row = await cursor.fetchone()
            if not row:
                raise NotFoundError(f"Poll {poll_id} not found")
            conversation_id = row[0]
            if row[1]:
                raise PollClosedError(f"Poll {poll_id} is closed")

            cursor = await conn.execute(
                "SELECT 1 FROM poll_votes WHERE poll_id = ? AND voter_id = ?",
                (poll_id, voter_id),
            )
            if await cursor.fetchone():
                raise AlreadyVotedError(f"{voter_id} already voted on poll {poll_id}")

            cursor = await conn.execute(
                "SELECT COUNT(*) FROM poll_options WHERE poll_id = ?", (poll_id,)
            )
            option_count = (await cursor.fetchone())[0]
            if not 0 <= option_index < option_count:
                raise InvalidOptionError(
                    f"Option {option_index} out of range for poll {poll_id}"
                )

            await conn.execute(
                """
                INSERT INTO poll_votes (poll_id, voter_id, option_index, voted_at)
                VALUES (?, ?, ?, ?)
                """,
                (poll_id, voter_id, option_index, _to_db(self._clock())),
            )
            participants = await self._participants(conn, conversation_id)

        self._dispatch(
            set(participants),
            RemoteEvent(
                kind=RemoteEventKind.VOTE_RECORDED,
                conversation_id=conversation_id,
                vote=PollVote(poll_id=poll_id, voter_id=voter_id, option_index=option_index),
                poll_id=poll_id,
            ),
        )

    async def close_poll(self, poll_id: str) -> None:
        """Stop accepting votes on a poll."""
        async with self._session(write=True) as conn:
            cursor = await conn.execute(
                "SELECT conversation_id, closed FROM polls WHERE id = ?", (poll_id,)
            )
            row = await cursor.fetchone()
            if not row:
                raise NotFoundError(f"Poll {poll_id} not found")
            if row[1]:
                return
            await conn.execute("UPDATE polls SET closed = 1 WHERE id = ?", (poll_id,))
            participants = await self._participants(conn, row[0])

        self._dispatch(
            set(participants),
            RemoteEvent(
                kind=RemoteEventKind.POLL_CLOSED,
                conversation_id=row[0],
                poll_id=poll_id,
            ),
        )

    # Files
    async def store_file(self, file_handle: FileHandle) -> str:
        """Store a file and return its storage reference."""
        validate_file(file_handle, self._settings)

        now = self._clock()
        storage_ref = (
            f"chat-attachments/{int(now.timestamp() * 1000)}_{uuid.uuid4().hex}/"
            f"{file_handle.name}"
        )
        async with self._session(write=True) as conn:
            await conn.execute(
                """
                INSERT INTO files (storage_ref, file_name, content_type, size, data, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    storage_ref,
                    file_handle.name,
                    file_handle.content_type,
                    file_handle.size,
                    file_handle.data,
                    _to_db(now),
                ),
            )
        return storage_ref

    async def read_file(self, storage_ref: str) -> bytes:
        """Read back a stored file."""
        async with self._session() as conn:
            cursor = await conn.execute(
                "SELECT data FROM files WHERE storage_ref = ?", (storage_ref,)
            )
            row = await cursor.fetchone()
        if not row:
            raise NotFoundError(f"Stored file {storage_ref} not found")
        return bytes(row[0])

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        tables = [
            "poll_votes",
            "poll_options",
            "polls",
            "attachments",
            "messages",
            "files",
            "conversation_participants",
            "conversations",
        ]

        async with self._session(write=True) as conn:
            for table in tables:
                await conn.execute(f"DELETE FROM {table}")
