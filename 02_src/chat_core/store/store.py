"""ConversationStore implementation."""

import asyncio
import copy
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Coroutine, Protocol

from ..attachments import IAttachmentUploader, UploadHandle
from ..backend import IChatBackend, Unsubscribe
from ..config import ChatSettings
from ..errors import (
    ChatError,
    InvalidInputError,
    InvariantViolation,
    NotFoundError,
)
from ..event_bus import IEventBus
from ..logging_config import get_logger
from ..models import (
    Attachment,
    AttachmentPayload,
    Conversation,
    DeliveryStatus,
    FileHandle,
    Message,
    MessagePayload,
    OutgoingMessage,
    Poll,
    PollPayload,
    RemoteEvent,
    RemoteEventKind,
    TextPayload,
    Topic,
    UploadStatus,
)
from ..polls import PollEngine
from .sequence import MessageSequence

logger = get_logger(__name__)

SOURCE = "conversation_store"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IConversationStore(Protocol):
    """Single write path for conversations, messages, polls and attachments."""

    def list_conversations(self, search: str | None = None) -> list[Conversation]:
        """Conversations by last activity, newest first."""
        ...

    async def load_messages(self, conversation_id: str) -> list[Message]:
        """Ordered messages of a conversation."""
        ...

    async def send_message(self, conversation_id: str, text: str) -> Message:
        """Append a pending text message and deliver it in the background."""
        ...

    async def create_poll(
        self, conversation_id: str, options: list[str], question: str = ""
    ) -> Message:
        """Create a poll together with its hosting message."""
        ...

    async def vote_on_poll(self, poll_id: str, voter_id: str, option_index: int) -> Poll:
        """Record exactly one vote for the voter."""
        ...

    async def attach_file(self, conversation_id: str, file_handle: FileHandle) -> Message:
        """Upload a file and post it as an attachment message."""
        ...


class ConversationStore:
    """Authoritative in-memory projection of the session's conversations.

    Local writes are applied optimistically and converge once the backend
    acknowledges or rejects them. Remote events from the backend's realtime
    channel are merged by identifier, falling back to the reconciliation
    fingerprint for pending entries.
    """

    def __init__(
        self,
        backend: IChatBackend,
        event_bus: IEventBus,
        uploader: IAttachmentUploader,
        settings: ChatSettings | None = None,
        poll_engine: PollEngine | None = None,
        is_chat_visible: Callable[[str], bool] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._backend = backend
        self._bus = event_bus
        self._uploader = uploader
        self._settings = settings or ChatSettings()
        self._user_id = self._settings.session_user_id
        self._engine = poll_engine or PollEngine(self._settings.max_poll_options)
        self._is_chat_visible = is_chat_visible or (lambda _conversation_id: False)
        self._clock = clock or _utcnow

        self._conversations: dict[str, Conversation] = {}
        self._sequences: dict[str, MessageSequence] = {}
        self._loaded: set[str] = set()  # conversations fetched from the backend
        self._polls: dict[str, Poll] = {}
        self._attachments: dict[str, Attachment] = {}
        self._uploads: dict[str, UploadHandle] = {}  # message_id -> running upload
        self._files: dict[str, FileHandle] = {}  # message_id -> file, kept for resubmit
        # pending_id -> pending entry replaced by a fingerprint match, until acknowledged
        self._provisional: dict[str, Message] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe: Unsubscribe | None = None
        self._running = False

    @property
    def user_id(self) -> str:
        return self._user_id

    # Lifecycle
    async def start(self) -> None:
        """Subscribe to the backend's realtime channel and load conversations."""
        logger.info("Starting ConversationStore for %s", self._user_id)
        self._unsubscribe = self._backend.subscribe(
            self._user_id, self._handle_remote_event
        )
        self._running = True
        await self.sync()

    async def stop(self) -> None:
        """Abort uploads, let deliveries settle and detach from the backend."""
        logger.info("Stopping ConversationStore")
        self._running = False
        await self._uploader.cancel_all()
        await self.drain()
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    async def reset(self) -> None:
        """Forget all local state."""
        await self._uploader.cancel_all()
        await self.drain()
        self._conversations.clear()
        self._sequences.clear()
        self._loaded.clear()
        self._polls.clear()
        self._attachments.clear()
        self._uploads.clear()
        self._files.clear()
        self._provisional.clear()
        await self._publish(Topic.CONVERSATIONS_CHANGED, {"count": 0})

    async def drain(self) -> None:
        """Wait for in-flight deliveries and uploads to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Conversations
    async def sync(self) -> list[Conversation]:
        """Refresh conversations from the backend, keeping local unread counters."""
        fetched = await self._backend.fetch_conversations(self._user_id)

        for remote in fetched:
            local = self._conversations.get(remote.id)
            if local is None:
                self._conversations[remote.id] = remote
                self._sequence(remote.id)
                continue

            local.display_name = remote.display_name
            local.participant_ids = remote.participant_ids
            local.is_group = remote.is_group
            if remote.last_activity > local.last_activity:
                local.last_activity = remote.last_activity
                local.last_message_preview = remote.last_message_preview

        await self._publish(
            Topic.CONVERSATIONS_CHANGED, {"count": len(self._conversations)}
        )
        return self.list_conversations()

    def list_conversations(self, search: str | None = None) -> list[Conversation]:
        """Conversations by last activity, newest first; ties by identifier."""
        conversations = list(self._conversations.values())
        if search and search.strip():
            conversations = [c for c in conversations if c.matches(search.strip())]

        conversations.sort(key=lambda c: c.id)
        conversations.sort(key=lambda c: c.last_activity, reverse=True)
        return [copy.deepcopy(c) for c in conversations]

    def get_conversation(self, conversation_id: str) -> Conversation:
        return copy.deepcopy(self._require_conversation(conversation_id))

    async def start_conversation(
        self,
        participant_ids: list[str],
        display_name: str,
        is_group: bool = False,
    ) -> Conversation:
        """Ask the backend for a new conversation that includes the session user."""
        conversation = await self._backend.create_conversation(
            [self._user_id, *participant_ids], display_name, is_group
        )
        await self.sync()
        return self.get_conversation(conversation.id)

    async def mark_read(self, conversation_id: str) -> None:
        conversation = self._require_conversation(conversation_id)
        if conversation.unread_count:
            conversation.unread_count = 0
            await self._publish(
                Topic.CONVERSATIONS_CHANGED, {"conversation_id": conversation_id}
            )

    # Messages
    async def load_messages(self, conversation_id: str) -> list[Message]:
        """Ordered messages of a conversation; fetched from the backend on first use."""
        self._require_conversation(conversation_id)

        if conversation_id not in self._loaded:
            messages = await self._backend.fetch_messages(conversation_id)
            polls = await self._backend.fetch_polls(conversation_id)
            for poll in polls:
                self._merge_poll(poll)
            for message in messages:
                self._merge_canonical(message, count_unread=False)
            self._loaded.add(conversation_id)

        sequence = self._sequence(conversation_id)
        if not sequence.is_ordered():
            raise InvariantViolation(f"Messages of {conversation_id} are out of order")
        return [replace(message) for message in sequence.get_all()]

    def get_message(self, message_id: str) -> Message:
        _, message = self._find_message(message_id)
        return replace(message)

    async def send_message(self, conversation_id: str, text: str) -> Message:
        """Append a pending text message and deliver it in the background."""
        self._require_conversation(conversation_id)
        cleaned = text.strip()
        if not cleaned:
            raise InvalidInputError("Message text must not be empty")

        message = self._add_local_message(conversation_id, TextPayload(text=cleaned))
        snapshot = replace(message)
        self._spawn(self._deliver(self._draft(message)))
        await self._publish_messages_changed(conversation_id, message.id)
        return snapshot

    async def resubmit(self, message_id: str) -> Message:
        """New pending attempt for a failed message; the failed entry stays."""
        conversation_id, message = self._find_message(message_id)
        if message.status != DeliveryStatus.FAILED:
            raise InvalidInputError(
                f"Only failed messages can be resubmitted, {message_id} is {message.status.value}"
            )

        payload = message.payload
        if isinstance(payload, PollPayload):
            poll = self._require_poll(payload.poll_id)
            return await self.create_poll(
                conversation_id,
                [option.text for option in poll.options],
                poll.question,
            )
        if isinstance(payload, AttachmentPayload):
            file_handle = self._files.get(message_id)
            if file_handle is None:
                raise InvalidInputError(f"File of {message_id} is no longer available")
            return await self.attach_file(conversation_id, file_handle)
        return await self.send_message(conversation_id, payload.text)

    async def discard(self, message_id: str) -> None:
        """Drop a failed message, or cancel an attachment still uploading."""
        conversation_id, message = self._find_message(message_id)
        handle = self._uploads.get(message_id)

        if handle is not None and not handle.done:
            # Remove first so the settling upload finds nothing to resurrect
            self._sequence(conversation_id).remove(message_id)
            handle.cancel()
            await handle.wait()
        elif message.status == DeliveryStatus.FAILED:
            self._sequence(conversation_id).remove(message_id)
        else:
            raise InvalidInputError(
                f"Message {message_id} is {message.status.value} and cannot be discarded"
            )

        self._provisional.pop(message_id, None)
        self._files.pop(message_id, None)
        if isinstance(message.payload, PollPayload):
            self._polls.pop(message.payload.poll_id, None)
        self._refresh_preview(conversation_id)
        logger.info(
            "Message discarded",
            extra={"conversation_id": conversation_id, "message_id": message_id},
        )
        await self._publish_messages_changed(conversation_id, message_id)

    # Polls
    async def create_poll(
        self, conversation_id: str, options: list[str], question: str = ""
    ) -> Message:
        """Create a poll together with its hosting message."""
        self._require_conversation(conversation_id)
        message_id = str(uuid.uuid4())
        poll = self._engine.build(
            poll_id=str(uuid.uuid4()),
            message_id=message_id,
            conversation_id=conversation_id,
            options=options,
            question=question,
        )

        self._polls[poll.id] = poll
        message = self._add_local_message(
            conversation_id,
            PollPayload(poll_id=poll.id, question=poll.question),
            message_id=message_id,
        )
        snapshot = replace(message)
        self._spawn(self._deliver(self._draft(message)))
        await self._publish_messages_changed(conversation_id, message.id)
        return snapshot

    def get_poll(self, poll_id: str) -> Poll:
        return copy.deepcopy(self._require_poll(poll_id))

    async def vote_on_poll(self, poll_id: str, voter_id: str, option_index: int) -> Poll:
        """Record exactly one vote for the voter.

        The vote is confirmed by the backend before it is applied; tally and
        voter registry change together.
        """
        poll = self._require_poll(poll_id)
        self._require_delivered(poll)
        self._engine.check_vote(poll, voter_id, option_index)

        async with self._lock_for(poll.conversation_id):
            # A vote for the same voter may have landed while waiting
            self._engine.check_vote(poll, voter_id, option_index)
            await self._backend.post_vote(poll_id, voter_id, option_index)
            # No-op when the realtime echo was applied first
            self._engine.apply_vote(poll, voter_id, option_index)
            self._engine.verify(poll)

        logger.info(
            "Vote recorded",
            extra={"poll_id": poll_id, "context": {"voter_id": voter_id, "option": option_index}},
        )
        await self._publish_tally(poll)
        return copy.deepcopy(poll)

    async def close_poll(self, poll_id: str) -> Poll:
        """Stop accepting votes; closing twice is a no-op."""
        poll = self._require_poll(poll_id)
        if poll.closed:
            return copy.deepcopy(poll)
        self._require_delivered(poll)

        async with self._lock_for(poll.conversation_id):
            await self._backend.close_poll(poll_id)
            self._engine.close(poll)

        await self._publish_tally(poll)
        return copy.deepcopy(poll)

    # Attachments
    async def attach_file(self, conversation_id: str, file_handle: FileHandle) -> Message:
        """Upload a file and post it as an attachment message once ready."""
        self._require_conversation(conversation_id)
        message_id = str(uuid.uuid4())

        handle = self._uploader.upload(file_handle, message_id)
        attachment = handle.attachment
        self._attachments[attachment.id] = attachment
        self._uploads[message_id] = handle
        self._files[message_id] = file_handle

        message = self._add_local_message(
            conversation_id,
            AttachmentPayload(
                attachment_id=attachment.id,
                file_name=attachment.file_name,
                content_type=attachment.content_type,
                size=attachment.size,
            ),
            message_id=message_id,
        )
        snapshot = replace(message)
        self._spawn(self._finish_attachment(conversation_id, message_id, handle))
        await self._publish_messages_changed(conversation_id, message_id)
        return snapshot

    def get_attachment(self, attachment_id: str) -> Attachment:
        attachment = self._attachments.get(attachment_id)
        if attachment is None:
            raise NotFoundError(f"Attachment {attachment_id} not found")
        return replace(attachment)

    async def wait_for_upload(self, message_id: str) -> Attachment:
        """Wait until the attachment of a message settles and return it."""
        _, message = self._find_message(message_id)
        if not isinstance(message.payload, AttachmentPayload):
            raise InvalidInputError(f"Message {message_id} carries no attachment")
        handle = self._uploads.get(message_id)
        if handle is not None:
            await handle.wait()
        return self.get_attachment(message.payload.attachment_id)

    async def _finish_attachment(
        self, conversation_id: str, message_id: str, handle: UploadHandle
    ) -> None:
        attachment = await handle.wait()
        self._uploads.pop(message_id, None)

        message = self._sequence(conversation_id).get(message_id)
        if message is None:
            message = self._restore_provisional(conversation_id, message_id)
        if message is None:
            # Discarded while uploading
            return

        if attachment.status != UploadStatus.READY:
            message.status = DeliveryStatus.FAILED
            message.error = attachment.failure.value if attachment.failure else None
            await self._publish_messages_changed(conversation_id, message_id)
            return

        message.payload = replace(message.payload, storage_ref=attachment.storage_ref)
        await self._deliver(self._draft(message))

    # Delivery
    def _draft(self, message: Message) -> OutgoingMessage:
        poll_options = []
        if isinstance(message.payload, PollPayload):
            poll = self._polls[message.payload.poll_id]
            poll_options = [option.text for option in poll.options]
        return OutgoingMessage(
            id=message.id,
            conversation_id=message.conversation_id,
            author_id=message.author_id,
            payload=message.payload,
            poll_options=poll_options,
        )

    async def _deliver(self, draft: OutgoingMessage) -> None:
        """Post a pending message; it ends up sent or failed, never pending."""
        try:
            async with self._lock_for(draft.conversation_id):
                canonical = await self._backend.post_message(draft)
        except ChatError as e:
            self._mark_failed(draft.conversation_id, draft.id, str(e))
            logger.warning(
                "Delivery failed: %s",
                e,
                extra={"conversation_id": draft.conversation_id, "message_id": draft.id},
            )
        except asyncio.CancelledError:
            self._mark_failed(draft.conversation_id, draft.id, "cancelled")
            raise
        except Exception as e:
            self._mark_failed(draft.conversation_id, draft.id, str(e))
            logger.error(
                "Unexpected delivery error: %s",
                e,
                exc_info=True,
                extra={"conversation_id": draft.conversation_id, "message_id": draft.id},
            )
        else:
            self._merge_canonical(canonical, count_unread=False, replaces=draft.id)
            self._files.pop(draft.id, None)
            self._provisional.pop(draft.id, None)
            logger.debug(
                "Message acknowledged",
                extra={"conversation_id": draft.conversation_id, "message_id": canonical.id},
            )

        await self._publish_messages_changed(draft.conversation_id, draft.id)

    def _mark_failed(self, conversation_id: str, message_id: str, reason: str) -> None:
        message = self._sequence(conversation_id).get(message_id)
        if message is None:
            message = self._restore_provisional(conversation_id, message_id)
        # An echo may already have reconciled the entry to sent
        if message is None or message.status != DeliveryStatus.PENDING:
            return
        message.status = DeliveryStatus.FAILED
        message.error = reason

    def _restore_provisional(self, conversation_id: str, message_id: str) -> Message | None:
        """Put back a pending entry whose fingerprint match turned out to be another message."""
        pending = self._provisional.pop(message_id, None)
        if pending is None:
            return None
        self._sequence(conversation_id).add(pending)
        logger.warning(
            "Fingerprint match was not the echo of this message, entry restored",
            extra={"conversation_id": conversation_id, "message_id": message_id},
        )
        return pending

    # Remote merge
    async def _handle_remote_event(self, event: RemoteEvent) -> None:
        """Apply a realtime event pushed by the backend."""
        if not self._running:
            return

        if event.kind == RemoteEventKind.MESSAGE_CREATED and event.message:
            if event.conversation_id not in self._conversations:
                await self.sync()
                if event.conversation_id not in self._conversations:
                    logger.warning(
                        "Message for unknown conversation ignored",
                        extra={"conversation_id": event.conversation_id},
                    )
                    return
            if event.poll is not None:
                self._merge_poll(event.poll)
            self._merge_canonical(event.message, count_unread=True)
            await self._publish_messages_changed(event.conversation_id, event.message.id)

        elif event.kind == RemoteEventKind.VOTE_RECORDED and event.vote:
            poll = self._polls.get(event.vote.poll_id)
            if poll is None:
                return
            if self._engine.apply_vote(poll, event.vote.voter_id, event.vote.option_index):
                self._engine.verify(poll)
                await self._publish_tally(poll)

        elif event.kind == RemoteEventKind.POLL_CLOSED and event.poll_id:
            poll = self._polls.get(event.poll_id)
            if poll is not None and not poll.closed:
                self._engine.close(poll)
                await self._publish_tally(poll)

    def _merge_canonical(
        self,
        message: Message,
        count_unread: bool,
        replaces: str | None = None,
    ) -> bool:
        """Fold a canonical message into its sequence; True if it is a new entry."""
        sequence = self._sequence(message.conversation_id)
        bucket = self._settings.fingerprint_bucket_seconds

        if replaces is not None and replaces != message.id and replaces in sequence:
            sequence.replace(replaces, message)
            is_new = False
        elif message.id in sequence:
            sequence.replace(message.id, message)
            is_new = False
        else:
            pending = sequence.find_pending(message.fingerprint(bucket), bucket)
            if pending is not None:
                sequence.replace(pending.id, message)
                # Provisional until the pending entry's own delivery settles
                self._provisional[pending.id] = pending
                logger.debug(
                    "Pending message reconciled by fingerprint",
                    extra={"message_id": message.id, "context": {"pending_id": pending.id}},
                )
                is_new = False
            else:
                sequence.add(message)
                is_new = True

        if isinstance(message.payload, AttachmentPayload):
            self._attachments.setdefault(
                message.payload.attachment_id,
                Attachment(
                    id=message.payload.attachment_id,
                    message_id=message.id,
                    file_name=message.payload.file_name,
                    content_type=message.payload.content_type,
                    size=message.payload.size,
                    status=UploadStatus.READY,
                    storage_ref=message.payload.storage_ref,
                ),
            )

        unread = (
            is_new
            and count_unread
            and message.author_id != self._user_id
            and not self._is_chat_visible(message.conversation_id)
        )
        self._touch(message, unread=unread)
        return is_new

    def _merge_poll(self, snapshot: Poll) -> None:
        local = self._polls.get(snapshot.id)
        if local is None:
            self._polls[snapshot.id] = copy.deepcopy(snapshot)
            return
        self._engine.merge(local, snapshot)
        self._engine.verify(local)

    # Helpers
    def _add_local_message(
        self,
        conversation_id: str,
        payload: MessagePayload,
        message_id: str | None = None,
    ) -> Message:
        message = Message(
            id=message_id or str(uuid.uuid4()),
            conversation_id=conversation_id,
            author_id=self._user_id,
            created_at=self._clock(),
            payload=payload,
            status=DeliveryStatus.PENDING,
        )
        self._sequence(conversation_id).add(message)
        self._touch(message, unread=False)
        return message

    def _touch(self, message: Message, unread: bool) -> None:
        conversation = self._conversations.get(message.conversation_id)
        if conversation is None:
            return
        if message.created_at >= conversation.last_activity:
            conversation.last_activity = message.created_at
            conversation.last_message_preview = message.payload.preview()
        if unread:
            conversation.unread_count += 1

    def _refresh_preview(self, conversation_id: str) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return
        last = self._sequence(conversation_id).last()
        conversation.last_message_preview = last.payload.preview() if last else None

    def _sequence(self, conversation_id: str) -> MessageSequence:
        sequence = self._sequences.get(conversation_id)
        if sequence is None:
            sequence = self._sequences[conversation_id] = MessageSequence(conversation_id)
        return sequence

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def _require_poll(self, poll_id: str) -> Poll:
        poll = self._polls.get(poll_id)
        if poll is None:
            raise NotFoundError(f"Poll {poll_id} not found")
        return poll

    def _require_delivered(self, poll: Poll) -> None:
        host = self._sequence(poll.conversation_id).get(poll.message_id)
        if host is None or host.status != DeliveryStatus.SENT:
            raise InvalidInputError(f"Poll {poll.id} has not been delivered yet")

    def _find_message(self, message_id: str) -> tuple[str, Message]:
        for conversation_id, sequence in self._sequences.items():
            message = sequence.get(message_id)
            if message is not None:
                return conversation_id, message
        raise NotFoundError(f"Message {message_id} not found")

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Background task failed: %s",
                task.exception(),
                exc_info=task.exception(),
            )

    async def _publish(self, topic: Topic, payload: dict) -> None:
        await self._bus.publish(topic, payload, source=SOURCE)

    async def _publish_messages_changed(self, conversation_id: str, message_id: str) -> None:
        await self._publish(
            Topic.MESSAGES_CHANGED,
            {"conversation_id": conversation_id, "message_id": message_id},
        )
        await self._publish(
            Topic.CONVERSATIONS_CHANGED, {"conversation_id": conversation_id}
        )

    async def _publish_tally(self, poll: Poll) -> None:
        await self._publish(
            Topic.POLL_TALLY_CHANGED,
            {
                "poll_id": poll.id,
                "conversation_id": poll.conversation_id,
                "tallies": poll.tallies,
                "closed": poll.closed,
            },
        )
