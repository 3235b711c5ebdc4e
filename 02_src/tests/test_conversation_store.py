"""Tests for ConversationStore."""

import asyncio
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from chat_core.errors import (
    AlreadyVotedError,
    InvalidInputError,
    InvalidOptionError,
    NotFoundError,
    PollClosedError,
    TransportError,
    UploadFailureReason,
)
from chat_core.models import (
    AttachmentPayload,
    DeliveryStatus,
    FileHandle,
    Message,
    OutgoingMessage,
    PollPayload,
    RemoteEvent,
    RemoteEventKind,
    TextPayload,
    Topic,
    UploadStatus,
)

USER = "director"


def assert_ordered(messages):
    keys = [m.sort_key for m in messages]
    assert keys == sorted(keys)


@pytest.fixture
def hold_posts(backend):
    """Patch post_message so deliveries wait until released."""

    class Hold:
        def __init__(self):
            self.release = asyncio.Event()
            self.post = backend.post_message

        async def held_post(self, draft):
            await self.release.wait()
            return await self.post(draft)

    hold = Hold()
    with patch.object(backend, "post_message", side_effect=hold.held_post):
        yield hold
    hold.release.set()


class TestConversations:
    """Tests for the conversation list."""

    @pytest.mark.asyncio
    async def test_start_loads_conversations(self, store, conversation, group):
        ids = {c.id for c in store.list_conversations()}
        assert ids == {conversation.id, group.id}

    @pytest.mark.asyncio
    async def test_sorted_by_last_activity(self, store, conversation, group, post_remote, settle):
        await post_remote(group.id, "teacher_mark", "Rehearsal at 5")
        await post_remote(conversation.id, "teacher_anna", "Lesson moved")
        await settle()

        conversations = store.list_conversations()
        assert [c.id for c in conversations] == [conversation.id, group.id]
        assert conversations[0].last_message_preview == "Lesson moved"

    @pytest.mark.asyncio
    async def test_search(self, store, conversation, group, post_remote, settle):
        await post_remote(conversation.id, "teacher_anna", "Bring the metronome")
        await settle()

        assert [c.id for c in store.list_conversations("RECITAL")] == [group.id]
        assert [c.id for c in store.list_conversations("metronome")] == [conversation.id]
        assert len(store.list_conversations("   ")) == 2

    @pytest.mark.asyncio
    async def test_returns_copies(self, store, conversation):
        store.list_conversations()[0].unread_count = 99
        assert store.get_conversation(conversation.id).unread_count == 0

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, store):
        with pytest.raises(NotFoundError):
            store.get_conversation("missing")
        with pytest.raises(NotFoundError):
            await store.load_messages("missing")

    @pytest.mark.asyncio
    async def test_start_conversation(self, store):
        conversation = await store.start_conversation(["teacher_mark"], "Mark Lewis")

        assert conversation.participant_ids == [USER, "teacher_mark"]
        assert conversation.id in {c.id for c in store.list_conversations()}

    @pytest.mark.asyncio
    async def test_message_in_new_conversation_triggers_sync(
        self, store, backend, post_remote, settle
    ):
        """Test that a remote message for an unknown conversation pulls it in."""
        created = await backend.create_conversation([USER, "student_lena"], "Lena Ortiz")
        await post_remote(created.id, "student_lena", "Hi!")
        await settle()

        conversation = store.get_conversation(created.id)
        assert conversation.unread_count == 1
        assert conversation.last_message_preview == "Hi!"


class TestUnread:
    """Tests for unread counters."""

    @pytest.mark.asyncio
    async def test_remote_message_increments_unread(self, store, conversation, post_remote, settle):
        await post_remote(conversation.id, "teacher_anna", "One")
        await post_remote(conversation.id, "teacher_anna", "Two")
        await settle()

        assert store.get_conversation(conversation.id).unread_count == 2

    @pytest.mark.asyncio
    async def test_own_messages_do_not_count(self, store, conversation, settle):
        await store.send_message(conversation.id, "Hello")
        await settle()

        assert store.get_conversation(conversation.id).unread_count == 0

    @pytest.mark.asyncio
    async def test_visible_conversation_does_not_count(
        self, store, coordinator, conversation, post_remote, settle
    ):
        await coordinator.select_conversation(conversation.id)
        await post_remote(conversation.id, "teacher_anna", "Seen right away")
        await settle()

        assert store.get_conversation(conversation.id).unread_count == 0

    @pytest.mark.asyncio
    async def test_mark_read(self, store, conversation, post_remote, settle):
        await post_remote(conversation.id, "teacher_anna", "One")
        await settle()

        await store.mark_read(conversation.id)
        assert store.get_conversation(conversation.id).unread_count == 0


class TestSendMessage:
    """Tests for text messages."""

    @pytest.mark.asyncio
    async def test_optimistic_then_sent(self, store, conversation, settle):
        """Test that a message is pending at once and sent after acknowledgment."""
        message = await store.send_message(conversation.id, "  Hello Anna  ")

        assert message.status == DeliveryStatus.PENDING
        assert message.payload == TextPayload(text="Hello Anna")
        assert message.author_id == USER

        await settle()
        messages = await store.load_messages(conversation.id)
        assert [(m.id, m.status) for m in messages] == [(message.id, DeliveryStatus.SENT)]

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, store, conversation):
        with pytest.raises(InvalidInputError):
            await store.send_message(conversation.id, "   ")

        assert await store.load_messages(conversation.id) == []

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, store):
        with pytest.raises(NotFoundError):
            await store.send_message("missing", "Hello")

    @pytest.mark.asyncio
    async def test_publishes_messages_changed(self, store, conversation, recorded_events, settle):
        message = await store.send_message(conversation.id, "Hello")
        await settle()

        changed = [e for e in recorded_events if e.topic == Topic.MESSAGES_CHANGED]
        assert changed
        assert all(e.payload["conversation_id"] == conversation.id for e in changed)
        assert changed[0].payload["message_id"] == message.id

    @pytest.mark.asyncio
    async def test_offline_send_fails_and_stays_visible(self, store, backend, conversation, settle):
        """Test that a transport failure leaves the message failed, never pending."""
        with patch.object(
            backend, "post_message", AsyncMock(side_effect=TransportError("offline"))
        ):
            message = await store.send_message(conversation.id, "Are you there?")
            assert message.status == DeliveryStatus.PENDING
            await settle()

        messages = await store.load_messages(conversation.id)
        assert len(messages) == 1
        assert messages[0].status == DeliveryStatus.FAILED
        assert messages[0].error == "offline"

    @pytest.mark.asyncio
    async def test_resubmit_creates_new_attempt(self, store, backend, conversation, settle):
        """Test that resubmitting keeps the failed entry and adds a pending one."""
        with patch.object(
            backend, "post_message", AsyncMock(side_effect=TransportError("offline"))
        ):
            failed = await store.send_message(conversation.id, "Are you there?")
            await settle()

        retry = await store.resubmit(failed.id)
        assert retry.id != failed.id
        assert retry.status == DeliveryStatus.PENDING
        assert retry.payload == failed.payload

        await settle()
        statuses = {m.id: m.status for m in await store.load_messages(conversation.id)}
        assert statuses == {failed.id: DeliveryStatus.FAILED, retry.id: DeliveryStatus.SENT}

    @pytest.mark.asyncio
    async def test_resubmit_requires_failed(self, store, conversation, settle):
        message = await store.send_message(conversation.id, "Hello")
        await settle()

        with pytest.raises(InvalidInputError):
            await store.resubmit(message.id)
        with pytest.raises(NotFoundError):
            await store.resubmit("missing")

    @pytest.mark.asyncio
    async def test_discard_failed(self, store, backend, conversation, settle):
        with patch.object(
            backend, "post_message", AsyncMock(side_effect=TransportError("offline"))
        ):
            failed = await store.send_message(conversation.id, "Are you there?")
            await settle()

        await store.discard(failed.id)

        assert await store.load_messages(conversation.id) == []
        assert store.get_conversation(conversation.id).last_message_preview is None

    @pytest.mark.asyncio
    async def test_discard_sent_rejected(self, store, conversation, settle):
        message = await store.send_message(conversation.id, "Hello")
        await settle()

        with pytest.raises(InvalidInputError):
            await store.discard(message.id)


class TestRemoteMerge:
    """Tests for merging remote messages."""

    @pytest.mark.asyncio
    async def test_remote_messages_ordered(self, store, conversation, post_remote, settle):
        for i in range(5):
            await post_remote(conversation.id, "teacher_anna", f"Note {i}")
            await store.send_message(conversation.id, f"Reply {i}")
        await settle()

        messages = await store.load_messages(conversation.id)
        assert len(messages) == 10
        assert_ordered(messages)
        assert len({m.id for m in messages}) == 10

    @pytest.mark.asyncio
    async def test_late_arrival_inserted_in_order(self, store, conversation, post_remote, settle):
        first = await post_remote(conversation.id, "teacher_anna", "First")
        await settle()

        late = Message(
            id="late",
            conversation_id=conversation.id,
            author_id="teacher_anna",
            created_at=first.created_at - timedelta(minutes=1),
            payload=TextPayload(text="Late"),
        )
        await store._handle_remote_event(
            RemoteEvent(
                kind=RemoteEventKind.MESSAGE_CREATED,
                conversation_id=conversation.id,
                message=late,
            )
        )

        messages = await store.load_messages(conversation.id)
        assert [m.id for m in messages] == ["late", first.id]
        assert store.get_conversation(conversation.id).last_message_preview == "First"

    @pytest.mark.asyncio
    async def test_duplicate_event_merged_once(self, store, conversation, post_remote, settle):
        message = await post_remote(conversation.id, "teacher_anna", "Hello")
        await settle()

        event = RemoteEvent(
            kind=RemoteEventKind.MESSAGE_CREATED,
            conversation_id=conversation.id,
            message=message,
        )
        await store._handle_remote_event(event)

        assert len(await store.load_messages(conversation.id)) == 1
        assert store.get_conversation(conversation.id).unread_count == 1

    @pytest.mark.asyncio
    async def test_reconciled_by_fingerprint(self, store, conversation, hold_posts):
        """Test that an echo with another identifier replaces the pending entry."""
        local = await store.send_message(conversation.id, "On my way")

        echo = Message(
            id="server-assigned",
            conversation_id=conversation.id,
            author_id=USER,
            created_at=local.created_at,
            payload=TextPayload(text="On my way"),
        )
        await store._handle_remote_event(
            RemoteEvent(
                kind=RemoteEventKind.MESSAGE_CREATED,
                conversation_id=conversation.id,
                message=echo,
            )
        )

        messages = await store.load_messages(conversation.id)
        assert [(m.id, m.status) for m in messages] == [
            ("server-assigned", DeliveryStatus.SENT)
        ]

    @staticmethod
    async def _deliver_same_text_from_other_device(store, conversation, local):
        other = Message(
            id="other-device",
            conversation_id=conversation.id,
            author_id=USER,
            created_at=local.created_at,
            payload=TextPayload(text=local.payload.text),
        )
        await store._handle_remote_event(
            RemoteEvent(
                kind=RemoteEventKind.MESSAGE_CREATED,
                conversation_id=conversation.id,
                message=other,
            )
        )

    @pytest.mark.asyncio
    async def test_failed_delivery_survives_fingerprint_match(
        self, store, backend, conversation, settle
    ):
        """Test that a pending entry matched by another message comes back as failed."""
        release = asyncio.Event()

        async def failing_post(draft):
            await release.wait()
            raise TransportError("offline")

        with patch.object(backend, "post_message", side_effect=failing_post):
            local = await store.send_message(conversation.id, "ok")
            await self._deliver_same_text_from_other_device(store, conversation, local)
            release.set()
            await settle()

        messages = await store.load_messages(conversation.id)
        statuses = {m.id: m.status for m in messages}
        assert statuses == {
            local.id: DeliveryStatus.FAILED,
            "other-device": DeliveryStatus.SENT,
        }
        assert store.get_message(local.id).error == "offline"
        assert_ordered(messages)

    @pytest.mark.asyncio
    async def test_acknowledged_after_fingerprint_match_with_other_message(
        self, store, conversation, hold_posts, settle
    ):
        """Test that both sends stay visible when the match was another message."""
        local = await store.send_message(conversation.id, "ok")
        await self._deliver_same_text_from_other_device(store, conversation, local)

        hold_posts.release.set()
        await settle()

        messages = await store.load_messages(conversation.id)
        assert {m.id: m.status for m in messages} == {
            local.id: DeliveryStatus.SENT,
            "other-device": DeliveryStatus.SENT,
        }

    @pytest.mark.asyncio
    async def test_untitled_polls_reconciled_separately(self, store, conversation, hold_posts):
        """Test that an echo of one untitled poll leaves the other pending."""
        first = await store.create_poll(conversation.id, ["Mon", "Tue"])
        second = await store.create_poll(conversation.id, ["Wed", "Thu"])

        echo = Message(
            id="server-poll",
            conversation_id=conversation.id,
            author_id=USER,
            created_at=second.created_at,
            payload=PollPayload(poll_id=second.payload.poll_id),
        )
        await store._handle_remote_event(
            RemoteEvent(
                kind=RemoteEventKind.MESSAGE_CREATED,
                conversation_id=conversation.id,
                message=echo,
            )
        )

        messages = await store.load_messages(conversation.id)
        statuses = {m.id: m.status for m in messages}
        assert statuses == {
            first.id: DeliveryStatus.PENDING,
            "server-poll": DeliveryStatus.SENT,
        }

    @pytest.mark.asyncio
    async def test_events_ignored_after_stop(self, store, conversation, post_remote, settle):
        await store.stop()
        await post_remote(conversation.id, "teacher_anna", "Anyone?")
        await settle()

        assert store.get_conversation(conversation.id).unread_count == 0


class TestPolls:
    """Tests for polls through the store."""

    @pytest.mark.asyncio
    async def test_create_poll(self, store, group, settle):
        message = await store.create_poll(group.id, [" Friday ", "Saturday"], "Recital date?")

        assert message.status == DeliveryStatus.PENDING
        assert isinstance(message.payload, PollPayload)
        poll = store.get_poll(message.payload.poll_id)
        assert poll.tallies == [0, 0]
        assert [o.text for o in poll.options] == ["Friday", "Saturday"]
        assert poll.message_id == message.id

        await settle()
        messages = await store.load_messages(group.id)
        assert messages[0].status == DeliveryStatus.SENT
        assert store.get_conversation(group.id).last_message_preview == "Poll: Recital date?"

    @pytest.mark.parametrize("options", [["Only"], ["Yes", ""], ["Yes", "   "]])
    @pytest.mark.asyncio
    async def test_invalid_options_create_nothing(self, store, group, options):
        with pytest.raises(InvalidInputError):
            await store.create_poll(group.id, options)

        assert await store.load_messages(group.id) == []

    @pytest.mark.asyncio
    async def test_vote(self, store, group, recorded_events, settle):
        message = await store.create_poll(group.id, ["Friday", "Saturday"])
        poll_id = message.payload.poll_id
        await settle()

        poll = await store.vote_on_poll(poll_id, USER, 1)
        await settle()

        assert poll.tallies == [0, 1]
        assert store.get_poll(poll_id).tallies == [0, 1]
        assert store.get_poll(poll_id).voters == {USER: 1}
        tally_events = [e for e in recorded_events if e.topic == Topic.POLL_TALLY_CHANGED]
        assert tally_events[-1].payload["tallies"] == [0, 1]

    @pytest.mark.asyncio
    async def test_vote_twice(self, store, group, settle):
        message = await store.create_poll(group.id, ["Friday", "Saturday"])
        poll_id = message.payload.poll_id
        await settle()
        await store.vote_on_poll(poll_id, USER, 0)

        with pytest.raises(AlreadyVotedError):
            await store.vote_on_poll(poll_id, USER, 1)

        assert store.get_poll(poll_id).tallies == [1, 0]

    @pytest.mark.asyncio
    async def test_invalid_option(self, store, group, settle):
        message = await store.create_poll(group.id, ["Friday", "Saturday"])
        poll_id = message.payload.poll_id
        await settle()

        with pytest.raises(InvalidOptionError):
            await store.vote_on_poll(poll_id, USER, 2)

        poll = store.get_poll(poll_id)
        assert poll.tallies == [0, 0]
        assert poll.voters == {}

    @pytest.mark.asyncio
    async def test_unknown_poll(self, store):
        with pytest.raises(NotFoundError):
            await store.vote_on_poll("missing", USER, 0)

    @pytest.mark.asyncio
    async def test_vote_before_delivery_rejected(self, store, group, hold_posts):
        message = await store.create_poll(group.id, ["Friday", "Saturday"])

        with pytest.raises(InvalidInputError):
            await store.vote_on_poll(message.payload.poll_id, USER, 0)

    @pytest.mark.asyncio
    async def test_vote_transport_error_leaves_poll_unchanged(self, store, backend, group, settle):
        message = await store.create_poll(group.id, ["Friday", "Saturday"])
        poll_id = message.payload.poll_id
        await settle()

        with patch.object(backend, "post_vote", AsyncMock(side_effect=TransportError("offline"))):
            with pytest.raises(TransportError):
                await store.vote_on_poll(poll_id, USER, 0)

        poll = store.get_poll(poll_id)
        assert poll.tallies == [0, 0]
        assert poll.voters == {}

    @pytest.mark.asyncio
    async def test_concurrent_votes(self, store, group, settle):
        """Test that sum(tally) == len(voters) under concurrent voting."""
        message = await store.create_poll(group.id, ["A", "B", "C"])
        poll_id = message.payload.poll_id
        await settle()

        voters = [f"voter_{i}" for i in range(12)]
        results = await asyncio.gather(
            *(store.vote_on_poll(poll_id, v, i % 3) for i, v in enumerate(voters)),
            store.vote_on_poll(poll_id, voters[0], 1),
            return_exceptions=True,
        )
        await settle()

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], AlreadyVotedError)
        poll = store.get_poll(poll_id)
        assert poll.total_votes == len(poll.voters) == 12
        assert poll.tallies == [4, 4, 4]

    @pytest.mark.asyncio
    async def test_remote_poll_and_votes(self, store, backend, group, settle):
        """Test that polls and votes from other participants are merged."""
        draft = OutgoingMessage(
            id=str(uuid.uuid4()),
            conversation_id=group.id,
            author_id="teacher_mark",
            payload=PollPayload(poll_id=str(uuid.uuid4()), question="Rehearsal?"),
            poll_options=["Monday", "Tuesday"],
        )
        await backend.post_message(draft)
        await backend.post_vote(draft.payload.poll_id, "teacher_anna", 0)
        await settle()

        poll = store.get_poll(draft.payload.poll_id)
        assert poll.tallies == [1, 0]

        await store.vote_on_poll(poll.id, USER, 0)
        await backend.post_vote(poll.id, "student_lena", 1)
        await settle()

        poll = store.get_poll(poll.id)
        assert poll.tallies == [2, 1]
        assert poll.total_votes == len(poll.voters)

    @pytest.mark.asyncio
    async def test_close_poll(self, store, group, settle):
        message = await store.create_poll(group.id, ["Friday", "Saturday"])
        poll_id = message.payload.poll_id
        await settle()

        poll = await store.close_poll(poll_id)
        assert poll.closed
        assert (await store.close_poll(poll_id)).closed

        with pytest.raises(PollClosedError):
            await store.vote_on_poll(poll_id, USER, 0)

    @pytest.mark.asyncio
    async def test_remote_close(self, store, backend, group, settle):
        message = await store.create_poll(group.id, ["Friday", "Saturday"])
        await settle()

        await backend.close_poll(message.payload.poll_id)
        await settle()

        assert store.get_poll(message.payload.poll_id).closed

    @pytest.mark.asyncio
    async def test_polls_loaded_with_history(self, backend, event_bus, uploader, settings, group):
        """Test that a fresh session sees existing polls with their tallies."""
        from chat_core.store import ConversationStore

        draft = OutgoingMessage(
            id=str(uuid.uuid4()),
            conversation_id=group.id,
            author_id="teacher_mark",
            payload=PollPayload(poll_id=str(uuid.uuid4())),
            poll_options=["Yes", "No"],
        )
        await backend.post_message(draft)
        await backend.post_vote(draft.payload.poll_id, "teacher_anna", 1)

        store = ConversationStore(backend, event_bus, uploader, settings)
        await store.start()
        try:
            messages = await store.load_messages(group.id)
            assert messages[0].payload.poll_id == draft.payload.poll_id
            assert store.get_poll(draft.payload.poll_id).tallies == [0, 1]
        finally:
            await store.stop()


class TestAttachments:
    """Tests for attachments through the store."""

    @pytest.mark.asyncio
    async def test_attach_file(self, store, backend, conversation, file_handle, settle):
        message = await store.attach_file(conversation.id, file_handle)

        assert message.status == DeliveryStatus.PENDING
        assert isinstance(message.payload, AttachmentPayload)
        assert store.get_attachment(message.payload.attachment_id).status in (
            UploadStatus.UPLOADING,
            UploadStatus.READY,
        )

        await settle()
        sent = store.get_message(message.id)
        attachment = store.get_attachment(message.payload.attachment_id)
        assert sent.status == DeliveryStatus.SENT
        assert attachment.status == UploadStatus.READY
        assert sent.payload.storage_ref == attachment.storage_ref
        assert await backend.read_file(attachment.storage_ref) == file_handle.data
        assert store.get_conversation(conversation.id).last_message_preview == (
            "Attachment: scales.pdf"
        )

    @pytest.mark.asyncio
    async def test_oversized_upload(self, store, conversation, settings, settle):
        """Test that an oversized file fails and its message stays visible."""
        big = FileHandle("recital.wav", "audio/wav", b"x" * (settings.max_upload_bytes + 1))
        message = await store.attach_file(conversation.id, big)

        attachment = await store.wait_for_upload(message.id)
        await settle()

        assert attachment.status == UploadStatus.FAILED
        assert attachment.failure == UploadFailureReason.TOO_LARGE
        assert attachment.storage_ref is None
        messages = await store.load_messages(conversation.id)
        assert [(m.id, m.status) for m in messages] == [(message.id, DeliveryStatus.FAILED)]

    @pytest.mark.asyncio
    async def test_upload_failure_then_resubmit(
        self, store, backend, conversation, file_handle, settle
    ):
        with patch.object(
            backend, "store_file", AsyncMock(side_effect=TransportError("offline"))
        ):
            failed = await store.attach_file(conversation.id, file_handle)
            await settle()

        assert store.get_message(failed.id).status == DeliveryStatus.FAILED

        retry = await store.resubmit(failed.id)
        await settle()

        assert store.get_message(retry.id).status == DeliveryStatus.SENT
        assert store.get_attachment(retry.payload.attachment_id).status == UploadStatus.READY
        assert store.get_message(failed.id).status == DeliveryStatus.FAILED

    @pytest.mark.asyncio
    async def test_discard_while_uploading(self, store, backend, conversation, file_handle, settle):
        """Test that a cancelled upload never resurrects its message."""
        started = asyncio.Event()

        async def slow_store(_file_handle):
            started.set()
            await asyncio.sleep(10)

        with patch.object(backend, "store_file", side_effect=slow_store):
            message = await store.attach_file(conversation.id, file_handle)
            await started.wait()
            await store.discard(message.id)
            await settle()

        assert await store.load_messages(conversation.id) == []
        attachment = store.get_attachment(message.payload.attachment_id)
        assert attachment.failure == UploadFailureReason.CANCELLED
        with pytest.raises(NotFoundError):
            store.get_message(message.id)

    @pytest.mark.asyncio
    async def test_remote_attachment_registered(self, store, backend, conversation, file_handle, settle):
        storage_ref = await backend.store_file(file_handle)
        draft = OutgoingMessage(
            id=str(uuid.uuid4()),
            conversation_id=conversation.id,
            author_id="teacher_anna",
            payload=AttachmentPayload(
                attachment_id=str(uuid.uuid4()),
                file_name=file_handle.name,
                content_type=file_handle.content_type,
                size=file_handle.size,
                storage_ref=storage_ref,
            ),
        )
        await backend.post_message(draft)
        await settle()

        attachment = store.get_attachment(draft.payload.attachment_id)
        assert attachment.status == UploadStatus.READY
        assert attachment.storage_ref == storage_ref
