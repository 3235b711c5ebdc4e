"""MessageSequence implementation."""

import bisect

from ..models import DeliveryStatus, Message


class MessageSequence:
    """Messages of one conversation, kept sorted by (created_at, id)."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self._messages: list[Message] = []

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return self.index_of(message_id) is not None

    def add(self, message: Message) -> None:
        """Insert a message at its ordered position."""
        bisect.insort(self._messages, message, key=lambda m: m.sort_key)

    def index_of(self, message_id: str) -> int | None:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return None

    def get(self, message_id: str) -> Message | None:
        index = self.index_of(message_id)
        return self._messages[index] if index is not None else None

    def replace(self, message_id: str, message: Message) -> bool:
        """Swap an entry for its new version; returns False if message_id is absent.

        The entry stays in place unless its sort key moved past a neighbour.
        """
        index = self.index_of(message_id)
        if index is None:
            return False

        self._messages[index] = message
        before_ok = index == 0 or self._messages[index - 1].sort_key <= message.sort_key
        after_ok = (
            index == len(self._messages) - 1
            or message.sort_key <= self._messages[index + 1].sort_key
        )
        if not (before_ok and after_ok):
            del self._messages[index]
            self.add(message)
        return True

    def remove(self, message_id: str) -> Message | None:
        index = self.index_of(message_id)
        if index is None:
            return None
        return self._messages.pop(index)

    def find_pending(self, fingerprint: tuple, bucket_seconds: int) -> Message | None:
        """Pending message with the given reconciliation fingerprint."""
        for message in self.get_pending():
            if message.fingerprint(bucket_seconds) == fingerprint:
                return message
        return None

    def get_all(self) -> list[Message]:
        """Get all messages in order."""
        return self._messages.copy()

    def get_pending(self) -> list[Message]:
        """Get messages still waiting for acknowledgment."""
        return [msg for msg in self._messages if msg.status == DeliveryStatus.PENDING]

    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def is_ordered(self) -> bool:
        return all(
            a.sort_key <= b.sort_key for a, b in zip(self._messages, self._messages[1:])
        )

    def clear(self) -> None:
        """Clear the sequence."""
        self._messages.clear()
