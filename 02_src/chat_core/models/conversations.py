"""Conversation data model."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Conversation:
    """A thread of messages among a fixed participant set."""

    id: str
    display_name: str
    last_activity: datetime
    participant_ids: list[str] = field(default_factory=list)
    unread_count: int = 0
    is_group: bool = False
    last_message_preview: str | None = None

    def matches(self, term: str) -> bool:
        """Case-insensitive match on display name or last message preview."""
        needle = term.lower()
        if needle in self.display_name.lower():
            return True
        return bool(
            self.last_message_preview
            and needle in self.last_message_preview.lower()
        )
