"""View-state data models."""

from dataclasses import dataclass
from enum import Enum


class LayoutMode(str, Enum):
    DESKTOP = "desktop"
    MOBILE_LIST = "mobile-list"
    MOBILE_CHAT = "mobile-chat"


@dataclass(frozen=True)
class ViewState:
    """Which conversation is selected and which panes are shown."""

    layout_mode: LayoutMode
    selected_conversation_id: str | None = None

    @property
    def list_visible(self) -> bool:
        return self.layout_mode != LayoutMode.MOBILE_CHAT

    @property
    def chat_visible(self) -> bool:
        # desktop always shows the chat pane, empty when nothing is selected
        return self.layout_mode != LayoutMode.MOBILE_LIST

    def is_showing(self, conversation_id: str) -> bool:
        """True when the chat pane currently displays this conversation."""
        return (
            self.chat_visible
            and self.selected_conversation_id == conversation_id
        )
