"""API routers."""

from . import attachments, control, conversations, events, polls, view

__all__ = ["attachments", "control", "conversations", "events", "polls", "view"]
