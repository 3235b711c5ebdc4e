"""Poll rules."""

from .engine import DEFAULT_MAX_POLL_OPTIONS, MIN_POLL_OPTIONS, PollEngine

__all__ = ["DEFAULT_MAX_POLL_OPTIONS", "MIN_POLL_OPTIONS", "PollEngine"]
