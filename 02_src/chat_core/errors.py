"""Error taxonomy of the messaging core."""

from enum import Enum


class ChatError(Exception):
    """Base class for every error raised by the messaging core."""


class NotFoundError(ChatError):
    """Unknown conversation, message, poll or attachment."""


class InvalidInputError(ChatError):
    """Malformed request: empty text, bad poll options, wrong state."""


class AlreadyVotedError(ChatError):
    """The voter already has a vote recorded on this poll."""


class PollClosedError(ChatError):
    """The poll no longer accepts votes."""


class InvalidOptionError(ChatError):
    """Option index outside the poll's option list."""


class TransportError(ChatError):
    """Network or backend failure."""


class UploadFailureReason(str, Enum):
    """Why an attachment upload did not reach the ready state."""

    TOO_LARGE = "too_large"
    UNSUPPORTED_TYPE = "unsupported_type"
    TRANSPORT_ERROR = "transport_error"
    CANCELLED = "cancelled"


class AttachmentRejectedError(ChatError):
    """The file was refused before or during storage."""

    reason: UploadFailureReason


class TooLargeError(AttachmentRejectedError):
    reason = UploadFailureReason.TOO_LARGE


class UnsupportedTypeError(AttachmentRejectedError):
    reason = UploadFailureReason.UNSUPPORTED_TYPE


class InvariantViolation(RuntimeError):
    """Internal consistency broken (tally/voter pairing, message order).

    Not a ChatError: this is a bug, callers are not expected to recover.
    """
