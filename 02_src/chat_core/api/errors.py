"""Mapping of core errors to HTTP responses."""

from fastapi import HTTPException

from ..errors import (
    AlreadyVotedError,
    ChatError,
    InvalidInputError,
    InvalidOptionError,
    NotFoundError,
    PollClosedError,
    TooLargeError,
    TransportError,
    UnsupportedTypeError,
    UploadFailureReason,
)

_STATUS_CODES: dict[type[ChatError], int] = {
    NotFoundError: 404,
    InvalidInputError: 422,
    InvalidOptionError: 422,
    AlreadyVotedError: 409,
    PollClosedError: 409,
    TooLargeError: 413,
    UnsupportedTypeError: 415,
    TransportError: 502,
}

UPLOAD_FAILURE_STATUS_CODES: dict[UploadFailureReason, int] = {
    UploadFailureReason.TOO_LARGE: 413,
    UploadFailureReason.UNSUPPORTED_TYPE: 415,
    UploadFailureReason.TRANSPORT_ERROR: 502,
    UploadFailureReason.CANCELLED: 409,
}


def http_error(error: ChatError) -> HTTPException:
    """HTTPException for a core error; unknown kinds become 500."""
    for cls in type(error).__mro__:
        if cls in _STATUS_CODES:
            return HTTPException(status_code=_STATUS_CODES[cls], detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
