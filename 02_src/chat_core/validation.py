"""File acceptance rules shared by the uploader and the backend."""

from fnmatch import fnmatch

from .config import ChatSettings
from .errors import TooLargeError, UnsupportedTypeError
from .models import FileHandle


def is_allowed_content_type(content_type: str, patterns: tuple[str, ...]) -> bool:
    """Match a MIME type against glob patterns such as ``image/*``."""
    normalized = content_type.split(";", 1)[0].strip().lower()
    return any(fnmatch(normalized, pattern.lower()) for pattern in patterns)


def validate_file(file_handle: FileHandle, settings: ChatSettings) -> None:
    """Raise TooLargeError / UnsupportedTypeError for unacceptable files."""
    if file_handle.size > settings.max_upload_bytes:
        raise TooLargeError(
            f"{file_handle.name} is {file_handle.size} bytes, "
            f"limit is {settings.max_upload_bytes}"
        )
    if not is_allowed_content_type(
        file_handle.content_type, settings.allowed_content_types
    ):
        raise UnsupportedTypeError(
            f"{file_handle.name}: content type {file_handle.content_type!r} "
            "is not accepted"
        )
