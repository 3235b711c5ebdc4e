"""Tests for file acceptance rules."""

import pytest

from chat_core.config import ChatSettings
from chat_core.errors import TooLargeError, UnsupportedTypeError, UploadFailureReason
from chat_core.models import FileHandle
from chat_core.validation import is_allowed_content_type, validate_file


class TestContentTypes:
    """Tests for is_allowed_content_type()."""

    @pytest.mark.parametrize(
        "content_type",
        ["image/png", "audio/mpeg", "application/pdf", "TEXT/PLAIN; charset=utf-8"],
    )
    def test_allowed(self, content_type):
        assert is_allowed_content_type(content_type, ChatSettings().allowed_content_types)

    @pytest.mark.parametrize("content_type", ["application/x-msdownload", "video/mp4"])
    def test_rejected(self, content_type):
        assert not is_allowed_content_type(content_type, ChatSettings().allowed_content_types)


class TestValidateFile:
    """Tests for validate_file()."""

    def test_too_large(self):
        settings = ChatSettings(max_upload_bytes=4)
        with pytest.raises(TooLargeError) as exc_info:
            validate_file(FileHandle("a.txt", "text/plain", b"12345"), settings)
        assert exc_info.value.reason == UploadFailureReason.TOO_LARGE

    def test_unsupported_type(self):
        with pytest.raises(UnsupportedTypeError) as exc_info:
            validate_file(FileHandle("a.exe", "application/x-msdownload", b"MZ"), ChatSettings())
        assert exc_info.value.reason == UploadFailureReason.UNSUPPORTED_TYPE

    def test_accepted(self):
        validate_file(FileHandle("a.txt", "text/plain", b"ok"), ChatSettings())
