"""Attachment data models."""

from dataclasses import dataclass
from enum import Enum

from ..errors import UploadFailureReason


class UploadStatus(str, Enum):
    UPLOADING = "uploading"
    READY = "ready"
    FAILED = "failed"


class AttachmentKind(str, Enum):
    """Coarse file category shown by the chat surface."""

    IMAGE = "image"
    AUDIO = "audio"
    DOCUMENT = "document"

    @classmethod
    def from_content_type(cls, content_type: str) -> "AttachmentKind":
        major = content_type.split("/", 1)[0].lower()
        if major == "image":
            return cls.IMAGE
        if major == "audio":
            return cls.AUDIO
        return cls.DOCUMENT


@dataclass(frozen=True)
class FileHandle:
    """A file picked by the user, ready to be uploaded."""

    name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class Attachment:
    """A file attached to a message (image, document, audio)."""

    id: str
    message_id: str
    file_name: str
    content_type: str
    size: int
    status: UploadStatus = UploadStatus.UPLOADING
    storage_ref: str | None = None
    failure: UploadFailureReason | None = None

    @property
    def kind(self) -> AttachmentKind:
        return AttachmentKind.from_content_type(self.content_type)
