"""AttachmentUploader: scoped file uploads with guaranteed finalization."""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Protocol

from ..backend import IChatBackend
from ..config import ChatSettings
from ..errors import (
    AttachmentRejectedError,
    TransportError,
    UploadFailureReason,
)
from ..logging_config import get_logger
from ..models import Attachment, FileHandle, UploadStatus
from ..validation import validate_file

logger = get_logger(__name__)


@dataclass
class UploadHandle:
    """Live view of one upload attempt."""

    attachment: Attachment
    task: asyncio.Task

    @property
    def done(self) -> bool:
        return self.task.done()

    def cancel(self) -> None:
        """Abort the upload; the attachment is finalized as cancelled."""
        self.task.cancel()

    async def wait(self) -> Attachment:
        """Wait until the upload settles, whatever the outcome."""
        await asyncio.wait({self.task})
        return self.attachment


class IAttachmentUploader(Protocol):
    """Scoped upload of files to storage."""

    def upload(self, file_handle: FileHandle, message_id: str) -> UploadHandle:
        """Start uploading; the handle is returned in the uploading state."""
        ...

    async def cancel_all(self) -> None:
        """Abort every running upload and wait for finalization."""
        ...


class AttachmentUploader:
    """Uploads files through a bounded pool of upload channels."""

    def __init__(self, backend: IChatBackend, settings: ChatSettings | None = None):
        self._backend = backend
        self._settings = settings or ChatSettings()
        self._channels = asyncio.Semaphore(self._settings.max_concurrent_uploads)
        self._handles: dict[str, UploadHandle] = {}
        self._open_channels = 0

    @property
    def in_flight(self) -> int:
        """Uploads that have not settled yet."""
        return len(self._handles)

    @property
    def open_channels(self) -> int:
        """Channels currently held by a running transfer."""
        return self._open_channels

    def upload(self, file_handle: FileHandle, message_id: str) -> UploadHandle:
        """Start uploading; the handle is returned in the uploading state."""
        attachment = Attachment(
            id=str(uuid.uuid4()),
            message_id=message_id,
            file_name=file_handle.name,
            content_type=file_handle.content_type,
            size=file_handle.size,
        )
        task = asyncio.create_task(self._run(attachment, file_handle))
        handle = UploadHandle(attachment=attachment, task=task)
        self._handles[attachment.id] = handle
        task.add_done_callback(lambda t: self._on_done(attachment.id, t))
        return handle

    def _on_done(self, attachment_id: str, task: asyncio.Task) -> None:
        handle = self._handles.pop(attachment_id, None)
        if task.cancelled():
            # Cancelled before its first step, _run never saw the cancellation
            if handle and handle.attachment.status == UploadStatus.UPLOADING:
                self._finalize(handle.attachment, failure=UploadFailureReason.CANCELLED)
        else:
            # Failures are recorded on the attachment itself
            task.exception()

    async def cancel_all(self) -> None:
        """Abort every running upload and wait for finalization."""
        handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.wait({handle.task for handle in handles})

    async def _run(self, attachment: Attachment, file_handle: FileHandle) -> str:
        try:
            validate_file(file_handle, self._settings)
            async with self._channels:
                self._open_channels += 1
                try:
                    storage_ref = await self._backend.store_file(file_handle)
                finally:
                    self._open_channels -= 1
        except AttachmentRejectedError as e:
            self._finalize(attachment, failure=e.reason)
            logger.warning(
                "Upload of %s rejected: %s",
                attachment.file_name,
                e,
                extra={"attachment_id": attachment.id},
            )
            raise
        except TransportError as e:
            self._finalize(attachment, failure=UploadFailureReason.TRANSPORT_ERROR)
            logger.error(
                "Upload of %s failed: %s",
                attachment.file_name,
                e,
                extra={"attachment_id": attachment.id},
            )
            raise
        except asyncio.CancelledError:
            self._finalize(attachment, failure=UploadFailureReason.CANCELLED)
            logger.info(
                "Upload of %s cancelled",
                attachment.file_name,
                extra={"attachment_id": attachment.id},
            )
            raise
        else:
            attachment.storage_ref = storage_ref
            attachment.status = UploadStatus.READY
            logger.info(
                "Upload of %s ready",
                attachment.file_name,
                extra={
                    "attachment_id": attachment.id,
                    "context": {"storage_ref": storage_ref},
                },
            )
            return storage_ref
        finally:
            if attachment.status == UploadStatus.UPLOADING:
                # Unexpected exception type: never leave the attachment uploading
                self._finalize(attachment, failure=UploadFailureReason.TRANSPORT_ERROR)

    @staticmethod
    def _finalize(attachment: Attachment, failure: UploadFailureReason) -> None:
        attachment.status = UploadStatus.FAILED
        attachment.failure = failure
