"""Attachment API routes."""

import base64
import binascii

from fastapi import APIRouter, HTTPException, Response

from ...app import Application
from ...errors import ChatError
from ...models import FileHandle, UploadStatus
from ..errors import UPLOAD_FAILURE_STATUS_CODES, http_error
from ..schemas import (
    AttachFileRequest,
    AttachmentResponse,
    MessageResponse,
    attachment_to_dict,
    message_to_dict,
)


def create_attachments_router(app: Application) -> APIRouter:
    """Create attachments router."""
    router = APIRouter(prefix="/api", tags=["attachments"])

    @router.post(
        "/conversations/{conversation_id}/attachments",
        response_model=MessageResponse,
        status_code=201,
    )
    async def attach_file(conversation_id: str, request: AttachFileRequest) -> dict:
        """Upload a file and post it to the conversation.

        Responds once the upload has settled. A rejected upload keeps its
        hosting message in the conversation as failed.
        """
        try:
            data = base64.b64decode(request.content_base64, validate=True)
        except binascii.Error:
            raise HTTPException(status_code=422, detail="content_base64 is not valid base64")

        try:
            message = await app.store.attach_file(
                conversation_id,
                FileHandle(
                    name=request.file_name,
                    content_type=request.content_type,
                    data=data,
                ),
            )
            attachment = await app.store.wait_for_upload(message.id)
        except ChatError as e:
            raise http_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

        if attachment.status == UploadStatus.FAILED:
            raise HTTPException(
                status_code=UPLOAD_FAILURE_STATUS_CODES[attachment.failure],
                detail={
                    "reason": attachment.failure.value,
                    "message_id": message.id,
                    "attachment_id": attachment.id,
                },
            )
        return message_to_dict(app.store.get_message(message.id), app.store)

    @router.get("/attachments/{attachment_id}", response_model=AttachmentResponse)
    async def get_attachment(attachment_id: str) -> dict:
        try:
            return attachment_to_dict(app.store.get_attachment(attachment_id))
        except ChatError as e:
            raise http_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/attachments/{attachment_id}/content")
    async def download_attachment(attachment_id: str) -> Response:
        """Raw bytes of a ready attachment."""
        try:
            attachment = app.store.get_attachment(attachment_id)
            if attachment.status != UploadStatus.READY or not attachment.storage_ref:
                raise HTTPException(status_code=409, detail="Attachment is not ready")
            data = await app.backend.read_file(attachment.storage_ref)
        except HTTPException:
            raise
        except ChatError as e:
            raise http_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

        return Response(
            content=data,
            media_type=attachment.content_type,
            headers={"Content-Disposition": f'attachment; filename="{attachment.file_name}"'},
        )

    return router
