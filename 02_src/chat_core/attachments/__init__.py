"""Attachment upload pipeline."""

from .uploader import AttachmentUploader, IAttachmentUploader, UploadHandle

__all__ = ["AttachmentUploader", "IAttachmentUploader", "UploadHandle"]
