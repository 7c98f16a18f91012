"""
Attachment metadata validation.

The binary upload happens elsewhere; chat messages only carry the resulting
URL, file name and size, which are checked here before anything is sent.
"""

import mimetypes
import os
from dataclasses import dataclass
from enum import Enum

from app.exceptions import ValidationError
from app.settings import settings


class AttachmentType(str, Enum):
    """File type categories for attachments."""
    IMAGE = "image"  # jpg, png, gif, webp, svg
    DOCUMENT = "document"  # pdf, doc, docx, xls, xlsx, ppt, pptx
    TEXT = "text"  # txt, md, csv, json, xml
    ARCHIVE = "archive"  # zip, tar, gz
    OTHER = "other"


# MIME type to AttachmentType mapping
MIME_TYPE_MAP = {
    "image/jpeg": AttachmentType.IMAGE,
    "image/png": AttachmentType.IMAGE,
    "image/gif": AttachmentType.IMAGE,
    "image/webp": AttachmentType.IMAGE,
    "image/svg+xml": AttachmentType.IMAGE,
    "application/pdf": AttachmentType.DOCUMENT,
    "application/msword": AttachmentType.DOCUMENT,
    "application/vnd.ms-excel": AttachmentType.DOCUMENT,
    "application/vnd.ms-powerpoint": AttachmentType.DOCUMENT,
    "text/plain": AttachmentType.TEXT,
    "text/markdown": AttachmentType.TEXT,
    "text/csv": AttachmentType.TEXT,
    "application/json": AttachmentType.TEXT,
    "application/zip": AttachmentType.ARCHIVE,
    "application/gzip": AttachmentType.ARCHIVE,
}

ALLOWED_EXTENSIONS = {
    # Images
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg",
    # Documents
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    # Text
    ".txt", ".md", ".csv", ".json", ".xml",
    # Archives
    ".zip", ".tar", ".gz", ".tgz",
}


def get_attachment_type(file_name: str) -> AttachmentType:
    """Categorize a file by the MIME type its name implies."""
    mime_type, _ = mimetypes.guess_type(file_name)
    if not mime_type:
        return AttachmentType.OTHER
    if mime_type in MIME_TYPE_MAP:
        return MIME_TYPE_MAP[mime_type]
    if mime_type.startswith("image/"):
        return AttachmentType.IMAGE
    if mime_type.startswith("text/"):
        return AttachmentType.TEXT
    return AttachmentType.OTHER


def is_allowed_extension(file_name: str) -> bool:
    ext = os.path.splitext(file_name)[1].lower()
    return ext in ALLOWED_EXTENSIONS


@dataclass(frozen=True)
class FileMeta:
    """Attachment metadata produced by the upload step."""

    url: str
    name: str
    size: int | None = None

    @property
    def attachment_type(self) -> AttachmentType:
        return get_attachment_type(self.name)

    @property
    def message_type(self) -> str:
        return "image" if self.attachment_type == AttachmentType.IMAGE else "file"


def validate_file_meta(file_meta: FileMeta) -> FileMeta:
    """Reject attachments that break the upload limits.

    Raises:
        ValidationError: missing URL or name, oversized or disallowed file
    """
    if not file_meta.url or not file_meta.url.strip():
        raise ValidationError("File URL is required")
    if not file_meta.name or not file_meta.name.strip():
        raise ValidationError("File name is required")
    if file_meta.size is not None:
        if file_meta.size < 0:
            raise ValidationError("File size must not be negative")
        if file_meta.size > settings.upload_max_size_bytes:
            raise ValidationError(f"File too large. Maximum size is {settings.upload_max_size_mb}MB")
    if not is_allowed_extension(file_meta.name):
        raise ValidationError(f"File type not allowed: {file_meta.name}")
    return file_meta


def upload_config() -> dict:
    """Upload limits advertised to clients."""
    return {
        "maxFileSize": settings.upload_max_size_bytes,
        "maxFileSizeMb": settings.upload_max_size_mb,
        "allowedTypes": settings.upload_allowed_types_list,
        "allowedExtensions": sorted(ALLOWED_EXTENSIONS),
    }
