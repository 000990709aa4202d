"""Message attachment uploads to Supabase Storage or a local directory."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from skillchat.config import Settings, get_settings
from skillchat.models.base import utcnow

if TYPE_CHECKING:
    from supabase import Client

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


class AttachmentUploadError(RuntimeError):
    """Raised when the attachment backend rejects or fails an upload."""


@dataclass(slots=True)
class AttachmentDescriptor:
    """Durable reference returned by an upload; the only thing messages store."""

    key: str
    url: str
    filename: str
    size: int
    content_type: str
    uploaded_at: datetime = field(default_factory=utcnow)


class AttachmentUploader(Protocol):
    """Protocol for attachment storage backends."""

    def upload(
        self,
        data: bytes,
        filename: str,
        content_type: str,
        conversation_id: str | None = None,
    ) -> AttachmentDescriptor:
        """Store the bytes and return their public descriptor."""

    def delete(self, key: str) -> None:
        """Remove a previously uploaded object."""


def generate_attachment_key(conversation_id: str | None, filename: str, *, now_ms: int | None = None) -> str:
    """Return `messages/<conversation|general>/<epoch_ms>-<sanitized filename>`."""

    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    sanitized = _UNSAFE_FILENAME_CHARS.sub("_", filename)
    prefix = f"messages/{conversation_id}" if conversation_id else "messages/general"
    return f"{prefix}/{timestamp}-{sanitized}"


class LocalAttachmentUploader:
    """Writes attachments below a directory served at `public_base_url`."""

    def __init__(self, directory: str | Path, public_base_url: str) -> None:
        self.directory = Path(directory)
        self.public_base_url = public_base_url.rstrip("/")

    def upload(
        self,
        data: bytes,
        filename: str,
        content_type: str,
        conversation_id: str | None = None,
    ) -> AttachmentDescriptor:
        key = generate_attachment_key(conversation_id, filename)
        target = self.directory / key
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise AttachmentUploadError(f"Failed to store attachment {filename}") from exc
        logger.info("attachments.uploaded backend=local key=%s size=%s", key, len(data))
        return AttachmentDescriptor(
            key=key,
            url=f"{self.public_base_url}/{key}",
            filename=filename,
            size=len(data),
            content_type=content_type,
        )

    def delete(self, key: str) -> None:
        (self.directory / key).unlink(missing_ok=True)


class SupabaseAttachmentUploader:
    """Uploads attachments into one Supabase Storage bucket."""

    def __init__(self, client: Client, bucket: str) -> None:
        self.client = client
        self.bucket = bucket

    def upload(
        self,
        data: bytes,
        filename: str,
        content_type: str,
        conversation_id: str | None = None,
    ) -> AttachmentDescriptor:
        key = generate_attachment_key(conversation_id, filename)
        storage = self.client.storage.from_(self.bucket)
        try:
            storage.upload(
                path=key,
                file=data,
                file_options={"content-type": content_type, "cache-control": "3600", "upsert": "false"},
            )
            url = storage.get_public_url(key)
        except Exception as exc:
            logger.exception("attachments.upload_failed backend=supabase key=%s", key)
            raise AttachmentUploadError(f"Failed to upload attachment {filename}") from exc
        logger.info("attachments.uploaded backend=supabase key=%s size=%s", key, len(data))
        return AttachmentDescriptor(
            key=key,
            url=url,
            filename=filename,
            size=len(data),
            content_type=content_type,
        )

    def delete(self, key: str) -> None:
        try:
            self.client.storage.from_(self.bucket).remove([key])
        except Exception as exc:
            raise AttachmentUploadError(f"Failed to delete attachment {key}") from exc


def get_attachment_uploader(settings: Settings | None = None) -> AttachmentUploader:
    """Return the configured attachment backend."""

    settings = settings or get_settings()
    if settings.attachment_backend == "supabase":
        if not settings.supabase_url or not settings.supabase_key:
            raise AttachmentUploadError("SUPABASE_URL and SUPABASE_KEY are required for Supabase attachments")
        from supabase import create_client

        return SupabaseAttachmentUploader(create_client(settings.supabase_url, settings.supabase_key), settings.supabase_bucket)
    return LocalAttachmentUploader(settings.attachment_dir, settings.attachment_public_base_url)
