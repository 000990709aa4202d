"""Attachment upload schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class AttachmentUploadRequest(BaseModel):
    """Base64 file body plus metadata."""

    file: str = Field(min_length=1, description="Base64-encoded file content")
    filename: str = Field(min_length=1, max_length=255)
    content_type: str = Field(min_length=1, max_length=255)
    conversation_id: str | None = None


class AttachmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    url: str
    filename: str
    size: int
    content_type: str
    uploaded_at: datetime
