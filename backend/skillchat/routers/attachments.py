"""Attachment upload route."""

import base64
import binascii

from fastapi import APIRouter, Depends, HTTPException
from starlette.concurrency import run_in_threadpool

from skillchat.auth import get_current_user_id
from skillchat.dependencies import get_uploader
from skillchat.schemas.attachment import AttachmentRead, AttachmentUploadRequest
from skillchat.schemas.common import ApiResponse
from skillchat.services.attachments import AttachmentUploader, AttachmentUploadError

router = APIRouter()


@router.post("/attachments", response_model=ApiResponse[AttachmentRead], status_code=201)
async def upload_attachment(
    payload: AttachmentUploadRequest,
    _: str = Depends(get_current_user_id),
    uploader: AttachmentUploader = Depends(get_uploader),
) -> ApiResponse[AttachmentRead]:
    """Store a base64-encoded file and return the descriptor to attach to a message."""

    try:
        data = base64.b64decode(payload.file, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail="file must be valid base64") from exc

    try:
        descriptor = await run_in_threadpool(
            uploader.upload,
            data,
            payload.filename,
            payload.content_type,
            payload.conversation_id,
        )
    except AttachmentUploadError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return ApiResponse(data=AttachmentRead.model_validate(descriptor))
