"""Media upload endpoint for message attachments."""

from typing import Annotated

from fastapi import APIRouter, File, UploadFile
from pydantic import BaseModel

from messenger_outreach.api.dependencies import CurrentUserDep, MediaServiceDep
from messenger_outreach.models import MediaAttachment
from messenger_outreach.services.media.service import UploadedFile

router = APIRouter(prefix="/uploads", tags=["Uploads"])


class UploadResponse(BaseModel):
    success: bool
    files: list[MediaAttachment]
    uploaded: int
    failed: int


@router.post("", response_model=UploadResponse)
async def upload_media(
    user: CurrentUserDep,
    media: MediaServiceDep,
    files: Annotated[list[UploadFile], File()],
) -> UploadResponse:
    """Store files for use as message attachments; rejected files carry an error."""
    uploaded = [
        UploadedFile(
            filename=f.filename or "file",
            content_type=f.content_type or "application/octet-stream",
            content=await f.read(),
        )
        for f in files
    ]
    attachments = await media.upload(user.id, uploaded)
    failed = sum(1 for a in attachments if a.error)
    return UploadResponse(
        success=failed < len(attachments),
        files=attachments,
        uploaded=len(attachments) - failed,
        failed=failed,
    )
