"""Media uploads for message attachments."""

import re
from dataclasses import dataclass

import structlog

from messenger_outreach.core.config import Settings, settings as default_settings
from messenger_outreach.core.exceptions import StorageError, ValidationFailed
from messenger_outreach.models import MediaAttachment, MediaType, utc_now
from messenger_outreach.storage.base import StorageBackend

logger = structlog.get_logger()

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class UploadedFile:
    filename: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


def sanitize_filename(name: str) -> str:
    """Keep letters, digits, dot, dash and underscore."""
    cleaned = _UNSAFE_CHARS.sub("_", name.rsplit("/", 1)[-1].rsplit("\\", 1)[-1]).strip("._")
    return cleaned or "file"


def media_type_for(mime_type: str) -> MediaType:
    for prefix, media_type in (
        ("image/", MediaType.IMAGE),
        ("video/", MediaType.VIDEO),
        ("audio/", MediaType.AUDIO),
    ):
        if mime_type.startswith(prefix):
            return media_type
    return MediaType.FILE


class MediaService:
    """Validates files and stores them in the media bucket."""

    def __init__(self, storage: StorageBackend, settings: Settings | None = None) -> None:
        self.storage = storage
        self.settings = settings or default_settings

    def _validate(self, file: UploadedFile) -> str | None:
        if file.size > self.settings.upload_max_bytes:
            limit_mb = self.settings.upload_max_bytes // (1024 * 1024)
            return f"File {file.filename} is too large. Maximum size is {limit_mb}MB."
        if file.content_type not in self.settings.upload_allowed_types:
            return f"File type {file.content_type} is not supported."
        return None

    async def upload(self, user_id: str, files: list[UploadedFile]) -> list[MediaAttachment]:
        """Upload files; rejected or failed files come back with ``error`` set."""
        if not files:
            raise ValidationFailed("No files provided")

        timestamp = int(utc_now().timestamp() * 1000)
        attachments = []
        for index, file in enumerate(files):
            attachment = MediaAttachment(
                type=media_type_for(file.content_type),
                filename=file.filename,
                size=file.size,
                mime_type=file.content_type,
            )

            error = self._validate(file)
            if error:
                attachment.error = error
                attachments.append(attachment)
                logger.info("Upload rejected", filename=file.filename, reason=error)
                continue

            path = f"media/{user_id}/{timestamp}-{index}-{sanitize_filename(file.filename)}"
            try:
                attachment.url = await self.storage.upload_media(path, file.content, file.content_type)
            except StorageError as e:
                attachment.error = f"Upload failed: {e.message}"
                logger.error("Upload failed", filename=file.filename, error=e.message)
            attachments.append(attachment)

        logger.info(
            "Media uploaded",
            user_id=user_id,
            files=len(files),
            failed=sum(1 for a in attachments if a.error),
        )
        return attachments
