"""Media upload handling."""

from messenger_outreach.services.media.service import MediaService, UploadedFile, media_type_for

__all__ = ["MediaService", "UploadedFile", "media_type_for"]
