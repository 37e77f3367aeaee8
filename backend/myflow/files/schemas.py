"""Pydantic schemas and constants for room-scoped file storage.

Files are stored in room-scoped directories (uploads/{room_id}/) with
timestamp-prefixed filenames to prevent collisions. The message row that
announces the upload carries the metadata; nothing else is tracked.
"""
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

# Public URL prefix under which uploads are served
UPLOADS_URL_PREFIX = "/uploads"

# Extensions for which a thumbnail is attempted
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}


class StoredFile(BaseModel):
    """Result of persisting an upload.

    The url is what ends up in the message content; thumbnail_url is None
    when the file is not an image or thumbnail generation failed.
    """
    room_id: str = Field(..., description="Room the file belongs to")
    original_filename: str = Field(..., description="Name as uploaded")
    stored_filename: str = Field(..., description="Name on disk")
    url: str = Field(..., description="Public download URL")
    size_bytes: int = Field(..., description="File size in bytes")
    thumbnail_url: Optional[str] = Field(None, description="Public thumbnail URL")


def is_image(filename: str) -> bool:
    """Whether a thumbnail should be attempted for *filename*.

    Examples:
        >>> is_image("cat.PNG")
        True
        >>> is_image("notes.txt")
        False
    """
    return Path(filename).suffix.lower() in IMAGE_EXTENSIONS
