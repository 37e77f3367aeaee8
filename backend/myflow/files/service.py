"""File storage service for MyFlow.

Handles file storage on disk for chat rooms.
Files are stored in: uploads/{room_id}/{timestamp}-{random}-{name}

A room's directory is removed when the room is destroyed, and individual
payloads are removed when their message is hard-deleted or expires.
"""
import logging
import random
import shutil
import time
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import quote, unquote

from myflow.errors import InvalidPayloadError

from .schemas import UPLOADS_URL_PREFIX, StoredFile, is_image

logger = logging.getLogger(__name__)

# Callable producing a thumbnail next to the given image and returning its path
Thumbnailer = Callable[[Path], Path]


class FileStorageService:
    """Service for managing room-scoped file uploads."""

    _instance: Optional["FileStorageService"] = None
    _upload_dir: str = "uploads"

    def __init__(
        self,
        upload_dir: Optional[str] = None,
        blocked_extensions: Optional[list] = None,
        max_file_size_bytes: int = 0,
        thumbnailer: Optional[Thumbnailer] = None,
    ):
        """Initialize the file storage service.

        Args:
            upload_dir: Root directory for uploads.
            blocked_extensions: Lower-case extensions (with dot) that are rejected.
            max_file_size_bytes: Upload size limit; 0 means unlimited.
            thumbnailer: Optional image thumbnail generator. Failures are
                tolerated and leave the file without a thumbnail.
        """
        if upload_dir:
            self._upload_dir = upload_dir
        self.blocked_extensions = {ext.lower() for ext in (blocked_extensions or [])}
        self.max_file_size_bytes = max_file_size_bytes
        self.thumbnailer = thumbnailer
        self._ensure_upload_dir()

    @classmethod
    def get_instance(cls, upload_dir: Optional[str] = None, **kwargs) -> "FileStorageService":
        """Get or create the singleton instance."""
        if cls._instance is None:
            cls._instance = cls(upload_dir, **kwargs)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    @property
    def upload_dir(self) -> Path:
        return Path(self._upload_dir)

    def _ensure_upload_dir(self) -> None:
        """Ensure the upload directory exists."""
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    def _get_room_dir(self, room_id: str) -> Path:
        """Get the directory path for a room's files."""
        return self.upload_dir / room_id

    def url_for(self, room_id: str, stored_filename: str) -> str:
        return f"{UPLOADS_URL_PREFIX}/{quote(room_id)}/{quote(stored_filename)}"

    def validate_filename(self, filename: str) -> str:
        """Return the bare filename, rejecting blocked extensions.

        Raises:
            InvalidPayloadError: If the name is empty or its extension is blocked.
        """
        name = Path(filename or "").name
        if not name:
            raise InvalidPayloadError("File rejected or not provided")
        if Path(name).suffix.lower() in self.blocked_extensions:
            raise InvalidPayloadError("File extension not allowed for security reasons.")
        return name

    async def save_file(self, room_id: str, filename: str, content: bytes) -> StoredFile:
        """Save an uploaded file to disk, with a thumbnail for images.

        Args:
            room_id: Room ID the file belongs to
            filename: Original filename
            content: File content as bytes

        Returns:
            StoredFile with the download URL, size and optional thumbnail URL

        Raises:
            InvalidPayloadError: If the file is blocked or exceeds the size limit
        """
        name = self.validate_filename(filename)

        size_bytes = len(content)
        if self.max_file_size_bytes and size_bytes > self.max_file_size_bytes:
            raise InvalidPayloadError(
                f"File size ({size_bytes} bytes) exceeds limit "
                f"({self.max_file_size_bytes} bytes)"
            )

        stored_filename = f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}-{name}"

        room_dir = self._get_room_dir(room_id)
        room_dir.mkdir(parents=True, exist_ok=True)

        file_path = room_dir / stored_filename
        file_path.write_bytes(content)
        logger.info(f"Saved file: {file_path} ({size_bytes} bytes)")

        thumbnail_url = None
        if is_image(name) and self.thumbnailer is not None:
            thumbnail_url = self._make_thumbnail(room_id, file_path)

        return StoredFile(
            room_id=room_id,
            original_filename=name,
            stored_filename=stored_filename,
            url=self.url_for(room_id, stored_filename),
            size_bytes=size_bytes,
            thumbnail_url=thumbnail_url,
        )

    def _make_thumbnail(self, room_id: str, file_path: Path) -> Optional[str]:
        try:
            thumb_path = Path(self.thumbnailer(file_path))
        except Exception as e:
            logger.warning(f"Thumbnail generation failed for {file_path.name}: {e}")
            return None
        if thumb_path.parent.resolve() != file_path.parent.resolve():
            logger.warning(f"Thumbnail for {file_path.name} written outside its room dir")
            return None
        return self.url_for(room_id, thumb_path.name)

    def resolve(self, url: Optional[str]) -> Optional[Path]:
        """Map a public upload URL back to a path inside the upload directory.

        Returns None for foreign URLs and for paths escaping the upload dir.
        """
        if not url or not url.startswith(UPLOADS_URL_PREFIX + "/"):
            return None
        relative = unquote(url[len(UPLOADS_URL_PREFIX) + 1:])
        root = self.upload_dir.resolve()
        path = (root / relative).resolve()
        if root not in path.parents:
            return None
        return path

    def delete_payload(self, url: Optional[str], thumbnail_url: Optional[str] = None) -> int:
        """Delete a message's stored file and thumbnail.

        Missing files are not an error (deletion is idempotent).

        Returns:
            Number of files removed from disk
        """
        removed = 0
        for candidate in (url, thumbnail_url):
            path = self.resolve(candidate)
            if path is None or not path.exists():
                continue
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.error(f"Error deleting file {path}: {e}")
        return removed

    def delete_room_files(self, room_id: str) -> bool:
        """Delete a room's upload directory.

        Returns:
            True if a directory was removed
        """
        room_dir = self._get_room_dir(room_id)
        if not room_dir.exists():
            return False
        shutil.rmtree(room_dir, ignore_errors=True)
        logger.info(f"Deleted directory: {room_dir}")
        return True
