"""
File Storage Service

This module stores uploaded report photos on the local filesystem under
``settings.UPLOAD_DIR``. Files are served back by the ``/uploads`` static
mount, so the URL of a stored file is derived from its relative path.
"""

import hashlib
import mimetypes
import uuid
from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from PIL import Image, UnidentifiedImageError

from app.core.config import settings
from app.core.exceptions import InternalError, ValidationError

# =============================================================================
# Logger Setup
# =============================================================================

logger = structlog.get_logger(__name__)

MAX_IMAGE_DIMENSION = 10000

# =============================================================================
# Storage Backend
# =============================================================================

class LocalFileStorage:
    """Local filesystem storage backend."""

    def __init__(self, base_path: Path, url_prefix: str = "/uploads"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.url_prefix = url_prefix.rstrip("/")

    def _get_full_path(self, file_path: str) -> Path:
        """Get full filesystem path, refusing paths that escape the base directory."""
        full_path = (self.base_path / file_path.lstrip("/")).resolve()
        if self.base_path.resolve() not in full_path.parents:
            raise ValidationError("Invalid file path", field="path")
        return full_path

    def url_for(self, file_path: str) -> str:
        return f"{self.url_prefix}/{file_path}".replace("\\", "/")

    def path_from_url(self, url: str) -> Optional[str]:
        """Map a public ``/uploads/...`` URL back to its stored relative path."""
        prefix = f"{self.url_prefix}/"
        if not url or not url.startswith(prefix):
            return None
        return url[len(prefix):]

    async def upload_file(
        self,
        file_data: bytes,
        filename: str,
        content_type: str,
        folder: str = ""
    ) -> Dict[str, Any]:
        """Write file to local filesystem."""
        file_ext = Path(filename or "").suffix.lower() or (mimetypes.guess_extension(content_type) or "")
        unique_name = f"{uuid.uuid4().hex}{file_ext}"

        if folder:
            (self.base_path / folder).mkdir(parents=True, exist_ok=True)
            file_path = f"{folder}/{unique_name}"
        else:
            file_path = unique_name

        try:
            self._get_full_path(file_path).write_bytes(file_data)
        except OSError as e:
            logger.error("Local file upload failed", filename=filename, error=str(e))
            raise InternalError("Failed to store file")

        logger.debug("File uploaded to local storage", filename=filename, path=file_path, size=len(file_data))

        return {
            "path": file_path,
            "url": self.url_for(file_path),
            "hash": hashlib.sha256(file_data).hexdigest(),
            "size": len(file_data),
            "backend": "local",
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
        }

    async def delete_file(self, file_path: str) -> bool:
        """Delete file from local filesystem."""
        try:
            full_path = self._get_full_path(file_path)
        except ValidationError:
            return False

        try:
            if full_path.exists():
                full_path.unlink()
                logger.debug("File deleted from local storage", path=file_path)
                return True
        except OSError as e:
            logger.error("Local file deletion failed", path=file_path, error=str(e))

        return False

    async def file_exists(self, file_path: str) -> bool:
        try:
            return self._get_full_path(file_path).exists()
        except ValidationError:
            return False


# =============================================================================
# Main File Storage Service
# =============================================================================

class FileStorageService:
    """Validates uploads and hands them to the storage backend."""

    def __init__(self, backend: Optional[LocalFileStorage] = None):
        self.backend = backend or LocalFileStorage(settings.UPLOAD_DIR, settings.UPLOAD_URL_PREFIX)

    def validate_file(self, file_data: bytes, content_type: str) -> None:
        """
        Validate uploaded file.

        Args:
            file_data: File content bytes
            content_type: Declared MIME type

        Raises:
            ValidationError: If file is empty, too large, of a disallowed type
                or not a decodable image
        """
        if not file_data:
            raise ValidationError("Uploaded file is empty", field="photo")

        max_size = settings.MAX_FILE_SIZE_MB * 1024 * 1024
        if len(file_data) > max_size:
            raise ValidationError(f"File size exceeds {settings.MAX_FILE_SIZE_MB}MB limit", field="photo")

        if content_type not in settings.ALLOWED_FILE_TYPES:
            raise ValidationError(f"File type {content_type} is not allowed", field="photo")

        try:
            image = Image.open(BytesIO(file_data))
            image.verify()
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise ValidationError(f"Invalid image file: {e}", field="photo")

        width, height = image.size
        if width > MAX_IMAGE_DIMENSION or height > MAX_IMAGE_DIMENSION:
            raise ValidationError("Image dimensions too large", field="photo")

    async def upload_file(
        self,
        file_data: bytes,
        filename: str,
        content_type: str,
        folder: str = "reports",
    ) -> Dict[str, Any]:
        """Validate and store a file. Returns the backend metadata."""
        self.validate_file(file_data, content_type)

        upload_result = await self.backend.upload_file(file_data, filename, content_type, folder)

        logger.info(
            "File uploaded successfully",
            filename=filename,
            size=len(file_data),
            path=upload_result["path"]
        )

        return upload_result

    async def delete_by_url(self, url: Optional[str]) -> bool:
        """Delete a previously stored file given its public URL."""
        if not url:
            return False
        file_path = self.backend.path_from_url(url)
        if not file_path:
            return False
        return await self.backend.delete_file(file_path)


__all__ = [
    "FileStorageService",
    "LocalFileStorage",
]
