# app/services/storage_service.py
import logging
import os
import shutil
import uuid
from typing import Optional

from fastapi import UploadFile

from ..config import get_settings
from ..core.errors import DependencyUnavailableError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {"jpg", "jpeg", "png", "webp", "pdf"}


class LocalFileStorage:
    """Writes uploads under <root>/<category>/<uuid>.<ext> and hands back a public URL"""

    def __init__(self, root: Optional[str] = None, public_url: Optional[str] = None,
                 max_file_size: Optional[int] = None):
        settings = get_settings()
        self.root = root or settings.storage_local_dir
        self.public_url = (public_url or settings.storage_public_url).rstrip("/")
        self.max_file_size = max_file_size or settings.storage_max_file_size

    @staticmethod
    def _extension(filename: Optional[str]) -> str:
        if not filename or "." not in filename:
            raise ValidationError("File name must carry an extension")
        extension = filename.rsplit(".", 1)[1].lower()
        if extension not in ALLOWED_EXTENSIONS:
            raise ValidationError(f"Unsupported file type .{extension}; allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}")
        return extension

    def _size(self, upload: UploadFile) -> int:
        if upload.size is not None:
            return upload.size
        upload.file.seek(0, os.SEEK_END)
        size = upload.file.tell()
        upload.file.seek(0)
        return size

    def save(self, upload: UploadFile, category: str) -> str:
        extension = self._extension(upload.filename)
        size = self._size(upload)
        if size == 0:
            raise ValidationError("Uploaded file is empty")
        if size > self.max_file_size:
            raise ValidationError(f"File exceeds the {self.max_file_size} byte limit")

        name = f"{uuid.uuid4().hex}.{extension}"
        directory = os.path.join(self.root, category)
        try:
            os.makedirs(directory, exist_ok=True)
            upload.file.seek(0)
            with open(os.path.join(directory, name), "wb") as buffer:
                shutil.copyfileobj(upload.file, buffer)
        except OSError as e:
            logger.error(f"Failed to store upload in {directory}: {e}")
            raise DependencyUnavailableError("File storage is unavailable, retry later")
        return f"{self.public_url}/{category}/{name}"

    def delete(self, url: Optional[str]) -> bool:
        """Remove a previously stored file given its public URL; unknown URLs are ignored"""
        prefix = f"{self.public_url}/"
        if not url or not url.startswith(prefix):
            return False
        relative = url[len(prefix):]
        path = os.path.normpath(os.path.join(self.root, relative))
        if not path.startswith(os.path.normpath(self.root) + os.sep):
            return False
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Could not remove stored file {path}: {e}")
            return False
        return True


def get_storage() -> LocalFileStorage:
    return LocalFileStorage()
