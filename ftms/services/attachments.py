"""Local-disk attachment store for revenue documents (receipts, slips)."""

import logging
import os
import uuid
from dataclasses import dataclass
from typing import Optional

from ftms.config import settings
from ftms.services.errors import DependencyError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class IncomingFile:
    filename: str
    content: bytes
    mime_type: Optional[str] = None


@dataclass
class StoredFile:
    file_id: str
    original_name: str
    mime_type: Optional[str]
    size_bytes: int


class AttachmentStore:
    """Files live under ``<upload_dir>/revenue/<revenue_code>/``.

    ``file_id`` is the path relative to ``upload_dir``.
    """

    def __init__(self, root: Optional[str] = None, max_size_mb: Optional[int] = None):
        self.root = root or settings.upload_dir
        self.max_bytes = (max_size_mb or settings.max_upload_size_mb) * 1024 * 1024

    def _path(self, file_id: str) -> str:
        path = os.path.normpath(os.path.join(self.root, file_id))
        if not path.startswith(os.path.normpath(self.root) + os.sep):
            raise ValidationError("Invalid attachment path", field="file_id")
        return path

    def save(self, revenue_code: str, incoming: IncomingFile) -> StoredFile:
        if len(incoming.content) > self.max_bytes:
            raise ValidationError(f"{incoming.filename} is too large", field="files")
        safe_name = os.path.basename(incoming.filename or "upload") or "upload"
        file_id = os.path.join("revenue", revenue_code, f"{uuid.uuid4().hex}_{safe_name}")
        path = self._path(file_id)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(incoming.content)
        except OSError as exc:
            raise DependencyError(f"Failed to store {safe_name}: {exc}", field="files") from exc
        return StoredFile(
            file_id=file_id,
            original_name=safe_name,
            mime_type=incoming.mime_type or "application/octet-stream",
            size_bytes=len(incoming.content),
        )

    def delete(self, file_id: str) -> bool:
        path = self._path(file_id)
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        return True
