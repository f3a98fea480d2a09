"""
Per-request storage for uploaded exam pages.

Uploads are spooled to a private directory under the configured temp dir
for the lifetime of one grading request. The pipeline discards each file
right after extraction; whatever is left is removed when the request scope
closes.
"""
import logging
import shutil
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional

import aiofiles

from ..config import settings

logger = logging.getLogger(__name__)


class ExamFile(ABC):
    """An uploaded page the pipeline can read once and then discard."""

    filename: str
    content_type: str

    @abstractmethod
    async def read(self) -> bytes:
        """Return the file content."""

    @abstractmethod
    async def discard(self) -> None:
        """Release the backing storage. Safe to call more than once."""

    @property
    def size(self) -> int:
        return 0


class InMemoryExamFile(ExamFile):
    """Page held in memory (CLI runs and tests)."""

    def __init__(self, data: bytes, filename: str = "page.png", content_type: str = "image/png"):
        self._data: Optional[bytes] = data
        self.filename = filename
        self.content_type = content_type
        self._size = len(data or b"")

    @property
    def size(self) -> int:
        return self._size

    async def read(self) -> bytes:
        return self._data or b""

    async def discard(self) -> None:
        self._data = None


class SpooledExamFile(ExamFile):
    """Page spooled to disk inside an upload scope."""

    def __init__(self, path: Path, filename: str, content_type: str, size: int):
        self.path = path
        self.filename = filename
        self.content_type = content_type
        self._size = size

    @property
    def size(self) -> int:
        return self._size

    async def read(self) -> bytes:
        async with aiofiles.open(self.path, "rb") as f:
            return await f.read()

    async def discard(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
            logger.debug(f"Discarded upload {self.filename}")
        except OSError as e:
            logger.warning(f"Failed to discard upload {self.filename}: {e}")


class UploadScope:
    """Directory holding the uploads of a single request."""

    def __init__(self, directory: Path):
        self.directory = directory
        self.files: List[SpooledExamFile] = []

    async def spool(self, data: bytes, filename: str, content_type: str = "image/png") -> SpooledExamFile:
        safe_name = "".join(c for c in Path(filename or "upload").name if c.isalnum() or c in "._-") or "upload"
        path = self.directory / f"{len(self.files):03d}_{safe_name}"
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        exam_file = SpooledExamFile(path, filename or safe_name, content_type or "image/png", len(data))
        self.files.append(exam_file)
        return exam_file

    def cleanup(self) -> None:
        shutil.rmtree(self.directory, ignore_errors=True)


class UploadStorage:
    """Creates per-request upload scopes under temp_dir."""

    def __init__(self, temp_dir: Optional[str] = None):
        self.temp_dir = Path(temp_dir or settings.upload_temp_dir)

    @asynccontextmanager
    async def scope(self) -> AsyncIterator[UploadScope]:
        directory = self.temp_dir / uuid.uuid4().hex
        directory.mkdir(parents=True, exist_ok=True)
        scope = UploadScope(directory)
        try:
            yield scope
        finally:
            scope.cleanup()
            logger.debug(f"Removed upload scope {directory.name}")


_upload_storage: Optional[UploadStorage] = None


def get_upload_storage() -> UploadStorage:
    """Get or create the global UploadStorage instance."""
    global _upload_storage
    if _upload_storage is None:
        _upload_storage = UploadStorage()
    return _upload_storage
