"""
Temp chunk store: in-flight chunks of chunked uploads, one file per chunk named
`{upload_id}_chunk_{index}` in the shared temp directory.
"""
import logging
import time
from pathlib import Path

from coursecompass.core.errors import MissingChunkError, storage_error
from coursecompass.services.file_storage import TEMP, ensure_upload_dir, upload_dir, write_verified

logger = logging.getLogger(__name__)


def chunk_file_name(upload_id: str, chunk_index: int) -> str:
    return f"{upload_id}_chunk_{chunk_index}"


class TempChunkStore:
    def __init__(self, directory: Path | None = None):
        self._directory = directory

    @property
    def directory(self) -> Path:
        return self._directory if self._directory is not None else upload_dir(TEMP)

    def ensure(self) -> Path:
        if self._directory is None:
            return ensure_upload_dir(TEMP)
        self._directory.mkdir(parents=True, exist_ok=True)
        return self._directory

    def chunk_path(self, upload_id: str, chunk_index: int) -> Path:
        return self.directory / chunk_file_name(upload_id, chunk_index)

    def write_chunk(self, upload_id: str, chunk_index: int, data: bytes) -> int:
        """Persist one chunk (overwrites a previous attempt). Returns the verified size on disk."""
        self.ensure()
        path = self.chunk_path(upload_id, chunk_index)
        try:
            return write_verified(path, data)
        except OSError as e:
            logger.error("Failed to save chunk %s of %s: %s", chunk_index, upload_id, e, exc_info=True)
            path.unlink(missing_ok=True)
            raise storage_error("Failed to save chunk") from e

    def has_chunk(self, upload_id: str, chunk_index: int) -> bool:
        return self.chunk_path(upload_id, chunk_index).is_file()

    def read_chunk(self, upload_id: str, chunk_index: int) -> bytes:
        path = self.chunk_path(upload_id, chunk_index)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise MissingChunkError(upload_id, chunk_index) from None

    def read_all(self, upload_id: str, total_chunks: int) -> bytes:
        """Concatenate chunks 0..total_chunks-1 in index order. Fails on the first missing index."""
        parts = []
        for i in range(total_chunks):
            parts.append(self.read_chunk(upload_id, i))
        return b"".join(parts)

    def delete_chunks(self, upload_id: str, total_chunks: int) -> int:
        """Best-effort removal of every chunk of a session. Errors are logged, never raised."""
        deleted = 0
        for i in range(total_chunks):
            path = self.chunk_path(upload_id, i)
            try:
                path.unlink()
                deleted += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Failed to delete chunk %s of %s: %s", i, upload_id, e)
        return deleted

    def reap(self, max_age_seconds: float, now: float | None = None) -> dict:
        """Delete temp files whose mtime is older than `max_age_seconds`."""
        result = {"totalFiles": 0, "deletedFiles": 0, "failedDeletions": 0, "bytesFreed": 0, "errors": []}
        directory = self.directory
        if not directory.is_dir():
            return result
        cutoff = (now if now is not None else time.time()) - max_age_seconds
        for path in directory.iterdir():
            if not path.is_file():
                continue
            result["totalFiles"] += 1
            try:
                st = path.stat()
                if st.st_mtime < cutoff:
                    path.unlink()
                    result["deletedFiles"] += 1
                    result["bytesFreed"] += st.st_size
            except OSError as e:
                result["failedDeletions"] += 1
                result["errors"].append(f"Error deleting temp file {path.name}: {e}")
        return result
