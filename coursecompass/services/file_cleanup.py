"""
Housekeeping for the upload root: reap abandoned temp chunks (and their sessions), and remove stored
files no row references any more.
"""
import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from coursecompass.config import get_settings
from coursecompass.database import SessionLocal
from coursecompass.models.course import Course, Lesson
from coursecompass.models.user import User
from coursecompass.services import upload_sessions
from coursecompass.services.chunk_store import TempChunkStore
from coursecompass.services.file_storage import (
    AVATARS,
    PUBLIC_CATEGORIES,
    THUMBNAILS,
    VIDEOS,
    public_path,
    upload_dir,
)

logger = logging.getLogger(__name__)

# Which column references files of each category.
_REFERENCE_COLUMNS = {
    AVATARS: User.avatar,
    THUMBNAILS: Course.thumbnail,
    VIDEOS: Lesson.video_url,
}


def _empty_result() -> dict:
    return {"totalFiles": 0, "deletedFiles": 0, "failedDeletions": 0, "bytesFreed": 0, "errors": []}


def cleanup_temp_files(db: Session, store: TempChunkStore | None = None, max_age_hours: int | None = None) -> dict:
    """Delete temp chunks older than the max age and the upload sessions untouched for as long."""
    store = store or TempChunkStore()
    hours = max_age_hours if max_age_hours is not None else get_settings().temp_file_max_age_hours
    result = store.reap(hours * 3600)
    result["staleSessions"] = upload_sessions.delete_stale_sessions(
        db, datetime.utcnow() - timedelta(hours=hours)
    )
    return result


def _referenced_names(db: Session, category: str) -> set[str]:
    column = _REFERENCE_COLUMNS[category]
    prefix = public_path(category, "")
    rows = db.query(column).filter(column.isnot(None), column.like(f"{prefix}%"))
    return {url[len(prefix):] for (url,) in rows}


def cleanup_orphaned_files(db: Session) -> dict:
    """Delete files in avatars/, thumbnails/ and videos/ that no User/Course/Lesson row points to."""
    result = _empty_result()
    for category in PUBLIC_CATEGORIES:
        directory = upload_dir(category)
        if not directory.is_dir():
            continue
        referenced = _referenced_names(db, category)
        for path in directory.iterdir():
            if not path.is_file() or path.name.startswith("."):
                continue
            result["totalFiles"] += 1
            if path.name in referenced:
                continue
            try:
                size = path.stat().st_size
                path.unlink()
                result["deletedFiles"] += 1
                result["bytesFreed"] += size
            except OSError as e:
                result["failedDeletions"] += 1
                result["errors"].append(f"Error deleting {category}/{path.name}: {e}")
    return result


def run_cleanup(db: Session, store: TempChunkStore | None = None) -> dict:
    orphaned = cleanup_orphaned_files(db)
    temp = cleanup_temp_files(db, store)
    return {
        "orphanedFiles": orphaned,
        "tempFiles": temp,
        "totalBytesFreed": orphaned["bytesFreed"] + temp["bytesFreed"],
    }


def _reap_once() -> dict:
    db = SessionLocal()
    try:
        return cleanup_temp_files(db)
    finally:
        db.close()


async def temp_file_reaper(interval_seconds: int):
    """Background task: reap expired temp chunks every `interval_seconds`."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await asyncio.to_thread(_reap_once)
            if result["deletedFiles"] or result["staleSessions"]:
                logger.info(
                    "Temp reaper removed %d files (%d bytes), %d stale sessions",
                    result["deletedFiles"], result["bytesFreed"], result["staleSessions"],
                )
            for err in result["errors"]:
                logger.warning(err)
        except Exception:
            logger.exception("Temp reaper run failed")
