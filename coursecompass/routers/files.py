"""
Serve stored uploads with access control. Supports Range requests so video players can seek:
GET /api/files/{category}/{name}  -> file stream (200, or 206 for a range)
POST /api/files/{category}/{name} -> metadata only
"""
import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.orm import Session

from coursecompass.auth import get_optional_user
from coursecompass.core import errors
from coursecompass.core.errors import UploadError
from coursecompass.database import get_db
from coursecompass.models.course import Course, Enrollment, Lesson
from coursecompass.models.user import User
from coursecompass.services.file_storage import (
    AVATARS,
    CHUNK_SIZE,
    PUBLIC_CATEGORIES,
    THUMBNAILS,
    VIDEOS,
    get_file_info,
    public_path,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/files", tags=["files"])

PUBLIC_CACHE = "public, max-age=31536000, immutable"
PRIVATE_CACHE = "private, max-age=3600"

_RANGE_RE = re.compile(r"bytes=(\d*)-(\d*)$")
# Stored video names are lesson_{lessonId}_{epoch_ms}_{hex}{ext}; lesson ids never contain "_".
_VIDEO_LESSON_RE = re.compile(r"lesson_([^_]+)_")


def _parse_path(file_path: str) -> tuple[str, str]:
    if ".." in file_path or "\\" in file_path:
        raise UploadError(errors.PATH_TRAVERSAL_ATTEMPT, f"Invalid file path: {file_path}")
    parts = file_path.strip("/").split("/")
    if len(parts) != 2 or not parts[1]:
        raise errors.validation_failed(["Invalid file path"])
    category, name = parts
    if category not in PUBLIC_CATEGORIES:
        raise errors.validation_failed([f"Invalid file category: {category}"])
    return category, name


def _can_view_video(db: Session, user: User, name: str) -> bool:
    """Map the file to its lesson by name, so older videos of a lesson stay viewable."""
    m = _VIDEO_LESSON_RE.match(name)
    if not m:
        raise errors.validation_failed(["Invalid video file format"])
    lesson = db.query(Lesson).filter(Lesson.id == m.group(1)).first()
    if not lesson:
        raise errors.not_found("Lesson not found")
    course = db.query(Course).filter(Course.id == lesson.course_id).first()
    if course and course.trainer_id == user.id:
        return True
    enrolled = (
        db.query(Enrollment)
        .filter(Enrollment.course_id == lesson.course_id, Enrollment.student_id == user.id)
        .first()
    )
    return enrolled is not None


def check_access(db: Session, category: str, name: str, user: User | None) -> str:
    """Return the access level that allows the request, or raise 401/403."""
    if category == THUMBNAILS:
        return "public"
    if user is None:
        raise UploadError(
            errors.AUTHENTICATION_REQUIRED, "Authentication required", status.HTTP_401_UNAUTHORIZED
        )
    if user.is_admin:
        return "admin"
    if category == AVATARS:
        return "authenticated"
    if category == VIDEOS and _can_view_video(db, user, name):
        return "enrolled"
    logger.info("User %s denied access to %s/%s", user.id, category, name)
    raise errors.forbidden("You do not have access to this file")


def _parse_range(range_header: str, file_size: int) -> tuple[int, int] | None:
    """(start, end) inclusive, or None if unsatisfiable. Handles start-end, start- and -suffix."""
    m = _RANGE_RE.match(range_header.strip())
    if not m:
        return None
    start_s, end_s = m.groups()
    if not start_s:
        if not end_s:
            return None
        suffix = int(end_s)
        if suffix == 0:
            return None
        return max(file_size - suffix, 0), file_size - 1
    start = int(start_s)
    end = int(end_s) if end_s else file_size - 1
    if start > end or start >= file_size:
        return None
    return start, min(end, file_size - 1)


def _stream_file_range(path: Path, request: Request, content_type: str, cache_control: str):
    """Full file (200) or the requested byte range (206); 416 when the range cannot be served."""
    file_size = path.stat().st_size
    base_headers = {
        "Accept-Ranges": "bytes",
        "Cache-Control": cache_control,
        "X-Content-Type-Options": "nosniff",
        "Content-Disposition": "inline",
    }
    range_header = request.headers.get("range")
    if not range_header:
        def full_stream():
            with open(path, "rb") as f:
                while chunk := f.read(CHUNK_SIZE):
                    yield chunk

        return StreamingResponse(
            full_stream(),
            status_code=200,
            media_type=content_type,
            headers={**base_headers, "Content-Length": str(file_size)},
        )

    byte_range = _parse_range(range_header, file_size)
    if byte_range is None:
        return Response(status_code=416, headers={"Content-Range": f"bytes */{file_size}"})
    start, end = byte_range
    length = end - start + 1

    def range_stream():
        with open(path, "rb") as f:
            f.seek(start)
            remaining = length
            while remaining > 0:
                data = f.read(min(CHUNK_SIZE, remaining))
                if not data:
                    break
                remaining -= len(data)
                yield data

    return StreamingResponse(
        range_stream(),
        status_code=206,
        media_type=content_type,
        headers={
            **base_headers,
            "Content-Range": f"bytes {start}-{end}/{file_size}",
            "Content-Length": str(length),
        },
    )


@router.get("/{file_path:path}")
def serve_file(
    file_path: str,
    request: Request,
    user: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    category, name = _parse_path(file_path)
    info = get_file_info(category, name)
    if info is None:
        raise errors.not_found("File not found")
    level = check_access(db, category, name, user)
    cache = PUBLIC_CACHE if level == "public" else PRIVATE_CACHE
    return _stream_file_range(info["path"], request, info["mime_type"], cache)


@router.post("/{file_path:path}")
def file_metadata(
    file_path: str,
    user: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    category, name = _parse_path(file_path)
    info = get_file_info(category, name)
    if info is None:
        raise errors.not_found("File not found")
    level = check_access(db, category, name, user)
    return {
        "success": True,
        "data": {
            "path": public_path(category, name),
            "category": category,
            "size": info["size"],
            "mimeType": info["mime_type"],
            "lastModified": datetime.fromtimestamp(info["mtime"], tz=timezone.utc).isoformat(),
            "accessLevel": level,
        },
    }
