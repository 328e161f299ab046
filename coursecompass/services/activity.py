"""Activity log entries for upload actions."""
import json
from typing import Any
from sqlalchemy.orm import Session

from coursecompass.models.activity_log import ActivityLog

LESSON_VIDEO_UPLOADED = "LESSON_VIDEO_UPLOADED"
LESSON_VIDEO_DELETED = "LESSON_VIDEO_DELETED"
COURSE_THUMBNAIL_UPDATED = "COURSE_THUMBNAIL_UPDATED"
COURSE_THUMBNAIL_DELETED = "COURSE_THUMBNAIL_DELETED"
USER_AVATAR_UPDATED = "USER_AVATAR_UPDATED"
USER_AVATAR_DELETED = "USER_AVATAR_DELETED"


def log_activity(
    db: Session,
    user_id: str,
    action: str,
    details: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> ActivityLog:
    """Add an activity row. Caller must db.commit() (usually together with the change it describes)."""
    entry = ActivityLog(
        user_id=user_id,
        action=action,
        details=details,
        metadata_=json.dumps(metadata, default=str) if metadata is not None else None,
    )
    db.add(entry)
    return entry
