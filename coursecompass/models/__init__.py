from coursecompass.models.user import User, UserRole
from coursecompass.models.course import Course, Lesson, Enrollment
from coursecompass.models.activity_log import ActivityLog
from coursecompass.models.upload_session import UploadSession, UploadChunk, UploadSessionStatus

__all__ = [
    "User", "UserRole", "Course", "Lesson", "Enrollment", "ActivityLog",
    "UploadSession", "UploadChunk", "UploadSessionStatus",
]
