"""Audit trail of user actions (uploads, deletions)."""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey, Text
from coursecompass.database import Base


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    action = Column(String(64), nullable=False, index=True)  # e.g. "LESSON_VIDEO_UPLOADED"
    details = Column(Text, nullable=True)
    metadata_ = Column("metadata", Text, nullable=True)  # JSON string for extra info
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
