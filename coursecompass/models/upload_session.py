"""
Chunked upload session. One row per uploadId, one UploadChunk row per chunk written to the temp store.
Completeness is a count over upload_chunks, no directory scan.
"""
import enum
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey, UniqueConstraint
from coursecompass.database import Base


class UploadSessionStatus(str, enum.Enum):
    RECEIVING = "RECEIVING"
    ASSEMBLING = "ASSEMBLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class UploadSession(Base):
    __tablename__ = "upload_sessions"

    id = Column(String(128), primary_key=True)  # uploadId
    lesson_id = Column(String(36), ForeignKey("lessons.id"), nullable=False, index=True)
    course_id = Column(String(36), ForeignKey("courses.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    total_chunks = Column(Integer, nullable=False)
    file_name = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=UploadSessionStatus.RECEIVING.value, index=True)
    video_url = Column(String(512), nullable=True)  # set on COMPLETED
    stored_file_name = Column(String(255), nullable=True)
    assembled_size = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class UploadChunk(Base):
    __tablename__ = "upload_chunks"
    __table_args__ = (UniqueConstraint("upload_id", "chunk_index", name="uq_upload_chunks_upload_index"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    upload_id = Column(String(128), ForeignKey("upload_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    size = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
