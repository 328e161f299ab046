"""
Upload session registry. Tracks which chunks of an uploadId are on disk (upload_chunks rows) so the
completeness check is one count query, and guards assembly so it runs exactly once per session:
an in-process lock keyed by uploadId plus a conditional RECEIVING -> ASSEMBLING status update in the
database (covers several worker processes).
"""
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime

from fastapi import status
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coursecompass.core import errors
from coursecompass.core.errors import UploadError
from coursecompass.models.course import Lesson
from coursecompass.models.upload_session import UploadChunk, UploadSession, UploadSessionStatus
from coursecompass.models.user import User

logger = logging.getLogger(__name__)


class KeyedLock:
    """One threading.Lock per key, dropped again when no thread holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, refcount]

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


assembly_locks = KeyedLock()


def derive_upload_id(lesson_id: str) -> str:
    return f"{lesson_id}_{int(time.time() * 1000)}"


def _conflict(message: str) -> UploadError:
    return UploadError(errors.UPLOAD_CONFLICT, message, status.HTTP_409_CONFLICT)


def get_or_create_session(
    db: Session,
    upload_id: str,
    lesson: Lesson,
    user: User,
    total_chunks: int,
    file_name: str | None,
) -> UploadSession:
    """Load the session for `upload_id`, creating it on the first chunk. Rejects mismatched chunks."""
    session = db.query(UploadSession).filter(UploadSession.id == upload_id).first()
    if session is None:
        session = UploadSession(
            id=upload_id,
            lesson_id=lesson.id,
            course_id=lesson.course_id,
            user_id=user.id,
            total_chunks=total_chunks,
            file_name=file_name,
        )
        db.add(session)
        try:
            db.commit()
        except IntegrityError:
            # Another chunk of the same upload created it first.
            db.rollback()
            session = db.query(UploadSession).filter(UploadSession.id == upload_id).one()
        else:
            logger.info("Upload session %s started for lesson %s (%d chunks)", upload_id, lesson.id, total_chunks)
            return session

    if session.lesson_id != lesson.id:
        raise errors.validation_failed([f"uploadId {upload_id} belongs to another lesson"])
    if session.total_chunks != total_chunks:
        raise errors.validation_failed(
            [f"totalChunks {total_chunks} does not match upload session ({session.total_chunks})"]
        )
    if session.user_id != user.id and not user.is_admin:
        raise errors.forbidden("Upload session belongs to another user")
    if session.status == UploadSessionStatus.FAILED.value:
        raise _conflict(f"Upload {upload_id} failed; restart the upload with a new uploadId")
    if file_name and not session.file_name:
        session.file_name = file_name
        db.commit()
    return session


def record_chunk(db: Session, upload_id: str, chunk_index: int, size: int) -> None:
    """Register a chunk written to the temp store. Re-sent indexes update the size."""
    db.query(UploadSession).filter(UploadSession.id == upload_id).update(
        {"updated_at": datetime.utcnow()}, synchronize_session=False
    )
    row = (
        db.query(UploadChunk)
        .filter(UploadChunk.upload_id == upload_id, UploadChunk.chunk_index == chunk_index)
        .first()
    )
    if row is not None:
        row.size = size
        db.commit()
        return
    db.add(UploadChunk(upload_id=upload_id, chunk_index=chunk_index, size=size))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        db.query(UploadChunk).filter(
            UploadChunk.upload_id == upload_id, UploadChunk.chunk_index == chunk_index
        ).update({"size": size}, synchronize_session=False)
        db.commit()


def received_count(db: Session, upload_id: str) -> int:
    return db.query(func.count(UploadChunk.id)).filter(UploadChunk.upload_id == upload_id).scalar() or 0


def missing_indexes(db: Session, session: UploadSession) -> list[int]:
    have = {i for (i,) in db.query(UploadChunk.chunk_index).filter(UploadChunk.upload_id == session.id)}
    return [i for i in range(session.total_chunks) if i not in have]


def is_complete(db: Session, session: UploadSession) -> bool:
    return received_count(db, session.id) >= session.total_chunks


def claim_for_assembly(db: Session, upload_id: str) -> bool:
    """Atomically move RECEIVING -> ASSEMBLING. False if another caller already claimed the session."""
    updated = (
        db.query(UploadSession)
        .filter(UploadSession.id == upload_id, UploadSession.status == UploadSessionStatus.RECEIVING.value)
        .update(
            {"status": UploadSessionStatus.ASSEMBLING.value, "updated_at": datetime.utcnow()},
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def _drop_chunk_rows(db: Session, upload_id: str) -> None:
    db.query(UploadChunk).filter(UploadChunk.upload_id == upload_id).delete(synchronize_session=False)


def mark_completed(db: Session, upload_id: str, video_url: str, stored_file_name: str, assembled_size: int) -> None:
    """Caller commits (together with the lesson update)."""
    db.query(UploadSession).filter(UploadSession.id == upload_id).update(
        {
            "status": UploadSessionStatus.COMPLETED.value,
            "video_url": video_url,
            "stored_file_name": stored_file_name,
            "assembled_size": assembled_size,
            "error": None,
            "updated_at": datetime.utcnow(),
        },
        synchronize_session=False,
    )
    _drop_chunk_rows(db, upload_id)


def mark_failed(db: Session, upload_id: str, error: str) -> None:
    db.query(UploadSession).filter(UploadSession.id == upload_id).update(
        {"status": UploadSessionStatus.FAILED.value, "error": error[:2000], "updated_at": datetime.utcnow()},
        synchronize_session=False,
    )
    _drop_chunk_rows(db, upload_id)
    db.commit()


def delete_stale_sessions(db: Session, older_than: datetime) -> int:
    """Remove sessions not touched since `older_than` (abandoned, failed or long completed)."""
    stale = [s for (s,) in db.query(UploadSession.id).filter(UploadSession.updated_at < older_than)]
    if not stale:
        return 0
    db.query(UploadChunk).filter(UploadChunk.upload_id.in_(stale)).delete(synchronize_session=False)
    db.query(UploadSession).filter(UploadSession.id.in_(stale)).delete(synchronize_session=False)
    db.commit()
    return len(stale)


def session_to_dict(db: Session, session: UploadSession) -> dict:
    return {
        "id": session.id,
        "lesson_id": session.lesson_id,
        "course_id": session.course_id,
        "user_id": session.user_id,
        "total_chunks": session.total_chunks,
        "received_chunks": received_count(db, session.id),
        "status": session.status,
        "video_url": session.video_url,
        "assembled_size": session.assembled_size,
        "error": session.error,
        "created_at": session.created_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
    }
