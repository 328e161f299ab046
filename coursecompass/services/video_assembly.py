"""
Lesson video uploads: chunk receiver, assembler, and the direct (single request) path.

Chunked flow: each chunk is written to the temp store and registered on its upload session. When the
session holds every index 0..totalChunks-1 the request that completed it assembles the file: chunks
are read in index order, concatenated, written to videos/, and only then is Lesson.video_url updated.
Temp chunks are removed whether assembly succeeds or fails.
"""
import logging
from datetime import datetime

from fastapi import status
from sqlalchemy.orm import Session

from coursecompass.core import errors
from coursecompass.core.errors import UploadError
from coursecompass.models.course import Lesson
from coursecompass.models.upload_session import UploadSession, UploadSessionStatus
from coursecompass.models.user import User
from coursecompass.schemas.upload import StoredFile, VideoUploadForm
from coursecompass.services import upload_sessions
from coursecompass.services.activity import LESSON_VIDEO_DELETED, LESSON_VIDEO_UPLOADED, log_activity
from coursecompass.services.chunk_store import TempChunkStore
from coursecompass.services.file_storage import (
    VIDEOS,
    delete_file,
    file_types,
    generate_secure_file_name,
    save_file,
    validate_upload_file,
)

logger = logging.getLogger(__name__)

DEFAULT_VIDEO_NAME = "video.mp4"


def lesson_payload(lesson: Lesson) -> dict:
    return {
        "id": lesson.id,
        "title": lesson.title,
        "videoUrl": lesson.video_url,
        "duration": lesson.duration,
        "course": {"id": lesson.course.id, "title": lesson.course.title},
    }


def video_payload(stored: StoredFile) -> dict:
    return {"url": stored.url, "fileName": stored.file_name, "size": stored.size}


def chunk_progress(chunk_index: int, total_chunks: int) -> int:
    return round((chunk_index + 1) / total_chunks * 100)


def _store_lesson_video(
    db: Session,
    lesson: Lesson,
    user: User,
    data: bytes,
    original_name: str,
    metadata: dict,
) -> tuple[StoredFile, str | None]:
    """Write the final file and stage the lesson update + activity entry. Caller commits."""
    file_name = generate_secure_file_name(original_name, f"lesson_{lesson.id}")
    stored = save_file(data, file_name, VIDEOS)
    previous = lesson.video_url
    lesson.video_url = stored.url
    lesson.updated_at = datetime.utcnow()
    log_activity(
        db,
        user.id,
        LESSON_VIDEO_UPLOADED,
        details=f"Video uploaded for lesson: {lesson.title} in course: {lesson.course.title}",
        metadata={
            "courseId": lesson.course_id,
            "lessonId": lesson.id,
            "fileName": stored.file_name,
            "fileSize": stored.size,
            "originalName": original_name,
            **metadata,
        },
    )
    return stored, previous


def _replace_previous(previous: str | None, current: str, replace_existing: bool) -> None:
    if replace_existing and previous and previous != current:
        if not delete_file(previous, VIDEOS):
            logger.info("Previous video %s not removed (external or already gone)", previous)


# ---------- Direct upload ----------


def direct_upload(
    db: Session,
    lesson: Lesson,
    user: User,
    data: bytes,
    file_name: str,
    content_type: str,
    replace_existing: bool = False,
) -> dict:
    sanitized = validate_upload_file(data, file_name, content_type, file_types()["video"])
    stored, previous = _store_lesson_video(db, lesson, user, data, sanitized, {"uploadType": "direct"})
    try:
        db.commit()
    except Exception:
        db.rollback()
        delete_file(stored.url, VIDEOS)
        raise
    db.refresh(lesson)
    _replace_previous(previous, stored.url, replace_existing)
    logger.info("Direct video upload for lesson %s: %s (%d bytes)", lesson.id, stored.file_name, stored.size)
    return {"lesson": lesson_payload(lesson), "video": video_payload(stored)}


# ---------- Chunked upload ----------


def receive_chunk(
    db: Session,
    store: TempChunkStore,
    lesson: Lesson,
    user: User,
    form: VideoUploadForm,
    data: bytes,
) -> tuple[bool, dict]:
    """
    Persist one chunk. Returns (completed, data): progress data for intermediate chunks, the
    assembly result once the session is complete.
    """
    upload_id = form.upload_id or upload_sessions.derive_upload_id(lesson.id)
    session = upload_sessions.get_or_create_session(
        db, upload_id, lesson, user, form.total_chunks, form.file_name
    )
    if session.status != UploadSessionStatus.RECEIVING.value:
        # Retry of a chunk after the session was assembled (or while it is being assembled).
        return True, finalize_upload(db, store, upload_id, lesson, user, form.replace_existing)

    size = store.write_chunk(upload_id, form.chunk_index, data)
    upload_sessions.record_chunk(db, upload_id, form.chunk_index, size)

    if upload_sessions.is_complete(db, session):
        return True, finalize_upload(db, store, upload_id, lesson, user, form.replace_existing)

    return False, {
        "uploadId": upload_id,
        "chunkIndex": form.chunk_index,
        "totalChunks": form.total_chunks,
        "progress": chunk_progress(form.chunk_index, form.total_chunks),
        "receivedChunks": upload_sessions.received_count(db, upload_id),
    }


def _completed_payload(session: UploadSession, lesson: Lesson) -> dict:
    return {
        "lesson": lesson_payload(lesson),
        "video": {"url": session.video_url, "fileName": session.stored_file_name, "size": session.assembled_size},
        "uploadStats": {"totalChunks": session.total_chunks, "assembledSize": session.assembled_size},
    }


def finalize_upload(
    db: Session,
    store: TempChunkStore,
    upload_id: str,
    lesson: Lesson,
    user: User,
    replace_existing: bool = False,
) -> dict:
    """Assemble a complete session exactly once. Later callers get the stored result."""
    with upload_sessions.assembly_locks.hold(upload_id):
        db.expire_all()
        session = db.query(UploadSession).filter(UploadSession.id == upload_id).first()
        if session is None:
            # Reaped between the chunk write and this call.
            raise UploadError(
                errors.UPLOAD_CONFLICT,
                f"Upload session {upload_id} no longer exists; restart the upload",
                status.HTTP_409_CONFLICT,
            )
        if session.status == UploadSessionStatus.COMPLETED.value:
            db.refresh(lesson)
            return _completed_payload(session, lesson)
        if not upload_sessions.claim_for_assembly(db, upload_id):
            db.refresh(session)
            if session.status == UploadSessionStatus.COMPLETED.value:
                db.refresh(lesson)
                return _completed_payload(session, lesson)
            raise UploadError(
                errors.UPLOAD_CONFLICT,
                f"Upload {upload_id} is {session.status.lower()}; cannot assemble",
                status.HTTP_409_CONFLICT,
            )
        return _assemble(db, store, session, lesson, user, replace_existing)


def _assemble(
    db: Session,
    store: TempChunkStore,
    session: UploadSession,
    lesson: Lesson,
    user: User,
    replace_existing: bool,
) -> dict:
    upload_id = session.id
    total_chunks = session.total_chunks
    original_name = session.file_name or DEFAULT_VIDEO_NAME
    stored = None
    try:
        data = store.read_all(upload_id, total_chunks)
        if not data:
            raise UploadError(
                errors.ASSEMBLY_FAILED, "Empty file after assembly", status.HTTP_500_INTERNAL_SERVER_ERROR
            )
        stored, previous = _store_lesson_video(
            db,
            lesson,
            user,
            data,
            original_name,
            {"uploadType": "chunked", "totalChunks": total_chunks, "uploadId": upload_id},
        )
        upload_sessions.mark_completed(db, upload_id, stored.url, stored.file_name, len(data))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error("Chunk assembly failed for upload %s: %s", upload_id, e, exc_info=True)
        if stored is not None:
            delete_file(stored.url, VIDEOS)
        upload_sessions.mark_failed(db, upload_id, str(e))
        if isinstance(e, UploadError) and e.code in (errors.MISSING_CHUNK, errors.ASSEMBLY_FAILED):
            raise
        raise UploadError(
            errors.ASSEMBLY_FAILED,
            f"Failed to assemble video chunks for {upload_id}: {e}",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        ) from e
    finally:
        store.delete_chunks(upload_id, total_chunks)

    db.refresh(lesson)
    _replace_previous(previous, stored.url, replace_existing)
    logger.info(
        "Assembled upload %s for lesson %s: %d chunks, %d bytes", upload_id, lesson.id, total_chunks, len(data)
    )
    return {
        "lesson": lesson_payload(lesson),
        "video": video_payload(stored),
        "uploadStats": {"totalChunks": total_chunks, "assembledSize": len(data)},
    }


# ---------- Delete ----------


def delete_lesson_video(db: Session, lesson: Lesson, user: User) -> dict:
    if not lesson.video_url:
        raise errors.not_found("No video to delete")
    video_path = lesson.video_url
    file_deleted = delete_file(video_path, VIDEOS)
    lesson.video_url = None
    lesson.updated_at = datetime.utcnow()
    log_activity(
        db,
        user.id,
        LESSON_VIDEO_DELETED,
        details=f"Video deleted for lesson: {lesson.title} in course: {lesson.course.title}",
        metadata={"courseId": lesson.course_id, "lessonId": lesson.id, "fileDeleted": file_deleted, "videoPath": video_path},
    )
    db.commit()
    return {"fileDeleted": file_deleted}
