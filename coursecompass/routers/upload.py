"""
Uploads: lesson videos (direct or chunked), course thumbnails, user avatars.
Every response is {"success": true, "message", "data"}; failures are rendered by the UploadError handler.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from coursecompass.auth import get_current_instructor, get_current_user
from coursecompass.core import errors
from coursecompass.core.errors import UploadError
from coursecompass.core.redis import get_upload_rate_limiter
from coursecompass.database import get_db
from coursecompass.models.course import Course, Lesson
from coursecompass.models.upload_session import UploadSession, UploadSessionStatus
from coursecompass.models.user import User
from coursecompass.schemas.upload import VideoUploadForm
from coursecompass.services import upload_sessions
from coursecompass.services.activity import (
    COURSE_THUMBNAIL_DELETED,
    COURSE_THUMBNAIL_UPDATED,
    USER_AVATAR_DELETED,
    USER_AVATAR_UPDATED,
    log_activity,
)
from coursecompass.services.chunk_store import TempChunkStore
from coursecompass.services.file_storage import (
    AVATARS,
    THUMBNAILS,
    count_file_parts,
    delete_file,
    file_types,
    generate_secure_file_name,
    read_upload,
    save_file,
    validate_upload_file,
)
from coursecompass.services.video_assembly import delete_lesson_video, direct_upload, receive_chunk

router = APIRouter(prefix="/api/upload", tags=["upload"])


def get_chunk_store() -> TempChunkStore:
    return TempChunkStore()


async def enforce_upload_rate_limit(user: User = Depends(get_current_user)) -> User:
    limiter = await get_upload_rate_limiter()
    await limiter.check(user.id)
    return user


def _continues_session(db: Session, upload_id: str | None, chunk_index: int | None, user: User) -> bool:
    if chunk_index is None or not upload_id:
        return False
    session = db.query(UploadSession).filter(UploadSession.id == upload_id).first()
    return (
        session is not None
        and session.user_id == user.id
        and session.status == UploadSessionStatus.RECEIVING.value
    )


async def enforce_video_rate_limit(
    upload_id: str | None = Form(None, alias="uploadId"),
    chunk_index: int | None = Form(None, alias="chunkIndex"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> User:
    """A chunked upload counts once, on the request that opens its session."""
    if await run_in_threadpool(_continues_session, db, upload_id, chunk_index, user):
        return user
    return await enforce_upload_rate_limit(user)


def _is_true(value: str | None) -> bool:
    return (value or "").strip().lower() == "true"


def _missing_file(message: str) -> UploadError:
    return UploadError(errors.MISSING_FILE, message)


def _lesson_for_instructor(db: Session, lesson_id: str, course_id: str | None, user: User) -> Lesson:
    lesson = db.query(Lesson).filter(Lesson.id == lesson_id).first()
    if not lesson:
        raise errors.not_found("Lesson not found")
    if course_id is not None and lesson.course_id != course_id:
        raise errors.validation_failed(["Lesson does not belong to specified course"])
    if not user.is_admin and lesson.course.trainer_id != user.id:
        raise errors.forbidden("Unauthorized: Can only manage videos for your own courses")
    return lesson


def _course_for_instructor(db: Session, course_id: str, user: User) -> Course:
    course = db.query(Course).filter(Course.id == course_id).first()
    if not course:
        raise errors.not_found("Course not found")
    if not user.is_admin and course.trainer_id != user.id:
        raise errors.forbidden("Unauthorized: Can only upload thumbnails for your own courses")
    return course


def _validation_details(e: ValidationError) -> list[str]:
    return [err["msg"].removeprefix("Value error, ") for err in e.errors()]


# ---------- Lesson video ----------


@router.post("/video")
def upload_video(
    lesson_id: str = Form(..., alias="lessonId"),
    course_id: str = Form(..., alias="courseId"),
    replace_existing: str | None = Form(None, alias="replaceExisting"),
    chunk_index: int | None = Form(None, alias="chunkIndex"),
    total_chunks: int | None = Form(None, alias="totalChunks"),
    file_name: str | None = Form(None, alias="fileName"),
    upload_id: str | None = Form(None, alias="uploadId"),
    chunk: UploadFile | None = File(None),
    video: UploadFile | None = File(None),
    user: User = Depends(get_current_instructor),
    _limited: User = Depends(enforce_video_rate_limit),
    store: TempChunkStore = Depends(get_chunk_store),
    db: Session = Depends(get_db),
):
    """
    Upload a lesson video. With chunkIndex + totalChunks the request carries one chunk (file part
    `chunk` or `video`); the request that completes the set assembles the file. Without them the
    whole video is sent in the `video` part.
    """
    count_file_parts([chunk, video])
    try:
        form = VideoUploadForm(
            lesson_id=lesson_id,
            course_id=course_id,
            replace_existing=_is_true(replace_existing),
            chunk_index=chunk_index,
            total_chunks=total_chunks,
            file_name=file_name,
            upload_id=upload_id,
        )
    except ValidationError as e:
        raise errors.validation_failed(_validation_details(e)) from e

    lesson = _lesson_for_instructor(db, form.lesson_id, form.course_id, user)

    if form.is_chunked:
        part = chunk if chunk is not None else video
        if part is None:
            raise _missing_file("No chunk file provided")
        completed, data = receive_chunk(db, store, lesson, user, form, read_upload(part))
        if completed:
            message = "Video uploaded successfully (chunked)"
        else:
            message = f"Chunk {form.chunk_index + 1}/{form.total_chunks} uploaded"
        return {"success": True, "message": message, "data": data}

    if video is None or not video.filename:
        raise _missing_file("No video file provided")
    data = direct_upload(
        db,
        lesson,
        user,
        read_upload(video),
        video.filename,
        video.content_type or "",
        form.replace_existing,
    )
    return {"success": True, "message": "Video uploaded successfully", "data": data}


@router.get("/video/sessions/{upload_id}")
def get_upload_session(
    upload_id: str,
    user: User = Depends(get_current_instructor),
    db: Session = Depends(get_db),
):
    """Session state for resuming a chunked upload: status, received count, missing indexes."""
    session = db.query(UploadSession).filter(UploadSession.id == upload_id).first()
    if not session:
        raise errors.not_found("Upload session not found")
    if session.user_id != user.id and not user.is_admin:
        raise errors.forbidden("Upload session belongs to another user")
    data = upload_sessions.session_to_dict(db, session)
    data["missing_chunks"] = upload_sessions.missing_indexes(db, session)
    return {"success": True, "data": data}


@router.delete("/video")
def delete_video(
    lesson_id: str | None = Query(None, alias="lessonId"),
    user: User = Depends(get_current_instructor),
    db: Session = Depends(get_db),
):
    """Remove a lesson's video file and clear Lesson.video_url."""
    if not lesson_id:
        raise errors.validation_failed(["Lesson ID required"])
    lesson = _lesson_for_instructor(db, lesson_id, None, user)
    data = delete_lesson_video(db, lesson, user)
    return {"success": True, "message": "Video deleted successfully", "data": data}


# ---------- Course thumbnail ----------


@router.post("/thumbnail")
def upload_thumbnail(
    course_id: str = Form(..., alias="courseId"),
    replace_existing: str | None = Form(None, alias="replaceExisting"),
    thumbnail: UploadFile | None = File(None),
    user: User = Depends(get_current_instructor),
    _limited: User = Depends(enforce_upload_rate_limit),
    db: Session = Depends(get_db),
):
    course = _course_for_instructor(db, course_id, user)
    if thumbnail is None or not thumbnail.filename:
        raise _missing_file("No thumbnail file provided")
    data = read_upload(thumbnail)
    sanitized = validate_upload_file(data, thumbnail.filename, thumbnail.content_type or "", file_types()["image"])
    stored = save_file(data, generate_secure_file_name(sanitized, f"course_{course.id}"), THUMBNAILS)

    previous = course.thumbnail
    course.thumbnail = stored.url
    course.updated_at = datetime.utcnow()
    log_activity(
        db,
        user.id,
        COURSE_THUMBNAIL_UPDATED,
        details=f"Thumbnail updated for course: {course.title}",
        metadata={"courseId": course.id, "fileName": stored.file_name, "fileSize": stored.size, "originalName": thumbnail.filename},
    )
    db.commit()
    db.refresh(course)
    if _is_true(replace_existing) and previous and previous != stored.url:
        delete_file(previous, THUMBNAILS)
    return {
        "success": True,
        "message": "Course thumbnail uploaded successfully",
        "data": {
            "course": {
                "id": course.id,
                "title": course.title,
                "thumbnail": course.thumbnail,
                "status": course.status,
                "updatedAt": course.updated_at.isoformat(),
            },
            "thumbnail": {"url": stored.url, "fileName": stored.file_name, "size": stored.size},
        },
    }


@router.delete("/thumbnail")
def delete_thumbnail(
    course_id: str | None = Query(None, alias="courseId"),
    user: User = Depends(get_current_instructor),
    db: Session = Depends(get_db),
):
    if not course_id:
        raise errors.validation_failed(["Course ID required"])
    course = _course_for_instructor(db, course_id, user)
    if not course.thumbnail:
        raise errors.not_found("No thumbnail to delete")
    previous = course.thumbnail
    file_deleted = delete_file(previous, THUMBNAILS)
    course.thumbnail = None
    log_activity(
        db,
        user.id,
        COURSE_THUMBNAIL_DELETED,
        details=f"Thumbnail deleted for course: {course.title}",
        metadata={"courseId": course.id, "fileDeleted": file_deleted, "thumbnailPath": previous},
    )
    db.commit()
    return {"success": True, "message": "Thumbnail deleted successfully", "data": {"fileDeleted": file_deleted}}


# ---------- Avatar ----------


@router.post("/avatar")
def upload_avatar(
    avatar: UploadFile | None = File(None),
    replace_existing: str | None = Form(None, alias="replaceExisting"),
    user: User = Depends(enforce_upload_rate_limit),
    db: Session = Depends(get_db),
):
    if avatar is None or not avatar.filename:
        raise _missing_file("No avatar file provided")
    data = read_upload(avatar)
    sanitized = validate_upload_file(data, avatar.filename, avatar.content_type or "", file_types()["avatar"])
    stored = save_file(data, generate_secure_file_name(sanitized, user.id), AVATARS)

    previous = user.avatar
    user.avatar = stored.url
    log_activity(
        db,
        user.id,
        USER_AVATAR_UPDATED,
        details="Avatar updated",
        metadata={"fileName": stored.file_name, "fileSize": stored.size, "originalName": avatar.filename},
    )
    db.commit()
    if _is_true(replace_existing) and previous and previous != stored.url:
        delete_file(previous, AVATARS)
    return {
        "success": True,
        "message": "Avatar uploaded successfully",
        "data": {
            "user": {"id": user.id, "name": user.name, "avatar": user.avatar},
            "avatar": {"url": stored.url, "fileName": stored.file_name, "size": stored.size},
        },
    }


@router.delete("/avatar")
def delete_avatar(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not user.avatar:
        raise errors.not_found("No avatar to delete")
    previous = user.avatar
    file_deleted = delete_file(previous, AVATARS)
    user.avatar = None
    log_activity(
        db,
        user.id,
        USER_AVATAR_DELETED,
        details="Avatar removed",
        metadata={"fileDeleted": file_deleted, "avatarPath": previous},
    )
    db.commit()
    return {"success": True, "message": "Avatar deleted successfully", "data": {"fileDeleted": file_deleted}}
