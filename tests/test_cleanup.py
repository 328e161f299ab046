import asyncio
import os
import time
from datetime import datetime, timedelta

from coursecompass.models.upload_session import UploadSession
from coursecompass.services import file_cleanup, upload_sessions
from coursecompass.services.file_cleanup import cleanup_orphaned_files, cleanup_temp_files, temp_file_reaper
from coursecompass.services.file_storage import AVATARS, THUMBNAILS, VIDEOS, save_file, upload_dir


def _age(path, hours):
    stamp = time.time() - hours * 3600
    os.utime(path, (stamp, stamp))


def test_cleanup_temp_files_removes_expired_chunks_and_sessions(db, store, lesson, trainer):
    upload_sessions.get_or_create_session(db, "abandoned", lesson, trainer, 3, None)
    store.write_chunk("abandoned", 0, b"stale")
    store.write_chunk("active", 0, b"fresh")
    _age(store.chunk_path("abandoned", 0), 30)
    db.query(UploadSession).filter_by(id="abandoned").update({"updated_at": datetime.utcnow() - timedelta(hours=30)})
    db.commit()

    result = cleanup_temp_files(db, store)

    assert result["deletedFiles"] == 1
    assert result["bytesFreed"] == len(b"stale")
    assert result["staleSessions"] == 1
    assert store.has_chunk("active", 0)
    assert db.query(UploadSession).count() == 0


def test_cleanup_orphaned_files_keeps_referenced(db, lesson, course):
    video = save_file(b"in use", "lesson_in_use.mp4", VIDEOS)
    save_file(b"orphan", "lesson_orphan.mp4", VIDEOS)
    thumb = save_file(b"thumb", "course_cover.png", THUMBNAILS)
    save_file(b"old avatar", "old_avatar.png", AVATARS)
    lesson.video_url = video.url
    course.thumbnail = thumb.url
    db.commit()

    result = cleanup_orphaned_files(db)

    assert result["totalFiles"] == 4
    assert result["deletedFiles"] == 2
    assert result["bytesFreed"] == len(b"orphan") + len(b"old avatar")
    assert sorted(p.name for p in upload_dir(VIDEOS).iterdir()) == ["lesson_in_use.mp4"]
    assert [p.name for p in upload_dir(THUMBNAILS).iterdir()] == ["course_cover.png"]
    assert list(upload_dir(AVATARS).iterdir()) == []


def test_admin_cleanup_endpoint(client, admin, auth_headers):
    save_file(b"orphan", "lesson_orphan.mp4", VIDEOS)
    res = client.post("/api/admin/files/cleanup", headers=auth_headers(admin))
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["orphanedFiles"]["deletedFiles"] == 1
    assert data["totalBytesFreed"] == len(b"orphan")


def test_admin_lists_upload_sessions(client, db, lesson, trainer, admin, auth_headers):
    upload_sessions.get_or_create_session(db, "s1", lesson, trainer, 2, None)
    upload_sessions.get_or_create_session(db, "s2", lesson, trainer, 2, None)
    upload_sessions.mark_failed(db, "s2", "boom")

    res = client.get("/api/admin/upload-sessions", headers=auth_headers(admin))
    assert {s["id"] for s in res.json()["data"]} == {"s1", "s2"}

    res = client.get("/api/admin/upload-sessions", params={"status": "FAILED"}, headers=auth_headers(admin))
    assert [s["id"] for s in res.json()["data"]] == ["s2"]


def test_reaper_survives_a_failed_run(monkeypatch):
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise OSError("disk gone")
        return {"deletedFiles": 0, "bytesFreed": 0, "staleSessions": 0, "errors": []}

    monkeypatch.setattr(file_cleanup, "_reap_once", flaky)

    async def run():
        task = asyncio.create_task(temp_file_reaper(0))
        while len(calls) < 2:
            await asyncio.sleep(0.01)
        task.cancel()

    asyncio.run(run())
    assert len(calls) >= 2
