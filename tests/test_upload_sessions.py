import threading
import time
from datetime import datetime, timedelta

import pytest

from coursecompass.core import errors
from coursecompass.core.errors import UploadError
from coursecompass.models.upload_session import UploadChunk, UploadSession, UploadSessionStatus
from coursecompass.services import upload_sessions
from coursecompass.services.upload_sessions import KeyedLock


def test_keyed_lock_serializes_same_key():
    lock = KeyedLock()
    active = []
    overlaps = []

    def worker():
        with lock.hold("up1"):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.01)
            active.pop()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == []
    assert len(lock) == 0


def test_keyed_lock_does_not_block_other_keys():
    lock = KeyedLock()
    with lock.hold("a"):
        done = threading.Event()

        def other():
            with lock.hold("b"):
                done.set()

        t = threading.Thread(target=other)
        t.start()
        assert done.wait(timeout=2)
        t.join()
        assert len(lock) == 1
    assert len(lock) == 0


def test_derive_upload_id():
    upload_id = upload_sessions.derive_upload_id("lesson-1")
    prefix, stamp = upload_id.rsplit("_", 1)
    assert prefix == "lesson-1"
    assert stamp.isdigit() and len(stamp) == 13


def test_get_or_create_session_reuses_existing(db, lesson, trainer):
    first = upload_sessions.get_or_create_session(db, "up-1", lesson, trainer, 3, "a.mp4")
    again = upload_sessions.get_or_create_session(db, "up-1", lesson, trainer, 3, None)
    assert first.id == again.id
    assert again.status == UploadSessionStatus.RECEIVING.value
    assert again.file_name == "a.mp4"
    assert db.query(UploadSession).count() == 1


def test_get_or_create_session_rejects_mismatches(db, lesson, trainer, other_trainer, admin):
    upload_sessions.get_or_create_session(db, "up-1", lesson, trainer, 3, "a.mp4")

    with pytest.raises(UploadError) as exc:
        upload_sessions.get_or_create_session(db, "up-1", lesson, trainer, 4, "a.mp4")
    assert exc.value.code == errors.INVALID_REQUEST_DATA

    with pytest.raises(UploadError) as exc:
        upload_sessions.get_or_create_session(db, "up-1", lesson, other_trainer, 3, "a.mp4")
    assert exc.value.status_code == 403

    assert upload_sessions.get_or_create_session(db, "up-1", lesson, admin, 3, "a.mp4").id == "up-1"


def test_failed_session_is_a_conflict(db, lesson, trainer):
    upload_sessions.get_or_create_session(db, "up-1", lesson, trainer, 2, None)
    upload_sessions.mark_failed(db, "up-1", "disk full")
    with pytest.raises(UploadError) as exc:
        upload_sessions.get_or_create_session(db, "up-1", lesson, trainer, 2, None)
    assert exc.value.code == errors.UPLOAD_CONFLICT
    assert exc.value.status_code == 409


def test_record_chunk_counts_each_index_once(db, lesson, trainer):
    session = upload_sessions.get_or_create_session(db, "up-1", lesson, trainer, 3, None)
    upload_sessions.record_chunk(db, "up-1", 2, 10)
    upload_sessions.record_chunk(db, "up-1", 0, 10)
    upload_sessions.record_chunk(db, "up-1", 0, 12)

    assert upload_sessions.received_count(db, "up-1") == 2
    assert upload_sessions.missing_indexes(db, session) == [1]
    assert not upload_sessions.is_complete(db, session)
    row = db.query(UploadChunk).filter_by(upload_id="up-1", chunk_index=0).one()
    assert row.size == 12

    upload_sessions.record_chunk(db, "up-1", 1, 10)
    assert upload_sessions.is_complete(db, session)


def test_claim_for_assembly_succeeds_once(db, lesson, trainer):
    upload_sessions.get_or_create_session(db, "up-1", lesson, trainer, 1, None)
    assert upload_sessions.claim_for_assembly(db, "up-1") is True
    assert upload_sessions.claim_for_assembly(db, "up-1") is False
    db.expire_all()
    assert db.get(UploadSession, "up-1").status == UploadSessionStatus.ASSEMBLING.value


def test_mark_completed_drops_chunk_rows(db, lesson, trainer):
    upload_sessions.get_or_create_session(db, "up-1", lesson, trainer, 1, None)
    upload_sessions.record_chunk(db, "up-1", 0, 4)
    upload_sessions.mark_completed(db, "up-1", "/uploads/videos/x.mp4", "x.mp4", 4)
    db.commit()
    db.expire_all()
    session = db.get(UploadSession, "up-1")
    assert session.status == UploadSessionStatus.COMPLETED.value
    assert session.video_url == "/uploads/videos/x.mp4"
    assert session.assembled_size == 4
    assert upload_sessions.received_count(db, "up-1") == 0


def test_delete_stale_sessions(db, lesson, trainer):
    upload_sessions.get_or_create_session(db, "old", lesson, trainer, 2, None)
    upload_sessions.record_chunk(db, "old", 0, 1)
    upload_sessions.get_or_create_session(db, "fresh", lesson, trainer, 2, None)
    db.query(UploadSession).filter_by(id="old").update({"updated_at": datetime.utcnow() - timedelta(days=2)})
    db.commit()

    removed = upload_sessions.delete_stale_sessions(db, datetime.utcnow() - timedelta(hours=24))

    assert removed == 1
    assert [s.id for s in db.query(UploadSession).all()] == ["fresh"]
    assert db.query(UploadChunk).count() == 0


def test_session_to_dict(db, lesson, trainer):
    session = upload_sessions.get_or_create_session(db, "up-1", lesson, trainer, 2, "a.mp4")
    upload_sessions.record_chunk(db, "up-1", 1, 3)
    data = upload_sessions.session_to_dict(db, session)
    assert data["id"] == "up-1"
    assert data["lesson_id"] == lesson.id
    assert data["received_chunks"] == 1
    assert data["status"] == "RECEIVING"
