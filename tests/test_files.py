import pytest

from coursecompass.core import errors
from coursecompass.core.errors import UploadError
from coursecompass.routers.files import _parse_path, _parse_range
from coursecompass.services.file_storage import AVATARS, THUMBNAILS, VIDEOS, save_file

CONTENT = b"0123456789"


@pytest.fixture
def lesson_video(db, lesson):
    stored = save_file(CONTENT, f"lesson_{lesson.id}_1700000000000_0123456789abcdef.mp4", VIDEOS)
    lesson.video_url = stored.url
    db.commit()
    return stored


@pytest.mark.parametrize(
    "header,expected",
    [
        ("bytes=0-3", (0, 3)),
        ("bytes=5-", (5, 9)),
        ("bytes=-4", (6, 9)),
        ("bytes=-50", (0, 9)),
        ("bytes=8-100", (8, 9)),
        ("bytes=10-", None),
        ("bytes=5-2", None),
        ("bytes=-0", None),
        ("bytes=-", None),
        ("items=0-1", None),
    ],
)
def test_parse_range(header, expected):
    assert _parse_range(header, 10) == expected


def test_parse_path():
    assert _parse_path("videos/a.mp4") == ("videos", "a.mp4")
    for bad in ("videos/../secret", "videos\\a.mp4"):
        with pytest.raises(UploadError) as exc:
            _parse_path(bad)
        assert exc.value.code == errors.PATH_TRAVERSAL_ATTEMPT
    for bad in ("temp/x_chunk_0", "videos", "videos/a/b"):
        with pytest.raises(UploadError) as exc:
            _parse_path(bad)
        assert exc.value.code == errors.INVALID_REQUEST_DATA


def test_thumbnails_are_public(client):
    save_file(CONTENT, "course_1_cover.png", THUMBNAILS)
    res = client.get("/api/files/thumbnails/course_1_cover.png")
    assert res.status_code == 200
    assert res.content == CONTENT
    assert res.headers["content-type"] == "image/png"
    assert res.headers["accept-ranges"] == "bytes"
    assert res.headers["x-content-type-options"] == "nosniff"
    assert res.headers["cache-control"].startswith("public")


def test_missing_file_is_404(client):
    res = client.get("/api/files/thumbnails/nothing.png")
    assert res.status_code == 404
    assert res.json()["code"] == "NOT_FOUND"


def test_unknown_category_is_400(client):
    assert client.get("/api/files/temp/some_chunk_0").status_code == 400


def test_video_requires_authentication(client, lesson_video):
    res = client.get(f"/api/files/videos/{lesson_video.file_name}")
    assert res.status_code == 401
    assert res.json()["code"] == "AUTHENTICATION_REQUIRED"


def test_video_access_rules(client, course, lesson_video, trainer, student, other_trainer, admin, enroll, auth_headers):
    path = f"/api/files/videos/{lesson_video.file_name}"
    assert client.get(path, headers=auth_headers(trainer)).status_code == 200
    assert client.get(path, headers=auth_headers(admin)).status_code == 200
    assert client.get(path, headers=auth_headers(other_trainer)).status_code == 403
    assert client.get(path, headers=auth_headers(student)).status_code == 403

    enroll(course, student)
    res = client.get(path, headers=auth_headers(student))
    assert res.status_code == 200
    assert res.content == CONTENT


def test_range_request(client, lesson_video, trainer, auth_headers):
    headers = dict(auth_headers(trainer), Range="bytes=2-5")
    res = client.get(f"/api/files/videos/{lesson_video.file_name}", headers=headers)
    assert res.status_code == 206
    assert res.content == b"2345"
    assert res.headers["content-range"] == "bytes 2-5/10"
    assert res.headers["content-length"] == "4"


def test_suffix_range_request(client, lesson_video, trainer, auth_headers):
    headers = dict(auth_headers(trainer), Range="bytes=-3")
    res = client.get(f"/api/files/videos/{lesson_video.file_name}", headers=headers)
    assert res.status_code == 206
    assert res.content == b"789"


def test_unsatisfiable_range(client, lesson_video, trainer, auth_headers):
    headers = dict(auth_headers(trainer), Range="bytes=20-30")
    res = client.get(f"/api/files/videos/{lesson_video.file_name}", headers=headers)
    assert res.status_code == 416
    assert res.headers["content-range"] == "bytes */10"


def test_avatars_visible_to_any_user(client, student, auth_headers):
    save_file(CONTENT, "someone_avatar.png", AVATARS)
    assert client.get("/api/files/avatars/someone_avatar.png").status_code == 401
    res = client.post("/api/files/avatars/someone_avatar.png", headers=auth_headers(student))
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["path"] == "/uploads/avatars/someone_avatar.png"
    assert data["category"] == "avatars"
    assert data["size"] == len(CONTENT)
    assert data["mimeType"] == "image/png"
    assert data["accessLevel"] == "authenticated"


def test_older_video_of_a_lesson_stays_viewable(client, course, lesson, lesson_video, trainer, student, enroll, auth_headers):
    older = save_file(b"older", f"lesson_{lesson.id}_1600000000000_fedcba9876543210.mp4", VIDEOS)
    path = f"/api/files/videos/{older.file_name}"

    assert client.get(path, headers=auth_headers(trainer)).content == b"older"
    assert client.get(path, headers=auth_headers(student)).status_code == 403
    enroll(course, student)
    assert client.get(path, headers=auth_headers(student)).status_code == 200


def test_video_of_unknown_lesson_is_404(client, student, auth_headers):
    save_file(CONTENT, "lesson_gone_1700000000000_0123456789abcdef.mp4", VIDEOS)
    res = client.get("/api/files/videos/lesson_gone_1700000000000_0123456789abcdef.mp4", headers=auth_headers(student))
    assert res.status_code == 404
    assert res.json()["error"] == "Lesson not found"


def test_video_without_lesson_prefix_is_400(client, student, auth_headers):
    save_file(CONTENT, "random.mp4", VIDEOS)
    res = client.get("/api/files/videos/random.mp4", headers=auth_headers(student))
    assert res.status_code == 400
    assert res.json()["code"] == "INVALID_REQUEST_DATA"
