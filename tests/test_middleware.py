import pytest

from coursecompass.auth import ACCESS_TOKEN_COOKIE, create_access_token
from coursecompass.middleware import ADMIN_ONLY, INSTRUCTORS, required_roles


@pytest.mark.parametrize(
    "path,expected",
    [
        ("/api/admin/files/cleanup", ADMIN_ONLY),
        ("/api/admin", ADMIN_ONLY),
        ("/api/upload/video", INSTRUCTORS),
        ("/api/upload/video/sessions/abc", INSTRUCTORS),
        ("/api/upload/thumbnail", INSTRUCTORS),
        ("/api/upload/avatar", None),
        ("/api/administrator", None),
        ("/api/files/videos/x.mp4", None),
    ],
)
def test_required_roles(path, expected):
    assert required_roles(path) == expected


def test_longest_prefix_wins():
    rules = {"/api/upload": ("A",), "/api/upload/video": ("B",)}
    assert required_roles("/api/upload/video", rules) == ("B",)
    assert required_roles("/api/upload/avatar", rules) == ("A",)


def test_gate_requires_token(client):
    res = client.post("/api/upload/video")
    assert res.status_code == 401
    assert res.json() == {"success": False, "error": "Authentication required"}


def test_gate_rejects_bad_token(client):
    res = client.post("/api/upload/video", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401
    assert res.json()["error"] == "Invalid or expired token"


def test_gate_rejects_wrong_role(client, student, auth_headers):
    res = client.post("/api/upload/video", headers=auth_headers(student))
    assert res.status_code == 403
    assert res.json()["success"] is False

    res = client.get("/api/admin/upload-sessions", headers=auth_headers(student))
    assert res.status_code == 403


def test_gate_accepts_cookie_token(client, admin):
    client.cookies.set(ACCESS_TOKEN_COOKIE, create_access_token(admin))
    res = client.get("/api/admin/upload-sessions")
    assert res.status_code == 200
    assert res.json() == {"success": True, "data": []}
