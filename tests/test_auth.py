from coursecompass.auth import (
    ACCESS_TOKEN_COOKIE,
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    decode_token,
)


def test_tokens_carry_role_and_type(trainer):
    access = decode_token(create_access_token(trainer))
    assert access.sub == trainer.id
    assert access.role == "TRAINER"
    assert access.type == "access"

    refresh = create_refresh_token(trainer)
    assert decode_token(refresh) is None
    assert decode_refresh_token(refresh).sub == trainer.id
    assert decode_refresh_token(create_access_token(trainer)) is None


def test_login_sets_cookie(client, trainer, password):
    res = client.post("/api/auth/login", json={"email": trainer.email.upper(), "password": password})
    assert res.status_code == 200
    body = res.json()
    assert body["token_type"] == "bearer"
    assert decode_token(body["access_token"]).sub == trainer.id
    assert res.cookies.get(ACCESS_TOKEN_COOKIE) == body["access_token"]

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.json()["email"] == trainer.email
    assert me.json()["role"] == "TRAINER"


def test_login_wrong_password(client, trainer):
    res = client.post("/api/auth/login", json={"email": trainer.email, "password": "nope"})
    assert res.status_code == 401
    assert res.json() == {"success": False, "error": "Invalid email or password"}


def test_refresh_with_body_token(client, student):
    res = client.post("/api/auth/refresh", json={"refresh_token": create_refresh_token(student)})
    assert res.status_code == 200
    assert decode_token(res.json()["access_token"]).sub == student.id


def test_refresh_rejects_access_token(client, student):
    res = client.post("/api/auth/refresh", json={"refresh_token": create_access_token(student)})
    assert res.status_code == 401


def test_me_requires_auth(client):
    res = client.get("/api/auth/me")
    assert res.status_code == 401
    assert res.json()["error"] == "Authentication required"


def test_logout_clears_cookie(client, trainer, password):
    client.post("/api/auth/login", json={"email": trainer.email, "password": password})
    res = client.post("/api/auth/logout")
    assert res.status_code == 200
    assert client.get("/api/auth/me").status_code == 401
