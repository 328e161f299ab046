import os
import shutil
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="coursecompass-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/test.db"
os.environ["UPLOAD_ROOT"] = os.path.join(_TMP_DIR, "uploads")
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["REFRESH_SECRET_KEY"] = "test-refresh-secret-key"
os.environ["REDIS_URL"] = ""
os.environ["UPLOAD_RATE_LIMIT"] = "10000"

import pytest
from faker import Faker
from fastapi.testclient import TestClient

from coursecompass.auth import create_access_token, hash_password
from coursecompass.config import upload_root
from coursecompass.core import redis as redis_module
from coursecompass.database import Base, SessionLocal, engine
from coursecompass.main import app
from coursecompass.models import Course, Enrollment, Lesson, User, UserRole
from coursecompass.services.chunk_store import TempChunkStore

PASSWORD = "correct-horse-battery"


@pytest.fixture(autouse=True)
def _fresh_state(monkeypatch):
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(redis_module, "_rate_limiter", None)
    yield
    Base.metadata.drop_all(bind=engine)
    shutil.rmtree(upload_root(), ignore_errors=True)


@pytest.fixture
def fake():
    return Faker()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def password():
    return PASSWORD


@pytest.fixture
def make_user(db, fake):
    password_hash = hash_password(PASSWORD)

    def _make(role: UserRole = UserRole.STUDENT) -> User:
        user = User(email=fake.unique.email(), password=password_hash, name=fake.name(), role=role.value)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def trainer(make_user):
    return make_user(UserRole.TRAINER)


@pytest.fixture
def other_trainer(make_user):
    return make_user(UserRole.TRAINER)


@pytest.fixture
def student(make_user):
    return make_user(UserRole.STUDENT)


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN)


@pytest.fixture
def course(db, fake, trainer):
    course = Course(title=fake.catch_phrase(), description=fake.paragraph(), trainer_id=trainer.id)
    db.add(course)
    db.commit()
    db.refresh(course)
    return course


@pytest.fixture
def lesson(db, fake, course):
    lesson = Lesson(course_id=course.id, title=fake.sentence(nb_words=4), order=1)
    db.add(lesson)
    db.commit()
    db.refresh(lesson)
    return lesson


@pytest.fixture
def enroll(db):
    def _enroll(course: Course, user: User) -> Enrollment:
        enrollment = Enrollment(course_id=course.id, student_id=user.id)
        db.add(enrollment)
        db.commit()
        return enrollment

    return _enroll


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user)}"}

    return _headers


@pytest.fixture
def store():
    return TempChunkStore()


@pytest.fixture
def client():
    return TestClient(app)
