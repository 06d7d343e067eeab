import os
from datetime import datetime, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SMTP_HOST", "")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from main import app, get_clock, get_mailer
from db import Base, get_db
from mailer import Mailer
from security import verify_admin

HDR = {"X-API-Key": "test-key", "X-Store-Id": "1"}


class FakeClock:
    """Callable clock that tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, *args) -> None:
        self.now = datetime(*args, tzinfo=timezone.utc)


class RecordingMailer(Mailer):
    def __init__(self):
        super().__init__(host="smtp.test")
        self.sent = []

    def send_html(self, to_email, subject, html_content):
        self.sent.append({"to": to_email, "subject": subject, "html": html_content})
        return True


@pytest.fixture
def test_engine(tmp_path):
    url = f"sqlite:///{tmp_path / 'test.db'}"
    engine = create_engine(url, connect_args={"check_same_thread": False})

    # SQLite force foreign key constraints
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()

@pytest.fixture
def TestingSessionLocal(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

@pytest.fixture
def db(TestingSessionLocal):
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc))

@pytest.fixture
def mailer():
    return RecordingMailer()

@pytest.fixture(autouse=True)
def override_di(TestingSessionLocal, clock, mailer):
    def _get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[verify_admin] = lambda: None
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_mailer] = lambda: mailer
    yield
    app.dependency_overrides.clear()

@pytest.fixture
def client():
    return TestClient(app)
