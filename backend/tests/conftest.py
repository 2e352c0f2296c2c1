"""Pytest configuration and shared fixtures for API and service tests."""

import os
import re
import shutil
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

_TMP_DIR = tempfile.mkdtemp(prefix="vidtube-tests-")

# Set test DB and secrets before app imports so config/engine use them
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP_DIR}/test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("UPLOAD_TEMP_DIR", f"{_TMP_DIR}/uploads")
os.environ.setdefault("MAIL_BACKEND", "log")

from vidtube.core.auth import create_access_token, hash_password
from vidtube.core.errors import DeliveryError, UploadFailedError
from vidtube.db.base import Base
from vidtube.db.session import async_session_maker, engine
from vidtube.main import app
import vidtube.models  # noqa: F401 - so all models are registered
from vidtube.models.user import User
from vidtube.schemas.upload import TempUpload
from vidtube.services.credential_store import CredentialStore
from vidtube.services.mailer import get_mailer
from vidtube.services.otp import InMemoryChallengeStore, OtpChallengeService, get_otp_store
from vidtube.services.session_coordinator import SessionCoordinator
from vidtube.services.storage import get_object_storage
from vidtube.services.tokens import TokenIssuer

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64

_CODE_RE = re.compile(r"<strong>(\d{6})</strong>")


class FakeMailer:
    """Records sent messages; set `fail = True` to simulate a delivery failure."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    async def send(self, to: str, subject: str, html_body: str) -> None:
        if self.fail:
            raise DeliveryError()
        self.sent.append((to, subject, html_body))

    def last_code(self, to: str) -> str:
        for recipient, _, body in reversed(self.sent):
            if recipient == to:
                return _CODE_RE.search(body).group(1)
        raise AssertionError(f"no OTP sent to {to}")


class FakeStorage:
    """Object storage double: removes the local file like the real one and returns a fake URL."""

    def __init__(self):
        self.uploaded: list[tuple[str, str]] = []
        self.fail_categories: set[str] = set()

    async def upload(self, local_path: str | None, category: str = "images") -> str | None:
        if not local_path:
            return None
        path = Path(local_path)
        try:
            if category in self.fail_categories:
                raise UploadFailedError()
            self.uploaded.append((category, path.name))
            return f"https://cdn.test/{category}/{path.name}"
        finally:
            path.unlink(missing_ok=True)


class FakeClock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def upload_dir() -> Path:
    """Empty temp upload dir; tests assert on what is left in it."""
    path = Path(os.environ["UPLOAD_TEMP_DIR"])
    shutil.rmtree(path, ignore_errors=True)
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def make_temp_upload(upload_dir):
    """Factory writing a small PNG into the temp upload dir."""

    def _make(name: str = "image.png") -> TempUpload:
        path = upload_dir / f"{uuid.uuid4().hex}.png"
        path.write_bytes(PNG_BYTES)
        return TempUpload(path=str(path), filename=name, content_type="image/png")

    return _make


@pytest_asyncio.fixture
async def db():
    """Fresh schema per test; engine connections are disposed so none outlive the test's loop."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(db):
    async with async_session_maker() as s:
        yield s
        await s.rollback()


@pytest.fixture
def otp_store() -> InMemoryChallengeStore:
    return InMemoryChallengeStore()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def coordinator(session, otp_store, mailer, storage, clock) -> SessionCoordinator:
    credentials = CredentialStore(session)
    return SessionCoordinator(
        session=session,
        credentials=credentials,
        otp=OtpChallengeService(otp_store, mailer, clock=clock),
        tokens=TokenIssuer(credentials),
        storage=storage,
    )


@pytest_asyncio.fixture
async def client(db, otp_store, mailer, storage):
    """AsyncClient against the app with mail, storage and OTP store replaced by fakes."""
    app.dependency_overrides[get_otp_store] = lambda: otp_store
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_object_storage] = lambda: storage
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


async def create_user(
    session: AsyncSession | None = None,
    username: str = "alice",
    email: str = "alice@x.com",
    password: str = "correctpw",
    full_name: str = "Alice Liddell",
) -> User:
    """Insert a committed user directly through the ORM, in `session` when given."""
    user = User(
        username=username,
        email=email,
        full_name=full_name,
        password_hash=hash_password(password),
        avatar=f"https://cdn.test/avatars/{username}.png",
        cover_image="",
    )
    if session is not None:
        session.add(user)
        await session.commit()
        return user
    async with async_session_maker() as s:
        s.add(user)
        await s.commit()
        await s.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db):
    """Create a user via DB (committed) and return (user_id, email, access_token)."""
    user = await create_user()
    token = create_access_token(user.id, user.email, user.username, user.full_name)
    return user.id, user.email, token


@pytest.fixture
def auth_headers(test_user):
    """Return dict of Authorization header for test_user."""
    _, __, token = test_user
    return {"Authorization": f"Bearer {token}"}
