import json

import pytest
import pytest_asyncio
from typing import AsyncGenerator, List

import httpx
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from models import Base, Subject, get_db
from models.subject import new_id
from config import settings
from engine.job_queue import TranscriptionQueue
from services.worker_gateway import WorkerGateway

WORKER_URL = "http://worker.test"
LONG_TRANSCRIPT = "word " * 40  # comfortably over the 100 character threshold


# --- Fake Worker ---
class FakeWorker:
    """Stands in for the transcription worker behind an httpx.MockTransport."""

    def __init__(self):
        self.calls: List[dict] = []
        self.status_code = 202
        self.body = "accepted"
        self.timeout = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append({
            "url": str(request.url),
            "json": json.loads(request.content),
            "headers": dict(request.headers),
        })
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(self.status_code, text=self.body)


@pytest.fixture
def fake_worker() -> FakeWorker:
    return FakeWorker()


@pytest.fixture
def gateway(fake_worker) -> WorkerGateway:
    return WorkerGateway(worker_url=WORKER_URL, transport=httpx.MockTransport(fake_worker.handler))


@pytest.fixture(autouse=True)
def transcription_queue(gateway):
    """Fresh queue singleton per test, wired to the fake worker."""
    TranscriptionQueue._instance = TranscriptionQueue(gateway=gateway)
    yield TranscriptionQueue._instance
    TranscriptionQueue._instance = None


@pytest.fixture(autouse=True)
def reset_settings():
    saved = (settings.cron_secret, settings.stale_processing_minutes, settings.worker_token)
    settings.cron_secret = None
    settings.stale_processing_minutes = 0
    settings.worker_token = None
    yield
    settings.cron_secret, settings.stale_processing_minutes, settings.worker_token = saved


# --- Database Setup ---
# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def session_factory():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(expire_on_commit=False, bind=engine)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def file_session_factory(tmp_path):
    """File-backed database with a real pool, for tests that run sessions concurrently."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}",
        connect_args={"timeout": 30, "check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(expire_on_commit=False, bind=engine)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# --- Client Setup ---
@pytest_asyncio.fixture(scope="function")
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


# --- Data Helpers ---
async def make_subject(db: AsyncSession, **fields) -> str:
    """Insert a subject and return its id. Defaults to one with an audio URL."""
    fields.setdefault("title", "Lecture")
    if "audio_url" not in fields and "youtube_url" not in fields:
        fields["audio_url"] = "https://cdn.example.com/audio.mp3"
    subject = Subject(id=new_id(), **fields)
    db.add(subject)
    await db.commit()
    return subject.id


@pytest.fixture
def subject_factory(db_session):
    async def factory(**fields) -> str:
        return await make_subject(db_session, **fields)
    return factory
