"""
Shared fixtures for the Readmind test suite.

The environment is pinned before ``readmind`` is imported: an in-memory
SQLite database and 8-dimensional embeddings, so vectors can be written by
hand and cosine similarities are exact.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["EMBEDDING_DIMENSION"] = "8"
os.environ.setdefault("OPENAI_API_KEY", "test-key")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from readmind.db import init_db, drop_db, async_session_maker

from fakes import FakeEmbeddingService, FakeLLMService


@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    """Create a fresh database for each test"""
    await init_db()
    yield
    await drop_db()


@pytest_asyncio.fixture
async def db_session():
    """Get a database session"""
    async with async_session_maker() as session:
        yield session


@pytest.fixture
def embedder():
    return FakeEmbeddingService()


@pytest.fixture
def llm():
    return FakeLLMService()


@pytest_asyncio.fixture
async def extraction_queue(embedder, llm):
    """A single-worker queue wired to the fake providers"""
    from readmind.services.extraction_queue import ExtractionQueue, set_extraction_queue

    queue = ExtractionQueue(workers=1, embedding_service=embedder, llm_service=llm)
    set_extraction_queue(queue)
    await queue.start()
    yield queue
    await queue.stop()
    set_extraction_queue(None)


@pytest_asyncio.fixture
async def client(embedder, extraction_queue):
    """Create an async test client with fake providers"""
    from readmind.main import app
    from readmind.api.deps import get_embedder, get_queue

    app.dependency_overrides[get_embedder] = lambda: embedder
    app.dependency_overrides[get_queue] = lambda: extraction_queue
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def owner_headers():
    return {"X-Owner-Id": "owner-a"}


@pytest.fixture
def other_owner_headers():
    return {"X-Owner-Id": "owner-b"}
