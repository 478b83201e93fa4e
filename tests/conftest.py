"""
Treatment AI Backend — Test Configuration (conftest.py)
========================================================

What:  Shared pytest fixtures for the whole suite.
How:   Environment variables are set before any treatment_api import so the
       settings singleton never sees production values.

Fixture Hierarchy (all function-scoped):
    ├── mock_db_session: AsyncMock standing in for AsyncSession
    ├── temp_storage:    fresh storage directory
    ├── sample_image_bytes / sample_pdf_bytes
    ├── sample_user:     transient User row
    ├── mock_llm:        AsyncMock implementing the LLMService surface
    └── test_client:     HTTPX AsyncClient over the ASGI app, with the DB
                         session and current user overridden
"""

import os
import tempfile
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport


# ══════════════════════════════════════════════════════════════════════════
# Environment Setup
# ══════════════════════════════════════════════════════════════════════════

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["OPENAI_API_KEY"] = "test-key-not-real"
os.environ["TERRA_SECRET"] = "test-terra-secret"
os.environ["MERLIN_JWT_TOKEN"] = "test-merlin-token"
os.environ["STORAGE_ROOT"] = tempfile.mkdtemp(prefix="treatment_api_test_")
os.environ["LOG_LEVEL"] = "WARNING"


# ══════════════════════════════════════════════════════════════════════════
# Function-Scoped Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def mock_db_session():
    """
    A mock AsyncSession.

    Usage:
        mock_db_session.execute.return_value.scalar_one_or_none.return_value = row
    `add` / `add_all` are synchronous on a real session, so they are MagicMocks.
    """
    session = AsyncMock()
    # Results are synchronous objects (scalar_one_or_none, scalars, all)
    session.execute = AsyncMock(return_value=MagicMock())
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.refresh = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()
    session.add_all = MagicMock()
    return session


@pytest.fixture
def temp_storage(tmp_path):
    storage_dir = tmp_path / "storage"
    storage_dir.mkdir()
    return str(storage_dir)


@pytest.fixture
def sample_image_bytes():
    """Smallest JPEG libmagic recognises: SOI + JFIF APP0 header + EOI."""
    return (
        b'\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00'
        b'\xff\xd9'
    )


@pytest.fixture
def sample_pdf_bytes():
    """Header bytes are enough for MIME sniffing; not a parseable PDF."""
    return b"%PDF-1.4\n%\xe2\xe3\xcf\xd3\n1 0 obj\n<< /Type /Catalog >>\nendobj\n"


@pytest.fixture
def sample_user():
    from treatment_api.models.user import User

    return User(
        id=uuid4(),
        email="patient@example.com",
        first_name="Pat",
        last_name="Ient",
        is_verified=True,
        is_active=True,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def mock_llm():
    llm = MagicMock()
    llm.complete = AsyncMock(return_value="")
    llm.describe_image = AsyncMock(return_value="")
    llm.embed = AsyncMock(return_value=[0.1] * 1536)
    llm.health_check = AsyncMock(return_value=True)
    return llm


@pytest_asyncio.fixture
async def test_client(mock_db_session, sample_user):
    """
    HTTPX AsyncClient talking to the app through ASGITransport.

    get_db_session yields `mock_db_session` and get_current_user returns
    `sample_user`; tests that exercise authentication itself remove the
    user override.
    """
    from treatment_api.database import get_db_session
    from treatment_api.deps import get_current_user
    from treatment_api.main import app

    async def override_db():
        yield mock_db_session

    async def override_user():
        return sample_user

    app.dependency_overrides[get_db_session] = override_db
    app.dependency_overrides[get_current_user] = override_user

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
