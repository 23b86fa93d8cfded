"""Test fixtures for the Radiology Teaching Archive."""

from contextlib import asynccontextmanager

import pytest
import pytest_asyncio
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.database import Base
from app.routers import cases
from app.services.archive import CaseArchive
from app.services.storage import (
    FileBlobStore,
    InMemoryBlobStore,
    InMemoryMetadataStore,
    SqlMetadataStore,
)
from tests.fixtures.containers import make_container
from tests.fixtures.factories import DicomFactory


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def metadata_store():
    return InMemoryMetadataStore()


@pytest.fixture
def archive(blob_store, metadata_store):
    """CaseArchive over in-memory stores."""
    return CaseArchive(blob_store, metadata_store)


@pytest_asyncio.fixture
async def sql_session_factory(tmp_path):
    """Session factory for a fresh SQLite database with tables created."""
    db_path = tmp_path / "test.db"
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}", connect_args={"check_same_thread": False}
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

    await test_engine.dispose()


@pytest.fixture
def client(tmp_path):
    """Create a TestClient backed by SQLite and a file blob store under tmp_path."""

    storage_dir = tmp_path / "blob_storage"

    # Create test database engine
    db_path = tmp_path / "test.db"
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}", connect_args={"check_same_thread": False}
    )
    TestSessionLocal = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

    # Create a lifespan context for the test app
    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        # Create tables
        async with test_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        blob_store = FileBlobStore(storage_dir)
        await blob_store.initialize()
        app.state.archive = CaseArchive(blob_store, SqlMetadataStore(TestSessionLocal))
        yield
        # Cleanup
        await test_engine.dispose()

    # Create test app
    test_app = FastAPI(lifespan=test_lifespan)
    test_app.include_router(cases.router, prefix="/api", tags=["Cases"])

    # Add health check endpoint
    @test_app.get("/health", tags=["Health"])
    async def health_check():
        return {"status": "healthy", "service": "radiology-teaching-archive"}

    # Create test client
    with TestClient(test_app) as test_client:
        yield test_client


# ── DICOM Fixture Helpers ──────────────────────────────────────


@pytest.fixture
def img1_bytes():
    """Container with instance id IMG1, modality CT."""
    return make_container(instance_id="IMG1", modality="CT")


@pytest.fixture
def img2_bytes():
    """Container with instance id IMG2, modality CT, same series as IMG1."""
    return make_container(instance_id="IMG2", modality="CT", instance_number="2")


@pytest.fixture
def sample_ct_dicom():
    """Returns pydicom-written CT bytes (minimal, no pixels)."""
    return DicomFactory.create_ct_image()


@pytest.fixture
def sample_mri_dicom():
    """Returns pydicom-written MR bytes."""
    return DicomFactory.create_mri_image()


@pytest.fixture
def invalid_dicom_missing_sop():
    """Returns DICOM missing SOPInstanceUID."""
    return DicomFactory.create_invalid_dicom(missing_tags=["SOPInstanceUID"])
