"""
Radiology Teaching Archive

Ingests DICOM teaching cases, keeps case documents in a SQL database and the
original image files in a blob store, and serves both back for browsing.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.database import AsyncSessionLocal, Base, engine
from app.routers import cases
from app.services.archive import CaseArchive
from app.services.storage import SqlMetadataStore, load_blob_store_from_config

logger = logging.getLogger(__name__)

CORS_ALLOW_ORIGINS = [
    origin.strip() for origin in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if origin.strip()
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables and wire the case archive on startup."""
    # Create database tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Initialize stores
    blob_store = load_blob_store_from_config()
    await blob_store.initialize()
    metadata_store = SqlMetadataStore(AsyncSessionLocal)

    app.state.archive = CaseArchive(blob_store, metadata_store)
    logger.info(f"Case archive ready ({blob_store.__class__.__name__})")

    yield

    # Cleanup
    await blob_store.close()
    await metadata_store.close()
    await engine.dispose()


app = FastAPI(
    title="Radiology Teaching Archive",
    description=(
        "Teaching case archive: DICOM ingestion with identifying tag extraction, "
        "case metadata and original image retrieval."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Teaching Case API ──────────────────────────────────────────────
app.include_router(cases.router, prefix="/api", tags=["Cases"])


@app.get("/health", tags=["Health"])
async def health_check():
    return {"status": "healthy", "service": "radiology-teaching-archive"}
