"""Blob and metadata store adapters."""

from app.services.storage.blobs import (
    AzureBlobStore,
    BlobStore,
    FileBlobStore,
    InMemoryBlobStore,
    blob_key,
)
from app.services.storage.config import load_blob_store_from_config
from app.services.storage.metadata import (
    InMemoryMetadataStore,
    MetadataStore,
    SqlMetadataStore,
)

__all__ = [
    "AzureBlobStore",
    "BlobStore",
    "FileBlobStore",
    "InMemoryBlobStore",
    "InMemoryMetadataStore",
    "MetadataStore",
    "SqlMetadataStore",
    "blob_key",
    "load_blob_store_from_config",
]
