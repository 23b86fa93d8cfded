"""Configuration loading for the blob store."""

import json
import logging
import os
from typing import Any

from app.services.storage.blobs import (
    AzureBlobStore,
    BlobStore,
    FileBlobStore,
    InMemoryBlobStore,
)

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_DIR = "/data/dicom"


def _default_blob_store() -> BlobStore:
    storage_dir = os.getenv("DICOM_STORAGE_DIR", DEFAULT_STORAGE_DIR)
    logger.info(f"Using file blob store at {storage_dir}")
    return FileBlobStore(storage_dir)


def load_blob_store_from_config() -> BlobStore:
    """
    Load the blob store from the BLOB_STORE environment variable.

    Expected JSON format (one of):
        {"type": "file", "storage_dir": "/data/dicom"}
        {"type": "azure_blob", "connection_string": "...", "container_name": "..."}
        {"type": "in_memory"}

    Falls back to a FileBlobStore under DICOM_STORAGE_DIR when the variable
    is missing or unusable.

    Returns:
        Instantiated BlobStore
    """
    config_json = os.getenv("BLOB_STORE")
    if not config_json:
        logger.info("No BLOB_STORE environment variable found, using file blob store")
        return _default_blob_store()

    try:
        config = json.loads(config_json)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse BLOB_STORE JSON: {e}")
        return _default_blob_store()

    if not isinstance(config, dict):
        logger.error("BLOB_STORE must be a JSON object with a 'type' key")
        return _default_blob_store()

    store = _create_blob_store(config.get("type"), config)
    if store is None:
        return _default_blob_store()

    logger.info(f"Loaded blob store: {config.get('type')}")
    return store


def _create_blob_store(store_type: str | None, config: dict[str, Any]) -> BlobStore | None:
    """
    Create a blob store instance based on type and configuration.

    Args:
        store_type: Type of store (file, azure_blob, in_memory)
        config: Store configuration dictionary

    Returns:
        BlobStore instance or None if the configuration is unusable
    """
    if store_type == "in_memory":
        return InMemoryBlobStore()

    elif store_type == "file":
        storage_dir = config.get("storage_dir") or os.getenv(
            "DICOM_STORAGE_DIR", DEFAULT_STORAGE_DIR
        )
        return FileBlobStore(storage_dir)

    elif store_type == "azure_blob":
        connection_string = config.get("connection_string")
        container_name = config.get("container_name")
        if not connection_string or not container_name:
            logger.error(
                "Azure blob store missing 'connection_string' or 'container_name' configuration"
            )
            return None
        return AzureBlobStore(connection_string=connection_string, container_name=container_name)

    else:
        logger.warning(f"Unknown blob store type: {store_type}")
        return None
