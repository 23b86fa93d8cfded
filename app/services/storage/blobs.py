"""Blob store adapters: opaque image payloads keyed by (case_id, image_id)."""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import ContainerClient, ContentSettings

from app.services.errors import BlobNotFound, StoreError
from app.services.identifiers import validate_identifier

logger = logging.getLogger(__name__)

DICOM_CONTENT_TYPE = "application/dicom"


def blob_key(case_id: str, image_id: str) -> str:
    """Deterministic storage key for one image of one case."""
    return f"{case_id}/{image_id}.dcm"


class BlobStore(ABC):
    """Base class for blob store adapters."""

    @abstractmethod
    async def put(self, case_id: str, image_id: str, data: bytes) -> None:
        """Store bytes under the key, overwriting any previous payload."""

    @abstractmethod
    async def get(self, case_id: str, image_id: str) -> bytes:
        """Return the stored bytes. Raises BlobNotFound for an unknown key."""

    @abstractmethod
    async def delete(self, case_id: str, image_id: str) -> None:
        """Remove the blob. Deleting a missing blob is not an error."""

    async def initialize(self) -> None:
        """Prepare the backing storage (create containers, directories)."""
        pass

    async def close(self) -> None:
        """Clean up resources."""
        pass


class InMemoryBlobStore(BlobStore):
    """In-memory blob store for testing and local development."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}

    async def put(self, case_id: str, image_id: str, data: bytes) -> None:
        self.blobs[blob_key(case_id, image_id)] = bytes(data)

    async def get(self, case_id: str, image_id: str) -> bytes:
        key = blob_key(case_id, image_id)
        if key not in self.blobs:
            raise BlobNotFound(key)
        return self.blobs[key]

    async def delete(self, case_id: str, image_id: str) -> None:
        self.blobs.pop(blob_key(case_id, image_id), None)

    def keys(self) -> list[str]:
        """All stored keys, sorted."""
        return sorted(self.blobs)


class FileBlobStore(BlobStore):
    """
    Filesystem blob store.

    Layout: {storage_dir}/{case_id}/{image_id}.dcm. Writes go to a temporary
    file in the same directory and are renamed into place, so a reader never
    sees a partially written blob.
    """

    def __init__(self, storage_dir: Path | str):
        self.storage_dir = Path(storage_dir)

    def _path(self, case_id: str, image_id: str) -> Path:
        # Both parts end up in a filesystem path
        validate_identifier(case_id)
        validate_identifier(image_id)
        return self.storage_dir / case_id / f"{image_id}.dcm"

    async def initialize(self) -> None:
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create blob storage directory {self.storage_dir}: {e}") from e

    async def put(self, case_id: str, image_id: str, data: bytes) -> None:
        path = self._path(case_id, image_id)
        tmp_path = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StoreError(f"Failed to write blob {blob_key(case_id, image_id)}: {e}") from e

        logger.debug(f"Stored blob {path} ({len(data)} bytes)")

    async def get(self, case_id: str, image_id: str) -> bytes:
        path = self._path(case_id, image_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise BlobNotFound(blob_key(case_id, image_id)) from None
        except OSError as e:
            raise StoreError(f"Failed to read blob {blob_key(case_id, image_id)}: {e}") from e

    async def delete(self, case_id: str, image_id: str) -> None:
        path = self._path(case_id, image_id)
        try:
            path.unlink(missing_ok=True)

            # Clean up the case directory if empty
            case_dir = path.parent
            if case_dir.exists() and not any(case_dir.iterdir()):
                case_dir.rmdir()
        except OSError as e:
            raise StoreError(f"Failed to delete blob {blob_key(case_id, image_id)}: {e}") from e


class AzureBlobStore(BlobStore):
    """Azure Blob Storage adapter (Azurite compatible)."""

    def __init__(self, connection_string: str, container_name: str):
        self.container_client = ContainerClient.from_connection_string(
            connection_string, container_name
        )

    async def initialize(self) -> None:
        """Create the container if it does not exist yet."""
        try:
            self.container_client.create_container()
            logger.info(f"Created blob container: {self.container_client.container_name}")
        except ResourceExistsError:
            logger.info(f"Blob container already exists: {self.container_client.container_name}")
        except AzureError as e:
            raise StoreError(f"Cannot prepare blob container: {e}") from e

    async def put(self, case_id: str, image_id: str, data: bytes) -> None:
        key = blob_key(case_id, image_id)
        try:
            self.container_client.upload_blob(
                name=key,
                data=data,
                overwrite=True,
                content_settings=ContentSettings(content_type=DICOM_CONTENT_TYPE),
            )
        except AzureError as e:
            raise StoreError(f"Failed to upload blob {key}: {e}") from e

        logger.info(f"Uploaded blob {key} ({len(data)} bytes)")

    async def get(self, case_id: str, image_id: str) -> bytes:
        key = blob_key(case_id, image_id)
        try:
            return self.container_client.download_blob(key).readall()
        except ResourceNotFoundError:
            raise BlobNotFound(key) from None
        except AzureError as e:
            raise StoreError(f"Failed to download blob {key}: {e}") from e

    async def delete(self, case_id: str, image_id: str) -> None:
        key = blob_key(case_id, image_id)
        try:
            self.container_client.delete_blob(key)
        except ResourceNotFoundError:
            pass
        except AzureError as e:
            raise StoreError(f"Failed to delete blob {key}: {e}") from e

    async def close(self) -> None:
        """Close container client connection."""
        self.container_client.close()
