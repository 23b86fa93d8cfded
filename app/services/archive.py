"""
Case Archive — ingestion and retrieval across the blob and metadata stores.

The archive is the only component that talks to both stores, and it owns
the cross-store invariant: every image id referenced by a case document has
a blob under (case_id, image_id). Writes always go blob first, document
second, so the only partial-failure window leaves an unreferenced blob,
never a dangling reference.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from app.models.case import Case
from app.services.errors import (
    AllocationCollision,
    BlobNotFound,
    CaseNotFound,
    ImageNotInCase,
    MalformedContainer,
    MissingBlob,
    StoreError,
)
from app.services.identifiers import new_case_id, validate_identifier
from app.services.storage.blobs import BlobStore, blob_key
from app.services.storage.metadata import MetadataStore
from app.services.tag_scanner import ExtractedAttributes, scan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaseFields:
    """Human-authored fields supplied when a case is created."""

    title: str
    description: str = ""
    anatomy: str = ""
    diagnosis: str = ""
    findings: str = ""
    tags: Iterable[str] = field(default_factory=tuple)


class CaseArchive:
    """Create, extend and read teaching cases."""

    def __init__(
        self,
        blobs: BlobStore,
        metadata: MetadataStore,
        allocate_case_id: Callable[[], str] = new_case_id,
        max_allocation_attempts: int = 5,
    ):
        self.blobs = blobs
        self.metadata = metadata
        self.allocate_case_id = allocate_case_id
        self.max_allocation_attempts = max_allocation_attempts

    # ── Ingestion ──────────────────────────────────────────────────

    async def create_case(self, data: bytes, fields: CaseFields) -> Case:
        """
        Create a case from its first image.

        Args:
            data: Raw DICOM Part 10 bytes
            fields: Caller-supplied case fields

        Returns:
            The persisted Case

        Raises:
            ValueError: If the title is empty
            ScanError: If the bytes cannot be scanned (nothing is persisted)
            AllocationCollision: If no unused case id could be allocated
            StoreError: If either store fails
        """
        if not fields.title.strip():
            raise ValueError("Case title is required")

        extracted = self._scan(data)
        case_id = await self._allocate()

        await self.blobs.put(case_id, extracted.instance_id, data)

        case = Case(
            case_id=case_id,
            title=fields.title,
            modality=extracted.modality,
            created_at=datetime.now(timezone.utc),
            description=fields.description,
            anatomy=fields.anatomy or extracted.body_part or "",
            diagnosis=fields.diagnosis,
            findings=fields.findings,
            tags=set(fields.tags),
            study_instance_uid=extracted.study_instance_uid or "",
            study_date=extracted.study_date or "",
            study_description=extracted.study_description or "",
        )
        self._append(case, extracted)

        try:
            await self.metadata.put_case(case)
        except StoreError:
            await self._compensate_create(case_id, extracted.instance_id)
            raise

        logger.info(
            f"Created case {case_id} ({case.modality}) with image {extracted.instance_id}"
        )
        return case

    async def add_image(self, case_id: str, data: bytes) -> Case:
        """
        Add an image to an existing case (read-modify-write of the document).

        Re-adding an image already in the case changes nothing: the stored
        original is kept and the case is returned as is. A retry after a
        failed document write still stores the image, since the document
        does not reference it yet. Concurrent calls on the same case race:
        the last document write wins.

        Raises:
            CaseNotFound: If the case does not exist
            ScanError: If the bytes cannot be scanned
            StoreError: If either store fails
        """
        case = await self.metadata.get_case(case_id)
        extracted = self._scan(data)

        if case.contains_image(extracted.instance_id):
            logger.info(f"Image {extracted.instance_id} already in case {case_id}, keeping stored original")
            return case

        await self.blobs.put(case_id, extracted.instance_id, data)
        self._append(case, extracted)

        try:
            await self.metadata.put_case(case)
        except StoreError as e:
            logger.error(
                f"Possible orphaned blob {blob_key(case_id, extracted.instance_id)}: "
                f"update of case {case_id} failed: {e}"
            )
            raise

        if extracted.modality != case.modality:
            logger.info(
                f"Image {extracted.instance_id} has modality {extracted.modality}, "
                f"case {case_id} keeps {case.modality}"
            )
        logger.info(f"Added image {extracted.instance_id} to case {case_id}")
        return case

    # ── Retrieval ──────────────────────────────────────────────────

    async def get_case(self, case_id: str) -> Case:
        return await self.metadata.get_case(case_id)

    async def list_cases(self) -> list[Case]:
        """All cases, newest first."""
        cases = await self.metadata.list_cases()
        return sorted(cases, key=lambda c: c.created_at, reverse=True)

    async def get_image(self, case_id: str, image_id: str) -> bytes:
        """
        Return the original bytes of an image belonging to a case.

        Raises:
            CaseNotFound: If the case does not exist
            ImageNotInCase: If the case does not reference the image, even
                when a blob exists under that key
            MissingBlob: If the case references the image but its blob is gone
            StoreError: If either store fails
        """
        case = await self.metadata.get_case(case_id)
        if not case.contains_image(image_id):
            raise ImageNotInCase(case_id, image_id)

        try:
            return await self.blobs.get(case_id, image_id)
        except BlobNotFound as e:
            logger.error(f"Case {case_id} references image {image_id} but blob {e.key} is missing")
            raise MissingBlob(case_id, image_id) from e

    # ── Helpers ────────────────────────────────────────────────────

    def _scan(self, data: bytes) -> ExtractedAttributes:
        extracted = scan(data)
        try:
            validate_identifier(extracted.instance_id)
        except ValueError as e:
            raise MalformedContainer(str(e)) from e
        return extracted

    @staticmethod
    def _append(case: Case, extracted: ExtractedAttributes) -> bool:
        return case.append_image(
            extracted.instance_id,
            series_id=extracted.series_instance_uid,
            series_description=extracted.series_description or "",
        )

    async def _ensure_unused(self, case_id: str) -> None:
        try:
            await self.metadata.get_case(case_id)
        except CaseNotFound:
            return
        logger.warning(f"Case id collision on {case_id}, re-allocating")
        raise AllocationCollision(case_id)

    async def _allocate(self) -> str:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_allocation_attempts),
            retry=retry_if_exception_type(AllocationCollision),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                case_id = self.allocate_case_id()
                await self._ensure_unused(case_id)
        return case_id

    async def _compensate_create(self, case_id: str, image_id: str) -> None:
        """
        Best-effort removal of the blob written by a create whose document
        write failed. The blob is only deleted once a re-read confirms the
        document is absent; otherwise its key is logged as an orphan.
        """
        key = blob_key(case_id, image_id)
        try:
            await self.metadata.get_case(case_id)
        except CaseNotFound:
            try:
                await self.blobs.delete(case_id, image_id)
            except StoreError as e:
                logger.error(f"Orphaned blob {key}: case {case_id} was not saved and delete failed: {e}")
                return
            logger.warning(f"Removed blob {key} after case {case_id} failed to save")
            return
        except StoreError as e:
            logger.error(f"Orphaned blob {key}: case {case_id} state unknown after failed save: {e}")
            return

        logger.warning(f"Save of case {case_id} reported failure but the case exists; keeping {key}")
