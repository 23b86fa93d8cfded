"""Metadata store adapters: one case document per case id."""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.case import Case
from app.models.records import CaseRecord
from app.services.errors import CaseNotFound, StoreError

logger = logging.getLogger(__name__)

# Raised by Case.from_dict on a document that does not match the schema
_DOCUMENT_ERRORS = (KeyError, ValueError, TypeError)


class MetadataStore(ABC):
    """
    Base class for metadata store adapters.

    put_case is a full-document upsert; partial updates are composed by
    the caller as read-modify-write.
    """

    @abstractmethod
    async def put_case(self, case: Case) -> None:
        """Create or replace the case document."""

    @abstractmethod
    async def get_case(self, case_id: str) -> Case:
        """Return the case. Raises CaseNotFound for an unknown id."""

    @abstractmethod
    async def list_cases(self) -> list[Case]:
        """Return every case, in no particular order."""

    async def close(self) -> None:
        """Clean up resources."""
        pass


class InMemoryMetadataStore(MetadataStore):
    """In-memory metadata store for testing and local development."""

    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any]] = {}

    async def put_case(self, case: Case) -> None:
        self.documents[case.case_id] = copy.deepcopy(case.to_dict())

    async def get_case(self, case_id: str) -> Case:
        if case_id not in self.documents:
            raise CaseNotFound(case_id)
        return Case.from_dict(copy.deepcopy(self.documents[case_id]))

    async def list_cases(self) -> list[Case]:
        return [Case.from_dict(copy.deepcopy(doc)) for doc in self.documents.values()]


class SqlMetadataStore(MetadataStore):
    """SQLAlchemy-backed metadata store (PostgreSQL in production, SQLite in tests)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def put_case(self, case: Case) -> None:
        record = CaseRecord(
            case_id=case.case_id,
            modality=case.modality,
            document=case.to_dict(),
            created_at=case.created_at,
        )
        try:
            async with self.session_factory() as session:
                await session.merge(record)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to save case {case.case_id}: {e}") from e

        logger.info(f"Saved case {case.case_id} ({len(case.image_ids)} images)")

    async def get_case(self, case_id: str) -> Case:
        try:
            async with self.session_factory() as session:
                record = await session.get(CaseRecord, case_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to get case {case_id}: {e}") from e

        if record is None:
            raise CaseNotFound(case_id)

        try:
            return Case.from_dict(record.document)
        except _DOCUMENT_ERRORS as e:
            raise StoreError(f"Unreadable document for case {case_id}: {e}") from e

    async def list_cases(self) -> list[Case]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(CaseRecord))
                records = result.scalars().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list cases: {e}") from e

        cases = []
        for record in records:
            try:
                cases.append(Case.from_dict(record.document))
            except _DOCUMENT_ERRORS as e:
                logger.warning(f"Skipping unreadable document for case {record.case_id}: {e}")

        logger.info(f"Retrieved {len(cases)} cases")
        return cases
