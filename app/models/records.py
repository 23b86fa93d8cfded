"""SQLAlchemy models for the metadata store."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, String

from app.database import Base


class CaseRecord(Base):
    """One teaching case document, keyed by case id."""

    __tablename__ = "cases"

    case_id = Column(String(64), primary_key=True)
    modality = Column(String(16), index=True)

    # Full case document (Case.to_dict)
    document = Column(JSON, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
