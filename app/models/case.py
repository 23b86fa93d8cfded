"""Teaching case domain model."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Series that holds images carrying no SeriesInstanceUID, and the images of a
# case that predates explicit series
IMPLICIT_SERIES_ID = "default"


@dataclass
class Series:
    """Named grouping of a subset of a case's images."""

    series_id: str
    description: str = ""
    image_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "series_id": self.series_id,
            "description": self.description,
            "image_ids": list(self.image_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Series":
        return cls(
            series_id=data["series_id"],
            description=data.get("description", ""),
            image_ids=list(data.get("image_ids", [])),
        )


@dataclass
class Case:
    """
    One teaching exam: human-authored fields plus the images ingested into it.

    `case_id`, `modality` and `created_at` are fixed when the case is created.
    `image_ids` only ever grows. When `series` is None the case behaves as a
    single implicit series holding every image.
    """

    case_id: str
    title: str
    modality: str
    created_at: datetime
    description: str = ""
    anatomy: str = ""
    diagnosis: str = ""
    findings: str = ""
    tags: set[str] = field(default_factory=set)
    image_ids: list[str] = field(default_factory=list)
    series: list[Series] | None = None

    # Copied from the first ingested image
    study_instance_uid: str = ""
    study_date: str = ""
    study_description: str = ""

    def contains_image(self, image_id: str) -> bool:
        if image_id in self.image_ids:
            return True
        return any(image_id in s.image_ids for s in self.series or [])

    def iter_series(self) -> list[Series]:
        """Explicit series, or the single implicit series when none exist."""
        if self.series is None:
            return [Series(IMPLICIT_SERIES_ID, image_ids=list(self.image_ids))]
        return list(self.series)

    def append_image(
        self,
        image_id: str,
        series_id: str | None = None,
        series_description: str = "",
    ) -> bool:
        """
        Append an image to the case and to its owning series.

        Returns:
            False if the image was already part of the case (nothing changes),
            True otherwise
        """
        if self.contains_image(image_id):
            return False

        self.image_ids.append(image_id)

        if self.series is None:
            if series_id is None:
                return True
            # Materialise the implicit series before the first explicit one
            earlier = self.image_ids[:-1]
            self.series = [Series(IMPLICIT_SERIES_ID, image_ids=earlier)] if earlier else []

        target_id = series_id or IMPLICIT_SERIES_ID
        target = next((s for s in self.series if s.series_id == target_id), None)
        if target is None:
            target = Series(target_id, description=series_description)
            self.series.append(target)
        target.image_ids.append(image_id)
        return True

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON document stored in the metadata store."""
        return {
            "case_id": self.case_id,
            "title": self.title,
            "description": self.description,
            "modality": self.modality,
            "anatomy": self.anatomy,
            "diagnosis": self.diagnosis,
            "findings": self.findings,
            "tags": sorted(self.tags),
            "image_ids": list(self.image_ids),
            "series": [s.to_dict() for s in self.series] if self.series is not None else None,
            "created_at": self.created_at.isoformat(),
            "study_instance_uid": self.study_instance_uid,
            "study_date": self.study_date,
            "study_description": self.study_description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Case":
        """
        Build a Case from a stored document.

        Raises:
            KeyError: If case_id, title, modality or created_at is missing
            ValueError: If created_at is not an ISO 8601 timestamp
        """
        series = data.get("series")
        return cls(
            case_id=data["case_id"],
            title=data["title"],
            modality=data["modality"],
            created_at=datetime.fromisoformat(data["created_at"]),
            description=data.get("description", ""),
            anatomy=data.get("anatomy", ""),
            diagnosis=data.get("diagnosis", ""),
            findings=data.get("findings", ""),
            tags=set(data.get("tags", [])),
            image_ids=list(data.get("image_ids", [])),
            series=[Series.from_dict(s) for s in series] if series is not None else None,
            study_instance_uid=data.get("study_instance_uid", ""),
            study_date=data.get("study_date", ""),
            study_description=data.get("study_description", ""),
        )
