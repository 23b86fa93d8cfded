"""Request bodies accepted by the case API."""

import base64
import binascii

from pydantic import BaseModel, ConfigDict, Field


class _DicomUpload(BaseModel):
    """Base64-encoded DICOM payload (the `dicomFile` field)."""

    model_config = ConfigDict(populate_by_name=True)

    dicom_file: str = Field(alias="dicomFile", min_length=1)

    def decode_dicom(self) -> bytes:
        """
        Decode the payload.

        Raises:
            ValueError: If `dicomFile` is not valid base64
        """
        try:
            return base64.b64decode(self.dicom_file, validate=True)
        except binascii.Error as e:
            raise ValueError(f"Invalid base64 encoding: {e}") from e


class CaseCreateRequest(_DicomUpload):
    """POST /api/cases"""

    title: str = Field(min_length=1)
    description: str = ""
    anatomy: str = ""
    diagnosis: str = ""
    findings: str = ""
    tags: list[str] = Field(default_factory=list)


class ImageAddRequest(_DicomUpload):
    """POST /api/cases/{case_id}/images"""
