"""
Teaching Case API Router

Each route maps one request variant onto one Case Archive operation:
- GET  /cases                       list cases
- GET  /cases/{case_id}             get case
- POST /cases                       create case from its first image
- POST /cases/{case_id}/images      add image to a case
- GET  /dicom/{case_id}/{image_id}  retrieve original image bytes
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from app.models.requests import CaseCreateRequest, ImageAddRequest
from app.services.archive import CaseArchive, CaseFields
from app.services.errors import (
    AllocationCollision,
    ArchiveError,
    CaseNotFound,
    ImageNotInCase,
    MissingBlob,
    ScanError,
    StoreError,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# ── Error mapping (first match wins) ───────────────────────────────
_ERROR_RESPONSES: list[tuple[type[ArchiveError], int, str]] = [
    (ScanError, 400, "BAD_REQUEST"),
    (CaseNotFound, 404, "NOT_FOUND"),
    (ImageNotInCase, 404, "NOT_FOUND"),
    (MissingBlob, 500, "INCONSISTENT_STATE"),
    (StoreError, 503, "STORE_UNAVAILABLE"),
    (AllocationCollision, 503, "STORE_UNAVAILABLE"),
]


def get_archive(request: Request) -> CaseArchive:
    """Dependency for routes to get the application's case archive."""
    archive = getattr(request.app.state, "archive", None)
    if archive is None:
        raise RuntimeError("Case archive not initialized")
    return archive


def _success(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": data})


def _failure(status_code: int, message: str, error_code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, "error_code": error_code},
    )


def _error_response(error: ArchiveError) -> JSONResponse:
    for error_type, status_code, error_code in _ERROR_RESPONSES:
        if isinstance(error, error_type):
            if status_code >= 500:
                logger.error(f"{error_type.__name__}: {error}")
            return _failure(status_code, str(error), error_code)
    logger.error(f"Unmapped archive error {type(error).__name__}: {error}")
    return _failure(500, str(error), "SERVER_ERROR")


@router.get("/cases")
async def list_cases(archive: CaseArchive = Depends(get_archive)):
    try:
        cases = await archive.list_cases()
    except ArchiveError as e:
        return _error_response(e)
    return _success([case.to_dict() for case in cases])


@router.get("/cases/{case_id}")
async def get_case(case_id: str, archive: CaseArchive = Depends(get_archive)):
    try:
        case = await archive.get_case(case_id)
    except ArchiveError as e:
        return _error_response(e)
    return _success(case.to_dict())


@router.post("/cases")
async def create_case(body: CaseCreateRequest, archive: CaseArchive = Depends(get_archive)):
    """
    Create a case from a base64-encoded DICOM file plus case fields.

    Modality comes from the file; anatomy falls back to BodyPartExamined.
    """
    try:
        data = body.decode_dicom()
        fields = CaseFields(
            title=body.title,
            description=body.description,
            anatomy=body.anatomy,
            diagnosis=body.diagnosis,
            findings=body.findings,
            tags=body.tags,
        )
        case = await archive.create_case(data, fields)
    except ValueError as e:
        return _failure(400, str(e), "BAD_REQUEST")
    except ArchiveError as e:
        return _error_response(e)
    return _success(case.to_dict(), status_code=201)


@router.post("/cases/{case_id}/images")
async def add_image(
    case_id: str, body: ImageAddRequest, archive: CaseArchive = Depends(get_archive)
):
    try:
        data = body.decode_dicom()
        case = await archive.add_image(case_id, data)
    except ValueError as e:
        return _failure(400, str(e), "BAD_REQUEST")
    except ArchiveError as e:
        return _error_response(e)
    return _success(case.to_dict())


@router.get("/dicom/{case_id}/{image_id}")
async def get_image(case_id: str, image_id: str, archive: CaseArchive = Depends(get_archive)):
    """Return the untouched bytes of one image of a case."""
    try:
        data = await archive.get_image(case_id, image_id)
    except ArchiveError as e:
        return _error_response(e)
    return Response(content=data, media_type="application/dicom")
