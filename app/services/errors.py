"""Error taxonomy for the teaching case archive."""


class ArchiveError(Exception):
    """Base class for all archive errors."""


class ScanError(ArchiveError):
    """The uploaded container could not be scanned for identifying tags."""


class MalformedContainer(ScanError):
    """The buffer is not a DICOM Part 10 file, or its element stream is broken."""


class MissingRequiredAttribute(ScanError):
    """A required attribute was not present in an otherwise well-formed file."""

    def __init__(self, name: str):
        super().__init__(f"Missing required attribute: {name}")
        self.name = name


class CaseNotFound(ArchiveError):
    def __init__(self, case_id: str):
        super().__init__(f"Case not found: {case_id}")
        self.case_id = case_id


class ImageNotInCase(ArchiveError):
    """The requested image id is not referenced by the case."""

    def __init__(self, case_id: str, image_id: str):
        super().__init__(f"Image {image_id} does not belong to case {case_id}")
        self.case_id = case_id
        self.image_id = image_id


class MissingBlob(ArchiveError):
    """
    A case references an image whose blob is gone.

    This means the cross-store invariant was violated; it is never the
    caller's fault.
    """

    def __init__(self, case_id: str, image_id: str):
        super().__init__(f"Blob missing for referenced image {image_id} in case {case_id}")
        self.case_id = case_id
        self.image_id = image_id


class AllocationCollision(ArchiveError):
    def __init__(self, case_id: str):
        super().__init__(f"Allocated case id already in use: {case_id}")
        self.case_id = case_id


class BlobNotFound(ArchiveError):
    """No blob stored under the key. Not a transport failure."""

    def __init__(self, key: str):
        super().__init__(f"Blob not found: {key}")
        self.key = key


class StoreError(ArchiveError):
    """Transport or availability failure from either store."""
