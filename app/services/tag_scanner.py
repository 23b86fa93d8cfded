"""
Tag Scanner — identifying attribute extraction from DICOM Part 10 bytes.

Walks the data element stream far enough to recover a bounded set of
top-level attributes. Values that are not wanted are skipped by length, so
pixel data and large sequences are never decoded. Pure function, no I/O.
"""

import struct
import zlib
from collections.abc import Iterable
from dataclasses import dataclass

from pydicom.datadict import dictionary_VR
from pydicom.uid import (
    DeflatedExplicitVRLittleEndian,
    ExplicitVRBigEndian,
    ImplicitVRLittleEndian,
)

from app.services.errors import MalformedContainer, MissingRequiredAttribute

PREAMBLE_LENGTH = 128
MAGIC = b"DICM"
UNDEFINED_LENGTH = 0xFFFFFFFF

# Item and delimiter tags always carry a bare 32-bit length, whatever the VR mode
ITEM = 0xFFFEE000
ITEM_DELIMITER = 0xFFFEE00D
SEQUENCE_DELIMITER = 0xFFFEE0DD

_META_GROUP = 0x0002
_GROUP_LENGTH_TAG = 0x00020000
_TRANSFER_SYNTAX_TAG = 0x00020010
_ELEMENT_HEADER_MIN = 8

# Compressed bytes fed, and inflated bytes produced, per step
_INFLATE_CHUNK = 64 * 1024

# Explicit VRs encoded with 2 reserved bytes and a 32-bit length
_LONG_LENGTH_VRS = {
    "OB",
    "OD",
    "OF",
    "OL",
    "OV",
    "OW",
    "SQ",
    "SV",
    "UC",
    "UN",
    "UR",
    "UT",
    "UV",
}

REQUIRED_TAGS = {
    "SOPInstanceUID": 0x00080018,
    "Modality": 0x00080060,
}

OPTIONAL_TAGS = {
    "StudyDate": 0x00080020,
    "StudyDescription": 0x00081030,
    "SeriesDescription": 0x0008103E,
    "BodyPartExamined": 0x00180015,
    "StudyInstanceUID": 0x0020000D,
    "SeriesInstanceUID": 0x0020000E,
    "SeriesNumber": 0x00200011,
    "InstanceNumber": 0x00200013,
}

DEFAULT_OPTIONAL = tuple(OPTIONAL_TAGS)

# DICOM keyword -> ExtractedAttributes field
_FIELD_NAMES = {
    "SOPInstanceUID": "instance_id",
    "Modality": "modality",
    "StudyDate": "study_date",
    "StudyDescription": "study_description",
    "SeriesDescription": "series_description",
    "BodyPartExamined": "body_part",
    "StudyInstanceUID": "study_instance_uid",
    "SeriesInstanceUID": "series_instance_uid",
    "SeriesNumber": "series_number",
    "InstanceNumber": "instance_number",
}


@dataclass(frozen=True)
class ExtractedAttributes:
    """Identifying attributes recovered from one container."""

    instance_id: str
    modality: str
    transfer_syntax_uid: str = ""
    study_instance_uid: str | None = None
    series_instance_uid: str | None = None
    study_date: str | None = None
    study_description: str | None = None
    series_description: str | None = None
    series_number: int | None = None
    instance_number: int | None = None
    body_part: str | None = None


class _ElementStream:
    """
    Byte cursor over a data element stream in one byte order and VR mode.

    A deflated stream is inflated on demand, so bytes past the point where
    the scan stops are never decompressed.
    """

    def __init__(
        self,
        data: bytes,
        offset: int,
        explicit: bool,
        little_endian: bool,
        inflate: bool = False,
    ):
        self.explicit = explicit
        self.prefix = "<" if little_endian else ">"

        if inflate:
            self.data: bytes | bytearray = bytearray()
            self.pos = 0
            self._deflated = memoryview(data)[offset:]
            self._inflater = zlib.decompressobj(-zlib.MAX_WBITS)
        else:
            self.data = data
            self.pos = offset
            self._deflated = None
            self._inflater = None
        self._consumed = 0

    def _next_chunk(self) -> memoryview:
        chunk = self._deflated[self._consumed : self._consumed + _INFLATE_CHUNK]
        self._consumed += len(chunk)
        return chunk

    def _fill(self, end: int) -> None:
        """Inflate until at least `end` bytes are buffered or the input runs out."""
        while len(self.data) < end and self._inflater is not None:
            source = self._inflater.unconsumed_tail or self._next_chunk()
            try:
                if source:
                    self.data += self._inflater.decompress(source, _INFLATE_CHUNK)
                else:
                    # Input exhausted; drain output held back by max_length
                    self.data += self._inflater.flush()
            except zlib.error as e:
                raise MalformedContainer(f"Deflated dataset could not be inflated: {e}") from e
            if not source or self._inflater.eof:
                self._inflater = None

    def _available(self, size: int) -> bool:
        self._fill(self.pos + size)
        return self.pos + size <= len(self.data)

    def exhausted(self) -> bool:
        return not self._available(_ELEMENT_HEADER_MIN)

    def peek_group(self) -> int:
        (group,) = struct.unpack_from(self.prefix + "H", self.data, self.pos)
        return group

    def _unpack(self, fmt: str):
        size = struct.calcsize(self.prefix + fmt)
        if not self._available(size):
            raise MalformedContainer(f"Truncated element header at offset {self.pos}")
        values = struct.unpack_from(self.prefix + fmt, self.data, self.pos)
        self.pos += size
        return values

    def read_header(self) -> tuple[int, str | None, int]:
        """Read one element header. Returns (tag, vr, length)."""
        group, element = self._unpack("HH")
        tag = (group << 16) | element

        if group == 0xFFFE:
            (length,) = self._unpack("L")
            return tag, None, length

        if not self.explicit:
            (length,) = self._unpack("L")
            return tag, _dictionary_vr(tag), length

        (vr_bytes,) = self._unpack("2s")
        vr = vr_bytes.decode("latin-1")
        if vr in _LONG_LENGTH_VRS:
            _reserved, length = self._unpack("HL")
        else:
            (length,) = self._unpack("H")
        return tag, vr, length

    def read_value(self, length: int) -> bytes:
        self.skip(length)
        return bytes(self.data[self.pos - length : self.pos])

    def skip(self, length: int) -> None:
        if not self._available(length):
            raise MalformedContainer(
                f"Element value at offset {self.pos} runs past end of buffer "
                f"({length} bytes declared)"
            )
        self.pos += length

    def skip_element(self, vr: str | None, length: int) -> None:
        if length != UNDEFINED_LENGTH:
            self.skip(length)
        elif vr == "UN":
            # Undefined-length UN content is always implicit VR little endian
            explicit, prefix = self.explicit, self.prefix
            self.explicit, self.prefix = False, "<"
            try:
                self.skip_sequence()
            finally:
                self.explicit, self.prefix = explicit, prefix
        else:
            self.skip_sequence()

    def skip_sequence(self) -> None:
        """Skip items up to and including the sequence delimiter."""
        while True:
            tag, _vr, length = self.read_header()
            if tag == SEQUENCE_DELIMITER:
                return
            if tag != ITEM:
                raise MalformedContainer(
                    f"Unexpected tag {tag:08X} inside sequence at offset {self.pos}"
                )
            if length == UNDEFINED_LENGTH:
                self.skip_item()
            else:
                self.skip(length)

    def skip_item(self) -> None:
        """Skip nested elements up to and including the item delimiter."""
        while True:
            tag, vr, length = self.read_header()
            if tag == ITEM_DELIMITER:
                return
            self.skip_element(vr, length)

def _dictionary_vr(tag: int) -> str | None:
    try:
        return dictionary_VR(tag)
    except KeyError:
        return None


def _decode_text(raw: bytes) -> str:
    return raw.decode("latin-1").strip(" \x00")


def _decode_value(raw: bytes, vr: str | None) -> str | int | None:
    text = _decode_text(raw)
    if vr == "IS":
        try:
            return int(text)
        except ValueError:
            return None
    return text


def _in_meta_group(stream: _ElementStream, meta_end: int | None) -> bool:
    if meta_end is not None:
        return stream.pos < meta_end
    return not stream.exhausted() and stream.peek_group() == _META_GROUP


def _read_file_meta(data: bytes) -> tuple[str, int]:
    """
    Read the file meta group. Returns (transfer syntax UID, dataset offset).

    The group ends where its (0002,0000) group length says. Without a group
    length it runs until the first element outside group 0002.
    """
    stream = _ElementStream(data, PREAMBLE_LENGTH + len(MAGIC), explicit=True, little_endian=True)
    transfer_syntax = ""
    meta_end = None

    while _in_meta_group(stream, meta_end):
        tag, _vr, length = stream.read_header()
        if length == UNDEFINED_LENGTH:
            raise MalformedContainer("Undefined length element in file meta information")
        value = stream.read_value(length)
        if tag == _GROUP_LENGTH_TAG and length == 4 and meta_end is None:
            (group_length,) = struct.unpack("<L", value)
            meta_end = stream.pos + group_length
        elif tag == _TRANSFER_SYNTAX_TAG:
            transfer_syntax = _decode_text(value)

    if meta_end is not None and stream.pos != meta_end:
        raise MalformedContainer(
            f"File meta group length ends at offset {meta_end}, elements end at {stream.pos}"
        )
    return transfer_syntax, stream.pos


def _open_dataset(data: bytes, offset: int, transfer_syntax: str) -> _ElementStream:
    if transfer_syntax == ImplicitVRLittleEndian:
        return _ElementStream(data, offset, explicit=False, little_endian=True)
    if transfer_syntax == ExplicitVRBigEndian:
        return _ElementStream(data, offset, explicit=True, little_endian=False)
    if transfer_syntax == DeflatedExplicitVRLittleEndian:
        return _ElementStream(data, offset, explicit=True, little_endian=True, inflate=True)
    return _ElementStream(data, offset, explicit=True, little_endian=True)


def _scan_dataset(stream: _ElementStream, wanted: dict[int, str]) -> dict[str, str | int | None]:
    found: dict[str, str | int | None] = {}
    last_tag = max(wanted)

    while not stream.exhausted():
        tag, vr, length = stream.read_header()

        # Top-level elements are in ascending tag order
        if tag > last_tag:
            break

        if tag in wanted and length != UNDEFINED_LENGTH:
            found[wanted[tag]] = _decode_value(stream.read_value(length), vr)
            if len(found) == len(wanted):
                break
        else:
            stream.skip_element(vr, length)

    return found


def scan(data: bytes, optional: Iterable[str] = DEFAULT_OPTIONAL) -> ExtractedAttributes:
    """
    Extract identifying attributes from a DICOM Part 10 buffer.

    Args:
        data: Raw file bytes (preamble, DICM marker, meta group, dataset)
        optional: DICOM keywords from OPTIONAL_TAGS to surface besides the
            required SOPInstanceUID and Modality

    Returns:
        ExtractedAttributes for the top-level dataset

    Raises:
        MalformedContainer: Missing preamble/marker, or a broken element stream
        MissingRequiredAttribute: Stream ended before a required attribute
        ValueError: An unknown optional keyword was requested
    """
    marker_end = PREAMBLE_LENGTH + len(MAGIC)
    if len(data) < marker_end or data[PREAMBLE_LENGTH:marker_end] != MAGIC:
        raise MalformedContainer("Missing DICM marker after 128-byte preamble")

    wanted = {tag: keyword for keyword, tag in REQUIRED_TAGS.items()}
    for keyword in optional:
        if keyword not in OPTIONAL_TAGS:
            raise ValueError(f"Unsupported optional attribute: {keyword}")
        wanted[OPTIONAL_TAGS[keyword]] = keyword

    transfer_syntax, offset = _read_file_meta(data)
    found = _scan_dataset(_open_dataset(data, offset, transfer_syntax), wanted)

    for keyword in REQUIRED_TAGS:
        if not found.get(keyword):
            raise MissingRequiredAttribute(keyword)

    extras = {
        _FIELD_NAMES[keyword]: value
        for keyword, value in found.items()
        if keyword not in REQUIRED_TAGS and value != ""
    }
    return ExtractedAttributes(
        instance_id=str(found["SOPInstanceUID"]),
        modality=str(found["Modality"]),
        transfer_syntax_uid=transfer_syntax,
        **extras,
    )
