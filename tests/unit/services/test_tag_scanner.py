"""Unit tests for the Tag Scanner.

Tests cover:
- Extraction across byte orders and VR modes
- Skipping of private, sequence and encapsulated elements
- Early stop once the wanted attributes are found
- Required attribute and container validation errors
"""

import random
import struct
import zlib

import pytest
from pydicom.uid import (
    DeflatedExplicitVRLittleEndian,
    ExplicitVRBigEndian,
    ExplicitVRLittleEndian,
    ImplicitVRLittleEndian,
    generate_uid,
)

from app.services.errors import MalformedContainer, MissingRequiredAttribute, ScanError
from app.services.tag_scanner import ExtractedAttributes, scan
from tests.fixtures.containers import (
    ITEM,
    TRANSFER_SYNTAXES,
    UNDEFINED_LENGTH,
    ContainerBuilder,
    file_meta,
    make_container,
)
from tests.fixtures.factories import DicomFactory

pytestmark = pytest.mark.unit


# ── Extraction ─────────────────────────────────────────────────────


@pytest.mark.parametrize("transfer_syntax", TRANSFER_SYNTAXES)
def test_scan_extracts_encoded_attributes(transfer_syntax):
    """Every encoded attribute comes back regardless of byte order or VR mode."""
    data = make_container(
        instance_id="IMG1",
        modality="CT",
        transfer_syntax=transfer_syntax,
        series_uid="1.2.3.4.5",
        instance_number="17",
    )

    extracted = scan(data)

    assert extracted == ExtractedAttributes(
        instance_id="IMG1",
        modality="CT",
        transfer_syntax_uid=str(transfer_syntax),
        study_instance_uid="1.2.826.0.1.3680043.8.498.100",
        series_instance_uid="1.2.3.4.5",
        study_date="20250228",
        study_description="Teaching Study",
        series_description="Axial 5mm",
        series_number=3,
        instance_number=17,
        body_part="CHEST",
    )


def test_scan_pydicom_written_explicit_little_endian():
    """A file written by pydicom scans to the UIDs it was written with."""
    sop_uid = generate_uid()
    study_uid = generate_uid()
    series_uid = generate_uid()
    data = DicomFactory.create_ct_image(
        study_uid=study_uid, series_uid=series_uid, sop_uid=sop_uid, with_pixel_data=True
    )

    extracted = scan(data)

    assert extracted.instance_id == sop_uid
    assert extracted.modality == "CT"
    assert extracted.study_instance_uid == study_uid
    assert extracted.series_instance_uid == series_uid
    assert extracted.body_part == "CHEST"
    assert extracted.transfer_syntax_uid == ExplicitVRLittleEndian


def test_scan_pydicom_written_implicit_little_endian():
    """Implicit VR files are scanned using the dictionary VR of each tag."""
    sop_uid = generate_uid()
    data = DicomFactory.create_ct_image(
        sop_uid=sop_uid, instance_number=42, transfer_syntax=ImplicitVRLittleEndian
    )

    extracted = scan(data)

    assert extracted.instance_id == sop_uid
    assert extracted.instance_number == 42
    assert extracted.transfer_syntax_uid == ImplicitVRLittleEndian


def test_scan_pydicom_file_with_nested_sequence():
    """A ReferencedImageSequence is skipped without disturbing later attributes."""
    series_uid = generate_uid()
    data = DicomFactory.create_ct_image(series_uid=series_uid, with_referenced_sequence=True)

    assert scan(data).series_instance_uid == series_uid


def test_scan_is_idempotent(img1_bytes):
    """Scanning identical bytes twice yields identical attributes."""
    assert scan(img1_bytes) == scan(img1_bytes)


def test_scan_without_optional_attributes():
    """With no optional attributes requested only the required ones are returned."""
    extracted = scan(make_container(), optional=())

    assert extracted.instance_id == "IMG1"
    assert extracted.modality == "CT"
    assert extracted.series_instance_uid is None
    assert extracted.body_part is None


def test_scan_selected_optional_attribute():
    extracted = scan(make_container(), optional=("BodyPartExamined",))

    assert extracted.body_part == "CHEST"
    assert extracted.study_date is None


def test_scan_unknown_optional_attribute():
    with pytest.raises(ValueError, match="Unsupported optional attribute"):
        scan(make_container(), optional=("PatientName",))


def test_scan_unparseable_instance_number():
    """IS values that are not integers are surfaced as None."""
    extracted = scan(make_container(instance_number="abc"))
    assert extracted.instance_number is None


def test_scan_strips_padding():
    """Odd-length values are padded on write; padding is not part of the value."""
    extracted = scan(make_container(instance_id="IMG", modality="MR"))

    assert extracted.instance_id == "IMG"
    assert extracted.modality == "MR"


# ── Skipping ───────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "transfer_syntax", [ExplicitVRLittleEndian, ImplicitVRLittleEndian, ExplicitVRBigEndian]
)
def test_scan_skips_unknown_and_undefined_length_elements(transfer_syntax):
    """Private elements and undefined-length sequences interleaved with required tags are skipped."""
    nested = [
        [(0x00080018, "UI", "NESTED.1"), (0x00080060, "CS", "XX")],
        [(0x00080100, "SH", "CODE"), (0x00080102, "SH", "DCM")],
    ]
    builder = ContainerBuilder(transfer_syntax)
    builder.add(0x00080005, "CS", "ISO_IR 100")
    builder.add_undefined_sequence(0x00080006, nested)
    builder.add(0x00080016, "UI", "1.2.840.10008.5.1.4.1.1.2")
    builder.add(0x00080018, "UI", "IMG1")
    builder.add(0x00080050, "SH", "ACC123")
    builder.add(0x00080060, "CS", "CT")
    builder.add_defined_sequence(0x00081140, nested)
    builder.add(0x00090010, "LO", "PRIVATE CREATOR")
    builder.add(0x00091001, "UN", b"\xde\xad\xbe\xef")
    builder.add(0x0020000E, "UI", "1.2.3")

    extracted = scan(builder.build())

    assert extracted.instance_id == "IMG1"
    assert extracted.modality == "CT"
    assert extracted.series_instance_uid == "1.2.3"


def test_scan_skips_sequence_of_empty_items():
    builder = ContainerBuilder()
    builder.add_undefined_sequence(0x00080006, [[], []])
    builder.add(0x00080018, "UI", "IMG1")
    builder.add(0x00080060, "CS", "US")

    assert scan(builder.build()).modality == "US"


def test_scan_skips_encapsulated_fragments():
    """Undefined-length OB fragments are walked to the sequence delimiter."""
    builder = ContainerBuilder()
    builder.add(0x00080018, "UI", "IMG1")
    builder.add(0x00080060, "CS", "XA")
    builder.add_encapsulated_pixel_data([b"\xff\xd8" * 50, b"\x00\x01\x02"], tag=0x00091010)
    builder.add(0x0020000E, "UI", "1.2.3")

    extracted = scan(builder.build())

    assert extracted.modality == "XA"
    assert extracted.series_instance_uid == "1.2.3"


def test_scan_ignores_pixel_data_after_wanted_tags():
    builder = ContainerBuilder()
    builder.add(0x00080018, "UI", "IMG1")
    builder.add(0x00080060, "CS", "CT")
    builder.add_encapsulated_pixel_data([b"\x00" * 4096])

    assert scan(builder.build()).instance_id == "IMG1"


def test_scan_stops_once_required_attributes_found():
    """Bytes after the last wanted tag are never read, even if they are garbage."""
    builder = ContainerBuilder()
    builder.add(0x00080018, "UI", "IMG1")
    builder.add(0x00080060, "CS", "CT")
    builder.add_header_only(0x00100010, "PN", 0x7FFF)  # declares far more than is present

    extracted = scan(builder.build(), optional=())

    assert extracted.instance_id == "IMG1"


def test_scan_stops_after_highest_wanted_tag():
    """A stream that passes the last wanted tag ends the scan before pixel data."""
    builder = ContainerBuilder()
    builder.add(0x00080018, "UI", "IMG1")
    builder.add(0x00080060, "CS", "CT")
    builder.add_header_only(0x7FE00010, "OW", 10_000_000)

    extracted = scan(builder.build())

    assert extracted.series_instance_uid is None


# ── Errors ─────────────────────────────────────────────────────────


def test_scan_missing_instance_id():
    """A well-formed file without SOPInstanceUID fails with MissingRequiredAttribute."""
    with pytest.raises(MissingRequiredAttribute) as exc_info:
        scan(make_container(instance_id=None))

    assert exc_info.value.name == "SOPInstanceUID"


def test_scan_missing_instance_id_pydicom(invalid_dicom_missing_sop):
    with pytest.raises(MissingRequiredAttribute) as exc_info:
        scan(invalid_dicom_missing_sop)

    assert exc_info.value.name == "SOPInstanceUID"


def test_scan_missing_modality():
    with pytest.raises(MissingRequiredAttribute) as exc_info:
        scan(make_container(modality=None))

    assert exc_info.value.name == "Modality"


def test_scan_empty_instance_id_counts_as_missing():
    with pytest.raises(MissingRequiredAttribute):
        scan(make_container(instance_id=""))


def test_scan_instance_id_only_in_nested_sequence():
    """A SOPInstanceUID inside a sequence item is not the image's own id."""
    builder = ContainerBuilder()
    builder.add_undefined_sequence(0x00080006, [[(0x00080018, "UI", "NESTED.1")]])
    builder.add(0x00080060, "CS", "CT")

    with pytest.raises(MissingRequiredAttribute) as exc_info:
        scan(builder.build(), optional=())

    assert exc_info.value.name == "SOPInstanceUID"


def test_scan_missing_magic():
    data = make_container()
    corrupted = data[:128] + b"DICX" + data[132:]

    with pytest.raises(MalformedContainer, match="DICM"):
        scan(corrupted)


def test_scan_buffer_shorter_than_preamble():
    with pytest.raises(MalformedContainer):
        scan(b"\x00" * 64)


def test_scan_raw_dataset_without_preamble(sample_ct_dicom):
    """Bytes starting at the dataset (no preamble) are rejected."""
    with pytest.raises(MalformedContainer):
        scan(sample_ct_dicom[132:])


def test_scan_truncated_element_before_required():
    builder = ContainerBuilder()
    builder.add(0x00080016, "UI", "1.2.840.10008.5.1.4.1.1.2")
    builder.add_header_only(0x00080017, "LO", 500)

    with pytest.raises(MalformedContainer, match="runs past end"):
        scan(builder.build())


def test_scan_unterminated_sequence():
    builder = ContainerBuilder()
    builder.add_header_only(0x00080006, "SQ", UNDEFINED_LENGTH)
    data = builder.build() + builder._delimiter(ITEM, UNDEFINED_LENGTH)

    with pytest.raises(MalformedContainer, match="Truncated"):
        scan(data)


def test_scan_corrupt_deflated_dataset():
    data = make_container(transfer_syntax=DeflatedExplicitVRLittleEndian)
    header_end = 132 + len(file_meta(DeflatedExplicitVRLittleEndian))
    corrupted = data[:header_end] + b"\xff" * 64

    with pytest.raises(MalformedContainer, match="inflated"):
        scan(corrupted)


def test_scan_errors_are_scan_errors():
    """All scanner failures share the ScanError base."""
    assert issubclass(MalformedContainer, ScanError)
    assert issubclass(MissingRequiredAttribute, ScanError)


# ── File meta group and deflated datasets ──────────────────────────


def _container(meta: bytes, dataset: bytes) -> bytes:
    return b"\x00" * 128 + b"DICM" + meta + dataset


def _deflate_starting_with_group_0002(raw: bytes) -> bytes:
    """
    Raw deflate stream whose first two bytes are 02 00.

    An empty fixed-Huffman block, an empty stored block, then a final stored
    block holding `raw`.
    """
    return (
        b"\x02\x00"
        + b"\x00\x00\xff\xff"
        + b"\x01"
        + struct.pack("<HH", len(raw), len(raw) ^ 0xFFFF)
        + raw
    )


def _required_only_dataset() -> bytes:
    builder = ContainerBuilder()
    builder.add(0x00080018, "UI", "IMG1")
    builder.add(0x00080060, "CS", "CT")
    builder.add(0x0020000E, "UI", "1.2.3")
    return builder.dataset_bytes()


def test_scan_meta_group_ends_at_group_length():
    """Dataset bytes that happen to start like a group 0002 tag are not read as meta."""
    compressed = _deflate_starting_with_group_0002(_required_only_dataset())
    assert compressed[:2] == b"\x02\x00"
    data = _container(file_meta(DeflatedExplicitVRLittleEndian), compressed)

    extracted = scan(data)

    assert extracted.instance_id == "IMG1"
    assert extracted.series_instance_uid == "1.2.3"
    assert extracted.transfer_syntax_uid == DeflatedExplicitVRLittleEndian


@pytest.mark.parametrize("transfer_syntax", [ExplicitVRLittleEndian, DeflatedExplicitVRLittleEndian])
def test_scan_meta_group_without_group_length(transfer_syntax):
    builder = ContainerBuilder(transfer_syntax)
    builder.add(0x00080018, "UI", "IMG1")
    builder.add(0x00080060, "CS", "CT")

    extracted = scan(builder.build(group_length=False))

    assert extracted.instance_id == "IMG1"
    assert extracted.transfer_syntax_uid == transfer_syntax


def test_scan_meta_group_length_too_short():
    meta_body = file_meta(ExplicitVRLittleEndian, group_length=False)
    group_length = ContainerBuilder().encode(0x00020000, "UL", struct.pack("<L", 10))
    data = _container(group_length + meta_body, _required_only_dataset())

    with pytest.raises(MalformedContainer, match="group length"):
        scan(data)


def _deflated_with_corrupt_tail(elements: list[tuple[int, str, bytes | str]]) -> bytes:
    builder = ContainerBuilder()
    for element in elements:
        builder.add(*element)
    compressor = zlib.compressobj(9, zlib.DEFLATED, -zlib.MAX_WBITS)
    compressed = (
        compressor.compress(builder.dataset_bytes())
        + compressor.flush(zlib.Z_FULL_FLUSH)
        + b"\xff" * 16  # invalid block type
    )
    return _container(file_meta(DeflatedExplicitVRLittleEndian), compressed)


def test_scan_deflated_inflates_only_what_it_reads():
    """Compressed bytes past the early stop are never inflated."""
    noise = random.Random(0).randbytes(300_000)
    data = _deflated_with_corrupt_tail(
        [(0x00080018, "UI", "IMG1"), (0x00080060, "CS", "CT"), (0x7FE00010, "OB", noise)]
    )

    assert scan(data, optional=()).instance_id == "IMG1"


def test_scan_deflated_corrupt_tail_reached():
    """The same corruption is reported once the scan has to read through it."""
    noise = random.Random(0).randbytes(300_000)
    data = _deflated_with_corrupt_tail(
        [(0x00080017, "OB", noise), (0x00080018, "UI", "IMG1"), (0x00080060, "CS", "CT")]
    )

    with pytest.raises(MalformedContainer, match="inflated"):
        scan(data, optional=())
