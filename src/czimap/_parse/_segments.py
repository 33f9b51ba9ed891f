"""Decoding of the ZISRAW segments that make up a CZI file.

Every segment starts with a 32 byte prologue:
  - 16 bytes: zero padded ASCII tag (e.g. b"ZISRAWDIRECTORY\\x00")
  - 8 bytes: allocated size of the segment (excluding the prologue)
  - 8 bytes: used size of the segment

All offsets stored in the file are absolute from the start of the file.
"""

from __future__ import annotations

import logging
import struct
import uuid
from typing import TYPE_CHECKING, BinaryIO

from czimap.errors import (
    ConsistencyError,
    CZIError,
    SegmentError,
    TruncatedFileError,
    UnsupportedFeatureError,
    VersionError,
)
from czimap.structures import (
    AttachmentEntry,
    DimensionEntry,
    DirectoryEntry,
    FileHeader,
    SegmentHeader,
    SubBlock,
    SubBlockSizes,
)

if TYPE_CHECKING:
    from typing import Final, Iterable, Sequence

logger = logging.getLogger(__name__)


def segment_id(name: str) -> bytes:
    """Return `name` as a 16 byte, zero padded segment tag."""
    return name.encode("ascii").ljust(16, b"\x00")


# fmt: off
FILE:        Final = segment_id("ZISRAWFILE")
RAWDIR:      Final = segment_id("ZISRAWDIRECTORY")
SUBBLOCK:    Final = segment_id("ZISRAWSUBBLOCK")
METADATA:    Final = segment_id("ZISRAWMETADATA")
ATTACH:      Final = segment_id("ZISRAWATTACH")
ATTDIR:      Final = segment_id("ZISRAWATTDIR")
DELETED:     Final = segment_id("DELETED")

MAX_DIMENSIONS:        Final = 10
# fixed header sizes, measured from the end of the 32 byte prologue
DIRECTORY_HEADER_SIZE: Final = 128
METADATA_HEADER_SIZE:  Final = 256
SUBBLOCK_HEADER_SIZE:  Final = 256
ATTDIR_HEADER_SIZE:    Final = 256
# fmt: on

SEGMENT_HEADER = struct.Struct("<16sqq")
# char tag[16]
# int64_t allocated_size
# int64_t used_size

FILE_HEADER = struct.Struct("<qqii8x16s16siqqiq")
# (follows the 16 byte ZISRAWFILE magic)
# int64_t allocated_size
# int64_t used_size
# int32_t major
# int32_t minor
# int32_t reserved[2]
# uint8_t primary_file_guid[16]
# uint8_t file_guid[16]
# int32_t file_part
# int64_t directory_position
# int64_t metadata_position
# int32_t update_pending
# int64_t attachment_directory_position

METADATA_SIZES = struct.Struct("<ii")
# int32_t xml_size
# int32_t attachment_size

ENTRY_COUNT = struct.Struct("<i")

DIRECTORY_ENTRY_DV = struct.Struct("<2siqiiBBIi")
# char schema[2]  ("DV")
# int32_t pixel_type
# int64_t file_position
# int32_t file_part
# int32_t compression
# uint8_t pyramid_type
# uint8_t spare
# uint32_t spare4
# int32_t dimension_count

DIMENSION_ENTRY_DV = struct.Struct("<4siifi")
# char dimension[4]
# int32_t start
# int32_t size
# float start_coordinate
# int32_t stored_size

SUBBLOCK_SIZES = struct.Struct("<iiq")
# int32_t metadata_size
# int32_t attachment_size
# int64_t data_size

ATTACHMENT_ENTRY_A1 = struct.Struct("<2s10xqi16s8s80s")
# char schema[2]  ("A1")
# uint8_t reserved[10]
# int64_t file_position
# int32_t file_part
# uint8_t content_guid[16]
# char content_file_type[8]
# char name[80]


def _read_exact(fh: BinaryIO, size: int) -> bytes:
    pos = fh.tell()
    data = fh.read(size)
    if len(data) != size:
        raise TruncatedFileError(
            f"Expected {size} bytes at offset {pos} but only {len(data)} remain"
        )
    return data


def _strip(data: bytes) -> str:
    return data.split(b"\x00", 1)[0].decode("utf-8", "replace")


def read_segment_header(fh: BinaryIO, expect: bytes | None = None) -> SegmentHeader:
    """Read the 32 byte segment prologue at the current position of `fh`.

    Parameters
    ----------
    fh : BinaryIO
        An open CZI file, positioned at the start of a segment.
    expect : bytes | None
        If not None, the segment tag must equal this value.

    Raises
    ------
    SegmentError
        If `expect` is given and the tag does not match.
    """
    pos = fh.tell()
    data = _read_exact(fh, SEGMENT_HEADER.size)
    header = SegmentHeader(*SEGMENT_HEADER.unpack(data))
    if expect is not None and header.tag != expect:
        raise SegmentError(pos, expect, header.tag)
    return header


def read_file_header(fh: BinaryIO) -> FileHeader:
    """Decode the file header from a stream positioned just past the magic.

    Raises
    ------
    VersionError
        If the file is not format version 1.0.
    UnsupportedFeatureError
        If the file is one part of a multi-part file, or an update is pending.
    """
    (
        _allocated,
        _used,
        major,
        minor,
        primary_guid,
        file_guid,
        file_part,
        directory_position,
        metadata_position,
        update_pending,
        attachment_directory_position,
    ) = FILE_HEADER.unpack(_read_exact(fh, FILE_HEADER.size))

    if (major, minor) != (1, 0):
        raise VersionError(f"Unsupported CZI version {major}.{minor} (expected 1.0)")
    if update_pending:
        raise UnsupportedFeatureError(
            "File header has the update-pending flag set; the file is being written"
        )
    if file_part:
        raise UnsupportedFeatureError(
            f"Multi-part files are not supported (file part {file_part})"
        )

    header = FileHeader(
        major=major,
        minor=minor,
        primary_file_guid=uuid.UUID(bytes_le=primary_guid),
        file_guid=uuid.UUID(bytes_le=file_guid),
        file_part=file_part,
        directory_position=directory_position,
        metadata_position=metadata_position,
        update_pending=bool(update_pending),
        attachment_directory_position=attachment_directory_position,
    )
    logger.debug("decoded file header: %s", header)
    return header


def read_metadata_xml(fh: BinaryIO, position: int) -> str:
    """Return the raw XML document stored in the metadata segment at `position`."""
    fh.seek(position)
    read_segment_header(fh, expect=METADATA)
    xml_size, _attachment_size = METADATA_SIZES.unpack(
        _read_exact(fh, METADATA_SIZES.size)
    )
    fh.seek(position + SEGMENT_HEADER.size + METADATA_HEADER_SIZE)
    raw = _read_exact(fh, xml_size)
    try:
        return raw.decode("utf-8").rstrip("\x00")
    except UnicodeDecodeError as e:
        raise CZIError(
            f"Metadata segment at offset {position} is not valid UTF-8: {e}"
        ) from e


def read_directory(fh: BinaryIO, position: int) -> list[DirectoryEntry]:
    """Read and validate every entry of the subblock directory at `position`.

    The whole directory is decoded before it is checked, so that a file whose
    entries do not tile a rectangular grid is rejected as a whole.
    """
    fh.seek(position)
    read_segment_header(fh, expect=RAWDIR)
    (entry_count,) = ENTRY_COUNT.unpack(_read_exact(fh, ENTRY_COUNT.size))
    if entry_count < 0:
        raise ConsistencyError(f"Negative directory entry count: {entry_count}")

    fh.seek(position + SEGMENT_HEADER.size + DIRECTORY_HEADER_SIZE)
    entries = [read_directory_entry(fh, index) for index in range(entry_count)]
    validate_directory(entries)
    logger.debug("decoded %d directory entries at %d", entry_count, position)
    return entries


def read_directory_entry(fh: BinaryIO, index: int = 0) -> DirectoryEntry:
    """Decode one 'DV' directory entry (and its dimension entries) from `fh`."""
    pos = fh.tell()
    (
        schema,
        pixel_type,
        file_position,
        file_part,
        compression,
        pyramid_type,
        _spare,
        _spare4,
        dimension_count,
    ) = DIRECTORY_ENTRY_DV.unpack(_read_exact(fh, DIRECTORY_ENTRY_DV.size))

    if schema != b"DV":
        raise SegmentError(pos, b"DV", schema)
    if file_position < 0:
        raise ConsistencyError(
            f"Directory entry {index} has a negative file position ({file_position})",
            index=index,
        )
    if not 0 <= dimension_count <= MAX_DIMENSIONS:
        raise UnsupportedFeatureError(
            f"Directory entry {index} has {dimension_count} dimensions "
            f"(at most {MAX_DIMENSIONS} are supported)"
        )
    if compression:
        raise UnsupportedFeatureError(
            f"Directory entry {index} uses compression {compression}; "
            "compressed subblocks are not supported"
        )
    if pyramid_type:
        raise UnsupportedFeatureError(
            f"Directory entry {index} has pyramid type {pyramid_type}; "
            "pyramidal subblocks are not supported"
        )
    if file_part:
        raise UnsupportedFeatureError(
            f"Directory entry {index} refers to file part {file_part}; "
            "multi-part files are not supported"
        )

    dims = tuple(_read_dimension_entry(fh, index) for _ in range(dimension_count))
    return DirectoryEntry(
        pixel_type=pixel_type,
        file_position=file_position,
        file_part=file_part,
        compression=compression,
        pyramid_type=pyramid_type,
        dimension_entries=dims,
    )


def _read_dimension_entry(fh: BinaryIO, index: int) -> DimensionEntry:
    dim, start, size, start_coordinate, stored_size = DIMENSION_ENTRY_DV.unpack(
        _read_exact(fh, DIMENSION_ENTRY_DV.size)
    )
    entry = DimensionEntry(_strip(dim), start, size, start_coordinate, stored_size)
    # writers store either 0 or the logical size for full resolution data; only
    # a different stored size marks a reduced resolution (pyramid) level
    if stored_size and stored_size != size:
        raise UnsupportedFeatureError(
            f"Directory entry {index} stores axis {entry.dimension} at reduced "
            f"size {stored_size} (logical size {size}); pyramids are not supported"
        )
    return entry


def validate_directory(entries: Sequence[DirectoryEntry]) -> None:
    """Check that all entries describe chunks of one rectangular grid.

    Raises
    ------
    ConsistencyError
        naming the first offending entry, if pixel types, dimension counts,
        axis labels or sizes (on every axis but the last) differ.
    """
    if not entries:
        raise ConsistencyError("The subblock directory is empty")

    first = entries[0]
    for i, entry in enumerate(entries):
        if entry.pixel_type != first.pixel_type:
            raise ConsistencyError(
                f"All pixel types must be identical: entry {i} has pixel type "
                f"{entry.pixel_type}, entry 0 has {first.pixel_type}",
                index=i,
            )
        if entry.dimension_count != first.dimension_count:
            raise ConsistencyError(
                f"The number of dimensions must be consistent: entry {i} has "
                f"{entry.dimension_count}, entry 0 has {first.dimension_count}",
                index=i,
            )
        if entry.names != first.names:
            raise ConsistencyError(
                f"Axis labels must be consistent: entry {i} has "
                f"{''.join(entry.names)}, entry 0 has {''.join(first.names)}",
                index=i,
            )
        if entry.sizes[:-1] != first.sizes[:-1]:
            raise ConsistencyError(
                f"Leading sizes must be identical: entry {i} has "
                f"{entry.sizes[:-1]}, entry 0 has {first.sizes[:-1]}",
                index=i,
            )


def locate_subblocks(
    fh: BinaryIO, entries: Iterable[DirectoryEntry], itemsize: int
) -> list[SubBlock]:
    """Resolve the metadata and pixel data offsets of each directory entry.

    Parameters
    ----------
    fh : BinaryIO
        An open CZI file.
    entries : Iterable[DirectoryEntry]
        Validated directory entries (see `read_directory`).
    itemsize : int
        Size of one pixel in bytes.  Every data offset must be a multiple of it.

    Returns
    -------
    list[SubBlock]
        One SubBlock per entry, in directory order.
    """
    subblocks = []
    for entry in entries:
        fh.seek(entry.file_position)
        read_segment_header(fh, expect=SUBBLOCK)
        data = _read_exact(fh, SUBBLOCK_SIZES.size)
        sizes = SubBlockSizes(*SUBBLOCK_SIZES.unpack(data))
        # the header holds the sizes and a copy of the directory entry, padded to
        # SUBBLOCK_HEADER_SIZE (or longer, for entries with many dimensions)
        header_size = max(SUBBLOCK_HEADER_SIZE, SUBBLOCK_SIZES.size + entry.nbytes)
        metadata_offset = entry.file_position + SEGMENT_HEADER.size + header_size
        data_offset = metadata_offset + sizes.metadata_size
        subblocks.append(SubBlock(entry, sizes, metadata_offset, data_offset))

    for i, sb in enumerate(subblocks):
        if sb.data_offset % itemsize:
            raise UnsupportedFeatureError(
                f"Subblock {i} data starts at offset {sb.data_offset}, which is not "
                f"a multiple of the pixel size ({itemsize} bytes); unaligned "
                "subblocks are not supported"
            )
    logger.debug("located %d subblocks", len(subblocks))
    return subblocks


def read_attachment_directory(fh: BinaryIO, position: int) -> list[AttachmentEntry]:
    """Read the attachment directory at `position` (a list of 'A1' entries)."""
    fh.seek(position)
    read_segment_header(fh, expect=ATTDIR)
    (entry_count,) = ENTRY_COUNT.unpack(_read_exact(fh, ENTRY_COUNT.size))
    fh.seek(position + SEGMENT_HEADER.size + ATTDIR_HEADER_SIZE)

    entries = []
    for _ in range(max(entry_count, 0)):
        pos = fh.tell()
        schema, file_position, file_part, guid, file_type, name = (
            ATTACHMENT_ENTRY_A1.unpack(_read_exact(fh, ATTACHMENT_ENTRY_A1.size))
        )
        if schema != b"A1":
            raise SegmentError(pos, b"A1", schema)
        entries.append(
            AttachmentEntry(
                file_position=file_position,
                file_part=file_part,
                content_guid=uuid.UUID(bytes_le=guid),
                content_file_type=_strip(file_type),
                name=_strip(name),
            )
        )
    return entries
