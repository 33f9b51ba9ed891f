from __future__ import annotations

import datetime
import uuid
from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING, NamedTuple

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Mapping

    import astropy.units
    import dask.array as da
    import lxml.etree

    from .czifile import CZIFile


class PixelType(IntEnum):
    """Pixel type codes stored in each directory entry."""

    Gray8 = 0
    Gray16 = 1
    Gray32Float = 2
    Bgr24 = 3
    Bgr48 = 4
    Bgr96Float = 8
    Bgra32 = 9
    Gray64ComplexFloat = 10
    Bgr192ComplexFloat = 11
    Gray32 = 12


class PixelFormat(NamedTuple):
    """numpy component type and number of samples (color components) per pixel."""

    dtype: np.dtype
    samples: int

    @property
    def itemsize(self) -> int:
        """Size of one pixel in bytes."""
        return self.dtype.itemsize * self.samples


# fmt: off
PIXEL_FORMATS: Mapping[PixelType, PixelFormat] = {
    PixelType.Gray8:       PixelFormat(np.dtype("<u1"), 1),
    PixelType.Gray16:      PixelFormat(np.dtype("<u2"), 1),
    PixelType.Gray32Float: PixelFormat(np.dtype("<f4"), 1),
    PixelType.Bgr24:       PixelFormat(np.dtype("<u1"), 3),
    PixelType.Bgr48:       PixelFormat(np.dtype("<u2"), 3),
    PixelType.Bgr96Float:  PixelFormat(np.dtype("<f4"), 3),
    PixelType.Bgra32:      PixelFormat(np.dtype("<u1"), 4),
    PixelType.Gray32:      PixelFormat(np.dtype("<u4"), 1),
}
# fmt: on
# Gray64ComplexFloat and Bgr192ComplexFloat are defined by the format but have no
# entry here: they are rejected when the pixel array is assembled.


class SegmentHeader(NamedTuple):
    tag: bytes
    allocated_size: int
    used_size: int


class FileHeader(NamedTuple):
    major: int
    minor: int
    primary_file_guid: uuid.UUID
    file_guid: uuid.UUID
    file_part: int
    directory_position: int
    metadata_position: int
    update_pending: bool
    attachment_directory_position: int


class DimensionEntry(NamedTuple):
    """Extent of one subblock along a single axis."""

    dimension: str
    start: int
    size: int
    start_coordinate: float
    stored_size: int

    def __repr__(self) -> str:
        star = "*" if self.stored_size else ""
        return f"<Dim{star} {self.dimension} {self.size} at {self.start_coordinate}>"


@dataclass(frozen=True)
class DirectoryEntry:
    """A 'DV' directory entry: where one subblock lives and what it contains.

    `dimension_entries` are kept in file order, which puts the fastest varying
    axis (normally X) first.
    """

    pixel_type: int
    file_position: int
    file_part: int
    compression: int
    pyramid_type: int
    dimension_entries: tuple[DimensionEntry, ...]

    @property
    def dimension_count(self) -> int:
        return len(self.dimension_entries)

    @property
    def nbytes(self) -> int:
        """Size of this entry as stored in the directory."""
        return 32 + 20 * self.dimension_count

    @property
    def sizes(self) -> tuple[int, ...]:
        """Per-axis sizes, in file order."""
        return tuple(d.size for d in self.dimension_entries)

    @property
    def names(self) -> tuple[str, ...]:
        """Per-axis labels, in file order."""
        return tuple(d.dimension for d in self.dimension_entries)

    def start(self, axis: str) -> int:
        for d in self.dimension_entries:
            if d.dimension == axis:
                return d.start
        raise KeyError(axis)


class SubBlockSizes(NamedTuple):
    metadata_size: int
    attachment_size: int
    data_size: int


@dataclass(frozen=True)
class SubBlock:
    """A directory entry resolved to absolute byte offsets in the file."""

    entry: DirectoryEntry
    sizes: SubBlockSizes
    metadata_offset: int
    data_offset: int
    dims: tuple[str, ...] = field(init=False)
    shape: tuple[int, ...] = field(init=False)

    def __post_init__(self) -> None:
        # C order: the slowest varying axis first
        object.__setattr__(self, "dims", self.entry.names[::-1])
        object.__setattr__(self, "shape", self.entry.sizes[::-1])

    @property
    def pixel_type(self) -> int:
        return self.entry.pixel_type

    @property
    def file_position(self) -> int:
        return self.entry.file_position

    @property
    def size(self) -> int:
        """Number of pixels in this subblock."""
        return int(np.prod(self.shape))

    def start(self, axis: str) -> int:
        return self.entry.start(axis)


class AttachmentEntry(NamedTuple):
    file_position: int
    file_part: int
    content_guid: uuid.UUID
    content_file_type: str
    name: str


@dataclass(frozen=True)
class AxisLayout:
    """Physical coordinates of each axis, recovered from the XML metadata.

    `coords` maps an axis label to an `astropy.units.Quantity` array.  The channel
    axis (`C`) is a plain, dimensionless index range whose length matches
    `wavelengths`.
    """

    coords: Mapping[str, astropy.units.Quantity]
    sizes: Mapping[str, int]
    wavelengths: tuple[float, ...] = ()
    shear: str | None = None
    start_time: datetime.datetime | None = None

    def __getitem__(self, axis: str) -> astropy.units.Quantity:
        return self.coords[axis]

    def __contains__(self, axis: object) -> bool:
        return axis in self.coords

    def size(self, axis: str) -> int:
        return len(self.coords[axis])


@dataclass(frozen=True)
class LoadedImage:
    """Result of `czimap.load`.

    `data` and every per-subblock view alias the memory map owned by `file`;
    keep `file` open (or let the resource-backed array re-open it) while using
    them.
    """

    data: da.Array
    xml: lxml.etree._Element
    subblocks: list[SubBlock]
    layout: AxisLayout
    file: CZIFile
    shear: str | None = None

    @property
    def wavelengths(self) -> tuple[float, ...]:
        return self.layout.wavelengths

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.data.shape)

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype
