from __future__ import annotations

import logging
import mmap
import os
import threading
from itertools import product
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, cast, overload

import numpy as np

from czimap import _assemble
from czimap._parse import _axes, _segments
from czimap.errors import CZIError, TruncatedFileError
from czimap.structures import LoadedImage

if TYPE_CHECKING:
    from datetime import datetime
    from typing import Any

    import dask.array as da
    import lxml.etree
    import xarray as xr
    from typing_extensions import Literal

    from czimap._util import FileOrBinaryIO
    from czimap.structures import (
        AttachmentEntry,
        AxisLayout,
        DirectoryEntry,
        FileHeader,
        PixelFormat,
        SubBlock,
    )

logger = logging.getLogger(__name__)

# CZI stores color pixels as B, G, R(, A)
SAMPLE_NAMES = ("B", "G", "R", "A")


class CZIFile:
    """Main object for opening and working with CZI files.

    The file is decoded completely when the object is created: the file header,
    the XML metadata, the subblock directory and every subblock header are read
    and validated, in that order.  Any problem aborts the whole load.  Pixel data
    is never read up front; it is exposed through zero-copy views of a read-only
    memory map owned by this object.

    Parameters
    ----------
    path : Path | str | BinaryIO
        Filename of the CZI file, or an open binary file handle.
    validate_sizes : bool
        If True (the default), a disagreement between the axis sizes in the XML
        metadata and those implied by the subblock directory raises a
        `ConsistencyError`.  If False, it only emits a warning.
    """

    def __init__(self, path: FileOrBinaryIO, *, validate_sizes: bool = True) -> None:
        self._validate_sizes = validate_sizes
        self._lock = threading.RLock()
        self._mmap: mmap.mmap | None = None
        self._pixels_: np.ndarray | None = None
        self._attachments: list[AttachmentEntry] | None = None

        if hasattr(path, "read"):
            self._fh: BinaryIO | None = cast("BinaryIO", path)
            if "b" not in getattr(self._fh, "mode", "b"):
                raise ValueError(
                    "File handles passed to CZIFile must be in binary mode"
                )
            self._path = Path(self._fh.name)
        else:
            self._path = Path(path).expanduser().resolve()
            self._fh = None

        try:
            self.open()
            self._load()
        except Exception:
            self.close()
            raise

    # ------------------------------------------------------------ resource

    def open(self) -> None:
        """Open the file handle and memory map, if they are closed."""
        if self._fh is None or self._fh.closed:
            self._fh = open(self._path, "rb")
        if self._mmap is None:
            if os.fstat(self._fh.fileno()).st_size == 0:
                raise TruncatedFileError(f"file {self.path} is empty")
            self._mmap = mmap.mmap(self._fh.fileno(), 0, access=mmap.ACCESS_READ)

    def close(self) -> None:
        """Close the file handle and release the memory map."""
        self._pixels_ = None
        if self._mmap is not None:
            try:
                self._mmap.close()
            except BufferError:
                # views handed out earlier still reference the map; it is
                # released when the last of them is garbage collected
                logger.debug("%s: pixel views still alive, deferring unmap", self.path)
            self._mmap = None
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    @property
    def closed(self) -> bool:
        """Whether the file is currently closed."""
        return self._fh is None or self._fh.closed

    def __enter__(self) -> CZIFile:
        self.open()
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    def __getstate__(self) -> dict[str, Any]:
        return {
            "path": str(self._path),
            "validate_sizes": self._validate_sizes,
            "closed": self.closed,
        }

    def __setstate__(self, d: dict[str, Any]) -> None:
        self.__init__(d["path"], validate_sizes=d["validate_sizes"])  # type: ignore
        if d["closed"]:
            self.close()

    @property
    def path(self) -> str:
        """Path of the file."""
        return str(self._path)

    # ------------------------------------------------------------ loading

    def _load(self) -> None:
        fh = cast("BinaryIO", self._fh)
        fh.seek(0)
        magic = _segments._read_exact(fh, len(_segments.FILE))
        if magic != _segments.FILE:
            raise OSError(
                f"file {self.path} not recognized as CZI.  First bytes: {magic!r}"
            )

        self._header = _segments.read_file_header(fh)
        self._raw_xml = _segments.read_metadata_xml(fh, self._header.metadata_position)
        self._directory = _segments.read_directory(
            fh, self._header.directory_position
        )

        pixel_type = self._directory[0].pixel_type
        self._format = _assemble.pixel_format(pixel_type)
        self._subblocks = _segments.locate_subblocks(
            fh, self._directory, self._format.itemsize
        )

        self._xml = _axes.parse_xml(self._raw_xml)
        self._layout = _axes.resolve_axis_layout(self._xml)

        self._grid = _assemble.BlockGrid(self._subblocks, self._format.samples)
        _axes.validate_layout(self._layout, self._grid.sizes, self._validate_sizes)
        _assemble.check_spans(
            self._subblocks, self._format, pixel_type, len(cast(mmap.mmap, self._mmap))
        )
        logger.debug("loaded %s: %s %s", self.path, self.dtype, self.sizes)

    def load(self) -> LoadedImage:
        """Return the assembled, annotated image.

        The returned object keeps a reference to this file, which owns the memory
        map that the pixel data aliases.
        """
        return LoadedImage(
            data=self.to_dask(),
            xml=self._xml,
            subblocks=self._subblocks,
            layout=self._layout,
            file=self,
            shear=self.shear,
        )

    # ------------------------------------------------------------ metadata

    @property
    def header(self) -> FileHeader:
        return self._header

    @property
    def raw_xml(self) -> str:
        """The XML metadata document, as text."""
        return self._raw_xml

    @property
    def xml(self) -> lxml.etree._Element:
        """Root element of the parsed XML metadata."""
        return self._xml

    @property
    def directory(self) -> list[DirectoryEntry]:
        return self._directory

    @property
    def subblocks(self) -> list[SubBlock]:
        return self._subblocks

    @property
    def layout(self) -> AxisLayout:
        """Physical coordinates of each axis."""
        return self._layout

    @property
    def wavelengths(self) -> tuple[float, ...]:
        """Emission wavelength of each channel."""
        return self._layout.wavelengths

    @property
    def shear(self) -> str | None:
        """Z axis shear, as recorded in the metadata (not applied)."""
        return self._layout.shear

    @property
    def start_time(self) -> datetime | None:
        """Acquisition start time, if recorded."""
        return self._layout.start_time

    @property
    def attachments(self) -> list[AttachmentEntry]:
        """Entries of the attachment directory (empty if the file has none)."""
        if self._attachments is None:
            pos = self._header.attachment_directory_position
            if not pos:
                self._attachments = []
            else:
                with self._lock:
                    self._attachments = _segments.read_attachment_directory(
                        self._require_fh(), pos
                    )
        return self._attachments

    def subblock_metadata(self, index: int) -> str:
        """Return the XML metadata stored with subblock `index`."""
        sb = self._subblocks[index]
        with self._lock:
            fh = self._require_fh()
            fh.seek(sb.metadata_offset)
            raw = _segments._read_exact(fh, sb.sizes.metadata_size)
        try:
            return raw.decode("utf-8").rstrip("\x00")
        except UnicodeDecodeError as e:
            raise CZIError(
                f"Metadata of subblock {index} at offset {sb.metadata_offset} "
                f"is not valid UTF-8: {e}"
            ) from e

    # ------------------------------------------------------------ shape

    @property
    def pixel_type(self) -> int:
        return self._directory[0].pixel_type

    @property
    def pixel_format(self) -> PixelFormat:
        return self._format

    @property
    def dtype(self) -> np.dtype:
        """numpy dtype of each pixel component."""
        return self._format.dtype

    @property
    def dims(self) -> tuple[str, ...]:
        """Axis labels: grid axes first, then Y, X (and color samples)."""
        return self._grid.dims

    @property
    def sizes(self) -> dict[str, int]:
        """Mapping of axis label to length."""
        return self._grid.sizes

    @property
    def shape(self) -> tuple[int, ...]:
        return self._grid.shape

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> int:
        return int(np.prod(self.shape))

    @property
    def nbytes(self) -> int:
        return self.size * self.dtype.itemsize

    # ------------------------------------------------------------ pixel data

    def _require_fh(self) -> BinaryIO:
        if self.closed:
            raise ValueError("Attempt to read from closed CZI file")
        return cast("BinaryIO", self._fh)

    @property
    def _pixels(self) -> np.ndarray:
        if self._pixels_ is None:
            self._require_fh()
            self._pixels_ = _assemble.map_pixels(
                cast(mmap.mmap, self._mmap), self._format
            )
        return self._pixels_

    def subblock_data(self, index: int) -> np.ndarray:
        """Return the pixels of subblock `index` without copying them.

        The array has the subblock's own shape (see `SubBlock.shape`) and is a
        read-only view of the memory map.
        """
        return _assemble.subblock_view(
            self._pixels, self._subblocks[index], self._format
        )

    def _cell(self, index: int) -> np.ndarray:
        return self._grid.cell(self.subblock_data(index))

    def asarray(self) -> np.ndarray:
        """Read the image into a numpy array."""
        out = np.empty(self.shape, dtype=self.dtype)
        ngrid = len(self._grid.grid_dims)
        offsets = [np.cumsum((0,) + c) for c in self._grid.chunks[:ngrid]]
        for key in product(*(range(n) for n in self._grid.grid_shape)):
            region = tuple(slice(o[k], o[k + 1]) for o, k in zip(offsets, key))
            out[region] = self._cell(self._grid.subblock_index(key))
        return out

    def __array__(self, dtype: Any = None, copy: Any = None) -> np.ndarray:
        arr = self.asarray()
        return arr if dtype is None else arr.astype(dtype)

    def to_dask(self, copy: bool = False, wrapper: bool = True) -> da.Array:
        """Create a dask array with one chunk per subblock.

        Parameters
        ----------
        copy : bool
            If True, each chunk is a copy of the subblock data.  By default chunks
            are views of the memory map.
        wrapper : bool
            If True (the default), the returned array is a
            `resource_backed_dask_array.ResourceBackedDaskArray`, which re-opens
            this file if it was closed when the array is computed.
        """
        from dask.array import map_blocks

        darr = map_blocks(
            self._dask_block,
            copy,
            chunks=self._grid.chunks,
            dtype=self.dtype,
            meta=np.empty((0,) * self.ndim, dtype=self.dtype),
        )
        if wrapper:
            from resource_backed_dask_array import ResourceBackedDaskArray

            # this subtype allows the dask array to re-open the underlying
            # file if it was closed when the array is computed
            return ResourceBackedDaskArray.from_array(darr, self)
        return darr

    def _dask_block(self, copy: bool, block_id: tuple[int, ...]) -> np.ndarray:
        if isinstance(block_id, np.ndarray):
            return
        ngrid = len(self._grid.grid_dims)
        with self._lock:
            data = self._cell(self._grid.subblock_index(block_id[:ngrid]))
        return data.copy() if copy else data

    def to_xarray(self, delayed: bool = True, squeeze: bool = True) -> xr.DataArray:
        """Return a labeled `xarray.DataArray`, with physical coordinates.

        Coordinates are the magnitudes of `layout` entries; the unit of each is
        stored in the coordinate's `attrs["units"]`.

        Parameters
        ----------
        delayed : bool
            Whether the data should be a lazy dask array (default) or a numpy
            array.
        squeeze : bool
            Whether to drop axes of length 1.
        """
        import xarray as xr

        data = self.to_dask() if delayed else self.asarray()
        coords: dict[str, Any] = {}
        for dim, n in self.sizes.items():
            if dim in self._layout and self._layout.size(dim) == n:
                q = self._layout[dim]
                coords[dim] = (dim, q.value, {"units": q.unit.to_string()})
        if self._format.samples > 1:
            coords[self.dims[-1]] = list(SAMPLE_NAMES[: self._format.samples])

        arr = xr.DataArray(
            data,
            dims=self.dims,
            coords=coords,
            attrs={
                "wavelengths": self.wavelengths,
                "shear": self.shear,
                "start_time": self.start_time,
                "header": self._header,
            },
        )
        return arr.squeeze() if squeeze else arr

    def __repr__(self) -> str:
        try:
            details = " (closed)" if self.closed else f" {self.dtype}: {self.sizes!r}"
            extra = f": {self._path.name!r}{details}"
        except Exception:
            extra = ""
        return f"<CZIFile at {hex(id(self))}{extra}>"


def load(source: FileOrBinaryIO, *, validate_sizes: bool = True) -> LoadedImage:
    """Decode a CZI file and return the assembled, annotated image.

    Parameters
    ----------
    source : Path | str | BinaryIO
        Filename, or a binary file handle (for instance one already positioned
        past the ZISRAWFILE magic by a format dispatcher; the magic is verified
        again).
    validate_sizes : bool
        See `CZIFile`.

    Returns
    -------
    LoadedImage
        The image.  Its `file` attribute owns the memory map; close it when done.
    """
    return CZIFile(source, validate_sizes=validate_sizes).load()


@overload
def imread(
    file: FileOrBinaryIO,
    *,
    dask: Literal[False] = ...,
    xarray: Literal[False] = ...,
    validate_sizes: bool = ...,
) -> np.ndarray: ...
@overload
def imread(
    file: FileOrBinaryIO,
    *,
    dask: bool = ...,
    xarray: Literal[True],
    validate_sizes: bool = ...,
) -> xr.DataArray: ...
@overload
def imread(
    file: FileOrBinaryIO,
    *,
    dask: Literal[True],
    xarray: Literal[False] = ...,
    validate_sizes: bool = ...,
) -> da.Array: ...
def imread(
    file: FileOrBinaryIO,
    *,
    dask: bool = False,
    xarray: bool = False,
    validate_sizes: bool = True,
) -> np.ndarray | xr.DataArray | da.Array:
    """Open `file`, return requested array type, and close `file`.

    Parameters
    ----------
    file : Path | str | BinaryIO
        Filename of the CZI file, or an open binary file handle.
    dask : bool
        If True, returns a (delayed) `dask.array.Array`.  The file is re-opened
        when the array is computed.  By default False.
    xarray : bool
        If True, returns an `xarray.DataArray` with physical coordinates.
        By default False.
    validate_sizes : bool
        See `CZIFile`.

    Returns
    -------
    Union[np.ndarray, dask.array.Array, xarray.DataArray]
    """
    with CZIFile(file, validate_sizes=validate_sizes) as czi:
        if xarray:
            return czi.to_xarray(delayed=dask)
        elif dask:
            return czi.to_dask()
        return czi.asarray()


__all__ = ["CZIFile", "imread", "load"]
