"""Zero-copy views of subblock pixel data, and their arrangement on a grid.

The whole file is interpreted as a flat array of pixels (see `map_pixels`).  Each
subblock is a contiguous run of that array, reshaped to its own axis sizes
(`subblock_view`).  `BlockGrid` places the subblocks on a rectangular grid whose
axes are every non-spatial axis of the directory (e.g. T, Z, C); each grid cell
holds one subblock's (Y, X[, samples]) plane.
"""

from __future__ import annotations

import logging
from itertools import product
from typing import TYPE_CHECKING

import numpy as np

from czimap._util import AXIS
from czimap.errors import (
    ConsistencyError,
    TruncatedFileError,
    UnsupportedFeatureError,
)
from czimap.structures import PIXEL_FORMATS, PixelFormat, PixelType

if TYPE_CHECKING:
    import mmap
    from typing import Sequence

    from czimap.structures import SubBlock

logger = logging.getLogger(__name__)

SPATIAL = (AXIS.Y, AXIS.X)


def pixel_format(pixel_type: int) -> PixelFormat:
    """Return numpy type and sample count for a directory pixel type code.

    Raises
    ------
    UnsupportedFeatureError
        For unknown codes and for the complex-valued pixel types.
    """
    try:
        ptype = PixelType(pixel_type)
    except ValueError:
        raise UnsupportedFeatureError(f"Unknown pixel type {pixel_type}") from None
    if ptype not in PIXEL_FORMATS:
        raise UnsupportedFeatureError(
            f"Pixel type {ptype.name} ({ptype.value}) is not supported"
        )
    return PIXEL_FORMATS[ptype]


def map_pixels(buffer: mmap.mmap | bytes, fmt: PixelFormat) -> np.ndarray:
    """Interpret the whole file as a flat, read-only sequence of pixels.

    Returns an array of shape `(n,)`, or `(n, samples)` for color pixel types,
    where `n` is the file size divided by the pixel size.  No data is copied.
    """
    n = len(buffer) // fmt.itemsize
    flat = np.frombuffer(buffer, dtype=fmt.dtype, count=n * fmt.samples)
    return flat.reshape(n, fmt.samples) if fmt.samples > 1 else flat


def pixel_span(sb: SubBlock, fmt: PixelFormat) -> tuple[int, int]:
    """Return the (start, stop) pixel indices of `sb` in the flat pixel array."""
    start = sb.data_offset // fmt.itemsize
    return start, start + sb.size


def check_spans(
    subblocks: Sequence[SubBlock], fmt: PixelFormat, pixel_type: int, nbytes: int
) -> None:
    """Make sure every subblock has the expected type and lies inside the file."""
    n = nbytes // fmt.itemsize
    for i, sb in enumerate(subblocks):
        if sb.pixel_type != pixel_type:
            raise ConsistencyError(
                f"Subblock {i} has pixel type {sb.pixel_type}, expected {pixel_type}",
                index=i,
            )
        start, stop = pixel_span(sb, fmt)
        if stop > n:
            raise TruncatedFileError(
                f"Subblock {i} spans bytes {sb.data_offset} to "
                f"{stop * fmt.itemsize}, past the end of the file ({nbytes} bytes)"
            )


def subblock_view(pixels: np.ndarray, sb: SubBlock, fmt: PixelFormat) -> np.ndarray:
    """Return the pixels of `sb` as an array that aliases `pixels`.

    The result has the subblock's own shape (slowest axis first, see
    `SubBlock.shape`), with a trailing samples axis for color pixel types.
    """
    start, stop = pixel_span(sb, fmt)
    if stop > len(pixels):
        raise TruncatedFileError(
            f"Subblock at offset {sb.data_offset} extends past the end of the file"
        )
    shape = sb.shape + ((fmt.samples,) if fmt.samples > 1 else ())
    return pixels[start:stop].reshape(shape)


class BlockGrid:
    """Arrangement of subblocks on a rectangular grid.

    Parameters
    ----------
    subblocks : Sequence[SubBlock]
        Located subblocks, all sharing the same axis labels.
    samples : int
        Number of color samples per pixel; adds a trailing axis when > 1.

    Attributes
    ----------
    dims : tuple[str, ...]
        Grid axes (slowest first), followed by the spatial axes of each cell.
    chunks : tuple[tuple[int, ...], ...]
        dask-style chunk sizes: one chunk per subblock along each grid axis,
        a single chunk along each cell axis.
    """

    def __init__(self, subblocks: Sequence[SubBlock], samples: int = 1) -> None:
        if not subblocks:
            raise ConsistencyError("No subblocks to arrange")
        labels = subblocks[0].dims
        missing = [d for d in SPATIAL if d not in labels]
        if missing:
            raise UnsupportedFeatureError(
                f"Subblocks have no {' or '.join(missing)} axis (axes: {labels})"
            )
        self._subblocks = subblocks
        self._samples = samples
        self.grid_dims = tuple(d for d in labels if d not in SPATIAL)
        self.cell_dims = tuple(d for d in labels if d in SPATIAL)
        # permutation taking a subblock view to (grid axes..., cell axes...)
        self._order = tuple(labels.index(d) for d in self.grid_dims + self.cell_dims)

        starts = [sorted({sb.start(d) for sb in subblocks}) for d in self.grid_dims]
        self.grid_shape = tuple(len(s) for s in starts)

        self._index: dict[tuple[int, ...], int] = {}
        chunks: list[dict[int, int]] = [{} for _ in self.grid_dims]
        for i, sb in enumerate(subblocks):
            key = tuple(s.index(sb.start(d)) for s, d in zip(starts, self.grid_dims))
            if key in self._index:
                raise ConsistencyError(
                    f"Subblocks {self._index[key]} and {i} occupy the same grid "
                    f"position {dict(zip(self.grid_dims, key))}",
                    index=i,
                )
            self._index[key] = i
            for axis, (k, d) in enumerate(zip(key, self.grid_dims)):
                size = sb.shape[labels.index(d)]
                if chunks[axis].setdefault(k, size) != size:
                    raise ConsistencyError(
                        f"Subblock {i} has size {size} along {d}, but other subblocks "
                        f"in the same grid slab have size {chunks[axis][k]}",
                        index=i,
                        axis=d,
                    )

        for key in product(*(range(n) for n in self.grid_shape)):
            if key not in self._index:
                raise ConsistencyError(
                    f"No subblock at grid position {dict(zip(self.grid_dims, key))}"
                )

        cell_shape = tuple(subblocks[0].shape[labels.index(d)] for d in self.cell_dims)
        self.chunks: tuple[tuple[int, ...], ...] = tuple(
            tuple(c[k] for k in range(len(c))) for c in chunks
        ) + tuple((n,) for n in cell_shape)
        if samples > 1:
            self.cell_dims = (*self.cell_dims, AXIS.RGB)
            self.chunks = (*self.chunks, (samples,))
        self.dims = self.grid_dims + self.cell_dims
        logger.debug(
            "arranged %d subblocks on a %s grid", len(subblocks), self.grid_shape
        )

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(sum(c) for c in self.chunks)

    @property
    def sizes(self) -> dict[str, int]:
        """Length of each axis, as implied by the subblock directory."""
        return dict(zip(self.dims, self.shape))

    def __len__(self) -> int:
        return len(self._index)

    def subblock_index(self, grid_index: Sequence[int]) -> int:
        """Return the index (in directory order) of the subblock at `grid_index`."""
        return self._index[tuple(grid_index)]

    def cell(self, view: np.ndarray) -> np.ndarray:
        """Reorder a `subblock_view` to (grid axes..., Y, X[, samples])."""
        order = self._order
        if self._samples > 1:
            order = (*order, len(order))
        if order == tuple(range(view.ndim)):
            return view
        return view.transpose(order)
