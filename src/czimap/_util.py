from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING, BinaryIO, cast

from czimap._parse._segments import FILE as FILE_MAGIC

if TYPE_CHECKING:
    from os import PathLike
    from typing import Callable, Final, Union

    from typing_extensions import TypeAlias

    StrOrPath: TypeAlias = Union[str, PathLike]
    FileOrBinaryIO: TypeAlias = Union[StrOrPath, BinaryIO]


def _open_binary(path: StrOrPath) -> BinaryIO:
    return open(path, "rb")


def is_supported_file(
    path: FileOrBinaryIO,
    open_: Callable[[StrOrPath], BinaryIO] = _open_binary,
) -> bool:
    """Return `True` if `path` can be opened as a CZI file.

    Parameters
    ----------
    path : Union[str, PathLike, BinaryIO]
        A path (or open binary file handle) to query
    open_ : Callable[[StrOrPath], BinaryIO]
        Filesystem opener, by default `builtins.open`

    Returns
    -------
    bool
        Whether the file starts with the ZISRAWFILE segment.
    """
    if hasattr(path, "read"):
        path = cast("BinaryIO", path)
        path.seek(0)
        magic = path.read(len(FILE_MAGIC))
    else:
        with open_(path) as fh:
            magic = fh.read(len(FILE_MAGIC))
    return magic == FILE_MAGIC


class AXIS:
    X: Final = "X"
    Y: Final = "Y"
    Z: Final = "Z"
    CHANNEL: Final = "C"
    TIME: Final = "T"
    SCENE: Final = "S"
    MOSAIC: Final = "M"
    RGB: Final = "A"  # color samples, not a CZI dimension


# ZEN writes 7 fractional digits; datetime only takes 6
START_TIME_FMT = "%Y-%m-%dT%H:%M:%S.%f"
_START_TIME = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?")


def parse_start_time(time_str: str) -> datetime:
    """Parse an acquisition timestamp, truncated to millisecond precision.

    >>> parse_start_time("2021-03-04T10:11:12.3456789Z")
    datetime.datetime(2021, 3, 4, 10, 11, 12, 345000)
    """
    match = _START_TIME.match(time_str.strip())
    if match is None:
        raise ValueError(f"Could not parse start time {time_str!r}")
    stamp, frac = match.groups()
    millis = (frac or "")[:3].ljust(3, "0")
    return datetime.strptime(f"{stamp}.{millis}", START_TIME_FMT)
