"""Exceptions raised while decoding a CZI file.

All of them derive from `CZIError`, itself a `ValueError`, so callers that only
care about "this file could not be read" can catch a single type.
"""

from __future__ import annotations

__all__ = [
    "CZIError",
    "ConsistencyError",
    "MissingMetadataError",
    "SegmentError",
    "TruncatedFileError",
    "UnsupportedFeatureError",
    "VersionError",
]


class CZIError(ValueError):
    """Base class for all errors raised while reading a CZI file."""


class SegmentError(CZIError):
    """A segment or record tag does not match the expected constant."""

    def __init__(self, offset: int, expected: bytes, actual: bytes) -> None:
        self.offset = offset
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Expected segment {_clean(expected)!r} at offset {offset} "
            f"but found {_clean(actual)!r}"
        )


class UnsupportedFeatureError(CZIError):
    """The file uses a feature of the format that this reader does not handle."""


class VersionError(CZIError):
    """The file header declares a format version other than 1.0."""


class ConsistencyError(CZIError):
    """Two records (or the directory and the XML metadata) disagree."""

    def __init__(
        self, msg: str, *, index: int | None = None, axis: str | None = None
    ) -> None:
        self.index = index
        self.axis = axis
        super().__init__(msg)


class MissingMetadataError(CZIError):
    """A node required to build the axis layout is absent from the XML."""


class TruncatedFileError(CZIError, EOFError):
    """A read or a computed data span extends past the end of the file."""


def _clean(tag: bytes) -> str:
    return tag.rstrip(b"\x00").decode("ascii", "replace")
