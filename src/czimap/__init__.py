"""czimap: zero-copy, memory-mapped reading of Zeiss CZI files."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version(__name__)
except PackageNotFoundError:  # pragma: no cover
    __version__ = "unknown"

__all__ = [
    "__version__",
    "AXIS",
    "CZIFile",
    "errors",
    "imread",
    "is_supported_file",
    "load",
    "structures",
]


from . import errors, structures
from ._util import AXIS, is_supported_file
from .czifile import CZIFile, imread, load
