"""Recover physical axis coordinates from the CZI XML metadata."""

from __future__ import annotations

import logging
import warnings
from typing import TYPE_CHECKING

import astropy.units as u
import numpy as np
from lxml.etree import XML

from czimap._util import AXIS, parse_start_time
from czimap.errors import ConsistencyError, CZIError, MissingMetadataError
from czimap.structures import AxisLayout

if TYPE_CHECKING:
    from datetime import datetime
    from typing import Mapping

    import lxml.etree

    Element = lxml.etree._Element

logger = logging.getLogger(__name__)


def parse_xml(raw: str | bytes) -> Element:
    """Parse the metadata document and return its root element."""
    if isinstance(raw, str):
        # lxml refuses str input that carries an encoding declaration
        raw = raw.encode("utf-8")
    try:
        return XML(raw)
    except SyntaxError as e:
        raise CZIError(f"Could not parse the XML metadata: {e}") from e


def _children(node: Element) -> list[Element]:
    # skip comments and processing instructions
    return [c for c in node if isinstance(c.tag, str)]


def _text(node: Element) -> str:
    return (node.text or "").strip()


def _float(node: Element) -> float:
    try:
        return float(_text(node))
    except ValueError as e:
        raise CZIError(f"Expected a number in <{node.tag}>, got {node.text!r}") from e


def find_image_node(root: Element) -> Element:
    """Return the single non-empty `<Image>` element of the document."""
    nodes = [n for n in root.iter("Image") if _children(n)]
    if not nodes:
        raise MissingMetadataError("No <Image> description found in the XML metadata")
    if len(nodes) > 1:
        raise ConsistencyError(
            f"Expected one <Image> description in the XML metadata, found {len(nodes)}"
        )
    return nodes[0]


def parse_positions(node: Element) -> tuple[float, float]:
    """Return (start, increment) from a `<Positions><Interval>` node."""
    intervals = _children(node)
    if len(intervals) != 1:
        raise MissingMetadataError(
            f"Expected a single interval in <{node.getparent().tag}/Positions>"
        )
    values = {c.tag: c for c in _children(intervals[0])}
    for key in ("Start", "Increment"):
        if key not in values:
            raise MissingMetadataError(
                f"<{node.getparent().tag}/Positions> has no <{key}> node"
            )
    return _float(values["Start"]), _float(values["Increment"])


def _declared_size(sizes: Mapping[str, int], axis: str) -> int:
    try:
        return sizes[axis]
    except KeyError:
        raise MissingMetadataError(
            f"The XML metadata describes axis {axis} but has no <Size{axis}> node"
        ) from None


def _linspace(start: float, step: float, num: int, unit: u.UnitBase) -> u.Quantity:
    return (start + step * np.arange(num)) * unit


def resolve_axis_layout(root: Element) -> AxisLayout:
    """Walk the `<Image>` description and build the coordinates of each axis.

    Parameters
    ----------
    root : Element
        Root of the parsed metadata document.

    Returns
    -------
    AxisLayout
        Coordinates for X and Y (micrometres, starting at 0), Z (micrometres), T
        (seconds) and C (channel index), emission wavelengths, Z shear and the
        acquisition start time.

    Raises
    ------
    MissingMetadataError
        If a node needed to build a coordinate is absent.
    """
    image = find_image_node(root)

    sizes: dict[str, int] = {}
    for node in _children(image):
        if node.tag.startswith("Size") and len(node.tag) == 5:
            sizes[node.tag[-1]] = int(_float(node))

    coords: dict[str, u.Quantity] = {}
    wavelengths: list[float] = []
    shear: str | None = None
    start_time: datetime | None = None
    for dims in (n for n in _children(image) if n.tag == "Dimensions"):
        for node in _children(dims):
            if node.tag == "Channels":
                for channel in _children(node):
                    for item in _children(channel):
                        if item.tag == "EmissionWavelength":
                            wavelengths.append(_float(item))
                channels = np.arange(len(wavelengths))
                coords[AXIS.CHANNEL] = channels * u.dimensionless_unscaled
            elif node.tag == "T":
                interval = None
                for item in _children(node):
                    if item.tag == "StartTime" and _text(item):
                        try:
                            start_time = parse_start_time(_text(item))
                        except ValueError as e:
                            raise CZIError(str(e)) from e
                    elif item.tag == "Positions":
                        interval = parse_positions(item)
                if interval is None:
                    raise MissingMetadataError("<T> has no <Positions> node")
                n = _declared_size(sizes, AXIS.TIME)
                coords[AXIS.TIME] = _linspace(*interval, n, u.s)
            elif node.tag == "Z":
                interval = None
                for item in _children(node):
                    if item.tag == "ZAxisShear":
                        shear = _text(item)
                    elif item.tag == "Positions":
                        interval = parse_positions(item)
                if interval is None:
                    raise MissingMetadataError("<Z> has no <Positions> node")
                n = _declared_size(sizes, AXIS.Z)
                coords[AXIS.Z] = _linspace(*interval, n, u.um)

    pixel_size = next(root.iter("ImagePixelSize"), None)
    if pixel_size is None:
        raise MissingMetadataError("No <ImagePixelSize> node in the XML metadata")
    try:
        dy, dx = (float(v) for v in _text(pixel_size).split(","))
    except ValueError as e:
        raise CZIError(
            f"Expected '<y>,<x>' in <ImagePixelSize>, got {pixel_size.text!r}"
        ) from e
    coords[AXIS.Y] = _linspace(0, dy, _declared_size(sizes, AXIS.Y), u.um)
    coords[AXIS.X] = _linspace(0, dx, _declared_size(sizes, AXIS.X), u.um)

    layout = AxisLayout(
        coords=coords,
        sizes=sizes,
        wavelengths=tuple(wavelengths),
        shear=shear,
        start_time=start_time,
    )
    logger.debug(
        "resolved axis layout: %s",
        {k: len(v) for k, v in coords.items()},
    )
    return layout


def validate_layout(
    layout: AxisLayout, directory_sizes: Mapping[str, int], strict: bool = True
) -> None:
    """Check coordinate lengths against the sizes implied by the directory.

    Only axes present in both are compared.  With `strict=False` a mismatch is
    reported with `warnings.warn` instead of raised.
    """
    for axis, size in directory_sizes.items():
        if axis not in layout:
            continue
        n = layout.size(axis)
        if n != size:
            msg = (
                f"Axis {axis} has {n} coordinates in the XML metadata but "
                f"{size} elements in the subblock directory"
            )
            if strict:
                raise ConsistencyError(msg, axis=axis)
            warnings.warn(msg, stacklevel=3)
