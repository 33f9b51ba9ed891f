from datetime import datetime

import astropy.units as u
import numpy as np
import pytest
from conftest import make_xml
from czimap import errors
from czimap._parse._axes import (
    find_image_node,
    parse_xml,
    resolve_axis_layout,
    validate_layout,
)
from czimap._util import parse_start_time

SIZES = {"X": 5, "Y": 3, "C": 2, "Z": 2, "T": 3}


def _layout(sizes=SIZES, **kwargs):
    kwargs.setdefault("wavelengths", (509.0, 610.0))
    kwargs.setdefault("z", (0.0, 0.3))
    return resolve_axis_layout(parse_xml(make_xml(sizes, **kwargs)))


def test_time_coordinates():
    layout = _layout(t=(10.0, 2.5))
    assert layout["T"].unit == u.s
    np.testing.assert_allclose(layout["T"].value, [10.0, 12.5, 15.0])


def test_z_coordinates():
    layout = _layout(z=(1.0, 0.3))
    assert layout["Z"].unit == u.um
    np.testing.assert_allclose(layout["Z"].to_value(u.nm), [1000.0, 1300.0])


def test_xy_coordinates_start_at_zero():
    layout = _layout(pixel_size=(0.2, 0.1))
    assert layout["Y"].unit == layout["X"].unit == u.um
    np.testing.assert_allclose(layout["Y"].value, [0.0, 0.2, 0.4])
    np.testing.assert_allclose(layout["X"].value, [0.0, 0.1, 0.2, 0.3, 0.4])


def test_channels_and_wavelengths():
    layout = _layout()
    assert layout.wavelengths == (509.0, 610.0)
    assert layout.size("C") == len(layout.wavelengths)
    assert layout["C"].unit == u.dimensionless_unscaled
    np.testing.assert_array_equal(layout["C"].value, [0, 1])


def test_layout_sizes():
    assert _layout().sizes == SIZES


def test_axes_without_description():
    layout = _layout({"X": 5, "Y": 3}, wavelengths=None, t=None, z=None)
    assert "X" in layout and "Y" in layout
    assert "T" not in layout
    assert "Z" not in layout
    assert "C" not in layout
    assert layout.wavelengths == ()
    assert layout.start_time is None


def test_shear():
    assert _layout(shear="0").shear == "0"
    assert _layout().shear is None


def test_start_time():
    assert _layout().start_time == datetime(2021, 3, 4, 10, 11, 12, 345000)
    assert _layout(start_time=None).start_time is None


@pytest.mark.parametrize(
    "text, expected",
    [
        ("2021-03-04T10:11:12.3456789Z", datetime(2021, 3, 4, 10, 11, 12, 345000)),
        ("2021-03-04T10:11:12.3Z", datetime(2021, 3, 4, 10, 11, 12, 300000)),
        ("2021-03-04T10:11:12", datetime(2021, 3, 4, 10, 11, 12)),
    ],
)
def test_parse_start_time(text, expected):
    assert parse_start_time(text) == expected


def test_parse_start_time_invalid():
    with pytest.raises(ValueError, match="start time"):
        parse_start_time("yesterday")


def test_missing_pixel_size():
    with pytest.raises(errors.MissingMetadataError, match="ImagePixelSize"):
        _layout(pixel_size=None)


def test_malformed_pixel_size():
    xml = make_xml(SIZES, wavelengths=(509.0, 610.0), z=(0.0, 0.3))
    xml = xml.replace("0.2,0.1", "0.2")
    with pytest.raises(errors.CZIError, match="ImagePixelSize"):
        resolve_axis_layout(parse_xml(xml))


@pytest.mark.parametrize("node", ["Start", "Increment"])
def test_missing_interval_value(node):
    xml = make_xml(SIZES, wavelengths=(509.0, 610.0), t=(10.0, 2.5), z=None)
    value = "10.0" if node == "Start" else "2.5"
    xml = xml.replace(f"<{node}>{value}</{node}>", "")
    with pytest.raises(errors.MissingMetadataError, match=node):
        resolve_axis_layout(parse_xml(xml))


def test_missing_declared_size():
    with pytest.raises(errors.MissingMetadataError, match="SizeT"):
        _layout({"X": 5, "Y": 3, "C": 2, "Z": 2})


def test_missing_image_node():
    root = parse_xml("<ImageDocument><Metadata/></ImageDocument>")
    with pytest.raises(errors.MissingMetadataError, match="<Image>"):
        find_image_node(root)


def test_multiple_image_nodes():
    root = parse_xml(
        "<ImageDocument><Image><SizeX>1</SizeX></Image>"
        "<Image><SizeX>2</SizeX></Image></ImageDocument>"
    )
    with pytest.raises(errors.ConsistencyError, match="found 2"):
        find_image_node(root)


def test_invalid_xml():
    with pytest.raises(errors.CZIError, match="XML"):
        parse_xml("<ImageDocument><Metadata>")


def test_parse_xml_accepts_str_and_bytes():
    xml = make_xml(SIZES)
    assert parse_xml(xml).tag == parse_xml(xml.encode()).tag == "ImageDocument"


def test_validate_layout():
    layout = _layout()
    validate_layout(layout, {"T": 3, "Z": 2, "C": 2, "Y": 3, "X": 5})
    # axes that only the directory knows about are not compared
    validate_layout(layout, {"T": 3, "S": 7})


def test_validate_layout_names_axis():
    layout = _layout()
    with pytest.raises(errors.ConsistencyError, match="Axis Z") as e:
        validate_layout(layout, {"T": 3, "Z": 4})
    assert e.value.axis == "Z"


def test_validate_layout_lenient():
    layout = _layout()
    with pytest.warns(UserWarning, match="Axis T has 3 coordinates"):
        validate_layout(layout, {"T": 2}, strict=False)


def test_unparsable_start_time():
    with pytest.raises(errors.CZIError, match="start time"):
        _layout(start_time="yesterday")
