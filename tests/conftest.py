"""Fixtures that write small, synthetic CZI files."""

from __future__ import annotations

import struct
from pathlib import Path
from typing import NamedTuple, Sequence

import numpy as np
import psutil
import pytest

# fmt: off
DTYPES = {
    0: ("<u1", 1), 1: ("<u2", 1), 2: ("<f4", 1), 3: ("<u1", 3), 4: ("<u2", 3),
    8: ("<f4", 3), 9: ("<u1", 4), 12: ("<u4", 1),
}
# fmt: on
ALIGN = 12  # a multiple of every pixel size


def tag(name: str) -> bytes:
    return name.encode().ljust(16, b"\x00")


class Block(NamedTuple):
    """One subblock to write: {axis: (start, size)} in file order (X first)."""

    dims: dict[str, tuple[int, int]]
    pixel_type: int = 1
    compression: int = 0
    pyramid_type: int = 0
    file_part: int = 0
    stored_size: int = 0
    metadata: bytes = b""
    misalign: int = 0

    @property
    def shape(self) -> tuple[int, ...]:
        shape = tuple(size for _, size in reversed(self.dims.values()))
        samples = DTYPES.get(self.pixel_type, ("<u1", 1))[1]
        return shape + ((samples,) if samples > 1 else ())

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(DTYPES.get(self.pixel_type, ("<u1", 1))[0])

    def pixels(self, seed: int) -> np.ndarray:
        n = int(np.prod(self.shape))
        return (np.arange(n) + seed * 1000).astype(self.dtype).reshape(self.shape)


def dv_entry(block: Block, position: int) -> bytes:
    out = struct.pack(
        "<2siqiiBBIi",
        b"DV",
        block.pixel_type,
        position,
        block.file_part,
        block.compression,
        block.pyramid_type,
        0,
        0,
        len(block.dims),
    )
    for label, (start, size) in block.dims.items():
        out += struct.pack(
            "<4siifi", label.encode(), start, size, float(start), block.stored_size
        )
    return out


def segment(name: str, body: bytes) -> bytes:
    """Prepend the 32 byte prologue to `body`."""
    return struct.pack("<16sqq", tag(name), len(body), len(body)) + body


def make_xml(
    sizes: dict[str, int],
    wavelengths: Sequence[float] | None = (520.0,),
    t: tuple[float, float] | None = (0.0, 1.0),
    z: tuple[float, float] | None = None,
    pixel_size: tuple[float, float] | None = (0.2, 0.1),
    shear: str | None = None,
    start_time: str | None = "2021-03-04T10:11:12.3456789Z",
) -> str:
    def interval(start: float, inc: float) -> str:
        return (
            "<Positions><Interval>"
            f"<Start>{start}</Start><Increment>{inc}</Increment>"
            "</Interval></Positions>"
        )

    dims = ""
    if wavelengths is not None:
        channels = "".join(
            f'<Channel Id="Channel:{i}"><EmissionWavelength>{w}</EmissionWavelength>'
            "</Channel>"
            for i, w in enumerate(wavelengths)
        )
        dims += f"<Channels>{channels}</Channels>"
    if t is not None:
        stamp = f"<StartTime>{start_time}</StartTime>" if start_time else ""
        dims += f"<T>{stamp}{interval(*t)}</T>"
    if z is not None:
        sh = f"<ZAxisShear>{shear}</ZAxisShear>" if shear else ""
        dims += f"<Z>{sh}{interval(*z)}</Z>"
    size_nodes = "".join(f"<Size{k}>{v}</Size{k}>" for k, v in sizes.items())
    px = (
        f"<ImagePixelSize>{pixel_size[0]},{pixel_size[1]}</ImagePixelSize>"
        if pixel_size
        else ""
    )
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        "<ImageDocument><Metadata>"
        f"<Experiment><AcquisitionBlock>{px}</AcquisitionBlock></Experiment>"
        "<Information><Image>"
        f"{size_nodes}<Dimensions>{dims}</Dimensions>"
        "</Image></Information>"
        "</Metadata></ImageDocument>"
    )


def write_czi(
    path: Path,
    blocks: Sequence[Block],
    xml: str,
    *,
    major: int = 1,
    minor: int = 0,
    file_part: int = 0,
    update_pending: int = 0,
    attachments: Sequence[str] = (),
    truncate: int = 0,
) -> list[np.ndarray]:
    """Write a CZI file and return the pixel arrays of each block."""
    xml_bytes = xml.encode()
    buf = bytearray(b"\x00" * (32 + 512))  # file header, filled in at the end

    meta_pos = len(buf)
    meta_header = struct.pack("<ii", len(xml_bytes), 0).ljust(256, b"\x00")
    buf += segment("ZISRAWMETADATA", meta_header + xml_bytes)

    arrays = []
    entries = []
    for i, block in enumerate(blocks):
        data = block.pixels(i)
        arrays.append(data)
        header = max(256, 16 + 32 + 20 * len(block.dims))
        # place the segment so that the pixel data starts on an ALIGN boundary
        pos = len(buf)
        while (pos + 32 + header + len(block.metadata)) % ALIGN:
            pos += 1
        pos += block.misalign
        buf += b"\x00" * (pos - len(buf))
        entry = dv_entry(block, pos)
        entries.append(entry)
        sizes = struct.pack("<iiq", len(block.metadata), 0, data.nbytes)
        buf += segment(
            "ZISRAWSUBBLOCK",
            (sizes + entry).ljust(header, b"\x00") + block.metadata + data.tobytes(),
        )

    dir_pos = len(buf)
    buf += segment(
        "ZISRAWDIRECTORY",
        struct.pack("<i", len(entries)).ljust(128, b"\x00") + b"".join(entries),
    )

    att_pos = 0
    if attachments:
        att_pos = len(buf)
        body = struct.pack("<i", len(attachments)).ljust(256, b"\x00")
        for i, name in enumerate(attachments):
            body += struct.pack(
                "<2s10xqi16s8s80s",
                b"A1",
                1000 + i,
                0,
                bytes(range(16)),
                b"JPG",
                name.encode(),
            )
        buf += segment("ZISRAWATTDIR", body)

    file_header = struct.pack(
        "<16sqqii8x16s16siqqiq",
        tag("ZISRAWFILE"),
        512,
        512,
        major,
        minor,
        bytes(16),
        bytes(range(16)),
        file_part,
        dir_pos,
        meta_pos,
        update_pending,
        att_pos,
    )
    buf[: len(file_header)] = file_header
    if truncate:
        del buf[-truncate:]
    Path(path).write_bytes(bytes(buf))
    return arrays


def plane(**dims: int) -> dict[str, tuple[int, int]]:
    """{axis: (start, size)} for a single X/Y plane at the given start indices."""
    out = {"X": (0, 4), "Y": (0, 4)}
    out.update({k: (v, 1) for k, v in dims.items()})
    return out


@pytest.fixture()
def single_czi(tmp_path: Path) -> Path:
    """X=4, Y=4, one channel, one time point."""
    path = tmp_path / "single.czi"
    write_czi(
        path,
        [Block(plane(C=0, T=0))],
        make_xml({"X": 4, "Y": 4, "C": 1, "T": 1}),
    )
    return path


@pytest.fixture()
def zstack_czi(tmp_path: Path) -> Path:
    """Two Z planes of 4x4 pixels, with a Z shear."""
    path = tmp_path / "zstack.czi"
    write_czi(
        path,
        [Block(plane(C=0, Z=0)), Block(plane(C=0, Z=1))],
        make_xml({"X": 4, "Y": 4, "C": 1, "Z": 2}, t=None, z=(1.5, 0.5), shear="0"),
    )
    return path


@pytest.fixture()
def tzc_czi(tmp_path: Path) -> Path:
    """3 time points x 2 Z planes x 2 channels, written in a shuffled order."""
    path = tmp_path / "tzc.czi"
    blocks = [
        Block({"X": (0, 5), "Y": (0, 3), "C": (c, 1), "Z": (z, 1), "T": (t, 1)})
        for t in (2, 0, 1)
        for c in (1, 0)
        for z in (0, 1)
    ]
    write_czi(
        path,
        blocks,
        make_xml(
            {"X": 5, "Y": 3, "C": 2, "Z": 2, "T": 3},
            wavelengths=(509.0, 610.0),
            t=(10.0, 2.5),
            z=(0.0, 0.3),
        ),
    )
    return path


@pytest.fixture()
def make_czi(tmp_path: Path):
    """Factory: make_czi(blocks, xml=None, **kwargs) -> (path, arrays)."""

    def _make(blocks: Sequence[Block], xml: str | None = None, **kwargs):
        path = tmp_path / "test.czi"
        if xml is None:
            xml = make_xml({"X": 4, "Y": 4, "C": 1, "T": 1})
        arrays = write_czi(path, blocks, xml, **kwargs)
        return path, arrays

    return _make


@pytest.fixture(autouse=True)
def _assert_no_files_left_open():
    files_before = {p for p in psutil.Process().open_files() if p.path.endswith("czi")}
    yield
    files_after = {p for p in psutil.Process().open_files() if p.path.endswith("czi")}
    assert files_before == files_after == set()
