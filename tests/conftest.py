"""Builders for small in-memory WAD archives and picture lumps."""
import logging
import struct
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Tuple, Union

import pytest

from wad_sprites import LevelColorFormatter

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"

Name = Union[str, bytes]


def build_picture(
    width: int,
    height: int,
    columns: Sequence[Sequence[Tuple[int, bytes]]],
    left_offset: int = 0,
    top_offset: int = 0,
) -> bytes:
    """Encode columns of (top_delta, pixels) posts in picture format."""
    assert len(columns) == width
    table_end = 8 + 4 * width
    body = bytearray()
    offsets: List[int] = []
    for posts in columns:
        offsets.append(table_end + len(body))
        for top_delta, run in posts:
            body += bytes((top_delta, len(run), 0)) + bytes(run) + b"\x00"
        body.append(0xFF)
    header = struct.pack("<HHhh", width, height, left_offset, top_offset)
    return header + struct.pack(f"<{width}I", *offsets) + bytes(body)


def build_wad(lumps: Iterable[Tuple[Name, bytes]], magic: bytes = b"IWAD") -> bytes:
    data = bytearray(struct.pack("<4sII", magic, 0, 0))
    entries = []
    for name, payload in lumps:
        raw_name = name.encode("ascii") if isinstance(name, str) else name
        entries.append((len(data), len(payload), raw_name))
        data += payload
    directory_offset = len(data)
    for offset, size, raw_name in entries:
        data += struct.pack("<II8s", offset, size, raw_name)
    struct.pack_into("<II", data, 4, len(entries), directory_offset)
    return bytes(data)


def read_png_chunks(path: Path) -> Dict[bytes, bytes]:
    data = Path(path).read_bytes()
    assert data.startswith(PNG_MAGIC)
    chunks: Dict[bytes, bytes] = {}
    idx = 8
    while idx + 8 <= len(data):
        length = struct.unpack(">I", data[idx : idx + 4])[0]
        chunk_type = data[idx + 4 : idx + 8]
        chunk_data = data[idx + 8 : idx + 8 + length]
        chunks[chunk_type] = chunks.get(chunk_type, b"") + chunk_data
        idx += 12 + length
    return chunks


@pytest.fixture
def palette_bytes() -> bytes:
    # Every entry distinct.
    return bytes(c for i in range(256) for c in (i, 255 - i, i // 2))


@pytest.fixture
def two_by_two_picture() -> bytes:
    return build_picture(2, 2, [[(0, b"\x0a\x14")], [(0, b"\x1e\x28")]])


@pytest.fixture
def sprite_wad(palette_bytes, two_by_two_picture) -> bytes:
    return build_wad(
        [
            ("PLAYPAL", palette_bytes),
            ("S_START", b""),
            ("TROOA1", two_by_two_picture),
            ("S_END", b""),
        ]
    )


@pytest.fixture(autouse=True)
def restore_root_logging():
    """Drop handlers installed by configure_logging so later tests start clean."""
    level = logging.getLogger().level
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if isinstance(handler.formatter, LevelColorFormatter):
            root.removeHandler(handler)
    root.setLevel(level)


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """Keep the user's settings file and environment out of the run."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.delenv("WAD_SPRITES_TRANSPARENT_INDEX", raising=False)
    return tmp_path / "config" / "wad-sprites" / "settings.ini"
