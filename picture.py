"""Column/post picture decoding and aspect-ratio upsampling."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

import numpy as np

from wad_format import TRACE, ByteCursor, ByteSource, LumpRecord, OutOfRange, WadFormatError

LOGGER = logging.getLogger(__name__)

# Index 247 has special meaning to Doom engines: no stock sprite pixel uses it.
DEFAULT_TRANSPARENT_INDEX = 247

COLUMN_TERMINATOR = 0xFF
PICTURE_HEADER_FORMAT = "<HHhh"

# 320x200 VGA pixels are displayed taller than wide; 5:6 restores the
# intended proportions with integer replication.
UPSAMPLE_X = 5
UPSAMPLE_Y = 6


@dataclass(frozen=True)
class PictureHeader:
    width: int
    height: int
    left_offset: int
    top_offset: int
    column_offsets: Tuple[int, ...]


@dataclass(frozen=True)
class Post:
    top_delta: int
    length: int

    @property
    def is_terminator(self) -> bool:
        return self.top_delta == COLUMN_TERMINATOR


class ColorUsage:
    """Palette indices that appeared as real pixels across one or more decodes."""

    def __init__(self) -> None:
        self.used = np.zeros(256, dtype=bool)

    def mark(self, indices: np.ndarray) -> None:
        self.used[indices] = True

    def merge(self, other: "ColorUsage") -> "ColorUsage":
        self.used |= other.used
        return self

    def __contains__(self, index: int) -> bool:
        return bool(self.used[index])

    def __len__(self) -> int:
        return int(np.count_nonzero(self.used))

    def indices(self) -> List[int]:
        return [int(i) for i in np.flatnonzero(self.used)]


@dataclass
class DecodedImage:
    width: int
    height: int
    pixels: np.ndarray
    name: str = ""
    left_offset: int = 0
    top_offset: int = 0
    usage: ColorUsage = field(default_factory=ColorUsage)

    @classmethod
    def blank(cls, width: int, height: int, fill: int, name: str = "") -> "DecodedImage":
        return cls(
            width=width,
            height=height,
            pixels=np.full((height, width), fill, dtype=np.uint8),
            name=name,
        )

    def to_bytes(self) -> bytes:
        """Row-major index buffer (``x + y * width``)."""
        return np.ascontiguousarray(self.pixels, dtype=np.uint8).tobytes()

    def pixel(self, x: int, y: int) -> int:
        return int(self.pixels[y, x])


def read_picture_header(cursor: ByteCursor) -> PictureHeader:
    width, height, left_offset, top_offset = cursor.read_struct(PICTURE_HEADER_FORMAT)
    column_offsets = cursor.read_struct(f"<{width}I") if width else ()
    return PictureHeader(
        width=width,
        height=height,
        left_offset=left_offset,
        top_offset=top_offset,
        column_offsets=tuple(column_offsets),
    )


def read_post(cursor: ByteCursor) -> Post:
    top_delta = cursor.read_u8()
    if top_delta == COLUMN_TERMINATOR:
        return Post(top_delta=top_delta, length=0)
    length = cursor.read_u8()
    cursor.skip(1)  # unused byte before the pixel run
    return Post(top_delta=top_delta, length=length)


def iter_column(cursor: ByteCursor) -> Iterable[Tuple[Post, bytes]]:
    """Yield (post, pixel run) pairs until the column terminator."""
    while True:
        post = read_post(cursor)
        if post.is_terminator:
            return
        run = cursor.read(post.length)
        cursor.skip(1)  # trailing pad
        yield post, run


def decode_picture(
    data: ByteSource,
    lump: LumpRecord,
    usage: ColorUsage,
    transparent_index: int = DEFAULT_TRANSPARENT_INDEX,
) -> DecodedImage:
    """Decode a picture-format lump into a dense index buffer.

    Untouched pixels hold *transparent_index*. Every index written is marked
    in *usage*. Raises ``Truncated`` or ``OutOfRange`` (prefixed with the lump
    name) on structurally invalid data.
    """
    name = lump.name.text
    try:
        return _decode_picture(data, lump, usage, transparent_index)
    except WadFormatError as exc:
        exc.args = (f"{name}: {exc.args[0]}",) + exc.args[1:]
        raise


def _decode_picture(
    data: ByteSource,
    lump: LumpRecord,
    usage: ColorUsage,
    transparent_index: int,
) -> DecodedImage:
    base = lump.offset
    cursor = ByteCursor(data)
    cursor.seek(base)
    header = read_picture_header(cursor)
    LOGGER.log(
        TRACE,
        "    %s: %dx%d origin (%d, %d)",
        lump.name,
        header.width,
        header.height,
        header.left_offset,
        header.top_offset,
    )

    image = DecodedImage.blank(header.width, header.height, transparent_index, name=lump.name.text)
    image.left_offset = header.left_offset
    image.top_offset = header.top_offset
    pixels = image.pixels

    for x, column_offset in enumerate(header.column_offsets):
        cursor.seek(base + column_offset)
        for post, run in iter_column(cursor):
            bottom = post.top_delta + post.length
            if bottom > header.height:
                raise OutOfRange(
                    f"column {x} post [{post.top_delta}, {bottom}) exceeds height {header.height}",
                    offset=cursor.position,
                )
            LOGGER.log(TRACE, "      column %d: [%d..%d)", x, post.top_delta, bottom)
            run_indices = np.frombuffer(run, dtype=np.uint8)
            pixels[post.top_delta : bottom, x] = run_indices
            image.usage.mark(run_indices)

    usage.merge(image.usage)
    return image


def upsample(image: DecodedImage) -> DecodedImage:
    """Nearest-neighbour scale by 5x horizontally and 6x vertically."""
    scaled = np.repeat(np.repeat(image.pixels, UPSAMPLE_Y, axis=0), UPSAMPLE_X, axis=1)
    return DecodedImage(
        width=image.width * UPSAMPLE_X,
        height=image.height * UPSAMPLE_Y,
        pixels=scaled,
        name=image.name,
        left_offset=image.left_offset * UPSAMPLE_X,
        top_offset=image.top_offset * UPSAMPLE_Y,
        usage=image.usage,
    )
