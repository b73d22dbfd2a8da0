"""Indexed PNG output with a palette and a single transparent index."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

from PIL import Image

from wad_format import PALETTE_COLORS, PALETTE_SIZE, ArchiveIOError, EncodeError, Palette

LOGGER = logging.getLogger(__name__)

# One entry short of the palette: index 255 keeps the implicit opaque default.
ALPHA_TABLE_SIZE = PALETTE_COLORS - 1
OPAQUE = 0xFF
TRANSPARENT = 0x00


def build_alpha_table(transparent_index: int) -> bytes:
    """tRNS payload: opaque everywhere except *transparent_index*."""
    if not 0 <= transparent_index < ALPHA_TABLE_SIZE:
        raise EncodeError(
            f"Transparent index {transparent_index} is outside the {ALPHA_TABLE_SIZE}-entry alpha table"
        )
    table = bytearray([OPAQUE]) * ALPHA_TABLE_SIZE
    table[transparent_index] = TRANSPARENT
    return bytes(table)


def write_indexed_png(
    path: Union[str, Path],
    width: int,
    height: int,
    palette: Union[Palette, bytes],
    transparent_index: int,
    pixels: bytes,
) -> Path:
    path = Path(path)
    rgb = palette.rgb if isinstance(palette, Palette) else bytes(palette)
    if len(rgb) != PALETTE_SIZE:
        raise EncodeError(f"Palette must hold {PALETTE_COLORS} entries, got {len(rgb) / 3:g}")
    if len(pixels) != width * height:
        raise EncodeError(f"Expected {width * height} pixel(s) for {width}x{height}, got {len(pixels)}")
    if width <= 0 or height <= 0:
        raise EncodeError(f"Cannot encode an empty {width}x{height} image")
    alpha = build_alpha_table(transparent_index)

    image = Image.frombytes("P", (width, height), bytes(pixels))
    image.putpalette(rgb, rawmode="RGB")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        image.save(path, format="PNG", bits=8, transparency=alpha)
    except OSError as exc:
        raise ArchiveIOError(path, exc.strerror or exc) from exc
    except ValueError as exc:
        raise EncodeError(f"{path}: {exc}") from exc
    LOGGER.debug("Wrote %s (%dx%d)", path, width, height)
    return path
