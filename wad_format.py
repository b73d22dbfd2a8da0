"""WAD archive header, lump directory and palette parsing."""
from __future__ import annotations

import logging
import mmap
import struct
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple, Union

LOGGER = logging.getLogger(__name__)

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

ByteSource = Union[bytes, bytearray, memoryview, mmap.mmap]

WAD_MAGICS = (b"IWAD", b"PWAD")
HEADER_FORMAT = "<4sII"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 12
DIRECTORY_ENTRY_FORMAT = "<II8s"
DIRECTORY_ENTRY_SIZE = struct.calcsize(DIRECTORY_ENTRY_FORMAT)  # 16
LUMP_NAME_SIZE = 8

PALETTE_LUMP = "PLAYPAL"
PALETTE_COLORS = 256
PALETTE_SIZE = PALETTE_COLORS * 3


# --------- Errors ----------


class WadSpriteError(Exception):
    """Base class for every fatal condition raised while converting sprites."""


class WadFormatError(WadSpriteError, ValueError):
    pass


class BadMagic(WadFormatError):
    def __init__(self, magic: bytes) -> None:
        super().__init__(f"Bad magic: {magic!r} (expected IWAD or PWAD)")
        self.magic = magic


class Truncated(WadFormatError):
    def __init__(self, offset: int, wanted: int, available: int) -> None:
        super().__init__(
            f"Truncated read at offset {offset}: wanted {wanted} byte(s), {available} available"
        )
        self.offset = offset
        self.wanted = wanted
        self.available = available


class OutOfRange(WadFormatError):
    def __init__(self, message: str, offset: Optional[int] = None) -> None:
        super().__init__(message)
        self.offset = offset


class NonTextName(WadFormatError):
    def __init__(self, raw: bytes, offset: Optional[int] = None) -> None:
        where = f" at offset {offset}" if offset is not None else ""
        super().__init__(f"Lump name {raw!r}{where} is not valid text")
        self.raw = raw
        self.offset = offset


class MissingPalette(WadFormatError):
    def __init__(self, name: str = PALETTE_LUMP) -> None:
        super().__init__(f"No {name} lump found; cannot emit sprites without a palette")
        self.name = name


class ArchiveIOError(WadSpriteError, OSError):
    def __init__(self, path: object, reason: object) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class EncodeError(WadSpriteError, ValueError):
    pass


class TransparencyAssumptionViolated(WadSpriteError, RuntimeError):
    def __init__(self, index: int, lumps: Sequence[str] = ()) -> None:
        shown = ", ".join(lumps[:8]) + (", ..." if len(lumps) > 8 else "")
        suffix = f" (used by {shown})" if lumps else ""
        super().__init__(
            f"Transparent index {index} appears as a real pixel{suffix}; choose another index for this WAD"
        )
        self.index = index
        self.lumps = list(lumps)


# --------- Byte cursor ----------


class ByteCursor:
    """Read-only little-endian reader with a movable position.

    Works over anything exposing the buffer protocol and slicing (``bytes``,
    ``bytearray``, ``memoryview`` or a read-only ``mmap``); the backing bytes
    are never copied except by :meth:`read`.
    """

    _INT_FORMATS = {
        (1, False): "<B",
        (1, True): "<b",
        (2, False): "<H",
        (2, True): "<h",
        (4, False): "<I",
        (4, True): "<i",
    }

    def __init__(self, data: ByteSource, position: int = 0) -> None:
        self._data = data
        self._length = len(data)
        self._position = 0
        self.seek(position)

    def __len__(self) -> int:
        return self._length

    @property
    def position(self) -> int:
        return self._position

    def remaining(self) -> int:
        return self._length - self._position

    def seek(self, offset: int) -> None:
        if offset < 0 or offset > self._length:
            raise OutOfRange(
                f"Seek to offset {offset} outside buffer of {self._length} byte(s)",
                offset=offset,
            )
        self._position = offset

    def skip(self, count: int) -> None:
        self._require(count)
        self._position += count

    def _require(self, count: int) -> None:
        available = self._length - self._position
        if count > available:
            raise Truncated(self._position, count, available)

    def read_int(self, width: int, signed: bool = False) -> int:
        try:
            fmt = self._INT_FORMATS[(width, signed)]
        except KeyError:
            raise ValueError(f"Unsupported integer width: {width}") from None
        self._require(width)
        (value,) = struct.unpack_from(fmt, self._data, self._position)
        self._position += width
        return value

    def read_u8(self) -> int:
        return self.read_int(1)

    def read_u16(self) -> int:
        return self.read_int(2)

    def read_i16(self) -> int:
        return self.read_int(2, signed=True)

    def read_u32(self) -> int:
        return self.read_int(4)

    def read_struct(self, fmt: str) -> Tuple:
        size = struct.calcsize(fmt)
        self._require(size)
        values = struct.unpack_from(fmt, self._data, self._position)
        self._position += size
        return values

    def read(self, count: int) -> bytes:
        self._require(count)
        start = self._position
        self._position += count
        return self._data[start : self._position]


# --------- Directory ----------


class LumpName:
    """Fixed 8-byte, NUL-padded lump name.

    Text ends at the first NUL. Comparison against ``str`` is exact and
    case-sensitive.
    """

    __slots__ = ("raw", "text")

    def __init__(self, raw: bytes, offset: Optional[int] = None) -> None:
        raw = bytes(raw)
        if len(raw) > LUMP_NAME_SIZE:
            raise NonTextName(raw, offset)
        terminator = raw.find(b"\x00")
        visible = raw if terminator < 0 else raw[:terminator]
        try:
            text = visible.decode("utf-8")
        except UnicodeDecodeError:
            raise NonTextName(raw, offset) from None
        self.raw = raw.ljust(LUMP_NAME_SIZE, b"\x00")
        self.text = text

    @classmethod
    def from_text(cls, text: str) -> "LumpName":
        return cls(text.encode("utf-8"))

    def to_bytes(self) -> bytes:
        return self.text.encode("utf-8").ljust(LUMP_NAME_SIZE, b"\x00")

    def startswith(self, prefix: str) -> bool:
        return self.text.startswith(prefix)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, LumpName):
            return self.text == other.text
        if isinstance(other, str):
            return self.text == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.text)

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"LumpName({self.text!r})"


@dataclass(frozen=True)
class ArchiveHeader:
    magic: bytes
    lump_count: int
    directory_offset: int

    @property
    def kind(self) -> str:
        return self.magic.decode("ascii")


@dataclass(frozen=True)
class LumpRecord:
    offset: int
    size: int
    name: LumpName
    index: int = -1

    def __str__(self) -> str:
        return self.name.text


class WadDirectory(Sequence[LumpRecord]):
    """Lump records in on-disk order."""

    def __init__(self, header: ArchiveHeader, lumps: Sequence[LumpRecord]) -> None:
        self.header = header
        self._lumps: Tuple[LumpRecord, ...] = tuple(lumps)

    def __len__(self) -> int:
        return len(self._lumps)

    def __getitem__(self, index):  # type: ignore[override]
        return self._lumps[index]

    def __iter__(self) -> Iterator[LumpRecord]:
        return iter(self._lumps)

    def find(self, name: str) -> Optional[LumpRecord]:
        """Return the first lump named exactly *name*, or ``None``."""
        for lump in self._lumps:
            if lump.name == name:
                return lump
        return None

    def between(self, start_marker: str, end_marker: str) -> List[LumpRecord]:
        """Lumps strictly between the first *start_marker* and the next *end_marker*.

        Without a start marker the range is empty; without an end marker it
        runs to the end of the directory.
        """
        selected: List[LumpRecord] = []
        inside = False
        for lump in self._lumps:
            if not inside:
                inside = lump.name == start_marker
                continue
            if lump.name == end_marker:
                break
            selected.append(lump)
        return selected

    def with_prefix(self, prefix: str) -> List[LumpRecord]:
        return [lump for lump in self._lumps if lump.name.startswith(prefix)]


def read_header(cursor: ByteCursor) -> ArchiveHeader:
    cursor.seek(0)
    magic = bytes(cursor.read(4))
    if magic not in WAD_MAGICS:
        raise BadMagic(magic)
    lump_count = cursor.read_u32()
    directory_offset = cursor.read_u32()
    return ArchiveHeader(magic=magic, lump_count=lump_count, directory_offset=directory_offset)


def parse_directory(data: ByteSource) -> WadDirectory:
    """Parse the archive header and the lump directory it points at."""
    cursor = data if isinstance(data, ByteCursor) else ByteCursor(data)
    header = read_header(cursor)

    table_end = header.directory_offset + header.lump_count * DIRECTORY_ENTRY_SIZE
    if table_end > len(cursor):
        raise Truncated(
            header.directory_offset,
            header.lump_count * DIRECTORY_ENTRY_SIZE,
            max(0, len(cursor) - header.directory_offset),
        )

    cursor.seek(header.directory_offset)
    lumps: List[LumpRecord] = []
    for index in range(header.lump_count):
        entry_offset = cursor.position
        filepos, size, raw_name = cursor.read_struct(DIRECTORY_ENTRY_FORMAT)
        lumps.append(
            LumpRecord(
                offset=filepos,
                size=size,
                name=LumpName(raw_name, offset=entry_offset),
                index=index,
            )
        )

    LOGGER.debug("%s with %d lumps", header.kind, header.lump_count)
    if LOGGER.isEnabledFor(TRACE):
        for lump in lumps:
            LOGGER.log(TRACE, "  %-8s @%d (%d bytes)", lump.name, lump.offset, lump.size)
    return WadDirectory(header, lumps)


# --------- Palette ----------


@dataclass(frozen=True)
class Palette:
    """256 RGB entries stored as a flat 768-byte table."""

    rgb: bytes

    def __post_init__(self) -> None:
        if len(self.rgb) != PALETTE_SIZE:
            raise EncodeError(f"Palette must be {PALETTE_SIZE} bytes, got {len(self.rgb)}")

    def __len__(self) -> int:
        return PALETTE_COLORS

    def __getitem__(self, index: int) -> Tuple[int, int, int]:
        if not 0 <= index < PALETTE_COLORS:
            raise IndexError(index)
        base = index * 3
        return self.rgb[base], self.rgb[base + 1], self.rgb[base + 2]

    def colors(self) -> List[Tuple[int, int, int]]:
        return [self[i] for i in range(PALETTE_COLORS)]


def load_palette(data: ByteSource, lump: LumpRecord) -> Palette:
    """Read the first 256-colour palette stored in *lump*."""
    if lump.size < PALETTE_SIZE:
        raise Truncated(lump.offset, PALETTE_SIZE, lump.size)
    cursor = ByteCursor(data)
    cursor.seek(lump.offset)
    return Palette(bytes(cursor.read(PALETTE_SIZE)))


def find_palette(data: ByteSource, directory: WadDirectory, name: str = PALETTE_LUMP) -> Palette:
    lump = directory.find(name)
    if lump is None:
        raise MissingPalette(name)
    LOGGER.debug("Palette %s at offset %d (%d bytes)", lump.name, lump.offset, lump.size)
    return load_palette(data, lump)
