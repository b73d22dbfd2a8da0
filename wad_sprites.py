#!/usr/bin/env python3
"""Extract sprite and status-bar face lumps from a WAD into indexed PNG files."""
from __future__ import annotations

import argparse
import configparser
import copy
import logging
import mmap
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterator, List, Mapping, Optional, Sequence, Tuple

from picture import DEFAULT_TRANSPARENT_INDEX, ColorUsage, decode_picture, upsample
from png_export import ALPHA_TABLE_SIZE, write_indexed_png
from wad_format import (
    TRACE,
    ArchiveIOError,
    ByteSource,
    LumpRecord,
    Palette,
    TransparencyAssumptionViolated,
    WadDirectory,
    WadSpriteError,
    find_palette,
    parse_directory,
)

SPRITE_START = "S_START"
SPRITE_END = "S_END"
FACE_PREFIX = "STF"

CONFIG_SECTION = "options"
TRANSPARENT_INDEX_ENV = "WAD_SPRITES_TRANSPARENT_INDEX"

VERBOSITY_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG, TRACE)

ANSI_RESET = "\033[0m"
LEVEL_COLORS = {
    TRACE: "\033[2m",
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;31m",
}


class SettingsError(WadSpriteError, ValueError):
    pass


@dataclass
class ExtractorSettings:
    transparent_index: int = DEFAULT_TRANSPARENT_INDEX
    upsample: bool = False
    output_dir: Path = Path(".")
    dry_run: bool = False

    def validate(self) -> "ExtractorSettings":
        if not 0 <= self.transparent_index < ALPHA_TABLE_SIZE:
            raise SettingsError(
                f"transparent_index must be between 0 and {ALPHA_TABLE_SIZE - 1}, got {self.transparent_index}"
            )
        return self


@dataclass
class ConversionReport:
    converted: List[str] = field(default_factory=list)
    written: List[Path] = field(default_factory=list)
    usage: ColorUsage = field(default_factory=ColorUsage)
    sentinel_lumps: List[str] = field(default_factory=list)


# --------- Settings ----------


def _config_root() -> Path:
    if sys.platform.startswith("win"):
        base = os.environ.get("APPDATA")
        if base:
            return Path(base) / "wad-sprites"
        return Path.home() / "AppData" / "Roaming" / "wad-sprites"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "wad-sprites"
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "wad-sprites"
    return Path.home() / ".config" / "wad-sprites"


def default_config_path() -> Path:
    return _config_root() / "settings.ini"


def _parse_index(value: str, source: str) -> int:
    try:
        return int(value.strip(), 0)
    except ValueError:
        raise SettingsError(f"{source}: transparent_index must be an integer, got {value!r}") from None


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ExtractorSettings:
    """Defaults, then the INI file, then the environment."""
    environ = os.environ if environ is None else environ
    settings = ExtractorSettings()

    explicit = config_path is not None
    path = config_path if explicit else default_config_path()
    parser = configparser.ConfigParser()
    if path.is_file():
        try:
            parser.read(path, encoding="utf-8")
        except configparser.Error as exc:
            raise SettingsError(f"{path}: {exc}") from exc
        logging.debug("Loaded settings from %s", path)
    elif explicit:
        raise ArchiveIOError(path, "config file not found")

    if parser.has_section(CONFIG_SECTION):
        options = parser[CONFIG_SECTION]
        if "transparent_index" in options:
            settings.transparent_index = _parse_index(options["transparent_index"], str(path))
        if "upsample" in options:
            try:
                settings.upsample = options.getboolean("upsample")
            except ValueError as exc:
                raise SettingsError(f"{path}: {exc}") from exc
        if options.get("output_dir"):
            settings.output_dir = Path(options["output_dir"]).expanduser()

    env_value = environ.get(TRANSPARENT_INDEX_ENV, "").strip()
    if env_value:
        settings.transparent_index = _parse_index(env_value, TRANSPARENT_INDEX_ENV)
    return settings


def apply_cli_overrides(settings: ExtractorSettings, args: argparse.Namespace) -> ExtractorSettings:
    overrides = {}
    if args.transparent_index is not None:
        overrides["transparent_index"] = args.transparent_index
    if args.upsample is not None:
        overrides["upsample"] = args.upsample
    if args.output_dir is not None:
        overrides["output_dir"] = args.output_dir
    if args.dry_run:
        overrides["dry_run"] = True
    return replace(settings, **overrides).validate()


# --------- Logging ----------


class LevelColorFormatter(logging.Formatter):
    def __init__(self, fmt: str, datefmt: Optional[str] = None, use_color: bool = False) -> None:
        super().__init__(fmt, datefmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        if self.use_color and record.levelno in LEVEL_COLORS:
            record = copy.copy(record)
            record.levelname = f"{LEVEL_COLORS[record.levelno]}{record.levelname}{ANSI_RESET}"
        return super().format(record)


def configure_logging(verbosity: int = 0, color: str = "auto", timestamps: bool = False, stream=None) -> int:
    level = VERBOSITY_LEVELS[min(max(verbosity, 0), len(VERBOSITY_LEVELS) - 1)]
    fmt = "%(levelname)s: %(message)s"
    if level <= TRACE:
        fmt = "%(levelname)s: [%(module)s:%(lineno)d] %(message)s"
    if timestamps:
        fmt = "%(asctime)s " + fmt

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    if color == "always":
        use_color = True
    elif color == "never":
        use_color = False
    else:
        isatty = getattr(handler.stream, "isatty", None)
        use_color = bool(isatty and isatty())
    handler.setFormatter(LevelColorFormatter(fmt, datefmt="%Y-%m-%dT%H:%M:%S%z", use_color=use_color))
    logging.basicConfig(level=level, handlers=[handler], force=True)
    return level


# --------- Conversion ----------


@contextmanager
def map_wad(path: Path) -> Iterator[ByteSource]:
    """Read-only view of the WAD contents for the duration of the block."""
    try:
        handle = path.open("rb")
    except OSError as exc:
        raise ArchiveIOError(path, f"Couldn't open WAD: {exc.strerror or exc}") from exc
    with handle:
        if os.fstat(handle.fileno()).st_size == 0:
            yield b""
            return
        try:
            view = mmap.mmap(handle.fileno(), 0, access=mmap.ACCESS_READ)
        except (OSError, ValueError) as exc:
            raise ArchiveIOError(path, f"Couldn't map WAD: {exc}") from exc
        with view:
            yield view


def select_sprite_lumps(directory: WadDirectory) -> Tuple[List[LumpRecord], List[LumpRecord]]:
    """Sprites between S_START/S_END, and every STF* status-bar face."""
    return directory.between(SPRITE_START, SPRITE_END), directory.with_prefix(FACE_PREFIX)


def output_path_for(lump: LumpRecord, output_dir: Path) -> Path:
    return output_dir / f"{lump.name.text}.png"


def convert_lump(
    data: ByteSource,
    lump: LumpRecord,
    palette: Palette,
    settings: ExtractorSettings,
    report: ConversionReport,
) -> None:
    image = decode_picture(data, lump, report.usage, settings.transparent_index)
    logging.debug("    %dx%d", image.width, image.height)
    if settings.transparent_index in image.usage:
        report.sentinel_lumps.append(lump.name.text)
    if settings.upsample:
        image = upsample(image)
    report.converted.append(lump.name.text)
    if settings.dry_run:
        return
    destination = output_path_for(lump, settings.output_dir)
    write_indexed_png(
        destination,
        image.width,
        image.height,
        palette,
        settings.transparent_index,
        image.to_bytes(),
    )
    report.written.append(destination)


def check_transparent_index(report: ConversionReport, transparent_index: int) -> None:
    """Fail if the sentinel index was decoded as a real pixel anywhere in the run."""
    if transparent_index in report.usage:
        raise TransparencyAssumptionViolated(transparent_index, report.sentinel_lumps)


def convert_archive(data: ByteSource, settings: ExtractorSettings) -> ConversionReport:
    directory = parse_directory(data)
    palette = find_palette(data, directory)
    sprites, faces = select_sprite_lumps(directory)
    report = ConversionReport()

    for title, lumps in (("Sprites", sprites), ("Faces", faces)):
        logging.info("%s:", title)
        for lump in lumps:
            logging.info("  %s", lump.name)
            convert_lump(data, lump, palette, settings, report)

    check_transparent_index(report, settings.transparent_index)
    return report


def convert_wad(path: Path, settings: ExtractorSettings) -> ConversionReport:
    with map_wad(path) as data:
        return convert_archive(data, settings)


def list_wad(path: Path) -> List[LumpRecord]:
    with map_wad(path) as data:
        sprites, faces = select_sprite_lumps(parse_directory(data))
    for title, lumps in (("Sprites", sprites), ("Faces", faces)):
        print(f"{title}:")
        for lump in lumps:
            print(f"  {lump.name.text:<8s} {lump.offset:>10d} {lump.size:>8d}")
    return sprites + faces


# --------- CLI ----------


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Convert the sprites (S_START..S_END) and status-bar faces (STF*) of a Doom WAD "
            "into 8-bit indexed PNG files that share the WAD's PLAYPAL palette."
        )
    )
    parser.add_argument("wad", type=Path, help="Where's all the data?")
    parser.add_argument(
        "-o",
        "--output-dir",
        type=Path,
        default=None,
        help="Directory for the PNG files. Defaults to the current directory.",
    )
    parser.add_argument(
        "--upsample",
        action="store_true",
        default=None,
        help="Scale every sprite 5x horizontally and 6x vertically to correct the 320x200 aspect ratio.",
    )
    parser.add_argument(
        "--transparent-index",
        type=int,
        default=None,
        help=(
            f"Palette index written as fully transparent (0-{ALPHA_TABLE_SIZE - 1}, default "
            f"{DEFAULT_TRANSPARENT_INDEX}). Overrides {TRANSPARENT_INDEX_ENV} and the config file."
        ),
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Settings file to read instead of {default_config_path()}.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Decode everything and validate the transparent index without writing files.",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="Print the selected lumps with their offsets and sizes, then exit.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Verbosity (-v, -vv, -vvv).",
    )
    parser.add_argument(
        "-c",
        "--color",
        choices=("auto", "always", "never"),
        default="auto",
        help="Colour log level names.",
    )
    parser.add_argument(
        "-t",
        "--timestamps",
        action="store_true",
        help="Prepend ISO-8601 timestamps to every log message. Useful for benchmarking.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.verbose, args.color, args.timestamps)

    try:
        if args.list:
            list_wad(args.wad)
            return
        settings = apply_cli_overrides(load_settings(args.config), args)
        report = convert_wad(args.wad, settings)
    except WadSpriteError as exc:
        logging.error("%s", exc)
        if args.verbose >= 2:
            raise
        sys.exit(1)

    if settings.dry_run:
        logging.info("Dry run: decoded %d lump(s), nothing written.", len(report.converted))
    else:
        logging.info("Wrote %d PNG file(s) to %s", len(report.written), settings.output_dir)


if __name__ == "__main__":
    main()
