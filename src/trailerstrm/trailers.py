"""Trailer strm file-system convention.

Trailers live in a ``trailers`` sub-folder next to the media item, one
``<FirstWord>-Trailer.strm`` pointer file per item whose content is the raw
remote trailer URL. A ``.ignore`` file inside that folder hands the folder
over to the user: nothing in it is created, rewritten or removed.
"""

from __future__ import annotations

import datetime as dt
import logging
import os
from pathlib import Path

from .utils import ensure_directory, file_mtime_utc, to_utc

LOGGER = logging.getLogger(__name__)

TRAILERS_FOLDER = "trailers"
TRAILER_FILE_SUFFIX = "-Trailer.strm"
TRAILER_SEARCH_PATTERN = f"*{TRAILER_FILE_SUFFIX}"
IGNORE_MARKER = ".ignore"
PARTIAL_SUFFIX = ".partial"


class InvalidItemNameError(ValueError):
    """Raised when an item name yields no usable trailer file name."""


def trailers_folder_for(containing_folder: Path) -> Path:
    return Path(containing_folder) / TRAILERS_FOLDER


def trailer_file_name(item_name: str) -> str:
    """Return ``<first whitespace-delimited token>-Trailer.strm`` for ``item_name``."""
    tokens = (item_name or "").split()
    if not tokens:
        raise InvalidItemNameError(f"Cannot derive a trailer file name from item name {item_name!r}")
    return f"{tokens[0]}{TRAILER_FILE_SUFFIX}"


def is_ignored(trailers_folder: Path) -> bool:
    return (trailers_folder / IGNORE_MARKER).is_file()


def find_trailer_files(trailers_folder: Path) -> list[Path]:
    if not trailers_folder.is_dir():
        return []
    return sorted(path for path in trailers_folder.glob(TRAILER_SEARCH_PATTERN) if path.is_file())


def remove_trailer_files(trailers_folder: Path) -> list[Path]:
    """Delete every ``*-Trailer.strm`` file directly inside ``trailers_folder``."""
    removed: list[Path] = []
    for path in find_trailer_files(trailers_folder):
        path.unlink()
        removed.append(path)
    return removed


def remove_folder_if_empty(trailers_folder: Path) -> bool:
    """Remove ``trailers_folder`` when it is empty.

    Failures (unrelated files left behind, concurrent writers, permissions)
    are not errors here; the folder is simply kept.
    """
    try:
        trailers_folder.rmdir()
    except OSError as exc:
        LOGGER.debug("Keeping trailers folder %s (%s)", trailers_folder, exc.strerror or exc)
        return False
    return True


def is_stale(trailer_file: Path, last_saved: dt.datetime) -> bool:
    """True when ``trailer_file`` is missing or was written strictly before ``last_saved``."""
    try:
        written = file_mtime_utc(trailer_file)
    except FileNotFoundError:
        return True
    return written < to_utc(last_saved)


def write_trailer_file(trailer_file: Path, url: str) -> None:
    """Write ``url`` to ``trailer_file`` through a temporary sibling.

    The target is only replaced once the full content is on disk, so a failed
    write never leaves a truncated file with a fresh modification time.
    """
    ensure_directory(trailer_file.parent)
    partial = trailer_file.with_name(f".{trailer_file.name}{PARTIAL_SUFFIX}")
    try:
        # "utf-8" never writes a BOM; newline="" keeps the content byte-exact.
        with partial.open("w", encoding="utf-8", newline="") as handle:
            handle.write(url)
        os.replace(partial, trailer_file)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise
