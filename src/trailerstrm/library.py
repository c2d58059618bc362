"""Library access for the trailer task.

The reconciler only needs two capabilities from the media server: the list
of candidate items and each item's resolved trailer URL. ``LibrarySource``
names that seam; ``JellyfinLibrarySource`` fills it from a Jellyfin/Emby
server and ``StaticLibrarySource`` from memory.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Optional, Protocol

from .jellyfin_client import JellyfinClient
from .logging_utils import render_fields_block
from .models import LibraryItem
from .utils import parse_timestamp

LOGGER = logging.getLogger(__name__)

ITEM_FIELDS = (
    "Path",
    "ProviderIds",
    "RemoteTrailers",
    "DateLastSaved",
    "DateLastRefreshed",
    "DateCreated",
)
_TIMESTAMP_KEYS = ("DateLastSaved", "DateLastRefreshed", "DateCreated")


class LibrarySource(Protocol):
    def get_candidate_items(self) -> list[LibraryItem]: ...

    def resolve_trailer_url(self, item: LibraryItem) -> Optional[str]: ...


def first_trailer_url(urls: Iterable[Optional[str]]) -> Optional[str]:
    for url in urls:
        if url and url.strip():
            return url
    return None


class StaticLibrarySource:
    """In-memory library, mostly for tests and scripted runs."""

    def __init__(self, items: Iterable[LibraryItem], provider_name: Optional[str] = None) -> None:
        self._items = list(items)
        self._provider_name = provider_name

    def get_candidate_items(self) -> list[LibraryItem]:
        if not self._provider_name:
            return list(self._items)
        return [item for item in self._items if item.has_provider(self._provider_name)]

    def resolve_trailer_url(self, item: LibraryItem) -> Optional[str]:
        return first_trailer_url(item.remote_trailers)


def map_server_path(path: str, mappings: Mapping[str, str]) -> str:
    """Rewrite a server-side path with the longest matching prefix in ``mappings``."""
    normalized = path.replace("\\", "/")
    best: tuple[str, str] | None = None
    for server_prefix, local_prefix in mappings.items():
        prefix = server_prefix.replace("\\", "/").rstrip("/")
        if normalized != prefix and not normalized.startswith(prefix + "/"):
            continue
        if best is None or len(prefix) > len(best[0]):
            best = (prefix, local_prefix)
    if best is None:
        return path
    prefix, local_prefix = best
    remainder = normalized[len(prefix) :].lstrip("/")
    if not remainder:
        return local_prefix
    return local_prefix.rstrip("/\\") + "/" + remainder


def _item_timestamp(entry: Mapping[str, Any]) -> Optional[dt.datetime]:
    for key in _TIMESTAMP_KEYS:
        try:
            value = parse_timestamp(entry.get(key))
        except ValueError:
            LOGGER.debug("Ignoring unparsable %s on item %s: %r", key, entry.get("Id"), entry.get(key))
            continue
        if value is not None:
            return value
    return None


class JellyfinLibrarySource:
    """Candidate movies on a Jellyfin/Emby server matched by ``provider_name``."""

    def __init__(
        self,
        client: JellyfinClient,
        provider_name: str,
        *,
        path_mappings: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.client = client
        self.provider_name = provider_name
        self.path_mappings = dict(path_mappings or {})

    def get_candidate_items(self) -> list[LibraryItem]:
        items: list[LibraryItem] = []
        for entry in self.client.iter_items(
            include_item_types=("Movie",),
            media_types=("Video",),
            fields=ITEM_FIELDS,
        ):
            item = self._build_item(entry)
            if item is None or not item.has_provider(self.provider_name):
                continue
            items.append(item)
        return items

    def resolve_trailer_url(self, item: LibraryItem) -> Optional[str]:
        return first_trailer_url(item.remote_trailers)

    def _build_item(self, entry: Mapping[str, Any]) -> Optional[LibraryItem]:
        item_id = str(entry.get("Id") or "")
        raw_path = entry.get("Path")
        if not raw_path:
            LOGGER.debug(
                render_fields_block(
                    "Skipping Item Without Path",
                    {"Id": item_id, "Name": entry.get("Name")},
                )
            )
            return None

        mapped = Path(map_server_path(str(raw_path), self.path_mappings))
        containing_folder = mapped if entry.get("IsFolder") else mapped.parent

        last_saved = _item_timestamp(entry)
        if last_saved is None:
            # Unknown save time: never treat an existing trailer as stale.
            last_saved = dt.datetime.min.replace(tzinfo=dt.timezone.utc)

        raw_provider_ids = entry.get("ProviderIds") or {}
        provider_ids = {str(key): "" if value is None else str(value) for key, value in raw_provider_ids.items()}
        trailers = tuple(
            str(trailer.get("Url"))
            for trailer in entry.get("RemoteTrailers") or []
            if isinstance(trailer, Mapping) and trailer.get("Url")
        )

        return LibraryItem(
            item_id=item_id,
            name=str(entry.get("Name") or ""),
            containing_folder=containing_folder,
            date_last_saved=last_saved,
            provider_ids=provider_ids,
            remote_trailers=trailers,
        )
