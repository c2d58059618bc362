from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Optional, Protocol

from .config import Settings
from .library import LibrarySource
from .logging_utils import render_fields_block
from .models import ItemOutcome, LibraryItem, ReconcileStats
from .run_summary import log_run_recap
from .trailers import (
    find_trailer_files,
    is_ignored,
    is_stale,
    remove_folder_if_empty,
    remove_trailer_files,
    trailer_file_name,
    trailers_folder_for,
    write_trailer_file,
)

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class CancellationSignal(Protocol):
    def is_set(self) -> bool: ...


class TrailerReconciler:
    """Converges each item's ``trailers`` folder to its current remote trailer URL.

    Items are handled strictly one after another. Cancellation is honoured
    between items only, so an item is never left half-written.
    """

    def __init__(self, settings: Settings, source: LibrarySource) -> None:
        self.settings = settings
        self.source = source

    @staticmethod
    def _format_log(event: str, fields: Mapping[str, object] | None = None) -> str:
        return render_fields_block(event, fields or {}, pad_top=True)

    @staticmethod
    def _format_inline_log(event: str, fields: Mapping[str, object] | None = None) -> str:
        return render_fields_block(event, fields or {}, pad_top=False)

    def _disabled(self, progress: Optional[ProgressCallback]) -> ReconcileStats:
        LOGGER.info(self._format_inline_log("Trailer Generation Disabled", {"Flag": "enable_trailers"}))
        _report(progress, 0.0)
        return ReconcileStats(disabled=True, dry_run=self.settings.dry_run)

    def run(
        self,
        cancel: Optional[CancellationSignal] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> ReconcileStats:
        """Query the library for candidates and reconcile all of them."""
        if not self.settings.enable_trailers:
            return self._disabled(progress)

        try:
            items = self.source.get_candidate_items()
        except Exception as exc:
            LOGGER.error(
                self._format_log(
                    "Candidate Query Failed",
                    {"Provider": self.settings.provider_name, "Error": exc},
                )
            )
            raise

        LOGGER.debug(
            self._format_log(
                "Discovered Candidate Items",
                {"Provider": self.settings.provider_name, "Total": len(items)},
            )
        )
        return self._reconcile_items(items, cancel, progress)

    def reconcile(
        self,
        items: Sequence[LibraryItem],
        cancel: Optional[CancellationSignal] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> ReconcileStats:
        if not self.settings.enable_trailers:
            return self._disabled(progress)
        return self._reconcile_items(items, cancel, progress)

    def _reconcile_items(
        self,
        items: Sequence[LibraryItem],
        cancel: Optional[CancellationSignal],
        progress: Optional[ProgressCallback],
    ) -> ReconcileStats:
        stats = ReconcileStats(total=len(items), dry_run=self.settings.dry_run)
        run_started = time.perf_counter()

        if not items:
            _report(progress, 0.0)

        for index, item in enumerate(items):
            if cancel is not None and cancel.is_set():
                stats.cancelled = True
                LOGGER.warning(
                    self._format_log(
                        "Trailer Generation Cancelled",
                        {"Completed": f"{index}/{len(items)}"},
                    )
                )
                break

            _report(progress, index / len(items) * 100)

            try:
                outcome = self._process_item(item, stats)
            except Exception as exc:
                LOGGER.error(
                    self._format_log(
                        "Trailer Generation Failed",
                        {
                            "Item": item.name,
                            "Folder": item.containing_folder,
                            "Error": exc,
                        },
                    ),
                    exc_info=LOGGER.isEnabledFor(logging.DEBUG),
                )
                stats.register(ItemOutcome.FAILED, error=f"{item.name} ({item.containing_folder}): {exc}")
                continue

            stats.register(outcome)

        if not stats.cancelled:
            _report(progress, 100.0)

        log_run_recap(stats, time.perf_counter() - run_started)
        return stats

    def _process_item(self, item: LibraryItem, stats: ReconcileStats) -> ItemOutcome:
        trailers_folder = trailers_folder_for(item.containing_folder)

        if is_ignored(trailers_folder):
            LOGGER.debug(
                self._format_log("Skipping Ignored Trailers Folder", {"Item": item.name, "Folder": trailers_folder})
            )
            return ItemOutcome.IGNORED

        trailer_url = self.source.resolve_trailer_url(item)

        if not trailer_url or not trailer_url.strip():
            if not trailers_folder.is_dir():
                return ItemOutcome.ABSENT
            return self._prune(item, trailers_folder, stats)

        trailer_file = trailers_folder / trailer_file_name(item.name)

        if not is_stale(trailer_file, item.date_last_saved):
            LOGGER.debug(self._format_log("Trailer Up To Date", {"Item": item.name, "File": trailer_file}))
            return ItemOutcome.UNCHANGED

        outcome = ItemOutcome.UPDATED if trailer_file.exists() else ItemOutcome.CREATED
        if self.settings.dry_run:
            LOGGER.info(
                self._format_log(
                    "Dry-Run: Would Write Trailer",
                    {"Item": item.name, "File": trailer_file, "URL": trailer_url},
                )
            )
        else:
            write_trailer_file(trailer_file, trailer_url)
            LOGGER.info(
                self._format_log(
                    "Trailer Written" if outcome is ItemOutcome.CREATED else "Trailer Refreshed",
                    {"Item": item.name, "File": trailer_file, "URL": trailer_url},
                )
            )
        stats.written_paths.append(trailer_file)
        return outcome

    def _prune(self, item: LibraryItem, trailers_folder: Path, stats: ReconcileStats) -> ItemOutcome:
        if self.settings.dry_run:
            obsolete = find_trailer_files(trailers_folder)
            # The folder is removed afterwards only when nothing else is left in it.
            folder_would_go = all(path in obsolete for path in trailers_folder.iterdir())
            if not obsolete and not folder_would_go:
                return ItemOutcome.ABSENT
            LOGGER.info(
                self._format_log(
                    "Dry-Run: Would Remove Trailers",
                    {
                        "Item": item.name,
                        "Files": [path.name for path in obsolete] or "(none)",
                        "Folder Removed": "yes" if folder_would_go else "no",
                    },
                )
            )
            stats.removed_paths.extend(obsolete)
            return ItemOutcome.REMOVED

        removed = remove_trailer_files(trailers_folder)
        folder_removed = remove_folder_if_empty(trailers_folder)
        if not removed and not folder_removed:
            return ItemOutcome.ABSENT

        stats.removed_paths.extend(removed)
        LOGGER.info(
            self._format_log(
                "Obsolete Trailers Removed",
                {
                    "Item": item.name,
                    "Files": [path.name for path in removed] or "(none)",
                    "Folder Removed": "yes" if folder_removed else "no",
                },
            )
        )
        return ItemOutcome.REMOVED


def _report(progress: Optional[ProgressCallback], value: float) -> None:
    if progress is not None:
        progress(value)
