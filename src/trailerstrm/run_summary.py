"""Run recap formatting for trailer reconciliation runs."""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING, List

if TYPE_CHECKING:
    from .models import ReconcileStats

from .logging_utils import LogBlockBuilder

LOGGER = logging.getLogger(__name__)


def summarize_messages(entries: List[str], *, limit: int = 5) -> List[str]:
    """Group duplicate messages and keep the ``limit`` most frequent ones."""
    if not entries:
        return []
    counter = Counter(entries)
    ordered = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    lines: List[str] = []
    for text, count in ordered[:limit]:
        prefix = f"{count}× " if count > 1 else ""
        lines.append(f"{prefix}{text}")
    remaining = len(ordered) - limit
    if remaining > 0:
        lines.append(f"... {remaining} more (use --verbose for full list)")
    return lines


def _status_label(stats: ReconcileStats) -> str:
    if stats.cancelled:
        return "cancelled"
    if stats.errors:
        return "completed with errors"
    return "completed"


def build_run_recap(stats: ReconcileStats, duration: float) -> str:
    title = "Run Recap (dry-run)" if stats.dry_run else "Run Recap"
    builder = LogBlockBuilder(title)
    builder.add_fields(
        [
            ("Status", _status_label(stats)),
            ("Duration", f"{duration:.2f}s"),
            ("Items", f"{stats.visited}/{stats.total}"),
            ("Created", stats.created),
            ("Refreshed", stats.updated),
            ("Unchanged", stats.unchanged),
            ("Removed", stats.removed),
            ("Ignored", stats.ignored),
            ("Failed", stats.failed),
        ]
    )
    if stats.errors:
        builder.add_section("Errors", summarize_messages(stats.errors))
    return builder.render()


def log_run_recap(stats: ReconcileStats, duration: float) -> None:
    """Log the recap at INFO when anything happened, DEBUG otherwise."""
    level = logging.INFO if (stats.has_activity() or stats.cancelled) else logging.DEBUG
    if not LOGGER.isEnabledFor(level):
        return
    LOGGER.log(level, build_run_recap(stats, duration))
