from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple


class ItemOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    REMOVED = "removed"
    ABSENT = "absent"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass(slots=True)
class LibraryItem:
    item_id: str
    name: str
    containing_folder: Path
    date_last_saved: dt.datetime
    provider_ids: Dict[str, str] = field(default_factory=dict)
    remote_trailers: Tuple[str, ...] = ()

    def has_provider(self, provider_name: str) -> bool:
        wanted = provider_name.lower()
        return any(key.lower() == wanted for key in self.provider_ids)


@dataclass(slots=True)
class ReconcileStats:
    total: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    removed: int = 0
    absent: int = 0
    ignored: int = 0
    failed: int = 0
    cancelled: bool = False
    disabled: bool = False
    dry_run: bool = False
    errors: List[str] = field(default_factory=list)
    written_paths: List[Path] = field(default_factory=list)
    removed_paths: List[Path] = field(default_factory=list)

    @property
    def visited(self) -> int:
        return (
            self.created
            + self.updated
            + self.unchanged
            + self.removed
            + self.absent
            + self.ignored
            + self.failed
        )

    def register(self, outcome: ItemOutcome, *, error: Optional[str] = None) -> None:
        current = getattr(self, outcome.value)
        setattr(self, outcome.value, current + 1)
        if error:
            self.errors.append(error)

    def has_activity(self) -> bool:
        return bool(self.created or self.updated or self.removed or self.errors)
