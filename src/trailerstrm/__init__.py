"""Trailer strm generation for Jellyfin/Emby libraries.

- **reconciler**: converges each item's ``trailers`` folder to its remote trailer URL
- **trailers**: the on-disk convention (folder name, file naming, ignore marker, staleness)
- **library**: the ``LibrarySource`` seam and its Jellyfin-backed implementation
- **jellyfin_client**: HTTP access to the server's items API
- **scheduler**: task identity, daily trigger and the long-running runner
- **run_summary**: run recap formatting

The main entry point is the ``TrailerReconciler`` class.
"""

from .models import ItemOutcome, LibraryItem, ReconcileStats
from .reconciler import TrailerReconciler
from .version import __version__

__all__ = [
    "__version__",
    "ItemOutcome",
    "LibraryItem",
    "ReconcileStats",
    "TrailerReconciler",
]
