from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .logging_utils import render_fields_block
from .models import ReconcileStats
from .reconciler import ProgressCallback, TrailerReconciler

LOGGER = logging.getLogger(__name__)

TASK_NAME = "Generate Trailers"


@dataclass(frozen=True)
class TaskInfo:
    key: str
    name: str
    description: str
    category: str

    @classmethod
    def for_provider(cls, provider_name: str) -> TaskInfo:
        return cls(
            key=f"{provider_name}GenerateTrailers",
            name=TASK_NAME,
            description=f"Generates video trailers provided by {provider_name} in library.",
            category=provider_name,
        )


@dataclass(frozen=True)
class DailyTrigger:
    time_of_day: dt.time = dt.time(hour=1)

    def next_run(self, now: dt.datetime) -> dt.datetime:
        """Return the first trigger instant strictly after ``now``."""
        candidate = dt.datetime.combine(now.date(), self.time_of_day, tzinfo=now.tzinfo)
        if candidate <= now:
            candidate = dt.datetime.combine(now.date() + dt.timedelta(days=1), self.time_of_day, tzinfo=now.tzinfo)
        return candidate


class ScheduledTaskRunner:
    """Runs the reconciler once a day until stopped.

    Only one run is active at a time; stopping the runner also cancels an
    in-flight run at its next item boundary.
    """

    def __init__(
        self,
        reconciler: TrailerReconciler,
        trigger: DailyTrigger,
        task_info: TaskInfo,
        *,
        clock: Callable[[], dt.datetime] = dt.datetime.now,
    ) -> None:
        self._reconciler = reconciler
        self._trigger = trigger
        self.task_info = task_info
        self._clock = clock
        self._stop_event = threading.Event()
        self._run_lock = threading.Lock()
        self.last_stats: Optional[ReconcileStats] = None

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def stop(self) -> None:
        self._stop_event.set()

    def run_once(self, progress: Optional[ProgressCallback] = None) -> Optional[ReconcileStats]:
        if not self._run_lock.acquire(blocking=False):
            LOGGER.warning(
                render_fields_block(
                    "Task Already Running",
                    {"Task": self.task_info.name, "Key": self.task_info.key},
                )
            )
            return None

        try:
            LOGGER.info(
                render_fields_block(
                    "Task Started",
                    {"Task": self.task_info.name, "Category": self.task_info.category},
                    pad_top=False,
                )
            )
            stats = self._reconciler.run(cancel=self._stop_event, progress=progress)
        except Exception as exc:  # noqa: BLE001 - the next scheduled run is the retry
            LOGGER.error(
                render_fields_block(
                    "Task Failed",
                    {"Task": self.task_info.name, "Error": exc},
                ),
                exc_info=LOGGER.isEnabledFor(logging.DEBUG),
            )
            return None
        finally:
            self._run_lock.release()

        self.last_stats = stats
        return stats

    def run_forever(self, *, run_on_start: bool = False) -> None:
        if run_on_start and not self._stop_event.is_set():
            self.run_once()

        while not self._stop_event.is_set():
            now = self._clock()
            next_run = self._trigger.next_run(now)
            LOGGER.info(
                render_fields_block(
                    "Next Scheduled Run",
                    {"Task": self.task_info.name, "At": next_run.isoformat(timespec="seconds")},
                    pad_top=False,
                )
            )
            if self._stop_event.wait(timeout=max((next_run - now).total_seconds(), 0.0)):
                break
            self.run_once()

        LOGGER.info("Scheduler stopped")
