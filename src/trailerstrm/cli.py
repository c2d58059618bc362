from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.progress import Progress
from rich.table import Table

from .config import AppConfig, load_config
from .jellyfin_client import JellyfinApiError, JellyfinClient
from .library import JellyfinLibrarySource, LibrarySource
from .logging_utils import configure_logging
from .reconciler import TrailerReconciler
from .scheduler import DailyTrigger, ScheduledTaskRunner, TaskInfo
from .trailers import InvalidItemNameError, trailer_file_name, trailers_folder_for
from .version import __version__

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ITEM_ERRORS = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trailerstrm",
        description="Materialize remote trailer URLs as trailers/*-Trailer.strm files next to library items.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", type=Path, default=None, help="Path to the YAML configuration file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Shortcut for --log-level DEBUG")
    parser.add_argument("--log-level", default=None, help="Root log level (default INFO)")
    parser.add_argument("--console-level", default=None, help="Console log level (defaults to --log-level)")
    parser.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file")
    parser.add_argument("--dry-run", action="store_true", help="Log intended changes without touching the filesystem")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("run", help="Reconcile trailer files once and exit")
    subparsers.add_parser("schedule", help="Run the daily reconciliation loop until interrupted")
    subparsers.add_parser("list", help="Show candidate items and their resolved trailer URLs")
    return parser


def _configure_from_args(args: argparse.Namespace) -> None:
    level = "DEBUG" if args.verbose else (args.log_level or "INFO")
    configure_logging(level, console_level=args.console_level, log_file=args.log_file)


def _load_app_config(args: argparse.Namespace) -> AppConfig:
    config = load_config(args.config)
    if args.dry_run:
        config.settings.dry_run = True
    return config


def build_library_source(config: AppConfig) -> LibrarySource:
    settings = config.settings
    client = JellyfinClient(
        settings.server.require_url(),
        settings.server.api_key,
        user_id=settings.server.user_id,
        timeout=settings.server.timeout,
        page_size=settings.server.page_size,
    )
    return JellyfinLibrarySource(client, settings.provider_name, path_mappings=settings.path_mappings)


def _prepare(args: argparse.Namespace) -> tuple[AppConfig, LibrarySource]:
    _configure_from_args(args)
    config = _load_app_config(args)
    return config, build_library_source(config)


@contextmanager
def _stop_on_signals(stop: Callable[[], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``stop`` so runs end at the next item boundary."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handle_signal(signum, _frame) -> None:
        LOGGER.warning("Received %s; stopping after the current item", signal.Signals(signum).name)
        stop()

    previous = {signum: signal.signal(signum, _handle_signal) for signum in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def run_reconcile(args: argparse.Namespace) -> int:
    try:
        config, source = _prepare(args)
    except (ValueError, OSError, JellyfinApiError) as exc:
        LOGGER.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR

    reconciler = TrailerReconciler(config.settings, source)
    cancel = threading.Event()
    try:
        with _stop_on_signals(cancel.set), Progress(disable=not LOGGER.isEnabledFor(logging.INFO)) as progress:
            task_id = progress.add_task("Generating trailers", total=100)
            stats = reconciler.run(
                cancel=cancel,
                progress=lambda value: progress.update(task_id, completed=value),
            )
    except JellyfinApiError:
        return EXIT_CONFIG_ERROR

    if stats.cancelled:
        return EXIT_INTERRUPTED
    return EXIT_ITEM_ERRORS if stats.errors else EXIT_OK


def run_scheduler(args: argparse.Namespace) -> int:
    try:
        config, source = _prepare(args)
    except (ValueError, OSError, JellyfinApiError) as exc:
        LOGGER.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR

    settings = config.settings
    runner = ScheduledTaskRunner(
        TrailerReconciler(settings, source),
        DailyTrigger(settings.schedule.time_of_day),
        TaskInfo.for_provider(settings.provider_name),
    )

    with _stop_on_signals(runner.stop):
        runner.run_forever(run_on_start=settings.schedule.run_on_start)
    LOGGER.info("Scheduler stopped")
    return EXIT_OK


def run_list(args: argparse.Namespace, *, console: Optional[Console] = None) -> int:
    try:
        config, source = _prepare(args)
        items = source.get_candidate_items()
    except (ValueError, OSError, JellyfinApiError) as exc:
        LOGGER.error("Unable to list candidates: %s", exc)
        return EXIT_CONFIG_ERROR

    table = Table(title=f"{config.settings.provider_name} trailer candidates")
    table.add_column("Item")
    table.add_column("Trailer file")
    table.add_column("Trailer URL", overflow="fold")
    for item in items:
        try:
            target = str(trailers_folder_for(item.containing_folder) / trailer_file_name(item.name))
        except InvalidItemNameError:
            target = "(invalid item name)"
        table.add_row(item.name, target, source.resolve_trailer_url(item) or "-")

    (console or Console()).print(table)
    return EXIT_OK


COMMANDS = {
    "run": run_reconcile,
    "schedule": run_scheduler,
    "list": run_list,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return COMMANDS[args.command](args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
