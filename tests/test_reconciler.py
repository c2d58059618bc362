from __future__ import annotations

import datetime as dt
import os
import threading
from pathlib import Path

import pytest

from trailerstrm.config import Settings
from trailerstrm.library import StaticLibrarySource
from trailerstrm.models import ItemOutcome, LibraryItem
from trailerstrm.reconciler import TrailerReconciler

UTC = dt.timezone.utc
SAVED_2024 = dt.datetime(2024, 1, 1, tzinfo=UTC)


def _item(root: Path, name: str, *, url: str | None = None, saved: dt.datetime = SAVED_2024) -> LibraryItem:
    folder = root / name.replace(" ", "_")
    folder.mkdir(parents=True, exist_ok=True)
    return LibraryItem(
        item_id=name,
        name=name,
        containing_folder=folder,
        date_last_saved=saved,
        provider_ids={"MetaTube": ""},
        remote_trailers=(url,) if url else (),
    )


def _set_mtime(path: Path, when: dt.datetime) -> None:
    stamp = when.timestamp()
    os.utime(path, (stamp, stamp))


def _reconciler(items, **settings) -> TrailerReconciler:
    return TrailerReconciler(Settings(**settings), StaticLibrarySource(items))


def _snapshot(root: Path) -> dict[str, tuple[bytes, int]]:
    return {
        str(path.relative_to(root)): (path.read_bytes(), path.stat().st_mtime_ns)
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


class TestCreate:
    def test_writes_first_token_strm_with_exact_url(self, tmp_path) -> None:
        item = _item(tmp_path, "Inception Director's Cut", url="https://example.com/t.mp4")

        stats = _reconciler([item]).run()

        trailer = item.containing_folder / "trailers" / "Inception-Trailer.strm"
        assert trailer.read_bytes() == b"https://example.com/t.mp4"
        assert stats.created == 1
        assert stats.errors == []

    def test_single_word_name_uses_whole_name(self, tmp_path) -> None:
        item = _item(tmp_path, "Heat", url="https://example.com/heat.mp4")

        _reconciler([item]).run()

        assert (item.containing_folder / "trailers" / "Heat-Trailer.strm").exists()

    def test_content_has_no_bom(self, tmp_path) -> None:
        item = _item(tmp_path, "Amélie Poulain", url="https://example.com/amélie.mp4")

        _reconciler([item]).run()

        data = (item.containing_folder / "trailers" / "Amélie-Trailer.strm").read_bytes()
        assert not data.startswith(b"\xef\xbb\xbf")
        assert data.decode("utf-8") == "https://example.com/amélie.mp4"

    def test_exactly_one_artifact_per_item(self, tmp_path) -> None:
        item = _item(tmp_path, "Inception", url="https://example.com/t.mp4")

        _reconciler([item]).run()

        files = list((item.containing_folder / "trailers").iterdir())
        assert [path.name for path in files] == ["Inception-Trailer.strm"]


class TestStaleness:
    def test_rewrites_artifact_older_than_last_saved(self, tmp_path) -> None:
        item = _item(tmp_path, "Inception", url="https://example.com/new.mp4")
        trailer = item.containing_folder / "trailers" / "Inception-Trailer.strm"
        trailer.parent.mkdir()
        trailer.write_text("https://example.com/old.mp4", encoding="utf-8")
        _set_mtime(trailer, dt.datetime(2020, 1, 1, tzinfo=UTC))

        stats = _reconciler([item]).run()

        assert trailer.read_text(encoding="utf-8") == "https://example.com/new.mp4"
        assert stats.updated == 1

    def test_keeps_artifact_newer_than_last_saved(self, tmp_path) -> None:
        item = _item(tmp_path, "Inception", url="https://example.com/new.mp4")
        trailer = item.containing_folder / "trailers" / "Inception-Trailer.strm"
        trailer.parent.mkdir()
        trailer.write_text("https://example.com/old.mp4", encoding="utf-8")
        _set_mtime(trailer, dt.datetime(2025, 1, 1, tzinfo=UTC))
        before = trailer.stat().st_mtime_ns

        stats = _reconciler([item]).run()

        assert trailer.read_text(encoding="utf-8") == "https://example.com/old.mp4"
        assert trailer.stat().st_mtime_ns == before
        assert stats.unchanged == 1

    def test_equal_timestamps_are_not_stale(self, tmp_path) -> None:
        item = _item(tmp_path, "Inception", url="https://example.com/new.mp4")
        trailer = item.containing_folder / "trailers" / "Inception-Trailer.strm"
        trailer.parent.mkdir()
        trailer.write_text("old", encoding="utf-8")
        _set_mtime(trailer, SAVED_2024)

        stats = _reconciler([item]).run()

        assert trailer.read_text(encoding="utf-8") == "old"
        assert stats.unchanged == 1

    def test_idempotent_second_run(self, tmp_path) -> None:
        items = [
            _item(tmp_path, "Inception", url="https://example.com/a.mp4"),
            _item(tmp_path, "Heat", url="https://example.com/b.mp4"),
            _item(tmp_path, "Alien"),
        ]
        reconciler = _reconciler(items)
        reconciler.run()
        first = _snapshot(tmp_path)

        stats = reconciler.run()

        assert _snapshot(tmp_path) == first
        assert stats.created == stats.updated == stats.removed == 0
        assert stats.written_paths == []


class TestPrune:
    def test_removes_trailers_and_empty_folder(self, tmp_path) -> None:
        item = _item(tmp_path, "Inception")
        folder = item.containing_folder / "trailers"
        folder.mkdir()
        (folder / "Inception-Trailer.strm").write_text("https://old", encoding="utf-8")
        (folder / "Other-Trailer.strm").write_text("https://older", encoding="utf-8")

        stats = _reconciler([item]).run()

        assert not folder.exists()
        assert stats.removed == 1
        assert len(stats.removed_paths) == 2

    def test_keeps_folder_with_unrelated_files(self, tmp_path) -> None:
        item = _item(tmp_path, "Inception")
        folder = item.containing_folder / "trailers"
        folder.mkdir()
        (folder / "Inception-Trailer.strm").write_text("https://old", encoding="utf-8")
        (folder / "making-of.mkv").write_bytes(b"video")

        stats = _reconciler([item]).run()

        assert folder.is_dir()
        assert [path.name for path in folder.iterdir()] == ["making-of.mkv"]
        assert stats.errors == []

    def test_whitespace_url_counts_as_missing(self, tmp_path) -> None:
        item = _item(tmp_path, "Inception", url="   ")
        folder = item.containing_folder / "trailers"
        folder.mkdir()
        (folder / "Inception-Trailer.strm").write_text("https://old", encoding="utf-8")

        _reconciler([item]).run()

        assert not folder.exists()

    def test_no_folder_no_url_is_absent(self, tmp_path) -> None:
        item = _item(tmp_path, "Inception")

        stats = _reconciler([item]).run()

        assert stats.absent == 1
        assert not (item.containing_folder / "trailers").exists()


class TestIgnoreMarker:
    def test_ignore_marker_blocks_deletion(self, tmp_path) -> None:
        item = _item(tmp_path, "Inception")
        folder = item.containing_folder / "trailers"
        folder.mkdir()
        (folder / ".ignore").touch()
        (folder / "Inception-Trailer.strm").write_text("https://custom", encoding="utf-8")
        before = _snapshot(tmp_path)

        stats = _reconciler([item]).run()

        assert _snapshot(tmp_path) == before
        assert stats.ignored == 1

    def test_ignore_marker_blocks_writes(self, tmp_path) -> None:
        item = _item(tmp_path, "Inception", url="https://example.com/t.mp4")
        folder = item.containing_folder / "trailers"
        folder.mkdir()
        (folder / ".ignore").touch()

        _reconciler([item]).run()

        assert [path.name for path in folder.iterdir()] == [".ignore"]


class TestRunControl:
    def test_disabled_flag_is_noop(self, tmp_path) -> None:
        item = _item(tmp_path, "Inception", url="https://example.com/t.mp4")
        reported: list[float] = []

        stats = _reconciler([item], enable_trailers=False).run(progress=reported.append)

        assert stats.disabled is True
        assert reported == [0.0]
        assert not (item.containing_folder / "trailers").exists()

    def test_disabled_flag_skips_candidate_query(self) -> None:
        class ExplodingSource(StaticLibrarySource):
            def get_candidate_items(self):
                raise AssertionError("should not be queried")

        reconciler = TrailerReconciler(Settings(enable_trailers=False), ExplodingSource([]))

        assert reconciler.run().disabled is True

    def test_progress_reports_each_item_then_completion(self, tmp_path) -> None:
        items = [_item(tmp_path, f"Movie{i}") for i in range(4)]
        reported: list[float] = []

        _reconciler(items).run(progress=reported.append)

        assert reported == [0.0, 25.0, 50.0, 75.0, 100.0]

    def test_empty_library_reports_start_and_end(self) -> None:
        reported: list[float] = []

        stats = _reconciler([]).run(progress=reported.append)

        assert reported == [0.0, 100.0]
        assert stats.total == 0

    def test_cancellation_after_item_k(self, tmp_path) -> None:
        cancel = threading.Event()
        items = [_item(tmp_path, f"Movie{i}", url=f"https://example.com/{i}.mp4") for i in range(5)]

        class CancellingSource(StaticLibrarySource):
            calls = 0

            def resolve_trailer_url(self, item):
                CancellingSource.calls += 1
                if CancellingSource.calls == 2:
                    cancel.set()
                return super().resolve_trailer_url(item)

        reported: list[float] = []
        reconciler = TrailerReconciler(Settings(), CancellingSource(items))
        stats = reconciler.run(cancel=cancel, progress=reported.append)

        assert stats.cancelled is True
        assert stats.created == 2
        for index, item in enumerate(items):
            trailer = item.containing_folder / "trailers" / f"Movie{index}-Trailer.strm"
            assert trailer.exists() is (index < 2)
        assert 100.0 not in reported

    def test_cancel_before_start_touches_nothing(self, tmp_path) -> None:
        cancel = threading.Event()
        cancel.set()
        item = _item(tmp_path, "Inception", url="https://example.com/t.mp4")

        stats = _reconciler([item]).run(cancel=cancel)

        assert stats.cancelled is True
        assert stats.visited == 0
        assert not (item.containing_folder / "trailers").exists()


class TestFailures:
    def test_empty_name_is_per_item_error(self, tmp_path) -> None:
        bad = _item(tmp_path, "   ", url="https://example.com/bad.mp4")
        good = _item(tmp_path, "Heat", url="https://example.com/heat.mp4")

        stats = _reconciler([bad, good]).run()

        assert stats.failed == 1
        assert stats.created == 1
        assert len(stats.errors) == 1
        assert not (bad.containing_folder / "trailers").exists()
        assert (good.containing_folder / "trailers" / "Heat-Trailer.strm").exists()

    def test_resolver_error_does_not_abort_run(self, tmp_path) -> None:
        items = [
            _item(tmp_path, "Broken", url="https://example.com/x.mp4"),
            _item(tmp_path, "Heat", url="https://example.com/heat.mp4"),
        ]

        class FlakySource(StaticLibrarySource):
            def resolve_trailer_url(self, item):
                if item.name == "Broken":
                    raise RuntimeError("provider lookup failed")
                return super().resolve_trailer_url(item)

        stats = TrailerReconciler(Settings(), FlakySource(items)).run()

        assert stats.failed == 1
        assert "provider lookup failed" in stats.errors[0]
        assert stats.created == 1

    def test_failed_write_is_repaired_by_next_run(self, tmp_path, monkeypatch) -> None:
        item = _item(tmp_path, "Inception", url="https://example.com/t.mp4")
        target = item.containing_folder / "trailers" / "Inception-Trailer.strm"

        def _disk_full(src, dst):
            raise OSError(28, "No space left on device")

        with monkeypatch.context() as patched:
            patched.setattr("trailerstrm.trailers.os.replace", _disk_full)
            first = _reconciler([item]).run()

        assert first.failed == 1
        assert not target.exists()

        second = _reconciler([item]).run()

        assert second.created == 1
        assert target.read_bytes() == b"https://example.com/t.mp4"
        assert [path.name for path in target.parent.iterdir()] == ["Inception-Trailer.strm"]

    def test_candidate_query_failure_propagates(self) -> None:
        class DownSource(StaticLibrarySource):
            def get_candidate_items(self):
                raise ConnectionError("server unreachable")

        with pytest.raises(ConnectionError):
            TrailerReconciler(Settings(), DownSource([])).run()


class TestDryRun:
    def test_dry_run_writes_nothing(self, tmp_path) -> None:
        item = _item(tmp_path, "Inception", url="https://example.com/t.mp4")

        stats = _reconciler([item], dry_run=True).run()

        assert stats.created == 1
        assert stats.dry_run is True
        assert not (item.containing_folder / "trailers").exists()

    def test_dry_run_deletes_nothing(self, tmp_path) -> None:
        item = _item(tmp_path, "Inception")
        folder = item.containing_folder / "trailers"
        folder.mkdir()
        (folder / "Inception-Trailer.strm").write_text("https://old", encoding="utf-8")

        stats = _reconciler([item], dry_run=True).run()

        assert stats.removed == 1
        assert (folder / "Inception-Trailer.strm").exists()

    @pytest.mark.parametrize(
        "contents",
        [(), ("Heat-Trailer.strm",), ("Heat-Trailer.strm", "poster.jpg"), ("poster.jpg",)],
    )
    def test_dry_run_predicts_real_outcome(self, tmp_path, contents) -> None:
        def _build(root: Path) -> LibraryItem:
            item = _item(root, "Heat")
            folder = item.containing_folder / "trailers"
            folder.mkdir()
            for name in contents:
                (folder / name).write_text("x", encoding="utf-8")
            return item

        dry_item = _build(tmp_path / "dry")
        real_item = _build(tmp_path / "real")

        dry = _reconciler([dry_item], dry_run=True).run()
        real = _reconciler([real_item]).run()

        assert (dry.removed, dry.absent) == (real.removed, real.absent)
        assert dry.removed_paths == [
            dry_item.containing_folder / "trailers" / path.name for path in real.removed_paths
        ]
        assert (dry_item.containing_folder / "trailers").is_dir()


def test_reconcile_accepts_explicit_items(tmp_path) -> None:
    item = _item(tmp_path, "Inception", url="https://example.com/t.mp4")
    reconciler = TrailerReconciler(Settings(), StaticLibrarySource([]))

    stats = reconciler.reconcile([item])

    assert stats.created == 1
    assert stats.total == 1
    assert ItemOutcome.CREATED.value == "created"
