"""Tests for photosift.library: the assembled duplicate-detection core."""

from photosift.db import LibraryDB
from photosift.errors import InvalidArgumentError
from photosift.errors import ScanInProgressError
from photosift.library import Library
from photosift.library import ScanLock
from photosift.scanner import DirectoryScanner
from photosift.trash import DeletionCoordinator
from photosift.watcher import WatchEvent
from photosift.watcher import WatchEventType

import asyncio
import logging
import pathlib
import pytest


@pytest.fixture
def library(db: LibraryDB, scanner: DirectoryScanner, fake_trash) -> Library:
    return Library(db, scanner, coordinator=DeletionCoordinator(fake_trash))


def _write(path: pathlib.Path, content: bytes) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


class TestScanLock:
    """Test the per-root scan guard."""

    def test_second_hold_rejected(self, tmp_root: pathlib.Path):
        lock = ScanLock()
        with lock.hold(tmp_root):
            assert lock.is_held(tmp_root)
            with pytest.raises(ScanInProgressError):
                with lock.hold(tmp_root / "."):
                    pass
        assert not lock.is_held(tmp_root)

    def test_different_roots_independent(self, tmp_path: pathlib.Path):
        lock = ScanLock()
        with lock.hold(tmp_path / "a"):
            with lock.hold(tmp_path / "b"):
                assert lock.is_held(tmp_path / "a") and lock.is_held(tmp_path / "b")

    def test_released_after_error(self, tmp_root: pathlib.Path):
        lock = ScanLock()
        with pytest.raises(RuntimeError):
            with lock.hold(tmp_root):
                raise RuntimeError("boom")
        assert not lock.is_held(tmp_root)


class TestIndexFile:
    """Test incremental indexing of single files."""

    @pytest.mark.asyncio
    async def test_identical_files_grouped(self, library: Library, tmp_root: pathlib.Path):
        a = _write(tmp_root / "a.jpg", b"same bytes")
        b = _write(tmp_root / "b.jpg", b"same bytes")
        first = await library.index_file(a)
        assert library.grouper.get_group_for_image(first.id) is None
        second = await library.index_file(b)
        group = library.grouper.get_group_for_image(second.id)
        assert group.count == 2
        assert group.hash == first.hash == second.hash

    @pytest.mark.asyncio
    async def test_edited_file_leaves_group(self, library: Library, tmp_root: pathlib.Path):
        a = _write(tmp_root / "a.jpg", b"same bytes")
        b = _write(tmp_root / "b.jpg", b"same bytes")
        await library.index_file(a)
        record = await library.index_file(b)
        b.write_bytes(b"edited")
        updated = await library.index_file(b)
        assert updated.id == record.id
        assert library.grouper.list_groups() == []

    @pytest.mark.asyncio
    async def test_missing_file_raises(self, library: Library, tmp_root: pathlib.Path):
        with pytest.raises(FileNotFoundError):
            await library.index_file(tmp_root / "missing.jpg")
        assert library.db.count_images() == 0

    @pytest.mark.asyncio
    async def test_forget_file(self, library: Library, tmp_root: pathlib.Path):
        a = _write(tmp_root / "a.jpg", b"same")
        b = _write(tmp_root / "b.jpg", b"same")
        await library.index_file(a)
        await library.index_file(b)
        assert library.forget_file(a) is True
        assert library.forget_file(a) is False
        assert library.db.count_images() == 1
        assert library.grouper.list_groups() == []


class TestHandleEvent:
    """Test applying watch events."""

    @pytest.mark.asyncio
    async def test_added_and_removed(self, library: Library, tmp_root: pathlib.Path):
        a = _write(tmp_root / "a.jpg", b"dup")
        b = _write(tmp_root / "b.jpg", b"dup")
        await library.handle_event(WatchEvent(WatchEventType.FILE_ADDED, a))
        await library.handle_event(WatchEvent(WatchEventType.FILE_ADDED, b))
        assert library.grouper.get_stats().total_groups == 1

        b.unlink()
        await library.handle_event(WatchEvent(WatchEventType.FILE_REMOVED, b))
        assert library.db.get_image_by_path(str(b)) is None
        assert library.grouper.get_stats().total_groups == 0

    @pytest.mark.asyncio
    async def test_changed_but_vanished_file_forgotten(self, library: Library, tmp_root: pathlib.Path):
        a = _write(tmp_root / "a.jpg", b"content")
        await library.index_file(a)
        a.unlink()
        await library.handle_event(WatchEvent(WatchEventType.FILE_CHANGED, a))
        assert library.db.count_images() == 0

    @pytest.mark.asyncio
    async def test_directory_removed(self, library: Library, tmp_root: pathlib.Path):
        album = tmp_root / "album"
        for name in ("x.jpg", "y.jpg"):
            await library.index_file(_write(album / name, name.encode()))
        keep = await library.index_file(_write(tmp_root / "keep.jpg", b"keep"))
        await library.handle_event(WatchEvent(WatchEventType.DIRECTORY_REMOVED, album))
        assert [r.id for r in library.db.list_images()] == [keep.id]

    @pytest.mark.asyncio
    async def test_watcher_error_logged(self, library: Library, tmp_root: pathlib.Path, caplog):
        with caplog.at_level(logging.WARNING, logger="photosift"):
            await library.handle_event(WatchEvent(WatchEventType.WATCHER_ERROR, tmp_root, error="gone"))
        assert "Watcher error" in caplog.text
        assert "gone" in caplog.text

    @pytest.mark.asyncio
    async def test_process_pending_events(self, library: Library, tmp_root: pathlib.Path):
        a = _write(tmp_root / "a.jpg", b"dup")
        b = _write(tmp_root / "b.jpg", b"dup")
        library.scanner.events.publish(WatchEvent(WatchEventType.FILE_ADDED, a))
        library.scanner.events.publish(WatchEvent(WatchEventType.FILE_ADDED, b))
        assert await library.process_pending_events() == 2
        assert library.db.count_images() == 2
        assert await library.process_pending_events() == 0

    @pytest.mark.asyncio
    async def test_follow_until_stopped(self, library: Library, tmp_root: pathlib.Path):
        a = _write(tmp_root / "a.jpg", b"one")
        library.scanner.events.publish(WatchEvent(WatchEventType.FILE_ADDED, a))
        library.scanner.events.publish(WatchEvent(WatchEventType.DIRECTORY_ADDED, tmp_root / "new"))
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.1, stop.set)
        handled = await library.follow(stop, poll_timeout=0.01)
        assert handled == 2
        assert library.db.count_images() == 1

    @pytest.mark.asyncio
    async def test_watch_to_library_round_trip(self, db: LibraryDB, prefs, tmp_root: pathlib.Path):
        scanner = DirectoryScanner(prefs, watch_interval=60)
        library = Library(db, scanner)
        try:
            await scanner.set_root(tmp_root)
            _write(tmp_root / "a.jpg", b"dup")
            _write(tmp_root / "sub" / "b.jpg", b"dup")
            await scanner.poll()
            await library.process_pending_events()
        finally:
            await scanner.close()
        assert library.grouper.get_stats().total_groups == 1


class TestFindDuplicatesIn:
    """Test directory-level two-phase duplicate scans."""

    @pytest.mark.asyncio
    async def test_three_file_scenario(self, library: Library, tmp_root: pathlib.Path):
        a = _write(tmp_root / "A.jpg", b"identical")
        b = _write(tmp_root / "B.jpg", b"identical")
        _write(tmp_root / "C.jpg", b"different content")
        scan = await library.find_duplicates_in(tmp_root).run()
        assert len(scan.files) == 3
        assert len(scan.groups) == 1
        assert set(scan.groups[0].files) == {a, b}
        assert scan.space.total_wasted_bytes == len(b"identical")
        assert scan.finished is True

    @pytest.mark.asyncio
    async def test_defaults_to_root(self, library: Library, tmp_root: pathlib.Path):
        _write(tmp_root / "a.jpg", b"x")
        await library.scanner.set_root(tmp_root)
        scan = await library.find_duplicates_in().run()
        assert len(scan.files) == 1

    def test_without_root_rejected(self, library: Library):
        with pytest.raises(InvalidArgumentError):
            library.find_duplicates_in()

    @pytest.mark.asyncio
    async def test_concurrent_scan_of_same_root_rejected(self, library: Library, tmp_root: pathlib.Path):
        _write(tmp_root / "a.jpg", b"dup")
        _write(tmp_root / "b.jpg", b"dup")
        first = library.find_duplicates_in(tmp_root)
        steps = first.__aiter__()
        await steps.__anext__()
        assert library.scan_lock.is_held(tmp_root)
        with pytest.raises(ScanInProgressError):
            await library.find_duplicates_in(tmp_root).run()
        async for _ in steps:
            pass
        assert first.finished is True
        assert not library.scan_lock.is_held(tmp_root)

    @pytest.mark.asyncio
    async def test_rescan_right_after_leaving_early(self, library: Library, tmp_root: pathlib.Path):
        _write(tmp_root / "a.jpg", b"dup")
        _write(tmp_root / "b.jpg", b"dup")
        async with library.find_duplicates_in(tmp_root) as first:
            async for progress in first:
                assert progress.completed == 1
                break
        assert first.finished is False
        assert not library.scan_lock.is_held(tmp_root)
        scan = await library.find_duplicates_in(tmp_root).run()
        assert len(scan.groups) == 1

    @pytest.mark.asyncio
    async def test_aclose_releases_lock(self, library: Library, tmp_root: pathlib.Path):
        _write(tmp_root / "a.jpg", b"dup")
        first = library.find_duplicates_in(tmp_root)
        async for _ in first:
            break
        assert library.scan_lock.is_held(tmp_root)
        await first.aclose()
        assert not library.scan_lock.is_held(tmp_root)


class TestIndexDirectory:
    """Test full indexing runs."""

    @pytest.mark.asyncio
    async def test_indexes_images_and_groups(self, library: Library, tmp_root: pathlib.Path):
        _write(tmp_root / "a.jpg", b"dup")
        _write(tmp_root / "sub" / "b.png", b"dup")
        _write(tmp_root / "notes.txt", b"dup")
        run = await library.index_directory(tmp_root).run()
        assert len(run.indexed) == 2
        assert run.groups_created == 1
        assert library.db.count_images() == 2

    @pytest.mark.asyncio
    async def test_prunes_missing_files(self, library: Library, tmp_root: pathlib.Path):
        a = _write(tmp_root / "a.jpg", b"dup")
        _write(tmp_root / "b.jpg", b"dup")
        await library.index_directory(tmp_root).run()
        a.unlink()
        run = await library.index_directory(tmp_root).run()
        assert run.pruned == [str(a)]
        assert run.groups_created == 0
        assert library.grouper.inconsistent_groups() == []

    @pytest.mark.asyncio
    async def test_index_again_after_leaving_early(self, library: Library, tmp_root: pathlib.Path):
        _write(tmp_root / "a.jpg", b"dup")
        _write(tmp_root / "b.jpg", b"dup")
        async with library.index_directory(tmp_root) as first:
            async for _ in first:
                break
        assert len(first.indexed) == 1
        run = await library.index_directory(tmp_root).run()
        assert len(run.indexed) == 2
        assert run.groups_created == 1

    @pytest.mark.asyncio
    async def test_progress_phase(self, library: Library, tmp_root: pathlib.Path):
        _write(tmp_root / "a.jpg", b"1")
        _write(tmp_root / "b.jpg", b"2")
        seen = []
        await library.index_directory(tmp_root).run(seen.append)
        assert [(p.phase, p.completed, p.total) for p in seen] == [("index", 1, 2), ("index", 2, 2)]


class TestTrashing:
    """Test trashing through the library."""

    @pytest.mark.asyncio
    async def test_trash_group_keep_one(self, library: Library, fake_trash, tmp_root: pathlib.Path):
        a = _write(tmp_root / "a.jpg", b"dup")
        b = _write(tmp_root / "b.jpg", b"dup")
        c = _write(tmp_root / "c.jpg", b"dup")
        await library.index_directory(tmp_root).run()
        group = library.grouper.list_groups()[0]
        batch = await library.trash_group_keep_one(group.id, keep_index=2).run()
        assert batch.outcome.successful == [a, b]
        assert c.exists()
        assert library.grouper.list_groups() == []
        assert [r.path for r in library.db.list_images()] == [str(c)]

    def test_unknown_group(self, library: Library):
        with pytest.raises(InvalidArgumentError):
            library.trash_group_keep_one(12345)

    @pytest.mark.asyncio
    async def test_invalid_keep_index(self, library: Library, fake_trash, tmp_root: pathlib.Path):
        _write(tmp_root / "a.jpg", b"dup")
        _write(tmp_root / "b.jpg", b"dup")
        await library.index_directory(tmp_root).run()
        group = library.grouper.list_groups()[0]
        with pytest.raises(InvalidArgumentError):
            library.trash_group_keep_one(group.id, keep_index=5)
        assert fake_trash.calls == []

    @pytest.mark.asyncio
    async def test_trash_files_forgets_records(self, library: Library, fake_trash, tmp_root: pathlib.Path):
        a = _write(tmp_root / "a.jpg", b"dup")
        b = _write(tmp_root / "b.jpg", b"dup")
        await library.index_directory(tmp_root).run()
        fake_trash.fail_for[str(b)] = PermissionError("locked")
        batch = await library.trash_files([a, b]).run()
        assert batch.outcome.successful == [a]
        assert library.db.get_image_by_path(str(a)) is None
        assert library.db.get_image_by_path(str(b)) is not None


class TestOpen:
    """Test assembling a library from a database path."""

    @pytest.mark.asyncio
    async def test_open_and_close(self, tmp_path: pathlib.Path, tmp_root: pathlib.Path):
        library = Library.open(tmp_path / "lib.db", preference_defaults={"watch_enabled": False})
        try:
            assert await library.scanner.set_root(tmp_root) is True
            assert library.scanner.is_watching is False
        finally:
            await library.close()
        reopened = Library.open(tmp_path / "lib.db")
        try:
            assert reopened.scanner.root == tmp_root.resolve()
        finally:
            await reopened.close()
