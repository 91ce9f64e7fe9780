"""Tests for photosift.watcher: snapshots, diffs and the bounded channel."""

from photosift.scanner import is_image_file
from photosift.watcher import diff_snapshots
from photosift.watcher import PollingWatcher
from photosift.watcher import Snapshot
from photosift.watcher import take_snapshot
from photosift.watcher import WatchChannel
from photosift.watcher import WatchEvent
from photosift.watcher import WatchEventType

import asyncio
import pathlib
import pytest
import shutil


def _event(kind: WatchEventType, name: str) -> WatchEvent:
    return WatchEvent(kind, pathlib.Path(name))


class TestWatchChannel:
    """Test the bounded event queue."""

    def test_fifo(self):
        channel = WatchChannel()
        first = _event(WatchEventType.FILE_ADDED, "a.jpg")
        second = _event(WatchEventType.FILE_REMOVED, "b.jpg")
        channel.publish(first)
        channel.publish(second)
        assert len(channel) == 2
        assert channel.drain() == [first, second]
        assert len(channel) == 0

    def test_full_channel_drops_oldest(self):
        channel = WatchChannel(maxsize=2)
        events = [_event(WatchEventType.FILE_ADDED, f"{i}.jpg") for i in range(3)]
        for event in events:
            channel.publish(event)
        assert channel.dropped == 1
        assert channel.drain() == events[1:]

    def test_get_nowait_empty(self):
        assert WatchChannel().get_nowait() is None

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            WatchChannel(maxsize=0)

    @pytest.mark.asyncio
    async def test_get_waits_for_event(self):
        channel = WatchChannel()
        event = _event(WatchEventType.FILE_CHANGED, "a.jpg")
        asyncio.get_running_loop().call_later(0.01, channel.publish, event)
        assert await asyncio.wait_for(channel.get(), timeout=1) == event


class TestTakeSnapshot:
    """Test filesystem snapshots."""

    def test_records_files_and_directories(self, tmp_path: pathlib.Path):
        (tmp_path / "a.jpg").write_bytes(b"abc")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.jpg").write_bytes(b"x")
        snapshot = take_snapshot(tmp_path, depth=3)
        assert set(snapshot.files) == {tmp_path / "a.jpg", tmp_path / "sub" / "b.jpg"}
        assert snapshot.files[tmp_path / "a.jpg"][0] == 3
        assert snapshot.directories == {tmp_path / "sub"}

    def test_skips_dot_entries(self, tmp_path: pathlib.Path):
        (tmp_path / ".hidden.jpg").write_bytes(b"x")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "c.jpg").write_bytes(b"x")
        snapshot = take_snapshot(tmp_path, depth=3)
        assert snapshot.files == {}
        assert snapshot.directories == set()

    def test_depth_limit(self, tmp_path: pathlib.Path):
        deep = tmp_path / "l1" / "l2"
        deep.mkdir(parents=True)
        (tmp_path / "l1" / "one.jpg").write_bytes(b"x")
        (deep / "two.jpg").write_bytes(b"x")
        snapshot = take_snapshot(tmp_path, depth=1)
        assert set(snapshot.files) == {tmp_path / "l1" / "one.jpg"}
        assert deep in snapshot.directories

    def test_missing_root_raises(self, tmp_path: pathlib.Path):
        with pytest.raises(FileNotFoundError):
            take_snapshot(tmp_path / "missing", depth=3)


class TestDiffSnapshots:
    """Test translating snapshot differences into events."""

    def test_all_change_kinds_in_order(self):
        old = Snapshot(
            files={pathlib.Path("keep.jpg"): (1, 1), pathlib.Path("edit.jpg"): (1, 1),
                   pathlib.Path("gone.jpg"): (1, 1)},
            directories={pathlib.Path("olddir")},
        )
        new = Snapshot(
            files={pathlib.Path("keep.jpg"): (1, 1), pathlib.Path("edit.jpg"): (2, 5),
                   pathlib.Path("new.jpg"): (1, 1)},
            directories={pathlib.Path("newdir")},
        )
        events = diff_snapshots(old, new)
        assert [(e.type, str(e.path)) for e in events] == [
            (WatchEventType.DIRECTORY_ADDED, "newdir"),
            (WatchEventType.FILE_ADDED, "new.jpg"),
            (WatchEventType.FILE_CHANGED, "edit.jpg"),
            (WatchEventType.FILE_REMOVED, "gone.jpg"),
            (WatchEventType.DIRECTORY_REMOVED, "olddir"),
        ]

    def test_identical_snapshots(self):
        snapshot = Snapshot(files={pathlib.Path("a.jpg"): (1, 1)})
        assert diff_snapshots(snapshot, snapshot) == []

    def test_relevance_filter_applies_to_files_only(self):
        old = Snapshot()
        new = Snapshot(
            files={pathlib.Path("a.jpg"): (1, 1), pathlib.Path("b.txt"): (1, 1)},
            directories={pathlib.Path("d")},
        )
        events = diff_snapshots(old, new, is_image_file)
        assert [str(e.path) for e in events] == ["d", "a.jpg"]


class TestPollingWatcher:
    """Test the polling loop against a real directory."""

    @pytest.mark.asyncio
    async def test_reports_changes(self, tmp_path: pathlib.Path):
        channel = WatchChannel()
        watcher = PollingWatcher(tmp_path, channel, interval=60, is_relevant=is_image_file)
        target = tmp_path / "a.jpg"
        await watcher.start()
        try:
            assert watcher.running is True
            assert await watcher.poll_once() == []

            target.write_bytes(b"one")
            assert [e.type for e in await watcher.poll_once()] == [WatchEventType.FILE_ADDED]

            target.write_bytes(b"longer content")
            assert [e.type for e in await watcher.poll_once()] == [WatchEventType.FILE_CHANGED]

            target.unlink()
            assert [e.type for e in await watcher.poll_once()] == [WatchEventType.FILE_REMOVED]
        finally:
            await watcher.stop()
        assert watcher.running is False
        assert [e.type for e in channel.drain()] == [
            WatchEventType.FILE_ADDED,
            WatchEventType.FILE_CHANGED,
            WatchEventType.FILE_REMOVED,
        ]

    @pytest.mark.asyncio
    async def test_directory_events(self, tmp_path: pathlib.Path):
        watcher = PollingWatcher(tmp_path, WatchChannel(), interval=60)
        await watcher.start()
        try:
            (tmp_path / "album").mkdir()
            assert [e.type for e in await watcher.poll_once()] == [WatchEventType.DIRECTORY_ADDED]
            (tmp_path / "album").rmdir()
            assert [e.type for e in await watcher.poll_once()] == [WatchEventType.DIRECTORY_REMOVED]
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_vanished_root_reports_error(self, tmp_path: pathlib.Path):
        root = tmp_path / "root"
        root.mkdir()
        channel = WatchChannel()
        watcher = PollingWatcher(root, channel, interval=60)
        await watcher.start()
        try:
            shutil.rmtree(root)
            events = await watcher.poll_once()
        finally:
            await watcher.stop()
        assert len(events) == 1
        assert events[0].type is WatchEventType.WATCHER_ERROR
        assert events[0].error
        assert channel.drain() == events

    @pytest.mark.asyncio
    async def test_vanished_root_reported_once(self, tmp_path: pathlib.Path):
        root = tmp_path / "root"
        root.mkdir()
        channel = WatchChannel()
        watcher = PollingWatcher(root, channel, interval=60)
        await watcher.start()
        try:
            shutil.rmtree(root)
            first = await watcher.poll_once()
            assert await watcher.poll_once() == []
            assert await watcher.poll_once() == []
            assert [e.type for e in channel.drain()] == [WatchEventType.WATCHER_ERROR]

            root.mkdir()
            await watcher.poll_once()
            shutil.rmtree(root)
            again = await watcher.poll_once()
        finally:
            await watcher.stop()
        assert [e.type for e in first] == [WatchEventType.WATCHER_ERROR]
        assert [e.type for e in again] == [WatchEventType.WATCHER_ERROR]

    @pytest.mark.asyncio
    async def test_background_loop_publishes(self, tmp_path: pathlib.Path):
        channel = WatchChannel()
        watcher = PollingWatcher(tmp_path, channel, interval=0.01)
        await watcher.start()
        try:
            (tmp_path / "a.jpg").write_bytes(b"x")
            event = await asyncio.wait_for(channel.get(), timeout=5)
        finally:
            await watcher.stop()
        assert event.type is WatchEventType.FILE_ADDED

    @pytest.mark.asyncio
    async def test_stop_without_start(self, tmp_path: pathlib.Path):
        watcher = PollingWatcher(tmp_path, WatchChannel())
        await watcher.stop()
        assert watcher.running is False
