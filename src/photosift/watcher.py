"""Polling filesystem watcher publishing typed events into a bounded channel."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field

import asyncio
import enum
import logging
import os
import pathlib


logger = logging.getLogger(__name__)

DEFAULT_WATCH_DEPTH = 3
DEFAULT_INTERVAL = 1.0
DEFAULT_MAXSIZE = 1024


class WatchEventType(enum.Enum):
    """Kind of change observed under the watched root."""

    FILE_ADDED = "fileAdded"
    FILE_REMOVED = "fileRemoved"
    FILE_CHANGED = "fileChanged"
    DIRECTORY_ADDED = "directoryAdded"
    DIRECTORY_REMOVED = "directoryRemoved"
    WATCHER_ERROR = "watcherError"


@dataclass(frozen=True)
class WatchEvent:
    type: WatchEventType
    path: pathlib.Path
    error: str | None = None


class WatchChannel:
    """Bounded FIFO of watch events.

    When the channel is full the oldest event is discarded to make room,
    and :attr:`dropped` counts how many were lost.
    """

    def __init__(self, maxsize: int = DEFAULT_MAXSIZE) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self._queue: asyncio.Queue[WatchEvent] = asyncio.Queue(maxsize)
        self.dropped = 0

    def publish(self, event: WatchEvent) -> None:
        if self._queue.full():
            lost = self._queue.get_nowait()
            self.dropped += 1
            logger.warning(f"watch channel full, dropping {lost.type.value} {lost.path}")
        self._queue.put_nowait(event)

    async def get(self) -> WatchEvent:
        """Wait for the next event."""
        return await self._queue.get()

    def get_nowait(self) -> WatchEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> list[WatchEvent]:
        """Remove and return every pending event."""
        events = []
        while (event := self.get_nowait()) is not None:
            events.append(event)
        return events

    def __len__(self) -> int:
        return self._queue.qsize()


@dataclass
class Snapshot:
    """Files (with size and mtime) and directories visible to the watcher."""

    files: dict[pathlib.Path, tuple[int, int]] = field(default_factory=dict)
    directories: set[pathlib.Path] = field(default_factory=set)


def take_snapshot(root: pathlib.Path, depth: int) -> Snapshot:
    """Walk *root* down to *depth* directory levels, skipping dot-prefixed names.

    Raises OSError only when *root* itself cannot be listed; unreadable
    entries below it are left out of the snapshot.
    """
    snapshot = Snapshot()

    def walk(directory: pathlib.Path, level: int) -> None:
        try:
            entries = list(os.scandir(directory))
        except OSError as exc:
            if level == 0:
                raise
            logger.debug(f"watcher cannot list {directory}: {exc}")
            return
        for entry in entries:
            if entry.name.startswith("."):
                continue
            path = pathlib.Path(entry.path)
            try:
                if entry.is_dir(follow_symlinks=False):
                    snapshot.directories.add(path)
                    if level < depth:
                        walk(path, level + 1)
                elif entry.is_file():
                    st = entry.stat()
                    snapshot.files[path] = (st.st_size, st.st_mtime_ns)
            except OSError as exc:
                logger.debug(f"watcher skipping {path}: {exc}")

    walk(root, 0)
    return snapshot


def diff_snapshots(
    old: Snapshot,
    new: Snapshot,
    is_relevant: Callable[[pathlib.Path], bool] = lambda p: True,
) -> list[WatchEvent]:
    """Translate the difference between two snapshots into events."""
    events: list[WatchEvent] = []
    for path in sorted(new.directories - old.directories):
        events.append(WatchEvent(WatchEventType.DIRECTORY_ADDED, path))
    for path in sorted(new.files.keys() - old.files.keys()):
        if is_relevant(path):
            events.append(WatchEvent(WatchEventType.FILE_ADDED, path))
    for path in sorted(new.files.keys() & old.files.keys()):
        if new.files[path] != old.files[path] and is_relevant(path):
            events.append(WatchEvent(WatchEventType.FILE_CHANGED, path))
    for path in sorted(old.files.keys() - new.files.keys()):
        if is_relevant(path):
            events.append(WatchEvent(WatchEventType.FILE_REMOVED, path))
    for path in sorted(old.directories - new.directories):
        events.append(WatchEvent(WatchEventType.DIRECTORY_REMOVED, path))
    return events


class PollingWatcher:
    """Detects changes under *root* by periodically diffing snapshots.

    The first snapshot is taken on :meth:`start` and produces no events;
    every later poll publishes one event per observed change.
    """

    def __init__(
        self,
        root: pathlib.Path,
        channel: WatchChannel,
        *,
        depth: int = DEFAULT_WATCH_DEPTH,
        interval: float = DEFAULT_INTERVAL,
        is_relevant: Callable[[pathlib.Path], bool] = lambda p: True,
    ) -> None:
        self.root = root
        self.channel = channel
        self.depth = depth
        self.interval = interval
        self._is_relevant = is_relevant
        self._snapshot: Snapshot | None = None
        self._task: asyncio.Task | None = None
        self._failing = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._snapshot = await asyncio.to_thread(take_snapshot, self.root, self.depth)
        self._task = asyncio.create_task(self._loop(), name=f"watch:{self.root}")
        logger.info(f"Started watching directory: {self.root}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"Stopped watching directory: {self.root}")

    async def poll_once(self) -> list[WatchEvent]:
        """Take a fresh snapshot, publish the differences and return them.

        While the root cannot be listed a single WATCHER_ERROR is published;
        the next one follows only after the root has been readable again.
        """
        try:
            current = await asyncio.to_thread(take_snapshot, self.root, self.depth)
        except OSError as exc:
            if self._failing:
                logger.debug(f"watcher root still unavailable: {exc}")
                return []
            self._failing = True
            logger.warning(f"Directory watcher error: {exc}")
            event = WatchEvent(WatchEventType.WATCHER_ERROR, self.root, error=str(exc))
            self.channel.publish(event)
            return [event]

        if self._failing:
            self._failing = False
            logger.info(f"Watched directory is available again: {self.root}")

        previous = self._snapshot if self._snapshot is not None else current
        self._snapshot = current
        events = diff_snapshots(previous, current, self._is_relevant)
        for event in events:
            self.channel.publish(event)
        return events

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.poll_once()
