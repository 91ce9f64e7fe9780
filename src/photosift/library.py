"""Ties scanning, hashing, grouping and trashing into library operations.

Control flow: the scanner enumerates files, the hasher narrows them with
quick hashes and confirms with full hashes, the grouper persists the
collisions, and the deletion coordinator removes redundant copies. Watch
events re-index single files instead of triggering a rescan.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from collections.abc import Iterator
from collections.abc import Sequence
from photosift.db import ImageRecord
from photosift.db import LibraryDB
from photosift.errors import InvalidArgumentError
from photosift.errors import ScanInProgressError
from photosift.grouper import DuplicateGrouper
from photosift.hasher import ContentHasher
from photosift.hasher import duplicate_space
from photosift.hasher import DuplicateGroup
from photosift.hasher import SpaceSummary
from photosift.preferences import Preferences
from photosift.progress import Progress
from photosift.progress import ProgressStream
from photosift.scanner import DirectoryScanner
from photosift.trash import DeletionCoordinator
from photosift.trash import TrashBatch
from photosift.trash import TrashBatchResult
from photosift.watcher import WatchEvent
from photosift.watcher import WatchEventType

import asyncio
import contextlib
import logging
import os
import pathlib


logger = logging.getLogger(__name__)


def _normalize(path: os.PathLike | str) -> pathlib.Path:
    return pathlib.Path(os.path.abspath(path))


class ScanLock:
    """Admits at most one duplicate scan or index run per root directory."""

    def __init__(self) -> None:
        self._active: set[pathlib.Path] = set()

    def is_held(self, root: os.PathLike | str) -> bool:
        return _normalize(root) in self._active

    @contextlib.contextmanager
    def hold(self, root: os.PathLike | str) -> Iterator[None]:
        key = _normalize(root)
        if key in self._active:
            raise ScanInProgressError(f"A scan of {key} is already running")
        self._active.add(key)
        try:
            yield
        finally:
            self._active.discard(key)


class DirectoryDuplicateScan(ProgressStream):
    """Enumerate a directory and run two-phase duplicate detection on it.

    The per-root lock is taken when iteration starts and released when it
    ends, so a second scan of the same root fails with ScanInProgressError
    on its first step.
    """

    def __init__(self, library: Library, root: pathlib.Path, recursive: bool) -> None:
        super().__init__()
        self._library = library
        self.root = root
        self.recursive = recursive
        self.files: list[pathlib.Path] = []
        self.groups: list[DuplicateGroup] = []
        self.errors: dict[pathlib.Path, Exception] = {}

    @property
    def space(self) -> SpaceSummary:
        return duplicate_space(self.groups)

    async def _steps(self) -> AsyncIterator[Progress]:
        with self._library.scan_lock.hold(self.root):
            self.files = [
                info.path
                async for info in self._library.scanner.iter_files(self.root, recursive=self.recursive)
            ]
            logger.debug(f"collected {len(self.files)} file(s) under {self.root}")
            scan = self._library.hasher.two_phase_duplicates(self.files)
            async with scan:
                async for progress in scan:
                    yield progress
            self.groups = scan.groups
            self.errors = scan.errors


class IndexRun(ProgressStream):
    """Hash every image under a root into the library, then rebuild groups."""

    def __init__(self, library: Library, root: pathlib.Path, recursive: bool) -> None:
        super().__init__()
        self._library = library
        self.root = root
        self.recursive = recursive
        self.indexed: list[ImageRecord] = []
        self.pruned: list[str] = []
        self.errors: dict[pathlib.Path, Exception] = {}
        self.groups_created = 0

    async def _steps(self) -> AsyncIterator[Progress]:
        lib = self._library
        with lib.scan_lock.hold(self.root):
            files = [
                info
                async for info in lib.scanner.iter_files(
                    self.root, recursive=self.recursive, images_only=True
                )
            ]
            total = len(files)
            for completed, info in enumerate(files, 1):
                try:
                    result = await lib.hasher.full_hash(info.path)
                except (OSError, ValueError) as exc:
                    logger.debug(f"cannot index {info.path}: {exc}")
                    self.errors[info.path] = exc
                else:
                    self.indexed.append(
                        lib.db.upsert_image(
                            path=str(_normalize(info.path)),
                            hash=result.hash,
                            size=result.file_size,
                            modified_at=info.modified,
                        )
                    )
                yield Progress("index", completed, total, info.path)

            for record in lib.db.images_under(str(_normalize(self.root))):
                if not await asyncio.to_thread(os.path.exists, record.path):
                    lib.forget_record(record)
                    self.pruned.append(record.path)

            self.groups_created, _ = lib.grouper.rebuild_all()


class LibraryTrash(ProgressStream):
    """Trash files and drop the successfully trashed ones from the library."""

    def __init__(self, library: Library, batch: TrashBatch) -> None:
        super().__init__()
        self._library = library
        self._batch = batch

    @property
    def outcome(self) -> TrashBatchResult:
        return self._batch.outcome

    async def _steps(self) -> AsyncIterator[Progress]:
        seen = 0
        async with self._batch:
            async for progress in self._batch:
                for path in self.outcome.successful[seen:]:
                    self._library.forget_file(path)
                seen = len(self.outcome.successful)
                yield progress


class Library:
    """The duplicate-detection core, assembled from explicitly passed services."""

    def __init__(
        self,
        db: LibraryDB,
        scanner: DirectoryScanner,
        *,
        hasher: ContentHasher | None = None,
        grouper: DuplicateGrouper | None = None,
        coordinator: DeletionCoordinator | None = None,
    ) -> None:
        self.db = db
        self.scanner = scanner
        self.hasher = hasher if hasher is not None else ContentHasher()
        self.grouper = grouper if grouper is not None else DuplicateGrouper(db)
        self.coordinator = coordinator if coordinator is not None else DeletionCoordinator()
        self.scan_lock = ScanLock()

    @classmethod
    def open(
        cls,
        db_path: pathlib.Path | None = None,
        *,
        watch_depth: int = 3,
        watch_interval: float = 1.0,
        preference_defaults: dict[str, object] | None = None,
        coordinator: DeletionCoordinator | None = None,
    ) -> Library:
        """Build a library and all its services on one database file.

        *preference_defaults* fill in for preferences that were never
        stored, typically values from config.toml.
        """
        db = LibraryDB(db_path)
        scanner = DirectoryScanner(
            Preferences(db, preference_defaults),
            watch_depth=watch_depth,
            watch_interval=watch_interval,
        )
        return cls(db, scanner, coordinator=coordinator)

    async def close(self) -> None:
        await self.scanner.close()
        self.db.close()

    def _root_or(self, root: os.PathLike | str | None) -> pathlib.Path:
        if root is not None:
            return pathlib.Path(root)
        if self.scanner.root is None:
            raise InvalidArgumentError("No directory given and no root directory set")
        return self.scanner.root

    # --- single files ---

    async def index_file(self, path: os.PathLike | str) -> ImageRecord:
        """Hash one file and update its record and group membership."""
        path = _normalize(path)
        result = await self.hasher.full_hash(path)
        st = await asyncio.to_thread(path.stat)
        with self.db.transaction():
            record = self.db.upsert_image(
                path=str(path), hash=result.hash, size=result.file_size, modified_at=st.st_mtime
            )
            self.grouper.upsert_group(record.hash, record.id)
        return record

    def forget_record(self, record: ImageRecord) -> None:
        with self.db.transaction():
            self.grouper.detach_image(record.id)
            self.db.delete_image(record.id)
        logger.debug(f"forgot {record.path}")

    def forget_file(self, path: os.PathLike | str) -> bool:
        """Drop the record for *path* and its group membership."""
        record = self.db.get_image_by_path(str(_normalize(path)))
        if record is None:
            return False
        self.forget_record(record)
        return True

    def forget_directory(self, directory: os.PathLike | str) -> int:
        records = self.db.images_under(str(_normalize(directory)))
        for record in records:
            self.forget_record(record)
        return len(records)

    # --- watch events ---

    async def handle_event(self, event: WatchEvent) -> None:
        """Apply one watch event to the library."""
        if event.type in (WatchEventType.FILE_ADDED, WatchEventType.FILE_CHANGED):
            try:
                await self.index_file(event.path)
            except OSError as exc:
                # the file vanished or became unreadable between poll and hash
                logger.debug(f"cannot index {event.path}: {exc}")
                self.forget_file(event.path)
        elif event.type is WatchEventType.FILE_REMOVED:
            self.forget_file(event.path)
        elif event.type is WatchEventType.DIRECTORY_REMOVED:
            count = self.forget_directory(event.path)
            if count:
                logger.info(f"Directory removed, forgot {count} image(s): {event.path}")
        elif event.type is WatchEventType.WATCHER_ERROR:
            logger.warning(f"Watcher error on {event.path}: {event.error}")
        else:
            logger.debug(f"{event.type.value}: {event.path}")

    async def process_pending_events(self) -> int:
        """Handle every event currently waiting in the watch channel."""
        events = self.scanner.events.drain()
        for event in events:
            await self.handle_event(event)
        return len(events)

    async def follow(self, stop: asyncio.Event, poll_timeout: float = 0.5) -> int:
        """Handle watch events as they arrive until *stop* is set."""
        handled = 0
        while not stop.is_set():
            try:
                event = await asyncio.wait_for(self.scanner.events.get(), timeout=poll_timeout)
            except asyncio.TimeoutError:
                continue
            await self.handle_event(event)
            handled += 1
        return handled

    # --- batch operations ---

    def find_duplicates_in(
        self, root: os.PathLike | str | None = None, *, recursive: bool = True
    ) -> DirectoryDuplicateScan:
        return DirectoryDuplicateScan(self, self._root_or(root), recursive)

    def index_directory(
        self, root: os.PathLike | str | None = None, *, recursive: bool = True
    ) -> IndexRun:
        return IndexRun(self, self._root_or(root), recursive)

    def trash_files(self, paths: Sequence[os.PathLike | str]) -> LibraryTrash:
        return LibraryTrash(self, self.coordinator.trash_files(paths))

    def trash_group_keep_one(self, group_id: int, keep_index: int = 0) -> LibraryTrash:
        """Trash every member of a persisted group except the one at *keep_index*.

        Raises InvalidArgumentError for an unknown group or an out-of-range
        index before anything is trashed.
        """
        if self.grouper.get_group(group_id) is None:
            raise InvalidArgumentError(f"No duplicate group with id {group_id}")
        files = [pathlib.Path(img.path) for img in self.grouper.get_group_images(group_id)]
        return LibraryTrash(self, self.coordinator.trash_duplicates(files, keep_index))
