"""Directory enumeration, root management and live watching."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import asdict
from dataclasses import dataclass
from photosift.config import clamp_scan_depth
from photosift.errors import InvalidArgumentError
from photosift.errors import InvalidDirectoryError
from photosift.preferences import EXCLUDE_PATTERNS
from photosift.preferences import LAST_ACCESSED
from photosift.preferences import LAST_SCAN_STATS
from photosift.preferences import Preferences
from photosift.preferences import ROOT_DIRECTORY
from photosift.preferences import SCAN_DEPTH
from photosift.preferences import WATCH_ENABLED
from photosift.watcher import DEFAULT_INTERVAL
from photosift.watcher import DEFAULT_WATCH_DEPTH
from photosift.watcher import PollingWatcher
from photosift.watcher import WatchChannel
from photosift.watcher import WatchEvent
from photosift.watcher import WatchEventType

import asyncio
import logging
import os
import pathlib
import time


logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS: set[str] = {
    ".jpg", ".jpeg", ".png", ".gif", ".bmp",
    ".tiff", ".tif", ".webp", ".svg", ".ico",
    ".heic", ".heif", ".raw", ".dng",
}


def is_image_file(name: str | os.PathLike) -> bool:
    """Check the extension of *name* against the image allowlist."""
    return pathlib.PurePath(name).suffix.lower() in IMAGE_EXTENSIONS


def is_accessible_directory(path: str | os.PathLike | None) -> bool:
    """True if *path* is an existing directory that can be listed.

    Does not consult any configured root, so it is the check to use for a
    candidate root.
    """
    if not path:
        return False
    try:
        p = pathlib.Path(path)
        return p.is_dir() and os.access(p, os.R_OK | os.X_OK)
    except OSError:
        return False


def is_within(path: str | os.PathLike, root: str | os.PathLike | None) -> bool:
    """True if *path* is *root* or lies below it, after resolving symlinks."""
    if not root:
        raise InvalidArgumentError("is_within needs an established root directory")
    resolved_root = pathlib.Path(root).resolve()
    resolved = pathlib.Path(path).resolve()
    return resolved == resolved_root or resolved_root in resolved.parents


@dataclass(frozen=True)
class FileInfo:
    """A file found during enumeration."""

    path: pathlib.Path
    name: str
    size: int
    modified: float
    is_image: bool
    extension: str


@dataclass
class ScanStats:
    """Aggregate counts of a recursive scan."""

    total_files: int = 0
    total_size: int = 0
    image_files: int = 0
    directories: int = 0
    last_scanned: float | None = None


@dataclass(frozen=True)
class DirectoryInfo:
    path: pathlib.Path
    name: str
    is_valid: bool
    size: int | None = None
    last_accessed: float | None = None


@dataclass(frozen=True)
class _Entry:
    path: pathlib.Path
    is_dir: bool
    info: FileInfo | None


def _read_entries(directory: pathlib.Path) -> list[_Entry]:
    """List one directory, stat'ing its files.

    Raises OSError if the directory itself cannot be listed. Entries that
    fail to stat are dropped.
    """
    entries: list[_Entry] = []
    with os.scandir(directory) as it:
        for entry in it:
            path = pathlib.Path(entry.path)
            try:
                if entry.is_dir(follow_symlinks=False):
                    entries.append(_Entry(path, True, None))
                elif entry.is_file():
                    st = entry.stat()
                    info = FileInfo(
                        path=path,
                        name=entry.name,
                        size=st.st_size,
                        modified=st.st_mtime,
                        is_image=is_image_file(entry.name),
                        extension=path.suffix.lower(),
                    )
                    entries.append(_Entry(path, False, info))
            except OSError as exc:
                logger.debug(f"skipping {path}: {exc}")
    return entries


class DirectoryScanner:
    """Enumerates and watches the files under a configurable root directory."""

    def __init__(
        self,
        preferences: Preferences,
        *,
        watch_depth: int = DEFAULT_WATCH_DEPTH,
        watch_interval: float = DEFAULT_INTERVAL,
        channel: WatchChannel | None = None,
    ) -> None:
        self._prefs = preferences
        self.watch_depth = watch_depth
        self.watch_interval = watch_interval
        self.events = channel if channel is not None else WatchChannel()
        self._watcher: PollingWatcher | None = None
        self._root: pathlib.Path | None = None

        saved = self._prefs.get(ROOT_DIRECTORY)
        if saved and is_accessible_directory(saved):
            self._root = pathlib.Path(saved)
        elif saved:
            logger.warning(f"Persisted root directory is no longer accessible: {saved}")

    # --- root directory ---

    @property
    def root(self) -> pathlib.Path | None:
        return self._root

    async def set_root(self, path: str | os.PathLike) -> bool:
        """Validate *path* as a new root, persist it and restart watching.

        Returns False instead of raising when *path* is not an accessible
        directory.
        """
        if not is_accessible_directory(path):
            logger.info(f"Rejected root directory: {path}")
            return False

        await self.unwatch()
        self._root = pathlib.Path(path).resolve()
        self._prefs.set(ROOT_DIRECTORY, str(self._root))
        self._prefs.set(LAST_ACCESSED, time.time())
        await self.watch()
        return True

    def get_root_info(self) -> DirectoryInfo | None:
        if self._root is None:
            return None
        last_accessed = self._prefs.get(LAST_ACCESSED)
        try:
            st = self._root.stat()
        except OSError:
            return DirectoryInfo(path=self._root, name=self._root.name, is_valid=False)
        return DirectoryInfo(
            path=self._root,
            name=self._root.name,
            is_valid=is_accessible_directory(self._root),
            size=st.st_size,
            last_accessed=last_accessed,
        )

    async def clear_root(self) -> None:
        await self.unwatch()
        self._root = None
        self._prefs.delete(ROOT_DIRECTORY)

    def relative_path(self, path: str | os.PathLike) -> pathlib.Path:
        if self._root is None:
            return pathlib.Path(path)
        return pathlib.Path(os.path.relpath(path, self._root))

    def full_path(self, relative: str | os.PathLike) -> pathlib.Path:
        if self._root is None:
            raise InvalidDirectoryError("No root directory set")
        return self._root / relative

    # --- preferences ---

    @property
    def scan_depth(self) -> int:
        return int(self._prefs.get(SCAN_DEPTH))

    @scan_depth.setter
    def scan_depth(self, depth: int) -> None:
        self._prefs.set(SCAN_DEPTH, clamp_scan_depth(depth))

    @property
    def exclude_patterns(self) -> list[str]:
        return list(self._prefs.get(EXCLUDE_PATTERNS))

    @exclude_patterns.setter
    def exclude_patterns(self, patterns: list[str]) -> None:
        self._prefs.set(EXCLUDE_PATTERNS, [p for p in patterns if p])

    @property
    def watch_enabled(self) -> bool:
        return bool(self._prefs.get(WATCH_ENABLED))

    async def set_watch_enabled(self, enabled: bool) -> None:
        self._prefs.set(WATCH_ENABLED, bool(enabled))
        if enabled:
            await self.watch()
        else:
            await self.unwatch()

    def last_scan_stats(self) -> ScanStats | None:
        saved = self._prefs.get(LAST_SCAN_STATS)
        return ScanStats(**saved) if saved else None

    def _is_excluded(self, name: str, patterns: list[str]) -> bool:
        return any(p in name for p in patterns)

    def _target(self, path: str | os.PathLike | None) -> pathlib.Path:
        target = pathlib.Path(path) if path is not None else self._root
        if target is None or not is_accessible_directory(target):
            raise InvalidDirectoryError(f"Invalid directory path: {target}")
        return target

    # --- enumeration ---

    async def scan(self, path: str | os.PathLike | None = None, recursive: bool = True) -> ScanStats:
        """Count files, bytes, images and directories below *path*.

        With *recursive* false only the top level is counted; its
        subdirectories are counted but not entered.

        Raises InvalidDirectoryError if the target (default: the root) is
        not an accessible directory. Anything unreadable below it is skipped.
        """
        target = self._target(path)
        max_depth = self.scan_depth
        patterns = self.exclude_patterns
        stats = ScanStats(last_scanned=time.time())

        async def walk(directory: pathlib.Path, depth: int) -> None:
            if depth > max_depth:
                return
            try:
                entries = await asyncio.to_thread(_read_entries, directory)
            except OSError as exc:
                logger.debug(f"skipping unreadable directory {directory}: {exc}")
                return
            for entry in entries:
                if self._is_excluded(entry.path.name, patterns):
                    continue
                if entry.is_dir:
                    stats.directories += 1
                    if recursive:
                        await walk(entry.path, depth + 1)
                else:
                    stats.total_files += 1
                    stats.total_size += entry.info.size
                    if entry.info.is_image:
                        stats.image_files += 1

        await walk(target, 0)
        self._prefs.set(LAST_SCAN_STATS, asdict(stats))
        logger.debug(
            f"scanned {target}: {stats.total_files} files, {stats.image_files} images, "
            f"{stats.directories} directories, {stats.total_size} bytes"
        )
        return stats

    async def iter_files(
        self,
        path: str | os.PathLike | None = None,
        *,
        recursive: bool = True,
        images_only: bool = False,
    ) -> AsyncIterator[FileInfo]:
        """Yield the files under *path* in a stable order.

        Dot-prefixed entries and exclusion matches are skipped, and the
        configured scan depth bounds recursion.
        """
        target = self._target(path)
        max_depth = self.scan_depth
        patterns = self.exclude_patterns

        pending: list[tuple[pathlib.Path, int]] = [(target, 0)]
        while pending:
            directory, depth = pending.pop()
            try:
                entries = await asyncio.to_thread(_read_entries, directory)
            except OSError as exc:
                logger.debug(f"skipping unreadable directory {directory}: {exc}")
                continue
            subdirs: list[pathlib.Path] = []
            for entry in sorted(entries, key=lambda e: e.path.name):
                name = entry.path.name
                if name.startswith(".") or self._is_excluded(name, patterns):
                    continue
                if entry.is_dir:
                    if recursive and depth < max_depth:
                        subdirs.append(entry.path)
                elif not images_only or entry.info.is_image:
                    yield entry.info
            pending.extend((d, depth + 1) for d in reversed(subdirs))

    async def get_directory_contents(self, path: str | os.PathLike) -> list[FileInfo]:
        """Files directly inside *path*, sorted by name."""
        target = self._target(path)
        try:
            entries = await asyncio.to_thread(_read_entries, target)
        except OSError as exc:
            raise InvalidDirectoryError(f"Cannot list {target}: {exc}") from exc
        files = [e.info for e in entries if not e.is_dir]
        return sorted(files, key=lambda f: f.name)

    async def get_subdirectories(self, path: str | os.PathLike) -> list[pathlib.Path]:
        """Non-hidden subdirectories directly inside *path*, sorted."""
        target = self._target(path)
        try:
            entries = await asyncio.to_thread(_read_entries, target)
        except OSError as exc:
            raise InvalidDirectoryError(f"Cannot list {target}: {exc}") from exc
        return sorted(e.path for e in entries if e.is_dir and not e.path.name.startswith("."))

    # --- watching ---

    @property
    def is_watching(self) -> bool:
        return self._watcher is not None and self._watcher.running

    async def watch(self) -> bool:
        """Start watching the root; returns whether a watcher is running."""
        if self.is_watching:
            return True
        if self._root is None or not self.watch_enabled:
            return False

        watcher = PollingWatcher(
            self._root,
            self.events,
            depth=self.watch_depth,
            interval=self.watch_interval,
            is_relevant=is_image_file,
        )
        try:
            await watcher.start()
        except OSError as exc:
            logger.error(f"Failed to start directory watcher: {exc}")
            self.events.publish(WatchEvent(WatchEventType.WATCHER_ERROR, self._root, error=str(exc)))
            return False
        self._watcher = watcher
        return True

    async def unwatch(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher is not None:
            await watcher.stop()

    async def poll(self) -> list[WatchEvent]:
        """Run one watcher poll immediately instead of waiting for the timer."""
        if self._watcher is None:
            return []
        return await self._watcher.poll_once()

    async def close(self) -> None:
        await self.unwatch()
