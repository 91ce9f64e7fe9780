"""Caller-facing command layer.

Every command returns a :class:`Response` instead of raising, which is the
contract a UI or IPC bridge relies on. Paths handed in by callers are
checked against the configured root before any I/O happens.
"""

from __future__ import annotations

from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Sequence
from dataclasses import dataclass
from photosift.errors import AccessDeniedError
from photosift.errors import PhotosiftError
from photosift.hasher import duplicate_space
from photosift.library import Library
from photosift.progress import Progress
from photosift.scanner import is_within

import functools
import logging
import os
import pathlib


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Progress], None]


@dataclass(frozen=True)
class Response:
    success: bool
    data: object = None
    error: str | None = None

    @classmethod
    def ok(cls, data: object = None) -> Response:
        return cls(True, data)

    @classmethod
    def fail(cls, error: str) -> Response:
        return cls(False, None, error)


def _respond(func: Callable[..., Awaitable[object]]) -> Callable[..., Awaitable[Response]]:
    """Wrap a command so that every outcome becomes a Response."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs) -> Response:
        try:
            return Response.ok(await func(self, *args, **kwargs))
        except (PhotosiftError, OSError) as exc:
            logger.debug(f"{func.__name__} failed: {exc}")
            return Response.fail(str(exc))
        except Exception as exc:
            logger.exception(f"Unexpected error in {func.__name__}")
            return Response.fail(f"Unexpected error: {exc}")

    return wrapper


@dataclass(frozen=True)
class DuplicateScanReport:
    groups: list
    total_files: int
    total_wasted_bytes: int
    total_duplicate_files: int
    errors: dict


class Commands:
    """The operations a UI needs, each returning a Response."""

    def __init__(self, library: Library) -> None:
        self.library = library

    @property
    def _scanner(self):
        return self.library.scanner

    def _guard(self, path: os.PathLike | str) -> pathlib.Path:
        root = self._scanner.root
        if root is not None and not is_within(path, root):
            raise AccessDeniedError(f"Access denied: {path} is outside {root}")
        return pathlib.Path(path)

    # --- root directory ---

    @_respond
    async def set_root(self, path: str) -> object:
        if not await self._scanner.set_root(path):
            raise PhotosiftError(_root_rejection(path))
        return self._scanner.get_root_info()

    @_respond
    async def get_root(self) -> object:
        return self._scanner.get_root_info()

    @_respond
    async def clear_root(self) -> object:
        await self._scanner.clear_root()
        return True

    # --- enumeration ---

    @_respond
    async def scan(self, path: str | None = None, recursive: bool = True) -> object:
        if path is not None:
            self._guard(path)
        return await self._scanner.scan(path, recursive=recursive)

    @_respond
    async def list_contents(self, path: str) -> object:
        return await self._scanner.get_directory_contents(self._guard(path))

    @_respond
    async def list_subdirectories(self, path: str) -> object:
        return await self._scanner.get_subdirectories(self._guard(path))

    # --- watching ---

    @_respond
    async def start_watch(self) -> object:
        return await self._scanner.watch()

    @_respond
    async def stop_watch(self) -> object:
        await self._scanner.unwatch()
        return True

    @_respond
    async def watch_status(self) -> object:
        return self._scanner.is_watching

    # --- hashing and duplicates ---

    @_respond
    async def hash_file(self, path: str) -> object:
        return await self.library.hasher.full_hash(self._guard(path))

    @_respond
    async def hash_files(self, paths: Sequence[str], on_progress: ProgressCallback | None = None) -> object:
        guarded = [self._guard(p) for p in paths]
        batch = await self.library.hasher.hash_batch(guarded).run(on_progress)
        return {"results": batch.results, "errors": {p: str(e) for p, e in batch.errors.items()}}

    @_respond
    async def find_duplicates(self, paths: Sequence[str], on_progress: ProgressCallback | None = None) -> object:
        guarded = [self._guard(p) for p in paths]
        scan = await self.library.hasher.two_phase_duplicates(guarded).run(on_progress)
        return scan.groups

    @_respond
    async def scan_duplicates(
        self,
        root: str | None = None,
        recursive: bool = True,
        on_progress: ProgressCallback | None = None,
    ) -> object:
        if root is not None:
            self._guard(root)
        scan = await self.library.find_duplicates_in(root, recursive=recursive).run(on_progress)
        space = duplicate_space(scan.groups)
        return DuplicateScanReport(
            groups=scan.groups,
            total_files=len(scan.files),
            total_wasted_bytes=space.total_wasted_bytes,
            total_duplicate_files=space.total_duplicate_files,
            errors={p: str(e) for p, e in scan.errors.items()},
        )

    @_respond
    async def index(self, root: str | None = None, on_progress: ProgressCallback | None = None) -> object:
        if root is not None:
            self._guard(root)
        run = await self.library.index_directory(root).run(on_progress)
        return {"indexed": len(run.indexed), "pruned": len(run.pruned), "groups": run.groups_created}

    @_respond
    async def rebuild_groups(self) -> object:
        groups, items = self.library.grouper.rebuild_all()
        return {"groups": groups, "items": items}

    @_respond
    async def duplicate_stats(self) -> object:
        return self.library.grouper.get_stats()

    @_respond
    async def duplicate_groups(self, limit: int = 50, offset: int = 0) -> object:
        return self.library.grouper.groups_with_images(limit, offset)

    # --- deletion ---

    @_respond
    async def trash_file(self, path: str) -> object:
        result = await self.library.coordinator.trash_file(self._guard(path))
        if result.success:
            self.library.forget_file(result.path)
        return result

    @_respond
    async def trash_files(self, paths: Sequence[str], on_progress: ProgressCallback | None = None) -> object:
        guarded = [self._guard(p) for p in paths]
        batch = await self.library.trash_files(guarded).run(on_progress)
        return batch.outcome

    @_respond
    async def trash_duplicates(
        self,
        files: Sequence[str],
        keep_index: int = 0,
        on_progress: ProgressCallback | None = None,
    ) -> object:
        guarded = [self._guard(p) for p in files]
        batch = self.library.coordinator.trash_duplicates(guarded, keep_index)
        await batch.run(on_progress)
        for path in batch.outcome.successful:
            self.library.forget_file(path)
        return batch.outcome

    @_respond
    async def trash_group(
        self, group_id: int, keep_index: int = 0, on_progress: ProgressCallback | None = None
    ) -> object:
        batch = await self.library.trash_group_keep_one(group_id, keep_index).run(on_progress)
        return batch.outcome

    @_respond
    async def can_trash(self, path: str) -> object:
        return await self.library.coordinator.can_trash(self._guard(path))

    @_respond
    async def file_info(self, path: str) -> object:
        return await self.library.coordinator.get_file_info(self._guard(path))


def _root_rejection(path: str) -> str:
    p = pathlib.Path(path)
    if not p.exists():
        return f"Directory does not exist: {path}"
    if not p.is_dir():
        return f"Not a directory: {path}"
    return f"Directory is not readable: {path}"
