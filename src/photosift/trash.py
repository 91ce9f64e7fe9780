"""Recoverable deletion of redundant copies via the system trash."""

from __future__ import annotations

from collections.abc import AsyncIterator
from collections.abc import Callable
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from photosift.errors import InvalidArgumentError
from photosift.progress import Progress
from photosift.progress import ProgressStream
from send2trash import send2trash

import asyncio
import logging
import os
import pathlib


logger = logging.getLogger(__name__)

_SIZE_UNITS = ["B", "KB", "MB", "GB", "TB"]


@dataclass(frozen=True)
class TrashResult:
    path: pathlib.Path
    success: bool
    error: str | None = None


@dataclass
class TrashBatchResult:
    """Outcome of trashing several files; nothing is rolled back."""

    successful: list[pathlib.Path] = field(default_factory=list)
    failed: list[TrashResult] = field(default_factory=list)
    total_processed: int = 0


@dataclass(frozen=True)
class FileCheck:
    """Read-only facts about a path, for confirmation prompts."""

    exists: bool
    name: str
    size: int | None = None
    is_directory: bool | None = None


def format_size(num_bytes: int) -> str:
    """Human readable size with binary multiples, e.g. ``1.5 KB``."""
    if num_bytes <= 0:
        return "0 B"
    value = float(num_bytes)
    unit = 0
    while value >= 1024 and unit < len(_SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, 2):g} {_SIZE_UNITS[unit]}"


class TrashBatch(ProgressStream):
    """Sequentially trash files, attempting every one and recording each outcome."""

    def __init__(self, coordinator: DeletionCoordinator, paths: Sequence[os.PathLike | str]) -> None:
        super().__init__()
        self._coordinator = coordinator
        self.paths = [pathlib.Path(p) for p in paths]
        self.outcome = TrashBatchResult()

    async def _steps(self) -> AsyncIterator[Progress]:
        total = len(self.paths)
        for completed, path in enumerate(self.paths, 1):
            result = await self._coordinator.trash_file(path)
            self.outcome.total_processed += 1
            if result.success:
                self.outcome.successful.append(path)
            else:
                self.outcome.failed.append(result)
            yield Progress("trash", completed, total, path)


class DeletionCoordinator:
    """Moves files to the recoverable system trash, never deleting permanently."""

    def __init__(self, trash_fn: Callable[[str], None] | None = None) -> None:
        self._trash_fn = trash_fn

    def _trash(self, path: str) -> None:
        if self._trash_fn is not None:
            self._trash_fn(path)
        else:
            send2trash(path)

    async def trash_file(self, path: os.PathLike | str) -> TrashResult:
        path = pathlib.Path(path)
        if not await asyncio.to_thread(path.exists):
            return TrashResult(path, False, "File not found")
        try:
            await asyncio.to_thread(self._trash, str(path))
        except OSError as exc:
            logger.warning(f"Failed to trash {path}: {exc}")
            return TrashResult(path, False, str(exc) or type(exc).__name__)
        logger.debug(f"trashed {path}")
        return TrashResult(path, True)

    def trash_files(self, paths: Sequence[os.PathLike | str]) -> TrashBatch:
        """Trash *paths* one at a time; consume with ``async for`` or ``run()``."""
        return TrashBatch(self, paths)

    def trash_duplicates(self, files: Sequence[os.PathLike | str], keep_index: int = 0) -> TrashBatch:
        """Trash every member of a duplicate group except ``files[keep_index]``.

        Raises InvalidArgumentError before touching the filesystem when
        *keep_index* is out of range.
        """
        if isinstance(keep_index, bool) or not isinstance(keep_index, int):
            raise InvalidArgumentError(f"keep_index must be an integer, got {keep_index!r}")
        if not 0 <= keep_index < len(files):
            raise InvalidArgumentError(
                f"Invalid keep_index {keep_index} for a group of {len(files)} file(s)"
            )
        keep = pathlib.Path(files[keep_index])
        doomed = [p for i, p in enumerate(files) if i != keep_index and pathlib.Path(p) != keep]
        return TrashBatch(self, doomed)

    async def trash_directory(self, path: os.PathLike | str) -> TrashResult:
        path = pathlib.Path(path)
        if not await asyncio.to_thread(path.exists):
            return TrashResult(path, False, "Directory not found")
        if not await asyncio.to_thread(path.is_dir):
            return TrashResult(path, False, "Path is not a directory")
        try:
            await asyncio.to_thread(self._trash, str(path))
        except OSError as exc:
            logger.warning(f"Failed to trash directory {path}: {exc}")
            return TrashResult(path, False, str(exc) or type(exc).__name__)
        return TrashResult(path, True)

    async def can_trash(self, path: os.PathLike | str) -> bool:
        return await asyncio.to_thread(os.access, path, os.R_OK | os.W_OK)

    async def get_file_info(self, path: os.PathLike | str) -> FileCheck:
        path = pathlib.Path(path)
        try:
            st = await asyncio.to_thread(path.stat)
        except OSError:
            return FileCheck(exists=False, name=path.name)
        return FileCheck(
            exists=True,
            name=path.name,
            size=st.st_size,
            is_directory=path.is_dir(),
        )

    async def calculate_total_size(self, paths: Sequence[os.PathLike | str]) -> int:
        """Sum the sizes of the regular files among *paths*; others count as zero."""
        total = 0
        for p in paths:
            path = pathlib.Path(p)
            try:
                if await asyncio.to_thread(path.is_file):
                    total += (await asyncio.to_thread(path.stat)).st_size
            except OSError:
                continue
        return total
