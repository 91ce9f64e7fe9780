"""Content hashing and 2-phase duplicate detection.

Phase 1 computes a cheap quick hash (file size plus the first and, for
large files, the last chunk) for every candidate. Phase 2 computes the
full SHA256 only for files whose quick hash collides with another file.
Identical content always yields identical quick hashes, so phase 1 never
drops a real duplicate.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import AsyncIterator
from collections.abc import Iterable
from dataclasses import dataclass
from photosift.progress import Progress
from photosift.progress import ProgressStream

import asyncio
import hashlib
import logging
import os
import pathlib
import stat


logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
ALGORITHM = "sha256"
EMPTY_QUICK_HASH = "empty"


@dataclass(frozen=True)
class HashResult:
    """Full content hash of one file."""

    path: pathlib.Path
    hash: str
    algorithm: str
    file_size: int


@dataclass
class DuplicateGroup:
    """A group of files with identical content."""

    hash: str
    file_size: int
    files: list[pathlib.Path]

    @property
    def wasted_bytes(self) -> int:
        return self.file_size * (len(self.files) - 1)


@dataclass(frozen=True)
class SpaceSummary:
    """Space that could be reclaimed by keeping one copy per group."""

    total_wasted_bytes: int
    total_groups: int
    total_duplicate_files: int


def hash_file(
    path: pathlib.Path, chunk_size: int = CHUNK_SIZE, algorithm: str = ALGORITHM
) -> str:
    """Compute the hex digest of a file, streaming it in fixed-size chunks."""
    digest = hashlib.new(algorithm)
    with path.open("rb") as f:
        while chunk := f.read(chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


def find_duplicates(hash_results: Iterable[HashResult]) -> list[DuplicateGroup]:
    """Group hash results by full hash.

    Only hashes shared by at least two files form a group. Groups are
    ordered by member count, most duplicated first; ties keep the order in
    which their hash was first seen.
    """
    by_hash: dict[str, list[HashResult]] = defaultdict(list)
    for result in hash_results:
        by_hash[result.hash].append(result)

    groups = [
        DuplicateGroup(
            hash=h,
            file_size=results[0].file_size,
            files=[r.path for r in results],
        )
        for h, results in by_hash.items()
        if len(results) >= 2
    ]
    groups.sort(key=lambda g: len(g.files), reverse=True)
    return groups


def duplicate_space(groups: Iterable[DuplicateGroup]) -> SpaceSummary:
    """Summarize how many bytes and files are redundant copies."""
    wasted = 0
    total_groups = 0
    redundant = 0
    for group in groups:
        total_groups += 1
        wasted += group.wasted_bytes
        redundant += len(group.files) - 1
    return SpaceSummary(
        total_wasted_bytes=wasted,
        total_groups=total_groups,
        total_duplicate_files=redundant,
    )


class ContentHasher:
    """Memory-bounded content fingerprinting.

    Blocking reads run through :func:`asyncio.to_thread` one file at a time,
    so a batch never has more than one file open and the event loop stays
    responsive between files.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE, algorithm: str = ALGORITHM) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        hashlib.new(algorithm)  # reject unknown algorithms early
        self.chunk_size = chunk_size
        self._algorithm = algorithm

    @property
    def algorithm(self) -> str:
        return self._algorithm

    async def full_hash(self, path: os.PathLike | str) -> HashResult:
        """Hash the complete content of *path*.

        Raises FileNotFoundError if the file is missing and OSError if it
        is not a regular file or cannot be read.
        """
        return await asyncio.to_thread(self._full_hash_sync, pathlib.Path(path))

    async def quick_hash(self, path: os.PathLike | str) -> str:
        """Cheap pre-filter fingerprint of *path*."""
        return await asyncio.to_thread(self._quick_hash_sync, pathlib.Path(path))

    async def are_identical(self, a: os.PathLike | str, b: os.PathLike | str) -> bool:
        """Compare two files by size first, then by full hash."""
        a, b = pathlib.Path(a), pathlib.Path(b)
        size_a = (await asyncio.to_thread(a.stat)).st_size
        size_b = (await asyncio.to_thread(b.stat)).st_size
        if size_a != size_b:
            return False
        return (await self.full_hash(a)).hash == (await self.full_hash(b)).hash

    def hash_batch(self, paths: Iterable[os.PathLike | str]) -> HashBatch:
        """Full-hash *paths* sequentially; consume the result with ``async for``."""
        return HashBatch(self, paths)

    def two_phase_duplicates(self, paths: Iterable[os.PathLike | str]) -> TwoPhaseScan:
        """Find duplicates with a quick-hash pre-filter; consume with ``async for``."""
        return TwoPhaseScan(self, paths)

    def _regular_file_size(self, path: pathlib.Path) -> int:
        st = path.stat()
        if stat.S_ISDIR(st.st_mode):
            raise IsADirectoryError(f"Not a file: {path}")
        if not stat.S_ISREG(st.st_mode):
            raise OSError(f"Not a regular file: {path}")
        return st.st_size

    def _full_hash_sync(self, path: pathlib.Path) -> HashResult:
        size = self._regular_file_size(path)
        digest = hash_file(path, self.chunk_size, self._algorithm)
        return HashResult(path=path, hash=digest, algorithm=self._algorithm, file_size=size)

    def _quick_hash_sync(self, path: pathlib.Path) -> str:
        size = self._regular_file_size(path)
        if size == 0:
            return EMPTY_QUICK_HASH

        digest = hashlib.new(self._algorithm)
        digest.update(str(size).encode())
        with path.open("rb") as f:
            digest.update(f.read(min(self.chunk_size, size)))
            if size > self.chunk_size * 2:
                f.seek(size - self.chunk_size)
                digest.update(f.read(self.chunk_size))
        return digest.hexdigest()


class HashBatch(ProgressStream):
    """Sequential full hashing of a list of files.

    A failure on one file is recorded in :attr:`errors` and the batch
    moves on to the next file.
    """

    def __init__(self, hasher: ContentHasher, paths: Iterable[os.PathLike | str]) -> None:
        super().__init__()
        self._hasher = hasher
        self.paths = [pathlib.Path(p) for p in paths]
        self.results: list[HashResult] = []
        self.errors: dict[pathlib.Path, Exception] = {}

    async def _steps(self) -> AsyncIterator[Progress]:
        total = len(self.paths)
        for completed, path in enumerate(self.paths, 1):
            try:
                self.results.append(await self._hasher.full_hash(path))
            except (OSError, ValueError) as exc:
                logger.debug(f"cannot hash {path}: {exc}")
                self.errors[path] = exc
            yield Progress("hash", completed, total, path)


@dataclass
class _PhaseCounts:
    quick: int = 0
    full: int = 0


class TwoPhaseScan(ProgressStream):
    """Quick-hash every file, then full-hash only quick-hash collisions."""

    def __init__(self, hasher: ContentHasher, paths: Iterable[os.PathLike | str]) -> None:
        super().__init__()
        self._hasher = hasher
        self.paths = [pathlib.Path(p) for p in paths]
        self.candidates: list[pathlib.Path] = []
        self.groups: list[DuplicateGroup] = []
        self.errors: dict[pathlib.Path, Exception] = {}
        self.hashed = _PhaseCounts()

    async def _steps(self) -> AsyncIterator[Progress]:
        total = len(self.paths)
        buckets: dict[str, list[pathlib.Path]] = defaultdict(list)
        for completed, path in enumerate(self.paths, 1):
            try:
                quick = await self._hasher.quick_hash(path)
            except (OSError, ValueError) as exc:
                logger.debug(f"skipping {path} in quick scan: {exc}")
                self.errors[path] = exc
            else:
                buckets[quick].append(path)
                self.hashed.quick += 1
            yield Progress("quick", completed, total, path)

        self.candidates = [p for bucket in buckets.values() if len(bucket) > 1 for p in bucket]
        logger.debug(
            f"phase 1 (quick hash): {total} files -> "
            f"{len(buckets)} distinct quick hash(es), "
            f"{len(self.candidates)} candidate(s) to hash fully"
        )

        results: list[HashResult] = []
        for completed, path in enumerate(self.candidates, 1):
            try:
                results.append(await self._hasher.full_hash(path))
                self.hashed.full += 1
            except (OSError, ValueError) as exc:
                logger.debug(f"skipping {path} in full hash: {exc}")
                self.errors[path] = exc
            yield Progress("full", completed, len(self.candidates), path)

        self.groups = find_duplicates(results)
        logger.debug(
            f"phase 2 (full hash): {self.hashed.full} files hashed, "
            f"{len(self.groups)} duplicate group(s)"
        )
