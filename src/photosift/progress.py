"""Progress events for long-running batch operations.

Batch operations (hashing, two-phase duplicate detection, trashing) are
exposed as objects that are consumed with ``async for``. Each iteration
step processes exactly one file and yields a :class:`Progress` event, so
the caller controls pacing and can stop early with :meth:`ProgressStream.aclose`.
Results accumulate on the batch object itself.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from collections.abc import AsyncIterator
from collections.abc import Callable
from dataclasses import dataclass

import pathlib


@dataclass(frozen=True)
class Progress:
    """One step of a batch operation."""

    phase: str
    completed: int
    total: int
    path: pathlib.Path | None = None

    @property
    def fraction(self) -> float:
        if self.total == 0:
            return 1.0
        return self.completed / self.total


class ProgressStream:
    """Base class for batch operations that report progress per file.

    Leaving an ``async for`` loop early does not finish the operation's
    cleanup by itself; call :meth:`aclose` afterwards, or consume the
    stream inside ``async with`` so that locks and partial results are
    released as soon as the block ends.
    """

    def __init__(self) -> None:
        self._steps_iter: AsyncGenerator[Progress, None] | None = None
        self._closed = False
        self.finished = False

    def __aiter__(self) -> ProgressStream:
        if self.finished or self._closed:
            raise RuntimeError(f"{type(self).__name__} can only be consumed once")
        if self._steps_iter is None:
            self._steps_iter = self._steps()
        return self

    async def __anext__(self) -> Progress:
        if self._steps_iter is None:
            self.__aiter__()
        try:
            return await self._steps_iter.__anext__()
        except StopAsyncIteration:
            self.finished = True
            raise
        except BaseException:
            self._closed = True
            raise

    async def aclose(self) -> None:
        """Stop the operation and run its cleanup; a no-op once finished."""
        self._closed = True
        if self._steps_iter is not None:
            await self._steps_iter.aclose()

    async def __aenter__(self) -> ProgressStream:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _steps(self) -> AsyncIterator[Progress]:
        raise NotImplementedError

    async def run(self, on_progress: Callable[[Progress], None] | None = None):
        """Drain the batch, optionally reporting each step, and return it."""
        async with self:
            async for progress in self:
                if on_progress is not None:
                    on_progress(progress)
        return self
