"""
Bounded working set of asyncio tasks whose size follows the rate governor.

The capacity is re-read from the governor on every scheduling decision, so
a ceiling change mid-run takes effect at the next admission.
"""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

from screener.data.governor import RateGovernor


class AdaptiveWorkingSet:
    """Tracks in-flight tasks and admits new ones while under the ceiling."""

    def __init__(self, governor: RateGovernor) -> None:
        self.governor = governor
        self._pending: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def capacity(self) -> int:
        return max(1, self.governor.concurrency)

    def has_room(self) -> bool:
        return len(self._pending) < self.capacity

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        """Start a task. Callers check has_room() first."""
        task = asyncio.create_task(coro, name=name)
        self._pending.add(task)
        return task

    async def wait_any(self) -> set[asyncio.Task[Any]]:
        """Wait until at least one task finishes and return the finished ones."""
        if not self._pending:
            return set()
        done, pending = await asyncio.wait(self._pending, return_when=asyncio.FIRST_COMPLETED)
        self._pending = set(pending)
        return done

    async def drain(self) -> set[asyncio.Task[Any]]:
        """Wait for every in-flight task and return them all."""
        if not self._pending:
            return set()
        done, _ = await asyncio.wait(self._pending)
        self._pending = set()
        return done

    async def cancel_all(self) -> None:
        """Cancel in-flight tasks and wait for them to unwind."""
        for task in self._pending:
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._pending = set()
