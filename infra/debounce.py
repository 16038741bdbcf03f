"""
Inbound text debounce.

Users on mobile often split one thought over several quick messages. Plain
texts from the same subject are queued until a quiet interval passes with no
new arrival, then flushed as one combined dispatch.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

FlushHandler = Callable[[str, str, "DebounceItem"], Awaitable[None]]


@dataclass
class DebounceItem:
    """A queued inbound text. ``carrier`` holds the metadata used for dispatch."""

    text: str
    carrier: Any = None
    enqueued_at: float = field(default_factory=time.monotonic)


class DebounceCoordinator:
    """
    Per-subject text aggregation with a shared quiet interval.

    Each arrival restarts the subject's timer. On flush the queued texts are
    joined with newlines in arrival order and the most recent item is passed
    along as the carrier.
    """

    def __init__(self, quiet_s: float, on_flush: FlushHandler):
        self.quiet_s = quiet_s
        self._on_flush = on_flush
        self._pending: Dict[str, List[DebounceItem]] = {}
        self._timers: Dict[str, asyncio.Task] = {}

    def enqueue(self, key: str, item: DebounceItem) -> None:
        """Queue ``item`` for ``key`` and (re)start the quiet timer. Needs a running loop."""
        self._pending.setdefault(key, []).append(item)
        previous = self._timers.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._timers[key] = asyncio.create_task(self._flush_after_quiet(key))

    async def _flush_after_quiet(self, key: str) -> None:
        try:
            await asyncio.sleep(self.quiet_s)
        except asyncio.CancelledError:
            return
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]
        await self.flush(key)

    async def flush(self, key: str) -> None:
        """Flush ``key`` now. Handler failures are logged, never raised."""
        items = self._pending.pop(key, [])
        if not items:
            return
        combined = "\n".join(item.text for item in items if item.text)
        try:
            await self._on_flush(key, combined, items[-1])
        except Exception as e:
            logger.error(f"Debounced flush failed for {key}: {e}", exc_info=True)

    async def flush_all(self) -> None:
        """Cancel timers and flush everything still queued (shutdown path)."""
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()
        for key in list(self._pending):
            await self.flush(key)


class DebounceRegistry:
    """
    One coordinator per distinct quiet interval, shared by every subject.

    With a single global interval configured (the common case) exactly one
    coordinator exists for the whole process.
    """

    def __init__(self, on_flush: FlushHandler):
        self._on_flush = on_flush
        self._coordinators: Dict[int, DebounceCoordinator] = {}

    def __len__(self) -> int:
        return len(self._coordinators)

    def get(self, quiet_ms: int) -> Optional[DebounceCoordinator]:
        """Coordinator for ``quiet_ms``; None when debounce is disabled (<= 0)."""
        if quiet_ms <= 0:
            return None
        coordinator = self._coordinators.get(quiet_ms)
        if coordinator is None:
            coordinator = DebounceCoordinator(quiet_ms / 1000.0, self._on_flush)
            self._coordinators[quiet_ms] = coordinator
        return coordinator

    async def flush_all(self) -> None:
        for coordinator in self._coordinators.values():
            await coordinator.flush_all()
