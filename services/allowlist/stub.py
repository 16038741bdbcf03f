"""
In-memory allow-list sources for tests and single-operator setups.
"""

from typing import Iterable, List

from .base import AllowListSource


class StaticAllowListSource(AllowListSource):
    """Fixed set of subject ids. ``add`` exists so tests can grow it."""

    def __init__(self, subject_ids: Iterable[str] = ()):
        self._ids = [s for s in subject_ids if s]
        self.pull_count = 0

    def add(self, subject_id: str) -> None:
        if subject_id not in self._ids:
            self._ids.append(subject_id)

    async def pull(self, channel: str) -> List[str]:
        self.pull_count += 1
        return list(self._ids)


class NoOpAllowListSource(AllowListSource):
    """Nobody is paired (disabled mode)."""

    async def pull(self, channel: str) -> List[str]:
        return []
