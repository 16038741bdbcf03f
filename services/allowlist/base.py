"""
Allow-list source abstract interface.

Role: report which subjects (``accountId:openId``) are paired for a channel.

Rules:
- Read only; the pairing resolver owns caching
- Failure is raised, never swallowed; the caller degrades to "nobody paired"
"""

from abc import ABC, abstractmethod
from typing import List


class AllowListError(Exception):
    """The allow-list could not be read."""
    pass


class AllowListSource(ABC):
    """
    Abstract allow-list boundary.
    The pairing resolver depends ONLY on this interface.
    """

    @abstractmethod
    async def pull(self, channel: str) -> List[str]:
        """
        Return every paired subject id for ``channel``.

        Args:
            channel: Channel name ("wemp")

        Returns:
            Subject ids in ``accountId:openId`` form

        Raises:
            AllowListError: source unavailable or unreadable
        """
        raise NotImplementedError
