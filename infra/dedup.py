"""
Inbound message deduplication.

WeChat retries a webhook delivery up to three times when it does not get a
timely answer; each retry carries the same MsgId (or CreateTime for events).
"""

import time
from collections import OrderedDict
from typing import Callable, Optional

DEFAULT_DEDUP_WINDOW_S = 30.0
DEFAULT_MAX_KEYS = 10_000


def build_dedup_key(account_id: str, open_id: str, msg_id: Optional[str], create_time: str) -> str:
    """Key a delivery as ``accountId:openId:(msgId|createTime)``."""
    return f"{account_id}:{open_id}:{msg_id or create_time}"


class MessageDeduplicator:
    """
    Bounded-lifetime set of seen delivery keys.

    Keys expire ``window_s`` seconds after first sight. Insertion order equals
    expiry order, so eviction only ever looks at the head of the map.
    """

    def __init__(
        self,
        window_s: float = DEFAULT_DEDUP_WINDOW_S,
        max_keys: int = DEFAULT_MAX_KEYS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_s = window_s
        self.max_keys = max_keys
        self._clock = clock
        self._seen: "OrderedDict[str, float]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def _evict_expired(self, now: float) -> None:
        while self._seen:
            key, expires_at = next(iter(self._seen.items()))
            if expires_at > now:
                break
            self._seen.popitem(last=False)

    def check_and_mark(self, key: str) -> bool:
        """
        Return True the first time ``key`` is seen inside the window.

        Repeats inside the window return False and do not extend it.
        """
        now = self._clock()
        self._evict_expired(now)
        if key in self._seen:
            return False
        if len(self._seen) >= self.max_keys:
            self._seen.popitem(last=False)
        self._seen[key] = now + self.window_s
        return True
