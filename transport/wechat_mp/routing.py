"""
Webhook target registry.

Maps normalized request paths to the accounts registered on them. Several
accounts may share one path; the signature decides which one a request is for.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .schemas import WechatMpAccount

logger = logging.getLogger(__name__)


def normalize_path(path: Optional[str]) -> str:
    """Ensure a leading slash and drop trailing slashes (except for the root)."""
    value = (path or "").strip() or "/"
    if not value.startswith("/"):
        value = "/" + value
    if len(value) > 1:
        value = value.rstrip("/") or "/"
    return value


@dataclass
class WebhookTarget:
    account: WechatMpAccount
    config: Any = None


@dataclass
class RouteMatch:
    """A resolved request: the registered base path and its targets."""

    path: str
    targets: List[WebhookTarget] = field(default_factory=list)

    @property
    def accounts(self) -> List[WechatMpAccount]:
        return [t.account for t in self.targets]

    def candidates(self) -> List[WebhookTarget]:
        """Targets in most-recently-registered-first order."""
        return list(reversed(self.targets))

    def subpath(self, request_path: str) -> str:
        """Remainder of ``request_path`` below the base path ('' for the base itself)."""
        request_path = normalize_path(request_path)
        if request_path == self.path:
            return ""
        if self.path == "/":
            return request_path
        return request_path[len(self.path):]


class WebhookTargetRegistry:
    """
    Ordered path -> [WebhookTarget] mapping.

    Registration appends; unregistration filters out exactly the registered
    entry, so accounts sharing a path survive each other's teardown.
    """

    def __init__(self):
        self._targets: Dict[str, List[WebhookTarget]] = {}

    def __len__(self) -> int:
        return sum(len(v) for v in self._targets.values())

    def paths(self) -> List[str]:
        return list(self._targets)

    def register(self, path: str, account: WechatMpAccount, config: Any = None) -> Callable[[], None]:
        """Register ``account`` on ``path``. Returns an idempotent unregister callable."""
        key = normalize_path(path)
        target = WebhookTarget(account=account, config=config)
        self._targets.setdefault(key, []).append(target)
        logger.info(f"[wemp:{account.account_id}] Webhook registered at {key}")

        def unregister() -> None:
            self._remove(key, target)

        return unregister

    def _remove(self, key: str, target: WebhookTarget) -> None:
        existing = self._targets.get(key)
        if not existing:
            return
        remaining = [t for t in existing if t is not target]
        if len(remaining) == len(existing):
            return
        if remaining:
            self._targets[key] = remaining
        else:
            del self._targets[key]
        logger.info(f"[wemp:{target.account.account_id}] Webhook unregistered from {key}")

    def resolve(self, request_path: str) -> Optional[RouteMatch]:
        """
        Find the targets for a request path.

        Exact match first; otherwise the longest registered prefix P such that
        the path equals P or is a '/'-delimited descendant of it.
        """
        path = normalize_path(request_path)
        exact = self._targets.get(path)
        if exact:
            return RouteMatch(path=path, targets=list(exact))

        best: Optional[str] = None
        for registered in self._targets:
            if registered == "/":
                is_descendant = True
            else:
                is_descendant = path.startswith(registered + "/")
            if is_descendant and (best is None or len(registered) > len(best)):
                best = registered

        if best is None:
            return None
        return RouteMatch(path=best, targets=list(self._targets[best]))
