"""
Per-subject AI assistant on/off state.

File shape: ``{"version": 1, "states": {subjectId: {"enabled": bool, "enabledAt"?, "disabledAt"?}}}``
"""

import logging
import time
from pathlib import Path
from typing import Optional, Union

from infra.storage import JsonDocumentStore

from .subject import make_subject_id

logger = logging.getLogger(__name__)

AI_STATE_FILE = "ai-assistant-state.json"


def _default() -> dict:
    return {"version": 1, "states": {}}


def _valid(document: dict) -> bool:
    return isinstance(document.get("states"), dict)


def _now_ms() -> int:
    return int(time.time() * 1000)


class AiAssistantStateStore:
    """Subjects without stored state fall back to ``default_enabled``."""

    def __init__(self, data_dir: Union[str, Path], default_enabled: bool = True):
        self._store = JsonDocumentStore(Path(data_dir) / AI_STATE_FILE, _default, validate=_valid)
        self.default_enabled = default_enabled

    def get_state(self, account_id: str, open_id: str) -> Optional[dict]:
        return self._store.read()["states"].get(make_subject_id(account_id, open_id))

    def is_enabled(self, account_id: str, open_id: str) -> bool:
        state = self.get_state(account_id, open_id)
        if not isinstance(state, dict):
            return self.default_enabled
        return bool(state.get("enabled", self.default_enabled))

    async def set_enabled(self, account_id: str, open_id: str, enabled: bool) -> None:
        subject = make_subject_id(account_id, open_id)
        stamp_key = "enabledAt" if enabled else "disabledAt"

        def mutate(document: dict) -> None:
            document["states"][subject] = {"enabled": enabled, stamp_key: _now_ms()}

        await self._store.update(mutate)
        logger.info(f"[wemp:{account_id}] AI assistant {'enabled' if enabled else 'disabled'} for {open_id}")
