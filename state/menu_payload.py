"""
Menu click payload store.

Custom-menu click keys are capped at 128 bytes, while the content behind a
button (long text, article URLs) is not. Payloads are stored here and the key
carries only a short stable id.

File shape: ``{"version": 1, "accounts": {accountId: {id: {"payload": {...}, "updatedAt": ms}}}}``
"""

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Optional, Union

from infra.storage import JsonDocumentStore

logger = logging.getLogger(__name__)

MENU_PAYLOAD_FILE = "menu-payloads.json"
MENU_PAYLOAD_KEY_PREFIX = "WEMP_PAYLOAD_"

PAYLOAD_KINDS = ("text", "news", "image", "voice", "video", "finder", "unknown")


def _default() -> dict:
    return {"version": 1, "accounts": {}}


def _valid(document: dict) -> bool:
    return isinstance(document.get("accounts"), dict)


def make_menu_payload_id(account_id: str, payload: dict) -> str:
    """Stable 16-hex-char id for a payload (safe characters only)."""
    digest = hashlib.sha256()
    digest.update(account_id.encode("utf-8"))
    digest.update(b"\n")
    digest.update(json.dumps(payload, ensure_ascii=False, sort_keys=True).encode("utf-8"))
    return digest.hexdigest()[:16]


def payload_id_from_event_key(event_key: Optional[str]) -> Optional[str]:
    if event_key and event_key.startswith(MENU_PAYLOAD_KEY_PREFIX):
        return event_key[len(MENU_PAYLOAD_KEY_PREFIX):] or None
    return None


class MenuPayloadStore:

    def __init__(self, data_dir: Union[str, Path]):
        self._store = JsonDocumentStore(Path(data_dir) / MENU_PAYLOAD_FILE, _default, validate=_valid)

    def get(self, account_id: str, payload_id: str) -> Optional[dict]:
        entry = self._store.read()["accounts"].get(account_id, {}).get(payload_id)
        if not isinstance(entry, dict):
            return None
        return entry.get("payload")

    async def upsert(self, account_id: str, payload_id: str, payload: dict) -> None:
        if payload.get("kind") not in PAYLOAD_KINDS:
            raise ValueError(f"Unknown menu payload kind: {payload.get('kind')!r}")

        def mutate(document: dict) -> None:
            entries = document["accounts"].setdefault(account_id, {})
            entries[payload_id] = {"payload": payload, "updatedAt": int(time.time() * 1000)}

        await self._store.update(mutate)

    async def register(self, account_id: str, payload: dict) -> str:
        """Store ``payload`` under its derived id and return the click key for it."""
        payload_id = make_menu_payload_id(account_id, payload)
        await self.upsert(account_id, payload_id, payload)
        return MENU_PAYLOAD_KEY_PREFIX + payload_id
