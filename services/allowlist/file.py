"""
File-backed allow-list sources.

``PairedSubjectsAllowListSource`` reads the local ``paired-users.json`` ledger
written by the local approver. ``JsonFileAllowListSource`` reads an allow-list
maintained by another process, either a bare JSON array or an object with an
``allowFrom`` array.
"""

import json
import logging
from pathlib import Path
from typing import List, Union

from state.pairing_codes import PairedSubjectStore

from .base import AllowListError, AllowListSource

logger = logging.getLogger(__name__)


class PairedSubjectsAllowListSource(AllowListSource):

    def __init__(self, store: PairedSubjectStore):
        self.store = store

    async def pull(self, channel: str) -> List[str]:
        return self.store.list_subject_ids()


class JsonFileAllowListSource(AllowListSource):

    def __init__(self, file_path: Union[str, Path]):
        self.file_path = Path(file_path)

    async def pull(self, channel: str) -> List[str]:
        try:
            raw = json.loads(self.file_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            raise AllowListError(f"Cannot read allow-list {self.file_path}: {e}") from e

        if isinstance(raw, dict):
            raw = raw.get("allowFrom", [])
        if not isinstance(raw, list):
            raise AllowListError(f"Allow-list {self.file_path} is not a list")
        return [str(item).strip() for item in raw if str(item).strip()]
