"""
Opt-out overlay.

A local override that forces a paired subject back to unpaired without touching
the external allow-list. File shape: ``{"version": 1, "optOut": {subjectId: true}}``.
"""

import logging
from pathlib import Path
from typing import Union

from infra.storage import JsonDocumentStore

from .subject import make_subject_id

logger = logging.getLogger(__name__)

OPT_OUT_FILE = "opt-out.json"


def _default() -> dict:
    return {"version": 1, "optOut": {}}


def _valid(document: dict) -> bool:
    return isinstance(document.get("optOut"), dict)


class OptOutStore:
    """Subjects that asked to be treated as unpaired."""

    def __init__(self, data_dir: Union[str, Path]):
        self._store = JsonDocumentStore(Path(data_dir) / OPT_OUT_FILE, _default, validate=_valid)

    @property
    def file_path(self) -> Path:
        return self._store.file_path

    def is_opted_out(self, account_id: str, open_id: str) -> bool:
        return bool(self._store.read()["optOut"].get(make_subject_id(account_id, open_id)))

    async def set_opt_out(self, account_id: str, open_id: str, opted_out: bool) -> None:
        subject = make_subject_id(account_id, open_id)

        def mutate(document: dict) -> None:
            if opted_out:
                document["optOut"][subject] = True
            else:
                document["optOut"].pop(subject, None)

        await self._store.update(mutate)
        logger.info(f"[wemp:{account_id}] opt-out {'set' if opted_out else 'cleared'} for {open_id}")
