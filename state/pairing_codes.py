"""
Pairing codes and the paired-subjects ledger.

A user sends the pairing command in chat and receives a short numeric code. An
operator submits that code to the pairing API; approval consumes the code and
adds the subject to ``paired-users.json``.

pending-codes.json: ``{"version": 1, "codes": {code: {"accountId", "openId", "createdAt", "expiresAt"}}}``
paired-users.json:  ``{"version": 1, "subjects": {subjectId: {"accountId", "openId", "pairedAt", "code"?}}}``
"""

import logging
import random
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from infra.storage import JsonDocumentStore

from .subject import make_subject_id

logger = logging.getLogger(__name__)

PENDING_CODES_FILE = "pending-codes.json"
PAIRED_USERS_FILE = "paired-users.json"

PAIRING_CODE_TTL_MS = 5 * 60 * 1000
PAIRING_CODE_MIN = 100_000
PAIRING_CODE_MAX = 999_999


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PairingCode:
    code: str
    account_id: str
    open_id: str
    created_at: int
    expires_at: int

    @property
    def subject_id(self) -> str:
        return make_subject_id(self.account_id, self.open_id)

    def to_dict(self) -> dict:
        return {
            "accountId": self.account_id,
            "openId": self.open_id,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, code: str, data: dict) -> Optional["PairingCode"]:
        try:
            return cls(
                code=code,
                account_id=str(data["accountId"]),
                open_id=str(data["openId"]),
                created_at=int(data.get("createdAt", 0)),
                expires_at=int(data["expiresAt"]),
            )
        except (KeyError, TypeError, ValueError):
            return None


def _codes_default() -> dict:
    return {"version": 1, "codes": {}}


def _codes_valid(document: dict) -> bool:
    return isinstance(document.get("codes"), dict)


def _prune_expired(codes: dict, now: int) -> None:
    for code in list(codes):
        entry = PairingCode.from_dict(code, codes[code]) if isinstance(codes[code], dict) else None
        if entry is None or entry.expires_at <= now:
            del codes[code]


class PairingCodeStore:
    """Short-lived numeric codes, one live code per subject."""

    def __init__(
        self,
        data_dir: Union[str, Path],
        ttl_ms: int = PAIRING_CODE_TTL_MS,
        rng: Optional[random.Random] = None,
    ):
        self._store = JsonDocumentStore(Path(data_dir) / PENDING_CODES_FILE, _codes_default, validate=_codes_valid)
        self.ttl_ms = ttl_ms
        self._rng = rng or random.SystemRandom()

    async def issue(self, account_id: str, open_id: str) -> PairingCode:
        """Return the subject's unexpired code, or mint a new one."""
        now = _now_ms()

        def mutate(document: dict) -> PairingCode:
            codes = document["codes"]
            _prune_expired(codes, now)
            for code, data in codes.items():
                existing = PairingCode.from_dict(code, data)
                if existing and existing.account_id == account_id and existing.open_id == open_id:
                    return existing

            code = str(self._rng.randint(PAIRING_CODE_MIN, PAIRING_CODE_MAX))
            while code in codes:
                code = str(self._rng.randint(PAIRING_CODE_MIN, PAIRING_CODE_MAX))
            entry = PairingCode(code, account_id, open_id, now, now + self.ttl_ms)
            codes[code] = entry.to_dict()
            return entry

        entry = await self._store.update(mutate)
        logger.info(f"[wemp:{account_id}] Pairing code issued for {open_id}")
        return entry

    async def consume(self, code: str) -> Optional[PairingCode]:
        """Remove and return the entry for ``code``; None if unknown or expired."""
        code = (code or "").strip()
        if not code:
            return None
        now = _now_ms()

        def mutate(document: dict) -> Optional[PairingCode]:
            codes = document["codes"]
            data = codes.pop(code, None)
            _prune_expired(codes, now)
            if not isinstance(data, dict):
                return None
            entry = PairingCode.from_dict(code, data)
            if entry is None or entry.expires_at <= now:
                return None
            return entry

        return await self._store.update(mutate)


def _subjects_default() -> dict:
    return {"version": 1, "subjects": {}}


def _subjects_valid(document: dict) -> bool:
    return isinstance(document.get("subjects"), dict)


class PairedSubjectStore:
    """Subjects approved through the local pairing flow."""

    def __init__(self, data_dir: Union[str, Path]):
        self._store = JsonDocumentStore(Path(data_dir) / PAIRED_USERS_FILE, _subjects_default, validate=_subjects_valid)

    def list_subject_ids(self, account_id: Optional[str] = None) -> List[str]:
        subjects = self._store.read()["subjects"]
        if account_id is None:
            return list(subjects)
        return [sid for sid, data in subjects.items() if isinstance(data, dict) and data.get("accountId") == account_id]

    async def add(self, account_id: str, open_id: str, code: Optional[str] = None) -> str:
        subject = make_subject_id(account_id, open_id)

        def mutate(document: dict) -> None:
            record = {"accountId": account_id, "openId": open_id, "pairedAt": _now_ms()}
            if code:
                record["code"] = code
            document["subjects"][subject] = record

        await self._store.update(mutate)
        logger.info(f"[wemp:{account_id}] Subject paired: {open_id}")
        return subject

