"""Subject ids: ``accountId:openId``, one user within one Official Account."""

from typing import NamedTuple, Optional


class SubjectId(NamedTuple):
    account_id: str
    open_id: str

    def __str__(self) -> str:
        return make_subject_id(self.account_id, self.open_id)


def make_subject_id(account_id: str, open_id: str) -> str:
    return f"{account_id}:{open_id}"


def parse_subject_id(value: Optional[str]) -> Optional[SubjectId]:
    """Split on the first ':'; None unless both halves are non-empty."""
    raw = (value or "").strip()
    account_id, sep, open_id = raw.partition(":")
    if not sep or not account_id or not open_id:
        return None
    return SubjectId(account_id, open_id)
