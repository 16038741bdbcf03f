"""
Local pairing approval backed by the JSON stores in the data directory.
"""

import logging

from state.pairing_codes import PairedSubjectStore, PairingCode, PairingCodeStore

from .base import ApprovalResult, PairingApprover

logger = logging.getLogger(__name__)


class LocalPairingApprover(PairingApprover):
    """
    Issues codes into and consumes them from ``pending-codes.json``; approved
    subjects are recorded in ``paired-users.json``.
    """

    def __init__(self, codes: PairingCodeStore, subjects: PairedSubjectStore):
        self.codes = codes
        self.subjects = subjects

    async def request_code(self, account_id: str, open_id: str) -> PairingCode:
        return await self.codes.issue(account_id, open_id)

    async def approve(self, code: str) -> ApprovalResult:
        entry = await self.codes.consume(code)
        if entry is None:
            return ApprovalResult(status="rejected", error="Invalid or expired pairing code")

        subject_id = await self.subjects.add(entry.account_id, entry.open_id, code=entry.code)
        return ApprovalResult(status="approved", subject_id=subject_id)
