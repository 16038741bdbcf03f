"""
Access control / pairing resolver.

Decides whether a subject is paired (full personal assistant) or unpaired
(customer-service agent).

Resolution order:
1. Opt-out overlay: an opted-out subject is unpaired, always
2. Allow-list snapshot pulled from the AllowListSource, refreshed every 10 s,
   plus approvals recorded in this process that the source has not returned yet
3. Anything else, including a failed or empty pull, is unpaired

A recorded approval stays in effect until a pull returns the subject or the
grace period runs out, whichever comes first.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional, Set

from services.allowlist import AllowListSource
from services.approval import ApprovalResult, PairingApprover
from state.opt_out import OptOutStore
from state.pairing_codes import PairingCode
from state.subject import SubjectId, make_subject_id, parse_subject_id

logger = logging.getLogger(__name__)

SNAPSHOT_TTL_S = 10.0
APPROVAL_GRACE_S = 5 * 60.0
CHANNEL_NAME = "wemp"


@dataclass
class AllowListSnapshot:
    subject_ids: Set[str] = field(default_factory=set)
    fetched_at: Optional[float] = None


@dataclass
class PairingApproval:
    """Result of approving a code through the resolver."""

    result: ApprovalResult
    subject: Optional[SubjectId] = None


class PairingResolver:

    def __init__(
        self,
        allow_list: AllowListSource,
        opt_out: OptOutStore,
        approver: Optional[PairingApprover] = None,
        channel: str = CHANNEL_NAME,
        snapshot_ttl_s: float = SNAPSHOT_TTL_S,
        approval_grace_s: float = APPROVAL_GRACE_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.allow_list = allow_list
        self.opt_out = opt_out
        self.approver = approver
        self.channel = channel
        self.snapshot_ttl_s = snapshot_ttl_s
        self.approval_grace_s = approval_grace_s
        self._clock = clock
        self._snapshot = AllowListSnapshot()
        self._approved: Dict[str, float] = {}  # subject id -> recorded at

    def _is_stale(self) -> bool:
        fetched_at = self._snapshot.fetched_at
        return fetched_at is None or self._clock() - fetched_at >= self.snapshot_ttl_s

    def _approval_pending(self, subject_id: str, now: float) -> bool:
        recorded_at = self._approved.get(subject_id)
        return recorded_at is not None and now - recorded_at < self.approval_grace_s

    def _settle_approvals(self, pulled: Iterable[str]) -> None:
        now = self._clock()
        pulled = set(pulled)
        for subject_id in list(self._approved):
            if subject_id in pulled or not self._approval_pending(subject_id, now):
                del self._approved[subject_id]

    async def refresh(self) -> None:
        """Pull the allow-list; on failure the snapshot becomes empty."""
        try:
            ids = await self.allow_list.pull(self.channel)
            self._snapshot = AllowListSnapshot(subject_ids=set(ids or ()), fetched_at=self._clock())
        except Exception as e:
            logger.warning(f"[wemp] Allow-list refresh failed; treating everyone as unpaired: {e}")
            self._snapshot = AllowListSnapshot(fetched_at=self._clock())
        self._settle_approvals(self._snapshot.subject_ids)

    async def is_allow_listed(self, account_id: str, open_id: str) -> bool:
        if self._is_stale():
            await self.refresh()
        subject_id = make_subject_id(account_id, open_id)
        return subject_id in self._snapshot.subject_ids or self._approval_pending(subject_id, self._clock())

    async def is_paired(self, account_id: str, open_id: str) -> bool:
        if self.opt_out.is_opted_out(account_id, open_id):
            return False
        return await self.is_allow_listed(account_id, open_id)

    def record_approved_subject_id(self, subject_id: str) -> None:
        """Make an approval visible now, whatever the state of the snapshot."""
        subject_id = (subject_id or "").strip()
        if subject_id:
            self._approved[subject_id] = self._clock()

    async def set_opt_out(self, account_id: str, open_id: str, opted_out: bool) -> None:
        await self.opt_out.set_opt_out(account_id, open_id, opted_out)

    async def request_pairing(self, account_id: str, open_id: str) -> Optional[PairingCode]:
        """Ask the approver for a code; None when pairing is not available."""
        if self.approver is None:
            return None
        return await self.approver.request_code(account_id, open_id)

    async def approve_code(self, code: str) -> PairingApproval:
        """
        Approve ``code`` through the configured approver.

        On success the opt-out overlay is cleared for the subject and the
        approval is recorded in memory.
        """
        if self.approver is None:
            return PairingApproval(ApprovalResult(status="unavailable", error="Pairing approval runtime not available"))

        result = await self.approver.approve(code)
        if not result.approved:
            return PairingApproval(result)

        subject = parse_subject_id(result.subject_id)
        if subject is not None:
            if self.opt_out.is_opted_out(subject.account_id, subject.open_id):
                await self.opt_out.set_opt_out(subject.account_id, subject.open_id, False)
            self.record_approved_subject_id(str(subject))
            logger.info(f"[wemp:{subject.account_id}] Pairing approved for {subject.open_id}")
        else:
            logger.info("[wemp] Pairing approved; approver did not report the subject")
        return PairingApproval(result, subject)
