"""
Pairing approval abstract interface.

Role: hand out pairing codes to users and turn a code submitted by an operator
into an approved subject. The same approver does both, so a code is always
approved by whoever issued it.

Rules:
- Approval is the only way a code becomes a pairing
- Unknown or expired codes are a normal "rejected" result, not an exception
- "unavailable" means no approval mechanism exists (HTTP 501)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Literal, Optional

from state.pairing_codes import PairingCode


ApprovalStatus = Literal["approved", "rejected", "unavailable"]


@dataclass
class ApprovalResult:
    """Outcome of one approval attempt."""

    status: ApprovalStatus
    subject_id: Optional[str] = None  # accountId:openId when known
    error: Optional[str] = None
    details: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.status == "approved"


class PairingApprover(ABC):
    """
    Abstract approval boundary.
    The pairing API and the chat pairing command depend ONLY on this interface.
    """

    # True when the approver itself tells the user about the approval
    notifies_subject: bool = False

    @abstractmethod
    async def request_code(self, account_id: str, open_id: str) -> Optional[PairingCode]:
        """
        Issue (or reuse) a pairing code for a subject.

        Returns:
            PairingCode, or None when no code can be issued right now
        """
        raise NotImplementedError

    @abstractmethod
    async def approve(self, code: str) -> ApprovalResult:
        """
        Approve a pairing code.

        Args:
            code: Code as submitted (already stripped)

        Returns:
            ApprovalResult; never raises for a bad code
        """
        raise NotImplementedError
