"""
Pairing approval exports.
"""

from .base import ApprovalResult, ApprovalStatus, PairingApprover
from .command import CommandPairingApprover, CommandResult, run_command_with_timeout
from .local import LocalPairingApprover

__all__ = [
    "ApprovalResult",
    "ApprovalStatus",
    "PairingApprover",
    "CommandPairingApprover",
    "CommandResult",
    "run_command_with_timeout",
    "LocalPairingApprover",
]
