"""
Access control: paired / unpaired resolution for WeChat subjects.
"""

from .pairing import PairingApproval, PairingResolver

__all__ = ["PairingApproval", "PairingResolver"]
