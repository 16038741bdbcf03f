"""Persisted per-subject state kept under the channel data directory."""

from .ai_assistant import AiAssistantStateStore
from .menu_payload import MenuPayloadStore, make_menu_payload_id
from .opt_out import OptOutStore
from .pairing_codes import PairedSubjectStore, PairingCode, PairingCodeStore
from .pending_images import PendingImage, PendingImageStore
from .subject import SubjectId, make_subject_id, parse_subject_id

__all__ = [
    "AiAssistantStateStore",
    "MenuPayloadStore",
    "make_menu_payload_id",
    "OptOutStore",
    "PairedSubjectStore",
    "PairingCode",
    "PairingCodeStore",
    "PendingImage",
    "PendingImageStore",
    "SubjectId",
    "make_subject_id",
    "parse_subject_id",
]
