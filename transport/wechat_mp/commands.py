"""
Chat commands recognised in plain text messages.
"""

from enum import Enum
from typing import Optional


class SpecialCommand(str, Enum):
    PAIR = "pair"
    UNPAIR = "unpair"
    STATUS = "status"
    AI_ON = "ai_on"
    AI_OFF = "ai_off"


_SPECIAL_COMMANDS = {
    "配对": SpecialCommand.PAIR,
    "绑定": SpecialCommand.PAIR,
    "解除配对": SpecialCommand.UNPAIR,
    "取消绑定": SpecialCommand.UNPAIR,
    "状态": SpecialCommand.STATUS,
    "/status": SpecialCommand.STATUS,
    "开启ai": SpecialCommand.AI_ON,
    "开启ai助手": SpecialCommand.AI_ON,
    "关闭ai": SpecialCommand.AI_OFF,
    "关闭ai助手": SpecialCommand.AI_OFF,
}


def is_command(text: Optional[str]) -> bool:
    return (text or "").lstrip().startswith("/")


def match_special_command(text: Optional[str]) -> Optional[SpecialCommand]:
    """Whole-message match; '开启AI' and '开启 AI' are the same command."""
    normalized = "".join((text or "").split()).lower()
    return _SPECIAL_COMMANDS.get(normalized)
