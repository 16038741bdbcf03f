"""
Allow-list source exports.
"""

from .base import AllowListError, AllowListSource
from .file import JsonFileAllowListSource, PairedSubjectsAllowListSource
from .stub import NoOpAllowListSource, StaticAllowListSource

__all__ = [
    "AllowListError",
    "AllowListSource",
    "JsonFileAllowListSource",
    "PairedSubjectsAllowListSource",
    "NoOpAllowListSource",
    "StaticAllowListSource",
]
