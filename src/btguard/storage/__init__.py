"""
Durable Storage.

SQLite-backed key-value persistence of string sets.
"""

from btguard.storage.database import (
    PreferenceDatabase,
    decode_string_set,
    encode_string_set,
)
from btguard.storage.models import Base, Preference

__all__ = [
    "Base",
    "Preference",
    "PreferenceDatabase",
    "decode_string_set",
    "encode_string_set",
]
