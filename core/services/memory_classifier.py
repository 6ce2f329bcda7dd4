"""
Lexical heuristics deciding what to recall and what to remember.

All functions are pure. They favor precision: a preference phrased in an
unusual way is simply not remembered.
"""

from __future__ import annotations

import re

from core.models import MemoryCategory

_TRAILING_PUNCTUATION = " \t\n!.?,"

_GREETING_ONLY = re.compile(r"^(hi|hello|hey)$", re.IGNORECASE)
_ACKNOWLEDGEMENT_ONLY = re.compile(
    r"^(hi|hello|hey|ok|thanks|thank you|yes|no)$",
    re.IGNORECASE,
)
_BACK_REFERENCE = re.compile(
    r"previous|before|earlier|last time|remember|history|what did|what was",
    re.IGNORECASE,
)
# First-person preference/identity phrasing and dietary vocabulary.
_PREFERENCE = re.compile(
    r"i am|i'm|i like|i love|i hate|vegetarian|vegan|allergic|diet|avoid|preference",
    re.IGNORECASE,
)

MIN_RETRIEVAL_LENGTH = 10


def _normalize(text: str) -> str:
    return (text or "").strip().rstrip(_TRAILING_PUNCTUATION).strip()


def needs_retrieval(text: str) -> bool:
    stripped = (text or "").strip()
    if _GREETING_ONLY.match(_normalize(text)):
        return False
    return len(stripped) > MIN_RETRIEVAL_LENGTH or bool(_BACK_REFERENCE.search(stripped))


def worth_storing(text: str) -> bool:
    if _ACKNOWLEDGEMENT_ONLY.match(_normalize(text)):
        return False
    return bool(_PREFERENCE.search(text or ""))


def category_of(text: str) -> MemoryCategory:
    if _PREFERENCE.search(text or ""):
        return MemoryCategory.fact
    return MemoryCategory.conversation
