"""
Render retrieved memories into prompt context.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from core.config import REPLY_STYLE_HINT
from core.models import MemoryCategory

EMPTY_SECTION = "None"


@dataclass(frozen=True)
class AssembledContext:
    facts: str
    recent: str

    @classmethod
    def empty(cls) -> "AssembledContext":
        return cls(facts=EMPTY_SECTION, recent=EMPTY_SECTION)

    @property
    def is_empty(self) -> bool:
        return self.facts == EMPTY_SECTION and self.recent == EMPTY_SECTION


def assemble(memories: Iterable) -> AssembledContext:
    """
    Split memories into a facts block and a recent-context block.

    Facts keep only the stored user statement; conversation memories render
    as ``user → response``. Input order is preserved. An empty block renders
    as ``"None"``.
    """
    fact_lines = []
    recent_lines = []
    for memory in memories or ():
        category = MemoryCategory(memory.category)
        if category == MemoryCategory.fact:
            fact_lines.append(f"- {memory.user_text}")
        else:
            recent_lines.append(f"- {memory.user_text} → {memory.response_text or ''}".rstrip())
    return AssembledContext(
        facts="\n".join(fact_lines) if fact_lines else EMPTY_SECTION,
        recent="\n".join(recent_lines) if recent_lines else EMPTY_SECTION,
    )


def build_prompt(context: AssembledContext, message: str, style_hint: Optional[str] = None) -> str:
    hint = REPLY_STYLE_HINT if style_hint is None else style_hint
    prompt = (
        f"User preferences:\n{context.facts}\n\n"
        f"Recent context:\n{context.recent}\n\n"
        f"User:\n{message}"
    )
    if hint:
        prompt += f"\n\n{hint}"
    return prompt
