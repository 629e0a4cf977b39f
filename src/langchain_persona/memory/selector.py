"""
Greedy, order-preserving selection of memories within a token budget.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..errors import BudgetExhausted
from .documents import MemoryDocument
from .formatter import format_single_memory, memory_wrapper_text
from .token_budget import TokenCounter, count_tokens

logger = logging.getLogger(__name__)


@dataclass
class MemorySelectionResult:
    selected: list[MemoryDocument] = field(default_factory=list)
    tokens_used: int = 0
    dropped: int = 0
    dropped_due_to_size: int = 0


class MemorySelector:
    """
    Knapsack-style memory selection.

    Candidates arrive sorted by descending relevance. Each one is included
    whole if it fits in what is left; otherwise it is skipped and the next
    (possibly smaller) candidate is tried. A single pass, no reconsideration.
    """

    def __init__(self, counter: TokenCounter = count_tokens):
        self._count = counter

    def wrapper_overhead(self) -> int:
        """Token cost of the archive framing and instructions."""
        return self._count(memory_wrapper_text())

    def _content_budget(self, budget: int) -> int:
        overhead = self.wrapper_overhead()
        if budget - overhead <= 0:
            raise BudgetExhausted(budget, overhead)
        return budget - overhead

    def select(
        self,
        candidates: list[MemoryDocument],
        budget: int,
        timezone: Optional[str] = None,
    ) -> MemorySelectionResult:
        if not candidates or budget <= 0:
            return MemorySelectionResult(dropped=len(candidates))

        try:
            remaining = self._content_budget(budget)
        except BudgetExhausted as e:
            logger.info("Memory budget too small for archive wrapper: %s", e)
            return MemorySelectionResult(dropped=len(candidates))

        selected: list[MemoryDocument] = []
        used = 0
        dropped_due_to_size = 0

        for doc in candidates:
            tokens = self._count(format_single_memory(doc, timezone))
            if used + tokens <= remaining:
                selected.append(doc)
                used += tokens
                continue
            if tokens > remaining:
                dropped_due_to_size += 1
                logger.debug(
                    "Memory %s alone (%d tokens) exceeds budget %d, skipping",
                    doc.id, tokens, remaining,
                )
            else:
                logger.debug(
                    "Memory %s (%d tokens) does not fit in %d remaining, skipping",
                    doc.id, tokens, remaining - used,
                )

        tokens_used = used + self.wrapper_overhead() if selected else 0
        result = MemorySelectionResult(
            selected=selected,
            tokens_used=tokens_used,
            dropped=len(candidates) - len(selected),
            dropped_due_to_size=dropped_due_to_size,
        )
        if result.dropped:
            logger.info(
                "Selected %d/%d memories (%d tokens, budget %d, %d oversized)",
                len(selected), len(candidates), tokens_used, budget, dropped_due_to_size,
            )
        return result
