"""
Token counting and budget arithmetic for prompt assembly.

The memory block gets at most ``memory_ratio`` of the window; when the other
prompt components are known it may shrink to what is actually left. History
then receives whatever the system prompt, current message and selected
memories leave behind.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional

import tiktoken

from .config import ContextConfig

TokenCounter = Callable[[str], int]

# cl100k_base is a close enough approximation for the provider families we target
DEFAULT_ENCODING = "cl100k_base"


@lru_cache(maxsize=4)
def _get_encoding(name: str):
    return tiktoken.get_encoding(name)


def count_tokens(text: str) -> int:
    """Count tokens in ``text`` with the default tiktoken encoding."""
    if not text:
        return 0
    return len(_get_encoding(DEFAULT_ENCODING).encode(text, disallowed_special=()))


@dataclass
class BudgetAllocation:
    """Per-request token accounting, reported back to the caller as stats."""

    context_window: int = 0
    system_prompt_tokens: int = 0
    current_message_tokens: int = 0
    memory_budget: int = 0
    history_budget: int = 0
    memory_tokens_used: int = 0
    history_tokens_used: int = 0
    memories_dropped: int = 0
    messages_dropped: int = 0


def memory_budget(
    config: ContextConfig,
    context_window: int,
    system_prompt_tokens: Optional[int] = None,
    current_message_tokens: Optional[int] = None,
    history_tokens: Optional[int] = None,
) -> int:
    """
    Tokens available for the memory block.

    Returns the hard cap when any component is unknown. Otherwise memories may
    absorb space the history does not need, never beyond the hard cap.
    """
    hard_cap = int(context_window * config.memory_ratio)
    if system_prompt_tokens is None or current_message_tokens is None or history_tokens is None:
        return hard_cap

    safety_margin = int(context_window * config.safety_margin)
    available = (
        context_window
        - system_prompt_tokens
        - current_message_tokens
        - history_tokens
        - safety_margin
    )
    return min(hard_cap, max(0, available))


def history_budget(
    context_window: int,
    system_prompt_tokens: int,
    current_message_tokens: int,
    memory_tokens: int,
) -> int:
    """Tokens left for conversation history after everything else is placed."""
    return max(0, context_window - system_prompt_tokens - current_message_tokens - memory_tokens)
