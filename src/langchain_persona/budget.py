"""
Top-level token allocation for one prompt assembly.

Order of allocation:
  1. System prompt (without memories and history) and the current message
  2. Memories, capped by ``memory_ratio`` and shrunk to what history leaves
  3. History, which gets everything the first two did not use
"""

import logging
from typing import Optional

from .prompt import AssembledPrompt, ConversationContext, Personality, build_system_prompt
from .memory.config import ContextConfig
from .memory.documents import MemoryDocument
from .memory.formatter import format_memory_archive
from .memory.history import CrossChannelGroup, HistoryEntry, HistorySerializer, SerializedHistory
from .memory.selector import MemorySelectionResult, MemorySelector
from .memory.token_budget import (
    BudgetAllocation,
    TokenCounter,
    count_tokens,
    history_budget,
    memory_budget,
)

logger = logging.getLogger(__name__)


class BudgetCoordinator:
    """Splits the context window between memories and history."""

    def __init__(
        self,
        config: Optional[ContextConfig] = None,
        counter: TokenCounter = count_tokens,
        selector: Optional[MemorySelector] = None,
        serializer: Optional[HistorySerializer] = None,
    ):
        self.config = config or ContextConfig()
        self._count = counter
        self.selector = selector or MemorySelector(counter)
        self.serializer = serializer or HistorySerializer(counter)

    def memory_budget(
        self,
        context_window: int,
        system_prompt_tokens: Optional[int] = None,
        current_message_tokens: Optional[int] = None,
        history_tokens: Optional[int] = None,
    ) -> int:
        return memory_budget(
            self.config,
            context_window,
            system_prompt_tokens,
            current_message_tokens,
            history_tokens,
        )

    def history_budget(
        self,
        context_window: int,
        system_prompt_tokens: int,
        current_message_tokens: int,
        memory_tokens: int,
    ) -> int:
        return history_budget(
            context_window, system_prompt_tokens, current_message_tokens, memory_tokens
        )

    def select_memories(
        self,
        candidates: list[MemoryDocument],
        budget: int,
        timezone: Optional[str] = None,
    ) -> MemorySelectionResult:
        return self.selector.select(candidates, budget, timezone)

    def select_and_serialize(
        self,
        raw_history: Optional[list[HistoryEntry]],
        speaker_name: str,
        budget: int,
        cross_channel_groups: Optional[list[CrossChannelGroup]] = None,
        timezone: Optional[str] = None,
    ) -> SerializedHistory:
        return self.serializer.select_and_serialize(
            raw_history, speaker_name, budget, cross_channel_groups, timezone
        )

    def assemble(
        self,
        personality: Personality,
        context: ConversationContext,
        candidates: list[MemoryDocument],
        context_window: int,
    ) -> AssembledPrompt:
        """Select memories and history for ``context_window`` and build the prompt."""
        tz = context.timezone
        base_prompt = build_system_prompt(personality, context)
        system_tokens = self._count(base_prompt)
        current_tokens = self._count(context.user_message)
        full_history_tokens = self.serializer.count_history_tokens(
            context.history, personality.name, tz
        )

        mem_budget = self.memory_budget(
            context_window, system_tokens, current_tokens, full_history_tokens
        )
        selection = self.select_memories(candidates, mem_budget, tz)
        memory_block = format_memory_archive(selection.selected, tz)

        hist_budget = self.history_budget(
            context_window, system_tokens, current_tokens, selection.tokens_used
        )
        history = self.select_and_serialize(
            context.history,
            personality.name,
            hist_budget,
            context.cross_channel_groups or None,
            tz,
        )

        stats = BudgetAllocation(
            context_window=context_window,
            system_prompt_tokens=system_tokens,
            current_message_tokens=current_tokens,
            memory_budget=mem_budget,
            history_budget=hist_budget,
            memory_tokens_used=selection.tokens_used,
            history_tokens_used=history.tokens_used,
            memories_dropped=selection.dropped,
            messages_dropped=history.dropped,
        )
        logger.info(
            "Token budget: total=%d system=%d current=%d memoryBudget=%d memoryUsed=%d "
            "historyBudget=%d historyUsed=%d",
            context_window, system_tokens, current_tokens, mem_budget,
            selection.tokens_used, hist_budget, history.tokens_used,
        )
        if hist_budget <= 0:
            logger.warning(
                "No history budget left: system prompt, message and memories fill the window"
            )

        return AssembledPrompt(
            system_prompt=build_system_prompt(personality, context, memory_block, history.text),
            current_message=context.user_message,
            memory_block=memory_block,
            history_block=history.text,
            stats=stats,
            personality_name=personality.name,
            active_persona_name=context.active_persona_name,
            participant_names=[p.name for p in context.participants],
            image_count=context.image_count,
            audio_count=context.audio_count,
        )
