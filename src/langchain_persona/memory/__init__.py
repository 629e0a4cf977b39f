"""
Context budgeting and memory retrieval.

Splits a model's context window between long-term memories and recent
conversation history:

- Memories: waterfall retrieval (channel first, then global backfill),
  chunk-group completion and greedy selection within a token budget
- History: newest-first selection rendered as an XML chat log, with
  optional history from other channels filling leftover budget

Memories live in PostgreSQL (pgvector); retrieval failures degrade to
fewer memories rather than failing the request.
"""

from .config import ContextConfig, MODEL_CONTEXT_WINDOWS
from .documents import MemoryDocument, RetrievalQueryOptions
from .formatter import format_memory_archive, format_single_memory
from .history import (
    ChannelEnvironment,
    CrossChannelGroup,
    HistoryEntry,
    HistorySerializer,
    SerializedHistory,
)
from .retriever import ChannelScopedRetriever, PgvectorMemorySource, channel_limit
from .selector import MemorySelectionResult, MemorySelector
from .siblings import ChunkSiblingExpander
from .token_budget import (
    BudgetAllocation,
    count_tokens,
    history_budget,
    memory_budget,
)

__all__ = [
    "ContextConfig",
    "MODEL_CONTEXT_WINDOWS",
    "MemoryDocument",
    "RetrievalQueryOptions",
    "format_memory_archive",
    "format_single_memory",
    "ChannelEnvironment",
    "CrossChannelGroup",
    "HistoryEntry",
    "HistorySerializer",
    "SerializedHistory",
    "ChannelScopedRetriever",
    "PgvectorMemorySource",
    "channel_limit",
    "MemorySelectionResult",
    "MemorySelector",
    "ChunkSiblingExpander",
    "BudgetAllocation",
    "count_tokens",
    "history_budget",
    "memory_budget",
]
