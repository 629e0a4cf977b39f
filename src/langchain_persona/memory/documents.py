"""
Memory documents and retrieval query options.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class MemoryDocument:
    """
    One retrieved long-term memory.

    Documents belonging to a chunk group are pieces of one oversized record;
    ``chunk_index`` is unique within the group.
    """

    text: str
    score: Optional[float] = None
    created_at: Optional[datetime] = None
    id: Optional[str] = None
    chunk_group_id: Optional[str] = None
    chunk_index: Optional[int] = None
    total_chunks: Optional[int] = None


@dataclass
class RetrievalQueryOptions:
    """Options for a single memory query."""

    limit: int = 10
    persona_id: Optional[str] = None  # owner of the memories
    personality_id: Optional[str] = None
    channel_ids: list[str] = field(default_factory=list)
    channel_budget_ratio: float = 0.5
    exclude_ids: list[str] = field(default_factory=list)
    score_threshold: Optional[float] = None
    exclude_newer_than: Optional[datetime] = None
