"""
Completion of partially retrieved chunk groups.
"""

import logging
from typing import Callable, Hashable

from .documents import MemoryDocument

logger = logging.getLogger(__name__)

SiblingFetcher = Callable[[str, str], list[MemoryDocument]]


def _identity(doc: MemoryDocument) -> Hashable:
    if doc.id is not None:
        return doc.id
    return (doc.chunk_group_id, doc.chunk_index, doc.text)


def extract_chunk_groups(docs: list[MemoryDocument]) -> tuple[list[str], set]:
    """Distinct chunk group ids in first-seen order, plus identities already present."""
    groups: list[str] = []
    seen: set = set()
    for doc in docs:
        seen.add(_identity(doc))
        if doc.chunk_group_id is not None and doc.chunk_group_id not in groups:
            groups.append(doc.chunk_group_id)
    return groups, seen


class ChunkSiblingExpander:
    """Fetches the missing chunks of every chunk group present in a result set."""

    def __init__(self, fetch_siblings: SiblingFetcher):
        self._fetch_siblings = fetch_siblings

    def expand(self, docs: list[MemoryDocument], owner_id: str) -> list[MemoryDocument]:
        groups, seen = extract_chunk_groups(docs)
        if not groups:
            return list(docs)

        result = list(docs)
        for group_id in groups:
            try:
                siblings = self._fetch_siblings(group_id, owner_id)
            except Exception as e:
                logger.warning("Failed to fetch siblings for chunk group %s: %s", group_id, e)
                continue

            added = 0
            for sibling in sorted(siblings, key=lambda d: d.chunk_index or 0):
                key = _identity(sibling)
                if key in seen:
                    continue
                seen.add(key)
                result.append(sibling)
                added += 1
            if added:
                logger.debug("Added %d sibling chunks for group %s", added, group_id)

        if len(result) > len(docs):
            logger.info(
                "Expanded %d memories to %d with chunk siblings (%d groups)",
                len(docs), len(result), len(groups),
            )
        return result
