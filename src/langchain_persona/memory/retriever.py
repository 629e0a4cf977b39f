"""
Memory retrieval: pgvector candidate source and channel-scoped waterfall.

Architecture:
  - PgvectorMemorySource → embeds the query text → cosine similarity search
    over the ``memories`` table → MemoryDocument list, most relevant first
  - ChannelScopedRetriever → asks the source for channel-local memories
    first, then backfills from all channels, excluding what it already has

Chunk groups:
  - Oversized memories are stored as several rows sharing ``chunk_group_id``
  - ``fetch_chunk_siblings`` returns every chunk of a group in index order so
    the sibling expander can reassemble the record
"""

import logging
from dataclasses import replace
from typing import Callable

from ..errors import RetrievalFailure
from .documents import MemoryDocument, RetrievalQueryOptions

logger = logging.getLogger(__name__)

QueryFn = Callable[[str, RetrievalQueryOptions], list[MemoryDocument]]

_DOCUMENT_COLUMNS = """
    id::text AS id, content, created_at,
    chunk_group_id, chunk_index, total_chunks
"""


def _row_value(row, key: str, index: int):
    if isinstance(row, dict):
        return row.get(key)
    return row[index] if len(row) > index else None


def _row_to_document(row) -> MemoryDocument:
    """Convert a DB row (dict_row or tuple) into a MemoryDocument."""
    score = _row_value(row, "score", 6)
    return MemoryDocument(
        id=_row_value(row, "id", 0),
        text=_row_value(row, "content", 1) or "",
        created_at=_row_value(row, "created_at", 2),
        chunk_group_id=_row_value(row, "chunk_group_id", 3),
        chunk_index=_row_value(row, "chunk_index", 4),
        total_chunks=_row_value(row, "total_chunks", 5),
        score=float(score) if score is not None else None,
    )


class PgvectorMemorySource:
    """
    Queries long-term memories stored in PostgreSQL with pgvector.

    Every failure is raised as RetrievalFailure; callers decide whether a
    failed query degrades or propagates.
    """

    def __init__(self, pg_conn, embedding_model):
        self._pg_conn = pg_conn
        self._embedding_model = embedding_model

    def _embed(self, text: str) -> list[float]:
        try:
            return self._embedding_model.embed_query(text)
        except Exception as e:
            raise RetrievalFailure(f"Embedding failed: {e}") from e

    def query_memories(self, text: str, options: RetrievalQueryOptions) -> list[MemoryDocument]:
        """Memories most similar to ``text``, by descending relevance."""
        if options.limit <= 0:
            return []

        embedding = self._embed(text)
        conditions = ["embedding IS NOT NULL"]
        params: list = [embedding]

        if options.persona_id:
            conditions.append("persona_id = %s")
            params.append(options.persona_id)
        if options.personality_id:
            conditions.append("personality_id = %s")
            params.append(options.personality_id)
        if options.channel_ids:
            conditions.append("channel_id = ANY(%s)")
            params.append(list(options.channel_ids))
        if options.exclude_ids:
            conditions.append("NOT (id::text = ANY(%s))")
            params.append(list(options.exclude_ids))
        if options.exclude_newer_than is not None:
            conditions.append("created_at < %s")
            params.append(options.exclude_newer_than)
        if options.score_threshold is not None:
            conditions.append("1 - (embedding <=> %s::vector) >= %s")
            params.extend([embedding, options.score_threshold])

        params.extend([embedding, options.limit])
        sql = f"""
            SELECT {_DOCUMENT_COLUMNS},
                   1 - (embedding <=> %s::vector) AS score
            FROM memories
            WHERE {" AND ".join(conditions)}
            ORDER BY embedding <=> %s::vector
            LIMIT %s
        """
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        except Exception as e:
            raise RetrievalFailure(f"Memory query failed: {e}") from e

        return [_row_to_document(row) for row in rows]

    def fetch_chunk_siblings(self, group_id: str, owner_id: str) -> list[MemoryDocument]:
        """All chunks of ``group_id`` owned by ``owner_id``, ascending chunk index."""
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_DOCUMENT_COLUMNS}, NULL AS score
                    FROM memories
                    WHERE chunk_group_id = %s AND persona_id = %s
                    ORDER BY chunk_index ASC
                    """,
                    (group_id, owner_id),
                )
                rows = cur.fetchall()
        except Exception as e:
            raise RetrievalFailure(f"Sibling fetch for group {group_id} failed: {e}") from e

        return [_row_to_document(row) for row in rows]


def clamp_ratio(ratio: float) -> float:
    return min(1.0, max(0.0, ratio))


def channel_limit(limit: int, ratio: float) -> int:
    """Channel-scoped share of ``limit``; never zero."""
    return max(1, int(limit * clamp_ratio(ratio)))


class ChannelScopedRetriever:
    """
    Two-phase ("waterfall") memory query.

    Channel-local memories are fetched first with a fraction of the limit,
    then a global query fills the rest. Channel results always come first.
    """

    def query(
        self,
        fn: QueryFn,
        text: str,
        opts: RetrievalQueryOptions,
    ) -> list[MemoryDocument]:
        if not opts.channel_ids:
            return fn(text, opts)

        scoped_limit = channel_limit(opts.limit, opts.channel_budget_ratio)
        # A failure here propagates to the caller
        channel_results = fn(text, replace(opts, limit=scoped_limit))

        remaining = opts.limit - len(channel_results)
        if remaining <= 0:
            logger.debug(
                "Channel-scoped query filled limit %d, skipping global backfill", opts.limit
            )
            return channel_results

        exclude_ids = list(opts.exclude_ids)
        exclude_ids.extend(doc.id for doc in channel_results if doc.id is not None)

        try:
            global_results = fn(
                text,
                replace(opts, channel_ids=[], limit=remaining, exclude_ids=exclude_ids),
            )
        except Exception as e:
            logger.warning(
                "Global memory backfill failed, keeping %d channel results: %s",
                len(channel_results), e,
            )
            return channel_results

        logger.info(
            "Waterfall retrieval: %d channel-scoped + %d global (limit %d)",
            len(channel_results), len(global_results), opts.limit,
        )
        return channel_results + global_results
