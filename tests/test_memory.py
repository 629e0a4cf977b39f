"""
Tests for context configuration, token budgets and memory selection.
"""

from datetime import datetime, timezone

import pytest

from langchain_persona.errors import BudgetExhausted
from langchain_persona.memory.config import ContextConfig, DEFAULT_CONTEXT_WINDOW
from langchain_persona.memory.documents import MemoryDocument
from langchain_persona.memory.formatter import (
    format_memory_archive,
    format_memory_date,
    format_single_memory,
    memory_wrapper_text,
)
from langchain_persona.memory.selector import MemorySelector
from langchain_persona.memory.token_budget import (
    count_tokens,
    history_budget,
    memory_budget,
)


def words(n: int) -> str:
    return " ".join(f"w{i}" for i in range(n))


def memory(n_words: int, score: float = 0.5, id: str = None) -> MemoryDocument:
    """A memory rendering to exactly ``n_words + 1`` tokens ("-" plus the words)."""
    return MemoryDocument(text=words(n_words), score=score, id=id)


@pytest.fixture
def wrapper_counter(counter):
    """Word counter that charges a flat 50 tokens for the archive wrapper."""
    wrapper = memory_wrapper_text()

    def count(text: str) -> int:
        return 50 if text == wrapper else counter(text)

    return count


# ── Config Tests ──


class TestContextConfig:
    def test_default_values(self):
        config = ContextConfig()
        assert config.context_window == 0
        assert config.memory_ratio == 0.25
        assert config.safety_margin == 0.05
        assert config.channel_budget_ratio == 0.5
        assert config.max_attempts == 3

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("CONTEXT_WINDOW", "50000")
        monkeypatch.setenv("CONTEXT_MEMORY_RATIO", "0.4")
        monkeypatch.setenv("CONTEXT_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("CONTEXT_EMBEDDING_MODEL", "embedding-3")
        config = ContextConfig.from_env()
        assert config.context_window == 50000
        assert config.memory_ratio == 0.4
        assert config.max_attempts == 5
        assert config.embedding_model == "embedding-3"

    def test_get_context_window_explicit(self):
        config = ContextConfig(context_window=50000)
        assert config.get_context_window("any-model") == 50000

    def test_get_context_window_auto_detect(self):
        config = ContextConfig()
        assert config.get_context_window("claude-sonnet-4-5") == 200_000
        assert config.get_context_window("gpt-4o") == 128_000

    def test_get_context_window_prefix_and_provider(self):
        config = ContextConfig()
        assert config.get_context_window("gpt-4o-mini-2024-07-18") == 128_000
        assert config.get_context_window("anthropic/claude-3-5-sonnet-20241022") == 200_000
        assert config.get_context_window("deepseek/deepseek-chat") == 64_000

    def test_get_context_window_fallback(self):
        config = ContextConfig()
        assert config.get_context_window("unknown-model") == DEFAULT_CONTEXT_WINDOW

    def test_invocation_deadline_grows_with_attachments(self):
        config = ContextConfig()
        assert config.invocation_deadline() == 480.0
        assert config.invocation_deadline(image_count=2) == 510.0
        assert config.invocation_deadline(audio_count=1) == 510.0
        assert config.invocation_deadline(image_count=100) == config.max_invocation_timeout


# ── Token Budget Tests ──


class TestTokenBudget:
    def test_count_tokens_empty(self):
        assert count_tokens("") == 0

    def test_memory_budget_hard_cap_when_components_unknown(self):
        config = ContextConfig()
        assert memory_budget(config, 100_000) == 25_000
        assert memory_budget(config, 100_000, 1000, None, 500) == 25_000

    def test_memory_budget_uses_space_left_by_history(self):
        config = ContextConfig()
        # 100k - 10k - 1k - 70k - 5k margin = 14k
        assert memory_budget(config, 100_000, 10_000, 1_000, 70_000) == 14_000

    def test_memory_budget_short_history_capped(self):
        config = ContextConfig()
        assert memory_budget(config, 100_000, 1_000, 100, 200) == 25_000

    def test_memory_budget_floors_at_zero(self):
        config = ContextConfig()
        assert memory_budget(config, 10_000, 9_000, 1_000, 5_000) == 0

    def test_history_budget(self):
        assert history_budget(10_000, 2_000, 500, 1_500) == 6_000
        assert history_budget(1_000, 2_000, 500, 1_500) == 0


# ── Formatter Tests ──


class TestMemoryFormatter:
    def test_single_memory_without_date(self):
        doc = MemoryDocument(text="likes tea")
        assert format_single_memory(doc) == "- likes tea"

    def test_single_memory_with_date_in_timezone(self):
        created = datetime(2025, 1, 1, 3, 0, tzinfo=timezone.utc)
        doc = MemoryDocument(text="new year", created_at=created)
        assert format_single_memory(doc) == "- [2025-01-01] new year"
        assert format_single_memory(doc, "America/New_York") == "- [2024-12-31] new year"

    def test_naive_datetime_treated_as_utc(self):
        assert format_memory_date(datetime(2025, 6, 1, 12, 0)) == "2025-06-01"

    def test_unknown_timezone_falls_back_to_utc(self):
        created = datetime(2025, 1, 1, 3, 0, tzinfo=timezone.utc)
        assert format_memory_date(created, "Not/AZone") == "2025-01-01"

    def test_content_is_escaped(self):
        doc = MemoryDocument(text="a <b> & c")
        assert format_single_memory(doc) == "- a &lt;b&gt; &amp; c"

    def test_archive_wrapping(self):
        archive = format_memory_archive([MemoryDocument(text="one"), MemoryDocument(text="two")])
        assert archive.startswith("<memory_archive>")
        assert archive.endswith("</memory_archive>")
        assert "- one\n- two" in archive

    def test_empty_archive_renders_nothing(self):
        assert format_memory_archive([]) == ""


# ── Selector Tests ──


class TestMemorySelector:
    def test_zero_or_negative_budget_drops_everything(self, wrapper_counter):
        selector = MemorySelector(wrapper_counter)
        candidates = [memory(10), memory(10)]
        for budget in (0, -5):
            result = selector.select(candidates, budget)
            assert result.selected == []
            assert result.tokens_used == 0
            assert result.dropped == 2

    def test_empty_candidates(self, wrapper_counter):
        result = MemorySelector(wrapper_counter).select([], 1000)
        assert result.selected == []
        assert result.dropped == 0

    def test_budget_below_wrapper_overhead(self, wrapper_counter):
        selector = MemorySelector(wrapper_counter)
        result = selector.select([memory(5), memory(5), memory(5)], 40)
        assert result.selected == []
        assert result.dropped == 3
        assert result.dropped_due_to_size == 0

    def test_content_budget_raises_budget_exhausted(self, wrapper_counter):
        selector = MemorySelector(wrapper_counter)
        with pytest.raises(BudgetExhausted):
            selector._content_budget(50)

    def test_selects_two_of_three_hundred_token_memories(self, wrapper_counter):
        candidates = [
            memory(99, score=0.9, id="a"),
            memory(99, score=0.8, id="b"),
            memory(99, score=0.7, id="c"),
        ]
        result = MemorySelector(wrapper_counter).select(candidates, 300)
        assert [d.id for d in result.selected] == ["a", "b"]
        assert result.dropped == 1
        assert result.dropped_due_to_size == 0
        assert result.tokens_used == 250

    def test_oversized_memory_does_not_block_smaller_ones(self, wrapper_counter):
        candidates = [
            memory(499, score=0.95, id="huge"),
            memory(99, score=0.9, id="a"),
            memory(49, score=0.8, id="b"),
        ]
        result = MemorySelector(wrapper_counter).select(candidates, 300)
        assert [d.id for d in result.selected] == ["a", "b"]
        assert result.dropped_due_to_size == 1
        assert result.dropped == 1

    def test_preserves_relevance_order_and_respects_budget(self, wrapper_counter):
        sizes = [80, 20, 150, 10, 60, 5, 30]
        candidates = [memory(n, score=1 - i / 10, id=str(i)) for i, n in enumerate(sizes)]
        result = MemorySelector(wrapper_counter).select(candidates, 200)
        ids = [d.id for d in result.selected]
        assert ids == sorted(ids, key=int)
        assert result.tokens_used <= 200
        assert len(result.selected) + result.dropped == len(candidates)

    def test_wrapper_only_charged_when_something_fits(self, wrapper_counter):
        result = MemorySelector(wrapper_counter).select([memory(200)], 100)
        assert result.selected == []
        assert result.tokens_used == 0
        assert result.dropped_due_to_size == 1
