"""
Tests for model configuration, prompt assembly and the chat service.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from langchain_persona.budget import BudgetCoordinator
from langchain_persona.errors import RetrievalFailure
from langchain_persona.memory.config import ContextConfig
from langchain_persona.memory.documents import MemoryDocument
from langchain_persona.memory.formatter import memory_wrapper_text
from langchain_persona.memory.history import ChannelEnvironment, HistoryEntry
from langchain_persona.models import (
    ModelCache,
    ModelConfig,
    PersonalityConfigSource,
    UserDefaultConfigSource,
    UserPersonalityConfigSource,
    create_chat_model,
    resolve_config_source,
)
from langchain_persona.prompt import (
    ConversationContext,
    Participant,
    Personality,
    build_system_prompt,
)
from langchain_persona.service import PersonaChatService, get_credentials

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
LILA = Personality(id="pers-1", name="Lila", character="A curious archivist.", protocol="Stay in character.")


def context(**kwargs):
    defaults = dict(user_message="What do you remember?", persona_id="user-1", now=NOW,
                    active_persona_name="Alice")
    defaults.update(kwargs)
    return ConversationContext(**defaults)


# ── Model Config Tests ──


class TestModelConfig:
    def test_cache_key_hides_api_key(self):
        config = ModelConfig(model="gpt-4o", provider="openai", api_key="sk-secret", temperature=0.7)
        key = config.cache_key()
        assert "sk-secret" not in key
        assert config.api_key_fingerprint() in key

    def test_cache_key_changes_with_sampling(self):
        a = ModelConfig(model="gpt-4o", temperature=0.7)
        b = ModelConfig(model="gpt-4o", temperature=0.9)
        assert a.cache_key() != b.cache_key()
        assert a.cache_key() == ModelConfig(model="gpt-4o", temperature=0.7).cache_key()


class TestResolveConfigSource:
    def test_personality_default(self):
        base = ModelConfig(model="gpt-4o")
        source = resolve_config_source(base)
        assert isinstance(source, PersonalityConfigSource)
        assert source.kind == "personality"
        assert source.config is base

    def test_user_default_beats_personality(self):
        user_default = ModelConfig(model="claude-3-5-sonnet")
        source = resolve_config_source(ModelConfig(model="gpt-4o"), user_default=user_default)
        assert isinstance(source, UserDefaultConfigSource)
        assert source.config is user_default

    def test_user_override_beats_everything(self):
        override = ModelConfig(model="o1")
        source = resolve_config_source(
            ModelConfig(model="gpt-4o"),
            user_personality_override=override,
            user_default=ModelConfig(model="claude-3-5-sonnet"),
        )
        assert isinstance(source, UserPersonalityConfigSource)
        assert source.kind == "user_personality"
        assert source.config is override


class TestCreateChatModel:
    @patch("langchain_persona.models.init_chat_model")
    def test_passes_sampling_and_credentials(self, mock_init):
        create_chat_model(ModelConfig(
            model="gpt-4o", provider="openai", api_key="k", base_url="http://x",
            temperature=0.5, max_tokens=100, top_p=0.9,
        ))
        mock_init.assert_called_once_with(
            "gpt-4o", model_provider="openai", temperature=0.5, max_tokens=100,
            top_p=0.9, api_key="k", base_url="http://x",
        )

    @patch("langchain_persona.models.init_chat_model")
    def test_claude_thinking_forces_temperature(self, mock_init):
        create_chat_model(ModelConfig(model="claude-3-7-sonnet", temperature=0.3))
        assert mock_init.call_args.kwargs["temperature"] == 1.0

    @patch("langchain_persona.models.init_chat_model")
    def test_openai_reasoning_drops_temperature(self, mock_init):
        create_chat_model(ModelConfig(model="o1", temperature=0.3))
        assert "temperature" not in mock_init.call_args.kwargs

    @patch("langchain_persona.models.init_chat_model")
    def test_openai_reasoning_uses_max_completion_tokens(self, mock_init):
        create_chat_model(ModelConfig(model="o1", max_tokens=500))
        kwargs = mock_init.call_args.kwargs
        assert kwargs["max_completion_tokens"] == 500
        assert "max_tokens" not in kwargs


class TestModelCache:
    def test_create_if_absent(self):
        factory = MagicMock(side_effect=lambda config: MagicMock(name=config.model))
        cache = ModelCache(factory=factory)
        config = ModelConfig(model="gpt-4o")
        first = cache.get_or_create(config)
        second = cache.get_or_create(ModelConfig(model="gpt-4o"))
        assert first is second
        assert factory.call_count == 1

    def test_bounded(self):
        cache = ModelCache(factory=lambda config: MagicMock(), max_size=2)
        for name in ("a", "b", "c"):
            cache.get_or_create(ModelConfig(model=name))
        assert len(cache) == 2


# ── Prompt Tests ──


class TestBuildSystemPrompt:
    def test_section_order(self):
        ctx = context(participants=[Participant(name="Alice", persona_id="user-1")])
        prompt = build_system_prompt(LILA, ctx, "<memory_archive>m</memory_archive>",
                                     "<chat_log>\nh\n</chat_log>")
        positions = [prompt.index(tag) for tag in (
            "<system_identity>", "<context>", "<participants>",
            "<memory_archive>", "<chat_log>", "<protocol>",
        )]
        assert positions == sorted(positions)
        assert "You are Lila." in prompt
        assert 'active="true"' in prompt

    def test_empty_sections_are_omitted(self):
        prompt = build_system_prompt(Personality(id="p", name="Bare"), context())
        assert "<participants>" not in prompt
        assert "<memory_archive>" not in prompt
        assert "<protocol>" not in prompt
        assert '<location type="dm">' in prompt

    def test_datetime_in_user_timezone(self):
        prompt = build_system_prompt(LILA, context(timezone="Asia/Tokyo"))
        assert "21:00" in prompt

    def test_guild_location(self):
        env = ChannelEnvironment(type="guild", name="general", guild_name="Home")
        prompt = build_system_prompt(LILA, context(environment=env))
        assert '<location type="guild" server="Home">general</location>' in prompt


# ── Budget Coordinator Tests ──


class TestBudgetCoordinator:
    def test_assemble_selects_within_budget(self, counter):
        coordinator = BudgetCoordinator(ContextConfig(), counter)
        memories = [MemoryDocument(text="alpha beta", id=str(i)) for i in range(3)]
        history = [HistoryEntry(role="user", content="hi", persona_name="Alice"),
                   HistoryEntry(role="assistant", content="hello")]

        prompt = coordinator.assemble(LILA, context(history=history), memories, 100_000)

        assert "<memory_archive>" in prompt.system_prompt
        assert "<chat_log>" in prompt.system_prompt
        assert prompt.memory_block in prompt.system_prompt
        assert prompt.history_block in prompt.system_prompt
        assert prompt.stats.memories_dropped == 0
        assert prompt.stats.messages_dropped == 0
        assert prompt.stats.memory_tokens_used <= prompt.stats.memory_budget
        assert prompt.stats.history_tokens_used <= prompt.stats.history_budget
        assert prompt.current_message == "What do you remember?"

    def test_tiny_window_degrades_without_error(self, counter):
        coordinator = BudgetCoordinator(ContextConfig(), counter)
        memories = [MemoryDocument(text="alpha beta", id="1")]
        history = [HistoryEntry(role="user", content="hi", persona_name="Alice")]
        prompt = coordinator.assemble(LILA, context(history=history), memories, 10)

        assert prompt.memory_block == ""
        assert prompt.history_block == ""
        assert prompt.stats.memories_dropped == 1
        assert prompt.stats.messages_dropped == 1

    def test_three_memories_two_fit(self, counter):
        wrapper = memory_wrapper_text()

        def count(text):
            return 50 if text == wrapper else counter(text)

        coordinator = BudgetCoordinator(ContextConfig(), count)
        body = " ".join(["word"] * 99)
        memories = [MemoryDocument(text=body, score=s, id=str(s)) for s in (0.9, 0.8, 0.7)]
        result = coordinator.select_memories(memories, 300)
        assert [d.id for d in result.selected] == ["0.9", "0.8"]
        assert result.dropped == 1

    def test_budget_helpers(self, counter):
        coordinator = BudgetCoordinator(ContextConfig(), counter)
        assert coordinator.memory_budget(100_000) == 25_000
        assert coordinator.history_budget(100_000, 10_000, 500, 2_000) == 87_500


# ── Service Tests ──


class TestPersonaChatService:
    def make_service(self, counter, clock, model=None, memory_source=None):
        cache = ModelCache(factory=lambda config: model or MagicMock())
        return PersonaChatService(
            config=ContextConfig(), memory_source=memory_source,
            model_cache=cache, counter=counter, clock=clock,
        )

    def test_get_credentials_prefers_generic(self, monkeypatch):
        monkeypatch.setenv("API_KEY", "generic")
        monkeypatch.setenv("OPENAI_API_KEY", "openai")
        monkeypatch.setenv("API_BASE_URL", "http://proxy")
        assert get_credentials() == ("generic", "http://proxy")

    def test_context_window_for(self, counter, clock):
        service = self.make_service(counter, clock)
        assert service.context_window_for(ModelConfig(model="gpt-4o")) == 128_000
        assert service.context_window_for(ModelConfig(model="x", context_window=5000)) == 5000

    def test_generate_builds_messages_and_stops(self, counter, clock):
        model = MagicMock()
        model.invoke.return_value = AIMessage(content="I remember the tea.")
        service = self.make_service(counter, clock, model=model)
        ctx = context(participants=[Participant(name="Alice"), Participant(name="Bob")])
        prompt = service.assemble_prompt(LILA, ctx, [], ModelConfig(model="gpt-4o"))

        result = service.generate(prompt, ModelConfig(model="gpt-4o"))

        assert result.content == "I remember the tea."
        assert result.attempts == 1
        assert result.model_used == "gpt-4o"
        sent = model.invoke.call_args.args[0]
        assert isinstance(sent[0], SystemMessage) and isinstance(sent[1], HumanMessage)
        assert sent[1].content == "What do you remember?"
        stops = model.invoke.call_args.kwargs["stop"]
        assert "\nAlice:" in stops and "\nBob:" in stops

    def test_retrieve_without_source(self, counter, clock):
        assert self.make_service(counter, clock).retrieve_memories(LILA, context()) == []

    def test_retrieve_uses_waterfall_and_siblings(self, counter, clock):
        source = MagicMock()
        source.query_memories.side_effect = [
            [MemoryDocument(text="chunk 0", id="c0", chunk_group_id="g", chunk_index=0)],
            [MemoryDocument(text="global", id="g1")],
        ]
        source.fetch_chunk_siblings.return_value = [
            MemoryDocument(text="chunk 0", id="c0", chunk_group_id="g", chunk_index=0),
            MemoryDocument(text="chunk 1", id="c1", chunk_group_id="g", chunk_index=1),
        ]
        service = self.make_service(counter, clock, memory_source=source)

        docs = service.retrieve_memories(LILA, context(channel_id="chan-9"))

        assert [d.id for d in docs] == ["c0", "g1", "c1"]
        channel_opts = source.query_memories.call_args_list[0].args[1]
        assert channel_opts.channel_ids == ["chan-9"]
        assert channel_opts.personality_id == "pers-1"
        source.fetch_chunk_siblings.assert_called_once_with("g", "user-1")

    def test_retrieval_failure_degrades_to_no_memories(self, counter, clock):
        source = MagicMock()
        source.query_memories.side_effect = RetrievalFailure("db down")
        service = self.make_service(counter, clock, memory_source=source)
        assert service.retrieve_memories(LILA, context(channel_id="chan-9")) == []

    def test_respond_survives_retrieval_outage(self, counter, clock):
        model = MagicMock()
        model.invoke.return_value = AIMessage(content="hi")
        source = MagicMock()
        source.query_memories.side_effect = RetrievalFailure("db down")
        service = self.make_service(counter, clock, model=model, memory_source=source)

        result = service.respond(LILA, context(channel_id="chan-9"), ModelConfig(model="gpt-4o"))

        assert result.content == "hi"
        system_prompt = model.invoke.call_args.args[0][0].content
        assert "<memory_archive>" not in system_prompt

    def test_empty_message_skips_retrieval(self, counter, clock):
        source = MagicMock()
        service = self.make_service(counter, clock, memory_source=source)
        assert service.retrieve_memories(LILA, context(user_message="   ")) == []
        source.query_memories.assert_not_called()

    def test_respond_end_to_end(self, counter, clock):
        model = MagicMock()
        model.invoke.side_effect = [ConnectionError("reset"), AIMessage(content="Hello again.")]
        source = MagicMock()
        source.query_memories.return_value = [MemoryDocument(text="met at the library", id="m1")]
        service = self.make_service(counter, clock, model=model, memory_source=source)

        result = service.respond(LILA, context(), ModelConfig(model="gpt-4o"))

        assert result.content == "Hello again."
        assert result.attempts == 2
        system_prompt = model.invoke.call_args.args[0][0].content
        assert "met at the library" in system_prompt
