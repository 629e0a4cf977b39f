"""
Persona chat service: memory retrieval, prompt assembly and generation.

Request flow:
  - retrieve_memories: channel-scoped waterfall query, then chunk siblings
  - assemble_prompt: budget memories and history into one system prompt
  - generate: invoke the configured model with retries and stop sequences

Environment:
  - API_KEY / OPENAI_API_KEY / ANTHROPIC_API_KEY and API_BASE_URL / OPENAI_BASE_URL
  - DATABASE_URL enables the pgvector memory source
  - CONTEXT_* variables tune budgeting and invocation (see ContextConfig)
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from langchain_core.messages import HumanMessage, SystemMessage

from .budget import BudgetCoordinator
from .clock import SYSTEM_CLOCK, Clock
from .errors import RetrievalFailure
from .invoker import InvocationResult, ModelInvoker, build_stop_sequences
from .memory.config import ContextConfig
from .memory.documents import MemoryDocument, RetrievalQueryOptions
from .memory.retriever import ChannelScopedRetriever, PgvectorMemorySource
from .memory.siblings import ChunkSiblingExpander
from .memory.token_budget import TokenCounter, count_tokens
from .models import ModelCache, ModelConfig
from .prompt import AssembledPrompt, ConversationContext, Personality

logger = logging.getLogger(__name__)


# override=True so values in .env win over the process environment
load_dotenv(override=True)


def get_credentials() -> tuple[Optional[str], Optional[str]]:
    """
    Resolve API credentials from the environment (generic names first).

    Returns:
        (api_key, base_url)
    """
    api_key = (
        os.getenv("API_KEY")
        or os.getenv("OPENAI_API_KEY")
        or os.getenv("ANTHROPIC_API_KEY")
    )
    base_url = os.getenv("API_BASE_URL") or os.getenv("OPENAI_BASE_URL")
    return api_key, base_url


def create_memory_source(config: ContextConfig) -> Optional[PgvectorMemorySource]:
    """pgvector memory source when DATABASE_URL is set, otherwise None."""
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        return None

    from langchain_openai import OpenAIEmbeddings
    from psycopg import Connection
    from psycopg.rows import dict_row

    api_key, base_url = get_credentials()
    embed_kwargs = {}
    if config.embedding_api_key or api_key:
        embed_kwargs["api_key"] = config.embedding_api_key or api_key
    if config.embedding_base_url or base_url:
        embed_kwargs["base_url"] = config.embedding_base_url or base_url

    conn = Connection.connect(
        db_url,
        autocommit=True,
        prepare_threshold=0,
        row_factory=dict_row,
    )
    embedding_model = OpenAIEmbeddings(model=config.embedding_model, **embed_kwargs)
    logger.info("Memory source ready (embedding model %s)", config.embedding_model)
    return PgvectorMemorySource(conn, embedding_model)


class PersonaChatService:
    """
    Stateless per request; the model cache is the only shared state.

    Usage:
        service = PersonaChatService.from_env()
        prompt = service.assemble_prompt(personality, context, memories, model_config)
        result = service.generate(prompt, model_config)
    """

    def __init__(
        self,
        config: Optional[ContextConfig] = None,
        memory_source=None,
        model_cache: Optional[ModelCache] = None,
        counter: TokenCounter = count_tokens,
        clock: Clock = SYSTEM_CLOCK,
    ):
        self.config = config or ContextConfig()
        self.memory_source = memory_source
        self.model_cache = model_cache or ModelCache(max_size=self.config.model_cache_size)
        self.coordinator = BudgetCoordinator(self.config, counter)
        self.invoker = ModelInvoker(self.config, clock)
        self.retriever = ChannelScopedRetriever()

    @classmethod
    def from_env(cls) -> "PersonaChatService":
        config = ContextConfig.from_env()
        return cls(config=config, memory_source=create_memory_source(config))

    def retrieve_memories(
        self, personality: Personality, context: ConversationContext
    ) -> list[MemoryDocument]:
        """
        Relevant memories for the current message, chunk groups completed.

        Retrieval failures degrade to no memories; the response is still
        generated without them.
        """
        if self.memory_source is None:
            logger.debug("No memory source configured, skipping retrieval")
            return []
        if not context.user_message.strip():
            logger.debug("Empty message text, skipping memory retrieval")
            return []

        options = RetrievalQueryOptions(
            limit=self.config.memory_limit,
            persona_id=context.persona_id,
            personality_id=personality.id,
            channel_ids=[context.channel_id] if context.channel_id else [],
            channel_budget_ratio=self.config.channel_budget_ratio,
            score_threshold=self.config.score_threshold,
            exclude_newer_than=min(
                (e.created_at for e in context.history if e.created_at is not None),
                default=None,
            ),
        )
        try:
            docs = self.retriever.query(
                self.memory_source.query_memories, context.user_message, options
            )
        except RetrievalFailure as e:
            logger.warning(
                "Memory retrieval failed for %s, continuing without memories: %s",
                personality.name, e,
            )
            return []

        if context.persona_id and docs:
            expander = ChunkSiblingExpander(self.memory_source.fetch_chunk_siblings)
            docs = expander.expand(docs, context.persona_id)

        logger.info("Retrieved %d memories for %s", len(docs), personality.name)
        return docs

    def context_window_for(self, model_config: Optional[ModelConfig]) -> int:
        if model_config is None:
            return self.config.get_context_window("")
        if model_config.context_window > 0:
            return model_config.context_window
        return self.config.get_context_window(model_config.model)

    def assemble_prompt(
        self,
        personality: Personality,
        context: ConversationContext,
        candidates: list[MemoryDocument],
        model_config: Optional[ModelConfig] = None,
    ) -> AssembledPrompt:
        return self.coordinator.assemble(
            personality, context, candidates, self.context_window_for(model_config)
        )

    def generate(self, prompt: AssembledPrompt, model_config: ModelConfig) -> InvocationResult:
        model = self.model_cache.get_or_create(model_config)
        messages = [
            SystemMessage(content=prompt.system_prompt),
            HumanMessage(content=prompt.current_message),
        ]
        stop_sequences = build_stop_sequences(
            prompt.personality_name,
            prompt.active_persona_name,
            prompt.participant_names,
            self.config.max_stop_sequences,
        )
        return self.invoker.invoke(
            model,
            messages,
            model_config.model,
            stop_sequences=stop_sequences,
            image_count=prompt.image_count,
            audio_count=prompt.audio_count,
        )

    def respond(
        self,
        personality: Personality,
        context: ConversationContext,
        model_config: ModelConfig,
    ) -> InvocationResult:
        """Retrieve, assemble and generate in one call."""
        memories = self.retrieve_memories(personality, context)
        prompt = self.assemble_prompt(personality, context, memories, model_config)
        return self.generate(prompt, model_config)
