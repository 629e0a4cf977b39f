"""
Model configuration, per-request config resolution and the model cache.

Config precedence for a request:
  1. the user's override for this personality
  2. the user's global default
  3. the personality's own configuration
"""

import hashlib
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, ClassVar, Optional, Union

from langchain.chat_models import init_chat_model
from langchain_core.language_models import BaseChatModel

from .reasoning import ReasoningModelType, get_reasoning_model_config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelConfig:
    model: str
    provider: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    repetition_penalty: Optional[float] = None
    max_tokens: Optional[int] = None
    context_window: int = 0  # 0 = look up by model name

    def api_key_fingerprint(self) -> str:
        if not self.api_key:
            return ""
        return hashlib.sha256(self.api_key.encode()).hexdigest()[:16]

    def cache_key(self) -> tuple:
        """Identity of a model instance; the raw api key never appears in it."""
        return (
            self.provider or "",
            self.model,
            self.api_key_fingerprint(),
            self.base_url or "",
            self.temperature,
            self.top_p,
            self.top_k,
            self.frequency_penalty,
            self.presence_penalty,
            self.repetition_penalty,
            self.max_tokens,
        )


# ── Config sources ──


@dataclass(frozen=True)
class PersonalityConfigSource:
    config: ModelConfig
    kind: ClassVar[str] = "personality"


@dataclass(frozen=True)
class UserPersonalityConfigSource:
    config: ModelConfig
    kind: ClassVar[str] = "user_personality"


@dataclass(frozen=True)
class UserDefaultConfigSource:
    config: ModelConfig
    kind: ClassVar[str] = "user_default"


ConfigSource = Union[PersonalityConfigSource, UserPersonalityConfigSource, UserDefaultConfigSource]


def resolve_config_source(
    personality_config: ModelConfig,
    user_personality_override: Optional[ModelConfig] = None,
    user_default: Optional[ModelConfig] = None,
) -> ConfigSource:
    """Pick the config that applies to this request."""
    if user_personality_override is not None:
        source: ConfigSource = UserPersonalityConfigSource(user_personality_override)
    elif user_default is not None:
        source = UserDefaultConfigSource(user_default)
    else:
        source = PersonalityConfigSource(personality_config)
    logger.debug("Using %s model config: %s", source.kind, source.config.model)
    return source


# ── Model construction ──


def create_chat_model(config: ModelConfig) -> BaseChatModel:
    """Build a LangChain chat model, applying reasoning-model constraints."""
    reasoning = get_reasoning_model_config(config.model)

    init_kwargs: dict = {}
    temperature = config.temperature
    if reasoning.required_temperature is not None:
        temperature = reasoning.required_temperature
    if temperature is not None and reasoning.type is not ReasoningModelType.OPENAI_REASONING:
        init_kwargs["temperature"] = temperature
    if config.max_tokens is not None:
        # o-series models reject max_tokens
        key = "max_completion_tokens" if reasoning.use_max_completion_tokens else "max_tokens"
        init_kwargs[key] = config.max_tokens
    for name in ("top_p", "top_k", "frequency_penalty", "presence_penalty"):
        value = getattr(config, name)
        if value is not None:
            init_kwargs[name] = value
    if config.repetition_penalty is not None:
        init_kwargs["model_kwargs"] = {"repetition_penalty": config.repetition_penalty}
    if config.api_key:
        init_kwargs["api_key"] = config.api_key
    if config.base_url:
        init_kwargs["base_url"] = config.base_url

    provider_kwargs = {}
    if config.provider:
        provider_kwargs["model_provider"] = config.provider

    return init_chat_model(config.model, **provider_kwargs, **init_kwargs)


class ModelCache:
    """
    Bounded map from model config to chat model instance.

    Creation happens outside the lock, so two threads may build the same
    model concurrently; the first insert wins and the other instance is
    discarded.
    """

    def __init__(
        self,
        factory: Callable[[ModelConfig], BaseChatModel] = create_chat_model,
        max_size: int = 32,
    ):
        self._factory = factory
        self._max_size = max_size
        self._models: "OrderedDict[tuple, BaseChatModel]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._models)

    def get_or_create(self, config: ModelConfig) -> BaseChatModel:
        key = config.cache_key()
        with self._lock:
            model = self._models.get(key)
        if model is not None:
            return model

        created = self._factory(config)
        with self._lock:
            model = self._models.setdefault(key, created)
            while len(self._models) > self._max_size:
                evicted, _ = self._models.popitem(last=False)
                logger.debug("Evicted cached model %s/%s", evicted[0], evicted[1])
        if model is created:
            logger.info("Created chat model %s (provider=%s)", config.model, config.provider)
        return model
