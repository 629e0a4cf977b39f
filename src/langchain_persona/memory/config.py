"""
Context budgeting configuration and model context window mappings.
"""

import os
from dataclasses import dataclass

# Model → context window size (tokens)
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Anthropic
    "claude-sonnet-4-5": 200_000,
    "claude-sonnet-4": 200_000,
    "claude-opus-4": 200_000,
    "claude-3-7-sonnet": 200_000,
    "claude-3-5-sonnet": 200_000,
    "claude-3-haiku": 200_000,
    # OpenAI compatible
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4.1": 1_000_000,
    "o1": 200_000,
    "o3": 200_000,
    # Google
    "gemini-2.5-pro": 1_000_000,
    "gemini-2.0-flash": 1_000_000,
    "gemini-1.5-pro": 2_000_000,
    # DeepSeek
    "deepseek-chat": 64_000,
    "deepseek-reasoner": 64_000,
    "deepseek-r1": 64_000,
    # GLM
    "glm-4": 128_000,
    "glm-4.5": 128_000,
    "glm-4.7": 200_000,
}

DEFAULT_CONTEXT_WINDOW = 128_000


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass
class ContextConfig:
    """Budgeting, retrieval and invocation settings for prompt assembly."""

    # Context window (0 = auto-detect from model name)
    context_window: int = 0

    # Memory hard cap as a fraction of the window
    memory_ratio: float = 0.25
    # Reserved fraction of the window never handed out
    safety_margin: float = 0.05

    # Retrieval
    memory_limit: int = 10
    channel_budget_ratio: float = 0.5
    score_threshold: float = 0.15
    embedding_model: str = "text-embedding-3-small"
    embedding_base_url: str = ""  # empty = reuse API_BASE_URL
    embedding_api_key: str = ""  # empty = reuse API_KEY

    # Invocation
    max_stop_sequences: int = 16
    max_attempts: int = 3
    initial_retry_delay: float = 1.0  # seconds
    retry_backoff_multiplier: float = 2.0
    max_retry_delay: float = 10.0
    invocation_timeout: float = 480.0
    per_attempt_timeout: float = 180.0
    image_timeout: float = 15.0  # added to the global deadline per image
    audio_timeout: float = 30.0  # added to the global deadline per audio clip
    max_invocation_timeout: float = 900.0

    model_cache_size: int = 32

    @classmethod
    def from_env(cls) -> "ContextConfig":
        """Load configuration from environment variables."""
        return cls(
            context_window=_env_int("CONTEXT_WINDOW", 0),
            memory_ratio=_env_float("CONTEXT_MEMORY_RATIO", 0.25),
            safety_margin=_env_float("CONTEXT_SAFETY_MARGIN", 0.05),
            memory_limit=_env_int("CONTEXT_MEMORY_LIMIT", 10),
            channel_budget_ratio=_env_float("CONTEXT_CHANNEL_BUDGET_RATIO", 0.5),
            score_threshold=_env_float("CONTEXT_SCORE_THRESHOLD", 0.15),
            embedding_model=os.getenv("CONTEXT_EMBEDDING_MODEL", "text-embedding-3-small"),
            embedding_base_url=os.getenv("CONTEXT_EMBEDDING_BASE_URL", ""),
            embedding_api_key=os.getenv("CONTEXT_EMBEDDING_API_KEY", ""),
            max_stop_sequences=_env_int("CONTEXT_MAX_STOP_SEQUENCES", 16),
            max_attempts=_env_int("CONTEXT_MAX_ATTEMPTS", 3),
            initial_retry_delay=_env_float("CONTEXT_INITIAL_RETRY_DELAY", 1.0),
            retry_backoff_multiplier=_env_float("CONTEXT_RETRY_BACKOFF_MULTIPLIER", 2.0),
            max_retry_delay=_env_float("CONTEXT_MAX_RETRY_DELAY", 10.0),
            invocation_timeout=_env_float("CONTEXT_INVOCATION_TIMEOUT", 480.0),
            per_attempt_timeout=_env_float("CONTEXT_PER_ATTEMPT_TIMEOUT", 180.0),
            image_timeout=_env_float("CONTEXT_IMAGE_TIMEOUT", 15.0),
            audio_timeout=_env_float("CONTEXT_AUDIO_TIMEOUT", 30.0),
            max_invocation_timeout=_env_float("CONTEXT_MAX_INVOCATION_TIMEOUT", 900.0),
            model_cache_size=_env_int("CONTEXT_MODEL_CACHE_SIZE", 32),
        )

    def get_context_window(self, model_name: str) -> int:
        """Resolve context window size from config or model name."""
        if self.context_window > 0:
            return self.context_window
        # "provider/model" names are looked up by their model part
        name = model_name.rsplit("/", 1)[-1]
        if name in MODEL_CONTEXT_WINDOWS:
            return MODEL_CONTEXT_WINDOWS[name]
        # Longest key first so "gpt-4o-mini" wins over "gpt-4o"
        for key in sorted(MODEL_CONTEXT_WINDOWS, key=len, reverse=True):
            if name.startswith(key):
                return MODEL_CONTEXT_WINDOWS[key]
        return DEFAULT_CONTEXT_WINDOW

    def invocation_deadline(self, image_count: int = 0, audio_count: int = 0) -> float:
        """Global invocation timeout in seconds, grown by attachment count."""
        total = (
            self.invocation_timeout
            + image_count * self.image_timeout
            + audio_count * self.audio_timeout
        )
        return min(total, self.max_invocation_timeout)
