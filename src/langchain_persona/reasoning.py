"""
Reasoning-model detection and the quirks that come with it.

Some models reject a system role (OpenAI o-series), some require a fixed
temperature (Claude extended thinking), and many leak their chain of
thought into the visible response as ``<thinking>``/``<think>`` blocks.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage


class ReasoningModelType(str, Enum):
    STANDARD = "standard"
    OPENAI_REASONING = "openai_reasoning"
    CLAUDE_EXTENDED_THINKING = "claude_extended_thinking"
    GEMINI_THINKING = "gemini_thinking"
    DEEPSEEK_R1 = "deepseek_r1"
    QWEN_REASONING = "qwen_reasoning"
    GLM_THINKING = "glm_thinking"
    KIMI_THINKING = "kimi_thinking"
    GENERIC_THINKING = "generic_thinking"


@dataclass(frozen=True)
class ReasoningModelConfig:
    type: ReasoningModelType
    allows_system_message: bool = True
    required_temperature: Optional[float] = None
    use_max_completion_tokens: bool = False
    may_contain_thinking_tags: bool = True


# Checked in order; the first match wins
_PATTERNS: list[tuple[ReasoningModelType, re.Pattern]] = [
    (ReasoningModelType.OPENAI_REASONING, re.compile(r"^o[13](-|$)")),
    (ReasoningModelType.CLAUDE_EXTENDED_THINKING, re.compile(r"claude-(3-[7-9]|[4-9]|(sonnet|opus|haiku)-[4-9])\b")),
    (ReasoningModelType.GEMINI_THINKING, re.compile(r"gemini.*thinking")),
    (ReasoningModelType.DEEPSEEK_R1, re.compile(r"deepseek-r1|deepseek-reasoner|r1t\d*-chimera")),
    (ReasoningModelType.QWEN_REASONING, re.compile(r"qwq")),
    (ReasoningModelType.GLM_THINKING, re.compile(r"glm-4\.([5-9]|\d{2,})")),
    (ReasoningModelType.KIMI_THINKING, re.compile(r"kimi-k2")),
    (ReasoningModelType.GENERIC_THINKING, re.compile(r"thinking")),
]

_CONFIGS: dict[ReasoningModelType, ReasoningModelConfig] = {
    ReasoningModelType.STANDARD: ReasoningModelConfig(
        ReasoningModelType.STANDARD, may_contain_thinking_tags=False
    ),
    ReasoningModelType.OPENAI_REASONING: ReasoningModelConfig(
        ReasoningModelType.OPENAI_REASONING,
        allows_system_message=False,
        use_max_completion_tokens=True,
    ),
    ReasoningModelType.CLAUDE_EXTENDED_THINKING: ReasoningModelConfig(
        ReasoningModelType.CLAUDE_EXTENDED_THINKING, required_temperature=1.0
    ),
}

_THINKING_TAGS = re.compile(r"<(thinking|think)>.*?</\1>", re.IGNORECASE | re.DOTALL)


def detect_reasoning_model_type(model_name: str) -> ReasoningModelType:
    # Drop "provider/" prefixes and ":free"-style suffixes
    name = model_name.lower().rsplit("/", 1)[-1].split(":", 1)[0]
    for model_type, pattern in _PATTERNS:
        if pattern.search(name):
            return model_type
    return ReasoningModelType.STANDARD


def get_reasoning_model_config(model_name: str) -> ReasoningModelConfig:
    model_type = detect_reasoning_model_type(model_name)
    return _CONFIGS.get(model_type) or ReasoningModelConfig(model_type)


def transform_messages(
    messages: list[BaseMessage], config: ReasoningModelConfig
) -> list[BaseMessage]:
    """
    Fold system messages into the first human turn for models without a
    system role. Other models get the list back unchanged.
    """
    if config.allows_system_message:
        return list(messages)

    system_parts = [str(m.content) for m in messages if isinstance(m, SystemMessage)]
    rest = [m for m in messages if not isinstance(m, SystemMessage)]
    if not system_parts:
        return rest

    instructions = "\n\n".join(system_parts)
    for i, msg in enumerate(rest):
        if isinstance(msg, HumanMessage):
            merged = HumanMessage(
                content=f"[System Instructions]\n{instructions}\n\n[User Message]\n{msg.content}"
            )
            return rest[:i] + [merged] + rest[i + 1:]
    return [HumanMessage(content=f"[System Instructions]\n{instructions}")] + rest


def strip_thinking_tags(content: str) -> str:
    return _THINKING_TAGS.sub("", content).strip()


def process_reasoning_output(content: str, config: ReasoningModelConfig) -> str:
    if not config.may_contain_thinking_tags:
        return content
    return strip_thinking_tags(content)
