"""
Prompt inputs and system prompt layout.

The system prompt is sectioned with XML tags, identity first and behavior
rules last:

1. <system_identity>   who the character is
2. <context>           current date/time and location
3. <participants>      other people in the conversation
4. <memory_archive>    selected long-term memories
5. <chat_log>          serialized conversation history
6. <protocol>          behavior rules
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from xml.sax.saxutils import escape

from .memory.formatter import resolve_timezone
from .memory.history import ChannelEnvironment, CrossChannelGroup, HistoryEntry
from .memory.token_budget import BudgetAllocation


def _attr(value: str) -> str:
    return escape(value, {'"': "&quot;"})


@dataclass
class Personality:
    id: str
    name: str
    character: str = ""
    protocol: str = ""


@dataclass
class Participant:
    name: str
    persona_id: Optional[str] = None
    description: str = ""


@dataclass
class ConversationContext:
    """Everything known about the request being answered."""

    user_message: str
    persona_id: Optional[str] = None  # owner of the memories
    active_persona_name: Optional[str] = None
    username: Optional[str] = None
    channel_id: Optional[str] = None
    timezone: Optional[str] = None
    environment: Optional[ChannelEnvironment] = None
    history: list[HistoryEntry] = field(default_factory=list)
    cross_channel_groups: list[CrossChannelGroup] = field(default_factory=list)
    participants: list[Participant] = field(default_factory=list)
    image_count: int = 0
    audio_count: int = 0
    now: Optional[datetime] = None


@dataclass
class AssembledPrompt:
    system_prompt: str
    current_message: str
    memory_block: str
    history_block: str
    stats: BudgetAllocation
    personality_name: str = ""
    active_persona_name: Optional[str] = None
    participant_names: list[str] = field(default_factory=list)
    image_count: int = 0
    audio_count: int = 0


def format_location(env: Optional[ChannelEnvironment]) -> str:
    if env is None or env.type == "dm":
        return '<location type="dm">Direct Message (private one-on-one chat)</location>'
    attrs = f'type="{escape(env.type)}"'
    if env.guild_name:
        attrs += f' server="{_attr(env.guild_name)}"'
    return f"<location {attrs}>{escape(env.name or 'unknown channel')}</location>"


def format_participants(participants: list[Participant], active_persona_name: Optional[str]) -> str:
    if not participants:
        return ""
    lines = []
    for p in participants:
        marker = ' active="true"' if p.name == active_persona_name else ""
        id_attr = f' id="{_attr(p.persona_id)}"' if p.persona_id else ""
        lines.append(
            f'<participant name="{_attr(p.name)}"{id_attr}{marker}>'
            f"{escape(p.description)}</participant>"
        )
    return "<participants>\n" + "\n".join(lines) + "\n</participants>"


def build_system_prompt(
    personality: Personality,
    context: ConversationContext,
    memory_block: str = "",
    history_block: str = "",
) -> str:
    """Assemble the system prompt; empty sections are left out."""
    now = context.now or datetime.now(timezone.utc)
    local_now = now.astimezone(resolve_timezone(context.timezone))
    sections = [
        "<system_identity>\n"
        f"<role>You are {escape(personality.name)}.</role>\n"
        f"<character>\n{escape(personality.character)}\n</character>\n"
        "</system_identity>",
        "<context>\n"
        f"<datetime>{local_now.strftime('%A, %B %d, %Y %H:%M %Z')}</datetime>\n"
        f"{format_location(context.environment)}\n"
        "</context>",
        format_participants(context.participants, context.active_persona_name),
        memory_block,
        history_block,
    ]
    if personality.protocol:
        sections.append(f"<protocol>\n{escape(personality.protocol)}\n</protocol>")
    return "\n\n".join(s for s in sections if s)
