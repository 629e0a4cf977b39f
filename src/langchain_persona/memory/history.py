"""
Conversation history serialization within a token ceiling.

History is rendered as XML ``<message>`` elements inside a ``<chat_log>``
block that lives in the system prompt. Token counts are always taken from
the rendered form; cached per-message counts on the entries are ignored
because they do not include speaker tags and timestamps.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from xml.sax.saxutils import escape

from .formatter import as_aware, resolve_timezone
from .token_budget import TokenCounter, count_tokens

logger = logging.getLogger(__name__)

CHAT_LOG_OPEN = "<chat_log>\n"
CHAT_LOG_CLOSE = "\n</chat_log>"
CROSS_CHANNEL_OPEN = "<channel_history>\n"
CROSS_CHANNEL_CLOSE = "\n</channel_history>"
RENDERED_ROLES = ("user", "assistant")


@dataclass
class HistoryEntry:
    role: str  # "user" | "assistant"; anything else is not rendered
    content: str
    created_at: Optional[datetime] = None
    persona_name: Optional[str] = None
    persona_id: Optional[str] = None
    username: Optional[str] = None
    personality_name: Optional[str] = None  # speaking AI, for assistant turns
    is_forwarded: bool = False
    cached_token_count: Optional[int] = None  # advisory only, never used for budgeting


@dataclass
class ChannelEnvironment:
    type: str = "guild"  # "guild" | "dm" | "thread"
    name: Optional[str] = None
    guild_name: Optional[str] = None
    channel_id: Optional[str] = None


@dataclass
class CrossChannelGroup:
    environment: ChannelEnvironment
    messages: list[HistoryEntry] = field(default_factory=list)


@dataclass
class SerializedHistory:
    text: str = ""
    tokens_used: int = 0
    included: int = 0
    dropped: int = 0
    cross_channel_included: int = 0


def _attr(value: str) -> str:
    return escape(value, {'"': "&quot;"})


def format_prompt_timestamp(value: datetime, tz_name: Optional[str] = None) -> str:
    """``2025-01-31 (Fri) 14:05`` in the user's timezone."""
    return as_aware(value).astimezone(resolve_timezone(tz_name)).strftime("%Y-%m-%d (%a) %H:%M")


def collect_personality_names(history: list[HistoryEntry], personality_name: str) -> set[str]:
    """Lower-cased names of every AI speaking in ``history``."""
    names = {personality_name.lower()}
    for entry in history:
        if entry.role.lower() == "assistant" and entry.personality_name:
            names.add(entry.personality_name.lower())
    return names


def format_history_entry(
    entry: HistoryEntry,
    personality_name: str,
    ai_names: Optional[set[str]] = None,
    tz_name: Optional[str] = None,
) -> str:
    """Render one entry as a ``<message>`` element, or "" for unrenderable roles."""
    role = entry.role.lower()
    if role == "user":
        speaker = entry.persona_name or "User"
        # A user persona sharing an AI's name gets their handle appended
        names = ai_names if ai_names is not None else {personality_name.lower()}
        if speaker.lower() in names and entry.username:
            speaker = f"{speaker} (@{entry.username})"
    elif role == "assistant":
        speaker = entry.personality_name or personality_name
    else:
        return ""

    attrs = [f'from="{_attr(speaker)}"']
    if role == "user" and entry.persona_id:
        attrs.append(f'from_id="{_attr(entry.persona_id)}"')
    attrs.append(f'role="{role}"')
    if entry.created_at is not None:
        attrs.append(f't="{_attr(format_prompt_timestamp(entry.created_at, tz_name))}"')
    if entry.is_forwarded:
        attrs.append('forwarded="true"')
    return f"<message {' '.join(attrs)}>{escape(entry.content)}</message>"


def format_channel_open(env: ChannelEnvironment) -> str:
    attrs = [f'type="{_attr(env.type)}"']
    if env.name:
        attrs.append(f'name="{_attr(env.name)}"')
    if env.guild_name:
        attrs.append(f'server="{_attr(env.guild_name)}"')
    if env.channel_id:
        attrs.append(f'id="{_attr(env.channel_id)}"')
    return f"<channel {' '.join(attrs)}>\n"


def is_renderable(entry: HistoryEntry) -> bool:
    return entry.role.lower() in RENDERED_ROLES


def render_chat_log(lines: list[str], cross_channel_text: str = "") -> str:
    """Wrap cross-channel history and current lines in ``<chat_log>``; "" when empty."""
    body_parts = [cross_channel_text] if cross_channel_text else []
    if lines:
        body_parts.append("\n".join(lines))
    if not body_parts:
        return ""
    return CHAT_LOG_OPEN + "\n".join(body_parts) + CHAT_LOG_CLOSE


class HistorySerializer:
    """Selects the most recent history that fits and renders it as XML."""

    def __init__(self, counter: TokenCounter = count_tokens):
        self._count = counter

    def wrapper_overhead(self) -> int:
        return self._count(CHAT_LOG_OPEN + CHAT_LOG_CLOSE)

    def _line_cost(self, line: str) -> int:
        # Lines are newline-joined; charge the separator with the line
        return self._count(line + "\n")

    def count_history_tokens(
        self,
        raw_history: Optional[list[HistoryEntry]],
        personality_name: str,
        tz_name: Optional[str] = None,
    ) -> int:
        """Token cost of the rendered chat log for all of ``raw_history``."""
        if not raw_history:
            return 0
        ai_names = collect_personality_names(raw_history, personality_name)
        lines = [format_history_entry(e, personality_name, ai_names, tz_name) for e in raw_history]
        lines = [line for line in lines if line]
        if not lines:
            return 0
        return self._count(render_chat_log(lines))

    def _select_recent(
        self,
        entries: list[HistoryEntry],
        personality_name: str,
        ai_names: set[str],
        budget: int,
        tz_name: Optional[str],
    ) -> tuple[list[str], int]:
        """Walk backwards from the newest entry; return lines in chronological order."""
        lines: list[str] = []
        used = 0
        for entry in reversed(entries):
            line = format_history_entry(entry, personality_name, ai_names, tz_name)
            if not line:
                continue
            tokens = self._line_cost(line)
            if used + tokens > budget:
                logger.debug(
                    "Stopping history selection: would exceed budget (%d > %d)",
                    used + tokens, budget,
                )
                break
            lines.insert(0, line)
            used += tokens
        return lines, used

    def _serialize_cross_channel(
        self,
        groups: list[CrossChannelGroup],
        personality_name: str,
        budget: int,
        tz_name: Optional[str],
    ) -> tuple[str, int, int]:
        """Fit as many cross-channel groups and messages as possible into ``budget``."""
        section_overhead = self._count(CROSS_CHANNEL_OPEN + CROSS_CHANNEL_CLOSE + "\n")
        remaining = budget - section_overhead
        blocks: list[str] = []
        used = 0
        included = 0

        for group in groups:
            if not group.messages:
                continue
            opener = format_channel_open(group.environment)
            group_overhead = self._count(opener + "\n</channel>\n")
            space = remaining - used - group_overhead
            if space <= 0:
                continue
            ai_names = collect_personality_names(group.messages, personality_name)
            lines, tokens = self._select_recent(
                group.messages, personality_name, ai_names, space, tz_name
            )
            if not lines:
                continue
            blocks.append(opener + "\n".join(lines) + "\n</channel>")
            used += tokens + group_overhead
            included += len(lines)

        if not blocks:
            return "", 0, 0
        text = CROSS_CHANNEL_OPEN + "\n".join(blocks) + CROSS_CHANNEL_CLOSE
        return text, self._count(text), included

    def select_and_serialize(
        self,
        raw_history: Optional[list[HistoryEntry]],
        speaker_name: str,
        budget: int,
        cross_channel_groups: Optional[list[CrossChannelGroup]] = None,
        timezone: Optional[str] = None,
    ) -> SerializedHistory:
        """
        Render as much recent history as fits in ``budget`` tokens.

        Current-channel messages are kept newest-first and emitted in
        chronological order. Leftover budget goes to cross-channel history,
        which is placed ahead of the current channel inside the chat log.
        The chat log wrapper is charged only when something is included, and
        ``tokens_used`` is the count of the final rendered text.
        """
        history = raw_history or []
        renderable = sum(1 for entry in history if is_renderable(entry))
        if budget <= 0 or (not history and not cross_channel_groups):
            return SerializedHistory(dropped=renderable)

        overhead = self.wrapper_overhead()
        content_budget = budget - overhead
        if content_budget <= 0:
            return SerializedHistory(dropped=renderable)

        ai_names = collect_personality_names(history, speaker_name)
        lines, used = self._select_recent(history, speaker_name, ai_names, content_budget, timezone)

        cross_text = ""
        cross_included = 0
        if cross_channel_groups and used < content_budget:
            cross_text, cross_tokens, cross_included = self._serialize_cross_channel(
                cross_channel_groups, speaker_name, content_budget - used, timezone
            )
            if cross_included:
                logger.info(
                    "Added cross-channel history (%d messages, %d tokens, %d channels)",
                    cross_included, cross_tokens, len(cross_channel_groups),
                )

        text = render_chat_log(lines, cross_text)
        tokens_used = self._count(text) if text else 0
        # Per-line estimates can undershoot the joined text; trim until it fits
        while text and tokens_used > budget:
            if cross_text:
                cross_text, cross_included = "", 0
            else:
                lines = lines[1:]
            text = render_chat_log(lines, cross_text)
            tokens_used = self._count(text) if text else 0
            logger.debug("Trimmed history to %d tokens (budget %d)", tokens_used, budget)

        dropped = renderable - len(lines)
        if not text:
            return SerializedHistory(dropped=dropped)

        logger.info(
            "Selected %d/%d history messages (%d tokens, budget %d)",
            len(lines), renderable, tokens_used, budget,
        )
        return SerializedHistory(
            text=text,
            tokens_used=tokens_used,
            included=len(lines),
            dropped=dropped,
            cross_channel_included=cross_included,
        )
