"""
Chat-model invocation with bounded retries and deadlines.

Each call to ``ModelInvoker.invoke`` runs an explicit attempt loop:

  - a global deadline, grown by attachment count, is checked before every
    attempt; no attempt starts once it has passed
  - each attempt is bounded by the per-attempt timeout, capped by the time
    left on the global deadline
  - empty and censored responses count as retryable failures, like network
    errors; auth/quota/content-policy errors fail on first sight
  - backoff doubles per attempt (1s, 2s, 4s, ...) up to ``max_retry_delay``

Running out of time raises GlobalTimeoutExceeded; running out of attempts
raises RetriesExhausted.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage

from .clock import SYSTEM_CLOCK, Clock
from .errors import (
    CENSORED_RESPONSE_TEXT,
    GlobalTimeoutExceeded,
    InvocationError,
    RetriesExhausted,
    TransientInvocationError,
    classify_error,
)
from .memory.config import ContextConfig
from .reasoning import (
    ReasoningModelConfig,
    get_reasoning_model_config,
    process_reasoning_output,
    transform_messages,
)

logger = logging.getLogger(__name__)

# Markup the model only emits when it starts writing another turn of the log
STRUCTURAL_STOP_SEQUENCES = ("<message from=", "</message>", "</chat_log>")


def build_stop_sequences(
    personality_name: str,
    active_persona_name: Optional[str] = None,
    participant_names: Sequence[str] = (),
    max_count: int = 16,
) -> list[str]:
    """
    Stop sequences in priority order: structural markup, the user currently
    speaking, then everyone else. Lowest-priority entries are cut first.
    """
    candidates = list(STRUCTURAL_STOP_SEQUENCES)
    if active_persona_name:
        candidates.append(f"\n{active_persona_name}:")
    candidates.extend(f"\n{name}:" for name in participant_names if name)

    own = f"\n{personality_name}:"
    result: list[str] = []
    for seq in candidates:
        if seq == own or seq in result:
            continue
        result.append(seq)

    if len(result) > max_count:
        logger.debug("Truncating %d stop sequences to %d", len(result), max_count)
        result = result[:max_count]
    return result


def message_text(message: BaseMessage) -> str:
    """Plain text of a message whose content is a string or a list of segments."""
    content = message.content
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type", "text") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return ""


class AttemptStatus(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


@dataclass
class AttemptOutcome:
    status: AttemptStatus
    response: Optional[BaseMessage] = None
    error: Optional[InvocationError] = None

    @classmethod
    def failed(cls, error: InvocationError) -> "AttemptOutcome":
        status = AttemptStatus.RETRYABLE if error.retryable else AttemptStatus.PERMANENT
        return cls(status=status, error=error)


@dataclass
class InvocationAttempt:
    attempt_number: int
    started_at: float
    timeout: float
    error: Optional[str] = None


@dataclass
class InvocationResult:
    message: BaseMessage
    content: str
    model_used: str
    attempts: int
    total_time_ms: int


class ModelInvoker:
    """Runs a chat model with retry, timeout and reasoning-model handling."""

    def __init__(self, config: Optional[ContextConfig] = None, clock: Clock = SYSTEM_CLOCK):
        self.config = config or ContextConfig()
        self._clock = clock

    def backoff_delay(self, attempt_number: int) -> float:
        delay = self.config.initial_retry_delay * (
            self.config.retry_backoff_multiplier ** (attempt_number - 1)
        )
        return min(delay, self.config.max_retry_delay)

    def invoke(
        self,
        model,
        messages: list[BaseMessage],
        model_name: str,
        stop_sequences: Optional[list[str]] = None,
        image_count: int = 0,
        audio_count: int = 0,
    ) -> InvocationResult:
        reasoning = get_reasoning_model_config(model_name)
        prepared = transform_messages(messages, reasoning)
        deadline = self.config.invocation_deadline(image_count, audio_count)

        logger.info(
            "Invoking %s (reasoning=%s, messages=%d, deadline=%.0fs, stop_sequences=%d)",
            model_name, reasoning.type.value, len(prepared), deadline, len(stop_sequences or []),
        )

        start = self._clock.now()
        last_error: Optional[InvocationError] = None
        attempts: list[InvocationAttempt] = []

        for attempt_number in range(1, self.config.max_attempts + 1):
            elapsed = self._clock.now() - start
            if elapsed >= deadline:
                logger.warning(
                    "Invocation deadline for %s passed after %d attempt(s)",
                    model_name, len(attempts),
                )
                raise GlobalTimeoutExceeded(len(attempts), elapsed, last_error)

            attempt = InvocationAttempt(
                attempt_number=attempt_number,
                started_at=self._clock.now(),
                timeout=min(self.config.per_attempt_timeout, deadline - elapsed),
            )
            attempts.append(attempt)
            outcome = self._attempt(model, prepared, model_name, stop_sequences, attempt.timeout)

            if outcome.status is AttemptStatus.SUCCESS:
                return self._finish(outcome.response, reasoning, model_name, attempt_number, start)

            attempt.error = outcome.error.kind
            last_error = outcome.error
            if outcome.status is AttemptStatus.PERMANENT:
                logger.warning(
                    "Permanent %s error from %s on attempt %d: %s",
                    outcome.error.kind, model_name, attempt_number, outcome.error,
                )
                raise outcome.error

            logger.warning(
                "Attempt %d/%d for %s failed (%s): %s",
                attempt_number, self.config.max_attempts, model_name,
                outcome.error.kind, outcome.error,
            )
            if attempt_number < self.config.max_attempts:
                remaining = deadline - (self._clock.now() - start)
                self._clock.sleep(min(self.backoff_delay(attempt_number), max(0.0, remaining)))

        elapsed = self._clock.now() - start
        if elapsed >= deadline:
            raise GlobalTimeoutExceeded(len(attempts), elapsed, last_error)
        raise RetriesExhausted(len(attempts), last_error)

    def _attempt(
        self,
        model,
        messages: list[BaseMessage],
        model_name: str,
        stop_sequences: Optional[list[str]],
        timeout: float,
    ) -> AttemptOutcome:
        """One model call; every failure is returned, never raised."""
        try:
            response = model.invoke(messages, stop=stop_sequences or None, timeout=timeout)
        except Exception as e:
            return AttemptOutcome.failed(classify_error(e))

        self._log_finish_reason(response, model_name, stop_sequences)

        content = message_text(response).strip()
        if not content:
            return AttemptOutcome.failed(
                TransientInvocationError("Empty response from model", kind="empty_response")
            )
        if content == CENSORED_RESPONSE_TEXT:
            return AttemptOutcome.failed(
                TransientInvocationError("Censored response from model", kind="censored_response")
            )
        return AttemptOutcome(status=AttemptStatus.SUCCESS, response=response)

    def _finish(
        self,
        response: BaseMessage,
        reasoning: ReasoningModelConfig,
        model_name: str,
        attempts: int,
        start: float,
    ) -> InvocationResult:
        content = message_text(response)
        processed = process_reasoning_output(content, reasoning)
        if processed != content:
            logger.info(
                "Stripped %d chars of thinking markup from %s response",
                len(content) - len(processed), model_name,
            )
            response = AIMessage(
                content=processed,
                additional_kwargs=response.additional_kwargs,
                response_metadata=response.response_metadata,
            )
            content = processed

        total_time_ms = int((self._clock.now() - start) * 1000)
        logger.info(
            "Invocation of %s completed in %d attempt(s), %dms",
            model_name, attempts, total_time_ms,
        )
        return InvocationResult(
            message=response,
            content=content,
            model_used=model_name,
            attempts=attempts,
            total_time_ms=total_time_ms,
        )

    @staticmethod
    def _log_finish_reason(
        response: BaseMessage, model_name: str, stop_sequences: Optional[list[str]]
    ) -> None:
        metadata = getattr(response, "response_metadata", None) or {}
        finish_reason = (
            metadata.get("finish_reason")
            or metadata.get("stop_reason")
            or metadata.get("finishReason")
            or "unknown"
        )
        stopped_at = metadata.get("stop") or metadata.get("stop_sequence")
        if finish_reason in ("length", "max_tokens", "MAX_TOKENS"):
            logger.warning("%s hit the token limit (finish_reason=%s)", model_name, finish_reason)
        elif stopped_at is not None:
            logger.info(
                "%s stopped on sequence %r (finish_reason=%s, %d sequences configured)",
                model_name, stopped_at, finish_reason, len(stop_sequences or []),
            )
        else:
            logger.debug("%s finish_reason=%s", model_name, finish_reason)
