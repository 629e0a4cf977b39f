"""
Error taxonomy for prompt assembly and model invocation.

Budgeting and retrieval errors degrade gracefully (fewer memories or
messages in the prompt). Invocation errors are the only ones that can fail
a generation request, and only after the retry/timeout policy is spent.
"""

from typing import Optional


class PersonaContextError(Exception):
    """Base class for all errors raised by this package."""


class BudgetExhausted(PersonaContextError):
    """Not enough budget left to place any content in a block."""

    def __init__(self, budget: int, overhead: int):
        super().__init__(f"budget {budget} does not cover overhead {overhead}")
        self.budget = budget
        self.overhead = overhead


class RetrievalFailure(PersonaContextError):
    """A single memory query or sibling fetch failed."""


class InvocationError(PersonaContextError):
    """Base class for chat-model invocation failures."""

    retryable = False

    def __init__(self, message: str, kind: str = "unknown", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.kind = kind
        self.cause = cause


class TransientInvocationError(InvocationError):
    """Network, timeout, rate-limit, server, empty or censored response."""

    retryable = True


class PermanentInvocationError(InvocationError):
    """Auth, quota, content-policy and other errors that never succeed on retry."""


class GlobalTimeoutExceeded(InvocationError):
    """The overall invocation deadline elapsed before a successful attempt."""

    def __init__(self, attempts: int, elapsed: float, last_error: Optional[BaseException] = None):
        super().__init__(
            f"invocation deadline exceeded after {attempts} attempt(s) in {elapsed:.1f}s",
            kind="global_timeout",
            cause=last_error,
        )
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error


class RetriesExhausted(InvocationError):
    """Every allowed attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(
            f"invocation failed after {attempts} attempt(s): {last_error}",
            kind="retries_exhausted",
            cause=last_error,
        )
        self.attempts = attempts
        self.last_error = last_error


# Provider response text that stands in for a censored completion
CENSORED_RESPONSE_TEXT = "ext"

_NETWORK_CODES = ("ECONNRESET", "ETIMEDOUT", "ECONNREFUSED", "ENOTFOUND", "EPIPE", "EAI_AGAIN")

_AUTH_MARKERS = ("invalid api key", "incorrect api key", "unauthorized", "authentication")
_QUOTA_MARKERS = ("quota", "insufficient credits", "insufficient_quota", "billing", "payment required")
_POLICY_MARKERS = ("content policy", "content_policy", "safety", "flagged", "moderation")
_MODEL_MARKERS = ("model not found", "model_not_found", "no such model", "does not exist")
_TIMEOUT_MARKERS = ("timeout", "timed out", "deadline")
_RATE_MARKERS = ("rate limit", "rate_limit", "too many requests")


def _status_code(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def classify_error(exc: BaseException) -> InvocationError:
    """
    Map a raw provider/client exception onto the invocation taxonomy.

    Status codes win over message keywords; unrecognized errors are treated
    as transient so a flaky provider gets the benefit of a retry.
    """
    if isinstance(exc, InvocationError):
        return exc

    message = str(exc)
    lowered = message.lower()
    status = _status_code(exc)
    code = str(getattr(exc, "code", "") or "").upper()

    def permanent(kind: str) -> PermanentInvocationError:
        return PermanentInvocationError(message or kind, kind=kind, cause=exc)

    def transient(kind: str) -> TransientInvocationError:
        return TransientInvocationError(message or kind, kind=kind, cause=exc)

    if status == 401 or any(m in lowered for m in _AUTH_MARKERS):
        return permanent("auth")
    if status == 402 or any(m in lowered for m in _QUOTA_MARKERS):
        return permanent("quota")
    if status == 403 or any(m in lowered for m in _POLICY_MARKERS):
        return permanent("content_policy")
    if status == 404 or any(m in lowered for m in _MODEL_MARKERS):
        return permanent("model_not_found")
    if status == 429 or any(m in lowered for m in _RATE_MARKERS):
        return transient("rate_limit")
    if status is not None and status >= 500:
        return transient("server")
    if status == 400:
        return permanent("bad_request")
    if isinstance(exc, TimeoutError) or any(m in lowered for m in _TIMEOUT_MARKERS):
        return transient("timeout")
    if (
        isinstance(exc, ConnectionError)
        or code in _NETWORK_CODES
        or any(c.lower() in lowered for c in _NETWORK_CODES)
    ):
        return transient("network")
    return transient("unknown")
