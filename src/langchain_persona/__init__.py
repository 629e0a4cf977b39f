"""
Prompt context engine for persona chat bots.

Assembles a bounded-size prompt from long-term memories, conversation
history and a fixed system prompt, then invokes the chat model with
retries, deadlines and reasoning-model handling.
"""

from .budget import BudgetCoordinator
from .errors import (
    BudgetExhausted,
    GlobalTimeoutExceeded,
    InvocationError,
    PermanentInvocationError,
    PersonaContextError,
    RetrievalFailure,
    RetriesExhausted,
    TransientInvocationError,
)
from .invoker import InvocationResult, ModelInvoker, build_stop_sequences
from .models import ModelCache, ModelConfig, resolve_config_source
from .prompt import AssembledPrompt, ConversationContext, Participant, Personality
from .service import PersonaChatService

__all__ = [
    "BudgetCoordinator",
    "BudgetExhausted",
    "GlobalTimeoutExceeded",
    "InvocationError",
    "PermanentInvocationError",
    "PersonaContextError",
    "RetrievalFailure",
    "RetriesExhausted",
    "TransientInvocationError",
    "InvocationResult",
    "ModelInvoker",
    "build_stop_sequences",
    "ModelCache",
    "ModelConfig",
    "resolve_config_source",
    "AssembledPrompt",
    "ConversationContext",
    "Participant",
    "Personality",
    "PersonaChatService",
]
