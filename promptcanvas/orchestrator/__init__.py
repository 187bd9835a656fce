"""
Generation orchestration: session context, listener interface and the
submit state machine.
"""

from .background import BackgroundTasks
from .context import DEFAULT_ASSISTANT_TEXT, GenerationContext, history_from_conversation
from .listener import GenerationListener
from .service import GenerationError, GenerationOrchestrator, generate_random_seed

__all__ = [
    "BackgroundTasks",
    "DEFAULT_ASSISTANT_TEXT",
    "GenerationContext",
    "GenerationError",
    "GenerationListener",
    "GenerationOrchestrator",
    "generate_random_seed",
    "history_from_conversation",
]
