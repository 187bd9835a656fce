"""
Generation context: the mutable session state owned by the orchestrator.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from ..clients.openrouter_client import ChatMessage
from ..store.models import Conversation

# Assistant text recorded in the running history when the model sent none
DEFAULT_ASSISTANT_TEXT = "Image generated"


@dataclass
class GenerationContext:
    """Session state passed by reference to the orchestrator's handlers."""

    api_key: str = ""
    selected_model: Optional[str] = None
    current_conversation: Optional[Conversation] = None
    conversation_history: List[ChatMessage] = field(default_factory=list)
    is_generating: bool = False
    resolution: str = "1K"
    aspect_ratio: str = "1:1"

    @property
    def current_timestamp(self) -> Optional[int]:
        if self.current_conversation is None:
            return None
        return self.current_conversation.timestamp

    def reset_conversation(self) -> None:
        """Forget the current conversation and its model context."""
        self.current_conversation = None
        self.conversation_history = []


def history_from_conversation(conversation: Conversation) -> List[ChatMessage]:
    """Rebuild the role-tagged model context from persisted entries."""
    history = []
    for entry in conversation.entries:
        if entry.is_pending:
            continue
        history.append(ChatMessage(role="user", content=entry.message.text))
        history.append(
            ChatMessage(role="assistant", content=entry.response.text or DEFAULT_ASSISTANT_TEXT)
        )
    return history
