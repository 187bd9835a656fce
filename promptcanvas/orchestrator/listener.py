"""
Listener interface between the orchestrator and a rendering layer.

All notifications are synchronous and driven by orchestrator state
transitions. The base class ignores everything; renderers override what
they display.
"""

from typing import List, Optional

from ..clients.openrouter_client import Balance, ImageModel
from ..store.models import Conversation, ConversationSummary


class GenerationListener:
    """No-op listener. Subclass and override the notifications you need."""

    def on_placeholder_created(self, conversation: Conversation) -> None:
        """A placeholder entry was appended and should be shown immediately."""

    def on_placeholder_removed(self, conversation: Conversation) -> None:
        """A failed generation rolled its placeholder back."""

    def on_entry_finalized(self, conversation: Conversation) -> None:
        """The placeholder was replaced by the persisted entry."""

    def on_summary_updated(self, timestamp: int, summary: ConversationSummary) -> None:
        """A list item's title, date or count changed."""

    def on_conversations_changed(self, timestamps: List[int]) -> None:
        """The conversation list needs a full refresh."""

    def on_conversation_loaded(self, conversation: Optional[Conversation]) -> None:
        """The current conversation was switched (None = new empty one)."""

    def on_models_loaded(self, models: List[ImageModel], selected: Optional[str]) -> None:
        """Image models were fetched."""

    def on_balance_updated(self, balance: Optional[Balance]) -> None:
        """Balance refreshed; None when it could not be fetched."""

    def on_error(self, message: str) -> None:
        """A user-visible error occurred."""
