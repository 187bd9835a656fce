"""
PromptCanvas Store

Persistent conversation/image store on a private hierarchical namespace.

Usage:
    from promptcanvas.store import Store

    store = Store()
    timestamp = await store.conversations.create()
    index = await store.conversations.save_image(timestamp, data_url)
    summary = await store.summaries.recompute(timestamp)
"""

import time
from pathlib import Path
from typing import Callable, Optional

from .conversations import ConversationRepository
from .layout import (
    NodeKindError,
    NodeNotFoundError,
    ObjectStore,
    StoreError,
    StoreLockError,
)
from .models import (
    DEFAULT_SUMMARY_TITLE,
    GENERATING_SENTINEL,
    Conversation,
    ConversationEntry,
    ConversationSummary,
    EntryMessage,
    EntryResponse,
    NodeInfo,
    NodeKind,
)
from .preferences import PreferenceStore
from .summary import SummaryCache


class Store:
    """Facade wiring the object store, preferences, conversations and summaries."""

    def __init__(self, root: Optional[Path] = None, clock: Callable[[], float] = time.time):
        self.layout = ObjectStore(root)
        self.preferences = PreferenceStore(self.layout)
        self.conversations = ConversationRepository(self.layout, clock=clock)
        self.summaries = SummaryCache(self.layout, self.conversations, clock=clock)

    @property
    def root(self) -> Path:
        return self.layout.root


__all__ = [
    "Store",
    "ObjectStore",
    "PreferenceStore",
    "ConversationRepository",
    "SummaryCache",
    "StoreError",
    "StoreLockError",
    "NodeNotFoundError",
    "NodeKindError",
    "NodeInfo",
    "NodeKind",
    "Conversation",
    "ConversationEntry",
    "ConversationSummary",
    "EntryMessage",
    "EntryResponse",
    "GENERATING_SENTINEL",
    "DEFAULT_SUMMARY_TITLE",
]
