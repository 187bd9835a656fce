"""
Summary Cache

Denormalized per-conversation metadata (title, counts, timestamps) stored
as summary.json next to the conversation record. Always re-derivable from
the conversation; recompute() is the only mutator besides initialize().
"""

import asyncio
import json
import logging
import math
import time
from typing import Callable, Dict, Optional

from pydantic import ValidationError

from .conversations import ConversationRepository, dump_json
from .layout import NodeNotFoundError, ObjectStore, StoreError
from .models import ConversationSummary

logger = logging.getLogger(__name__)

SUMMARY_FILE = "summary.json"


class SummaryCache:
    """
    Keeps a cheap-to-read summary per conversation.

    Read-modify-write cycles are serialized per timestamp, so a title patch
    and a counts recompute never lose each other's update.
    """

    def __init__(
        self,
        store: ObjectStore,
        repository: ConversationRepository,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.repository = repository
        self.clock = clock
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock(self, timestamp: int) -> asyncio.Lock:
        lock = self._locks.get(timestamp)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[timestamp] = lock
        return lock

    async def load(self, timestamp: int) -> Optional[ConversationSummary]:
        """Load summary.json. Returns None if missing or invalid."""
        try:
            conv_dir = await self.repository.conversation_directory(timestamp)
            content = await self.store.read_text(conv_dir, SUMMARY_FILE)
            return ConversationSummary.model_validate(json.loads(content))
        except NodeNotFoundError:
            return None
        except (StoreError, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
            logger.warning("[summary] Invalid summary for %s: %s", timestamp, e)
            return None

    async def _save(self, timestamp: int, summary: ConversationSummary) -> bool:
        try:
            conv_dir = await self.repository.conversation_directory(timestamp, create=True)
            data = summary.model_dump(by_alias=True)
            await self.store.write_leaf(conv_dir, SUMMARY_FILE, dump_json(data))
        except StoreError as e:
            logger.error("[summary] Failed to save summary for %s: %s", timestamp, e)
            return False
        return True

    async def initialize(self, timestamp: int) -> ConversationSummary:
        """Write a placeholder summary with zero counts."""
        summary = ConversationSummary.create_default(timestamp)
        async with self._lock(timestamp):
            await self._save(timestamp, summary)
        logger.debug("[summary] Initialized summary for %s", timestamp)
        return summary

    async def recompute(
        self,
        timestamp: int,
        title: Optional[str] = None,
    ) -> Optional[ConversationSummary]:
        """
        Recount images and entries from the live conversation.

        Args:
            timestamp: Conversation timestamp
            title: Optional new title; the prior title is kept otherwise

        Returns:
            Updated summary, or None if the conversation does not exist
        """
        async with self._lock(timestamp):
            conversation = await self.repository.load(timestamp)
            if conversation is None:
                return None

            previous = await self.load(timestamp) or ConversationSummary.create_default(timestamp)
            new_title = title.strip() if title and title.strip() else previous.title

            summary = ConversationSummary(
                title=new_title,
                image_count=conversation.image_count,
                entry_count=conversation.entry_count,
                created=previous.created or timestamp,
                updated=math.floor(self.clock()),
            )
            await self._save(timestamp, summary)

        logger.debug(
            "[summary] Recomputed %s: %d entries, %d images",
            timestamp,
            summary.entry_count,
            summary.image_count,
        )
        return summary
