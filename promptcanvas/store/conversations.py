"""
Conversation Repository

CRUD for conversation records and their PNG attachments, keyed by creation
timestamp (epoch seconds).

Failure policy: every operation logs and returns a sentinel absence
(None / [] / False) instead of raising, so screens driven by these calls
degrade gracefully.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import math
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from .layout import NodeNotFoundError, ObjectStore, StoreError
from .models import Conversation

logger = logging.getLogger(__name__)

CONVERSATIONS_DIR = "conversations"
IMAGES_DIR = "images"
CONVERSATION_FILE = "conversation.json"
IMAGE_SUFFIX = ".png"
DATA_URL_PREFIX = "data:image/png;base64,"


def dump_json(data: Dict) -> str:
    """Serialize with canonical formatting (sorted keys, 2-space indent, trailing newline)."""
    return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def decode_image_payload(image_data: str) -> bytes:
    """
    Decode a data URL or a raw base64 string to bytes.

    Raises:
        ValueError: If the payload is empty or not valid base64
    """
    payload = image_data.strip()
    if payload.startswith("data:"):
        _, sep, encoded = payload.partition(",")
        if not sep:
            raise ValueError("Data URL has no payload")
        payload = encoded
    if not payload:
        raise ValueError("Empty image payload")
    try:
        return base64.b64decode(payload, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 image payload: {e}") from e


def image_filename(index: int) -> str:
    return f"{index}{IMAGE_SUFFIX}"


def parse_image_index(filename: str) -> Optional[int]:
    """Return the index of '<n>.png', or None for anything else."""
    if not filename.endswith(IMAGE_SUFFIX):
        return None
    stem = filename[: -len(IMAGE_SUFFIX)]
    if not stem.isdigit():
        return None
    return int(stem)


class ConversationRepository:
    """
    Manages conversation and image lifecycles.

    Image indices are computed by scanning (never a stored counter):
    next = max(existing files, indices referenced by the record) + 1.
    """

    def __init__(self, store: ObjectStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock
        self._image_locks: Dict[int, asyncio.Lock] = {}

    # =========================================================================
    # Paths
    # =========================================================================

    async def conversations_directory(self) -> Path:
        root = await self.store.root_directory()
        return await self.store.ensure_directory(root, CONVERSATIONS_DIR)

    async def conversation_directory(self, timestamp: int, create: bool = False) -> Path:
        """
        Get the directory for a conversation.

        Raises:
            NodeNotFoundError: If it does not exist and create is False.
        """
        parent = await self.conversations_directory()
        if create:
            return await self.store.ensure_directory(parent, str(timestamp))
        return await self.store.open_directory(parent, str(timestamp))

    async def images_directory(self, timestamp: int, create: bool = False) -> Path:
        """
        Get the images directory of an existing conversation.

        Only writers pass create=True; read and delete paths never create it.

        Raises:
            NodeNotFoundError: If the conversation (or, without create, the
                images directory) does not exist.
        """
        conv_dir = await self.conversation_directory(timestamp)
        if create:
            return await self.store.ensure_directory(conv_dir, IMAGES_DIR)
        return await self.store.open_directory(conv_dir, IMAGES_DIR)

    # =========================================================================
    # Conversations
    # =========================================================================

    async def create(self) -> int:
        """
        Create a new conversation directory.

        Two calls within the same second return the same timestamp and share
        one directory. The timestamp is returned even if storage fails.
        """
        timestamp = math.floor(self.clock())
        try:
            conv_dir = await self.conversation_directory(timestamp, create=True)
            await self.store.ensure_directory(conv_dir, IMAGES_DIR)
        except (StoreError, ValueError) as e:
            logger.error("[conversations] Failed to create conversation %s: %s", timestamp, e)
            return timestamp
        logger.info("[conversations] Created conversation %s", timestamp)
        return timestamp

    async def list(self) -> List[int]:
        """List conversation timestamps, most recent first."""
        try:
            parent = await self.conversations_directory()
            children = await self.store.list_children(parent)
        except StoreError as e:
            logger.warning("[conversations] Failed to list conversations: %s", e)
            return []

        timestamps = []
        for child in children:
            if child.is_directory and child.name.isdigit():
                timestamps.append(int(child.name))
        timestamps.sort(reverse=True)
        return timestamps

    async def load(self, timestamp: int) -> Optional[Conversation]:
        """Load a conversation. Returns None if missing or corrupt."""
        try:
            conv_dir = await self.conversation_directory(timestamp)
            content = await self.store.read_text(conv_dir, CONVERSATION_FILE)
        except NodeNotFoundError:
            return None
        except (StoreError, UnicodeDecodeError) as e:
            logger.warning("[conversations] Failed to read conversation %s: %s", timestamp, e)
            return None

        try:
            data = json.loads(content)
            data.setdefault("timestamp", timestamp)
            return Conversation.model_validate(data)
        except (json.JSONDecodeError, ValidationError, AttributeError) as e:
            logger.warning("[conversations] Invalid conversation %s: %s", timestamp, e)
            return None

    async def save(self, timestamp: int, conversation: Conversation) -> bool:
        """Serialize the whole conversation and overwrite the record."""
        try:
            conv_dir = await self.conversation_directory(timestamp, create=True)
            data = conversation.model_dump(by_alias=True)
            await self.store.write_leaf(conv_dir, CONVERSATION_FILE, dump_json(data))
        except StoreError as e:
            logger.error("[conversations] Failed to save conversation %s: %s", timestamp, e)
            return False
        logger.debug(
            "[conversations] Saved conversation %s (%d entries)",
            timestamp,
            conversation.entry_count,
        )
        return True

    async def delete(self, timestamp: int) -> bool:
        """Delete a conversation and all its contents."""
        try:
            parent = await self.conversations_directory()
            removed = await self.store.remove_child(parent, str(timestamp), recursive=True)
        except StoreError as e:
            logger.error("[conversations] Failed to delete conversation %s: %s", timestamp, e)
            return False
        self._image_locks.pop(timestamp, None)
        if removed:
            logger.info("[conversations] Deleted conversation %s", timestamp)
        return removed

    # =========================================================================
    # Images
    # =========================================================================

    def _image_lock(self, timestamp: int) -> asyncio.Lock:
        lock = self._image_locks.get(timestamp)
        if lock is None:
            lock = asyncio.Lock()
            self._image_locks[timestamp] = lock
        return lock

    async def next_image_index(self, timestamp: int) -> int:
        """
        Compute the next image index for a conversation.

        Raises:
            NodeNotFoundError: If the conversation does not exist.
        """
        conv_dir = await self.conversation_directory(timestamp)
        try:
            images_dir = await self.store.open_directory(conv_dir, IMAGES_DIR)
            children = await self.store.list_children(images_dir)
        except NodeNotFoundError:
            children = []

        max_index = 0
        for child in children:
            if not child.is_leaf:
                continue
            index = parse_image_index(child.name)
            if index is not None and index > max_index:
                max_index = index

        # Never hand out an index a persisted entry still points at
        conversation = await self.load(timestamp)
        if conversation is not None:
            max_index = max([max_index, *conversation.referenced_image_indices()])
        return max_index + 1

    async def save_image(self, timestamp: int, image_data: str) -> Optional[int]:
        """
        Save an image to a conversation.

        Args:
            timestamp: Conversation timestamp
            image_data: Base64 data URL or raw base64 string

        Returns:
            Image index number, or None on any failure
        """
        try:
            content = decode_image_payload(image_data)
        except (ValueError, AttributeError) as e:
            logger.warning("[conversations] Dropping undecodable image for %s: %s", timestamp, e)
            return None

        async with self._image_lock(timestamp):
            try:
                index = await self.next_image_index(timestamp)
                images_dir = await self.images_directory(timestamp, create=True)
                await self.store.write_leaf(images_dir, image_filename(index), content)
            except StoreError as e:
                logger.error("[conversations] Failed to save image for %s: %s", timestamp, e)
                return None

        logger.debug("[conversations] Saved image %s/%d (%d bytes)", timestamp, index, len(content))
        return index

    async def get_image(self, timestamp: int, index: int) -> Optional[bytes]:
        """Get image bytes. Returns None if absent."""
        try:
            images_dir = await self.images_directory(timestamp)
            return await self.store.read_leaf(images_dir, image_filename(index))
        except NodeNotFoundError:
            return None
        except StoreError as e:
            logger.warning("[conversations] Failed to read image %s/%s: %s", timestamp, index, e)
            return None

    async def get_image_data_url(self, timestamp: int, index: int) -> Optional[str]:
        """Get an image as a base64 data URL. Returns None if absent."""
        content = await self.get_image(timestamp, index)
        if content is None:
            return None
        return DATA_URL_PREFIX + base64.b64encode(content).decode("ascii")

    async def delete_image(self, timestamp: int, index: int) -> bool:
        """Delete a single image file. Its index is not handed out again while referenced."""
        try:
            images_dir = await self.images_directory(timestamp)
            return await self.store.remove_child(images_dir, image_filename(index))
        except NodeNotFoundError:
            return False
        except StoreError as e:
            logger.error("[conversations] Failed to delete image %s/%s: %s", timestamp, index, e)
            return False

    async def delete_all_images(self, timestamp: int) -> int:
        """
        Best-effort sweep of a conversation's images directory.

        Returns:
            Number of entries removed
        """
        try:
            images_dir = await self.images_directory(timestamp)
            children = await self.store.list_children(images_dir)
        except NodeNotFoundError:
            return 0
        except StoreError as e:
            logger.error("[conversations] Failed to delete images for %s: %s", timestamp, e)
            return 0

        count = 0
        for child in children:
            try:
                if await self.store.remove_child(images_dir, child.name, recursive=True):
                    count += 1
            except StoreError as e:
                logger.warning("[conversations] Failed to remove %s/%s: %s", timestamp, child.name, e)
        return count
