"""
Preference Store

Flat key/value text settings stored as one leaf per key under preferences/.
Storage failures are logged and absorbed so settings never block the UI.
"""

import logging
from pathlib import Path
from typing import List, Optional

from .layout import NodeNotFoundError, ObjectStore, StoreError
from .models import validate_safe_filename

logger = logging.getLogger(__name__)

PREFERENCES_DIR = "preferences"

# Known preference keys
PREF_API_KEY = "apiKey"
PREF_SELECTED_MODEL = "selectedModel"
PREF_DEFAULT_RESOLUTION = "defaultResolution"
PREF_DEFAULT_ASPECT_RATIO = "defaultAspectRatio"


class PreferenceStore:
    """Key/value preferences layered on the object store."""

    def __init__(self, store: ObjectStore):
        self.store = store

    async def _directory(self) -> Path:
        root = await self.store.root_directory()
        return await self.store.ensure_directory(root, PREFERENCES_DIR)

    async def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """
        Get a preference value.

        Empty or whitespace-only content is treated as absent.

        Returns:
            Stripped value, or default when absent or unreadable
        """
        try:
            validate_safe_filename(key)
            directory = await self._directory()
            content = await self.store.read_text(directory, key)
        except NodeNotFoundError:
            return default
        except (StoreError, ValueError, UnicodeDecodeError) as e:
            logger.warning("[preferences] Failed to read %s: %s", key, e)
            return default

        content = content.strip()
        if not content:
            return default
        return content

    async def set(self, key: str, value: str) -> bool:
        """Create or overwrite a preference. Returns False on failure."""
        try:
            directory = await self._directory()
            await self.store.write_leaf(directory, key, value)
        except (StoreError, ValueError) as e:
            logger.error("[preferences] Failed to save %s: %s", key, e)
            return False
        logger.debug("[preferences] Saved %s", key)
        return True

    async def delete(self, key: str) -> bool:
        """Remove a preference. Returns True if it existed."""
        try:
            validate_safe_filename(key)
            directory = await self._directory()
            return await self.store.remove_child(directory, key)
        except (StoreError, ValueError) as e:
            logger.error("[preferences] Failed to delete %s: %s", key, e)
            return False

    async def list(self) -> List[str]:
        """List all preference keys."""
        try:
            directory = await self._directory()
            children = await self.store.list_children(directory)
        except StoreError as e:
            logger.warning("[preferences] Failed to list preferences: %s", e)
            return []
        return sorted(child.name for child in children if child.is_leaf)

    async def clear(self) -> int:
        """
        Remove all preferences.

        Returns:
            Number of entries removed
        """
        count = 0
        try:
            directory = await self._directory()
            children = await self.store.list_children(directory)
        except StoreError as e:
            logger.error("[preferences] Failed to clear preferences: %s", e)
            return 0

        for child in children:
            try:
                if await self.store.remove_child(directory, child.name, recursive=True):
                    count += 1
            except StoreError as e:
                logger.warning("[preferences] Failed to remove %s: %s", child.name, e)

        logger.info("[preferences] Cleared %d preferences", count)
        return count
