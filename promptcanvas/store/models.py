"""
PromptCanvas Store - Data Models

Pydantic v2 models for conversation.json and summary.json.
Field names are snake_case in Python and camelCase on disk.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# Sentinel filename marking an in-flight placeholder entry
GENERATING_SENTINEL = "generating"

DEFAULT_SUMMARY_TITLE = "New Conversation"


# =============================================================================
# Enums
# =============================================================================

class NodeKind(str, Enum):
    """Kinds of nodes in the hierarchical namespace."""
    DIRECTORY = "directory"
    LEAF = "leaf"


# =============================================================================
# Validators
# =============================================================================

def validate_safe_name(name: str) -> str:
    """Validate name doesn't contain path traversal or dangerous chars."""
    if not name:
        raise ValueError("Name cannot be empty")
    if "/" in name or "\\" in name:
        raise ValueError("Name cannot contain path separators")
    if ".." in name:
        raise ValueError("Name cannot contain path traversal")
    if "\x00" in name:
        raise ValueError("Name cannot contain null bytes")
    return name


def validate_safe_filename(filename: str) -> str:
    """Validate filename is safe for the namespace."""
    validate_safe_name(filename)
    # Dot-names are reserved for staging files
    if filename.startswith("."):
        raise ValueError("Filename cannot start with dot")
    return filename


# =============================================================================
# Namespace
# =============================================================================

@dataclass(frozen=True)
class NodeInfo:
    """A child entry returned by a directory listing."""
    name: str
    kind: NodeKind

    @property
    def is_directory(self) -> bool:
        return self.kind == NodeKind.DIRECTORY

    @property
    def is_leaf(self) -> bool:
        return self.kind == NodeKind.LEAF


# =============================================================================
# Conversation Models (conversations/<ts>/conversation.json)
# =============================================================================

class EntryMessage(BaseModel):
    """The user turn and the exact parameters it was generated with."""
    model_config = ConfigDict(populate_by_name=True)

    system_prompt: str = Field(default="", alias="systemPrompt")
    text: str
    seed: Optional[int] = None


class EntryResponse(BaseModel):
    """The assistant turn: text plus references to stored images."""
    model_config = ConfigDict(populate_by_name=True)

    text: Optional[str] = None
    image_filenames: List[str] = Field(default_factory=list, alias="imageFilenames")
    image_resolutions: List[str] = Field(default_factory=list, alias="imageResolutions")
    response_data: Optional[Dict[str, Any]] = Field(default=None, alias="responseData")
    generation_data: Optional[Dict[str, Any]] = Field(default=None, alias="generationData")

    @property
    def is_pending(self) -> bool:
        return self.image_filenames == [GENERATING_SENTINEL]

    @property
    def generation_id(self) -> Optional[str]:
        if not self.response_data:
            return None
        return self.response_data.get("id")

    @model_validator(mode="after")
    def check_parallel_arrays(self) -> "EntryResponse":
        if self.is_pending:
            return self
        if len(self.image_filenames) != len(self.image_resolutions):
            raise ValueError(
                f"imageFilenames ({len(self.image_filenames)}) and imageResolutions "
                f"({len(self.image_resolutions)}) must have the same length"
            )
        return self


class ConversationEntry(BaseModel):
    """One generation round."""
    message: EntryMessage
    response: EntryResponse = Field(default_factory=EntryResponse)

    @classmethod
    def placeholder(
        cls,
        text: str,
        system_prompt: str,
        seed: Optional[int],
        resolution: str,
    ) -> "ConversationEntry":
        """Create an in-flight entry rendered before the network call completes."""
        return cls(
            message=EntryMessage(system_prompt=system_prompt, text=text, seed=seed),
            response=EntryResponse(
                image_filenames=[GENERATING_SENTINEL],
                image_resolutions=[resolution],
            ),
        )

    @property
    def is_pending(self) -> bool:
        return self.response.is_pending

    @property
    def image_count(self) -> int:
        if self.is_pending:
            return 0
        return len(self.response.image_filenames)

    def image_indices(self) -> List[int]:
        """Image indices referenced by this entry (sentinels skipped)."""
        indices = []
        for filename in self.response.image_filenames:
            try:
                indices.append(int(filename))
            except ValueError:
                continue
        return indices


class Conversation(BaseModel):
    """A conversation record keyed by its creation timestamp."""
    timestamp: int
    entries: List[ConversationEntry] = Field(default_factory=list)

    @property
    def image_count(self) -> int:
        return sum(entry.image_count for entry in self.entries)

    @property
    def entry_count(self) -> int:
        return len(self.entries)

    def referenced_image_indices(self) -> List[int]:
        indices: List[int] = []
        for entry in self.entries:
            indices.extend(entry.image_indices())
        return indices


# =============================================================================
# Summary Model (conversations/<ts>/summary.json)
# =============================================================================

class ConversationSummary(BaseModel):
    """Derived, cached metadata for cheap list rendering."""
    model_config = ConfigDict(populate_by_name=True)

    title: str = DEFAULT_SUMMARY_TITLE
    image_count: int = Field(default=0, alias="imageCount")
    entry_count: int = Field(default=0, alias="entryCount")
    created: int
    updated: int

    @classmethod
    def create_default(cls, timestamp: int) -> "ConversationSummary":
        return cls(created=timestamp, updated=timestamp)
