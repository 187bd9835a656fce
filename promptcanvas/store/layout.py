"""
PromptCanvas Store - Hierarchical Object Store

Manages the private storage namespace:
- preferences/<key>
- conversations/<timestamp>/conversation.json
- conversations/<timestamp>/summary.json
- conversations/<timestamp>/images/<index>.png

Directories are plain Paths. All operations are async; blocking filesystem
calls run in a worker thread. Errors are surfaced, never retried here.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, List, Optional, Union

import filelock

from .models import NodeInfo, NodeKind, validate_safe_filename, validate_safe_name


class StoreError(Exception):
    """Base exception for store errors."""
    pass


class StoreLockError(StoreError):
    """Error when store lock cannot be acquired."""
    pass


class NodeNotFoundError(StoreError):
    """Error when a directory or leaf does not exist."""
    pass


class NodeKindError(StoreError):
    """Error when a leaf is found where a directory is expected, or vice versa."""
    pass


class ObjectStore:
    """
    Tree-shaped persistent namespace rooted at a single private directory.

    Leaf writes go to a dot-prefixed staging file and are published with an
    atomic rename, so readers never observe a partially written leaf.
    """

    LOCK_TIMEOUT = 5.0  # seconds
    STAGING_SUFFIX = ".tmp"

    def __init__(self, root: Optional[Path] = None):
        """
        Initialize the object store.

        Args:
            root: Root directory. Defaults to PROMPTCANVAS_ROOT env var
                  or ~/.promptcanvas
        """
        if root is None:
            root = Path(os.environ.get("PROMPTCANVAS_ROOT", Path.home() / ".promptcanvas"))
        self.root = Path(root).expanduser().resolve()

    @property
    def lock_file_path(self) -> Path:
        """Path to store lock file."""
        return self.root / ".promptcanvas.lock"

    # =========================================================================
    # Locking
    # =========================================================================

    @contextmanager
    def lock(self, timeout: Optional[float] = None) -> Generator[None, None, None]:
        """
        Acquire exclusive lock on the store.

        Args:
            timeout: Lock timeout in seconds. Defaults to LOCK_TIMEOUT.

        Raises:
            StoreLockError: If lock cannot be acquired.
        """
        if timeout is None:
            timeout = self.LOCK_TIMEOUT

        self.root.mkdir(parents=True, exist_ok=True)

        lock = filelock.FileLock(self.lock_file_path)
        try:
            lock.acquire(timeout=timeout)
            yield
        except filelock.Timeout:
            raise StoreLockError(
                f"Could not acquire store lock within {timeout}s. "
                "Another PromptCanvas process may be running."
            )
        finally:
            lock.release()

    # =========================================================================
    # Directories
    # =========================================================================

    async def root_directory(self) -> Path:
        """Return the root directory, creating it on first use."""
        return await asyncio.to_thread(self._ensure_root)

    async def ensure_directory(self, parent: Path, name: str) -> Path:
        """Create-or-open a child directory. Idempotent."""
        validate_safe_filename(name)
        return await asyncio.to_thread(self._ensure_directory_sync, parent, name)

    async def open_directory(self, parent: Path, name: str) -> Path:
        """
        Open an existing child directory without creating it.

        Raises:
            NodeNotFoundError: If the directory does not exist.
            NodeKindError: If the child is a leaf.
        """
        validate_safe_name(name)
        path = parent / name
        is_dir, exists = await asyncio.to_thread(lambda: (path.is_dir(), path.exists()))
        if not exists:
            raise NodeNotFoundError(f"Directory not found: {name}")
        if not is_dir:
            raise NodeKindError(f"Not a directory: {name}")
        return path

    async def list_children(self, directory: Path) -> List[NodeInfo]:
        """
        List children of a directory. Order is not significant.

        Raises:
            NodeNotFoundError: If the directory does not exist.
        """
        return await asyncio.to_thread(self._list_children_sync, directory)

    async def remove_child(self, directory: Path, name: str, recursive: bool = False) -> bool:
        """
        Remove a child node. Returns True if something was removed.

        Removing an absent child is a no-op. A non-empty directory requires
        recursive=True.
        """
        validate_safe_name(name)
        return await asyncio.to_thread(self._remove_child_sync, directory / name, recursive)

    # =========================================================================
    # Leaves
    # =========================================================================

    async def read_leaf(self, directory: Path, name: str) -> bytes:
        """
        Read a leaf as bytes.

        Raises:
            NodeNotFoundError: If the leaf does not exist.
        """
        validate_safe_name(name)
        return await asyncio.to_thread(self._read_leaf_sync, directory / name)

    async def read_text(self, directory: Path, name: str) -> str:
        """Read a leaf as UTF-8 text."""
        data = await self.read_leaf(directory, name)
        return data.decode("utf-8")

    async def write_leaf(self, directory: Path, name: str, content: Union[bytes, str]) -> None:
        """
        Create-or-truncate a leaf with all-or-nothing visibility.

        Uses write-to-staging-then-rename pattern for atomicity.
        """
        validate_safe_filename(name)
        if isinstance(content, str):
            content = content.encode("utf-8")
        await asyncio.to_thread(self._write_leaf_sync, directory, name, content)

    # =========================================================================
    # Sync helpers (run in worker threads)
    # =========================================================================

    def _ensure_root(self) -> Path:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create store root {self.root}: {e}") from e
        return self.root

    def _ensure_directory_sync(self, parent: Path, name: str) -> Path:
        path = parent / name
        if path.exists() and not path.is_dir():
            raise NodeKindError(f"Not a directory: {name}")
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create directory {name}: {e}") from e
        return path

    def _list_children_sync(self, directory: Path) -> List[NodeInfo]:
        if not directory.exists():
            raise NodeNotFoundError(f"Directory not found: {directory.name}")
        if not directory.is_dir():
            raise NodeKindError(f"Not a directory: {directory.name}")
        children = []
        try:
            for item in directory.iterdir():
                if item.name.startswith("."):
                    continue
                kind = NodeKind.DIRECTORY if item.is_dir() else NodeKind.LEAF
                children.append(NodeInfo(name=item.name, kind=kind))
        except OSError as e:
            raise StoreError(f"Cannot list {directory.name}: {e}") from e
        return children

    def _remove_child_sync(self, path: Path, recursive: bool) -> bool:
        if not path.exists() and not path.is_symlink():
            return False
        try:
            if path.is_dir():
                if recursive:
                    shutil.rmtree(path)
                else:
                    path.rmdir()
            else:
                path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreError(f"Cannot remove {path.name}: {e}") from e
        return True

    def _read_leaf_sync(self, path: Path) -> bytes:
        if path.is_dir():
            raise NodeKindError(f"Not a leaf: {path.name}")
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise NodeNotFoundError(f"Leaf not found: {path.name}") from e
        except OSError as e:
            raise StoreError(f"Cannot read {path.name}: {e}") from e

    def _write_leaf_sync(self, directory: Path, name: str, content: bytes) -> None:
        if not directory.is_dir():
            raise NodeNotFoundError(f"Directory not found: {directory.name}")
        path = directory / name
        if path.is_dir():
            raise NodeKindError(f"Not a leaf: {name}")

        # One staging file per write; concurrent writers of a leaf never share it
        try:
            fd, staging_name = tempfile.mkstemp(
                dir=directory, prefix=f".{name}.", suffix=self.STAGING_SUFFIX
            )
        except OSError as e:
            raise StoreError(f"Cannot write {name}: {e}") from e

        staging_path = Path(staging_name)
        published = False
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            staging_path.replace(path)
            published = True
        except OSError as e:
            raise StoreError(f"Cannot write {name}: {e}") from e
        finally:
            if not published:
                staging_path.unlink(missing_ok=True)
