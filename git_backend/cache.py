"""Local content cache for previously fetched file contents.

Entries are keyed by a stable id (usually a blob sha), so a cached value
never goes stale: a changed file gets a new id.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union
from urllib.parse import quote

logger = logging.getLogger(__name__)

CacheValue = Union[str, bytes]

BLOB_KEY_SUFFIX = ".blob"


class ContentCache:
    """Cache of file contents, in memory or on disk.

    When a directory is given every key is stored as its own file so the
    cache survives across sessions.
    """

    TEXT_SUFFIX = ".txt"
    BINARY_SUFFIX = ".bin"

    def __init__(self, directory: Optional[Path] = None):
        """Initialize the cache.

        Args:
            directory: Optional directory for persistent storage
        """
        self.directory = directory
        self._memory: dict[str, CacheValue] = {}

    def _path_for(self, key: str, suffix: str) -> Path:
        assert self.directory is not None
        return self.directory / f"{quote(key, safe='')}{suffix}"

    def get(self, key: str) -> Optional[CacheValue]:
        if self.directory is None:
            return self._memory.get(key)

        text_path = self._path_for(key, self.TEXT_SUFFIX)
        if text_path.exists():
            return text_path.read_text(encoding="utf-8")
        binary_path = self._path_for(key, self.BINARY_SUFFIX)
        if binary_path.exists():
            return binary_path.read_bytes()
        return None

    def set(self, key: str, value: CacheValue) -> None:
        if self.directory is None:
            self._memory[key] = value
            return

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            if isinstance(value, bytes):
                self._path_for(key, self.BINARY_SUFFIX).write_bytes(value)
            else:
                self._path_for(key, self.TEXT_SUFFIX).write_text(value, encoding="utf-8")
            logger.debug(f"Cached {key}")
        except OSError as e:
            # Cache writes are best effort
            logger.warning(f"Failed to write cache entry {key}: {e}")

    def clear(self) -> None:
        self._memory.clear()
        if self.directory is not None and self.directory.exists():
            for path in self.directory.iterdir():
                if path.suffix in (self.TEXT_SUFFIX, self.BINARY_SUFFIX):
                    path.unlink()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


def cache_key(id: Optional[str], parse_text: bool = True) -> Optional[str]:
    """Cache key for a file read by content id.

    Text and binary reads of the same blob are cached apart so each read
    gets back the type it asked for.
    """
    if not id:
        return None
    return id if parse_text else f"{id}{BLOB_KEY_SUFFIX}"
