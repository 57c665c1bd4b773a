"""Idempotent, race-safe folder resolution.

Backends give no uniqueness guarantee for folder names, so two concurrent
events could each create ``LINE-bot`` or ``LINE-bot/Group-ABCD``. The
resolver walks a path one prefix at a time and serializes each prefix per
``(backend, prefix)``, so conversations that share a parent also share its
creation. Resolved handles are cached so later events skip the lookups.
"""
import asyncio
import logging
from collections import OrderedDict
from typing import Dict, Optional, Tuple

from mediarelay.errors import FolderResolutionFailure, RelayError

from .base import FolderHandle, FolderPath, StorageBackend

logger = logging.getLogger(__name__)

# Maximum number of resolved paths kept in the cache.
RESOLVED_CACHE_SIZE = 1000


class FolderResolver:
    """Resolves logical folder paths into backend folder handles."""

    def __init__(self, cache_size: int = RESOLVED_CACHE_SIZE) -> None:
        self._locks: Dict[Tuple[str, FolderPath], asyncio.Lock] = {}
        self._resolved: "OrderedDict[Tuple[str, FolderPath], FolderHandle]" = OrderedDict()
        self._cache_size = cache_size

    async def resolve(self, backend: StorageBackend, path: FolderPath) -> FolderHandle:
        """Return the folder handle for *path*, creating missing segments.

        Resolving the same path twice returns the same handle; concurrent
        callers for the same path, or for paths sharing a prefix, wait for
        the first one to resolve the shared part.

        Raises:
            FolderResolutionFailure: If the backend lookup or create failed.
        """
        path = tuple(path)
        cached = self._cached((backend.name, path))
        if cached is not None:
            return cached

        current = backend.root()
        for depth in range(1, len(path) + 1):
            current = await self._resolve_prefix(backend, current, path[:depth])
        logger.debug("[%s] Resolved %s -> %s", backend.name, "/".join(path), current.id)
        return current

    async def _resolve_prefix(
        self, backend: StorageBackend, parent: FolderHandle, prefix: FolderPath
    ) -> FolderHandle:
        key = (backend.name, prefix)
        cached = self._cached(key)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self._cached(key)
            if cached is not None:
                return cached
            try:
                handle = await backend.ensure_child(parent, prefix[-1])
            except RelayError:
                raise
            except Exception as e:
                raise FolderResolutionFailure(str(e), backend.name, prefix[-1]) from e
            self._remember(key, handle)
            return handle

    def invalidate(self, backend: StorageBackend, path: FolderPath) -> None:
        """Forget *path* and its parents (e.g. after a folder was deleted remotely)."""
        path = tuple(path)
        for depth in range(1, len(path) + 1):
            self._resolved.pop((backend.name, path[:depth]), None)

    def _cached(self, key: Tuple[str, FolderPath]) -> Optional[FolderHandle]:
        cached = self._resolved.get(key)
        if cached is not None:
            self._resolved.move_to_end(key)
        return cached

    def _remember(self, key: Tuple[str, FolderPath], handle: FolderHandle) -> None:
        self._resolved[key] = handle
        self._resolved.move_to_end(key)
        while len(self._resolved) > self._cache_size:
            evicted, _ = self._resolved.popitem(last=False)
            lock = self._locks.get(evicted)
            # A held lock still has waiters that must share it.
            if lock is not None and not lock.locked():
                del self._locks[evicted]
