"""Multi-backend upload routing.

The routing policy (``google``, ``onedrive`` or ``both``) is fixed when the
router is built. In ``both`` mode each backend runs its own
resolve → allocate → write sequence concurrently; a failure on one backend
never blocks or rolls back the other, and is reported per backend.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Sequence

from mediarelay.errors import RelayError, UploadFailure

from .base import FolderHandle, FolderPath, StorageBackend, UploadResult
from .naming import NameAllocator
from .resolver import FolderResolver

logger = logging.getLogger(__name__)


@dataclass
class RoutedUpload:
    """Per-backend outcome of one ``upload_all`` call."""
    results: Dict[str, UploadResult] = field(default_factory=dict)
    failures: Dict[str, RelayError] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return bool(self.results)

    @property
    def partial(self) -> bool:
        return bool(self.results) and bool(self.failures)

    @property
    def all_failed(self) -> bool:
        return not self.results and bool(self.failures)


class UploadRouter:
    """Routes one staged file to every configured backend."""

    def __init__(
        self,
        backends: Sequence[StorageBackend],
        resolver: FolderResolver,
        allocator: NameAllocator,
    ) -> None:
        if not backends:
            raise ValueError("UploadRouter needs at least one backend")
        self.backends: List[StorageBackend] = list(backends)
        self.resolver = resolver
        self.allocator = allocator

    @classmethod
    def for_mode(
        cls,
        backend_names: Sequence[str],
        available: Mapping[str, StorageBackend],
        resolver: FolderResolver,
        allocator: NameAllocator,
    ) -> "UploadRouter":
        """Build a router for the backends named by the drive mode."""
        missing = [n for n in backend_names if n not in available]
        if missing:
            raise ValueError(f"Unknown storage backends: {missing}")
        return cls([available[n] for n in backend_names], resolver, allocator)

    @property
    def backend_names(self) -> List[str]:
        return [b.name for b in self.backends]

    async def upload(
        self,
        backend: StorageBackend,
        folder: FolderHandle,
        final_name: str,
        source: Path,
    ) -> UploadResult:
        """Write *source* as *final_name* into an already resolved folder."""
        try:
            return await backend.write(folder, final_name, source)
        except RelayError:
            raise
        except Exception as e:
            raise UploadFailure(str(e), backend.name) from e

    async def upload_to(
        self,
        backend: StorageBackend,
        path: FolderPath,
        desired_name: str,
        source: Path,
    ) -> UploadResult:
        """Resolve *path*, pick a free name and upload, on one backend.

        A failed write may mean the cached folder was deleted remotely, so
        the path is re-resolved from the backend and the write retried once.
        """
        await backend.ensure_ready()
        folder = await self.resolver.resolve(backend, path)
        try:
            return await self._allocate_and_write(backend, folder, desired_name, source)
        except UploadFailure as e:
            logger.warning(
                "[%s] Write into %s failed (%s); re-resolving folder",
                backend.name, "/".join(path), e,
            )
            self.resolver.invalidate(backend, path)
        folder = await self.resolver.resolve(backend, path)
        return await self._allocate_and_write(backend, folder, desired_name, source)

    async def _allocate_and_write(
        self,
        backend: StorageBackend,
        folder: FolderHandle,
        desired_name: str,
        source: Path,
    ) -> UploadResult:
        try:
            return await self.allocator.allocate_and_write(backend, folder, desired_name, source)
        except RelayError:
            raise
        except Exception as e:
            raise UploadFailure(str(e), backend.name) from e

    async def upload_all(
        self,
        path: FolderPath,
        desired_name: str,
        source: Path,
    ) -> RoutedUpload:
        """Upload to every configured backend; never raises for backend errors."""
        outcomes = await asyncio.gather(
            *(self.upload_to(b, path, desired_name, source) for b in self.backends),
            return_exceptions=True,
        )
        routed = RoutedUpload()
        for backend, outcome in zip(self.backends, outcomes):
            if isinstance(outcome, UploadResult):
                routed.results[backend.name] = outcome
            elif isinstance(outcome, RelayError):
                logger.error("[%s] Upload of %s failed: %s", backend.name, desired_name, outcome)
                routed.failures[backend.name] = outcome
            elif isinstance(outcome, Exception):
                logger.exception("[%s] Unexpected upload error", backend.name, exc_info=outcome)
                routed.failures[backend.name] = UploadFailure(str(outcome), backend.name)
            else:
                # CancelledError and other BaseExceptions are not ours to swallow.
                raise outcome
        return routed
