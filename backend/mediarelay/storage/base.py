"""StorageBackend abstract interface for cloud-storage integrations.

Each backend (Google Drive, OneDrive) implements the same folder and file
primitives so that the resolver, name allocator and upload router can treat
them polymorphically.

Usage:
    backend = DriveBackend(token_provider)
    await backend.ensure_ready()
    folder = await backend.ensure_path(("LINE-bot", "Group-ABCD"))
    if not await backend.exists(folder, "photo.jpg"):
        result = await backend.write(folder, "photo.jpg", Path("/tmp/photo.jpg"))
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Optional, Tuple

import httpx

from mediarelay.errors import (
    AuthInitFailure,
    DuplicateNameError,
    FolderResolutionFailure,
)

from .tokens import TokenProvider

logger = logging.getLogger(__name__)

FolderPath = Tuple[str, ...]


@dataclass(frozen=True)
class FolderHandle:
    """A resolved backend folder.

    Attributes:
        backend: Name of the backend that owns the folder.
        id: Backend-specific folder identifier ("root" for the drive root).
        path: Logical segments from the drive root to this folder.
    """
    backend: str
    id: str
    path: FolderPath = ()

    def child_path(self, name: str) -> FolderPath:
        return self.path + (name,)


@dataclass
class UploadResult:
    """Outcome of a single successful upload on one backend."""
    backend: str
    handle: str
    name: str
    view_link: Optional[str] = None
    size_bytes: int = 0
    folder_path: FolderPath = field(default_factory=tuple)


async def iter_file(path: Path, chunk_size: int) -> AsyncIterator[bytes]:
    """Yield a file's content in chunks without loading it whole."""
    with open(path, "rb") as fh:
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            yield chunk


class StorageBackend(ABC):
    """Abstract base class for storage backends.

    Subclasses provide the single-call primitives (find, create, exists,
    write); ``ensure_child`` and ``ensure_path`` compose them into the
    segment walk used by ``FolderResolver``.
    """

    name: str = "backend"

    @property
    @abstractmethod
    def ready(self) -> bool:
        """Whether credentials are currently set up."""

    @abstractmethod
    async def ensure_ready(self) -> None:
        """Set up (or refresh) credentials.

        Raises:
            AuthInitFailure: If credentials could not be obtained.
        """

    @abstractmethod
    def root(self) -> FolderHandle:
        """Handle for the drive root."""

    @abstractmethod
    async def find_folder(self, parent: FolderHandle, name: str) -> Optional[FolderHandle]:
        """Return the child folder of *parent* named exactly *name*, if any."""

    @abstractmethod
    async def create_folder(self, parent: FolderHandle, name: str) -> FolderHandle:
        """Create a child folder.

        Raises:
            DuplicateNameError: If the backend rejects the create because
                a sibling with that name exists.
            FolderResolutionFailure: On any other error.
        """

    @abstractmethod
    async def exists(self, folder: FolderHandle, name: str) -> bool:
        """Whether *folder* already has a child named *name*."""

    @abstractmethod
    async def write(self, folder: FolderHandle, name: str, source: Path) -> UploadResult:
        """Create a file with the content of *source*.

        Raises:
            DuplicateNameError: If the backend refuses to overwrite *name*.
            UploadFailure: On any other error.
        """

    async def ensure_child(self, parent: FolderHandle, segment: str) -> FolderHandle:
        """Find or create the folder *segment* under *parent*.

        A create that fails (typically because a concurrent caller created
        the same folder first) is followed by one re-query; only if that
        also misses is the failure raised.
        """
        found = await self.find_folder(parent, segment)
        if found is not None:
            return found
        try:
            found = await self.create_folder(parent, segment)
            logger.info("[%s] Created folder %s", self.name, "/".join(found.path))
            return found
        except (DuplicateNameError, FolderResolutionFailure) as e:
            found = await self.find_folder(parent, segment)
            if found is None:
                if isinstance(e, FolderResolutionFailure):
                    raise
                raise FolderResolutionFailure(str(e), self.name, segment) from e
            logger.info("[%s] Folder %s appeared after create miss", self.name, segment)
            return found

    async def ensure_path(self, path: FolderPath) -> FolderHandle:
        """Walk *path* from the root, creating missing segments.

        No locking happens here; ``FolderResolver`` serializes each prefix.
        """
        current = self.root()
        for segment in path:
            current = await self.ensure_child(current, segment)
        return current


class RestBackend(StorageBackend):
    """Shared HTTP plumbing for REST-based backends.

    Holds the ``httpx.AsyncClient`` and token provider, tracks readiness,
    and retries a request once with a fresh token on HTTP 401.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        client: Optional[httpx.AsyncClient] = None,
        chunk_size: int = 5 * 1024 * 1024,
    ):
        self._tokens = token_provider
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
        self._chunk_size = chunk_size
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def ensure_ready(self) -> None:
        try:
            await self._tokens.get_token()
        except AuthInitFailure:
            if self._ready:
                logger.warning("[%s] Credentials lost; backend degraded", self.name)
            self._ready = False
            raise
        if not self._ready:
            logger.info("[%s] Backend ready", self.name)
        self._ready = True

    async def close(self) -> None:
        await self._client.aclose()

    async def _auth_headers(self) -> dict:
        token = await self._tokens.get_token()
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send an authorized request; on 401 refresh the token and retry once.

        Streamed bodies must not go through here since they cannot be replayed.
        """
        extra_headers = kwargs.pop("headers", {})
        resp = await self._client.request(
            method, url, headers={**await self._auth_headers(), **extra_headers}, **kwargs
        )
        if resp.status_code == 401:
            logger.info("[%s] 401 from %s; refreshing token", self.name, method)
            self._tokens.invalidate()
            resp = await self._client.request(
                method, url, headers={**await self._auth_headers(), **extra_headers}, **kwargs
            )
        return resp
