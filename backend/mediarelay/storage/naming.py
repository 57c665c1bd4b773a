"""Collision-safe file naming.

A desired name that already exists in the target folder gets an
incrementing ``_N`` suffix before its extension::

    photo.jpg  ->  photo_1.jpg, photo_2.jpg, ...
    report     ->  report_1, report_2, ...

The probe is a sequential scan, not a reservation: two concurrent callers
can pick the same free name. Backends that reject duplicates raise
``DuplicateNameError`` and ``allocate_and_write`` moves on to the next
suffix; backends that accept duplicates simply store two objects.
"""
import logging
from pathlib import Path
from typing import Tuple

from mediarelay.errors import DuplicateNameError, UploadFailure

from .base import FolderHandle, StorageBackend, UploadResult

logger = logging.getLogger(__name__)

# Upper bound on suffix probes / write retries for a single file.
MAX_PROBES = 1000
MAX_WRITE_ATTEMPTS = 5


def split_name(name: str) -> Tuple[str, str]:
    """Split *name* at the last dot into ``(base, ".ext")``.

    Names without a dot, or whose only dot is the leading one (``.env``),
    have an empty extension.
    """
    dot = name.rfind(".")
    if dot <= 0:
        return name, ""
    return name[:dot], name[dot:]


def candidate_name(name: str, index: int) -> str:
    """Return the *index*-th candidate for *name* (0 is the name itself)."""
    if index == 0:
        return name
    base, ext = split_name(name)
    return f"{base}_{index}{ext}"


class NameAllocator:
    """Finds a free name in a folder and writes under it."""

    def __init__(self, max_probes: int = MAX_PROBES) -> None:
        self.max_probes = max_probes

    async def allocate(
        self,
        backend: StorageBackend,
        folder: FolderHandle,
        desired: str,
        start: int = 0,
    ) -> Tuple[str, int]:
        """Return ``(final_name, index)`` for the first unused candidate.

        Raises:
            UploadFailure: If no free name was found within ``max_probes``.
        """
        for index in range(start, start + self.max_probes):
            name = candidate_name(desired, index)
            if not await backend.exists(folder, name):
                return name, index
        raise UploadFailure(
            f"no free name for {desired} after {self.max_probes} probes", backend.name
        )

    async def allocate_and_write(
        self,
        backend: StorageBackend,
        folder: FolderHandle,
        desired: str,
        source: Path,
    ) -> UploadResult:
        """Allocate a free name and write *source* under it.

        A write rejected as a duplicate re-probes from the next suffix.
        """
        start = 0
        for _ in range(MAX_WRITE_ATTEMPTS):
            name, index = await self.allocate(backend, folder, desired, start)
            try:
                return await backend.write(folder, name, source)
            except DuplicateNameError:
                logger.info("[%s] %s taken concurrently; re-probing", backend.name, name)
                start = index + 1
        raise UploadFailure(
            f"gave up on {desired} after {MAX_WRITE_ATTEMPTS} duplicate collisions",
            backend.name,
        )
