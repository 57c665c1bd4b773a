"""OneDrive backend over Microsoft Graph.

Items are addressed by path relative to the drive root
(``/me/drive/root:/LINE-bot/Group-ABCD``). Creates use
``conflictBehavior: fail`` so that a concurrent duplicate surfaces as HTTP
409 and is turned into ``DuplicateNameError`` for the caller to re-probe.
"""
import logging
import os
import re
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import httpx

from mediarelay.errors import DuplicateNameError, FolderResolutionFailure, UploadFailure

from .base import FolderHandle, FolderPath, RestBackend, UploadResult, iter_file

logger = logging.getLogger(__name__)

# Graph's simple upload accepts at most 4 MiB.
SIMPLE_UPLOAD_LIMIT = 4 * 1024 * 1024
# Upload-session chunks must be multiples of 320 KiB.
SESSION_CHUNK_UNIT = 320 * 1024

_ILLEGAL_CHARS = re.compile(r'["*:<>?/\\|]')


def sanitize_name(name: str) -> str:
    """Replace characters OneDrive does not allow in item names."""
    cleaned = _ILLEGAL_CHARS.sub("_", name).strip().rstrip(".")
    return cleaned or "_"


def encode_path(segments: FolderPath) -> str:
    return "/".join(quote(s, safe="") for s in segments)


class GraphBackend(RestBackend):
    """OneDrive backend using Microsoft Graph."""

    name = "onedrive"
    API_BASE = "https://graph.microsoft.com/v1.0"

    def root(self) -> FolderHandle:
        return FolderHandle(backend=self.name, id="root", path=())

    def _item_url(self, segments: FolderPath, suffix: str = "") -> str:
        if not segments:
            return f"{self.API_BASE}/me/drive/root"
        return f"{self.API_BASE}/me/drive/root:/{encode_path(segments)}{suffix}"

    async def _get_item(self, segments: FolderPath) -> Optional[dict]:
        resp = await self._request("GET", self._item_url(segments))
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    async def find_folder(self, parent: FolderHandle, name: str) -> Optional[FolderHandle]:
        segments = parent.child_path(sanitize_name(name))
        try:
            item = await self._get_item(segments)
        except httpx.HTTPError as e:
            raise FolderResolutionFailure(f"lookup failed: {e}", self.name, name) from e
        if item is None or "folder" not in item:
            return None
        return FolderHandle(backend=self.name, id=item["id"], path=segments)

    async def create_folder(self, parent: FolderHandle, name: str) -> FolderHandle:
        safe = sanitize_name(name)
        url = (
            f"{self.API_BASE}/me/drive/root/children"
            if not parent.path
            else f"{self.API_BASE}/me/drive/root:/{encode_path(parent.path)}:/children"
        )
        try:
            resp = await self._request(
                "POST",
                url,
                json={"name": safe, "folder": {}, "@microsoft.graph.conflictBehavior": "fail"},
            )
        except httpx.HTTPError as e:
            raise FolderResolutionFailure(f"create failed: {e}", self.name, name) from e
        if resp.status_code == 409:
            raise DuplicateNameError(safe, self.name)
        if resp.status_code >= 400:
            raise FolderResolutionFailure(
                f"create failed: {resp.status_code} {resp.text}", self.name, name
            )
        return FolderHandle(backend=self.name, id=resp.json()["id"], path=parent.child_path(safe))

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def exists(self, folder: FolderHandle, name: str) -> bool:
        try:
            return await self._get_item(folder.child_path(sanitize_name(name))) is not None
        except httpx.HTTPError as e:
            raise UploadFailure(f"existence check failed: {e}", self.name) from e

    async def write(self, folder: FolderHandle, name: str, source: Path) -> UploadResult:
        safe = sanitize_name(name)
        segments = folder.child_path(safe)
        size = os.path.getsize(source)
        try:
            if size <= SIMPLE_UPLOAD_LIMIT:
                data = await self._simple_upload(segments, source, size)
            else:
                data = await self._session_upload(segments, source, size)
        except DuplicateNameError:
            raise
        except (httpx.HTTPError, KeyError, OSError) as e:
            raise UploadFailure(f"upload of {safe} failed: {e}", self.name) from e

        logger.info("[onedrive] Uploaded %s (%d bytes) to %s", safe, size, "/".join(folder.path))
        return UploadResult(
            backend=self.name,
            handle=data["id"],
            name=data.get("name", safe),
            view_link=data.get("webUrl"),
            size_bytes=size,
            folder_path=folder.path,
        )

    async def _simple_upload(self, segments: FolderPath, source: Path, size: int) -> dict:
        headers = {**await self._auth_headers(), "Content-Length": str(size)}
        resp = await self._client.put(
            self._item_url(segments, ":/content"),
            params={"@microsoft.graph.conflictBehavior": "fail"},
            content=iter_file(source, self._chunk_size),
            headers=headers,
        )
        if resp.status_code == 409:
            raise DuplicateNameError(segments[-1], self.name)
        resp.raise_for_status()
        return resp.json()

    async def _session_upload(self, segments: FolderPath, source: Path, size: int) -> dict:
        resp = await self._request(
            "POST",
            self._item_url(segments, ":/createUploadSession"),
            json={"item": {"@microsoft.graph.conflictBehavior": "fail"}},
        )
        if resp.status_code == 409:
            raise DuplicateNameError(segments[-1], self.name)
        resp.raise_for_status()
        upload_url = resp.json()["uploadUrl"]

        chunk_size = max(SESSION_CHUNK_UNIT, self._chunk_size - self._chunk_size % SESSION_CHUNK_UNIT)
        start = 0
        async for chunk in iter_file(source, chunk_size):
            end = start + len(chunk) - 1
            # The pre-authenticated upload URL must not carry a bearer token.
            part = await self._client.put(
                upload_url,
                content=chunk,
                headers={
                    "Content-Length": str(len(chunk)),
                    "Content-Range": f"bytes {start}-{end}/{size}",
                },
            )
            if part.status_code == 409:
                raise DuplicateNameError(segments[-1], self.name)
            if part.status_code in (200, 201):
                return part.json()
            if part.status_code != 202:
                part.raise_for_status()
                raise UploadFailure(f"unexpected session status {part.status_code}", self.name)
            start = end + 1
        raise UploadFailure("upload session ended without a completed item", self.name)
