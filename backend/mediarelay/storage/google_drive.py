"""Google Drive v3 backend.

Folders are addressed by id and looked up with ``files.list`` queries;
file content goes through a resumable upload session so large videos are
streamed from the staging file instead of being held in memory.

Drive does not enforce unique names, so ``write`` never raises
``DuplicateNameError``; collision safety relies on ``NameAllocator``.
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional

import httpx

from mediarelay.errors import FolderResolutionFailure, UploadFailure

from .base import FolderHandle, RestBackend, UploadResult, iter_file

logger = logging.getLogger(__name__)

FOLDER_MIME = "application/vnd.google-apps.folder"


def escape_query_value(value: str) -> str:
    """Escape a literal for embedding in a Drive ``q`` filter string."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


class DriveBackend(RestBackend):
    """Google Drive backend using the v3 REST API."""

    name = "google"
    API_BASE = "https://www.googleapis.com/drive/v3"
    UPLOAD_BASE = "https://www.googleapis.com/upload/drive/v3"

    def root(self) -> FolderHandle:
        return FolderHandle(backend=self.name, id="root", path=())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _list(self, q: str, fields: str = "files(id,name)") -> list:
        resp = await self._request(
            "GET",
            f"{self.API_BASE}/files",
            params={"q": q, "fields": fields, "spaces": "drive", "pageSize": 10},
        )
        resp.raise_for_status()
        return resp.json().get("files", [])

    def _child_query(self, parent: FolderHandle, name: str, folders_only: bool) -> str:
        q = (
            f"'{escape_query_value(parent.id)}' in parents and "
            f"name = '{escape_query_value(name)}' and trashed = false"
        )
        if folders_only:
            q += f" and mimeType = '{FOLDER_MIME}'"
        return q

    async def find_folder(self, parent: FolderHandle, name: str) -> Optional[FolderHandle]:
        try:
            files = await self._list(self._child_query(parent, name, folders_only=True))
        except httpx.HTTPError as e:
            raise FolderResolutionFailure(f"lookup failed: {e}", self.name, name) from e
        if not files:
            return None
        if len(files) > 1:
            logger.warning(
                "[google] %d folders named %r under %s; using the first",
                len(files), name, parent.id,
            )
        return FolderHandle(backend=self.name, id=files[0]["id"], path=parent.child_path(name))

    async def create_folder(self, parent: FolderHandle, name: str) -> FolderHandle:
        try:
            resp = await self._request(
                "POST",
                f"{self.API_BASE}/files",
                params={"fields": "id"},
                json={"name": name, "mimeType": FOLDER_MIME, "parents": [parent.id]},
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise FolderResolutionFailure(f"create failed: {e}", self.name, name) from e
        return FolderHandle(backend=self.name, id=resp.json()["id"], path=parent.child_path(name))

    async def exists(self, folder: FolderHandle, name: str) -> bool:
        return await self.find_file_id(folder, name) is not None

    async def find_file_id(self, folder: FolderHandle, name: str) -> Optional[str]:
        try:
            files = await self._list(self._child_query(folder, name, folders_only=False))
        except httpx.HTTPError as e:
            raise UploadFailure(f"existence check failed: {e}", self.name) from e
        return files[0]["id"] if files else None

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    async def write(self, folder: FolderHandle, name: str, source: Path) -> UploadResult:
        size = os.path.getsize(source)
        try:
            start = await self._request(
                "POST",
                f"{self.UPLOAD_BASE}/files",
                params={"uploadType": "resumable", "fields": "id,name,webViewLink"},
                headers={"X-Upload-Content-Length": str(size)},
                json={"name": name, "parents": [folder.id]},
            )
            start.raise_for_status()
            session_url = start.headers["Location"]
            resp = await self._client.put(
                session_url,
                content=iter_file(source, self._chunk_size),
                headers={"Content-Length": str(size)},
            )
            resp.raise_for_status()
        except (httpx.HTTPError, KeyError, OSError) as e:
            raise UploadFailure(f"upload of {name} failed: {e}", self.name) from e

        data = resp.json()
        logger.info("[google] Uploaded %s (%d bytes) to %s", name, size, "/".join(folder.path))
        return UploadResult(
            backend=self.name,
            handle=data["id"],
            name=data.get("name", name),
            view_link=data.get("webViewLink") or f"https://drive.google.com/file/d/{data['id']}/view",
            size_bytes=size,
            folder_path=folder.path,
        )

    # ------------------------------------------------------------------
    # Small JSON documents (whitelist storage)
    # ------------------------------------------------------------------

    async def read_text(self, file_id: str) -> str:
        resp = await self._request("GET", f"{self.API_BASE}/files/{file_id}", params={"alt": "media"})
        resp.raise_for_status()
        return resp.text

    async def create_text(self, folder: FolderHandle, name: str, text: str) -> str:
        """Create a small JSON document via a multipart upload; returns its id."""
        boundary = "mediarelay-boundary"
        body = (
            f"--{boundary}\r\n"
            "Content-Type: application/json; charset=UTF-8\r\n\r\n"
            f"{json.dumps({'name': name, 'parents': [folder.id]})}\r\n"
            f"--{boundary}\r\n"
            "Content-Type: application/json\r\n\r\n"
            f"{text}\r\n"
            f"--{boundary}--\r\n"
        ).encode("utf-8")
        resp = await self._request(
            "POST",
            f"{self.UPLOAD_BASE}/files",
            params={"uploadType": "multipart", "fields": "id"},
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            content=body,
        )
        resp.raise_for_status()
        return resp.json()["id"]

    async def update_text(self, file_id: str, text: str) -> None:
        resp = await self._request(
            "PATCH",
            f"{self.UPLOAD_BASE}/files/{file_id}",
            params={"uploadType": "media"},
            headers={"Content-Type": "application/json"},
            content=text.encode("utf-8"),
        )
        resp.raise_for_status()
