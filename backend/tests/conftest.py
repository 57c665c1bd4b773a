"""Shared test fixtures and fakes for backend tests."""
import asyncio
import json
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from mediarelay.access.schemas import Principal, WhitelistEntry
from mediarelay.access.store import WhitelistStore
from mediarelay.errors import (
    AuthInitFailure,
    DuplicateNameError,
    UploadFailure,
    WhitelistPersistFailure,
)
from mediarelay.messaging.schemas import InboundEvent
from mediarelay.storage.base import FolderHandle, StorageBackend, UploadResult


class MemoryBackend(StorageBackend):
    """In-memory backend implementing the folder and file primitives.

    Creating a folder that already exists raises ``DuplicateNameError`` so
    tests can exercise the re-query path. With ``allow_duplicates`` the
    create succeeds instead, as it does on Google Drive.
    """

    def __init__(self, name: str = "google", allow_duplicates: bool = False) -> None:
        self.name = name
        self.allow_duplicates = allow_duplicates
        self.folders: Dict[Tuple[str, str], FolderHandle] = {}
        self.files: Dict[str, Dict[str, bytes]] = {"root": {}}
        self.create_calls = 0
        self.write_error: Optional[Exception] = None
        self.authorized = True
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def ensure_ready(self) -> None:
        if not self.authorized:
            self._ready = False
            raise AuthInitFailure("no credentials", self.name)
        self._ready = True

    def root(self) -> FolderHandle:
        return FolderHandle(backend=self.name, id="root", path=())

    async def find_folder(self, parent: FolderHandle, name: str) -> Optional[FolderHandle]:
        await asyncio.sleep(0)
        return self.folders.get((parent.id, name))

    async def create_folder(self, parent: FolderHandle, name: str) -> FolderHandle:
        await asyncio.sleep(0)
        if (parent.id, name) in self.folders and not self.allow_duplicates:
            raise DuplicateNameError(name, self.name)
        self.create_calls += 1
        handle = FolderHandle(
            backend=self.name, id=f"folder-{self.create_calls}", path=parent.child_path(name)
        )
        self.folders[(parent.id, name)] = handle
        self.files[handle.id] = {}
        return handle

    async def exists(self, folder: FolderHandle, name: str) -> bool:
        return name in self.files.get(folder.id, {})

    async def write(self, folder: FolderHandle, name: str, source: Path) -> UploadResult:
        if self.write_error is not None:
            raise self.write_error
        files = self.files.get(folder.id)
        if files is None:
            raise UploadFailure("parent folder not found", self.name)
        if name in files:
            raise DuplicateNameError(name, self.name)
        data = Path(source).read_bytes()
        files[name] = data
        return UploadResult(
            backend=self.name,
            handle=f"file-{name}",
            name=name,
            size_bytes=len(data),
            folder_path=folder.path,
        )

    def names_in(self, path: Tuple[str, ...]) -> List[str]:
        parent = "root"
        for segment in path:
            parent = self.folders[(parent, segment)].id
        return sorted(self.files[parent])


class MemoryWhitelistStore(WhitelistStore):
    """Whitelist store kept in a list; ``fail_writes`` makes writes raise."""

    def __init__(self, entries: Optional[List[WhitelistEntry]] = None) -> None:
        self.entries: List[WhitelistEntry] = list(entries or [])
        self.fail_writes = False
        self.write_calls = 0

    async def load(self) -> List[WhitelistEntry]:
        return list(self.entries)

    async def save(self, entries: List[WhitelistEntry]) -> None:
        self.write_calls += 1
        if self.fail_writes:
            raise WhitelistPersistFailure("disk full")
        self.entries = list(entries)


def make_notifier() -> MagicMock:
    """LineMessagingClient double with async methods."""
    notifier = MagicMock()
    notifier.reply_text = AsyncMock()
    notifier.push_text = AsyncMock()
    notifier.download_content = AsyncMock(return_value=0)
    notifier.label_for = AsyncMock(return_value=None)
    notifier.folder_name_for = AsyncMock(return_value="Group-ABCD")
    notifier.close = AsyncMock()
    return notifier


def make_event(
    message_type: str = "image",
    user_id: Optional[str] = "U123",
    group_id: Optional[str] = None,
    room_id: Optional[str] = None,
    text: Optional[str] = None,
    file_name: Optional[str] = None,
    message_id: str = "100001",
    reply_token: Optional[str] = "reply-token",
    event_type: str = "message",
) -> InboundEvent:
    if group_id:
        source = {"type": "group", "groupId": group_id, "userId": user_id}
    elif room_id:
        source = {"type": "room", "roomId": room_id, "userId": user_id}
    else:
        source = {"type": "user", "userId": user_id}
    message = {"type": message_type, "id": message_id}
    if text is not None:
        message["text"] = text
    if file_name is not None:
        message["fileName"] = file_name
    return InboundEvent.model_validate(
        {
            "type": event_type,
            "source": source,
            "message": message if event_type == "message" else None,
            "replyToken": reply_token,
            "timestamp": 1700000000000,
        }
    )


@pytest.fixture
def notifier() -> MagicMock:
    return make_notifier()


@pytest.fixture
def memory_store() -> MemoryWhitelistStore:
    return MemoryWhitelistStore()


@pytest.fixture
def allowed_user() -> WhitelistEntry:
    return WhitelistEntry(principal=Principal.user("U123"), label="Alice")


# ---------------------------------------------------------------------------
# HTTP fakes for httpx.MockTransport
# ---------------------------------------------------------------------------

_DRIVE_QUERY = re.compile(
    r"'(?P<parent>.+?)' in parents and name = '(?P<name>.+?)' and trashed = false"
    r"(?P<folders> and mimeType = '.+')?$"
)


class FakeDrive:
    """Minimal Drive v3 server: files.list, folder create, resumable and multipart uploads."""

    def __init__(self) -> None:
        self.items: List[dict] = []
        self.sessions: Dict[str, dict] = {}
        self.requests: List[httpx.Request] = []

    def add(self, name: str, parent: str = "root", folder: bool = False, content: str = "") -> dict:
        item = {
            "id": f"d{len(self.items) + 1}",
            "name": name,
            "parent": parent,
            "folder": folder,
            "content": content,
        }
        self.items.append(item)
        return item

    def get(self, file_id: str) -> Optional[dict]:
        return next((i for i in self.items if i["id"] == file_id), None)

    def _meta(self, item: dict) -> dict:
        return {
            "id": item["id"],
            "name": item["name"],
            "webViewLink": f"https://drive.google.com/file/d/{item['id']}/view",
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = request.url.params
        if request.url.host == "upload.example":
            meta = self.sessions.pop(path)
            item = self.add(meta["name"], parent=meta["parents"][0], content=request.content.decode())
            return httpx.Response(200, json=self._meta(item))
        if request.method == "GET" and path == "/drive/v3/files":
            m = _DRIVE_QUERY.match(params["q"])
            found = [
                {"id": i["id"], "name": i["name"]}
                for i in self.items
                if i["parent"] == m.group("parent")
                and i["name"] == m.group("name")
                and (i["folder"] or not m.group("folders"))
            ]
            return httpx.Response(200, json={"files": found})
        if request.method == "GET" and path.startswith("/drive/v3/files/"):
            item = self.get(path.rsplit("/", 1)[-1])
            return httpx.Response(200, text=item["content"]) if item else httpx.Response(404)
        if request.method == "POST" and path == "/drive/v3/files":
            body = json.loads(request.content)
            item = self.add(body["name"], parent=body["parents"][0], folder=True)
            return httpx.Response(200, json={"id": item["id"]})
        if request.method == "POST" and path == "/upload/drive/v3/files":
            if params["uploadType"] == "resumable":
                session = f"/session/{len(self.sessions) + 1}"
                self.sessions[session] = json.loads(request.content)
                return httpx.Response(200, headers={"Location": f"https://upload.example{session}"})
            parts = request.content.decode().split("\r\n\r\n")
            meta = json.loads(parts[1].split("\r\n")[0])
            text = parts[2].rsplit("\r\n--", 1)[0]
            item = self.add(meta["name"], parent=meta["parents"][0], content=text)
            return httpx.Response(200, json={"id": item["id"]})
        if request.method == "PATCH" and path.startswith("/upload/drive/v3/files/"):
            item = self.get(path.rsplit("/", 1)[-1])
            item["content"] = request.content.decode()
            return httpx.Response(200, json={"id": item["id"]})
        return httpx.Response(400, json={"error": f"unhandled {request.method} {path}"})


class FakeGraph:
    """Minimal Graph /me/drive server addressing items by path."""

    PREFIX = "/v1.0/me/drive/root"

    def __init__(self) -> None:
        self.items: Dict[str, dict] = {}
        self.requests: List[httpx.Request] = []

    def add(self, path: str, folder: bool = False) -> dict:
        item = {"id": f"g{len(self.items) + 1}", "name": path.rsplit("/", 1)[-1]}
        if folder:
            item["folder"] = {}
        else:
            item["webUrl"] = f"https://onedrive.live.com/{path}"
        self.items[path] = item
        return item

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        rest = request.url.path[len(self.PREFIX):]
        suffix = ""
        if rest.startswith(":/"):
            rest = rest[2:]
            if ":/" in rest:
                rest, suffix = rest.split(":/", 1)
        elif rest == "/children":
            rest, suffix = "", "children"
        if request.method == "GET":
            item = self.items.get(rest)
            if item is None:
                return httpx.Response(404, json={"error": {"code": "itemNotFound"}})
            return httpx.Response(200, json=item)
        if request.method == "POST" and suffix == "children":
            body = json.loads(request.content)
            path = f"{rest}/{body['name']}" if rest else body["name"]
            if path in self.items:
                return httpx.Response(409, json={"error": {"code": "nameAlreadyExists"}})
            return httpx.Response(201, json=self.add(path, folder=True))
        if request.method == "PUT" and suffix == "content":
            if rest in self.items:
                return httpx.Response(409, json={"error": {"code": "nameAlreadyExists"}})
            return httpx.Response(201, json=self.add(rest))
        return httpx.Response(400, json={"error": f"unhandled {request.method} {rest}"})


def make_tokens(token: str = "tok") -> MagicMock:
    """Token provider double returning a fixed access token."""
    tokens = MagicMock()
    tokens.get_token = AsyncMock(return_value=token)
    tokens.invalidate = MagicMock()
    return tokens


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
