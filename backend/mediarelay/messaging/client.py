"""Async client for the LINE Messaging API.

Covers the handful of calls the relay needs:
1. Reply / push text messages (acknowledgments and failure notices)
2. Stream message content (media) to a local staging file
3. Look up display names for users and groups (folder naming, labels)
"""
import logging
from pathlib import Path
from typing import Optional

import httpx

from mediarelay.errors import DownloadFailure, NotifyFailure

from .schemas import InboundEvent, SourceType

logger = logging.getLogger(__name__)

UNKNOWN_CHAT_FOLDER = "未知聊天室"


class LineMessagingClient:
    """Thin wrapper over the LINE Messaging REST API."""

    def __init__(
        self,
        channel_access_token: str,
        api_base: str = "https://api.line.me",
        data_api_base: str = "https://api-data.line.me",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.data_api_base = data_api_base.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {channel_access_token}"}

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Outbound messages
    # ------------------------------------------------------------------

    async def reply_text(self, reply_token: str, text: str) -> None:
        """Reply using a (single-use) reply token.

        Raises:
            NotifyFailure: If the token is invalid, expired or already used.
        """
        await self._post_message(
            "/v2/bot/message/reply",
            {"replyToken": reply_token, "messages": [{"type": "text", "text": text}]},
        )

    async def push_text(self, to: str, text: str) -> None:
        """Push a message to a user, group or room without a reply token."""
        await self._post_message(
            "/v2/bot/message/push",
            {"to": to, "messages": [{"type": "text", "text": text}]},
        )

    async def _post_message(self, path: str, body: dict) -> None:
        try:
            resp = await self._client.post(
                f"{self.api_base}{path}", json=body, headers=self._headers
            )
        except httpx.HTTPError as e:
            raise NotifyFailure(f"{path} transport error: {e}") from e
        if resp.status_code >= 400:
            raise NotifyFailure(
                f"{path} failed: {resp.status_code} {resp.text}",
                status_code=resp.status_code,
            )

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    async def download_content(self, message_id: str, target_path: Path) -> int:
        """Stream message content into *target_path*.

        Returns:
            Number of bytes written.

        Raises:
            DownloadFailure: On any HTTP or filesystem error.
        """
        url = f"{self.data_api_base}/v2/bot/message/{message_id}/content"
        written = 0
        try:
            async with self._client.stream("GET", url, headers=self._headers) as resp:
                resp.raise_for_status()
                with open(target_path, "wb") as fh:
                    async for chunk in resp.aiter_bytes():
                        fh.write(chunk)
                        written += len(chunk)
        except (httpx.HTTPError, OSError) as e:
            raise DownloadFailure(
                f"Content download failed for message {message_id}: {e}",
                message_id=message_id,
            ) from e
        logger.debug("Downloaded message %s (%d bytes) to %s", message_id, written, target_path)
        return written

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_profile(self, user_id: str) -> dict:
        resp = await self._client.get(
            f"{self.api_base}/v2/bot/profile/{user_id}", headers=self._headers
        )
        resp.raise_for_status()
        return resp.json()

    async def get_group_summary(self, group_id: str) -> dict:
        resp = await self._client.get(
            f"{self.api_base}/v2/bot/group/{group_id}/summary", headers=self._headers
        )
        resp.raise_for_status()
        return resp.json()

    async def get_room_member_profile(self, room_id: str, user_id: str) -> dict:
        resp = await self._client.get(
            f"{self.api_base}/v2/bot/room/{room_id}/member/{user_id}", headers=self._headers
        )
        resp.raise_for_status()
        return resp.json()

    async def label_for(self, event: InboundEvent) -> Optional[str]:
        """Best-effort display label for the principal behind *event*."""
        src = event.source
        try:
            if src.type == SourceType.GROUP and src.groupId:
                return (await self.get_group_summary(src.groupId)).get("groupName")
            if src.type == SourceType.ROOM and src.roomId and src.userId:
                # Rooms have no name; label them after the member who enrolled.
                profile = await self.get_room_member_profile(src.roomId, src.userId)
                return profile.get("displayName")
            if src.type == SourceType.USER and src.userId:
                return (await self.get_profile(src.userId)).get("displayName")
        except (httpx.HTTPError, ValueError) as e:
            # ValueError: response body was not JSON.
            logger.warning("Label lookup failed for %s: %s", event.conversation_key, e)
        return None

    async def folder_name_for(self, event: InboundEvent) -> str:
        """Conversation folder name used under the archive root."""
        src = event.source
        try:
            if src.type == SourceType.GROUP and src.groupId:
                summary = await self.get_group_summary(src.groupId)
                return summary.get("groupName") or f"Group-{src.groupId[-4:]}"
            if src.type == SourceType.ROOM and src.roomId:
                return f"Room-{src.roomId[-4:]}"
            if src.userId:
                profile = await self.get_profile(src.userId)
                return f"User-{profile.get('displayName', src.userId[-4:])}"
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Folder name lookup failed for %s: %s", event.conversation_key, e)
        return UNKNOWN_CHAT_FOLDER
