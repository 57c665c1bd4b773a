"""Per-conversation debounce of archival acknowledgments.

Every accepted upload is enqueued under its conversation key. Each key has
at most one live ``ReplyBuffer``; a new item resets the buffer's idle timer,
so a burst of uploads produces exactly one grouped message once the
conversation has been quiet for ``debounce_ms``.

LINE reply tokens are single-use and expire shortly after the inbound event.
The flush replies with the most recent token it saw and falls back to a push
message when that token is too old or the reply is rejected.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from mediarelay.errors import NotifyFailure
from mediarelay.messaging.client import LineMessagingClient
from mediarelay.messaging.schemas import MediaKind

logger = logging.getLogger(__name__)

# Reply tokens older than this are not tried; the flush pushes instead.
REPLY_TOKEN_TTL_SECONDS = 50.0

HEADER = "✅ 已自動存檔："
CATEGORY_TITLES = (
    (MediaKind.IMAGE, "🖼️ 圖片："),
    (MediaKind.VIDEO, "🎬 影片："),
    (MediaKind.AUDIO, "🎵 音訊："),
    (MediaKind.FILE, "📄 檔案："),
)


@dataclass
class PendingUpload:
    """One archived file waiting to be acknowledged."""
    file_name: str
    media_kind: MediaKind

    def __post_init__(self):
        if not isinstance(self.media_kind, MediaKind):
            self.media_kind = MediaKind.coerce(str(self.media_kind))


@dataclass
class ReplyBuffer:
    """Items and timer for one conversation."""
    conversation_key: str
    items: List[PendingUpload] = field(default_factory=list)
    last_reply_token: Optional[str] = None
    last_token_at: float = 0.0
    created_at: float = field(default_factory=time.monotonic)
    task: Optional[asyncio.Task] = None  # type: ignore[type-arg]


def render_acknowledgment(items: List[PendingUpload]) -> str:
    """Group item names by media kind into one message."""
    grouped: Dict[MediaKind, List[str]] = {kind: [] for kind, _ in CATEGORY_TITLES}
    for item in items:
        grouped[item.media_kind].append(item.file_name)
    text = HEADER
    for kind, title in CATEGORY_TITLES:
        names = grouped[kind]
        if names:
            text += f"\n\n{title}\n" + "\n".join(f"- {n}" for n in names)
    return text


class ReplyBatcher:
    """Registry of reply buffers keyed by conversation."""

    def __init__(
        self,
        notifier: LineMessagingClient,
        debounce_ms: int = 2000,
        reply_token_ttl: float = REPLY_TOKEN_TTL_SECONDS,
    ) -> None:
        self._notifier = notifier
        self.debounce_seconds = debounce_ms / 1000.0
        self.reply_token_ttl = reply_token_ttl
        self._buffers: Dict[str, ReplyBuffer] = {}

    def __len__(self) -> int:
        return len(self._buffers)

    @property
    def pending_keys(self) -> List[str]:
        return list(self._buffers)

    def enqueue(
        self,
        conversation_key: str,
        reply_token: Optional[str],
        item: PendingUpload,
        received_at: Optional[float] = None,
    ) -> None:
        """Add *item* and (re)start the idle timer for *conversation_key*.

        *received_at* is the ``time.monotonic()`` reading taken when the event
        carrying *reply_token* arrived; the token's lifetime counts from then,
        not from the end of the upload.
        """
        buf = self._buffers.get(conversation_key)
        if buf is None:
            buf = ReplyBuffer(conversation_key=conversation_key)
            self._buffers[conversation_key] = buf
        buf.items.append(item)
        if reply_token:
            issued_at = time.monotonic() if received_at is None else received_at
            if buf.last_reply_token is None or issued_at >= buf.last_token_at:
                buf.last_reply_token = reply_token
                buf.last_token_at = issued_at

        if buf.task is not None:
            buf.task.cancel()
        buf.task = asyncio.create_task(self._idle_then_flush(buf))
        logger.debug(
            "Queued %s for %s (%d pending)", item.file_name, conversation_key, len(buf.items)
        )

    async def _idle_then_flush(self, buf: ReplyBuffer) -> None:
        await asyncio.sleep(self.debounce_seconds)
        # A newer enqueue would have cancelled this task before the sleep ended.
        if self._buffers.get(buf.conversation_key) is buf:
            await self._flush_buffer(buf)

    async def flush(self, conversation_key: str) -> Optional[str]:
        """Flush the buffer for *conversation_key* now; returns the sent text."""
        buf = self._buffers.get(conversation_key)
        if buf is None:
            return None
        if buf.task is not None and buf.task is not asyncio.current_task():
            buf.task.cancel()
        return await self._flush_buffer(buf)

    async def _flush_buffer(self, buf: ReplyBuffer) -> Optional[str]:
        # Detach before awaiting so that new arrivals start a fresh buffer.
        self._buffers.pop(buf.conversation_key, None)
        if not buf.items:
            return None
        text = render_acknowledgment(buf.items)
        await self._send(buf, text)
        logger.info("Flushed %d item(s) for %s", len(buf.items), buf.conversation_key)
        return text

    async def _send(self, buf: ReplyBuffer, text: str) -> None:
        token_fresh = (
            buf.last_reply_token is not None
            and time.monotonic() - buf.last_token_at < self.reply_token_ttl
        )
        if token_fresh:
            try:
                await self._notifier.reply_text(buf.last_reply_token, text)
                return
            except NotifyFailure as e:
                logger.info("Reply token for %s rejected, pushing instead: %s", buf.conversation_key, e)
        try:
            await self._notifier.push_text(buf.conversation_key, text)
        except NotifyFailure as e:
            logger.error("Acknowledgment for %s could not be delivered: %s", buf.conversation_key, e)

    async def close(self) -> None:
        """Flush every pending buffer (at shutdown)."""
        for key in list(self._buffers):
            await self.flush(key)
