"""Per-event ingestion pipeline.

Each inbound event walks a small state machine::

    RECEIVED -> ACCESS_CHECKED -> DENIED | ENROLLMENT_HANDLED | ADMIN_HANDLED
                               -> MEDIA_ACCEPTED -> DOWNLOADED -> FOLDER_RESOLVED
                               -> UPLOADED -> CLEANED -> BATCHED

Any failure after MEDIA_ACCEPTED ends in FAILED, sends a best-effort failure
notice to the conversation, and still removes the staged file. Events that
are not messages, or messages of a non-media type from an authorized
principal, end in IGNORED.

A webhook batch is processed concurrently; one event's failure never
affects another.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

from mediarelay.access.gate import AccessGate
from mediarelay.access.schemas import AccessDecision
from mediarelay.errors import (
    AuthInitFailure,
    FolderResolutionFailure,
    NotifyFailure,
    RelayError,
)
from mediarelay.messaging.client import LineMessagingClient
from mediarelay.messaging.schemas import InboundEvent
from mediarelay.replies.batcher import PendingUpload, ReplyBatcher
from mediarelay.storage.base import FolderPath, UploadResult
from mediarelay.storage.uploader import RoutedUpload, UploadRouter

from .staging import StagingArea

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
MONTH_FORMAT = "%Y-%m"

PROCESSING_TEXT = "⏳ 收到檔案，正在存檔…"
BACKEND_LABELS = {"google": "Google Drive", "onedrive": "OneDrive"}


class PipelineState(str, Enum):
    RECEIVED = "received"
    ACCESS_CHECKED = "access_checked"
    DENIED = "denied"
    ENROLLMENT_HANDLED = "enrollment_handled"
    ADMIN_HANDLED = "admin_handled"
    MEDIA_ACCEPTED = "media_accepted"
    DOWNLOADED = "downloaded"
    FOLDER_RESOLVED = "folder_resolved"
    UPLOADED = "uploaded"
    CLEANED = "cleaned"
    BATCHED = "batched"
    FAILED = "failed"
    IGNORED = "ignored"


_DECISION_STATES = {
    AccessDecision.DENIED: PipelineState.DENIED,
    AccessDecision.REQUIRES_ENROLLMENT: PipelineState.DENIED,
    AccessDecision.ENROLLED: PipelineState.ENROLLMENT_HANDLED,
    AccessDecision.ADMIN_HANDLED: PipelineState.ADMIN_HANDLED,
}


@dataclass
class ArchiveOutcome:
    """Result of running one event through the pipeline."""
    conversation_key: str
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.RECEIVED])
    file_name: Optional[str] = None
    stored_name: Optional[str] = None
    folder_path: FolderPath = ()
    uploads: Dict[str, UploadResult] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def state(self) -> PipelineState:
        return self.history[-1]

    def advance(self, state: PipelineState) -> None:
        self.history.append(state)


def failure_notice(file_name: str, failures: Dict[str, str], partial: bool) -> str:
    lines = [f"⚠️ {file_name} 部分備份失敗：" if partial else f"❌ 存檔失敗：{file_name}"]
    for backend, reason in failures.items():
        lines.append(f"- {BACKEND_LABELS.get(backend, backend)}：{reason}")
    return "\n".join(lines)


class IngestionPipeline:
    """Orchestrates gate → download → upload → cleanup → batch per event."""

    def __init__(
        self,
        gate: AccessGate,
        messaging: LineMessagingClient,
        router: UploadRouter,
        batcher: ReplyBatcher,
        staging: StagingArea,
        root_folder: str = "LINE-bot",
        month_folders: bool = False,
        timezone: str = "Asia/Taipei",
        processing_notice: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.gate = gate
        self.messaging = messaging
        self.router = router
        self.batcher = batcher
        self.staging = staging
        self.root_folder = root_folder
        self.month_folders = month_folders
        self.processing_notice = processing_notice
        self._tz = ZoneInfo(timezone)
        self._clock = clock or (lambda: datetime.now(self._tz))

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def folder_path(self, conversation_folder: str, now: datetime) -> FolderPath:
        path = (self.root_folder, conversation_folder)
        if self.month_folders:
            path += (now.strftime(MONTH_FORMAT),)
        return path

    @staticmethod
    def stored_name(file_name: str, now: datetime) -> str:
        return f"{now.strftime(TIMESTAMP_FORMAT)}_{file_name}"

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_batch(self, events: Sequence[InboundEvent]) -> List[ArchiveOutcome]:
        """Run every event concurrently and wait for all of them."""
        results = await asyncio.gather(*(self.handle(e) for e in events), return_exceptions=True)
        outcomes: List[ArchiveOutcome] = []
        for event, result in zip(events, results):
            if isinstance(result, ArchiveOutcome):
                outcomes.append(result)
                continue
            if not isinstance(result, Exception):
                raise result
            logger.error(
                "Event for %s failed outside the pipeline: %s",
                event.conversation_key, result, exc_info=result,
            )
            outcome = ArchiveOutcome(conversation_key=event.conversation_key, error=str(result))
            outcome.advance(PipelineState.FAILED)
            outcomes.append(outcome)
        return outcomes

    async def handle(self, event: InboundEvent) -> ArchiveOutcome:
        received_at = time.monotonic()
        outcome = ArchiveOutcome(conversation_key=event.conversation_key)
        if event.type != "message" or event.message is None:
            outcome.advance(PipelineState.IGNORED)
            return outcome

        decision = await self.gate.authorize(event)
        outcome.advance(PipelineState.ACCESS_CHECKED)
        if decision.short_circuits:
            outcome.advance(_DECISION_STATES[decision])
            return outcome

        kind = event.media_kind
        if kind is None:
            outcome.advance(PipelineState.IGNORED)
            return outcome

        outcome.advance(PipelineState.MEDIA_ACCEPTED)
        outcome.file_name = event.file_name()
        reply_token = event.replyToken
        if self.processing_notice and reply_token:
            try:
                await self.messaging.reply_text(reply_token, PROCESSING_TEXT)
                reply_token = None  # consumed
            except NotifyFailure as e:
                logger.warning("Processing notice to %s failed: %s", outcome.conversation_key, e)

        routed = await self._archive(event, outcome)
        if routed is None:
            await self._notify_failure(outcome, partial=False)
            return outcome

        if routed.succeeded:
            self.batcher.enqueue(
                outcome.conversation_key,
                reply_token,
                PendingUpload(outcome.file_name, kind),
                received_at=received_at,
            )
            outcome.advance(PipelineState.BATCHED)
            if routed.partial:
                await self._notify_failure(outcome, partial=True)
        else:
            outcome.advance(PipelineState.FAILED)
            await self._notify_failure(outcome, partial=False)
        return outcome

    async def _archive(self, event: InboundEvent, outcome: ArchiveOutcome) -> Optional[RoutedUpload]:
        """Download, upload and clean up; None if the event failed before uploading."""
        staged: Optional[Path] = None
        routed: Optional[RoutedUpload] = None
        try:
            staged = self.staging.allocate(outcome.file_name)
            await self.messaging.download_content(event.message.id, staged)
            outcome.advance(PipelineState.DOWNLOADED)

            now = self._clock()
            conversation_folder = await self.messaging.folder_name_for(event)
            outcome.folder_path = self.folder_path(conversation_folder, now)
            outcome.stored_name = self.stored_name(outcome.file_name, now)

            routed = await self.router.upload_all(outcome.folder_path, outcome.stored_name, staged)
            outcome.uploads = dict(routed.results)
            outcome.failures = {name: e.message for name, e in routed.failures.items()}
            if routed.succeeded or any(
                not isinstance(e, (FolderResolutionFailure, AuthInitFailure))
                for e in routed.failures.values()
            ):
                outcome.advance(PipelineState.FOLDER_RESOLVED)
            if routed.succeeded:
                outcome.advance(PipelineState.UPLOADED)
        except RelayError as e:
            logger.error("Archival for %s failed: %s", outcome.conversation_key, e)
            outcome.error = e.message
        except Exception as e:
            logger.exception("Unexpected archival error for %s", outcome.conversation_key)
            outcome.error = str(e)
        finally:
            if staged is not None:
                self.staging.cleanup(staged)
        if routed is None:
            outcome.advance(PipelineState.FAILED)
            return None
        outcome.advance(PipelineState.CLEANED)
        return routed

    async def _notify_failure(self, outcome: ArchiveOutcome, partial: bool) -> None:
        failures = outcome.failures or {"archive": outcome.error or "unknown error"}
        text = failure_notice(outcome.file_name or "?", failures, partial)
        try:
            await self.messaging.push_text(outcome.conversation_key, text)
        except NotifyFailure as e:
            logger.error("Failure notice to %s not delivered: %s", outcome.conversation_key, e)
