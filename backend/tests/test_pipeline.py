"""Tests for the per-event ingestion pipeline."""
import time
from datetime import datetime
from pathlib import Path
from unittest.mock import ANY, MagicMock
from zoneinfo import ZoneInfo

import pytest

from mediarelay.access.gate import AccessGate
from mediarelay.access.schemas import Principal
from mediarelay.errors import DownloadFailure, UploadFailure
from mediarelay.ingestion.pipeline import (
    PROCESSING_TEXT,
    IngestionPipeline,
    PipelineState,
)
from mediarelay.ingestion.staging import StagingArea
from mediarelay.messaging.schemas import MediaKind
from mediarelay.replies.batcher import PendingUpload
from mediarelay.storage.naming import NameAllocator
from mediarelay.storage.resolver import FolderResolver
from mediarelay.storage.uploader import UploadRouter

from conftest import MemoryBackend, MemoryWhitelistStore, make_event

FOLDER = ("LINE-bot", "Group-ABCD")
NOW = datetime(2024, 3, 5, 14, 7, 9, tzinfo=ZoneInfo("Asia/Taipei"))
PREFIX = "2024-03-05_14-07-09_"


async def _fake_download(message_id: str, target: Path) -> int:
    data = b"media-" + message_id.encode()
    Path(target).write_bytes(data)
    return len(data)


class Harness:
    """A pipeline wired to in-memory backends and a mocked LINE client."""

    def __init__(self, tmp_path, notifier, backends=("google",), **pipeline_kwargs):
        notifier.download_content.side_effect = _fake_download
        self.notifier = notifier
        self.backends = {name: MemoryBackend(name) for name in backends}
        self.store = MemoryWhitelistStore()
        self.gate = AccessGate(self.store, notifier, passphrase="解鎖備份")
        self.batcher = MagicMock()
        self.staging = StagingArea(str(tmp_path / "staging"))
        self.staging.cleanup = MagicMock(wraps=self.staging.cleanup)
        router = UploadRouter(list(self.backends.values()), FolderResolver(), NameAllocator())
        self.pipeline = IngestionPipeline(
            self.gate,
            notifier,
            router,
            self.batcher,
            self.staging,
            clock=lambda: NOW,
            **pipeline_kwargs,
        )

    async def start(self) -> "Harness":
        await self.gate.initialize()
        await self.gate.add(Principal.user("U123"))
        await self.gate.add(Principal.group("C1"))
        return self

    def staged_files(self):
        return list(self.staging.directory.iterdir())


async def _harness(tmp_path, notifier, **kwargs) -> Harness:
    return await Harness(tmp_path, notifier, **kwargs).start()


class TestNaming:
    def test_stored_name_has_timestamp_prefix(self):
        assert IngestionPipeline.stored_name("photo.jpg", NOW) == PREFIX + "photo.jpg"

    def test_month_bucket(self, tmp_path):
        pipeline = IngestionPipeline(
            MagicMock(), MagicMock(), MagicMock(), MagicMock(), StagingArea(str(tmp_path)),
            month_folders=True,
        )

        assert pipeline.folder_path("Group-ABCD", NOW) == ("LINE-bot", "Group-ABCD", "2024-03")

    def test_flat_layout_by_default(self, tmp_path):
        pipeline = IngestionPipeline(
            MagicMock(), MagicMock(), MagicMock(), MagicMock(), StagingArea(str(tmp_path)),
            root_folder="Archive",
        )

        assert pipeline.folder_path("User-Bob", NOW) == ("Archive", "User-Bob")


class TestHandleMedia:
    @pytest.mark.asyncio
    async def test_image_is_archived_and_batched(self, tmp_path, notifier):
        h = await _harness(tmp_path, notifier)

        outcome = await h.pipeline.handle(make_event("image", message_id="555"))

        assert outcome.history == [
            PipelineState.RECEIVED,
            PipelineState.ACCESS_CHECKED,
            PipelineState.MEDIA_ACCEPTED,
            PipelineState.DOWNLOADED,
            PipelineState.FOLDER_RESOLVED,
            PipelineState.UPLOADED,
            PipelineState.CLEANED,
            PipelineState.BATCHED,
        ]
        assert outcome.stored_name == PREFIX + "555.jpg"
        assert h.backends["google"].names_in(FOLDER) == [PREFIX + "555.jpg"]
        h.batcher.enqueue.assert_called_once_with(
            "U123", "reply-token", PendingUpload("555.jpg", MediaKind.IMAGE),
            received_at=ANY,
        )
        h.staging.cleanup.assert_called_once()
        assert h.staged_files() == []
        notifier.push_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_platform_file_name_is_kept(self, tmp_path, notifier):
        h = await _harness(tmp_path, notifier)

        outcome = await h.pipeline.handle(
            make_event("file", group_id="C1", file_name="report.pdf")
        )

        assert outcome.state == PipelineState.BATCHED
        assert h.backends["google"].names_in(FOLDER) == [PREFIX + "report.pdf"]
        h.batcher.enqueue.assert_called_once_with(
            "C1", "reply-token", PendingUpload("report.pdf", MediaKind.FILE),
            received_at=ANY,
        )

    @pytest.mark.asyncio
    async def test_processing_notice_consumes_reply_token(self, tmp_path, notifier):
        h = await _harness(tmp_path, notifier, processing_notice=True)

        await h.pipeline.handle(make_event("video", message_id="7"))

        notifier.reply_text.assert_awaited_once_with("reply-token", PROCESSING_TEXT)
        h.batcher.enqueue.assert_called_once_with(
            "U123", None, PendingUpload("7.mp4", MediaKind.VIDEO),
            received_at=ANY,
        )


class TestFailures:
    @pytest.mark.asyncio
    async def test_dual_mode_partial_success(self, tmp_path, notifier):
        h = await _harness(tmp_path, notifier, backends=("google", "onedrive"))
        h.backends["onedrive"].write_error = UploadFailure("quota exceeded", "onedrive")

        outcome = await h.pipeline.handle(make_event("image", message_id="9"))

        assert outcome.state == PipelineState.BATCHED
        assert list(outcome.uploads) == ["google"]
        assert "quota exceeded" in outcome.failures["onedrive"]
        h.batcher.enqueue.assert_called_once()
        to, text = notifier.push_text.await_args.args
        assert to == "U123"
        assert text.startswith("⚠️ 9.jpg")
        assert "OneDrive" in text and "Google Drive" not in text
        h.staging.cleanup.assert_called_once()
        assert h.staged_files() == []

    @pytest.mark.asyncio
    async def test_all_backends_failed(self, tmp_path, notifier):
        h = await _harness(tmp_path, notifier, backends=("google", "onedrive"))
        for backend in h.backends.values():
            backend.authorized = False

        outcome = await h.pipeline.handle(make_event("image", message_id="9"))

        assert outcome.state == PipelineState.FAILED
        assert PipelineState.FOLDER_RESOLVED not in outcome.history
        h.batcher.enqueue.assert_not_called()
        text = notifier.push_text.await_args.args[1]
        assert text.startswith("❌ 存檔失敗：9.jpg")
        assert "Google Drive" in text and "OneDrive" in text
        h.staging.cleanup.assert_called_once()

    @pytest.mark.asyncio
    async def test_download_failure_still_cleans_up(self, tmp_path, notifier):
        h = await _harness(tmp_path, notifier)
        notifier.download_content.side_effect = DownloadFailure("404", message_id="9")

        outcome = await h.pipeline.handle(make_event("image", message_id="9"))

        assert outcome.state == PipelineState.FAILED
        assert PipelineState.DOWNLOADED not in outcome.history
        h.staging.cleanup.assert_called_once()
        assert h.staged_files() == []
        notifier.push_text.assert_awaited_once()
        h.batcher.enqueue.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_notice_delivery_error_is_swallowed(self, tmp_path, notifier):
        from mediarelay.errors import NotifyFailure

        h = await _harness(tmp_path, notifier)
        notifier.download_content.side_effect = DownloadFailure("404")
        notifier.push_text.side_effect = NotifyFailure("quota")

        outcome = await h.pipeline.handle(make_event("image"))

        assert outcome.state == PipelineState.FAILED


class TestGating:
    @pytest.mark.asyncio
    async def test_unauthorized_media_is_not_downloaded(self, tmp_path, notifier):
        h = await _harness(tmp_path, notifier)

        outcome = await h.pipeline.handle(make_event("image", user_id="Ustranger"))

        assert outcome.state == PipelineState.DENIED
        notifier.download_content.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_passphrase_is_enrollment(self, tmp_path, notifier):
        h = await _harness(tmp_path, notifier)

        outcome = await h.pipeline.handle(
            make_event("text", user_id="Unew", text="解鎖備份")
        )

        assert outcome.state == PipelineState.ENROLLMENT_HANDLED

    @pytest.mark.asyncio
    async def test_authorized_text_is_ignored(self, tmp_path, notifier):
        h = await _harness(tmp_path, notifier)

        outcome = await h.pipeline.handle(make_event("text", text="hello"))

        assert outcome.state == PipelineState.IGNORED

    @pytest.mark.asyncio
    async def test_non_message_event_is_ignored(self, tmp_path, notifier):
        h = await _harness(tmp_path, notifier)

        outcome = await h.pipeline.handle(make_event(event_type="follow"))

        assert outcome.history == [PipelineState.RECEIVED, PipelineState.IGNORED]


class TestHandleBatch:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(self, tmp_path, notifier):
        h = await _harness(tmp_path, notifier)

        async def flaky_download(message_id, target):
            if message_id == "2":
                raise DownloadFailure("gone", message_id=message_id)
            return await _fake_download(message_id, target)

        notifier.download_content.side_effect = flaky_download
        events = [make_event("image", message_id=str(i)) for i in (1, 2, 3)]

        outcomes = await h.pipeline.handle_batch(events)

        assert [o.state for o in outcomes] == [
            PipelineState.BATCHED, PipelineState.FAILED, PipelineState.BATCHED,
        ]
        assert h.backends["google"].names_in(FOLDER) == [PREFIX + "1.jpg", PREFIX + "3.jpg"]
        assert h.staging.cleanup.call_count == 3
        assert h.staged_files() == []

    @pytest.mark.asyncio
    async def test_same_name_in_one_batch_gets_suffix(self, tmp_path, notifier):
        h = await _harness(tmp_path, notifier)
        events = [
            make_event("file", file_name="photo.jpg", message_id=str(i)) for i in (1, 2)
        ]

        outcomes = await h.pipeline.handle_batch(events)

        assert all(o.state == PipelineState.BATCHED for o in outcomes)
        assert h.backends["google"].names_in(FOLDER) == [
            PREFIX + "photo.jpg", PREFIX + "photo_1.jpg",
        ]

    @pytest.mark.asyncio
    async def test_unexpected_gate_error_becomes_failed_outcome(self, tmp_path, notifier):
        h = await _harness(tmp_path, notifier)
        real_authorize = h.gate.authorize

        async def authorize(event):
            if event.message.id == "bad":
                raise RuntimeError("cache corrupted")
            return await real_authorize(event)

        h.gate.authorize = authorize

        outcomes = await h.pipeline.handle_batch(
            [make_event("image", message_id="bad"), make_event("image", message_id="ok")]
        )

        assert [o.state for o in outcomes] == [PipelineState.FAILED, PipelineState.BATCHED]
        assert outcomes[0].error == "cache corrupted"


class TestReplyTokenAge:
    @pytest.mark.asyncio
    async def test_token_time_is_taken_before_download(self, tmp_path, notifier):
        h = await _harness(tmp_path, notifier)
        download_started = []

        async def timed_download(message_id, target):
            download_started.append(time.monotonic())
            return await _fake_download(message_id, target)

        notifier.download_content.side_effect = timed_download

        await h.pipeline.handle(make_event("image"))

        received_at = h.batcher.enqueue.call_args.kwargs["received_at"]
        assert received_at <= download_started[0]
