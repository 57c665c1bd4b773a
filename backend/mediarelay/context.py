"""Process-wide service context.

``build_context`` wires every component from a ``RelayConfig``; the
FastAPI lifespan calls ``start()`` / ``stop()`` and keeps the context on
``app.state.relay``.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from mediarelay.access.gate import AccessGate
from mediarelay.access.store import (
    DriveDocumentWhitelistStore,
    DuckDBWhitelistStore,
    WhitelistStore,
)
from mediarelay.config import RelayConfig
from mediarelay.errors import AuthInitFailure
from mediarelay.ingestion.pipeline import IngestionPipeline
from mediarelay.ingestion.staging import StagingArea
from mediarelay.messaging.client import LineMessagingClient
from mediarelay.replies.batcher import ReplyBatcher
from mediarelay.storage.base import StorageBackend
from mediarelay.storage.google_drive import DriveBackend
from mediarelay.storage.naming import NameAllocator
from mediarelay.storage.onedrive import GraphBackend
from mediarelay.storage.resolver import FolderResolver
from mediarelay.storage.tokens import GoogleTokenProvider, MicrosoftTokenProvider
from mediarelay.storage.uploader import UploadRouter

logger = logging.getLogger(__name__)


@dataclass
class RelayContext:
    config: RelayConfig
    messaging: LineMessagingClient
    backends: Dict[str, StorageBackend]
    store: WhitelistStore
    gate: AccessGate
    batcher: ReplyBatcher
    router: UploadRouter
    pipeline: IngestionPipeline
    http: Optional[httpx.AsyncClient] = None
    started: bool = field(default=False, init=False)

    async def start(self) -> None:
        for backend in self.router.backends:
            try:
                await backend.ensure_ready()
            except AuthInitFailure as e:
                logger.error("%s; continuing in degraded mode", e)
        await self.gate.initialize()
        await self.gate.start()
        self.started = True
        logger.info("Relay started (backends=%s)", ", ".join(self.router.backend_names))

    async def stop(self) -> None:
        await self.batcher.close()
        await self.gate.stop()
        await self.store.close()
        await self.messaging.close()
        if self.http is not None:
            await self.http.aclose()
        self.started = False
        logger.info("Relay stopped")

    def status(self) -> dict:
        return {
            "started": self.started,
            "drive_mode": self.config.storage.drive_mode,
            "backends": {name: self.backends[name].ready for name in self.router.backend_names},
            "whitelist_size": len(self.gate.entries),
            "pending_replies": len(self.batcher),
        }


def _build_backends(config: RelayConfig, http: httpx.AsyncClient) -> Dict[str, StorageBackend]:
    secrets = config.secrets
    needed: List[str] = list(config.storage.backend_names)
    if config.whitelist.backend == "google_drive" and "google" not in needed:
        needed.append("google")

    backends: Dict[str, StorageBackend] = {}
    if "google" in needed:
        tokens = GoogleTokenProvider(
            client_id=secrets.google.client_id,
            client_secret=secrets.google.client_secret,
            refresh_token=secrets.google.refresh_token,
            access_token=secrets.google.access_token,
            client=http,
        )
        backends["google"] = DriveBackend(tokens, client=http, chunk_size=config.storage.chunk_size)
    if "onedrive" in needed:
        tokens = MicrosoftTokenProvider(
            client_id=secrets.onedrive.client_id,
            client_secret=secrets.onedrive.client_secret,
            refresh_token=secrets.onedrive.refresh_token,
            tenant_id=secrets.onedrive.tenant_id,
            client=http,
        )
        backends["onedrive"] = GraphBackend(tokens, client=http, chunk_size=config.storage.chunk_size)
    return backends


def _build_store(
    config: RelayConfig, backends: Dict[str, StorageBackend], resolver: FolderResolver
) -> WhitelistStore:
    if config.whitelist.backend == "google_drive":
        return DriveDocumentWhitelistStore(
            backends["google"],
            root_folder=config.storage.root_folder,
            document_name=config.whitelist.document_name,
            resolver=resolver,
        )
    return DuckDBWhitelistStore(config.whitelist.path)


def build_context(config: RelayConfig) -> RelayContext:
    """Construct every component for *config* (no I/O is performed)."""
    line_secrets = config.secrets.line
    if not line_secrets.channel_access_token:
        logger.warning("LINE channel access token not configured; replies will fail")

    http = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
    messaging = LineMessagingClient(
        line_secrets.channel_access_token,
        api_base=config.line.api_base,
        data_api_base=config.line.data_api_base,
        timeout=config.line.timeout_seconds,
    )
    backends = _build_backends(config, http)
    resolver = FolderResolver()
    store = _build_store(config, backends, resolver)

    access = config.access
    gate = AccessGate(
        store,
        messaging,
        passphrase=access.passphrase,
        admin_user_id=access.admin_user_id,
        denial_policy=access.denial_policy,
        refresh_interval_seconds=access.refresh_interval_seconds,
    )
    batcher = ReplyBatcher(messaging, debounce_ms=config.replies.debounce_ms)
    router = UploadRouter.for_mode(
        config.storage.backend_names, backends, resolver, NameAllocator()
    )
    pipeline = IngestionPipeline(
        gate,
        messaging,
        router,
        batcher,
        StagingArea(config.storage.staging_dir),
        root_folder=config.storage.root_folder,
        month_folders=config.storage.month_folders,
        timezone=config.storage.timezone,
        processing_notice=config.replies.processing_notice,
    )
    return RelayContext(
        config=config,
        messaging=messaging,
        backends=backends,
        store=store,
        gate=gate,
        batcher=batcher,
        router=router,
        pipeline=pipeline,
        http=http,
    )
