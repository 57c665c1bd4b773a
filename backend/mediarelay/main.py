"""MediaRelay Application.

This is the main entry point for the MediaRelay service. MediaRelay
receives LINE webhook events and archives the media posted by authorized
users and groups to Google Drive and/or OneDrive.

Modules:
    - access: whitelist store, passphrase enrollment and admin commands
    - messaging: LINE webhook models, signature check and API client
    - storage: Drive / Graph backends, folder resolution, name allocation
    - replies: debounced per-conversation acknowledgments
    - ingestion: webhook router and per-event pipeline
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request

from mediarelay.config import get_config
from mediarelay.context import build_context
from mediarelay.ingestion.router import router as webhook_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# urllib3/httpx/httpcore log every request and TLS handshake, including
# URLs that carry upload session ids.
for _noisy in (
    "urllib3",
    "urllib3.connectionpool",
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    relay = build_context(config)
    await relay.start()
    app.state.relay = relay
    logger.info(
        "MediaRelay listening on http://%s:%s (drive_mode=%s)",
        config.server.host, config.server.port, config.storage.drive_mode,
    )

    yield  # Application runs here

    await relay.stop()
    app.state.relay = None
    logger.info("Application shutdown complete")


app = FastAPI(
    title="MediaRelay API",
    description="LINE media archival to Google Drive and OneDrive",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(webhook_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


@app.get("/status")
async def status(request: Request) -> dict:
    """Backend readiness, whitelist size and pending acknowledgments."""
    relay = getattr(request.app.state, "relay", None)
    if relay is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return relay.status()


def run() -> None:
    import uvicorn

    config = get_config()
    uvicorn.run(
        "mediarelay.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
    )


if __name__ == "__main__":
    run()
