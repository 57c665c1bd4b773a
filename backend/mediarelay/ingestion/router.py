"""FastAPI router for the LINE webhook."""
import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from mediarelay.messaging.schemas import WebhookPayload
from mediarelay.messaging.signature import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhook"])


@router.post("/webhook")
async def webhook(request: Request) -> dict:
    """Receive a LINE webhook batch and archive its media.

    The request returns once every event in the batch has been processed;
    acknowledgments are sent later by the reply batcher.

    Raises:
        HTTPException 400: Bad signature or malformed payload.
        HTTPException 503: Service context not initialized.
    """
    relay = getattr(request.app.state, "relay", None)
    if relay is None:
        raise HTTPException(status_code=503, detail="Service not ready")

    body = await request.body()
    line_cfg = relay.config.line
    if line_cfg.verify_signature:
        signature = request.headers.get(SIGNATURE_HEADER, "")
        if not verify_signature(body, signature, relay.config.secrets.line.channel_secret):
            logger.warning("Rejected webhook with invalid signature")
            raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        payload = WebhookPayload.model_validate_json(body or b"{}")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Malformed payload: {e.error_count()} error(s)")

    if payload.events:
        outcomes = await relay.pipeline.handle_batch(payload.events)
        logger.info(
            "Webhook batch of %d event(s): %s",
            len(outcomes),
            ", ".join(o.state.value for o in outcomes),
        )
    return {"status": "ok"}
