"""
Provider and relay webhook routes.

- POST /webhooks/evolution - Evolution API events (messages.upsert, messages.update)
- POST /webhooks/zapi - Z-API callbacks (ReceivedCallback, MessageStatusCallback)
- POST /webhooks/relay/status - Status callback posted by the relay
- POST /webhooks/relay/media - Media-processing callback posted by the relay

Provider webhooks always answer 200 so providers do not retry forever.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from ..models import MediaCallback, RelayStatusCallback
from ..utils.db_helpers import is_supabase_not_configured_error
from ..whatsapp.container import PipelineContainer, get_pipeline_container
from ..whatsapp.errors import PipelineError
from ..whatsapp.reconciler import ReconcileOutcome
from .messages_routes import pipeline_error_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _ack(outcome: ReconcileOutcome) -> Dict[str, Any]:
    return {"success": True, **outcome.as_dict()}


async def _provider_webhook(provider_id: str, payload: Any, container: PipelineContainer) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        return {"success": True, "matched": False, "action": "ignored"}
    try:
        outcome = await container.reconciler.handle_webhook(provider_id, payload)
    except Exception as e:
        if is_supabase_not_configured_error(e):
            logger.warning(f"Dropping {provider_id} webhook: {e}")
        else:
            logger.exception(f"Error handling {provider_id} webhook: {e}")
        return {"success": False, "matched": False, "error": str(e)}
    return _ack(outcome)


@router.post("/evolution")
async def evolution_webhook(
    payload: Any = Body(default=None),
    container: PipelineContainer = Depends(get_pipeline_container),
):
    return await _provider_webhook("evolution", payload, container)


@router.post("/zapi")
async def zapi_webhook(
    payload: Any = Body(default=None),
    container: PipelineContainer = Depends(get_pipeline_container),
):
    return await _provider_webhook("zapi", payload, container)


@router.post("/relay/status")
async def relay_status_webhook(
    body: RelayStatusCallback,
    container: PipelineContainer = Depends(get_pipeline_container),
):
    try:
        outcome = await container.reconciler.apply_relay_status(body)
    except Exception as e:
        logger.exception(f"Error applying relay status: {e}")
        return {"success": False, "matched": False, "error": str(e)}
    return _ack(outcome)


@router.post("/relay/media")
async def relay_media_webhook(
    body: MediaCallback,
    container: PipelineContainer = Depends(get_pipeline_container),
):
    """Store processed media for a message and point the row at it."""
    try:
        return await container.reconciler.process_media(body)
    except PipelineError as e:
        logger.warning(f"Media callback for {body.message_id} failed: {e.code} {e.message}")
        return pipeline_error_response(e)
