"""
Messages routes.

- POST /messages/send - Idempotent send through the workspace relay
- POST /messages/history - Backward page of a conversation's messages
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from ..models import HistoryFetch, SendMessageBody
from ..whatsapp.container import PipelineContainer, get_pipeline_container
from ..whatsapp.errors import PipelineError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["Messages"])


def pipeline_error_response(e: PipelineError) -> JSONResponse:
    body = {"success": False, "error": e.message, "code": e.code}
    if e.details:
        body["details"] = e.details
    return JSONResponse(body, status_code=e.http_status)


def _clamp_limit(limit: Optional[int], *, default: int, maximum: int) -> int:
    if limit is None:
        return default
    return max(1, min(int(limit), maximum))


@router.post("/send")
async def send_message(
    body: SendMessageBody,
    x_workspace_id: Optional[str] = Header(default=None),
    container: PipelineContainer = Depends(get_pipeline_container),
):
    """Send a message; a repeated clientMessageId returns the existing row."""
    request_id = uuid.uuid4().hex[:12]
    try:
        return await container.pipeline.send(body, workspace_id=x_workspace_id, request_id=request_id)
    except PipelineError as e:
        logger.warning(f"Send failed [{request_id}]: {e.code} {e.message}")
        return pipeline_error_response(e)


@router.post("/history")
async def message_history(
    body: HistoryFetch,
    x_workspace_id: Optional[str] = Header(default=None),
    container: PipelineContainer = Depends(get_pipeline_container),
):
    cfg = container.config
    limit = _clamp_limit(body.limit, default=cfg.history_page_size, maximum=cfg.history_max_page_size)
    try:
        page = await container.store.history_page(
            conversation_id=body.conversation_id,
            workspace_id=x_workspace_id,
            limit=limit,
            before=body.before,
        )
    except PipelineError as e:
        return pipeline_error_response(e)

    result = {"items": page.items}
    if page.next_before:
        result["nextBefore"] = page.next_before
    return result
