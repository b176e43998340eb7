import asyncio

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, status
from pydantic import ValidationError

from app.config import settings
from app.errors import AuthenticationFailure
from app.logging_config import get_logger
from app.schemas.line import LineWebhookBody, LineWebhookResponse
from app.services.alert_service import alert_critical
from app.services.pipeline_service import process_events
from app.services.signature_service import require_signature

logger = get_logger("line_webhook")

router = APIRouter()


@router.post("/webhook", response_model=LineWebhookResponse)
async def handle_line_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Verify a LINE delivery and acknowledge it at once.
    Events are processed after the response so slow downstream calls never
    make LINE redeliver the batch.
    """
    raw_body = await request.body()

    if not settings.line_channel_secret or not settings.line_channel_access_token:
        logger.error("LINE channel secret or access token not configured")
        await asyncio.to_thread(alert_critical, "LINE webhook rejected: channel secrets not configured")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Missing LINE configuration")

    signature = request.headers.get("x-line-signature") or request.headers.get("x-signature")
    try:
        require_signature(raw_body, signature, settings.line_channel_secret)
    except AuthenticationFailure as e:
        logger.warning(f"Rejected LINE webhook: {e}", extra={"context": {"has_signature": bool(signature)}})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        body = LineWebhookBody.model_validate_json(raw_body)
    except ValidationError as e:
        logger.warning(f"Malformed LINE webhook body: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed webhook body")

    if body.events:
        background_tasks.add_task(process_events, body.events)

    return LineWebhookResponse(success=True, accepted=len(body.events))
