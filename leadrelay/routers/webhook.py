import json

from fastapi import APIRouter, Depends, HTTPException, Request, status

from leadrelay.logging_config import get_logger
from leadrelay.schemas.webhook import StatsResponse, WebhookResponse
from leadrelay.services.errors import PersistenceError
from leadrelay.services.pipeline import MessagePipeline

logger = get_logger("webhook")

router = APIRouter()


def get_pipeline(request: Request) -> MessagePipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline not ready")
    return pipeline


async def _read_payload(request: Request) -> tuple[dict | list | None, str | None]:
    body = await request.body()
    if not body:
        return None, "empty body"
    try:
        return json.loads(body), None
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        return None, f"invalid JSON: {e}"


async def _handle(request: Request, pipeline: MessagePipeline, instance: str | None = None) -> WebhookResponse:
    payload, error = await _read_payload(request)
    if error:
        logger.warning(f"Rejected webhook body: {error}", extra={"context": {"instance": instance}})
        return WebhookResponse(success=False, status="invalid", reason=error)

    if instance and isinstance(payload, dict):
        payload.setdefault("instance", instance)

    try:
        result = await pipeline.handle_webhook(payload)
    except PersistenceError as e:
        logger.error("Webhook failed on persistence", extra={"context": {"operation": e.operation}})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Temporary storage failure")

    return WebhookResponse(
        success=not result.status.startswith("invalid"),
        status=result.status,
        reason=result.reason,
        contact_id=result.contact_id,
        decision=result.decision,
        reply=result.reply,
    )


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request, pipeline: MessagePipeline = Depends(get_pipeline)):
    """Entry point for channel provider events."""
    return await _handle(request, pipeline)


@router.post("/webhook/{instance}", response_model=WebhookResponse)
async def handle_instance_webhook(instance: str, request: Request, pipeline: MessagePipeline = Depends(get_pipeline)):
    return await _handle(request, pipeline, instance)


@router.get("/stats", response_model=StatsResponse)
async def get_stats(pipeline: MessagePipeline = Depends(get_pipeline)):
    return StatsResponse(**pipeline.stats())
