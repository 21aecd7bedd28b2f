import json

from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.schemas.job import WebhookAck
from app.services.gateway import EventGateway

router = APIRouter()


@router.post("/helius", response_model=WebhookAck)
async def helius_webhook(
    request: Request,
    session: AsyncSession = Depends(deps.get_db),
) -> WebhookAck:
    body = await request.body()
    if not body.strip():
        logger.info("Received empty Helius webhook body")
        return WebhookAck()

    try:
        payload = json.loads(body)
    except ValueError as exc:
        logger.warning("Invalid JSON payload from Helius webhook", error=str(exc), size=len(body))
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc

    if not isinstance(payload, list):
        logger.warning("Helius webhook payload is not an array, ignoring", kind=type(payload).__name__)
        return WebhookAck()
    if not payload:
        return WebhookAck()

    logger.info("Received {} events from Helius", len(payload))
    summary = await EventGateway(session).ingest(payload)
    return WebhookAck(events=summary.events, enqueued=summary.enqueued)
