"""Webhook API routes"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from loyalty_processor.core.exceptions import WebhookError
from loyalty_processor.core.metrics import webhook_requests_counter
from loyalty_processor.core.security import SIGNATURE_HEADER
from loyalty_processor.db.session import get_db
from loyalty_processor.schemas.webhook import WebhookErrorResponse, WebhookResponse
from loyalty_processor.services.webhook_service import accept_payment_webhook

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


def _respond(status_code: int, body) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@router.post("/payment")
async def payment_webhook(request: Request, db: Session = Depends(get_db)):
    """Receive a signed payment event

    The body is read as raw bytes; the signature covers exactly those bytes.
    """
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    resources = request.app.state.resources

    try:
        result = accept_payment_webhook(
            raw_body,
            signature,
            resources.settings.WEBHOOK_SECRET,
            resources.queue,
            db
        )
    except WebhookError as e:
        webhook_requests_counter.labels(status=str(e.status_code)).inc()
        return _respond(e.status_code, WebhookErrorResponse(error=e.error_code, message=e.message))
    except Exception as e:
        logger.error(f"Webhook processing error: {e}", exc_info=True)
        webhook_requests_counter.labels(status="500").inc()
        return _respond(500, WebhookErrorResponse(error="INTERNAL_ERROR", message="Failed to process webhook"))

    if result.duplicate:
        webhook_requests_counter.labels(status="duplicate").inc()
        return _respond(200, WebhookResponse(
            message="Event already received and processed",
            eventId=result.event_id
        ))

    webhook_requests_counter.labels(status="accepted").inc()
    return _respond(202, WebhookResponse(
        message="Event received and queued for processing",
        eventId=result.event_id,
        jobId=result.job_id
    ))
