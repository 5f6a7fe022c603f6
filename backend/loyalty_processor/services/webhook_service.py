"""Webhook service - the synchronous path of POST /webhooks/payment

verify signature -> validate payload -> ingest (dedupe) -> enqueue -> 202.
Nothing here awards points; that happens in the worker.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from loyalty_processor.core.exceptions import WebhookAuthenticationError, WebhookValidationError
from loyalty_processor.core.logging import webhook_logger
from loyalty_processor.core.security import verify_signature
from loyalty_processor.db.task_queue import JobQueue
from loyalty_processor.schemas.webhook import PaymentWebhookPayload
from loyalty_processor.services.event_service import attach_job, ingest_event


PROCESS_PAYMENT_JOB = "process-payment"


def payment_job_data(event_id: str, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Job data for a stored event payload (camelCase keys, as received)"""
    return {
        "eventId": event_id,
        "type": event_type,
        "payload": {
            "userId": payload.get("userId"),
            "amount": payload.get("amount"),
            "currency": payload.get("currency"),
            "timestamp": payload.get("timestamp"),
        },
    }


@dataclass
class WebhookResult:
    event_id: str
    duplicate: bool
    job_id: Optional[str] = None


def parse_payment_payload(raw_body: bytes) -> PaymentWebhookPayload:
    """Parse and validate the raw body

    Raises:
        WebhookValidationError: Body is not JSON or does not match the schema
    """
    try:
        return PaymentWebhookPayload.model_validate_json(raw_body)
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        webhook_logger.warning(f"Invalid webhook payload: {errors}")
        raise WebhookValidationError("Invalid webhook payload format", errors=errors)


def accept_payment_webhook(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    queue: JobQueue,
    db: Session
) -> WebhookResult:
    """Authenticate, dedupe and enqueue one payment webhook

    Args:
        raw_body: Request body exactly as received
        signature_header: Value of the x-webhook-signature header
        secret: Shared webhook secret
        queue: Job queue the processing job goes to
        db: Database session

    Returns:
        WebhookResult with duplicate=True if the event was seen before,
        otherwise the id of the enqueued job

    Raises:
        WebhookAuthenticationError: Missing or invalid signature
        WebhookValidationError: Invalid payload
    """
    if not signature_header:
        webhook_logger.warning("Webhook request without signature")
        raise WebhookAuthenticationError("Webhook signature is required", error_code="MISSING_SIGNATURE")

    if not verify_signature(raw_body, signature_header, secret):
        webhook_logger.warning("Invalid webhook signature")
        raise WebhookAuthenticationError("Webhook signature verification failed")

    payload = parse_payment_payload(raw_body)

    stored_payload = payload.model_dump(by_alias=True)
    ingested = ingest_event(payload.event_id, payload.type, stored_payload, db)
    if ingested.already_exists:
        return WebhookResult(event_id=payload.event_id, duplicate=True)

    # If this fails the event stays pending without a job and the worker's
    # maintenance loop re-enqueues it after the orphan grace period
    job_id = queue.enqueue(
        PROCESS_PAYMENT_JOB,
        payment_job_data(payload.event_id, payload.type, stored_payload)
    )
    attach_job(payload.event_id, job_id, db)

    webhook_logger.info(f"Event {payload.event_id} queued for processing as job {job_id}")
    return WebhookResult(event_id=payload.event_id, duplicate=False, job_id=job_id)
