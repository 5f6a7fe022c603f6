"""Event service - ingestion dedupe and processing status bookkeeping

The unique constraint on `events.event_id` is the only concurrency guard at
ingestion: whichever insert commits first owns the event, every other one
sees an IntegrityError and is acknowledged as a duplicate.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from loyalty_processor.models.event import (
    Event, EVENT_STATUS_PENDING, EVENT_STATUS_PROCESSED, EVENT_STATUS_FAILED
)
from loyalty_processor.models.transaction import Transaction

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    already_exists: bool
    event: Optional[Event] = None


def ingest_event(event_id: str, event_type: str, payload: Dict[str, Any], db: Session) -> IngestResult:
    """Insert a pending Event, or report that this event_id was seen before

    A duplicate is not an error: the caller acknowledges it and does nothing else.
    """
    event = Event(
        event_id=event_id,
        type=event_type,
        payload=payload,
        status=EVENT_STATUS_PENDING,
        attempts=0
    )
    db.add(event)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning(f"Duplicate event received: {event_id}")
        return IngestResult(already_exists=True)

    db.refresh(event)
    logger.info(f"Event {event_id} stored ({event_type})")
    return IngestResult(already_exists=False, event=event)


def attach_job(event_id: str, job_id: str, db: Session) -> None:
    """Remember which queue job carries the event"""
    db.execute(
        update(Event)
        .where(Event.event_id == event_id)
        .values(job_id=job_id)
    )
    db.commit()


def get_event(event_id: str, db: Session) -> Optional[Event]:
    return db.query(Event).filter(Event.event_id == event_id).first()


def record_attempt(event_id: str, attempt: int, db: Session) -> None:
    """Persist the attempt number before any processing work starts"""
    result = db.execute(
        update(Event)
        .where(Event.event_id == event_id)
        .values(attempts=attempt)
    )
    db.commit()
    if result.rowcount == 0:
        logger.warning(f"Attempt {attempt} recorded for unknown event {event_id}")


def mark_event_processed(event_id: str, db: Session) -> bool:
    """pending -> processed. Returns False if the event was not pending."""
    result = db.execute(
        update(Event)
        .where(Event.event_id == event_id, Event.status == EVENT_STATUS_PENDING)
        .values(
            status=EVENT_STATUS_PROCESSED,
            processed_at=datetime.now(timezone.utc),
            error_message=None
        )
    )
    db.commit()
    return result.rowcount > 0


def mark_event_attempt_failed(
    event_id: str,
    attempt: int,
    max_attempts: int,
    error_message: str,
    db: Session
) -> Optional[str]:
    """Record a failed attempt: pending -> pending while under the cap, pending -> failed at the cap

    An event whose points are already in the ledger is never failed; it is
    marked processed instead (the award committed, a later step did not).

    Returns:
        The new status, or None if the event was not pending (terminal states are final)
    """
    awarded = db.query(Transaction.id).filter(Transaction.event_id == event_id).first() is not None
    if awarded:
        logger.warning(f"Event {event_id} attempt {attempt} failed after its award committed: {error_message}")
        return EVENT_STATUS_PROCESSED if mark_event_processed(event_id, db) else None

    new_status = EVENT_STATUS_FAILED if attempt >= max_attempts else EVENT_STATUS_PENDING

    result = db.execute(
        update(Event)
        .where(Event.event_id == event_id, Event.status == EVENT_STATUS_PENDING)
        .values(
            attempts=attempt,
            status=new_status,
            error_message=error_message[:2000] if error_message else None
        )
    )
    db.commit()

    if result.rowcount == 0:
        return None

    if new_status == EVENT_STATUS_FAILED:
        logger.error(f"Event {event_id} failed permanently after {attempt} attempts: {error_message}")
    else:
        logger.info(f"Event {event_id} attempt {attempt}/{max_attempts} failed, will retry")
    return new_status


def find_orphaned_events(older_than_seconds: int, db: Session, limit: int = 100) -> List[Event]:
    """Pending events that never got a queue job (enqueue failed after ingest)"""
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
    return db.query(Event).filter(
        Event.status == EVENT_STATUS_PENDING,
        Event.job_id.is_(None),
        Event.created_at < cutoff
    ).order_by(Event.created_at).limit(limit).all()
