"""Background worker pool for processing payment jobs from the Redis queue

Runs a fixed number of consumers (default 5) that share a Redis-backed
job-start rate limit (default 10 per second across all worker processes).
A job that raises is handed back to the queue, which schedules the retry or
fails it permanently; a job never takes its consumer down with it.
"""
import asyncio
import logging
import signal
import time
from typing import Callable, List, Optional, Set

from sqlalchemy.orm import Session

from loyalty_processor.core.config import Settings, get_settings
from loyalty_processor.core.logging import setup_logging, worker_logger
from loyalty_processor.core.metrics import (
    events_failed_counter, job_processing_duration,
    points_awarded_counter, update_queue_size_gauge
)
from loyalty_processor.core.otel import get_tracer, initialize_otel, instrument_sqlalchemy
from loyalty_processor.db.redis import RateLimiter
from loyalty_processor.db.resources import Resources
from loyalty_processor.db.task_queue import (
    Job, JobQueue, JOB_STATUS_DELAYED, JOB_STATUS_FAILED, STALLED_ERROR
)
from loyalty_processor.models.event import EVENT_STATUS_FAILED
from loyalty_processor.services.event_service import (
    attach_job, find_orphaned_events, mark_event_attempt_failed,
    mark_event_processed, record_attempt
)
from loyalty_processor.services.loyalty_service import AwardResult, LoyaltyService
from loyalty_processor.services.webhook_service import PROCESS_PAYMENT_JOB, payment_job_data

logger = logging.getLogger(__name__)

IDLE_POLL_INTERVAL = 0.1  # Between non-blocking polls of an empty queue


class PaymentWorkerPool:
    """Consumes `process-payment` jobs and awards loyalty points"""

    def __init__(
        self,
        queue: JobQueue,
        session_factory: Callable[[], Session],
        loyalty: LoyaltyService,
        rate_limiter: Optional[RateLimiter] = None,
        concurrency: int = 5,
        poll_timeout: float = 1,
        maintenance_interval: float = 5.0,
        shutdown_grace: float = 10.0,
        orphan_grace: int = 300,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.session_factory = session_factory
        self.loyalty = loyalty
        self.rate_limiter = rate_limiter
        self.concurrency = concurrency
        self.poll_timeout = poll_timeout
        self.maintenance_interval = maintenance_interval
        self.shutdown_grace = shutdown_grace
        self.orphan_grace = orphan_grace

        self._stopping: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []
        self._in_flight: Set[str] = set()

    @classmethod
    def from_resources(cls, resources: Resources) -> "PaymentWorkerPool":
        settings: Settings = resources.settings
        return cls(
            queue=resources.queue,
            session_factory=resources.database.session,
            loyalty=LoyaltyService(points_per_unit=settings.POINTS_PER_100_CURRENCY),
            rate_limiter=resources.rate_limiter,
            concurrency=settings.WORKER_CONCURRENCY,
            poll_timeout=settings.WORKER_POLL_TIMEOUT_SECONDS,
            maintenance_interval=settings.WORKER_MAINTENANCE_INTERVAL_SECONDS,
            shutdown_grace=settings.WORKER_SHUTDOWN_GRACE_SECONDS,
            orphan_grace=settings.ORPHANED_EVENT_GRACE_SECONDS,
        )

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    # ------------------------------------------------------------------
    # Job handling
    # ------------------------------------------------------------------

    def handle_job(self, job: Job) -> AwardResult:
        """Process one job synchronously (runs in a worker thread)

        The attempt number is committed before any work starts, so it is
        persisted even if this process dies mid-award.

        Raises:
            Exception: Whatever the award raised, after the failed attempt
                has been recorded on the event
        """
        event_id = job.data["eventId"]
        payload = job.data.get("payload") or {}
        attempt = job.attempts_made + 1

        db = self.session_factory()
        span = get_tracer().start_span(PROCESS_PAYMENT_JOB, attributes={
            "loyalty.job_id": job.job_id,
            "loyalty.event_id": event_id,
            "loyalty.attempt": attempt,
        })
        try:
            record_attempt(event_id, attempt, db)
            result = self.loyalty.process_event(
                event_id,
                payload["userId"],
                payload["amount"],
                job.data.get("type", ""),
                db
            )
            mark_event_processed(event_id, db)
            span.set_attribute("loyalty.points_awarded", 0 if result.already_awarded else result.points_awarded)
            return result
        except Exception as e:
            span.record_exception(e)
            db.rollback()
            self._record_failed_attempt(event_id, attempt, job.max_attempts, str(e) or e.__class__.__name__, db)
            raise
        finally:
            span.end()
            db.close()

    def _record_failed_attempt(
        self,
        event_id: str,
        attempt: int,
        max_attempts: int,
        error_message: str,
        db: Session
    ) -> None:
        try:
            status = mark_event_attempt_failed(event_id, attempt, max_attempts, error_message, db)
        except Exception as e:
            db.rollback()
            worker_logger.error(f"Could not record failed attempt {attempt} for event {event_id}: {e}")
            return
        if status == EVENT_STATUS_FAILED:
            events_failed_counter.inc()

    async def process_job(self, job: Job) -> Optional[AwardResult]:
        """Run a reserved job to completion or failure

        Returns:
            AwardResult on success, None if the job failed
        """
        start = time.perf_counter()

        if not job.data.get("eventId"):
            worker_logger.error(f"Job {job.job_id} has no eventId, failing without retry")
            await asyncio.to_thread(self.queue.fail, job, "Missing eventId in job data", False)
            job_processing_duration.labels(status="failed").observe(time.perf_counter() - start)
            return None

        self._in_flight.add(job.job_id)
        heartbeat = asyncio.create_task(self._heartbeat(job.job_id))
        try:
            worker_logger.info(
                f"Processing job {job.job_id} for event {job.data['eventId']} "
                f"(attempt {job.attempts_made + 1}/{job.max_attempts})"
            )
            try:
                result = await asyncio.to_thread(self.handle_job, job)
            except Exception as e:
                error_msg = str(e) or e.__class__.__name__
                worker_logger.error(f"Job {job.job_id} failed: {error_msg}", exc_info=True)
                await asyncio.to_thread(self.queue.fail, job, error_msg)
                job_processing_duration.labels(status="failed").observe(time.perf_counter() - start)
                return None

            await asyncio.to_thread(self.queue.complete, job, result.to_dict())
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            self._in_flight.discard(job.job_id)

        if not result.already_awarded:
            points_awarded_counter.inc(result.points_awarded)
        job_processing_duration.labels(status="completed").observe(time.perf_counter() - start)
        worker_logger.info(
            f"Completed job {job.job_id}: user {result.user_id} "
            f"+{0 if result.already_awarded else result.points_awarded} points (total: {result.total_points})"
        )
        return result

    async def _heartbeat(self, job_id: str) -> None:
        interval = max(self.queue.lease_seconds / 3, 0.1)
        while True:
            await asyncio.sleep(interval)
            try:
                if not await asyncio.to_thread(self.queue.heartbeat, job_id):
                    worker_logger.warning(f"Lease for job {job_id} was lost")
            except Exception as e:
                worker_logger.warning(f"Heartbeat for job {job_id} failed: {e}")

    async def _acquire_slot(self) -> None:
        """Wait for a job-start slot in the shared rate limit window"""
        if self.rate_limiter is None:
            return
        while True:
            delay = await asyncio.to_thread(self.rate_limiter.try_acquire)
            if delay <= 0:
                return
            await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def run_maintenance(self) -> None:
        """Stall recovery, delayed promotion, orphan re-enqueue and queue gauges"""
        for job, status in self.queue.requeue_stalled():
            if status in (JOB_STATUS_DELAYED, JOB_STATUS_FAILED) and job.data.get("eventId"):
                db = self.session_factory()
                try:
                    self._record_failed_attempt(
                        job.data["eventId"], job.attempts_made + 1, job.max_attempts, STALLED_ERROR, db
                    )
                finally:
                    db.close()

        self.queue.promote_delayed()
        self.requeue_orphaned_events()
        update_queue_size_gauge(self.queue.counts())

    def requeue_orphaned_events(self) -> int:
        """Enqueue pending events that were stored but never got a job"""
        db = self.session_factory()
        try:
            orphans = find_orphaned_events(self.orphan_grace, db)
            for event in orphans:
                job_id = self.queue.enqueue(
                    PROCESS_PAYMENT_JOB,
                    payment_job_data(event.event_id, event.type, event.payload or {})
                )
                attach_job(event.event_id, job_id, db)
                worker_logger.warning(f"Re-enqueued orphaned event {event.event_id} as job {job_id}")
            return len(orphans)
        finally:
            db.close()

    async def _maintain(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.maintenance_interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await asyncio.to_thread(self.run_maintenance)
            except Exception as e:
                logger.error(f"Error in worker maintenance: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _consume(self, consumer_id: int) -> None:
        logger.debug(f"Consumer {consumer_id} started")
        while not self._stopping.is_set():
            try:
                job = await asyncio.to_thread(self.queue.reserve, self.poll_timeout)
                if job is None:
                    if self.poll_timeout <= 0:
                        await asyncio.sleep(IDLE_POLL_INTERVAL)
                    continue
                await self._acquire_slot()
                await self.process_job(job)
            except Exception as e:
                logger.error(f"Error in consumer {consumer_id} loop: {e}", exc_info=True)
                # Avoid a tight error loop while Redis or the database is down
                await asyncio.sleep(1)
        logger.debug(f"Consumer {consumer_id} stopped")

    async def start(self) -> None:
        if self._tasks:
            raise RuntimeError("Worker pool already started")
        self._stopping = asyncio.Event()
        self._tasks = [asyncio.create_task(self._consume(i)) for i in range(self.concurrency)]
        self._tasks.append(asyncio.create_task(self._maintain()))
        worker_logger.info(
            f"Payment worker pool started on queue {self.queue.name} "
            f"(concurrency={self.concurrency})"
        )

    async def stop(self, grace: Optional[float] = None) -> None:
        """Stop taking jobs and wait for in-flight ones

        Jobs still running after the grace period are cancelled; their leases
        expire and stall recovery hands them to another worker.
        """
        if not self._tasks:
            return
        grace = self.shutdown_grace if grace is None else grace
        self._stopping.set()
        worker_logger.info(f"Stopping payment worker pool ({self.in_flight} job(s) in flight)")

        _, pending = await asyncio.wait(self._tasks, timeout=grace)
        if pending:
            worker_logger.warning(f"Abandoning {len(pending)} task(s) after {grace}s shutdown grace")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        worker_logger.info("Payment worker pool stopped")

    async def run_until_empty(self) -> int:
        """Process jobs until none is ready; returns the number of jobs run"""
        processed = 0
        while True:
            job = await asyncio.to_thread(self.queue.reserve, 0)
            if job is None:
                return processed
            await self._acquire_slot()
            await self.process_job(job)
            processed += 1


async def run_worker(resources: Resources) -> None:
    """Run the pool until SIGINT/SIGTERM"""
    pool = PaymentWorkerPool.from_resources(resources)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await pool.start()
    await stop_event.wait()
    worker_logger.info("Shutdown signal received")
    await pool.stop()


def main() -> None:
    """Entry point for the standalone worker process"""
    settings = get_settings()
    setup_logging(settings)

    otel_enabled = initialize_otel(settings, role="worker")
    if otel_enabled:
        logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")

    resources = Resources.create(settings)
    if otel_enabled:
        instrument_sqlalchemy(resources.database.engine)
    try:
        resources.queue.ping()
        resources.database.ping()
        asyncio.run(run_worker(resources))
    finally:
        resources.close()


if __name__ == "__main__":
    main()
