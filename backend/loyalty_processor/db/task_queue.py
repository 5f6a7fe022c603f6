"""Redis-based durable job queue for payment event processing

Job records live in Redis hashes; job ids move between one list per live
state (waiting, active) and one sorted set per scheduled/terminal state
(delayed, completed, failed). Delivery is at-least-once: a reserved job holds
a lease that the worker renews while processing, and an expired lease sends
the job back to the waiting list.
"""
import json
import logging
import random
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import redis

logger = logging.getLogger(__name__)

JOB_STATUS_WAITING = "waiting"
JOB_STATUS_ACTIVE = "active"
JOB_STATUS_DELAYED = "delayed"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

STALLED_ERROR = "job stalled more than allowable limit"


@dataclass
class Job:
    """A reserved job as handed to a worker"""
    job_id: str
    name: str
    data: Dict[str, Any]
    attempts_made: int = 0
    max_attempts: int = 5
    stalled_count: int = 0
    created_at: Optional[str] = None

    @classmethod
    def from_hash(cls, meta: Dict[str, str]) -> "Job":
        return cls(
            job_id=meta["job_id"],
            name=meta.get("name", ""),
            data=json.loads(meta.get("data") or "{}"),
            attempts_made=int(meta.get("attempts_made", "0")),
            max_attempts=int(meta.get("max_attempts", "5")),
            stalled_count=int(meta.get("stalled_count", "0")),
            created_at=meta.get("created_at"),
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobQueue:
    """Durable queue with retry/backoff, leases and bounded retention"""

    def __init__(
        self,
        client: redis.Redis,
        name: str,
        max_attempts: int = 5,
        backoff_delay: float = 1.0,
        backoff_multiplier: float = 2.0,
        backoff_max_delay: float = 300.0,
        backoff_jitter: float = 0.0,
        lease_seconds: int = 30,
        max_stalled_count: int = 1,
        completed_retention_count: int = 100,
        completed_retention_seconds: int = 3600,
        failed_retention_seconds: int = 86400,
    ):
        self.client = client
        self.name = name
        self.max_attempts = max_attempts
        self.backoff_delay = backoff_delay
        self.backoff_multiplier = backoff_multiplier
        self.backoff_max_delay = backoff_max_delay
        self.backoff_jitter = backoff_jitter
        self.lease_seconds = lease_seconds
        self.max_stalled_count = max_stalled_count
        self.completed_retention_count = completed_retention_count
        self.completed_retention_seconds = completed_retention_seconds
        self.failed_retention_seconds = failed_retention_seconds

        prefix = f"queue:{name}:"
        self.wait_key = f"{prefix}wait"
        self.active_key = f"{prefix}active"
        self.leases_key = f"{prefix}leases"
        self.delayed_key = f"{prefix}delayed"
        self.completed_key = f"{prefix}completed"
        self.failed_key = f"{prefix}failed"
        self.job_key_prefix = f"{prefix}job:"

    def job_key(self, job_id: str) -> str:
        return f"{self.job_key_prefix}{job_id}"

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, name: str, data: Dict[str, Any], max_attempts: Optional[int] = None) -> str:
        """Persist a job and make it available to workers

        Args:
            name: Job name (e.g., 'process-payment')
            data: JSON-serializable job data
            max_attempts: Attempt cap for this job (defaults to the queue's)

        Returns:
            job_id: Unique job identifier
        """
        job_id = uuid.uuid4().hex

        pipe = self.client.pipeline(transaction=True)
        pipe.hset(self.job_key(job_id), mapping={
            "job_id": job_id,
            "name": name,
            "data": json.dumps(data),
            "attempts_made": "0",
            "max_attempts": str(max_attempts or self.max_attempts),
            "stalled_count": "0",
            "status": JOB_STATUS_WAITING,
            "created_at": _now_iso(),
        })
        pipe.lpush(self.wait_key, job_id)
        pipe.execute()

        logger.info(f"Enqueued job {job_id} ({name}) on queue {self.name}")
        return job_id

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def reserve(self, timeout: float = 0) -> Optional[Job]:
        """Take the next ready job and lease it to the caller

        Args:
            timeout: Seconds to block waiting for a job, 0 to return immediately

        Returns:
            Job if one was available, None otherwise
        """
        self.promote_delayed()

        if timeout and timeout > 0:
            job_id = self.client.blmove(self.wait_key, self.active_key, timeout, "RIGHT", "LEFT")
        else:
            job_id = self.client.lmove(self.wait_key, self.active_key, "RIGHT", "LEFT")

        if job_id is None:
            return None

        self.client.zadd(self.leases_key, {job_id: time.time() + self.lease_seconds})

        job_key = self.job_key(job_id)
        meta = self.client.hgetall(job_key)
        if not meta:
            logger.warning(f"Job {job_id} has no record (purged?), dropping it from the active list")
            pipe = self.client.pipeline(transaction=True)
            pipe.lrem(self.active_key, 0, job_id)
            pipe.zrem(self.leases_key, job_id)
            pipe.execute()
            return None

        self.client.hset(job_key, mapping={"status": JOB_STATUS_ACTIVE, "started_at": _now_iso()})
        logger.debug(f"Reserved job {job_id} (attempts_made={meta.get('attempts_made')})")
        return Job.from_hash(meta)

    def heartbeat(self, job_id: str) -> bool:
        """Extend the lease of an active job. Returns False if the lease was lost."""
        changed = self.client.zadd(
            self.leases_key,
            {job_id: time.time() + self.lease_seconds},
            xx=True,
            ch=True
        )
        return bool(changed)

    def complete(self, job: Job, result: Optional[Dict[str, Any]] = None) -> None:
        """Mark a job as completed and apply completed-job retention"""
        job_key = self.job_key(job.job_id)
        mapping = {"status": JOB_STATUS_COMPLETED, "finished_at": _now_iso()}
        if result is not None:
            mapping["result"] = json.dumps(result)

        pipe = self.client.pipeline(transaction=True)
        pipe.lrem(self.active_key, 0, job.job_id)
        # A stall sweep may have handed the job back out; a finished job must not run again
        pipe.lrem(self.wait_key, 0, job.job_id)
        pipe.zrem(self.delayed_key, job.job_id)
        pipe.zrem(self.leases_key, job.job_id)
        pipe.hset(job_key, mapping=mapping)
        pipe.zadd(self.completed_key, {job.job_id: time.time()})
        pipe.execute()

        logger.info(f"Job {job.job_id} completed")
        self._trim_completed()

    def fail(self, job: Job, error: str, retry: bool = True) -> Optional[str]:
        """Record a failed attempt and either schedule a retry or fail permanently

        Args:
            job: The job that failed
            error: Error message
            retry: Whether the failure is retryable

        Returns:
            JOB_STATUS_DELAYED if a retry was scheduled, JOB_STATUS_FAILED if the
            job is terminally failed, None if the job record no longer exists or
            the job is no longer active (a stall sweep already took it back)
        """
        job_key = self.job_key(job.job_id)

        def _fail(pipe):
            meta = pipe.hgetall(job_key)
            if not meta:
                return None
            if meta.get("status") != JOB_STATUS_ACTIVE:
                # Lease expired and the job was handed back; the next run owns the outcome
                return meta.get("status"), False
            pipe.multi()
            return self._record_failure(pipe, job.job_id, meta, error, retry), True

        outcome = self.client.transaction(_fail, job_key, value_from_callable=True)

        if outcome is None:
            logger.warning(f"Job {job.job_id} record not found while recording failure")
            return None

        status, recorded = outcome
        if not recorded:
            logger.warning(f"Job {job.job_id} is {status}, not active; ignoring late failure: {error}")
            return None
        if status == JOB_STATUS_FAILED:
            self._trim_failed()
        return status

    def _record_failure(self, pipe, job_id: str, meta: Dict[str, str], error: str, retry: bool) -> str:
        """Queue the commands for a failed attempt on a pipeline already in MULTI mode"""
        attempts_made = int(meta.get("attempts_made", "0")) + 1
        max_attempts = int(meta.get("max_attempts", str(self.max_attempts)))
        now = time.time()

        pipe.lrem(self.active_key, 0, job_id)
        pipe.zrem(self.leases_key, job_id)

        if retry and attempts_made < max_attempts:
            delay_seconds = self.compute_backoff(attempts_made)
            pipe.hset(self.job_key(job_id), mapping={
                "status": JOB_STATUS_DELAYED,
                "attempts_made": str(attempts_made),
                "failed_reason": error,
                "retry_at": datetime.fromtimestamp(now + delay_seconds, timezone.utc).isoformat(),
            })
            pipe.zadd(self.delayed_key, {job_id: now + delay_seconds})
            logger.info(
                f"Job {job_id} failed (attempt {attempts_made}/{max_attempts}), "
                f"scheduling retry in {delay_seconds:.1f}s: {error}"
            )
            return JOB_STATUS_DELAYED

        pipe.hset(self.job_key(job_id), mapping={
            "status": JOB_STATUS_FAILED,
            "attempts_made": str(attempts_made),
            "failed_reason": error,
            "finished_at": _now_iso(),
        })
        pipe.zadd(self.failed_key, {job_id: now})
        logger.warning(f"Job {job_id} failed permanently after {attempts_made} attempts: {error}")
        return JOB_STATUS_FAILED

    def compute_backoff(self, attempts_made: int) -> float:
        """Exponential backoff: base * multiplier^(attempts_made - 1), capped"""
        delay = self.backoff_delay * (self.backoff_multiplier ** max(attempts_made - 1, 0))
        delay = min(delay, self.backoff_max_delay)
        if self.backoff_jitter > 0:
            delay += random.uniform(0, delay * self.backoff_jitter)
        return delay

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff has elapsed back to the waiting list"""
        now = time.time()

        def _promote(pipe):
            due = pipe.zrangebyscore(self.delayed_key, "-inf", now)
            if not due:
                return []
            pipe.multi()
            for job_id in due:
                pipe.zrem(self.delayed_key, job_id)
                pipe.hset(self.job_key(job_id), "status", JOB_STATUS_WAITING)
                pipe.lpush(self.wait_key, job_id)
            return due

        promoted = self.client.transaction(_promote, self.delayed_key, value_from_callable=True)
        if promoted:
            logger.debug(f"Promoted {len(promoted)} delayed job(s) on queue {self.name}")
        return len(promoted)

    def requeue_stalled(self) -> List[Tuple[Job, str]]:
        """Recover active jobs whose lease expired (worker died mid-processing)

        A job may stall `max_stalled_count` times and go straight back to the
        waiting list; beyond that the stall counts as a failed attempt.

        Returns:
            List of (job, new status) for every job that was recovered
        """
        now = time.time()
        recovered = []

        for job_id in self.client.lrange(self.active_key, 0, -1):
            score = self.client.zscore(self.leases_key, job_id)
            if score is None:
                # Reserved but the lease was never written (crash between the two steps)
                self.client.zadd(self.leases_key, {job_id: now + self.lease_seconds}, nx=True)
                continue
            if score > now:
                continue

            job_key = self.job_key(job_id)

            def _requeue(pipe):
                current = pipe.zscore(self.leases_key, job_id)
                if current is None or current > time.time():
                    return None
                meta = pipe.hgetall(job_key)
                pipe.multi()
                if not meta:
                    pipe.lrem(self.active_key, 0, job_id)
                    pipe.zrem(self.leases_key, job_id)
                    return None
                stalled_count = int(meta.get("stalled_count", "0")) + 1
                if stalled_count > self.max_stalled_count:
                    pipe.hset(job_key, "stalled_count", "0")
                    status = self._record_failure(pipe, job_id, meta, STALLED_ERROR, retry=True)
                else:
                    pipe.lrem(self.active_key, 0, job_id)
                    pipe.zrem(self.leases_key, job_id)
                    pipe.hset(job_key, mapping={
                        "status": JOB_STATUS_WAITING,
                        "stalled_count": str(stalled_count),
                    })
                    pipe.rpush(self.wait_key, job_id)
                    status = JOB_STATUS_WAITING
                return meta, status

            outcome = self.client.transaction(_requeue, self.leases_key, job_key, value_from_callable=True)
            if outcome is None:
                continue

            meta, status = outcome
            job = Job.from_hash(meta)
            logger.warning(f"Job {job_id} stalled (lease expired), moved to {status}")
            recovered.append((job, status))

        if any(status == JOB_STATUS_FAILED for _, status in recovered):
            self._trim_failed()
        return recovered

    def _trim_completed(self) -> int:
        cutoff = time.time() - self.completed_retention_seconds
        expired = set(self.client.zrangebyscore(self.completed_key, "-inf", cutoff))
        if self.completed_retention_count >= 0:
            # Everything older than the newest N entries
            expired.update(self.client.zrange(self.completed_key, 0, -(self.completed_retention_count + 1)))
        return self._purge(self.completed_key, expired)

    def _trim_failed(self) -> int:
        cutoff = time.time() - self.failed_retention_seconds
        expired = set(self.client.zrangebyscore(self.failed_key, "-inf", cutoff))
        return self._purge(self.failed_key, expired)

    def _purge(self, set_key: str, job_ids) -> int:
        if not job_ids:
            return 0
        pipe = self.client.pipeline(transaction=True)
        for job_id in job_ids:
            pipe.zrem(set_key, job_id)
            pipe.delete(self.job_key(job_id))
        pipe.execute()
        logger.debug(f"Purged {len(job_ids)} job(s) from {set_key}")
        return len(job_ids)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Get job status and metadata, or None if unknown/purged"""
        meta = self.client.hgetall(self.job_key(job_id))
        if not meta:
            return None

        if "data" in meta:
            meta["data"] = json.loads(meta["data"])
        if "result" in meta:
            meta["result"] = json.loads(meta["result"])
        for key in ("attempts_made", "max_attempts", "stalled_count"):
            if key in meta:
                meta[key] = int(meta[key])
        return meta

    def counts(self) -> Dict[str, int]:
        pipe = self.client.pipeline(transaction=False)
        pipe.llen(self.wait_key)
        pipe.llen(self.active_key)
        pipe.zcard(self.delayed_key)
        pipe.zcard(self.completed_key)
        pipe.zcard(self.failed_key)
        waiting, active, delayed, completed, failed = pipe.execute()
        return {
            JOB_STATUS_WAITING: waiting,
            JOB_STATUS_ACTIVE: active,
            JOB_STATUS_DELAYED: delayed,
            JOB_STATUS_COMPLETED: completed,
            JOB_STATUS_FAILED: failed,
        }

    def ping(self) -> None:
        self.client.ping()
