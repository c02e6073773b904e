"""
Persistent queue of memory maintenance jobs.

Jobs are rows in `memory_jobs`. A worker claims a job with a single
conditional UPDATE on its status, so two workers racing for the same
row cannot both process it.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import aiosqlite

from ..models.core import JOB_COMPLETED, JOB_FAILED, JOB_PENDING, JOB_PROCESSING, JOB_TYPES, JobRun, MemoryJob
from ..utils.config import QueueConfig
from ..utils.database import Database, DatabaseError, execute
from ..utils.json_utils import dump_column
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso, utc_now

logger = get_logger(__name__)

# Payload keys holding entry plaintext, at any depth; removed once a job is terminal
PLAINTEXT_KEYS = ('content', 'object_text')


class JobQueueError(Exception):
    """Custom exception for job queue errors."""
    pass


def backoff_seconds(attempts: int, base: float = 2.0, cap: float = 3600.0) -> float:
    """Delay before the next try of a job that has failed `attempts` times."""
    return min(cap, base**attempts)


def scrub_payload(payload: Any) -> Any:
    if isinstance(payload, dict):
        return {key: scrub_payload(value) for key, value in payload.items() if key not in PLAINTEXT_KEYS}
    if isinstance(payload, list):
        return [scrub_payload(item) for item in payload]
    return payload


class JobQueue:
    """Enqueue, claim and settle memory jobs."""

    def __init__(self, db: Database, config: QueueConfig):
        """
        Initialize the queue.

        Args:
            db: Relational store holding memory_jobs
            config: QueueConfig with batch size, attempts and backoff policy
        """
        self.db = db
        self.config = config

    async def enqueue(self,
                      user_id: Optional[str],
                      job_type: str,
                      payload: Optional[Dict[str, Any]] = None,
                      priority: Optional[int] = None,
                      depends_on: Optional[str] = None,
                      scheduled_for: Optional[datetime] = None,
                      max_attempts: Optional[int] = None,
                      conn: Optional[aiosqlite.Connection] = None) -> str:
        """
        Add a pending job.

        Args:
            user_id: Owning user (None for global jobs)
            job_type: One of update, consolidate, decay, cleanup, graph_update, summary, extract
            payload: JSON-serializable job arguments
            priority: Lower runs first
            depends_on: Job that must be completed before this one is eligible
            scheduled_for: Earliest run time (defaults to now)
            max_attempts: Attempts before the job is failed terminally
            conn: Open transaction to enqueue in, if any

        Returns:
            ID of the new job

        Raises:
            JobQueueError: If the job type is unknown or the insert fails
        """
        if job_type not in JOB_TYPES:
            raise JobQueueError(f'Unknown job type: {job_type}')

        job_id = str(uuid.uuid4())
        now = utc_now()
        sql = ('INSERT INTO memory_jobs (id, user_id, job_type, priority, payload, status, attempts, max_attempts, depends_on, '
               'scheduled_for, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)')
        params = (job_id, user_id, job_type, self.config.default_priority if priority is None else priority, dump_column(payload or {}),
                  JOB_PENDING, max_attempts or self.config.max_attempts, depends_on, to_iso(scheduled_for or now), to_iso(now),
                  to_iso(now))
        try:
            if conn is not None:
                await execute(conn, sql, params)
            else:
                await self.db.execute(sql, params)
        except DatabaseError as e:
            logger.error(f'Failed to enqueue {job_type} job: {e}')
            raise JobQueueError(f'Failed to enqueue job: {e}')

        logger.debug(f'Enqueued {job_type} job {job_id} for user {user_id}')
        return job_id

    async def get(self, job_id: str) -> Optional[MemoryJob]:
        row = await self.db.fetch_one('SELECT * FROM memory_jobs WHERE id = ?', (job_id, ))
        return MemoryJob.from_row(row) if row else None

    async def fetch_eligible(self, batch_size: Optional[int] = None, now: Optional[datetime] = None) -> List[MemoryJob]:
        """
        Pending jobs that are due and whose dependency (if any) is completed.

        Args:
            batch_size: Maximum jobs to return
            now: Reference time for scheduled_for

        Returns:
            Jobs ordered by priority then creation time
        """
        rows = await self.db.fetch_all(
            'SELECT j.* FROM memory_jobs j LEFT JOIN memory_jobs d ON d.id = j.depends_on '
            'WHERE j.status = ? AND j.scheduled_for <= ? AND (j.depends_on IS NULL OR d.status = ?) '
            'ORDER BY j.priority ASC, j.created_at ASC LIMIT ?',
            (JOB_PENDING, to_iso(now or utc_now()), JOB_COMPLETED, batch_size or self.config.batch_size))
        return [MemoryJob.from_row(row) for row in rows]

    async def claim(self, job: MemoryJob, now: Optional[datetime] = None) -> bool:
        """
        Atomically move a job from pending to processing.

        Returns:
            True if this caller won the claim, False if another worker already took it
        """
        now = now or utc_now()
        claimed = await self.db.execute(
            'UPDATE memory_jobs SET status = ?, attempts = attempts + 1, started_at = ?, updated_at = ? '
            'WHERE id = ? AND status = ?', (JOB_PROCESSING, to_iso(now), to_iso(now), job.id, JOB_PENDING))
        if claimed != 1:
            logger.debug(f'Job {job.id} already claimed by another worker')
            return False
        job.status = JOB_PROCESSING
        job.attempts += 1
        job.started_at = now
        return True

    async def release_stale_claims(self, now: Optional[datetime] = None) -> int:
        """
        Return jobs stuck in processing past the claim timeout to pending.

        A worker that dies, or cannot record a failure, leaves its job
        claimed. The attempt it used still counts toward max_attempts.

        Returns:
            Number of jobs released
        """
        now = now or utc_now()
        cutoff = now - timedelta(seconds=self.config.claim_timeout_seconds)
        released = await self.db.execute(
            'UPDATE memory_jobs SET status = ?, last_error = COALESCE(last_error, ?), updated_at = ? '
            'WHERE status = ? AND started_at < ?', (JOB_PENDING, 'Claim expired', to_iso(now), JOB_PROCESSING, to_iso(cutoff)))
        if released:
            logger.warning(f'Released {released} stale job claims older than {self.config.claim_timeout_seconds:.0f}s')
        return released

    async def complete(self, job: MemoryJob, result: Dict[str, Any], now: Optional[datetime] = None) -> None:
        now = now or utc_now()
        await self.db.execute(
            'UPDATE memory_jobs SET status = ?, result = ?, payload = ?, completed_at = ?, updated_at = ? WHERE id = ?',
            (JOB_COMPLETED, dump_column(result), dump_column(scrub_payload(job.payload)), to_iso(now), to_iso(now), job.id))
        job.status = JOB_COMPLETED
        job.result = result

    async def fail_or_retry(self, job: MemoryJob, error: str, now: Optional[datetime] = None) -> str:
        """
        Settle a failed attempt: reschedule with backoff, or fail terminally.

        Args:
            job: Claimed job whose attempt counter already includes this try
            error: Error text kept on the row
            now: Reference time for the next schedule

        Returns:
            The job's new status (pending or failed)
        """
        now = now or utc_now()
        if job.attempts >= job.max_attempts:
            await self.db.execute(
                'UPDATE memory_jobs SET status = ?, last_error = ?, payload = ?, completed_at = ?, updated_at = ? WHERE id = ?',
                (JOB_FAILED, error, dump_column(scrub_payload(job.payload)), to_iso(now), to_iso(now), job.id))
            logger.error(f'Job {job.id} ({job.job_type}) failed permanently after {job.attempts} attempts: {error}')
            job.status = JOB_FAILED
        else:
            delay = backoff_seconds(job.attempts, self.config.backoff_base_seconds, self.config.backoff_cap_seconds)
            job.scheduled_for = now + timedelta(seconds=delay)
            await self.db.execute('UPDATE memory_jobs SET status = ?, last_error = ?, scheduled_for = ?, updated_at = ? WHERE id = ?',
                                  (JOB_PENDING, error, to_iso(job.scheduled_for), to_iso(now), job.id))
            logger.warning(f'Job {job.id} ({job.job_type}) attempt {job.attempts} failed, retrying in {delay:.0f}s: {error}')
            job.status = JOB_PENDING
        job.last_error = error
        return job.status

    async def record_run(self, run_type: str, status: str, result: Dict[str, Any], duration_ms: int,
                         user_id: Optional[str] = None) -> str:
        """Write a job_history record for a scheduler or worker pass."""
        run_id = str(uuid.uuid4())
        await self.db.execute(
            'INSERT INTO job_history (id, run_type, user_id, status, result, duration_ms, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)',
            (run_id, run_type, user_id, status, dump_column(result), duration_ms, to_iso(utc_now())))
        return run_id

    async def list_runs(self, run_type: Optional[str] = None, limit: int = 20) -> List[JobRun]:
        sql = 'SELECT * FROM job_history'
        params: List[Any] = []
        if run_type:
            sql += ' WHERE run_type = ?'
            params.append(run_type)
        sql += ' ORDER BY created_at DESC LIMIT ?'
        params.append(limit)
        return [JobRun.from_row(row) for row in await self.db.fetch_all(sql, params)]
