"""
Stateless memory job worker.

Each call to `process_batch` fetches eligible jobs, claims them one by one
and dispatches to the handler registered for the job type. Any number of
workers may run concurrently: the claim is atomic, so a job is processed
by exactly one of them.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from ..models.core import JOB_FAILED, JOB_PROCESSING, JOB_TYPES, MemoryJob
from ..utils.database import DatabaseError
from ..utils.logging_config import get_logger
from .job_queue import JobQueue

logger = get_logger(__name__)

JobHandler = Callable[[MemoryJob], Awaitable[Dict[str, Any]]]


class WorkerError(Exception):
    """Custom exception for worker errors."""
    pass


class MemoryWorker:
    """Claim and run queued memory jobs."""

    def __init__(self, job_queue: JobQueue, handlers: Optional[Dict[str, JobHandler]] = None):
        self.job_queue = job_queue
        self.handlers: Dict[str, JobHandler] = {}
        for job_type, handler in (handlers or {}).items():
            self.register(job_type, handler)

    def register(self, job_type: str, handler: JobHandler) -> None:
        if job_type not in JOB_TYPES:
            raise WorkerError(f'Unknown job type: {job_type}')
        self.handlers[job_type] = handler

    async def process_batch(self, batch_size: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run one batch of eligible jobs.

        Args:
            batch_size: Maximum jobs to fetch (config default if None)
            now: Reference time for eligibility and backoff

        Returns:
            Dict with per-outcome counts and per-job results
        """
        start = time.perf_counter()
        released = await self.job_queue.release_stale_claims(now)
        jobs = await self.job_queue.fetch_eligible(batch_size, now)
        summary = {'fetched': len(jobs), 'released': released, 'completed': 0, 'retried': 0, 'failed': 0, 'skipped': 0, 'results': []}

        for job in jobs:
            if not await self.job_queue.claim(job, now):
                summary['skipped'] += 1
                continue
            outcome = await self._run(job, now)
            summary[outcome['status']] += 1
            summary['results'].append(outcome)

        summary['processed'] = summary['completed'] + summary['retried'] + summary['failed']
        summary['total_time_ms'] = int((time.perf_counter() - start) * 1000)
        if jobs:
            logger.info(f'Worker batch: {summary["completed"]} completed, {summary["retried"]} retried, {summary["failed"]} failed, '
                        f'{summary["skipped"]} skipped in {summary["total_time_ms"]} ms')
        return summary

    async def _run(self, job: MemoryJob, now: Optional[datetime]) -> Dict[str, Any]:
        job_start = time.perf_counter()
        handler = self.handlers.get(job.job_type)
        try:
            if handler is None:
                raise WorkerError(f'No handler registered for job type: {job.job_type}')
            result = dict(await handler(job) or {})
            result['processing_time_ms'] = int((time.perf_counter() - job_start) * 1000)
            await self.job_queue.complete(job, result, now)
            logger.debug(f'Job {job.id} ({job.job_type}) completed')
            return {'job_id': job.id, 'job_type': job.job_type, 'status': 'completed', 'result': result}
        except Exception as e:
            # Every handler failure is settled through retry/backoff so the batch continues
            error = f'{type(e).__name__}: {e}'
            try:
                status = await self.job_queue.fail_or_retry(job, error, now)
            except DatabaseError as db_error:
                # The claim stays until release_stale_claims returns the job to pending
                logger.error(f'Could not record failure of job {job.id}, leaving it for claim release: {db_error}')
                status = JOB_PROCESSING
            return {
                'job_id': job.id,
                'job_type': job.job_type,
                'status': 'failed' if status == JOB_FAILED else 'retried',
                'error': error,
                'attempts': job.attempts
            }

    async def drain(self, max_batches: int = 10) -> Dict[str, Any]:
        """Run batches until nothing is eligible or max_batches is reached."""
        totals = {'batches': 0, 'completed': 0, 'retried': 0, 'failed': 0, 'skipped': 0}
        for _ in range(max_batches):
            batch = await self.process_batch()
            if not batch['fetched']:
                break
            totals['batches'] += 1
            for key in ('completed', 'retried', 'failed', 'skipped'):
                totals[key] += batch[key]
        return totals

    async def run_forever(self, poll_interval: float = 5.0, stop: Optional[asyncio.Event] = None) -> None:
        """Poll the queue until `stop` is set."""
        stop = stop or asyncio.Event()
        logger.info(f'Memory worker polling every {poll_interval}s')
        while not stop.is_set():
            try:
                batch = await self.process_batch()
            except DatabaseError as e:
                logger.error(f'Worker batch failed: {e}')
                batch = {'fetched': 0}
            if batch['fetched']:
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass
