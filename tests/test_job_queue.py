import asyncio
from datetime import timedelta

import pytest

from conftest import USER, at
from temporal_memory.models.core import JOB_COMPLETED, JOB_FAILED, JOB_PENDING, JOB_PROCESSING
from temporal_memory.services.job_queue import JobQueue, JobQueueError, backoff_seconds, scrub_payload
from temporal_memory.services.worker import MemoryWorker, WorkerError
from temporal_memory.utils.database import DatabaseError


class RacingQueue(JobQueue):
    """Holds every fetch until all racing workers have fetched, so each sees the same jobs."""

    def __init__(self, db, config, racers):
        super().__init__(db, config)
        self.racers = racers
        self.fetches = 0
        self.all_fetched = asyncio.Event()

    async def fetch_eligible(self, batch_size=None, now=None):
        jobs = await super().fetch_eligible(batch_size, now)
        self.fetches += 1
        if self.fetches >= self.racers:
            self.all_fetched.set()
        await self.all_fetched.wait()
        return jobs


class UnrecordableFailures(JobQueue):

    async def fail_or_retry(self, job, error, now=None):
        raise DatabaseError('database is locked')


def test_backoff_grows_exponentially_and_is_capped():
    assert backoff_seconds(1) == 2
    assert backoff_seconds(2) == 4
    assert backoff_seconds(3) == 8
    assert backoff_seconds(20, base=2.0, cap=3600.0) == 3600.0


def test_scrub_payload_drops_plaintext_only():
    assert scrub_payload({'content': 'secret diary', 'entry_id': 'e1'}) == {'entry_id': 'e1'}


def test_scrub_payload_reaches_nested_candidates():
    payload = {
        'candidate': {
            'content': 'Card is 4111 1111 1111 1111',
            'object_text': '4111 1111 1111 1111',
            'entity_name': 'Visa',
            'predicate': 'card_number'
        },
        'history': [{'content': 'older text', 'entry_id': 'e0'}]
    }

    assert scrub_payload(payload) == {'candidate': {'entity_name': 'Visa', 'predicate': 'card_number'}, 'history': [{'entry_id': 'e0'}]}


@pytest.mark.asyncio
async def test_unknown_job_type_is_refused(job_queue):
    with pytest.raises(JobQueueError):
        await job_queue.enqueue(USER, 'reticulate')


@pytest.mark.asyncio
async def test_only_one_claim_wins(job_queue):
    await job_queue.enqueue(USER, 'decay')
    [first] = await job_queue.fetch_eligible()
    [second] = await job_queue.fetch_eligible()

    assert await job_queue.claim(first) is True
    assert await job_queue.claim(second) is False
    assert (await job_queue.get(first.id)).attempts == 1
    assert await job_queue.fetch_eligible() == []


@pytest.mark.asyncio
async def test_eligible_jobs_are_ordered_by_priority_then_age(job_queue):
    low = await job_queue.enqueue(USER, 'decay', priority=9)
    high = await job_queue.enqueue(USER, 'cleanup', priority=1)
    default = await job_queue.enqueue(USER, 'consolidate')

    assert [job.id for job in await job_queue.fetch_eligible()] == [high, default, low]


@pytest.mark.asyncio
async def test_future_jobs_are_not_eligible_yet(job_queue):
    now = at(2024, 6, 1)
    await job_queue.enqueue(USER, 'decay', scheduled_for=now + timedelta(hours=1))

    assert await job_queue.fetch_eligible(now=now) == []
    assert len(await job_queue.fetch_eligible(now=now + timedelta(hours=2))) == 1


@pytest.mark.asyncio
async def test_dependent_job_waits_for_its_dependency(job_queue):
    parent = await job_queue.enqueue(USER, 'update', {'candidate': {'content': 'x'}})
    child = await job_queue.enqueue(USER, 'summary', {'category': 'work'}, depends_on=parent)

    assert [job.id for job in await job_queue.fetch_eligible()] == [parent]

    [job] = await job_queue.fetch_eligible()
    await job_queue.claim(job)
    await job_queue.complete(job, {'ok': True})

    assert [job.id for job in await job_queue.fetch_eligible()] == [child]


@pytest.mark.asyncio
async def test_failed_attempts_back_off_then_fail_terminally(job_queue):
    now = at(2024, 6, 1)
    job_id = await job_queue.enqueue(USER, 'extract', {'entry_id': 'e1', 'content': 'Dear diary'}, scheduled_for=now)

    [job] = await job_queue.fetch_eligible(now=now)
    await job_queue.claim(job, now)
    assert await job_queue.fail_or_retry(job, 'boom', now) == JOB_PENDING
    stored = await job_queue.get(job_id)
    assert stored.scheduled_for == now + timedelta(seconds=2)
    assert stored.payload['content'] == 'Dear diary'

    later = now + timedelta(seconds=3)
    [job] = await job_queue.fetch_eligible(now=later)
    await job_queue.claim(job, later)
    await job_queue.fail_or_retry(job, 'boom again', later)
    assert (await job_queue.get(job_id)).scheduled_for == later + timedelta(seconds=4)

    last = later + timedelta(seconds=5)
    [job] = await job_queue.fetch_eligible(now=last)
    await job_queue.claim(job, last)
    assert await job_queue.fail_or_retry(job, 'still broken', last) == JOB_FAILED

    stored = await job_queue.get(job_id)
    assert stored.status == JOB_FAILED
    assert stored.attempts == 3
    assert stored.last_error == 'still broken'
    assert 'content' not in stored.payload
    assert stored.payload['entry_id'] == 'e1'


@pytest.mark.asyncio
async def test_completion_scrubs_plaintext(job_queue):
    job_id = await job_queue.enqueue(USER, 'extract', {'entry_id': 'e1', 'content': 'Dear diary'})
    [job] = await job_queue.fetch_eligible()
    await job_queue.claim(job)
    await job_queue.complete(job, {'entities': 1})

    stored = await job_queue.get(job_id)
    assert stored.status == JOB_COMPLETED
    assert stored.result == {'entities': 1}
    assert stored.payload == {'entry_id': 'e1'}


@pytest.mark.asyncio
async def test_worker_continues_after_a_failing_handler(job_queue):
    seen = []

    async def explode(job):
        raise RuntimeError('handler crashed')

    async def record(job):
        seen.append(job.id)
        return {'done': True}

    worker = MemoryWorker(job_queue, {'decay': explode, 'cleanup': record})
    failing = await job_queue.enqueue(USER, 'decay', priority=1)
    passing = await job_queue.enqueue(USER, 'cleanup', priority=2)

    summary = await worker.process_batch()

    assert summary['fetched'] == 2
    assert summary['retried'] == 1
    assert summary['completed'] == 1
    assert seen == [passing]
    failed = await job_queue.get(failing)
    assert failed.status == JOB_PENDING
    assert failed.last_error == 'RuntimeError: handler crashed'
    assert (await job_queue.get(passing)).result['done'] is True


@pytest.mark.asyncio
async def test_worker_without_handler_settles_job_as_failure(job_queue):
    worker = MemoryWorker(job_queue)
    job_id = await job_queue.enqueue(USER, 'summary', {'category': 'work'}, max_attempts=1)

    summary = await worker.process_batch()

    assert summary['failed'] == 1
    assert (await job_queue.get(job_id)).status == JOB_FAILED


def test_worker_refuses_unknown_job_type(job_queue):
    with pytest.raises(WorkerError):
        MemoryWorker(job_queue).register('reticulate', lambda job: None)


@pytest.mark.asyncio
async def test_run_history_is_recorded(job_queue):
    await job_queue.record_run('decay', 'completed', {'updated': 2}, 15, user_id=USER)

    [run] = await job_queue.list_runs('decay')
    assert run.status == 'completed'
    assert run.result == {'updated': 2}
    assert run.user_id == USER


@pytest.mark.asyncio
async def test_completed_update_job_keeps_no_candidate_text(job_queue):
    job_id = await job_queue.enqueue(USER, 'update', {'candidate': {'content': 'Sarah works at Acme', 'object_text': 'Acme',
                                                                    'entity_name': 'Sarah'}})
    [job] = await job_queue.fetch_eligible()
    await job_queue.claim(job)
    await job_queue.complete(job, {'operation': 'ADD'})

    assert (await job_queue.get(job_id)).payload == {'candidate': {'entity_name': 'Sarah'}}


@pytest.mark.asyncio
async def test_concurrent_workers_run_a_job_exactly_once(db, app_config):
    queue = RacingQueue(db, app_config.queue, racers=2)
    calls = []

    async def handle(job):
        calls.append(job.id)
        await asyncio.sleep(0)
        return {'done': True}

    job_id = await queue.enqueue(USER, 'decay')
    first, second = await asyncio.gather(MemoryWorker(queue, {'decay': handle}).process_batch(),
                                         MemoryWorker(queue, {'decay': handle}).process_batch())

    assert calls == [job_id]
    assert first['fetched'] == second['fetched'] == 1
    assert first['completed'] + second['completed'] == 1
    assert first['skipped'] + second['skipped'] == 1
    stored = await queue.get(job_id)
    assert stored.status == JOB_COMPLETED
    assert stored.attempts == 1


@pytest.mark.asyncio
async def test_job_whose_failure_cannot_be_recorded_is_released_later(db, app_config):
    queue = UnrecordableFailures(db, app_config.queue)
    attempts = []

    async def flaky(job):
        attempts.append(job.attempts)
        if len(attempts) == 1:
            raise RuntimeError('bedrock timeout')
        return {'done': True}

    worker = MemoryWorker(queue, {'decay': flaky})
    now = at(2024, 6, 1)
    job_id = await queue.enqueue(USER, 'decay', scheduled_for=now)

    await worker.process_batch(now=now)
    assert (await queue.get(job_id)).status == JOB_PROCESSING

    early = await worker.process_batch(now=now + timedelta(seconds=60))
    assert (early['released'], early['fetched']) == (0, 0)

    later = now + timedelta(seconds=app_config.queue.claim_timeout_seconds + 1)
    batch = await worker.process_batch(now=later)

    assert batch['released'] == 1
    assert batch['completed'] == 1
    assert attempts == [1, 2]
    stored = await queue.get(job_id)
    assert stored.status == JOB_COMPLETED
    assert stored.last_error == 'Claim expired'
