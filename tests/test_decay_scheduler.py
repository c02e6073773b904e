from datetime import timedelta

import pytest

from conftest import OTHER_USER, USER, at
from temporal_memory.models.core import RUN_COMPLETED, RUN_PARTIAL, STATUS_ARCHIVED, STATUS_INACTIVE
from temporal_memory.services.decay_scheduler import DecayScheduler, decay_window, decayed_score
from temporal_memory.services.entity_store import EntityStore
from temporal_memory.services.graph_store import GraphStore
from temporal_memory.services.job_queue import JobQueue
from temporal_memory.utils.database import Database, DatabaseError

NOW = at(2024, 3, 1)


@pytest.fixture
def scheduler(db, job_queue, app_config, vector_index, changes):

    async def on_change(user_id):
        changes.append(user_id)

    return DecayScheduler(db, job_queue, app_config.decay, vector_index=vector_index, on_change=on_change)


def test_decay_window_starts_when_item_turns_stale():
    assert decay_window(at(2024, 2, 1), None, 30, NOW) == (0, None)
    days, mark = decay_window(at(2024, 1, 1), None, 30, NOW)
    assert days == 30
    assert mark == NOW


def test_decay_window_resumes_from_last_mark():
    days, mark = decay_window(at(2024, 1, 1), NOW, 30, NOW + timedelta(days=2, hours=3))
    assert days == 2
    assert mark == NOW + timedelta(days=2)


def test_decayed_score_respects_floor():
    assert decayed_score(0.5, 1, 0.98, 0.1) == pytest.approx(0.49)
    assert decayed_score(0.11, 365, 0.98, 0.1) == 0.1
    assert decayed_score(0.05, 10, 0.98, 0.1) == 0.05


@pytest.mark.asyncio
async def test_decay_lowers_stale_entities_once_per_day(scheduler, entities, make_entity, changes):
    stale = await make_entity('Old friend', now=at(2024, 1, 1))
    fresh = await make_entity('New friend', now=NOW - timedelta(days=3))

    report = await scheduler.run_decay(now=NOW)

    assert report.updated == 1
    assert report.status == RUN_COMPLETED
    first = (await entities.get(stale.id)).importance_score
    assert first == pytest.approx(0.5 * 0.98**30)
    assert (await entities.get(fresh.id)).importance_score == pytest.approx(0.5)
    assert changes == [USER]

    again = await scheduler.run_decay(now=NOW + timedelta(hours=6))
    assert again.updated == 0
    assert (await entities.get(stale.id)).importance_score == pytest.approx(first)

    await scheduler.run_decay(now=NOW + timedelta(days=1))
    assert (await entities.get(stale.id)).importance_score == pytest.approx(first * 0.98)


@pytest.mark.asyncio
async def test_decay_never_goes_below_floor(scheduler, entities, make_entity):
    faded = await make_entity('Faded', now=at(2022, 1, 1), importance_value=0.12)

    await scheduler.run_decay(now=NOW)

    assert (await entities.get(faded.id)).importance_score == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_reinforcement_restarts_decay(scheduler, db, entities, make_entity):
    entity = await make_entity('Coworker', now=at(2024, 1, 1))
    await scheduler.run_decay(now=NOW)
    async with db.transaction() as conn:
        await entities.reinforce(conn, await entities.get(entity.id), NOW)

    report = await scheduler.run_decay(now=NOW + timedelta(days=10))

    assert report.updated == 0
    assert (await entities.get(entity.id)).last_decayed_at is None


@pytest.mark.asyncio
async def test_decay_can_be_limited_to_one_user(scheduler, entities, make_entity):
    mine = await make_entity('Mine', now=at(2024, 1, 1))
    theirs = await make_entity('Theirs', user_id=OTHER_USER, now=at(2024, 1, 1))

    await scheduler.run_decay(USER, now=NOW)

    assert (await entities.get(mine.id)).importance_score < 0.5
    assert (await entities.get(theirs.id)).importance_score == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_stale_behaviors_decay_and_deactivate_below_floor(scheduler, db):
    graph = GraphStore(db)
    weak = await graph.record_behavior(USER, 'avoids', entity_name='Gym', confidence=0.5, now=NOW - timedelta(days=200))
    strong = await graph.record_behavior(USER, 'trusts_opinion_of', entity_name='Mia', confidence=0.9, now=NOW - timedelta(days=70))

    report = await scheduler.run_decay(now=NOW)

    assert report.deactivated == 1
    rows = {row['id']: row for row in await db.fetch_all('SELECT id, status, confidence FROM behaviors')}
    assert rows[weak.id]['status'] == STATUS_INACTIVE
    assert rows[strong.id]['status'] == 'active'
    assert rows[strong.id]['confidence'] == pytest.approx(0.9 * 0.98**10)


@pytest.mark.asyncio
async def test_archival_retires_unimportant_and_expired_entities(scheduler, entities, make_entity, vector_index, changes):
    forgotten = await make_entity('Forgotten', now=NOW - timedelta(days=200), importance_value=0.15)
    important = await make_entity('Important', now=NOW - timedelta(days=200), importance_value=0.9)
    expired = await make_entity('Concert', now=NOW - timedelta(days=2), expires_at=NOW - timedelta(days=1))
    await vector_index.index_entity(forgotten.id, USER, 'Forgotten', 'other', [1.0])

    report = await scheduler.run_archival(now=NOW)

    assert report.archived == 2
    assert (await entities.get(forgotten.id)).status == STATUS_ARCHIVED
    assert (await entities.get(expired.id)).status == STATUS_ARCHIVED
    assert (await entities.get(important.id)).status == 'active'
    assert vector_index.documents[forgotten.id]['status'] == STATUS_ARCHIVED
    assert changes == [USER]


@pytest.mark.asyncio
async def test_maintenance_runs_both_passes_and_records_history(scheduler, job_queue, make_entity):
    await make_entity('Old', now=at(2024, 1, 1))

    result = await scheduler.run_maintenance(now=NOW)

    assert result['decay']['updated'] == 1
    assert result['archival']['archived'] == 0
    assert {run.run_type for run in await job_queue.list_runs()} == {'decay', 'archival'}


class FlakyDatabase(Database):
    """Fails the decay write for one entity."""

    def __init__(self, config, failing_id):
        super().__init__(config)
        self.failing_id = failing_id

    async def execute(self, sql, params=()):
        params = tuple(params)
        if sql.startswith('UPDATE entities SET importance_score') and params[2] == self.failing_id:
            raise DatabaseError('disk I/O error')
        return await super().execute(sql, params)


@pytest.mark.asyncio
async def test_row_failure_is_skipped_and_pass_reported_partial(app_config, db, make_entity):
    good = await make_entity('Good', now=at(2024, 1, 1))
    bad = await make_entity('Bad', now=at(2024, 1, 1))
    flaky = FlakyDatabase(app_config.database, bad.id)
    queue = JobQueue(flaky, app_config.queue)
    scheduler = DecayScheduler(flaky, queue, app_config.decay)

    report = await scheduler.run_decay(now=NOW)

    assert report.status == RUN_PARTIAL
    assert report.updated == 1
    assert report.failed == 1
    assert bad.id in report.errors[0]
    store = EntityStore(db)
    assert (await store.get(good.id)).importance_score < 0.5
    assert (await store.get(bad.id)).importance_score == pytest.approx(0.5)
    [run] = await queue.list_runs('decay')
    assert run.status == RUN_PARTIAL
