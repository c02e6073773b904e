from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from conftest import USER, at
from temporal_memory.services.evolution_detector import (EvolutionDetector, EvolutionDetectorError, EvolutionReport, Period,
                                                         format_for_context, get_time_periods)
from temporal_memory.utils.timestamp_utils import to_iso

NOW = at(2024, 6, 15)


@pytest.fixture
def detector(db, fact_store, app_config):
    return EvolutionDetector(db, fact_store, app_config.contradiction)


async def add_entry(db, created_at, sentiment, category='work', entity_ids=()):
    entry_id = str(uuid4())
    await db.execute('INSERT INTO entries (id, user_id, category, sentiment, title, created_at) VALUES (?, ?, ?, ?, ?, ?)',
                     (entry_id, USER, category, sentiment, 'Entry', to_iso(created_at)))
    for entity_id in entity_ids:
        await db.execute('INSERT INTO entry_entities (entry_id, entity_id) VALUES (?, ?)', (entry_id, entity_id))
    return entry_id


def test_weekly_windows_start_on_monday():
    before, after = get_time_periods('weekly', at(2024, 6, 13))

    assert before.start == datetime(2024, 6, 3, tzinfo=timezone.utc)
    assert before.end == after.start == datetime(2024, 6, 10, tzinfo=timezone.utc)
    assert after.end == at(2024, 6, 13)


def test_monthly_windows_cross_year_boundary():
    before, after = get_time_periods('monthly', at(2024, 2, 15))

    assert before.start == datetime(2023, 11, 1, tzinfo=timezone.utc)
    assert before.end == datetime(2023, 12, 1, tzinfo=timezone.utc)
    assert before.label == 'November 2023'
    assert after.start == datetime(2024, 2, 1, tzinfo=timezone.utc)


def test_quarterly_windows():
    before, after = get_time_periods('quarterly', at(2024, 5, 20))

    assert (before.start, before.end) == (datetime(2023, 7, 1, tzinfo=timezone.utc), datetime(2023, 10, 1, tzinfo=timezone.utc))
    assert before.label == 'Q3 2023'
    assert (after.start, after.end) == (datetime(2024, 1, 1, tzinfo=timezone.utc), datetime(2024, 4, 1, tzinfo=timezone.utc))


def test_unknown_scope_is_rejected():
    with pytest.raises(EvolutionDetectorError):
        get_time_periods('yearly', NOW)


@pytest.mark.asyncio
async def test_changed_fact_across_windows_is_a_contradiction(detector, fact_store, make_entity):
    sarah = await make_entity('Sarah', entity_type='person')
    await fact_store.create_fact(USER, sarah.id, 'works_at', 'Acme', confidence=0.9, valid_from=at(2024, 3, 10))
    await fact_store.create_fact(USER, sarah.id, 'works_at', 'Globex', confidence=0.9, valid_from=at(2024, 6, 10))

    report = await detector.detect(USER, 'monthly', now=NOW)

    [contradiction] = report.contradictions
    assert contradiction.entity_name == 'Sarah'
    assert (contradiction.before_value, contradiction.after_value) == ('Acme', 'Globex')
    assert contradiction.confidence == pytest.approx(0.9)
    assert contradiction.summary == 'Your works at for Sarah changed from "Acme" to "Globex"'

    block = format_for_context(report)
    assert block.startswith('<user_evolutions>\nFACT CHANGES:')
    assert '(March 2024: "Acme" -> this month: "Globex")' in block
    assert block.endswith('</user_evolutions>')


@pytest.mark.asyncio
async def test_same_day_restatement_is_not_a_contradiction(detector, fact_store, make_entity):
    sarah = await make_entity('Sarah')
    await fact_store.create_fact(USER, sarah.id, 'lives_in', 'Boston', confidence=0.9, valid_from=at(2024, 6, 10, hour=8))
    await fact_store.create_fact(USER, sarah.id, 'lives_in', 'Cambridge', confidence=0.9, valid_from=at(2024, 6, 10, hour=16))

    before = Period(at(2024, 6, 1), at(2024, 6, 10), 'earlier')
    after = Period(at(2024, 6, 10), NOW, 'later')

    report = await detector.detect_between(USER, before, after)

    assert report.contradictions == []


@pytest.mark.asyncio
async def test_low_confidence_change_is_not_reported(detector, fact_store, make_entity):
    sarah = await make_entity('Sarah')
    await fact_store.create_fact(USER, sarah.id, 'works_at', 'Acme', confidence=0.7, valid_from=at(2024, 3, 10))
    await fact_store.create_fact(USER, sarah.id, 'works_at', 'Globex', confidence=0.9, valid_from=at(2024, 6, 10))

    report = await detector.detect(USER, 'monthly', now=NOW)

    assert report.contradictions == []


@pytest.mark.asyncio
async def test_sentiment_and_category_shifts(detector, db, make_entity):
    boss = await make_entity('Dana', mention_count=3)
    rarely = await make_entity('Eli', mention_count=2)
    ids = (boss.id, rarely.id)
    await add_entry(db, at(2024, 3, 5), 0.6, entity_ids=ids)
    await add_entry(db, at(2024, 3, 20), 0.4, entity_ids=ids)
    await add_entry(db, at(2024, 6, 3), -0.2, entity_ids=ids)
    await add_entry(db, at(2024, 6, 12), -0.4, entity_ids=ids)

    report = await detector.detect(USER, 'monthly', now=NOW)

    [shift] = report.sentiment_shifts
    assert shift.entity_name == 'Dana'
    assert shift.trend == 'declining'
    assert shift.delta == pytest.approx(-0.8)
    assert shift.summary == 'Your sentiment about Dana has declined by 80%'
    [category] = report.category_shifts
    assert category.category == 'work'
    assert category.summary == 'Your work entries have become more negative'
    assert report.to_dict()['summaries'][0] == category.summary


@pytest.mark.asyncio
async def test_category_needs_enough_entries_in_both_windows(detector, db):
    await add_entry(db, at(2024, 3, 5), 0.8, category='health')
    await add_entry(db, at(2024, 6, 3), -0.8, category='health')
    await add_entry(db, at(2024, 6, 4), -0.8, category='health')

    report = await detector.detect(USER, 'monthly', now=NOW)

    assert report.category_shifts == []
    assert report.is_empty
    assert format_for_context(report) is None


@pytest.mark.asyncio
async def test_entity_scoped_detection(detector, fact_store, make_entity):
    sarah = await make_entity('Sarah')
    await fact_store.create_fact(USER, sarah.id, 'works_at', 'Acme', confidence=0.9, valid_from=NOW - timedelta(days=90))
    await fact_store.create_fact(USER, sarah.id, 'works_at', 'Globex', confidence=0.9, valid_from=NOW - timedelta(days=5))

    report = await detector.detect_for_entity(USER, 'sarah', now=NOW)
    assert [c.after_value for c in report.contradictions] == ['Globex']

    missing = await detector.detect_for_entity(USER, 'Nobody', now=NOW)
    assert isinstance(missing, EvolutionReport)
    assert missing.is_empty
