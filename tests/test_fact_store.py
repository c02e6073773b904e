import pytest

from conftest import USER, at
from temporal_memory.services.fact_store import REASON_SUPERSEDED, FactStoreError


@pytest.mark.asyncio
async def test_single_value_predicate_supersedes_current_fact(fact_store, make_entity):
    sarah = await make_entity('Sarah', entity_type='person')

    acme = await fact_store.create_fact(USER, sarah.id, 'works_at', 'Acme', confidence=0.9, valid_from=at(2024, 1, 10))
    globex = await fact_store.create_fact(USER, sarah.id, 'works_at', 'Globex', confidence=0.9, valid_from=at(2024, 6, 1))

    current = await fact_store.get_current_facts(sarah.id)
    assert [f.object_text for f in current] == ['Globex']
    assert globex.version == 2
    assert globex.previous_version_id == acme.id

    history = await fact_store.get_fact_history(sarah.id, 'works_at')
    assert [f.object_text for f in history] == ['Globex', 'Acme']
    old = history[1]
    assert not old.is_current
    assert old.valid_to == at(2024, 6, 1)
    assert old.invalidation_reason == REASON_SUPERSEDED
    assert old.invalidated_by == globex.id


@pytest.mark.asyncio
async def test_point_in_time_queries_follow_validity_intervals(fact_store, make_entity):
    sarah = await make_entity('Sarah')
    await fact_store.create_fact(USER, sarah.id, 'works_at', 'Acme', valid_from=at(2024, 1, 10))
    await fact_store.create_fact(USER, sarah.id, 'works_at', 'Globex', valid_from=at(2024, 6, 1))

    assert await fact_store.get_facts_at_time(sarah.id, at(2023, 12, 1)) == []
    assert [f.object_text for f in await fact_store.get_facts_at_time(sarah.id, at(2024, 3, 1))] == ['Acme']
    # valid_to is exclusive
    assert [f.object_text for f in await fact_store.get_facts_at_time(sarah.id, at(2024, 6, 1))] == ['Globex']


@pytest.mark.asyncio
async def test_identical_fact_is_reinforced_not_duplicated(fact_store, make_entity):
    sarah = await make_entity('Sarah')
    first = await fact_store.create_fact(USER, sarah.id, 'works_at', 'Acme', confidence=0.6)
    second = await fact_store.create_fact(USER, sarah.id, 'works_at', '  acme ', confidence=0.9)

    assert second.id == first.id
    assert second.mention_count == 2
    assert second.confidence == pytest.approx(0.9)
    assert len(await fact_store.get_fact_history(sarah.id, 'works_at')) == 1


@pytest.mark.asyncio
async def test_multi_value_predicate_keeps_several_current_facts(fact_store, make_entity):
    sarah = await make_entity('Sarah')
    await fact_store.create_fact(USER, sarah.id, 'likes', 'climbing')
    await fact_store.create_fact(USER, sarah.id, 'likes', 'jazz')

    current = await fact_store.get_current_facts(sarah.id)
    assert sorted(f.object_text for f in current) == ['climbing', 'jazz']
    assert all(f.is_current for f in current)


@pytest.mark.asyncio
async def test_fact_requires_predicate_and_object(fact_store, make_entity):
    sarah = await make_entity('Sarah')
    with pytest.raises(FactStoreError):
        await fact_store.create_fact(USER, sarah.id, 'works_at', '   ')
    with pytest.raises(FactStoreError):
        await fact_store.create_fact(USER, sarah.id, '', 'Acme')


@pytest.mark.asyncio
async def test_invalidate_fact_never_ends_before_it_starts(fact_store, make_entity):
    sarah = await make_entity('Sarah')
    fact = await fact_store.create_fact(USER, sarah.id, 'lives_in', 'Lisbon', valid_from=at(2024, 5, 1))

    closed = await fact_store.invalidate_fact(fact.id, 'user correction', valid_to=at(2024, 1, 1))

    assert not closed.is_current
    assert closed.valid_to == at(2024, 5, 1)
    assert closed.invalidation_reason == 'user correction'
    assert await fact_store.get_current_facts(sarah.id) == []


@pytest.mark.asyncio
async def test_invalidate_unknown_fact_raises(fact_store):
    with pytest.raises(FactStoreError):
        await fact_store.invalidate_fact('missing', 'gone')


@pytest.mark.asyncio
async def test_compare_knowledge_reports_changed_added_and_removed(fact_store, make_entity):
    sarah = await make_entity('Sarah')
    await fact_store.create_fact(USER, sarah.id, 'works_at', 'Acme', valid_from=at(2024, 1, 1))
    hobby = await fact_store.create_fact(USER, sarah.id, 'likes', 'chess', valid_from=at(2024, 1, 1))
    await fact_store.create_fact(USER, sarah.id, 'works_at', 'Globex', valid_from=at(2024, 6, 1))
    await fact_store.create_fact(USER, sarah.id, 'lives_in', 'Porto', valid_from=at(2024, 6, 1))
    await fact_store.invalidate_fact(hobby.id, 'no longer true', valid_to=at(2024, 5, 1))

    diff = await fact_store.compare_knowledge_at_times(sarah.id, at(2024, 3, 1), at(2024, 7, 1))

    assert [(c.predicate, c.before.object_text, c.after.object_text) for c in diff.changed] == [('works_at', 'Acme', 'Globex')]
    assert [f.object_text for f in diff.added] == ['Porto']
    assert [f.object_text for f in diff.removed] == ['chess']
    assert not diff.is_empty


@pytest.mark.asyncio
async def test_entity_timeline_is_chronological(fact_store, make_entity):
    sarah = await make_entity('Sarah')
    await fact_store.create_fact(USER, sarah.id, 'works_at', 'Acme', valid_from=at(2024, 1, 10))
    await fact_store.create_fact(USER, sarah.id, 'works_at', 'Globex', valid_from=at(2024, 6, 1))

    timeline = await fact_store.get_entity_timeline(sarah.id)

    assert [(e.event, e.fact.object_text) for e in timeline] == [
        ('asserted', 'Acme'),
        ('invalidated', 'Acme'),
        ('asserted', 'Globex'),
    ]
    assert timeline == sorted(timeline, key=lambda e: e.at)


@pytest.mark.asyncio
async def test_facts_observed_between_filters_by_window_and_confidence(fact_store, make_entity):
    sarah = await make_entity('Sarah')
    await fact_store.create_fact(USER, sarah.id, 'likes', 'tea', confidence=0.9, valid_from=at(2024, 2, 1))
    await fact_store.create_fact(USER, sarah.id, 'likes', 'coffee', confidence=0.3, valid_from=at(2024, 2, 2))
    await fact_store.create_fact(USER, sarah.id, 'likes', 'cocoa', confidence=0.9, valid_from=at(2024, 4, 1))

    observed = await fact_store.get_facts_observed_between(USER, at(2024, 1, 1), at(2024, 3, 1), min_confidence=0.6)

    assert [(f.object_text, name) for f, name in observed] == [('tea', 'Sarah')]
