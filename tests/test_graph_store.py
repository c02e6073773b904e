import pytest

from conftest import USER
from temporal_memory.models.core import STATUS_REJECTED, STATUS_SUPERSEDED
from temporal_memory.services.graph_store import canonical_pair
from temporal_memory.utils.database import DatabaseError


def test_canonical_pair_is_order_independent():
    assert canonical_pair('b', 'a') == canonical_pair('a', 'b') == ('a', 'b')


@pytest.mark.asyncio
async def test_co_occurrence_strengthens_one_undirected_edge(graph_store, db, make_entity):
    sarah = await make_entity('Sarah')
    mia = await make_entity('Mia')

    assert await graph_store.record_co_occurrence(USER, sarah.id, mia.id) == pytest.approx(0.6)
    assert await graph_store.record_co_occurrence(USER, mia.id, sarah.id) == pytest.approx(0.7)

    rows = await db.fetch_all('SELECT * FROM relationships')
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_edge_strength_is_capped(graph_store, make_entity):
    sarah = await make_entity('Sarah')
    mia = await make_entity('Mia')

    strength = None
    for _ in range(8):
        strength = await graph_store.record_co_occurrence(USER, sarah.id, mia.id)

    assert strength == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_self_loops_are_ignored(graph_store, db, make_entity):
    sarah = await make_entity('Sarah')

    assert await graph_store.upsert_relationship(USER, sarah.id, sarah.id, 'knows') is None
    assert await db.fetch_all('SELECT * FROM relationships') == []


@pytest.mark.asyncio
async def test_co_occurrences_link_every_pair_once(graph_store, db, make_entity):
    ids = [(await make_entity(name)).id for name in ('A', 'B', 'C')]

    linked = await graph_store.record_co_occurrences(USER, ids + [ids[0]])

    assert linked == 3
    assert len(await db.fetch_all('SELECT * FROM relationships')) == 3


@pytest.mark.asyncio
async def test_typed_relationship_keeps_explicit_strength(graph_store, make_entity):
    sarah = await make_entity('Sarah')
    acme = await make_entity('Acme', entity_type='organization')

    assert await graph_store.upsert_relationship(USER, sarah.id, acme.id, 'works_at', strength=0.9) == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_behavior_reinforcement_boosts_confidence(graph_store):
    first = await graph_store.record_behavior(USER, 'Trusts Opinion Of', entity_name='Mia', topic='career', confidence=0.6)
    again = await graph_store.record_behavior(USER, 'trusts_opinion_of', entity_name='Mia', topic='career', confidence=0.5)

    assert again.id == first.id
    assert first.predicate == 'trusts_opinion_of'
    assert again.reinforcement_count == 2
    assert again.confidence == pytest.approx(0.65)

    other_topic = await graph_store.record_behavior(USER, 'trusts_opinion_of', entity_name='Mia', topic='cooking')
    assert other_topic.id != first.id


@pytest.mark.asyncio
async def test_quality_reinforcement(graph_store):
    first = await graph_store.record_quality(USER, 'supports', 'career', entity_name='Mia', confidence=0.7)
    again = await graph_store.record_quality(USER, 'supports', 'career', entity_name='Mia', confidence=0.9)

    assert again.id == first.id
    assert again.confidence == pytest.approx(0.95)


@pytest.mark.asyncio
async def test_pattern_confirm_reject_and_supersede(graph_store):
    pattern = await graph_store.record_pattern(USER, 'routine', 'Journals on Sunday evenings', confidence=0.6, evidence=['e1'])

    assert await graph_store.confirm_pattern(pattern.id)
    confirmed = await graph_store.get_pattern(pattern.id)
    assert confirmed.user_confirmed
    assert confirmed.confidence == pytest.approx(0.8)

    revised = await graph_store.supersede_pattern(pattern.id, 'Journals on Sunday and Wednesday evenings')
    old = await graph_store.get_pattern(pattern.id)
    assert old.status == STATUS_SUPERSEDED
    assert old.superseded_by == revised.id
    assert revised.evidence == ['e1']

    assert await graph_store.reject_pattern(revised.id)
    assert (await graph_store.get_pattern(revised.id)).status == STATUS_REJECTED
    assert not await graph_store.reject_pattern(revised.id)


@pytest.mark.asyncio
async def test_repointed_co_occurrence_stays_in_canonical_order(graph_store, db, make_entity):
    old, friend, new = sorted([(await make_entity(name)).id for name in ('Sarah', 'Bob', 'Sarah v2')])
    await graph_store.record_co_occurrence(USER, old, friend)

    async with db.transaction() as conn:
        assert await graph_store.repoint_edges(conn, USER, old, new) == 1

    [edge] = await db.fetch_all('SELECT * FROM relationships')
    assert (edge['source_entity_id'], edge['target_entity_id']) == (friend, new)
    assert await graph_store.record_co_occurrence(USER, new, friend) == pytest.approx(0.7)
    assert len(await db.fetch_all('SELECT * FROM relationships')) == 1


@pytest.mark.asyncio
async def test_repoint_merges_into_existing_edge_and_drops_self_loops(graph_store, db, make_entity):
    old, friend, new = sorted([(await make_entity(name)).id for name in ('Sarah', 'Bob', 'Sarah v2')])
    await graph_store.record_co_occurrence(USER, old, friend)
    for _ in range(3):
        await graph_store.record_co_occurrence(USER, friend, new)
    await graph_store.upsert_relationship(USER, old, new, 'mentor_of', strength=0.9)

    async with db.transaction() as conn:
        assert await graph_store.repoint_edges(conn, USER, old, new) == 1

    [edge] = await db.fetch_all('SELECT * FROM relationships')
    assert (edge['source_entity_id'], edge['target_entity_id'], edge['relationship_type']) == (friend, new, 'co_occurs')
    assert edge['strength'] == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_pattern_supersession_is_all_or_nothing(graph_store, db):
    pattern = await graph_store.record_pattern(USER, 'routine', 'Runs on Mondays')
    await db.execute("CREATE TRIGGER block_pattern_status BEFORE UPDATE OF status ON patterns BEGIN SELECT RAISE(ABORT, 'blocked'); END")

    with pytest.raises(DatabaseError):
        await graph_store.supersede_pattern(pattern.id, 'Runs on Mondays and Thursdays')

    [row] = await db.fetch_all('SELECT * FROM patterns')
    assert row['id'] == pattern.id
    assert row['status'] == 'active'
