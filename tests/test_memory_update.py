from datetime import timedelta

import pytest

from conftest import USER, at, tool_call
from temporal_memory.models.core import STATUS_ARCHIVED, STATUS_SUPERSEDED, CandidateFact
from temporal_memory.models.decisions import (NO_CLEAR_ACTION, AddDecision, DeleteDecision, NoOpDecision, UpdateDecision,
                                              UpdateStrategy, decode_tool_call)
from temporal_memory.services.fact_store import REASON_ENTITY_SUPERSEDED
from temporal_memory.services.graph_store import GraphStore
from temporal_memory.services.memory_update import REDACTED
from temporal_memory.services.operation_log import list_operations
from temporal_memory.utils.database import DatabaseError


def candidate(content, **kwargs):
    return CandidateFact(content=content, **kwargs)


def day(n):
    return at(2024, 1, 1) + timedelta(days=n)


def test_decode_missing_tool_call_is_noop():
    decision = decode_tool_call(None, {'m1'})
    assert decision == NoOpDecision(reasoning=NO_CLEAR_ACTION)


def test_decode_add_falls_back_to_candidate_content():
    decision = decode_tool_call(tool_call('add_memory', memory_type='preference', reasoning='new'), set(), 'Likes tea')
    assert decision == AddDecision(content='Likes tea', memory_type='preference', reasoning='new')


def test_decode_add_with_unknown_memory_type_defaults_to_fact():
    decision = decode_tool_call(tool_call('add_memory', content='Runs daily', memory_type='hobby'), set())
    assert isinstance(decision, AddDecision)
    assert decision.memory_type == 'fact'


def test_decode_update_requires_known_id_and_strategy():
    known = {'m1'}
    update = decode_tool_call(tool_call('update_memory', memory_id='m1', new_content='x', merge_strategy='append'), known)
    assert update == UpdateDecision(memory_id='m1', new_content='x', strategy=UpdateStrategy.APPEND, reasoning='')

    unknown = decode_tool_call(tool_call('update_memory', memory_id='m9', new_content='x', merge_strategy='append'), known)
    assert isinstance(unknown, NoOpDecision)
    assert unknown.reasoning.startswith(NO_CLEAR_ACTION)

    bad_strategy = decode_tool_call(tool_call('update_memory', memory_id='m1', new_content='x', merge_strategy='merge'), known)
    assert isinstance(bad_strategy, NoOpDecision)


def test_decode_delete_is_soft_unless_explicitly_hard():
    soft = decode_tool_call(tool_call('delete_memory', memory_id='m1', hard_delete='yes'), {'m1'})
    hard = decode_tool_call(tool_call('delete_memory', memory_id='m1', hard_delete=True), {'m1'})
    assert soft == DeleteDecision(memory_id='m1', hard_delete=False, reasoning='')
    assert hard.hard_delete is True


def test_decode_noop_drops_unknown_existing_id_and_unknown_tools():
    noop = decode_tool_call(tool_call('no_operation', existing_memory_id='m9', reasoning='dup'), {'m1'})
    assert noop == NoOpDecision(reasoning='dup', existing_memory_id=None)
    other = decode_tool_call(tool_call('search_web'), {'m1'})
    assert isinstance(other, NoOpDecision)


@pytest.mark.asyncio
async def test_add_creates_entity_fact_index_entry_and_audit(engine, entities, fact_store, llm, vector_index, db, changes):
    llm.tool_calls.append(tool_call('add_memory', content='Sarah works at Acme', memory_type='fact', reasoning='New person'))

    result = await engine.process_candidate(
        USER, candidate('Sarah works at Acme', entity_name='Sarah', entity_type='person', predicate='works_at', object_text='Acme',
                        sentiment=0.6))

    assert result.operation == 'ADD'
    assert not result.merged
    sarah = await entities.get(result.entity_id)
    assert sarah.name == 'Sarah'
    assert sarah.summary == 'Sarah works at Acme'
    assert sarah.sentiment_average == pytest.approx(0.6)
    assert sarah.embedding is not None
    assert [f.object_text for f in await fact_store.get_current_facts(sarah.id)] == ['Acme']
    assert vector_index.documents[sarah.id]['status'] == 'active'
    assert changes == [USER]

    operations = await list_operations(db, USER)
    assert [op.operation for op in operations] == ['ADD']
    assert operations[0].id == result.operation_id
    assert operations[0].reasoning == 'New person'


@pytest.mark.asyncio
async def test_add_with_existing_name_merges_instead_of_duplicating(engine, entities, llm, make_entity):
    jordan = await make_entity('Jordan', entity_type='person', summary='Jordan is a friend from college')
    llm.tool_calls.append(tool_call('add_memory', content='Jordan moved to Denver'))

    result = await engine.process_candidate(USER, candidate('Jordan moved to Denver', entity_name='jordan'))

    assert result.operation == 'ADD'
    assert result.merged
    assert result.entity_id == jordan.id
    active = [e for e in await entities.list_active(USER) if e.name.lower() == 'jordan']
    assert len(active) == 1
    assert active[0].mention_count == 2
    assert active[0].context_notes[-1] == 'Jordan moved to Denver'


@pytest.mark.asyncio
async def test_exact_name_match_is_offered_first_to_the_model(engine, llm, make_entity):
    jordan = await make_entity('Jordan', summary='Jordan is a friend')
    llm.tool_calls.append(tool_call('no_operation', existing_memory_id=jordan.id, reasoning='Already known'))

    await engine.process_candidate(USER, candidate('Jordan is a friend', entity_name='Jordan'))

    assert f'**ID**: {jordan.id}' in llm.prompts[0]
    assert 'Similarity**: 100.0%' in llm.prompts[0]


@pytest.mark.asyncio
async def test_update_replace_and_append_rewrite_in_place(engine, entities, llm, make_entity):
    sam = await make_entity('Sam', summary='Sam likes coffee')

    llm.tool_calls.append(tool_call('update_memory', memory_id=sam.id, new_content='especially cold brew', merge_strategy='append'))
    appended = await engine.process_candidate(USER, candidate('Sam loves cold brew', entity_name='Sam'))
    assert appended.operation == 'UPDATE'
    assert appended.new_version == 2
    assert (await entities.get(sam.id)).summary == 'Sam likes coffee. especially cold brew'

    llm.tool_calls.append(tool_call('update_memory', memory_id=sam.id, new_content='Sam likes tea', merge_strategy='replace'))
    replaced = await engine.process_candidate(USER, candidate('Sam switched to tea', entity_name='Sam'))
    stored = await entities.get(sam.id)
    assert replaced.entity_id == sam.id
    assert stored.summary == 'Sam likes tea'
    assert stored.version == 3
    assert stored.status == 'active'


@pytest.mark.asyncio
async def test_update_supersede_versions_entity_and_carries_facts(engine, db, entities, fact_store, llm, vector_index, make_entity):
    sarah = await make_entity('Sarah', entity_type='person', summary='Sarah works at Acme')
    bob = await make_entity('Bob', entity_type='person')
    await fact_store.create_fact(USER, sarah.id, 'works_at', 'Acme', valid_from=at(2024, 1, 10))
    await fact_store.create_fact(USER, sarah.id, 'likes', 'climbing', valid_from=at(2024, 1, 10))
    await GraphStore(db).record_co_occurrence(USER, sarah.id, bob.id)
    await engine.index_entity(USER, sarah.id)

    llm.tool_calls.append(
        tool_call('update_memory', memory_id=sarah.id, new_content='Sarah works at Globex', merge_strategy='supersede', reasoning='Job change'))
    result = await engine.process_candidate(
        USER, candidate('Sarah now works at Globex', entity_name='Sarah', predicate='works_at', object_text='Globex',
                        valid_from=at(2024, 6, 1)))

    assert result.operation == 'UPDATE'
    assert result.strategy == 'supersede'
    assert result.existing_memory_id == sarah.id
    assert result.new_version == 2

    old = await entities.get(sarah.id)
    new = await entities.get(result.entity_id)
    assert old.status == STATUS_SUPERSEDED
    assert old.is_historical
    assert old.superseded_by == new.id
    assert new.supersedes_id == old.id
    assert new.version == 2
    assert new.status == 'active'

    current = {f.predicate: f.object_text for f in await fact_store.get_current_facts(new.id)}
    assert current == {'works_at': 'Globex', 'likes': 'climbing'}
    assert await fact_store.get_current_facts(old.id) == []
    old_facts = await fact_store.get_fact_history(old.id, 'works_at')
    assert old_facts[0].invalidation_reason == REASON_ENTITY_SUPERSEDED
    assert [f.object_text for f in await fact_store.get_fact_history(new.id, 'works_at')] == ['Globex', 'Acme']

    edges = await db.fetch_all('SELECT source_entity_id, target_entity_id FROM relationships')
    assert len(edges) == 1
    assert new.id in (edges[0]['source_entity_id'], edges[0]['target_entity_id'])

    assert vector_index.documents[old.id]['status'] == STATUS_SUPERSEDED
    assert vector_index.documents[new.id]['status'] == 'active'


@pytest.mark.asyncio
async def test_delete_archives_by_default(engine, entities, llm, vector_index, make_entity):
    gym = await make_entity('Gym membership')
    await engine.index_entity(USER, gym.id)
    llm.tool_calls.append(tool_call('delete_memory', memory_id=gym.id, reasoning='Cancelled'))

    result = await engine.process_candidate(USER, candidate('I cancelled my gym membership', entity_name='Gym membership'))

    assert result.operation == 'DELETE'
    assert result.hard_delete is False
    assert (await entities.get(gym.id)).status == STATUS_ARCHIVED
    assert vector_index.documents[gym.id]['status'] == STATUS_ARCHIVED


@pytest.mark.asyncio
async def test_hard_delete_removes_row_and_keeps_snapshot_in_audit(engine, db, entities, fact_store, llm, vector_index, make_entity):
    secret = await make_entity('Old flame', summary='Someone from long ago')
    await fact_store.create_fact(USER, secret.id, 'lives_in', 'Paris')
    await engine.index_entity(USER, secret.id)
    llm.tool_calls.append(tool_call('delete_memory', memory_id=secret.id, hard_delete=True, reasoning='User asked to forget'))

    await engine.process_candidate(USER, candidate('Forget about my old flame', entity_name='Old flame'))

    assert await entities.get(secret.id) is None
    assert await fact_store.get_fact_history(secret.id, 'lives_in') == []
    assert secret.id not in vector_index.documents
    [operation] = await list_operations(db, USER, operation='DELETE')
    assert operation.hard_delete is True
    assert operation.deleted_snapshot['summary'] == 'Someone from long ago'


@pytest.mark.asyncio
async def test_noop_with_existing_memory_reinforces_it(engine, entities, llm, make_entity, changes):
    tea = await make_entity('Tea', summary='Likes green tea')
    llm.tool_calls.append(tool_call('no_operation', existing_memory_id=tea.id, reasoning='Same information'))

    result = await engine.process_candidate(USER, candidate('I like green tea', entity_name='Tea'))

    assert result.operation == 'NOOP'
    assert result.existing_memory_id == tea.id
    assert (await entities.get(tea.id)).mention_count == 2
    assert changes == [USER]


@pytest.mark.asyncio
async def test_no_tool_call_records_no_clear_action(engine, db, llm, changes):
    result = await engine.process_candidate(USER, candidate('ok thanks'))

    assert result.operation == 'NOOP'
    assert result.reasoning == NO_CLEAR_ACTION
    assert changes == []
    [operation] = await list_operations(db, USER)
    assert operation.operation == 'NOOP'


@pytest.mark.asyncio
async def test_update_of_memory_outside_candidate_set_is_noop(engine, entities, llm, make_entity):
    other = await make_entity('Unrelated', summary='unchanged')
    llm.tool_calls.append(tool_call('update_memory', memory_id=other.id, new_content='changed', merge_strategy='replace'))

    result = await engine.process_candidate(USER, candidate('Something new'))

    assert result.operation == 'NOOP'
    assert (await entities.get(other.id)).summary == 'unchanged'


@pytest.mark.asyncio
async def test_sensitive_candidate_is_rejected_before_the_model_sees_it(engine, db, entities, llm):
    result = await engine.process_candidate(USER, candidate('My bank password is hunter2!', entity_name='Bank'))

    assert result.rejected
    assert result.operation == 'NOOP'
    assert llm.prompts == []
    assert await entities.list_active(USER) == []
    [operation] = await list_operations(db, USER)
    assert operation.candidate_content == REDACTED
    assert 'hunter2' not in (operation.reasoning or '')


@pytest.mark.asyncio
async def test_payment_card_in_fact_object_is_rejected(engine, llm):
    result = await engine.process_candidate(
        USER, candidate('Card on file', entity_name='Visa', predicate='card_number', object_text='4111 1111 1111 1111'))

    assert result.rejected
    assert llm.prompts == []


@pytest.mark.asyncio
async def test_audit_log_is_append_only(engine, db, llm):
    await engine.process_candidate(USER, candidate('ok'))
    with pytest.raises(DatabaseError):
        await db.execute('DELETE FROM memory_operations')
    with pytest.raises(DatabaseError):
        await db.execute("UPDATE memory_operations SET reasoning = 'edited'")


@pytest.mark.asyncio
async def test_superseded_entity_keeps_one_edge_per_neighbour(engine, db, llm, graph_store, make_entity):
    sarah = await make_entity('Sarah', summary='Sarah works at Acme')
    friends = [await make_entity(name) for name in ('Bob', 'Mia', 'Lee', 'Ana', 'Raj', 'Zoe')]
    for friend in friends:
        await graph_store.record_co_occurrence(USER, sarah.id, friend.id)

    llm.tool_calls.append(tool_call('update_memory', memory_id=sarah.id, new_content='Sarah works at Globex', merge_strategy='supersede'))
    result = await engine.process_candidate(USER, candidate('Sarah now works at Globex', entity_name='Sarah'))

    for friend in friends:
        assert await graph_store.record_co_occurrence(USER, result.entity_id, friend.id) == pytest.approx(0.7)
    edges = await db.fetch_all('SELECT source_entity_id, target_entity_id FROM relationships')
    assert len(edges) == len(friends)
    assert all(edge['source_entity_id'] < edge['target_entity_id'] for edge in edges)


@pytest.mark.asyncio
async def test_job_change_through_decisions_answers_point_in_time_queries(engine, fact_store, llm):
    llm.tool_calls.append(tool_call('add_memory', content='Sarah works at Acme', memory_type='fact'))
    added = await engine.process_candidate(
        USER, candidate('Sarah works at Acme', entity_name='Sarah', entity_type='person', predicate='works_at', object_text='Acme',
                        valid_from=day(1)))

    llm.tool_calls.append(tool_call('update_memory', memory_id=added.entity_id, new_content='Sarah works at Globex',
                                    merge_strategy='replace', reasoning='Job change'))
    changed = await engine.process_candidate(
        USER, candidate('Sarah moved to Globex', entity_name='Sarah', predicate='works_at', object_text='Globex', valid_from=day(40)))

    assert changed.operation == 'UPDATE'
    assert changed.entity_id == added.entity_id
    history = await fact_store.get_fact_history(added.entity_id, 'works_at')
    assert [(f.object_text, f.version) for f in history] == [('Globex', 2), ('Acme', 1)]
    assert history[1].valid_to == day(40)
    assert [f.object_text for f in await fact_store.get_facts_at_time(added.entity_id, day(20))] == ['Acme']
    assert [f.object_text for f in await fact_store.get_facts_at_time(added.entity_id, day(41))] == ['Globex']
