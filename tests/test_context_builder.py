from conftest import USER, at
from temporal_memory.models.core import (Behavior, CategorySummary, Entity, EntityQuality, Entry, Fact, Identity, KeyPerson, Pattern,
                                         Relationship)
from temporal_memory.services.context_builder import (TRUNCATION_NOTE, build_compact_document, build_document, build_structured_context,
                                                      fit_section, order_entities)
from temporal_memory.services.knowledge_graph import KnowledgeGraph


def entity(entity_id, name, entity_type='person', importance=0.5, **kwargs):
    return Entity(id=entity_id, user_id=USER, name=name, entity_type=entity_type, importance_score=importance, **kwargs)


def sample_graph(entity_count=3):
    people = [entity(f'p{i}', f'Person {i}', importance=0.9 - i * 0.01, summary=f'Summary of person {i}') for i in range(entity_count)]
    sarah = entity('sarah', 'Sarah', importance=0.2, relationship='friend', summary='Climbing partner', sentiment_average=0.6)
    acme = entity('acme', 'Acme', entity_type='organization', importance=0.4)
    return KnowledgeGraph(
        user_id=USER,
        identity=Identity(name='Alex', role='Designer', goals=['Run a marathon'], key_people=[KeyPerson('Mia', 'sister')]),
        entities=[*people, sarah, acme],
        facts_by_entity={'sarah': [Fact(id='f1', user_id=USER, entity_id='sarah', predicate='works_at', object_text='Acme')]},
        relationships=[Relationship(id='r1', user_id=USER, source_entity_id='sarah', target_entity_id='acme', relationship_type='works_at',
                                    strength=0.9)],
        behaviors=[Behavior(id='b1', user_id=USER, predicate='trusts_opinion_of', entity_name='Sarah', topic='career', confidence=0.8)],
        qualities=[EntityQuality(id='q1', user_id=USER, entity_id='sarah', entity_name='Sarah', predicate='supports', object='fitness')],
        patterns=[Pattern(id='pt1', user_id=USER, pattern_type='routine', description='Writes at night', confidence=0.75)],
        category_summaries=[CategorySummary(user_id=USER, category='health', summary='Training for a marathon.')],
        entries=[Entry(id='e1', user_id=USER, category='health', title='Long run', created_at=at(2024, 5, 4))],
        total_load_ms=12)


def test_document_has_sections_in_order():
    document = build_document(sample_graph())

    headings = [line for line in document.splitlines() if line.startswith('## ')]
    assert headings == ['## Identity', '## Key People', '## People & Things', '## Behavioral Profile', '## Observed Patterns',
                        '## Life Areas', '## Recent Activity']
    assert document.startswith('# Memory Document: Alex')
    assert '- **Mia**: sister' in document
    assert '### Persons' in document
    assert '### Organizations' in document
    assert '**Sarah** (friend) (+)' in document
    assert '  - works at: Acme' in document
    assert '- trusts opinion of: Sarah (career)' in document
    assert '**How Others Support Them:**' in document
    assert '- Writes at night (75% confidence)' in document
    assert '- [May 04] Long run [health]' in document
    assert document.rstrip().endswith('- Loaded in 12ms')


def test_empty_sections_are_omitted():
    document = build_document(KnowledgeGraph(user_id=USER))

    assert document.startswith('# Memory Document: User')
    assert '## Identity' not in document
    assert '## Key People' not in document
    assert '*Memory Summary:*' in document


def test_focus_entity_is_listed_first():
    graph = sample_graph()

    assert order_entities(graph.entities, 'sar', 2)[0].name == 'Sarah'
    assert order_entities(graph.entities, None, 1)[0].name == 'Person 0'

    document = build_document(graph, focus='Sarah')
    assert document.index('**Sarah**') < document.index('**Person 0**')


def test_document_never_exceeds_budget_and_keeps_footer():
    graph = sample_graph(entity_count=40)
    full = build_document(graph)

    for budget in (400, 900, 2000, len(full) - 1):
        document = build_document(graph, max_chars=budget)
        assert len(document) <= budget
        assert '*Memory Summary:*' in document
        assert document.startswith('# Memory Document: Alex')

    assert TRUNCATION_NOTE in build_document(graph, max_chars=2000)
    assert build_document(graph, max_chars=len(full)) == full


def test_partial_graph_names_unavailable_sections():
    graph = sample_graph()
    graph.errors = ['patterns']

    assert '- Unavailable sections: patterns' in build_document(graph)


def test_fit_section_keeps_leading_lines():
    lines = ['## Heading', 'first line', 'second line', 'third line']

    assert fit_section(lines, 1000) == lines
    fitted = fit_section(lines, 40)
    assert fitted[0] == '## Heading'
    assert fitted[-1] == TRUNCATION_NOTE
    assert len('\n'.join(fitted)) <= 40
    assert fit_section(lines, 5) == []


def test_compact_document():
    document = build_compact_document(sample_graph(), max_entities=2)

    assert document.startswith("# Alex's Memory")
    assert 'Key people: Mia (sister)' in document
    assert '## Key Entities' in document
    assert document.count('**Person') == 2


def test_structured_context_is_json_ready():
    context = build_structured_context(sample_graph(), focus='Sarah')

    assert set(context) == {'user_id', 'identity', 'entities', 'relationships', 'patterns', 'life_areas', 'recent_entries', 'meta'}
    assert context['entities'][0]['name'] == 'Sarah'
    assert context['entities'][0]['facts'] == [{'predicate': 'works_at', 'object': 'Acme', 'confidence': 0.7, 'valid_from': None}]
    assert context['relationships'] == [{'source': 'Sarah', 'target': 'Acme', 'type': 'works_at', 'strength': 0.9}]
    assert context['life_areas'] == {'health': 'Training for a marathon.'}
    assert context['meta']['fact_count'] == 1
    assert context['identity']['key_people'] == [{'name': 'Mia', 'relationship': 'sister'}]
