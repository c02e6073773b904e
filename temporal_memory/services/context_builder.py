"""
Render a loaded KnowledgeGraph into a bounded context document.

The markdown document is assembled from independent sections. When the
whole would exceed `max_chars`, each section keeps its heading and as
many of its lines as still fit, in document order; the footer is always
kept.
"""

from typing import Any, Dict, List, Optional

from ..models.core import Behavior, Entity
from ..utils.config import ContextConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso
from .knowledge_graph import KnowledgeGraph

logger = get_logger(__name__)

TYPE_ORDER = ['person', 'organization', 'project', 'place', 'concept', 'event', 'other']

BEHAVIOR_GROUPS = [
    ('Trust & Reliance', ('trusts_opinion', 'trusts_opinion_of', 'seeks_advice', 'seeks_advice_from', 'relies_on', 'learns_from')),
    ('Emotional Connections', ('inspired_by', 'avoids', 'excited_about', 'struggles_with', 'feels_about', 'conflicted_about')),
    ('Work Relationships', ('collaborates_with', 'competes_with')),
]

FACTS_PER_ENTITY = 5
RELATIONS_PER_ENTITY = 3
ITEMS_PER_GROUP = 5
SENTIMENT_MARK_THRESHOLD = 0.3
TRUNCATION_NOTE = '*(truncated)*'


def _label(value: str) -> str:
    return value.replace('_', ' ')


def _title(value: str) -> str:
    text = _label(value)
    return text[:1].upper() + text[1:]


def _matches_focus(entity: Entity, focus: Optional[str]) -> bool:
    return bool(focus) and focus.lower() in entity.name.lower()


def order_entities(entities: List[Entity], focus: Optional[str], limit: int) -> List[Entity]:
    """Focus matches first, then by importance; cut to `limit`."""
    ranked = sorted(entities, key=lambda e: (not _matches_focus(e, focus), -e.importance_score, -e.mention_count))
    return ranked[:limit]


def _header(graph: KnowledgeGraph) -> List[str]:
    name = graph.identity.name or 'User'
    return [
        f'# Memory Document: {name}', '',
        f'*This document contains everything known about {name}. Use it to provide personalized, contextually aware responses.*'
    ]


def _identity_section(graph: KnowledgeGraph) -> List[str]:
    identity = graph.identity
    lines = ['## Identity']
    if identity.name:
        lines.append(f'**Name:** {identity.name}')
    if identity.role:
        lines.append(f'**Role:** {identity.role}')
    if identity.self_description:
        lines.append(f'**Self-description:** {identity.self_description}')
    if identity.goals:
        lines.append(f'**Goals:** {", ".join(identity.goals)}')
    if identity.life_context:
        lines.append(f'**Current life context:** {", ".join(identity.life_context)}')
    if identity.boundaries:
        lines.append(f'**Boundaries (topics to avoid):** {", ".join(identity.boundaries)}')
    if identity.custom_instructions:
        lines.append(f'**Communication preferences:** {identity.custom_instructions}')
    return lines if len(lines) > 1 else []


def _key_people_section(graph: KnowledgeGraph) -> List[str]:
    people = graph.identity.key_people
    if not people:
        return []
    lines = ['## Key People', '*These are the most important people in their life:*', '']
    for person in people:
        lines.append(f'- **{person.name}**: {person.relationship}' if person.relationship else f'- **{person.name}**')
    return lines


def _entity_lines(graph: KnowledgeGraph, entity: Entity) -> List[str]:
    header = f'**{entity.name}**'
    if entity.relationship:
        header += f' ({entity.relationship})'
    if abs(entity.sentiment_average) > SENTIMENT_MARK_THRESHOLD:
        header += ' (+)' if entity.sentiment_average > 0 else ' (-)'
    lines = [header]
    if entity.summary:
        lines.append(f'  {entity.summary}')
    for fact in graph.facts_by_entity.get(entity.id, [])[:FACTS_PER_ENTITY]:
        lines.append(f'  - {_label(fact.predicate)}: {fact.object_text}')
    for behavior in graph.behaviors_by_entity.get(entity.id, [])[:RELATIONS_PER_ENTITY]:
        topic = f' (re: {behavior.topic})' if behavior.topic else ''
        lines.append(f'  - User {_label(behavior.predicate)} them{topic}')
    for quality in graph.qualities_by_entity.get(entity.id, [])[:RELATIONS_PER_ENTITY]:
        lines.append(f'  - They {_label(quality.predicate)}: {quality.object}')
    lines.append('')
    return lines


def _entities_section(graph: KnowledgeGraph, focus: Optional[str], max_entities: int) -> List[str]:
    entities = order_entities(graph.entities, focus, max_entities)
    if not entities:
        return []

    by_type: Dict[str, List[Entity]] = {}
    for entity in entities:
        entity_type = entity.entity_type if entity.entity_type in TYPE_ORDER else 'other'
        by_type.setdefault(entity_type, []).append(entity)

    lines = ['## People & Things']
    for entity_type in TYPE_ORDER:
        group = by_type.get(entity_type)
        if not group:
            continue
        lines.append('')
        lines.append(f'### {_title(entity_type)}s')
        for entity in group:
            lines.extend(_entity_lines(graph, entity))
    return lines


def _behavior_target(behavior: Behavior) -> str:
    return behavior.entity_name or behavior.topic or 'something'


def _behavioral_section(graph: KnowledgeGraph, max_behaviors: int) -> List[str]:
    behaviors = graph.behaviors[:max_behaviors]
    qualities = graph.qualities[:max_behaviors]
    if not behaviors and not qualities:
        return []

    lines = ['## Behavioral Profile', '*How this person relates to people and things in their life:*', '']
    for title, predicates in BEHAVIOR_GROUPS:
        group = [b for b in behaviors if b.predicate in predicates]
        if not group:
            continue
        lines.append(f'**{title}:**')
        for behavior in group[:ITEMS_PER_GROUP]:
            detail = ''
            if title == 'Trust & Reliance' and behavior.topic:
                detail = f' ({behavior.topic})'
            elif title == 'Emotional Connections' and behavior.sentiment:
                detail = ' (+)' if behavior.sentiment > 0 else ' (-)'
            lines.append(f'- {_label(behavior.predicate)}: {_behavior_target(behavior)}{detail}')
        lines.append('')

    if qualities:
        lines.append('**How Others Support Them:**')
        for quality in qualities[:ITEMS_PER_GROUP]:
            lines.append(f'- {quality.entity_name or "Someone"} {_label(quality.predicate)}: {quality.object}')
    return lines


def _patterns_section(graph: KnowledgeGraph, max_patterns: int) -> List[str]:
    if not graph.patterns:
        return []
    lines = ['## Observed Patterns', '*Recurring behaviors and tendencies:*', '']
    for pattern in graph.patterns[:max_patterns]:
        confirmed = ', confirmed' if pattern.user_confirmed else ''
        lines.append(f'- {pattern.description} ({round(pattern.confidence * 100)}% confidence{confirmed})')
    return lines


def _life_areas_section(graph: KnowledgeGraph) -> List[str]:
    summaries = [s for s in graph.category_summaries if s.summary]
    if not summaries:
        return []
    lines = ['## Life Areas']
    for summary in summaries:
        lines.append('')
        lines.append(f'**{_title(summary.category)}:**')
        lines.append(summary.summary)
    return lines


def _recent_activity_section(graph: KnowledgeGraph, max_entries: int) -> List[str]:
    if not graph.entries:
        return []
    lines = ['## Recent Activity', '', '### Recent Entries']
    for entry in graph.entries[:max_entries]:
        date = entry.created_at.strftime('%b %d') if entry.created_at else 'undated'
        title = entry.title or entry.distilled_summary or 'Untitled'
        category = f' [{entry.category}]' if entry.category else ''
        lines.append(f'- [{date}] {title}{category}')
        if entry.is_distilled and entry.distilled_summary and entry.title:
            lines.append(f'  *Insight: {entry.distilled_summary}*')
    return lines


def _footer(graph: KnowledgeGraph) -> List[str]:
    lines = [
        '---', '*Memory Summary:*', f'- {len(graph.entities)} entities, {graph.fact_count} facts',
        f'- {len(graph.behaviors)} behaviors, {len(graph.patterns)} patterns', f'- {len(graph.entries)} recent entries',
        f'- Loaded in {graph.total_load_ms}ms'
    ]
    if graph.errors:
        lines.append(f'- Unavailable sections: {", ".join(graph.errors)}')
    return lines


def fit_section(lines: List[str], budget: int) -> List[str]:
    """
    Keep the leading lines of a section that fit in `budget` characters.

    A section whose heading does not fit is dropped. A cut section ends
    with a truncation note when there is room for it.
    """
    text = '\n'.join(lines)
    if len(text) <= budget:
        return lines

    kept: List[str] = []
    used = 0
    for line in lines:
        cost = len(line) + (1 if kept else 0)
        if used + cost > budget:
            break
        kept.append(line)
        used += cost

    if not kept:
        return []
    note_cost = len(TRUNCATION_NOTE) + 1
    while kept and used + note_cost > budget and len(kept) > 1:
        removed = kept.pop()
        used -= len(removed) + 1
    if used + note_cost <= budget:
        kept.append(TRUNCATION_NOTE)
    return kept


def build_document(graph: KnowledgeGraph,
                   focus: Optional[str] = None,
                   max_chars: Optional[int] = None,
                   config: Optional[ContextConfig] = None) -> str:
    """
    Render the full markdown context document.

    Args:
        graph: Loaded knowledge graph
        focus: Entity name (substring, case-insensitive) to list first
        max_chars: Size budget for the whole document
        config: ContextConfig with section limits (defaults if None)

    Returns:
        Markdown document no longer than `max_chars`
    """
    config = config or ContextConfig()
    max_chars = max_chars if max_chars is not None else config.max_chars

    separator = '\n\n'
    footer = '\n'.join(_footer(graph))
    sections = [
        _header(graph),
        _identity_section(graph),
        _key_people_section(graph),
        _entities_section(graph, focus, config.max_entities),
        _behavioral_section(graph, config.max_behaviors),
        _patterns_section(graph, config.max_patterns),
        _life_areas_section(graph),
        _recent_activity_section(graph, config.max_entries),
    ]

    if len(footer) > max_chars:
        return footer[:max_chars]

    remaining = max_chars - len(footer)
    parts: List[str] = []
    truncated = False
    for lines in sections:
        if not lines:
            continue
        budget = remaining - len(separator)
        if budget <= 0:
            truncated = True
            break
        fitted = fit_section(lines, budget)
        if len(fitted) != len(lines) or fitted[-1:] == [TRUNCATION_NOTE]:
            truncated = True
        if not fitted:
            continue
        text = '\n'.join(fitted)
        parts.append(text)
        remaining -= len(text) + len(separator)

    if truncated:
        logger.debug(f'Context document for user {graph.user_id} truncated to {max_chars} chars')
    parts.append(footer)
    return separator.join(parts)


def build_compact_document(graph: KnowledgeGraph, max_entities: int = 20, max_patterns: int = 5, max_behaviors: int = 10) -> str:
    """Short rendering for small context windows."""
    identity = graph.identity
    lines = [f"# {identity.name or 'User'}'s Memory"]
    if identity.goals:
        lines.append(f'Goals: {", ".join(identity.goals)}')
    if identity.key_people:
        people = ', '.join(f'{p.name} ({p.relationship})' if p.relationship else p.name for p in identity.key_people)
        lines.append(f'Key people: {people}')

    lines.append('')
    lines.append('## Key Entities')
    for entity in graph.entities[:max_entities]:
        line = f'**{entity.name}**'
        if entity.relationship:
            line += f' ({entity.relationship})'
        facts = graph.facts_by_entity.get(entity.id, [])[:2]
        if facts:
            line += ': ' + '; '.join(f'{_label(f.predicate)}: {f.object_text}' for f in facts)
        lines.append(line)

    if graph.behaviors:
        lines.append('')
        lines.append('## Behaviors')
        for behavior in graph.behaviors[:max_behaviors]:
            lines.append(f'- {_label(behavior.predicate)} {_behavior_target(behavior)}')

    if graph.patterns:
        lines.append('')
        lines.append('## Patterns')
        for pattern in graph.patterns[:max_patterns]:
            lines.append(f'- {pattern.description}')

    return '\n'.join(lines)


def build_structured_context(graph: KnowledgeGraph, focus: Optional[str] = None, config: Optional[ContextConfig] = None) -> Dict[str, Any]:
    """JSON-ready rendering of the graph for agent consumers."""
    config = config or ContextConfig()
    identity = graph.identity
    entities = []
    for entity in order_entities(graph.entities, focus, config.max_entities):
        entities.append({
            'id': entity.id,
            'name': entity.name,
            'type': entity.entity_type,
            'relationship': entity.relationship,
            'summary': entity.summary,
            'importance': round(entity.importance_score, 3),
            'sentiment': round(entity.sentiment_average, 3),
            'mention_count': entity.mention_count,
            'last_mentioned_at': to_iso(entity.last_mentioned_at),
            'facts': [{
                'predicate': f.predicate,
                'object': f.object_text,
                'confidence': f.confidence,
                'valid_from': to_iso(f.valid_from)
            } for f in graph.facts_by_entity.get(entity.id, [])[:FACTS_PER_ENTITY]],
            'behaviors': [{
                'predicate': b.predicate,
                'topic': b.topic,
                'confidence': b.confidence
            } for b in graph.behaviors_by_entity.get(entity.id, [])[:RELATIONS_PER_ENTITY]],
            'qualities': [{
                'predicate': q.predicate,
                'object': q.object,
                'confidence': q.confidence
            } for q in graph.qualities_by_entity.get(entity.id, [])[:RELATIONS_PER_ENTITY]],
        })

    names = {entity.id: entity.name for entity in graph.entities}
    return {
        'user_id': graph.user_id,
        'identity': {
            'name': identity.name,
            'role': identity.role,
            'self_description': identity.self_description,
            'goals': identity.goals,
            'life_context': identity.life_context,
            'boundaries': identity.boundaries,
            'tone': identity.tone,
            'custom_instructions': identity.custom_instructions,
            'key_people': [{
                'name': p.name,
                'relationship': p.relationship
            } for p in identity.key_people],
        },
        'entities': entities,
        'relationships': [{
            'source': names.get(r.source_entity_id, r.source_entity_id),
            'target': names.get(r.target_entity_id, r.target_entity_id),
            'type': r.relationship_type,
            'strength': r.strength
        } for r in graph.relationships if r.source_entity_id in names and r.target_entity_id in names],
        'patterns': [{
            'description': p.description,
            'type': p.pattern_type,
            'confidence': p.confidence,
            'confirmed': p.user_confirmed
        } for p in graph.patterns[:config.max_patterns]],
        'life_areas': {s.category: s.summary for s in graph.category_summaries},
        'recent_entries': [{
            'id': e.id,
            'title': e.title,
            'category': e.category,
            'created_at': to_iso(e.created_at)
        } for e in graph.entries[:config.max_entries]],
        'meta': {
            'entity_count': len(graph.entities),
            'fact_count': graph.fact_count,
            'behavior_count': len(graph.behaviors),
            'pattern_count': len(graph.patterns),
            'load_ms': graph.total_load_ms,
            'timings': graph.timings,
            'errors': graph.errors,
            'loaded_at': to_iso(graph.loaded_at),
        },
    }
