"""
Knowledge graph loading and traversal.

`load_full_graph` runs every sub-query concurrently on its own connection
and joins them into one aggregate. A failing sub-query leaves its section
empty and is named in `errors`; the read path itself never fails.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional

from ..models.core import (STATUS_ACTIVE, Behavior, CategorySummary, Entity, EntityQuality, Entry, Fact, Identity, KeyPerson, Pattern,
                           Relationship)
from ..utils.config import ContextConfig
from ..utils.database import Database, DatabaseError, execute
from ..utils.json_utils import dump_column, load_column
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso, utc_now

logger = get_logger(__name__)

ENTITY_LOAD_LIMIT = 200


@dataclass
class KnowledgeGraph:
    """Everything known about one user, joined by entity ID."""
    user_id: str
    identity: Identity = field(default_factory=Identity)
    entities: List[Entity] = field(default_factory=list)
    facts_by_entity: Dict[str, List[Fact]] = field(default_factory=dict)
    relationships: List[Relationship] = field(default_factory=list)
    behaviors: List[Behavior] = field(default_factory=list)
    behaviors_by_entity: Dict[str, List[Behavior]] = field(default_factory=dict)
    qualities: List[EntityQuality] = field(default_factory=list)
    qualities_by_entity: Dict[str, List[EntityQuality]] = field(default_factory=dict)
    patterns: List[Pattern] = field(default_factory=list)
    category_summaries: List[CategorySummary] = field(default_factory=list)
    entries: List[Entry] = field(default_factory=list)
    timings: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    loaded_at: Optional[datetime] = None
    total_load_ms: int = 0

    @property
    def fact_count(self) -> int:
        return sum(len(facts) for facts in self.facts_by_entity.values())

    def entity_by_id(self) -> Dict[str, Entity]:
        return {entity.id: entity for entity in self.entities}


@dataclass
class TraversalHit:
    """An entity reached from the start entity, with its best path."""
    entity_id: str
    name: str
    entity_type: str
    path: List[str]
    relationship_types: List[str]
    strength: float
    depth: int


def _group(items: List[Any], key: str) -> Dict[str, List[Any]]:
    grouped: Dict[str, List[Any]] = {}
    for item in items:
        owner = getattr(item, key)
        if owner:
            grouped.setdefault(owner, []).append(item)
    return grouped


class KnowledgeGraphService:
    """Load the user's graph and walk relationship edges."""

    def __init__(self, db: Database, config: ContextConfig):
        """
        Initialize the service.

        Args:
            db: Relational store
            config: ContextConfig with confidence floors and limits
        """
        self.db = db
        self.config = config

    async def _timed(self, graph: KnowledgeGraph, name: str, query: Awaitable[Any], default: Any) -> Any:
        start = time.perf_counter()
        try:
            return await query
        except DatabaseError as e:
            logger.warning(f'Graph section {name} failed for user {graph.user_id}: {e}')
            graph.errors.append(name)
            return default
        except Exception as e:
            # Undecodable rows and similar faults degrade one section, like a failed query
            logger.error(f'Graph section {name} raised {type(e).__name__} for user {graph.user_id}: {e}')
            graph.errors.append(name)
            return default
        finally:
            graph.timings[name] = int((time.perf_counter() - start) * 1000)

    async def load_full_graph(self, user_id: str) -> KnowledgeGraph:
        """
        Load entities, facts, edges, behaviors, patterns and entry metadata in parallel.

        Args:
            user_id: Owning user

        Returns:
            KnowledgeGraph with per-query timings and the names of failed sections
        """
        start = time.perf_counter()
        graph = KnowledgeGraph(user_id=user_id, loaded_at=utc_now())

        (graph.identity, graph.entities, facts, graph.relationships, graph.behaviors, graph.qualities, graph.patterns,
         graph.category_summaries, graph.entries) = await asyncio.gather(
             self._timed(graph, 'identity', self.load_identity(user_id), Identity()),
             self._timed(graph, 'entities', self._load_entities(user_id), []),
             self._timed(graph, 'facts', self._load_facts(user_id), []),
             self._timed(graph, 'relationships', self._load_relationships(user_id), []),
             self._timed(graph, 'behaviors', self._load_behaviors(user_id), []),
             self._timed(graph, 'qualities', self._load_qualities(user_id), []),
             self._timed(graph, 'patterns', self._load_patterns(user_id), []),
             self._timed(graph, 'category_summaries', self._load_category_summaries(user_id), []),
             self._timed(graph, 'entries', self._load_entries(user_id), []))

        graph.facts_by_entity = _group(facts, 'entity_id')
        graph.behaviors_by_entity = _group(graph.behaviors, 'entity_id')
        graph.qualities_by_entity = _group(graph.qualities, 'entity_id')
        graph.total_load_ms = int((time.perf_counter() - start) * 1000)

        logger.debug(f'Loaded graph for user {user_id}: {len(graph.entities)} entities, {len(facts)} facts, '
                     f'{len(graph.relationships)} edges in {graph.total_load_ms} ms')
        return graph

    async def load_identity(self, user_id: str) -> Identity:
        profile = await self.db.fetch_one('SELECT * FROM user_profiles WHERE user_id = ?', (user_id, ))
        people = await self.db.fetch_all('SELECT name, relationship FROM key_people WHERE user_id = ? ORDER BY created_at',
                                         (user_id, ))
        key_people = [KeyPerson(name=row['name'], relationship=row['relationship']) for row in people]
        if profile is None:
            return Identity(key_people=key_people)
        return Identity(name=profile['name'],
                        role=profile['role'],
                        self_description=profile['self_description'],
                        goals=load_column(profile['goals'], []),
                        life_context=load_column(profile['life_context'], []),
                        boundaries=load_column(profile['boundaries'], []),
                        tone=profile['tone'] or 'warm',
                        custom_instructions=profile['custom_instructions'],
                        key_people=key_people)

    async def save_identity(self, user_id: str, identity: Identity) -> None:
        """Replace the user's declared identity and key people."""
        now = to_iso(utc_now())
        async with self.db.transaction() as conn:
            await execute(
                conn, 'INSERT INTO user_profiles (user_id, name, role, self_description, goals, life_context, boundaries, tone, '
                'custom_instructions, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?) ON CONFLICT (user_id) DO UPDATE SET '
                'name = excluded.name, role = excluded.role, self_description = excluded.self_description, goals = excluded.goals, '
                'life_context = excluded.life_context, boundaries = excluded.boundaries, tone = excluded.tone, '
                'custom_instructions = excluded.custom_instructions, updated_at = excluded.updated_at',
                (user_id, identity.name, identity.role, identity.self_description, dump_column(identity.goals),
                 dump_column(identity.life_context), dump_column(identity.boundaries), identity.tone, identity.custom_instructions,
                 now))
            await execute(conn, 'DELETE FROM key_people WHERE user_id = ?', (user_id, ))
            for index, person in enumerate(identity.key_people):
                await execute(conn, 'INSERT INTO key_people (id, user_id, name, relationship, created_at) VALUES (?, ?, ?, ?, ?)',
                              (f'{user_id}:{index}', user_id, person.name, person.relationship, now))

    async def _load_entities(self, user_id: str) -> List[Entity]:
        rows = await self.db.fetch_all(
            'SELECT * FROM entities WHERE user_id = ? AND status = ? ORDER BY importance_score DESC, mention_count DESC LIMIT ?',
            (user_id, STATUS_ACTIVE, ENTITY_LOAD_LIMIT))
        return [Entity.from_row(row) for row in rows]

    async def _load_facts(self, user_id: str) -> List[Fact]:
        rows = await self.db.fetch_all(
            'SELECT f.* FROM facts f JOIN entities e ON e.id = f.entity_id WHERE f.user_id = ? AND f.is_current = 1 AND e.status = ? '
            'ORDER BY f.confidence DESC', (user_id, STATUS_ACTIVE))
        return [Fact.from_row(row) for row in rows]

    async def _load_relationships(self, user_id: str) -> List[Relationship]:
        rows = await self.db.fetch_all('SELECT * FROM relationships WHERE user_id = ? AND is_active = 1 ORDER BY strength DESC',
                                       (user_id, ))
        return [Relationship.from_row(row) for row in rows]

    async def _load_behaviors(self, user_id: str) -> List[Behavior]:
        rows = await self.db.fetch_all(
            'SELECT * FROM behaviors WHERE user_id = ? AND status = ? AND confidence >= ? ORDER BY confidence DESC',
            (user_id, STATUS_ACTIVE, self.config.behavior_min_confidence))
        return [Behavior.from_row(row) for row in rows]

    async def _load_qualities(self, user_id: str) -> List[EntityQuality]:
        rows = await self.db.fetch_all(
            'SELECT * FROM entity_qualities WHERE user_id = ? AND status = ? AND confidence >= ? ORDER BY confidence DESC',
            (user_id, STATUS_ACTIVE, self.config.behavior_min_confidence))
        return [EntityQuality.from_row(row) for row in rows]

    async def _load_patterns(self, user_id: str) -> List[Pattern]:
        rows = await self.db.fetch_all(
            'SELECT * FROM patterns WHERE user_id = ? AND status = ? AND confidence >= ? ORDER BY user_confirmed DESC, confidence DESC',
            (user_id, STATUS_ACTIVE, self.config.pattern_min_confidence))
        return [Pattern.from_row(row) for row in rows]

    async def _load_category_summaries(self, user_id: str) -> List[CategorySummary]:
        rows = await self.db.fetch_all('SELECT * FROM category_summaries WHERE user_id = ? ORDER BY updated_at DESC', (user_id, ))
        return [CategorySummary.from_row(row) for row in rows]

    async def _load_entries(self, user_id: str) -> List[Entry]:
        rows = await self.db.fetch_all('SELECT * FROM entries WHERE user_id = ? ORDER BY created_at DESC LIMIT ?',
                                       (user_id, self.config.max_entries))
        return [Entry.from_row(row) for row in rows]

    async def traverse_graph(self, user_id: str, entity_id: str, max_depth: int = 2, min_strength: float = 0.3) -> List[TraversalHit]:
        """
        Breadth-first walk over active relationship edges from one entity.

        Edges are followed in both directions. A branch never revisits an
        entity already on its own path, so cycles terminate. Each reached
        entity is reported once, with its strongest path.

        Args:
            user_id: Owning user
            entity_id: Start entity
            max_depth: Maximum number of edges from the start
            min_strength: Edges weaker than this are not followed

        Returns:
            Reached entities (start excluded), strongest combined confidence first
        """
        entities = {e.id: e for e in await self._load_entities_all(user_id)}
        if entity_id not in entities:
            return []

        adjacency: Dict[str, List[Relationship]] = {}
        for edge in await self._load_relationships(user_id):
            if edge.strength < min_strength:
                continue
            adjacency.setdefault(edge.source_entity_id, []).append(edge)
            adjacency.setdefault(edge.target_entity_id, []).append(edge)

        best: Dict[str, TraversalHit] = {}
        queue = deque([(entity_id, [entity_id], [], 1.0)])
        while queue:
            current, path, types, strength = queue.popleft()
            if len(path) - 1 >= max_depth:
                continue
            for edge in adjacency.get(current, []):
                neighbor = edge.target_entity_id if edge.source_entity_id == current else edge.source_entity_id
                if neighbor in path or neighbor not in entities:
                    continue
                next_path = path + [neighbor]
                next_types = types + [edge.relationship_type]
                combined = strength * edge.strength
                hit = best.get(neighbor)
                if hit is None or combined > hit.strength:
                    entity = entities[neighbor]
                    best[neighbor] = TraversalHit(entity_id=neighbor,
                                                  name=entity.name,
                                                  entity_type=entity.entity_type,
                                                  path=[entities[step].name for step in next_path],
                                                  relationship_types=next_types,
                                                  strength=combined,
                                                  depth=len(next_path) - 1)
                queue.append((neighbor, next_path, next_types, combined))

        return sorted(best.values(), key=lambda hit: (-hit.strength, hit.depth, hit.name))

    async def _load_entities_all(self, user_id: str) -> List[Entity]:
        rows = await self.db.fetch_all('SELECT * FROM entities WHERE user_id = ? AND status = ?', (user_id, STATUS_ACTIVE))
        return [Entity.from_row(row) for row in rows]
