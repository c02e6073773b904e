"""
Bi-temporal fact store.

A fact is an (entity, predicate, object) triple with a validity interval
[valid_from, valid_to) and a version chain. Facts are never deleted by
this module: superseding or correcting a fact closes its interval and
links it to whatever replaced it.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import aiosqlite

from ..models.core import Fact, is_multi_value_predicate, normalize_object, normalize_predicate
from ..utils.database import Database, DatabaseError, execute, fetch_all, fetch_one
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import ensure_utc, to_iso, utc_now

logger = get_logger(__name__)

REASON_SUPERSEDED = 'superseded'
REASON_ENTITY_SUPERSEDED = 'entity_superseded'


class FactStoreError(Exception):
    """Custom exception for fact store errors."""
    pass


@dataclass
class FactChange:
    """One predicate whose object differs between two snapshots."""
    predicate: str
    before: Fact
    after: Fact


@dataclass
class KnowledgeDiff:
    """What changed about an entity between two points in time."""
    entity_id: str
    as_of_before: datetime
    as_of_after: datetime
    added: List[Fact] = field(default_factory=list)
    removed: List[Fact] = field(default_factory=list)
    changed: List[FactChange] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)


@dataclass
class TimelineEvent:
    at: datetime
    event: str  # 'asserted' or 'invalidated'
    fact: Fact


class FactStore:
    """Create, supersede and query bi-temporal facts."""

    def __init__(self, db: Database):
        self.db = db

    async def create_fact(self,
                          user_id: str,
                          entity_id: str,
                          predicate: str,
                          object_text: str,
                          confidence: float = 0.7,
                          source_id: Optional[str] = None,
                          valid_from: Optional[datetime] = None,
                          source_type: str = 'entry',
                          conn: Optional[aiosqlite.Connection] = None) -> Fact:
        """Record a fact, superseding the current one for single-value predicates.

        When the predicate is single-valued and a current fact holds a
        different object, the old fact is closed at the new fact's
        valid_from and linked to the new one in the same transaction.
        Re-asserting an identical current fact reinforces it instead.

        Args:
            user_id: Owning user
            entity_id: Subject entity
            predicate: Relation name, normalized to lower snake case
            object_text: Object value
            confidence: Confidence between 0 and 1
            source_id: Originating entry ID
            valid_from: Start of validity (defaults to now)
            source_type: Kind of source
            conn: Open transaction to join; a new one is opened if None

        Returns:
            The new or reinforced Fact

        Raises:
            FactStoreError: If the input is invalid or the write fails
        """
        predicate = normalize_predicate(predicate)
        if not predicate or not (object_text or '').strip():
            raise FactStoreError('Fact requires a predicate and a non-empty object')
        confidence = min(1.0, max(0.0, float(confidence)))

        if conn is not None:
            return await self._create_fact(conn, user_id, entity_id, predicate, object_text.strip(), confidence, source_id,
                                           valid_from, source_type)
        try:
            async with self.db.transaction() as tx:
                return await self._create_fact(tx, user_id, entity_id, predicate, object_text.strip(), confidence, source_id,
                                               valid_from, source_type)
        except DatabaseError as e:
            logger.error(f'Failed to create fact {predicate} for entity {entity_id}: {e}')
            raise FactStoreError(f'Fact creation failed: {e}')

    async def _create_fact(self, conn, user_id, entity_id, predicate, object_text, confidence, source_id, valid_from,
                           source_type) -> Fact:
        now = utc_now()
        valid_from = ensure_utc(valid_from) if valid_from else now
        object_key = normalize_object(object_text)
        single_value = not is_multi_value_predicate(predicate)

        current_rows = await fetch_all(conn, 'SELECT * FROM facts WHERE entity_id = ? AND predicate = ? AND is_current = 1',
                                       (entity_id, predicate))

        for row in current_rows:
            if row['object_key'] == object_key:
                await execute(
                    conn, 'UPDATE facts SET mention_count = mention_count + 1, confidence = MAX(confidence, ?), '
                    'updated_at = ? WHERE id = ?', (confidence, to_iso(now), row['id']))
                logger.debug(f'Reinforced fact {row["id"]} ({predicate})')
                return Fact.from_row(await fetch_one(conn, 'SELECT * FROM facts WHERE id = ?', (row['id'], )))

        new_id = str(uuid.uuid4())
        version = 1
        previous_id = None

        if single_value:
            latest = await fetch_one(conn, 'SELECT id, version FROM facts WHERE entity_id = ? AND predicate = ? '
                                     'ORDER BY version DESC, created_at DESC LIMIT 1', (entity_id, predicate))
            if latest is not None:
                version = latest['version'] + 1
                previous_id = latest['id']

            for row in current_rows:
                old = Fact.from_row(row)
                valid_to = max(valid_from, old.valid_from) if old.valid_from else valid_from
                await execute(
                    conn, 'UPDATE facts SET is_current = 0, valid_to = ?, invalidated_at = ?, invalidated_by = ?, '
                    'invalidation_reason = ?, updated_at = ? WHERE id = ?',
                    (to_iso(valid_to), to_iso(now), new_id, REASON_SUPERSEDED, to_iso(now), old.id))
                logger.info(f'Superseded fact {old.id} ({predicate}: {old.object_text!r}) with {new_id}')

        await execute(
            conn, 'INSERT INTO facts (id, user_id, entity_id, predicate, object_text, object_key, confidence, source_type, '
            'source_id, mention_count, valid_from, valid_to, is_current, single_value, version, previous_version_id, '
            'created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, NULL, 1, ?, ?, ?, ?, ?)',
            (new_id, user_id, entity_id, predicate, object_text, object_key, confidence, source_type, source_id,
             to_iso(valid_from), int(single_value), version, previous_id, to_iso(now), to_iso(now)))

        logger.debug(f'Created fact {new_id} ({predicate} v{version}) for entity {entity_id}')
        return Fact.from_row(await fetch_one(conn, 'SELECT * FROM facts WHERE id = ?', (new_id, )))

    async def invalidate_fact(self, fact_id: str, reason: str, valid_to: Optional[datetime] = None) -> Fact:
        """Close a fact's validity without deleting it.

        Args:
            fact_id: Fact to invalidate
            reason: Free-text invalidation reason
            valid_to: End of validity (defaults to now, never before valid_from)

        Returns:
            The invalidated Fact

        Raises:
            FactStoreError: If the fact does not exist
        """
        now = utc_now()
        try:
            async with self.db.transaction() as conn:
                row = await fetch_one(conn, 'SELECT * FROM facts WHERE id = ?', (fact_id, ))
                if row is None:
                    raise FactStoreError(f'Fact not found: {fact_id}')
                fact = Fact.from_row(row)
                if not fact.is_current:
                    logger.warning(f'Fact {fact_id} is already invalidated')
                    return fact

                end = ensure_utc(valid_to) if valid_to else now
                if fact.valid_from and end < fact.valid_from:
                    end = fact.valid_from
                await execute(
                    conn, 'UPDATE facts SET is_current = 0, valid_to = ?, invalidated_at = ?, invalidation_reason = ?, '
                    'updated_at = ? WHERE id = ?', (to_iso(end), to_iso(now), reason, to_iso(now), fact_id))
                logger.info(f'Invalidated fact {fact_id}: {reason}')
                return Fact.from_row(await fetch_one(conn, 'SELECT * FROM facts WHERE id = ?', (fact_id, )))
        except DatabaseError as e:
            logger.error(f'Failed to invalidate fact {fact_id}: {e}')
            raise FactStoreError(f'Fact invalidation failed: {e}')

    async def carry_forward_facts(self, conn: aiosqlite.Connection, old_entity_id: str, new_entity_id: str,
                                  at: datetime) -> int:
        """Move an entity's current facts onto the entity that supersedes it.

        Each current fact is closed on the old entity and re-created on the
        new one as the next version, so history stays on the old lineage.

        Returns:
            Number of facts carried forward
        """
        rows = await fetch_all(conn, 'SELECT * FROM facts WHERE entity_id = ? AND is_current = 1', (old_entity_id, ))
        for row in rows:
            old = Fact.from_row(row)
            new_id = str(uuid.uuid4())
            await execute(
                conn, 'UPDATE facts SET is_current = 0, valid_to = ?, invalidated_at = ?, invalidated_by = ?, '
                'invalidation_reason = ?, updated_at = ? WHERE id = ?',
                (to_iso(max(at, old.valid_from) if old.valid_from else at), to_iso(at), new_id, REASON_ENTITY_SUPERSEDED,
                 to_iso(at), old.id))
            await execute(
                conn, 'INSERT INTO facts (id, user_id, entity_id, predicate, object_text, object_key, confidence, '
                'source_type, source_id, mention_count, valid_from, valid_to, is_current, single_value, version, '
                'previous_version_id, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, 1, ?, ?, ?, ?, ?)',
                (new_id, old.user_id, new_entity_id, old.predicate, old.object_text, row['object_key'], old.confidence,
                 old.source_type, old.source_id, old.mention_count, to_iso(old.valid_from), int(old.single_value),
                 old.version + 1, old.id, to_iso(at), to_iso(at)))
        return len(rows)

    async def get_current_facts(self, entity_id: str) -> List[Fact]:
        """All facts of an entity that are current now."""
        rows = await self.db.fetch_all('SELECT * FROM facts WHERE entity_id = ? AND is_current = 1 ORDER BY predicate, created_at',
                                       (entity_id, ))
        return [Fact.from_row(row) for row in rows]

    async def get_facts_at_time(self, entity_id: str, as_of: datetime) -> List[Fact]:
        """Facts whose validity interval [valid_from, valid_to) contains as_of.

        Args:
            entity_id: Subject entity
            as_of: Point in time to reconstruct

        Returns:
            Facts valid at as_of, ordered by predicate
        """
        stamp = to_iso(as_of)
        rows = await self.db.fetch_all(
            'SELECT * FROM facts WHERE entity_id = ? AND valid_from <= ? AND (valid_to IS NULL OR valid_to > ?) '
            'ORDER BY predicate, valid_from, id', (entity_id, stamp, stamp))
        return [Fact.from_row(row) for row in rows]

    async def get_fact_history(self, entity_id: str, predicate: str) -> List[Fact]:
        """Every version of one predicate for an entity, newest first."""
        rows = await self.db.fetch_all(
            'SELECT * FROM facts WHERE entity_id = ? AND predicate = ? ORDER BY version DESC, created_at DESC',
            (entity_id, normalize_predicate(predicate)))
        return [Fact.from_row(row) for row in rows]

    async def get_entity_timeline(self, entity_id: str) -> List[TimelineEvent]:
        """Assertion and invalidation events for an entity, oldest first."""
        rows = await self.db.fetch_all('SELECT * FROM facts WHERE entity_id = ?', (entity_id, ))
        events = []
        for row in rows:
            fact = Fact.from_row(row)
            events.append(TimelineEvent(at=fact.valid_from or fact.created_at, event='asserted', fact=fact))
            if fact.valid_to is not None:
                events.append(TimelineEvent(at=fact.valid_to, event='invalidated', fact=fact))
        events.sort(key=lambda e: (e.at, 0 if e.event == 'invalidated' else 1))
        return events

    async def compare_knowledge_at_times(self, entity_id: str, before: datetime, after: datetime) -> KnowledgeDiff:
        """Diff two point-in-time snapshots of an entity.

        A predicate that lost one object and gained another is reported as
        changed, not as an independent removal and addition.

        Args:
            entity_id: Subject entity
            before: Earlier point in time
            after: Later point in time

        Returns:
            KnowledgeDiff with added, removed and changed facts
        """
        facts_before = await self.get_facts_at_time(entity_id, before)
        facts_after = await self.get_facts_at_time(entity_id, after)

        def keyed(facts: List[Fact]) -> Dict[Tuple[str, str], Fact]:
            return {(f.predicate, normalize_object(f.object_text)): f for f in facts}

        before_map = keyed(facts_before)
        after_map = keyed(facts_after)
        removed = [f for key, f in before_map.items() if key not in after_map]
        added = [f for key, f in after_map.items() if key not in before_map]

        diff = KnowledgeDiff(entity_id=entity_id, as_of_before=before, as_of_after=after)
        for fact in removed:
            replacement = next((a for a in added if a.predicate == fact.predicate), None)
            if replacement is None:
                diff.removed.append(fact)
            else:
                added.remove(replacement)
                diff.changed.append(FactChange(predicate=fact.predicate, before=fact, after=replacement))
        diff.added = added
        return diff

    async def get_facts_observed_between(self,
                                         user_id: str,
                                         start: datetime,
                                         end: datetime,
                                         min_confidence: float = 0.0) -> List[Tuple[Fact, str]]:
        """Facts of a user whose validity began in [start, end), with entity names.

        Returns:
            List of (fact, entity_name), oldest first
        """
        rows = await self.db.fetch_all(
            'SELECT f.*, e.name AS entity_name FROM facts f JOIN entities e ON e.id = f.entity_id '
            'WHERE f.user_id = ? AND f.valid_from >= ? AND f.valid_from < ? AND f.confidence >= ? '
            'ORDER BY f.valid_from', (user_id, to_iso(start), to_iso(end), min_confidence))
        return [(Fact.from_row(row), row['entity_name']) for row in rows]
