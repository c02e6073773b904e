"""
Writes to the relational graph: entity edges, behaviors, qualities and patterns.
"""

import uuid
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

import aiosqlite

from ..models.core import STATUS_ACTIVE, STATUS_REJECTED, STATUS_SUPERSEDED, Behavior, EntityQuality, Pattern, normalize_predicate
from ..utils.database import Database, DatabaseError, IntegrityViolation, execute, fetch_all, fetch_one
from ..utils.json_utils import dump_column
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso, utc_now

logger = get_logger(__name__)

CO_OCCURS = 'co_occurs'
STRENGTH_BASE = 0.5
STRENGTH_BOOST = 0.1
CONFIDENCE_BOOST = 0.05
PATTERN_CONFIRM_BOOST = 0.2


class GraphStoreError(Exception):
    """Custom exception for graph store errors."""
    pass


def canonical_pair(a: str, b: str) -> Tuple[str, str]:
    """Order an undirected pair so (a, b) and (b, a) map to one edge."""
    return (a, b) if a <= b else (b, a)


class GraphStore:
    """Persist relationship edges and user-centric relations."""

    def __init__(self, db: Database):
        self.db = db

    async def _run(self, conn: Optional[aiosqlite.Connection], sql: str, params) -> int:
        if conn is not None:
            return await execute(conn, sql, params)
        return await self.db.execute(sql, params)

    async def upsert_relationship(self,
                                  user_id: str,
                                  source_entity_id: str,
                                  target_entity_id: str,
                                  relationship_type: str = CO_OCCURS,
                                  strength: Optional[float] = None,
                                  context: Optional[str] = None,
                                  now: Optional[datetime] = None,
                                  conn: Optional[aiosqlite.Connection] = None) -> Optional[float]:
        """
        Insert an edge or strengthen the existing one.

        A new edge starts at `strength` (default base + boost); a repeated one
        gains the boost, capped at 1.0. Self-loops are ignored.

        Args:
            user_id: Owning user
            source_entity_id: Edge source
            target_entity_id: Edge target
            relationship_type: Edge label
            strength: Initial strength for a new edge
            context: Free-text context for the edge
            now: Observation time
            conn: Open transaction, if any

        Returns:
            Strength after the write, or None when the pair was a self-loop

        Raises:
            GraphStoreError: If the write fails
        """
        if source_entity_id == target_entity_id:
            logger.debug(f'Ignoring self-loop on entity {source_entity_id}')
            return None

        now = now or utc_now()
        initial = STRENGTH_BASE + STRENGTH_BOOST if strength is None else min(1.0, max(0.0, strength))
        try:
            await self._run(
                conn, 'INSERT INTO relationships (id, user_id, source_entity_id, target_entity_id, relationship_type, strength, '
                'context, last_seen_at, is_active, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?) '
                'ON CONFLICT (user_id, source_entity_id, target_entity_id, relationship_type) DO UPDATE SET '
                'strength = MIN(1.0, strength + ?), context = COALESCE(excluded.context, context), '
                'last_seen_at = excluded.last_seen_at, is_active = 1',
                (str(uuid.uuid4()), user_id, source_entity_id, target_entity_id, relationship_type, initial, context, to_iso(now),
                 to_iso(now), STRENGTH_BOOST))
            sql = ('SELECT strength FROM relationships WHERE user_id = ? AND source_entity_id = ? AND target_entity_id = ? '
                   'AND relationship_type = ?')
            params = (user_id, source_entity_id, target_entity_id, relationship_type)
            row = await fetch_one(conn, sql, params) if conn is not None else await self.db.fetch_one(sql, params)
        except IntegrityViolation as e:
            logger.warning(f'Relationship {source_entity_id} -> {target_entity_id} refused: {e}')
            raise GraphStoreError(f'Relationship refused: {e}')
        except DatabaseError as e:
            raise GraphStoreError(f'Failed to upsert relationship: {e}')
        return float(row['strength']) if row else None

    async def record_co_occurrence(self,
                                   user_id: str,
                                   entity_a: str,
                                   entity_b: str,
                                   now: Optional[datetime] = None,
                                   conn: Optional[aiosqlite.Connection] = None) -> Optional[float]:
        """Strengthen the undirected edge between two entities mentioned together."""
        if entity_a == entity_b:
            return None
        source, target = canonical_pair(entity_a, entity_b)
        return await self.upsert_relationship(user_id, source, target, CO_OCCURS, now=now, conn=conn)

    async def record_co_occurrences(self,
                                    user_id: str,
                                    entity_ids: Iterable[str],
                                    now: Optional[datetime] = None,
                                    conn: Optional[aiosqlite.Connection] = None) -> int:
        """Link every distinct pair among entities mentioned in one entry."""
        ids = sorted(set(entity_ids))
        linked = 0
        for i, a in enumerate(ids):
            for b in ids[i + 1:]:
                await self.record_co_occurrence(user_id, a, b, now=now, conn=conn)
                linked += 1
        return linked

    async def repoint_edges(self, conn: aiosqlite.Connection, user_id: str, old_entity_id: str, new_entity_id: str) -> int:
        """
        Move every edge of a superseded entity onto its replacement.

        Co-occurrence edges are re-ordered with canonical_pair. When the
        replacement already has the same edge, the two rows merge into one
        keeping the higher strength and the later last_seen_at.

        Args:
            conn: Open transaction of the supersession
            user_id: Owning user
            old_entity_id: Entity being superseded
            new_entity_id: Entity taking over its edges

        Returns:
            Number of edges moved or merged
        """
        rows = await fetch_all(conn, 'SELECT * FROM relationships WHERE user_id = ? AND (source_entity_id = ? OR target_entity_id = ?)',
                               (user_id, old_entity_id, old_entity_id))
        moved = 0
        for row in rows:
            source = new_entity_id if row['source_entity_id'] == old_entity_id else row['source_entity_id']
            target = new_entity_id if row['target_entity_id'] == old_entity_id else row['target_entity_id']
            if source == target:
                await execute(conn, 'DELETE FROM relationships WHERE id = ?', (row['id'], ))
                continue
            if row['relationship_type'] == CO_OCCURS:
                source, target = canonical_pair(source, target)

            existing = await fetch_one(
                conn, 'SELECT id FROM relationships WHERE user_id = ? AND source_entity_id = ? AND target_entity_id = ? '
                'AND relationship_type = ? AND id != ?', (user_id, source, target, row['relationship_type'], row['id']))
            if existing:
                await execute(
                    conn, 'UPDATE relationships SET strength = MAX(strength, ?), last_seen_at = MAX(last_seen_at, ?), '
                    'is_active = MAX(is_active, ?), context = COALESCE(context, ?) WHERE id = ?',
                    (row['strength'], row['last_seen_at'], row['is_active'], row['context'], existing['id']))
                await execute(conn, 'DELETE FROM relationships WHERE id = ?', (row['id'], ))
            else:
                await execute(conn, 'UPDATE relationships SET source_entity_id = ?, target_entity_id = ? WHERE id = ?',
                              (source, target, row['id']))
            moved += 1

        logger.debug(f'Moved {moved} edges from entity {old_entity_id} to {new_entity_id}')
        return moved

    async def record_behavior(self,
                              user_id: str,
                              predicate: str,
                              entity_id: Optional[str] = None,
                              entity_name: Optional[str] = None,
                              topic: Optional[str] = None,
                              sentiment: float = 0.0,
                              confidence: float = 0.6,
                              now: Optional[datetime] = None,
                              conn: Optional[aiosqlite.Connection] = None) -> Behavior:
        """Insert a user-to-entity behavior, or reinforce the matching active one."""
        now = now or utc_now()
        predicate = normalize_predicate(predicate)
        sql = ('SELECT * FROM behaviors WHERE user_id = ? AND predicate = ? AND status = ? '
               'AND COALESCE(entity_id, entity_name, \'\') = COALESCE(?, ?, \'\') AND COALESCE(topic, \'\') = COALESCE(?, \'\')')
        params = (user_id, predicate, STATUS_ACTIVE, entity_id, entity_name, topic)
        row = await fetch_one(conn, sql, params) if conn is not None else await self.db.fetch_one(sql, params)

        if row:
            existing = Behavior.from_row(row)
            existing.confidence = min(1.0, max(existing.confidence, confidence) + CONFIDENCE_BOOST)
            existing.reinforcement_count += 1
            existing.last_reinforced_at = now
            await self._run(conn, 'UPDATE behaviors SET confidence = ?, reinforcement_count = ?, last_reinforced_at = ?, last_decayed_at = NULL WHERE id = ?',
                            (existing.confidence, existing.reinforcement_count, to_iso(now), existing.id))
            return existing

        behavior = Behavior(id=str(uuid.uuid4()),
                            user_id=user_id,
                            predicate=predicate,
                            entity_id=entity_id,
                            entity_name=entity_name,
                            topic=topic,
                            sentiment=sentiment,
                            confidence=min(1.0, max(0.0, confidence)),
                            first_detected_at=now,
                            last_reinforced_at=now)
        await self._run(
            conn, 'INSERT INTO behaviors (id, user_id, predicate, entity_id, entity_name, topic, sentiment, confidence, '
            'reinforcement_count, first_detected_at, last_reinforced_at, status) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)',
            (behavior.id, user_id, predicate, entity_id, entity_name, topic, sentiment, behavior.confidence, to_iso(now), to_iso(now),
             STATUS_ACTIVE))
        return behavior

    async def record_quality(self,
                             user_id: str,
                             predicate: str,
                             object_text: str = '',
                             entity_id: Optional[str] = None,
                             entity_name: Optional[str] = None,
                             confidence: float = 0.6,
                             now: Optional[datetime] = None,
                             conn: Optional[aiosqlite.Connection] = None) -> EntityQuality:
        """Insert an entity-to-user quality, or reinforce the matching active one."""
        now = now or utc_now()
        predicate = normalize_predicate(predicate)
        sql = ('SELECT * FROM entity_qualities WHERE user_id = ? AND predicate = ? AND object = ? AND status = ? '
               'AND COALESCE(entity_id, entity_name, \'\') = COALESCE(?, ?, \'\')')
        params = (user_id, predicate, object_text, STATUS_ACTIVE, entity_id, entity_name)
        row = await fetch_one(conn, sql, params) if conn is not None else await self.db.fetch_one(sql, params)

        if row:
            existing = EntityQuality.from_row(row)
            existing.confidence = min(1.0, max(existing.confidence, confidence) + CONFIDENCE_BOOST)
            existing.reinforcement_count += 1
            existing.last_reinforced_at = now
            await self._run(conn,
                            'UPDATE entity_qualities SET confidence = ?, reinforcement_count = ?, last_reinforced_at = ? WHERE id = ?',
                            (existing.confidence, existing.reinforcement_count, to_iso(now), existing.id))
            return existing

        quality = EntityQuality(id=str(uuid.uuid4()),
                                user_id=user_id,
                                entity_id=entity_id,
                                entity_name=entity_name,
                                predicate=predicate,
                                object=object_text,
                                confidence=min(1.0, max(0.0, confidence)),
                                first_detected_at=now,
                                last_reinforced_at=now)
        await self._run(
            conn, 'INSERT INTO entity_qualities (id, user_id, entity_id, entity_name, predicate, object, confidence, '
            'reinforcement_count, first_detected_at, last_reinforced_at, status) VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)',
            (quality.id, user_id, entity_id, entity_name, predicate, object_text, quality.confidence, to_iso(now), to_iso(now),
             STATUS_ACTIVE))
        return quality

    async def record_pattern(self,
                             user_id: str,
                             pattern_type: str,
                             description: str,
                             confidence: float = 0.5,
                             short_description: Optional[str] = None,
                             category: Optional[str] = None,
                             evidence: Optional[List[str]] = None,
                             conn: Optional[aiosqlite.Connection] = None) -> Pattern:
        now = utc_now()
        pattern = Pattern(id=str(uuid.uuid4()),
                          user_id=user_id,
                          pattern_type=pattern_type,
                          description=description,
                          short_description=short_description,
                          confidence=min(1.0, max(0.0, confidence)),
                          category=category,
                          evidence=list(evidence or []),
                          created_at=now,
                          updated_at=now)
        await self._run(
            conn, 'INSERT INTO patterns (id, user_id, pattern_type, description, short_description, confidence, category, evidence, '
            'status, user_confirmed, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)',
            (pattern.id, user_id, pattern_type, description, short_description, pattern.confidence, category,
             dump_column(pattern.evidence), STATUS_ACTIVE, to_iso(now), to_iso(now)))
        logger.debug(f'Recorded {pattern_type} pattern {pattern.id} for user {user_id}')
        return pattern

    async def get_pattern(self, pattern_id: str) -> Optional[Pattern]:
        row = await self.db.fetch_one('SELECT * FROM patterns WHERE id = ?', (pattern_id, ))
        return Pattern.from_row(row) if row else None

    async def confirm_pattern(self, pattern_id: str) -> bool:
        """User confirmed a pattern: boost its confidence and flag it."""
        updated = await self.db.execute(
            'UPDATE patterns SET user_confirmed = 1, confidence = MIN(1.0, confidence + ?), updated_at = ? WHERE id = ? AND status = ?',
            (PATTERN_CONFIRM_BOOST, to_iso(utc_now()), pattern_id, STATUS_ACTIVE))
        return updated == 1

    async def reject_pattern(self, pattern_id: str) -> bool:
        updated = await self.db.execute('UPDATE patterns SET status = ?, updated_at = ? WHERE id = ? AND status = ?',
                                        (STATUS_REJECTED, to_iso(utc_now()), pattern_id, STATUS_ACTIVE))
        return updated == 1

    async def supersede_pattern(self, pattern_id: str, description: str, confidence: Optional[float] = None) -> Optional[Pattern]:
        """Replace an active pattern with a revised one, keeping the old row linked."""
        async with self.db.transaction() as conn:
            row = await fetch_one(conn, 'SELECT * FROM patterns WHERE id = ?', (pattern_id, ))
            if row is None or row['status'] != STATUS_ACTIVE:
                return None
            old = Pattern.from_row(row)
            new = await self.record_pattern(old.user_id,
                                            old.pattern_type,
                                            description,
                                            confidence=old.confidence if confidence is None else confidence,
                                            short_description=old.short_description,
                                            category=old.category,
                                            evidence=old.evidence,
                                            conn=conn)
            await execute(conn, 'UPDATE patterns SET status = ?, superseded_by = ?, updated_at = ? WHERE id = ?',
                          (STATUS_SUPERSEDED, new.id, to_iso(utc_now()), old.id))
        return new
