"""
Entity persistence shared by the decision engine, ingest and maintenance jobs.
"""

import uuid
from datetime import datetime
from typing import List, Optional

import aiosqlite

from ..models.core import STATUS_ACTIVE, Entity, importance_score, normalize_name
from ..utils.database import Database, execute, fetch_all, fetch_one
from ..utils.json_utils import dump_column
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso

logger = get_logger(__name__)

SENTIMENT_WINDOW = 20


def push_note(notes: List[str], note: Optional[str], ring_size: int) -> List[str]:
    """Append a snippet to a bounded ring of context notes."""
    if note and note.strip():
        notes = [*notes, note.strip()]
    return notes[-ring_size:]


class EntityStore:
    """Read and write entity rows."""

    def __init__(self, db: Database, ring_size: int = 10):
        self.db = db
        self.ring_size = ring_size

    async def get(self, entity_id: str, conn: Optional[aiosqlite.Connection] = None) -> Optional[Entity]:
        sql = 'SELECT * FROM entities WHERE id = ?'
        row = await fetch_one(conn, sql, (entity_id, )) if conn else await self.db.fetch_one(sql, (entity_id, ))
        return Entity.from_row(row) if row else None

    async def get_active_by_name(self, user_id: str, name: str, conn: Optional[aiosqlite.Connection] = None) -> Optional[Entity]:
        """The user's active entity with this name, compared case- and space-insensitively."""
        sql = 'SELECT * FROM entities WHERE user_id = ? AND name_key = ? AND status = ?'
        params = (user_id, normalize_name(name), STATUS_ACTIVE)
        row = await fetch_one(conn, sql, params) if conn else await self.db.fetch_one(sql, params)
        return Entity.from_row(row) if row else None

    async def get_many(self, user_id: str, entity_ids: List[str], active_only: bool = True) -> List[Entity]:
        if not entity_ids:
            return []
        placeholders = ', '.join('?' for _ in entity_ids)
        sql = f'SELECT * FROM entities WHERE user_id = ? AND id IN ({placeholders})'
        params = [user_id, *entity_ids]
        if active_only:
            sql += ' AND status = ?'
            params.append(STATUS_ACTIVE)
        rows = await self.db.fetch_all(sql, params)
        return [Entity.from_row(row) for row in rows]

    async def list_active(self, user_id: str, limit: Optional[int] = None) -> List[Entity]:
        sql = 'SELECT * FROM entities WHERE user_id = ? AND status = ? ORDER BY importance_score DESC, mention_count DESC'
        params = [user_id, STATUS_ACTIVE]
        if limit:
            sql += ' LIMIT ?'
            params.append(limit)
        rows = await self.db.fetch_all(sql, params)
        return [Entity.from_row(row) for row in rows]

    async def insert(self,
                     conn: aiosqlite.Connection,
                     user_id: str,
                     name: str,
                     now: datetime,
                     summary: str = '',
                     entity_type: str = 'other',
                     memory_type: str = 'entity',
                     relationship: Optional[str] = None,
                     importance: str = 'medium',
                     sentiment: Optional[float] = None,
                     context_note: Optional[str] = None,
                     is_historical: bool = False,
                     effective_from: Optional[datetime] = None,
                     expires_at: Optional[datetime] = None,
                     sensitivity_level: str = 'normal',
                     confidence: float = 0.8,
                     version: int = 1,
                     supersedes_id: Optional[str] = None,
                     mention_count: int = 1,
                     first_mentioned_at: Optional[datetime] = None,
                     importance_value: Optional[float] = None) -> str:
        """Insert an active entity and return its ID."""
        entity_id = str(uuid.uuid4())
        name = name.strip()
        await execute(
            conn, 'INSERT INTO entities (id, user_id, name, name_key, entity_type, relationship, summary, memory_type, '
            'importance, importance_score, sentiment_average, mention_count, first_mentioned_at, last_mentioned_at, '
            'context_notes, is_historical, effective_from, expires_at, status, version, supersedes_id, sensitivity_level, '
            'confidence, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)',
            (entity_id, user_id, name, normalize_name(name), entity_type or 'other', relationship, summary, memory_type, importance,
             importance_value if importance_value is not None else importance_score(importance), sentiment or 0.0,
             mention_count, to_iso(first_mentioned_at or now), to_iso(now),
             dump_column(push_note([], context_note or summary, self.ring_size)), int(is_historical), to_iso(effective_from),
             to_iso(expires_at), STATUS_ACTIVE, version, supersedes_id, sensitivity_level, confidence, to_iso(now), to_iso(now)))
        logger.debug(f'Inserted entity {entity_id} ({name}) for user {user_id}')
        return entity_id

    async def reinforce(self, conn: aiosqlite.Connection, entity: Entity, now: datetime, context_note: Optional[str] = None) -> None:
        """Record a re-mention: bump mentions, reset decay, push the snippet onto the ring."""
        notes = push_note(entity.context_notes, context_note, self.ring_size)
        await execute(
            conn, 'UPDATE entities SET mention_count = mention_count + 1, last_mentioned_at = ?, last_decayed_at = NULL, '
            'importance_score = MAX(importance_score, ?), context_notes = ?, updated_at = ? WHERE id = ?',
            (to_iso(now), importance_score(entity.importance), dump_column(notes), to_iso(now), entity.id))

    async def rewrite(self, conn: aiosqlite.Connection, entity: Entity, summary: str, now: datetime,
                      context_note: Optional[str] = None) -> int:
        """Replace an entity's summary as a new version; returns the new version number."""
        notes = push_note(entity.context_notes, context_note, self.ring_size)
        new_version = entity.version + 1
        await execute(
            conn, 'UPDATE entities SET summary = ?, context_notes = ?, version = ?, mention_count = mention_count + 1, '
            'last_mentioned_at = ?, last_decayed_at = NULL, importance_score = MAX(importance_score, ?), embedding = NULL, '
            'updated_at = ? WHERE id = ?',
            (summary, dump_column(notes), new_version, to_iso(now), importance_score(entity.importance), to_iso(now), entity.id))
        return new_version

    async def set_status(self, conn: aiosqlite.Connection, entity_id: str, status: str, now: datetime,
                         superseded_by: Optional[str] = None, is_historical: Optional[bool] = None) -> int:
        sets = ['status = ?', 'updated_at = ?']
        params = [status, to_iso(now)]
        if superseded_by is not None:
            sets.append('superseded_by = ?')
            params.append(superseded_by)
        if is_historical is not None:
            sets.append('is_historical = ?')
            params.append(int(is_historical))
        params.append(entity_id)
        return await execute(conn, f'UPDATE entities SET {", ".join(sets)} WHERE id = ?', params)

    async def hard_delete(self, conn: aiosqlite.Connection, entity_id: str) -> int:
        return await execute(conn, 'DELETE FROM entities WHERE id = ?', (entity_id, ))

    async def record_sentiment(self,
                               conn: aiosqlite.Connection,
                               entity_id: str,
                               sentiment: float,
                               now: datetime,
                               source_entry_id: Optional[str] = None) -> float:
        """Append a sentiment observation and refresh the rolling average over the latest ones."""
        sentiment = min(1.0, max(-1.0, float(sentiment)))
        await execute(conn, 'INSERT INTO entity_sentiment_history (id, entity_id, sentiment, source_entry_id, created_at) '
                      'VALUES (?, ?, ?, ?, ?)', (str(uuid.uuid4()), entity_id, sentiment, source_entry_id, to_iso(now)))
        rows = await fetch_all(conn, 'SELECT sentiment FROM entity_sentiment_history WHERE entity_id = ? '
                               'ORDER BY created_at DESC LIMIT ?', (entity_id, SENTIMENT_WINDOW))
        average = sum(row['sentiment'] for row in rows) / len(rows)
        await execute(conn, 'UPDATE entities SET sentiment_average = ? WHERE id = ?', (average, entity_id))
        return average

    async def store_embedding(self, entity_id: str, embedding: List[float]) -> None:
        await self.db.execute('UPDATE entities SET embedding = ? WHERE id = ?', (dump_column(embedding), entity_id))

    async def missing_embeddings(self, user_id: str) -> List[Entity]:
        rows = await self.db.fetch_all('SELECT * FROM entities WHERE user_id = ? AND status = ? AND embedding IS NULL',
                                       (user_id, STATUS_ACTIVE))
        return [Entity.from_row(row) for row in rows]


def snapshot(entity: Entity) -> dict:
    """JSON-safe copy of an entity for the audit log (without its vector)."""
    return {
        'id': entity.id,
        'name': entity.name,
        'entity_type': entity.entity_type,
        'memory_type': entity.memory_type,
        'summary': entity.summary,
        'importance': entity.importance,
        'importance_score': entity.importance_score,
        'mention_count': entity.mention_count,
        'context_notes': list(entity.context_notes),
        'status': entity.status,
        'version': entity.version,
        'created_at': to_iso(entity.created_at),
        'updated_at': to_iso(entity.updated_at),
    }
