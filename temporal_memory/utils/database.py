"""
Async relational store for memory records, backed by SQLite through aiosqlite.

Each unit of work opens its own connection, so concurrent tasks (two
workers racing for a job, parallel graph sub-queries) never share a
cursor. Write transactions start with BEGIN IMMEDIATE to take the write
lock up front; readers see the last committed state under WAL.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, List, Optional

import aiosqlite

from .config import DatabaseConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Custom exception for relational store errors."""
    pass


class IntegrityViolation(DatabaseError):
    """A write was refused by a uniqueness or check constraint."""
    pass


SCHEMA = """
CREATE TABLE IF NOT EXISTS entities (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    name_key TEXT NOT NULL,
    entity_type TEXT NOT NULL DEFAULT 'other',
    relationship TEXT,
    summary TEXT NOT NULL DEFAULT '',
    memory_type TEXT NOT NULL DEFAULT 'entity',
    importance TEXT NOT NULL DEFAULT 'medium',
    importance_score REAL NOT NULL DEFAULT 0.5,
    sentiment_average REAL NOT NULL DEFAULT 0.0,
    mention_count INTEGER NOT NULL DEFAULT 1,
    first_mentioned_at TEXT,
    last_mentioned_at TEXT,
    context_notes TEXT NOT NULL DEFAULT '[]',
    is_historical INTEGER NOT NULL DEFAULT 0,
    effective_from TEXT,
    expires_at TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    version INTEGER NOT NULL DEFAULT 1,
    supersedes_id TEXT,
    superseded_by TEXT,
    sensitivity_level TEXT NOT NULL DEFAULT 'normal',
    confidence REAL NOT NULL DEFAULT 0.8,
    embedding TEXT,
    last_decayed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_entities_active_name
    ON entities(user_id, name_key) WHERE status = 'active';
CREATE INDEX IF NOT EXISTS ix_entities_user_status ON entities(user_id, status);
CREATE INDEX IF NOT EXISTS ix_entities_last_mentioned ON entities(status, last_mentioned_at);

CREATE TABLE IF NOT EXISTS facts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    predicate TEXT NOT NULL,
    object_text TEXT NOT NULL,
    object_key TEXT NOT NULL,
    confidence REAL NOT NULL DEFAULT 0.7,
    source_type TEXT NOT NULL DEFAULT 'entry',
    source_id TEXT,
    mention_count INTEGER NOT NULL DEFAULT 1,
    valid_from TEXT NOT NULL,
    valid_to TEXT,
    is_current INTEGER NOT NULL DEFAULT 1,
    single_value INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 1,
    previous_version_id TEXT,
    invalidated_at TEXT,
    invalidated_by TEXT,
    invalidation_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_facts_single_current
    ON facts(entity_id, predicate) WHERE is_current = 1 AND single_value = 1;
CREATE INDEX IF NOT EXISTS ix_facts_entity_predicate ON facts(entity_id, predicate, created_at);
CREATE INDEX IF NOT EXISTS ix_facts_user_created ON facts(user_id, created_at);
CREATE INDEX IF NOT EXISTS ix_facts_validity ON facts(entity_id, valid_from, valid_to);

CREATE TABLE IF NOT EXISTS entity_sentiment_history (
    id TEXT PRIMARY KEY,
    entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    sentiment REAL NOT NULL,
    source_entry_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_sentiment_entity ON entity_sentiment_history(entity_id, created_at);

CREATE TABLE IF NOT EXISTS relationships (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    source_entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    target_entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    relationship_type TEXT NOT NULL DEFAULT 'co_occurs',
    strength REAL NOT NULL DEFAULT 0.5,
    context TEXT,
    last_seen_at TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    CHECK (source_entity_id != target_entity_id),
    UNIQUE (user_id, source_entity_id, target_entity_id, relationship_type)
);
CREATE INDEX IF NOT EXISTS ix_relationships_source ON relationships(source_entity_id);
CREATE INDEX IF NOT EXISTS ix_relationships_target ON relationships(target_entity_id);

CREATE TABLE IF NOT EXISTS behaviors (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    predicate TEXT NOT NULL,
    entity_id TEXT REFERENCES entities(id) ON DELETE SET NULL,
    entity_name TEXT,
    topic TEXT,
    sentiment REAL NOT NULL DEFAULT 0.0,
    confidence REAL NOT NULL DEFAULT 0.5,
    reinforcement_count INTEGER NOT NULL DEFAULT 1,
    first_detected_at TEXT NOT NULL,
    last_reinforced_at TEXT NOT NULL,
    last_decayed_at TEXT,
    status TEXT NOT NULL DEFAULT 'active'
);
CREATE INDEX IF NOT EXISTS ix_behaviors_user ON behaviors(user_id, status);

CREATE TABLE IF NOT EXISTS entity_qualities (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    entity_id TEXT REFERENCES entities(id) ON DELETE SET NULL,
    entity_name TEXT,
    predicate TEXT NOT NULL,
    object TEXT NOT NULL DEFAULT '',
    confidence REAL NOT NULL DEFAULT 0.5,
    reinforcement_count INTEGER NOT NULL DEFAULT 1,
    first_detected_at TEXT NOT NULL,
    last_reinforced_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active'
);
CREATE INDEX IF NOT EXISTS ix_qualities_user ON entity_qualities(user_id, status);

CREATE TABLE IF NOT EXISTS patterns (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    pattern_type TEXT NOT NULL,
    description TEXT NOT NULL,
    short_description TEXT,
    confidence REAL NOT NULL DEFAULT 0.5,
    category TEXT,
    evidence TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'active',
    user_confirmed INTEGER NOT NULL DEFAULT 0,
    superseded_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_patterns_user ON patterns(user_id, status);

CREATE TABLE IF NOT EXISTS entries (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    category TEXT,
    sentiment REAL,
    title TEXT,
    is_distilled INTEGER NOT NULL DEFAULT 0,
    distilled_summary TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_entries_user_created ON entries(user_id, created_at);

CREATE TABLE IF NOT EXISTS entry_entities (
    entry_id TEXT NOT NULL REFERENCES entries(id) ON DELETE CASCADE,
    entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    PRIMARY KEY (entry_id, entity_id)
);

CREATE TABLE IF NOT EXISTS category_summaries (
    user_id TEXT NOT NULL,
    category TEXT NOT NULL,
    summary TEXT NOT NULL,
    entity_count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, category)
);

CREATE TABLE IF NOT EXISTS user_profiles (
    user_id TEXT PRIMARY KEY,
    name TEXT,
    role TEXT,
    self_description TEXT,
    goals TEXT NOT NULL DEFAULT '[]',
    life_context TEXT NOT NULL DEFAULT '[]',
    boundaries TEXT NOT NULL DEFAULT '[]',
    tone TEXT NOT NULL DEFAULT 'warm',
    custom_instructions TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS key_people (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    relationship TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_key_people_user ON key_people(user_id);

CREATE TABLE IF NOT EXISTS memory_jobs (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    job_type TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 5,
    payload TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    depends_on TEXT REFERENCES memory_jobs(id),
    scheduled_for TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    result TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_jobs_pending ON memory_jobs(status, scheduled_for, priority, created_at);

CREATE TABLE IF NOT EXISTS job_history (
    id TEXT PRIMARY KEY,
    run_type TEXT NOT NULL,
    user_id TEXT,
    status TEXT NOT NULL,
    result TEXT NOT NULL DEFAULT '{}',
    duration_ms INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS memory_operations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    candidate_content TEXT NOT NULL,
    candidate_memory_type TEXT,
    similar_memories TEXT NOT NULL DEFAULT '[]',
    reasoning TEXT,
    entity_id TEXT,
    merge_strategy TEXT,
    old_content TEXT,
    new_content TEXT,
    old_version INTEGER,
    new_version INTEGER,
    hard_delete INTEGER,
    deleted_snapshot TEXT,
    job_id TEXT,
    source_entry_id TEXT,
    processing_time_ms INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_operations_user ON memory_operations(user_id, created_at);

CREATE TRIGGER IF NOT EXISTS trg_operations_no_update
BEFORE UPDATE ON memory_operations
BEGIN
    SELECT RAISE(ABORT, 'memory_operations is append-only');
END;
CREATE TRIGGER IF NOT EXISTS trg_operations_no_delete
BEFORE DELETE ON memory_operations
BEGIN
    SELECT RAISE(ABORT, 'memory_operations is append-only');
END;
"""


class Database:
    """Connection factory and query helpers for the memory store."""

    def __init__(self, config: DatabaseConfig):
        """
        Initialize the store.

        Args:
            config: DatabaseConfig with the SQLite file path and busy timeout
        """
        self.config = config
        self.path = config.path

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection in autocommit mode with row mapping enabled."""
        try:
            conn = await aiosqlite.connect(self.path, isolation_level=None)
        except aiosqlite.Error as e:
            logger.error(f'Failed to open database {self.path}: {e}')
            raise DatabaseError(f'Failed to open database: {e}')

        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute(f'PRAGMA busy_timeout = {int(self.config.busy_timeout_ms)}')
            await conn.execute('PRAGMA foreign_keys = ON')
            yield conn
        finally:
            await conn.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run a block as one write transaction.

        Commits when the block exits normally, rolls back on any exception.
        Constraint failures surface as IntegrityViolation, other SQLite
        failures as DatabaseError; errors raised by the block itself pass
        through unchanged.
        """
        async with self.connect() as conn:
            try:
                await conn.execute('BEGIN IMMEDIATE')
            except aiosqlite.Error as e:
                logger.error(f'Failed to begin transaction: {e}')
                raise DatabaseError(f'Failed to begin transaction: {e}')

            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                try:
                    await conn.commit()
                except aiosqlite.Error as e:
                    await conn.rollback()
                    logger.error(f'Failed to commit transaction: {e}')
                    raise DatabaseError(f'Failed to commit transaction: {e}')

    async def initialize(self) -> None:
        """Create tables, indexes and triggers if they do not exist."""
        async with self.connect() as conn:
            try:
                await conn.execute('PRAGMA journal_mode = WAL')
                await conn.executescript(SCHEMA)
            except aiosqlite.Error as e:
                logger.error(f'Failed to initialize schema: {e}')
                raise DatabaseError(f'Failed to initialize schema: {e}')
        logger.info(f'Initialized memory store at {self.path}')

    async def fetch_all(self, sql: str, params: Iterable[Any] = ()) -> List[aiosqlite.Row]:
        """Run a read query on a fresh connection and return every row."""
        async with self.connect() as conn:
            return await fetch_all(conn, sql, params)

    async def fetch_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
        """Run a read query on a fresh connection and return the first row."""
        async with self.connect() as conn:
            return await fetch_one(conn, sql, params)

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run one autocommit write and return the affected row count."""
        async with self.connect() as conn:
            return await execute(conn, sql, params)

    async def health_check(self) -> bool:
        """
        Perform a health check on the store.

        Returns:
            True if a trivial query succeeds, False otherwise
        """
        try:
            row = await self.fetch_one('SELECT 1 AS ok')
            return row is not None and row['ok'] == 1
        except Exception as e:
            logger.error(f'Database health check failed: {e}')
            return False


def _raise_for(e: aiosqlite.Error, sql: str) -> None:
    statement = ' '.join(sql.split())[:80]
    if isinstance(e, aiosqlite.IntegrityError):
        logger.warning(f'Constraint violation on "{statement}": {e}')
        raise IntegrityViolation(str(e))
    logger.error(f'Query failed "{statement}": {e}')
    raise DatabaseError(f'Query failed: {e}')


async def fetch_all(conn: aiosqlite.Connection, sql: str, params: Iterable[Any] = ()) -> List[aiosqlite.Row]:
    """Run a query on an open connection and return every row."""
    try:
        async with conn.execute(sql, tuple(params)) as cursor:
            return list(await cursor.fetchall())
    except aiosqlite.Error as e:
        _raise_for(e, sql)


async def fetch_one(conn: aiosqlite.Connection, sql: str, params: Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
    """Run a query on an open connection and return the first row, if any."""
    try:
        async with conn.execute(sql, tuple(params)) as cursor:
            return await cursor.fetchone()
    except aiosqlite.Error as e:
        _raise_for(e, sql)


async def execute(conn: aiosqlite.Connection, sql: str, params: Iterable[Any] = ()) -> int:
    """Run a write on an open connection and return the affected row count."""
    try:
        cursor = await conn.execute(sql, tuple(params))
        rowcount = cursor.rowcount
        await cursor.close()
        return rowcount
    except aiosqlite.Error as e:
        _raise_for(e, sql)
