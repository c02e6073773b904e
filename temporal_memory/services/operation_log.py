"""
Append-only audit log of memory decisions.
"""

import uuid
from typing import Any, Dict, List, Optional

import aiosqlite

from ..models.core import MemoryOperation
from ..utils.database import Database, execute
from ..utils.json_utils import dump_column
from ..utils.timestamp_utils import to_iso, utc_now


async def record_operation(conn: aiosqlite.Connection,
                           user_id: str,
                           operation: str,
                           candidate_content: str,
                           candidate_memory_type: Optional[str] = None,
                           similar_memories: Optional[List[Dict[str, Any]]] = None,
                           reasoning: Optional[str] = None,
                           entity_id: Optional[str] = None,
                           merge_strategy: Optional[str] = None,
                           old_content: Optional[str] = None,
                           new_content: Optional[str] = None,
                           old_version: Optional[int] = None,
                           new_version: Optional[int] = None,
                           hard_delete: Optional[bool] = None,
                           deleted_snapshot: Optional[Dict[str, Any]] = None,
                           job_id: Optional[str] = None,
                           source_entry_id: Optional[str] = None,
                           processing_time_ms: int = 0) -> str:
    """
    Write one audit record inside the caller's transaction.

    Args:
        conn: Open transaction that also carries the mutation being audited
        user_id: Owning user
        operation: ADD, UPDATE, DELETE, NOOP or CONSOLIDATE
        candidate_content: Content that was evaluated (redacted for rejections)

    Returns:
        ID of the audit record
    """
    operation_id = str(uuid.uuid4())
    await execute(
        conn, 'INSERT INTO memory_operations (id, user_id, operation, candidate_content, candidate_memory_type, '
        'similar_memories, reasoning, entity_id, merge_strategy, old_content, new_content, old_version, new_version, '
        'hard_delete, deleted_snapshot, job_id, source_entry_id, processing_time_ms, created_at) '
        'VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)',
        (operation_id, user_id, operation, candidate_content, candidate_memory_type, dump_column(similar_memories or []), reasoning,
         entity_id, merge_strategy, old_content, new_content, old_version, new_version,
         None if hard_delete is None else int(hard_delete), dump_column(deleted_snapshot) if deleted_snapshot else None, job_id,
         source_entry_id, processing_time_ms, to_iso(utc_now())))
    return operation_id


async def list_operations(db: Database, user_id: str, limit: int = 50, operation: Optional[str] = None) -> List[MemoryOperation]:
    """Most recent audit records for a user."""
    sql = 'SELECT * FROM memory_operations WHERE user_id = ?'
    params: List[Any] = [user_id]
    if operation:
        sql += ' AND operation = ?'
        params.append(operation)
    sql += ' ORDER BY created_at DESC LIMIT ?'
    params.append(limit)
    return [MemoryOperation.from_row(row) for row in await db.fetch_all(sql, params)]
