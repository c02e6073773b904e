"""
Duplicate memory consolidation.

Compares the stored embeddings of a user's active entities pairwise and
merges pairs above a cosine threshold: the higher-scored entity keeps a
summary merged by the LLM, the other is archived with a link to it.
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import STATUS_ACTIVE, STATUS_ARCHIVED, Entity
from ..utils.bedrock_embed import BedrockEmbedError
from ..utils.bedrock_llm import BedrockLLMError
from ..utils.config import ConsolidationConfig
from ..utils.database import Database, DatabaseError, execute
from ..utils.json_utils import dump_column
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from ..utils.timestamp_utils import days_between, to_iso, utc_now
from .entity_store import EntityStore, push_note
from .operation_log import record_operation

logger = get_logger(__name__)

MERGE_SYSTEM_PROMPT = """You merge two memory records about the same thing into one.

Rules:
- Keep every distinct fact from both records
- Drop repetition
- Prefer the more recent or more specific wording when they disagree
- Write at most three sentences in third person
- Return only the merged text, nothing else"""


class ConsolidationError(Exception):
    """Custom exception for consolidation errors."""
    pass


@dataclass
class MergeCandidate:
    first: Entity
    second: Entity
    similarity: float


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of two vectors; 0.0 for empty, mismatched or zero vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def keep_score(entity: Entity, now: datetime) -> float:
    """Importance plus a small bonus per mention and per year of age."""
    age_years = days_between(entity.created_at, now) / 365.0 if entity.created_at else 0.0
    return entity.importance_score + 0.01 * entity.mention_count + max(0.0, age_years)


class ConsolidationService:
    """Find and merge near-duplicate memories."""

    def __init__(self, db: Database, entities: EntityStore, llm, config: ConsolidationConfig, update_engine=None):
        """
        Initialize the service.

        Args:
            db: Relational store
            entities: Entity repository
            llm: Reasoning service used to merge summaries
            config: ConsolidationConfig with threshold and preview size
            update_engine: Decision engine used to re-index merged and unindexed entities
        """
        self.db = db
        self.entities = entities
        self.llm = llm
        self.config = config
        self.update_engine = update_engine

    async def find_candidates(self, user_id: str) -> List[MergeCandidate]:
        """Pairs of active entities whose embeddings are at least `threshold` similar, most similar first."""
        embedded = [e for e in await self.entities.list_active(user_id) if e.embedding]
        candidates = []
        for i, first in enumerate(embedded):
            for second in embedded[i + 1:]:
                similarity = cosine_similarity(first.embedding, second.embedding)
                if similarity >= self.config.threshold:
                    candidates.append(MergeCandidate(first, second, similarity))
        candidates.sort(key=lambda c: c.similarity, reverse=True)
        return candidates

    async def consolidate(self, user_id: str, force: bool = False, job_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Preview or apply consolidation for one user.

        Args:
            user_id: Owning user
            force: Apply merges; without it only a preview is returned
            job_id: Queue job that triggered the run, for the audit log

        Returns:
            Preview dict, or counts of merged pairs and re-indexed entities

        Raises:
            ConsolidationError: If a merge cannot be written
        """
        start = time.perf_counter()
        candidates = await self.find_candidates(user_id)

        if not force:
            return {
                'candidates': len(candidates),
                'preview': [{
                    'entity1': c.first.name,
                    'entity2': c.second.name,
                    'similarity': f'{c.similarity * 100:.1f}%'
                } for c in candidates[:self.config.preview_limit]],
                'message': 'Run with force=true to consolidate'
            }

        merged_away = set()
        consolidated = 0
        keepers = []
        for candidate in candidates:
            if candidate.first.id in merged_away or candidate.second.id in merged_away:
                continue
            now = utc_now()
            if keep_score(candidate.first, now) >= keep_score(candidate.second, now):
                keeper, merged = candidate.first, candidate.second
            else:
                keeper, merged = candidate.second, candidate.first
            # A keeper may already have absorbed another entity in this run
            keeper = await self.entities.get(keeper.id) or keeper

            summary = await self._merge_summaries(keeper, merged)
            await self._apply_merge(user_id, keeper, merged, summary, candidate.similarity, job_id, now, start)
            merged_away.add(merged.id)
            keepers.append(keeper.id)
            consolidated += 1

        reindexed = await self.reindex_missing(user_id)
        logger.info(f'Consolidated {consolidated} memory pairs for user {user_id}, re-indexed {reindexed}')
        return {'consolidated': consolidated, 'reindexed': reindexed, 'kept': keepers}

    async def _merge_summaries(self, keeper: Entity, merged: Entity) -> str:
        first = keeper.summary or keeper.name
        second = merged.summary or merged.name
        try:
            text, _ = await self.llm.generate_response(messages=[{
                'role': 'user',
                'content': [{
                    'text': f'Record A:\n{first}\n\nRecord B:\n{second}'
                }]
            }],
                                                       system_prompt=MERGE_SYSTEM_PROMPT)
        except BedrockLLMError as e:
            logger.warning(f'Summary merge via LLM failed, concatenating instead: {e}')
            text = ''
        text = (text or '').strip()
        return text or f'{first}. {second}'

    async def _apply_merge(self, user_id: str, keeper: Entity, merged: Entity, summary: str, similarity: float,
                           job_id: Optional[str], now: datetime, start: float) -> None:
        notes = keeper.context_notes
        for note in merged.context_notes:
            notes = push_note(notes, note, self.entities.ring_size)
        try:
            async with self.db.transaction() as conn:
                await execute(
                    conn, 'UPDATE entities SET summary = ?, importance_score = ?, mention_count = ?, version = version + 1, '
                    'context_notes = ?, embedding = NULL, updated_at = ? WHERE id = ? AND status = ?',
                    (summary, max(keeper.importance_score, merged.importance_score), keeper.mention_count + merged.mention_count,
                     dump_column(notes), to_iso(now), keeper.id, STATUS_ACTIVE))
                await self.entities.set_status(conn, merged.id, STATUS_ARCHIVED, now, superseded_by=keeper.id)
                await record_operation(conn,
                                       user_id,
                                       'CONSOLIDATE',
                                       merged.summary or merged.name,
                                       candidate_memory_type=merged.memory_type,
                                       reasoning=f'Merged into {keeper.name} ({similarity * 100:.1f}% similar)',
                                       entity_id=keeper.id,
                                       old_content=keeper.summary,
                                       new_content=summary,
                                       old_version=keeper.version,
                                       new_version=keeper.version + 1,
                                       job_id=job_id,
                                       processing_time_ms=int((time.perf_counter() - start) * 1000))
        except DatabaseError as e:
            logger.error(f'Failed to merge entity {merged.id} into {keeper.id}: {e}')
            raise ConsolidationError(f'Consolidation failed: {e}')

        if self.update_engine is not None:
            try:
                await self.update_engine.vector_index.set_status(merged.id, STATUS_ARCHIVED)
            except OpenSearchError as e:
                logger.warning(f'Could not mark entity {merged.id} archived in the similarity index: {e}')

    async def reindex_missing(self, user_id: str) -> int:
        """Embed and index active entities that have no stored embedding."""
        if self.update_engine is None:
            return 0
        reindexed = 0
        for entity in await self.entities.missing_embeddings(user_id):
            try:
                await self.update_engine.index_entity(user_id, entity.id)
                reindexed += 1
            except (BedrockEmbedError, OpenSearchError) as e:
                logger.warning(f'Re-index failed for entity {entity.id}: {e}')
        return reindexed
