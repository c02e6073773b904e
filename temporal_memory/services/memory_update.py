"""
Memory update decision engine.

For one candidate fact: rank existing memories by similarity, ask the
reasoning service for exactly one of ADD / UPDATE / DELETE / NO-OP,
apply that decision in a single transaction together with its audit
record, then refresh the similarity index.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiosqlite

from ..models.core import STATUS_ACTIVE, STATUS_ARCHIVED, STATUS_SUPERSEDED, CandidateFact, Entity, SimilarMemory
from ..models.decisions import (MEMORY_UPDATE_TOOLS, AddDecision, Decision, DeleteDecision, NoOpDecision, UpdateDecision,
                                UpdateStrategy, decode_tool_call)
from ..utils.bedrock_embed import BedrockEmbedError
from ..utils.bedrock_llm import BedrockLLMError
from ..utils.config import DecisionConfig
from ..utils.database import Database, DatabaseError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from ..utils.timestamp_utils import to_iso, utc_now
from .entity_store import EntityStore, snapshot
from .fact_store import FactStore, FactStoreError
from .graph_store import GraphStore
from .operation_log import record_operation
from .sensitive_filter import SensitiveContentFilter

logger = get_logger(__name__)

REDACTED = '[REDACTED]'
MAX_NAME_LENGTH = 100

UPDATE_SYSTEM_PROMPT = """You are the memory manager of a personal knowledge assistant.

Your job is to decide how to handle a new piece of information by comparing it to existing memories.

## DECISION FRAMEWORK

### ADD - Use when:
- No similar memory exists (similarity < 50%)
- Information is genuinely new and worth remembering
- The fact provides unique value for future personalization

### UPDATE - Use when a similar memory exists:
- **replace**: Direct correction or complete change
  - Name misspelling: "Mike" -> "Michael"
  - Job change: "works at Google" -> "works at Notion"
  - Factual correction: "born in March" -> "born in May"
- **append**: Adding detail to an existing memory
  - "likes coffee" -> "likes coffee, especially cold brew"
  - "has a dog" -> "has a golden retriever named Max"
- **supersede**: Life change that makes old info historical (not wrong, just past)
  - "lives in NYC" + "moved to SF" -> mark NYC as historical, create SF as current
  - "dating Sarah" + "engaged to Sarah" -> supersede with the new relationship status

### DELETE - Use when:
- New information directly contradicts an existing memory
- The user explicitly says "forget", "don't remember", "delete this"
- **hard_delete=true** ONLY for explicit user deletion requests
- **hard_delete=false** for contradiction (archives instead of permanent delete)

### NOOP - Use when:
- Information already exists in equivalent form
- Information is too trivial (greetings, acknowledgments, "okay", "thanks")
- It is general knowledge not specific to the user
- Confidence is too low (<50%)

## CRITICAL RULES

1. **NEVER store**: passwords, government IDs, payment card numbers, API keys
2. **Be conservative with DELETE**: prefer UPDATE with supersede
3. **Detect temporal context**: "used to work at" is historical, not a delete
4. **Preserve history**: supersede keeps an audit trail, don't lose information
5. **Consider importance**: critical/high importance memories need stronger evidence to change
6. Only reference memory IDs listed under EXISTING SIMILAR MEMORIES

## OUTPUT

Call exactly ONE tool based on your decision. Include clear reasoning."""  # noqa: E501


class MemoryUpdateError(Exception):
    """Custom exception for memory update errors."""
    pass


@dataclass
class MemoryUpdateResult:
    """Outcome of one decision, mirroring its audit record."""
    operation: str
    reasoning: str
    operation_id: str = ''
    entity_id: Optional[str] = None
    strategy: Optional[str] = None
    old_content: Optional[str] = None
    new_content: Optional[str] = None
    old_version: Optional[int] = None
    new_version: Optional[int] = None
    hard_delete: Optional[bool] = None
    fact_id: Optional[str] = None
    existing_memory_id: Optional[str] = None
    merged: bool = False
    rejected: bool = False
    processing_time_ms: int = 0
    similar: List[SimilarMemory] = field(default_factory=list)
    deleted_snapshot: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'reasoning': self.reasoning,
            'operation_id': self.operation_id,
            'entity_id': self.entity_id,
            'strategy': self.strategy,
            'old_content': self.old_content,
            'new_content': self.new_content,
            'old_version': self.old_version,
            'new_version': self.new_version,
            'hard_delete': self.hard_delete,
            'fact_id': self.fact_id,
            'merged': self.merged,
            'rejected': self.rejected,
            'processing_time_ms': self.processing_time_ms,
        }


def build_update_prompt(candidate: CandidateFact, similar: List[SimilarMemory]) -> str:
    """Render the candidate and the memories it is compared against."""
    lines = [
        '## NEW INFORMATION TO PROCESS',
        '',
        f'**Content**: "{candidate.content}"',
        f'**Type**: {candidate.memory_type}',
        f'**Entity**: {candidate.entity_name or "N/A"}',
        f'**Sentiment**: {"neutral" if candidate.sentiment is None else candidate.sentiment}',
        f'**Importance**: {candidate.importance}',
        f'**Confidence**: {candidate.confidence}',
    ]
    if candidate.predicate and candidate.object_text:
        lines.append(f'**Fact**: {candidate.predicate} = "{candidate.object_text}"')
    if candidate.is_historical:
        lines.append('**Historical**: Yes (past information)')
    if candidate.valid_from:
        lines.append(f'**Starts**: {to_iso(candidate.valid_from)}')
    if candidate.expires_at:
        lines.append(f'**Expires**: {to_iso(candidate.expires_at)}')
    if candidate.sensitivity_level and candidate.sensitivity_level != 'normal':
        lines.append(f'**Sensitivity**: {candidate.sensitivity_level}')

    lines.extend(['', '## EXISTING SIMILAR MEMORIES', ''])
    if similar:
        for i, memory in enumerate(similar, start=1):
            lines.extend([
                f'### Memory {i}',
                f'- **ID**: {memory.id}',
                f'- **Content**: "{memory.content}"',
                f'- **Type**: {memory.memory_type or memory.entity_type}',
                f'- **Importance**: {memory.importance}',
                f'- **Last Updated**: {to_iso(memory.updated_at) or "unknown"}',
                f'- **Similarity**: {memory.similarity * 100:.1f}%',
            ])
            if memory.is_historical:
                lines.append('- **Historical**: Yes')
            lines.append('')
    else:
        lines.append('No similar existing memories found.')

    lines.extend([
        '', '## YOUR TASK', '', 'Analyze the new information against existing memories and decide the appropriate operation.',
        'Call exactly ONE tool: add_memory, update_memory, delete_memory, or no_operation.'
    ])
    return '\n'.join(lines)


class MemoryUpdateEngine:
    """Decide and apply ADD / UPDATE / DELETE / NO-OP for candidate facts."""

    def __init__(self,
                 db: Database,
                 entities: EntityStore,
                 fact_store: FactStore,
                 llm,
                 embedder,
                 vector_index,
                 config: DecisionConfig,
                 sensitive_filter: Optional[SensitiveContentFilter] = None,
                 graph: Optional[GraphStore] = None,
                 on_change: Optional[Callable[[str], Awaitable[None]]] = None):
        """
        Initialize the engine.

        Args:
            db: Relational store
            entities: Entity repository
            fact_store: Bi-temporal fact store
            llm: Reasoning service exposing invoke_tools()
            embedder: Embedding service exposing embed_query() and embed_document()
            vector_index: Similarity index exposing similar(), index_entity(), set_status(), delete_entity()
            config: DecisionConfig with top-K and similarity floor
            sensitive_filter: Detector for forbidden identifiers
            graph: Graph store whose edges follow a superseded entity
            on_change: Awaited with the user ID after every committed mutation
        """
        self.db = db
        self.entities = entities
        self.fact_store = fact_store
        self.llm = llm
        self.embedder = embedder
        self.vector_index = vector_index
        self.config = config
        self.sensitive_filter = sensitive_filter or SensitiveContentFilter()
        self.graph = graph or GraphStore(db)
        self.on_change = on_change

        logger.info('Initialized MemoryUpdateEngine')

    async def process_candidate(self, user_id: str, candidate: CandidateFact, job_id: Optional[str] = None) -> MemoryUpdateResult:
        """Run one candidate fact through the decision procedure.

        Args:
            user_id: Owning user
            candidate: Candidate fact produced by extraction
            job_id: Queue job that carried the candidate, for the audit log

        Returns:
            MemoryUpdateResult describing the applied decision

        Raises:
            MemoryUpdateError: If similarity search, the reasoning call or the write fails
        """
        start = time.perf_counter()

        category = self.sensitive_filter.detect_any([candidate.content, candidate.object_text, candidate.entity_name])
        if category:
            logger.warning(f'Rejected candidate for user {user_id}: contains {category}')
            return await self._reject(user_id, candidate, category, job_id, start)

        if not candidate.content.strip():
            decision = NoOpDecision(reasoning='Empty candidate')
            return await self._apply(user_id, candidate, decision, [], job_id, start)

        try:
            similar = await self.find_similar(user_id, candidate)
            tool_call = await self.llm.invoke_tools(messages=[{
                'role': 'user',
                'content': [{
                    'text': build_update_prompt(candidate, similar)
                }]
            }],
                                                    system_prompt=UPDATE_SYSTEM_PROMPT,
                                                    tools=MEMORY_UPDATE_TOOLS)
        except (BedrockEmbedError, BedrockLLMError, OpenSearchError) as e:
            logger.error(f'Decision inputs unavailable for user {user_id}: {e}')
            raise MemoryUpdateError(f'Memory decision failed: {e}')

        decision = decode_tool_call(tool_call, {memory.id for memory in similar}, candidate.content)
        logger.debug(f'Decision for user {user_id}: {type(decision).__name__}')
        return await self._apply(user_id, candidate, decision, similar, job_id, start)

    async def find_similar(self, user_id: str, candidate: CandidateFact) -> List[SimilarMemory]:
        """Top-K active memories for a candidate, exact name matches first.

        Args:
            user_id: Owning user
            candidate: Candidate fact

        Returns:
            Up to top_k SimilarMemory records, most similar first
        """
        vector = await self.embedder.embed_query(candidate.content)
        hits = await self.vector_index.similar(user_id, vector, top_k=self.config.top_k, min_similarity=self.config.min_similarity)
        scores = dict(hits)
        entities = {e.id: e for e in await self.entities.get_many(user_id, list(scores))}
        similar = [SimilarMemory.from_entity(entities[entity_id], score) for entity_id, score in hits if entity_id in entities]

        if candidate.entity_name:
            named = await self.entities.get_active_by_name(user_id, candidate.entity_name)
            if named is not None:
                similar = [m for m in similar if m.id != named.id]
                similar.insert(0, SimilarMemory.from_entity(named, 1.0))

        return similar[:self.config.top_k]

    async def _reject(self, user_id: str, candidate: CandidateFact, category: str, job_id: Optional[str],
                      start: float) -> MemoryUpdateResult:
        result = MemoryUpdateResult(operation='NOOP', reasoning=f'Rejected: candidate contains a {category} identifier', rejected=True)
        redacted = CandidateFact(content=REDACTED, memory_type=candidate.memory_type, source_entry_id=candidate.source_entry_id)
        try:
            async with self.db.transaction() as conn:
                result.processing_time_ms = int((time.perf_counter() - start) * 1000)
                result.operation_id = await self._log_operation(conn, user_id, redacted, [], result, job_id)
        except DatabaseError as e:
            logger.error(f'Failed to record rejection for user {user_id}: {e}')
            raise MemoryUpdateError(f'Memory decision failed: {e}')
        return result

    async def _apply(self, user_id: str, candidate: CandidateFact, decision: Decision, similar: List[SimilarMemory],
                     job_id: Optional[str], start: float) -> MemoryUpdateResult:
        now = utc_now()
        try:
            async with self.db.transaction() as conn:
                if isinstance(decision, AddDecision):
                    result = await self._add(conn, user_id, candidate, decision, now)
                elif isinstance(decision, UpdateDecision):
                    result = await self._update(conn, user_id, candidate, decision, now)
                elif isinstance(decision, DeleteDecision):
                    result = await self._delete(conn, user_id, decision, now)
                else:
                    result = await self._noop(conn, user_id, candidate, decision, now)

                if result.entity_id and candidate.sentiment is not None and result.operation in ('ADD', 'UPDATE', 'NOOP'):
                    await self.entities.record_sentiment(conn, result.entity_id, candidate.sentiment, now, candidate.source_entry_id)

                result.similar = similar
                result.processing_time_ms = int((time.perf_counter() - start) * 1000)
                result.operation_id = await self._log_operation(conn, user_id, candidate, similar, result, job_id)
        except (DatabaseError, FactStoreError) as e:
            logger.error(f'Failed to apply {type(decision).__name__} for user {user_id}: {e}')
            raise MemoryUpdateError(f'Memory update failed: {e}')

        logger.info(f'{result.operation} for user {user_id} (entity {result.entity_id}, {result.processing_time_ms} ms)')

        await self._refresh_index(user_id, result)
        if self.on_change is not None and (result.operation != 'NOOP' or result.existing_memory_id):
            await self.on_change(user_id)
        return result

    async def _attach_fact(self, conn: aiosqlite.Connection, user_id: str, entity_id: str, candidate: CandidateFact,
                           now: datetime) -> Optional[str]:
        if not (candidate.predicate and candidate.object_text):
            return None
        fact = await self.fact_store.create_fact(user_id,
                                                 entity_id,
                                                 candidate.predicate,
                                                 candidate.object_text,
                                                 confidence=candidate.confidence,
                                                 source_id=candidate.source_entry_id,
                                                 valid_from=candidate.valid_from or now,
                                                 conn=conn)
        return fact.id

    async def _add(self, conn, user_id: str, candidate: CandidateFact, decision: AddDecision, now: datetime) -> MemoryUpdateResult:
        name = (candidate.entity_name or decision.content)[:MAX_NAME_LENGTH]
        existing = await self.entities.get_active_by_name(user_id, name, conn=conn)

        if existing is not None:
            # Same active name: merge into it rather than create a duplicate
            await self.entities.reinforce(conn, existing, now, context_note=decision.content)
            fact_id = await self._attach_fact(conn, user_id, existing.id, candidate, now)
            return MemoryUpdateResult(operation='ADD',
                                      reasoning=f'{decision.reasoning} (merged into existing memory {existing.id})'.strip(),
                                      entity_id=existing.id,
                                      new_content=decision.content,
                                      old_version=existing.version,
                                      new_version=existing.version,
                                      fact_id=fact_id,
                                      merged=True)

        entity_id = await self.entities.insert(conn,
                                               user_id,
                                               name,
                                               now,
                                               summary=decision.content,
                                               entity_type=candidate.entity_type,
                                               memory_type=decision.memory_type,
                                               relationship=candidate.relationship,
                                               importance=candidate.importance,
                                               context_note=decision.content,
                                               is_historical=candidate.is_historical,
                                               effective_from=candidate.valid_from,
                                               expires_at=candidate.expires_at,
                                               sensitivity_level=candidate.sensitivity_level,
                                               confidence=candidate.confidence)
        fact_id = await self._attach_fact(conn, user_id, entity_id, candidate, now)
        return MemoryUpdateResult(operation='ADD',
                                  reasoning=decision.reasoning,
                                  entity_id=entity_id,
                                  new_content=decision.content,
                                  new_version=1,
                                  fact_id=fact_id)

    async def _load_target(self, conn, user_id: str, memory_id: str) -> Optional[Entity]:
        entity = await self.entities.get(memory_id, conn=conn)
        if entity is None or entity.user_id != user_id or entity.status != STATUS_ACTIVE:
            logger.warning(f'Decision target {memory_id} is no longer an active memory of user {user_id}')
            return None
        return entity

    async def _update(self, conn, user_id: str, candidate: CandidateFact, decision: UpdateDecision,
                      now: datetime) -> MemoryUpdateResult:
        existing = await self._load_target(conn, user_id, decision.memory_id)
        if existing is None:
            return MemoryUpdateResult(operation='NOOP', reasoning=f'Target {decision.memory_id} no longer active: {decision.reasoning}')

        if decision.strategy == UpdateStrategy.SUPERSEDE:
            await self.entities.set_status(conn, existing.id, STATUS_SUPERSEDED, now, is_historical=True)
            new_id = await self.entities.insert(conn,
                                                user_id,
                                                existing.name,
                                                now,
                                                summary=decision.new_content,
                                                entity_type=existing.entity_type,
                                                memory_type=existing.memory_type,
                                                relationship=candidate.relationship or existing.relationship,
                                                importance=existing.importance,
                                                importance_value=existing.importance_score,
                                                sentiment=candidate.sentiment if candidate.sentiment is not None else existing.sentiment_average,
                                                context_note=decision.new_content,
                                                effective_from=candidate.valid_from,
                                                expires_at=candidate.expires_at,
                                                sensitivity_level=candidate.sensitivity_level or existing.sensitivity_level,
                                                confidence=candidate.confidence,
                                                version=existing.version + 1,
                                                supersedes_id=existing.id,
                                                mention_count=existing.mention_count + 1,
                                                first_mentioned_at=existing.first_mentioned_at)
            await self.entities.set_status(conn, existing.id, STATUS_SUPERSEDED, now, superseded_by=new_id)
            await self.fact_store.carry_forward_facts(conn, existing.id, new_id, now)
            await self.graph.repoint_edges(conn, user_id, existing.id, new_id)
            fact_id = await self._attach_fact(conn, user_id, new_id, candidate, now)
            return MemoryUpdateResult(operation='UPDATE',
                                      reasoning=decision.reasoning,
                                      entity_id=new_id,
                                      strategy=decision.strategy.value,
                                      old_content=existing.summary,
                                      new_content=decision.new_content,
                                      old_version=existing.version,
                                      new_version=existing.version + 1,
                                      existing_memory_id=existing.id,
                                      fact_id=fact_id)

        if decision.strategy == UpdateStrategy.APPEND:
            merged = f'{existing.summary}. {decision.new_content}' if existing.summary else decision.new_content
        else:
            merged = decision.new_content

        new_version = await self.entities.rewrite(conn, existing, merged, now, context_note=decision.new_content)
        fact_id = await self._attach_fact(conn, user_id, existing.id, candidate, now)
        return MemoryUpdateResult(operation='UPDATE',
                                  reasoning=decision.reasoning,
                                  entity_id=existing.id,
                                  strategy=decision.strategy.value,
                                  old_content=existing.summary,
                                  new_content=merged,
                                  old_version=existing.version,
                                  new_version=new_version,
                                  fact_id=fact_id)

    async def _delete(self, conn, user_id: str, decision: DeleteDecision, now: datetime) -> MemoryUpdateResult:
        existing = await self._load_target(conn, user_id, decision.memory_id)
        if existing is None:
            return MemoryUpdateResult(operation='NOOP', reasoning=f'Target {decision.memory_id} no longer active: {decision.reasoning}')

        if decision.hard_delete:
            await self.entities.hard_delete(conn, existing.id)
        else:
            await self.entities.set_status(conn, existing.id, STATUS_ARCHIVED, now)

        return MemoryUpdateResult(operation='DELETE',
                                  reasoning=decision.reasoning,
                                  entity_id=existing.id,
                                  old_content=existing.summary,
                                  old_version=existing.version,
                                  hard_delete=decision.hard_delete,
                                  deleted_snapshot=snapshot(existing))

    async def _noop(self, conn, user_id: str, candidate: CandidateFact, decision: NoOpDecision, now: datetime) -> MemoryUpdateResult:
        result = MemoryUpdateResult(operation='NOOP', reasoning=decision.reasoning)
        if decision.existing_memory_id:
            existing = await self._load_target(conn, user_id, decision.existing_memory_id)
            if existing is not None:
                await self.entities.reinforce(conn, existing, now, context_note=candidate.content)
                result.entity_id = existing.id
                result.existing_memory_id = existing.id
        return result

    async def _log_operation(self, conn, user_id: str, candidate: CandidateFact, similar: List[SimilarMemory],
                             result: MemoryUpdateResult, job_id: Optional[str]) -> str:
        return await record_operation(conn,
                                      user_id,
                                      result.operation,
                                      candidate.content,
                                      candidate_memory_type=candidate.memory_type,
                                      similar_memories=[memory.to_audit() for memory in similar],
                                      reasoning=result.reasoning,
                                      entity_id=result.entity_id,
                                      merge_strategy=result.strategy,
                                      old_content=result.old_content,
                                      new_content=result.new_content,
                                      old_version=result.old_version,
                                      new_version=result.new_version,
                                      hard_delete=result.hard_delete,
                                      deleted_snapshot=result.deleted_snapshot,
                                      job_id=job_id,
                                      source_entry_id=candidate.source_entry_id,
                                      processing_time_ms=result.processing_time_ms)

    async def _refresh_index(self, user_id: str, result: MemoryUpdateResult) -> None:
        """Bring the similarity index in line with a committed decision.

        The store is authoritative; index failures are logged and the entity
        keeps a NULL embedding so maintenance can re-index it later.
        """
        try:
            if result.operation == 'DELETE':
                if result.hard_delete:
                    await self.vector_index.delete_entity(result.entity_id)
                else:
                    await self.vector_index.set_status(result.entity_id, STATUS_ARCHIVED)
                return

            if result.operation == 'UPDATE' and result.strategy == UpdateStrategy.SUPERSEDE.value:
                await self.vector_index.set_status(result.existing_memory_id, STATUS_SUPERSEDED)

            if result.operation in ('ADD', 'UPDATE') and result.entity_id and not result.merged:
                await self.index_entity(user_id, result.entity_id)
        except (BedrockEmbedError, OpenSearchError, DatabaseError) as e:
            logger.error(f'Similarity index refresh failed for entity {result.entity_id}: {e}')

    async def index_entity(self, user_id: str, entity_id: str) -> None:
        """Embed an entity's current summary, store the vector and index it."""
        entity = await self.entities.get(entity_id)
        if entity is None or entity.status != STATUS_ACTIVE:
            return
        vector = await self.embedder.embed_document(entity.summary or entity.name)
        await self.entities.store_embedding(entity.id, vector)
        await self.vector_index.index_entity(entity.id,
                                             user_id,
                                             entity.name,
                                             entity.entity_type,
                                             vector,
                                             status=entity.status,
                                             updated_at=to_iso(entity.updated_at))

