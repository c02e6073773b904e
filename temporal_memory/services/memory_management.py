"""
Memory Management Service for unified memory operations.

Wires the store, the remote clients and every memory component together,
registers the job handlers with the worker and exposes the operations the
MCP interface calls.
"""

import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.core import CandidateFact, Fact, Identity, MemoryJob
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, config as default_config
from ..utils.database import Database
from ..utils.health_check import get_health_status, get_system_info
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import to_iso, utc_now
from .category_summary import CategorySummaryService
from .consolidation import ConsolidationService
from .context_builder import build_compact_document, build_document, build_structured_context
from .decay_scheduler import DecayScheduler
from .entity_extraction import EntityExtractionService
from .entity_store import EntityStore
from .evolution_detector import EvolutionDetector, format_for_context
from .fact_store import FactStore
from .graph_store import CO_OCCURS, GraphStore
from .ingest import IngestService
from .job_queue import JobQueue
from .knowledge_graph import KnowledgeGraph, KnowledgeGraphService
from .memory_update import MemoryUpdateEngine, MemoryUpdateResult
from .operation_log import list_operations
from .profile_cache import ProfileCache
from .sensitive_filter import SensitiveContentFilter
from .worker import MemoryWorker

logger = get_logger(__name__)

CONTEXT_FORMATS = ('document', 'compact', 'structured')


class MemoryManagementError(Exception):
    """Custom exception for memory management errors."""
    pass


def fact_to_dict(fact: Fact) -> Dict[str, Any]:
    return {
        'id': fact.id,
        'entity_id': fact.entity_id,
        'predicate': fact.predicate,
        'object': fact.object_text,
        'confidence': fact.confidence,
        'valid_from': to_iso(fact.valid_from),
        'valid_to': to_iso(fact.valid_to),
        'is_current': fact.is_current,
        'version': fact.version,
        'invalidation_reason': fact.invalidation_reason,
        'mention_count': fact.mention_count,
    }


class MemoryManagementService:
    """Unified service for memory ingestion, decisions, jobs, maintenance and context retrieval."""

    def __init__(self,
                 app_config: Optional[AppConfig] = None,
                 db: Optional[Database] = None,
                 llm=None,
                 embedder=None,
                 vector_index=None,
                 clock=time.monotonic):
        """
        Initialize the memory management service.

        Remote clients are created from configuration unless injected.

        Args:
            app_config: Application configuration (module config if None)
            db: Relational store
            llm: Reasoning service client
            embedder: Embedding service client
            vector_index: Similarity index client
            clock: Clock for the profile cache
        """
        cfg = app_config or default_config
        self.config = cfg
        self.db = db or Database(cfg.database)
        self.llm = llm or BedrockLLM(cfg.bedrock_llm)
        self.embedder = embedder or BedrockEmbed(cfg.bedrock_embed)
        self.vector_index = vector_index or OpenSearchClient(cfg.opensearch)

        self.cache = ProfileCache(cfg.cache, clock=clock)
        self.entities = EntityStore(self.db, ring_size=cfg.decision.context_ring_size)
        self.fact_store = FactStore(self.db)
        self.graph = GraphStore(self.db)
        self.job_queue = JobQueue(self.db, cfg.queue)
        self.sensitive_filter = SensitiveContentFilter()
        self.update_engine = MemoryUpdateEngine(self.db,
                                                self.entities,
                                                self.fact_store,
                                                self.llm,
                                                self.embedder,
                                                self.vector_index,
                                                cfg.decision,
                                                sensitive_filter=self.sensitive_filter,
                                                graph=self.graph,
                                                on_change=self.cache.invalidate_async)
        self.decay = DecayScheduler(self.db,
                                    self.job_queue,
                                    cfg.decay,
                                    vector_index=self.vector_index,
                                    on_change=self.cache.invalidate_async)
        self.consolidation = ConsolidationService(self.db, self.entities, self.llm, cfg.consolidation, update_engine=self.update_engine)
        self.summaries = CategorySummaryService(self.db, self.llm)
        self.extractor = EntityExtractionService(self.llm, sensitive_filter=self.sensitive_filter)
        self.ingest = IngestService(self.db,
                                    self.entities,
                                    self.graph,
                                    self.job_queue,
                                    self.extractor,
                                    cfg.extraction,
                                    update_engine=self.update_engine,
                                    on_change=self.cache.invalidate_async)
        self.detector = EvolutionDetector(self.db, self.fact_store, cfg.contradiction)
        self.knowledge_graph = KnowledgeGraphService(self.db, cfg.context)

        self.worker = MemoryWorker(self.job_queue)
        self.worker.register('update', self._handle_update)
        self.worker.register('consolidate', self._handle_consolidate)
        self.worker.register('decay', self._handle_decay)
        self.worker.register('cleanup', self._handle_cleanup)
        self.worker.register('graph_update', self._handle_graph_update)
        self.worker.register('summary', self._handle_summary)
        self.worker.register('extract', self.ingest.process_extract_job)

        logger.info('Initialized MemoryManagementService')

    async def initialize(self) -> None:
        """Create the schema and the similarity index."""
        await self.db.initialize()
        try:
            await self.vector_index.create_index_if_not_exists()
        except OpenSearchError as e:
            logger.warning(f'Failed to create OpenSearch index: {e}')

    # Job handlers

    async def _handle_update(self, job: MemoryJob) -> Dict[str, Any]:
        candidate = CandidateFact.from_payload(job.payload.get('candidate') or {})
        result = await self.update_engine.process_candidate(job.user_id, candidate, job_id=job.id)
        return result.to_dict()

    async def _handle_consolidate(self, job: MemoryJob) -> Dict[str, Any]:
        return await self.consolidation.consolidate(job.user_id, force=bool(job.payload.get('force')), job_id=job.id)

    async def _handle_decay(self, job: MemoryJob) -> Dict[str, Any]:
        return (await self.decay.run_decay(job.user_id)).to_dict()

    async def _handle_cleanup(self, job: MemoryJob) -> Dict[str, Any]:
        return (await self.decay.run_archival(job.user_id)).to_dict()

    async def _handle_graph_update(self, job: MemoryJob) -> Dict[str, Any]:
        payload = job.payload
        strength = await self.graph.upsert_relationship(job.user_id,
                                                        payload['source_entity_id'],
                                                        payload['target_entity_id'],
                                                        relationship_type=payload.get('relationship_type') or CO_OCCURS,
                                                        strength=payload.get('strength'),
                                                        context=payload.get('context'))
        await self.cache.invalidate_async(job.user_id)
        return {'strength': strength, 'skipped': strength is None}

    async def _handle_summary(self, job: MemoryJob) -> Dict[str, Any]:
        result = await self.summaries.regenerate(job.user_id, job.payload['category'])
        if result.get('updated'):
            await self.cache.invalidate_async(job.user_id)
        return result

    # Write path

    async def submit_entry(self,
                           user_id: str,
                           entry_id: str,
                           content: str,
                           category: Optional[str] = None,
                           sentiment: Optional[float] = None,
                           created_at: Optional[datetime] = None,
                           title: Optional[str] = None) -> str:
        """Record entry metadata and queue extraction; returns the job ID."""
        return await self.ingest.submit_entry(user_id, entry_id, content, category, sentiment, created_at, title)

    async def process_candidate(self, user_id: str, candidate: CandidateFact) -> MemoryUpdateResult:
        """Run the decision procedure for one candidate synchronously."""
        return await self.update_engine.process_candidate(user_id, candidate)

    async def enqueue_job(self, user_id: Optional[str], job_type: str, payload: Optional[Dict[str, Any]] = None, **kwargs) -> str:
        return await self.job_queue.enqueue(user_id, job_type, payload, **kwargs)

    async def process_jobs(self, batch_size: Optional[int] = None) -> Dict[str, Any]:
        """Run one worker batch."""
        return await self.worker.process_batch(batch_size)

    async def run_maintenance(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Run the decay and archival passes now."""
        return await self.decay.run_maintenance(user_id)

    async def schedule_maintenance(self, user_id: str) -> List[str]:
        """Queue decay, cleanup and a consolidation preview for one user."""
        return [
            await self.job_queue.enqueue(user_id, 'decay'),
            await self.job_queue.enqueue(user_id, 'cleanup'),
            await self.job_queue.enqueue(user_id, 'consolidate', {'force': False}),
        ]

    async def save_identity(self, user_id: str, identity: Identity) -> None:
        await self.knowledge_graph.save_identity(user_id, identity)
        self.cache.invalidate(user_id)

    # Read path

    async def load_graph(self, user_id: str) -> KnowledgeGraph:
        return await self.knowledge_graph.load_full_graph(user_id)

    async def get_memory_context(self,
                                 user_id: str,
                                 focus: Optional[str] = None,
                                 format: str = 'document',
                                 max_chars: Optional[int] = None) -> Any:
        """
        Assemble the user's memory context.

        Args:
            user_id: Owning user
            focus: Entity name to prioritize
            format: 'document', 'compact' or 'structured'
            max_chars: Size budget for the document format

        Returns:
            Markdown string, or a dict for the structured format

        Raises:
            MemoryManagementError: If the format is unknown
        """
        if format not in CONTEXT_FORMATS:
            raise MemoryManagementError(f'Unknown context format: {format}')

        variant = f'{format}:{focus or ""}:{max_chars or ""}'
        cached = self.cache.get(user_id, variant)
        if cached is not None:
            return cached

        graph = await self.knowledge_graph.load_full_graph(user_id)
        if format == 'compact':
            context = build_compact_document(graph)
        elif format == 'structured':
            context = build_structured_context(graph, focus=focus, config=self.config.context)
        else:
            context = build_document(graph, focus=focus, max_chars=max_chars, config=self.config.context)

        # Partial graphs are served but not cached
        if not graph.errors:
            self.cache.put(user_id, context, variant)
        return context

    async def traverse(self, user_id: str, entity_name: str, max_depth: int = 2, min_strength: float = 0.3) -> List[Dict[str, Any]]:
        entity = await self._require_entity(user_id, entity_name)
        hits = await self.knowledge_graph.traverse_graph(user_id, entity.id, max_depth=max_depth, min_strength=min_strength)
        return [{
            'entity_id': hit.entity_id,
            'name': hit.name,
            'type': hit.entity_type,
            'path': hit.path,
            'relationship_types': hit.relationship_types,
            'strength': round(hit.strength, 4),
            'depth': hit.depth
        } for hit in hits]

    async def _require_entity(self, user_id: str, entity_name: str):
        entity = await self.entities.get_active_by_name(user_id, entity_name)
        if entity is None:
            raise MemoryManagementError(f'No active entity named {entity_name!r}')
        return entity

    async def get_current_facts(self, user_id: str, entity_name: str) -> List[Dict[str, Any]]:
        entity = await self._require_entity(user_id, entity_name)
        return [fact_to_dict(f) for f in await self.fact_store.get_current_facts(entity.id)]

    async def get_fact_history(self, user_id: str, entity_name: str, predicate: str) -> List[Dict[str, Any]]:
        entity = await self._require_entity(user_id, entity_name)
        return [fact_to_dict(f) for f in await self.fact_store.get_fact_history(entity.id, predicate)]

    async def get_facts_at_time(self, user_id: str, entity_name: str, as_of: datetime) -> List[Dict[str, Any]]:
        entity = await self._require_entity(user_id, entity_name)
        return [fact_to_dict(f) for f in await self.fact_store.get_facts_at_time(entity.id, as_of)]

    async def get_entity_timeline(self, user_id: str, entity_name: str) -> List[Dict[str, Any]]:
        entity = await self._require_entity(user_id, entity_name)
        events = await self.fact_store.get_entity_timeline(entity.id)
        return [{'at': to_iso(e.at), 'event': e.event, 'fact': fact_to_dict(e.fact)} for e in events]

    async def compare_knowledge(self, user_id: str, entity_name: str, before: datetime, after: datetime) -> Dict[str, Any]:
        entity = await self._require_entity(user_id, entity_name)
        diff = await self.fact_store.compare_knowledge_at_times(entity.id, before, after)
        return {
            'entity': entity.name,
            'before': to_iso(diff.as_of_before),
            'after': to_iso(diff.as_of_after),
            'added': [fact_to_dict(f) for f in diff.added],
            'removed': [fact_to_dict(f) for f in diff.removed],
            'changed': [{
                'predicate': c.predicate,
                'before': c.before.object_text,
                'after': c.after.object_text
            } for c in diff.changed],
        }

    async def detect_changes(self, user_id: str, scope: str = 'monthly', entity_name: Optional[str] = None) -> Dict[str, Any]:
        """Run the contradiction and evolution detector; never writes to the fact store."""
        if entity_name:
            report = await self.detector.detect_for_entity(user_id, entity_name)
        else:
            report = await self.detector.detect(user_id, scope)
        result = report.to_dict()
        result['context_block'] = format_for_context(report)
        return result

    async def list_operations(self, user_id: str, limit: int = 50, operation: Optional[str] = None) -> List[Dict[str, Any]]:
        operations = await list_operations(self.db, user_id, limit=limit, operation=operation)
        return [{
            'id': op.id,
            'operation': op.operation,
            'entity_id': op.entity_id,
            'reasoning': op.reasoning,
            'created_at': to_iso(op.created_at)
        } for op in operations]

    async def health(self) -> Dict[str, Any]:
        """Check every dependency; a failing check is reported, not raised."""
        components = await get_health_status(self.config, self.db, self.llm, self.embedder, self.vector_index)
        return {
            'healthy': all(status.get('healthy', False) for status in components.values()),
            'checked_at': to_iso(utc_now()),
            'components': components,
            'cache': self.cache.stats(),
            'system': get_system_info(self.config),
        }
