"""
Entry ingestion.

`submit_entry` records entry metadata and enqueues an `extract` job, then
returns at once; the request path never waits on extraction. The extract
job turns the entry into entity mentions, co-occurrence edges, behaviors
and one `update` job per candidate fact.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.core import MemoryJob
from ..utils.bedrock_embed import BedrockEmbedError
from ..utils.config import ExtractionConfig
from ..utils.database import Database, DatabaseError, execute
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from ..utils.timestamp_utils import parse_iso, to_iso, utc_now
from .entity_extraction import EntityExtractionService, Extraction, extraction_summary
from .entity_store import EntityStore
from .graph_store import GraphStore
from .job_queue import JobQueue

logger = get_logger(__name__)

SUMMARY_PRIORITY_OFFSET = 3


class IngestError(Exception):
    """Custom exception for ingestion errors."""
    pass


def should_extract(message_index: int, sample_every: int = 3) -> bool:
    """Conversation sampling: extract from the first message, then every `sample_every`-th."""
    if message_index <= 0:
        return True
    return sample_every <= 1 or message_index % sample_every == 0


class IngestService:
    """Accept entries and run write-time extraction jobs."""

    def __init__(self,
                 db: Database,
                 entities: EntityStore,
                 graph: GraphStore,
                 job_queue: JobQueue,
                 extractor: EntityExtractionService,
                 config: ExtractionConfig,
                 update_engine=None,
                 on_change=None):
        """
        Initialize the ingest service.

        Args:
            db: Relational store
            entities: Entity repository
            graph: Graph store for edges and behaviors
            job_queue: Queue for extract, update and summary jobs
            extractor: LLM extraction service
            config: ExtractionConfig with the conversation sampling cadence
            update_engine: Decision engine used to index entities created by extraction
            on_change: Awaited with the user ID after extraction writes
        """
        self.db = db
        self.entities = entities
        self.graph = graph
        self.job_queue = job_queue
        self.extractor = extractor
        self.config = config
        self.update_engine = update_engine
        self.on_change = on_change

    def should_extract(self, message_index: int) -> bool:
        return should_extract(message_index, self.config.sample_every)

    async def submit_entry(self,
                           user_id: str,
                           entry_id: str,
                           content: str,
                           category: Optional[str] = None,
                           sentiment: Optional[float] = None,
                           created_at: Optional[datetime] = None,
                           title: Optional[str] = None,
                           priority: Optional[int] = None) -> str:
        """
        Record entry metadata and enqueue extraction.

        Args:
            user_id: Owning user
            entry_id: ID of the entry in the content store
            content: Entry plaintext, carried only in the job payload
            category: Life-area category of the entry
            sentiment: Overall entry sentiment, -1.0 to 1.0
            created_at: When the entry was written
            title: Entry title
            priority: Job priority override

        Returns:
            ID of the enqueued extract job

        Raises:
            IngestError: If the entry cannot be recorded or queued
        """
        created_at = created_at or utc_now()
        try:
            async with self.db.transaction() as conn:
                await execute(
                    conn, 'INSERT INTO entries (id, user_id, category, sentiment, title, created_at) VALUES (?, ?, ?, ?, ?, ?) '
                    'ON CONFLICT (id) DO UPDATE SET category = excluded.category, sentiment = excluded.sentiment, '
                    'title = excluded.title', (entry_id, user_id, category, sentiment, title, to_iso(created_at)))
                job_id = await self.job_queue.enqueue(user_id,
                                                      'extract', {
                                                          'entry_id': entry_id,
                                                          'content': content,
                                                          'category': category,
                                                          'created_at': to_iso(created_at)
                                                      },
                                                      priority=priority,
                                                      conn=conn)
        except DatabaseError as e:
            logger.error(f'Failed to submit entry {entry_id} for user {user_id}: {e}')
            raise IngestError(f'Failed to submit entry: {e}')

        logger.info(f'Queued extraction job {job_id} for entry {entry_id}')
        return job_id

    async def process_extract_job(self, job: MemoryJob) -> Dict[str, Any]:
        """
        Handler for `extract` jobs.

        Args:
            job: Claimed extract job

        Returns:
            Counts of what was extracted and queued
        """
        payload = job.payload
        content = payload.get('content') or ''
        entry_id = payload.get('entry_id')
        if not content.strip():
            return {'entry_id': entry_id, 'skipped': 'no content'}

        known = [e.name for e in await self.entities.list_active(job.user_id, limit=20)]
        extraction = await self.extractor.extract(content, entry_id, parse_iso(payload.get('created_at')), known)
        if extraction.is_empty:
            return {'entry_id': entry_id, **extraction_summary(extraction), 'queued': 0}

        created, queued = await self._store_extraction(job, extraction)
        await self._index(job.user_id, created)
        if self.on_change is not None:
            await self.on_change(job.user_id)

        return {'entry_id': entry_id, **extraction_summary(extraction), 'created_entities': len(created), 'queued': queued}

    async def _store_extraction(self, job: MemoryJob, extraction: Extraction):
        user_id = job.user_id
        entry_id = job.payload.get('entry_id')
        category = job.payload.get('category')
        now = utc_now()
        created: List[str] = []
        queued = 0

        async with self.db.transaction() as conn:
            ids_by_name: Dict[str, str] = {}
            for mention in extraction.entities:
                existing = await self.entities.get_active_by_name(user_id, mention.name, conn=conn)
                if existing is not None:
                    await self.entities.reinforce(conn, existing, now, context_note=mention.context)
                    entity_id = existing.id
                else:
                    entity_id = await self.entities.insert(conn,
                                                           user_id,
                                                           mention.name,
                                                           now,
                                                           summary=mention.context or '',
                                                           entity_type=mention.entity_type,
                                                           relationship=mention.relationship,
                                                           sentiment=mention.sentiment,
                                                           context_note=mention.context,
                                                           confidence=mention.confidence)
                    created.append(entity_id)
                ids_by_name[mention.name.lower()] = entity_id

                if entry_id:
                    await execute(conn, 'INSERT OR IGNORE INTO entry_entities (entry_id, entity_id) VALUES (?, ?)', (entry_id, entity_id))
                if mention.sentiment is not None:
                    await self.entities.record_sentiment(conn, entity_id, mention.sentiment, now, entry_id)

            await self.graph.record_co_occurrences(user_id, ids_by_name.values(), now=now, conn=conn)

            for behavior in extraction.behaviors:
                entity_id = ids_by_name.get((behavior.target_entity or '').lower())
                if behavior.direction == 'entity_to_user':
                    await self.graph.record_quality(user_id,
                                                    behavior.predicate,
                                                    object_text=behavior.topic or '',
                                                    entity_id=entity_id,
                                                    entity_name=behavior.target_entity,
                                                    confidence=behavior.confidence,
                                                    now=now,
                                                    conn=conn)
                else:
                    await self.graph.record_behavior(user_id,
                                                     behavior.predicate,
                                                     entity_id=entity_id,
                                                     entity_name=behavior.target_entity,
                                                     topic=behavior.topic,
                                                     sentiment=behavior.sentiment,
                                                     confidence=behavior.confidence,
                                                     now=now,
                                                     conn=conn)

            last_update = None
            for candidate in extraction.candidates:
                last_update = await self.job_queue.enqueue(user_id, 'update', {'candidate': candidate.to_payload()}, conn=conn)
                queued += 1

            if category:
                await self.job_queue.enqueue(user_id,
                                             'summary', {'category': category},
                                             priority=self.job_queue.config.default_priority + SUMMARY_PRIORITY_OFFSET,
                                             depends_on=last_update,
                                             conn=conn)

        logger.info(f'Entry {entry_id}: {len(extraction.entities)} entities ({len(created)} new), '
                    f'{len(extraction.behaviors)} behaviors, {queued} update jobs queued')
        return created, queued

    async def _index(self, user_id: str, entity_ids: List[str]) -> None:
        if self.update_engine is None:
            return
        for entity_id in entity_ids:
            try:
                await self.update_engine.index_entity(user_id, entity_id)
            except (BedrockEmbedError, OpenSearchError, DatabaseError) as e:
                logger.warning(f'Could not index new entity {entity_id}: {e}')
