"""
Core data models for the temporal knowledge memory engine.

Every record belongs to exactly one user. Rows come back from the store
as mappings and are converted with the ``from_row`` constructors below.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from ..utils.json_utils import load_column
from ..utils.timestamp_utils import parse_iso, to_iso

# Lifecycle status values
STATUS_ACTIVE = 'active'
STATUS_ARCHIVED = 'archived'
STATUS_SUPERSEDED = 'superseded'
STATUS_REJECTED = 'rejected'
STATUS_INACTIVE = 'inactive'

# Job status values
JOB_PENDING = 'pending'
JOB_PROCESSING = 'processing'
JOB_COMPLETED = 'completed'
JOB_FAILED = 'failed'

# Scheduler run status values
RUN_COMPLETED = 'completed'
RUN_PARTIAL = 'partial'
RUN_FAILED = 'failed'

JOB_TYPES = ('update', 'consolidate', 'decay', 'cleanup', 'graph_update', 'summary', 'extract')

ENTITY_TYPES = ('person', 'organization', 'place', 'project', 'concept', 'event', 'other')

MEMORY_TYPES = ('entity', 'fact', 'preference', 'event', 'goal', 'procedure', 'decision', 'action')

IMPORTANCE_SCORES = {
    'critical': 1.0,
    'high': 0.8,
    'medium': 0.5,
    'low': 0.3,
    'trivial': 0.1,
}

# Predicates for which an entity holds one current value at a time
SINGLE_VALUE_PREDICATES = frozenset([
    'works_at',
    'lives_in',
    'job_title',
    'reports_to',
    'married_to',
    'dating',
    'age',
    'birthday',
    'company',
    'role',
    'location',
    'employer',
    'email',
    'phone',
])


def importance_score(label: Optional[str]) -> float:
    """Map an importance label to its numeric score (medium when unknown)."""
    return IMPORTANCE_SCORES.get((label or 'medium').lower(), 0.5)


def is_multi_value_predicate(predicate: str) -> bool:
    """Check if a predicate allows several simultaneously current values."""
    return normalize_predicate(predicate) not in SINGLE_VALUE_PREDICATES


def normalize_predicate(predicate: str) -> str:
    """Canonical predicate form: lower snake case."""
    return '_'.join((predicate or '').strip().lower().replace('-', ' ').split())


def normalize_name(name: str) -> str:
    """Key used to detect duplicate entity names for one user."""
    return ' '.join((name or '').strip().lower().split())


def normalize_object(value: str) -> str:
    """Key used to compare fact object values."""
    return ' '.join((value or '').strip().lower().split())


def _bool(value: Any) -> bool:
    return bool(value) if value is not None else False


@dataclass
class Entity:
    """A named thing in the user's life: person, organization, place, project, concept or event."""
    id: str
    user_id: str
    name: str
    entity_type: str = 'other'
    relationship: Optional[str] = None
    summary: str = ''
    memory_type: str = 'entity'
    importance: str = 'medium'
    importance_score: float = 0.5
    sentiment_average: float = 0.0
    mention_count: int = 1
    first_mentioned_at: Optional[datetime] = None
    last_mentioned_at: Optional[datetime] = None
    context_notes: List[str] = field(default_factory=list)
    is_historical: bool = False
    effective_from: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    status: str = STATUS_ACTIVE
    version: int = 1
    supersedes_id: Optional[str] = None
    superseded_by: Optional[str] = None
    sensitivity_level: str = 'normal'
    confidence: float = 0.8
    embedding: Optional[List[float]] = None
    last_decayed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Entity':
        return cls(id=row['id'],
                   user_id=row['user_id'],
                   name=row['name'],
                   entity_type=row['entity_type'] or 'other',
                   relationship=row['relationship'],
                   summary=row['summary'] or '',
                   memory_type=row['memory_type'] or 'entity',
                   importance=row['importance'] or 'medium',
                   importance_score=float(row['importance_score'] if row['importance_score'] is not None else 0.5),
                   sentiment_average=float(row['sentiment_average'] or 0.0),
                   mention_count=int(row['mention_count'] or 0),
                   first_mentioned_at=parse_iso(row['first_mentioned_at']),
                   last_mentioned_at=parse_iso(row['last_mentioned_at']),
                   context_notes=load_column(row['context_notes'], []),
                   is_historical=_bool(row['is_historical']),
                   effective_from=parse_iso(row['effective_from']),
                   expires_at=parse_iso(row['expires_at']),
                   status=row['status'],
                   version=int(row['version'] or 1),
                   supersedes_id=row['supersedes_id'],
                   superseded_by=row['superseded_by'],
                   sensitivity_level=row['sensitivity_level'] or 'normal',
                   confidence=float(row['confidence'] if row['confidence'] is not None else 0.8),
                   embedding=load_column(row['embedding'], None),
                   last_decayed_at=parse_iso(row['last_decayed_at']),
                   created_at=parse_iso(row['created_at']),
                   updated_at=parse_iso(row['updated_at']))


@dataclass
class Fact:
    """A bi-temporal (entity, predicate, object) triple."""
    id: str
    user_id: str
    entity_id: str
    predicate: str
    object_text: str
    confidence: float = 0.7
    source_type: str = 'entry'
    source_id: Optional[str] = None
    mention_count: int = 1
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None  # None = open-ended
    is_current: bool = True
    single_value: bool = False
    version: int = 1
    previous_version_id: Optional[str] = None
    invalidated_at: Optional[datetime] = None
    invalidated_by: Optional[str] = None
    invalidation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Fact':
        return cls(id=row['id'],
                   user_id=row['user_id'],
                   entity_id=row['entity_id'],
                   predicate=row['predicate'],
                   object_text=row['object_text'],
                   confidence=float(row['confidence']),
                   source_type=row['source_type'],
                   source_id=row['source_id'],
                   mention_count=int(row['mention_count'] or 1),
                   valid_from=parse_iso(row['valid_from']),
                   valid_to=parse_iso(row['valid_to']),
                   is_current=_bool(row['is_current']),
                   single_value=_bool(row['single_value']),
                   version=int(row['version'] or 1),
                   previous_version_id=row['previous_version_id'],
                   invalidated_at=parse_iso(row['invalidated_at']),
                   invalidated_by=row['invalidated_by'],
                   invalidation_reason=row['invalidation_reason'],
                   created_at=parse_iso(row['created_at']),
                   updated_at=parse_iso(row['updated_at']))

    def is_valid_at(self, as_of: datetime) -> bool:
        """True when as_of falls in [valid_from, valid_to)."""
        if self.valid_from is not None and self.valid_from > as_of:
            return False
        return self.valid_to is None or as_of < self.valid_to


@dataclass
class Behavior:
    """A directional relation from the user toward an entity (e.g. trusts_opinion_of)."""
    id: str
    user_id: str
    predicate: str
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    topic: Optional[str] = None
    sentiment: float = 0.0
    confidence: float = 0.5
    reinforcement_count: int = 1
    first_detected_at: Optional[datetime] = None
    last_reinforced_at: Optional[datetime] = None
    status: str = STATUS_ACTIVE

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Behavior':
        return cls(id=row['id'],
                   user_id=row['user_id'],
                   predicate=row['predicate'],
                   entity_id=row['entity_id'],
                   entity_name=row['entity_name'],
                   topic=row['topic'],
                   sentiment=float(row['sentiment'] or 0.0),
                   confidence=float(row['confidence']),
                   reinforcement_count=int(row['reinforcement_count'] or 1),
                   first_detected_at=parse_iso(row['first_detected_at']),
                   last_reinforced_at=parse_iso(row['last_reinforced_at']),
                   status=row['status'])


@dataclass
class EntityQuality:
    """A directional relation from an entity toward the user (e.g. supports: career)."""
    id: str
    user_id: str
    entity_id: Optional[str]
    entity_name: Optional[str]
    predicate: str
    object: str = ''
    confidence: float = 0.5
    reinforcement_count: int = 1
    first_detected_at: Optional[datetime] = None
    last_reinforced_at: Optional[datetime] = None
    status: str = STATUS_ACTIVE

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'EntityQuality':
        return cls(id=row['id'],
                   user_id=row['user_id'],
                   entity_id=row['entity_id'],
                   entity_name=row['entity_name'],
                   predicate=row['predicate'],
                   object=row['object'] or '',
                   confidence=float(row['confidence']),
                   reinforcement_count=int(row['reinforcement_count'] or 1),
                   first_detected_at=parse_iso(row['first_detected_at']),
                   last_reinforced_at=parse_iso(row['last_reinforced_at']),
                   status=row['status'])


@dataclass
class Relationship:
    """A typed or co-occurrence edge between two distinct entities."""
    id: str
    user_id: str
    source_entity_id: str
    target_entity_id: str
    relationship_type: str = 'co_occurs'
    strength: float = 0.5
    context: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Relationship':
        return cls(id=row['id'],
                   user_id=row['user_id'],
                   source_entity_id=row['source_entity_id'],
                   target_entity_id=row['target_entity_id'],
                   relationship_type=row['relationship_type'],
                   strength=float(row['strength']),
                   context=row['context'],
                   last_seen_at=parse_iso(row['last_seen_at']),
                   is_active=_bool(row['is_active']))


@dataclass
class Pattern:
    """A higher-order recurring observation with supporting evidence."""
    id: str
    user_id: str
    pattern_type: str
    description: str
    short_description: Optional[str] = None
    confidence: float = 0.5
    category: Optional[str] = None
    evidence: List[str] = field(default_factory=list)
    status: str = STATUS_ACTIVE
    user_confirmed: bool = False
    superseded_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Pattern':
        return cls(id=row['id'],
                   user_id=row['user_id'],
                   pattern_type=row['pattern_type'],
                   description=row['description'],
                   short_description=row['short_description'],
                   confidence=float(row['confidence']),
                   category=row['category'],
                   evidence=load_column(row['evidence'], []),
                   status=row['status'],
                   user_confirmed=_bool(row['user_confirmed']),
                   superseded_by=row['superseded_by'],
                   created_at=parse_iso(row['created_at']),
                   updated_at=parse_iso(row['updated_at']))


@dataclass
class Entry:
    """Metadata of a free-text entry. Content lives outside this store."""
    id: str
    user_id: str
    category: Optional[str] = None
    sentiment: Optional[float] = None
    title: Optional[str] = None
    is_distilled: bool = False
    distilled_summary: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Entry':
        return cls(id=row['id'],
                   user_id=row['user_id'],
                   category=row['category'],
                   sentiment=float(row['sentiment']) if row['sentiment'] is not None else None,
                   title=row['title'],
                   is_distilled=_bool(row['is_distilled']),
                   distilled_summary=row['distilled_summary'],
                   created_at=parse_iso(row['created_at']))


@dataclass
class CategorySummary:
    """Rolling natural-language summary of one life area."""
    user_id: str
    category: str
    summary: str
    entity_count: int = 0
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'CategorySummary':
        return cls(user_id=row['user_id'],
                   category=row['category'],
                   summary=row['summary'],
                   entity_count=int(row['entity_count'] or 0),
                   updated_at=parse_iso(row['updated_at']))


@dataclass
class KeyPerson:
    name: str
    relationship: Optional[str] = None


@dataclass
class Identity:
    """Who the user is, as declared by the user."""
    name: Optional[str] = None
    role: Optional[str] = None
    self_description: Optional[str] = None
    goals: List[str] = field(default_factory=list)
    life_context: List[str] = field(default_factory=list)
    boundaries: List[str] = field(default_factory=list)
    tone: str = 'warm'
    custom_instructions: Optional[str] = None
    key_people: List[KeyPerson] = field(default_factory=list)


@dataclass
class MemoryJob:
    """A queued unit of maintenance work."""
    id: str
    user_id: Optional[str]
    job_type: str
    priority: int = 5
    payload: Dict[str, Any] = field(default_factory=dict)
    status: str = JOB_PENDING
    attempts: int = 0
    max_attempts: int = 3
    depends_on: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'MemoryJob':
        return cls(id=row['id'],
                   user_id=row['user_id'],
                   job_type=row['job_type'],
                   priority=int(row['priority']),
                   payload=load_column(row['payload'], {}),
                   status=row['status'],
                   attempts=int(row['attempts']),
                   max_attempts=int(row['max_attempts']),
                   depends_on=row['depends_on'],
                   scheduled_for=parse_iso(row['scheduled_for']),
                   started_at=parse_iso(row['started_at']),
                   completed_at=parse_iso(row['completed_at']),
                   result=load_column(row['result'], None),
                   last_error=row['last_error'],
                   created_at=parse_iso(row['created_at']),
                   updated_at=parse_iso(row['updated_at']))


@dataclass
class JobRun:
    """History record of a scheduler pass (decay, archival, maintenance)."""
    id: str
    run_type: str
    status: str
    user_id: Optional[str] = None
    result: Dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'JobRun':
        return cls(id=row['id'],
                   run_type=row['run_type'],
                   status=row['status'],
                   user_id=row['user_id'],
                   result=load_column(row['result'], {}),
                   duration_ms=int(row['duration_ms'] or 0),
                   created_at=parse_iso(row['created_at']))


@dataclass
class MemoryOperation:
    """Immutable audit record of one memory decision."""
    id: str
    user_id: str
    operation: str
    candidate_content: str
    candidate_memory_type: Optional[str] = None
    similar_memories: List[Dict[str, Any]] = field(default_factory=list)
    reasoning: Optional[str] = None
    entity_id: Optional[str] = None
    merge_strategy: Optional[str] = None
    old_content: Optional[str] = None
    new_content: Optional[str] = None
    old_version: Optional[int] = None
    new_version: Optional[int] = None
    hard_delete: Optional[bool] = None
    deleted_snapshot: Optional[Dict[str, Any]] = None
    job_id: Optional[str] = None
    source_entry_id: Optional[str] = None
    processing_time_ms: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'MemoryOperation':
        return cls(id=row['id'],
                   user_id=row['user_id'],
                   operation=row['operation'],
                   candidate_content=row['candidate_content'],
                   candidate_memory_type=row['candidate_memory_type'],
                   similar_memories=load_column(row['similar_memories'], []),
                   reasoning=row['reasoning'],
                   entity_id=row['entity_id'],
                   merge_strategy=row['merge_strategy'],
                   old_content=row['old_content'],
                   new_content=row['new_content'],
                   old_version=row['old_version'],
                   new_version=row['new_version'],
                   hard_delete=None if row['hard_delete'] is None else bool(row['hard_delete']),
                   deleted_snapshot=load_column(row['deleted_snapshot'], None),
                   job_id=row['job_id'],
                   source_entry_id=row['source_entry_id'],
                   processing_time_ms=int(row['processing_time_ms'] or 0),
                   created_at=parse_iso(row['created_at']))


@dataclass
class CandidateFact:
    """A piece of new information proposed for memory by write-time extraction."""
    content: str
    memory_type: str = 'fact'
    entity_name: Optional[str] = None
    entity_type: str = 'other'
    relationship: Optional[str] = None
    predicate: Optional[str] = None
    object_text: Optional[str] = None
    sentiment: Optional[float] = None
    confidence: float = 0.8
    importance: str = 'medium'
    is_historical: bool = False
    valid_from: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    sensitivity_level: str = 'normal'
    source_entry_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe representation for job payloads."""
        data = asdict(self)
        data['valid_from'] = to_iso(self.valid_from)
        data['expires_at'] = to_iso(self.expires_at)
        return data

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> 'CandidateFact':
        return cls(content=data.get('content') or '',
                   memory_type=data.get('memory_type') or 'fact',
                   entity_name=data.get('entity_name'),
                   entity_type=data.get('entity_type') or 'other',
                   relationship=data.get('relationship'),
                   predicate=data.get('predicate'),
                   object_text=data.get('object_text'),
                   sentiment=data.get('sentiment'),
                   confidence=float(data.get('confidence', 0.8)),
                   importance=data.get('importance') or 'medium',
                   is_historical=bool(data.get('is_historical', False)),
                   valid_from=parse_iso(data.get('valid_from')),
                   expires_at=parse_iso(data.get('expires_at')),
                   sensitivity_level=data.get('sensitivity_level') or 'normal',
                   source_entry_id=data.get('source_entry_id'))


@dataclass
class SimilarMemory:
    """An existing memory ranked against a candidate."""
    id: str
    name: str
    content: str
    similarity: float
    memory_type: str = 'entity'
    entity_type: str = 'other'
    importance: str = 'medium'
    is_historical: bool = False
    updated_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, entity: Entity, similarity: float) -> 'SimilarMemory':
        return cls(id=entity.id,
                   name=entity.name,
                   content=entity.summary or entity.name,
                   similarity=similarity,
                   memory_type=entity.memory_type,
                   entity_type=entity.entity_type,
                   importance=entity.importance,
                   is_historical=entity.is_historical,
                   updated_at=entity.updated_at)

    def to_audit(self) -> Dict[str, Any]:
        return {'id': self.id, 'content': self.content, 'similarity': round(self.similarity, 4)}
