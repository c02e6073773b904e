"""
Entity Extraction Service with two-step LLM process.

Step one finds the entities an entry mentions; step two, given those
entities, extracts candidate facts and the user's behaviors toward them.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.core import ENTITY_TYPES, IMPORTANCE_SCORES, MEMORY_TYPES, CandidateFact, normalize_predicate
from ..utils.bedrock_llm import BedrockLLMError
from ..utils.json_utils import clean_json_response
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import parse_iso
from .sensitive_filter import SensitiveContentFilter

logger = get_logger(__name__)

MIN_TEXT_LENGTH = 15
MIN_CONFIDENCE = 0.5

TYPE_ALIASES = {
    'company': 'organization',
    'institution': 'organization',
    'topic': 'concept',
    'location': 'place',
    'product': 'other',
    'content': 'other',
    'object': 'other',
}


class EntityExtractionError(Exception):
    """Custom exception for entity extraction errors."""
    pass


@dataclass
class ExtractedEntity:
    name: str
    entity_type: str = 'other'
    relationship: Optional[str] = None
    context: Optional[str] = None
    sentiment: Optional[float] = None
    confidence: float = 0.8


@dataclass
class ExtractedBehavior:
    """A relation between the user and an entity, in either direction."""
    predicate: str
    target_entity: Optional[str] = None
    topic: Optional[str] = None
    direction: str = 'user_to_entity'
    confidence: float = 0.6
    sentiment: float = 0.0


@dataclass
class Extraction:
    entities: List[ExtractedEntity] = field(default_factory=list)
    candidates: List[CandidateFact] = field(default_factory=list)
    behaviors: List[ExtractedBehavior] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.entities or self.candidates or self.behaviors)


def _clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        return min(high, max(low, float(value)))
    except (TypeError, ValueError):
        return default


def _entity_type(value: Any) -> str:
    entity_type = str(value or '').strip().lower()
    entity_type = TYPE_ALIASES.get(entity_type, entity_type)
    return entity_type if entity_type in ENTITY_TYPES else 'other'


def _parse_json_list(response: str, key: Optional[str] = None) -> List[Dict[str, Any]]:
    try:
        data = json.loads(clean_json_response(response))
    except json.JSONDecodeError as e:
        logger.error(f'Failed to parse extraction JSON: {e}')
        return []
    if key is not None and isinstance(data, dict):
        data = data.get(key, [])
    if not isinstance(data, list):
        logger.warning(f'Expected list, got {type(data)}')
        return []
    return [item for item in data if isinstance(item, dict)]


class EntityExtractionService:
    """Extract entities, candidate facts and behaviors from entry text using Bedrock LLMs."""

    def __init__(self, llm, sensitive_filter: Optional[SensitiveContentFilter] = None):
        """
        Initialize the entity extraction service.

        Args:
            llm: Reasoning service exposing generate_response()
            sensitive_filter: Detector for identifiers that must not leave extraction
        """
        self.llm = llm
        self.sensitive_filter = sensitive_filter or SensitiveContentFilter()

        logger.info('Initialized EntityExtractionService')

    async def _complete_json(self, system_prompt: str, text: str) -> str:
        llm_messages = [{
            'role': 'user',
            'content': [{
                'text': text
            }]
        }, {
            'role': 'assistant',
            'content': [{
                'text': '```json'
            }]
        }]
        response, _ = await self.llm.generate_response(messages=llm_messages, system_prompt=system_prompt, stop_sequences=['```'])
        return response

    async def extract_entities(self, content: str, known_entities: Optional[List[str]] = None) -> List[ExtractedEntity]:
        """First LLM call: Extract entities from an entry.

        Args:
            content: Entry plaintext
            known_entities: Names already stored for this user, as a consistency hint

        Returns:
            List of extracted entities with confidence of at least 0.5

        Raises:
            EntityExtractionError: If the LLM call fails
        """
        if not content or len(content.strip()) < MIN_TEXT_LENGTH:
            logger.debug('Entry too short for entity extraction')
            return []

        system_prompt = """
You are an expert entity extraction system for a personal memory assistant. Extract entities from the user's entry.

Extract entities that are:
- People (names, roles, relationships to the user)
- Organizations (companies, institutions, groups)
- Places (locations, venues)
- Projects (things the user is building or working on)
- Concepts (ideas, topics, subjects)
- Events (meetings, trips, occasions)

The user writes in the first person; never extract the user themself as an entity.

Return a JSON array of entities with this exact format:
```json
[
  {
    "name": "exact name as mentioned",
    "type": "person|organization|place|project|concept|event|other",
    "relationship": "relationship to the user, e.g. manager, sister (optional)",
    "context": "brief context about this entity from the entry",
    "sentiment": 0.0,
    "confidence": 0.8
  }
]
```

sentiment is the user's feeling toward the entity in this entry, from -1.0 to 1.0.
Only extract entities that are explicitly mentioned. Do not infer or assume entities.
Return empty array [] if no entities found."""

        hint = ''
        if known_entities:
            hint = f'\n\nKnown entities from this user (reuse these names when they match): {", ".join(known_entities[:20])}'

        try:
            response = await self._complete_json(system_prompt, f'Extract entities from this entry:\n{content}{hint}')
        except BedrockLLMError as e:
            logger.error(f'LLM error during entity extraction: {e}')
            raise EntityExtractionError(f'Entity extraction failed: {e}')

        entities = []
        seen = set()
        for item in _parse_json_list(response, 'entities'):
            name = str(item.get('name') or '').strip()
            confidence = _clamp(item.get('confidence'), 0.0, 1.0, 0.5)
            if not name or confidence < MIN_CONFIDENCE or name.lower() in seen:
                continue
            seen.add(name.lower())
            if self._is_sensitive('entity', name):
                continue
            context = item.get('context') or None
            if context and self._is_sensitive(f'context of {name}', str(context)):
                context = None
            relationship = item.get('relationship') or None
            if relationship and self._is_sensitive(f'relationship of {name}', str(relationship)):
                relationship = None
            sentiment = item.get('sentiment')
            entities.append(
                ExtractedEntity(name=name,
                                entity_type=_entity_type(item.get('type')),
                                relationship=relationship,
                                context=context,
                                sentiment=None if sentiment is None else _clamp(sentiment, -1.0, 1.0, 0.0),
                                confidence=confidence))

        logger.debug(f'Extracted {len(entities)} entities from entry')
        return entities

    async def extract(self,
                      content: str,
                      entry_id: Optional[str] = None,
                      entry_time: Optional[datetime] = None,
                      known_entities: Optional[List[str]] = None) -> Extraction:
        """Extract entities, then candidate facts and behaviors about them.

        Args:
            content: Entry plaintext
            entry_id: Source entry, stamped on every candidate
            entry_time: When the entry was written; the default start of validity
            known_entities: Names already stored for this user

        Returns:
            Extraction with entities, candidate facts and behaviors

        Raises:
            EntityExtractionError: If extraction fails
        """
        entities = await self.extract_entities(content, known_entities)
        if not entities:
            logger.debug('No entities found, no facts to extract')
            return Extraction()

        entity_lines = '\n'.join(f'- {e.name} ({e.entity_type})' for e in entities)
        system_prompt = f"""
You are an expert fact extraction system for a personal memory assistant.

Entities found in the entry:
{entity_lines}

Extract what is worth remembering about the user and these entities.

1. "facts": each a standalone statement in third person, with:
   - "content": the statement, e.g. "Sarah works at Notion"
   - "entity": the entity it is about (one of the names above)
   - "predicate": snake_case relation, e.g. works_at, lives_in, job_title, likes (optional)
   - "object": value of the relation, e.g. "Notion" (optional)
   - "memory_type": one of {', '.join(MEMORY_TYPES)}
   - "importance": one of {', '.join(IMPORTANCE_SCORES)}
   - "sentiment": the user's feeling, -1.0 to 1.0
   - "confidence": 0.0 to 1.0
   - "is_historical": true for things that are no longer the case ("used to work at")
   - "valid_from": ISO date the fact started, if stated (optional)
   - "expires_at": ISO date the fact stops being relevant, for plans and events (optional)
2. "behaviors": how the user relates to an entity ("direction": "user_to_entity", e.g. trusts_opinion, seeks_advice,
   relies_on, avoids, prefers, struggles_with, excited_about) or how an entity relates to the user
   ("direction": "entity_to_user", e.g. supports, challenges, inspires), each with "type", "entity", "topic" (optional),
   "confidence" and "sentiment".

Confidence guidelines:
- 0.9-1.0: explicitly stated
- 0.7-0.8: strongly implied
- 0.5-0.6: inferred from context
- below 0.5: do not extract

Never include passwords, government ID numbers, payment card numbers or API keys.

Return a JSON object with this exact format:
```json
{{"facts": [], "behaviors": []}}
```"""

        try:
            response = await self._complete_json(system_prompt, f'Extract facts from this entry:\n{content}')
        except BedrockLLMError as e:
            logger.error(f'LLM error during fact extraction: {e}')
            raise EntityExtractionError(f'Fact extraction failed: {e}')

        try:
            data = json.loads(clean_json_response(response))
        except json.JSONDecodeError as e:
            logger.error(f'Failed to parse fact extraction JSON: {e}')
            return Extraction(entities=entities)
        if not isinstance(data, dict):
            logger.warning(f'Expected object, got {type(data)}')
            return Extraction(entities=entities)

        by_name = {e.name.lower(): e for e in entities}
        candidates = [
            c for c in (self._candidate(item, by_name, entry_id, entry_time) for item in data.get('facts') or [] if isinstance(item, dict))
            if c is not None
        ]
        behaviors = [
            b for b in (self._behavior(item) for item in data.get('behaviors') or [] if isinstance(item, dict)) if b is not None
        ]
        candidates = [c for c in candidates if not self._is_sensitive('candidate fact', c.content, c.object_text)]
        behaviors = [b for b in behaviors if not self._is_sensitive('behavior', b.topic, b.target_entity)]

        logger.debug(f'Extracted {len(candidates)} candidate facts and {len(behaviors)} behaviors from entry')
        return Extraction(entities=entities, candidates=candidates, behaviors=behaviors)

    def _is_sensitive(self, what: str, *texts: Optional[str]) -> bool:
        category = self.sensitive_filter.detect_any(texts)
        if category:
            logger.warning(f'Dropped extracted {what}: contains {category}')
            return True
        return False

    @staticmethod
    def _candidate(item: Dict[str, Any], by_name: Dict[str, ExtractedEntity], entry_id: Optional[str],
                   entry_time: Optional[datetime]) -> Optional[CandidateFact]:
        statement = str(item.get('content') or '').strip()
        confidence = _clamp(item.get('confidence'), 0.0, 1.0, 0.5)
        if not statement or confidence < MIN_CONFIDENCE:
            return None

        entity = by_name.get(str(item.get('entity') or '').strip().lower())
        predicate = normalize_predicate(str(item.get('predicate') or '')) or None
        object_text = str(item.get('object') or '').strip() or None
        memory_type = str(item.get('memory_type') or 'fact').strip().lower()
        importance = str(item.get('importance') or 'medium').strip().lower()
        sentiment = item.get('sentiment')

        try:
            valid_from = parse_iso(item.get('valid_from')) or entry_time
        except (TypeError, ValueError):
            valid_from = entry_time
        try:
            expires_at = parse_iso(item.get('expires_at'))
        except (TypeError, ValueError):
            expires_at = None

        return CandidateFact(content=statement,
                             memory_type=memory_type if memory_type in MEMORY_TYPES else 'fact',
                             entity_name=entity.name if entity else None,
                             entity_type=entity.entity_type if entity else 'other',
                             relationship=entity.relationship if entity else None,
                             predicate=predicate if object_text else None,
                             object_text=object_text if predicate else None,
                             sentiment=None if sentiment is None else _clamp(sentiment, -1.0, 1.0, 0.0),
                             confidence=confidence,
                             importance=importance if importance in IMPORTANCE_SCORES else 'medium',
                             is_historical=bool(item.get('is_historical', False)),
                             valid_from=valid_from,
                             expires_at=expires_at,
                             source_entry_id=entry_id)

    @staticmethod
    def _behavior(item: Dict[str, Any]) -> Optional[ExtractedBehavior]:
        predicate = normalize_predicate(str(item.get('type') or ''))
        confidence = _clamp(item.get('confidence'), 0.0, 1.0, 0.5)
        if not predicate or confidence < MIN_CONFIDENCE:
            return None
        direction = 'entity_to_user' if item.get('direction') == 'entity_to_user' else 'user_to_entity'
        return ExtractedBehavior(predicate=predicate,
                                 target_entity=(str(item.get('entity') or '').strip() or None),
                                 topic=(item.get('topic') or None),
                                 direction=direction,
                                 confidence=confidence,
                                 sentiment=_clamp(item.get('sentiment'), -1.0, 1.0, 0.0))


def extraction_summary(extraction: Extraction) -> Dict[str, Any]:
    """Counts suitable for a job result (no entry text)."""
    return {
        'entities': len(extraction.entities),
        'candidates': len(extraction.candidates),
        'behaviors': len(extraction.behaviors),
    }
