"""
Rolling per-category summaries of a user's life areas.

A summary is rewritten, not appended to, each time the category is
regenerated from the active entities mentioned in that category's entries.
"""

from typing import Any, Dict, List, Optional

from ..models.core import STATUS_ACTIVE, CategorySummary, Entity
from ..utils.bedrock_llm import BedrockLLMError
from ..utils.database import Database, DatabaseError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso, utc_now

logger = get_logger(__name__)

MAX_ENTITIES_PER_SUMMARY = 30

SUMMARY_SYSTEM_PROMPT = """You maintain a short personal knowledge summary for one area of a user's life.

Write a new, cohesive prose summary (2-4 sentences) that incorporates ALL relevant information:
- If new information contradicts the current summary, use the new information (it is more recent)
- If new information adds to the current summary, integrate it smoothly
- Focus on what matters most to this person
- Do not just list facts

Write ONLY the new summary, no preamble."""


class CategorySummaryError(Exception):
    """Custom exception for category summary errors."""
    pass


def build_summary_prompt(category: str, existing: Optional[str], entities: List[Entity]) -> str:
    lines = [f'CATEGORY: {category.replace("_", " ")}', '']
    lines.append(f'CURRENT SUMMARY:\n{existing}' if existing else 'No existing summary yet.')
    lines.extend(['', 'INFORMATION:'])
    for entity in entities:
        detail = entity.summary or '; '.join(entity.context_notes[-3:])
        lines.append(f'- {entity.name} ({entity.entity_type}): {detail}')
    return '\n'.join(lines)


class CategorySummaryService:
    """Regenerate and read category summaries."""

    def __init__(self, db: Database, llm):
        self.db = db
        self.llm = llm

    async def category_entities(self, user_id: str, category: str) -> List[Entity]:
        rows = await self.db.fetch_all(
            'SELECT DISTINCT e.* FROM entities e JOIN entry_entities ee ON ee.entity_id = e.id JOIN entries n ON n.id = ee.entry_id '
            'WHERE e.user_id = ? AND e.status = ? AND n.category = ? ORDER BY e.importance_score DESC, e.last_mentioned_at DESC '
            'LIMIT ?', (user_id, STATUS_ACTIVE, category, MAX_ENTITIES_PER_SUMMARY))
        return [Entity.from_row(row) for row in rows]

    async def get(self, user_id: str, category: str) -> Optional[CategorySummary]:
        row = await self.db.fetch_one('SELECT * FROM category_summaries WHERE user_id = ? AND category = ?', (user_id, category))
        return CategorySummary.from_row(row) if row else None

    async def list_summaries(self, user_id: str) -> List[CategorySummary]:
        rows = await self.db.fetch_all('SELECT * FROM category_summaries WHERE user_id = ? ORDER BY updated_at DESC', (user_id, ))
        return [CategorySummary.from_row(row) for row in rows]

    async def regenerate(self, user_id: str, category: str) -> Dict[str, Any]:
        """
        Rewrite one category summary from that category's active entities.

        Args:
            user_id: Owning user
            category: Entry category to summarize

        Returns:
            Dict with the category, entity count and whether the summary changed

        Raises:
            CategorySummaryError: If the LLM call or the write fails
        """
        entities = await self.category_entities(user_id, category)
        if not entities:
            logger.debug(f'No active entities in category {category} for user {user_id}')
            return {'category': category, 'entity_count': 0, 'updated': False}

        existing = await self.get(user_id, category)
        try:
            text, _ = await self.llm.generate_response(messages=[{
                'role': 'user',
                'content': [{
                    'text': build_summary_prompt(category, existing.summary if existing else None, entities)
                }]
            }],
                                                       system_prompt=SUMMARY_SYSTEM_PROMPT,
                                                       max_tokens=300)
        except BedrockLLMError as e:
            logger.error(f'LLM error while summarizing category {category}: {e}')
            raise CategorySummaryError(f'Category summary failed: {e}')

        summary = (text or '').strip()
        if not summary:
            return {'category': category, 'entity_count': len(entities), 'updated': False}

        try:
            await self.db.execute(
                'INSERT INTO category_summaries (user_id, category, summary, entity_count, updated_at) VALUES (?, ?, ?, ?, ?) '
                'ON CONFLICT (user_id, category) DO UPDATE SET summary = excluded.summary, entity_count = excluded.entity_count, '
                'updated_at = excluded.updated_at', (user_id, category, summary, len(entities), to_iso(utc_now())))
        except DatabaseError as e:
            logger.error(f'Failed to store summary for category {category}: {e}')
            raise CategorySummaryError(f'Category summary failed: {e}')

        logger.info(f'Regenerated {category} summary for user {user_id} from {len(entities)} entities')
        return {'category': category, 'entity_count': len(entities), 'updated': True}
