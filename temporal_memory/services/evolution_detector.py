"""
Contradiction and evolution detection across two time windows.

Findings are read-only observations meant for context injection; nothing
here writes to the fact store.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import STATUS_ACTIVE, Fact, normalize_name, normalize_object
from ..utils.config import ContradictionConfig
from ..utils.database import Database
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import days_between, ensure_utc, to_iso, utc_now
from .fact_store import FactStore

logger = get_logger(__name__)

SCOPES = ('weekly', 'monthly', 'quarterly')


class EvolutionDetectorError(Exception):
    """Custom exception for evolution detection errors."""
    pass


@dataclass
class Period:
    start: datetime
    end: datetime
    label: str


@dataclass
class FactContradiction:
    entity_id: str
    entity_name: str
    predicate: str
    before_value: str
    before_at: datetime
    after_value: str
    after_at: datetime
    before_label: str
    after_label: str
    confidence: float
    summary: str


@dataclass
class SentimentShift:
    entity_id: str
    entity_name: str
    before: float
    after: float
    before_count: int
    after_count: int
    delta: float
    trend: str
    confidence: float
    summary: str


@dataclass
class CategoryShift:
    category: str
    before: float
    after: float
    before_count: int
    after_count: int
    delta: float
    trend: str
    confidence: float
    summary: str


@dataclass
class EvolutionReport:
    """Everything that changed between two windows."""
    period_before: Period
    period_after: Period
    contradictions: List[FactContradiction] = field(default_factory=list)
    sentiment_shifts: List[SentimentShift] = field(default_factory=list)
    category_shifts: List[CategoryShift] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.contradictions or self.sentiment_shifts or self.category_shifts)

    def ranked_summaries(self) -> List[str]:
        """Human-readable summaries, most confident first."""
        findings = [*self.contradictions, *self.sentiment_shifts, *self.category_shifts]
        findings.sort(key=lambda f: f.confidence, reverse=True)
        return [f.summary for f in findings]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'period_before': {'start': to_iso(self.period_before.start), 'end': to_iso(self.period_before.end),
                              'label': self.period_before.label},
            'period_after': {'start': to_iso(self.period_after.start), 'end': to_iso(self.period_after.end),
                             'label': self.period_after.label},
            'contradictions': [{
                'entity': c.entity_name,
                'predicate': c.predicate,
                'before': {'value': c.before_value, 'at': to_iso(c.before_at)},
                'after': {'value': c.after_value, 'at': to_iso(c.after_at)},
                'confidence': c.confidence,
                'summary': c.summary
            } for c in self.contradictions],
            'sentiment_shifts': [{
                'entity': s.entity_name,
                'before': s.before,
                'after': s.after,
                'delta': s.delta,
                'trend': s.trend,
                'confidence': s.confidence,
                'summary': s.summary
            } for s in self.sentiment_shifts],
            'category_shifts': [{
                'category': c.category,
                'before': c.before,
                'after': c.after,
                'delta': c.delta,
                'trend': c.trend,
                'confidence': c.confidence,
                'summary': c.summary
            } for c in self.category_shifts],
            'summaries': self.ranked_summaries(),
        }


def _month_start(year: int, month: int, tz) -> datetime:
    # month may be out of 1..12
    year += (month - 1) // 12
    month = (month - 1) % 12 + 1
    return datetime(year, month, 1, tzinfo=tz)


def get_time_periods(scope: str, now: Optional[datetime] = None) -> Tuple[Period, Period]:
    """Earlier and later comparison windows for a scope.

    Args:
        scope: 'weekly' (last week vs this week), 'monthly' (three months
            ago vs this month) or 'quarterly' (three quarters ago vs last
            quarter)
        now: Reference time (defaults to now)

    Returns:
        Tuple of (earlier, later) periods

    Raises:
        EvolutionDetectorError: If the scope is unknown
    """
    now = ensure_utc(now) if now else utc_now()
    tz = now.tzinfo

    if scope == 'weekly':
        this_week = datetime(now.year, now.month, now.day, tzinfo=tz) - timedelta(days=now.weekday())
        last_week = this_week - timedelta(days=7)
        return Period(last_week, this_week, 'last week'), Period(this_week, now, 'this week')

    if scope == 'monthly':
        this_month = _month_start(now.year, now.month, tz)
        earlier_start = _month_start(now.year, now.month - 3, tz)
        earlier_end = _month_start(now.year, now.month - 2, tz)
        return Period(earlier_start, earlier_end, earlier_start.strftime('%B %Y')), Period(this_month, now, 'this month')

    if scope == 'quarterly':
        quarter_month = 3 * ((now.month - 1) // 3) + 1
        this_quarter = _month_start(now.year, quarter_month, tz)
        last_quarter = _month_start(now.year, quarter_month - 3, tz)
        earlier_start = _month_start(now.year, quarter_month - 9, tz)
        earlier_end = _month_start(now.year, quarter_month - 6, tz)
        earlier_label = f'Q{(earlier_start.month - 1) // 3 + 1} {earlier_start.year}'
        return Period(earlier_start, earlier_end, earlier_label), Period(last_quarter, this_quarter, 'last quarter')

    raise EvolutionDetectorError(f'Unknown scope: {scope}')


def _trend(delta: float) -> str:
    return 'improving' if delta > 0 else 'declining'


def _average(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


class EvolutionDetector:
    """Compare facts and sentiment across two windows and describe what changed."""

    def __init__(self, db: Database, fact_store: FactStore, config: ContradictionConfig):
        self.db = db
        self.fact_store = fact_store
        self.config = config

    async def detect(self,
                     user_id: str,
                     scope: str = 'monthly',
                     now: Optional[datetime] = None,
                     entity_id: Optional[str] = None) -> EvolutionReport:
        """Run all detectors over the windows of a scope.

        Args:
            user_id: User to analyze
            scope: 'weekly', 'monthly' or 'quarterly'
            now: Reference time (defaults to now)
            entity_id: Restrict fact and sentiment checks to one entity

        Returns:
            EvolutionReport with contradictions, sentiment and category shifts
        """
        before, after = get_time_periods(scope, now)
        return await self.detect_between(user_id, before, after, entity_id=entity_id)

    async def detect_between(self,
                             user_id: str,
                             before: Period,
                             after: Period,
                             entity_id: Optional[str] = None,
                             include_categories: bool = True) -> EvolutionReport:
        """Run all detectors over two explicit windows."""
        report = EvolutionReport(period_before=before, period_after=after)
        report.contradictions = await self.detect_fact_contradictions(user_id, before, after, entity_id)
        report.sentiment_shifts = await self.detect_sentiment_shifts(user_id, before, after, entity_id)
        if include_categories:
            report.category_shifts = await self.detect_category_shifts(user_id, before, after)

        logger.info(f'Evolution detection for user {user_id} ({before.label} vs {after.label}): '
                    f'{len(report.contradictions)} contradictions, {len(report.sentiment_shifts)} sentiment shifts, '
                    f'{len(report.category_shifts)} category shifts')
        return report

    async def detect_for_entity(self, user_id: str, entity_name: str, now: Optional[datetime] = None) -> EvolutionReport:
        """Compare an entity's recent month against the five months before it.

        Args:
            user_id: Owning user
            entity_name: Entity display name (case-insensitive)
            now: Reference time (defaults to now)

        Returns:
            EvolutionReport; empty if no active entity has that name
        """
        now = ensure_utc(now) if now else utc_now()
        before = Period(now - timedelta(days=180), now - timedelta(days=30), 'earlier')
        after = Period(now - timedelta(days=30), now, 'recently')

        row = await self.db.fetch_one('SELECT id FROM entities WHERE user_id = ? AND name_key = ? AND status = ?',
                                      (user_id, normalize_name(entity_name), STATUS_ACTIVE))
        if row is None:
            logger.debug(f'No active entity named {entity_name!r} for user {user_id}')
            return EvolutionReport(period_before=before, period_after=after)

        return await self.detect_between(user_id, before, after, entity_id=row['id'], include_categories=False)

    async def detect_fact_contradictions(self,
                                         user_id: str,
                                         before: Period,
                                         after: Period,
                                         entity_id: Optional[str] = None) -> List[FactContradiction]:
        """Same entity and predicate, different object, far enough apart and confident enough."""
        floor = self.config.fact_query_confidence
        facts_before = await self.fact_store.get_facts_observed_between(user_id, before.start, before.end, floor)
        facts_after = await self.fact_store.get_facts_observed_between(user_id, after.start, after.end, floor)
        if entity_id:
            facts_before = [(f, n) for f, n in facts_before if f.entity_id == entity_id]
            facts_after = [(f, n) for f, n in facts_after if f.entity_id == entity_id]
        if not facts_before or not facts_after:
            return []

        latest_before = self._latest_by_key(facts_before)
        latest_after = self._latest_by_key(facts_after)

        contradictions = []
        for key, (fact_a, name) in latest_before.items():
            if key not in latest_after:
                continue
            fact_b, _ = latest_after[key]
            if normalize_object(fact_a.object_text) == normalize_object(fact_b.object_text):
                continue
            if abs(days_between(fact_a.valid_from, fact_b.valid_from)) < self.config.min_gap_days:
                continue
            confidence = min(fact_a.confidence, fact_b.confidence)
            if confidence < self.config.min_confidence:
                continue

            label = fact_a.predicate.replace('_', ' ')
            contradictions.append(
                FactContradiction(entity_id=fact_a.entity_id,
                                  entity_name=name,
                                  predicate=fact_a.predicate,
                                  before_value=fact_a.object_text,
                                  before_at=fact_a.valid_from,
                                  after_value=fact_b.object_text,
                                  after_at=fact_b.valid_from,
                                  before_label=before.label,
                                  after_label=after.label,
                                  confidence=confidence,
                                  summary=f'Your {label} for {name} changed from "{fact_a.object_text}" to "{fact_b.object_text}"'))

        contradictions.sort(key=lambda c: c.confidence, reverse=True)
        return contradictions

    @staticmethod
    def _latest_by_key(facts: List[Tuple[Fact, str]]) -> Dict[Tuple[str, str], Tuple[Fact, str]]:
        latest = {}
        for fact, name in facts:
            key = (fact.entity_id, fact.predicate)
            if key not in latest or fact.valid_from > latest[key][0].valid_from:
                latest[key] = (fact, name)
        return latest

    async def _entity_sentiments(self, user_id: str, period: Period, entity_id: Optional[str]) -> Dict[str, List[float]]:
        sql = ('SELECT ee.entity_id, n.sentiment FROM entry_entities ee JOIN entries n ON n.id = ee.entry_id '
               'WHERE n.user_id = ? AND n.created_at >= ? AND n.created_at < ? AND n.sentiment IS NOT NULL')
        params = [user_id, to_iso(period.start), to_iso(period.end)]
        if entity_id:
            sql += ' AND ee.entity_id = ?'
            params.append(entity_id)
        by_entity = defaultdict(list)
        for row in await self.db.fetch_all(sql, params):
            by_entity[row['entity_id']].append(float(row['sentiment']))
        return by_entity

    async def detect_sentiment_shifts(self,
                                      user_id: str,
                                      before: Period,
                                      after: Period,
                                      entity_id: Optional[str] = None) -> List[SentimentShift]:
        """Entities whose average entry sentiment moved by at least the threshold."""
        sql = 'SELECT id, name FROM entities WHERE user_id = ? AND status = ? AND mention_count > ?'
        params = [user_id, STATUS_ACTIVE, self.config.min_entity_mentions]
        if entity_id:
            sql += ' AND id = ?'
            params.append(entity_id)
        entities = await self.db.fetch_all(sql, params)
        if not entities:
            return []

        sentiments_before = await self._entity_sentiments(user_id, before, entity_id)
        sentiments_after = await self._entity_sentiments(user_id, after, entity_id)

        shifts = []
        for entity in entities:
            values_a = sentiments_before.get(entity['id'], [])
            values_b = sentiments_after.get(entity['id'], [])
            avg_a, avg_b = _average(values_a), _average(values_b)
            if avg_a is None or avg_b is None:
                continue
            delta = avg_b - avg_a
            if abs(delta) < self.config.sentiment_threshold:
                continue

            trend = _trend(delta)
            verb = 'improved' if trend == 'improving' else 'declined'
            shifts.append(
                SentimentShift(entity_id=entity['id'],
                               entity_name=entity['name'],
                               before=avg_a,
                               after=avg_b,
                               before_count=len(values_a),
                               after_count=len(values_b),
                               delta=delta,
                               trend=trend,
                               confidence=min(0.9, 0.5 + 0.05 * (len(values_a) + len(values_b))),
                               summary=f'Your sentiment about {entity["name"]} has {verb} by {round(abs(delta) * 100)}%'))

        shifts.sort(key=lambda s: abs(s.delta), reverse=True)
        return shifts

    async def _category_stats(self, user_id: str, period: Period) -> Dict[str, List[float]]:
        rows = await self.db.fetch_all('SELECT category, sentiment FROM entries WHERE user_id = ? AND created_at >= ? AND created_at < ?',
                                       (user_id, to_iso(period.start), to_iso(period.end)))
        stats = defaultdict(list)
        for row in rows:
            # neutral when an entry carries no sentiment
            stats[row['category'] or 'uncategorized'].append(0.0 if row['sentiment'] is None else float(row['sentiment']))
        return stats

    async def detect_category_shifts(self, user_id: str, before: Period, after: Period) -> List[CategoryShift]:
        """Life areas whose average entry sentiment moved by at least the threshold."""
        stats_before = await self._category_stats(user_id, before)
        stats_after = await self._category_stats(user_id, after)

        shifts = []
        minimum = self.config.min_category_entries
        for category, values_b in stats_after.items():
            values_a = stats_before.get(category, [])
            if len(values_a) < minimum or len(values_b) < minimum:
                continue
            avg_a, avg_b = _average(values_a), _average(values_b)
            delta = avg_b - avg_a
            if abs(delta) < self.config.sentiment_threshold:
                continue

            trend = _trend(delta)
            tone = 'positive' if trend == 'improving' else 'negative'
            shifts.append(
                CategoryShift(category=category,
                              before=avg_a,
                              after=avg_b,
                              before_count=len(values_a),
                              after_count=len(values_b),
                              delta=delta,
                              trend=trend,
                              confidence=0.75,
                              summary=f'Your {category} entries have become more {tone}'))

        shifts.sort(key=lambda s: abs(s.delta), reverse=True)
        return shifts


def format_for_context(report: EvolutionReport, limit: int = 3) -> Optional[str]:
    """Render a report as a <user_evolutions> block, or None when nothing changed."""
    if report.is_empty:
        return None

    lines = ['<user_evolutions>']
    if report.contradictions:
        lines.append('FACT CHANGES:')
        for c in report.contradictions[:limit]:
            lines.append(f'- {c.summary}')
            lines.append(f'  ({c.before_label}: "{c.before_value}" -> {c.after_label}: "{c.after_value}")')

    if report.sentiment_shifts:
        lines.append('')
        lines.append('SENTIMENT SHIFTS:')
        lines.extend(f'- {s.summary}' for s in report.sentiment_shifts[:limit])

    if report.category_shifts:
        lines.append('')
        lines.append('THEME EVOLUTIONS:')
        lines.extend(f'- {c.summary}' for c in report.category_shifts[:limit])

    lines.append('</user_evolutions>')
    return '\n'.join(lines)
