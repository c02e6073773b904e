"""
Daily importance decay and archival.

Two independent passes. Decay lowers the importance of entities (and the
confidence of behaviors) that have not been mentioned for a while, one
factor per elapsed day, never below a floor. Archival retires entities
that are both long unmentioned and unimportant, or past their expiry.
A failing row is counted and skipped; the pass carries on with the rest
and is reported as partial.
"""

import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import RUN_COMPLETED, RUN_FAILED, RUN_PARTIAL, STATUS_ACTIVE, STATUS_ARCHIVED, STATUS_INACTIVE
from ..utils.config import DecayConfig
from ..utils.database import Database, DatabaseError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from ..utils.timestamp_utils import days_between, parse_iso, to_iso, utc_now
from .job_queue import JobQueue

logger = get_logger(__name__)


@dataclass
class PassReport:
    """Counts and outcome of one scheduler pass."""
    run_type: str
    processed: int = 0
    updated: int = 0
    archived: int = 0
    deactivated: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0
    status: str = RUN_COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def decay_window(last_mentioned_at: datetime, last_decayed_at: Optional[datetime], stale_days: int,
                 now: datetime) -> Tuple[int, Optional[datetime]]:
    """
    Whole days of decay still owed, and the mark to store once they are applied.

    Decay starts when an item turns stale and each day is applied once,
    so running the pass twice on the same day changes nothing.

    Args:
        last_mentioned_at: Last reinforcement time
        last_decayed_at: Decay already applied up to this time, if any
        stale_days: Days without mention before decay starts
        now: Reference time

    Returns:
        (days, new_mark); days is 0 when nothing is owed
    """
    start = last_mentioned_at + timedelta(days=stale_days)
    if last_decayed_at is not None and last_decayed_at > start:
        start = last_decayed_at
    days = int(math.floor(days_between(start, now)))
    if days < 1:
        return 0, None
    return days, start + timedelta(days=days)


def decayed_score(score: float, days: int, factor: float, floor: float) -> float:
    """Apply `days` daily factors; a score at or below the floor is left as is."""
    if score <= floor:
        return score
    return max(floor, score * factor**days)


def _finish(report: PassReport, start: float) -> PassReport:
    report.duration_ms = int((time.perf_counter() - start) * 1000)
    if report.failed and (report.updated or report.archived or report.deactivated):
        report.status = RUN_PARTIAL
    elif report.failed:
        report.status = RUN_FAILED
    return report


class DecayScheduler:
    """Run the decay and archival passes and record them in job history."""

    def __init__(self, db: Database, job_queue: JobQueue, config: DecayConfig, vector_index=None, on_change=None):
        """
        Initialize the scheduler.

        Args:
            db: Relational store
            job_queue: Queue used to write job_history records
            config: DecayConfig with thresholds, factor and floors
            vector_index: Similarity index to mark archived entities in, if any
            on_change: Awaited with each user whose memories changed
        """
        self.db = db
        self.job_queue = job_queue
        self.config = config
        self.vector_index = vector_index
        self.on_change = on_change

    async def run_decay(self, user_id: Optional[str] = None, now: Optional[datetime] = None) -> PassReport:
        """
        Decay stale entities and behaviors.

        Args:
            user_id: Restrict the pass to one user (all users when None)
            now: Reference time

        Returns:
            PassReport with updated / deactivated / failed counts
        """
        start = time.perf_counter()
        now = now or utc_now()
        report = PassReport(run_type='decay')
        touched = set()

        cutoff = to_iso(now - timedelta(days=self.config.stale_days))
        sql = ('SELECT id, user_id, importance_score, last_mentioned_at, last_decayed_at FROM entities '
               'WHERE status = ? AND last_mentioned_at < ? AND importance_score > ?')
        params: List[Any] = [STATUS_ACTIVE, cutoff, self.config.floor]
        if user_id:
            sql += ' AND user_id = ?'
            params.append(user_id)

        try:
            rows = await self.db.fetch_all(sql, params)
        except DatabaseError as e:
            logger.error(f'Decay pass could not load entities: {e}')
            report.failed += 1
            report.errors.append(str(e))
            rows = []

        for row in rows:
            report.processed += 1
            days, mark = decay_window(parse_iso(row['last_mentioned_at']), parse_iso(row['last_decayed_at']), self.config.stale_days,
                                      now)
            if not days:
                continue
            score = decayed_score(float(row['importance_score']), days, self.config.daily_factor, self.config.floor)
            try:
                await self.db.execute('UPDATE entities SET importance_score = ?, last_decayed_at = ? WHERE id = ? AND status = ?',
                                      (score, to_iso(mark), row['id'], STATUS_ACTIVE))
                report.updated += 1
                touched.add(row['user_id'])
            except DatabaseError as e:
                logger.warning(f'Decay failed for entity {row["id"]}: {e}')
                report.failed += 1
                report.errors.append(f'{row["id"]}: {e}')

        await self._decay_behaviors(report, user_id, now, touched)
        return await self._record(_finish(report, start), user_id, touched)

    async def _decay_behaviors(self, report: PassReport, user_id: Optional[str], now: datetime, touched: set) -> None:
        cutoff = to_iso(now - timedelta(days=self.config.behavior_stale_days))
        sql = ('SELECT id, user_id, confidence, last_reinforced_at, last_decayed_at FROM behaviors '
               'WHERE status = ? AND last_reinforced_at < ?')
        params: List[Any] = [STATUS_ACTIVE, cutoff]
        if user_id:
            sql += ' AND user_id = ?'
            params.append(user_id)

        try:
            rows = await self.db.fetch_all(sql, params)
        except DatabaseError as e:
            logger.error(f'Decay pass could not load behaviors: {e}')
            report.failed += 1
            report.errors.append(str(e))
            return

        for row in rows:
            report.processed += 1
            days, mark = decay_window(parse_iso(row['last_reinforced_at']), parse_iso(row['last_decayed_at']),
                                      self.config.behavior_stale_days, now)
            if not days:
                continue
            confidence = float(row['confidence']) * self.config.daily_factor**days
            status = STATUS_INACTIVE if confidence < self.config.behavior_floor else STATUS_ACTIVE
            try:
                await self.db.execute('UPDATE behaviors SET confidence = ?, status = ?, last_decayed_at = ? WHERE id = ?',
                                      (confidence, status, to_iso(mark), row['id']))
                touched.add(row['user_id'])
                if status == STATUS_INACTIVE:
                    report.deactivated += 1
                else:
                    report.updated += 1
            except DatabaseError as e:
                logger.warning(f'Decay failed for behavior {row["id"]}: {e}')
                report.failed += 1
                report.errors.append(f'{row["id"]}: {e}')

    async def run_archival(self, user_id: Optional[str] = None, now: Optional[datetime] = None) -> PassReport:
        """
        Archive long-unmentioned low-importance entities and expired ones.

        Args:
            user_id: Restrict the pass to one user (all users when None)
            now: Reference time

        Returns:
            PassReport with archived / failed counts
        """
        start = time.perf_counter()
        now = now or utc_now()
        report = PassReport(run_type='archival')
        touched = set()

        sql = ('SELECT id, user_id FROM entities WHERE status = ? AND ((last_mentioned_at < ? AND importance_score < ?) '
               'OR (expires_at IS NOT NULL AND expires_at < ?))')
        params: List[Any] = [STATUS_ACTIVE, to_iso(now - timedelta(days=self.config.archive_days)), self.config.archive_importance,
                             to_iso(now)]
        if user_id:
            sql += ' AND user_id = ?'
            params.append(user_id)

        try:
            rows = await self.db.fetch_all(sql, params)
        except DatabaseError as e:
            logger.error(f'Archival pass could not load entities: {e}')
            report.failed += 1
            report.errors.append(str(e))
            rows = []

        for row in rows:
            report.processed += 1
            try:
                await self.db.execute('UPDATE entities SET status = ?, updated_at = ? WHERE id = ? AND status = ?',
                                      (STATUS_ARCHIVED, to_iso(now), row['id'], STATUS_ACTIVE))
                report.archived += 1
                touched.add(row['user_id'])
            except DatabaseError as e:
                logger.warning(f'Archival failed for entity {row["id"]}: {e}')
                report.failed += 1
                report.errors.append(f'{row["id"]}: {e}')
                continue

            if self.vector_index is not None:
                try:
                    await self.vector_index.set_status(row['id'], STATUS_ARCHIVED)
                except OpenSearchError as e:
                    logger.warning(f'Could not mark entity {row["id"]} archived in the similarity index: {e}')

        return await self._record(_finish(report, start), user_id, touched)

    async def run_maintenance(self, user_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run the decay pass then the archival pass; one failing does not stop the other."""
        decay = await self.run_decay(user_id, now)
        archival = await self.run_archival(user_id, now)
        logger.info(f'Maintenance complete: {decay.updated} decayed, {decay.deactivated} behaviors deactivated, '
                    f'{archival.archived} archived ({decay.failed + archival.failed} failures)')
        return {'decay': decay.to_dict(), 'archival': archival.to_dict()}

    async def _record(self, report: PassReport, user_id: Optional[str], touched: set) -> PassReport:
        logger.info(f'{report.run_type} pass {report.status}: processed={report.processed} updated={report.updated} '
                    f'archived={report.archived} deactivated={report.deactivated} failed={report.failed} '
                    f'in {report.duration_ms} ms')
        try:
            await self.job_queue.record_run(report.run_type, report.status, report.to_dict(), report.duration_ms, user_id=user_id)
        except DatabaseError as e:
            logger.error(f'Could not record {report.run_type} run: {e}')

        if self.on_change is not None:
            for changed_user in touched:
                await self.on_change(changed_user)
        return report
