"""
Schedule Reconciliation

Out-of-band repair for the scheduling tables and their external copies:

- reconcile_counts: recompute every entry's subscriber_count from active
  mappings and flag entries whose cached count drifted
- resync_stale_entries: retry the external rebuild of entries marked needs_sync
- validate: report invariant violations without changing anything
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from sqlalchemy import func
from sqlalchemy.orm import Session

from scraper.core.metrics import schedule_entries_out_of_sync
from scraper.db.models import ScheduleEntry, SubscriberMapping
from scraper.services.schedule_registry import ScheduleRegistry

logger = logging.getLogger(__name__)


@dataclass
class CountDrift:
    schedule_id: int
    cached_count: int
    actual_count: int


@dataclass
class ReconcileReport:
    entries_checked: int = 0
    drifted: List[CountDrift] = field(default_factory=list)
    resynced: List[int] = field(default_factory=list)
    still_out_of_sync: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ValidationReport:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def error(self, message: str):
        self.valid = False
        self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReconciliationService:
    """Drift repair and invariant checks for schedule entries"""

    def __init__(self, registry: ScheduleRegistry):
        self.registry = registry

    def reconcile_counts(self, db: Session) -> ReconcileReport:
        """Recompute cached counts from active mappings; drifted entries are marked for resync."""
        report = ReconcileReport()
        entry_ids = [entry_id for (entry_id,) in db.query(ScheduleEntry.id).order_by(ScheduleEntry.id).all()]

        for entry_id in entry_ids:
            entry = self.registry.lock_entry(db, entry_id)
            cached = entry.subscriber_count
            actual = self.registry.recount(db, entry)
            report.entries_checked += 1
            if cached != actual:
                entry.needs_sync = True
                report.drifted.append(CountDrift(schedule_id=entry_id, cached_count=cached, actual_count=actual))
                logger.warning(f"Schedule {entry_id} count drift: cached {cached}, actual {actual}")
            db.commit()

        return report

    def resync_stale_entries(self, db: Session, limit: int = 100) -> ReconcileReport:
        """Retry the external rebuild for entries whose last sync failed."""
        report = ReconcileReport()
        stale_ids = [
            entry_id for (entry_id,) in db.query(ScheduleEntry.id)
            .filter(ScheduleEntry.needs_sync.is_(True))
            .order_by(ScheduleEntry.id)
            .limit(limit)
            .all()
        ]

        for entry_id in stale_ids:
            report.entries_checked += 1
            result = self.registry.rebuild_input(db, entry_id)
            if result.success:
                report.resynced.append(entry_id)
            else:
                report.still_out_of_sync.append(entry_id)

        remaining = db.query(func.count(ScheduleEntry.id)).filter(ScheduleEntry.needs_sync.is_(True)).scalar()
        schedule_entries_out_of_sync.set(remaining)
        if stale_ids:
            logger.info(f"Resynced {len(report.resynced)}/{len(stale_ids)} stale schedules, {remaining} still out of sync")
        return report

    def reconcile(self, db: Session) -> ReconcileReport:
        counts = self.reconcile_counts(db)
        resync = self.resync_stale_entries(db)
        counts.resynced = resync.resynced
        counts.still_out_of_sync = resync.still_out_of_sync
        return counts

    def validate(self, db: Session) -> ValidationReport:
        report = ValidationReport()

        active_counts = dict(
            db.query(SubscriberMapping.schedule_id, func.count(SubscriberMapping.id))
            .filter(SubscriberMapping.is_active.is_(True))
            .group_by(SubscriberMapping.schedule_id)
            .all()
        )

        for entry in db.query(ScheduleEntry).order_by(ScheduleEntry.id).all():
            actual = active_counts.get(entry.id, 0)
            if entry.subscriber_count != actual:
                report.error(f"Schedule {entry.id} ({entry.name}): cached count {entry.subscriber_count}, actual {actual}")
            max_size = self.registry.max_batch_size(entry.target_type)
            if actual > max_size:
                report.error(f"Schedule {entry.id} ({entry.name}) holds {actual} subscribers, max is {max_size}")
            if entry.is_active != (actual > 0):
                report.warnings.append(f"Schedule {entry.id} ({entry.name}) is_active={entry.is_active} with {actual} subscribers")
            if entry.needs_sync:
                report.warnings.append(f"Schedule {entry.id} ({entry.name}) is out of sync: {entry.last_sync_error}")

        mismatched = (
            db.query(SubscriberMapping.id, SubscriberMapping.interval_hours, ScheduleEntry.interval_hours)
            .join(ScheduleEntry, SubscriberMapping.schedule_id == ScheduleEntry.id)
            .filter(SubscriberMapping.interval_hours != ScheduleEntry.interval_hours)
            .all()
        )
        for mapping_id, mapping_interval, entry_interval in mismatched:
            report.error(f"Mapping {mapping_id} interval {mapping_interval}h differs from its schedule's {entry_interval}h")

        duplicates = (
            db.query(SubscriberMapping.target_id, SubscriberMapping.job_kind, func.count(SubscriberMapping.id))
            .filter(SubscriberMapping.is_active.is_(True))
            .group_by(SubscriberMapping.target_id, SubscriberMapping.job_kind)
            .having(func.count(SubscriberMapping.id) > 1)
            .all()
        )
        for target_id, job_kind, count in duplicates:
            report.error(f"Target {target_id} has {count} active {job_kind} mappings")

        if report.valid:
            logger.info("Schedule validation passed")
        else:
            logger.warning(f"Schedule validation found {len(report.errors)} errors")
        return report
