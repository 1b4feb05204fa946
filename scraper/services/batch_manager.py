"""
Batch Capacity Manager

Keeps every schedule entry at or below its target type's max batch size:
splits full entries, evens out load across a group's batches, merges
underfilled batches away, and classifies entries for health reporting.

A group is all entries sharing (target_type, job_kind, interval_hours).
Paused entries are left out of rebalancing and consolidation.
"""
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from scraper.core.exceptions import ConflictError, UpstreamError
from scraper.core.metrics import schedule_entries_by_health, schedule_entries_out_of_sync, schedule_subscribers
from scraper.db.models import ScheduleEntry, SubscriberMapping
from scraper.integrations.constants import parse_job_kind, parse_target_type
from scraper.services.results import OperationResult, RebuildResult
from scraper.services.schedule_registry import ScheduleRegistry

logger = logging.getLogger(__name__)

WARNING_UTILIZATION = 0.80
CRITICAL_UTILIZATION = 0.95
REBALANCE_SPREAD_FRACTION = 0.2


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class BatchOperationResult(OperationResult):
    subscribers_moved: int = 0
    batches_created: int = 0
    batches_removed: int = 0


@dataclass
class GroupStats:
    total_schedules: int = 0
    total_subscribers: int = 0
    average_load: float = 0.0
    max_load: int = 0
    min_load: int = 0
    needs_rebalancing: bool = False


@dataclass
class HealthReport:
    healthy: int = 0
    warning: int = 0
    critical: int = 0
    details: List[Dict] = field(default_factory=list)


def classify_utilization(count: int, max_size: int) -> HealthStatus:
    utilization = count / max_size if max_size else 1.0
    if utilization >= CRITICAL_UTILIZATION:
        return HealthStatus.CRITICAL
    if utilization >= WARNING_UTILIZATION:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


class BatchCapacityManager:
    """Split, rebalance and consolidate schedule batches"""

    def __init__(self, registry: ScheduleRegistry):
        self.registry = registry

    def _lock_in_order(self, db: Session, entry_ids) -> Dict[int, ScheduleEntry]:
        # Ascending id order so concurrent multi-entry operations cannot deadlock
        return {entry_id: self.registry.lock_entry(db, entry_id) for entry_id in sorted(set(entry_ids))}

    def _rebuild_all(self, db: Session, entry_ids) -> List[RebuildResult]:
        failures = []
        for entry_id in sorted(set(entry_ids)):
            result = self.registry.rebuild_input(db, entry_id)
            if not result.success:
                failures.append(result)
        return failures

    def should_split(self, db: Session, entry_id: int) -> bool:
        entry = db.get(ScheduleEntry, entry_id)
        if entry is None:
            return False
        return entry.subscriber_count >= self.registry.max_batch_size(entry.target_type)

    def split(self, db: Session, entry_id: int) -> BatchOperationResult:
        """
        Move the newer half of an entry's subscribers to a new batch.

        Subscribers are ordered by creation; the first floor(n/2) stay. An
        entry with one subscriber or fewer is left alone.
        """
        source = self.registry.get_entry(db, entry_id)
        if self.registry.count_active(db, source.id) <= 1:
            return BatchOperationResult.ok(f"Schedule {entry_id} has nothing to split")

        target_type, job_kind, interval = source.target_type, source.job_kind, source.interval_hours
        try:
            destination = self.registry.allocate_new_batch(db, target_type, job_kind, interval)
        except (ConflictError, UpstreamError) as e:
            logger.error(f"Split of schedule {entry_id} failed allocating a new batch: {e}")
            return BatchOperationResult.failed(f"Could not allocate new batch: {e}", reason=e.reason)

        locked = self._lock_in_order(db, [source.id, destination.id])
        source, destination = locked[source.id], locked[destination.id]

        mappings = self.registry.active_mappings(db, source.id)
        keep = len(mappings) // 2
        to_move = mappings[keep:] if len(mappings) > 1 else []
        for mapping in to_move:
            mapping.schedule_id = destination.id

        self.registry.recount(db, source)
        self.registry.recount(db, destination)
        db.commit()

        logger.info(
            f"Split schedule {source.id} ({source.name}): moved {len(to_move)} subscribers "
            f"to batch {destination.batch_index} (schedule {destination.id})"
        )

        failures = self._rebuild_all(db, [source.id, destination.id])
        return BatchOperationResult.ok(
            f"Moved {len(to_move)} subscribers to batch {destination.batch_index}",
            changed=bool(to_move),
            schedule_ids=[source.id, destination.id],
            sync_failures=failures,
            subscribers_moved=len(to_move),
            batches_created=1,
        )

    def rebalance(self, db: Session, target_type, job_kind, interval_hours: int) -> BatchOperationResult:
        """
        Even out subscribers across a group's batches.

        Refuses, without changing anything, when an even share would exceed
        the max batch size; that group needs more batches, not rebalancing.
        """
        target_type = parse_target_type(target_type)
        job_kind = parse_job_kind(job_kind)
        entries = [e for e in self.registry.group_entries(db, target_type, job_kind, interval_hours) if not e.is_paused]
        if len(entries) <= 1:
            return BatchOperationResult.ok("No rebalancing needed (single schedule)")

        locked = self._lock_in_order(db, [e.id for e in entries])
        entries = sorted(locked.values(), key=lambda e: e.batch_index)

        members: List[SubscriberMapping] = []
        for entry in entries:
            members.extend(self.registry.active_mappings(db, entry.id))

        total = len(members)
        if total == 0:
            db.rollback()
            return BatchOperationResult.ok("No subscribers to rebalance")

        per_batch = math.ceil(total / len(entries))
        max_size = self.registry.max_batch_size(target_type)
        if per_batch > max_size:
            db.rollback()
            return BatchOperationResult.failed(
                f"Cannot rebalance: need more batches ({per_batch} > {max_size})",
                reason="capacity_exceeded",
            )

        touched = set()
        moved = 0
        for position, mapping in enumerate(members):
            destination = entries[position // per_batch]
            if mapping.schedule_id != destination.id:
                touched.update((mapping.schedule_id, destination.id))
                mapping.schedule_id = destination.id
                moved += 1

        for entry in entries:
            self.registry.recount(db, entry)
        db.commit()

        logger.info(f"Rebalanced {moved} subscribers across {len(entries)} batches of {target_type.value}/{job_kind.value}/{interval_hours}h")
        failures = self._rebuild_all(db, touched)
        return BatchOperationResult.ok(
            f"Rebalanced {moved} subscribers across {len(entries)} batches",
            changed=moved > 0,
            schedule_ids=sorted(touched),
            sync_failures=failures,
            subscribers_moved=moved,
        )

    def consolidate(
        self,
        db: Session,
        target_type,
        job_kind,
        interval_hours: int,
        threshold: Optional[float] = None,
    ) -> BatchOperationResult:
        """
        Merge batches below `threshold * max_batch_size` into a batch with room.

        The emptied entry and its external job are deleted only after its
        members are re-pointed; a batch with no valid merge target is left
        as it is.
        """
        target_type = parse_target_type(target_type)
        job_kind = parse_job_kind(job_kind)
        if threshold is None:
            threshold = self.registry.settings.consolidate_threshold
        max_size = self.registry.max_batch_size(target_type)
        min_size = math.floor(max_size * threshold)

        entries = [e for e in self.registry.group_entries(db, target_type, job_kind, interval_hours) if not e.is_paused]
        if len(entries) <= 1:
            return BatchOperationResult.ok("No consolidation needed")

        entry_ids = [e.id for e in sorted(entries, key=lambda e: (e.subscriber_count, e.batch_index))]
        removed_ids = set()
        moved_total = 0
        touched = set()
        errors = []

        for small_id in entry_ids:
            if small_id in removed_ids:
                continue
            small = db.get(ScheduleEntry, small_id)
            if small is None or small.subscriber_count >= min_size:
                continue

            candidates = []
            for other_id in entry_ids:
                if other_id == small_id or other_id in removed_ids:
                    continue
                other = db.get(ScheduleEntry, other_id)
                if other is not None and other.subscriber_count + small.subscriber_count <= max_size:
                    candidates.append(other)
            if not candidates:
                continue
            # Pack into the fullest batch that still fits
            target = max(candidates, key=lambda e: (e.subscriber_count, -e.batch_index))
            target_id = target.id
            small_batch, target_batch = small.batch_index, target.batch_index

            locked = self._lock_in_order(db, [small_id, target_id])
            # Cached counts were read before the locks; recheck against the mappings
            small_count = self.registry.count_active(db, small_id)
            target_count = self.registry.count_active(db, target_id)
            if locked[target_id].is_paused or small_count >= min_size or small_count + target_count > max_size:
                db.rollback()
                logger.info(
                    f"Batch {small_batch} can no longer merge into batch {target_batch} "
                    f"({small_count} + {target_count} subscribers, max {max_size}), skipping"
                )
                continue

            mappings = db.query(SubscriberMapping).filter(SubscriberMapping.schedule_id == small_id).all()
            for mapping in mappings:
                mapping.schedule_id = target_id
            self.registry.recount(db, locked[small_id])
            self.registry.recount(db, locked[target_id])
            db.commit()
            moved_total += len(mappings)
            touched.add(target_id)

            rebuild = self.registry.rebuild_input(db, target_id)
            if not rebuild.success:
                errors.append(rebuild)

            deletion = self.registry.delete_entry(db, small_id)
            if deletion.success:
                removed_ids.add(small_id)
                logger.info(f"Consolidated batch {small_batch} into batch {target_batch} ({len(mappings)} subscribers)")
            else:
                # Members already moved; the empty entry stays deactivated
                logger.warning(f"Consolidated batch {small_batch} but could not delete it: {deletion.message}")
                touched.add(small_id)
                rebuild = self.registry.rebuild_input(db, small_id)
                if not rebuild.success:
                    errors.append(rebuild)

        return BatchOperationResult.ok(
            f"Consolidated {len(removed_ids)} underutilized batches",
            changed=bool(removed_ids) or moved_total > 0,
            schedule_ids=sorted(touched),
            sync_failures=errors,
            subscribers_moved=moved_total,
            batches_removed=len(removed_ids),
        )

    def stats(self, db: Session, target_type, job_kind, interval_hours: int) -> GroupStats:
        entries = self.registry.group_entries(db, target_type, job_kind, interval_hours)
        if not entries:
            return GroupStats()

        loads = [e.subscriber_count for e in entries]
        total = sum(loads)
        average = total / len(entries)
        return GroupStats(
            total_schedules=len(entries),
            total_subscribers=total,
            average_load=round(average, 1),
            max_load=max(loads),
            min_load=min(loads),
            needs_rebalancing=(max(loads) - min(loads)) > average * REBALANCE_SPREAD_FRACTION,
        )

    def health_status(self, db: Session) -> HealthReport:
        """Classify every entry by utilization and refresh the health gauges."""
        report = HealthReport()
        subscribers: Dict[tuple, int] = {}
        out_of_sync = 0

        for entry in self.registry.list_entries(db):
            max_size = self.registry.max_batch_size(entry.target_type)
            status = classify_utilization(entry.subscriber_count, max_size)
            if status == HealthStatus.CRITICAL:
                report.critical += 1
            elif status == HealthStatus.WARNING:
                report.warning += 1
            else:
                report.healthy += 1

            detail = {
                "schedule_id": entry.id,
                "name": entry.name,
                "target_type": entry.target_type,
                "job_kind": entry.job_kind,
                "interval_hours": entry.interval_hours,
                "batch_index": entry.batch_index,
                "subscriber_count": entry.subscriber_count,
                "max_batch_size": max_size,
                "status": status.value,
            }
            if status == HealthStatus.CRITICAL:
                detail["reason"] = "At or near capacity, split imminent"
            elif entry.needs_sync:
                detail["reason"] = "External job input out of sync"
            report.details.append(detail)

            key = (entry.target_type, entry.job_kind)
            subscribers[key] = subscribers.get(key, 0) + entry.subscriber_count
            if entry.needs_sync:
                out_of_sync += 1

        schedule_entries_by_health.labels(status=HealthStatus.HEALTHY.value).set(report.healthy)
        schedule_entries_by_health.labels(status=HealthStatus.WARNING.value).set(report.warning)
        schedule_entries_by_health.labels(status=HealthStatus.CRITICAL.value).set(report.critical)
        for (target_type, job_kind), count in subscribers.items():
            schedule_subscribers.labels(target_type=target_type, job_kind=job_kind).set(count)
        schedule_entries_out_of_sync.set(out_of_sync)

        return report
