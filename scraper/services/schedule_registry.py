"""
Interval Schedule Registry

Owns the catalog of shared recurring jobs (`ScheduleEntry` rows) and keeps the
job platform's copy of each job's input in step with its active subscribers.

Sync discipline: membership changes are committed to the database first; the
external rebuild runs after the commit. A failed rebuild marks the entry
`needs_sync` and is surfaced in the result; the reconciliation task retries
it out of band. The database is always the source of truth.
"""
import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scraper.core.config import Settings, get_settings
from scraper.core.exceptions import ConflictError, NotFoundError, UpstreamError
from scraper.core.metrics import schedule_rebuilds_total
from scraper.core.timeutils import utcnow
from scraper.db.models import ScheduleEntry, SubscriberMapping
from scraper.integrations.constants import DEFAULT_RUN_OPTIONS, JobKind, RunKind, TargetType, parse_job_kind, parse_target_type
from scraper.integrations.job_platform import (
    JobPlatform,
    RecurringJobSpec,
    RunHandle,
    build_job_input,
    build_webhook,
    interval_to_cron,
    schedule_entry_name,
)
from scraper.services.results import OperationResult, RebuildResult

logger = logging.getLogger(__name__)

MAX_SLOT_ATTEMPTS = 3


class ScheduleRegistry:
    """Catalog of schedule entries and their external recurring jobs"""

    def __init__(self, platform: JobPlatform, settings: Optional[Settings] = None):
        self.platform = platform
        self.settings = settings or get_settings()
        self.max_batch_sizes: Dict[TargetType, int] = {
            TargetType(key): value for key, value in self.settings.max_batch_sizes().items()
        }

    def max_batch_size(self, target_type) -> int:
        return self.max_batch_sizes[parse_target_type(target_type)]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_entry(self, db: Session, entry_id: int) -> ScheduleEntry:
        entry = db.get(ScheduleEntry, entry_id)
        if entry is None:
            raise NotFoundError(f"Schedule entry {entry_id} not found")
        return entry

    def lock_entry(self, db: Session, entry_id: int) -> ScheduleEntry:
        """Load an entry holding its row lock until the transaction ends."""
        entry = (
            db.query(ScheduleEntry)
            .filter(ScheduleEntry.id == entry_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if entry is None:
            raise NotFoundError(f"Schedule entry {entry_id} not found")
        return entry

    def list_entries(
        self,
        db: Session,
        target_type=None,
        job_kind=None,
        interval_hours: Optional[int] = None,
    ) -> List[ScheduleEntry]:
        query = db.query(ScheduleEntry)
        if target_type is not None:
            query = query.filter(ScheduleEntry.target_type == parse_target_type(target_type).value)
        if job_kind is not None:
            query = query.filter(ScheduleEntry.job_kind == parse_job_kind(job_kind).value)
        if interval_hours is not None:
            query = query.filter(ScheduleEntry.interval_hours == interval_hours)
        return query.order_by(
            ScheduleEntry.target_type,
            ScheduleEntry.job_kind,
            ScheduleEntry.interval_hours,
            ScheduleEntry.batch_index,
        ).all()

    def group_entries(self, db: Session, target_type, job_kind, interval_hours: int) -> List[ScheduleEntry]:
        return (
            db.query(ScheduleEntry)
            .filter(
                ScheduleEntry.target_type == parse_target_type(target_type).value,
                ScheduleEntry.job_kind == parse_job_kind(job_kind).value,
                ScheduleEntry.interval_hours == interval_hours,
            )
            .order_by(ScheduleEntry.batch_index)
            .all()
        )

    def active_mappings(self, db: Session, entry_id: int) -> List[SubscriberMapping]:
        """Active subscribers in creation order."""
        return (
            db.query(SubscriberMapping)
            .filter(SubscriberMapping.schedule_id == entry_id, SubscriberMapping.is_active.is_(True))
            .order_by(SubscriberMapping.created_at, SubscriberMapping.id)
            .all()
        )

    def count_active(self, db: Session, entry_id: int) -> int:
        return (
            db.query(func.count(SubscriberMapping.id))
            .filter(SubscriberMapping.schedule_id == entry_id, SubscriberMapping.is_active.is_(True))
            .scalar()
        )

    def recount(self, db: Session, entry: ScheduleEntry) -> int:
        """Recompute the cached count from mappings inside the current transaction."""
        db.flush()
        count = self.count_active(db, entry.id)
        entry.subscriber_count = count
        entry.is_active = count > 0
        return count

    def find_with_capacity(
        self,
        db: Session,
        target_type: TargetType,
        job_kind: JobKind,
        interval_hours: int,
        exclude_ids: Sequence[int] = (),
    ) -> Optional[ScheduleEntry]:
        """Lowest batch-index entry of the group that is not paused and has room."""
        query = db.query(ScheduleEntry).filter(
            ScheduleEntry.target_type == target_type.value,
            ScheduleEntry.job_kind == job_kind.value,
            ScheduleEntry.interval_hours == interval_hours,
            ScheduleEntry.is_paused.is_(False),
            ScheduleEntry.subscriber_count < self.max_batch_size(target_type),
        )
        if exclude_ids:
            query = query.filter(ScheduleEntry.id.notin_(list(exclude_ids)))
        return query.order_by(ScheduleEntry.batch_index).first()

    def next_batch_index(self, db: Session, target_type: TargetType, job_kind: JobKind, interval_hours: int) -> int:
        highest = (
            db.query(func.max(ScheduleEntry.batch_index))
            .filter(
                ScheduleEntry.target_type == target_type.value,
                ScheduleEntry.job_kind == job_kind.value,
                ScheduleEntry.interval_hours == interval_hours,
            )
            .scalar()
        )
        return 0 if highest is None else highest + 1

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def get_or_create(
        self,
        db: Session,
        target_type,
        job_kind,
        interval_hours: int,
        exclude_ids: Sequence[int] = (),
    ) -> ScheduleEntry:
        """
        Entry of the group with spare capacity, creating the next batch if none.

        Concurrent creators of the same slot are resolved by the unique
        constraint: the loser discards its external job and re-reads.
        """
        target_type = parse_target_type(target_type)
        job_kind = parse_job_kind(job_kind)
        if interval_hours <= 0:
            raise ValueError(f"interval_hours must be positive, got {interval_hours}")

        for _ in range(MAX_SLOT_ATTEMPTS):
            entry = self.find_with_capacity(db, target_type, job_kind, interval_hours, exclude_ids)
            if entry is not None:
                return entry
            batch_index = self.next_batch_index(db, target_type, job_kind, interval_hours)
            try:
                return self.create_entry(db, target_type, job_kind, interval_hours, batch_index)
            except ConflictError:
                logger.info(
                    f"Slot {target_type.value}/{job_kind.value}/{interval_hours}h/{batch_index} "
                    "created concurrently, retrying"
                )

        raise ConflictError(
            f"Could not allocate a schedule entry for {target_type.value}/{job_kind.value}/{interval_hours}h",
            reason="allocation_contention",
        )

    def allocate_new_batch(self, db: Session, target_type, job_kind, interval_hours: int) -> ScheduleEntry:
        """Always create a fresh batch at the next free index (used by splits)."""
        target_type = parse_target_type(target_type)
        job_kind = parse_job_kind(job_kind)
        for _ in range(MAX_SLOT_ATTEMPTS):
            batch_index = self.next_batch_index(db, target_type, job_kind, interval_hours)
            try:
                return self.create_entry(db, target_type, job_kind, interval_hours, batch_index)
            except ConflictError:
                continue
        raise ConflictError(
            f"Could not allocate a new batch for {target_type.value}/{job_kind.value}/{interval_hours}h",
            reason="allocation_contention",
        )

    def create_external_job(
        self,
        target_type: TargetType,
        job_kind: JobKind,
        interval_hours: int,
        batch_index: int,
    ) -> RecurringJobSpec:
        """Create the disabled recurring job on the platform; returns its spec with `external_id` set."""
        spec = RecurringJobSpec(
            name=schedule_entry_name(target_type, job_kind, interval_hours, batch_index),
            cron_expression=interval_to_cron(interval_hours, batch_index),
            actor_id=self.settings.actor_id(target_type, job_kind),
            run_input={},
            run_options={
                **DEFAULT_RUN_OPTIONS,
                "timeoutSecs": self.settings.job_run_timeout_secs,
                "memoryMbytes": self.settings.job_run_memory_mbytes,
            },
            enabled=False,
        )
        spec.external_id = self.platform.create_recurring_job(spec)
        return spec

    def create_entry(
        self,
        db: Session,
        target_type: TargetType,
        job_kind: JobKind,
        interval_hours: int,
        batch_index: int,
    ) -> ScheduleEntry:
        """
        Create the external job and its row for one slot.

        Commits immediately so the slot is claimed before any membership
        change is made against it. Raises ConflictError if the slot exists.
        """
        spec = self.create_external_job(target_type, job_kind, interval_hours, batch_index)
        entry = ScheduleEntry(
            name=spec.name,
            target_type=target_type.value,
            job_kind=job_kind.value,
            interval_hours=interval_hours,
            batch_index=batch_index,
            external_job_id=spec.external_id,
            actor_id=spec.actor_id,
            cron_expression=spec.cron_expression,
            max_items_per_run=self.settings.max_items_per_run,
            subscriber_count=0,
            is_active=False,
            last_synced_at=utcnow(),
        )
        db.add(entry)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            self._discard_external_job(spec.external_id)
            raise ConflictError(f"Schedule slot {spec.name} already exists", reason="slot_taken")

        db.refresh(entry)
        logger.info(f"Created schedule entry {entry.id} ({entry.name}) cron='{entry.cron_expression}'")
        return entry

    def _discard_external_job(self, external_id: str):
        try:
            self.platform.delete_recurring_job(external_id)
        except UpstreamError as e:
            logger.error(f"Orphaned recurring job {external_id} could not be deleted: {e}")

    # ------------------------------------------------------------------
    # External sync
    # ------------------------------------------------------------------

    def rebuild_input(self, db: Session, entry_id: int) -> RebuildResult:
        """
        Push the entry's current subscriber identifiers to its external job.

        Persists subscriber_count and is_active first, then swaps the input and
        callback on the platform. The job is disabled when it has no
        subscribers or is paused.
        """
        entry = db.get(ScheduleEntry, entry_id)
        if entry is None:
            return RebuildResult(schedule_id=entry_id, success=False, error="Schedule entry not found")

        mappings = self.active_mappings(db, entry.id)
        identifiers = list(dict.fromkeys(m.external_identifier for m in mappings))
        entry.subscriber_count = len(mappings)
        entry.is_active = len(mappings) > 0
        enabled = entry.is_active and not entry.is_paused
        db.commit()

        target_type = TargetType(entry.target_type)
        job_kind = JobKind(entry.job_kind)
        run_input = build_job_input(target_type, job_kind, identifiers, entry.max_items_per_run)
        webhook = build_webhook(
            self.settings.webhook_base_url,
            self.settings.job_platform_webhook_secret,
            target_type,
            RunKind.for_job_kind(job_kind).value,
            schedule_entry_id=entry.id,
        )

        try:
            self.platform.update_recurring_job_input(entry.external_job_id, run_input, [webhook], enabled)
        except UpstreamError as e:
            entry.needs_sync = True
            entry.last_sync_error = str(e)[:2000]
            db.commit()
            schedule_rebuilds_total.labels(target_type=target_type.value, outcome="failed").inc()
            logger.error(f"Rebuild of schedule entry {entry.id} ({entry.name}) failed, marked for resync: {e}")
            return RebuildResult(
                schedule_id=entry.id,
                success=False,
                subscriber_count=entry.subscriber_count,
                enabled=enabled,
                error=str(e),
            )

        entry.needs_sync = False
        entry.last_sync_error = None
        entry.last_synced_at = utcnow()
        db.commit()
        schedule_rebuilds_total.labels(target_type=target_type.value, outcome="success").inc()
        logger.info(f"Rebuilt schedule entry {entry.id} ({entry.name}) with {len(identifiers)} identifiers, enabled={enabled}")
        return RebuildResult(
            schedule_id=entry.id,
            success=True,
            subscriber_count=entry.subscriber_count,
            enabled=enabled,
        )

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    def pause(self, db: Session, entry_id: int) -> OperationResult:
        entry = self.get_entry(db, entry_id)
        entry.is_paused = True
        db.commit()
        return self._push_enabled(db, entry, enabled=False, verb="paused")

    def resume(self, db: Session, entry_id: int) -> OperationResult:
        entry = self.get_entry(db, entry_id)
        entry.is_paused = False
        db.commit()
        return self._push_enabled(db, entry, enabled=entry.is_active, verb="resumed")

    def _push_enabled(self, db: Session, entry: ScheduleEntry, enabled: bool, verb: str) -> OperationResult:
        try:
            self.platform.set_recurring_job_enabled(entry.external_job_id, enabled)
        except UpstreamError as e:
            entry.needs_sync = True
            entry.last_sync_error = str(e)[:2000]
            db.commit()
            return OperationResult.failed(f"Schedule {entry.id} {verb} locally but platform update failed: {e}", reason=e.reason)
        logger.info(f"Schedule entry {entry.id} ({entry.name}) {verb}")
        return OperationResult.ok(f"Schedule {entry.id} {verb}", changed=True, schedule_ids=[entry.id])

    def delete_entry(self, db: Session, entry_id: int) -> OperationResult:
        """Delete an entry and its external job. Only empty entries can be deleted."""
        entry = self.get_entry(db, entry_id)
        remaining = db.query(func.count(SubscriberMapping.id)).filter(SubscriberMapping.schedule_id == entry.id).scalar()
        if remaining:
            return OperationResult.failed(
                f"Schedule {entry.id} still has {remaining} mapped subscribers",
                reason="not_empty",
            )
        try:
            self.platform.delete_recurring_job(entry.external_job_id)
        except UpstreamError as e:
            return OperationResult.failed(f"Could not delete external job for schedule {entry.id}: {e}", reason=e.reason)

        name = entry.name
        db.delete(entry)
        db.commit()
        logger.info(f"Deleted schedule entry {entry_id} ({name})")
        return OperationResult.ok(f"Schedule {entry_id} deleted", changed=True, schedule_ids=[entry_id])

    def trigger(self, db: Session, entry_id: int) -> RunHandle:
        """Sync the entry's input, then run it once outside its cron."""
        entry = self.get_entry(db, entry_id)
        rebuild = self.rebuild_input(db, entry.id)
        if not rebuild.success:
            raise UpstreamError(f"Schedule {entry_id} could not be synced before triggering: {rebuild.error}")
        if rebuild.subscriber_count == 0:
            raise ConflictError(f"Schedule {entry_id} has no subscribers to run", reason="empty_schedule")
        handle = self.platform.trigger_recurring_job(entry.external_job_id)
        logger.info(f"Triggered schedule entry {entry_id}, run {handle.run_id}")
        return handle
