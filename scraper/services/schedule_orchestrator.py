"""
Schedule Orchestrator

The only entry point that mutates scheduling membership. Guarantees that a
target has at most one mapping per job kind and that every entry's cached
subscriber count is recomputed in the same transaction as the mapping change.

Per job kind, a mutation runs as:
    lock entry row(s) -> change mapping -> recount -> commit -> split check -> rebuild

The commit always precedes the external rebuild; rebuild failures leave the
entry flagged `needs_sync` and are reported in the result.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scraper.core.alerting import Alert, AlertingService, AlertSeverity
from scraper.core.exceptions import CapacityError, ConflictError, SchedulingError
from scraper.db.models import ScheduleEntry, SubscriberMapping
from scraper.integrations.constants import JOB_KINDS_BY_TARGET_TYPE, JobKind, TargetType, parse_target_type
from scraper.services.batch_manager import BatchCapacityManager
from scraper.services.results import OperationResult, RebuildResult
from scraper.services.schedule_registry import ScheduleRegistry

logger = logging.getLogger(__name__)

MAX_PLACEMENT_ATTEMPTS = 3

ADDED = "added"
ALREADY_SUBSCRIBED = "already_subscribed"
MOVED = "moved"
ALREADY_AT_INTERVAL = "already_at_interval"
REMOVED = "removed"


class ScheduleOrchestrator:
    """Add, move and remove subscribers across shared schedule entries"""

    def __init__(
        self,
        registry: ScheduleRegistry,
        batch_manager: Optional[BatchCapacityManager] = None,
        alerting: Optional[AlertingService] = None,
    ):
        self.registry = registry
        self.batch_manager = batch_manager or BatchCapacityManager(registry)
        self.alerting = alerting

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def mappings_for_target(self, db: Session, target_id: str, target_type: Optional[TargetType] = None) -> List[SubscriberMapping]:
        query = db.query(SubscriberMapping).filter(SubscriberMapping.target_id == target_id)
        if target_type is not None:
            query = query.filter(SubscriberMapping.target_type == target_type.value)
        return query.order_by(SubscriberMapping.job_kind).all()

    def mappings_for_tenant(self, db: Session, tenant_id: str, target_type=None, active_only: bool = True) -> List[SubscriberMapping]:
        query = db.query(SubscriberMapping).filter(SubscriberMapping.tenant_id == tenant_id)
        if target_type is not None:
            query = query.filter(SubscriberMapping.target_type == parse_target_type(target_type).value)
        if active_only:
            query = query.filter(SubscriberMapping.is_active.is_(True))
        return query.order_by(SubscriberMapping.target_type, SubscriberMapping.target_id, SubscriberMapping.job_kind).all()

    # ------------------------------------------------------------------
    # Add
    # ------------------------------------------------------------------

    def add_subscriber(
        self,
        db: Session,
        target_id: str,
        tenant_id: str,
        target_type,
        external_identifier: str,
        interval_hours: int,
    ) -> OperationResult:
        """
        Map a target onto a schedule entry for every job kind of its target type.

        Repeating an identical call is a no-op success. A target owned by a
        different tenant, or already mapped at another interval, is rejected.
        Each job kind is placed independently; the result reports the outcome
        of every kind so a partial failure is visible.
        """
        target_type = parse_target_type(target_type)
        if not target_id or not tenant_id:
            raise ValueError("target_id and tenant_id are required")
        if not external_identifier or not external_identifier.strip():
            raise ValueError("external_identifier is required")
        if interval_hours <= 0:
            raise ValueError(f"interval_hours must be positive, got {interval_hours}")
        external_identifier = external_identifier.strip()

        for existing in self.mappings_for_target(db, target_id):
            if existing.tenant_id != tenant_id:
                return OperationResult.failed(
                    f"Target {target_id} is already claimed by another tenant",
                    reason=ConflictError.reason,
                )
            if existing.target_type != target_type.value:
                return OperationResult.failed(
                    f"Target {target_id} is mapped as {existing.target_type}, not {target_type.value}",
                    reason=ConflictError.reason,
                )

        outcomes: Dict[str, str] = {}
        schedule_ids: List[int] = []
        sync_failures: List[RebuildResult] = []
        failures: List[SchedulingError] = []

        for job_kind in JOB_KINDS_BY_TARGET_TYPE[target_type]:
            try:
                outcome, entry_id, kind_failures = self._add_for_kind(
                    db, target_id, tenant_id, target_type, job_kind, external_identifier, interval_hours
                )
            except SchedulingError as e:
                db.rollback()
                logger.error(f"Failed to add target {target_id} for {target_type.value}/{job_kind.value}: {e.message}")
                outcomes[job_kind.value] = f"failed: {e.message}"
                failures.append(e)
                continue
            outcomes[job_kind.value] = outcome
            schedule_ids.append(entry_id)
            sync_failures.extend(kind_failures)

        changed = any(outcome == ADDED for outcome in outcomes.values())

        if failures:
            self._alert_failure(
                key=f"add:{target_type.value}:{target_id}",
                title=f"Failed to add target to {target_type.value} schedules",
                description="; ".join(f"{kind}: {outcome}" for kind, outcome in outcomes.items()),
                labels={"tenant_id": tenant_id, "target_id": target_id, "target_type": target_type.value},
            )
            reason = failures[0].reason if len(failures) == len(outcomes) else "partial_failure"
            return OperationResult.failed(
                f"Target {target_id} could not be added for every job kind",
                reason=reason,
                changed=changed,
                outcomes=outcomes,
                schedule_ids=schedule_ids,
                sync_failures=sync_failures,
            )

        if not changed:
            message = f"Target {target_id} already subscribed at {interval_hours}h"
        else:
            message = f"Target {target_id} added to {interval_hours}h schedules"
        if sync_failures:
            message += f" ({len(sync_failures)} schedule(s) pending external sync)"
        logger.info(message)
        return OperationResult.ok(
            message,
            changed=changed,
            outcomes=outcomes,
            schedule_ids=schedule_ids,
            sync_failures=sync_failures,
        )

    def _add_for_kind(self, db, target_id, tenant_id, target_type, job_kind, external_identifier, interval_hours):
        mapping = (
            db.query(SubscriberMapping)
            .filter(SubscriberMapping.target_id == target_id, SubscriberMapping.job_kind == job_kind.value)
            .one_or_none()
        )
        if mapping is not None and mapping.is_active:
            if mapping.interval_hours == interval_hours and mapping.external_identifier == external_identifier:
                return ALREADY_SUBSCRIBED, mapping.schedule_id, []
            raise ConflictError(
                f"Target {target_id} already has an active {job_kind.value} mapping at {mapping.interval_hours}h",
                reason="already_mapped",
            )

        full_ids: List[int] = []
        entry_id = None
        for _ in range(MAX_PLACEMENT_ATTEMPTS):
            candidate = self.registry.get_or_create(db, target_type, job_kind, interval_hours, exclude_ids=full_ids)
            entry = self.registry.lock_entry(db, candidate.id)

            # Capacity re-checked under the row lock
            if entry.is_paused or self.registry.count_active(db, entry.id) >= self.registry.max_batch_size(target_type):
                full_ids.append(entry.id)
                db.rollback()
                continue

            if mapping is None:
                mapping = SubscriberMapping(
                    target_id=target_id,
                    tenant_id=tenant_id,
                    target_type=target_type.value,
                    job_kind=job_kind.value,
                    external_identifier=external_identifier,
                    interval_hours=interval_hours,
                    is_active=True,
                    schedule_id=entry.id,
                )
                db.add(mapping)
            else:
                previous_entry_id = mapping.schedule_id
                mapping.schedule_id = entry.id
                mapping.external_identifier = external_identifier
                mapping.interval_hours = interval_hours
                mapping.is_active = True
                if previous_entry_id != entry.id:
                    previous = db.get(ScheduleEntry, previous_entry_id)
                    if previous is not None:
                        self.registry.recount(db, previous)

            self.registry.recount(db, entry)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = (
                    db.query(SubscriberMapping)
                    .filter(SubscriberMapping.target_id == target_id, SubscriberMapping.job_kind == job_kind.value)
                    .one_or_none()
                )
                if (
                    existing is not None
                    and existing.tenant_id == tenant_id
                    and existing.interval_hours == interval_hours
                    and existing.external_identifier == external_identifier
                ):
                    return ALREADY_SUBSCRIBED, existing.schedule_id, []
                raise ConflictError(f"Target {target_id} was mapped concurrently", reason="already_mapped")

            entry_id = entry.id
            break

        if entry_id is None:
            raise CapacityError(
                f"No capacity for {target_type.value}/{job_kind.value}/{interval_hours}h after {MAX_PLACEMENT_ATTEMPTS} attempts"
            )

        logger.info(f"Mapped target {target_id} to schedule {entry_id} ({job_kind.value}, {interval_hours}h)")
        return ADDED, entry_id, self._split_or_rebuild(db, entry_id)

    def _split_or_rebuild(self, db: Session, entry_id: int, extra_rebuild_ids=()) -> List[RebuildResult]:
        """Split the entry if it reached capacity, then make sure every touched entry is rebuilt."""
        failures: List[RebuildResult] = []
        rebuilt = set()

        if self.batch_manager.should_split(db, entry_id):
            split = self.batch_manager.split(db, entry_id)
            if split.success and split.changed:
                rebuilt.update(split.schedule_ids)
                failures.extend(split.sync_failures)
            elif not split.success:
                logger.error(f"Split of schedule {entry_id} failed: {split.message}")

        for rebuild_id in sorted({entry_id, *extra_rebuild_ids} - rebuilt):
            result = self.registry.rebuild_input(db, rebuild_id)
            if not result.success:
                failures.append(result)
        return failures

    # ------------------------------------------------------------------
    # Move
    # ------------------------------------------------------------------

    def move_subscriber(
        self,
        db: Session,
        target_id: str,
        target_type,
        from_interval_hours: int,
        to_interval_hours: int,
    ) -> OperationResult:
        """Re-point a target's mappings to entries of another interval."""
        target_type = parse_target_type(target_type)
        if to_interval_hours <= 0:
            raise ValueError(f"to_interval_hours must be positive, got {to_interval_hours}")

        mappings = [m for m in self.mappings_for_target(db, target_id, target_type) if m.is_active]
        if not mappings:
            return OperationResult.failed(f"Target {target_id} has no {target_type.value} mapping", reason="not_found")

        outcomes: Dict[str, str] = {}
        schedule_ids: List[int] = []
        sync_failures: List[RebuildResult] = []
        failures: List[SchedulingError] = []

        for mapping_id, job_kind in [(m.id, JobKind(m.job_kind)) for m in mappings]:
            try:
                outcome, touched, kind_failures = self._move_mapping(
                    db, mapping_id, target_type, job_kind, from_interval_hours, to_interval_hours
                )
            except SchedulingError as e:
                db.rollback()
                logger.error(f"Failed to move target {target_id} ({job_kind.value}) to {to_interval_hours}h: {e.message}")
                outcomes[job_kind.value] = f"failed: {e.message}"
                failures.append(e)
                continue
            outcomes[job_kind.value] = outcome
            schedule_ids.extend(touched)
            sync_failures.extend(kind_failures)

        changed = any(outcome == MOVED for outcome in outcomes.values())
        if failures:
            reason = failures[0].reason if len(failures) == len(outcomes) else "partial_failure"
            return OperationResult.failed(
                f"Target {target_id} could not be moved for every job kind",
                reason=reason,
                changed=changed,
                outcomes=outcomes,
                schedule_ids=schedule_ids,
                sync_failures=sync_failures,
            )

        if changed:
            message = f"Target {target_id} moved from {from_interval_hours}h to {to_interval_hours}h"
        else:
            message = f"Target {target_id} already at {to_interval_hours}h"
        logger.info(message)
        return OperationResult.ok(message, changed=changed, outcomes=outcomes, schedule_ids=schedule_ids, sync_failures=sync_failures)

    def _move_mapping(self, db, mapping_id, target_type, job_kind, from_interval_hours, to_interval_hours):
        mapping = db.get(SubscriberMapping, mapping_id)
        if mapping.interval_hours == to_interval_hours:
            return ALREADY_AT_INTERVAL, [mapping.schedule_id], []
        if mapping.interval_hours != from_interval_hours:
            logger.warning(
                f"Target {mapping.target_id} is at {mapping.interval_hours}h, not {from_interval_hours}h as requested; moving anyway"
            )

        old_entry_id = mapping.schedule_id
        full_ids: List[int] = []
        for _ in range(MAX_PLACEMENT_ATTEMPTS):
            candidate = self.registry.get_or_create(db, target_type, job_kind, to_interval_hours, exclude_ids=full_ids)
            locked = {
                entry_id: self.registry.lock_entry(db, entry_id)
                for entry_id in sorted({old_entry_id, candidate.id})
            }
            destination = locked[candidate.id]
            if destination.is_paused or self.registry.count_active(db, destination.id) >= self.registry.max_batch_size(target_type):
                full_ids.append(destination.id)
                db.rollback()
                continue

            mapping = db.get(SubscriberMapping, mapping_id)
            mapping.schedule_id = destination.id
            mapping.interval_hours = to_interval_hours
            for entry in locked.values():
                self.registry.recount(db, entry)
            db.commit()

            logger.info(f"Moved mapping {mapping_id} from schedule {old_entry_id} to {destination.id} ({to_interval_hours}h)")
            failures = self._split_or_rebuild(db, destination.id, extra_rebuild_ids=[old_entry_id])
            return MOVED, [old_entry_id, destination.id], failures

        raise CapacityError(
            f"No capacity for {target_type.value}/{job_kind.value}/{to_interval_hours}h after {MAX_PLACEMENT_ATTEMPTS} attempts"
        )

    # ------------------------------------------------------------------
    # Remove
    # ------------------------------------------------------------------

    def remove_subscriber(self, db: Session, target_id: str, target_type) -> OperationResult:
        """Delete a target's mappings. A target with no mapping is a no-op success."""
        target_type = parse_target_type(target_type)

        for _ in range(MAX_PLACEMENT_ATTEMPTS):
            mappings = self.mappings_for_target(db, target_id, target_type)
            if not mappings:
                return OperationResult.ok(f"Target {target_id} not mapped to any schedule")

            entry_ids = sorted({m.schedule_id for m in mappings})
            locked = {entry_id: self.registry.lock_entry(db, entry_id) for entry_id in entry_ids}

            # A concurrent move or split may have re-pointed a mapping before the locks were taken
            mappings = (
                db.query(SubscriberMapping)
                .populate_existing()
                .filter(
                    SubscriberMapping.target_id == target_id,
                    SubscriberMapping.target_type == target_type.value,
                )
                .all()
            )
            if not mappings:
                db.rollback()
                return OperationResult.ok(f"Target {target_id} not mapped to any schedule")
            if any(m.schedule_id not in locked for m in mappings):
                db.rollback()
                logger.info(f"Mappings of target {target_id} moved while locking, retrying removal")
                continue

            outcomes = {}
            for mapping in mappings:
                outcomes[mapping.job_kind] = REMOVED
                db.delete(mapping)
            for entry in locked.values():
                self.registry.recount(db, entry)
            db.commit()
            break
        else:
            raise ConflictError(
                f"Mappings of target {target_id} kept moving during removal",
                reason="concurrent_update",
            )

        sync_failures = []
        for entry_id in entry_ids:
            result = self.registry.rebuild_input(db, entry_id)
            if not result.success:
                sync_failures.append(result)

        logger.info(f"Removed target {target_id} from {len(entry_ids)} {target_type.value} schedule(s)")
        return OperationResult.ok(
            f"Target {target_id} removed from schedules",
            changed=True,
            outcomes=outcomes,
            schedule_ids=entry_ids,
            sync_failures=sync_failures,
        )

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def update_schedule_input(self, db: Session, entry_id: int) -> RebuildResult:
        """Force a resync of an entry's external job without a membership change."""
        return self.registry.rebuild_input(db, entry_id)

    def _alert_failure(self, key: str, title: str, description: str, labels: dict):
        if self.alerting is None:
            return
        self.alerting.send_alert(Alert(
            key=key,
            title=title,
            description=description,
            severity=AlertSeverity.HIGH,
            source="schedule_orchestrator",
            labels=labels,
        ))
