"""
Ad hoc job runs: initial full-history collection and admin retries.
"""
import logging
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from scraper.core.config import Settings, get_settings
from scraper.core.exceptions import ConflictError, NotFoundError
from scraper.db.models import JobRunRecord
from scraper.integrations.constants import UNLIMITED_ITEMS, JobKind, RunKind, parse_target_type
from scraper.integrations.job_platform import JobPlatform, build_job_input, build_webhook
from scraper.services.schedule_registry import ScheduleRegistry

logger = logging.getLogger(__name__)


class JobRunService:
    """Starts one-off runs and keeps their JobRunRecords"""

    def __init__(self, platform: JobPlatform, registry: Optional[ScheduleRegistry] = None, settings: Optional[Settings] = None):
        self.platform = platform
        self.settings = settings or get_settings()
        self.registry = registry or ScheduleRegistry(platform, self.settings)

    def get_record(self, db: Session, record_id: int) -> JobRunRecord:
        record = db.get(JobRunRecord, record_id)
        if record is None:
            raise NotFoundError(f"Job run {record_id} not found")
        return record

    def find_by_external_run_id(self, db: Session, external_run_id: str) -> Optional[JobRunRecord]:
        # Retries get their own run id, so the newest record for a run id is the live one
        return (
            db.query(JobRunRecord)
            .filter(JobRunRecord.external_run_id == external_run_id)
            .order_by(JobRunRecord.id.desc())
            .first()
        )

    def list_runs(self, db: Session, tenant_id: Optional[str] = None, status: Optional[str] = None, limit: int = 50) -> List[JobRunRecord]:
        query = db.query(JobRunRecord)
        if tenant_id:
            query = query.filter(JobRunRecord.tenant_id == tenant_id)
        if status:
            query = query.filter(JobRunRecord.status == status)
        return query.order_by(JobRunRecord.id.desc()).limit(limit).all()

    def launch_initial_job(
        self,
        db: Session,
        tenant_id: str,
        target_type,
        identifiers: Sequence[str],
        retry_of: Optional[JobRunRecord] = None,
    ) -> JobRunRecord:
        """
        Start a full-history review run for a tenant's identifiers.

        The run has no item cap and reports completion through the job webhook
        with run kind "initial". Raises UpstreamError if the run cannot start.
        """
        target_type = parse_target_type(target_type)
        identifiers = list(dict.fromkeys(i.strip() for i in identifiers if i and i.strip()))
        if not identifiers:
            raise ValueError("At least one identifier is required for an initial run")

        run_input = build_job_input(target_type, JobKind.REVIEWS, identifiers, UNLIMITED_ITEMS)
        webhook = build_webhook(
            self.settings.webhook_base_url,
            self.settings.job_platform_webhook_secret,
            target_type,
            RunKind.INITIAL.value,
        )
        handle = self.platform.run_once(
            self.settings.actor_id(target_type, JobKind.REVIEWS),
            run_input,
            webhooks=[webhook],
            max_items=UNLIMITED_ITEMS,
        )

        record = JobRunRecord(
            tenant_id=tenant_id,
            target_type=target_type.value,
            run_kind=RunKind.INITIAL.value,
            external_run_id=handle.run_id,
            external_dataset_id=handle.dataset_id,
            identifiers=identifiers,
            status="running",
            retry_of_id=retry_of.id if retry_of is not None else None,
        )
        db.add(record)
        db.flush()
        if retry_of is not None:
            retry_of.superseded_by_id = record.id
        db.commit()
        db.refresh(record)

        logger.info(
            f"Started initial {target_type.value} run {handle.run_id} for tenant {tenant_id} "
            f"({len(identifiers)} identifiers, record {record.id})"
        )
        return record

    def retry_run(self, db: Session, record_id: int) -> JobRunRecord:
        """
        Re-run a failed job and link the new record to the old one.

        Initial runs are started again with their identifiers; recurring runs
        re-trigger their schedule entry with its current input.
        """
        old = self.get_record(db, record_id)
        if old.status != "failed":
            raise ConflictError(f"Job run {record_id} is {old.status}, only failed runs can be retried", reason="not_failed")
        if old.superseded_by_id is not None:
            raise ConflictError(f"Job run {record_id} was already retried as {old.superseded_by_id}", reason="already_retried")

        if old.run_kind == RunKind.INITIAL.value:
            if not old.tenant_id or not old.identifiers:
                raise ConflictError(f"Job run {record_id} has no stored input to retry", reason="missing_input")
            return self.launch_initial_job(db, old.tenant_id, old.target_type, old.identifiers, retry_of=old)

        if old.schedule_id is None:
            raise ConflictError(f"Job run {record_id} has no schedule entry to re-trigger", reason="missing_schedule")

        handle = self.registry.trigger(db, old.schedule_id)
        record = JobRunRecord(
            tenant_id=old.tenant_id,
            target_type=old.target_type,
            run_kind=old.run_kind,
            schedule_id=old.schedule_id,
            external_run_id=handle.run_id,
            external_dataset_id=handle.dataset_id,
            status="running",
            retry_of_id=old.id,
        )
        db.add(record)
        db.flush()
        old.superseded_by_id = record.id
        db.commit()
        db.refresh(record)
        logger.info(f"Retried job run {record_id} as {record.id} (run {handle.run_id})")
        return record
