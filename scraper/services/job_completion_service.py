"""
Job Completion Handling

Processes completion callbacks from the job platform. Each external run id is
processed to success at most once: a JobWebhookEvent row per run id records
the processing status, so redeliveries after success are skipped, redeliveries
after a failed attempt are processed again, and a redelivery arriving while
another delivery holds the claim is skipped until that claim's lease expires.

Callback body (rendered from the payload template attached to every run):

    {
        "eventType": "ACTOR.RUN.SUCCEEDED" | "ACTOR.RUN.FAILED" | "ACTOR.RUN.ABORTED" | "TEST",
        "eventData": {"actorRunId": "..."} | null,
        "resource": {"id": "...", "defaultDatasetId": "...", "statusMessage": "..."},
        "targetType": "google",
        "runKind": "initial" | "recurring-reviews" | "recurring-overview",
        "scheduleEntryId": 12 | null
    }
"""
import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scraper.core.alerting import Alert, AlertingService, AlertSeverity
from scraper.core.metrics import job_webhooks_total
from scraper.core.timeutils import utcnow
from scraper.db.models import JobRunRecord, JobWebhookEvent, ScheduleEntry
from scraper.integrations.constants import JobKind, RunKind, parse_target_type
from scraper.integrations.job_platform import JobPlatform
from scraper.services.data_processing import ProcessingResult, process_run_output
from scraper.services.job_run_service import JobRunService

logger = logging.getLogger(__name__)

EVENT_PREFIX = "ACTOR.RUN."

SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"
ABORTED = "ABORTED"
TEST = "TEST"


class JobCompletionError(Exception):
    """Processing of a callback failed; the platform is expected to redeliver."""

    def __init__(self, message: str, run_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.run_id = run_id


@dataclass
class CompletionOutcome:
    received: bool = True
    processed: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    run_id: Optional[str] = None
    event_type: Optional[str] = None
    items_processed: int = 0
    items_new: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def normalize_event_type(event_type: Optional[str]) -> str:
    value = (event_type or "").strip().upper()
    if value.startswith(EVENT_PREFIX):
        value = value[len(EVENT_PREFIX):]
    return value


def extract_run_id(payload: Dict[str, Any]) -> Optional[str]:
    event_data = payload.get("eventData") or {}
    resource = payload.get("resource") or {}
    return event_data.get("actorRunId") or resource.get("id")


def job_kind_for_run_kind(run_kind: str) -> JobKind:
    if run_kind == RunKind.RECURRING_OVERVIEW.value:
        return JobKind.OVERVIEW
    return JobKind.REVIEWS


class JobCompletionService:
    """Idempotent handler for job platform completion callbacks"""

    def __init__(
        self,
        platform: JobPlatform,
        job_runs: JobRunService,
        alerting: Optional[AlertingService] = None,
        claim_lease_secs: int = 900,
    ):
        self.platform = platform
        self.job_runs = job_runs
        self.alerting = alerting
        self.claim_lease_secs = claim_lease_secs

    def handle(self, db: Session, payload: Dict[str, Any]) -> CompletionOutcome:
        """
        Process one callback.

        Returns:
            CompletionOutcome describing what was done

        Raises:
            ValueError: The body is missing the run id or names an unknown target type
            JobCompletionError: Processing failed; recorded as failed so a redelivery retries it
        """
        event_type = normalize_event_type(payload.get("eventType"))

        if event_type == TEST:
            logger.info("Job webhook test event acknowledged")
            job_webhooks_total.labels(event_type=TEST, outcome="test").inc()
            return CompletionOutcome(processed=False, reason="test_event", event_type=TEST)

        run_id = extract_run_id(payload)
        if not run_id:
            raise ValueError("Callback carries no run id")

        event, skip_reason = self._claim(db, run_id, event_type, payload)
        if event is None:
            if skip_reason == "in_progress":
                logger.info(f"Job webhook for run {run_id} is being processed by another delivery, skipping")
            else:
                logger.info(f"Job webhook for run {run_id} already processed successfully, skipping")
            job_webhooks_total.labels(event_type=event_type or "UNKNOWN", outcome=skip_reason).inc()
            return CompletionOutcome(skipped=True, reason=skip_reason, run_id=run_id, event_type=event_type)
        event_id = event.id

        try:
            if event_type == SUCCEEDED:
                result = self._handle_succeeded(db, run_id, payload)
            elif event_type in (FAILED, ABORTED):
                result = self._handle_failed(db, run_id, event_type, payload)
            else:
                logger.warning(f"Unhandled job webhook event type {payload.get('eventType')!r} for run {run_id}")
                result = None
        except Exception as e:
            db.rollback()
            self._finish(db, event_id, "failed", error=str(e))
            job_webhooks_total.labels(event_type=event_type or "UNKNOWN", outcome="failed").inc()
            logger.error(f"Failed to process job webhook for run {run_id}: {e}", exc_info=True)
            raise JobCompletionError(f"Failed to process run {run_id}: {e}", run_id=run_id) from e

        self._finish(db, event_id, "success")
        job_webhooks_total.labels(event_type=event_type or "UNKNOWN", outcome="success").inc()
        return CompletionOutcome(
            processed=True,
            run_id=run_id,
            event_type=event_type,
            items_processed=result.items_processed if result else 0,
            items_new=result.items_new if result else 0,
        )

    # ------------------------------------------------------------------
    # Idempotency log
    # ------------------------------------------------------------------

    def _claim(
        self, db: Session, run_id: str, event_type: str, payload: Dict[str, Any]
    ) -> Tuple[Optional[JobWebhookEvent], Optional[str]]:
        """
        Claim the run for this delivery.

        Returns the claimed log row, or None and the reason the delivery is
        skipped: "already_processed" once the run succeeded, "in_progress"
        while another delivery holds an unexpired claim.
        """
        now = utcnow()
        existing = db.query(JobWebhookEvent.id).filter(JobWebhookEvent.external_run_id == run_id).scalar()
        if existing is None:
            event = JobWebhookEvent(
                external_run_id=run_id,
                event_type=event_type or "UNKNOWN",
                processing_status="pending",
                attempts=1,
                payload=payload,
                claimed_at=now,
            )
            db.add(event)
            try:
                db.commit()
                return event, None
            except IntegrityError:
                # Concurrent delivery of the same run inserted first
                db.rollback()

        # Conditional update: only one delivery can move the row into a fresh claim
        lease_expired_before = now - timedelta(seconds=self.claim_lease_secs)
        claimed = (
            db.query(JobWebhookEvent)
            .filter(
                JobWebhookEvent.external_run_id == run_id,
                or_(
                    JobWebhookEvent.processing_status == "failed",
                    and_(
                        JobWebhookEvent.processing_status == "pending",
                        or_(JobWebhookEvent.claimed_at.is_(None), JobWebhookEvent.claimed_at < lease_expired_before),
                    ),
                ),
            )
            .update(
                {
                    JobWebhookEvent.attempts: JobWebhookEvent.attempts + 1,
                    JobWebhookEvent.event_type: event_type or JobWebhookEvent.event_type,
                    JobWebhookEvent.processing_status: "pending",
                    JobWebhookEvent.error_message: None,
                    JobWebhookEvent.payload: payload,
                    JobWebhookEvent.claimed_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()

        event = (
            db.query(JobWebhookEvent)
            .populate_existing()
            .filter(JobWebhookEvent.external_run_id == run_id)
            .one()
        )
        if not claimed:
            return None, "already_processed" if event.processing_status == "success" else "in_progress"

        logger.info(f"Reprocessing job webhook for run {run_id} (attempt {event.attempts})")
        return event, None

    def _finish(self, db: Session, event_id: int, status: str, error: Optional[str] = None):
        event = db.get(JobWebhookEvent, event_id)
        event.processing_status = status
        event.error_message = error[:2000] if error else None
        event.processed_at = utcnow()
        db.commit()

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _context(self, db: Session, run_id: str, payload: Dict[str, Any]):
        record = self.job_runs.find_by_external_run_id(db, run_id)
        target_type = parse_target_type(record.target_type if record else payload.get("targetType"))
        run_kind = (record.run_kind if record else None) or payload.get("runKind") or RunKind.RECURRING_REVIEWS.value
        entry_id = (record.schedule_id if record else None) or payload.get("scheduleEntryId")
        if entry_id is not None:
            entry_id = int(entry_id)
            if db.get(ScheduleEntry, entry_id) is None:
                logger.warning(f"Run {run_id} references unknown schedule entry {entry_id}")
                entry_id = None
        return record, target_type, run_kind, entry_id

    def _handle_succeeded(self, db: Session, run_id: str, payload: Dict[str, Any]) -> ProcessingResult:
        record, target_type, run_kind, entry_id = self._context(db, run_id, payload)
        resource = payload.get("resource") or {}
        dataset_id = resource.get("defaultDatasetId") or (record.external_dataset_id if record else None)
        if not dataset_id:
            raise ValueError(f"No dataset id for run {run_id}")

        items = self.platform.fetch_output(dataset_id)
        job_kind = job_kind_for_run_kind(run_kind)
        result = process_run_output(db, target_type, job_kind, items, tenant_id=record.tenant_id if record else None)
        now = utcnow()

        if record is not None:
            record.status = "completed"
            record.external_dataset_id = dataset_id
            record.items_processed = result.items_processed
            record.items_new = result.items_new
            record.items_duplicate = result.items_duplicate
            record.targets_updated = result.targets_updated
            record.error_message = None
            record.completed_at = now
        else:
            # Scheduled batch runs have no record of their own; one per tenant served
            per_tenant = result.per_tenant or {None: None}
            for tenant_id, counts in per_tenant.items():
                db.add(JobRunRecord(
                    tenant_id=tenant_id,
                    target_type=target_type.value,
                    run_kind=run_kind,
                    schedule_id=entry_id,
                    external_run_id=run_id,
                    external_dataset_id=dataset_id,
                    status="completed",
                    items_processed=counts.items_processed if counts else 0,
                    items_new=counts.items_new if counts else 0,
                    items_duplicate=counts.items_duplicate if counts else 0,
                    targets_updated=counts.targets_updated if counts else 0,
                    started_at=now,
                    completed_at=now,
                ))

        if entry_id is not None:
            entry = db.get(ScheduleEntry, entry_id)
            entry.last_run_at = now
            entry.next_run_at = now + timedelta(hours=entry.interval_hours)

        db.commit()
        logger.info(
            f"Processed {target_type.value} run {run_id} ({run_kind}): "
            f"{result.items_new} new, {result.items_duplicate} duplicates, {result.targets_updated} targets"
        )
        return result

    def _handle_failed(self, db: Session, run_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        record, target_type, run_kind, entry_id = self._context(db, run_id, payload)
        resource = payload.get("resource") or {}
        verb = "aborted" if event_type == ABORTED else "failed"
        message = resource.get("statusMessage") or f"Job run {verb}"
        now = utcnow()

        if record is not None:
            record.status = "failed"
            record.error_message = message
            record.completed_at = now
        else:
            db.add(JobRunRecord(
                tenant_id=None,
                target_type=target_type.value,
                run_kind=run_kind,
                schedule_id=entry_id,
                external_run_id=run_id,
                external_dataset_id=resource.get("defaultDatasetId"),
                status="failed",
                error_message=message,
                started_at=now,
                completed_at=now,
            ))
        db.commit()

        logger.error(f"{target_type.value} run {run_id} ({run_kind}) {verb}: {message}")
        if self.alerting is not None:
            self.alerting.send_alert(Alert(
                key=f"run-{verb}:{target_type.value}:{entry_id or run_kind}",
                title=f"Scraper run {verb} for {target_type.value}",
                description=message,
                severity=AlertSeverity.HIGH if event_type == FAILED else AlertSeverity.MEDIUM,
                source="job_webhook",
                labels={
                    "run_id": run_id,
                    "target_type": target_type.value,
                    "tenant_id": record.tenant_id if record else None,
                    "schedule_entry_id": entry_id,
                    "run_kind": run_kind,
                },
            ))
        return None
