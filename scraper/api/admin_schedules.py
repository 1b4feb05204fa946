"""
Admin API for shared schedules.

Operator-facing: failures return their reason verbatim (409 for conflicts and
capacity, 404 for unknown schedules, 502 when the job platform fails).
"""
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import Session

from scraper.api.dependencies import (
    get_batch_manager,
    get_feature_service,
    get_job_run_service,
    get_lifecycle_controller,
    get_orchestrator,
    get_reconciliation_service,
    get_registry,
)
from scraper.core.api_version import create_versioned_router
from scraper.core.security import verify_admin_token
from scraper.db.database import get_db
from scraper.integrations.constants import JobKind, TargetType, parse_job_kind, parse_target_type
from scraper.services.batch_manager import BatchCapacityManager
from scraper.services.feature_service import FeatureService
from scraper.services.job_run_service import JobRunService
from scraper.services.reconciliation_service import ReconciliationService
from scraper.services.results import OperationResult
from scraper.services.schedule_orchestrator import ScheduleOrchestrator
from scraper.services.schedule_registry import ScheduleRegistry
from scraper.services.subscription_lifecycle import SubscriptionLifecycleController, SubscriptionUpdated

logger = logging.getLogger(__name__)

router = create_versioned_router(
    prefix="/admin",
    tags=["admin-schedules"],
    dependencies=[Depends(verify_admin_token)],
)


# Request/Response Models

class ScheduleEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    target_type: str
    job_kind: str
    interval_hours: int
    batch_index: int
    external_job_id: str
    cron_expression: str
    subscriber_count: int
    is_active: bool
    is_paused: bool
    needs_sync: bool
    last_sync_error: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None


class SubscriberResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    target_id: str
    tenant_id: str
    target_type: str
    job_kind: str
    external_identifier: str
    interval_hours: int
    is_active: bool
    schedule_id: int


class JobRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: Optional[str] = None
    target_type: str
    run_kind: str
    schedule_id: Optional[int] = None
    external_run_id: Optional[str] = None
    status: str
    items_processed: int
    items_new: int
    error_message: Optional[str] = None
    retry_of_id: Optional[int] = None
    superseded_by_id: Optional[int] = None


class GroupRequest(BaseModel):
    target_type: TargetType
    job_kind: JobKind = JobKind.REVIEWS
    interval_hours: int = Field(..., gt=0)
    threshold: Optional[float] = Field(None, gt=0, lt=1, description="Consolidation threshold (fraction of max)")

    @field_validator("target_type", mode="before")
    @classmethod
    def _parse_target_type(cls, value):
        return parse_target_type(value)


class CustomIntervalRequest(BaseModel):
    target_type: TargetType
    custom_interval_hours: int = Field(..., description="Refresh interval in hours (1-168)")
    reason: Optional[str] = Field("Set by admin")
    set_by: Optional[str] = Field("admin")
    expires_at: Optional[datetime] = None

    @field_validator("target_type", mode="before")
    @classmethod
    def _parse_target_type(cls, value):
        return parse_target_type(value)


def _raise_for_result(result: OperationResult, status_code: int = status.HTTP_409_CONFLICT):
    if not result.success:
        raise HTTPException(status_code=status_code, detail={"message": result.message, "reason": result.reason})


# Schedules

@router.get("/schedules", response_model=List[ScheduleEntryResponse])
def list_schedules(
    target_type: Optional[str] = Query(None),
    job_kind: Optional[str] = Query(None),
    interval_hours: Optional[int] = Query(None, gt=0),
    db: Session = Depends(get_db),
    registry: ScheduleRegistry = Depends(get_registry),
):
    return registry.list_entries(db, target_type, job_kind, interval_hours)


@router.get("/schedules/health")
def schedules_health(
    db: Session = Depends(get_db),
    batch_manager: BatchCapacityManager = Depends(get_batch_manager),
):
    report = batch_manager.health_status(db)
    return {
        "healthy": report.healthy,
        "warning": report.warning,
        "critical": report.critical,
        "details": report.details,
    }


@router.get("/schedules/stats")
def group_stats(
    target_type: str = Query(...),
    interval_hours: int = Query(..., gt=0),
    job_kind: str = Query(JobKind.REVIEWS.value),
    db: Session = Depends(get_db),
    batch_manager: BatchCapacityManager = Depends(get_batch_manager),
):
    stats = batch_manager.stats(db, parse_target_type(target_type), parse_job_kind(job_kind), interval_hours)
    return asdict(stats)


@router.post("/schedules/rebalance")
def rebalance_group(
    request: GroupRequest,
    db: Session = Depends(get_db),
    batch_manager: BatchCapacityManager = Depends(get_batch_manager),
):
    result = batch_manager.rebalance(db, request.target_type, request.job_kind, request.interval_hours)
    _raise_for_result(result)
    return result.to_dict()


@router.post("/schedules/consolidate")
def consolidate_group(
    request: GroupRequest,
    db: Session = Depends(get_db),
    batch_manager: BatchCapacityManager = Depends(get_batch_manager),
):
    result = batch_manager.consolidate(db, request.target_type, request.job_kind, request.interval_hours, request.threshold)
    _raise_for_result(result)
    return result.to_dict()


@router.post("/schedules/reconcile")
def reconcile_now(
    db: Session = Depends(get_db),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    report = reconciliation.reconcile(db)
    return report.to_dict()


@router.get("/schedules/validate")
def validate_schedules(
    db: Session = Depends(get_db),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    return reconciliation.validate(db).to_dict()


@router.get("/schedules/{schedule_id}", response_model=ScheduleEntryResponse)
def get_schedule(schedule_id: int, db: Session = Depends(get_db), registry: ScheduleRegistry = Depends(get_registry)):
    return registry.get_entry(db, schedule_id)


@router.get("/schedules/{schedule_id}/subscribers", response_model=List[SubscriberResponse])
def schedule_subscribers(schedule_id: int, db: Session = Depends(get_db), registry: ScheduleRegistry = Depends(get_registry)):
    registry.get_entry(db, schedule_id)
    return registry.active_mappings(db, schedule_id)


@router.post("/schedules/{schedule_id}/pause")
def pause_schedule(schedule_id: int, db: Session = Depends(get_db), registry: ScheduleRegistry = Depends(get_registry)):
    result = registry.pause(db, schedule_id)
    _raise_for_result(result, status.HTTP_502_BAD_GATEWAY)
    return result.to_dict()


@router.post("/schedules/{schedule_id}/resume")
def resume_schedule(schedule_id: int, db: Session = Depends(get_db), registry: ScheduleRegistry = Depends(get_registry)):
    result = registry.resume(db, schedule_id)
    _raise_for_result(result, status.HTTP_502_BAD_GATEWAY)
    return result.to_dict()


@router.post("/schedules/{schedule_id}/sync")
def sync_schedule(
    schedule_id: int,
    db: Session = Depends(get_db),
    registry: ScheduleRegistry = Depends(get_registry),
    orchestrator: ScheduleOrchestrator = Depends(get_orchestrator),
):
    registry.get_entry(db, schedule_id)
    result = orchestrator.update_schedule_input(db, schedule_id)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail={"message": result.error, "reason": "upstream_error"})
    return asdict(result)


@router.post("/schedules/{schedule_id}/trigger")
def trigger_schedule(schedule_id: int, db: Session = Depends(get_db), registry: ScheduleRegistry = Depends(get_registry)):
    handle = registry.trigger(db, schedule_id)
    return {"success": True, "run_id": handle.run_id, "dataset_id": handle.dataset_id}


@router.delete("/schedules/{schedule_id}")
def delete_schedule(schedule_id: int, db: Session = Depends(get_db), registry: ScheduleRegistry = Depends(get_registry)):
    result = registry.delete_entry(db, schedule_id)
    _raise_for_result(result)
    return result.to_dict()


# Tenants

@router.get("/tenants/{tenant_id}/schedules")
def tenant_schedules(
    tenant_id: str,
    db: Session = Depends(get_db),
    orchestrator: ScheduleOrchestrator = Depends(get_orchestrator),
    feature_service: FeatureService = Depends(get_feature_service),
) -> Dict[str, Any]:
    mappings = orchestrator.mappings_for_tenant(db, tenant_id, active_only=False)
    overrides = feature_service.tenant_custom_intervals(db, tenant_id)
    return {
        "tenant_id": tenant_id,
        "mappings": [SubscriberResponse.model_validate(m).model_dump() for m in mappings],
        "custom_intervals": [
            {
                "target_type": o.target_type,
                "custom_interval_hours": o.custom_interval_hours,
                "reason": o.reason,
                "set_by": o.set_by,
                "expires_at": o.expires_at,
            }
            for o in overrides
        ],
    }


@router.put("/tenants/{tenant_id}/custom-interval")
def set_custom_interval(
    tenant_id: str,
    request: CustomIntervalRequest,
    db: Session = Depends(get_db),
    feature_service: FeatureService = Depends(get_feature_service),
    controller: SubscriptionLifecycleController = Depends(get_lifecycle_controller),
):
    """Store the override, then move the tenant's targets to their effective intervals."""
    result = feature_service.set_custom_interval(
        db,
        tenant_id,
        request.target_type,
        request.custom_interval_hours,
        reason=request.reason,
        set_by=request.set_by,
        expires_at=request.expires_at,
    )
    _raise_for_result(result, status.HTTP_400_BAD_REQUEST)
    report = controller.dispatch(db, SubscriptionUpdated(tenant_id=tenant_id))
    return {**result.to_dict(), "targets_moved": report.targets_moved, "report": report.to_dict()}


@router.delete("/tenants/{tenant_id}/custom-interval/{target_type}")
def remove_custom_interval(
    tenant_id: str,
    target_type: str,
    db: Session = Depends(get_db),
    feature_service: FeatureService = Depends(get_feature_service),
    controller: SubscriptionLifecycleController = Depends(get_lifecycle_controller),
):
    result = feature_service.remove_custom_interval(db, tenant_id, target_type)
    if not result.changed:
        return result.to_dict()
    report = controller.dispatch(db, SubscriptionUpdated(tenant_id=tenant_id))
    return {**result.to_dict(), "targets_moved": report.targets_moved, "report": report.to_dict()}


# Job runs

@router.get("/job-runs", response_model=List[JobRunResponse])
def list_job_runs(
    tenant_id: Optional[str] = Query(None),
    run_status: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    job_runs: JobRunService = Depends(get_job_run_service),
):
    return job_runs.list_runs(db, tenant_id=tenant_id, status=run_status, limit=limit)


@router.post("/job-runs/{record_id}/retry", response_model=JobRunResponse)
def retry_job_run(record_id: int, db: Session = Depends(get_db), job_runs: JobRunService = Depends(get_job_run_service)):
    return job_runs.retry_run(db, record_id)
