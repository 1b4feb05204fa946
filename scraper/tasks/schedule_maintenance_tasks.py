"""
Periodic schedule maintenance.

- reconcile_schedules: recount subscribers, flag drift, and rebuild every
  entry still marked needs_sync
- consolidate_schedules: merge underutilized batches in every group
"""
from typing import Any, Dict

from celery.utils.log import get_task_logger

from scraper.core.alerting import Alert, AlertSeverity, get_alerting_service
from scraper.integrations.job_platform import get_job_platform
from scraper.services.batch_manager import BatchCapacityManager
from scraper.services.reconciliation_service import ReconciliationService
from scraper.services.schedule_registry import ScheduleRegistry
from scraper.tasks.celery_app import celery_app
from scraper.tasks.db_session_manager import get_celery_db_session

logger = get_task_logger(__name__)


def _build_registry() -> ScheduleRegistry:
    return ScheduleRegistry(get_job_platform())


@celery_app.task(name="scraper.tasks.schedule_maintenance_tasks.reconcile_schedules", bind=True)
def reconcile_schedules(self) -> Dict[str, Any]:
    """Recount subscriber counts and retry failed schedule input rebuilds."""
    with get_celery_db_session("reconcile_schedules") as db:
        report = ReconciliationService(_build_registry()).reconcile(db)

    if report.still_out_of_sync:
        logger.warning(f"{len(report.still_out_of_sync)} schedule entries still out of sync after reconciliation")
    logger.info(
        f"Reconciled {report.entries_checked} schedule entries: "
        f"{len(report.drifted)} drifted, {len(report.resynced)} resynced"
    )
    return report.to_dict()


@celery_app.task(name="scraper.tasks.schedule_maintenance_tasks.consolidate_schedules", bind=True)
def consolidate_schedules(self, threshold: float = None) -> Dict[str, Any]:
    """Consolidate every (target type, job kind, interval) group."""
    results = {"groups": 0, "batches_removed": 0, "subscribers_moved": 0, "errors": []}

    with get_celery_db_session("consolidate_schedules") as db:
        registry = _build_registry()
        batch_manager = BatchCapacityManager(registry)
        groups = sorted({
            (entry.target_type, entry.job_kind, entry.interval_hours)
            for entry in registry.list_entries(db)
        })

        for target_type, job_kind, interval_hours in groups:
            results["groups"] += 1
            try:
                outcome = batch_manager.consolidate(db, target_type, job_kind, interval_hours, threshold)
            except Exception as e:
                db.rollback()
                logger.error(f"Consolidation failed for {target_type}/{job_kind}/{interval_hours}h: {e}")
                results["errors"].append({
                    "group": f"{target_type}/{job_kind}/{interval_hours}h",
                    "error": str(e),
                })
                continue
            results["batches_removed"] += outcome.batches_removed
            results["subscribers_moved"] += outcome.subscribers_moved
            for failure in outcome.sync_failures:
                results["errors"].append({"schedule_id": failure.schedule_id, "error": failure.error})

    if results["errors"]:
        get_alerting_service().send_alert(Alert(
            key="consolidation-errors",
            title="Schedule consolidation finished with errors",
            description=f"{len(results['errors'])} errors across {results['groups']} groups",
            severity=AlertSeverity.MEDIUM,
            source="schedule_maintenance",
        ))
    logger.info(
        f"Consolidated {results['groups']} groups: {results['batches_removed']} batches removed, "
        f"{results['subscribers_moved']} subscribers moved"
    )
    return results
