"""
FastAPI dependency providers for the scheduling services.

Services are built per request around the shared job platform client; tests
override `get_job_platform`, `get_alerting_service` and `get_db`.
"""
from fastapi import Depends

from scraper.core.alerting import AlertingService, get_alerting_service
from scraper.core.config import get_settings
from scraper.integrations.job_platform import JobPlatform, get_job_platform
from scraper.services.batch_manager import BatchCapacityManager
from scraper.services.feature_service import FeatureService, StripeProductMetadataSource
from scraper.services.job_completion_service import JobCompletionService
from scraper.services.job_run_service import JobRunService
from scraper.services.profile_service import ProfileService
from scraper.services.reconciliation_service import ReconciliationService
from scraper.services.schedule_orchestrator import ScheduleOrchestrator
from scraper.services.schedule_registry import ScheduleRegistry
from scraper.services.subscription_lifecycle import SubscriptionLifecycleController


def get_registry(platform: JobPlatform = Depends(get_job_platform)) -> ScheduleRegistry:
    return ScheduleRegistry(platform, get_settings())


def get_batch_manager(registry: ScheduleRegistry = Depends(get_registry)) -> BatchCapacityManager:
    return BatchCapacityManager(registry)


def get_orchestrator(
    registry: ScheduleRegistry = Depends(get_registry),
    batch_manager: BatchCapacityManager = Depends(get_batch_manager),
    alerting: AlertingService = Depends(get_alerting_service),
) -> ScheduleOrchestrator:
    return ScheduleOrchestrator(registry, batch_manager, alerting)


def get_feature_service() -> FeatureService:
    return FeatureService(StripeProductMetadataSource(get_settings().stripe_secret_key))


def get_profile_service(platform: JobPlatform = Depends(get_job_platform)) -> ProfileService:
    return ProfileService(platform, get_settings())


def get_job_run_service(
    platform: JobPlatform = Depends(get_job_platform),
    registry: ScheduleRegistry = Depends(get_registry),
) -> JobRunService:
    return JobRunService(platform, registry, get_settings())


def get_lifecycle_controller(
    orchestrator: ScheduleOrchestrator = Depends(get_orchestrator),
    feature_service: FeatureService = Depends(get_feature_service),
    profile_service: ProfileService = Depends(get_profile_service),
    job_runs: JobRunService = Depends(get_job_run_service),
    alerting: AlertingService = Depends(get_alerting_service),
) -> SubscriptionLifecycleController:
    return SubscriptionLifecycleController(orchestrator, feature_service, profile_service, job_runs, alerting)


def get_completion_service(
    platform: JobPlatform = Depends(get_job_platform),
    job_runs: JobRunService = Depends(get_job_run_service),
    alerting: AlertingService = Depends(get_alerting_service),
) -> JobCompletionService:
    return JobCompletionService(platform, job_runs, alerting, claim_lease_secs=get_settings().job_webhook_claim_lease_secs)


def get_reconciliation_service(registry: ScheduleRegistry = Depends(get_registry)) -> ReconciliationService:
    return ReconciliationService(registry)
