"""
Shared fixtures: in-memory SQLite, a fake job platform and service wiring.
"""
import os

# Required settings must exist before any scraper module is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JOB_PLATFORM_TOKEN", "test-platform-token")
os.environ.setdefault("JOB_PLATFORM_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("WEBHOOK_BASE_URL", "https://scraper.test")
os.environ.setdefault("INTERNAL_API_TOKEN", "test-internal-token")
os.environ.setdefault("ADMIN_API_TOKEN", "test-admin-token")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from scraper.core.alerting import AlertingService, AlertThrottle, get_alerting_service
from scraper.core.config import get_settings
from scraper.db.database import Base, build_engine, get_db, init_db
from scraper.integrations.job_platform import get_job_platform
from scraper.services.batch_manager import BatchCapacityManager
from scraper.services.feature_service import FeatureService
from scraper.services.job_completion_service import JobCompletionService
from scraper.services.job_run_service import JobRunService
from scraper.services.profile_service import ProfileService
from scraper.services.reconciliation_service import ReconciliationService
from scraper.services.schedule_orchestrator import ScheduleOrchestrator
from scraper.services.schedule_registry import ScheduleRegistry
from scraper.services.subscription_lifecycle import SubscriptionLifecycleController
from scraper.tests.fakes import FakeJobPlatform


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    init_db(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def platform():
    return FakeJobPlatform()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def small_batch_settings(settings):
    """Max batch size of 3 for every target type."""
    return settings.model_copy(update={
        "max_batch_size_google": 3,
        "max_batch_size_facebook": 3,
        "max_batch_size_tripadvisor": 3,
        "max_batch_size_booking": 3,
    })


@pytest.fixture
def alerting():
    return AlertingService(throttle=AlertThrottle(window_seconds=900))


@pytest.fixture
def registry(platform, settings):
    return ScheduleRegistry(platform, settings)


@pytest.fixture
def batch_manager(registry):
    return BatchCapacityManager(registry)


@pytest.fixture
def orchestrator(registry, batch_manager, alerting):
    return ScheduleOrchestrator(registry, batch_manager, alerting)


@pytest.fixture
def feature_service():
    return FeatureService()


@pytest.fixture
def profile_service(platform, settings):
    return ProfileService(platform, settings)


@pytest.fixture
def job_runs(platform, registry, settings):
    return JobRunService(platform, registry, settings)


@pytest.fixture
def controller(orchestrator, feature_service, profile_service, job_runs, alerting):
    return SubscriptionLifecycleController(orchestrator, feature_service, profile_service, job_runs, alerting)


@pytest.fixture
def completion_service(platform, job_runs, alerting):
    return JobCompletionService(platform, job_runs, alerting)


@pytest.fixture
def reconciliation(registry):
    return ReconciliationService(registry)


@pytest.fixture
def client(session_factory, platform, alerting):
    from scraper.core.app_factory import create_app

    app = create_app()

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_job_platform] = lambda: platform
    app.dependency_overrides[get_alerting_service] = lambda: alerting

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
