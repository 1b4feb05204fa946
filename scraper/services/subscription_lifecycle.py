"""
Subscription Lifecycle Controller

Translates tenant billing and configuration events into orchestrator calls.
Events are explicit dataclasses dispatched through a single handler table:

    SubscriptionCreated   no subscription -> active   (onboard every configured target)
    SubscriptionUpdated   active -> active            (move targets to the new interval)
    SubscriptionCanceled  active -> no subscription   (remove every mapping)
    TargetAdded           active -> active            (onboard one target, deferred without a subscription)
    TargetRemoved         active -> active            (remove one target)

Every platform and target is processed independently. Failures are recorded
in the returned LifecycleReport and never abort the remaining work.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from scraper.core.alerting import Alert, AlertingService, AlertSeverity
from scraper.core.exceptions import SchedulingError
from scraper.core.logging import get_logger
from scraper.core.metrics import lifecycle_events_total
from scraper.db.models import SubscriberMapping, TargetConfiguration, TenantSubscription
from scraper.integrations.constants import JobKind, TargetType, parse_target_type
from scraper.services.feature_service import FeatureService, TenantFeatures
from scraper.services.job_run_service import JobRunService
from scraper.services.profile_service import ProfileService
from scraper.services.results import LifecycleReport
from scraper.services.schedule_orchestrator import ScheduleOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionCreated:
    tenant_id: str
    name = "subscription_created"


@dataclass(frozen=True)
class SubscriptionUpdated:
    tenant_id: str
    name = "subscription_updated"


@dataclass(frozen=True)
class SubscriptionCanceled:
    tenant_id: str
    name = "subscription_canceled"


@dataclass(frozen=True)
class TargetAdded:
    tenant_id: str
    target_type: TargetType
    external_identifier: str
    name = "target_added"


@dataclass(frozen=True)
class TargetRemoved:
    tenant_id: str
    target_type: TargetType
    external_identifier: str
    name = "target_removed"


LifecycleEvent = Union[SubscriptionCreated, SubscriptionUpdated, SubscriptionCanceled, TargetAdded, TargetRemoved]


def _error_reason(error: Exception) -> str:
    return getattr(error, "reason", None) or type(error).__name__


class SubscriptionLifecycleController:
    """Single dispatch point for tenant lifecycle events"""

    def __init__(
        self,
        orchestrator: ScheduleOrchestrator,
        feature_service: FeatureService,
        profile_service: ProfileService,
        job_runs: JobRunService,
        alerting: Optional[AlertingService] = None,
    ):
        self.orchestrator = orchestrator
        self.feature_service = feature_service
        self.profile_service = profile_service
        self.job_runs = job_runs
        self.alerting = alerting
        self._handlers: Dict[type, Callable[[Session, Any], LifecycleReport]] = {
            SubscriptionCreated: self._on_subscription_created,
            SubscriptionUpdated: self._on_subscription_updated,
            SubscriptionCanceled: self._on_subscription_canceled,
            TargetAdded: self._on_target_added,
            TargetRemoved: self._on_target_removed,
        }

    def dispatch(self, db: Session, event: LifecycleEvent) -> LifecycleReport:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unsupported lifecycle event: {type(event).__name__}")

        log = get_logger(__name__, tenant_id=event.tenant_id)
        log.info(f"Handling {event.name} for tenant {event.tenant_id}")
        report = handler(db, event)

        outcome = "success" if report.success else ("partial" if report.partial else "failed")
        lifecycle_events_total.labels(event=event.name, outcome=outcome).inc()
        log.info(
            f"{event.name} for tenant {event.tenant_id}: {report.message} "
            f"({report.operations_succeeded} succeeded, {report.operations_failed} failed)"
        )
        if report.operations_failed:
            self._alert(event, report)
        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def configured_identifiers(self, db: Session, tenant_id: str, target_type: TargetType) -> List[str]:
        rows = (
            db.query(TargetConfiguration.external_identifier)
            .filter(
                TargetConfiguration.tenant_id == tenant_id,
                TargetConfiguration.target_type == target_type.value,
            )
            .order_by(TargetConfiguration.id)
            .all()
        )
        return [identifier for (identifier,) in rows]

    def _record_configuration(self, db: Session, tenant_id: str, target_type: TargetType, identifier: str):
        exists = (
            db.query(TargetConfiguration.id)
            .filter(
                TargetConfiguration.tenant_id == tenant_id,
                TargetConfiguration.target_type == target_type.value,
                TargetConfiguration.external_identifier == identifier,
            )
            .first()
        )
        if exists is None:
            db.add(TargetConfiguration(tenant_id=tenant_id, target_type=target_type.value, external_identifier=identifier))
            db.commit()

    def _onboard_targets(
        self,
        db: Session,
        report: LifecycleReport,
        tenant_id: str,
        target_type: TargetType,
        identifiers: List[str],
        features: Optional[TenantFeatures] = None,
    ):
        """Ensure profiles, start one initial run for the new ones, then subscribe them."""
        profiles = []
        for identifier in identifiers:
            try:
                result = self.profile_service.ensure_profile_exists(db, tenant_id, target_type, identifier)
            except (SchedulingError, ValueError) as e:
                db.rollback()
                logger.error(f"Profile creation failed for {target_type.value} {identifier}: {e}")
                report.record_failure(target_type, f"Profile creation failed: {e}", target=identifier, reason=_error_reason(e))
                continue
            if result.created:
                report.profiles_created += 1
            profiles.append(result.profile)

        if not profiles:
            return

        # Targets already scheduled were collected before; no second full-history run
        new_profiles = [p for p in profiles if not self._is_subscribed(db, p.id)]
        if new_profiles:
            try:
                self.job_runs.launch_initial_job(db, tenant_id, target_type, [p.external_identifier for p in new_profiles])
                report.initial_jobs_started += 1
                report.record_success()
            except (SchedulingError, ValueError) as e:
                db.rollback()
                logger.error(f"Initial {target_type.value} run for tenant {tenant_id} failed to start: {e}")
                report.record_failure(target_type, f"Initial run failed to start: {e}", reason=_error_reason(e))

        interval = self.feature_service.get_interval_for_tenant_platform(
            db, tenant_id, target_type, JobKind.REVIEWS, features=features
        )
        for profile in profiles:
            result = self.orchestrator.add_subscriber(
                db, profile.id, tenant_id, target_type, profile.external_identifier, interval
            )
            if result.success:
                report.record_success()
                if result.changed:
                    report.targets_added += 1
            else:
                report.record_failure(target_type, result.message, target=profile.external_identifier, reason=result.reason)

    def _is_subscribed(self, db: Session, target_id: str) -> bool:
        return (
            db.query(SubscriberMapping.id)
            .filter(SubscriberMapping.target_id == target_id, SubscriberMapping.is_active.is_(True))
            .first()
            is not None
        )

    def _finish(self, report: LifecycleReport, message: str) -> LifecycleReport:
        report.success = report.operations_failed == 0
        if report.operations_failed:
            message += f"; {report.operations_failed} operation(s) failed"
        report.message = message
        return report

    def _alert(self, event: LifecycleEvent, report: LifecycleReport):
        if self.alerting is None:
            return
        self.alerting.send_alert(Alert(
            key=f"lifecycle:{event.name}:{event.tenant_id}",
            title=f"Lifecycle event {event.name} partially failed",
            description="; ".join(
                f"{e.target_type or '-'}{'/' + e.target if e.target else ''}: {e.message}" for e in report.errors
            ),
            severity=AlertSeverity.MEDIUM if report.partial else AlertSeverity.HIGH,
            source="subscription_lifecycle",
            labels={"tenant_id": event.tenant_id, "event": event.name},
        ))

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_subscription_created(self, db: Session, event: SubscriptionCreated) -> LifecycleReport:
        report = LifecycleReport(event=event.name, tenant_id=event.tenant_id)
        features = self.feature_service.extract_tenant_features(db, event.tenant_id)
        if not features.platforms:
            report.success = False
            report.message = "No platforms enabled in subscription"
            return report

        for target_type in features.platforms:
            identifiers = self.configured_identifiers(db, event.tenant_id, target_type)
            if not identifiers:
                logger.warning(f"No {target_type.value} targets configured for tenant {event.tenant_id}")
                continue
            try:
                self._onboard_targets(db, report, event.tenant_id, target_type, identifiers, features=features)
            except Exception as e:
                db.rollback()
                logger.error(f"Onboarding {target_type.value} for tenant {event.tenant_id} failed: {e}", exc_info=True)
                report.record_failure(target_type, str(e), reason=_error_reason(e))

        return self._finish(
            report,
            f"Started {report.initial_jobs_started} initial runs, added {report.targets_added} targets, "
            f"created {report.profiles_created} profiles",
        )

    def _on_subscription_updated(self, db: Session, event: SubscriptionUpdated) -> LifecycleReport:
        report = LifecycleReport(event=event.name, tenant_id=event.tenant_id)
        features = self.feature_service.extract_tenant_features(db, event.tenant_id)

        for target_type in features.platforms:
            try:
                new_interval = self.feature_service.get_interval_for_tenant_platform(
                    db, event.tenant_id, target_type, JobKind.REVIEWS, features=features
                )
                current = {}
                for mapping in self.orchestrator.mappings_for_tenant(db, event.tenant_id, target_type):
                    current.setdefault(mapping.target_id, mapping.interval_hours)

                for target_id, old_interval in current.items():
                    if old_interval == new_interval:
                        logger.debug(f"Target {target_id} already at {new_interval}h, skipping")
                        continue
                    result = self.orchestrator.move_subscriber(db, target_id, target_type, old_interval, new_interval)
                    if result.success:
                        report.record_success()
                        if result.changed:
                            report.targets_moved += 1
                    else:
                        report.record_failure(target_type, result.message, target=target_id, reason=result.reason)
            except Exception as e:
                db.rollback()
                logger.error(f"Interval update of {target_type.value} for tenant {event.tenant_id} failed: {e}", exc_info=True)
                report.record_failure(target_type, str(e), reason=_error_reason(e))

        message = (
            f"Moved {report.targets_moved} targets to new intervals"
            if report.targets_moved else "No targets needed to be moved"
        )
        return self._finish(report, message)

    def _on_subscription_canceled(self, db: Session, event: SubscriptionCanceled) -> LifecycleReport:
        report = LifecycleReport(event=event.name, tenant_id=event.tenant_id)
        targets = {}
        for mapping in self.orchestrator.mappings_for_tenant(db, event.tenant_id, active_only=False):
            targets.setdefault(mapping.target_id, mapping.target_type)

        for target_id, target_type in targets.items():
            try:
                result = self.orchestrator.remove_subscriber(db, target_id, target_type)
            except Exception as e:
                db.rollback()
                logger.error(f"Removing target {target_id} for tenant {event.tenant_id} failed: {e}", exc_info=True)
                report.record_failure(target_type, str(e), target=target_id, reason=_error_reason(e))
                continue
            if result.success:
                report.record_success()
                report.targets_removed += 1
            else:
                report.record_failure(target_type, result.message, target=target_id, reason=result.reason)

        return self._finish(report, f"Removed {report.targets_removed} targets from schedules")

    def _on_target_added(self, db: Session, event: TargetAdded) -> LifecycleReport:
        target_type = parse_target_type(event.target_type)
        identifier = event.external_identifier.strip()
        report = LifecycleReport(event=event.name, tenant_id=event.tenant_id)
        self._record_configuration(db, event.tenant_id, target_type, identifier)

        if not self.feature_service.has_active_subscription(db, event.tenant_id):
            report.deferred = True
            report.message = "No active subscription; target will be activated when the subscription starts"
            return report

        features = self.feature_service.extract_tenant_features(db, event.tenant_id)
        if target_type not in features.platforms:
            report.deferred = True
            report.message = f"{target_type.value} is not enabled in the current plan; target will be activated on upgrade"
            return report

        try:
            self._onboard_targets(db, report, event.tenant_id, target_type, [identifier], features=features)
        except Exception as e:
            db.rollback()
            logger.error(f"Onboarding {target_type.value} {identifier} for tenant {event.tenant_id} failed: {e}", exc_info=True)
            report.record_failure(target_type, str(e), target=identifier, reason=_error_reason(e))

        return self._finish(report, f"Target {identifier} configured, {report.targets_added} added to schedules")

    def _on_target_removed(self, db: Session, event: TargetRemoved) -> LifecycleReport:
        target_type = parse_target_type(event.target_type)
        identifier = event.external_identifier.strip()
        report = LifecycleReport(event=event.name, tenant_id=event.tenant_id)

        db.query(TargetConfiguration).filter(
            TargetConfiguration.tenant_id == event.tenant_id,
            TargetConfiguration.target_type == target_type.value,
            TargetConfiguration.external_identifier == identifier,
        ).delete(synchronize_session=False)
        db.commit()

        profile = self.profile_service.get_profile(db, event.tenant_id, target_type, identifier)
        if profile is None:
            report.message = f"Target {identifier} was not tracked"
            return report

        result = self.orchestrator.remove_subscriber(db, profile.id, target_type)
        if result.success:
            report.record_success()
            if result.changed:
                report.targets_removed += 1
        else:
            report.record_failure(target_type, result.message, target=identifier, reason=result.reason)
        return self._finish(report, f"Target {identifier} removed from schedules")


# ----------------------------------------------------------------------
# Billing provider events
# ----------------------------------------------------------------------

STRIPE_EVENT_TYPES = {
    "customer.subscription.created": SubscriptionCreated,
    "customer.subscription.updated": SubscriptionUpdated,
    "customer.subscription.deleted": SubscriptionCanceled,
}


def _stripe_product_id(subscription: Dict[str, Any]) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    product = price.get("product")
    if isinstance(product, dict):
        return product.get("id")
    return product


def lifecycle_event_from_stripe(db: Session, stripe_event: Dict[str, Any]) -> Optional[LifecycleEvent]:
    """
    Map a verified Stripe event to a lifecycle event.

    The tenant is resolved from the subscription's customer id and its stored
    subscription status and product are refreshed from the event. Returns None
    for unhandled event types and unknown customers.
    """
    event_class = STRIPE_EVENT_TYPES.get(stripe_event.get("type"))
    if event_class is None:
        logger.info(f"Ignoring Stripe event type {stripe_event.get('type')}")
        return None

    subscription = (stripe_event.get("data") or {}).get("object") or {}
    customer_id = subscription.get("customer")
    if isinstance(customer_id, dict):
        customer_id = customer_id.get("id")

    record = (
        db.query(TenantSubscription)
        .filter(TenantSubscription.stripe_customer_id == customer_id)
        .one_or_none()
    ) if customer_id else None
    if record is None:
        logger.error(f"No tenant found for Stripe customer {customer_id}")
        return None

    if event_class is SubscriptionCanceled:
        record.status = "canceled"
    elif subscription.get("status"):
        record.status = subscription["status"]
    record.stripe_subscription_id = subscription.get("id") or record.stripe_subscription_id
    record.stripe_product_id = _stripe_product_id(subscription) or record.stripe_product_id
    db.commit()

    return event_class(tenant_id=record.tenant_id)
