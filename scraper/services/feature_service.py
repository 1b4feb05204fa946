"""
Tenant Feature Service

Derives a tenant's tier, enabled target types and refresh limits from its
subscription. Limits resolve in priority order:

    Stripe product metadata > feature flag values > tier defaults

Per target type, an unexpired CustomIntervalOverride takes precedence over
the derived interval.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import stripe
from sqlalchemy.orm import Session

from scraper.core.timeutils import ensure_utc, utcnow
from scraper.db.models import CustomIntervalOverride, TenantSubscription
from scraper.integrations.constants import JobKind, TargetType, parse_target_type
from scraper.services.results import OperationResult

logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")

MIN_CUSTOM_INTERVAL_HOURS = 1
MAX_CUSTOM_INTERVAL_HOURS = 168

# Feature lookup keys attached to subscription products
FEATURE_KEYS = {
    TargetType.GOOGLE: "reviews.google",
    TargetType.FACEBOOK: "reviews.facebook",
    TargetType.TRIPADVISOR: "reviews.tripadvisor",
    TargetType.BOOKING: "reviews.booking",
}
UNLIMITED_FEATURE_KEY = "reviews.unlimited"


@dataclass
class SubscriptionLimits:
    max_reviews_per_target: int
    max_targets: int
    reviews_interval_hours: int
    overview_interval_hours: int
    historical_data_months: int
    concurrent_runs: int


TIER_LIMITS = {
    "starter": SubscriptionLimits(
        max_reviews_per_target=500,
        max_targets=1,
        reviews_interval_hours=24,
        overview_interval_hours=48,
        historical_data_months=3,
        concurrent_runs=1,
    ),
    "professional": SubscriptionLimits(
        max_reviews_per_target=2000,
        max_targets=5,
        reviews_interval_hours=12,
        overview_interval_hours=24,
        historical_data_months=6,
        concurrent_runs=3,
    ),
    "enterprise": SubscriptionLimits(
        max_reviews_per_target=10000,
        max_targets=999,
        reviews_interval_hours=6,
        overview_interval_hours=12,
        historical_data_months=24,
        concurrent_runs=10,
    ),
}

# limit field -> (Stripe product metadata key, feature flag key)
LIMIT_SOURCES = {
    "max_reviews_per_target": ("maxReviewsPerBusiness", "reviews.maxPerBusiness"),
    "max_targets": ("maxBusinessLocations", "reviews.maxLocations"),
    "reviews_interval_hours": ("reviewsScrapeIntervalHours", "reviews.scrapeInterval"),
    "overview_interval_hours": ("overviewScrapeIntervalHours", "overview.scrapeInterval"),
    "historical_data_months": ("historicalDataMonths", None),
    "concurrent_runs": ("concurrentScrapes", None),
}


@dataclass
class TenantFeatures:
    tier: str
    platforms: List[TargetType]
    limits: SubscriptionLimits
    features: Dict[str, Any] = field(default_factory=dict)


def _positive_int(value) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def determine_tier(features: Dict[str, Any]) -> str:
    has = lambda key: bool(features.get(key))
    if all(has(key) for key in FEATURE_KEYS.values()) and has(UNLIMITED_FEATURE_KEY):
        return "enterprise"
    if has(FEATURE_KEYS[TargetType.GOOGLE]) and (
        has(FEATURE_KEYS[TargetType.FACEBOOK]) or has(FEATURE_KEYS[TargetType.TRIPADVISOR])
    ):
        return "professional"
    return "starter"


class StripeProductMetadataSource:
    """Reads limit metadata from the subscription's Stripe product"""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key

    def get_metadata(self, product_id: str) -> Optional[Dict[str, str]]:
        if not self.api_key:
            return None
        try:
            product = stripe.Product.retrieve(product_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Failed to load Stripe product {product_id}: {e}")
            return None
        return dict(product.metadata or {})


class FeatureService:
    """Tenant tier, platform and interval resolution"""

    def __init__(
        self,
        metadata_source: Optional[StripeProductMetadataSource] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.metadata_source = metadata_source
        self.clock = clock

    # Subscription state

    def get_subscription(self, db: Session, tenant_id: str) -> Optional[TenantSubscription]:
        return db.query(TenantSubscription).filter(TenantSubscription.tenant_id == tenant_id).one_or_none()

    def has_active_subscription(self, db: Session, tenant_id: str) -> bool:
        subscription = self.get_subscription(db, tenant_id)
        return subscription is not None and subscription.status in ACTIVE_SUBSCRIPTION_STATUSES

    def _feature_map(self, subscription: Optional[TenantSubscription]) -> Dict[str, Any]:
        if subscription is None or subscription.status not in ACTIVE_SUBSCRIPTION_STATUSES:
            return {}
        features = subscription.enabled_features or []
        if isinstance(features, dict):
            return dict(features)
        return {key: True for key in features}

    def _stripe_limits(self, subscription: Optional[TenantSubscription]) -> Dict[str, int]:
        if subscription is None or not subscription.stripe_product_id or self.metadata_source is None:
            return {}
        metadata = self.metadata_source.get_metadata(subscription.stripe_product_id) or {}
        limits = {}
        for limit_name, (metadata_key, _) in LIMIT_SOURCES.items():
            value = _positive_int(metadata.get(metadata_key))
            if value is not None:
                limits[limit_name] = value
            elif metadata_key in metadata:
                logger.warning(f"Ignoring invalid Stripe metadata {metadata_key}={metadata[metadata_key]!r}")
        return limits

    def extract_tenant_features(self, db: Session, tenant_id: str) -> TenantFeatures:
        subscription = self.get_subscription(db, tenant_id)
        features = self._feature_map(subscription)
        tier = determine_tier(features)
        platforms = [target_type for target_type, key in FEATURE_KEYS.items() if features.get(key)]

        stripe_limits = self._stripe_limits(subscription)
        base = TIER_LIMITS[tier]
        resolved = {}
        for limit_name, (_, flag_key) in LIMIT_SOURCES.items():
            value = stripe_limits.get(limit_name)
            if value is None and flag_key:
                value = _positive_int(features.get(flag_key))
            if value is None:
                value = getattr(base, limit_name)
            resolved[limit_name] = value

        return TenantFeatures(tier=tier, platforms=platforms, limits=SubscriptionLimits(**resolved), features=features)

    def enabled_platforms(self, db: Session, tenant_id: str) -> List[TargetType]:
        return self.extract_tenant_features(db, tenant_id).platforms

    def is_platform_enabled(self, db: Session, tenant_id: str, target_type) -> bool:
        return parse_target_type(target_type) in self.enabled_platforms(db, tenant_id)

    # Intervals

    def get_active_override(self, db: Session, tenant_id: str, target_type) -> Optional[CustomIntervalOverride]:
        target_type = parse_target_type(target_type)
        override = (
            db.query(CustomIntervalOverride)
            .filter(
                CustomIntervalOverride.tenant_id == tenant_id,
                CustomIntervalOverride.target_type == target_type.value,
            )
            .one_or_none()
        )
        if override is None:
            return None
        expires_at = ensure_utc(override.expires_at)
        if expires_at is not None and expires_at <= self.clock():
            logger.info(f"Custom interval for tenant {tenant_id} on {target_type.value} expired at {expires_at}, using default")
            return None
        return override

    def get_interval_for_tenant_platform(
        self,
        db: Session,
        tenant_id: str,
        target_type,
        job_kind: JobKind = JobKind.REVIEWS,
        features: Optional[TenantFeatures] = None,
    ) -> int:
        """Custom override if unexpired, otherwise the tier-derived interval."""
        override = self.get_active_override(db, tenant_id, target_type)
        if override is not None:
            return override.custom_interval_hours

        features = features or self.extract_tenant_features(db, tenant_id)
        if job_kind == JobKind.OVERVIEW:
            return features.limits.overview_interval_hours
        return features.limits.reviews_interval_hours

    def set_custom_interval(
        self,
        db: Session,
        tenant_id: str,
        target_type,
        custom_interval_hours: int,
        reason: Optional[str] = None,
        set_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> OperationResult:
        target_type = parse_target_type(target_type)
        if not MIN_CUSTOM_INTERVAL_HOURS <= custom_interval_hours <= MAX_CUSTOM_INTERVAL_HOURS:
            return OperationResult.failed(
                f"Invalid interval: must be between {MIN_CUSTOM_INTERVAL_HOURS} and {MAX_CUSTOM_INTERVAL_HOURS} hours",
                reason="invalid_interval",
            )

        override = (
            db.query(CustomIntervalOverride)
            .filter(
                CustomIntervalOverride.tenant_id == tenant_id,
                CustomIntervalOverride.target_type == target_type.value,
            )
            .one_or_none()
        )
        if override is None:
            override = CustomIntervalOverride(tenant_id=tenant_id, target_type=target_type.value)
            db.add(override)
        override.custom_interval_hours = custom_interval_hours
        override.reason = reason
        override.set_by = set_by
        override.expires_at = expires_at
        db.commit()

        logger.info(f"Set custom interval {custom_interval_hours}h for tenant {tenant_id} on {target_type.value} (by {set_by})")
        return OperationResult.ok(f"Custom interval set to {custom_interval_hours}h", changed=True)

    def remove_custom_interval(self, db: Session, tenant_id: str, target_type) -> OperationResult:
        target_type = parse_target_type(target_type)
        deleted = (
            db.query(CustomIntervalOverride)
            .filter(
                CustomIntervalOverride.tenant_id == tenant_id,
                CustomIntervalOverride.target_type == target_type.value,
            )
            .delete(synchronize_session=False)
        )
        db.commit()
        if not deleted:
            return OperationResult.ok("No custom interval set")
        logger.info(f"Removed custom interval for tenant {tenant_id} on {target_type.value}")
        return OperationResult.ok("Custom interval removed", changed=True)

    def tenant_custom_intervals(self, db: Session, tenant_id: str) -> List[CustomIntervalOverride]:
        return (
            db.query(CustomIntervalOverride)
            .filter(CustomIntervalOverride.tenant_id == tenant_id)
            .order_by(CustomIntervalOverride.target_type)
            .all()
        )
