"""
Tests for tenant feature resolution and interval precedence.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
import stripe

from scraper.db.models import CustomIntervalOverride
from scraper.integrations.constants import JobKind, TargetType
from scraper.services.feature_service import (
    FeatureService,
    StripeProductMetadataSource,
    determine_tier,
)
from scraper.tests.fakes import make_subscription

ALL_PLATFORMS = ["reviews.google", "reviews.facebook", "reviews.tripadvisor", "reviews.booking"]


class TestDetermineTier:

    def test_starter_by_default(self):
        assert determine_tier({}) == "starter"
        assert determine_tier({"reviews.google": True}) == "starter"

    def test_professional_needs_google_and_another_source(self):
        assert determine_tier({"reviews.google": True, "reviews.facebook": True}) == "professional"
        assert determine_tier({"reviews.google": True, "reviews.tripadvisor": True}) == "professional"

    def test_enterprise_needs_everything_unlimited(self):
        features = {key: True for key in ALL_PLATFORMS}
        assert determine_tier(features) == "professional"

        features["reviews.unlimited"] = True
        assert determine_tier(features) == "enterprise"


class TestExtractTenantFeatures:

    def test_tier_defaults(self, db, feature_service):
        make_subscription(db, "starter", ["reviews.google"])
        make_subscription(db, "pro", ["reviews.google", "reviews.facebook"])
        make_subscription(db, "ent", ALL_PLATFORMS + ["reviews.unlimited"])

        assert feature_service.extract_tenant_features(db, "starter").limits.reviews_interval_hours == 24
        assert feature_service.extract_tenant_features(db, "pro").limits.reviews_interval_hours == 12
        enterprise = feature_service.extract_tenant_features(db, "ent")
        assert enterprise.tier == "enterprise"
        assert enterprise.limits.reviews_interval_hours == 6
        assert enterprise.platforms == [TargetType.GOOGLE, TargetType.FACEBOOK, TargetType.TRIPADVISOR, TargetType.BOOKING]

    def test_inactive_subscription_has_no_platforms(self, db, feature_service):
        make_subscription(db, "t1", ALL_PLATFORMS, status="past_due")

        features = feature_service.extract_tenant_features(db, "t1")

        assert features.platforms == []
        assert features.tier == "starter"
        assert feature_service.has_active_subscription(db, "t1") is False

    def test_trialing_counts_as_active(self, db, feature_service):
        make_subscription(db, "t1", ["reviews.google"], status="trialing")

        assert feature_service.has_active_subscription(db, "t1") is True
        assert feature_service.is_platform_enabled(db, "t1", "google") is True
        assert feature_service.is_platform_enabled(db, "t1", "booking") is False

    def test_unknown_tenant(self, db, feature_service):
        assert feature_service.enabled_platforms(db, "nobody") == []

    def test_flag_values_override_tier_defaults(self, db, feature_service):
        subscription = make_subscription(db, "t1", [])
        subscription.enabled_features = {"reviews.google": True, "reviews.scrapeInterval": 8}
        db.commit()

        features = feature_service.extract_tenant_features(db, "t1")

        assert features.platforms == [TargetType.GOOGLE]
        assert features.limits.reviews_interval_hours == 8

    def test_stripe_metadata_overrides_flags(self, db):
        metadata_source = Mock()
        metadata_source.get_metadata.return_value = {
            "reviewsScrapeIntervalHours": "4",
            "maxBusinessLocations": "20",
            "concurrentScrapes": "not-a-number",
        }
        service = FeatureService(metadata_source)
        subscription = make_subscription(db, "t1", [], stripe_product_id="prod_1")
        subscription.enabled_features = {"reviews.google": True, "reviews.scrapeInterval": 8}
        db.commit()

        limits = service.extract_tenant_features(db, "t1").limits

        metadata_source.get_metadata.assert_called_once_with("prod_1")
        assert limits.reviews_interval_hours == 4
        assert limits.max_targets == 20
        assert limits.concurrent_runs == 1

    def test_missing_metadata_falls_back(self, db):
        metadata_source = Mock()
        metadata_source.get_metadata.return_value = None
        service = FeatureService(metadata_source)
        make_subscription(db, "t1", ["reviews.google"], stripe_product_id="prod_1")

        assert service.extract_tenant_features(db, "t1").limits.reviews_interval_hours == 24


class TestStripeProductMetadataSource:

    def test_no_api_key_skips_lookup(self):
        with patch("stripe.Product.retrieve") as retrieve:
            assert StripeProductMetadataSource(None).get_metadata("prod_1") is None
        retrieve.assert_not_called()

    def test_reads_product_metadata(self):
        product = Mock(metadata={"reviewsScrapeIntervalHours": "6"})
        with patch("stripe.Product.retrieve", return_value=product) as retrieve:
            metadata = StripeProductMetadataSource("sk_test").get_metadata("prod_1")

        assert metadata == {"reviewsScrapeIntervalHours": "6"}
        retrieve.assert_called_once_with("prod_1", api_key="sk_test")

    def test_stripe_errors_are_not_fatal(self):
        with patch("stripe.Product.retrieve", side_effect=stripe.StripeError("boom")):
            assert StripeProductMetadataSource("sk_test").get_metadata("prod_1") is None


class TestIntervalPrecedence:

    def test_custom_interval_until_expiry(self, db):
        """Scenario: 24h tier default, 6h override, back to 24h after expiry."""
        now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        clock = Mock(return_value=now)
        service = FeatureService(clock=clock)
        make_subscription(db, "T1", ["reviews.google"])
        service.set_custom_interval(db, "T1", "google", 6, expires_at=now + timedelta(days=7))

        assert service.get_interval_for_tenant_platform(db, "T1", "google") == 6

        clock.return_value = now + timedelta(days=8)
        assert service.get_interval_for_tenant_platform(db, "T1", "google") == 24

    def test_override_without_expiry_is_permanent(self, db, feature_service):
        make_subscription(db, "T1", ["reviews.google"])
        feature_service.set_custom_interval(db, "T1", "google", 2)

        assert feature_service.get_interval_for_tenant_platform(db, "T1", "google") == 2

    def test_override_is_per_target_type(self, db, feature_service):
        make_subscription(db, "T1", ["reviews.google", "reviews.facebook"])
        feature_service.set_custom_interval(db, "T1", "facebook", 3)

        assert feature_service.get_interval_for_tenant_platform(db, "T1", "google") == 12
        assert feature_service.get_interval_for_tenant_platform(db, "T1", "facebook") == 3

    def test_overview_interval_uses_overview_limit(self, db, feature_service):
        make_subscription(db, "T1", ["reviews.google"])

        assert feature_service.get_interval_for_tenant_platform(db, "T1", "google", JobKind.OVERVIEW) == 48


class TestCustomIntervals:

    @pytest.mark.parametrize("hours", [0, 169, -1])
    def test_out_of_range_rejected(self, db, feature_service, hours):
        result = feature_service.set_custom_interval(db, "T1", "google", hours)

        assert result.success is False
        assert result.reason == "invalid_interval"
        assert db.query(CustomIntervalOverride).count() == 0

    def test_set_is_an_upsert(self, db, feature_service):
        feature_service.set_custom_interval(db, "T1", "google", 6, reason="trial", set_by="ops")
        feature_service.set_custom_interval(db, "T1", "google", 8, reason="adjusted", set_by="ops")

        overrides = feature_service.tenant_custom_intervals(db, "T1")
        assert len(overrides) == 1
        assert overrides[0].custom_interval_hours == 8
        assert overrides[0].reason == "adjusted"

    def test_remove_existing_and_absent(self, db, feature_service):
        feature_service.set_custom_interval(db, "T1", "google", 6)

        removed = feature_service.remove_custom_interval(db, "T1", "google")
        again = feature_service.remove_custom_interval(db, "T1", "google")

        assert removed.success is True and removed.changed is True
        assert again.success is True and again.changed is False

    def test_unknown_target_type_rejected(self, db, feature_service):
        with pytest.raises(ValueError):
            feature_service.set_custom_interval(db, "T1", "yelp", 6)
