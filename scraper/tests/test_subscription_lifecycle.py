"""
Tests for the subscription lifecycle controller.
"""
import pytest

from scraper.db.models import JobRunRecord, SubscriberMapping, TargetConfiguration, TenantSubscription, TrackedProfile
from scraper.integrations.constants import TargetType
from scraper.services.subscription_lifecycle import (
    SubscriptionCanceled,
    SubscriptionCreated,
    SubscriptionUpdated,
    TargetAdded,
    TargetRemoved,
    lifecycle_event_from_stripe,
)
from scraper.tests.fakes import make_subscription

FACEBOOK_PAGE = "https://facebook.com/acme"


def _configure(db, tenant_id, target_type, *identifiers):
    for identifier in identifiers:
        db.add(TargetConfiguration(tenant_id=tenant_id, target_type=target_type, external_identifier=identifier))
    db.commit()


def _active_mappings(db, tenant_id):
    return (
        db.query(SubscriberMapping)
        .filter(SubscriberMapping.tenant_id == tenant_id, SubscriberMapping.is_active.is_(True))
        .all()
    )


class TestSubscriptionCreated:

    def setup_method(self):
        self.tenant_id = "T1"

    def test_onboards_every_configured_target(self, db, controller, platform):
        make_subscription(db, self.tenant_id, ["reviews.google", "reviews.facebook"])
        _configure(db, self.tenant_id, "google", "place-1", "place-2")
        _configure(db, self.tenant_id, "facebook", FACEBOOK_PAGE)
        platform.overview_items["place-1"] = [
            {"placeId": "place-1", "title": "Cafe One", "totalScore": 4.5, "reviewsCount": 120},
        ]

        report = controller.dispatch(db, SubscriptionCreated(tenant_id=self.tenant_id))

        assert report.success is True
        assert report.profiles_created == 3
        assert report.initial_jobs_started == 2
        assert report.targets_added == 3

        # One full-history run per target type
        assert len(platform.runs) == 2
        assert platform.runs[0]["run_input"]["placeIds"] == ["place-1", "place-2"]
        initial_runs = db.query(JobRunRecord).filter(JobRunRecord.run_kind == "initial").all()
        assert {r.target_type for r in initial_runs} == {"google", "facebook"}

        # Reviews and overview mapping per target at the professional interval
        mappings = _active_mappings(db, self.tenant_id)
        assert len(mappings) == 6
        assert {m.interval_hours for m in mappings} == {12}

        names = {p.external_identifier: p.display_name for p in db.query(TrackedProfile).all()}
        assert names["place-1"] == "Cafe One"
        assert names["place-2"] == "place-2"

    def test_no_platforms_enabled(self, db, controller, platform):
        make_subscription(db, self.tenant_id, [])
        _configure(db, self.tenant_id, "google", "place-1")

        report = controller.dispatch(db, SubscriptionCreated(tenant_id=self.tenant_id))

        assert report.success is False
        assert report.message == "No platforms enabled in subscription"
        assert platform.runs == []
        assert _active_mappings(db, self.tenant_id) == []

    def test_enabled_platform_without_targets_is_skipped(self, db, controller, platform):
        make_subscription(db, self.tenant_id, ["reviews.google"])

        report = controller.dispatch(db, SubscriptionCreated(tenant_id=self.tenant_id))

        assert report.success is True
        assert report.targets_added == 0
        assert platform.runs == []

    def test_one_failed_target_does_not_stop_the_rest(self, db, controller, platform, alerting):
        make_subscription(db, self.tenant_id, ["reviews.google", "reviews.facebook"])
        _configure(db, self.tenant_id, "google", "place-1", "place-2")
        _configure(db, self.tenant_id, "facebook", FACEBOOK_PAGE)
        platform.fail("collect", times=1)

        report = controller.dispatch(db, SubscriptionCreated(tenant_id=self.tenant_id))

        assert report.success is False
        assert report.partial is True
        assert report.operations_failed == 1
        assert report.errors[0].target == "place-1"
        assert report.errors[0].reason == "upstream_error"
        assert report.targets_added == 2
        assert db.query(TrackedProfile).filter(TrackedProfile.external_identifier == "place-1").count() == 0
        assert alerting.sent[-1].key == f"lifecycle:subscription_created:{self.tenant_id}"

    def test_failed_initial_run_still_subscribes(self, db, controller, platform):
        make_subscription(db, self.tenant_id, ["reviews.google"])
        _configure(db, self.tenant_id, "google", "place-1")
        platform.fail("run")

        report = controller.dispatch(db, SubscriptionCreated(tenant_id=self.tenant_id))

        assert report.initial_jobs_started == 0
        assert report.targets_added == 1
        assert report.operations_failed == 1
        assert len(_active_mappings(db, self.tenant_id)) == 2


class TestSubscriptionUpdated:

    def test_moves_targets_to_new_tier_interval(self, db, controller):
        subscription = make_subscription(db, "T1", ["reviews.google"])
        _configure(db, "T1", "google", "place-1")
        controller.dispatch(db, SubscriptionCreated(tenant_id="T1"))
        assert {m.interval_hours for m in _active_mappings(db, "T1")} == {24}

        subscription.enabled_features = ["reviews.google", "reviews.facebook"]
        db.commit()
        report = controller.dispatch(db, SubscriptionUpdated(tenant_id="T1"))

        assert report.success is True
        assert report.targets_moved == 1
        assert {m.interval_hours for m in _active_mappings(db, "T1")} == {12}

    def test_nothing_to_move(self, db, controller):
        make_subscription(db, "T1", ["reviews.google"])
        _configure(db, "T1", "google", "place-1")
        controller.dispatch(db, SubscriptionCreated(tenant_id="T1"))

        report = controller.dispatch(db, SubscriptionUpdated(tenant_id="T1"))

        assert report.targets_moved == 0
        assert report.message == "No targets needed to be moved"

    def test_custom_interval_applies_on_update(self, db, controller, feature_service):
        make_subscription(db, "T1", ["reviews.google"])
        _configure(db, "T1", "google", "place-1")
        controller.dispatch(db, SubscriptionCreated(tenant_id="T1"))

        feature_service.set_custom_interval(db, "T1", "google", 6)
        report = controller.dispatch(db, SubscriptionUpdated(tenant_id="T1"))

        assert report.targets_moved == 1
        assert {m.interval_hours for m in _active_mappings(db, "T1")} == {6}


class TestSubscriptionCanceled:

    def test_removes_every_target(self, db, controller, platform):
        """Two targets across two types; the report counts targets, not mappings."""
        make_subscription(db, "T1", ["reviews.google", "reviews.facebook"])
        _configure(db, "T1", "google", "place-1")
        _configure(db, "T1", "facebook", FACEBOOK_PAGE)
        controller.dispatch(db, SubscriptionCreated(tenant_id="T1"))

        report = controller.dispatch(db, SubscriptionCanceled(tenant_id="T1"))

        assert report.success is True
        assert report.targets_removed == 2
        assert db.query(SubscriberMapping).count() == 0
        assert all(job["enabled"] is False for job in platform.jobs.values())

    def test_three_targets_across_two_platforms(self, db, controller):
        """Scenario: three active targets on two platforms, only the canceling tenant is removed."""
        make_subscription(db, "T1", ["reviews.google", "reviews.facebook"])
        _configure(db, "T1", "google", "place-1", "place-2")
        _configure(db, "T1", "facebook", FACEBOOK_PAGE)
        make_subscription(db, "T2", ["reviews.google"])
        _configure(db, "T2", "google", "place-9")
        controller.dispatch(db, SubscriptionCreated(tenant_id="T1"))
        controller.dispatch(db, SubscriptionCreated(tenant_id="T2"))
        assert len({m.target_id for m in _active_mappings(db, "T1")}) == 3

        report = controller.dispatch(db, SubscriptionCanceled(tenant_id="T1"))

        assert report.success is True
        assert report.targets_removed == 3
        assert _active_mappings(db, "T1") == []
        assert len(_active_mappings(db, "T2")) == 2

    def test_cancel_without_targets(self, db, controller):
        report = controller.dispatch(db, SubscriptionCanceled(tenant_id="nobody"))

        assert report.success is True
        assert report.targets_removed == 0


class TestTargetEvents:

    def test_deferred_without_subscription(self, db, controller, platform):
        report = controller.dispatch(db, TargetAdded(tenant_id="T1", target_type=TargetType.GOOGLE, external_identifier=" place-1 "))

        assert report.deferred is True
        assert platform.runs == []
        configuration = db.query(TargetConfiguration).one()
        assert configuration.external_identifier == "place-1"

    def test_deferred_target_onboards_when_subscription_starts(self, db, controller):
        controller.dispatch(db, TargetAdded(tenant_id="T1", target_type=TargetType.GOOGLE, external_identifier="place-1"))
        make_subscription(db, "T1", ["reviews.google"])

        report = controller.dispatch(db, SubscriptionCreated(tenant_id="T1"))

        assert report.targets_added == 1
        assert len(_active_mappings(db, "T1")) == 2

    def test_deferred_when_platform_not_in_plan(self, db, controller, platform):
        make_subscription(db, "T1", ["reviews.google"])

        report = controller.dispatch(db, TargetAdded(tenant_id="T1", target_type=TargetType.BOOKING, external_identifier="https://booking.com/h"))

        assert report.deferred is True
        assert "not enabled" in report.message
        assert platform.runs == []

    def test_added_target_is_onboarded_once(self, db, controller, platform):
        make_subscription(db, "T1", ["reviews.google"])

        first = controller.dispatch(db, TargetAdded(tenant_id="T1", target_type=TargetType.GOOGLE, external_identifier="place-1"))
        second = controller.dispatch(db, TargetAdded(tenant_id="T1", target_type=TargetType.GOOGLE, external_identifier="place-1"))

        assert first.targets_added == 1
        assert first.initial_jobs_started == 1
        assert second.success is True
        assert second.targets_added == 0
        assert second.initial_jobs_started == 0
        assert len(platform.runs) == 1
        assert db.query(TargetConfiguration).count() == 1

    def test_target_removed(self, db, controller):
        make_subscription(db, "T1", ["reviews.google"])
        controller.dispatch(db, TargetAdded(tenant_id="T1", target_type=TargetType.GOOGLE, external_identifier="place-1"))

        report = controller.dispatch(db, TargetRemoved(tenant_id="T1", target_type=TargetType.GOOGLE, external_identifier="place-1"))

        assert report.targets_removed == 1
        assert _active_mappings(db, "T1") == []
        assert db.query(TargetConfiguration).count() == 0

    def test_removing_untracked_target(self, db, controller):
        report = controller.dispatch(db, TargetRemoved(tenant_id="T1", target_type=TargetType.GOOGLE, external_identifier="place-x"))

        assert report.success is True
        assert report.targets_removed == 0
        assert "not tracked" in report.message

    def test_unsupported_event(self, db, controller):
        with pytest.raises(TypeError):
            controller.dispatch(db, object())


class TestLifecycleEventFromStripe:

    def setup_method(self):
        self.subscription_object = {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "past_due",
            "items": {"data": [{"price": {"product": "prod_9"}}]},
        }

    def test_updated_event_refreshes_subscription(self, db):
        make_subscription(db, "T1", ["reviews.google"], stripe_customer_id="cus_1")

        event = lifecycle_event_from_stripe(db, {
            "type": "customer.subscription.updated",
            "data": {"object": self.subscription_object},
        })

        assert event == SubscriptionUpdated(tenant_id="T1")
        record = db.query(TenantSubscription).one()
        assert record.status == "past_due"
        assert record.stripe_subscription_id == "sub_1"
        assert record.stripe_product_id == "prod_9"

    def test_deleted_event_cancels(self, db):
        make_subscription(db, "T1", ["reviews.google"], stripe_customer_id="cus_1")

        event = lifecycle_event_from_stripe(db, {
            "type": "customer.subscription.deleted",
            "data": {"object": self.subscription_object},
        })

        assert isinstance(event, SubscriptionCanceled)
        assert db.query(TenantSubscription).one().status == "canceled"

    def test_unhandled_type_and_unknown_customer(self, db):
        assert lifecycle_event_from_stripe(db, {"type": "invoice.paid", "data": {"object": {}}}) is None
        assert lifecycle_event_from_stripe(db, {
            "type": "customer.subscription.created",
            "data": {"object": self.subscription_object},
        }) is None
