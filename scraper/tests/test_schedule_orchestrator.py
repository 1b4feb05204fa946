"""
Tests for the schedule orchestrator: add / move / remove semantics, the
scheduling invariants and the end-to-end scheduling scenarios.
"""
from unittest.mock import patch

import pytest
from sqlalchemy import func

from scraper.db.models import ScheduleEntry, SubscriberMapping
from scraper.integrations.constants import JobKind, TargetType
from scraper.services.batch_manager import BatchCapacityManager
from scraper.services.schedule_orchestrator import ScheduleOrchestrator
from scraper.services.schedule_registry import ScheduleRegistry


def _entries(db, target_type="google", job_kind="reviews", interval=None):
    query = db.query(ScheduleEntry).filter(
        ScheduleEntry.target_type == target_type,
        ScheduleEntry.job_kind == job_kind,
    )
    if interval is not None:
        query = query.filter(ScheduleEntry.interval_hours == interval)
    return query.order_by(ScheduleEntry.interval_hours, ScheduleEntry.batch_index).all()


def _assert_invariants(db, registry):
    """Every scheduling invariant that must hold after any operation."""
    for entry in db.query(ScheduleEntry).all():
        active = (
            db.query(func.count(SubscriberMapping.id))
            .filter(SubscriberMapping.schedule_id == entry.id, SubscriberMapping.is_active.is_(True))
            .scalar()
        )
        assert entry.subscriber_count == active
        assert entry.is_active == (active > 0)
        assert entry.subscriber_count <= registry.max_batch_size(entry.target_type)

    for mapping in db.query(SubscriberMapping).all():
        assert mapping.interval_hours == mapping.schedule.interval_hours
        assert mapping.job_kind == mapping.schedule.job_kind

    duplicates = (
        db.query(SubscriberMapping.target_id, SubscriberMapping.job_kind)
        .filter(SubscriberMapping.is_active.is_(True))
        .group_by(SubscriberMapping.target_id, SubscriberMapping.job_kind)
        .having(func.count(SubscriberMapping.id) > 1)
        .all()
    )
    assert duplicates == []


@pytest.fixture
def small_registry(platform, small_batch_settings):
    return ScheduleRegistry(platform, small_batch_settings)


@pytest.fixture
def small_orchestrator(small_registry, alerting):
    return ScheduleOrchestrator(small_registry, BatchCapacityManager(small_registry), alerting)


class TestAddSubscriber:

    def test_basic_onboarding(self, db, orchestrator, registry, platform):
        """Scenario: one target at 24h creates one batch-0 entry per job kind."""
        result = orchestrator.add_subscriber(db, "place-123-target", "T1", "google", "place-123", 24)

        assert result.success is True
        assert result.changed is True
        assert result.outcomes == {"reviews": "added", "overview": "added"}

        reviews = _entries(db, "google", "reviews")
        assert len(reviews) == 1
        assert reviews[0].batch_index == 0
        assert reviews[0].interval_hours == 24
        assert reviews[0].subscriber_count == 1
        assert reviews[0].is_active is True

        mapping = (
            db.query(SubscriberMapping)
            .filter(SubscriberMapping.target_id == "place-123-target", SubscriberMapping.job_kind == "reviews")
            .one()
        )
        assert mapping.tenant_id == "T1"
        assert mapping.is_active is True
        assert platform.job_identifiers(reviews[0].external_job_id) == ["place-123"]
        assert platform.jobs[reviews[0].external_job_id]["enabled"] is True
        _assert_invariants(db, registry)

    def test_repeated_add_is_noop(self, db, orchestrator, registry):
        orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)

        result = orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)

        assert result.success is True
        assert result.changed is False
        assert result.outcomes == {"reviews": "already_subscribed", "overview": "already_subscribed"}
        assert db.query(SubscriberMapping).count() == 2
        _assert_invariants(db, registry)

    def test_target_claimed_by_other_tenant_rejected(self, db, orchestrator):
        orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)

        result = orchestrator.add_subscriber(db, "t1", "T2", "google", "place-1", 24)

        assert result.success is False
        assert result.reason == "conflict"

    def test_active_mapping_at_other_interval_rejected(self, db, orchestrator, registry):
        orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)

        result = orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 6)

        assert result.success is False
        assert result.reason == "already_mapped"
        assert result.changed is False
        _assert_invariants(db, registry)

    @pytest.mark.parametrize("kwargs", [
        {"target_id": "", "tenant_id": "T1", "identifier": "p", "interval": 24},
        {"target_id": "t1", "tenant_id": "T1", "identifier": "  ", "interval": 24},
        {"target_id": "t1", "tenant_id": "T1", "identifier": "p", "interval": 0},
    ])
    def test_invalid_arguments_rejected(self, db, orchestrator, kwargs):
        with pytest.raises(ValueError):
            orchestrator.add_subscriber(
                db, kwargs["target_id"], kwargs["tenant_id"], "google", kwargs["identifier"], kwargs["interval"]
            )

    def test_unknown_target_type_rejected(self, db, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.add_subscriber(db, "t1", "T1", "yelp", "p", 24)

    def test_partial_failure_is_reported(self, db, orchestrator, registry, platform, alerting):
        """Reviews succeed, overview cannot get a schedule entry."""
        platform.fail("create", skip=1)

        result = orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)

        assert result.success is False
        assert result.reason == "partial_failure"
        assert result.changed is True
        assert result.outcomes["reviews"] == "added"
        assert result.outcomes["overview"].startswith("failed:")
        assert db.query(SubscriberMapping).count() == 1
        assert alerting.sent[-1].key == "add:google:t1"
        _assert_invariants(db, registry)

    def test_retry_after_partial_failure_completes(self, db, orchestrator, platform):
        platform.fail("create", times=1, skip=1)
        orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)

        result = orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)

        assert result.success is True
        assert result.outcomes == {"reviews": "already_subscribed", "overview": "added"}

    def test_sync_failure_commits_membership(self, db, orchestrator, registry, platform):
        platform.fail("update")

        result = orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)

        assert result.success is True
        assert result.fully_synced is False
        assert len(result.sync_failures) == 2
        assert "pending external sync" in result.message
        for entry in db.query(ScheduleEntry).all():
            assert entry.needs_sync is True
            assert entry.subscriber_count == 1
        _assert_invariants(db, registry)


class TestBatchOverflow:

    def test_fourth_target_overflows_into_second_batch(self, db, small_orchestrator, small_registry):
        """Scenario: max batch size 3, four targets at the same interval."""
        for n in range(4):
            result = small_orchestrator.add_subscriber(db, f"t{n}", "T1", "google", f"place-{n}", 24)
            assert result.success is True

        entries = _entries(db, "google", "reviews", 24)
        assert [e.batch_index for e in entries] == [0, 1]
        assert sum(e.subscriber_count for e in entries) == 4
        assert all(e.subscriber_count <= 3 for e in entries)
        assert entries[0].subscriber_count in (2, 3)
        _assert_invariants(db, small_registry)

    def test_every_identifier_lands_in_exactly_one_job(self, db, small_orchestrator, platform):
        for n in range(7):
            small_orchestrator.add_subscriber(db, f"t{n}", "T1", "google", f"place-{n}", 24)

        pushed = []
        for entry in _entries(db, "google", "reviews", 24):
            pushed.extend(platform.job_identifiers(entry.external_job_id))
        assert sorted(pushed) == sorted(f"place-{n}" for n in range(7))

    def test_split_batches_get_staggered_cron(self, db, small_orchestrator):
        for n in range(4):
            small_orchestrator.add_subscriber(db, f"t{n}", "T1", "google", f"place-{n}", 24)

        crons = [e.cron_expression for e in _entries(db, "google", "reviews", 24)]
        assert crons == ["0 9 * * *", "15 9 * * *"]


class TestMoveSubscriber:

    def test_tier_upgrade_moves_to_faster_interval(self, db, orchestrator, registry, platform):
        """Scenario: 24h target moves to 6h; the old entry is emptied, not deleted."""
        orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)
        old = _entries(db, "google", "reviews", 24)[0]

        result = orchestrator.move_subscriber(db, "t1", "google", 24, 6)

        assert result.success is True
        assert result.changed is True
        old = db.get(ScheduleEntry, old.id)
        assert old is not None
        assert old.subscriber_count == 0
        assert old.is_active is False
        assert platform.jobs[old.external_job_id]["enabled"] is False

        new = _entries(db, "google", "reviews", 6)[0]
        assert new.subscriber_count == 1
        assert platform.job_identifiers(new.external_job_id) == ["place-1"]
        for mapping in db.query(SubscriberMapping).filter(SubscriberMapping.target_id == "t1"):
            assert mapping.interval_hours == 6
        _assert_invariants(db, registry)

    def test_move_to_same_interval_is_noop(self, db, orchestrator):
        orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)

        result = orchestrator.move_subscriber(db, "t1", "google", 24, 24)

        assert result.success is True
        assert result.changed is False

    def test_move_round_trip_restores_assignment(self, db, orchestrator, registry):
        orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)
        before = {m.job_kind: m.schedule_id for m in orchestrator.mappings_for_target(db, "t1")}

        orchestrator.move_subscriber(db, "t1", "google", 24, 6)
        orchestrator.move_subscriber(db, "t1", "google", 6, 24)

        after = {m.job_kind: m.schedule_id for m in orchestrator.mappings_for_target(db, "t1")}
        assert after == before
        assert [e.subscriber_count for e in _entries(db, "google", "reviews", 24)] == [1]
        assert [e.subscriber_count for e in _entries(db, "google", "reviews", 6)] == [0]
        _assert_invariants(db, registry)

    def test_move_unknown_target_fails(self, db, orchestrator):
        result = orchestrator.move_subscriber(db, "missing", "google", 24, 6)

        assert result.success is False
        assert result.reason == "not_found"

    def test_move_into_full_group_allocates_new_batch(self, db, small_orchestrator, small_registry):
        for n in range(2):
            small_orchestrator.add_subscriber(db, f"fast-{n}", "T1", "google", f"fast-{n}", 6)
        small_orchestrator.add_subscriber(db, "slow", "T1", "google", "slow", 24)

        result = small_orchestrator.move_subscriber(db, "slow", "google", 24, 6)

        assert result.success is True
        assert sum(e.subscriber_count for e in _entries(db, "google", "reviews", 6)) == 3
        _assert_invariants(db, small_registry)


class TestRemoveSubscriber:

    def test_remove_deletes_mappings_and_disables_empty_jobs(self, db, orchestrator, registry, platform):
        orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)

        result = orchestrator.remove_subscriber(db, "t1", "google")

        assert result.success is True
        assert result.outcomes == {"reviews": "removed", "overview": "removed"}
        assert db.query(SubscriberMapping).count() == 0
        for entry in db.query(ScheduleEntry).all():
            assert entry.subscriber_count == 0
            assert platform.jobs[entry.external_job_id]["enabled"] is False
        _assert_invariants(db, registry)

    def test_remove_keeps_other_subscribers(self, db, orchestrator, platform):
        orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)
        orchestrator.add_subscriber(db, "t2", "T2", "google", "place-2", 24)

        orchestrator.remove_subscriber(db, "t1", "google")

        entry = _entries(db, "google", "reviews", 24)[0]
        assert entry.subscriber_count == 1
        assert platform.job_identifiers(entry.external_job_id) == ["place-2"]

    def test_remove_twice(self, db, orchestrator):
        orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)

        first = orchestrator.remove_subscriber(db, "t1", "google")
        second = orchestrator.remove_subscriber(db, "t1", "google")

        assert first.changed is True
        assert second.success is True
        assert second.changed is False

    def test_remove_unmapped_target_is_noop(self, db, orchestrator):
        result = orchestrator.remove_subscriber(db, "missing", "google")

        assert result.success is True
        assert result.changed is False

    def test_remove_follows_mapping_moved_before_lock(self, db, orchestrator, registry):
        """A move committed between reading the mappings and locking their entries is picked up."""
        orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)
        other_id = registry.create_entry(db, TargetType.GOOGLE, JobKind.REVIEWS, 24, 1).id
        lock_entry = registry.lock_entry
        moved = []

        def lock_after_concurrent_move(session, entry_id):
            if not moved:
                mapping = session.query(SubscriberMapping).filter_by(target_id="t1", job_kind="reviews").one()
                moved.append(mapping.schedule_id)
                mapping.schedule_id = other_id
                for entry in session.query(ScheduleEntry).filter(ScheduleEntry.id.in_([moved[0], other_id])):
                    registry.recount(session, entry)
                session.commit()
            return lock_entry(session, entry_id)

        with patch.object(registry, "lock_entry", side_effect=lock_after_concurrent_move):
            result = orchestrator.remove_subscriber(db, "t1", "google")

        assert result.success is True
        assert other_id in result.schedule_ids
        assert db.query(SubscriberMapping).count() == 0
        assert db.get(ScheduleEntry, other_id).subscriber_count == 0
        _assert_invariants(db, registry)

    def test_remove_with_sync_failure_still_commits(self, db, orchestrator, platform):
        orchestrator.add_subscriber(db, "t1", "T1", "google", "place-1", 24)
        platform.fail("update")

        result = orchestrator.remove_subscriber(db, "t1", "google")

        assert result.success is True
        assert len(result.sync_failures) == 2
        assert db.query(SubscriberMapping).count() == 0


class TestInvariantsUnderChurn:

    def test_mixed_operations_keep_invariants(self, db, small_orchestrator, small_registry):
        for n in range(8):
            small_orchestrator.add_subscriber(db, f"t{n}", f"T{n % 3}", "facebook", f"https://fb.com/{n}", 12)
        _assert_invariants(db, small_registry)

        for n in range(0, 8, 2):
            small_orchestrator.move_subscriber(db, f"t{n}", "facebook", 12, 24)
        _assert_invariants(db, small_registry)

        for n in range(1, 8, 3):
            small_orchestrator.remove_subscriber(db, f"t{n}", "facebook")
        _assert_invariants(db, small_registry)

        assert db.query(SubscriberMapping).filter(SubscriberMapping.job_kind == "reviews").count() == 5
