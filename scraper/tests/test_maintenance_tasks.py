"""
Tests for the periodic schedule maintenance tasks.

Tasks open their own sessions, so fixtures here seed and verify through
short-lived sessions instead of the shared `db` fixture.
"""
from unittest.mock import patch

import pytest

from scraper.db.models import ScheduleEntry, SubscriberMapping
from scraper.integrations.constants import JobKind, TargetType
from scraper.tasks.schedule_maintenance_tasks import consolidate_schedules, reconcile_schedules


@pytest.fixture
def task_env(session_factory, platform, alerting):
    with patch("scraper.tasks.db_session_manager.SessionLocal", session_factory), \
            patch("scraper.tasks.schedule_maintenance_tasks.get_job_platform", return_value=platform), \
            patch("scraper.tasks.schedule_maintenance_tasks.get_alerting_service", return_value=alerting):
        yield


def _seed_batch(session_factory, registry, batch_index, count, prefix):
    with session_factory() as db:
        entry = registry.create_entry(db, TargetType.GOOGLE, JobKind.REVIEWS, 24, batch_index)
        for n in range(count):
            db.add(SubscriberMapping(
                target_id=f"{prefix}-{n}",
                tenant_id="T1",
                target_type="google",
                job_kind="reviews",
                external_identifier=f"{prefix}-place-{n}",
                interval_hours=24,
                schedule_id=entry.id,
            ))
        db.flush()
        registry.recount(db, entry)
        db.commit()
        return entry.id


class TestReconcileSchedulesTask:

    def test_repairs_drift(self, task_env, session_factory, orchestrator):
        with session_factory() as db:
            result = orchestrator.add_subscriber(db, "target-1", "T1", "google", "place-1", 24)
            entry_id = result.schedule_ids[0]
            db.get(ScheduleEntry, entry_id).subscriber_count = 9
            db.commit()

        report = reconcile_schedules.run()

        assert report["entries_checked"] == 2
        assert report["drifted"] == [{"schedule_id": entry_id, "cached_count": 9, "actual_count": 1}]
        assert report["resynced"] == [entry_id]
        with session_factory() as db:
            assert db.get(ScheduleEntry, entry_id).subscriber_count == 1

    def test_reports_entries_still_out_of_sync(self, task_env, session_factory, orchestrator, platform):
        with session_factory() as db:
            result = orchestrator.add_subscriber(db, "target-1", "T1", "google", "place-1", 24)
            entry_id = result.schedule_ids[0]
            db.get(ScheduleEntry, entry_id).needs_sync = True
            db.commit()
        platform.fail("update")

        report = reconcile_schedules.run()

        assert report["still_out_of_sync"] == [entry_id]


class TestConsolidateSchedulesTask:

    def test_merges_small_batches(self, task_env, session_factory, registry, platform):
        small_id = _seed_batch(session_factory, registry, 0, 2, "a")
        _seed_batch(session_factory, registry, 1, 3, "b")

        results = consolidate_schedules.run()

        assert results["groups"] == 1
        assert results["batches_removed"] == 1
        assert results["subscribers_moved"] == 2
        assert results["errors"] == []
        with session_factory() as db:
            assert db.get(ScheduleEntry, small_id) is None
            assert [e.subscriber_count for e in db.query(ScheduleEntry).all()] == [5]

    def test_errors_raise_an_alert(self, task_env, session_factory, registry, platform, alerting):
        _seed_batch(session_factory, registry, 0, 2, "a")
        _seed_batch(session_factory, registry, 1, 3, "b")
        platform.fail("update")

        results = consolidate_schedules.run()

        assert results["errors"]
        assert alerting.sent[-1].key == "consolidation-errors"

    def test_nothing_to_do(self, task_env):
        assert consolidate_schedules.run() == {"groups": 0, "batches_removed": 0, "subscribers_moved": 0, "errors": []}
