"""
Tests for the ProgressEngine facade.

The write path is a strict pipeline: lock -> append -> streak update ->
commit -> invalidate -> enqueue. These tests pin the ordering, the
all-or-nothing behavior of the transactional part, and that cache or
broker failures after commit never fail the request.
"""

import sys
import threading
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from kombu.exceptions import OperationalError
from sqlalchemy.exc import OperationalError as DBOperationalError

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from core.cache import CacheLayer
from core.exceptions import ValidationError
from core.user_locks import UserWriteLocks
from models import ProgressEntry, StreakType, UserAchievement, UserStreak
from services.progress_engine import ProgressEngine, build_progress_engine
from services.recompute_scheduler import RecomputeScheduler
from services.streak_tracker import get_streak_row
from fixtures.progress_fixtures import NOW, completion, days_ago


def _daily(db, user_id="user-1"):
    row = get_streak_row(db, user_id, StreakType.DAILY)
    return (row.current_count, row.best_count) if row else None


class TestRecordCompletion:
    def test_returns_entry_streaks_and_jobs(self, db_session, progress_engine):
        result = progress_engine.record_completion(db_session, "user-1", completion(), now=NOW, today=NOW.date())

        assert result["entry"]["user_id"] == "user-1"
        assert result["entry"]["body_area"] == "nervensystem"
        daily = next(s for s in result["streaks"] if s["streak_type"] == "daily")
        assert (daily["current_count"], daily["best_count"]) == (1, 1)
        assert [a["achievement"]["id"] for a in result["new_achievements"]] == ["first-step"]
        assert result["jobs_enqueued"] == [
            "recompute_user_stats",
            "recompute_body_area_stats",
            "recompute_streaks",
            "recompute_milestones",
        ]

    def test_enqueues_body_area_with_its_job(self, db_session, progress_engine, celery_mock):
        progress_engine.record_completion(db_session, "user-1", completion(body_area="licht"), now=NOW)

        calls = {c.args[0]: c.kwargs["kwargs"] for c in celery_mock.send_task.call_args_list}
        assert calls["tasks.recompute_body_area_stats"] == {"user_id": "user-1", "body_area": "licht"}
        assert calls["tasks.recompute_user_stats"] == {"user_id": "user-1"}

    def test_commits_before_returning(self, db_session, progress_engine):
        progress_engine.record_completion(db_session, "user-1", completion(), now=NOW)
        db_session.rollback()
        assert db_session.query(ProgressEntry).count() == 1

    def test_achievements_awarded_once(self, db_session, progress_engine):
        first = progress_engine.record_completion(db_session, "user-1", completion(), now=NOW)
        second = progress_engine.record_completion(
            db_session, "user-1", completion(completed_at=NOW - timedelta(hours=1)), now=NOW
        )

        assert len(first["new_achievements"]) == 1
        assert second["new_achievements"] == []
        assert db_session.query(UserAchievement).count() == 1
        assert [a["achievement"]["id"] for a in progress_engine.get_user_achievements(db_session, "user-1")] == [
            "first-step"
        ]

    def test_gap_resets_streak(self, db_session, progress_engine):
        for d in (5, 4, 3):
            progress_engine.record_completion(db_session, "user-1", completion(completed_at=days_ago(d)), now=NOW)
        assert _daily(db_session) == (3, 3)

        progress_engine.record_completion(db_session, "user-1", completion(completed_at=days_ago(0)), now=NOW)
        assert _daily(db_session) == (1, 3)


class TestPipelineOrdering:
    def test_invalidate_runs_after_commit_and_before_enqueue(self, db_session, cache, celery_mock):
        events = []
        engine = ProgressEngine(cache=cache, scheduler=RecomputeScheduler(celery_mock))

        original_commit = db_session.commit
        db_session.commit = lambda: (events.append("commit"), original_commit())
        cache.invalidate_user_caches = MagicMock(side_effect=lambda *a: events.append("invalidate"))
        celery_mock.send_task.side_effect = lambda *a, **k: events.append("enqueue")

        engine.record_completion(db_session, "user-1", completion(), now=NOW)

        assert events == ["commit", "invalidate", "enqueue", "enqueue", "enqueue", "enqueue"]
        cache.invalidate_user_caches.assert_called_once_with("user-1", "nervensystem")

    def test_stale_aggregates_are_dropped(self, db_session, progress_engine, cache):
        cache.cache_user_stats("user-1", {"total_sessions": 0})
        cache.cache_streaks("user-1", [])

        progress_engine.record_completion(db_session, "user-1", completion(), now=NOW)

        assert cache.get_cached_user_stats("user-1") is None
        assert cache.get_cached_streaks("user-1") is None
        assert progress_engine.get_user_stats(db_session, "user-1")["total_sessions"] == 1


class TestFailedWrites:
    def test_validation_error_has_no_side_effects(self, db_session, cache, celery_mock):
        engine = ProgressEngine(cache=cache, scheduler=RecomputeScheduler(celery_mock))
        cache.invalidate_user_caches = MagicMock()

        with pytest.raises(ValidationError):
            engine.record_completion(db_session, "user-1", completion(body_area="ohren"), now=NOW)

        cache.invalidate_user_caches.assert_not_called()
        celery_mock.send_task.assert_not_called()
        assert db_session.query(UserStreak).count() == 0

    def test_rejected_backfill_rolls_back_the_entry(self, db_session, cache, celery_mock):
        engine = ProgressEngine(cache=cache, scheduler=RecomputeScheduler(celery_mock), backfill_policy="reject")
        engine.record_completion(db_session, "user-1", completion(completed_at=days_ago(0)), now=NOW)
        celery_mock.reset_mock()

        with pytest.raises(ValidationError):
            engine.record_completion(db_session, "user-1", completion(completed_at=days_ago(2)), now=NOW)

        assert db_session.query(ProgressEntry).count() == 1
        assert _daily(db_session) == (1, 1)
        celery_mock.send_task.assert_not_called()

    def test_ignored_backfill_still_records(self, db_session, progress_engine):
        progress_engine.record_completion(db_session, "user-1", completion(completed_at=days_ago(0)), now=NOW)
        progress_engine.record_completion(db_session, "user-1", completion(completed_at=days_ago(2)), now=NOW)

        assert db_session.query(ProgressEntry).count() == 2
        assert _daily(db_session) == (1, 1)

    def test_achievement_failure_rolls_back_the_entry(self, db_session, progress_engine, celery_mock):
        with patch(
            "services.achievement_engine.check_achievements",
            side_effect=DBOperationalError("x", {}, Exception()),
        ):
            with pytest.raises(DBOperationalError):
                progress_engine.record_completion(db_session, "user-1", completion(), now=NOW)

        assert db_session.query(ProgressEntry).count() == 0
        assert db_session.query(UserStreak).count() == 0
        celery_mock.send_task.assert_not_called()

    def test_database_error_propagates_and_rolls_back(self, db_session, progress_engine, celery_mock):
        with patch("services.progress_engine.apply_completion", side_effect=DBOperationalError("x", {}, Exception())):
            with pytest.raises(DBOperationalError):
                progress_engine.record_completion(db_session, "user-1", completion(), now=NOW)

        assert db_session.query(ProgressEntry).count() == 0
        celery_mock.send_task.assert_not_called()


class TestBestEffortSideEffects:
    def test_broker_down_still_records(self, db_session, cache):
        celery = MagicMock()
        celery.send_task.side_effect = OperationalError("broker down")
        engine = ProgressEngine(cache=cache, scheduler=RecomputeScheduler(celery))

        result = engine.record_completion(db_session, "user-1", completion(), now=NOW)

        assert result["jobs_enqueued"] == []
        assert db_session.query(ProgressEntry).count() == 1

    def test_no_redis_still_records(self, db_session, celery_mock):
        engine = ProgressEngine(cache=CacheLayer(None), scheduler=RecomputeScheduler(celery_mock))
        result = engine.record_completion(db_session, "user-1", completion(), now=NOW)
        assert result["entry"]["id"]
        assert engine.get_milestones(db_session, "user-1")["total_sessions"] == 1


class TestUserWriteLocks:
    def test_only_users_in_flight_are_registered(self):
        locks = UserWriteLocks()
        with locks.hold("a"):
            with locks.hold("b"):
                assert len(locks) == 2
            assert len(locks) == 1
        assert len(locks) == 0

    def test_registry_stays_empty_after_many_users(self):
        locks = UserWriteLocks()
        for i in range(1000):
            with locks.hold(f"user-{i}"):
                pass
        assert len(locks) == 0

    def test_entry_released_when_block_raises(self):
        locks = UserWriteLocks()
        with pytest.raises(RuntimeError):
            with locks.hold("a"):
                raise RuntimeError("write failed")
        assert len(locks) == 0
        with locks.hold("a"):
            assert len(locks) == 1

    def test_hold_serializes(self):
        locks = UserWriteLocks()
        inside = []

        def worker():
            with locks.hold("a"):
                inside.append("second")

        with locks.hold("a"):
            inside.append("first")
            t = threading.Thread(target=worker)
            t.start()
            t.join(timeout=0.2)
            assert t.is_alive()
            assert inside == ["first"]
            assert len(locks) == 1
        t.join(timeout=2)
        assert inside == ["first", "second"]
        assert len(locks) == 0

    def test_record_completion_holds_the_user_lock(self, db_session, progress_engine):
        held = []
        original = progress_engine.locks.hold

        def spy(user_id, db=None):
            held.append(user_id)
            return original(user_id, db)

        progress_engine.locks.hold = spy
        progress_engine.record_completion(db_session, "user-1", completion(), now=NOW)
        assert held == ["user-1"]


class TestFacadeReads:
    def test_reads_go_through_the_cache(self, db_session, progress_engine, cache):
        progress_engine.record_completion(db_session, "user-1", completion(), now=NOW)

        progress_engine.get_streak_data(db_session, "user-1")
        progress_engine.get_milestones(db_session, "user-1")
        progress_engine.get_body_area_stats(db_session, "user-1", "nervensystem")

        assert cache.get_cached_streaks("user-1") is not None
        assert cache.get_cached_milestones("user-1") is not None
        assert cache.get_cached_body_area_stats("user-1", "nervensystem") is not None

    def test_insight_round_trip(self, db_session, progress_engine):
        [insight] = progress_engine.generate_insights(db_session, "user-1", now=NOW)
        assert len(progress_engine.get_unviewed_insights(db_session, "user-1")) == 1
        assert progress_engine.mark_insights_as_viewed(db_session, "user-1", [insight["id"]]) == 1
        assert progress_engine.get_unviewed_insights(db_session, "user-1") == []

    def test_unviewed_insights_are_cached_until_generate_or_view(self, db_session, progress_engine, cache):
        assert progress_engine.get_unviewed_insights(db_session, "user-1") == []
        assert cache.get_cached_insights("user-1") == []

        with patch("services.insight_engine.get_unviewed_insights") as read:
            assert progress_engine.get_unviewed_insights(db_session, "user-1") == []
        read.assert_not_called()

        [insight] = progress_engine.generate_insights(db_session, "user-1", now=NOW)
        assert cache.get_cached_insights("user-1") is None
        assert [i["id"] for i in progress_engine.get_unviewed_insights(db_session, "user-1")] == [insight["id"]]

        progress_engine.mark_insights_as_viewed(db_session, "user-1", [insight["id"]])
        assert cache.get_cached_insights("user-1") is None

    def test_recommendations_and_history(self, db_session, progress_engine):
        progress_engine.record_completion(db_session, "user-1", completion(), now=NOW)
        assert progress_engine.get_recommendations(db_session, "user-1", now=NOW)
        assert len(progress_engine.get_progress_history(db_session, "user-1")["items"]) == 1
        assert progress_engine.get_progress_trends(db_session, "user-1", now=NOW)["trend"] == "stable"


def test_build_progress_engine_uses_settings(cache):
    celery = MagicMock()
    with patch("services.progress_engine.build_cache_layer", return_value=cache):
        engine = build_progress_engine(celery_app=celery)
    assert engine.cache is cache
    assert engine.scheduler._celery is celery
