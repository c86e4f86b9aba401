"""
HTTP tests for the progress router and app-level handlers.

The app is built with an engine wired to FakeRedis and a mock broker, and
get_db is overridden to hand out the test session.
"""

import sys
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from core.database import get_db
from main import create_app
from fixtures.progress_fixtures import NOW, days_ago

BASE = "/v1/users/user-1"


@pytest.fixture
def client(db_session, progress_engine):
    app = create_app(engine=progress_engine)

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client


def _post_completion(client, **overrides):
    body = {
        "exercise_id": "box_breathing",
        "body_area": "nervensystem",
        "difficulty_level": "Anfänger",
        "completed_at": NOW.isoformat(),
        "duration_minutes": 10,
    }
    body.update(overrides)
    return client.post(f"{BASE}/completions", json=body)


class TestCompletions:
    def test_record_completion(self, client, celery_mock):
        response = _post_completion(client)

        assert response.status_code == 201
        data = response.json()
        assert data["entry"]["exercise_id"] == "box_breathing"
        assert data["entry"]["user_id"] == "user-1"
        assert len(data["jobs_enqueued"]) == 4
        assert data["new_achievements"][0]["achievement"]["id"] == "first-step"
        assert celery_mock.send_task.call_count == 4

    def test_unknown_body_area(self, client):
        response = _post_completion(client, body_area="ohren")

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR_BODY_AREA"
        assert "detail" in response.json()

    def test_unknown_field_rejected(self, client):
        response = _post_completion(client, heart_rate=60)
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR_HEART_RATE"

    def test_out_of_range_duration(self, client, celery_mock):
        response = _post_completion(client, duration_minutes=0)
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR_DURATION_MINUTES"
        assert isinstance(response.json()["detail"], str)
        celery_mock.send_task.assert_not_called()

    def test_missing_required_field(self, client):
        body = {"body_area": "licht", "difficulty_level": "Anfänger"}
        response = client.post(f"{BASE}/completions", json=body)
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR_EXERCISE_ID"

    def test_body_must_be_an_object(self, client):
        response = client.post(f"{BASE}/completions", json=[1, 2])
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_future_completion_rejected(self, client):
        response = _post_completion(client, completed_at="2999-01-01T00:00:00+00:00")
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR_COMPLETED_AT"


class TestAggregates:
    def test_stats_and_milestones(self, client):
        _post_completion(client)
        _post_completion(client, body_area="licht", completed_at=days_ago(1).isoformat())

        stats = client.get(f"{BASE}/stats").json()
        assert stats["total_sessions"] == 2
        assert stats["total_minutes"] == 20

        milestones = client.get(f"{BASE}/milestones").json()
        assert milestones["body_areas_explored"] == 2

    def test_stats_with_range(self, client):
        _post_completion(client, completed_at=days_ago(40).isoformat())
        _post_completion(client)

        response = client.get(f"{BASE}/stats", params={"start": days_ago(30).isoformat()})
        assert response.json()["total_sessions"] == 1

    def test_streaks(self, client):
        _post_completion(client)
        streaks = client.get(f"{BASE}/streaks").json()
        assert {s["streak_type"] for s in streaks} == {"daily", "weekly"}

    def test_body_areas(self, client):
        _post_completion(client, body_area="licht")
        assert len(client.get(f"{BASE}/body-areas").json()) == 8

        [licht] = client.get(f"{BASE}/body-areas", params={"body_area": "licht"}).json()
        assert licht["total_sessions"] == 1

    def test_body_area_filter_validated(self, client):
        response = client.get(f"{BASE}/body-areas", params={"body_area": "ohren"})
        assert response.status_code == 422

    def test_malformed_query_param(self, client):
        response = client.get(f"{BASE}/history", params={"limit": "many"})
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR_LIMIT"

    def test_history_pages(self, client):
        for d in range(3):
            _post_completion(client, completed_at=days_ago(d).isoformat())

        first = client.get(f"{BASE}/history", params={"limit": 2}).json()
        assert len(first["items"]) == 2
        assert first["has_more"] is True

        second = client.get(f"{BASE}/history", params={"limit": 2, "cursor": first["next_cursor"]}).json()
        assert len(second["items"]) == 1
        assert second["has_more"] is False

    def test_trends(self, client):
        response = client.get(
            f"{BASE}/trends",
            params={"start": days_ago(6).isoformat(), "end": NOW.isoformat()},
        )
        assert response.status_code == 200
        assert response.json()["period"] == "week"

    def test_trends_open_start_uses_default_window(self, client):
        response = client.get(f"{BASE}/trends", params={"end": NOW.isoformat()})
        assert response.status_code == 200
        points = response.json()["data_points"]
        assert len(points) == 91
        assert points[-1]["date"] == NOW.date().isoformat()

    def test_trends_range_over_a_year_rejected(self, client):
        response = client.get(
            f"{BASE}/trends",
            params={"start": NOW.replace(year=1970).isoformat(), "end": NOW.isoformat()},
        )
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR_DATE_RANGE"


class TestInsightsAndRecommendations:
    def test_generate_list_and_mark_viewed(self, client):
        generated = client.post(f"{BASE}/insights/generate").json()
        assert [i["insight_type"] for i in generated] == ["motivation"]

        unviewed = client.get(f"{BASE}/insights").json()
        assert [i["id"] for i in unviewed] == [generated[0]["id"]]

        response = client.post(f"{BASE}/insights/viewed", json={"insight_ids": [generated[0]["id"]]})
        assert response.json() == {"updated": 1}
        assert client.get(f"{BASE}/insights").json() == []

    def test_mark_viewed_needs_ids(self, client):
        response = client.post(f"{BASE}/insights/viewed", json={"insight_ids": []})
        assert response.status_code == 422

    def test_recommendations(self, client):
        recs = client.get(f"{BASE}/recommendations").json()
        assert [r["id"] for r in recs] == ["neglected_nervensystem", "neglected_hormone"]


class TestAchievements:
    def test_catalogue_with_progress(self, client):
        _post_completion(client)

        rows = client.get(f"{BASE}/achievements").json()
        first_step = next(r for r in rows if r["achievement"]["id"] == "first-step")
        assert first_step["is_completed"] is True
        assert first_step["progress_percentage"] == 100.0

        earned = client.get(f"{BASE}/achievements/earned").json()
        assert [e["achievement"]["id"] for e in earned] == ["first-step"]

    def test_single_progress(self, client):
        response = client.get(f"{BASE}/achievements/energy-awakening/progress")
        assert response.status_code == 200
        assert response.json()["target_progress"] == 10

    def test_unknown_achievement_is_404(self, client):
        response = client.get(f"{BASE}/achievements/moon-walker/progress")
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"


class TestHealth:
    def test_healthy(self, client):
        with patch("main.check_db_connection", return_value=True):
            body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["cache"] == "healthy"

    def test_cache_down_is_degraded(self, client, progress_engine):
        with patch("main.check_db_connection", return_value=True), \
                patch.object(progress_engine.cache, "health_check", return_value=False):
            response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "degraded"

    def test_database_down(self, client):
        with patch("main.check_db_connection", return_value=False):
            response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"
