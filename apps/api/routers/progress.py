"""
Progress API Router

Thin HTTP mapping over the ProgressEngine facade. No business logic here:
validation, streaks, caching and background jobs all live in the engine.

The engine is created once at startup (main.create_app) and read from
app.state, so tests can hand in an engine wired to fakes.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from core.clock import ensure_utc, utcnow
from core.database import get_db
from schemas import (
    AchievementProgressResponse,
    BodyAreaStatsResponse,
    CompletionResult,
    EarnedAchievementResponse,
    ExerciseCompletion,
    InsightResponse,
    MarkInsightsViewedRequest,
    MarkInsightsViewedResponse,
    MilestonesResponse,
    ProgressHistoryResponse,
    ProgressTrendsResponse,
    RecommendationResponse,
    StreakResponse,
    UserStatsResponse,
)
from services.progress_engine import ProgressEngine
from services.progress_ledger import DateRange

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/users/{user_id}", tags=["progress"])

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def get_engine(request: Request) -> ProgressEngine:
    return request.app.state.engine


def _date_range(start: Optional[datetime], end: Optional[datetime]) -> Optional[DateRange]:
    if start is None and end is None:
        return None
    # Open ends: from the epoch / up to now
    return DateRange(
        start=ensure_utc(start) if start else EPOCH,
        end=ensure_utc(end) if end else utcnow(),
    )


def _trend_range(start: Optional[datetime], end: Optional[datetime], default_days: int) -> Optional[DateRange]:
    if start is None and end is None:
        return None
    end = ensure_utc(end) if end else utcnow()
    # Open start: the default trend window before the end
    start = ensure_utc(start) if start else end - timedelta(days=default_days)
    return DateRange(start=start, end=end)


# --- Writes ---

@router.post("/completions", response_model=CompletionResult, status_code=status.HTTP_201_CREATED)
def record_completion(
    user_id: str,
    completion: ExerciseCompletion,
    db: Session = Depends(get_db),
    engine: ProgressEngine = Depends(get_engine),
):
    """Record a completed exercise session; returns the entry and updated streaks."""
    return engine.record_completion(db, user_id, completion)


# --- Aggregates ---

@router.get("/stats", response_model=UserStatsResponse)
def get_user_stats(
    user_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
    engine: ProgressEngine = Depends(get_engine),
):
    return engine.get_user_stats(db, user_id, _date_range(start, end))


@router.get("/streaks", response_model=List[StreakResponse])
def get_streaks(
    user_id: str,
    db: Session = Depends(get_db),
    engine: ProgressEngine = Depends(get_engine),
):
    return engine.get_streak_data(db, user_id)


@router.get("/body-areas", response_model=List[BodyAreaStatsResponse])
def get_body_area_stats(
    user_id: str,
    body_area: Optional[str] = None,
    db: Session = Depends(get_db),
    engine: ProgressEngine = Depends(get_engine),
):
    return engine.get_body_area_stats(db, user_id, body_area)


@router.get("/milestones", response_model=MilestonesResponse)
def get_milestones(
    user_id: str,
    db: Session = Depends(get_db),
    engine: ProgressEngine = Depends(get_engine),
):
    return engine.get_milestones(db, user_id)


@router.get("/history", response_model=ProgressHistoryResponse)
def get_progress_history(
    user_id: str,
    cursor: Optional[str] = None,
    limit: int = 20,
    body_area: Optional[str] = None,
    db: Session = Depends(get_db),
    engine: ProgressEngine = Depends(get_engine),
):
    """Newest first; pass next_cursor back to fetch the following page."""
    return engine.get_progress_history(db, user_id, cursor=cursor, limit=limit, body_area=body_area)


@router.get("/trends", response_model=ProgressTrendsResponse)
def get_progress_trends(
    user_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
    engine: ProgressEngine = Depends(get_engine),
):
    return engine.get_progress_trends(
        db, user_id, _trend_range(start, end, engine.thresholds.trend_default_days)
    )


# --- Insights and recommendations ---

@router.post("/insights/generate", response_model=List[InsightResponse])
def generate_insights(
    user_id: str,
    db: Session = Depends(get_db),
    engine: ProgressEngine = Depends(get_engine),
):
    return engine.generate_insights(db, user_id)


@router.get("/insights", response_model=List[InsightResponse])
def get_unviewed_insights(
    user_id: str,
    db: Session = Depends(get_db),
    engine: ProgressEngine = Depends(get_engine),
):
    return engine.get_unviewed_insights(db, user_id)


@router.post("/insights/viewed", response_model=MarkInsightsViewedResponse)
def mark_insights_as_viewed(
    user_id: str,
    request: MarkInsightsViewedRequest,
    db: Session = Depends(get_db),
    engine: ProgressEngine = Depends(get_engine),
):
    updated = engine.mark_insights_as_viewed(db, user_id, request.insight_ids)
    return {"updated": updated}


@router.get("/recommendations", response_model=List[RecommendationResponse])
def get_recommendations(
    user_id: str,
    db: Session = Depends(get_db),
    engine: ProgressEngine = Depends(get_engine),
):
    return engine.get_recommendations(db, user_id)


# --- Achievements ---

@router.get("/achievements", response_model=List[AchievementProgressResponse])
def get_achievements(
    user_id: str,
    db: Session = Depends(get_db),
    engine: ProgressEngine = Depends(get_engine),
):
    """Every achievement with the user's progress towards it."""
    return engine.get_achievements(db, user_id)


@router.get("/achievements/earned", response_model=List[EarnedAchievementResponse])
def get_user_achievements(
    user_id: str,
    db: Session = Depends(get_db),
    engine: ProgressEngine = Depends(get_engine),
):
    return engine.get_user_achievements(db, user_id)


@router.get("/achievements/{achievement_id}/progress", response_model=AchievementProgressResponse)
def get_achievement_progress(
    user_id: str,
    achievement_id: str,
    db: Session = Depends(get_db),
    engine: ProgressEngine = Depends(get_engine),
):
    return engine.get_achievement_progress(db, user_id, achievement_id)
