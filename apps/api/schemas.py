from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, date
from uuid import UUID
from typing import Optional, List, Dict, Any, Literal

from models import (
    AchievementCategory,
    AchievementRarity,
    BodyArea,
    DifficultyLevel,
    EnergyRating,
    InsightType,
    MoodRating,
)


class BiometricSnapshot(BaseModel):
    heart_rate: Optional[float] = Field(default=None, ge=30, le=220)
    hrv: Optional[float] = Field(default=None, ge=0, le=200)
    stress_level: Optional[float] = Field(default=None, ge=0, le=100)
    sleep_quality: Optional[float] = Field(default=None, ge=0, le=100)
    recovery_score: Optional[float] = Field(default=None, ge=0, le=100)
    timestamp: datetime
    source: Literal["manual", "wearable", "app"]
    device_id: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)


class ExerciseCompletion(BaseModel):
    """A completed session as submitted by the client."""
    model_config = ConfigDict(extra="forbid")

    exercise_id: str = Field(min_length=1)
    body_area: BodyArea
    difficulty_level: DifficultyLevel
    completed_at: Optional[datetime] = None  # defaults to now
    duration_minutes: Optional[int] = Field(default=None, ge=1, le=300)
    session_notes: Optional[str] = Field(default=None, max_length=1000)
    mood: Optional[MoodRating] = None
    energy_level: Optional[EnergyRating] = None
    biometric_snapshot: Optional[BiometricSnapshot] = None


class ProgressEntryResponse(BaseModel):
    id: UUID
    user_id: str
    exercise_id: str
    body_area: BodyArea
    completed_at: datetime
    duration_minutes: Optional[int] = None
    difficulty_level: DifficultyLevel
    session_notes: Optional[str] = None
    mood: Optional[MoodRating] = None
    energy_level: Optional[EnergyRating] = None
    biometric_snapshot: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class StreakResponse(BaseModel):
    streak_type: str
    current_count: int
    best_count: int
    last_activity_date: Optional[date] = None
    started_at: Optional[date] = None
    is_active: bool


class AchievementResponse(BaseModel):
    id: str
    name: str
    description: str
    category: AchievementCategory
    rarity: AchievementRarity
    badge_icon: str
    points: int
    criterion: str
    target: int
    body_area: Optional[BodyArea] = None


class ProgressSnapshot(BaseModel):
    total_sessions: int
    current_streak: int
    body_area_progress: Dict[str, int]


class EarnedAchievementResponse(BaseModel):
    achievement: AchievementResponse
    earned_at: datetime
    progress_snapshot: ProgressSnapshot


class AchievementProgressResponse(BaseModel):
    achievement: AchievementResponse
    current_progress: int
    target_progress: int
    progress_percentage: float
    is_completed: bool
    earned_at: Optional[datetime] = None


class CompletionResult(BaseModel):
    entry: ProgressEntryResponse
    streaks: List[StreakResponse]
    jobs_enqueued: List[str]
    new_achievements: List[EarnedAchievementResponse] = []


class BodyAreaBreakdown(BaseModel):
    body_area: BodyArea
    sessions: int
    total_minutes: int


class TopExercise(BaseModel):
    exercise_id: str
    sessions: int
    last_completed_at: datetime


class UserStatsResponse(BaseModel):
    total_sessions: int
    total_minutes: int
    average_session_duration: float
    body_area_breakdown: List[BodyAreaBreakdown]
    top_exercises: List[TopExercise]
    calculated_at: datetime


class BodyAreaStatsResponse(BaseModel):
    body_area: BodyArea
    total_sessions: int
    total_minutes: int
    average_session_duration: float
    last_practiced: Optional[datetime] = None
    favorite_exercises: List[str]
    consistency_score: float
    mastery_level: Literal["beginner", "intermediate", "advanced", "expert"]


class MilestonesResponse(BaseModel):
    total_sessions: int
    total_minutes: int
    distinct_exercises: int
    body_areas_explored: int
    current_daily_streak: int
    best_daily_streak: int


class ProgressHistoryResponse(BaseModel):
    items: List[ProgressEntryResponse]
    next_cursor: Optional[str] = None
    has_more: bool


class TrendDataPoint(BaseModel):
    date: date
    value: int
    is_weekend: bool


class ProgressTrendsResponse(BaseModel):
    period: Literal["week", "month", "quarter", "year"]
    data_points: List[TrendDataPoint]
    trend: Literal["increasing", "decreasing", "stable"]
    change_percentage: int


class InsightContent(BaseModel):
    title: str
    message: str
    action_items: List[str] = []
    priority: Literal["low", "medium", "high"]
    data: Dict[str, Any] = {}


class InsightResponse(BaseModel):
    id: UUID
    user_id: str
    insight_type: InsightType
    content: InsightContent
    generated_at: datetime
    viewed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class MarkInsightsViewedRequest(BaseModel):
    insight_ids: List[str] = Field(min_length=1)


class MarkInsightsViewedResponse(BaseModel):
    updated: int


class RecommendationResponse(BaseModel):
    id: str
    type: Literal["exercise", "schedule", "progression", "recovery"]
    title: str
    description: str
    body_area: Optional[BodyArea] = None
    priority: int
    reasoning: str
    estimated_benefit: str
