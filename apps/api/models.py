from sqlalchemy import Column, Integer, CheckConstraint, Date, DateTime, JSON, Text, Index, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
from enum import Enum
import uuid


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class BodyArea(str, Enum):
    """The eight practice categories. Declaration order is the canonical order."""
    NERVENSYSTEM = "nervensystem"
    HORMONE = "hormone"
    ZIRKADIAN = "zirkadian"
    MIKROBIOM = "mikrobiom"
    BEWEGUNG = "bewegung"
    FASTEN = "fasten"
    KAELTE = "kaelte"
    LICHT = "licht"


BODY_AREA_NAMES = {
    BodyArea.NERVENSYSTEM: "Nervensystem & Vagusnerv",
    BodyArea.HORMONE: "Hormonelle Balance",
    BodyArea.ZIRKADIAN: "Zirkadianer Rhythmus",
    BodyArea.MIKROBIOM: "Mikrobiom & Darm-Hirn-Achse",
    BodyArea.BEWEGUNG: "Bewegung & Faszientraining",
    BodyArea.FASTEN: "Fasten & Autophagie",
    BodyArea.KAELTE: "Kältetherapie & Thermogenese",
    BodyArea.LICHT: "Lichttherapie & Photobiomodulation",
}


class DifficultyLevel(str, Enum):
    """Ordered from easiest to hardest."""
    BEGINNER = "Anfänger"
    ADVANCED = "Fortgeschritten"
    EXPERT = "Experte"

    def next_level(self) -> "DifficultyLevel":
        levels = list(DifficultyLevel)
        idx = levels.index(self)
        return levels[min(idx + 1, len(levels) - 1)]


class MoodRating(str, Enum):
    VERY_BAD = "sehr_schlecht"
    BAD = "schlecht"
    NEUTRAL = "neutral"
    GOOD = "gut"
    VERY_GOOD = "sehr_gut"


class EnergyRating(str, Enum):
    VERY_LOW = "sehr_niedrig"
    LOW = "niedrig"
    NORMAL = "normal"
    HIGH = "hoch"
    VERY_HIGH = "sehr_hoch"


class StreakType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class InsightType(str, Enum):
    PATTERN_ANALYSIS = "pattern_analysis"
    PLATEAU_DETECTION = "plateau_detection"
    MOTIVATION = "motivation"
    OPTIMIZATION = "optimization"
    RECOMMENDATION = "recommendation"


class AchievementCategory(str, Enum):
    """Declaration order is the display order."""
    CONSISTENCY = "consistency"
    EXPLORATION = "exploration"
    MASTERY = "mastery"
    TRANSFORMATION = "transformation"


class AchievementRarity(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


def _sql_in(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


class ProgressEntry(Base):
    """
    One completed exercise session. Ledger row: append-only.

    Rows are never updated; every aggregate, streak and insight is derived
    from this table.
    """
    __tablename__ = "progress_entry"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    exercise_id = Column(Text, nullable=False)
    body_area = Column(Text, nullable=False)  # BodyArea value
    completed_at = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=True)
    difficulty_level = Column(Text, nullable=False)  # DifficultyLevel value
    session_notes = Column(Text, nullable=True)
    mood = Column(Text, nullable=True)  # MoodRating value
    energy_level = Column(Text, nullable=True)  # EnergyRating value
    biometric_snapshot = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(_sql_in("body_area", BodyArea), name="ck_progress_entry_body_area"),
        CheckConstraint(_sql_in("difficulty_level", DifficultyLevel), name="ck_progress_entry_difficulty"),
        CheckConstraint("length(user_id) > 0", name="ck_progress_entry_user_id"),
        Index("ix_progress_entry_user_completed", "user_id", "completed_at"),
        Index("ix_progress_entry_user_area_completed", "user_id", "body_area", "completed_at"),
        Index("ix_progress_entry_user_exercise", "user_id", "exercise_id"),
    )


class UserStreak(Base):
    """
    Streak state per (user, streak type).

    Mutated only by the streak tracker's read-modify-write, under the
    per-user write lock.
    """
    __tablename__ = "user_streak"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, nullable=False)
    streak_type = Column(Text, nullable=False)  # StreakType value
    current_count = Column(Integer, nullable=False, default=0)
    best_count = Column(Integer, nullable=False, default=0)
    last_activity_date = Column(Date, nullable=True)
    started_at = Column(Date, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "streak_type", name="uq_user_streak_user_type"),
        CheckConstraint("current_count >= 0", name="ck_user_streak_current_nonneg"),
        CheckConstraint("best_count >= current_count", name="ck_user_streak_best_ge_current"),
    )


class UserInsight(Base):
    """
    Generated insight shown to the user.

    content: {title, message, action_items, priority, data}
    Only viewed_at changes after creation.
    """
    __tablename__ = "user_insight"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    insight_type = Column(Text, nullable=False)  # InsightType value
    content = Column(JSONType, nullable=False)
    generated_at = Column(DateTime(timezone=True), nullable=False)
    viewed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_user_insight_user_generated", "user_id", "generated_at"),
        Index("ix_user_insight_user_viewed", "user_id", "viewed_at"),
    )


class UserAchievement(Base):
    """
    An achievement a user has earned. Awarded once per (user, achievement)
    in the same transaction as the completion that earned it.

    progress_snapshot: {total_sessions, current_streak, body_area_progress}
    at the moment of earning.
    """
    __tablename__ = "user_achievement"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    achievement_id = Column(Text, nullable=False)
    earned_at = Column(DateTime(timezone=True), nullable=False)
    progress_snapshot = Column(JSONType, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "achievement_id", name="uq_user_achievement_user_achievement"),
        Index("ix_user_achievement_user_earned", "user_id", "earned_at"),
    )
