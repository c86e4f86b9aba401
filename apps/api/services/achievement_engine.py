"""
Achievement Engine

Badges earned from the ledger and the daily streak. The catalogue is
static; what a user has earned lives in user_achievement, one row per
(user, achievement), written inside the completion transaction so an
award never exists without the entry that earned it.

Criteria:
    total_sessions      lifetime completions
    distinct_exercises  different exercise ids ever completed
    streak              current daily streak
    areas_explored      body areas with at least one completion
    body_area_sessions  completions in one body area
    specific_exercise   completions of one exercise id
    perfect_week        practice days in the current Monday-Sunday week
    all_areas_week      body areas practiced in the current week

Copy is German, matching the product.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.clock import activity_date, ensure_utc, utcnow
from core.exceptions import NotFoundError
from models import AchievementCategory, AchievementRarity, BodyArea, ProgressEntry, StreakType, UserAchievement
from services.progress_ledger import DateRange, filtered_query, validate_user_id
from services.streak_tracker import get_current_count

logger = logging.getLogger(__name__)


class Criterion(str, Enum):
    TOTAL_SESSIONS = "total_sessions"
    DISTINCT_EXERCISES = "distinct_exercises"
    STREAK = "streak"
    AREAS_EXPLORED = "areas_explored"
    BODY_AREA_SESSIONS = "body_area_sessions"
    SPECIFIC_EXERCISE = "specific_exercise"
    PERFECT_WEEK = "perfect_week"
    ALL_AREAS_WEEK = "all_areas_week"


RARITY_POINTS = {
    AchievementRarity.BRONZE: 10,
    AchievementRarity.SILVER: 25,
    AchievementRarity.GOLD: 50,
    AchievementRarity.PLATINUM: 100,
}


@dataclass(frozen=True)
class AchievementDefinition:
    id: str
    name: str
    description: str
    category: AchievementCategory
    rarity: AchievementRarity
    badge_icon: str
    criterion: Criterion
    target: int
    body_area: Optional[BodyArea] = None
    exercise_id: Optional[str] = None

    @property
    def points(self) -> int:
        return RARITY_POINTS[self.rarity]


ACHIEVEMENTS = [
    # Consistency
    AchievementDefinition(
        id="first-step",
        name="Erste Schritte",
        description="Du hast deine erste Übung abgeschlossen - der Beginn einer transformierenden Reise!",
        category=AchievementCategory.CONSISTENCY,
        rarity=AchievementRarity.BRONZE,
        badge_icon="🌱",
        criterion=Criterion.TOTAL_SESSIONS,
        target=1,
    ),
    AchievementDefinition(
        id="week-warrior",
        name="Wochen-Krieger",
        description="7 Tage in Folge praktiziert - du entwickelst eine kraftvolle Gewohnheit!",
        category=AchievementCategory.CONSISTENCY,
        rarity=AchievementRarity.SILVER,
        badge_icon="🔥",
        criterion=Criterion.STREAK,
        target=7,
    ),
    AchievementDefinition(
        id="perfect-week",
        name="Perfekte Woche",
        description="An jedem Tag dieser Woche geübt - Montag bis Sonntag ohne Pause!",
        category=AchievementCategory.CONSISTENCY,
        rarity=AchievementRarity.SILVER,
        badge_icon="📅",
        criterion=Criterion.PERFECT_WEEK,
        target=7,
    ),
    AchievementDefinition(
        id="month-master",
        name="Monats-Meister",
        description="30 Tage kontinuierliche Praxis - deine Transformation ist unaufhaltsam!",
        category=AchievementCategory.CONSISTENCY,
        rarity=AchievementRarity.GOLD,
        badge_icon="🏆",
        criterion=Criterion.STREAK,
        target=30,
    ),
    AchievementDefinition(
        id="century-sage",
        name="Jahrhundert-Weiser",
        description="100 Tage Streaks - Du bist ein wahrer Meister der Beständigkeit!",
        category=AchievementCategory.CONSISTENCY,
        rarity=AchievementRarity.PLATINUM,
        badge_icon="👑",
        criterion=Criterion.STREAK,
        target=100,
    ),
    # Exploration
    AchievementDefinition(
        id="technique-collector",
        name="Technik-Sammler",
        description="20 verschiedene Übungen gemeistert - dein Repertoire wächst stetig!",
        category=AchievementCategory.EXPLORATION,
        rarity=AchievementRarity.SILVER,
        badge_icon="📚",
        criterion=Criterion.DISTINCT_EXERCISES,
        target=20,
    ),
    AchievementDefinition(
        id="body-explorer",
        name="Körper-Forscher",
        description="Du hast alle 8 Hauptbereiche des Körpers erkundet - ein wahrer Entdecker!",
        category=AchievementCategory.EXPLORATION,
        rarity=AchievementRarity.GOLD,
        badge_icon="🧭",
        criterion=Criterion.AREAS_EXPLORED,
        target=len(BodyArea),
    ),
    # Mastery
    AchievementDefinition(
        id="cold-warrior",
        name="Kälte-Krieger",
        description="Du hast dich der Kälte gestellt und deine Komfortzone gesprengt!",
        category=AchievementCategory.MASTERY,
        rarity=AchievementRarity.SILVER,
        badge_icon="❄️",
        criterion=Criterion.SPECIFIC_EXERCISE,
        target=5,
        exercise_id="progressives-kaelte-protokoll",
    ),
    AchievementDefinition(
        id="breath-master",
        name="Atem-Meister",
        description="5 Sessions für Nervensystem und Atmung - du kontrollierst deinen Lebensatem!",
        category=AchievementCategory.MASTERY,
        rarity=AchievementRarity.GOLD,
        badge_icon="💨",
        criterion=Criterion.BODY_AREA_SESSIONS,
        target=5,
        body_area=BodyArea.NERVENSYSTEM,
    ),
    AchievementDefinition(
        id="rhythm-keeper",
        name="Rhythmus-Hüter",
        description="Du hast deinen zirkadianen Rhythmus gemeistert - Zeit ist dein Verbündeter!",
        category=AchievementCategory.MASTERY,
        rarity=AchievementRarity.GOLD,
        badge_icon="⏰",
        criterion=Criterion.BODY_AREA_SESSIONS,
        target=7,
        body_area=BodyArea.ZIRKADIAN,
    ),
    # Transformation
    AchievementDefinition(
        id="energy-awakening",
        name="Energie-Erwachen",
        description="Du spürst eine neue Energie in dir - deine Transformation hat begonnen!",
        category=AchievementCategory.TRANSFORMATION,
        rarity=AchievementRarity.SILVER,
        badge_icon="⚡",
        criterion=Criterion.TOTAL_SESSIONS,
        target=10,
    ),
    AchievementDefinition(
        id="resilience-builder",
        name="Resilienz-Architekt",
        description="Du baust systematisch deine Widerstandskraft auf - unerschütterlich wie ein Fels!",
        category=AchievementCategory.TRANSFORMATION,
        rarity=AchievementRarity.GOLD,
        badge_icon="🛡️",
        criterion=Criterion.TOTAL_SESSIONS,
        target=50,
    ),
    AchievementDefinition(
        id="mind-body-unity",
        name="Geist-Körper-Einheit",
        description="Übungen aus allen 8 Bereichen in einer Woche - wahre ganzheitliche Integration!",
        category=AchievementCategory.TRANSFORMATION,
        rarity=AchievementRarity.PLATINUM,
        badge_icon="💎",
        criterion=Criterion.ALL_AREAS_WEEK,
        target=len(BodyArea),
    ),
]

ACHIEVEMENTS_BY_ID = {definition.id: definition for definition in ACHIEVEMENTS}


@dataclass
class ProgressFacts:
    """Everything the criteria are evaluated against, read once per check."""
    total_sessions: int = 0
    distinct_exercises: int = 0
    current_streak: int = 0
    area_sessions: Dict[str, int] = field(default_factory=dict)
    exercise_sessions: Dict[str, int] = field(default_factory=dict)
    week_practice_days: int = 0
    week_body_areas: int = 0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "total_sessions": self.total_sessions,
            "current_streak": self.current_streak,
            "body_area_progress": dict(self.area_sessions),
        }


def collect_progress_facts(
    db: Session,
    user_id: str,
    now: Optional[datetime] = None,
    exercise_ids: Optional[Set[str]] = None,
) -> ProgressFacts:
    """
    Read the counters every criterion needs.

    exercise_ids limits the per-exercise counts to the exercises some
    definition actually names.
    """
    now = ensure_utc(now) if now else utcnow()
    if exercise_ids is None:
        exercise_ids = {d.exercise_id for d in ACHIEVEMENTS if d.exercise_id}

    area_rows = (
        filtered_query(db, user_id)
        .with_entities(ProgressEntry.body_area, func.count(ProgressEntry.id))
        .group_by(ProgressEntry.body_area)
        .all()
    )
    area_sessions = {area: int(count) for area, count in area_rows}

    distinct_exercises = (
        filtered_query(db, user_id)
        .with_entities(func.count(func.distinct(ProgressEntry.exercise_id)))
        .scalar()
    )

    exercise_sessions: Dict[str, int] = {}
    if exercise_ids:
        exercise_rows = (
            filtered_query(db, user_id)
            .filter(ProgressEntry.exercise_id.in_(sorted(exercise_ids)))
            .with_entities(ProgressEntry.exercise_id, func.count(ProgressEntry.id))
            .group_by(ProgressEntry.exercise_id)
            .all()
        )
        exercise_sessions = {exercise: int(count) for exercise, count in exercise_rows}

    # Calendar week (Monday start) of the current activity day. The query
    # window is padded a day each side so timezone offsets cannot drop rows.
    today = activity_date(now)
    week_start = today - timedelta(days=today.weekday())
    window = DateRange(start=now - timedelta(days=8), end=now + timedelta(days=1))
    week_days: Set = set()
    week_areas: Counter = Counter()
    for completed_at, body_area in (
        filtered_query(db, user_id, date_range=window)
        .with_entities(ProgressEntry.completed_at, ProgressEntry.body_area)
        .all()
    ):
        day = activity_date(completed_at)
        if week_start <= day <= week_start + timedelta(days=6):
            week_days.add(day)
            week_areas[body_area] += 1

    return ProgressFacts(
        total_sessions=sum(area_sessions.values()),
        distinct_exercises=int(distinct_exercises or 0),
        current_streak=get_current_count(db, user_id, StreakType.DAILY),
        area_sessions=area_sessions,
        exercise_sessions=exercise_sessions,
        week_practice_days=len(week_days),
        week_body_areas=len(week_areas),
    )


def current_progress(definition: AchievementDefinition, facts: ProgressFacts) -> int:
    criterion = definition.criterion
    if criterion == Criterion.TOTAL_SESSIONS:
        return facts.total_sessions
    if criterion == Criterion.DISTINCT_EXERCISES:
        return facts.distinct_exercises
    if criterion == Criterion.STREAK:
        return facts.current_streak
    if criterion == Criterion.AREAS_EXPLORED:
        return len(facts.area_sessions)
    if criterion == Criterion.BODY_AREA_SESSIONS:
        return facts.area_sessions.get(definition.body_area.value, 0)
    if criterion == Criterion.SPECIFIC_EXERCISE:
        return facts.exercise_sessions.get(definition.exercise_id, 0)
    if criterion == Criterion.PERFECT_WEEK:
        return facts.week_practice_days
    if criterion == Criterion.ALL_AREAS_WEEK:
        return facts.week_body_areas
    raise ValueError(f"unknown achievement criterion: {criterion}")


def definition_to_dict(definition: AchievementDefinition) -> Dict[str, Any]:
    return {
        "id": definition.id,
        "name": definition.name,
        "description": definition.description,
        "category": definition.category.value,
        "rarity": definition.rarity.value,
        "badge_icon": definition.badge_icon,
        "points": definition.points,
        "criterion": definition.criterion.value,
        "target": definition.target,
        "body_area": definition.body_area.value if definition.body_area else None,
    }


def achievement_to_dict(row: UserAchievement) -> Dict[str, Any]:
    return {
        "achievement": definition_to_dict(ACHIEVEMENTS_BY_ID[row.achievement_id]),
        "earned_at": ensure_utc(row.earned_at).isoformat(),
        "progress_snapshot": row.progress_snapshot,
    }


def _earned_rows(db: Session, user_id: str) -> Dict[str, UserAchievement]:
    rows = db.query(UserAchievement).filter(UserAchievement.user_id == user_id).all()
    return {row.achievement_id: row for row in rows}


def check_achievements(db: Session, user_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """
    Award every not-yet-earned achievement whose criterion is now met.

    Flushes but does not commit: called inside the completion transaction,
    so awards roll back together with the entry. Returns the new awards.
    """
    user_id = validate_user_id(user_id)
    now = ensure_utc(now) if now else utcnow()

    earned = _earned_rows(db, user_id)
    pending = [d for d in ACHIEVEMENTS if d.id not in earned]
    if not pending:
        return []

    facts = collect_progress_facts(db, user_id, now)
    rows = [
        UserAchievement(
            user_id=user_id,
            achievement_id=definition.id,
            earned_at=now,
            progress_snapshot=facts.snapshot(),
        )
        for definition in pending
        if current_progress(definition, facts) >= definition.target
    ]
    if rows:
        db.add_all(rows)
        db.flush()
        logger.info(f"User {user_id} earned {', '.join(r.achievement_id for r in rows)}")
    return [achievement_to_dict(row) for row in rows]


def get_user_achievements(db: Session, user_id: str) -> List[Dict[str, Any]]:
    """Earned achievements, newest first."""
    user_id = validate_user_id(user_id)
    rows = (
        db.query(UserAchievement)
        .filter(UserAchievement.user_id == user_id)
        .order_by(UserAchievement.earned_at.desc(), UserAchievement.achievement_id)
        .all()
    )
    known = []
    for row in rows:
        if row.achievement_id not in ACHIEVEMENTS_BY_ID:
            logger.warning(f"Skipping retired achievement {row.achievement_id} for user {user_id}")
            continue
        known.append(achievement_to_dict(row))
    return known


def _progress_dict(
    definition: AchievementDefinition,
    facts: ProgressFacts,
    earned: Optional[UserAchievement],
) -> Dict[str, Any]:
    current = current_progress(definition, facts)
    return {
        "achievement": definition_to_dict(definition),
        "current_progress": current,
        "target_progress": definition.target,
        "progress_percentage": min(round(current / definition.target * 100, 1), 100.0),
        # Earned stays earned even when a weekly counter drops back
        "is_completed": earned is not None or current >= definition.target,
        "earned_at": ensure_utc(earned.earned_at).isoformat() if earned else None,
    }


def calculate_progress(
    db: Session,
    user_id: str,
    achievement_id: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    user_id = validate_user_id(user_id)
    definition = ACHIEVEMENTS_BY_ID.get(achievement_id)
    if definition is None:
        raise NotFoundError("Achievement", achievement_id)

    facts = collect_progress_facts(db, user_id, now)
    return _progress_dict(definition, facts, _earned_rows(db, user_id).get(achievement_id))


def get_all_achievements_with_progress(
    db: Session,
    user_id: str,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """The whole catalogue with this user's progress, by category then points."""
    user_id = validate_user_id(user_id)
    facts = collect_progress_facts(db, user_id, now)
    earned = _earned_rows(db, user_id)

    category_order = {category: idx for idx, category in enumerate(AchievementCategory)}
    ordered = sorted(ACHIEVEMENTS, key=lambda d: (category_order[d.category], d.points, d.target))
    return [_progress_dict(d, facts, earned.get(d.id)) for d in ordered]
