"""
Insight Engine

Heuristic analyzers over a user's recent ledger window and daily streak.
Each analyzer is a pure function returning an InsightDraft or None ("not
applicable" is a normal outcome, never an exception).

generate_insights() runs every analyzer in its own failure domain: one
analyzer raising is logged and the others still produce and persist their
insights.

Copy is German, matching the product.
"""
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from core.clock import activity_date, ensure_utc, local_datetime, utcnow
from core.exceptions import ValidationError
from models import BODY_AREA_NAMES, BodyArea, DifficultyLevel, InsightType, ProgressEntry, StreakType, UserInsight
from services.analytics_thresholds import AnalyticsThresholds, DEFAULT_THRESHOLDS
from services.progress_ledger import DateRange, query_entries, validate_user_id
from services.streak_tracker import get_current_count

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ["Montag", "Dienstag", "Mittwoch", "Donnerstag", "Freitag", "Samstag", "Sonntag"]


@dataclass
class InsightDraft:
    """An analyzer result before it is persisted."""
    insight_type: InsightType
    title: str
    message: str
    priority: str  # low | medium | high
    action_items: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)

    def content(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "action_items": list(self.action_items),
            "priority": self.priority,
            "data": dict(self.data),
        }


def _area_name(area: str) -> str:
    try:
        return BODY_AREA_NAMES[BodyArea(area)]
    except ValueError:
        return area


def time_of_day_label(mean_hour: float, thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS) -> str:
    if mean_hour < thresholds.morning_before_hour:
        return "Morgen"
    if mean_hour > thresholds.evening_after_hour:
        return "Abend"
    return "Mittag"


# ---------------------------------------------------------------------------
# Analyzers
# ---------------------------------------------------------------------------

def analyze_patterns(
    recent: Sequence[ProgressEntry],
    thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS,
) -> Optional[InsightDraft]:
    """Preferred time of day and most active weekday."""
    if len(recent) < thresholds.pattern_min_entries:
        return None

    local_times = [local_datetime(e.completed_at) for e in recent]
    mean_hour = sum(t.hour for t in local_times) / len(local_times)
    time_of_day = time_of_day_label(mean_hour, thresholds)

    weekday_counts = Counter(t.weekday() for t in local_times)
    # Highest count wins; ties go to the earliest weekday (Monday = 0)
    most_active_day = min(weekday_counts, key=lambda day: (-weekday_counts[day], day))
    day_name = WEEKDAY_NAMES[most_active_day]

    return InsightDraft(
        insight_type=InsightType.PATTERN_ANALYSIS,
        title="Deine Übungsmuster",
        message=(
            f"Du übst am liebsten am {time_of_day} und bist besonders aktiv am {day_name}. "
            "Diese Konsistenz ist ein Zeichen für eine gesunde Routine!"
        ),
        action_items=[
            f"Nutze deine produktivste Zeit am {time_of_day} für anspruchsvollere Übungen",
            f"Plane deine Woche um deinen aktivsten Tag ({day_name}) herum",
        ],
        priority="medium",
        data={
            "average_practice_hour": round(mean_hour),
            "time_of_day": time_of_day,
            "most_active_day": most_active_day,
            "total_sessions": len(recent),
        },
    )


def detect_plateau(
    recent: Sequence[ProgressEntry],
    thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS,
) -> Optional[InsightDraft]:
    """Every recent session at the same difficulty."""
    if len(recent) < thresholds.plateau_min_entries:
        return None

    levels = {e.difficulty_level for e in recent}
    if len(levels) != 1:
        return None

    current = DifficultyLevel(levels.pop())
    suggested = current.next_level()
    return InsightDraft(
        insight_type=InsightType.PLATEAU_DETECTION,
        title="Zeit für neue Herausforderungen",
        message=(
            f"Du übst seit {len(recent)} Sessions auf {current.value}-Niveau. "
            "Dein Körper ist bereit für den nächsten Schritt!"
        ),
        action_items=[
            "Probiere Übungen der nächsthöheren Schwierigkeitsstufe",
            "Verlängere die Dauer deiner aktuellen Übungen",
            "Kombiniere mehrere Übungen in einer Session",
        ],
        priority="high",
        data={
            "current_level": current.value,
            "sessions_at_level": len(recent),
            "suggested_progression": suggested.value,
        },
    )


def motivation_insight(
    recent: Sequence[ProgressEntry],
    daily_streak: int,
    thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS,
    today: Optional[date] = None,
) -> Optional[InsightDraft]:
    """
    Encouragement while the daily streak is short or missing.

    A user with nothing in the window before today (including one whose
    very first session was today) gets the new-user framing.
    """
    if daily_streak >= thresholds.motivation_streak_below:
        return None

    if today is None:
        today = activity_date(utcnow())
    earlier = [e for e in recent if activity_date(e.completed_at) < today]
    new_user = not earlier

    if new_user:
        message = "Ein neuer Tag, eine neue Chance! Starte heute deine Wellness-Reise."
    else:
        message = (
            f"Du bist auf einem guten Weg! {len(recent)} Sessions in den letzten "
            f"{thresholds.insight_window_days} Tagen zeigen dein Engagement."
        )

    return InsightDraft(
        insight_type=InsightType.MOTIVATION,
        title="Baue deine Streak auf",
        message=message,
        action_items=[
            f"Setze dir das Ziel, {thresholds.motivation_streak_below} Tage in Folge zu üben",
            "Wähle eine einfache 5-Minuten Übung für schwierige Tage",
            "Feiere jeden kleinen Erfolg auf deinem Weg",
        ],
        priority="medium",
        data={
            "current_streak": daily_streak,
            "recent_sessions": len(recent),
            "new_user": new_user,
        },
    )


def optimization_insight(
    lifetime: Sequence[ProgressEntry],
    thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS,
) -> Optional[InsightDraft]:
    """The body area with the longest average sessions is the user's strength."""
    if len(lifetime) < thresholds.optimization_min_lifetime_entries:
        return None

    minutes: Dict[str, int] = defaultdict(int)
    sessions: Dict[str, int] = defaultdict(int)
    for e in lifetime:
        minutes[e.body_area] += e.duration_minutes or 0
        sessions[e.body_area] += 1

    order = {area.value: idx for idx, area in enumerate(BodyArea)}
    qualified = [
        (area, minutes[area] / count, count)
        for area, count in sessions.items()
        if count >= thresholds.optimization_min_area_sessions
    ]
    if not qualified:
        return None

    top_area, avg_duration, count = min(qualified, key=lambda q: (-q[1], order.get(q[0], len(order))))
    name = _area_name(top_area)
    return InsightDraft(
        insight_type=InsightType.OPTIMIZATION,
        title="Deine Stärke entdeckt",
        message=(
            f"{name} scheint besonders gut zu dir zu passen - du übst hier durchschnittlich "
            f"{round(avg_duration)} Minuten pro Session."
        ),
        action_items=[
            f"Nutze {name} als Anker für schwierige Tage",
            "Erkunde verwandte Techniken in diesem Bereich",
            "Teile deine Erfahrungen mit anderen Praktizierenden",
        ],
        priority="low",
        data={
            "top_body_area": top_area,
            "avg_duration": round(avg_duration),
            "total_sessions": count,
        },
    )


# ---------------------------------------------------------------------------
# Generation and persistence
# ---------------------------------------------------------------------------

def run_analyzers(
    analyzers: Sequence[Tuple[str, Callable[[], Optional[InsightDraft]]]],
    user_id: str,
) -> List[InsightDraft]:
    """Run each analyzer in isolation; a failing analyzer yields nothing."""
    drafts: List[InsightDraft] = []
    for name, analyzer in analyzers:
        try:
            draft = analyzer()
        except Exception:
            logger.exception(f"Insight analyzer '{name}' failed for user {user_id}")
            continue
        if draft is not None:
            drafts.append(draft)
    return drafts


def insight_to_dict(insight: UserInsight) -> Dict[str, Any]:
    return {
        "id": str(insight.id),
        "user_id": insight.user_id,
        "insight_type": insight.insight_type,
        "content": insight.content,
        "generated_at": ensure_utc(insight.generated_at).isoformat(),
        "viewed_at": ensure_utc(insight.viewed_at).isoformat() if insight.viewed_at else None,
    }


def generate_insights(
    db: Session,
    user_id: str,
    now: Optional[datetime] = None,
    thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS,
) -> List[Dict[str, Any]]:
    """
    Analyze the user's history, persist every applicable insight and
    return them. Reading the ledger or writing insights may raise; analyzer
    failures do not.
    """
    user_id = validate_user_id(user_id)
    now = ensure_utc(now) if now else utcnow()

    window = DateRange.trailing_days(thresholds.insight_window_days, now)
    recent = query_entries(db, user_id, date_range=window)
    daily_count = get_current_count(db, user_id, StreakType.DAILY)

    drafts = run_analyzers(
        [
            ("pattern_analysis", lambda: analyze_patterns(recent, thresholds)),
            ("plateau_detection", lambda: detect_plateau(recent, thresholds)),
            ("motivation", lambda: motivation_insight(recent, daily_count, thresholds, today=activity_date(now))),
            ("optimization", lambda: optimization_insight(query_entries(db, user_id), thresholds)),
        ],
        user_id,
    )

    rows = [
        UserInsight(
            user_id=user_id,
            insight_type=draft.insight_type.value,
            content=draft.content(),
            generated_at=now,
        )
        for draft in drafts
    ]
    db.add_all(rows)
    db.commit()

    logger.info(f"Generated {len(rows)} insights for user {user_id}")
    return [insight_to_dict(row) for row in rows]


def get_unviewed_insights(db: Session, user_id: str) -> List[Dict[str, Any]]:
    user_id = validate_user_id(user_id)
    rows = (
        db.query(UserInsight)
        .filter(UserInsight.user_id == user_id, UserInsight.viewed_at.is_(None))
        .order_by(UserInsight.generated_at.desc())
        .all()
    )
    return [insight_to_dict(row) for row in rows]


def _parse_insight_ids(insight_ids: Sequence[str]) -> List[UUID]:
    parsed = []
    for raw in insight_ids:
        try:
            parsed.append(raw if isinstance(raw, UUID) else UUID(str(raw)))
        except ValueError:
            raise ValidationError(f"invalid insight id: {raw}", field="insight_ids")
    return parsed


def mark_insights_as_viewed(
    db: Session,
    user_id: str,
    insight_ids: Sequence[str],
    now: Optional[datetime] = None,
) -> int:
    """Stamp viewed_at on the user's own unviewed insights. Returns rows updated."""
    user_id = validate_user_id(user_id)
    ids = _parse_insight_ids(insight_ids)
    if not ids:
        return 0

    updated = (
        db.query(UserInsight)
        .filter(
            UserInsight.user_id == user_id,
            UserInsight.id.in_(ids),
            UserInsight.viewed_at.is_(None),
        )
        .update({UserInsight.viewed_at: ensure_utc(now) if now else utcnow()}, synchronize_session=False)
    )
    db.commit()
    return updated
