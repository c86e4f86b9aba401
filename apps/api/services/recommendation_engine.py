"""
Recommendation Engine

Priority-ranked suggestions computed on demand from the trailing ledger
window. Nothing here is persisted.

Rules (thresholds in AnalyticsThresholds):
- neglected area: no session in the window          -> priority 8, at most 2
- progression: most practiced area, >= 5 sessions   -> priority 7
- comeback: >= 3 days since the most recent session -> priority 9
- recovery: >= 6 sessions in the last 3 days        -> priority 6
"""
import logging
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from core.clock import ensure_utc, utcnow
from models import BODY_AREA_NAMES, BodyArea, ProgressEntry
from services.analytics_thresholds import AnalyticsThresholds, DEFAULT_THRESHOLDS
from services.progress_ledger import DateRange, latest_entry, query_entries, validate_user_id

logger = logging.getLogger(__name__)


@dataclass
class Recommendation:
    id: str
    type: str  # exercise | schedule | progression | recovery
    title: str
    description: str
    priority: int
    reasoning: str
    estimated_benefit: str
    body_area: Optional[str] = None


def _neglected_areas(counts: Counter, thresholds: AnalyticsThresholds) -> List[Recommendation]:
    neglected = [area for area in BodyArea if counts.get(area.value, 0) == 0]
    recs = []
    for area in neglected[: thresholds.neglected_area_limit]:
        name = BODY_AREA_NAMES[area]
        recs.append(Recommendation(
            id=f"neglected_{area.value}",
            type="exercise",
            title=f"Erkunde {name}",
            description=(
                f"Du hast in den letzten {thresholds.recommendation_window_days} Tagen keine "
                f"{name}-Übungen gemacht. Zeit, diesen wichtigen Bereich zu erkunden!"
            ),
            body_area=area.value,
            priority=thresholds.neglected_area_priority,
            reasoning="Basierend auf deiner aktuellen Aktivität fehlt dir die Balance in diesem Körperbereich.",
            estimated_benefit="Ganzheitliche Körperoptimierung durch ausgewogene Praxis aller Bereiche.",
        ))
    return recs


def _progression(counts: Counter, thresholds: AnalyticsThresholds) -> Optional[Recommendation]:
    practiced = [area for area in BodyArea if counts.get(area.value, 0) > 0]
    if not practiced:
        return None
    # max() keeps the first maximum, so ties go to the earlier body area
    top = max(practiced, key=lambda area: counts[area.value])
    sessions = counts[top.value]
    if sessions < thresholds.progression_min_sessions:
        return None

    name = BODY_AREA_NAMES[top]
    return Recommendation(
        id=f"progression_{top.value}",
        type="progression",
        title=f"Steigere dich in {name}",
        description=f"Du zeigst großes Engagement in {name}. Zeit für fortgeschrittene Techniken!",
        body_area=top.value,
        priority=thresholds.progression_priority,
        reasoning=f"Du hast {sessions} Übungen in diesem Bereich absolviert - bereit für die nächste Stufe.",
        estimated_benefit="Tiefere Wirkung und neue Herausforderungen für kontinuierliches Wachstum.",
    )


def _comeback(
    last_completed_at: Optional[datetime],
    now: datetime,
    thresholds: AnalyticsThresholds,
) -> Optional[Recommendation]:
    if last_completed_at is None:
        return None
    days_since = (now - ensure_utc(last_completed_at)) // timedelta(days=1)
    if days_since < thresholds.comeback_after_days:
        return None

    return Recommendation(
        id="schedule_comeback",
        type="schedule",
        title="Zeit für ein Comeback",
        description=(
            f"Es sind {days_since} Tage seit deiner letzten Übung vergangen. "
            "Ein sanfter Wiedereinstieg wird dir gut tun."
        ),
        priority=thresholds.comeback_priority,
        reasoning="Längere Pausen können den Momentum unterbrechen.",
        estimated_benefit="Wiederaufbau der Routine und Erhaltung der bisherigen Fortschritte.",
    )


def _recovery(
    recent: Sequence[ProgressEntry],
    now: datetime,
    thresholds: AnalyticsThresholds,
) -> Optional[Recommendation]:
    cutoff = now - timedelta(days=thresholds.recovery_window_days)
    last_days = [e for e in recent if ensure_utc(e.completed_at) >= cutoff]
    if len(last_days) < thresholds.recovery_min_sessions:
        return None

    return Recommendation(
        id="recovery",
        type="recovery",
        title="Gönn dir eine Pause",
        description=(
            "Du warst sehr aktiv in den letzten Tagen. Eine Erholungspause oder "
            "sanfte Übungen können jetzt optimal sein."
        ),
        priority=thresholds.recovery_priority,
        reasoning="Hohe Aktivität in kurzer Zeit kann zu Überanstrengung führen.",
        estimated_benefit="Bessere Regeneration und nachhaltige Praxis ohne Burnout.",
    )


def build_recommendations(
    recent: Sequence[ProgressEntry],
    last_completed_at: Optional[datetime],
    now: datetime,
    thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS,
) -> List[Recommendation]:
    """
    Pure rule evaluation over the trailing window.

    `last_completed_at` is the user's most recent completion anywhere in the
    ledger (None for a user without history).
    """
    now = ensure_utc(now)
    counts = Counter(e.body_area for e in recent)

    recs: List[Recommendation] = []
    recs.extend(_neglected_areas(counts, thresholds))
    for rule in (
        _progression(counts, thresholds),
        _comeback(last_completed_at, now, thresholds),
        _recovery(recent, now, thresholds),
    ):
        if rule is not None:
            recs.append(rule)

    # sorted() is stable: equal priorities keep generation order
    return sorted(recs, key=lambda r: r.priority, reverse=True)


def get_recommendations(
    db: Session,
    user_id: str,
    now: Optional[datetime] = None,
    thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS,
) -> List[Dict[str, Any]]:
    user_id = validate_user_id(user_id)
    now = ensure_utc(now) if now else utcnow()

    window = DateRange.trailing_days(thresholds.recommendation_window_days, now)
    recent = query_entries(db, user_id, date_range=window)
    latest = latest_entry(db, user_id)

    recs = build_recommendations(recent, latest.completed_at if latest else None, now, thresholds)
    logger.debug(f"{len(recs)} recommendations for user {user_id}")
    return [asdict(r) for r in recs]
