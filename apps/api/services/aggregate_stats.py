"""
Aggregate Computer

Cache-aside statistics over the progress ledger:

    key = deterministic(user, params)
    hit  -> return cached value
    miss -> aggregate from the ledger, store under the tier TTL, return

The compute_* functions read only the ledger (and streak table) and are
what the background recompute tasks call to warm the cache. All results
are JSON-native dicts so a cached value and a fresh one are identical.
"""
import logging
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy import and_, desc, func, or_
from sqlalchemy.orm import Session

from core.cache import CacheKeys, CacheLayer, CacheTTL, cache_key
from core.clock import activity_date, ensure_utc, utcnow
from core.exceptions import ValidationError
from models import BodyArea, ProgressEntry, StreakType
from services.analytics_thresholds import AnalyticsThresholds, DEFAULT_THRESHOLDS
from services.progress_ledger import (
    DateRange,
    entry_to_dict,
    filtered_query,
    parse_body_area,
    validate_user_id,
)
from services.streak_tracker import get_streak_row, get_streaks

logger = logging.getLogger(__name__)

_AREA_ORDER = {area.value: idx for idx, area in enumerate(BodyArea)}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value else None


# ---------------------------------------------------------------------------
# Ledger computations
# ---------------------------------------------------------------------------

def compute_user_stats(
    db: Session,
    user_id: str,
    date_range: Optional[DateRange] = None,
    thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS,
) -> Dict[str, Any]:
    """Totals, body-area breakdown and most frequent exercises."""
    base = filtered_query(db, user_id, date_range=date_range)

    total_sessions, total_minutes, avg_duration = base.with_entities(
        func.count(ProgressEntry.id),
        func.coalesce(func.sum(ProgressEntry.duration_minutes), 0),
        func.avg(ProgressEntry.duration_minutes),
    ).one()

    area_rows = (
        base.with_entities(
            ProgressEntry.body_area,
            func.count(ProgressEntry.id),
            func.coalesce(func.sum(ProgressEntry.duration_minutes), 0),
        )
        .group_by(ProgressEntry.body_area)
        .all()
    )
    breakdown = sorted(
        (
            {"body_area": area, "sessions": int(sessions), "total_minutes": int(minutes)}
            for area, sessions, minutes in area_rows
        ),
        key=lambda row: (-row["sessions"], _AREA_ORDER.get(row["body_area"], len(_AREA_ORDER))),
    )

    session_count = func.count(ProgressEntry.id).label("sessions")
    last_completed = func.max(ProgressEntry.completed_at).label("last_completed_at")
    top_rows = (
        base.with_entities(ProgressEntry.exercise_id, session_count, last_completed)
        .group_by(ProgressEntry.exercise_id)
        .order_by(desc(session_count), desc(last_completed), ProgressEntry.exercise_id)
        .limit(thresholds.top_exercise_count)
        .all()
    )

    return {
        "total_sessions": int(total_sessions or 0),
        "total_minutes": int(total_minutes or 0),
        "average_session_duration": round(float(avg_duration), 1) if avg_duration is not None else 0.0,
        "body_area_breakdown": breakdown,
        "top_exercises": [
            {
                "exercise_id": exercise_id,
                "sessions": int(sessions),
                "last_completed_at": _iso(_as_datetime(last)),
            }
            for exercise_id, sessions, last in top_rows
        ],
        "calculated_at": utcnow().isoformat(),
    }


def _as_datetime(value: Union[datetime, str, None]) -> Optional[datetime]:
    # Aggregates over DateTime columns come back as strings on some dialects.
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def mastery_level(total_sessions: int, thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS) -> str:
    if total_sessions >= thresholds.mastery_expert_sessions:
        return "expert"
    if total_sessions >= thresholds.mastery_advanced_sessions:
        return "advanced"
    if total_sessions >= thresholds.mastery_intermediate_sessions:
        return "intermediate"
    return "beginner"


def compute_body_area_stats(
    db: Session,
    user_id: str,
    body_area: Optional[Union[str, BodyArea]] = None,
    now: Optional[datetime] = None,
    thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS,
) -> List[Dict[str, Any]]:
    """
    Per-area stats. One item for a given area, all eight areas otherwise
    (unpracticed areas report zeros).
    """
    area = parse_body_area(body_area)
    areas = [area] if area else list(BodyArea)
    now = ensure_utc(now) if now else utcnow()
    base = filtered_query(db, user_id, body_area=area)

    totals = {
        row[0]: row[1:]
        for row in base.with_entities(
            ProgressEntry.body_area,
            func.count(ProgressEntry.id),
            func.coalesce(func.sum(ProgressEntry.duration_minutes), 0),
            func.avg(ProgressEntry.duration_minutes),
            func.max(ProgressEntry.completed_at),
        )
        .group_by(ProgressEntry.body_area)
        .all()
    }

    exercise_count = func.count(ProgressEntry.id).label("sessions")
    exercise_last = func.max(ProgressEntry.completed_at).label("last")
    favorites: Dict[str, List[str]] = {}
    for area_value, exercise_id, _, _ in (
        base.with_entities(ProgressEntry.body_area, ProgressEntry.exercise_id, exercise_count, exercise_last)
        .group_by(ProgressEntry.body_area, ProgressEntry.exercise_id)
        .order_by(ProgressEntry.body_area, desc(exercise_count), desc(exercise_last), ProgressEntry.exercise_id)
        .all()
    ):
        bucket = favorites.setdefault(area_value, [])
        if len(bucket) < thresholds.favorite_exercise_count:
            bucket.append(exercise_id)

    window = DateRange.trailing_days(thresholds.consistency_window_days, now)
    active_days: Dict[str, set] = {}
    for area_value, completed_at in (
        filtered_query(db, user_id, body_area=area, date_range=window)
        .with_entities(ProgressEntry.body_area, ProgressEntry.completed_at)
        .all()
    ):
        active_days.setdefault(area_value, set()).add(activity_date(completed_at))

    results = []
    for item in areas:
        sessions, minutes, avg_duration, last = totals.get(item.value, (0, 0, None, None))
        results.append({
            "body_area": item.value,
            "total_sessions": int(sessions),
            "total_minutes": int(minutes or 0),
            "average_session_duration": round(float(avg_duration), 1) if avg_duration is not None else 0.0,
            "last_practiced": _iso(_as_datetime(last)),
            "favorite_exercises": favorites.get(item.value, []),
            "consistency_score": round(
                len(active_days.get(item.value, ())) / thresholds.consistency_window_days, 3
            ),
            "mastery_level": mastery_level(int(sessions), thresholds),
        })
    return results


def compute_milestones(db: Session, user_id: str) -> Dict[str, Any]:
    """Achievement-adjacent counts."""
    total_sessions, total_minutes, distinct_exercises, distinct_areas = (
        filtered_query(db, user_id)
        .with_entities(
            func.count(ProgressEntry.id),
            func.coalesce(func.sum(ProgressEntry.duration_minutes), 0),
            func.count(func.distinct(ProgressEntry.exercise_id)),
            func.count(func.distinct(ProgressEntry.body_area)),
        )
        .one()
    )
    daily = get_streak_row(db, user_id, StreakType.DAILY)
    return {
        "total_sessions": int(total_sessions or 0),
        "total_minutes": int(total_minutes or 0),
        "distinct_exercises": int(distinct_exercises or 0),
        "body_areas_explored": int(distinct_areas or 0),
        "current_daily_streak": daily.current_count if daily else 0,
        "best_daily_streak": daily.best_count if daily else 0,
    }


def _encode_cursor(entry: ProgressEntry) -> str:
    return f"{ensure_utc(entry.completed_at).isoformat()}|{entry.id}"


def _decode_cursor(cursor: str) -> Tuple[datetime, UUID]:
    try:
        completed_at, entry_id = cursor.split("|", 1)
        return ensure_utc(datetime.fromisoformat(completed_at)), UUID(entry_id)
    except ValueError:
        raise ValidationError(f"invalid cursor: {cursor}", field="cursor")


def compute_progress_history(
    db: Session,
    user_id: str,
    cursor: Optional[str] = None,
    limit: int = 20,
    body_area: Optional[Union[str, BodyArea]] = None,
) -> Dict[str, Any]:
    """Keyset pagination over (completed_at, id), newest first."""
    if limit < 1 or limit > 100:
        raise ValidationError("limit must be between 1 and 100", field="limit")

    query = filtered_query(db, user_id, body_area=body_area)
    if cursor:
        cursor_at, cursor_id = _decode_cursor(cursor)
        query = query.filter(
            or_(
                ProgressEntry.completed_at < cursor_at,
                and_(ProgressEntry.completed_at == cursor_at, ProgressEntry.id < cursor_id),
            )
        )
    rows = (
        query.order_by(desc(ProgressEntry.completed_at), desc(ProgressEntry.id))
        .limit(limit + 1)
        .all()
    )

    has_more = len(rows) > limit
    items = rows[:limit]
    return {
        "items": [entry_to_dict(entry) for entry in items],
        "next_cursor": _encode_cursor(items[-1]) if has_more else None,
        "has_more": has_more,
    }


def _trend_period(days: int) -> str:
    if days <= 7:
        return "week"
    if days <= 31:
        return "month"
    if days <= 90:
        return "quarter"
    return "year"


def check_trend_span(start_day: date, end_day: date, thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS) -> None:
    span = (end_day - start_day).days
    if span > thresholds.trend_max_days:
        raise ValidationError(
            f"trend range spans {span} days, at most {thresholds.trend_max_days} allowed",
            field="date_range",
        )


def compute_progress_trends(
    db: Session,
    user_id: str,
    date_range: Optional[DateRange] = None,
    now: Optional[datetime] = None,
    thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS,
) -> Dict[str, Any]:
    """Daily session counts over the range and the direction between its halves."""
    date_range = date_range or DateRange.trailing_days(thresholds.trend_default_days, now)
    start_day = activity_date(date_range.start)
    end_day = activity_date(date_range.end)
    check_trend_span(start_day, end_day, thresholds)

    per_day = Counter(
        activity_date(completed_at)
        for (completed_at,) in filtered_query(db, user_id, date_range=date_range)
        .with_entities(ProgressEntry.completed_at)
        .all()
    )

    data_points = []
    day = start_day
    while day <= end_day:
        data_points.append({
            "date": day.isoformat(),
            "value": per_day.get(day, 0),
            "is_weekend": day.weekday() >= 5,
        })
        day += timedelta(days=1)

    half = len(data_points) // 2
    first_half, second_half = data_points[:half], data_points[half:]
    first_avg = sum(p["value"] for p in first_half) / len(first_half) if first_half else 0.0
    second_avg = sum(p["value"] for p in second_half) / len(second_half) if second_half else 0.0

    trend = "stable"
    change = 0.0
    if first_avg > 0:
        change = (second_avg - first_avg) / first_avg * 100
        if change > thresholds.trend_change_percent:
            trend = "increasing"
        elif change < -thresholds.trend_change_percent:
            trend = "decreasing"

    return {
        "period": _trend_period((end_day - start_day).days),
        "data_points": data_points,
        "trend": trend,
        "change_percentage": int(round(change)),
    }


# ---------------------------------------------------------------------------
# Cache-aside reads
# ---------------------------------------------------------------------------

class AggregateComputer:
    """Cache-aside front for the ledger computations above."""

    def __init__(self, cache: CacheLayer, thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS):
        self.cache = cache
        self.thresholds = thresholds

    def _get_or_compute(self, key: str, ttl: CacheTTL, compute: Callable[[], Any]) -> Any:
        cached_value = self.cache.get(key)
        if cached_value is not None:
            logger.debug(f"Cache hit: {key}")
            return cached_value

        logger.debug(f"Cache miss: {key}")
        result = compute()
        self.cache.set(key, result, ttl)
        return result

    def get_user_stats(self, db: Session, user_id: str, date_range: Optional[DateRange] = None) -> Dict[str, Any]:
        user_id = validate_user_id(user_id)
        key = cache_key(CacheKeys.USER_STATS, user_id, date_range.token() if date_range else "all")
        return self._get_or_compute(
            key, CacheTTL.MEDIUM, lambda: compute_user_stats(db, user_id, date_range, self.thresholds)
        )

    def get_body_area_stats(
        self,
        db: Session,
        user_id: str,
        body_area: Optional[Union[str, BodyArea]] = None,
    ) -> List[Dict[str, Any]]:
        user_id = validate_user_id(user_id)
        area = parse_body_area(body_area)
        key = cache_key(CacheKeys.BODY_AREA_STATS, user_id, area.value if area else "all")
        return self._get_or_compute(
            key, CacheTTL.LONG, lambda: compute_body_area_stats(db, user_id, area, thresholds=self.thresholds)
        )

    def get_streak_data(self, db: Session, user_id: str) -> List[Dict[str, Any]]:
        user_id = validate_user_id(user_id)
        return self._get_or_compute(
            cache_key(CacheKeys.STREAKS, user_id), CacheTTL.MEDIUM, lambda: get_streaks(db, user_id)
        )

    def get_milestones(self, db: Session, user_id: str) -> Dict[str, Any]:
        user_id = validate_user_id(user_id)
        return self._get_or_compute(
            cache_key(CacheKeys.MILESTONES, user_id), CacheTTL.LONG, lambda: compute_milestones(db, user_id)
        )

    def get_progress_history(
        self,
        db: Session,
        user_id: str,
        cursor: Optional[str] = None,
        limit: int = 20,
        body_area: Optional[Union[str, BodyArea]] = None,
    ) -> Dict[str, Any]:
        user_id = validate_user_id(user_id)
        area = parse_body_area(body_area)
        key = cache_key(
            CacheKeys.PROGRESS_HISTORY, user_id, cursor or "start", limit, area.value if area else "all"
        )
        return self._get_or_compute(
            key, CacheTTL.SHORT, lambda: compute_progress_history(db, user_id, cursor, limit, area)
        )

    def get_progress_trends(
        self,
        db: Session,
        user_id: str,
        date_range: Optional[DateRange] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        user_id = validate_user_id(user_id)
        date_range = date_range or DateRange.trailing_days(self.thresholds.trend_default_days, now)
        check_trend_span(activity_date(date_range.start), activity_date(date_range.end), self.thresholds)
        # Day granularity so repeated reads within a day share one entry
        token = f"{activity_date(date_range.start).isoformat()}_{activity_date(date_range.end).isoformat()}"
        return self._get_or_compute(
            cache_key(CacheKeys.TRENDS, user_id, token),
            CacheTTL.LONG,
            lambda: compute_progress_trends(db, user_id, date_range, thresholds=self.thresholds),
        )
