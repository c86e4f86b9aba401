"""
Streak Tracker

Per-user, per-type streak state machine driven by ledger writes.

A daily streak counts consecutive calendar days with at least one
completion; a weekly streak counts consecutive ISO weeks. Both follow the
same transition over "periods" (a day, or the Monday starting a week):

    no record            -> current 1, best 1
    same period          -> unchanged (repeat sessions never double-count)
    next period          -> current + 1, best = max(best, current)
    later period (gap)   -> current 1, best kept
    earlier period       -> backfill, handled by STREAK_BACKFILL_POLICY

Streaks are never decremented.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from core.clock import activity_date, utcnow
from core.config import settings
from core.exceptions import ValidationError
from models import StreakType, UserStreak

logger = logging.getLogger(__name__)

BACKFILL_IGNORE = "ignore"
BACKFILL_REJECT = "reject"


class StreakOutcome(str, Enum):
    STARTED = "started"
    UNCHANGED = "unchanged"
    EXTENDED = "extended"
    RESET = "reset"
    BACKFILL = "backfill"


@dataclass(frozen=True)
class StreakSnapshot:
    current_count: int
    best_count: int
    last_activity_date: Optional[date]
    started_at: Optional[date]


def period_start(day: date, streak_type: StreakType) -> date:
    if streak_type == StreakType.WEEKLY:
        return day - timedelta(days=day.weekday())
    return day


def period_step_days(streak_type: StreakType) -> int:
    return 7 if streak_type == StreakType.WEEKLY else 1


def advance_streak(
    state: Optional[StreakSnapshot],
    period: date,
    step_days: int = 1,
) -> Tuple[StreakSnapshot, StreakOutcome]:
    """
    Pure streak transition for an activity in `period`.

    Returns the new snapshot and what happened. On BACKFILL the state is
    returned unchanged; deciding whether that is acceptable is the caller's
    policy.
    """
    if state is None or state.last_activity_date is None or state.current_count == 0:
        best = state.best_count if state is not None else 0
        return StreakSnapshot(1, max(best, 1), period, period), StreakOutcome.STARTED

    gap = (period - state.last_activity_date).days
    if gap == 0:
        return state, StreakOutcome.UNCHANGED
    if gap < 0:
        return state, StreakOutcome.BACKFILL
    if gap == step_days:
        current = state.current_count + 1
        return (
            StreakSnapshot(current, max(state.best_count, current), period, state.started_at),
            StreakOutcome.EXTENDED,
        )
    return StreakSnapshot(1, state.best_count, period, period), StreakOutcome.RESET


def _snapshot(row: Optional[UserStreak]) -> Optional[StreakSnapshot]:
    if row is None:
        return None
    return StreakSnapshot(
        current_count=row.current_count or 0,
        best_count=row.best_count or 0,
        last_activity_date=row.last_activity_date,
        started_at=row.started_at,
    )


def _load_for_update(db: Session, user_id: str, streak_type: StreakType) -> Optional[UserStreak]:
    return (
        db.query(UserStreak)
        .filter(UserStreak.user_id == user_id, UserStreak.streak_type == streak_type.value)
        .with_for_update()
        .first()
    )


def apply_completion(
    db: Session,
    user_id: str,
    completed_at: datetime,
    backfill_policy: Optional[str] = None,
) -> Dict[StreakType, StreakOutcome]:
    """
    Read-modify-write every streak type for one completion.

    Must run inside the per-user write lock and in the same transaction as
    the ledger append. Does not commit.

    Raises:
        ValidationError: a backfilled completion under the "reject" policy.
    """
    policy = backfill_policy or settings.STREAK_BACKFILL_POLICY
    day = activity_date(completed_at)
    outcomes: Dict[StreakType, StreakOutcome] = {}

    for streak_type in StreakType:
        row = _load_for_update(db, user_id, streak_type)
        new_state, outcome = advance_streak(
            _snapshot(row),
            period_start(day, streak_type),
            period_step_days(streak_type),
        )
        outcomes[streak_type] = outcome

        if outcome == StreakOutcome.BACKFILL:
            if policy == BACKFILL_REJECT:
                raise ValidationError(
                    f"completion on {day} predates the last {streak_type.value} activity "
                    f"({row.last_activity_date})",
                    field="completed_at",
                )
            logger.info(f"Backfilled completion for {user_id} on {day} ignored for {streak_type.value} streak")
            continue
        if outcome == StreakOutcome.UNCHANGED:
            continue

        if row is None:
            row = UserStreak(user_id=user_id, streak_type=streak_type.value)
            db.add(row)
        row.current_count = new_state.current_count
        row.best_count = new_state.best_count
        row.last_activity_date = new_state.last_activity_date
        row.started_at = new_state.started_at

    db.flush()
    return outcomes


def is_streak_active(row: UserStreak, today: date) -> bool:
    """Active while the next period can still extend it."""
    if not row.last_activity_date or not row.current_count:
        return False
    streak_type = StreakType(row.streak_type)
    current_period = period_start(today, streak_type)
    gap = (current_period - row.last_activity_date).days
    return gap <= period_step_days(streak_type)


def get_streaks(db: Session, user_id: str, today: Optional[date] = None) -> List[Dict]:
    """All streaks for a user as plain dicts (JSON-safe for caching)."""
    today = today or activity_date(utcnow())
    rows = (
        db.query(UserStreak)
        .filter(UserStreak.user_id == user_id)
        .order_by(UserStreak.current_count.desc(), UserStreak.streak_type)
        .all()
    )
    return [
        {
            "streak_type": row.streak_type,
            "current_count": row.current_count,
            "best_count": row.best_count,
            "last_activity_date": row.last_activity_date.isoformat() if row.last_activity_date else None,
            "started_at": row.started_at.isoformat() if row.started_at else None,
            "is_active": is_streak_active(row, today),
        }
        for row in rows
    ]


def get_streak_row(db: Session, user_id: str, streak_type: StreakType = StreakType.DAILY) -> Optional[UserStreak]:
    return (
        db.query(UserStreak)
        .filter(UserStreak.user_id == user_id, UserStreak.streak_type == streak_type.value)
        .first()
    )


def get_current_count(db: Session, user_id: str, streak_type: StreakType = StreakType.DAILY) -> int:
    row = get_streak_row(db, user_id, streak_type)
    return row.current_count if row else 0
