"""
Progress Ledger

Append-only store of completed exercise sessions; the source of truth for
every streak, aggregate and insight.

The ledger knows nothing about caches or background jobs. Callers that need
cache invalidation (see services.progress_engine) run it after the write
has committed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from core.clock import ensure_utc, utcnow
from core.exceptions import ValidationError, field_from_loc
from models import BodyArea, ProgressEntry
from schemas import ExerciseCompletion

logger = logging.getLogger(__name__)

# Clock skew tolerated for client-supplied completion timestamps
FUTURE_TOLERANCE = timedelta(minutes=5)


@dataclass(frozen=True)
class DateRange:
    """Inclusive [start, end] window on completed_at."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start > self.end:
            raise ValidationError("date range start must not be after end", field="date_range")

    @classmethod
    def trailing_days(cls, days: int, now: Optional[datetime] = None) -> "DateRange":
        end = ensure_utc(now) if now else utcnow()
        return cls(start=end - timedelta(days=days), end=end)

    def token(self) -> str:
        """Deterministic cache-key fragment."""
        return f"{ensure_utc(self.start).isoformat()}_{ensure_utc(self.end).isoformat()}"


def validate_user_id(user_id: Optional[str]) -> str:
    if user_id is None or not str(user_id).strip():
        raise ValidationError("user_id must not be empty", field="user_id")
    return str(user_id)


def parse_body_area(value: Optional[Union[str, BodyArea]]) -> Optional[BodyArea]:
    if value is None:
        return None
    try:
        return BodyArea(value)
    except ValueError:
        raise ValidationError(f"unknown body area: {value}", field="body_area")


def parse_completion(completion: Union[ExerciseCompletion, Mapping[str, Any]]) -> ExerciseCompletion:
    """Validate a raw mapping into an ExerciseCompletion."""
    if isinstance(completion, ExerciseCompletion):
        return completion
    try:
        return ExerciseCompletion.model_validate(dict(completion))
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = field_from_loc(first.get("loc"))
        raise ValidationError(f"invalid completion: {first.get('msg')}", field=field)


def append_entry(
    db: Session,
    user_id: str,
    completion: Union[ExerciseCompletion, Mapping[str, Any]],
    now: Optional[datetime] = None,
) -> ProgressEntry:
    """
    Append one completion to the ledger.

    Flushes so the row gets its id, but does not commit: the caller owns the
    transaction (the streak update must land in the same one).

    Raises:
        ValidationError: empty user id, unknown body area or difficulty,
            out-of-range fields, or a completion time in the future.
    """
    user_id = validate_user_id(user_id)
    data = parse_completion(completion)

    now = ensure_utc(now) if now else utcnow()
    completed_at = ensure_utc(data.completed_at) if data.completed_at else now
    if completed_at > now + FUTURE_TOLERANCE:
        raise ValidationError("completed_at lies in the future", field="completed_at")

    entry = ProgressEntry(
        user_id=user_id,
        exercise_id=data.exercise_id,
        body_area=data.body_area.value,
        completed_at=completed_at,
        duration_minutes=data.duration_minutes,
        difficulty_level=data.difficulty_level.value,
        session_notes=data.session_notes,
        mood=data.mood.value if data.mood else None,
        energy_level=data.energy_level.value if data.energy_level else None,
        biometric_snapshot=(
            data.biometric_snapshot.model_dump(mode="json", exclude_none=True)
            if data.biometric_snapshot else None
        ),
    )
    db.add(entry)
    db.flush()

    logger.debug(f"Ledger append for {user_id}: {data.exercise_id} ({data.body_area.value}) at {completed_at}")
    return entry


def filtered_query(
    db: Session,
    user_id: str,
    body_area: Optional[Union[str, BodyArea]] = None,
    date_range: Optional[DateRange] = None,
    exercise_id: Optional[str] = None,
):
    query = db.query(ProgressEntry).filter(ProgressEntry.user_id == user_id)
    area = parse_body_area(body_area)
    if area is not None:
        query = query.filter(ProgressEntry.body_area == area.value)
    if date_range is not None:
        query = query.filter(
            ProgressEntry.completed_at >= ensure_utc(date_range.start),
            ProgressEntry.completed_at <= ensure_utc(date_range.end),
        )
    if exercise_id:
        query = query.filter(ProgressEntry.exercise_id == exercise_id)
    return query


def query_entries(
    db: Session,
    user_id: str,
    body_area: Optional[Union[str, BodyArea]] = None,
    date_range: Optional[DateRange] = None,
    exercise_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[ProgressEntry]:
    """Entries for a user, newest first. Re-running the call re-reads the ledger."""
    user_id = validate_user_id(user_id)
    query = filtered_query(db, user_id, body_area, date_range, exercise_id).order_by(
        desc(ProgressEntry.completed_at), desc(ProgressEntry.id)
    )
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def latest_entry(db: Session, user_id: str) -> Optional[ProgressEntry]:
    return (
        db.query(ProgressEntry)
        .filter(ProgressEntry.user_id == user_id)
        .order_by(desc(ProgressEntry.completed_at))
        .first()
    )


def count_entries(
    db: Session,
    user_id: str,
    body_area: Optional[Union[str, BodyArea]] = None,
    date_range: Optional[DateRange] = None,
) -> int:
    query = filtered_query(db, user_id, body_area, date_range).with_entities(func.count(ProgressEntry.id))
    return query.scalar() or 0


def entry_to_dict(entry: ProgressEntry) -> Dict[str, Any]:
    """JSON-safe representation of a ledger row."""
    return {
        "id": str(entry.id),
        "user_id": entry.user_id,
        "exercise_id": entry.exercise_id,
        "body_area": entry.body_area,
        "completed_at": ensure_utc(entry.completed_at).isoformat(),
        "duration_minutes": entry.duration_minutes,
        "difficulty_level": entry.difficulty_level,
        "session_notes": entry.session_notes,
        "mood": entry.mood,
        "energy_level": entry.energy_level,
        "biometric_snapshot": entry.biometric_snapshot,
    }
