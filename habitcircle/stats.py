"""Derived habit statistics: streaks, completion rates and the leaderboard.

Everything here is a pure function over records that were already fetched from the
store. Records may be plain dicts (as they come out of the collections) or objects
exposing the same attribute names.

The calculators rely on the store's unique index on ``(habit_id, period_start)``:
at most one check-in per habit per period is assumed and not re-checked.
"""
import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from .period import DAILY, WEEKLY, period_start, step_back, to_utc

logger = logging.getLogger(__name__)


class LeaderboardError(Exception):
    """Raised when the leaderboard could not be aggregated."""


class LeaderboardEntry(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    total_habits: int
    total_check_ins: int
    max_streak: int


def _field(record: Any, name: str, default: Any = None) -> Any:
    if isinstance(record, dict):
        return record.get(name, default)
    return getattr(record, name, default)


def _now(now: Optional[datetime]) -> datetime:
    return to_utc(now) if now is not None else datetime.now(timezone.utc)


def compute_streak(check_ins: Iterable[Any], frequency: str = DAILY, now: Optional[datetime] = None) -> int:
    """Count consecutive periods with a check-in, ending at the current period.

    The scan walks check-ins newest first with a cursor starting at the current
    period. A match moves the cursor back one period; the first check-in older
    than the cursor ends the streak. A missing current period therefore yields 0.
    """
    periods = [to_utc(_field(ci, "period_start")) for ci in check_ins]
    if not periods:
        return 0
    periods.sort(reverse=True)

    streak = 0
    cursor = period_start(_now(now), frequency)
    for ts in periods:
        if ts == cursor:
            streak += 1
            cursor = step_back(cursor, frequency)
        elif ts < cursor:
            break
        else:
            # Ahead of the cursor: a future period or a duplicate of one already counted.
            logger.debug("Skipping check-in period %s ahead of cursor %s", ts.isoformat(), cursor.isoformat())
    return streak


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def completion_rate(
    created_at: Any,
    frequency: str,
    check_in_count: int,
    now: Optional[datetime] = None,
) -> int:
    """Percentage of elapsed periods since creation that have a check-in, capped at 100.

    The creation day counts as day one, so a habit created today has one elapsed
    day. Weekly habits use whole elapsed weeks, with a minimum of one.
    """
    elapsed = _now(now) - to_utc(created_at)
    elapsed_days = max(1, elapsed // timedelta(days=1) + 1)
    elapsed_weeks = max(1, elapsed_days // 7)
    denominator = elapsed_weeks if frequency == WEEKLY else elapsed_days
    return min(100, _round_half_up(check_in_count / denominator * 100))


def habit_completion_rate(habit: Any, check_ins: List[Any], now: Optional[datetime] = None) -> int:
    return completion_rate(
        _field(habit, "created_at"),
        _field(habit, "frequency", DAILY),
        len(check_ins),
        now=now,
    )


def habit_stats(habit: Any, check_ins: List[Any], now: Optional[datetime] = None) -> Dict[str, int]:
    """Streak and completion rate for one habit, keyed the way the API reports them."""
    frequency = _field(habit, "frequency", DAILY)
    return {
        "streak": compute_streak(check_ins, frequency, now=now),
        "completion_rate": habit_completion_rate(habit, check_ins, now=now),
    }


def group_by(records: Iterable[Any], *keys: str) -> Dict[Any, List[Any]]:
    """Build a multi-map of ``records`` keyed by one field, or a tuple of fields."""
    grouped: Dict[Any, List[Any]] = defaultdict(list)
    for record in records:
        if len(keys) == 1:
            key: Any = _field(record, keys[0])
        else:
            key = tuple(_field(record, k) for k in keys)
        grouped[key].append(record)
    return grouped


def _build_entries(
    users: Iterable[Any],
    habits: Iterable[Any],
    check_ins: Iterable[Any],
    now: datetime,
) -> List[LeaderboardEntry]:
    check_ins = list(check_ins)
    habits_by_user = group_by(habits, "user_id")
    check_ins_by_user = group_by(check_ins, "user_id")
    check_ins_by_habit: Dict[Tuple[Any, Any], List[Any]] = group_by(check_ins, "user_id", "habit_id")

    entries: List[LeaderboardEntry] = []
    for user in users:
        user_id = _field(user, "id")
        owned = habits_by_user.get(user_id, [])
        if not owned:
            continue
        max_streak = 0
        for habit in owned:
            streak = compute_streak(
                check_ins_by_habit.get((user_id, _field(habit, "id")), []),
                _field(habit, "frequency", DAILY),
                now=now,
            )
            max_streak = max(max_streak, streak)
        entries.append(
            LeaderboardEntry(
                id=str(user_id),
                name=_field(user, "name"),
                email=_field(user, "email"),
                avatar_url=_field(user, "avatar_url"),
                total_habits=len(owned),
                total_check_ins=len(check_ins_by_user.get(user_id, [])),
                max_streak=max_streak,
            )
        )

    entries.sort(key=lambda e: (-e.max_streak, -e.total_check_ins))
    return entries


def aggregate_leaderboard(
    users: Iterable[Any],
    habits: Iterable[Any],
    check_ins: Iterable[Any],
    now: Optional[datetime] = None,
) -> List[LeaderboardEntry]:
    """Rank users with at least one habit by best current streak, then total check-ins.

    Raises LeaderboardError on any failure; a partial ranking is never returned.
    """
    try:
        return _build_entries(users, habits, check_ins, _now(now))
    except Exception as e:
        raise LeaderboardError(f"Failed to aggregate leaderboard: {e}") from e
