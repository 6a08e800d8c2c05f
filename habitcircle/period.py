"""Period bucketing for check-ins.

Every check-in is attributed to a canonical period: the UTC day for daily habits,
or the UTC week starting Monday for weekly habits.
"""
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional, Union

DAILY = "daily"
WEEKLY = "weekly"
Frequency = Literal["daily", "weekly"]

ONE_DAY = timedelta(days=1)
ONE_WEEK = timedelta(days=7)


def to_utc(value: Union[datetime, str]) -> datetime:
    """Return ``value`` as an aware UTC datetime. Naive values are taken as UTC."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(value: Optional[Union[datetime, str]] = None) -> datetime:
    dt = to_utc(value) if value is not None else datetime.now(timezone.utc)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(value: Optional[Union[datetime, str]] = None) -> datetime:
    day = start_of_day(value)
    # weekday(): Monday == 0
    return day - timedelta(days=day.weekday())


def period_start(value: Optional[Union[datetime, str]] = None, frequency: str = DAILY) -> datetime:
    if frequency == WEEKLY:
        return start_of_week(value)
    return start_of_day(value)


def period_length(frequency: str) -> timedelta:
    return ONE_WEEK if frequency == WEEKLY else ONE_DAY


def step_back(period: datetime, frequency: str) -> datetime:
    return period - period_length(frequency)
