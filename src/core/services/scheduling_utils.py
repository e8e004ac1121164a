"""
Slot-finding helpers shared by the plan builder, adaptation and remediation engines.

All times are naive local datetimes. Busy intervals are half-open [start, end).
"""

from datetime import datetime, timedelta, date, time
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from ..models import PreferredStudyTime, Task, User, DEFAULT_AVAILABLE_DAYS

WEEKDAY_NAMES = [
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
]

# Hour ranges for each preferred time-of-day band
TIME_BANDS = {
    PreferredStudyTime.MORNING: (8, 12),
    PreferredStudyTime.AFTERNOON: (12, 17),
    PreferredStudyTime.EVENING: (17, 21),
}

Interval = Tuple[datetime, datetime]


def parse_weekdays(days: Optional[Iterable[str]]) -> Set[int]:
    """Map weekday names (any case, full or 3-letter) to datetime.weekday() numbers"""
    result = set()
    for day in days or []:
        key = str(day).strip().lower()
        for index, name in enumerate(WEEKDAY_NAMES):
            if key in (name.lower(), name.lower()[:3]):
                result.add(index)
                break
    return result


def user_weekdays(user: Optional[User]) -> Set[int]:
    if user is None:
        return parse_weekdays(DEFAULT_AVAILABLE_DAYS)
    return parse_weekdays(user.available_days)


def user_window(user: Optional[User]) -> Tuple[int, int]:
    """Daily study hour window (start inclusive, end exclusive)"""
    if user is None:
        return 9, 17
    start = user.study_start_hour if user.study_start_hour is not None else 9
    end = user.study_end_hour if user.study_end_hour is not None else 17
    if end <= start:
        return 9, 17
    return start, end


def overlaps(start: datetime, end: datetime, busy: Iterable[Interval]) -> bool:
    return any(start < b_end and b_start < end for b_start, b_end in busy)


def busy_intervals(tasks: Iterable[Task], exclude_task_id: Optional[int] = None) -> List[Interval]:
    return [
        (t.start_time, t.end_time)
        for t in tasks
        if t.start_time is not None and t.end_time is not None and t.id != exclude_task_id
    ]


def find_slot_in_day(
    day: date,
    duration_minutes: int,
    busy: Sequence[Interval],
    start_hour: int,
    end_hour: int,
    step_minutes: int = 30,
    not_before: Optional[datetime] = None,
) -> Optional[Interval]:
    """First free slot of the given length inside [start_hour, end_hour) on a day"""
    window_end = datetime.combine(day, time(0)) + timedelta(hours=end_hour)
    cursor = datetime.combine(day, time(0)) + timedelta(hours=start_hour)
    length = timedelta(minutes=duration_minutes)
    while cursor + length <= window_end:
        if not_before is None or cursor >= not_before:
            candidate_end = cursor + length
            if not overlaps(cursor, candidate_end, busy):
                return cursor, candidate_end
        cursor += timedelta(minutes=step_minutes)
    return None


def find_available_time_slot(
    busy: Sequence[Interval],
    duration_minutes: int,
    weekdays: Set[int],
    start_hour: int,
    end_hour: int,
    search_from: datetime,
    deadline: datetime,
    step_minutes: int = 30,
) -> Optional[Interval]:
    """
    Next free slot on an available weekday, starting the day after ``search_from``
    and ending no later than ``deadline``.
    """
    day = (search_from + timedelta(days=1)).date()
    while datetime.combine(day, time(0)) < deadline:
        if day.weekday() in weekdays:
            slot = find_slot_in_day(
                day, duration_minutes, busy, start_hour, end_hour, step_minutes
            )
            if slot and slot[1] <= deadline:
                return slot
        day += timedelta(days=1)
    return None


def preferred_review_hours(start_hour: int, end_hour: int) -> List[int]:
    """Candidate start hours for a review session derived from a study window"""
    hours = []
    if start_hour < 12:
        hours.append(start_hour + 1)
    if start_hour < 15 and end_hour > 14:
        hours.append(14)
    if end_hour > 17:
        hours.append(min(end_hour - 1, 18))
    return hours or [9, 14, 18]


def find_optimal_review_time(
    busy: Sequence[Interval],
    now: datetime,
    start_hour: int = 9,
    end_hour: int = 17,
    duration_minutes: int = 30,
    weekdays: Optional[Set[int]] = None,
) -> Optional[Interval]:
    """
    Pick a slot for a time-sensitive review session.

    Tries the preferred hours tomorrow, then the day after, then every hour
    from 09:00 to 20:00 over the next three days, clamped to the study window.
    Days outside ``weekdays`` are skipped. Returns None when all of those
    collide with existing tasks.
    """
    length = timedelta(minutes=duration_minutes)
    hours = preferred_review_hours(start_hour, end_hour)
    window_end = min(end_hour, 21)

    def candidate_days(offsets):
        for offset in offsets:
            day = (now + timedelta(days=offset)).date()
            if weekdays is None or day.weekday() in weekdays:
                yield day

    def fits(day: date, hour: int) -> bool:
        if hour < start_hour:
            return False
        day_start = datetime.combine(day, time(0))
        return day_start + timedelta(hours=hour) + length <= day_start + timedelta(hours=window_end)

    for day in candidate_days((1, 2)):
        for hour in hours:
            start = datetime.combine(day, time(hour))
            if start < now or not fits(day, hour):
                continue
            if not overlaps(start, start + length, busy):
                return start, start + length

    for day in candidate_days((1, 2, 3)):
        for hour in range(max(9, start_hour), window_end):
            if not fits(day, hour):
                continue
            start = datetime.combine(day, time(hour))
            if not overlaps(start, start + length, busy):
                return start, start + length

    return None


def calculate_review_interval(mastery: float) -> int:
    """Days until the next review for a topic at the given mastery (0-100)"""
    if mastery < 50:
        return 1
    if mastery < 65:
        return 3
    if mastery < 80:
        return 7
    return 14


def day_bounds(day: date) -> Interval:
    start = datetime.combine(day, time(0))
    return start, start + timedelta(days=1)
