from datetime import date, time
from typing import Dict, List, Optional, Tuple

from eve_booking.errors import BookingValidationError
from eve_booking.models import ProviderCalendarProfile, WeekdayHours

MINUTES_PER_DAY = 24 * 60


def time_to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def minutes_to_time(minutes: int) -> time:
    return time(hour=minutes // 60, minute=minutes % 60)


def format_time_slot(value: time) -> str:
    return value.strftime("%H:%M")


def _hour_label(hour: int) -> str:
    return f"{min(hour, 24):02d}:00"


def _clock_minutes(value: str, *, field: str) -> int:
    # "24:00" closes at midnight.
    if value == "24:00":
        return MINUTES_PER_DAY
    try:
        parsed = time.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise BookingValidationError(f"Invalid {field}; expected HH:MM") from exc
    return time_to_minutes(parsed)


def resolve_weekly_hours(profile: ProviderCalendarProfile) -> List[WeekdayHours]:
    """One entry per weekday, Monday first.

    Days with their own ``weekly_hours`` entry keep it; every other day runs
    from ``start_hour`` to ``end_hour`` when it is one of ``working_days``.
    """
    if any(day < 0 or day > 6 for day in profile.working_days):
        raise BookingValidationError("working_days must be integers between 0 and 6")
    by_day: Dict[int, WeekdayHours] = {}
    for entry in profile.weekly_hours:
        if entry.day_of_week in by_day:
            raise BookingValidationError(f"weekly_hours lists weekday {entry.day_of_week} more than once")
        by_day[entry.day_of_week] = entry
    return [
        by_day.get(day)
        or WeekdayHours(
            day_of_week=day,
            is_available=day in profile.working_days,
            start_time=_hour_label(profile.start_hour),
            end_time=_hour_label(profile.end_hour),
        )
        for day in range(7)
    ]


def _window_minutes(hours: WeekdayHours) -> Tuple[int, int]:
    window_start = _clock_minutes(hours.start_time, field="start_time")
    window_end = _clock_minutes(hours.end_time, field="end_time")
    if window_end <= window_start:
        raise BookingValidationError("Working hours must end after they start")
    return window_start, window_end


def validate_calendar(profile: ProviderCalendarProfile) -> List[WeekdayHours]:
    """Check granularity and every working day's window; returns the resolved week."""
    if profile.granularity_minutes <= 0:
        raise BookingValidationError("Slot granularity must be a positive number of minutes")
    week = resolve_weekly_hours(profile)
    for hours in week:
        if hours.is_available:
            _window_minutes(hours)
    return week


def working_window(profile: ProviderCalendarProfile, target_date: date) -> Optional[Tuple[int, int]]:
    """Return ``target_date``'s working hours as minutes since midnight, end exclusive.

    None means the provider does not work that weekday.
    """
    if profile.granularity_minutes <= 0:
        raise BookingValidationError("Slot granularity must be a positive number of minutes")
    hours = resolve_weekly_hours(profile)[target_date.weekday()]
    if not hours.is_available:
        return None
    return _window_minutes(hours)


def generate_slots(profile: ProviderCalendarProfile, target_date: date) -> List[time]:
    """Candidate start times for ``target_date``, every granularity step before closing.

    A granularity that does not divide the window stops at the last step that
    still starts before the day's end time; days off yield none.
    """
    window = working_window(profile, target_date)
    if window is None:
        return []
    window_start, window_end = window
    return [
        minutes_to_time(minutes)
        for minutes in range(window_start, window_end, profile.granularity_minutes)
    ]
