import calendar
from datetime import date, timedelta
from typing import List, Optional

from eve_booking.errors import BookingValidationError

ALLOWED_OCCURRENCE_COUNTS = (2, 4, 6, 8, 12)
ALLOWED_FREQUENCIES = ("weekly", "biweekly", "monthly")

_STEP_DAYS = {"weekly": 7, "biweekly": 14}


def add_months(anchor: date, months: int) -> date:
    """Shift ``anchor`` by whole calendar months, clamping to the month's last day."""
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor.day, last_day))


def validate_recurrence(frequency: Optional[str], count: Optional[int]) -> None:
    if frequency not in ALLOWED_FREQUENCIES:
        raise BookingValidationError("Recurring bookings need a frequency of weekly, biweekly or monthly")
    if count not in ALLOWED_OCCURRENCE_COUNTS:
        allowed = ", ".join(str(value) for value in ALLOWED_OCCURRENCE_COUNTS)
        raise BookingValidationError(f"occurrence_count must be one of {allowed}")


def expand_occurrences(anchor: date, frequency: str, count: int) -> List[date]:
    validate_recurrence(frequency, count)
    if frequency == "monthly":
        # Always offset from the anchor so a clamped month does not drift later ones.
        return [add_months(anchor, step) for step in range(count)]
    step_days = _STEP_DAYS[frequency]
    return [anchor + timedelta(days=step_days * step) for step in range(count)]
