from datetime import date, datetime, time, timedelta, tzinfo
from typing import Iterable, List, Optional, Sequence, Tuple

from eve_booking.config import BOOKING_TIMEZONE
from eve_booking.errors import BookingValidationError
from eve_booking.models import (
    ProviderBlackout,
    ProviderCalendarProfile,
    ReservationInterval,
    ServiceAvailabilitySlot,
)
from eve_booking.services.slot_generator import (
    MINUTES_PER_DAY,
    format_time_slot,
    time_to_minutes,
    working_window,
)

ACTIVE_RESERVATION_STATUSES = ("pending", "confirmed")


def parse_time_of_day(value: str, *, field: str = "time") -> time:
    try:
        parsed = time.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise BookingValidationError(f"Invalid {field}; expected HH:MM") from exc
    return parsed.replace(second=0, microsecond=0)


def intervals_overlap(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    # Closed-open intervals: touching ends are not a conflict.
    return a_start < b_end and b_start < a_end


def _reservation_span(interval: ReservationInterval) -> Tuple[int, int]:
    start = time_to_minutes(parse_time_of_day(interval.start_time, field="start_time"))
    return start, start + interval.duration_minutes


def _blackout_span(blackout: ProviderBlackout) -> Tuple[int, int]:
    start = 0
    end = MINUTES_PER_DAY
    if blackout.start_time:
        start = time_to_minutes(parse_time_of_day(blackout.start_time, field="blackout start_time"))
    if blackout.end_time:
        end = time_to_minutes(parse_time_of_day(blackout.end_time, field="blackout end_time"))
    return start, end


def check_slot(
    start: time,
    *,
    slot_date: date,
    duration_minutes: int,
    existing: Iterable[ReservationInterval],
    blackouts: Iterable[ProviderBlackout],
    profile: ProviderCalendarProfile,
    now: datetime,
) -> Optional[str]:
    """Return why ``start`` cannot be booked, or None when it is free."""
    slot_start = datetime.combine(slot_date, start)
    if slot_start < now + timedelta(hours=profile.min_notice_hours):
        return "notice"
    if slot_start > now + timedelta(days=profile.max_advance_days):
        return "lookahead"

    start_minutes = time_to_minutes(start)
    end_minutes = start_minutes + duration_minutes
    window = working_window(profile, slot_date)
    if window is None or end_minutes > window[1]:
        return "closing"

    for blackout in blackouts:
        if blackout.date != slot_date.isoformat():
            continue
        if intervals_overlap(start_minutes, end_minutes, *_blackout_span(blackout)):
            return "blackout"

    for interval in existing:
        if intervals_overlap(start_minutes, end_minutes, *_reservation_span(interval)):
            return "booked"
    return None


def mark_availability(
    candidates: Sequence[time],
    *,
    slot_date: date,
    duration_minutes: int,
    existing: Sequence[ReservationInterval],
    blackouts: Sequence[ProviderBlackout],
    profile: ProviderCalendarProfile,
    now: datetime,
) -> List[ServiceAvailabilitySlot]:
    slots: List[ServiceAvailabilitySlot] = []
    for start in candidates:
        reason = check_slot(
            start,
            slot_date=slot_date,
            duration_minutes=duration_minutes,
            existing=existing,
            blackouts=blackouts,
            profile=profile,
            now=now,
        )
        slots.append(
            ServiceAvailabilitySlot(
                date=slot_date.isoformat(),
                time_slot=format_time_slot(start),
                available=reason is None,
                reason=reason,
            )
        )
    return slots


def parse_timestamp(value: str, *, field: str = "timestamp", zone: Optional[tzinfo] = BOOKING_TIMEZONE) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise BookingValidationError(f"Invalid {field}; expected an ISO timestamp") from exc
    # Appointment times are naive wall clock in the calendar zone (BOOKING_TIMEZONE,
    # else the server's local zone); aware input is converted before it is compared.
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(zone).replace(tzinfo=None)
    return parsed
