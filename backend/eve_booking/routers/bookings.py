from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from eve_booking.errors import (
    BookingError,
    BookingNotFoundError,
    BookingPermissionError,
    BookingStateError,
    PaymentError,
    PolicyViolationError,
    SlotConflictError,
)
from eve_booking.models import (
    CancellationResult,
    CancelReservationRequest,
    CompletionResult,
    PaymentAttachRequest,
    PriceBreakdown,
    QuoteRequest,
    RecurringSeriesView,
    Reservation,
    ReservationCreated,
    ReservationCreateRequest,
)
from eve_booking.services.availability import parse_timestamp
from eve_booking.services.notification_store import notification_store
from eve_booking.services.reservation_store import reservation_store

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _raise_booking_http_error(exc: BookingError) -> None:
    if isinstance(exc, BookingNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, BookingPermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, SlotConflictError):
        if exc.outcomes:
            raise HTTPException(
                status_code=409,
                detail={
                    "message": str(exc),
                    "reason": exc.reason,
                    "outcomes": [outcome.model_dump() for outcome in exc.outcomes],
                },
            )
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, BookingStateError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, PolicyViolationError):
        raise HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, PaymentError):
        raise HTTPException(status_code=402, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


def _parties(reservation: Reservation) -> set:
    owner = reservation_store.get_provider_profile(reservation.provider_id).owner_user_id
    return {reservation.customer_id, owner}


@router.post("/quote", response_model=PriceBreakdown)
def quote_booking(request: QuoteRequest):
    try:
        return reservation_store.quote(request)
    except BookingError as exc:
        _raise_booking_http_error(exc)


@router.post("", response_model=ReservationCreated)
def create_booking(request: ReservationCreateRequest):
    try:
        created = reservation_store.create_reservation(request)
        reservation = reservation_store.get_reservation(created.reservation_id)
        if created.series:
            body = (
                f"{created.series.booked_count} of {created.series.occurrence_count} "
                f"{created.series.frequency} visits from {reservation.date} {reservation.start_time}"
            )
        else:
            body = f"{reservation.customer_id} requested {reservation.date} {reservation.start_time}"
        notification_store.notify_parties(
            reservation,
            _parties(reservation),
            actor_user_id=reservation.customer_id,
            title="New booking request",
            body=body,
        )
        return created
    except BookingError as exc:
        _raise_booking_http_error(exc)


@router.get("", response_model=list[Reservation])
def list_bookings(
    customer_id: Optional[str] = Query(default=None),
    provider_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
):
    try:
        return reservation_store.list_reservations(customer_id=customer_id, provider_id=provider_id, status=status)
    except BookingError as exc:
        _raise_booking_http_error(exc)


@router.post("/complete-past", response_model=CompletionResult)
def complete_past_bookings(as_of: Optional[str] = Query(default=None)):
    try:
        now = parse_timestamp(as_of, field="as_of") if as_of else None
        completed = reservation_store.complete_past_reservations(now=now)
    except BookingError as exc:
        _raise_booking_http_error(exc)
    return CompletionResult(completed_reservation_ids=completed)


@router.get("/series/{series_id}", response_model=RecurringSeriesView)
def get_booking_series(series_id: str):
    try:
        series, members = reservation_store.get_series(series_id)
    except BookingError as exc:
        _raise_booking_http_error(exc)
    return RecurringSeriesView(series=series, reservations=members)


@router.get("/{reservation_id}", response_model=Reservation)
def get_booking(reservation_id: str):
    try:
        return reservation_store.get_reservation(reservation_id)
    except BookingError as exc:
        _raise_booking_http_error(exc)


@router.get("/{reservation_id}/price", response_model=PriceBreakdown)
def get_booking_price(reservation_id: str):
    try:
        return reservation_store.get_reservation(reservation_id).price_breakdown()
    except BookingError as exc:
        _raise_booking_http_error(exc)


@router.post("/{reservation_id}/payment", response_model=Reservation)
def attach_booking_payment(reservation_id: str, request: PaymentAttachRequest):
    try:
        reservation = reservation_store.attach_payment(reservation_id, request.payment_reference)
        notification_store.notify_parties(
            reservation,
            _parties(reservation),
            actor_user_id=None,
            title="Booking confirmed",
            body=f"Booking on {reservation.date} at {reservation.start_time} is confirmed",
            category="payment",
        )
        return reservation
    except BookingError as exc:
        _raise_booking_http_error(exc)


@router.post("/{reservation_id}/cancel", response_model=CancellationResult)
def cancel_booking(reservation_id: str, request: CancelReservationRequest):
    try:
        cancelled_at = parse_timestamp(request.cancelled_at, field="cancelled_at") if request.cancelled_at else None
        result = reservation_store.cancel_reservation(
            reservation_id,
            actor_user_id=request.actor_user_id,
            cancelled_at=cancelled_at,
        )
        reservation = result.reservation
        notification_store.notify_parties(
            reservation,
            _parties(reservation),
            actor_user_id=request.actor_user_id,
            title="Booking cancelled",
            body=f"Booking on {reservation.date} at {reservation.start_time} was cancelled",
        )
        return result
    except BookingError as exc:
        _raise_booking_http_error(exc)
