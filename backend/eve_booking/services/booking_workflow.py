"""Booking wizard: date, time, details, payment.

The wizard is modelled as a tagged union of frozen state dataclasses and
pure transition functions. ``BookingSession`` drives those functions from
user input and talks to the reservation backend through an async
``ReservationGateway``; every backend call is an explicit ``await`` and the
session refuses new input until it has resolved.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from typing import Callable, List, Optional, Protocol, Tuple, Union

from eve_booking.errors import (
    BookingError,
    BookingNotFoundError,
    BookingStateError,
    BookingValidationError,
    PaymentError,
    PolicyViolationError,
    SlotConflictError,
    WorkflowBusyError,
)
from eve_booking.models import (
    PriceBreakdown,
    ProviderCalendarProfile,
    Reservation,
    ReservationCreated,
    ReservationCreateRequest,
    SeriesCreationResult,
    ServiceAvailabilitySlot,
    ServiceOffering,
)
from eve_booking.services.pricing import calculate_total, travel_fee_for
from eve_booking.services.recurrence import validate_recurrence
from eve_booking.services.slot_generator import format_time_slot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingDraft:
    provider_id: str
    service_offering_id: str
    customer_id: str = "guest_user"
    selected_date: Optional[date] = None
    selected_time: Optional[time] = None
    address: str = ""
    notes: str = ""
    is_recurring: bool = False
    frequency: Optional[str] = None
    occurrence_count: Optional[int] = None
    distance_miles: Optional[float] = None
    reservation_id: Optional[str] = None
    series: Optional[SeriesCreationResult] = None


@dataclass(frozen=True)
class SelectingDate:
    draft: BookingDraft
    error: Optional[str] = None


@dataclass(frozen=True)
class SelectingTime:
    draft: BookingDraft
    error: Optional[str] = None


@dataclass(frozen=True)
class EnteringDetails:
    draft: BookingDraft
    error: Optional[str] = None


@dataclass(frozen=True)
class AwaitingPayment:
    draft: BookingDraft
    error: Optional[str] = None


@dataclass(frozen=True)
class Finalized:
    draft: BookingDraft
    payment_reference: str
    error: Optional[str] = None


WorkflowState = Union[SelectingDate, SelectingTime, EnteringDetails, AwaitingPayment, Finalized]


def _expect(state: WorkflowState, *allowed: type) -> None:
    if not isinstance(state, allowed):
        names = " or ".join(kind.__name__ for kind in allowed)
        raise BookingStateError(f"{type(state).__name__} cannot do that; expected {names}")


def _without_hold(draft: BookingDraft) -> BookingDraft:
    return replace(draft, reservation_id=None, series=None)


def select_date(state: WorkflowState, value: date) -> WorkflowState:
    """Pick a date; any previously chosen time and held reservation are cleared."""
    _expect(state, SelectingDate, SelectingTime)
    draft = replace(_without_hold(state.draft), selected_date=value, selected_time=None)
    return type(state)(draft=draft)


def select_time(state: WorkflowState, value: time) -> WorkflowState:
    _expect(state, SelectingTime)
    draft = state.draft
    if draft.selected_time != value:
        draft = _without_hold(draft)
    return SelectingTime(draft=replace(draft, selected_time=value))


def update_details(state: WorkflowState, **changes) -> WorkflowState:
    _expect(state, EnteringDetails)
    allowed = {"address", "notes", "is_recurring", "frequency", "occurrence_count", "distance_miles"}
    unknown = set(changes) - allowed
    if unknown:
        raise BookingValidationError(f"Unknown booking detail(s): {', '.join(sorted(unknown))}")
    draft = replace(state.draft, **changes)
    if not draft.is_recurring:
        draft = replace(draft, frequency=None, occurrence_count=None)
    if any(getattr(draft, name) != getattr(state.draft, name) for name in allowed):
        draft = _without_hold(draft)
    return EnteringDetails(draft=draft)


def details_error(draft: BookingDraft) -> Optional[str]:
    if not draft.address.strip():
        return "Address is required"
    if draft.is_recurring:
        try:
            validate_recurrence(draft.frequency, draft.occurrence_count)
        except BookingValidationError as exc:
            return str(exc)
    return None


def advance(state: WorkflowState) -> WorkflowState:
    """Move one step forward, or stay put with an inline error when a guard fails.

    EnteringDetails only validates here; leaving it needs a created
    reservation, see ``await_payment``.
    """
    draft = state.draft
    if isinstance(state, SelectingDate):
        if draft.selected_date is None:
            return SelectingDate(draft=draft, error="Please select a date")
        return SelectingTime(draft=draft)
    if isinstance(state, SelectingTime):
        if draft.selected_time is None:
            return SelectingTime(draft=draft, error="Please select a time")
        return EnteringDetails(draft=draft)
    if isinstance(state, EnteringDetails):
        return EnteringDetails(draft=draft, error=details_error(draft))
    raise BookingStateError(f"Cannot advance from {type(state).__name__}")


def await_payment(state: WorkflowState, created: ReservationCreated) -> AwaitingPayment:
    _expect(state, EnteringDetails)
    problem = details_error(state.draft)
    if problem:
        raise BookingValidationError(problem)
    draft = replace(state.draft, reservation_id=created.reservation_id, series=created.series)
    return AwaitingPayment(draft=draft)


def payment_succeeded(state: WorkflowState, payment_reference: str) -> Finalized:
    _expect(state, AwaitingPayment)
    return Finalized(draft=state.draft, payment_reference=payment_reference)


def payment_failed(state: WorkflowState, message: str) -> EnteringDetails:
    _expect(state, AwaitingPayment)
    return EnteringDetails(draft=state.draft, error=message)


def go_back(state: WorkflowState) -> WorkflowState:
    _expect(state, SelectingTime, EnteringDetails, AwaitingPayment)
    if isinstance(state, SelectingTime):
        return SelectingDate(draft=state.draft)
    if isinstance(state, EnteringDetails):
        return SelectingTime(draft=state.draft)
    return EnteringDetails(draft=state.draft)


def conflict_at_submission(
    state: WorkflowState, exc: Union[SlotConflictError, PolicyViolationError]
) -> SelectingTime:
    """Send the user back to re-pick a time, keeping everything else."""
    return SelectingTime(draft=replace(state.draft, selected_time=None), error=str(exc))


class ReservationGateway(Protocol):
    async def booking_context(
        self, provider_id: str, service_offering_id: str
    ) -> Tuple[ProviderCalendarProfile, ServiceOffering]:
        ...

    async def availability(
        self, provider_id: str, service_offering_id: str, slot_date: date
    ) -> List[ServiceAvailabilitySlot]:
        ...

    async def create_reservation(self, request: ReservationCreateRequest) -> ReservationCreated:
        ...

    async def attach_payment(self, reservation_id: str, payment_reference: str) -> Reservation:
        ...

    async def release_reservation(self, reservation_id: str, actor_user_id: str) -> None:
        ...


class LocalReservationGateway:
    """Gateway over an in-process ``ReservationStore``; blocking calls run in a worker thread."""

    def __init__(self, store, now: Optional[Callable[[], datetime]] = None):
        self._store = store
        self._now = now or datetime.now

    async def booking_context(self, provider_id: str, service_offering_id: str):
        return await asyncio.to_thread(self._store.booking_context, provider_id, service_offering_id)

    async def availability(self, provider_id: str, service_offering_id: str, slot_date: date):
        return await asyncio.to_thread(
            self._store.get_availability,
            provider_id,
            service_offering_id,
            slot_date.isoformat(),
            self._now(),
        )

    async def create_reservation(self, request: ReservationCreateRequest) -> ReservationCreated:
        return await asyncio.to_thread(self._store.create_reservation, request, self._now())

    async def attach_payment(self, reservation_id: str, payment_reference: str) -> Reservation:
        return await asyncio.to_thread(self._store.attach_payment, reservation_id, payment_reference)

    async def release_reservation(self, reservation_id: str, actor_user_id: str) -> None:
        await asyncio.to_thread(self._store.cancel_reservation, reservation_id, actor_user_id, self._now())


@dataclass
class BookingSession:
    gateway: ReservationGateway
    provider_id: str
    service_offering_id: str
    customer_id: str = "guest_user"
    state: WorkflowState = field(init=False)
    slots: List[ServiceAvailabilitySlot] = field(default_factory=list, init=False)
    profile: Optional[ProviderCalendarProfile] = field(default=None, init=False)
    offering: Optional[ServiceOffering] = field(default=None, init=False)

    def __post_init__(self) -> None:
        self.state = SelectingDate(
            draft=BookingDraft(
                provider_id=self.provider_id,
                service_offering_id=self.service_offering_id,
                customer_id=self.customer_id,
            )
        )
        self._in_flight = False
        # What the pending reservation(s) were created from; reused only while the draft still matches.
        self._held_request: Optional[ReservationCreateRequest] = None
        self._held_ids: List[str] = []

    def _claim(self) -> None:
        if self._in_flight:
            raise WorkflowBusyError("A request for this booking is still in progress")

    async def _call(self, awaitable):
        self._claim()
        self._in_flight = True
        try:
            return await awaitable
        finally:
            self._in_flight = False

    @property
    def draft(self) -> BookingDraft:
        return self.state.draft

    @property
    def price(self) -> Optional[PriceBreakdown]:
        if self.profile is None or self.offering is None:
            return None
        draft = self.draft
        return calculate_total(
            base_price=self.offering.base_price,
            travel_fee=travel_fee_for(self.profile, draft.distance_miles),
            recurring=draft.is_recurring,
        )

    async def start(self) -> WorkflowState:
        self.profile, self.offering = await self._call(
            self.gateway.booking_context(self.provider_id, self.service_offering_id)
        )
        return self.state

    async def refresh_slots(self) -> List[ServiceAvailabilitySlot]:
        if self.draft.selected_date is None:
            self.slots = []
        else:
            self.slots = await self._call(
                self.gateway.availability(self.provider_id, self.service_offering_id, self.draft.selected_date)
            )
        return self.slots

    async def choose_date(self, value: date) -> WorkflowState:
        self._claim()
        self.state = select_date(self.state, value)
        await self.refresh_slots()
        return self.state

    def choose_time(self, value: time) -> WorkflowState:
        self._claim()
        label = format_time_slot(value)
        offered = {slot.time_slot: slot for slot in self.slots}
        slot = offered.get(label)
        if slot is None or not slot.available:
            # Keep the previous choice; the picker shows why.
            self.state = replace(self.state, error=f"{label} is not available")
            return self.state
        self.state = select_time(self.state, value)
        return self.state

    def enter_details(self, **changes) -> WorkflowState:
        self._claim()
        self.state = update_details(self.state, **changes)
        return self.state

    def back(self) -> WorkflowState:
        self._claim()
        self.state = go_back(self.state)
        return self.state

    async def next(self) -> WorkflowState:
        self._claim()
        moved = advance(self.state)
        if moved.error or not isinstance(self.state, EnteringDetails):
            self.state = moved
            return self.state
        request = self._reservation_request()
        if self.draft.reservation_id and request == self._held_request:
            # Payment failed earlier; the pending reservation still holds the slot.
            self.state = AwaitingPayment(draft=self.draft)
            return self.state
        await self._release_hold()
        await self._submit(request)
        return self.state

    def _reservation_request(self) -> ReservationCreateRequest:
        draft = self.draft
        return ReservationCreateRequest(
            provider_id=draft.provider_id,
            service_offering_id=draft.service_offering_id,
            customer_id=draft.customer_id,
            date=draft.selected_date.isoformat(),
            start_time=format_time_slot(draft.selected_time),
            address=draft.address,
            notes=draft.notes,
            is_recurring=draft.is_recurring,
            frequency=draft.frequency if draft.is_recurring else None,
            occurrence_count=draft.occurrence_count if draft.is_recurring else None,
            distance_miles=draft.distance_miles,
        )

    async def _release_hold(self) -> None:
        """Cancel reservations made for an earlier version of the draft."""
        held, self._held_ids, self._held_request = self._held_ids, [], None
        for reservation_id in held:
            try:
                await self._call(self.gateway.release_reservation(reservation_id, self.draft.customer_id))
            except (BookingStateError, BookingNotFoundError):
                logger.info("Held reservation %s was already released", reservation_id)
            else:
                logger.info("Released stale reservation %s", reservation_id)
        if self.draft.reservation_id:
            self.state = replace(self.state, draft=_without_hold(self.draft))

    async def _submit(self, request: ReservationCreateRequest) -> None:
        try:
            created = await self._call(self.gateway.create_reservation(request))
        except (SlotConflictError, PolicyViolationError) as exc:
            logger.info("Reservation rejected at submission reason=%s", getattr(exc, "reason", None))
            self.state = conflict_at_submission(self.state, exc)
            await self.refresh_slots()
            return
        except BookingError as exc:
            self.state = replace(self.state, error=str(exc))
            return
        self._held_request = request
        if created.series is not None:
            self._held_ids = [
                outcome.reservation_id for outcome in created.series.outcomes if outcome.status == "booked"
            ]
        else:
            self._held_ids = [created.reservation_id]
        self.state = await_payment(self.state, created)

    async def confirm_payment(self, payment_reference: str) -> WorkflowState:
        self._claim()
        _expect(self.state, AwaitingPayment)
        try:
            await self._call(self.gateway.attach_payment(self.draft.reservation_id, payment_reference))
        except (PaymentError, BookingStateError) as exc:
            self.state = payment_failed(self.state, str(exc))
            return self.state
        self._held_ids, self._held_request = [], None
        self.state = payment_succeeded(self.state, payment_reference)
        return self.state

    def fail_payment(self, message: str) -> WorkflowState:
        self._claim()
        self.state = payment_failed(self.state, message)
        return self.state
