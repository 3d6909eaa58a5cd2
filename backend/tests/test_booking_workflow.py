import asyncio
import os
import sys
from dataclasses import replace
from datetime import date, datetime, time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from eve_booking.errors import BookingStateError, PaymentError, WorkflowBusyError
from eve_booking.models import (
    ProviderCalendarProfile,
    ReservationCreated,
    ReservationCreateRequest,
    ServiceAvailabilitySlot,
    ServiceOffering,
)
from eve_booking.services.booking_workflow import (
    AwaitingPayment,
    BookingDraft,
    BookingSession,
    EnteringDetails,
    Finalized,
    LocalReservationGateway,
    SelectingDate,
    SelectingTime,
    advance,
    go_back,
    select_date,
    select_time,
    update_details,
)
from eve_booking.services.reservation_store import ReservationStore

NOW = datetime(2025, 6, 1, 8, 0)
MONDAY = date(2025, 6, 2)
TUESDAY = date(2025, 6, 3)


class ScriptedGateway:
    def __init__(self, payment_error=None, hold_availability=False):
        self.profile = ProviderCalendarProfile(provider_id="prov_a", owner_user_id="owner_a")
        self.offering = ServiceOffering(
            id="off_a", provider_id="prov_a", name="Gel Manicure", base_price=5000, duration_minutes=45
        )
        self.payment_error = payment_error
        self.created = []
        self.payments = []
        self.released = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        if not hold_availability:
            self.release.set()

    async def booking_context(self, provider_id, service_offering_id):
        return self.profile, self.offering

    async def availability(self, provider_id, service_offering_id, slot_date):
        self.started.set()
        await self.release.wait()
        return [
            ServiceAvailabilitySlot(date=slot_date.isoformat(), time_slot="10:00", available=True),
            ServiceAvailabilitySlot(date=slot_date.isoformat(), time_slot="10:30", available=False, reason="booked"),
        ]

    async def create_reservation(self, request: ReservationCreateRequest):
        self.created.append(request)
        return ReservationCreated(reservation_id=f"res_{len(self.created)}", total_price=5000, travel_fee=0)

    async def attach_payment(self, reservation_id, payment_reference):
        self.payments.append((reservation_id, payment_reference))
        if self.payment_error:
            raise PaymentError(self.payment_error)
        return None

    async def release_reservation(self, reservation_id, actor_user_id):
        self.released.append(reservation_id)


def _draft() -> BookingDraft:
    return BookingDraft(provider_id="prov_a", service_offering_id="off_a")


def test_step_guards_keep_state_and_report_inline():
    state = advance(SelectingDate(draft=_draft()))
    assert isinstance(state, SelectingDate)
    assert state.error == "Please select a date"

    state = advance(select_date(state, MONDAY))
    assert isinstance(state, SelectingTime)
    blocked = advance(state)
    assert isinstance(blocked, SelectingTime)
    assert blocked.error == "Please select a time"


def test_new_date_clears_selected_time():
    state = select_time(SelectingTime(draft=replace(_draft(), selected_date=MONDAY)), time(10, 0))
    assert state.draft.selected_time == time(10, 0)
    state = select_date(state, TUESDAY)
    assert isinstance(state, SelectingTime)
    assert state.draft.selected_date == TUESDAY
    assert state.draft.selected_time is None


def test_details_require_address_and_valid_recurrence():
    state = EnteringDetails(draft=_draft())
    assert advance(state).error == "Address is required"

    state = update_details(state, address="5 Rose St", is_recurring=True, frequency="weekly", occurrence_count=5)
    assert "occurrence_count" in advance(state).error

    state = update_details(state, occurrence_count=4)
    assert advance(state).error is None

    state = update_details(state, is_recurring=False)
    assert state.draft.frequency is None
    assert state.draft.occurrence_count is None


def test_changing_the_booking_drops_the_held_reservation():
    held = replace(_draft(), selected_date=MONDAY, selected_time=time(10, 0), address="5 Rose St", reservation_id="res_1")

    state = update_details(EnteringDetails(draft=held), address="5 Rose St")
    assert state.draft.reservation_id == "res_1"
    state = update_details(state, address="9 Elm St")
    assert state.draft.reservation_id is None

    assert select_time(SelectingTime(draft=held), time(10, 0)).draft.reservation_id == "res_1"
    assert select_time(SelectingTime(draft=held), time(11, 0)).draft.reservation_id is None
    assert select_date(SelectingTime(draft=held), TUESDAY).draft.reservation_id is None


def test_transitions_are_adjacent_only():
    with pytest.raises(BookingStateError):
        select_time(SelectingDate(draft=_draft()), time(10, 0))
    with pytest.raises(BookingStateError):
        update_details(SelectingTime(draft=_draft()), address="x")
    with pytest.raises(BookingStateError):
        go_back(SelectingDate(draft=_draft()))
    assert isinstance(go_back(AwaitingPayment(draft=_draft())), EnteringDetails)
    assert isinstance(go_back(EnteringDetails(draft=_draft())), SelectingTime)


def test_session_happy_path_against_local_store(tmp_path):
    store = ReservationStore(db_path=str(tmp_path / "bookings.sqlite3"), seed_demo=True)

    async def scenario():
        session = BookingSession(LocalReservationGateway(store, now=lambda: NOW), "prov_demo", "off_blowout", "cust_1")
        await session.start()
        assert session.price.total_price == 6500

        await session.choose_date(MONDAY)
        assert len(session.slots) == 20
        assert isinstance(await session.next(), SelectingTime)

        session.choose_time(time(10, 0))
        assert isinstance(await session.next(), EnteringDetails)

        session.enter_details(address="12 Orchard Lane", is_recurring=True, frequency="weekly", occurrence_count=2)
        assert session.price.total_price == 5850

        state = await session.next()
        assert isinstance(state, AwaitingPayment)
        assert state.draft.series.booked_count == 2

        final = await session.confirm_payment("pay_42")
        assert isinstance(final, Finalized)
        return final

    final = asyncio.run(scenario())
    reservation = store.get_reservation(final.draft.reservation_id)
    assert reservation.status == "confirmed"
    assert reservation.payment_reference == "pay_42"


def test_conflict_at_submission_returns_to_time_selection(tmp_path):
    store = ReservationStore(db_path=str(tmp_path / "bookings.sqlite3"), seed_demo=True)

    async def scenario():
        session = BookingSession(LocalReservationGateway(store, now=lambda: NOW), "prov_demo", "off_blowout", "cust_1")
        await session.start()
        await session.choose_date(MONDAY)
        await session.next()
        session.choose_time(time(10, 0))
        await session.next()
        session.enter_details(address="12 Orchard Lane", notes="Side gate")

        store.create_reservation(
            ReservationCreateRequest(
                provider_id="prov_demo",
                service_offering_id="off_blowout",
                customer_id="cust_fast",
                date=MONDAY.isoformat(),
                start_time="10:00",
                address="1 Quick Rd",
            ),
            now=NOW,
        )
        return session, await session.next()

    session, state = asyncio.run(scenario())
    assert isinstance(state, SelectingTime)
    assert state.error == "Slot no longer available"
    assert state.draft.selected_time is None
    assert state.draft.address == "12 Orchard Lane"
    assert state.draft.notes == "Side gate"
    refreshed = {slot.time_slot: slot for slot in session.slots}
    assert refreshed["10:00"].reason == "booked"


def test_payment_failure_keeps_fields_and_reuses_reservation():
    async def scenario():
        gateway = ScriptedGateway(payment_error="Card declined")
        session = BookingSession(gateway, "prov_a", "off_a")
        await session.start()
        await session.choose_date(MONDAY)
        await session.next()
        session.choose_time(time(10, 0))
        await session.next()
        session.enter_details(address="5 Rose St", notes="Ring twice")
        await session.next()

        failed = await session.confirm_payment("pay_bad")
        assert isinstance(failed, EnteringDetails)
        assert failed.error == "Card declined"
        assert failed.draft.address == "5 Rose St"
        assert failed.draft.notes == "Ring twice"
        assert failed.draft.selected_time == time(10, 0)

        gateway.payment_error = None
        retry = await session.next()
        assert isinstance(retry, AwaitingPayment)
        assert retry.draft.reservation_id == "res_1"
        assert isinstance(await session.confirm_payment("pay_ok"), Finalized)
        return gateway

    gateway = asyncio.run(scenario())
    assert len(gateway.created) == 1
    assert gateway.payments == [("res_1", "pay_bad"), ("res_1", "pay_ok")]


def test_unavailable_time_is_not_selected():
    async def scenario():
        session = BookingSession(ScriptedGateway(), "prov_a", "off_a")
        await session.choose_date(MONDAY)
        await session.next()
        state = session.choose_time(time(10, 30))
        assert state.error == "10:30 is not available"
        assert state.draft.selected_time is None
        return session

    asyncio.run(scenario())


def test_input_is_rejected_while_a_request_is_in_flight():
    async def scenario():
        gateway = ScriptedGateway(hold_availability=True)
        session = BookingSession(gateway, "prov_a", "off_a")
        pending = asyncio.create_task(session.choose_date(MONDAY))
        await gateway.started.wait()

        with pytest.raises(WorkflowBusyError):
            session.choose_time(time(10, 0))
        with pytest.raises(WorkflowBusyError):
            await session.next()

        gateway.release.set()
        state = await pending
        assert state.draft.selected_date == MONDAY
        assert len(session.slots) == 2
        assert isinstance(await session.next(), SelectingTime)

    asyncio.run(scenario())


def test_rebooking_after_failed_payment_releases_the_old_slot(tmp_path):
    store = ReservationStore(db_path=str(tmp_path / "bookings.sqlite3"), seed_demo=True)

    async def scenario():
        session = BookingSession(LocalReservationGateway(store, now=lambda: NOW), "prov_demo", "off_blowout", "cust_1")
        await session.start()
        await session.choose_date(MONDAY)
        await session.next()
        session.choose_time(time(10, 0))
        await session.next()
        session.enter_details(address="1 Old Rd")
        held = await session.next()
        assert isinstance(held, AwaitingPayment)
        first_id = held.draft.reservation_id

        session.fail_payment("Card declined")
        session.enter_details(address="2 New Rd")
        session.back()
        await session.choose_date(TUESDAY)
        session.choose_time(time(14, 0))
        await session.next()
        retry = await session.next()
        assert isinstance(retry, AwaitingPayment)
        assert retry.draft.reservation_id != first_id

        final = await session.confirm_payment("pay_ok")
        assert isinstance(final, Finalized)
        return first_id, final.draft.reservation_id

    first_id, final_id = asyncio.run(scenario())
    confirmed = store.get_reservation(final_id)
    assert (confirmed.date, confirmed.start_time, confirmed.address) == ("2025-06-03", "14:00", "2 New Rd")
    assert confirmed.status == "confirmed"
    assert store.get_reservation(first_id).status == "cancelled"
    assert store.list_active_intervals("prov_demo", MONDAY.isoformat()) == []


def test_edited_details_replace_the_held_reservation():
    async def scenario():
        gateway = ScriptedGateway(payment_error="Card declined")
        session = BookingSession(gateway, "prov_a", "off_a")
        await session.start()
        await session.choose_date(MONDAY)
        await session.next()
        session.choose_time(time(10, 0))
        await session.next()
        session.enter_details(address="5 Rose St")
        await session.next()
        await session.confirm_payment("pay_bad")

        session.enter_details(notes="Use the side gate")
        resubmitted = await session.next()
        assert isinstance(resubmitted, AwaitingPayment)
        assert resubmitted.draft.reservation_id == "res_2"
        return gateway

    gateway = asyncio.run(scenario())
    assert gateway.released == ["res_1"]
    assert [request.notes for request in gateway.created] == ["", "Use the side gate"]
