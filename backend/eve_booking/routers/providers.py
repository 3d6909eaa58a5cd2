from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from eve_booking.errors import BookingError
from eve_booking.models import (
    ProviderBlackout,
    ProviderBlackoutRequest,
    ProviderCalendarProfile,
    ProviderProfileUpsertRequest,
    ReservationInterval,
    ServiceAvailabilitySlot,
    ServiceOffering,
    ServiceOfferingCreateRequest,
    ServiceOfferingUpdateRequest,
)
from eve_booking.routers.bookings import _raise_booking_http_error
from eve_booking.services.reservation_store import reservation_store

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("/{provider_id}", response_model=ProviderCalendarProfile)
def get_provider_profile(provider_id: str):
    try:
        return reservation_store.get_provider_profile(provider_id)
    except BookingError as exc:
        _raise_booking_http_error(exc)


@router.put("/{provider_id}", response_model=ProviderCalendarProfile)
def upsert_provider_profile(provider_id: str, request: ProviderProfileUpsertRequest):
    try:
        return reservation_store.upsert_provider_profile(provider_id, request)
    except BookingError as exc:
        _raise_booking_http_error(exc)


@router.get("/{provider_id}/offerings", response_model=list[ServiceOffering])
def list_provider_offerings(provider_id: str, include_inactive: bool = Query(default=False)):
    return reservation_store.list_offerings(provider_id, include_inactive=include_inactive)


@router.post("/{provider_id}/offerings", response_model=ServiceOffering)
def create_provider_offering(provider_id: str, request: ServiceOfferingCreateRequest):
    try:
        return reservation_store.create_offering(provider_id, request)
    except BookingError as exc:
        _raise_booking_http_error(exc)


@router.post("/{provider_id}/offerings/{offering_id}/update", response_model=ServiceOffering)
def update_provider_offering(provider_id: str, offering_id: str, request: ServiceOfferingUpdateRequest):
    try:
        if reservation_store.get_offering(offering_id).provider_id != provider_id:
            raise HTTPException(status_code=404, detail="Service offering not found")
        return reservation_store.update_offering(offering_id, request)
    except BookingError as exc:
        _raise_booking_http_error(exc)


@router.get("/{provider_id}/availability", response_model=list[ServiceAvailabilitySlot])
def provider_availability(
    provider_id: str,
    date: str = Query(...),
    service_offering_id: str = Query(...),
):
    try:
        return reservation_store.get_availability(provider_id, service_offering_id, date)
    except BookingError as exc:
        _raise_booking_http_error(exc)


@router.get("/{provider_id}/reservations", response_model=list[ReservationInterval])
def provider_reservations(provider_id: str, date: str = Query(...)):
    try:
        return reservation_store.list_active_intervals(provider_id, date)
    except BookingError as exc:
        _raise_booking_http_error(exc)


@router.post("/{provider_id}/blackouts", response_model=ProviderBlackout)
def create_provider_blackout(provider_id: str, request: ProviderBlackoutRequest):
    try:
        return reservation_store.create_blackout(provider_id, request)
    except BookingError as exc:
        _raise_booking_http_error(exc)


@router.get("/{provider_id}/blackouts", response_model=list[ProviderBlackout])
def list_provider_blackouts(provider_id: str, date: Optional[str] = Query(default=None)):
    try:
        return reservation_store.list_blackouts(provider_id, slot_date=date)
    except BookingError as exc:
        _raise_booking_http_error(exc)


@router.delete("/{provider_id}/blackouts/{blackout_id}")
def delete_provider_blackout(provider_id: str, blackout_id: str, actor_user_id: str = Query(...)):
    try:
        reservation_store.delete_blackout(provider_id, blackout_id, actor_user_id)
    except BookingError as exc:
        _raise_booking_http_error(exc)
    return {"status": "deleted", "blackout_id": blackout_id}
