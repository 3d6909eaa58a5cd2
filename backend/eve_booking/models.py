from typing import Literal, Optional

from pydantic import BaseModel, Field

from eve_booking.config import (
    DEFAULT_GRANULARITY_MINUTES,
    DEFAULT_MAX_ADVANCE_DAYS,
    DEFAULT_MIN_NOTICE_HOURS,
)

ReservationStatus = Literal["pending", "confirmed", "completed", "cancelled"]
RecurrenceFrequency = Literal["weekly", "biweekly", "monthly"]
CancellationPolicyClass = Literal["flexible", "moderate", "strict"]
SlotUnavailableReason = Literal["booked", "blackout", "notice", "lookahead", "closing"]


class ServiceOffering(BaseModel):
    id: str
    provider_id: str
    name: str
    base_price: int = Field(ge=0)
    duration_minutes: int = Field(gt=0)
    active: bool = True


class CancellationPolicy(BaseModel):
    policy_class: CancellationPolicyClass = "flexible"
    notice_hours: int = Field(default=24, gt=0)
    late_fee_percent: int = Field(default=50, ge=0, le=100)


class WeekdayHours(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    is_available: bool = True
    start_time: str = Field(default="09:00", pattern=r"^\d{2}:\d{2}$")
    end_time: str = Field(default="19:00", pattern=r"^\d{2}:\d{2}$")


class ProviderCalendarProfile(BaseModel):
    provider_id: str
    owner_user_id: str
    business_name: str = ""
    start_hour: int = Field(default=9, ge=0, le=23)
    end_hour: int = Field(default=19, ge=1, le=24)
    granularity_minutes: int = Field(default=DEFAULT_GRANULARITY_MINUTES, gt=0)
    working_days: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4, 5])
    # Weekdays (Monday = 0) listed here override the shared hours and working_days.
    weekly_hours: list[WeekdayHours] = Field(default_factory=list)
    free_travel_radius_miles: float = Field(default=5.0, ge=0)
    travel_fee_per_mile: int = Field(default=0, ge=0)
    estimated_distance_miles: float = Field(default=5.0, ge=0)
    max_advance_days: int = Field(default=DEFAULT_MAX_ADVANCE_DAYS, gt=0)
    min_notice_hours: int = Field(default=DEFAULT_MIN_NOTICE_HOURS, ge=0)
    cancellation_policy: CancellationPolicy = Field(default_factory=CancellationPolicy)


class ProviderProfileUpsertRequest(BaseModel):
    actor_user_id: str
    business_name: str = ""
    start_hour: int = Field(default=9, ge=0, le=23)
    end_hour: int = Field(default=19, ge=1, le=24)
    granularity_minutes: int = Field(default=DEFAULT_GRANULARITY_MINUTES, gt=0)
    working_days: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4, 5])
    weekly_hours: list[WeekdayHours] = Field(default_factory=list)
    free_travel_radius_miles: float = Field(default=5.0, ge=0)
    travel_fee_per_mile: int = Field(default=0, ge=0)
    estimated_distance_miles: float = Field(default=5.0, ge=0)
    max_advance_days: int = Field(default=DEFAULT_MAX_ADVANCE_DAYS, gt=0)
    min_notice_hours: int = Field(default=DEFAULT_MIN_NOTICE_HOURS, ge=0)
    cancellation_policy_class: CancellationPolicyClass = "flexible"
    cancellation_notice_hours: Optional[int] = Field(default=None, gt=0)
    late_fee_percent: Optional[int] = Field(default=None, ge=0, le=100)


class ServiceOfferingCreateRequest(BaseModel):
    actor_user_id: str
    name: str
    base_price: int = Field(ge=0)
    duration_minutes: int = Field(gt=0)


class ServiceOfferingUpdateRequest(BaseModel):
    actor_user_id: str
    name: Optional[str] = None
    base_price: Optional[int] = Field(default=None, ge=0)
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    active: Optional[bool] = None


class ProviderBlackoutRequest(BaseModel):
    actor_user_id: str
    date: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    reason: str = ""


class ProviderBlackout(BaseModel):
    id: str
    provider_id: str
    date: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    reason: str = ""


class ServiceAvailabilitySlot(BaseModel):
    date: str
    time_slot: str
    available: bool
    reason: Optional[SlotUnavailableReason] = None


class ReservationInterval(BaseModel):
    start_time: str
    duration_minutes: int


class PriceBreakdown(BaseModel):
    base_price: int
    travel_fee: int
    recurring_discount: int = 0
    total_price: int


class QuoteRequest(BaseModel):
    provider_id: str
    service_offering_id: str
    is_recurring: bool = False
    distance_miles: Optional[float] = Field(default=None, ge=0)


class Reservation(BaseModel):
    id: str
    provider_id: str
    service_offering_id: str
    customer_id: str
    date: str
    start_time: str
    duration_minutes: int
    status: ReservationStatus
    base_price: int
    travel_fee: int
    total_price: int
    series_id: Optional[str] = None
    occurrence_index: Optional[int] = None
    address: str = ""
    notes: str = ""
    payment_reference: Optional[str] = None
    created_at: str

    def price_breakdown(self) -> "PriceBreakdown":
        from eve_booking.services.pricing import rederive_price

        return rederive_price(self)


class RecurringSeries(BaseModel):
    id: str
    anchor_reservation_id: str
    frequency: RecurrenceFrequency
    occurrence_count: int
    discount_rate: float = 0.10
    created_at: str


class RecurringSeriesView(BaseModel):
    series: RecurringSeries
    reservations: list[Reservation]


class ReservationCreateRequest(BaseModel):
    provider_id: str
    service_offering_id: str
    customer_id: str = "guest_user"
    date: str
    start_time: str
    address: str
    notes: str = ""
    is_recurring: bool = False
    frequency: Optional[RecurrenceFrequency] = None
    occurrence_count: Optional[int] = None
    distance_miles: Optional[float] = Field(default=None, ge=0)


class OccurrenceOutcome(BaseModel):
    occurrence_index: int
    date: str
    start_time: str
    status: Literal["booked", "conflict", "policy_violation"]
    reservation_id: Optional[str] = None
    total_price: Optional[int] = None
    travel_fee: Optional[int] = None
    reason: Optional[str] = None
    message: str = ""


class SeriesCreationResult(BaseModel):
    series_id: Optional[str] = None
    frequency: RecurrenceFrequency
    occurrence_count: int
    booked_count: int
    outcomes: list[OccurrenceOutcome]


class ReservationCreated(BaseModel):
    reservation_id: str
    status: ReservationStatus = "pending"
    total_price: int
    travel_fee: int
    series: Optional[SeriesCreationResult] = None


class PaymentAttachRequest(BaseModel):
    payment_reference: str


class CancelReservationRequest(BaseModel):
    actor_user_id: str
    cancelled_at: Optional[str] = None


class RefundDecision(BaseModel):
    refund_percent: int = Field(ge=0, le=100)
    refund_amount: int = Field(ge=0)
    tier: Literal["full", "partial", "none", "no_show"]
    hours_before_start: float


class CancellationResult(BaseModel):
    reservation: Reservation
    refund: RefundDecision


class CompletionResult(BaseModel):
    completed_reservation_ids: list[str]


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["booking", "payment", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
