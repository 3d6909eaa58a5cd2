import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence

from eve_booking.errors import BookingValidationError
from eve_booking.models import PriceBreakdown, ProviderCalendarProfile, Reservation

RECURRING_DISCOUNT_RATE = Decimal("0.10")


@dataclass(frozen=True)
class TravelFeeTier:
    max_miles: float
    fee: int


# Platform-wide travel fees in minor units, looked up by distance.
TRAVEL_FEE_TIERS: Sequence[TravelFeeTier] = (
    TravelFeeTier(max_miles=5, fee=0),
    TravelFeeTier(max_miles=10, fee=1000),
    TravelFeeTier(max_miles=15, fee=2000),
    TravelFeeTier(max_miles=25, fee=3500),
    TravelFeeTier(max_miles=math.inf, fee=5000),
)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def recurring_discount(base_price: int, recurring: bool) -> int:
    if not recurring:
        return 0
    return round_half_up(Decimal(base_price) * RECURRING_DISCOUNT_RATE)


def tier_fee(distance_miles: float, tiers: Sequence[TravelFeeTier] = TRAVEL_FEE_TIERS) -> int:
    if distance_miles < 0:
        raise BookingValidationError("distance_miles cannot be negative")
    for tier in tiers:
        if distance_miles <= tier.max_miles:
            return tier.fee
    return tiers[-1].fee


def travel_fee_for(
    profile: ProviderCalendarProfile,
    distance_miles: Optional[float] = None,
    tiers: Sequence[TravelFeeTier] = TRAVEL_FEE_TIERS,
) -> int:
    """Travel fee for a visit.

    A known distance inside the provider's free radius costs nothing and is
    otherwise priced from the tier table. An unknown distance falls back to the
    provider's flat estimate, priced per mile when the provider sets a per-mile
    rate and from the tier table otherwise.
    """
    if distance_miles is None:
        estimate = profile.estimated_distance_miles
        if profile.travel_fee_per_mile > 0:
            return round_half_up(Decimal(profile.travel_fee_per_mile) * Decimal(str(estimate)))
        distance_miles = estimate
    if distance_miles < 0:
        raise BookingValidationError("distance_miles cannot be negative")
    if distance_miles <= profile.free_travel_radius_miles:
        return 0
    return tier_fee(distance_miles, tiers)


def calculate_total(base_price: int, travel_fee: int, recurring: bool) -> PriceBreakdown:
    if base_price < 0 or travel_fee < 0:
        raise BookingValidationError("Prices must be non-negative minor-unit amounts")
    discount = recurring_discount(base_price, recurring)
    return PriceBreakdown(
        base_price=base_price,
        travel_fee=travel_fee,
        recurring_discount=discount,
        total_price=base_price + travel_fee - discount,
    )


def rederive_price(reservation: Reservation) -> PriceBreakdown:
    """Recompute a reservation's price from its own snapshot fields only."""
    return calculate_total(
        base_price=reservation.base_price,
        travel_fee=reservation.travel_fee,
        recurring=reservation.series_id is not None,
    )
