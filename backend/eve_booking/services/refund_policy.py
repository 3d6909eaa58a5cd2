from datetime import datetime
from typing import Optional

from eve_booking.errors import BookingValidationError
from eve_booking.models import CancellationPolicy, RefundDecision

POLICY_PRESETS = {
    "flexible": CancellationPolicy(policy_class="flexible", notice_hours=24, late_fee_percent=50),
    "moderate": CancellationPolicy(policy_class="moderate", notice_hours=48, late_fee_percent=50),
    "strict": CancellationPolicy(policy_class="strict", notice_hours=72, late_fee_percent=100),
}


def policy_for(
    policy_class: str,
    notice_hours: Optional[int] = None,
    late_fee_percent: Optional[int] = None,
) -> CancellationPolicy:
    preset = POLICY_PRESETS.get(policy_class)
    if preset is None:
        raise BookingValidationError("cancellation policy must be flexible, moderate or strict")
    overrides = {}
    if notice_hours is not None:
        overrides["notice_hours"] = notice_hours
    if late_fee_percent is not None:
        overrides["late_fee_percent"] = late_fee_percent
    return preset.model_copy(update=overrides)


def evaluate_refund(
    appointment_start: datetime,
    cancelled_at: datetime,
    policy: CancellationPolicy,
    total_price: int = 0,
) -> RefundDecision:
    """Refund owed for cancelling at ``cancelled_at``.

    Notice of at least ``notice_hours`` refunds in full, notice of at least
    half of it refunds everything but the late fee, anything shorter refunds
    nothing. A cancellation at or after the start counts as a no-show.
    """
    hours_before = (appointment_start - cancelled_at).total_seconds() / 3600
    if hours_before <= 0:
        percent, tier = 0, "no_show"
    elif hours_before >= policy.notice_hours:
        percent, tier = 100, "full"
    elif hours_before >= policy.notice_hours / 2:
        percent = 100 - policy.late_fee_percent
        tier = "partial" if percent > 0 else "none"
    else:
        percent, tier = 0, "none"
    return RefundDecision(
        refund_percent=percent,
        refund_amount=total_price * percent // 100,
        tier=tier,
        hours_before_start=round(hours_before, 2),
    )
