from typing import Optional


class BookingError(ValueError):
    """Base class for user-visible booking errors."""


class BookingValidationError(BookingError):
    pass


class BookingNotFoundError(BookingError):
    pass


class BookingPermissionError(BookingError):
    pass


class BookingStateError(BookingError):
    """Raised for status transitions the reservation lifecycle does not allow."""


class SlotConflictError(BookingError):
    """The requested interval is already taken by another active reservation."""

    def __init__(
        self,
        message: str = "Slot no longer available",
        reason: str = "booked",
        outcomes: Optional[list] = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.outcomes = outcomes or []


class PolicyViolationError(BookingError):
    """The requested time falls outside the provider's booking window."""

    def __init__(self, message: str, reason: str = "policy") -> None:
        super().__init__(message)
        self.reason = reason


class PaymentError(BookingError):
    pass


class WorkflowBusyError(BookingError):
    pass
