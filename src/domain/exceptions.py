class TicketingError(Exception):
    """
    Base exception for all domain-level errors
    inside the ticketing engine.
    """


# -----------------------------
# Categories
# -----------------------------
class NotFoundError(TicketingError):
    """Hold or booking absent. An expected outcome, not a bug."""


class ConflictError(TicketingError):
    """Request conflicts with the current inventory or booking state."""


class ForbiddenError(TicketingError):
    """Requesting user does not own the resource."""


class ExternalDependencyError(TicketingError):
    """Payment provider unreachable, unconfigured or untrusted."""


class InternalError(TicketingError):
    """Transaction failure inside the engine."""


# -----------------------------
# Not found
# -----------------------------
class HoldNotFoundError(NotFoundError):
    def __init__(self, hold_id: str):
        self.hold_id = hold_id
        super().__init__("Hold not found or has expired")


class BookingNotFoundError(NotFoundError):
    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__("Booking not found")


class EventNotFoundError(NotFoundError):
    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__("Event not found")


# -----------------------------
# Conflict
# -----------------------------
class EventNotBookableError(ConflictError):
    def __init__(self, event_id: str, status: str):
        self.event_id = event_id
        self.status = status
        super().__init__(f"Event is not open for bookings (status {status})")


class TicketTypeMismatchError(ConflictError):
    def __init__(self, ticket_type_id: str, event_id: str):
        self.ticket_type_id = ticket_type_id
        self.event_id = event_id
        super().__init__(
            f"Ticket type {ticket_type_id} does not belong to event {event_id}"
        )


class InsufficientInventoryError(ConflictError):
    """Raised when fewer tickets remain than requested."""

    def __init__(self, ticket_type_id: str, available: int, requested: int):
        self.ticket_type_id = ticket_type_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Not enough tickets available. "
            f"Available: {available}, Requested: {requested}"
        )


class FulfillmentInventoryConflictError(ConflictError):
    """
    Payment was captured but inventory vanished before the booking
    could be committed. Requires operator reconciliation.
    """

    def __init__(self, hold_id: str, ticket_type_id: str, payment_reference: str | None):
        self.hold_id = hold_id
        self.ticket_type_id = ticket_type_id
        self.payment_reference = payment_reference
        super().__init__(
            f"Inventory for ticket type {ticket_type_id} exhausted while fulfilling "
            f"hold {hold_id} (payment {payment_reference}); reconciliation required"
        )


class HoldInUseError(ConflictError):
    def __init__(self, hold_id: str):
        self.hold_id = hold_id
        super().__init__("Hold is already being converted into a booking")


class AlreadyCancelledError(ConflictError):
    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__("Booking is already cancelled")


class AlreadyCompletedError(ConflictError):
    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__("Cannot cancel completed booking")


class InvalidStateTransitionError(ConflictError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


# -----------------------------
# Forbidden
# -----------------------------
class NotHoldOwnerError(ForbiddenError):
    def __init__(self, hold_id: str):
        self.hold_id = hold_id
        super().__init__("This hold does not belong to you")


class NotBookingOwnerError(ForbiddenError):
    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__("This booking does not belong to you")


# -----------------------------
# External dependency
# -----------------------------
class PaymentProviderUnavailableError(ExternalDependencyError):
    """Provider keys missing or the provider call failed."""


class InvalidSignatureError(ExternalDependencyError):
    """Webhook payload could not be verified. Never partially processed."""


# -----------------------------
# Internal
# -----------------------------
class FulfillmentFailedError(InternalError):
    def __init__(self, hold_id: str):
        self.hold_id = hold_id
        super().__init__(f"Booking transaction failed for hold {hold_id}; hold kept for retry")


class CancellationFailedError(InternalError):
    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__(f"Cancellation transaction failed for booking {booking_id}")
