from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from src.infrastructure.db.models import Booking, Ticket


@dataclass(frozen=True)
class TicketView:
    id: str
    ticket_code: str
    validation_payload: str
    status: str

    @classmethod
    def from_model(cls, ticket: Ticket) -> "TicketView":
        return cls(
            id=ticket.id,
            ticket_code=ticket.ticket_code,
            validation_payload=ticket.validation_payload,
            status=ticket.status.value,
        )


@dataclass(frozen=True)
class BookingView:
    id: str
    user_id: str
    event_id: str
    ticket_type_id: str
    quantity: int
    total_amount: Decimal
    booking_code: str
    hold_id: str
    payment_reference: str | None
    payment_status: str
    status: str
    created_at: datetime | None
    tickets: tuple[TicketView, ...] = field(default=())

    @classmethod
    def from_model(
        cls,
        booking: Booking,
        tickets: list[Ticket] | None = None,
    ) -> "BookingView":
        return cls(
            id=booking.id,
            user_id=booking.user_id,
            event_id=booking.event_id,
            ticket_type_id=booking.ticket_type_id,
            quantity=booking.quantity,
            total_amount=Decimal(booking.total_amount),
            booking_code=booking.booking_code,
            hold_id=booking.hold_id,
            payment_reference=booking.payment_reference,
            payment_status=booking.payment_status.value,
            status=booking.status.value,
            created_at=booking.created_at,
            tickets=tuple(TicketView.from_model(ticket) for ticket in tickets or []),
        )

    def to_message(self) -> dict:
        return {
            "id": self.id,
            "booking_code": self.booking_code,
            "event_id": self.event_id,
            "ticket_type_id": self.ticket_type_id,
            "quantity": self.quantity,
            "total_amount": str(self.total_amount),
            "status": self.status,
            "payment_status": self.payment_status,
        }
