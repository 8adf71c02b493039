# src/infrastructure/repositories/booking_repository.py

from decimal import Decimal

from sqlalchemy.orm import Session, selectinload
from sqlalchemy import func, select, update

from src.infrastructure.db.models import Booking, Ticket
from src.domain.state_machine import BookingStatus, PaymentStatus, TicketStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
        with_tickets: bool = False,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        if with_tickets:
            stmt = stmt.options(selectinload(Booking.tickets))
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_booking(self, booking_id: str) -> Booking | None:
        stmt = select(Booking).where(Booking.id == booking_id).with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def list_by_hold_id(self, hold_id: str) -> list[Booking]:
        stmt = select(Booking).where(Booking.hold_id == hold_id).order_by(Booking.created_at)
        return list(self.db.execute(stmt).scalars().all())

    def list_for_user(
        self,
        user_id: str,
        offset: int,
        limit: int,
    ) -> tuple[list[Booking], int]:
        stmt = (
            select(Booking)
            .where(Booking.user_id == user_id)
            .order_by(Booking.created_at.desc(), Booking.id)
            .offset(offset)
            .limit(limit)
        )
        count_stmt = select(func.count()).select_from(Booking).where(Booking.user_id == user_id)
        bookings = list(self.db.execute(stmt).scalars().all())
        total = self.db.execute(count_stmt).scalar_one()
        return bookings, total

    def create_booking(
        self,
        user_id: str,
        event_id: str,
        ticket_type_id: str,
        quantity: int,
        total_amount: Decimal,
        booking_code: str,
        hold_id: str,
        payment_reference: str | None,
        payment_status: PaymentStatus,
    ) -> Booking:

        booking = Booking(
            user_id=user_id,
            event_id=event_id,
            ticket_type_id=ticket_type_id,
            quantity=quantity,
            total_amount=total_amount,
            booking_code=booking_code,
            hold_id=hold_id,
            payment_reference=payment_reference,
            payment_status=payment_status,
            status=BookingStatus.PENDING,
        )

        self.db.add(booking)
        return booking

    def update_status(
        self,
        booking: Booking,
        new_status: BookingStatus,
    ) -> None:

        booking.status = new_status

    def update_payment_status(
        self,
        booking: Booking,
        new_status: PaymentStatus,
    ) -> None:

        booking.payment_status = new_status


class TicketRepository:

    def __init__(self, db: Session):
        self.db = db

    def create_tickets(self, tickets: list[Ticket]) -> None:
        self.db.add_all(tickets)

    def cancel_for_booking(self, booking_id: str) -> int:
        stmt = (
            update(Ticket)
            .where(Ticket.booking_id == booking_id)
            .where(Ticket.status != TicketStatus.CANCELLED)
            .values(status=TicketStatus.CANCELLED)
            .execution_options(synchronize_session="fetch")
        )
        return self.db.execute(stmt).rowcount
