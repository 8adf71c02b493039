from dataclasses import dataclass
from enum import Enum
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.application.payment_service import PaymentService
from src.application.views import BookingView
from src.domain.exceptions import (
    AlreadyCancelledError,
    AlreadyCompletedError,
    BookingNotFoundError,
    CancellationFailedError,
    ExternalDependencyError,
    NotBookingOwnerError,
)
from src.domain.state_machine import BookingStateMachine, BookingStatus, PaymentStatus
from src.infrastructure.db.models import Booking
from src.infrastructure.notifications import EmailDispatcher, RedisBroadcaster
from src.infrastructure.repositories.booking_repository import BookingRepository, TicketRepository
from src.infrastructure.repositories.ticket_type_repository import TicketTypeRepository

logger = logging.getLogger(__name__)


class RefundStatus(str, Enum):
    NOT_REQUIRED = "NOT_REQUIRED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class CancellationResult:
    booking: BookingView
    refund_status: RefundStatus


class BookingService:
    """Application service for reading and cancelling bookings."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        payment_service: PaymentService,
        broadcaster: RedisBroadcaster,
        email_dispatcher: EmailDispatcher,
    ):
        self.session_factory = session_factory
        self.payment_service = payment_service
        self.broadcaster = broadcaster
        self.email_dispatcher = email_dispatcher

    def get_booking(self, booking_id: str, user_id: str) -> BookingView:
        with self.session_factory() as db:
            booking = BookingRepository(db).get_by_id(booking_id, with_tickets=True)
            if booking is None:
                raise BookingNotFoundError(booking_id)
            if booking.user_id != user_id:
                raise NotBookingOwnerError(booking_id)
            return BookingView.from_model(booking, booking.tickets)

    def list_user_bookings(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[BookingView], int]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        with self.session_factory() as db:
            bookings, total = BookingRepository(db).list_for_user(
                user_id,
                offset=(page - 1) * limit,
                limit=limit,
            )
            return [BookingView.from_model(booking) for booking in bookings], total

    def cancel(self, booking_id: str, requesting_user_id: str) -> CancellationResult:
        """
        Cancels the booking, its tickets and restores inventory in one
        transaction. The refund runs after commit and never undoes it.
        """
        try:
            with self.session_factory() as db, db.begin():
                bookings = BookingRepository(db)
                booking = bookings.lock_booking(booking_id)
                self._ensure_cancellable(booking, booking_id, requesting_user_id)

                BookingStateMachine.validate_transition(booking.status, BookingStatus.CANCELLED)
                bookings.update_status(booking, BookingStatus.CANCELLED)
                cancelled_tickets = TicketRepository(db).cancel_for_booking(booking.id)

                ticket_type = TicketTypeRepository(db).increment_available(
                    booking.ticket_type_id,
                    booking.quantity,
                )
                new_available = ticket_type.available if ticket_type is not None else None
                db.flush()
                snapshot = BookingView.from_model(booking)
        except SQLAlchemyError as exc:
            logger.exception("Cancellation transaction failed for booking %s; booking unchanged.", booking_id)
            raise CancellationFailedError(booking_id) from exc

        logger.info(
            "Booking %s (%s) cancelled: %s ticket(s) voided, %s restored to ticket type %s.",
            snapshot.id,
            snapshot.booking_code,
            cancelled_tickets,
            snapshot.quantity,
            snapshot.ticket_type_id,
        )
        if new_available is None:
            logger.warning(
                "Ticket type %s no longer exists; inventory for booking %s not restored.",
                snapshot.ticket_type_id,
                snapshot.id,
            )

        refund_status = self._refund(snapshot)
        if refund_status == RefundStatus.REFUNDED:
            snapshot = self._mark_refunded(snapshot)

        self.broadcaster.notify_booking_cancelled(snapshot.user_id, snapshot.id)
        if new_available is not None:
            self.broadcaster.notify_availability_changed(
                snapshot.event_id,
                snapshot.ticket_type_id,
                new_available,
            )
        self.email_dispatcher.enqueue(
            event_type=EmailDispatcher.BOOKING_CANCELLATION,
            aggregate_id=snapshot.id,
            payload={
                "user_id": snapshot.user_id,
                "event_id": snapshot.event_id,
                "booking_code": snapshot.booking_code,
                "refund_amount": str(snapshot.total_amount),
                "refund_status": refund_status.value,
            },
            dedupe_key=f"booking:{snapshot.id}:cancellation",
        )

        return CancellationResult(booking=snapshot, refund_status=refund_status)

    @staticmethod
    def _ensure_cancellable(
        booking: Booking | None,
        booking_id: str,
        requesting_user_id: str,
    ) -> None:
        if booking is None:
            raise BookingNotFoundError(booking_id)
        if booking.user_id != requesting_user_id:
            raise NotBookingOwnerError(booking_id)
        if booking.status == BookingStatus.CANCELLED:
            raise AlreadyCancelledError(booking_id)
        if booking.status == BookingStatus.COMPLETED:
            raise AlreadyCompletedError(booking_id)

    def _refund(self, booking: BookingView) -> RefundStatus:
        if booking.payment_status != PaymentStatus.PAID.value or not booking.payment_reference:
            return RefundStatus.NOT_REQUIRED

        try:
            self.payment_service.refund(booking.payment_reference, booking.total_amount)
        except ExternalDependencyError:
            # Cancellation stays committed; failed refunds need the reconciliation process.
            logger.exception(
                "Refund failed for booking %s (payment %s, amount %s).",
                booking.booking_code,
                booking.payment_reference,
                booking.total_amount,
            )
            return RefundStatus.FAILED

        logger.info("Refund processed for booking %s", booking.booking_code)
        return RefundStatus.REFUNDED

    def _mark_refunded(self, booking: BookingView) -> BookingView:
        try:
            with self.session_factory() as db, db.begin():
                bookings = BookingRepository(db)
                row = bookings.lock_booking(booking.id)
                bookings.update_payment_status(row, PaymentStatus.REFUNDED)
                db.flush()
                return BookingView.from_model(row)
        except SQLAlchemyError:
            logger.exception(
                "Refund for booking %s succeeded but payment status could not be updated.",
                booking.booking_code,
            )
            return booking
