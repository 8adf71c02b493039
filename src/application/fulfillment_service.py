from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import json
import logging
import secrets
import string
import time
from typing import Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.application.views import BookingView
from src.domain.exceptions import (
    FulfillmentFailedError,
    FulfillmentInventoryConflictError,
    HoldInUseError,
    HoldNotFoundError,
    InsufficientInventoryError,
    NotHoldOwnerError,
)
from src.domain.hold import Hold, HoldLineItem
from src.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    PaymentStatus,
    TicketStatus,
)
from src.infrastructure import config
from src.infrastructure.db.models import Booking, Ticket
from src.infrastructure.hold_store import RedisHoldStore
from src.infrastructure.notifications import EmailDispatcher, RedisBroadcaster
from src.infrastructure.repositories.booking_repository import BookingRepository, TicketRepository
from src.infrastructure.repositories.outbox_repository import OutboxRepository
from src.infrastructure.repositories.ticket_type_repository import TicketTypeRepository

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_BASE36_DIGITS = string.digits + string.ascii_uppercase


class FulfillmentOutcome(str, Enum):
    CREATED = "CREATED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class FulfillmentResult:
    outcome: FulfillmentOutcome
    hold_id: str
    booking_code: str | None = None
    bookings: tuple[BookingView, ...] = field(default=())

    @classmethod
    def skipped(cls, hold_id: str) -> "FulfillmentResult":
        return cls(outcome=FulfillmentOutcome.SKIPPED, hold_id=hold_id)


class FulfillmentService:
    """
    Converts a hold into bookings and tickets, exactly once per hold.

    Order of operations:
      1. the hold must still exist, and this caller must win the claim on it;
      2. one transaction locks each ticket type row, re-checks `available`,
         decrements it and inserts bookings and tickets;
      3. only after commit is the hold deleted and the outside world told.

    A failed transaction leaves the hold in place so the provider's retry
    can fulfill it later.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        hold_store: RedisHoldStore,
        broadcaster: RedisBroadcaster,
        email_dispatcher: EmailDispatcher,
        claim_ttl_seconds: int = config.FULFILLMENT_CLAIM_TTL_SECONDS,
    ):
        self.session_factory = session_factory
        self.hold_store = hold_store
        self.broadcaster = broadcaster
        self.email_dispatcher = email_dispatcher
        self.claim_ttl_seconds = claim_ttl_seconds

    # -----------------------------
    # Asynchronous (payment confirmed)
    # -----------------------------
    def fulfill(
        self,
        hold_id: str,
        user_id: str,
        line_items: Sequence[HoldLineItem] | None,
        payment_reference: str,
    ) -> FulfillmentResult:
        hold = self.hold_store.get(hold_id)
        if hold is None:
            logger.info(
                "Fulfillment skipped: hold %s already processed or expired (payment %s).",
                hold_id,
                payment_reference,
            )
            return FulfillmentResult.skipped(hold_id)

        if hold.user_id != user_id:
            logger.warning(
                "Payment %s metadata names user %s but hold %s belongs to %s; using hold owner.",
                payment_reference,
                user_id,
                hold_id,
                hold.user_id,
            )

        if not self.hold_store.claim(hold_id, self.claim_ttl_seconds):
            logger.info(
                "Fulfillment skipped: hold %s is being fulfilled by a concurrent callback (payment %s).",
                hold_id,
                payment_reference,
            )
            return FulfillmentResult.skipped(hold_id)

        items = list(line_items) if line_items else list(hold.line_items)
        try:
            result = self._commit(
                hold=hold,
                line_items=items,
                payment_reference=payment_reference,
                payment_status=PaymentStatus.PAID,
            )
        except InsufficientInventoryError as exc:
            self.hold_store.release_claim(hold_id)
            self._flag_for_reconciliation(hold, exc, payment_reference)
            raise FulfillmentInventoryConflictError(
                hold_id=hold_id,
                ticket_type_id=exc.ticket_type_id,
                payment_reference=payment_reference,
            ) from exc
        except Exception:
            self.hold_store.release_claim(hold_id)
            raise

        self.hold_store.release_claim(hold_id)
        return result

    # -----------------------------
    # Synchronous (create booking from hold)
    # -----------------------------
    def create_booking_from_hold(self, hold_id: str, user_id: str) -> FulfillmentResult:
        hold = self.hold_store.get(hold_id)
        if hold is None:
            raise HoldNotFoundError(hold_id)
        if hold.user_id != user_id:
            raise NotHoldOwnerError(hold_id)

        if not self.hold_store.claim(hold_id, self.claim_ttl_seconds):
            raise HoldInUseError(hold_id)

        try:
            result = self._commit(
                hold=hold,
                line_items=list(hold.line_items),
                payment_reference=None,
                payment_status=PaymentStatus.PENDING,
            )
        finally:
            self.hold_store.release_claim(hold_id)

        if result.outcome == FulfillmentOutcome.SKIPPED:
            raise HoldNotFoundError(hold_id)
        return result

    # -----------------------------
    # Shared commit
    # -----------------------------
    def _commit(
        self,
        hold: Hold,
        line_items: list[HoldLineItem],
        payment_reference: str | None,
        payment_status: PaymentStatus,
    ) -> FulfillmentResult:
        booking_code = generate_booking_code()
        availability: list[tuple[str, int]] = []

        try:
            with self.session_factory() as db, db.begin():
                ticket_types = TicketTypeRepository(db)
                bookings = BookingRepository(db)
                tickets = TicketRepository(db)
                views: list[BookingView] = []

                # Row locks are always taken in id order so concurrent holds cannot deadlock.
                locked = {
                    ticket_type_id: ticket_types.lock_ticket_type(ticket_type_id)
                    for ticket_type_id in sorted({item.ticket_type_id for item in line_items})
                }

                for item in line_items:
                    ticket_type = locked[item.ticket_type_id]
                    available = ticket_type.available if ticket_type is not None else 0
                    if available < item.quantity:
                        # Raising inside the transaction rolls back every earlier line item.
                        raise InsufficientInventoryError(item.ticket_type_id, available, item.quantity)

                    ticket_types.decrement_available(ticket_type, item.quantity)

                    booking = bookings.create_booking(
                        user_id=hold.user_id,
                        event_id=hold.event_id,
                        ticket_type_id=item.ticket_type_id,
                        quantity=item.quantity,
                        total_amount=item.subtotal,
                        booking_code=booking_code,
                        hold_id=hold.hold_id,
                        payment_reference=payment_reference,
                        payment_status=payment_status,
                    )
                    BookingStateMachine.validate_transition(booking.status, BookingStatus.CONFIRMED)
                    bookings.update_status(booking, BookingStatus.CONFIRMED)
                    db.flush()

                    minted = [_mint_ticket(booking) for _ in range(item.quantity)]
                    tickets.create_tickets(minted)
                    db.flush()

                    views.append(BookingView.from_model(booking, minted))
                    availability.append((item.ticket_type_id, ticket_type.available))
        except InsufficientInventoryError:
            raise
        except IntegrityError as exc:
            if self._already_fulfilled(hold.hold_id):
                logger.info(
                    "Fulfillment skipped: hold %s was committed by a concurrent request.",
                    hold.hold_id,
                )
                self._discard_hold(hold.hold_id)
                return FulfillmentResult.skipped(hold.hold_id)
            logger.exception("Booking transaction failed for hold %s; hold kept.", hold.hold_id)
            raise FulfillmentFailedError(hold.hold_id) from exc
        except SQLAlchemyError as exc:
            logger.exception("Booking transaction failed for hold %s; hold kept.", hold.hold_id)
            raise FulfillmentFailedError(hold.hold_id) from exc

        logger.info(
            "Booking %s created for hold %s (payment %s, %s line item(s)).",
            booking_code,
            hold.hold_id,
            payment_reference,
            len(views),
        )

        self._discard_hold(hold.hold_id)
        self._announce(hold, booking_code, views, availability)

        return FulfillmentResult(
            outcome=FulfillmentOutcome.CREATED,
            hold_id=hold.hold_id,
            booking_code=booking_code,
            bookings=tuple(views),
        )

    def _already_fulfilled(self, hold_id: str) -> bool:
        with self.session_factory() as db:
            return bool(BookingRepository(db).list_by_hold_id(hold_id))

    def _discard_hold(self, hold_id: str) -> None:
        try:
            self.hold_store.delete(hold_id)
        except Exception:
            # The unique (hold_id, ticket_type_id) constraint still stops a second booking.
            logger.exception("Could not delete consumed hold %s; it will expire.", hold_id)

    def _announce(
        self,
        hold: Hold,
        booking_code: str,
        views: list[BookingView],
        availability: list[tuple[str, int]],
    ) -> None:
        for view in views:
            self.broadcaster.notify_booking_created(hold.user_id, view.to_message())
        for ticket_type_id, available in availability:
            self.broadcaster.notify_availability_changed(hold.event_id, ticket_type_id, available)

        self.email_dispatcher.enqueue(
            event_type=EmailDispatcher.BOOKING_CONFIRMATION,
            aggregate_id=booking_code,
            payload={
                "user_id": hold.user_id,
                "event_id": hold.event_id,
                "booking_code": booking_code,
                "bookings": [view.to_message() for view in views],
                "total_amount": str(sum(view.total_amount for view in views)),
            },
            dedupe_key=f"booking:{booking_code}:confirmation",
        )
        self.email_dispatcher.enqueue(
            event_type=EmailDispatcher.TICKETS,
            aggregate_id=booking_code,
            payload={
                "user_id": hold.user_id,
                "event_id": hold.event_id,
                "booking_code": booking_code,
                "tickets": [
                    {
                        "ticket_code": ticket.ticket_code,
                        "ticket_type_id": view.ticket_type_id,
                        "validation_payload": ticket.validation_payload,
                    }
                    for view in views
                    for ticket in view.tickets
                ],
            },
            dedupe_key=f"booking:{booking_code}:tickets",
        )

    def _flag_for_reconciliation(
        self,
        hold: Hold,
        exc: InsufficientInventoryError,
        payment_reference: str,
    ) -> None:
        logger.error(
            "RECONCILIATION REQUIRED: payment %s captured for hold %s but ticket type %s "
            "has %s left of %s requested. No booking created.",
            payment_reference,
            hold.hold_id,
            exc.ticket_type_id,
            exc.available,
            exc.requested,
        )
        try:
            with self.session_factory() as db, db.begin():
                OutboxRepository(db).add_event(
                    aggregate_type="hold",
                    aggregate_id=hold.hold_id,
                    event_type="PAYMENT_RECONCILIATION_REQUIRED",
                    payload={
                        "hold_id": hold.hold_id,
                        "user_id": hold.user_id,
                        "event_id": hold.event_id,
                        "payment_reference": payment_reference,
                        "ticket_type_id": exc.ticket_type_id,
                        "available": exc.available,
                        "requested": exc.requested,
                        "total_amount": str(hold.total_amount),
                    },
                    dedupe_key=f"hold:{hold.hold_id}:reconciliation:{payment_reference}",
                )
        except SQLAlchemyError:
            logger.exception(
                "Could not record reconciliation entry for hold %s (payment %s).",
                hold.hold_id,
                payment_reference,
            )


def _random_code(length: int) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def _base36(value: int) -> str:
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits)) or "0"


def generate_booking_code() -> str:
    return f"BK-{_base36(int(time.time() * 1000))}-{_random_code(5)}"


def generate_ticket_code() -> str:
    return f"TIX-{_base36(int(time.time() * 1000))}-{_random_code(8)}"


def _mint_ticket(booking: Booking) -> Ticket:
    ticket_code = generate_ticket_code()
    payload = json.dumps(
        {
            "booking_id": booking.id,
            "ticket_code": ticket_code,
            "ticket_type_id": booking.ticket_type_id,
            "event_id": booking.event_id,
            "issued_at": datetime.now(timezone.utc).isoformat(),
        },
        sort_keys=True,
    )
    return Ticket(
        booking_id=booking.id,
        user_id=booking.user_id,
        event_id=booking.event_id,
        ticket_type_id=booking.ticket_type_id,
        ticket_code=ticket_code,
        validation_payload=payload,
        status=TicketStatus.VALID,
    )
