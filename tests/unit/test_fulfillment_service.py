import json
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from src.application.fulfillment_service import (
    FulfillmentOutcome,
    generate_booking_code,
    generate_ticket_code,
)
from src.domain.exceptions import (
    FulfillmentFailedError,
    FulfillmentInventoryConflictError,
    HoldInUseError,
    HoldNotFoundError,
    NotHoldOwnerError,
)
from src.domain.state_machine import BookingStatus, PaymentStatus, TicketStatus
from src.infrastructure.db.models import Booking, OutboxEvent, Ticket, TicketType
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.ticket_type_repository import TicketTypeRepository


def _available(session_factory, ticket_type_id):
    with session_factory() as db:
        return db.get(TicketType, ticket_type_id).available


def _count(session_factory, model):
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


def test_fulfill_creates_confirmed_booking_and_tickets(
    fulfillment_service, hold_service, hold_store, session_factory, event
):
    hold = hold_service.create_hold("user-1", event.id, [(event.general, 3), (event.vip, 1)])

    result = fulfillment_service.fulfill(hold.hold_id, "user-1", None, "pay_001")

    assert result.outcome == FulfillmentOutcome.CREATED
    assert result.booking_code.startswith("BK-")
    assert {view.booking_code for view in result.bookings} == {result.booking_code}
    assert all(view.status == BookingStatus.CONFIRMED.value for view in result.bookings)
    assert all(view.payment_status == PaymentStatus.PAID.value for view in result.bookings)

    assert _available(session_factory, event.general) == 7
    assert _available(session_factory, event.vip) == 4
    assert _count(session_factory, Ticket) == 4
    assert hold_store.get(hold.hold_id) is None

    with session_factory() as db:
        bookings = BookingRepository(db).list_by_hold_id(hold.hold_id)
        assert sorted(booking.quantity for booking in bookings) == [1, 3]
        assert {booking.payment_reference for booking in bookings} == {"pay_001"}


def test_tickets_carry_unique_codes_and_validation_payload(fulfillment_service, hold_service, event):
    hold = hold_service.create_hold("user-1", event.id, [(event.general, 3)])

    result = fulfillment_service.fulfill(hold.hold_id, "user-1", None, "pay_001")

    tickets = result.bookings[0].tickets
    assert len({ticket.ticket_code for ticket in tickets}) == 3
    for ticket in tickets:
        assert ticket.status == TicketStatus.VALID.value
        payload = json.loads(ticket.validation_payload)
        assert payload["ticket_code"] == ticket.ticket_code
        assert payload["booking_id"] == result.bookings[0].id
        assert payload["event_id"] == event.id


def test_duplicate_fulfillment_creates_one_booking_set(
    fulfillment_service, hold_service, session_factory, event
):
    hold = hold_service.create_hold("user-1", event.id, [(event.general, 2)])

    first = fulfillment_service.fulfill(hold.hold_id, "user-1", None, "pay_001")
    second = fulfillment_service.fulfill(hold.hold_id, "user-1", None, "pay_001")

    assert first.outcome == FulfillmentOutcome.CREATED
    assert second.outcome == FulfillmentOutcome.SKIPPED
    assert _count(session_factory, Booking) == 1
    assert _available(session_factory, event.general) == 8


def test_concurrent_claim_skips_fulfillment(fulfillment_service, hold_service, hold_store, session_factory, event):
    hold = hold_service.create_hold("user-1", event.id, [(event.general, 2)])
    assert hold_store.claim(hold.hold_id, 30)

    result = fulfillment_service.fulfill(hold.hold_id, "user-1", None, "pay_001")

    assert result.outcome == FulfillmentOutcome.SKIPPED
    assert _count(session_factory, Booking) == 0
    assert hold_store.get(hold.hold_id) is not None


def test_unique_constraint_backs_up_a_lost_hold_delete(
    fulfillment_service, hold_service, hold_store, redis, session_factory, event
):
    hold = hold_service.create_hold("user-1", event.id, [(event.general, 2)])
    raw = redis.get(hold.hold_id)
    fulfillment_service.fulfill(hold.hold_id, "user-1", None, "pay_001")

    # Hold reappears, as if the delete after commit had failed.
    redis.set(hold.hold_id, raw)
    result = fulfillment_service.fulfill(hold.hold_id, "user-1", None, "pay_001")

    assert result.outcome == FulfillmentOutcome.SKIPPED
    assert _count(session_factory, Booking) == 1
    assert _available(session_factory, event.general) == 8
    assert hold_store.get(hold.hold_id) is None


def test_inventory_conflict_creates_nothing_and_flags_reconciliation(
    fulfillment_service, hold_service, hold_store, session_factory, event
):
    hold = hold_service.create_hold("user-1", event.id, [(event.general, 2), (event.vip, 3)])
    with session_factory() as db, db.begin():
        db.get(TicketType, event.vip).available = 1

    with pytest.raises(FulfillmentInventoryConflictError) as exc_info:
        fulfillment_service.fulfill(hold.hold_id, "user-1", None, "pay_001")

    assert exc_info.value.ticket_type_id == event.vip
    assert _count(session_factory, Booking) == 0
    assert _count(session_factory, Ticket) == 0
    assert _available(session_factory, event.general) == 10
    assert _available(session_factory, event.vip) == 1
    assert hold_store.get(hold.hold_id) is not None

    with session_factory() as db:
        flagged = db.execute(
            select(OutboxEvent).where(OutboxEvent.event_type == "PAYMENT_RECONCILIATION_REQUIRED")
        ).scalar_one()
        payload = json.loads(flagged.payload)
    assert payload["payment_reference"] == "pay_001"
    assert payload["hold_id"] == hold.hold_id


def test_transaction_failure_keeps_hold_for_retry(
    fulfillment_service, hold_service, hold_store, session_factory, event
):
    hold = hold_service.create_hold("user-1", event.id, [(event.general, 2)])

    with patch(
        "src.application.fulfillment_service.TicketRepository.create_tickets",
        side_effect=OperationalError("INSERT", {}, Exception("database is locked")),
    ):
        with pytest.raises(FulfillmentFailedError):
            fulfillment_service.fulfill(hold.hold_id, "user-1", None, "pay_001")

    assert hold_store.get(hold.hold_id) is not None
    assert _count(session_factory, Booking) == 0
    assert _available(session_factory, event.general) == 10

    retry = fulfillment_service.fulfill(hold.hold_id, "user-1", None, "pay_001")
    assert retry.outcome == FulfillmentOutcome.CREATED


def test_ticket_types_are_locked_in_id_order(fulfillment_service, hold_service, event):
    hold = hold_service.create_hold("user-1", event.id, [(event.vip, 1), (event.general, 1)])
    original = TicketTypeRepository.lock_ticket_type

    with patch.object(
        TicketTypeRepository, "lock_ticket_type", autospec=True, side_effect=original
    ) as lock:
        fulfillment_service.fulfill(
            hold.hold_id, "user-1", list(reversed(hold.line_items)), "pay_001"
        )

    locked_ids = [call.args[1] for call in lock.call_args_list]
    assert locked_ids == sorted([event.general, event.vip])


def test_fulfillment_of_expired_hold_is_skipped(fulfillment_service, session_factory):
    result = fulfillment_service.fulfill("hold:gone:user-1:1:abcd1234", "user-1", None, "pay_001")

    assert result.outcome == FulfillmentOutcome.SKIPPED
    assert _count(session_factory, Booking) == 0


def test_confirmation_and_ticket_emails_are_queued(fulfillment_service, hold_service, session_factory, event):
    hold = hold_service.create_hold("user-1", event.id, [(event.general, 1)])

    result = fulfillment_service.fulfill(hold.hold_id, "user-1", None, "pay_001")

    with session_factory() as db:
        queued = {
            item.event_type: item
            for item in db.execute(select(OutboxEvent)).scalars().all()
        }
    assert queued["EMAIL_BOOKING_CONFIRMATION"].aggregate_id == result.booking_code
    assert queued["EMAIL_TICKETS"].dedupe_key == f"booking:{result.booking_code}:tickets"


def test_booking_creation_is_announced(fulfillment_service, hold_service, redis, event):
    pubsub = redis.pubsub()
    pubsub.subscribe("user:user-1:bookings", f"event:{event.id}")

    hold = hold_service.create_hold("user-1", event.id, [(event.general, 1)])
    fulfillment_service.fulfill(hold.hold_id, "user-1", None, "pay_001")

    received = [pubsub.get_message(ignore_subscribe_messages=True) for _ in range(10)]
    types = {json.loads(message["data"])["type"] for message in received if message}
    assert types == {"booking:created", "ticket:availability"}


def test_create_booking_from_hold_leaves_payment_pending(
    fulfillment_service, hold_service, hold_store, session_factory, event
):
    hold = hold_service.create_hold("user-1", event.id, [(event.vip, 2)])

    result = fulfillment_service.create_booking_from_hold(hold.hold_id, "user-1")

    booking = result.bookings[0]
    assert booking.status == BookingStatus.CONFIRMED.value
    assert booking.payment_status == PaymentStatus.PENDING.value
    assert booking.payment_reference is None
    assert _available(session_factory, event.vip) == 3
    assert hold_store.get(hold.hold_id) is None


def test_create_booking_from_hold_checks_owner_and_existence(fulfillment_service, hold_service, hold_store, event):
    hold = hold_service.create_hold("user-1", event.id, [(event.vip, 1)])

    with pytest.raises(NotHoldOwnerError):
        fulfillment_service.create_booking_from_hold(hold.hold_id, "user-2")

    assert hold_store.claim(hold.hold_id, 30)
    with pytest.raises(HoldInUseError):
        fulfillment_service.create_booking_from_hold(hold.hold_id, "user-1")
    hold_store.release_claim(hold.hold_id)

    fulfillment_service.create_booking_from_hold(hold.hold_id, "user-1")
    with pytest.raises(HoldNotFoundError):
        fulfillment_service.create_booking_from_hold(hold.hold_id, "user-1")


def test_generated_codes_have_expected_shape():
    booking_code = generate_booking_code()
    ticket_code = generate_ticket_code()

    prefix, stamp, suffix = booking_code.split("-")
    assert prefix == "BK" and stamp.isalnum() and len(suffix) == 5
    prefix, stamp, suffix = ticket_code.split("-")
    assert prefix == "TIX" and stamp.isalnum() and len(suffix) == 8
    assert generate_ticket_code() != ticket_code
