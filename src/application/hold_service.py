from dataclasses import dataclass
from decimal import Decimal
import logging
from typing import Iterable

from sqlalchemy.orm import Session, sessionmaker

from src.domain.exceptions import (
    EventNotBookableError,
    EventNotFoundError,
    HoldNotFoundError,
    InsufficientInventoryError,
    InternalError,
    NotHoldOwnerError,
    TicketTypeMismatchError,
)
from src.domain.hold import Hold, HoldLineItem
from src.domain.state_machine import EventStatus
from src.infrastructure import config
from src.infrastructure.hold_store import RedisHoldStore
from src.infrastructure.repositories.ticket_type_repository import TicketTypeRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TicketAvailability:
    ticket_type_id: str
    name: str
    price: Decimal
    total: int
    available: int
    held: int

    @property
    def bookable(self) -> int:
        return max(0, self.available - self.held)


class HoldService:
    """
    Reserves inventory ahead of payment.

    Admission is optimistic: availability is the committed `available`
    counter minus quantities in unexpired holds, read without locks.
    The fulfillment re-check under a row lock is the real safety boundary.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        hold_store: RedisHoldStore,
        ttl_seconds: int = config.HOLD_TTL_SECONDS,
    ):
        self.session_factory = session_factory
        self.hold_store = hold_store
        self.ttl_seconds = ttl_seconds

    def create_hold(
        self,
        user_id: str,
        event_id: str,
        line_items: Iterable[tuple[str, int]],
    ) -> Hold:
        requested = _merge_quantities(line_items)

        with self.session_factory() as db:
            repo = TicketTypeRepository(db)

            event = repo.get_event(event_id)
            if event is None:
                raise EventNotFoundError(event_id)
            if event.status != EventStatus.ACTIVE:
                raise EventNotBookableError(event_id, event.status.value)

            active_holds = self.hold_store.active_holds(event_id)
            items: list[HoldLineItem] = []

            for ticket_type_id, quantity in requested.items():
                ticket_type = repo.get_by_id(ticket_type_id)
                if ticket_type is None or ticket_type.event_id != event_id:
                    raise TicketTypeMismatchError(ticket_type_id, event_id)

                held = sum(hold.quantity_for(ticket_type_id) for hold in active_holds)
                bookable = ticket_type.available - held
                if bookable < quantity:
                    logger.info(
                        "Hold rejected: ticket_type=%s available=%s held=%s requested=%s",
                        ticket_type_id,
                        ticket_type.available,
                        held,
                        quantity,
                    )
                    raise InsufficientInventoryError(ticket_type_id, max(0, bookable), quantity)

                items.append(
                    HoldLineItem(
                        ticket_type_id=ticket_type_id,
                        quantity=quantity,
                        unit_price=Decimal(ticket_type.price),
                    )
                )

        hold = Hold.create(
            user_id=user_id,
            event_id=event_id,
            line_items=items,
            ttl_seconds=self.ttl_seconds,
        )
        if not self.hold_store.save(hold, self.ttl_seconds):
            raise InternalError(f"Hold id collision for {hold.hold_id}")

        logger.info(
            "Hold created: hold_id=%s user_id=%s total=%s expires_at=%s",
            hold.hold_id,
            user_id,
            hold.total_amount,
            hold.expires_at.isoformat(),
        )
        return hold

    def get_hold(self, hold_id: str) -> Hold:
        hold = self.hold_store.get(hold_id)
        if hold is None:
            raise HoldNotFoundError(hold_id)
        return hold

    def get_owned_hold(self, hold_id: str, user_id: str) -> Hold:
        hold = self.get_hold(hold_id)
        if hold.user_id != user_id:
            raise NotHoldOwnerError(hold_id)
        return hold

    def release_hold(self, hold_id: str, requesting_user_id: str) -> None:
        self.get_owned_hold(hold_id, requesting_user_id)

        # Expired or consumed between the read and the delete.
        if not self.hold_store.delete(hold_id):
            raise HoldNotFoundError(hold_id)

        logger.info("Hold released: hold_id=%s user_id=%s", hold_id, requesting_user_id)

    def get_availability(self, event_id: str) -> list[TicketAvailability]:
        with self.session_factory() as db:
            repo = TicketTypeRepository(db)
            if repo.get_event(event_id) is None:
                raise EventNotFoundError(event_id)
            ticket_types = repo.list_for_event(event_id)

        active_holds = self.hold_store.active_holds(event_id)
        return [
            TicketAvailability(
                ticket_type_id=ticket_type.id,
                name=ticket_type.name,
                price=Decimal(ticket_type.price),
                total=ticket_type.total,
                available=ticket_type.available,
                held=sum(hold.quantity_for(ticket_type.id) for hold in active_holds),
            )
            for ticket_type in ticket_types
        ]


def _merge_quantities(line_items: Iterable[tuple[str, int]]) -> dict[str, int]:
    merged: dict[str, int] = {}
    for ticket_type_id, quantity in line_items:
        if quantity <= 0:
            raise ValueError("Quantity must be positive")
        merged[ticket_type_id] = merged.get(ticket_type_id, 0) + quantity
    if not merged:
        raise ValueError("At least one ticket type is required")
    return merged
