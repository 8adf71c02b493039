# src/infrastructure/repositories/ticket_type_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.infrastructure.db.models import Event, TicketType


class TicketTypeRepository:
    """
    Inventory store access.
    The ticket type row lock is the only mutual exclusion
    for the available counter.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_event(self, event_id: str) -> Event | None:
        stmt = select(Event).where(Event.id == event_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_id(self, ticket_type_id: str) -> TicketType | None:
        stmt = select(TicketType).where(TicketType.id == ticket_type_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_event(self, event_id: str) -> list[TicketType]:
        stmt = (
            select(TicketType)
            .where(TicketType.event_id == event_id)
            .order_by(TicketType.price, TicketType.name)
        )
        return list(self.db.execute(stmt).scalars().all())

    def lock_ticket_type(self, ticket_type_id: str) -> TicketType | None:
        """
        SELECT ... FOR UPDATE
        Concurrent fulfillments of the same ticket type queue here.
        """

        stmt = (
            select(TicketType)
            .where(TicketType.id == ticket_type_id)
            .with_for_update()
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def decrement_available(
        self,
        ticket_type: TicketType,
        quantity: int,
    ) -> None:
        # Caller holds the row lock and has checked available >= quantity.
        ticket_type.available -= quantity

    def increment_available(
        self,
        ticket_type_id: str,
        quantity: int,
    ) -> TicketType | None:

        ticket_type = self.lock_ticket_type(ticket_type_id)
        if ticket_type is None:
            return None
        ticket_type.available += quantity
        return ticket_type
