from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from src.domain.state_machine import EventStatus
from src.infrastructure.db.models import Base, Event, TicketType
from src.infrastructure.db.session import engine, get_db_session


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    ist = timezone(timedelta(hours=5, minutes=30))
    now_ist = datetime.now(ist)
    target = now_ist + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


EVENT_DEFS = [
    {
        "title": "Sunidhi Chauhan Live Concert",
        "starts_at": _dt(days_from_now=10, hour=19, minute=30),
        "venue": "Indira Gandhi Arena, New Delhi",
        "status": EventStatus.ACTIVE,
        "ticket_types": [
            {"name": "Regular", "price": Decimal("1800.00"), "total": 400},
            {"name": "VIP", "price": Decimal("4500.00"), "total": 120},
        ],
    },
    {
        "title": "Holi Festival 2026",
        "starts_at": _dt(days_from_now=15, hour=11, minute=0),
        "venue": "Jawaharlal Nehru Stadium Grounds, Delhi",
        "status": EventStatus.ACTIVE,
        "ticket_types": [
            {"name": "General", "price": Decimal("1200.00"), "total": 700},
            {"name": "Premium", "price": Decimal("2800.00"), "total": 180},
        ],
    },
    {
        "title": "Indie Night (announced)",
        "starts_at": _dt(days_from_now=40, hour=20, minute=0),
        "venue": "Blue Frog, Mumbai",
        "status": EventStatus.DRAFT,
        "ticket_types": [
            {"name": "Entry", "price": Decimal("900.00"), "total": 250},
        ],
    },
]


def seed_events(db) -> None:
    for item in EVENT_DEFS:
        event = db.execute(
            select(Event).where(Event.title == item["title"])
        ).scalar_one_or_none()
        if event:
            event.starts_at = item["starts_at"]
            event.venue = item["venue"]
            event.status = item["status"]
        else:
            event = Event(
                title=item["title"],
                starts_at=item["starts_at"],
                venue=item["venue"],
                status=item["status"],
            )
            db.add(event)
            db.flush()

        for seat in item["ticket_types"]:
            ticket_type = db.execute(
                select(TicketType)
                .where(TicketType.event_id == event.id)
                .where(TicketType.name == seat["name"])
            ).scalar_one_or_none()
            if ticket_type:
                # Sold tickets stay sold; only the price and ceiling move.
                sold = ticket_type.total - ticket_type.available
                ticket_type.price = seat["price"]
                ticket_type.total = max(seat["total"], sold)
                ticket_type.available = ticket_type.total - sold
                continue

            db.add(
                TicketType(
                    event_id=event.id,
                    name=seat["name"],
                    price=seat["price"],
                    total=seat["total"],
                    available=seat["total"],
                )
            )


def main() -> None:
    Base.metadata.create_all(bind=engine)
    with get_db_session() as db:
        seed_events(db)
    print("Seed complete: Sunidhi concert, Holi festival, Indie night (draft) added.")


if __name__ == "__main__":
    main()
