# src/domain/hold.py

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
import json
import time
from uuid import uuid4

HOLD_KEY_PREFIX = "hold"


@dataclass(frozen=True)
class HoldLineItem:
    ticket_type_id: str
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "ticket_type_id": self.ticket_type_id,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HoldLineItem":
        return cls(
            ticket_type_id=data["ticket_type_id"],
            quantity=int(data["quantity"]),
            unit_price=Decimal(str(data["unit_price"])),
        )


@dataclass(frozen=True)
class Hold:
    """
    Short-lived reservation of ticket quantity.
    Never mutated after creation; destroyed by release,
    fulfillment or TTL expiry in the hold store.
    """

    hold_id: str
    user_id: str
    event_id: str
    line_items: tuple[HoldLineItem, ...]
    created_at: datetime
    expires_at: datetime
    total_amount: Decimal = field(default=Decimal("0"))

    @classmethod
    def create(
        cls,
        user_id: str,
        event_id: str,
        line_items: list[HoldLineItem],
        ttl_seconds: int,
    ) -> "Hold":
        now = datetime.now(timezone.utc)
        return cls(
            hold_id=new_hold_id(event_id, user_id),
            user_id=user_id,
            event_id=event_id,
            line_items=tuple(line_items),
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            total_amount=sum((item.subtotal for item in line_items), Decimal("0")),
        )

    def quantity_for(self, ticket_type_id: str) -> int:
        return sum(
            item.quantity
            for item in self.line_items
            if item.ticket_type_id == ticket_type_id
        )

    def remaining_seconds(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        return max(0, int((self.expires_at - now).total_seconds()))

    def to_json(self) -> str:
        return json.dumps(
            {
                "hold_id": self.hold_id,
                "user_id": self.user_id,
                "event_id": self.event_id,
                "tickets": [item.to_dict() for item in self.line_items],
                "total_amount": str(self.total_amount),
                "created_at": self.created_at.isoformat(),
                "expires_at": self.expires_at.isoformat(),
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Hold":
        data = json.loads(raw)
        return cls(
            hold_id=data["hold_id"],
            user_id=data["user_id"],
            event_id=data["event_id"],
            line_items=tuple(HoldLineItem.from_dict(item) for item in data["tickets"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            total_amount=Decimal(data["total_amount"]),
        )


def new_hold_id(event_id: str, user_id: str) -> str:
    # Event, user and timestamp stay readable in the key for tracing;
    # the random suffix keeps double submits within one millisecond apart.
    timestamp_ms = int(time.time() * 1000)
    return f"{HOLD_KEY_PREFIX}:{event_id}:{user_id}:{timestamp_ms}:{uuid4().hex[:8]}"


def hold_key_pattern(event_id: str) -> str:
    return f"{HOLD_KEY_PREFIX}:{event_id}:*"


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
