# src/infrastructure/notifications.py

from datetime import datetime, timezone
import json
import logging

from redis import Redis
from sqlalchemy.orm import Session, sessionmaker

from src.infrastructure.repositories.outbox_repository import OutboxRepository

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RedisBroadcaster:
    """
    Fire-and-forget fan-out of booking state changes over Redis pub/sub.
    The WebSocket gateway subscribes to these channels.
    Nothing here may raise into a booking or cancellation flow.
    """

    def __init__(self, client: Redis):
        self.client = client

    def notify_booking_created(self, user_id: str, booking: dict) -> None:
        self._publish(
            f"user:{user_id}:bookings",
            {"type": "booking:created", "booking": booking},
        )

    def notify_booking_cancelled(self, user_id: str, booking_id: str) -> None:
        self._publish(
            f"user:{user_id}:bookings",
            {"type": "booking:cancelled", "booking_id": booking_id},
        )

    def notify_availability_changed(
        self,
        event_id: str,
        ticket_type_id: str,
        new_available: int,
    ) -> None:
        self._publish(
            f"event:{event_id}",
            {
                "type": "ticket:availability",
                "event_id": event_id,
                "ticket_type_id": ticket_type_id,
                "available": new_available,
            },
        )

    def _publish(self, channel: str, message: dict) -> None:
        message = {**message, "timestamp": _utc_now_iso()}
        try:
            self.client.publish(channel, json.dumps(message, default=str))
        except Exception:
            logger.exception("Broadcast to %s failed; continuing.", channel)
            return
        logger.debug("Broadcast %s to %s", message["type"], channel)


class EmailDispatcher:
    """
    Queues outgoing emails as outbox rows in their own transaction.
    The mail worker renders and sends them; failures here are logged only.
    """

    BOOKING_CONFIRMATION = "EMAIL_BOOKING_CONFIRMATION"
    TICKETS = "EMAIL_TICKETS"
    BOOKING_CANCELLATION = "EMAIL_BOOKING_CANCELLATION"

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def enqueue(
        self,
        event_type: str,
        aggregate_id: str,
        payload: dict,
        dedupe_key: str,
    ) -> None:
        try:
            with self.session_factory() as db, db.begin():
                OutboxRepository(db).add_event(
                    aggregate_type="email",
                    aggregate_id=aggregate_id,
                    event_type=event_type,
                    payload=payload,
                    dedupe_key=dedupe_key,
                )
        except Exception:
            logger.exception(
                "Failed to queue %s email for %s; continuing.",
                event_type,
                aggregate_id,
            )
