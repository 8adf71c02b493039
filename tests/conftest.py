import hashlib
import hmac
import json
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import fakeredis
import pytest
import razorpay
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.application.booking_service import BookingService
from src.application.fulfillment_service import FulfillmentService
from src.application.hold_service import HoldService
from src.application.payment_service import PaymentService
from src.domain.state_machine import EventStatus
from src.infrastructure.db.models import Base, Event, TicketType
from src.infrastructure.hold_store import RedisHoldStore
from src.infrastructure.notifications import EmailDispatcher, RedisBroadcaster
from src.infrastructure.payments.razorpay_gateway import RazorpayGateway

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def redis():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def hold_store(redis):
    return RedisHoldStore(redis)


@pytest.fixture
def broadcaster(redis):
    return RedisBroadcaster(redis)


@pytest.fixture
def email_dispatcher(session_factory):
    return EmailDispatcher(session_factory)


@pytest.fixture
def razorpay_client():
    client = razorpay.Client(auth=("rzp_test_key", "rzp_test_secret"))
    client.order = MagicMock()
    client.order.create.return_value = {"id": "order_test_123", "status": "created"}
    client.payment = MagicMock()
    client.payment.refund.return_value = {"id": "rfnd_test_123", "status": "processed"}
    return client


@pytest.fixture
def gateway(razorpay_client):
    return RazorpayGateway(
        key_id="rzp_test_key",
        key_secret="rzp_test_secret",
        webhook_secret=WEBHOOK_SECRET,
        client=razorpay_client,
    )


@pytest.fixture
def hold_service(session_factory, hold_store):
    return HoldService(session_factory, hold_store, ttl_seconds=600)


@pytest.fixture
def fulfillment_service(session_factory, hold_store, broadcaster, email_dispatcher):
    return FulfillmentService(session_factory, hold_store, broadcaster, email_dispatcher)


@pytest.fixture
def payment_service(hold_service, fulfillment_service, gateway):
    return PaymentService(hold_service, fulfillment_service, gateway, currency="INR")


@pytest.fixture
def booking_service(session_factory, payment_service, broadcaster, email_dispatcher):
    return BookingService(session_factory, payment_service, broadcaster, email_dispatcher)


def _add_event(session_factory, status: EventStatus, ticket_types: list[tuple[str, str, int]]):
    with session_factory() as db, db.begin():
        event = Event(
            title="Sunidhi Chauhan Live Concert",
            starts_at=datetime(2026, 12, 1, 19, 30),
            venue="Indira Gandhi Arena, New Delhi",
            status=status,
        )
        db.add(event)
        db.flush()

        ids = {}
        for name, price, total in ticket_types:
            ticket_type = TicketType(
                event_id=event.id,
                name=name,
                price=Decimal(price),
                total=total,
                available=total,
            )
            db.add(ticket_type)
            db.flush()
            ids[name.lower()] = ticket_type.id

    return SimpleNamespace(id=event.id, **ids)


@pytest.fixture
def event(session_factory):
    """Active event: General (100.00 x 10) and VIP (250.00 x 5)."""
    return _add_event(
        session_factory,
        EventStatus.ACTIVE,
        [("General", "100.00", 10), ("VIP", "250.00", 5)],
    )


@pytest.fixture
def draft_event(session_factory):
    return _add_event(session_factory, EventStatus.DRAFT, [("General", "100.00", 10)])


def sign(body: str, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


@pytest.fixture
def sign_webhook():
    return sign


@pytest.fixture
def webhook():
    """Builds a signed Razorpay webhook body for the given order notes."""

    def build(notes, event_type: str = "payment.captured", payment_id: str = "pay_test_123"):
        body = json.dumps(
            {
                "entity": "event",
                "event": event_type,
                "payload": {
                    "payment": {
                        "entity": {
                            "id": payment_id,
                            "order_id": "order_test_123",
                            "status": "failed" if event_type == "payment.failed" else "captured",
                            "notes": notes,
                        }
                    }
                },
            }
        )
        return body, sign(body)

    return build


@pytest.fixture
def client(session_factory, redis, gateway):
    from src.api import dependencies
    from src.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[dependencies.get_session_factory] = lambda: session_factory
    app.dependency_overrides[dependencies.get_redis] = lambda: redis
    app.dependency_overrides[dependencies.get_payment_gateway] = lambda: gateway
    app.dependency_overrides[dependencies.get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
