from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status
from redis import Redis
from sqlalchemy.orm import Session, sessionmaker

from src.application.booking_service import BookingService
from src.application.fulfillment_service import FulfillmentService
from src.application.hold_service import HoldService
from src.application.payment_service import PaymentService
from src.infrastructure.db.session import SessionLocal
from src.infrastructure.hold_store import RedisHoldStore
from src.infrastructure.notifications import EmailDispatcher, RedisBroadcaster
from src.infrastructure.payments.razorpay_gateway import RazorpayGateway
from src.infrastructure.redis_client import redis_client


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_session_factory() -> sessionmaker[Session]:
    return SessionLocal


def get_redis() -> Redis:
    return redis_client.client


@lru_cache
def get_payment_gateway() -> RazorpayGateway:
    return RazorpayGateway.from_env()


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    # Authentication happens upstream; the gateway forwards the user id.
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return x_user_id


def get_hold_store(client: Redis = Depends(get_redis)) -> RedisHoldStore:
    return RedisHoldStore(client)


def get_broadcaster(client: Redis = Depends(get_redis)) -> RedisBroadcaster:
    return RedisBroadcaster(client)


def get_email_dispatcher(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> EmailDispatcher:
    return EmailDispatcher(session_factory)


def get_hold_service(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    hold_store: RedisHoldStore = Depends(get_hold_store),
) -> HoldService:
    return HoldService(session_factory, hold_store)


def get_fulfillment_service(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    hold_store: RedisHoldStore = Depends(get_hold_store),
    broadcaster: RedisBroadcaster = Depends(get_broadcaster),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
) -> FulfillmentService:
    return FulfillmentService(session_factory, hold_store, broadcaster, email_dispatcher)


def get_payment_service(
    hold_service: HoldService = Depends(get_hold_service),
    fulfillment_service: FulfillmentService = Depends(get_fulfillment_service),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
) -> PaymentService:
    return PaymentService(hold_service, fulfillment_service, gateway)


def get_booking_service(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    payment_service: PaymentService = Depends(get_payment_service),
    broadcaster: RedisBroadcaster = Depends(get_broadcaster),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
) -> BookingService:
    return BookingService(session_factory, payment_service, broadcaster, email_dispatcher)
