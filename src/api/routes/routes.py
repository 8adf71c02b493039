import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from src.api.dependencies import (
    get_booking_service,
    get_current_user_id,
    get_db,
    get_fulfillment_service,
    get_hold_service,
    get_payment_service,
)
from src.api.schemas.schemas import (
    BookingListResponse,
    BookingResponse,
    CancelBookingResponse,
    CreateBookingRequest,
    CreateBookingResponse,
    EventAvailabilityResponse,
    HoldLineItemResponse,
    HoldRequest,
    HoldResponse,
    OutboxEventResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
    TicketAvailabilityResponse,
    TicketResponse,
    WebhookResponse,
)
from src.application.booking_service import BookingService
from src.application.fulfillment_service import FulfillmentService
from src.application.hold_service import HoldService
from src.application.payment_service import PaymentService
from src.application.views import BookingView
from src.domain.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidSignatureError,
    NotFoundError,
    PaymentProviderUnavailableError,
    TicketingError,
)
from src.domain.hold import Hold
from src.infrastructure.db.models import OutboxEvent
from src.infrastructure.repositories.outbox_repository import OutboxRepository


router = APIRouter()
logger = logging.getLogger(__name__)


def _http_error(exc: TicketingError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ForbiddenError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, InvalidSignatureError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, PaymentProviderUnavailableError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        logger.error("Request failed: %s", exc)
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(exc))


def _hold_response(hold: Hold) -> HoldResponse:
    return HoldResponse(
        hold_id=hold.hold_id,
        user_id=hold.user_id,
        event_id=hold.event_id,
        tickets=[
            HoldLineItemResponse(
                ticket_type_id=item.ticket_type_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
                subtotal=item.subtotal,
            )
            for item in hold.line_items
        ],
        total_amount=hold.total_amount,
        created_at=hold.created_at.isoformat(),
        expires_at=hold.expires_at.isoformat(),
        ttl_seconds=hold.remaining_seconds(),
    )


def _booking_response(booking: BookingView) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        user_id=booking.user_id,
        event_id=booking.event_id,
        ticket_type_id=booking.ticket_type_id,
        quantity=booking.quantity,
        total_amount=booking.total_amount,
        booking_code=booking.booking_code,
        hold_id=booking.hold_id,
        payment_reference=booking.payment_reference,
        payment_status=booking.payment_status,
        status=booking.status,
        created_at=booking.created_at.isoformat() if booking.created_at else None,
        tickets=[
            TicketResponse(
                id=ticket.id,
                ticket_code=ticket.ticket_code,
                validation_payload=ticket.validation_payload,
                status=ticket.status,
            )
            for ticket in booking.tickets
        ],
    )


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )


@router.get("/health")
def health():
    return {"message": "Ticketing engine is running"}


# -----------------------------
# Holds
# -----------------------------
@router.post("/bookings/hold", response_model=HoldResponse, status_code=status.HTTP_201_CREATED)
def create_hold(
    request: HoldRequest,
    user_id: str = Depends(get_current_user_id),
    service: HoldService = Depends(get_hold_service),
):
    try:
        hold = service.create_hold(
            user_id=user_id,
            event_id=request.event_id,
            line_items=[(item.ticket_type_id, item.quantity) for item in request.tickets],
        )
    except TicketingError as exc:
        raise _http_error(exc) from exc

    return _hold_response(hold)


@router.get("/bookings/hold/{hold_id}", response_model=HoldResponse)
def get_hold(
    hold_id: str,
    user_id: str = Depends(get_current_user_id),
    service: HoldService = Depends(get_hold_service),
):
    try:
        hold = service.get_owned_hold(hold_id, user_id)
    except TicketingError as exc:
        raise _http_error(exc) from exc

    return _hold_response(hold)


@router.delete("/bookings/hold/{hold_id}")
def release_hold(
    hold_id: str,
    user_id: str = Depends(get_current_user_id),
    service: HoldService = Depends(get_hold_service),
):
    try:
        service.release_hold(hold_id, user_id)
    except TicketingError as exc:
        raise _http_error(exc) from exc

    return {"hold_id": hold_id, "released": True}


@router.get("/events/{event_id}/availability", response_model=EventAvailabilityResponse)
def get_event_availability(
    event_id: str,
    service: HoldService = Depends(get_hold_service),
):
    try:
        ticket_types = service.get_availability(event_id)
    except TicketingError as exc:
        raise _http_error(exc) from exc

    return EventAvailabilityResponse(
        event_id=event_id,
        ticket_types=[
            TicketAvailabilityResponse(
                ticket_type_id=item.ticket_type_id,
                name=item.name,
                price=item.price,
                total=item.total,
                available=item.available,
                held=item.held,
                bookable=item.bookable,
            )
            for item in ticket_types
        ],
    )


# -----------------------------
# Payments
# -----------------------------
@router.post("/payment/create-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    request: PaymentIntentRequest,
    user_id: str = Depends(get_current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    try:
        intent = service.create_payment_intent(request.hold_id, user_id)
    except TicketingError as exc:
        raise _http_error(exc) from exc

    return PaymentIntentResponse(
        payment_intent_id=intent.payment_intent_id,
        client_secret=intent.client_secret,
        amount=intent.amount,
        currency=intent.currency,
        key_id=intent.key_id,
        hold_id=intent.hold_id,
    )


@router.post("/payment/webhook", response_model=WebhookResponse)
async def payment_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None),
    service: PaymentService = Depends(get_payment_service),
):
    # Signature is computed over the exact bytes received.
    body = await request.body()
    try:
        result = await run_in_threadpool(service.handle_provider_callback, body, x_razorpay_signature)
    except TicketingError as exc:
        if isinstance(exc, InvalidSignatureError):
            logger.warning("Webhook rejected: %s", exc)
        raise _http_error(exc) from exc

    return WebhookResponse(event_type=result.event_type, status=result.status)


# -----------------------------
# Bookings
# -----------------------------
@router.post("/bookings", response_model=CreateBookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    request: CreateBookingRequest,
    user_id: str = Depends(get_current_user_id),
    service: FulfillmentService = Depends(get_fulfillment_service),
):
    try:
        result = service.create_booking_from_hold(request.hold_id, user_id)
    except TicketingError as exc:
        raise _http_error(exc) from exc

    return CreateBookingResponse(
        booking_code=result.booking_code,
        hold_id=result.hold_id,
        bookings=[_booking_response(booking) for booking in result.bookings],
    )


@router.get("/bookings", response_model=BookingListResponse)
def list_bookings(
    page: int = 1,
    limit: int = 10,
    user_id: str = Depends(get_current_user_id),
    service: BookingService = Depends(get_booking_service),
):
    safe_page = max(1, page)
    safe_limit = max(1, min(limit, 100))
    bookings, total = service.list_user_bookings(user_id, page=safe_page, limit=safe_limit)
    return BookingListResponse(
        bookings=[_booking_response(booking) for booking in bookings],
        total=total,
        page=safe_page,
        limit=safe_limit,
    )


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.get_booking(booking_id, user_id)
    except TicketingError as exc:
        raise _http_error(exc) from exc

    return _booking_response(booking)


@router.delete("/bookings/{booking_id}", response_model=CancelBookingResponse)
def cancel_booking(
    booking_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BookingService = Depends(get_booking_service),
):
    try:
        result = service.cancel(booking_id, user_id)
    except TicketingError as exc:
        raise _http_error(exc) from exc

    return CancelBookingResponse(
        booking=_booking_response(result.booking),
        refund_status=result.refund_status.value,
    )


# -----------------------------
# Outbox
# -----------------------------
@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    events = OutboxRepository(db).list_by_status(status_filter, safe_limit)
    return [_outbox_response(item) for item in events]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
):
    repo = OutboxRepository(db)
    item = repo.get_by_id(event_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )

    repo.mark_published(item)
    return _outbox_response(item)
