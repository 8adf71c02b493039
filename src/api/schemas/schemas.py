from decimal import Decimal

from pydantic import BaseModel, Field


class HoldTicketRequest(BaseModel):
    ticket_type_id: str
    quantity: int = Field(gt=0)


class HoldRequest(BaseModel):
    event_id: str
    tickets: list[HoldTicketRequest] = Field(min_length=1)


class HoldLineItemResponse(BaseModel):
    ticket_type_id: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


class HoldResponse(BaseModel):
    hold_id: str
    user_id: str
    event_id: str
    tickets: list[HoldLineItemResponse]
    total_amount: Decimal
    created_at: str
    expires_at: str
    ttl_seconds: int


class TicketAvailabilityResponse(BaseModel):
    ticket_type_id: str
    name: str
    price: Decimal
    total: int
    available: int
    held: int
    bookable: int


class EventAvailabilityResponse(BaseModel):
    event_id: str
    ticket_types: list[TicketAvailabilityResponse]


class PaymentIntentRequest(BaseModel):
    hold_id: str


class PaymentIntentResponse(BaseModel):
    payment_intent_id: str
    client_secret: str
    amount: int
    currency: str
    key_id: str
    hold_id: str


class WebhookResponse(BaseModel):
    received: bool = True
    event_type: str | None = None
    status: str


class CreateBookingRequest(BaseModel):
    hold_id: str


class TicketResponse(BaseModel):
    id: str
    ticket_code: str
    validation_payload: str
    status: str


class BookingResponse(BaseModel):
    id: str
    user_id: str
    event_id: str
    ticket_type_id: str
    quantity: int
    total_amount: Decimal
    booking_code: str
    hold_id: str
    payment_reference: str | None = None
    payment_status: str
    status: str
    created_at: str | None = None
    tickets: list[TicketResponse] = Field(default_factory=list)


class CreateBookingResponse(BaseModel):
    booking_code: str
    hold_id: str
    bookings: list[BookingResponse]


class BookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    total: int
    page: int
    limit: int


class CancelBookingResponse(BaseModel):
    booking: BookingResponse
    refund_status: str


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    status: str
    attempts: int
    created_at: str
