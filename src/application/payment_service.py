from dataclasses import dataclass
from decimal import Decimal
import json
import logging

from src.application.fulfillment_service import FulfillmentOutcome, FulfillmentService
from src.application.hold_service import HoldService
from src.domain.exceptions import InvalidSignatureError, PaymentProviderUnavailableError
from src.domain.hold import Hold, HoldLineItem, to_minor_units
from src.infrastructure import config
from src.infrastructure.payments.razorpay_gateway import RazorpayGateway

logger = logging.getLogger(__name__)

# Razorpay rejects orders whose note values exceed this length.
NOTE_VALUE_MAX_LENGTH = 256


@dataclass(frozen=True)
class PaymentIntent:
    payment_intent_id: str
    client_secret: str
    amount: int
    currency: str
    key_id: str
    hold_id: str


@dataclass(frozen=True)
class WebhookResult:
    event_type: str | None
    status: str


class PaymentService:
    """
    Bridge between holds and the payment provider.

    The hold's line items travel inside the order notes, so a verified
    webhook carries everything fulfillment needs.
    """

    SUCCESS_EVENTS = frozenset({"order.paid", "payment.captured"})
    FAILURE_EVENTS = frozenset({"payment.failed"})

    def __init__(
        self,
        hold_service: HoldService,
        fulfillment_service: FulfillmentService,
        gateway: RazorpayGateway,
        currency: str = config.PAYMENT_CURRENCY,
    ):
        self.hold_service = hold_service
        self.fulfillment_service = fulfillment_service
        self.gateway = gateway
        self.currency = currency

    def create_payment_intent(self, hold_id: str, requesting_user_id: str) -> PaymentIntent:
        if not self.gateway.is_configured:
            raise PaymentProviderUnavailableError("Payment service is not configured")

        hold = self.hold_service.get_owned_hold(hold_id, requesting_user_id)
        amount = to_minor_units(hold.total_amount)

        order = self.gateway.create_order(
            amount_minor=amount,
            currency=self.currency,
            receipt=_receipt_for(hold),
            notes=_notes_for(hold),
        )
        order_id = order.get("id")
        if not order_id:
            raise PaymentProviderUnavailableError("Payment provider returned no order id")

        logger.info("Payment intent %s created for hold %s (%s %s)", order_id, hold_id, amount, self.currency)
        return PaymentIntent(
            payment_intent_id=order_id,
            client_secret=order_id,
            amount=amount,
            currency=self.currency,
            key_id=self.gateway.key_id,
            hold_id=hold_id,
        )

    def handle_provider_callback(self, raw_payload: bytes, signature: str | None) -> WebhookResult:
        try:
            body = raw_payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidSignatureError("Webhook body is not valid UTF-8") from exc

        self.gateway.verify_webhook(body, signature)

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise InvalidSignatureError("Webhook payload is not valid JSON") from exc
        if not isinstance(event, dict):
            raise InvalidSignatureError("Webhook payload is not an object")

        event_type = event.get("event")
        logger.info("Webhook received: %s", event_type)

        if event_type in self.SUCCESS_EVENTS:
            return self._handle_payment_success(event_type, event)
        if event_type in self.FAILURE_EVENTS:
            return self._handle_payment_failure(event_type, event)

        logger.info("Unhandled event type %s", event_type)
        return WebhookResult(event_type=event_type, status="IGNORED")

    def refund(self, payment_reference: str, amount: Decimal) -> dict:
        return self.gateway.refund(payment_reference, to_minor_units(amount))

    def _handle_payment_success(self, event_type: str, event: dict) -> WebhookResult:
        payment, order = _entities(event)
        notes = _notes(order) or _notes(payment)
        hold_id = notes.get("hold_id")
        payment_reference = payment.get("id") or order.get("id")

        if not hold_id or not payment_reference:
            logger.warning("Ignoring %s without hold metadata (payment %s).", event_type, payment_reference)
            return WebhookResult(event_type=event_type, status="IGNORED")

        logger.info("Payment succeeded for hold %s, creating booking...", hold_id)
        result = self.fulfillment_service.fulfill(
            hold_id=hold_id,
            user_id=notes.get("user_id", ""),
            line_items=_line_items(notes),
            payment_reference=payment_reference,
        )
        status = "FULFILLED" if result.outcome == FulfillmentOutcome.CREATED else "SKIPPED"
        return WebhookResult(event_type=event_type, status=status)

    def _handle_payment_failure(self, event_type: str, event: dict) -> WebhookResult:
        payment, order = _entities(event)
        notes = _notes(payment) or _notes(order)
        # No inventory was taken; the hold simply expires.
        logger.warning(
            "Payment %s failed for hold %s: %s",
            payment.get("id"),
            notes.get("hold_id"),
            payment.get("error_description"),
        )
        return WebhookResult(event_type=event_type, status="PAYMENT_FAILED")


def _receipt_for(hold: Hold) -> str:
    # Razorpay caps receipts at 40 chars; the hold id's tail is unique enough.
    timestamp_ms, suffix = hold.hold_id.rsplit(":", 2)[-2:]
    return f"hold_{timestamp_ms}_{suffix}"


def _notes_for(hold: Hold) -> dict[str, str]:
    notes = {
        "hold_id": hold.hold_id,
        "user_id": hold.user_id,
        "event_id": hold.event_id,
    }
    line_items = json.dumps(
        [[item.ticket_type_id, item.quantity, str(item.unit_price)] for item in hold.line_items],
        separators=(",", ":"),
    )
    # Larger holds are fulfilled from the stored hold instead.
    if len(line_items) <= NOTE_VALUE_MAX_LENGTH:
        notes["line_items"] = line_items
    return notes


def _entities(event: dict) -> tuple[dict, dict]:
    payload = event.get("payload") or {}
    payment = (payload.get("payment") or {}).get("entity") or {}
    order = (payload.get("order") or {}).get("entity") or {}
    return payment, order


def _notes(entity: dict) -> dict:
    notes = entity.get("notes")
    # Razorpay sends empty notes as [].
    return notes if isinstance(notes, dict) else {}


def _line_items(notes: dict) -> list[HoldLineItem] | None:
    raw = notes.get("line_items")
    if not raw:
        return None
    try:
        return [
            HoldLineItem(ticket_type_id=ticket_type_id, quantity=int(quantity), unit_price=Decimal(price))
            for ticket_type_id, quantity, price in json.loads(raw)
        ]
    except (ValueError, TypeError, ArithmeticError):
        logger.warning("Unreadable line items in payment notes; using the stored hold instead.")
        return None
