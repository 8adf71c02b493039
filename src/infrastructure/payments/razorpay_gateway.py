# src/infrastructure/payments/razorpay_gateway.py

import logging

import razorpay
from requests import RequestException

from src.domain.exceptions import InvalidSignatureError, PaymentProviderUnavailableError
from src.infrastructure import config

logger = logging.getLogger(__name__)

_PROVIDER_ERRORS = (
    razorpay.errors.BadRequestError,
    razorpay.errors.GatewayError,
    razorpay.errors.ServerError,
    RequestException,
)


class RazorpayGateway:
    """
    Thin wrapper over the Razorpay SDK: orders, webhook signatures, refunds.
    Every provider failure surfaces as a domain ExternalDependencyError.
    """

    def __init__(
        self,
        key_id: str | None,
        key_secret: str | None,
        webhook_secret: str | None,
        client: razorpay.Client | None = None,
        timeout: float = config.RAZORPAY_TIMEOUT_SECONDS,
    ):
        self._key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self._client = client
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "RazorpayGateway":
        gateway = cls(
            key_id=config.razorpay_key_id(),
            key_secret=config.razorpay_key_secret(),
            webhook_secret=config.razorpay_webhook_secret(),
        )
        if not gateway.is_configured:
            logger.warning("Razorpay not configured. Payment features will be unavailable.")
        return gateway

    @property
    def is_configured(self) -> bool:
        return bool(self._key_id and self._key_secret)

    @property
    def key_id(self) -> str:
        if not self._key_id:
            raise PaymentProviderUnavailableError("Razorpay key id not configured.")
        return self._key_id

    @property
    def client(self) -> razorpay.Client:
        if not self.is_configured:
            raise PaymentProviderUnavailableError(
                "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
            )
        if self._client is None:
            self._client = razorpay.Client(auth=(self._key_id, self._key_secret))
        return self._client

    def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, str],
    ) -> dict:
        try:
            order = self.client.order.create(
                {
                    "amount": amount_minor,
                    "currency": currency,
                    "receipt": receipt,
                    "notes": notes,
                },
                timeout=self.timeout,
            )
        except _PROVIDER_ERRORS as exc:
            logger.error("Razorpay order creation failed for receipt %s: %s", receipt, exc)
            raise PaymentProviderUnavailableError("Failed to create payment intent") from exc
        return order

    def verify_webhook(self, body: str, signature: str | None) -> None:
        if not self._webhook_secret:
            raise PaymentProviderUnavailableError("Razorpay webhook secret not configured.")
        if not signature:
            raise InvalidSignatureError("Missing webhook signature")

        try:
            self.client.utility.verify_webhook_signature(body, signature, self._webhook_secret)
        except razorpay.errors.SignatureVerificationError as exc:
            raise InvalidSignatureError("Invalid webhook signature") from exc
        except (TypeError, ValueError) as exc:
            raise InvalidSignatureError("Webhook signature could not be verified") from exc

    def refund(self, payment_id: str, amount_minor: int) -> dict:
        try:
            refund = self.client.payment.refund(
                payment_id,
                {"amount": amount_minor},
                timeout=self.timeout,
            )
        except _PROVIDER_ERRORS as exc:
            logger.error("Razorpay refund failed for payment %s: %s", payment_id, exc)
            raise PaymentProviderUnavailableError("Failed to process refund") from exc

        logger.info("Refund %s created for payment %s", refund.get("id"), payment_id)
        return refund
