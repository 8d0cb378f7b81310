import json
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Optional

import stripe

COMPLETION_EVENTS = frozenset(
    {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
)


class PaymentConfigurationError(Exception):
    """Raised when checkout is attempted without Stripe credentials."""


class PaymentProviderError(Exception):
    """Raised when Stripe rejects or fails a request."""


class WebhookVerificationError(Exception):
    """Raised for webhook payloads that cannot be trusted or parsed."""


def price_to_minor_units(price) -> int:
    """Convert a decimal price such as ``"3.99"`` to ``399``."""
    try:
        amount = Decimal(str(price).strip().replace(",", "."))
    except (InvalidOperation, AttributeError) as exc:
        raise ValueError(f"Invalid price: {price!r}") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValueError(f"Price must be greater than zero: {price!r}")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeCheckout:
    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str] = None,
        currency: str = "pln",
    ):
        self.secret_key = (secret_key or "").strip()
        self.webhook_secret = (webhook_secret or "").strip()
        self.currency = (currency or "pln").strip().lower()

    @property
    def enabled(self) -> bool:
        return bool(self.secret_key)

    def create_session(
        self,
        product: Dict,
        token: str,
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Dict[str, str]:
        if not self.enabled:
            raise PaymentConfigurationError("Stripe is not configured.")

        line_item = {
            "price_data": {
                "currency": self.currency,
                "product_data": {
                    "name": product.get("title") or product.get("id") or "SnapThis",
                },
                "unit_amount": price_to_minor_units(product.get("price")),
            },
            "quantity": 1,
        }
        description = product.get("description")
        if description:
            line_item["price_data"]["product_data"]["description"] = description

        params = {
            "mode": "payment",
            "line_items": [line_item],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": token,
            "metadata": {
                "guest_token": token,
                "product_id": str(product.get("id") or ""),
                "title": (title or "")[:500],
            },
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = stripe.checkout.Session.create(api_key=self.secret_key, **params)
        except stripe.StripeError as exc:
            raise PaymentProviderError(str(exc)) from exc

        return {"id": session["id"], "url": session["url"]}

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Dict:
        """Return the webhook event as a plain dict.

        With a webhook secret configured the ``Stripe-Signature`` header must
        verify; without one the payload is trusted as-is.
        """
        if self.webhook_secret:
            if not signature:
                raise WebhookVerificationError("Missing Stripe-Signature header.")
            try:
                stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
            except stripe.SignatureVerificationError as exc:
                raise WebhookVerificationError("Invalid webhook signature.") from exc
            except ValueError as exc:
                raise WebhookVerificationError("Invalid webhook payload.") from exc

        try:
            event = json.loads(payload)
        except (TypeError, ValueError) as exc:
            raise WebhookVerificationError("Invalid webhook payload.") from exc
        if not isinstance(event, dict):
            raise WebhookVerificationError("Invalid webhook payload.")
        return event


def guest_token_from_session(session: Dict) -> str:
    metadata = session.get("metadata") or {}
    token = metadata.get("guest_token") if isinstance(metadata, dict) else None
    return str(token or session.get("client_reference_id") or "").strip()


def paid_fields_from_session(session: Dict) -> Dict:
    fields = {"checkout_session_id": session.get("id")}
    if session.get("amount_total") is not None:
        fields["amount_total"] = session.get("amount_total")
    if session.get("currency"):
        fields["currency"] = str(session.get("currency")).lower()
    return fields


def customer_email_from_session(session: Dict) -> str:
    details = session.get("customer_details") or {}
    email = details.get("email") if isinstance(details, dict) else None
    return str(email or session.get("customer_email") or "").strip().lower()
