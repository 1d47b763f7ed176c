"""Stripe payment gateway adapter.

Every call returns plain dicts so callers (and tests) never depend on the SDK's
object model. SDK failures surface as ``UpstreamError``.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

import stripe

from mailbill.core.config import settings
from mailbill.core.exceptions import UpstreamError

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    # StripeObject renders as JSON
    return json.loads(str(obj))


class StripeGateway:
    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.api_key = api_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

    def _call(self, action: str, fn, *args, **kwargs) -> dict:
        if not self.api_key:
            raise UpstreamError("Stripe not configured")
        stripe.api_key = self.api_key
        try:
            return _as_dict(fn(*args, **kwargs))
        except stripe.CardError as e:
            logger.warning("Stripe %s declined: %s", action, e.user_message or e)
            raise UpstreamError(e.user_message or str(e), correctable=True)
        except stripe.InvalidRequestError as e:
            logger.warning("Stripe %s rejected: %s", action, e)
            raise UpstreamError(e.user_message or str(e), correctable=True)
        except stripe.StripeError as e:
            logger.error("Stripe %s failed: %s", action, e)
            raise UpstreamError(f"Payment provider error: {e.user_message or e}")

    # Customers / payment methods

    def create_customer(self, *, email: Optional[str], metadata: dict) -> dict:
        return self._call("customer.create", stripe.Customer.create, email=email, metadata=metadata)

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> dict:
        try:
            pm = self._call(
                "payment_method.attach", stripe.PaymentMethod.attach, payment_method_id, customer=customer_id
            )
        except UpstreamError as e:
            # Re-attaching a method the customer already has is fine
            if "already" not in e.message.lower():
                raise
            pm = {"id": payment_method_id}
        self._call(
            "customer.modify",
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )
        return pm

    # Checkout

    def create_checkout_session(
        self,
        *,
        mode: str,
        customer_id: str,
        line_items: list[dict],
        metadata: dict,
        success_url: str,
        cancel_url: str,
        subscription_metadata: Optional[dict] = None,
        discounts: Optional[list[dict]] = None,
        allow_promotion_codes: bool = False,
    ) -> dict:
        params: dict[str, Any] = {
            "mode": mode,
            "customer": customer_id,
            "payment_method_types": ["card"],
            "line_items": line_items,
            "metadata": metadata,
            "success_url": success_url + "?session_id={CHECKOUT_SESSION_ID}",
            "cancel_url": cancel_url,
        }
        if mode == "subscription":
            params["subscription_data"] = {"metadata": subscription_metadata or metadata}
        # Stripe rejects discounts together with allow_promotion_codes
        if discounts:
            params["discounts"] = discounts
        elif allow_promotion_codes:
            params["allow_promotion_codes"] = True
        return self._call("checkout.create", stripe.checkout.Session.create, **params)

    def create_portal_session(self, customer_id: str, return_url: str) -> dict:
        return self._call(
            "portal.create", stripe.billing_portal.Session.create, customer=customer_id, return_url=return_url
        )

    def find_promotion_code(self, code: str) -> Optional[str]:
        result = self._call("promotion_code.list", stripe.PromotionCode.list, code=code, active=True, limit=1)
        data = result.get("data") or []
        return data[0]["id"] if data else None

    # Direct charges (API key surface)

    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        metadata: dict,
        description: Optional[str] = None,
    ) -> dict:
        return self._call(
            "payment_intent.create",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            customer=customer_id,
            payment_method=payment_method_id,
            confirm=True,
            off_session=True,
            metadata=metadata,
            description=description,
        )

    def confirm_payment_intent(self, payment_intent_id: str, payment_method_id: str) -> dict:
        return self._call(
            "payment_intent.confirm", stripe.PaymentIntent.confirm, payment_intent_id, payment_method=payment_method_id
        )

    def create_product(self, name: str) -> dict:
        return self._call("product.create", stripe.Product.create, name=name)

    # Subscriptions

    def create_subscription(
        self,
        *,
        customer_id: str,
        items: list[dict],
        metadata: dict,
        default_payment_method: Optional[str] = None,
    ) -> dict:
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": items,
            "metadata": metadata,
            "expand": ["latest_invoice.payment_intent"],
        }
        if default_payment_method:
            params["default_payment_method"] = default_payment_method
        return self._call("subscription.create", stripe.Subscription.create, **params)

    def retrieve_subscription(self, subscription_id: str) -> dict:
        return self._call("subscription.retrieve", stripe.Subscription.retrieve, subscription_id)

    def update_subscription(self, subscription_id: str, **params) -> dict:
        return self._call("subscription.modify", stripe.Subscription.modify, subscription_id, **params)

    def cancel_subscription(self, subscription_id: str) -> dict:
        return self._call("subscription.cancel", stripe.Subscription.cancel, subscription_id)

    def list_invoices(self, *, customer_id: str, subscription_id: Optional[str] = None, limit: int = 10) -> list[dict]:
        params: dict[str, Any] = {"customer": customer_id, "limit": limit}
        if subscription_id:
            params["subscription"] = subscription_id
        return self._call("invoice.list", stripe.Invoice.list, **params).get("data") or []

    # Webhooks

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """Verify the signature and return the event as a plain dict.

        Raises ``ValueError`` for malformed payloads and
        ``stripe.SignatureVerificationError`` for bad signatures.
        """
        if not self.webhook_secret:
            raise stripe.SignatureVerificationError("Webhook secret not configured", signature)
        stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        return json.loads(payload)


def get_gateway() -> StripeGateway:
    """FastAPI dependency; overridden in tests."""
    return StripeGateway()
