"""Purchase Orchestrators for domains, mailboxes, plans and wallet top-ups.

Wallet-paid flows debit before they grant, inside one transaction. Stripe-paid
flows only create a checkout session and a pending payment record; the grant
happens when the webhook confirms payment.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from mailbill.core.config import settings
from mailbill.core.exceptions import NotFoundError, UpstreamError, ValidationError
from mailbill.core.timeutil import add_months, utcnow
from mailbill.models import (
    MailboxStatus,
    MailboxSubscription,
    MailboxType,
    PaymentMethod,
    Plan,
    PrewarmMailbox,
    PrewarmSelection,
    StripeCustomer,
    SubscriptionKind,
)
from mailbill.services.domains import DomainService, normalize_domain
from mailbill.services.gateway import StripeGateway
from mailbill.services.ledger import (
    new_id,
    record_order,
    record_pending_transaction,
    record_succeeded_transaction,
    record_wallet_transaction,
)
from mailbill.services.lifecycle import LifecycleManager
from mailbill.services.notifications import notify_on_commit
from mailbill.services.pricing import (
    convert_from_usd,
    format_amount,
    mailbox_unit_price,
    money,
    prewarm_unit_price,
    specific_user_price,
    to_smallest_unit,
    user_currency,
    wallet_tier_price,
)
from mailbill.services.registrar import NamecheapRegistrar
from mailbill.services.wallet import WalletService

logger = logging.getLogger(__name__)


def _success_url() -> str:
    return settings.frontend_url.rstrip("/") + "/payment-success"


def _cancel_url() -> str:
    return settings.frontend_url.rstrip("/") + "/profile"


class PurchaseService:
    def __init__(self, db: Session, gateway: Optional[StripeGateway] = None):
        self.db = db
        self.gateway = gateway
        self.wallet = WalletService(db)
        self.lifecycle = LifecycleManager(db, gateway)

    # Customers

    def stripe_customer_id(self, user_id: str) -> Optional[str]:
        row = self.db.query(StripeCustomer).filter(StripeCustomer.user_id == user_id).first()
        return row.stripe_customer_id if row else None

    def ensure_customer(self, user_id: str, email: Optional[str]) -> str:
        customer_id = self.stripe_customer_id(user_id)
        if customer_id:
            return customer_id
        customer = self.gateway.create_customer(email=email, metadata={"user_id": user_id})
        self.db.add(StripeCustomer(id=new_id(), user_id=user_id, stripe_customer_id=customer["id"], created_at=utcnow()))
        self.db.flush()
        logger.info("Stripe customer %s created for user %s", customer["id"], user_id)
        return customer["id"]

    def _checkout(
        self,
        *,
        user_id: str,
        email: Optional[str],
        mode: str,
        line_items: List[dict],
        metadata: Dict[str, Any],
        txn_type: str,
        amount: int,
        currency: str,
        description: str,
        discounts: Optional[List[dict]] = None,
        allow_promotion_codes: bool = True,
    ) -> dict:
        customer_id = self.ensure_customer(user_id, email)
        session = self.gateway.create_checkout_session(
            mode=mode,
            customer_id=customer_id,
            line_items=line_items,
            metadata={k: str(v) for k, v in metadata.items() if v is not None},
            success_url=_success_url(),
            cancel_url=_cancel_url(),
            discounts=discounts,
            allow_promotion_codes=allow_promotion_codes,
        )
        record_pending_transaction(
            self.db,
            user_id=user_id,
            checkout_session_id=session["id"],
            type=txn_type,
            amount=amount,
            currency=currency,
            description=description,
        )
        logger.info("Checkout %s (%s) created for user %s", session["id"], metadata.get("type"), user_id)
        return {"checkoutUrl": session.get("url"), "url": session.get("url"), "sessionId": session["id"]}

    # Mailboxes

    def purchase(self, user_id: str, email: Optional[str], quantity: int, payment_method: str,
                 amount=None) -> dict:
        """Buy ``quantity`` Gsuite mailbox slots with either payment method."""
        if payment_method == PaymentMethod.WALLET:
            sub = self.purchase_mailboxes_with_wallet(user_id, email, quantity, amount)
            return {
                "message": "Mailbox add-on successful",
                "subscription_id": sub.id,
                "mailboxCount": sub.number_of_mailboxes,
                "renewsOn": sub.renews_on,
            }
        if payment_method == PaymentMethod.STRIPE:
            return self.mailbox_addon_checkout(user_id, email, quantity)
        raise ValidationError("paymentMethod must be 'stripe' or 'wallet'")

    def mailbox_addon_checkout(self, user_id: str, email: Optional[str], quantity: int) -> dict:
        quantity = _quantity(quantity)
        unit_usd = mailbox_unit_price(self.db, user_id, email)["price_per_additional_mailbox"]
        currency = user_currency(self.db, user_id)
        total = convert_from_usd(unit_usd * quantity, currency)
        amount = to_smallest_unit(total)
        return self._checkout(
            user_id=user_id,
            email=email,
            mode="subscription",
            line_items=[{
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": "Mailbox Add-on"},
                    "unit_amount": amount,
                    "recurring": {"interval": "month"},
                },
                "quantity": 1,
            }],
            metadata={
                "type": "mailbox_addon",
                "numberOfMailboxes": quantity,
                "user_id": user_id,
                "original_currency": "usd",
                "charged_currency": currency,
            },
            txn_type="mailbox_addon",
            amount=amount,
            currency=currency,
            description=f"{quantity}x mailbox add-on @ {format_amount(convert_from_usd(unit_usd, currency), currency)} each",
        )

    def purchase_mailboxes_with_wallet(self, user_id: str, email: Optional[str], quantity: int,
                                       amount=None) -> MailboxSubscription:
        quantity = _quantity(quantity)
        unit = specific_user_price(self.db, email, "gsuite") or wallet_tier_price(quantity)
        expected = money(unit * quantity)
        if amount is not None and money(amount) != expected:
            raise ValidationError(f"Amount mismatch. Expected ${expected}, received ${money(amount)}")

        self.wallet.debit(user_id, expected, f"Purchased {quantity} mailbox(es) at ${unit}/each")
        sub = self.lifecycle.grant(
            user_id=user_id,
            kind=SubscriptionKind.ADDON,
            mailbox_type=MailboxType.GSUITE,
            payment_method=PaymentMethod.WALLET,
            quantity=quantity,
            price_per_mailbox=unit,
            total_amount=expected,
            renews_on=add_months(utcnow(), 1),
        )
        record_order(
            self.db,
            user_id=user_id,
            order_type="gsuite",
            amount=expected,
            payment_method=PaymentMethod.WALLET,
            quantity=quantity,
            reference_id=sub.id,
            details={"number_of_mailboxes": quantity, "price_per_mailbox": str(unit)},
        )
        notify_on_commit(
            self.db,
            f"Mailbox add-on from wallet for user {user_id}: {quantity} mailbox(es), ${expected} ({sub.id})", "SUCCESS",
        )
        return sub

    # Plans

    def plan_checkout(self, user_id: str, email: Optional[str], plan_id: str) -> dict:
        plan = self.db.get(Plan, plan_id)
        if plan is None or not plan.active:
            raise NotFoundError("Plan not found")
        if not plan.stripe_price_id_monthly:
            raise ValidationError("Plan has no payment provider price")
        return self._checkout(
            user_id=user_id,
            email=email,
            mode="subscription",
            line_items=[{"price": plan.stripe_price_id_monthly, "quantity": 1}],
            metadata={"type": "mailbox_subscription", "plan_id": plan.id, "user_id": user_id},
            txn_type="mailbox_subscription",
            amount=to_smallest_unit(plan.price_monthly),
            currency="usd",
            description=f"Subscription for {plan.name}",
        )

    # Pre-warmed

    def prewarm_checkout(self, user_id: str, email: Optional[str], selected: List[str],
                         promo_code: Optional[str] = None) -> dict:
        selected = list(dict.fromkeys(e.strip().lower() for e in selected or [] if e and e.strip()))
        if not selected:
            raise ValidationError("Valid number of mailboxes required")
        pool = (
            self.db.query(PrewarmMailbox)
            .filter(PrewarmMailbox.email.in_(selected), PrewarmMailbox.status == MailboxStatus.READY_FOR_SALE)
            .all()
        )
        if len(pool) != len(selected):
            raise ValidationError("Invalid selected mailboxes")

        total_usd = sum((prewarm_unit_price(self.db, email, m.price) for m in pool), Decimal("0"))
        currency = user_currency(self.db, user_id)
        total = convert_from_usd(total_usd, currency)
        amount = to_smallest_unit(total)

        selection = PrewarmSelection(id=new_id(), user_id=user_id, emails=selected, created_at=utcnow())
        self.db.add(selection)
        self.db.flush()

        discounts = None
        if promo_code:
            promotion_id = self.gateway.find_promotion_code(promo_code)
            if promotion_id is None:
                raise ValidationError("Invalid promo code")
            discounts = [{"promotion_code": promotion_id}]

        return self._checkout(
            user_id=user_id,
            email=email,
            mode="subscription",
            line_items=[{
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": "Pre-Warmed Mailbox"},
                    "unit_amount": amount,
                    "recurring": {"interval": "month"},
                },
                "quantity": 1,
            }],
            metadata={
                "type": "pre_warm_mailbox",
                "emailListId": selection.id,
                "numberOfMailboxes": len(pool),
                "user_id": user_id,
                "original_currency": "usd",
                "charged_currency": currency,
                "coupon_code": promo_code,
            },
            txn_type="pre_warm_mailbox",
            amount=amount,
            currency=currency,
            description=f"{len(pool)}x Pre-Warmed Mailbox @ {format_amount(total, currency)}",
            discounts=discounts,
        )

    # Domains

    def domain_checkout(self, user_id: str, email: Optional[str], domains: List[dict]) -> dict:
        items = _domain_items(domains)
        currency = user_currency(self.db, user_id)
        line_items = []
        total_usd = Decimal("0")
        for item in items:
            price_usd = money(Decimal(item["price"]) / 100)
            total_usd += price_usd
            line_items.append({
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": f"{item['domain']} - {format_amount(price_usd, 'usd')}"},
                    "unit_amount": to_smallest_unit(convert_from_usd(price_usd, currency)),
                },
                "quantity": 1,
            })
        return self._checkout(
            user_id=user_id,
            email=email,
            mode="payment",
            line_items=line_items,
            metadata={
                "type": "domain_purchase",
                "user_id": user_id,
                "domains": ",".join(i["domain"] for i in items),
                "years": ",".join(str(i["years"]) for i in items),
                "original_currency": "usd",
                "charged_currency": currency,
            },
            txn_type="domain_purchase",
            amount=sum(li["price_data"]["unit_amount"] for li in line_items),
            currency=currency,
            description=f"Domain purchase: {', '.join(i['domain'] for i in items)}",
            allow_promotion_codes=False,
        )

    def purchase_domains_with_wallet(self, user_id: str, domains: List[dict],
                                     registrar: NamecheapRegistrar) -> dict:
        """Debit, record and pre-insert, commit, then register each domain on its own.

        A registrar failure for one domain leaves the others registered and
        does not refund the debit; failures are reported per domain.
        """
        items = _domain_items(domains)
        total = money(sum(Decimal(i["price"]) for i in items) / 100)
        reference_id = new_id()

        self.wallet.debit(user_id, total, f"Purchased {len(items)} domain(s)")
        record_wallet_transaction(
            self.db,
            user_id=user_id,
            type="domain_purchase",
            amount=to_smallest_unit(total),
            reference_id=reference_id,
            description=f"Domain purchase: {', '.join(i['domain'] for i in items)}",
        )
        record_order(
            self.db,
            user_id=user_id,
            order_type="domain",
            amount=total,
            payment_method=PaymentMethod.WALLET,
            quantity=len(items),
            reference_id=reference_id,
            details={
                "domain_name": ", ".join(i["domain"] for i in items),
                "years": ", ".join(str(i["years"]) for i in items),
            },
        )
        domains_service = DomainService(self.db, registrar=registrar)
        domains_service.record_purchase(
            user_id, items, amount=total, reference_id=reference_id, payment_method=PaymentMethod.WALLET
        )
        self.db.commit()
        notify_on_commit(self.db, f"Wallet debit of ${total} for domain purchase by user {user_id}", "INFO")

        result = domains_service.register_purchased(user_id, items)
        result["reference_id"] = reference_id
        return result

    # Direct card charges (API key surface)

    def purchase_domains_with_card(self, user_id: str, email: Optional[str], domains: List[dict],
                                   payment_method_id: str, registrar: NamecheapRegistrar) -> dict:
        """Charge a saved card up front, then register each domain on its own."""
        if not payment_method_id:
            raise ValidationError("billing.payment_method_id is required")
        items = _domain_items(domains)
        total = money(sum(Decimal(i["price"]) for i in items) / 100)
        names = ", ".join(i["domain"] for i in items)

        customer_id = self.ensure_customer(user_id, email)
        # Keep the provider customer even when the charge below fails
        self.db.commit()
        self.gateway.attach_payment_method(payment_method_id, customer_id)
        intent = self.gateway.create_payment_intent(
            amount=to_smallest_unit(total),
            currency="usd",
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            metadata={
                "type": "domain_purchase",
                "user_id": user_id,
                "domains": ",".join(i["domain"] for i in items),
                "years": ",".join(str(i["years"]) for i in items),
            },
            description=f"Domain purchase: {names}",
        )
        if intent.get("status") != "succeeded":
            raise UpstreamError(
                f"Payment status: {intent.get('status')}",
                correctable=True,
                details={"payment_intent_id": intent.get("id")},
            )

        record_succeeded_transaction(
            self.db,
            user_id=user_id,
            type="domain_purchase",
            amount=to_smallest_unit(total),
            reference_id=intent["id"],
            description=f"Domain purchase: {names}",
        )
        record_order(
            self.db,
            user_id=user_id,
            order_type="domain",
            amount=total,
            payment_method=PaymentMethod.STRIPE,
            quantity=len(items),
            reference_id=intent["id"],
            details={"domain_name": names, "years": ", ".join(str(i["years"]) for i in items)},
        )
        domains_service = DomainService(self.db, registrar=registrar)
        domains_service.record_purchase(
            user_id, items, amount=total, reference_id=intent["id"], payment_method=PaymentMethod.STRIPE
        )
        self.db.commit()

        result = domains_service.register_purchased(user_id, items)
        notify_on_commit(
            self.db,
            f"API domain purchase by user {user_id}: purchased {', '.join(result['purchased']) or 'none'}, "
            f"failed {len(result['failed'])}",
            "SUCCESS" if not result["failed"] else "WARNING",
        )
        result["payment_intent_id"] = intent["id"]
        return result

    def purchase_mailboxes_with_card(self, user_id: str, email: Optional[str], quantity: int,
                                     payment_method_id: str) -> MailboxSubscription:
        """Start a monthly provider subscription and grant the add-on once its first invoice is paid."""
        if not payment_method_id:
            raise ValidationError("billing.payment_method_id is required")
        quantity = _quantity(quantity)
        unit = mailbox_unit_price(self.db, user_id, email)["price_per_additional_mailbox"]
        total = money(unit * quantity)

        customer_id = self.ensure_customer(user_id, email)
        # Keep the provider customer even when the charge below fails
        self.db.commit()
        self.gateway.attach_payment_method(payment_method_id, customer_id)
        product = self.gateway.create_product("Mailbox Add-on")
        provider_sub = self.gateway.create_subscription(
            customer_id=customer_id,
            items=[{
                "price_data": {
                    "currency": "usd",
                    "product": product["id"],
                    "unit_amount": to_smallest_unit(total),
                    "recurring": {"interval": "month"},
                },
            }],
            metadata={"type": "mailbox_addon", "numberOfMailboxes": str(quantity), "user_id": user_id},
            default_payment_method=payment_method_id,
        )

        intent = (provider_sub.get("latest_invoice") or {}).get("payment_intent")
        if not intent:
            raise UpstreamError("Payment intent not found in subscription", correctable=True)
        if intent.get("status") not in ("succeeded", "requires_action"):
            intent = self.gateway.confirm_payment_intent(intent["id"], payment_method_id)
        if intent.get("status") == "requires_action":
            raise UpstreamError(
                "Payment requires additional authentication",
                correctable=True,
                details={"payment_intent": {
                    "id": intent.get("id"),
                    "client_secret": intent.get("client_secret"),
                    "status": intent.get("status"),
                }},
            )
        if intent.get("status") != "succeeded":
            raise UpstreamError(
                f"Payment status: {intent.get('status')}",
                correctable=True,
                details={"payment_intent_id": intent.get("id")},
            )

        record_succeeded_transaction(
            self.db,
            user_id=user_id,
            type="mailbox_addon",
            amount=to_smallest_unit(total),
            reference_id=intent["id"],
            checkout_session_id=provider_sub["id"],
            description=f"{quantity}x mailbox add-on @ ${unit} each",
        )
        sub = self.lifecycle.grant(
            user_id=user_id,
            kind=SubscriptionKind.ADDON,
            mailbox_type=MailboxType.GSUITE,
            payment_method=PaymentMethod.STRIPE,
            quantity=quantity,
            price_per_mailbox=unit,
            total_amount=total,
            renews_on=add_months(utcnow(), 1),
            external_id=provider_sub["id"],
        )
        record_order(
            self.db,
            user_id=user_id,
            order_type="gsuite",
            amount=total,
            payment_method=PaymentMethod.STRIPE,
            quantity=quantity,
            reference_id=provider_sub["id"],
            details={"subscription_id": sub.id, "number_of_mailboxes": quantity},
        )
        notify_on_commit(
            self.db,
            f"API mailbox purchase by user {user_id}: {quantity} mailbox(es), subscription {sub.id}", "SUCCESS",
        )
        return sub

    # Wallet

    def wallet_topup_checkout(self, user_id: str, email: Optional[str], amount) -> dict:
        amount_usd = money(amount or 0)
        if to_smallest_unit(amount_usd) < settings.wallet_topup_minimum_cents:
            raise ValidationError(
                f"Amount must be at least {format_amount(Decimal(settings.wallet_topup_minimum_cents) / 100, 'usd')}"
            )
        currency = user_currency(self.db, user_id)
        charged = to_smallest_unit(convert_from_usd(amount_usd, currency))
        return self._checkout(
            user_id=user_id,
            email=email,
            mode="payment",
            line_items=[{
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": "Wallet Top-Up"},
                    "unit_amount": charged,
                },
                "quantity": 1,
            }],
            metadata={
                "type": "wallet_topup",
                "user_id": user_id,
                "original_currency": "usd",
                "charged_currency": currency,
            },
            txn_type="wallet_topup",
            amount=charged,
            currency=currency,
            description=f"Wallet top-up of {format_amount(amount_usd, 'usd')}",
            allow_promotion_codes=False,
        )


def _quantity(value) -> int:
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Valid number of mailboxes required")
    if quantity <= 0:
        raise ValidationError("Valid number of mailboxes required")
    return quantity


def _domain_items(domains: List[dict]) -> List[Dict[str, Any]]:
    """Validate ``[{domain, year, price}]`` request items; ``price`` is USD cents."""
    if not domains:
        raise ValidationError("Domains are required")
    items = []
    seen = set()
    for raw in domains:
        name = normalize_domain(raw.get("domain") or "")
        if not name or "." not in name:
            raise ValidationError(f"Invalid domain: {raw.get('domain')!r}")
        if name in seen:
            raise ValidationError(f"Duplicate domain: {name}")
        seen.add(name)
        try:
            price = int(raw.get("price"))
            years = int(raw.get("year") or raw.get("years") or 1)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid price or year for {name}")
        if price <= 0 or years <= 0:
            raise ValidationError(f"Invalid price or year for {name}")
        items.append({"domain": name, "years": years, "price": price})
    return items
