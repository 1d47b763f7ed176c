"""Webhook Reconciler: applies verified payment-provider events to local state.

Each event is handled in its own transaction. Side effects and the event's
idempotency key commit together, so a redelivered event is acknowledged and
skipped. A failing handler is rolled back, logged and alerted; it never
propagates to the HTTP layer.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailbill.core.exceptions import NotFoundError, ServiceError, ValidationError
from mailbill.core.timeutil import add_interval, add_months, from_timestamp, utcnow
from mailbill.models import (
    MailboxStatus,
    MailboxSubscription,
    MailboxType,
    PaymentMethod,
    Plan,
    PrewarmMailbox,
    PrewarmSelection,
    ProcessedWebhookEvent,
    SubscriptionKind,
    SubscriptionStatus,
    TransactionStatus,
)
from mailbill.services.domains import DomainService, parse_domain_items
from mailbill.services.gateway import StripeGateway
from mailbill.services.ledger import find_transaction, new_id, record_order
from mailbill.services.lifecycle import LifecycleManager
from mailbill.services.notifications import notify, notify_on_commit
from mailbill.services.pricing import convert_to_usd, money
from mailbill.services.registrar import NamecheapRegistrar
from mailbill.services.wallet import WalletService

logger = logging.getLogger(__name__)


class WebhookReconciler:
    def __init__(self, db: Session, gateway: StripeGateway, registrar: Optional[NamecheapRegistrar] = None):
        self.db = db
        self.gateway = gateway
        self.registrar = registrar
        self.lifecycle = LifecycleManager(db, gateway)
        self._handlers: Dict[str, Callable[[dict, dict], None]] = {
            "checkout.session.completed": self.on_checkout_completed,
            "checkout.session.expired": self.on_checkout_expired,
            "customer.subscription.deleted": self.on_subscription_deleted,
            "customer.subscription.updated": self.on_subscription_updated,
            "invoice.payment_succeeded": self.on_invoice_paid,
        }
        self._checkout_handlers: Dict[str, Callable[[dict], None]] = {
            "domain_purchase": self.handle_domain_purchase,
            "wallet_topup": self.handle_wallet_topup,
            "mailbox_subscription": self.handle_plan_subscription,
            "mailbox_addon": self.handle_mailbox_addon,
            "pre_warm_mailbox": self.handle_prewarm_purchase,
        }

    def handle(self, event: dict) -> None:
        event_type = event.get("type") or ""
        obj = ((event.get("data") or {}).get("object")) or {}
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled event type %s (%s)", event_type, event.get("id"))
            return

        logger.info("Webhook %s received (%s)", event_type, event.get("id"))
        try:
            handler(event, obj)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.exception("Webhook %s (%s) handler failed", event_type, event.get("id"))
            notify(f"Webhook {event_type} ({event.get('id')}) failed for object {obj.get('id')}: {e}", "ERROR")

    # Idempotency

    def _already_processed(self, key: str) -> bool:
        return (
            self.db.query(ProcessedWebhookEvent.id)
            .filter(ProcessedWebhookEvent.idempotency_key == key)
            .first()
            is not None
        )

    def _claim(self, key: str, event: dict) -> bool:
        """Record ``key`` in the current transaction; False when another delivery got there first.

        Must be the handler's first write: a concurrent claim rolls the
        session back.
        """
        if self._already_processed(key):
            logger.info("Webhook key %s already processed; skipping", key)
            return False
        self.db.add(ProcessedWebhookEvent(
            id=new_id(),
            idempotency_key=key,
            event_id=event.get("id"),
            event_type=event.get("type") or "",
            processed_at=utcnow(),
        ))
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.info("Webhook key %s claimed concurrently; skipping", key)
            return False
        return True

    # Checkout sessions

    def on_checkout_completed(self, event: dict, session: dict) -> None:
        metadata = session.get("metadata") or {}
        kind = metadata.get("type")
        handler = self._checkout_handlers.get(kind)
        if handler is None:
            logger.warning("Unknown checkout type %r for session %s", kind, session.get("id"))
            notify_on_commit(self.db, f"Unknown session type: {kind} for session {session.get('id')}", "INFO")
            return
        if not metadata.get("user_id"):
            raise ValidationError(f"Checkout session {session.get('id')} has no user_id")
        if not self._claim(f"checkout:{session.get('id')}", event):
            return
        self._mark_succeeded(session, session.get("payment_intent") or session.get("invoice") or session.get("subscription"))
        handler(session)

    def on_checkout_expired(self, event: dict, session: dict) -> None:
        txn = find_transaction(self.db, session.get("id"))
        if txn is None:
            logger.info("Expired session %s has no transaction record", session.get("id"))
            return
        if txn.status == TransactionStatus.PENDING:
            txn.status = TransactionStatus.EXPIRED
            txn.updated_at = utcnow()
            self.db.flush()
            logger.info("Transaction for session %s marked expired", session.get("id"))

    def _mark_succeeded(self, session: dict, reference_id: Optional[str]) -> None:
        txn = find_transaction(self.db, session.get("id"))
        if txn is None:
            logger.warning("No transaction record for completed session %s", session.get("id"))
            return
        txn.status = TransactionStatus.SUCCEEDED
        txn.reference_id = reference_id
        txn.updated_at = utcnow()
        self.db.flush()

    def _paid_usd(self, session: dict) -> Decimal:
        metadata = session.get("metadata") or {}
        currency = (metadata.get("charged_currency") or session.get("currency") or "usd").lower()
        return convert_to_usd(Decimal(session.get("amount_total") or 0) / 100, currency)

    def handle_domain_purchase(self, session: dict) -> None:
        metadata = session["metadata"]
        user_id = metadata["user_id"]
        items = parse_domain_items(metadata.get("domains"), metadata.get("years"))
        if not items:
            raise ValidationError(f"Checkout session {session.get('id')} lists no domains")
        amount = self._paid_usd(session)
        reference_id = session.get("payment_intent") or session.get("id")

        record_order(
            self.db,
            user_id=user_id,
            order_type="domain",
            amount=amount,
            payment_method=PaymentMethod.STRIPE,
            quantity=len(items),
            reference_id=reference_id,
            details={
                "domain_name": ", ".join(i["domain"] for i in items),
                "years": ", ".join(str(i["years"]) for i in items),
                "coupon_code": metadata.get("coupon_code"),
            },
        )
        domains = DomainService(self.db, registrar=self.registrar)
        domains.record_purchase(
            user_id, items, amount=amount, reference_id=reference_id, payment_method=PaymentMethod.STRIPE
        )
        # Payment and pre-inserted domains are durable before any registrar call
        self.db.commit()
        notify_on_commit(
            self.db,
            f"Payment received from user {user_id} for domains {metadata.get('domains')}", "SUCCESS",
        )
        result = domains.register_purchased(user_id, items)
        logger.info(
            "Domain purchase for user %s: %d registered, %d failed",
            user_id, len(result["purchased"]), len(result["failed"]),
        )

    def handle_wallet_topup(self, session: dict) -> None:
        user_id = session["metadata"]["user_id"]
        amount = self._paid_usd(session)
        WalletService(self.db).credit(user_id, amount, "Stripe wallet top-up", topup=True)
        notify_on_commit(
            self.db,
            f"Wallet top-up of ${amount} for user {user_id} ({session.get('payment_intent')})", "SUCCESS",
        )

    def handle_plan_subscription(self, session: dict) -> None:
        metadata = session["metadata"]
        user_id = metadata["user_id"]
        plan = self.db.get(Plan, metadata.get("plan_id"))
        if plan is None:
            raise NotFoundError(f"Plan not found for {metadata.get('plan_id')}")
        sub = self.lifecycle.grant_plan(
            user_id=user_id,
            plan=plan,
            payment_method=PaymentMethod.STRIPE,
            external_id=session.get("subscription"),
        )
        record_order(
            self.db,
            user_id=user_id,
            order_type="gsuite",
            amount=self._paid_usd(session),
            payment_method=PaymentMethod.STRIPE,
            quantity=sub.number_of_mailboxes,
            reference_id=session.get("subscription"),
            details={"plan_id": plan.id, "number_of_mailboxes": sub.number_of_mailboxes},
        )
        notify_on_commit(self.db, f"Subscription activated for user {user_id}: {plan.name}", "SUCCESS")

    def handle_mailbox_addon(self, session: dict) -> None:
        metadata = session["metadata"]
        user_id = metadata["user_id"]
        quantity = _positive_int(metadata.get("numberOfMailboxes"), "numberOfMailboxes")
        amount = self._paid_usd(session)
        sub = self.lifecycle.grant(
            user_id=user_id,
            kind=SubscriptionKind.ADDON,
            mailbox_type=MailboxType.GSUITE,
            payment_method=PaymentMethod.STRIPE,
            quantity=quantity,
            price_per_mailbox=amount / quantity,
            total_amount=amount,
            renews_on=add_months(utcnow(), 1),
            external_id=session.get("subscription"),
        )
        record_order(
            self.db,
            user_id=user_id,
            order_type="gsuite",
            amount=amount,
            payment_method=PaymentMethod.STRIPE,
            quantity=quantity,
            reference_id=session.get("subscription"),
            details={
                "numberOfMailboxes": quantity,
                "price_per_mailbox": str(money(sub.price_per_mailbox)),
                "coupon_code": metadata.get("coupon_code"),
            },
        )
        notify_on_commit(
            self.db,
            f"Mailbox add-on processed for user {user_id}: {quantity} mailbox(es), ${amount}", "SUCCESS",
        )

    def handle_prewarm_purchase(self, session: dict) -> None:
        metadata = session["metadata"]
        user_id = metadata["user_id"]
        selection = self.db.get(PrewarmSelection, metadata.get("emailListId"))
        if selection is None:
            raise NotFoundError(f"Pre-warmed selection {metadata.get('emailListId')} not found")
        emails = list(selection.emails or [])
        quantity = _positive_int(metadata.get("numberOfMailboxes") or len(emails), "numberOfMailboxes")
        amount = self._paid_usd(session)

        pool = (
            self.db.query(PrewarmMailbox)
            .filter(PrewarmMailbox.email.in_(emails), PrewarmMailbox.status == MailboxStatus.READY_FOR_SALE)
            .all()
        )
        sub = self.lifecycle.grant(
            user_id=user_id,
            kind=SubscriptionKind.ADDON,
            mailbox_type=MailboxType.PREWARMED,
            payment_method=PaymentMethod.STRIPE,
            quantity=quantity,
            price_per_mailbox=amount / quantity,
            total_amount=amount,
            renews_on=add_months(utcnow(), 1),
            external_id=session.get("subscription"),
            used=min(len(pool), quantity),
        )
        now = utcnow()
        for mailbox in pool[:quantity]:
            mailbox.status = MailboxStatus.ACTIVE
            mailbox.user_id = user_id
            mailbox.subscription_id = sub.id
            mailbox.updated_at = now
        self.db.flush()

        unavailable = sorted(set(emails) - {m.email for m in pool})
        if unavailable:
            logger.warning("Pre-warmed mailboxes no longer for sale for user %s: %s", user_id, unavailable)
            notify_on_commit(
                self.db,
                f"Pre-warmed purchase {sub.id}: not available anymore: {', '.join(unavailable)}", "ERROR",
            )

        record_order(
            self.db,
            user_id=user_id,
            order_type="prewarm",
            amount=amount,
            payment_method=PaymentMethod.STRIPE,
            quantity=quantity,
            reference_id=session.get("subscription"),
            details={"numberOfMailboxes": quantity, "selectedMailboxes": emails},
        )
        notify_on_commit(
            self.db,
            f"Pre-warmed purchase processed for user {user_id}: {len(pool)}/{len(emails)} mailbox(es) assigned",
            "SUCCESS" if not unavailable else "ERROR",
        )

    # Provider subscriptions

    def on_subscription_deleted(self, event: dict, subscription: dict) -> None:
        sub = self.lifecycle.find_by_external_id(subscription.get("id"))
        if sub is None:
            logger.info("Deleted subscription %s is unknown; ignoring", subscription.get("id"))
            return
        self.lifecycle.cascade_cancel(sub)

    def on_subscription_updated(self, event: dict, subscription: dict) -> None:
        sub = self.lifecycle.find_by_external_id(subscription.get("id"))
        if sub is None:
            logger.info("Updated subscription %s is unknown; ignoring", subscription.get("id"))
            return
        cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))

        if cancel_at_period_end and sub.status == SubscriptionStatus.ACTIVE:
            sub.status = SubscriptionStatus.CANCEL_AT_PERIOD_END
            sub.updated_at = utcnow()
            self.db.flush()
            ends = from_timestamp(subscription.get("current_period_end"))
            logger.info("Subscription %s set to cancel at period end", sub.id)
            notify_on_commit(
                self.db,
                f"{sub.mailbox_type} subscription {sub.id} (user {sub.user_id}) set to cancel at period end"
                + (f"; ends {ends.date().isoformat()}" if ends else ""),
                "INFO",
            )
        elif not cancel_at_period_end and sub.status == SubscriptionStatus.CANCEL_AT_PERIOD_END:
            now = utcnow()
            sub.status = SubscriptionStatus.ACTIVE
            sub.renews_on = add_months(now, 1)
            sub.updated_at = now
            self.db.flush()
            logger.info("Subscription %s reactivated", sub.id)
            notify_on_commit(self.db, f"Subscription renewed: {sub.id} (user {sub.user_id})", "INFO")
        else:
            logger.info("Subscription %s update processed (status %s)", sub.id, subscription.get("status"))

    # Invoices

    def on_invoice_paid(self, event: dict, invoice: dict) -> None:
        external_id = _invoice_subscription_id(invoice)
        if not external_id:
            logger.warning("Invoice %s has no subscription", invoice.get("id"))
            return
        sub = self.lifecycle.find_by_external_id(external_id)
        if sub is None:
            logger.warning("Invoice %s references unknown subscription %s", invoice.get("id"), external_id)
            return
        if not self._claim(f"invoice:{invoice.get('id')}", event):
            return

        provider_sub = self.gateway.retrieve_subscription(external_id)
        next_renewal = next_renewal_date(provider_sub, invoice)
        sub.renews_on = next_renewal
        sub.updated_at = utcnow()
        # Status follows the provider's current state; an earlier update event may have landed first
        if sub.status != SubscriptionStatus.CANCELLED:
            sub.status = (
                SubscriptionStatus.CANCEL_AT_PERIOD_END
                if provider_sub.get("cancel_at_period_end")
                else SubscriptionStatus.ACTIVE
            )
        self.db.flush()

        if invoice.get("billing_reason") == "subscription_cycle":
            record_order(
                self.db,
                user_id=sub.user_id,
                order_type="prewarm" if sub.mailbox_type == MailboxType.PREWARMED else "gsuite",
                amount=money(Decimal(invoice.get("amount_paid") or 0) / 100),
                currency=(invoice.get("currency") or "usd").lower(),
                payment_method=PaymentMethod.STRIPE,
                quantity=sub.number_of_mailboxes,
                reference_id=invoice.get("id"),
                details={"subscription_id": sub.id, "renewal": True},
            )

        try:
            metadata = dict(provider_sub.get("metadata") or {})
            metadata["next_renewal_date"] = next_renewal.date().isoformat()
            self.gateway.update_subscription(external_id, metadata=metadata)
        except ServiceError as e:
            logger.warning("Failed to store next renewal date on subscription %s: %s", external_id, e.message)

        logger.info("Invoice %s paid; subscription %s renews on %s", invoice.get("id"), sub.id, next_renewal.isoformat())
        notify_on_commit(
            self.db,
            f"{'Plan' if sub.kind == SubscriptionKind.PLAN else 'Addon'} subscription renewed for user {sub.user_id}: "
            f"{sub.id}, next renewal {next_renewal.date().isoformat()}",
            "SUCCESS",
        )


def _invoice_subscription_id(invoice: dict) -> Optional[str]:
    if invoice.get("subscription"):
        return invoice["subscription"]
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def next_renewal_date(subscription: dict, invoice: dict):
    """Absolute next renewal date for an invoice.

    The provider's period end, then the invoice line's period end, then one
    billing interval from the current period start.
    """
    items = (subscription.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}

    period_end = subscription.get("current_period_end") or first_item.get("current_period_end")
    if period_end:
        return from_timestamp(period_end)

    lines = (invoice.get("lines") or {}).get("data") or []
    line_end = ((lines[0].get("period") or {}).get("end")) if lines else None
    if line_end:
        return from_timestamp(line_end)

    start = from_timestamp(subscription.get("current_period_start")) or utcnow()
    recurring = ((first_item.get("price") or {}).get("recurring")) or {}
    return add_interval(start, recurring.get("interval") or "month", int(recurring.get("interval_count") or 1))


def _positive_int(value, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")
    if number <= 0:
        raise ValidationError(f"{name} must be greater than zero")
    return number
