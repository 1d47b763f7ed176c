"""Subscription Lifecycle Manager.

Creates, renews, changes and cancels mailbox subscriptions for both billing
paths. Methods flush into the caller's session; the route (or the webhook
reconciler) owns the commit.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from mailbill.core.config import settings
from mailbill.core.exceptions import (
    InsufficientBalanceError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from mailbill.core.timeutil import add_months, from_timestamp, utcnow
from mailbill.models import (
    Mailbox,
    MailboxStatus,
    MailboxSubscription,
    MailboxType,
    PaymentMethod,
    Plan,
    PrewarmMailbox,
    SubscriptionKind,
    SubscriptionStatus,
)
from mailbill.services.gateway import StripeGateway
from mailbill.services.ledger import enqueue_job, new_id, record_order
from mailbill.services.notifications import notify, notify_on_commit
from mailbill.services.pricing import money
from mailbill.services.wallet import WalletService

logger = logging.getLogger(__name__)


def order_type_for(mailbox_type: str) -> str:
    return "prewarm" if mailbox_type == MailboxType.PREWARMED else "gsuite"


class LifecycleManager:
    def __init__(self, db: Session, gateway: Optional[StripeGateway] = None):
        self.db = db
        self.gateway = gateway
        self.wallet = WalletService(db)

    # Lookups

    def get_for_user(self, user_id: str, subscription_id: str) -> MailboxSubscription:
        sub = (
            self.db.query(MailboxSubscription)
            .filter(MailboxSubscription.id == subscription_id, MailboxSubscription.user_id == user_id)
            .first()
        )
        if sub is None:
            raise NotFoundError("Subscription not found")
        return sub

    def find_by_external_id(self, external_id: str) -> Optional[MailboxSubscription]:
        return (
            self.db.query(MailboxSubscription)
            .filter(MailboxSubscription.external_id == external_id)
            .first()
        )

    def current_plan_subscription(self, user_id: str, statuses=SubscriptionStatus.LIVE) -> Optional[MailboxSubscription]:
        return (
            self.db.query(MailboxSubscription)
            .filter(
                MailboxSubscription.user_id == user_id,
                MailboxSubscription.kind == SubscriptionKind.PLAN,
                MailboxSubscription.status.in_(statuses),
            )
            .order_by(MailboxSubscription.created_at.desc())
            .first()
        )

    def current_subscription_view(self, user_id: str) -> Optional[dict]:
        """Plan-level projection: the newest live plan row and its catalog plan."""
        sub = self.current_plan_subscription(user_id)
        if sub is None:
            return None
        plan = self.db.get(Plan, sub.plan_id) if sub.plan_id else None
        return {
            "subscription_id": sub.id,
            "status": sub.status,
            "renews_on": sub.renews_on,
            "mailboxes_total": sub.number_of_mailboxes,
            "mailboxes_used": sub.number_of_used_mailbox,
            "payment_method": sub.payment_method,
            "created_at": sub.created_at,
            "plan": plan_to_dict(plan) if plan else None,
        }

    # Grants

    def grant(
        self,
        *,
        user_id: str,
        kind: str,
        mailbox_type: str,
        payment_method: str,
        quantity: int,
        price_per_mailbox,
        total_amount,
        renews_on: datetime,
        plan_id: Optional[str] = None,
        external_id: Optional[str] = None,
        used: int = 0,
    ) -> MailboxSubscription:
        """Insert a live subscription row.

        Only called after the charge is confirmed: a wallet debit in the same
        transaction, or a verified payment-provider event.
        """
        now = utcnow()
        sub = MailboxSubscription(
            id=new_id(),
            external_id=external_id,
            user_id=user_id,
            kind=kind,
            plan_id=plan_id,
            mailbox_type=mailbox_type,
            status=SubscriptionStatus.ACTIVE,
            payment_method=payment_method,
            number_of_mailboxes=quantity,
            number_of_used_mailbox=used,
            price_per_mailbox=money(price_per_mailbox),
            total_amount=money(total_amount),
            billing_date=now,
            renews_on=renews_on,
            created_at=now,
            updated_at=now,
        )
        self.db.add(sub)
        self.db.flush()
        logger.info(
            "Granted %s %s subscription %s (%s mailboxes, %s) to user %s",
            kind, mailbox_type, sub.id, quantity, payment_method, user_id,
        )
        return sub

    def grant_plan(
        self,
        *,
        user_id: str,
        plan: Plan,
        payment_method: str,
        external_id: Optional[str] = None,
        renews_on: Optional[datetime] = None,
    ) -> MailboxSubscription:
        included = int(plan.included_mailboxes or 0)
        price_monthly = Decimal(str(plan.price_monthly or 0))
        per_mailbox = price_monthly / included if included else Decimal("0")
        return self.grant(
            user_id=user_id,
            kind=SubscriptionKind.PLAN,
            mailbox_type=MailboxType.GSUITE,
            payment_method=payment_method,
            quantity=included,
            price_per_mailbox=per_mailbox,
            total_amount=price_monthly,
            renews_on=renews_on or utcnow() + timedelta(days=int(plan.duration or 30)),
            plan_id=plan.id,
            external_id=external_id,
        )

    def purchase_plan_with_wallet(self, user_id: str, plan_id: str) -> MailboxSubscription:
        plan = self.db.get(Plan, plan_id)
        if plan is None or not plan.active:
            raise NotFoundError("Plan not found")
        existing = self.current_plan_subscription(user_id, statuses=(SubscriptionStatus.ACTIVE,))
        if existing is not None:
            raise ValidationError("You already have an active plan. Use change plan instead.")
        price = money(plan.price_monthly)
        self.wallet.debit(user_id, price, f"Subscribed to {plan.name} plan")
        sub = self.grant_plan(user_id=user_id, plan=plan, payment_method=PaymentMethod.WALLET)
        record_order(
            self.db,
            user_id=user_id,
            order_type="gsuite",
            amount=price,
            payment_method=PaymentMethod.WALLET,
            quantity=sub.number_of_mailboxes,
            reference_id=sub.id,
            details={"plan_id": plan.id, "number_of_mailboxes": sub.number_of_mailboxes},
        )
        notify_on_commit(self.db, f"User {user_id} subscribed to plan {plan.name} via wallet ({sub.id})", "SUCCESS")
        return sub

    # Cancellation

    def cascade_cancel(self, sub: MailboxSubscription) -> list[str]:
        """Cancel ``sub`` and release what hangs off it.

        Gsuite mailboxes become Inactive and stay in place. Pre-warmed
        mailboxes go back to the pool without an owner. Returns the affected
        emails; a row that is already cancelled is left alone.
        """
        if sub.status == SubscriptionStatus.CANCELLED:
            logger.info("Subscription %s already cancelled; skipping cascade", sub.id)
            return []

        sub.status = SubscriptionStatus.CANCELLED
        sub.updated_at = utcnow()

        if sub.mailbox_type == MailboxType.PREWARMED:
            pool = self.db.query(PrewarmMailbox).filter(PrewarmMailbox.subscription_id == sub.id).all()
            for mailbox in pool:
                mailbox.status = MailboxStatus.INACTIVE
                mailbox.subscription_id = None
                mailbox.user_id = None
                mailbox.export_id = None
            emails = [m.email for m in pool]
        else:
            mailboxes = self.db.query(Mailbox).filter(Mailbox.subscription_id == sub.id).all()
            for mailbox in mailboxes:
                mailbox.status = MailboxStatus.INACTIVE
            emails = [m.email for m in mailboxes]

        self.db.flush()
        enqueue_job(
            self.db,
            user_id=sub.user_id,
            job_type="cancel_subscription",
            order_type=order_type_for(sub.mailbox_type),
            details={"subscriptionId": sub.id, "mailboxes": emails},
        )
        logger.info(
            "Subscription %s cancelled for user %s; %d %s mailbox(es) deactivated",
            sub.id, sub.user_id, len(emails), sub.mailbox_type,
        )
        notify_on_commit(
            self.db,
            f"{sub.mailbox_type} subscription {sub.id} cancelled for user {sub.user_id}; "
            f"{len(emails)} mailbox(es) set inactive",
            "INFO",
        )
        return emails

    def cancel(self, user_id: str, subscription_id: str, *, immediate: bool) -> dict:
        sub = self.get_for_user(user_id, subscription_id)
        if sub.status != SubscriptionStatus.ACTIVE:
            raise ValidationError("Subscription is not active")

        if sub.payment_method == PaymentMethod.WALLET:
            if immediate:
                self.cascade_cancel(sub)
                return {"message": "Subscription canceled immediately"}
            sub.status = SubscriptionStatus.CANCEL_AT_PERIOD_END
            sub.updated_at = utcnow()
            self.db.flush()
            notify_on_commit(self.db, f"User {user_id} cancelled wallet subscription {sub.id} at period end")
            return {"message": "Subscription will be canceled at end of period"}

        if not sub.external_id:
            raise InternalError("Subscription has no payment provider reference")
        gateway = self._require_gateway()
        # The cascade runs when the provider reports the deletion
        if immediate:
            result = gateway.cancel_subscription(sub.external_id)
        else:
            result = gateway.update_subscription(sub.external_id, cancel_at_period_end=True)
        logger.info(
            "User %s cancelled Stripe subscription %s (%s)",
            user_id, sub.external_id, "immediate" if immediate else "end of period",
        )
        return {
            "message": "Subscription canceled immediately" if immediate else "Subscription will be canceled at end of period",
            "stripeStatus": result.get("status"),
        }

    # Wallet renewal

    def renew(self, sub: MailboxSubscription) -> bool:
        """Charge the wallet for the next period, or cancel when funds are short."""
        if sub.payment_method != PaymentMethod.WALLET:
            raise ValidationError("Only wallet-paid subscriptions renew locally")
        if sub.status != SubscriptionStatus.ACTIVE:
            raise ValidationError("Subscription is not active")

        amount = money(sub.total_amount)
        if amount > 0:
            try:
                self.wallet.debit(
                    sub.user_id,
                    amount,
                    f"Renewed {sub.number_of_mailboxes} mailbox(es) subscription at ${money(sub.price_per_mailbox)}/each",
                )
            except InsufficientBalanceError:
                logger.warning("Insufficient balance to renew subscription %s for user %s", sub.id, sub.user_id)
                notify_on_commit(
                    self.db,
                    f"Wallet renewal failed for subscription {sub.id} (user {sub.user_id}): "
                    f"required ${amount}",
                    "WARNING",
                )
                self.cascade_cancel(sub)
                return False

        now = utcnow()
        sub.billing_date = now
        sub.renews_on = add_months(now, 1)
        sub.updated_at = now
        self.db.flush()
        record_order(
            self.db,
            user_id=sub.user_id,
            order_type=order_type_for(sub.mailbox_type),
            amount=amount,
            payment_method=PaymentMethod.WALLET,
            quantity=sub.number_of_mailboxes,
            reference_id=sub.id,
            details={
                "number_of_mailboxes": sub.number_of_mailboxes,
                "price_per_mailbox": str(money(sub.price_per_mailbox)),
                "renewal": True,
            },
        )
        logger.info("Subscription %s renewed until %s", sub.id, sub.renews_on.isoformat())
        return True

    def due_wallet_subscriptions(self, now: Optional[datetime] = None) -> list[MailboxSubscription]:
        now = now or utcnow()
        return (
            self.db.query(MailboxSubscription)
            .filter(
                MailboxSubscription.payment_method == PaymentMethod.WALLET,
                MailboxSubscription.status.in_(SubscriptionStatus.LIVE),
                MailboxSubscription.renews_on.isnot(None),
                MailboxSubscription.renews_on <= now,
            )
            .order_by(MailboxSubscription.renews_on.asc())
            .all()
        )

    def renew_due_wallet_subscriptions(self, now: Optional[datetime] = None) -> dict:
        """Periodic sweep; commits after each subscription so one failure does not undo the rest."""
        renewed, cancelled, failed = [], [], []
        for sub in self.due_wallet_subscriptions(now):
            sub_id = sub.id
            try:
                if sub.status == SubscriptionStatus.CANCEL_AT_PERIOD_END:
                    self.cascade_cancel(sub)
                    cancelled.append(sub_id)
                elif self.renew(sub):
                    renewed.append(sub_id)
                else:
                    cancelled.append(sub_id)
                self.db.commit()
            except Exception:
                self.db.rollback()
                logger.exception("Renewal sweep failed for subscription %s", sub_id)
                failed.append(sub_id)
        if failed:
            notify(f"Wallet renewal sweep failed for {len(failed)} subscription(s): {', '.join(failed)}", "ERROR")
        return {"renewed": renewed, "cancelled": cancelled, "failed": failed}

    # Plan changes

    def change_plan(self, user_id: str, new_plan_id: str) -> dict:
        new_plan = self.db.get(Plan, new_plan_id)
        if new_plan is None or not new_plan.active:
            raise NotFoundError("New plan not found")

        sub = self.current_plan_subscription(user_id, statuses=(SubscriptionStatus.ACTIVE,))
        if sub is None:
            raise ValidationError("No active subscription found")
        if sub.plan_id == new_plan.id:
            raise ValidationError("Already on this plan")
        if sub.payment_method != PaymentMethod.STRIPE or not sub.external_id:
            raise ValidationError("Plan changes are only available for card-billed subscriptions")
        current_plan = self.db.get(Plan, sub.plan_id) if sub.plan_id else None
        if current_plan is None:
            raise NotFoundError("Current plan not found")
        if sub.number_of_used_mailbox > int(new_plan.included_mailboxes or 0):
            raise ValidationError(
                f"{sub.number_of_used_mailbox} mailboxes are in use; the new plan includes "
                f"{new_plan.included_mailboxes}. Delete mailboxes before downgrading."
            )
        if not new_plan.stripe_price_id_monthly:
            raise ValidationError("New plan has no payment provider price")

        gateway = self._require_gateway()
        provider_sub = gateway.retrieve_subscription(sub.external_id)
        items = (provider_sub.get("items") or {}).get("data") or []
        if not items:
            raise InternalError("Payment provider subscription has no items")
        current_price_id = (items[0].get("price") or {}).get("id")
        if current_price_id == new_plan.stripe_price_id_monthly:
            raise ValidationError("Already on this plan")

        is_upgrade = Decimal(str(new_plan.price_monthly)) > Decimal(str(current_plan.price_monthly))
        proration_behavior = "create_prorations" if is_upgrade else "none"
        updated = gateway.update_subscription(
            sub.external_id,
            items=[{"id": items[0]["id"], "price": new_plan.stripe_price_id_monthly}],
            proration_behavior=proration_behavior,
            billing_cycle_anchor="now",
        )

        sub.plan_id = new_plan.id
        sub.number_of_mailboxes = int(new_plan.included_mailboxes or 0)
        sub.price_per_mailbox = money(new_plan.price_per_additional_mailbox)
        sub.total_amount = money(new_plan.price_monthly)
        sub.updated_at = utcnow()
        self.db.flush()

        logger.info(
            "User %s changed plan %s -> %s (%s)", user_id, current_plan.id, new_plan.id, proration_behavior
        )
        notify_on_commit(self.db, f"User {user_id} changed plan from {current_plan.name} to {new_plan.name}", "INFO")
        return {
            "success": True,
            "message": "Plan upgraded successfully" if is_upgrade else "Plan downgraded successfully",
            "proration_behavior": proration_behavior,
            "subscription_id": sub.id,
            "stripe_subscription_id": updated.get("id") or sub.external_id,
        }

    # Provider views

    def recent_invoices(self, user_id: str, customer_id: Optional[str], limit: int = 10) -> list[dict]:
        if not customer_id:
            raise ValidationError("No billing account found for this user")
        sub = self.current_plan_subscription(user_id)
        if sub is None or not sub.external_id:
            raise NotFoundError("No active card-billed subscription found")
        invoices = self._require_gateway().list_invoices(
            customer_id=customer_id, subscription_id=sub.external_id, limit=limit
        )
        return [
            {
                "id": inv.get("id"),
                "amount": (inv.get("amount_paid") or 0) / 100,
                "currency": (inv.get("currency") or "usd").upper(),
                "status": inv.get("status"),
                "hostedInvoiceUrl": inv.get("hosted_invoice_url"),
                "created": from_timestamp(inv.get("created")),
            }
            for inv in invoices
        ]

    def portal_url(self, customer_id: Optional[str]) -> str:
        if not customer_id:
            raise ValidationError("No billing account found for this user")
        session = self._require_gateway().create_portal_session(
            customer_id, settings.frontend_url.rstrip("/") + "/profile/subscriptions"
        )
        return session["url"]

    def _require_gateway(self) -> StripeGateway:
        if self.gateway is None:
            raise InternalError("Payment gateway not available")
        return self.gateway


def plan_to_dict(plan: Plan) -> dict:
    return {
        "id": plan.id,
        "name": plan.name,
        "description": plan.description,
        "price_monthly": money(plan.price_monthly),
        "price_per_additional_mailbox": money(plan.price_per_additional_mailbox),
        "included_mailboxes": plan.included_mailboxes,
        "duration": plan.duration,
        "stripe_price_id_monthly": plan.stripe_price_id_monthly,
        "active": plan.active,
    }
