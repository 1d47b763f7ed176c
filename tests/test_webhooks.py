from datetime import datetime
from decimal import Decimal

import stripe

from mailbill.core.timeutil import from_timestamp
from mailbill.models import (
    Domain,
    DomainStatus,
    MailboxStatus,
    MailboxSubscription,
    MailboxType,
    Order,
    PaymentMethod,
    PrewarmMailbox,
    PrewarmSelection,
    ProcessedWebhookEvent,
    SubscriptionKind,
    SubscriptionStatus,
    TransactionHistory,
    TransactionStatus,
    Wallet,
)
from mailbill.services.ledger import new_id, record_pending_transaction
from mailbill.services.webhooks import WebhookReconciler, next_renewal_date
from tests.conftest import USER_ID

PERIOD_END = 1767225600  # 2026-01-01T00:00:00Z


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _checkout(kind, session_id="cs_1", amount_total=2500, **metadata):
    return {
        "id": session_id,
        "payment_intent": f"pi_{session_id}",
        "subscription": metadata.pop("subscription", None),
        "amount_total": amount_total,
        "currency": "usd",
        "metadata": {"type": kind, "user_id": USER_ID, **metadata},
    }


def test_wallet_topup_credited_once_on_redelivery(db, gateway):
    record_pending_transaction(db, user_id=USER_ID, checkout_session_id="cs_1", type="wallet_topup",
                               amount=2500, currency="usd")
    db.commit()
    reconciler = WebhookReconciler(db, gateway)
    event = _event("checkout.session.completed", _checkout("wallet_topup"))

    reconciler.handle(event)
    reconciler.handle(dict(event, id="evt_2"))

    wallet = db.query(Wallet).filter(Wallet.user_id == USER_ID).one()
    assert wallet.balance == Decimal("25.00")
    txn = db.query(TransactionHistory).filter(TransactionHistory.checkout_session_id == "cs_1").one()
    assert txn.status == TransactionStatus.SUCCEEDED
    assert txn.reference_id == "pi_cs_1"
    assert db.query(ProcessedWebhookEvent).count() == 1


def test_wallet_topup_in_inr_is_credited_in_usd(db, gateway):
    session = _checkout("wallet_topup", amount_total=212500, charged_currency="inr")

    WebhookReconciler(db, gateway).handle(_event("checkout.session.completed", session))

    wallet = db.query(Wallet).filter(Wallet.user_id == USER_ID).one()
    assert wallet.balance == Decimal("25.00")


def test_plan_checkout_grants_plan_subscription(db, gateway, make_plan):
    plan = make_plan(price="30.00", included=10)
    session = _checkout("mailbox_subscription", amount_total=3000, plan_id=plan.id, subscription="sub_ext")

    WebhookReconciler(db, gateway).handle(_event("checkout.session.completed", session))

    sub = db.query(MailboxSubscription).one()
    assert sub.kind == SubscriptionKind.PLAN
    assert sub.external_id == "sub_ext"
    assert sub.payment_method == PaymentMethod.STRIPE
    assert sub.number_of_mailboxes == 10
    assert db.query(Order).filter(Order.reference_id == "sub_ext").count() == 1


def test_mailbox_addon_checkout_grants_addon(db, gateway):
    session = _checkout("mailbox_addon", amount_total=1500, numberOfMailboxes="5", subscription="sub_addon")

    WebhookReconciler(db, gateway).handle(_event("checkout.session.completed", session))

    sub = db.query(MailboxSubscription).one()
    assert sub.kind == SubscriptionKind.ADDON
    assert sub.number_of_mailboxes == 5
    assert sub.price_per_mailbox == Decimal("3.00")
    assert sub.total_amount == Decimal("15.00")


def test_prewarm_checkout_assigns_available_pool_mailboxes(db, gateway):
    now = datetime.utcnow()
    for email in ("warm1@pool.com", "warm2@pool.com"):
        db.add(PrewarmMailbox(id=new_id(), email=email, price=Decimal("4.00"),
                              status=MailboxStatus.READY_FOR_SALE, created_at=now, updated_at=now))
    selection = PrewarmSelection(id=new_id(), user_id=USER_ID,
                                 emails=["warm1@pool.com", "warm2@pool.com", "gone@pool.com"], created_at=now)
    db.add(selection)
    db.commit()
    session = _checkout("pre_warm_mailbox", amount_total=1200, emailListId=selection.id, numberOfMailboxes="3",
                        subscription="sub_warm")

    WebhookReconciler(db, gateway).handle(_event("checkout.session.completed", session))

    sub = db.query(MailboxSubscription).one()
    assert sub.mailbox_type == MailboxType.PREWARMED
    assert sub.number_of_mailboxes == 3
    assert sub.number_of_used_mailbox == 2
    owned = db.query(PrewarmMailbox).filter(PrewarmMailbox.user_id == USER_ID).all()
    assert {m.email for m in owned} == {"warm1@pool.com", "warm2@pool.com"}
    assert all(m.status == MailboxStatus.ACTIVE and m.subscription_id == sub.id for m in owned)


def test_domain_checkout_registers_each_domain_independently(db, gateway, registrar):
    registrar.register_domain.side_effect = lambda name, years=1: (
        {"success": False, "message": "Domain taken"} if name == "taken.com" else {"success": True, "domain": name}
    )
    session = _checkout("domain_purchase", amount_total=2598, domains="fresh.com,taken.com", years="1,2")

    WebhookReconciler(db, gateway, registrar).handle(_event("checkout.session.completed", session))

    statuses = {d.domain_name: d.status for d in db.query(Domain).all()}
    assert statuses == {"fresh.com": DomainStatus.ACTIVE, "taken.com": DomainStatus.INACTIVE}
    order = db.query(Order).filter(Order.order_type == "domain").one()
    assert order.quantity == 2
    registrar.register_domain.assert_any_call("taken.com", 2)


def test_failing_handler_is_swallowed_and_not_claimed(db, gateway):
    session = _checkout("mailbox_subscription", plan_id="does-not-exist", subscription="sub_ext")

    WebhookReconciler(db, gateway).handle(_event("checkout.session.completed", session))

    assert db.query(ProcessedWebhookEvent).count() == 0
    assert db.query(MailboxSubscription).count() == 0


def test_unknown_checkout_type_is_ignored(db, gateway):
    WebhookReconciler(db, gateway).handle(_event("checkout.session.completed", _checkout("gift_card")))

    assert db.query(ProcessedWebhookEvent).count() == 0


def test_expired_checkout_marks_pending_transaction(db, gateway):
    record_pending_transaction(db, user_id=USER_ID, checkout_session_id="cs_old", type="domain",
                               amount=1299, currency="usd")
    db.commit()

    WebhookReconciler(db, gateway).handle(_event("checkout.session.expired", {"id": "cs_old"}))

    txn = db.query(TransactionHistory).one()
    assert txn.status == TransactionStatus.EXPIRED


def test_invoice_paid_is_applied_once(db, gateway, make_subscription):
    sub = make_subscription(payment_method=PaymentMethod.STRIPE, external_id="sub_ext")
    gateway.retrieve_subscription.return_value = {"id": "sub_ext", "current_period_end": PERIOD_END, "metadata": {}}
    invoice = {
        "id": "in_1",
        "subscription": "sub_ext",
        "billing_reason": "subscription_cycle",
        "amount_paid": 1500,
        "currency": "usd",
    }
    reconciler = WebhookReconciler(db, gateway)

    reconciler.handle(_event("invoice.payment_succeeded", invoice, "evt_a"))
    reconciler.handle(_event("invoice.payment_succeeded", invoice, "evt_b"))

    db.refresh(sub)
    assert sub.renews_on == from_timestamp(PERIOD_END)
    assert db.query(Order).filter(Order.reference_id == "in_1").count() == 1
    gateway.retrieve_subscription.assert_called_once_with("sub_ext")
    metadata = gateway.update_subscription.call_args.kwargs["metadata"]
    assert metadata["next_renewal_date"] == "2026-01-01"


def test_first_invoice_records_no_renewal_order(db, gateway, make_subscription):
    make_subscription(payment_method=PaymentMethod.STRIPE, external_id="sub_ext")
    gateway.retrieve_subscription.return_value = {"id": "sub_ext", "current_period_end": PERIOD_END}
    invoice = {"id": "in_first", "subscription": "sub_ext", "billing_reason": "subscription_create", "amount_paid": 1500}

    WebhookReconciler(db, gateway).handle(_event("invoice.payment_succeeded", invoice))

    assert db.query(Order).count() == 0
    assert db.query(ProcessedWebhookEvent).count() == 1


def test_invoice_for_unknown_subscription_is_not_claimed(db, gateway):
    invoice = {"id": "in_2", "subscription": "sub_unknown", "billing_reason": "subscription_cycle"}

    WebhookReconciler(db, gateway).handle(_event("invoice.payment_succeeded", invoice))

    assert db.query(ProcessedWebhookEvent).count() == 0
    gateway.retrieve_subscription.assert_not_called()


def test_late_invoice_keeps_cancel_at_period_end(db, gateway, make_subscription):
    sub = make_subscription(kind=SubscriptionKind.ADDON, payment_method=PaymentMethod.STRIPE, external_id="sub_ext")
    gateway.retrieve_subscription.return_value = {
        "id": "sub_ext", "cancel_at_period_end": True, "current_period_end": PERIOD_END, "metadata": {},
    }
    reconciler = WebhookReconciler(db, gateway)

    reconciler.handle(_event("customer.subscription.updated", {
        "id": "sub_ext", "cancel_at_period_end": True, "current_period_end": PERIOD_END,
    }, "evt_update"))
    reconciler.handle(_event("invoice.payment_succeeded", {
        "id": "in_late", "subscription": "sub_ext", "billing_reason": "subscription_cycle", "amount_paid": 1500,
    }, "evt_invoice"))

    db.refresh(sub)
    assert sub.status == SubscriptionStatus.CANCEL_AT_PERIOD_END
    assert sub.renews_on == from_timestamp(PERIOD_END)


def test_invoice_does_not_revive_cancelled_subscription(db, gateway, make_subscription):
    sub = make_subscription(kind=SubscriptionKind.ADDON, payment_method=PaymentMethod.STRIPE, external_id="sub_ext",
                            status=SubscriptionStatus.CANCELLED)
    gateway.retrieve_subscription.return_value = {"id": "sub_ext", "current_period_end": PERIOD_END}

    WebhookReconciler(db, gateway).handle(_event("invoice.payment_succeeded", {
        "id": "in_old", "subscription": "sub_ext", "billing_reason": "subscription_cycle", "amount_paid": 1500,
    }))

    db.refresh(sub)
    assert sub.status == SubscriptionStatus.CANCELLED


def test_subscription_deleted_cascades(db, gateway, make_subscription):
    sub = make_subscription(payment_method=PaymentMethod.STRIPE, external_id="sub_ext")

    WebhookReconciler(db, gateway).handle(_event("customer.subscription.deleted", {"id": "sub_ext"}))

    db.refresh(sub)
    assert sub.status == SubscriptionStatus.CANCELLED


def test_subscription_updated_toggles_cancel_at_period_end(db, gateway, make_subscription):
    sub = make_subscription(payment_method=PaymentMethod.STRIPE, external_id="sub_ext")
    reconciler = WebhookReconciler(db, gateway)

    reconciler.handle(_event("customer.subscription.updated", {
        "id": "sub_ext", "cancel_at_period_end": True, "current_period_end": PERIOD_END,
    }))
    db.refresh(sub)
    assert sub.status == SubscriptionStatus.CANCEL_AT_PERIOD_END

    reconciler.handle(_event("customer.subscription.updated", {"id": "sub_ext", "cancel_at_period_end": False}))
    db.refresh(sub)
    assert sub.status == SubscriptionStatus.ACTIVE


def test_next_renewal_falls_back_to_invoice_line_then_interval():
    line_end = 1769904000
    invoice = {"lines": {"data": [{"period": {"end": line_end}}]}}
    assert next_renewal_date({}, invoice) == from_timestamp(line_end)

    subscription = {
        "current_period_start": PERIOD_END,
        "items": {"data": [{"price": {"recurring": {"interval": "year", "interval_count": 1}}}]},
    }
    assert next_renewal_date(subscription, {}) == datetime(2027, 1, 1)


def test_webhook_route_rejects_bad_signature(client, gateway):
    gateway.construct_event.side_effect = stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad")

    resp = client.post("/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=bad"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "bad_request"


def test_webhook_route_acknowledges_failed_handler(client, gateway):
    gateway.construct_event.return_value = _event(
        "checkout.session.completed", _checkout("mailbox_subscription", plan_id="missing")
    )

    resp = client.post("/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=ok"})

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
