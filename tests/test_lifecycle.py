from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from mailbill.core.exceptions import InsufficientBalanceError, NotFoundError, ValidationError
from mailbill.models import (
    Job,
    Mailbox,
    MailboxStatus,
    MailboxSubscription,
    MailboxType,
    Order,
    PaymentMethod,
    PrewarmMailbox,
    SubscriptionKind,
    SubscriptionStatus,
)
from mailbill.services.ledger import new_id
from mailbill.services.lifecycle import LifecycleManager
from tests.conftest import USER_ID


def _mailbox(db, sub, domain, username):
    now = datetime.utcnow()
    mailbox = Mailbox(
        mailbox_id=new_id(),
        domain_id=domain.domain_id,
        user_id=sub.user_id,
        subscription_id=sub.id,
        email=f"{username}@{domain.domain_name}",
        username=username,
        status=MailboxStatus.ACTIVE,
        created_at=now,
        updated_at=now,
    )
    db.add(mailbox)
    db.commit()
    return mailbox


def _pool_mailbox(db, email, sub=None):
    now = datetime.utcnow()
    row = PrewarmMailbox(
        id=new_id(),
        email=email,
        price=Decimal("4.00"),
        status=MailboxStatus.ACTIVE if sub else MailboxStatus.READY_FOR_SALE,
        user_id=sub.user_id if sub else None,
        subscription_id=sub.id if sub else None,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.commit()
    return row


def test_wallet_plan_purchase_debits_and_grants(db, fund_wallet, make_plan):
    wallet = fund_wallet(balance="100.00")
    plan = make_plan(price="30.00", included=10)

    sub = LifecycleManager(db).purchase_plan_with_wallet(USER_ID, plan.id)
    db.commit()

    db.refresh(wallet)
    assert wallet.balance == Decimal("70.00")
    assert sub.kind == SubscriptionKind.PLAN
    assert sub.payment_method == PaymentMethod.WALLET
    assert sub.number_of_mailboxes == 10
    assert sub.renews_on > datetime.utcnow() + timedelta(days=29)
    assert db.query(Order).filter(Order.reference_id == sub.id).count() == 1


def test_wallet_plan_purchase_short_balance_grants_nothing(db, fund_wallet, make_plan):
    fund_wallet(balance="5.00")
    plan = make_plan(price="30.00")

    with pytest.raises(InsufficientBalanceError):
        LifecycleManager(db).purchase_plan_with_wallet(USER_ID, plan.id)
    db.rollback()

    assert db.query(MailboxSubscription).count() == 0


def test_wallet_plan_purchase_unknown_plan(db, fund_wallet):
    fund_wallet()
    with pytest.raises(NotFoundError):
        LifecycleManager(db).purchase_plan_with_wallet(USER_ID, "missing")


def test_cascade_cancel_deactivates_gsuite_mailboxes(db, make_subscription, make_domain):
    sub = make_subscription(total=3, used=2)
    domain = make_domain()
    first = _mailbox(db, sub, domain, "alice")
    second = _mailbox(db, sub, domain, "bob")

    emails = LifecycleManager(db).cascade_cancel(sub)
    db.commit()

    assert sorted(emails) == ["alice@example.com", "bob@example.com"]
    for mailbox in (first, second):
        db.refresh(mailbox)
        assert mailbox.status == MailboxStatus.INACTIVE
        assert mailbox.subscription_id == sub.id
    assert sub.status == SubscriptionStatus.CANCELLED
    job = db.query(Job).filter(Job.job_type == "cancel_subscription").one()
    assert job.details["subscriptionId"] == sub.id


def test_cascade_cancel_returns_prewarm_mailboxes_to_pool(db, make_subscription):
    sub = make_subscription(total=2, used=2, mailbox_type=MailboxType.PREWARMED, payment_method=PaymentMethod.STRIPE)
    owned = _pool_mailbox(db, "warm1@pool.com", sub)

    LifecycleManager(db).cascade_cancel(sub)
    db.commit()

    db.refresh(owned)
    assert owned.status == MailboxStatus.INACTIVE
    assert owned.user_id is None
    assert owned.subscription_id is None


def test_cascade_cancel_is_idempotent(db, make_subscription):
    sub = make_subscription(status=SubscriptionStatus.CANCELLED)

    assert LifecycleManager(db).cascade_cancel(sub) == []
    assert db.query(Job).count() == 0


def test_wallet_cancel_at_period_end_then_sweep(db, make_subscription):
    sub = make_subscription(payment_method=PaymentMethod.WALLET)
    manager = LifecycleManager(db)

    result = manager.cancel(USER_ID, sub.id, immediate=False)
    db.commit()
    assert "end of period" in result["message"]
    assert sub.status == SubscriptionStatus.CANCEL_AT_PERIOD_END

    sub.renews_on = datetime.utcnow() - timedelta(minutes=1)
    db.commit()
    outcome = manager.renew_due_wallet_subscriptions()

    assert outcome["cancelled"] == [sub.id]
    db.refresh(sub)
    assert sub.status == SubscriptionStatus.CANCELLED


def test_cancel_inactive_subscription_rejected(db, make_subscription):
    sub = make_subscription(status=SubscriptionStatus.CANCEL_AT_PERIOD_END)

    with pytest.raises(ValidationError):
        LifecycleManager(db).cancel(USER_ID, sub.id, immediate=True)


def test_cancel_other_users_subscription_not_found(db, make_subscription):
    sub = make_subscription(user_id="someone-else")

    with pytest.raises(NotFoundError):
        LifecycleManager(db).cancel(USER_ID, sub.id, immediate=True)


def test_stripe_cancel_defers_cascade_to_provider(db, make_subscription, gateway):
    sub = make_subscription(payment_method=PaymentMethod.STRIPE, external_id="sub_ext")

    LifecycleManager(db, gateway).cancel(USER_ID, sub.id, immediate=False)

    gateway.update_subscription.assert_called_once_with("sub_ext", cancel_at_period_end=True)
    assert sub.status == SubscriptionStatus.ACTIVE


def test_renew_charges_wallet_and_extends(db, fund_wallet, make_subscription):
    wallet = fund_wallet(balance="20.00")
    sub = make_subscription(total_amount="15.00", renews_on=datetime.utcnow() - timedelta(hours=1))

    outcome = LifecycleManager(db).renew_due_wallet_subscriptions()

    assert outcome == {"renewed": [sub.id], "cancelled": [], "failed": []}
    db.refresh(wallet)
    db.refresh(sub)
    assert wallet.balance == Decimal("5.00")
    assert sub.renews_on > datetime.utcnow() + timedelta(days=27)
    assert sub.status == SubscriptionStatus.ACTIVE


def test_renew_with_insufficient_balance_cancels(db, fund_wallet, make_subscription, make_domain):
    wallet = fund_wallet(balance="1.00")
    sub = make_subscription(total_amount="15.00", used=1, renews_on=datetime.utcnow() - timedelta(hours=1))
    mailbox = _mailbox(db, sub, make_domain(), "carol")

    outcome = LifecycleManager(db).renew_due_wallet_subscriptions()

    assert outcome["cancelled"] == [sub.id]
    db.refresh(wallet)
    db.refresh(sub)
    db.refresh(mailbox)
    assert wallet.balance == Decimal("1.00")
    assert sub.status == SubscriptionStatus.CANCELLED
    assert mailbox.status == MailboxStatus.INACTIVE


def test_renew_rejects_card_billed(db, make_subscription):
    sub = make_subscription(payment_method=PaymentMethod.STRIPE)

    with pytest.raises(ValidationError):
        LifecycleManager(db).renew(sub)


def _card_plan_subscription(make_plan, make_subscription, *, used=0):
    current = make_plan(plan_id="plan-basic", price="30.00", per_mailbox="3.00", included=10,
                        stripe_price="price_basic")
    sub = make_subscription(kind=SubscriptionKind.PLAN, payment_method=PaymentMethod.STRIPE, total=10, used=used,
                            plan_id=current.id, external_id="sub_ext")
    return current, sub


def test_change_plan_upgrade_prorates(db, gateway, make_plan, make_subscription):
    _, sub = _card_plan_subscription(make_plan, make_subscription)
    pro = make_plan(plan_id="plan-pro", name="Pro", price="80.00", per_mailbox="2.50", included=40,
                    stripe_price="price_pro")
    gateway.retrieve_subscription.return_value = {
        "id": "sub_ext",
        "items": {"data": [{"id": "si_1", "price": {"id": "price_basic"}}]},
    }

    result = LifecycleManager(db, gateway).change_plan(USER_ID, pro.id)

    assert result["proration_behavior"] == "create_prorations"
    gateway.update_subscription.assert_called_once_with(
        "sub_ext",
        items=[{"id": "si_1", "price": "price_pro"}],
        proration_behavior="create_prorations",
        billing_cycle_anchor="now",
    )
    assert sub.plan_id == pro.id
    assert sub.number_of_mailboxes == 40


def test_change_plan_downgrade_without_proration(db, gateway, make_plan, make_subscription):
    _, sub = _card_plan_subscription(make_plan, make_subscription, used=3)
    lite = make_plan(plan_id="plan-lite", name="Lite", price="12.00", per_mailbox="4.00", included=5,
                     stripe_price="price_lite")
    gateway.retrieve_subscription.return_value = {
        "id": "sub_ext",
        "items": {"data": [{"id": "si_1", "price": {"id": "price_basic"}}]},
    }

    result = LifecycleManager(db, gateway).change_plan(USER_ID, lite.id)

    assert result["proration_behavior"] == "none"
    assert sub.number_of_mailboxes == 5
    assert sub.number_of_used_mailbox == 3


def test_change_plan_downgrade_below_usage_rejected(db, gateway, make_plan, make_subscription):
    _card_plan_subscription(make_plan, make_subscription, used=8)
    lite = make_plan(plan_id="plan-lite", name="Lite", price="12.00", per_mailbox="4.00", included=5,
                     stripe_price="price_lite")

    with pytest.raises(ValidationError):
        LifecycleManager(db, gateway).change_plan(USER_ID, lite.id)
    gateway.update_subscription.assert_not_called()


def test_change_plan_to_same_plan_rejected(db, gateway, make_plan, make_subscription):
    current, _ = _card_plan_subscription(make_plan, make_subscription)

    with pytest.raises(ValidationError):
        LifecycleManager(db, gateway).change_plan(USER_ID, current.id)


def test_current_subscription_view(db, make_plan, make_subscription):
    plan = make_plan()
    sub = make_subscription(kind=SubscriptionKind.PLAN, plan_id=plan.id, total=10, used=4)

    view = LifecycleManager(db).current_subscription_view(USER_ID)

    assert view["subscription_id"] == sub.id
    assert view["mailboxes_used"] == 4
    assert view["plan"]["id"] == plan.id
    assert LifecycleManager(db).current_subscription_view("nobody") is None
