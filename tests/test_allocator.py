from datetime import datetime, timedelta

import pytest

from mailbill.core.exceptions import NoActiveSubscriptionError, NoCapacityError
from mailbill.models import MailboxType, SubscriptionStatus
from mailbill.services.allocator import SubscriptionAllocator
from tests.conftest import USER_ID


def test_quota_sums_live_subscriptions_only(db, make_subscription):
    make_subscription(total=5, used=2)
    make_subscription(total=3, used=1, status=SubscriptionStatus.CANCEL_AT_PERIOD_END)
    make_subscription(total=10, used=0, status=SubscriptionStatus.CANCELLED)
    make_subscription(total=7, used=0, mailbox_type=MailboxType.PREWARMED)

    quota = SubscriptionAllocator(db).compute_quota(USER_ID)

    assert (quota.total, quota.used, quota.available) == (8, 3, 5)


def test_allocate_fills_oldest_subscription_first(db, make_subscription):
    now = datetime.utcnow()
    newer = make_subscription(total=5, used=0, created_at=now)
    older = make_subscription(total=2, used=1, created_at=now - timedelta(days=3))
    allocator = SubscriptionAllocator(db)

    first = allocator.allocate(USER_ID)
    second = allocator.allocate(USER_ID)
    db.commit()

    assert first.id == older.id
    assert second.id == newer.id
    db.refresh(older)
    db.refresh(newer)
    assert older.number_of_used_mailbox == 2
    assert newer.number_of_used_mailbox == 1


def test_allocate_without_subscription(db):
    with pytest.raises(NoActiveSubscriptionError):
        SubscriptionAllocator(db).allocate(USER_ID)


def test_allocate_with_every_slot_used(db, make_subscription):
    make_subscription(total=2, used=2)

    with pytest.raises(NoCapacityError) as excinfo:
        SubscriptionAllocator(db).allocate(USER_ID)
    assert excinfo.value.status_code == 403


def test_cancelled_subscription_is_never_allocated(db, make_subscription):
    make_subscription(total=5, used=0, status=SubscriptionStatus.CANCELLED)

    with pytest.raises(NoActiveSubscriptionError):
        SubscriptionAllocator(db).allocate(USER_ID)


def test_select_does_not_claim(db, make_subscription):
    sub = make_subscription(total=1, used=0)

    selected = SubscriptionAllocator(db).select_subscription(USER_ID)

    assert selected.id == sub.id
    db.refresh(sub)
    assert sub.number_of_used_mailbox == 0


def test_release_is_off_by_default(db, make_subscription):
    sub = make_subscription(total=3, used=2)

    assert SubscriptionAllocator(db).release(sub.id) is False
    db.refresh(sub)
    assert sub.number_of_used_mailbox == 2


def test_release_returns_slot_when_enabled(db, make_subscription):
    sub = make_subscription(total=3, used=2)
    allocator = SubscriptionAllocator(db, release_on_delete=True)

    assert allocator.release(sub.id) is True
    db.commit()

    db.refresh(sub)
    assert sub.number_of_used_mailbox == 1


def test_domain_count_never_goes_negative(db, make_domain):
    domain = make_domain()
    allocator = SubscriptionAllocator(db)

    allocator.increment_domain_count(domain.domain_id)
    allocator.decrement_domain_count(domain.domain_id)
    allocator.decrement_domain_count(domain.domain_id)
    db.commit()

    db.refresh(domain)
    assert domain.mailbox_count == 0
