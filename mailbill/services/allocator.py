"""Subscription Allocator: mailbox quota across a user's subscription rows."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import case, func, update
from sqlalchemy.orm import Session

from mailbill.core.config import settings
from mailbill.core.exceptions import NoActiveSubscriptionError, NoCapacityError
from mailbill.core.timeutil import utcnow
from mailbill.models import Domain, MailboxSubscription, MailboxType, SubscriptionStatus

logger = logging.getLogger(__name__)


@dataclass
class Quota:
    total: int
    used: int

    @property
    def available(self) -> int:
        return max(0, self.total - self.used)


class SubscriptionAllocator:
    def __init__(self, db: Session, *, release_on_delete: bool | None = None):
        self.db = db
        self.release_on_delete = settings.release_on_delete if release_on_delete is None else release_on_delete

    def compute_quota(self, user_id: str, mailbox_type: str = MailboxType.GSUITE) -> Quota:
        total, used = (
            self.db.query(
                func.coalesce(func.sum(MailboxSubscription.number_of_mailboxes), 0),
                func.coalesce(func.sum(MailboxSubscription.number_of_used_mailbox), 0),
            )
            .filter(
                MailboxSubscription.user_id == user_id,
                MailboxSubscription.mailbox_type == mailbox_type,
                MailboxSubscription.status.in_(SubscriptionStatus.LIVE),
            )
            .one()
        )
        return Quota(total=int(total), used=int(used))

    def _candidates(self, user_id: str, mailbox_type: str) -> list[MailboxSubscription]:
        return (
            self.db.query(MailboxSubscription)
            .filter(
                MailboxSubscription.user_id == user_id,
                MailboxSubscription.mailbox_type == mailbox_type,
                MailboxSubscription.status.in_(SubscriptionStatus.LIVE),
                MailboxSubscription.number_of_mailboxes > 0,
            )
            .order_by(MailboxSubscription.created_at.asc(), MailboxSubscription.id.asc())
            .all()
        )

    def select_subscription(self, user_id: str, mailbox_type: str = MailboxType.GSUITE) -> MailboxSubscription:
        """Oldest live subscription with a free slot, without claiming it."""
        candidates = self._candidates(user_id, mailbox_type)
        if not candidates:
            raise NoActiveSubscriptionError()
        for sub in candidates:
            if sub.number_of_used_mailbox < sub.number_of_mailboxes:
                return sub
        raise NoCapacityError()

    def allocate(self, user_id: str, mailbox_type: str = MailboxType.GSUITE) -> MailboxSubscription:
        """Claim one slot, oldest subscription first.

        Each candidate is claimed with a conditional UPDATE so a concurrent
        request that already took the last slot makes this one move on to the
        next candidate instead of overfilling.
        """
        candidates = self._candidates(user_id, mailbox_type)
        if not candidates:
            raise NoActiveSubscriptionError()
        for sub in candidates:
            result = self.db.execute(
                update(MailboxSubscription)
                .where(
                    MailboxSubscription.id == sub.id,
                    MailboxSubscription.status.in_(SubscriptionStatus.LIVE),
                    MailboxSubscription.number_of_used_mailbox < MailboxSubscription.number_of_mailboxes,
                )
                .values(
                    number_of_used_mailbox=MailboxSubscription.number_of_used_mailbox + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                self.db.refresh(sub)
                logger.info(
                    "Allocated slot on subscription %s for user %s (%s/%s)",
                    sub.id, user_id, sub.number_of_used_mailbox, sub.number_of_mailboxes,
                )
                return sub
        raise NoCapacityError()

    def release(self, subscription_id: str | None) -> bool:
        """Return a slot on mailbox deletion, only when release_on_delete is enabled."""
        if not self.release_on_delete or not subscription_id:
            return False
        result = self.db.execute(
            update(MailboxSubscription)
            .where(MailboxSubscription.id == subscription_id, MailboxSubscription.number_of_used_mailbox > 0)
            .values(
                number_of_used_mailbox=MailboxSubscription.number_of_used_mailbox - 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        self._expire(MailboxSubscription, subscription_id)
        return result.rowcount == 1

    def increment_domain_count(self, domain_id: str) -> None:
        self.db.execute(
            update(Domain)
            .where(Domain.domain_id == domain_id)
            .values(mailbox_count=Domain.mailbox_count + 1)
            .execution_options(synchronize_session=False)
        )
        self._expire(Domain, domain_id)

    def decrement_domain_count(self, domain_id: str) -> None:
        self.db.execute(
            update(Domain)
            .where(Domain.domain_id == domain_id)
            .values(mailbox_count=case((Domain.mailbox_count > 0, Domain.mailbox_count - 1), else_=0))
            .execution_options(synchronize_session=False)
        )
        self._expire(Domain, domain_id)

    def _expire(self, model, pk: str) -> None:
        obj = self.db.get(model, pk)
        if obj is not None:
            self.db.refresh(obj)
