from datetime import datetime
from decimal import Decimal
from typing import Optional

from mailbill.db.base import Base
from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column


class SubscriptionStatus:
    ACTIVE = "Active"
    CANCEL_AT_PERIOD_END = "Cancel at Period End"
    CANCELLED = "Cancelled"
    INACTIVE = "Inactive"

    # Statuses whose quota counts towards the user's capacity
    LIVE = (ACTIVE, CANCEL_AT_PERIOD_END)


class MailboxType:
    GSUITE = "Gsuite"
    PREWARMED = "Pre-Warmed"


class SubscriptionKind:
    PLAN = "plan"
    ADDON = "addon"


class PaymentMethod:
    STRIPE = "stripe"
    WALLET = "wallet"


class MailboxSubscription(Base):
    """A block of mailbox quota.

    Plan subscriptions and add-ons share this table, told apart by ``kind``.
    ``external_id`` holds the payment-provider subscription id for Stripe-billed rows.
    """

    __tablename__ = "mailbox_subscriptions"
    __table_args__ = (
        CheckConstraint("number_of_used_mailbox >= 0", name="ck_mailbox_subscriptions_used_non_negative"),
        Index("ix_mailbox_subscriptions_payment_renews", "payment_method", "renews_on"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(128), unique=True, index=True, nullable=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)

    kind: Mapped[str] = mapped_column(String(16), default=SubscriptionKind.ADDON, nullable=False)
    plan_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("plans.id"), nullable=True)
    mailbox_type: Mapped[str] = mapped_column(String(32), default=MailboxType.GSUITE, nullable=False)
    status: Mapped[str] = mapped_column(String(32), default=SubscriptionStatus.ACTIVE, index=True, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False)

    number_of_mailboxes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    number_of_used_mailbox: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price_per_mailbox: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)

    billing_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    renews_on: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)
