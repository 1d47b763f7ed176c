from datetime import datetime
from decimal import Decimal
from typing import Optional

from mailbill.db.base import Base
from sqlalchemy import JSON, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column


class TransactionStatus:
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    EXPIRED = "expired"


class TransactionHistory(Base):
    """One row per checkout attempt, keyed by the checkout session id."""

    __tablename__ = "transaction_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    checkout_session_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, index=True, nullable=True)

    type: Mapped[str] = mapped_column(String(32), nullable=False)  # domain, gsuite, prewarm, wallet_topup
    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # smallest currency unit
    currency: Mapped[str] = mapped_column(String(8), default="usd", nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=TransactionStatus.PENDING, nullable=False)
    payment_provider: Mapped[str] = mapped_column(String(16), default="stripe", nullable=False)
    reference_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)


class Order(Base):
    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)

    order_type: Mapped[str] = mapped_column(String(32), nullable=False)  # domain, gsuite, prewarm, plan
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="usd", nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False)
    reference_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    details: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class Job(Base):
    """Work item for the out-of-band provisioning worker."""

    __tablename__ = "jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)

    job_type: Mapped[str] = mapped_column(String(64), nullable=False)
    order_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="new", nullable=False)
    details: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class ProcessedWebhookEvent(Base):
    """Idempotency record for webhook side effects."""

    __tablename__ = "processed_webhook_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)

    processed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
