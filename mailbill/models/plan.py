from datetime import datetime
from decimal import Decimal
from typing import Optional

from mailbill.db.base import Base
from sqlalchemy import Boolean, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    price_monthly: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    price_per_additional_mailbox: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    included_mailboxes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Billing period length in days
    duration: Mapped[int] = mapped_column(Integer, default=30, nullable=False)

    stripe_price_id_monthly: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    stripe_price_id_yearly: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class SpecificUserPrice(Base):
    """Per-user price override, looked up by email and product."""

    __tablename__ = "specific_user_prices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    product: Mapped[str] = mapped_column(String(32), nullable=False)  # gsuite, prewarm
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
