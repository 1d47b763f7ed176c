from datetime import datetime
from decimal import Decimal
from typing import Optional

from mailbill.db.base import Base
from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),)

    wallet_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)

    # Always USD, whatever currency the user is shown
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    auto_topup: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_topped_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)


class WalletTransaction(Base):
    """Append-only; one row per balance mutation."""

    __tablename__ = "wallet_transactions"

    transaction_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    wallet_id: Mapped[str] = mapped_column(String(64), ForeignKey("wallets.wallet_id"), index=True, nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)  # debit, credit
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    txn_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
