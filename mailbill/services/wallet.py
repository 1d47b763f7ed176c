"""Wallet Engine: per-user USD balance with an append-only transaction log."""
from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.orm import Session

from mailbill.core.exceptions import InsufficientBalanceError, NotFoundError, ValidationError
from mailbill.core.timeutil import utcnow
from mailbill.models import Wallet, WalletTransaction
from mailbill.services.ledger import new_id
from mailbill.services.pricing import money

logger = logging.getLogger(__name__)


class WalletService:
    """Debits and credits.

    Balance update and log insert are flushed in the caller's transaction; the
    caller commits. A debit is a single conditional UPDATE so two concurrent
    debits can never both pass the balance check.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_wallet(self, user_id: str) -> Wallet | None:
        return self.db.query(Wallet).filter(Wallet.user_id == user_id).first()

    def require_wallet(self, user_id: str) -> Wallet:
        wallet = self.get_wallet(user_id)
        if wallet is None:
            raise NotFoundError("Wallet not found")
        return wallet

    def get_or_create_wallet(self, user_id: str) -> Wallet:
        wallet = self.get_wallet(user_id)
        if wallet is None:
            now = utcnow()
            wallet = Wallet(
                wallet_id=new_id(),
                user_id=user_id,
                balance=Decimal("0.00"),
                auto_topup=False,
                created_at=now,
                updated_at=now,
            )
            self.db.add(wallet)
            self.db.flush()
            logger.info("Wallet %s created for user %s", wallet.wallet_id, user_id)
        return wallet

    def debit(self, user_id: str, amount, description: str) -> WalletTransaction:
        value = self._positive(amount)
        wallet = self.get_wallet(user_id)
        if wallet is None:
            raise InsufficientBalanceError("Wallet not found or has no balance")

        result = self.db.execute(
            update(Wallet)
            .where(Wallet.wallet_id == wallet.wallet_id, Wallet.balance >= value)
            .values(balance=Wallet.balance - value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.refresh(wallet)
            logger.info(
                "Debit of %s rejected for user %s (balance %s)", value, user_id, wallet.balance
            )
            raise InsufficientBalanceError(
                f"Insufficient wallet balance: required ${value}, available ${money(wallet.balance)}"
            )
        txn = self._log(wallet, value, "debit", description)
        logger.info("Wallet %s debited %s for user %s: %s", wallet.wallet_id, value, user_id, description)
        return txn

    def credit(self, user_id: str, amount, description: str, *, topup: bool = False) -> WalletTransaction:
        value = self._positive(amount)
        wallet = self.get_or_create_wallet(user_id)
        values = {"balance": Wallet.balance + value, "updated_at": utcnow()}
        if topup:
            values["last_topped_up_at"] = utcnow()
        self.db.execute(
            update(Wallet)
            .where(Wallet.wallet_id == wallet.wallet_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        txn = self._log(wallet, value, "credit", description)
        logger.info("Wallet %s credited %s for user %s: %s", wallet.wallet_id, value, user_id, description)
        return txn

    def list_transactions(self, wallet_id: str, limit: int = 50) -> list[WalletTransaction]:
        return (
            self.db.query(WalletTransaction)
            .filter(WalletTransaction.wallet_id == wallet_id)
            .order_by(WalletTransaction.txn_time.desc())
            .limit(limit)
            .all()
        )

    def _positive(self, amount) -> Decimal:
        value = money(amount)
        if value <= 0:
            raise ValidationError("Amount must be greater than zero")
        return value

    def _log(self, wallet: Wallet, amount: Decimal, txn_type: str, description: str) -> WalletTransaction:
        txn = WalletTransaction(
            transaction_id=new_id(),
            wallet_id=wallet.wallet_id,
            amount=amount,
            type=txn_type,
            description=description,
            txn_time=utcnow(),
        )
        self.db.add(txn)
        self.db.flush()
        self.db.refresh(wallet)
        return txn
