from __future__ import annotations

from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mailbill.models import (
    MailboxSubscription,
    Plan,
    StripeCustomer,
    SubscriptionKind,
    TransactionHistory,
    Wallet,
    WalletTransaction,
)


class BillingRepository:
    """Read-only queries behind the account views.

    Uses SQLAlchemy AsyncSession; every write goes through the sync services.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_wallet(self, user_id: str) -> Optional[Wallet]:
        result = await self.db.execute(select(Wallet).where(Wallet.user_id == user_id))
        return result.scalar_one_or_none()

    async def list_wallet_transactions(self, wallet_id: str, limit: int = 50) -> Sequence[WalletTransaction]:
        result = await self.db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.wallet_id == wallet_id)
            .order_by(WalletTransaction.txn_time.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def list_addons(self, user_id: str, mailbox_type: Optional[str] = None) -> Sequence[MailboxSubscription]:
        stmt = select(MailboxSubscription).where(
            MailboxSubscription.user_id == user_id,
            MailboxSubscription.kind == SubscriptionKind.ADDON,
        )
        if mailbox_type:
            stmt = stmt.where(MailboxSubscription.mailbox_type == mailbox_type)
        result = await self.db.execute(stmt.order_by(MailboxSubscription.created_at.desc()))
        return result.scalars().all()

    async def list_active_plans(self) -> Sequence[Plan]:
        result = await self.db.execute(
            select(Plan).where(Plan.active.is_(True)).order_by(Plan.price_monthly.asc())
        )
        return result.scalars().all()

    async def get_transaction_by_session(self, checkout_session_id: str) -> Optional[TransactionHistory]:
        result = await self.db.execute(
            select(TransactionHistory).where(TransactionHistory.checkout_session_id == checkout_session_id)
        )
        return result.scalar_one_or_none()

    async def get_stripe_customer_id(self, user_id: str) -> Optional[str]:
        result = await self.db.execute(
            select(StripeCustomer.stripe_customer_id).where(StripeCustomer.user_id == user_id)
        )
        return result.scalar_one_or_none()
