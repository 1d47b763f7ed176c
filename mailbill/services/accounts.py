"""Async read views over wallet, add-ons, plans and checkout results."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from mailbill.core.exceptions import NotFoundError, ValidationError
from mailbill.models import MailboxType
from mailbill.repositories.billing_repository import BillingRepository
from mailbill.services.lifecycle import plan_to_dict

_ADDON_NAMES = {
    MailboxType.GSUITE: "Gsuite Addon",
    MailboxType.PREWARMED: "Pre-Warmed Addon",
}


@dataclass
class WalletDTO:
    balance: Decimal
    autoTopup: bool
    transactions: List[dict] = field(default_factory=list)


@dataclass
class AddonDTO:
    id: str
    name: str
    mailboxType: str
    status: str
    paymentMethod: str
    numberOfMailboxes: int
    usedMailboxes: int
    pricePerMailbox: Decimal
    price: Decimal
    renewsOn: Optional[datetime]
    createdAt: datetime


class AccountService:
    """Keeps the read-only route handlers thin."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.billing_repo = BillingRepository(db)

    async def get_wallet(self, user_id: str) -> WalletDTO:
        wallet = await self.billing_repo.get_wallet(user_id)
        if wallet is None:
            raise NotFoundError("Wallet not found")
        txns = await self.billing_repo.list_wallet_transactions(wallet.wallet_id)
        return WalletDTO(
            balance=wallet.balance,
            autoTopup=wallet.auto_topup,
            transactions=[
                {
                    "id": t.transaction_id,
                    "amount": t.amount,
                    "type": t.type,
                    "description": t.description,
                    "time": t.txn_time,
                }
                for t in txns
            ],
        )

    async def list_addons(self, user_id: str) -> List[AddonDTO]:
        rows = await self.billing_repo.list_addons(user_id)
        if not rows:
            raise NotFoundError("No addons found for this user")
        return [
            AddonDTO(
                id=row.id,
                name=_ADDON_NAMES.get(row.mailbox_type, row.mailbox_type),
                mailboxType=row.mailbox_type,
                status=row.status,
                paymentMethod=row.payment_method,
                numberOfMailboxes=row.number_of_mailboxes,
                usedMailboxes=row.number_of_used_mailbox,
                pricePerMailbox=row.price_per_mailbox,
                price=row.total_amount,
                renewsOn=row.renews_on,
                createdAt=row.created_at,
            )
            for row in rows
        ]

    async def list_plans(self) -> List[dict]:
        return [plan_to_dict(plan) for plan in await self.billing_repo.list_active_plans()]

    async def payment_result(self, user_id: str, session_id: Optional[str]) -> dict:
        if not session_id:
            raise ValidationError("session_id is required")
        txn = await self.billing_repo.get_transaction_by_session(session_id)
        if txn is None or txn.user_id != user_id:
            raise NotFoundError("Transaction not found")
        return {
            "amount": txn.amount / 100,
            "currency": txn.currency,
            "status": txn.status,
            "payment_provider": txn.payment_provider,
            "reference_id": txn.reference_id,
            "description": txn.description,
            "type": txn.type,
        }

    async def stripe_customer_id(self, user_id: str) -> Optional[str]:
        return await self.billing_repo.get_stripe_customer_id(user_id)
