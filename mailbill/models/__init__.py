from mailbill.models.user import User, StripeCustomer, ApiKey
from mailbill.models.wallet import Wallet, WalletTransaction
from mailbill.models.plan import Plan, SpecificUserPrice
from mailbill.models.subscription import (
    MailboxSubscription,
    SubscriptionStatus,
    MailboxType,
    SubscriptionKind,
    PaymentMethod,
)
from mailbill.models.domain import Domain, DomainStatus, DomainSource
from mailbill.models.mailbox import Mailbox, MailboxStatus, PrewarmMailbox, PrewarmSelection, MailboxExport
from mailbill.models.ledger import TransactionHistory, TransactionStatus, Order, Job, ProcessedWebhookEvent

__all__ = [
    "User",
    "StripeCustomer",
    "ApiKey",
    "Wallet",
    "WalletTransaction",
    "Plan",
    "SpecificUserPrice",
    "MailboxSubscription",
    "SubscriptionStatus",
    "MailboxType",
    "SubscriptionKind",
    "PaymentMethod",
    "Domain",
    "DomainStatus",
    "DomainSource",
    "Mailbox",
    "MailboxStatus",
    "PrewarmMailbox",
    "PrewarmSelection",
    "MailboxExport",
    "TransactionHistory",
    "TransactionStatus",
    "Order",
    "Job",
    "ProcessedWebhookEvent",
]
