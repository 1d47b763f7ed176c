"""Price lookup and currency resolution shared by every purchase flow.

Catalog prices, wallet balances and subscription totals are USD. Conversion to
the buyer's charge currency happens only here, right before a payment-provider
amount is produced.
"""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy.orm import Session

from mailbill.core.config import settings
from mailbill.models import MailboxSubscription, MailboxType, Plan, SpecificUserPrice, SubscriptionKind, SubscriptionStatus, User

CENT = Decimal("0.01")

# (minimum quantity, unit price) for wallet-paid Gsuite add-ons, highest tier first
WALLET_PRICE_TIERS: list[tuple[int, Decimal]] = [
    (1000, Decimal("2.00")),
    (500, Decimal("2.25")),
    (100, Decimal("2.50")),
    (20, Decimal("2.75")),
    (0, Decimal("3.00")),
]

DOMAIN_TLDS = [".com", ".net", ".org", ".co", ".info"]


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def resolve_currency(country: str | None) -> str:
    normalized = (country or "").strip().lower()
    return "inr" if normalized in ("india", "in") else "usd"


def convert_from_usd(amount, currency: str) -> Decimal:
    usd = Decimal(str(amount))
    if currency == "inr":
        return money(usd * Decimal(str(settings.usd_to_inr_rate)))
    return money(usd)


def convert_to_usd(amount, currency: str) -> Decimal:
    value = Decimal(str(amount))
    if currency == "inr":
        return money(value / Decimal(str(settings.usd_to_inr_rate)))
    return money(value)


def to_smallest_unit(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(amount, currency: str) -> str:
    symbol = "₹" if currency == "inr" else "$"
    return f"{symbol}{money(amount)}"


def user_currency(db: Session, user_id: str) -> str:
    user = db.get(User, user_id)
    return resolve_currency(user.country if user else None)


def specific_user_price(db: Session, email: str | None, product: str = "gsuite") -> Decimal | None:
    if not email:
        return None
    row = (
        db.query(SpecificUserPrice)
        .filter(SpecificUserPrice.email == email, SpecificUserPrice.product == product)
        .order_by(SpecificUserPrice.created_at.desc())
        .first()
    )
    if row is None or not row.price:
        return None
    return money(row.price)


def current_plan(db: Session, user_id: str) -> Plan | None:
    sub = (
        db.query(MailboxSubscription)
        .filter(
            MailboxSubscription.user_id == user_id,
            MailboxSubscription.kind == SubscriptionKind.PLAN,
            MailboxSubscription.mailbox_type == MailboxType.GSUITE,
            MailboxSubscription.status.in_(SubscriptionStatus.LIVE),
        )
        .order_by(MailboxSubscription.created_at.desc())
        .first()
    )
    if sub is None or not sub.plan_id:
        return None
    return db.get(Plan, sub.plan_id)


def mailbox_unit_price(db: Session, user_id: str, email: str | None = None) -> dict:
    """Three-tier Gsuite unit price lookup.

    1. per-user override, 2. the user's active plan, 3. the cheapest active plan,
    then the configured fallback.
    """
    user_specific = specific_user_price(db, email, "gsuite")
    plan = current_plan(db, user_id)
    plan_based = money(plan.price_per_additional_mailbox) if plan else None

    if user_specific is not None:
        price = user_specific
    elif plan_based is not None:
        price = plan_based
    else:
        cheapest = (
            db.query(Plan)
            .filter(Plan.active.is_(True))
            .order_by(Plan.price_monthly.asc())
            .first()
        )
        price = money(cheapest.price_per_additional_mailbox) if cheapest else money(settings.fallback_mailbox_price)

    return {
        "price_per_additional_mailbox": price,
        "user_specific_price": user_specific,
        "plan_based_price": plan_based,
    }


def wallet_tier_price(quantity: int) -> Decimal:
    for minimum, price in WALLET_PRICE_TIERS:
        if quantity >= minimum:
            return price
    return WALLET_PRICE_TIERS[-1][1]


def prewarm_unit_price(db: Session, email: str | None, pool_price) -> Decimal:
    override = specific_user_price(db, email, "prewarm")
    return override if override is not None else money(pool_price or 0)


def domain_sale_price(registrar_price) -> Decimal:
    if registrar_price in (None, "", 0):
        return money(settings.default_domain_price)
    return money(Decimal(str(registrar_price)) * Decimal(str(settings.domain_price_markup)))


def generate_domain_suggestions(keyword: str) -> list[str]:
    name_part = keyword.split(".")[0] if "." in keyword else keyword
    name = "".join(ch for ch in name_part.lower() if ch.isalnum())
    variants = [name, f"my{name}", f"{name}info"]
    return [f"{variant}{tld}" for variant in dict.fromkeys(variants) for tld in DOMAIN_TLDS]
