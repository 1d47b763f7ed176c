from datetime import datetime
from decimal import Decimal

import pytest

from mailbill.models import SpecificUserPrice, SubscriptionKind
from mailbill.services.ledger import new_id
from mailbill.services.pricing import (
    convert_from_usd,
    convert_to_usd,
    domain_sale_price,
    format_amount,
    generate_domain_suggestions,
    mailbox_unit_price,
    resolve_currency,
    to_smallest_unit,
    wallet_tier_price,
)
from tests.conftest import USER_EMAIL, USER_ID


@pytest.mark.parametrize("country, currency", [
    ("India", "inr"),
    (" in ", "inr"),
    ("United States", "usd"),
    (None, "usd"),
])
def test_resolve_currency(country, currency):
    assert resolve_currency(country) == currency


def test_inr_conversion_uses_configured_rate():
    assert convert_from_usd(Decimal("10"), "inr") == Decimal("850.00")
    assert convert_to_usd(Decimal("850"), "inr") == Decimal("10.00")
    assert convert_from_usd("12.5", "usd") == Decimal("12.50")
    assert format_amount(Decimal("850"), "inr") == "₹850.00"


def test_smallest_unit_rounds_half_up():
    assert to_smallest_unit(Decimal("12.345")) == 1235
    assert to_smallest_unit("0.1") == 10


@pytest.mark.parametrize("quantity, price", [
    (1, "3.00"),
    (19, "3.00"),
    (20, "2.75"),
    (100, "2.50"),
    (499, "2.50"),
    (500, "2.25"),
    (1000, "2.00"),
])
def test_wallet_tiers(quantity, price):
    assert wallet_tier_price(quantity) == Decimal(price)


def test_domain_sale_price_applies_markup_or_default():
    assert domain_sale_price("10.00") == Decimal("12.00")
    assert domain_sale_price(None) == Decimal("12.99")


def test_suggestions_use_name_before_first_dot():
    suggestions = generate_domain_suggestions("Acme.co.uk")
    assert suggestions[0] == "acme.com"
    assert "myacme.net" in suggestions
    assert "acmeinfo.info" in suggestions
    assert len(suggestions) == 15


def test_unit_price_falls_back_to_cheapest_plan(db, make_plan):
    make_plan(plan_id="plan-pro", price="80.00", per_mailbox="2.50")
    make_plan(plan_id="plan-basic", price="30.00", per_mailbox="3.00")

    result = mailbox_unit_price(db, USER_ID, USER_EMAIL)

    assert result["price_per_additional_mailbox"] == Decimal("3.00")
    assert result["user_specific_price"] is None
    assert result["plan_based_price"] is None


def test_unit_price_prefers_active_plan_then_override(db, make_plan, make_subscription):
    plan = make_plan(plan_id="plan-pro", price="80.00", per_mailbox="2.50")
    make_subscription(kind=SubscriptionKind.PLAN, plan_id=plan.id)

    assert mailbox_unit_price(db, USER_ID, USER_EMAIL)["price_per_additional_mailbox"] == Decimal("2.50")

    db.add(SpecificUserPrice(id=new_id(), email=USER_EMAIL, product="gsuite", price=Decimal("1.75"),
                             created_at=datetime.utcnow()))
    db.commit()

    result = mailbox_unit_price(db, USER_ID, USER_EMAIL)
    assert result["price_per_additional_mailbox"] == Decimal("1.75")
    assert result["plan_based_price"] == Decimal("2.50")


def test_unit_price_without_any_plan_uses_fallback(db):
    assert mailbox_unit_price(db, USER_ID)["price_per_additional_mailbox"] == Decimal("5.00")
