from decimal import Decimal

import pytest

from mailbill.core.exceptions import InsufficientBalanceError, ValidationError
from mailbill.models import Domain, DomainSource, DomainStatus, Job, Order, TransactionHistory, Wallet
from mailbill.services.domains import DomainService, parse_domain_items
from mailbill.services.purchases import PurchaseService
from tests.conftest import USER_ID

REQUIRED_NS = ["ns1.endyns.info.", "ns2.endyns.info.", "ns3.endyns.info."]


def test_parse_domain_items_pairs_years():
    assert parse_domain_items("A.com, b.net", "2") == [
        {"domain": "a.com", "years": 2},
        {"domain": "b.net", "years": 2},
    ]
    assert parse_domain_items("a.com,b.net", "1,3")[1] == {"domain": "b.net", "years": 3}


def test_wallet_purchase_partial_registrar_failure(db, fund_wallet, registrar):
    wallet = fund_wallet(balance="50.00")
    registrar.register_domain.side_effect = lambda name, years=1: (
        {"success": False, "message": "Unavailable"} if name == "taken.com" else {"success": True, "domain": name}
    )

    result = PurchaseService(db).purchase_domains_with_wallet(
        USER_ID,
        [{"domain": "fresh.com", "year": 1, "price": 1299}, {"domain": "taken.com", "year": 1, "price": 1299}],
        registrar,
    )

    assert result["purchased"] == ["fresh.com"]
    assert result["failed"] == [{"item": "taken.com", "reason": "Unavailable"}]
    db.refresh(wallet)
    assert wallet.balance == Decimal("24.02")
    statuses = {d.domain_name: d.status for d in db.query(Domain).all()}
    assert statuses == {"fresh.com": DomainStatus.ACTIVE, "taken.com": DomainStatus.INACTIVE}
    txn = db.query(TransactionHistory).one()
    assert txn.payment_provider == "wallet"
    assert txn.amount == 2598
    assert db.query(Order).count() == 1
    assert db.query(Job).filter(Job.job_type == "domain").count() == 1


def test_wallet_purchase_insufficient_balance_registers_nothing(db, fund_wallet, registrar):
    fund_wallet(balance="5.00")

    with pytest.raises(InsufficientBalanceError):
        PurchaseService(db).purchase_domains_with_wallet(
            USER_ID, [{"domain": "fresh.com", "year": 1, "price": 1299}], registrar
        )
    db.rollback()

    registrar.register_domain.assert_not_called()
    assert db.query(Domain).count() == 0


def test_wallet_purchase_rejects_duplicates(db, fund_wallet, registrar):
    fund_wallet()
    with pytest.raises(ValidationError):
        PurchaseService(db).purchase_domains_with_wallet(
            USER_ID,
            [{"domain": "a.com", "year": 1, "price": 1000}, {"domain": "A.com", "year": 1, "price": 1000}],
            registrar,
        )


def test_connect_requires_mailbox_quota(db):
    with pytest.raises(ValidationError):
        DomainService(db).connect(USER_ID, ["mine.com"])


def test_connect_limits_domains_to_quota(db, make_subscription, make_domain):
    make_subscription(total=2)
    make_domain("first.com", source=DomainSource.CONNECTED)

    result = DomainService(db).connect(USER_ID, ["first.com", "second.com"])
    db.commit()
    assert result["connected"] == ["second.com"]
    assert result["skipped"] == ["first.com"]

    with pytest.raises(ValidationError):
        DomainService(db).connect(USER_ID, ["third.com"])


def test_check_connected_creates_missing_zone(db, zones, make_domain):
    domain = make_domain("new.com", status=DomainStatus.PENDING, source=DomainSource.CONNECTED)
    zones.get_zone_info.return_value = {"status": "Failed", "statusDescription": "Zone not found"}
    zones.create_zone.return_value = {"status": "Success"}

    results = DomainService(db, zones=zones).check_connected(USER_ID)

    assert results[0]["connected"] is False
    zones.create_zone.assert_called_once_with("new.com")
    assert domain.status == DomainStatus.PROPAGATING


def test_propagated_domain_becomes_active(db, zones, make_domain):
    domain = make_domain("ready.com", status=DomainStatus.PROPAGATING, source=DomainSource.CONNECTED)
    zones.resolve_nameservers.return_value = REQUIRED_NS
    zones.is_propagated.return_value = True

    results = DomainService(db, zones=zones).recheck(USER_ID, ["ready.com"])

    assert results[0]["connected"] is True
    assert results[0]["currentNS"] == REQUIRED_NS
    assert domain.status == DomainStatus.ACTIVE
    zones.get_zone_info.assert_not_called()


def test_clear_keeps_row_when_zone_delete_fails(db, zones, make_domain):
    make_domain("keep.com", source=DomainSource.CONNECTED)
    make_domain("drop.com", source=DomainSource.CONNECTED)
    zones.delete_zone.side_effect = lambda name: name == "drop.com"

    result = DomainService(db, zones=zones).clear(USER_ID, ["keep.com", "drop.com"])
    db.commit()

    assert result["deleted"] == ["drop.com"]
    assert result["disconnected"] == ["keep.com"]
    remaining = db.query(Domain).one()
    assert remaining.status == DomainStatus.DISCONNECTED


def test_redirect_set_and_removed(db, make_domain):
    domain = make_domain("go.com")
    service = DomainService(db)

    service.set_redirect(USER_ID, [domain.domain_id], "https://target.example")
    assert domain.redirect_url == "https://target.example"

    result = service.set_redirect(USER_ID, [domain.domain_id], "")
    assert domain.redirect_url is None
    assert result["message"] == "Domain redirect removed"
    assert sorted(j.job_type for j in db.query(Job).all()) == ["domain_redirect", "domain_redirect_remove"]


def test_availability_formats_prices(db, registrar):
    registrar.check_availability.return_value = [
        {"name": "acme.com", "available": False},
        {"name": "acme.net", "available": True},
        {"name": "myacme.com", "available": True},
    ]
    registrar.get_pricing.return_value = {".com": {"register": "10.00", "renew": "15.00"}}

    result = DomainService(db, registrar=registrar).check_availability("acme")

    assert result["exactMatch"]["domainName"] == "acme.com"
    assert result["exactMatch"]["status"] == "UNAVAILABLE"
    assert result["exactMatch"]["domainPrice"] == "12.00"
    assert [d["domainName"] for d in result["availableDomains"]] == ["acme.net", "myacme.com"]
    assert result["availableDomains"][0]["domainPrice"] == "12.99"


def test_wallet_purchase_route(client, db, fund_wallet):
    fund_wallet(balance="20.00")

    resp = client.post("/api/domains/wallet-purchase", json={"domains": [{"domain": "route.com", "price": 1299}]})

    assert resp.status_code == 200
    assert resp.json()["purchased"] == ["route.com"]
    db.expire_all()
    wallet = db.query(Wallet).filter(Wallet.user_id == USER_ID).one()
    assert wallet.balance == Decimal("7.01")
