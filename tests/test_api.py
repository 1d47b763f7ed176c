from datetime import datetime, timedelta
from decimal import Decimal

from mailbill.models import ApiKey, Domain, Job, Mailbox, MailboxStatus, MailboxSubscription, PaymentMethod, Wallet
from mailbill.services.ledger import new_id
from tests.conftest import USER_ID


def _mailbox_body(*specs):
    return {"mailboxes": [
        {"firstName": "Ada", "lastName": "Lovelace", "username": username, "domain": domain}
        for username, domain in specs
    ]}


def _api_key(db, raw="mb_live_key", active=True):
    db.add(ApiKey(id=new_id(), api_key=raw, user_id=USER_ID, name="ci", is_active=active,
                  created_at=datetime.utcnow()))
    db.commit()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_error_envelope_echoes_request_id(client):
    resp = client.get("/api/domains", headers={"X-Request-ID": "req-123"})

    assert resp.status_code == 404
    assert resp.json() == {"error": "not_found", "message": "No domains found for this user", "request_id": "req-123"}
    assert resp.headers["X-Request-ID"] == "req-123"


def test_request_validation_is_400(client):
    resp = client.post("/api/mailboxes/purchase", json={"paymentMethod": "wallet"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"


def test_assign_mailboxes_claims_slots(client, db, make_subscription, make_domain):
    sub = make_subscription(total=3)
    domain = make_domain("team.com")

    resp = client.post("/api/mailboxes/assign", json=_mailbox_body(("Ada.L@ignored", "team.com"), ("grace", "team.com")))

    assert resp.status_code == 200
    assert resp.json()["mailboxes"] == ["ada.l@team.com", "grace@team.com"]
    db.expire_all()
    assert db.get(MailboxSubscription, sub.id).number_of_used_mailbox == 2
    assert db.get(Domain, domain.domain_id).mailbox_count == 2
    job = db.query(Job).filter(Job.job_type == "assign_mailboxes").one()
    assert job.details["number_of_mailboxes"] == 2


def test_assign_is_all_or_nothing(client, db, make_subscription, make_domain):
    sub = make_subscription(total=3)
    make_domain("team.com")

    resp = client.post("/api/mailboxes/assign", json=_mailbox_body(("ada", "team.com"), ("ada", "team.com")))

    assert resp.status_code == 409
    assert resp.json()["error"] == "mailbox_already_exists"
    db.expire_all()
    assert db.query(Mailbox).count() == 0
    assert db.get(MailboxSubscription, sub.id).number_of_used_mailbox == 0


def test_second_assignment_of_same_address_rejected(client, db, make_subscription, make_domain):
    sub = make_subscription(total=3)
    domain = make_domain("acme.com")

    first = client.post("/api/mailboxes/assign", json=_mailbox_body(("sales", "acme.com")))
    second = client.post("/api/mailboxes/assign", json=_mailbox_body(("sales", "acme.com")))

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["error"] == "mailbox_already_exists"
    db.expire_all()
    assert db.query(Mailbox).count() == 1
    assert db.get(MailboxSubscription, sub.id).number_of_used_mailbox == 1
    assert db.get(Domain, domain.domain_id).mailbox_count == 1


def test_assign_without_capacity(client, make_subscription, make_domain):
    make_subscription(total=1, used=1)
    make_domain("team.com")

    resp = client.post("/api/mailboxes/assign", json=_mailbox_body(("ada", "team.com")))

    assert resp.status_code == 403
    assert resp.json()["error"] == "no_capacity"


def test_assign_on_unknown_domain(client, make_subscription):
    make_subscription(total=1)

    resp = client.post("/api/mailboxes/assign", json=_mailbox_body(("ada", "nowhere.com")))

    assert resp.status_code == 404
    assert "nowhere.com" in resp.json()["message"]


def test_delete_keeps_slot_consumed(client, db, make_subscription, make_domain):
    sub = make_subscription(total=2)
    make_domain("team.com")
    created = client.post("/api/mailboxes/assign", json=_mailbox_body(("ada", "team.com")))
    assert created.status_code == 200
    mailbox_id = db.query(Mailbox.mailbox_id).scalar()

    resp = client.delete(f"/api/mailboxes/{mailbox_id}")

    assert resp.status_code == 200
    db.expire_all()
    assert db.get(Mailbox, mailbox_id).status == MailboxStatus.SCHEDULED_FOR_DELETION
    assert db.get(MailboxSubscription, sub.id).number_of_used_mailbox == 1
    listing = client.get("/api/mailboxes").json()
    assert listing["activeMailboxes"] == []
    assert (listing["mailboxes_total"], listing["mailboxes_used"]) == (2, 1)


def test_wallet_mailbox_purchase_uses_tier_price(client, db, fund_wallet):
    fund_wallet(balance="100.00")

    resp = client.post("/api/mailboxes/purchase", json={"numberOfMailboxes": 20, "paymentMethod": "wallet",
                                                        "amount": 55})

    assert resp.status_code == 200
    assert resp.json()["mailboxCount"] == 20
    db.expire_all()
    assert db.query(Wallet).one().balance == Decimal("45.00")
    sub = db.query(MailboxSubscription).one()
    assert sub.payment_method == PaymentMethod.WALLET
    assert sub.price_per_mailbox == Decimal("2.75")


def test_wallet_mailbox_purchase_amount_mismatch(client, db, fund_wallet):
    fund_wallet(balance="100.00")

    resp = client.post("/api/mailboxes/purchase", json={"numberOfMailboxes": 20, "paymentMethod": "wallet",
                                                        "amount": 60})

    assert resp.status_code == 400
    db.expire_all()
    assert db.query(MailboxSubscription).count() == 0


def test_stripe_mailbox_purchase_creates_checkout(client, gateway, make_user):
    make_user(country="India")

    resp = client.post("/api/mailboxes/purchase", json={"numberOfMailboxes": 2, "paymentMethod": "stripe"})

    assert resp.status_code == 200
    assert resp.json()["sessionId"] == "cs_test_1"
    kwargs = gateway.create_checkout_session.call_args.kwargs
    assert kwargs["mode"] == "subscription"
    assert kwargs["metadata"]["charged_currency"] == "inr"
    assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 85000


def test_api_key_required(client):
    resp = client.post("/api/v1/mailboxes/assign", json=_mailbox_body(("ada", "team.com")))

    assert resp.status_code == 401
    assert resp.json()["error"] == "unauthorized"


def test_inactive_api_key_rejected(client, db):
    _api_key(db, active=False)

    resp = client.post("/api/v1/mailboxes/assign", json=_mailbox_body(("ada", "team.com")),
                       headers={"X-API-Key": "mb_live_key"})

    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid API key"


def test_api_key_assign(client, db, make_subscription, make_domain):
    _api_key(db)
    make_subscription(total=1)
    make_domain("team.com")

    resp = client.post("/api/v1/mailboxes/assign", json=_mailbox_body(("ada", "team.com")),
                       headers={"X-API-Key": "mb_live_key"})

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "mailboxes": ["ada@team.com"]}
    db.expire_all()
    assert db.query(ApiKey).one().last_used_at is not None
    job = db.query(Job).filter(Job.job_type == "assign_mailboxes").one()
    assert job.details["assign_type"] == "api"


def test_card_mailbox_purchase_requires_action(client, db, gateway):
    _api_key(db)
    gateway.create_product.return_value = {"id": "prod_1"}
    gateway.create_subscription.return_value = {
        "id": "sub_card",
        "latest_invoice": {"payment_intent": {"id": "pi_1", "client_secret": "pi_1_secret", "status": "requires_action"}},
    }

    resp = client.post("/api/v1/mailboxes/purchase",
                       json={"numberOfMailboxes": 2, "billing": {"payment_method_id": "pm_1"}},
                       headers={"X-API-Key": "mb_live_key"})

    assert resp.status_code == 400
    body = resp.json()
    assert body["payment_intent"]["client_secret"] == "pi_1_secret"
    db.expire_all()
    assert db.query(MailboxSubscription).count() == 0


def test_internal_renewal_requires_token(client, db, fund_wallet, make_subscription):
    fund_wallet(balance="50.00")
    sub = make_subscription(total_amount="15.00", renews_on=datetime.utcnow() - timedelta(hours=1))

    assert client.post("/api/internal/subscriptions/renew-due").status_code == 401
    resp = client.post("/api/internal/subscriptions/renew-due", headers={"X-Internal-Token": "internal-test-token"})

    assert resp.status_code == 200
    assert resp.json()["renewed"] == [sub.id]


def test_card_domain_purchase_registers_after_charge(client, db, gateway, registrar):
    _api_key(db)
    gateway.create_payment_intent.return_value = {"id": "pi_dom", "status": "succeeded"}

    resp = client.post("/api/v1/domains/purchase",
                       json={"domains": [{"domain": "card.com", "price": 1299}],
                             "billing": {"payment_method_id": "pm_1"}},
                       headers={"X-API-Key": "mb_live_key"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["purchased"] == ["card.com"]
    assert body["payment_intent_id"] == "pi_dom"
    assert gateway.create_payment_intent.call_args.kwargs["amount"] == 1299
    db.expire_all()
    assert db.query(Domain).one().status == "Active"
