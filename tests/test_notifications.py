import pytest

from mailbill.models import Wallet
from mailbill.services import notifications
from mailbill.services.notifications import notify_on_commit
from mailbill.services.purchases import PurchaseService
from tests.conftest import USER_ID


@pytest.fixture
def sent(monkeypatch):
    messages = []
    monkeypatch.setattr(notifications, "notify", lambda message, level="INFO": messages.append((message, level)))
    return messages


def test_queued_message_sent_after_commit(db, sent):
    db.query(Wallet).count()
    notify_on_commit(db, "first", "SUCCESS")
    db.flush()
    assert sent == []

    db.commit()

    assert sent == [("first", "SUCCESS")]
    db.commit()
    assert len(sent) == 1


def test_rollback_drops_queued_message(db, sent):
    db.query(Wallet).count()
    notify_on_commit(db, "never")

    db.rollback()
    db.commit()

    assert sent == []


def test_wallet_purchase_announced_only_on_commit(db, fund_wallet, sent):
    fund_wallet(balance="100.00")
    service = PurchaseService(db)

    service.purchase_mailboxes_with_wallet(USER_ID, None, 5)
    assert sent == []
    db.rollback()
    assert sent == []

    service.purchase_mailboxes_with_wallet(USER_ID, None, 5)
    db.commit()
    assert len(sent) == 1
    assert "5 mailbox(es)" in sent[0][0]
