"""
Shared fixtures for the mailbill test suite.

The app runs against a throwaway SQLite file: the sync engine and an aiosqlite
engine point at the same file, so rows written through the ORM are visible to
the async read routes. Stripe, Namecheap and ClouDNS are replaced by mocks.
"""
import os
import shutil
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="mailbill-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["DB_MIGRATIONS_ON_STARTUP"] = "0"
os.environ["INTERNAL_API_TOKEN"] = "internal-test-token"
os.environ["RATE_LIMIT_PER_MIN"] = "100000"
os.environ["RATE_LIMIT_PER_DAY"] = "1000000"
os.environ.pop("SLACK_WEBHOOK_URL", None)
os.environ.pop("MAILBOX_RELEASE_ON_DELETE", None)

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from mailbill.api.auth import CurrentUser, get_current_user
from mailbill.api.deps_async import get_db_async
from mailbill.db.async_session import ASYNC_DATABASE_URL
from mailbill.db.base import Base
from mailbill.db.session import SessionLocal, engine
from mailbill.main import app
from mailbill.models import (
    Domain,
    DomainSource,
    DomainStatus,
    MailboxSubscription,
    MailboxType,
    PaymentMethod,
    Plan,
    SubscriptionKind,
    SubscriptionStatus,
    User,
    Wallet,
)
from mailbill.services.dns import ZoneManager, get_zone_manager
from mailbill.services.gateway import StripeGateway, get_gateway
from mailbill.services.ledger import new_id
from mailbill.services.registrar import NamecheapRegistrar, get_registrar

USER_ID = "user-1"
USER_EMAIL = "owner@example.com"

# NullPool: every async test runs on its own event loop
test_async_engine = create_async_engine(ASYNC_DATABASE_URL, poolclass=NullPool)
TestAsyncSession = async_sessionmaker(bind=test_async_engine, class_=AsyncSession, expire_on_commit=False)


def pytest_sessionfinish(session, exitstatus):
    engine.dispose()
    shutil.rmtree(_DB_DIR, ignore_errors=True)


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest_asyncio.fixture
async def async_db():
    async with TestAsyncSession() as session:
        yield session


@pytest.fixture
def gateway():
    mock = MagicMock(spec=StripeGateway)
    mock.create_customer.return_value = {"id": "cus_test"}
    mock.create_checkout_session.return_value = {"id": "cs_test_1", "url": "https://checkout.test/cs_test_1"}
    mock.create_portal_session.return_value = {"url": "https://billing.test/portal"}
    mock.update_subscription.return_value = {"id": "sub_ext", "status": "active"}
    mock.cancel_subscription.return_value = {"id": "sub_ext", "status": "canceled"}
    return mock


@pytest.fixture
def registrar():
    mock = MagicMock(spec=NamecheapRegistrar)
    mock.register_domain.side_effect = lambda name, years=1: {"success": True, "domain": name}
    return mock


@pytest.fixture
def zones():
    return MagicMock(spec=ZoneManager)


@pytest.fixture
def client(gateway, registrar, zones):
    async def _async_db():
        async with TestAsyncSession() as session:
            yield session

    app.dependency_overrides[get_current_user] = lambda: CurrentUser(id=USER_ID, email=USER_EMAIL)
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_registrar] = lambda: registrar
    app.dependency_overrides[get_zone_manager] = lambda: zones
    app.dependency_overrides[get_db_async] = _async_db
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# Factories


@pytest.fixture
def make_user(db):
    def _make(user_id=USER_ID, email=USER_EMAIL, country=None):
        user = User(id=user_id, email=email, country=country, created_at=datetime.utcnow())
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def fund_wallet(db):
    def _fund(user_id=USER_ID, balance="100.00"):
        now = datetime.utcnow()
        wallet = Wallet(
            wallet_id=new_id(),
            user_id=user_id,
            balance=Decimal(balance),
            auto_topup=False,
            created_at=now,
            updated_at=now,
        )
        db.add(wallet)
        db.commit()
        return wallet

    return _fund


@pytest.fixture
def make_plan(db):
    def _make(plan_id="plan-basic", name="Basic", price="30.00", per_mailbox="3.00", included=10,
              stripe_price="price_basic"):
        plan = Plan(
            id=plan_id,
            name=name,
            price_monthly=Decimal(price),
            price_per_additional_mailbox=Decimal(per_mailbox),
            included_mailboxes=included,
            duration=30,
            stripe_price_id_monthly=stripe_price,
            active=True,
            created_at=datetime.utcnow(),
        )
        db.add(plan)
        db.commit()
        return plan

    return _make


@pytest.fixture
def make_subscription(db):
    def _make(user_id=USER_ID, total=5, used=0, *, kind=SubscriptionKind.ADDON, mailbox_type=MailboxType.GSUITE,
              status=SubscriptionStatus.ACTIVE, payment_method=PaymentMethod.WALLET, total_amount="15.00",
              price_per_mailbox="3.00", created_at=None, renews_on=None, plan_id=None, external_id=None):
        now = datetime.utcnow()
        sub = MailboxSubscription(
            id=new_id(),
            external_id=external_id,
            user_id=user_id,
            kind=kind,
            plan_id=plan_id,
            mailbox_type=mailbox_type,
            status=status,
            payment_method=payment_method,
            number_of_mailboxes=total,
            number_of_used_mailbox=used,
            price_per_mailbox=Decimal(price_per_mailbox),
            total_amount=Decimal(total_amount),
            billing_date=now,
            renews_on=renews_on or now + timedelta(days=30),
            created_at=created_at or now,
            updated_at=now,
        )
        db.add(sub)
        db.commit()
        return sub

    return _make


@pytest.fixture
def make_domain(db):
    def _make(name="example.com", user_id=USER_ID, status=DomainStatus.ACTIVE, source=DomainSource.PURCHASED):
        now = datetime.utcnow()
        domain = Domain(
            domain_id=new_id(),
            user_id=user_id,
            domain_name=name,
            status=status,
            domain_source=source,
            mailbox_count=0,
            created_at=now,
            updated_at=now,
        )
        db.add(domain)
        db.commit()
        return domain

    return _make
