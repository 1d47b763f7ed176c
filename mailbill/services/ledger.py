"""Orders, worker jobs and payment-attempt records."""
from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from mailbill.core.timeutil import utcnow
from mailbill.models import Job, Order, TransactionHistory, TransactionStatus

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


def record_order(
    db: Session,
    *,
    user_id: str,
    order_type: str,
    amount: Decimal,
    payment_method: str,
    quantity: int = 1,
    currency: str = "usd",
    reference_id: Optional[str] = None,
    details: Optional[dict] = None,
) -> Order:
    order = Order(
        order_id=new_id(),
        user_id=user_id,
        order_type=order_type,
        amount=amount,
        currency=currency,
        quantity=quantity,
        payment_method=payment_method,
        reference_id=reference_id,
        details=details,
        created_at=utcnow(),
    )
    db.add(order)
    db.flush()
    return order


def enqueue_job(
    db: Session,
    *,
    user_id: str,
    job_type: str,
    order_type: Optional[str] = None,
    details: Optional[dict] = None,
) -> Job:
    job = Job(
        job_id=new_id(),
        user_id=user_id,
        job_type=job_type,
        order_type=order_type,
        status="new",
        details=details,
        created_at=utcnow(),
    )
    db.add(job)
    db.flush()
    logger.info("Job %s (%s) queued for user %s", job.job_id, job_type, user_id)
    return job


def record_pending_transaction(
    db: Session,
    *,
    user_id: str,
    checkout_session_id: str,
    type: str,
    amount: int,
    currency: str,
    description: Optional[str] = None,
) -> TransactionHistory:
    row = TransactionHistory(
        id=new_id(),
        user_id=user_id,
        checkout_session_id=checkout_session_id,
        type=type,
        amount=amount,
        currency=currency,
        status=TransactionStatus.PENDING,
        payment_provider="stripe",
        description=description,
    )
    db.add(row)
    db.flush()
    return row


def record_succeeded_transaction(
    db: Session,
    *,
    user_id: str,
    type: str,
    amount: int,
    reference_id: str,
    currency: str = "usd",
    payment_provider: str = "stripe",
    checkout_session_id: Optional[str] = None,
    description: Optional[str] = None,
) -> TransactionHistory:
    """Payment record for a charge that is already confirmed."""
    row = TransactionHistory(
        id=new_id(),
        user_id=user_id,
        checkout_session_id=checkout_session_id,
        type=type,
        amount=amount,
        currency=currency,
        status=TransactionStatus.SUCCEEDED,
        payment_provider=payment_provider,
        reference_id=reference_id,
        description=description,
    )
    db.add(row)
    db.flush()
    return row


def record_wallet_transaction(
    db: Session,
    *,
    user_id: str,
    type: str,
    amount: int,
    reference_id: str,
    description: Optional[str] = None,
) -> TransactionHistory:
    return record_succeeded_transaction(
        db,
        user_id=user_id,
        type=type,
        amount=amount,
        reference_id=reference_id,
        payment_provider="wallet",
        description=description,
    )


def find_transaction(db: Session, checkout_session_id: str) -> Optional[TransactionHistory]:
    return (
        db.query(TransactionHistory)
        .filter(TransactionHistory.checkout_session_id == checkout_session_id)
        .first()
    )
