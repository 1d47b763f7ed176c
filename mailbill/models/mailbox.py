from datetime import datetime
from decimal import Decimal
from typing import Optional

from mailbill.db.base import Base
from sqlalchemy import JSON, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column


class MailboxStatus:
    PENDING = "Pending"
    ACTIVE = "Active"
    SCHEDULED_FOR_DELETION = "Scheduled for Deletion"
    INACTIVE = "Inactive"
    READY_FOR_SALE = "Ready For Sale"  # pre-warmed pool only


class Mailbox(Base):
    __tablename__ = "mailboxes"

    mailbox_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    domain_id: Mapped[str] = mapped_column(String(64), ForeignKey("domains.domain_id"), index=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    # Quota slot this mailbox consumed; never reassigned
    subscription_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("mailbox_subscriptions.id"),
                                                           index=True, nullable=True)

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    recovery_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    forwarding_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(32), default=MailboxStatus.PENDING, nullable=False)
    export_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("mailbox_exports.id"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)


class PrewarmMailbox(Base):
    """Pre-warmed inventory; unowned rows are ``Ready For Sale``."""

    __tablename__ = "prewarm_mailboxes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0, nullable=False)

    status: Mapped[str] = mapped_column(String(32), default=MailboxStatus.READY_FOR_SALE, index=True, nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(128), index=True, nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("mailbox_subscriptions.id"),
                                                           index=True, nullable=True)
    export_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("mailbox_exports.id"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)


class PrewarmSelection(Base):
    """Pool emails chosen for a pending pre-warmed checkout."""

    __tablename__ = "prewarm_selections"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    emails: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class MailboxExport(Base):
    __tablename__ = "mailbox_exports"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    mailbox_type: Mapped[str] = mapped_column(String(32), nullable=False)
    platform: Mapped[str] = mapped_column(String(64), nullable=False)
    mailbox_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    details: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
