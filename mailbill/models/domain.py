from datetime import datetime
from typing import Optional

from mailbill.db.base import Base
from sqlalchemy import DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column


class DomainStatus:
    PENDING = "Pending"
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    PROPAGATING = "Propagating"
    DISCONNECTED = "Disconnected"


class DomainSource:
    PURCHASED = "Purchased"
    CONNECTED = "Connected"


class Domain(Base):
    __tablename__ = "domains"
    __table_args__ = (UniqueConstraint("user_id", "domain_name", name="uq_domains_user_domain"),)

    domain_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    domain_name: Mapped[str] = mapped_column(String(255), index=True, nullable=False)

    status: Mapped[str] = mapped_column(String(32), default=DomainStatus.PENDING, nullable=False)
    domain_source: Mapped[str] = mapped_column(String(32), default=DomainSource.CONNECTED, nullable=False)
    # Count of mailboxes on this domain that are not scheduled for deletion
    mailbox_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    purchased_on: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    renews_on: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    redirect_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    # Credentials for mailboxes hosted with an outside provider
    external_provider: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ext_username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ext_password: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)
