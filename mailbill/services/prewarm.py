"""Pre-warmed mailbox pool and the user's owned pre-warmed mailboxes."""
from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from mailbill.core.exceptions import NotFoundError
from mailbill.core.timeutil import utcnow
from mailbill.models import (
    MailboxExport,
    MailboxStatus,
    MailboxSubscription,
    MailboxType,
    PrewarmMailbox,
    SubscriptionStatus,
)
from mailbill.services.allocator import SubscriptionAllocator
from mailbill.services.ledger import enqueue_job, new_id
from mailbill.services.pricing import prewarm_unit_price

logger = logging.getLogger(__name__)


def _split(email: str) -> tuple[str, str]:
    username, _, domain = (email or "").partition("@")
    return username, domain


class PrewarmService:
    def __init__(self, db: Session):
        self.db = db

    def list_pool(self, email: Optional[str] = None) -> List[dict]:
        """Ready For Sale inventory priced for the requesting user."""
        rows = (
            self.db.query(PrewarmMailbox)
            .filter(PrewarmMailbox.status == MailboxStatus.READY_FOR_SALE)
            .order_by(PrewarmMailbox.created_at.asc())
            .all()
        )
        result = []
        for row in rows:
            username, domain = _split(row.email)
            result.append({
                "id": row.id,
                "email": row.email,
                "username": username,
                "domain": domain,
                "firstName": row.first_name,
                "lastName": row.last_name,
                "price": prewarm_unit_price(self.db, email, row.price),
            })
        return result

    def list_for_user(self, user_id: str) -> dict:
        quota = SubscriptionAllocator(self.db).compute_quota(user_id, MailboxType.PREWARMED)
        rows = (
            self.db.query(PrewarmMailbox, MailboxSubscription.renews_on)
            .outerjoin(MailboxSubscription, MailboxSubscription.id == PrewarmMailbox.subscription_id)
            .filter(
                PrewarmMailbox.user_id == user_id,
                PrewarmMailbox.status != MailboxStatus.READY_FOR_SALE,
            )
            .order_by(PrewarmMailbox.updated_at.desc())
            .all()
        )
        return {
            "mailboxes_total": quota.total,
            "mailboxes_used": quota.used,
            "mailboxes": [
                {
                    "id": row.id,
                    "email": row.email,
                    "firstName": row.first_name,
                    "lastName": row.last_name,
                    "status": row.status,
                    "subscriptionId": row.subscription_id,
                    "renewsOn": renews_on,
                    "exported": row.export_id is not None,
                }
                for row, renews_on in rows
            ],
        }

    def export(self, user_id: str, mailbox_ids: Optional[List[str]], *, platform: str,
               platform_url: Optional[str] = None, email: Optional[str] = None, password: Optional[str] = None,
               workspace: Optional[str] = None, notes: Optional[str] = None) -> MailboxExport:
        """Export the selected owned pre-warmed mailboxes, or all of them when none are selected."""
        query = (
            self.db.query(PrewarmMailbox)
            .outerjoin(MailboxSubscription, MailboxSubscription.id == PrewarmMailbox.subscription_id)
            .filter(
                PrewarmMailbox.user_id == user_id,
                PrewarmMailbox.status != MailboxStatus.READY_FOR_SALE,
                MailboxSubscription.status.in_(SubscriptionStatus.LIVE),
            )
        )
        if mailbox_ids:
            query = query.filter(PrewarmMailbox.id.in_(mailbox_ids))
        rows = query.all()
        if not rows:
            raise NotFoundError("No pre-warmed mailboxes found to export")

        now = utcnow()
        details = {
            "platform": platform,
            "email": email,
            "password": password,
            "platform_url": platform_url,
            "workspace": workspace,
            "notes": notes,
            "exported_at": now.isoformat(),
        }
        export = MailboxExport(
            id=new_id(),
            user_id=user_id,
            mailbox_type=MailboxType.PREWARMED,
            platform=platform,
            mailbox_count=len(rows),
            details=details,
            created_at=now,
        )
        self.db.add(export)
        self.db.flush()
        for row in rows:
            row.export_id = export.id
            row.status = MailboxStatus.PENDING
            row.updated_at = now
        self.db.flush()
        enqueue_job(
            self.db,
            user_id=user_id,
            job_type="export",
            order_type="prewarm",
            details={"export_id": export.id, **details, "mailboxes": [r.email for r in rows]},
        )
        logger.info("Exported %d pre-warmed mailbox(es) for user %s to %s", len(rows), user_id, platform)
        return export
