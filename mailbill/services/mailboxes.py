"""Mailbox assignment, deletion, edits and exports on top of the allocator."""
from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from mailbill.core.exceptions import ForbiddenError, MailboxAlreadyExistsError, NotFoundError, ValidationError
from mailbill.core.timeutil import utcnow
from mailbill.models import (
    Domain,
    DomainSource,
    DomainStatus,
    Mailbox,
    MailboxExport,
    MailboxStatus,
    MailboxType,
)
from mailbill.services.allocator import SubscriptionAllocator
from mailbill.services.domains import normalize_domain
from mailbill.services.ledger import enqueue_job, new_id
from mailbill.services.notifications import notify_on_commit

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def clean_username(username: str) -> str:
    """Drop whitespace and anything from the first ``@``."""
    return _WHITESPACE.sub("", username or "").split("@", 1)[0].lower()


def build_email(username: str, domain: str) -> str:
    return f"{clean_username(username)}@{normalize_domain(domain)}".lower()


def mailbox_to_dict(mailbox: Mailbox, domain_name: Optional[str] = None) -> dict:
    return {
        "id": mailbox.mailbox_id,
        "email": mailbox.email,
        "firstName": mailbox.first_name,
        "lastName": mailbox.last_name,
        "username": mailbox.username,
        "status": mailbox.status,
        "recoveryEmail": mailbox.recovery_email,
        "createdAt": mailbox.created_at,
        "domain": domain_name,
        "exported": mailbox.export_id is not None,
    }


class MailboxService:
    def __init__(self, db: Session, allocator: Optional[SubscriptionAllocator] = None):
        self.db = db
        self.allocator = allocator or SubscriptionAllocator(db)

    def _exists(self, email: str) -> bool:
        return self.db.query(Mailbox.mailbox_id).filter(Mailbox.email == email).first() is not None

    def _owned_mailbox(self, user_id: str, mailbox_id: str) -> Mailbox:
        mailbox = self.db.get(Mailbox, mailbox_id)
        if mailbox is None:
            raise NotFoundError("Mailbox not found")
        if mailbox.user_id != user_id:
            raise ForbiddenError("Mailbox does not belong to this user")
        return mailbox

    def _create(self, user_id: str, domain: Domain, entry: dict, email: str) -> Mailbox:
        """Claim a slot and insert the mailbox. Duplicate check must already have passed."""
        sub = self.allocator.allocate(user_id, MailboxType.GSUITE)
        first, last = (entry.get("firstName") or "").strip(), (entry.get("lastName") or "").strip()
        now = utcnow()
        mailbox = Mailbox(
            mailbox_id=new_id(),
            domain_id=domain.domain_id,
            user_id=user_id,
            subscription_id=sub.id,
            email=email,
            username=clean_username(entry.get("username")),
            first_name=first,
            last_name=last,
            name=f"{first} {last}".strip(),
            recovery_email=entry.get("recoveryEmail") or None,
            forwarding_email=entry.get("forwardingEmail") or None,
            status=MailboxStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.db.add(mailbox)
        self.db.flush()
        self.allocator.increment_domain_count(domain.domain_id)
        return mailbox

    @staticmethod
    def _validate(entry: dict) -> None:
        if not entry.get("firstName") or not entry.get("lastName") or not clean_username(entry.get("username")) \
                or not entry.get("domain"):
            raise ValidationError("Missing required mailbox fields.")

    def assign(self, user_id: str, mailboxes: List[dict], *, assign_type: str = "internal") -> List[Mailbox]:
        """Assign a batch of mailboxes on the user's own domains.

        All-or-nothing: the caller's transaction is rolled back on any error.
        """
        if not mailboxes:
            raise ValidationError("Mailboxes array is required")
        created = []
        for entry in mailboxes:
            self._validate(entry)
            domain_name = normalize_domain(entry["domain"])
            domain = (
                self.db.query(Domain)
                .filter(Domain.user_id == user_id, Domain.domain_name == domain_name)
                .first()
            )
            if domain is None:
                raise NotFoundError(f"Domain not found: {domain_name}")
            email = build_email(entry["username"], domain_name)
            # Before any counter is touched
            if self._exists(email):
                raise MailboxAlreadyExistsError(email)
            created.append(self._create(user_id, domain, entry, email))

        self._enqueue_assignment(user_id, created, assign_type)
        logger.info("Assigned %d mailbox(es) for user %s (%s)", len(created), user_id, assign_type)
        notify_on_commit(
            self.db,
            f"{len(created)} mailbox(es) assigned for user {user_id}: {', '.join(m.email for m in created)}", "SUCCESS",
        )
        return created

    def assign_external(self, user_id: str, mailboxes: List[dict], *, external_provider: Optional[str],
                        ext_username: Optional[str], ext_password: Optional[str]) -> dict:
        """Assign mailboxes on domains hosted elsewhere; existing addresses are skipped."""
        if not mailboxes:
            raise ValidationError("Mailboxes array is required")
        created, skipped = [], []
        for entry in mailboxes:
            self._validate(entry)
            domain_name = normalize_domain(entry["domain"])
            email = build_email(entry["username"], domain_name)
            if self._exists(email):
                logger.info("Duplicate mailbox skipped: %s", email)
                skipped.append(email)
                continue
            domain = (
                self.db.query(Domain)
                .filter(Domain.user_id == user_id, Domain.domain_name == domain_name)
                .first()
            )
            if domain is None:
                now = utcnow()
                domain = Domain(
                    domain_id=new_id(),
                    user_id=user_id,
                    domain_name=domain_name,
                    status=DomainStatus.PENDING,
                    domain_source=DomainSource.CONNECTED,
                    mailbox_count=0,
                    external_provider=external_provider,
                    ext_username=ext_username,
                    ext_password=ext_password,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(domain)
                self.db.flush()
            created.append(self._create(user_id, domain, entry, email))

        if created:
            self._enqueue_assignment(user_id, created, "external", external_provider=external_provider)
        if skipped:
            notify_on_commit(
                self.db,
                f"Duplicate mailboxes skipped for user {user_id}: {', '.join(skipped)}", "WARNING",
            )
        return {"created": [m.email for m in created], "skipped": skipped}

    def _enqueue_assignment(self, user_id: str, created: List[Mailbox], assign_type: str, **extra) -> None:
        details = {
            "assign_type": assign_type,
            "number_of_mailboxes": len(created),
            "mailboxes": [
                {
                    "email": m.email,
                    "name": m.name,
                    "recovery_email": m.recovery_email,
                    "forwarding_email": m.forwarding_email,
                    "subscription_id": m.subscription_id,
                }
                for m in created
            ],
        }
        details.update({k: v for k, v in extra.items() if v is not None})
        enqueue_job(self.db, user_id=user_id, job_type="assign_mailboxes", order_type="gsuite", details=details)

    # Deletion

    def delete(self, user_id: str, mailbox_id: str) -> Mailbox:
        mailbox = self._owned_mailbox(user_id, mailbox_id)
        if mailbox.status == MailboxStatus.SCHEDULED_FOR_DELETION:
            return mailbox
        mailbox.status = MailboxStatus.SCHEDULED_FOR_DELETION
        mailbox.updated_at = utcnow()
        self.db.flush()
        self.allocator.decrement_domain_count(mailbox.domain_id)
        self.allocator.release(mailbox.subscription_id)
        logger.info("Mailbox %s scheduled for deletion (user %s)", mailbox.email, user_id)
        return mailbox

    def bulk_delete(self, user_id: str, mailbox_ids: Iterable[str]) -> List[Mailbox]:
        mailbox_ids = list(mailbox_ids or [])
        if not mailbox_ids:
            raise ValidationError("Mailbox IDs array is required")
        deleted = [self.delete(user_id, mailbox_id) for mailbox_id in dict.fromkeys(mailbox_ids)]
        notify_on_commit(
            self.db,
            f"Mailbox deletion scheduled for user {user_id}: {', '.join(m.email for m in deleted)}",
            "ALERT",
        )
        return deleted

    # Edits

    def edit(self, user_id: str, mailbox_id: str, *, first_name: str, last_name: str, username: str,
             recovery_email: Optional[str] = None) -> Mailbox:
        if not first_name or not last_name or not clean_username(username):
            raise ValidationError("Missing required mailbox fields.")
        mailbox = self._owned_mailbox(user_id, mailbox_id)
        domain = self.db.get(Domain, mailbox.domain_id)
        email = build_email(username, domain.domain_name)
        if email != mailbox.email and self._exists(email):
            raise MailboxAlreadyExistsError(email)

        mailbox.email = email
        mailbox.username = clean_username(username)
        mailbox.first_name = first_name.strip()
        mailbox.last_name = last_name.strip()
        mailbox.name = f"{mailbox.first_name} {mailbox.last_name}"
        mailbox.recovery_email = recovery_email or None
        mailbox.status = MailboxStatus.PENDING
        mailbox.updated_at = utcnow()
        self.db.flush()
        notify_on_commit(self.db, f"Mailbox {mailbox_id} edited by user {user_id}: {email}", "ALERT")
        return mailbox

    def bulk_set_recovery_email(self, user_id: str, mailbox_ids: List[str], recovery_email: str) -> dict:
        if not mailbox_ids or not recovery_email:
            raise ValidationError("mailboxIds and recoveryEmail are required")
        updated, skipped = [], []
        for mailbox_id in dict.fromkeys(mailbox_ids):
            mailbox = self._owned_mailbox(user_id, mailbox_id)
            if mailbox.status == MailboxStatus.SCHEDULED_FOR_DELETION:
                skipped.append(mailbox.email)
                continue
            mailbox.recovery_email = recovery_email
            mailbox.status = MailboxStatus.PENDING
            mailbox.updated_at = utcnow()
            updated.append(mailbox.email)
        self.db.flush()
        return {"updated": updated, "skipped": skipped}

    # Export

    def export(self, user_id: str, mailbox_ids: List[str], *, platform: str, platform_url: Optional[str] = None,
               email: Optional[str] = None, password: Optional[str] = None, workspace: Optional[str] = None,
               notes: Optional[str] = None) -> MailboxExport:
        if not mailbox_ids or not platform:
            raise ValidationError("mailboxIds and platform are required")
        mailboxes = [self._owned_mailbox(user_id, mailbox_id) for mailbox_id in dict.fromkeys(mailbox_ids)]
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
            mailbox_type=MailboxType.GSUITE,
            platform=platform,
            mailbox_count=len(mailboxes),
            details=details,
            created_at=now,
        )
        self.db.add(export)
        self.db.flush()
        for mailbox in mailboxes:
            mailbox.export_id = export.id
            mailbox.updated_at = now
        self.db.flush()
        enqueue_job(
            self.db,
            user_id=user_id,
            job_type="export",
            order_type="gsuite",
            details={"export_id": export.id, **details, "mailboxes": [m.email for m in mailboxes]},
        )
        return export

    # Views

    def list_for_user(self, user_id: str) -> dict:
        quota = self.allocator.compute_quota(user_id, MailboxType.GSUITE)
        rows = (
            self.db.query(Mailbox, Domain.domain_name)
            .join(Domain, Domain.domain_id == Mailbox.domain_id)
            .filter(Mailbox.user_id == user_id, Mailbox.status != MailboxStatus.SCHEDULED_FOR_DELETION)
            .order_by(Mailbox.created_at.desc())
            .all()
        )
        return {
            "mailboxes_total": quota.total,
            "mailboxes_used": quota.used,
            "activeMailboxes": [mailbox_to_dict(m, name) for m, name in rows],
        }
