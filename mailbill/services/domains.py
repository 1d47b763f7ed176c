"""Domain purchase, connection and DNS propagation."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from mailbill.core.exceptions import NotFoundError, ValidationError
from mailbill.core.timeutil import add_months, utcnow
from mailbill.models import Domain, DomainSource, DomainStatus, Mailbox, MailboxType
from mailbill.services.allocator import SubscriptionAllocator
from mailbill.services.dns import ZoneManager
from mailbill.services.ledger import enqueue_job, new_id
from mailbill.services.notifications import notify_on_commit
from mailbill.services.pricing import DOMAIN_TLDS, domain_sale_price, generate_domain_suggestions
from mailbill.services.registrar import NamecheapRegistrar

logger = logging.getLogger(__name__)


def normalize_domain(name: str) -> str:
    return (name or "").strip().lower().rstrip(".")


def parse_domain_items(domains: str, years: str | None) -> List[Dict[str, Any]]:
    """Split the comma-joined ``domains``/``years`` checkout metadata into items."""
    names = [normalize_domain(d) for d in (domains or "").split(",") if d.strip()]
    year_parts = [y.strip() for y in (years or "").split(",") if y.strip()]
    items = []
    for index, name in enumerate(names):
        raw = year_parts[index] if index < len(year_parts) else (year_parts[0] if year_parts else "1")
        try:
            count = max(1, int(raw))
        except ValueError:
            count = 1
        items.append({"domain": name, "years": count})
    return items


def domain_to_dict(domain: Domain) -> dict:
    return {
        "id": domain.domain_id,
        "name": domain.domain_name,
        "status": domain.status,
        "mailboxCount": domain.mailbox_count or 0,
        "source": domain.domain_source,
        "purchaseDate": domain.purchased_on,
        "renewalDate": domain.renews_on,
        "forwarding": "Active" if domain.redirect_url else "Not Assigned",
        "redirectUrl": domain.redirect_url,
    }


class DomainService:
    def __init__(
        self,
        db: Session,
        registrar: Optional[NamecheapRegistrar] = None,
        zones: Optional[ZoneManager] = None,
    ):
        self.db = db
        self.registrar = registrar
        self.zones = zones

    def list_domains(self, user_id: str) -> List[Domain]:
        domains = (
            self.db.query(Domain)
            .filter(Domain.user_id == user_id)
            .order_by(Domain.created_at.asc())
            .all()
        )
        if not domains:
            raise NotFoundError("No domains found for this user")
        return domains

    def owned(self, user_id: str, name: str) -> Optional[Domain]:
        return (
            self.db.query(Domain)
            .filter(Domain.user_id == user_id, Domain.domain_name == normalize_domain(name))
            .first()
        )

    # Availability

    def check_availability(self, query: str) -> dict:
        query = normalize_domain(query)
        if not query:
            raise ValidationError("Domain query param is required")
        suggestions = generate_domain_suggestions(query)
        availability = self.registrar.check_availability(suggestions)
        pricing = self.registrar.get_pricing(DOMAIN_TLDS)

        formatted = []
        for row in availability:
            name = (row.get("name") or "").lower()
            tld = "." + name.rsplit(".", 1)[-1]
            price = pricing.get(tld) or {}
            formatted.append({
                "domainName": name,
                "status": "AVAILABLE" if row.get("available") else "UNAVAILABLE",
                "domainPrice": str(domain_sale_price(price.get("register"))),
                "renewPrice": str(domain_sale_price(price.get("renew"))),
            })

        if not formatted:
            return {"exactMatch": None, "availableDomains": []}
        exact = next((d for d in formatted if d["domainName"] == query), formatted[0])
        available = [
            d for d in formatted if d["domainName"] != exact["domainName"] and d["status"] == "AVAILABLE"
        ]
        return {"exactMatch": exact, "availableDomains": available}

    # Purchase

    def record_purchase(self, user_id: str, items: List[Dict[str, Any]], *, amount, reference_id: str,
                        payment_method: str) -> List[Domain]:
        """Write the domain Job and pre-insert every domain as ``Inactive``."""
        enqueue_job(
            self.db,
            user_id=user_id,
            job_type="domain",
            order_type="domain",
            details={
                "domain_name": ", ".join(i["domain"] for i in items),
                "years": ", ".join(str(i["years"]) for i in items),
                "amount": str(amount),
                "reference_id": reference_id,
                "payment_method": payment_method,
            },
        )
        now = utcnow()
        rows = []
        for item in items:
            domain = self.owned(user_id, item["domain"])
            if domain is None:
                domain = Domain(
                    domain_id=new_id(),
                    user_id=user_id,
                    domain_name=item["domain"],
                    domain_source=DomainSource.PURCHASED,
                    mailbox_count=0,
                    created_at=now,
                )
                self.db.add(domain)
            domain.status = DomainStatus.INACTIVE
            domain.domain_source = DomainSource.PURCHASED
            domain.purchased_on = now
            domain.renews_on = add_months(now, 12 * item["years"])
            domain.updated_at = now
            rows.append(domain)
        self.db.flush()
        return rows

    def register_purchased(self, user_id: str, items: List[Dict[str, Any]]) -> dict:
        """Register each pre-inserted domain independently.

        Commits after every domain so one registrar failure never undoes
        another domain's activation.
        """
        purchased: List[str] = []
        failed: List[Dict[str, str]] = []
        for item in items:
            name = item["domain"]
            result = self.registrar.register_domain(name, item["years"])
            if not result.get("success"):
                reason = result.get("message") or "Unknown error"
                logger.error("Domain registration failed for %s (user %s): %s", name, user_id, reason)
                notify_on_commit(self.db, f"Domain registration failed for {name} (user {user_id}): {reason}", "ERROR")
                failed.append({"item": name, "reason": reason})
                continue
            domain = self.owned(user_id, name)
            if domain is not None:
                domain.status = DomainStatus.ACTIVE
                domain.updated_at = utcnow()
            self.db.commit()
            purchased.append(name)
            notify_on_commit(self.db, f"Domain {name} registered for user {user_id}", "SUCCESS")
        return {"purchased": purchased, "failed": failed}

    # Connected domains

    def connect(self, user_id: str, names: List[str]) -> dict:
        names = list(dict.fromkeys(normalize_domain(n) for n in names if normalize_domain(n)))
        if not names:
            raise ValidationError("domainName must be a non-empty list")

        quota = SubscriptionAllocator(self.db).compute_quota(user_id, MailboxType.GSUITE)
        if quota.total == 0:
            raise ValidationError("No mailbox addons found. Please purchase mailboxes to connect domains")

        existing = {
            d.domain_name for d in self.db.query(Domain).filter(Domain.user_id == user_id).all()
        }
        new_names = [n for n in names if n not in existing]
        if len(existing) + len(new_names) > quota.total:
            raise ValidationError(
                "You have reached the maximum number of domains you can connect. "
                "Please increase your mailbox addons to connect more domains"
            )

        now = utcnow()
        for name in new_names:
            self.db.add(Domain(
                domain_id=new_id(),
                user_id=user_id,
                domain_name=name,
                status=DomainStatus.PENDING,
                domain_source=DomainSource.CONNECTED,
                mailbox_count=0,
                created_at=now,
                updated_at=now,
            ))
        self.db.flush()
        skipped = [n for n in names if n in existing]
        for name in skipped:
            logger.info("Domain %s already connected for user %s", name, user_id)
        return {"message": "Domains connected", "connected": new_names, "skipped": skipped}

    def clear(self, user_id: str, names: List[str]) -> dict:
        deleted, disconnected = [], []
        for raw in names:
            domain = self.owned(user_id, raw)
            if domain is None:
                logger.info("Clear requested for unknown domain %s (user %s)", raw, user_id)
                continue
            zone_deleted = self.zones.delete_zone(domain.domain_name)
            has_mailboxes = (
                self.db.query(Mailbox.mailbox_id).filter(Mailbox.domain_id == domain.domain_id).first() is not None
            )
            if zone_deleted and not has_mailboxes:
                self.db.delete(domain)
                deleted.append(domain.domain_name)
            else:
                domain.status = DomainStatus.DISCONNECTED
                domain.updated_at = utcnow()
                disconnected.append(domain.domain_name)
        self.db.flush()
        return {"message": "Domain disconnected", "deleted": deleted, "disconnected": disconnected}

    def check_connected(self, user_id: str) -> List[dict]:
        domains = (
            self.db.query(Domain)
            .filter(
                Domain.user_id == user_id,
                Domain.domain_source == DomainSource.CONNECTED,
                Domain.status != DomainStatus.DISCONNECTED,
            )
            .all()
        )
        return [self._check_propagation(domain, create_zone=True) for domain in domains]

    def recheck(self, user_id: str, names: List[str]) -> List[dict]:
        results = []
        for raw in names:
            domain = self.owned(user_id, raw)
            if domain is None:
                raise NotFoundError(f"Domain not found: {raw}")
            results.append(self._check_propagation(domain, create_zone=False))
        return results

    def _check_propagation(self, domain: Domain, *, create_zone: bool) -> dict:
        name = domain.domain_name
        if domain.status == DomainStatus.ACTIVE:
            return _ns_result(name, True, [])

        if create_zone:
            zone = self.zones.get_zone_info(name)
            if zone.get("status") == "Failed":
                created = self.zones.create_zone(name)
                if created.get("status") == "Success":
                    self._set_status(domain, DomainStatus.PROPAGATING)
                    notify_on_commit(self.db, f"Zone created for {name}. Waiting for NS propagation.", "INFO")
                else:
                    logger.error("Failed to create zone for %s: %s", name, created.get("statusDescription"))
                    notify_on_commit(
                        self.db,
                        f"Failed to create zone for {name}: {created.get('statusDescription')}", "ERROR",
                    )
                return _ns_result(name, False, [])

        nameservers = self.zones.resolve_nameservers(name)
        if self.zones.is_propagated(nameservers):
            self._set_status(domain, DomainStatus.ACTIVE)
            logger.info("Domain %s fully propagated", name)
            notify_on_commit(self.db, f"{name} fully propagated and Active.", "INFO")
            return _ns_result(name, True, nameservers)
        self._set_status(domain, DomainStatus.PROPAGATING)
        return _ns_result(name, False, nameservers)

    def _set_status(self, domain: Domain, status: str) -> None:
        domain.status = status
        domain.updated_at = utcnow()
        self.db.flush()

    # Redirects

    def set_redirect(self, user_id: str, domain_ids: List[str], redirect_url: Optional[str]) -> dict:
        if not domain_ids:
            raise ValidationError("domainIds must be a non-empty list")
        domains = (
            self.db.query(Domain)
            .filter(Domain.user_id == user_id, Domain.domain_id.in_(domain_ids))
            .all()
        )
        if not domains:
            raise NotFoundError("Domain not found")
        redirect_url = (redirect_url or "").strip() or None
        for domain in domains:
            domain.redirect_url = redirect_url
            domain.updated_at = utcnow()
        self.db.flush()
        enqueue_job(
            self.db,
            user_id=user_id,
            job_type="domain_redirect" if redirect_url else "domain_redirect_remove",
            order_type="domain",
            details={"domainNames": [d.domain_name for d in domains], "redirectUrl": redirect_url},
        )
        return {"message": "Domain redirect added" if redirect_url else "Domain redirect removed"}


def _ns_result(name: str, connected: bool, nameservers: List[str]) -> dict:
    return {
        "domain": {"domain_name": name},
        "connected": connected,
        "connectedWith": "cloudns" if connected else None,
        "currentNS": nameservers,
    }
