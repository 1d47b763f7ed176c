from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from mailbill.api.auth import CurrentUser, get_api_key_user
from mailbill.api.deps import get_db
from mailbill.api.domains import DomainItem
from mailbill.api.mailboxes import MailboxIdsRequest, MailboxIn
from mailbill.services.gateway import StripeGateway, get_gateway
from mailbill.services.mailboxes import MailboxService
from mailbill.services.purchases import PurchaseService
from mailbill.services.registrar import NamecheapRegistrar, get_registrar

router = APIRouter(prefix="/api/v1", tags=["api-v1"])


class Billing(BaseModel):
    payment_method_id: Optional[str] = None


class DomainPurchaseRequest(BaseModel):
    domains: List[DomainItem] = Field(default_factory=list)
    billing: Billing = Field(default_factory=Billing)


class MailboxPurchaseRequest(BaseModel):
    numberOfMailboxes: int
    billing: Billing = Field(default_factory=Billing)


class AssignRequest(BaseModel):
    mailboxes: List[MailboxIn] = Field(default_factory=list)


@router.post("/domains/purchase")
def purchase_domains(body: DomainPurchaseRequest, db: Session = Depends(get_db),
                     gateway: StripeGateway = Depends(get_gateway),
                     registrar: NamecheapRegistrar = Depends(get_registrar),
                     current_user: CurrentUser = Depends(get_api_key_user)):
    result = PurchaseService(db, gateway).purchase_domains_with_card(
        current_user["id"],
        current_user.get("email"),
        [d.model_dump() for d in body.domains],
        body.billing.payment_method_id,
        registrar,
    )
    return {"success": True, "message": "Domain purchase processed", **result}


@router.post("/mailboxes/purchase")
def purchase_mailboxes(body: MailboxPurchaseRequest, db: Session = Depends(get_db),
                       gateway: StripeGateway = Depends(get_gateway),
                       current_user: CurrentUser = Depends(get_api_key_user)):
    sub = PurchaseService(db, gateway).purchase_mailboxes_with_card(
        current_user["id"], current_user.get("email"), body.numberOfMailboxes, body.billing.payment_method_id
    )
    db.commit()
    return {
        "success": True,
        "message": "Mailbox purchase successful",
        "subscription_id": sub.id,
        "subscription_stripe_id": sub.external_id,
        "numberOfMailboxes": sub.number_of_mailboxes,
        "renewsOn": sub.renews_on,
    }


@router.post("/mailboxes/assign")
def assign_mailboxes(body: AssignRequest, db: Session = Depends(get_db),
                     current_user: CurrentUser = Depends(get_api_key_user)):
    created = MailboxService(db).assign(
        current_user["id"], [m.model_dump() for m in body.mailboxes], assign_type="api"
    )
    db.commit()
    return {"success": True, "mailboxes": [m.email for m in created]}


@router.delete("/mailboxes/{mailbox_id}")
def delete_mailbox(mailbox_id: str, db: Session = Depends(get_db),
                   current_user: CurrentUser = Depends(get_api_key_user)):
    mailbox = MailboxService(db).delete(current_user["id"], mailbox_id)
    db.commit()
    return {"success": True, "mailboxes": [mailbox.email]}


@router.post("/mailboxes/delete")
def delete_mailboxes(body: MailboxIdsRequest, db: Session = Depends(get_db),
                     current_user: CurrentUser = Depends(get_api_key_user)):
    deleted = MailboxService(db).bulk_delete(current_user["id"], body.mailboxIds)
    db.commit()
    return {"success": True, "mailboxes": [m.email for m in deleted]}
