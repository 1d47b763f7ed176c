from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from mailbill.api.auth import CurrentUser, get_current_user
from mailbill.api.deps import get_db
from mailbill.services.gateway import StripeGateway, get_gateway
from mailbill.services.mailboxes import MailboxService
from mailbill.services.pricing import mailbox_unit_price
from mailbill.services.purchases import PurchaseService

router = APIRouter(prefix="/api/mailboxes", tags=["mailboxes"])


class MailboxIn(BaseModel):
    firstName: str
    lastName: str
    username: str
    domain: str
    recoveryEmail: Optional[str] = None
    forwardingEmail: Optional[str] = None


class AssignRequest(BaseModel):
    mailboxes: List[MailboxIn] = Field(default_factory=list)


class AssignExternalRequest(AssignRequest):
    external_provider: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


class MailboxIdsRequest(BaseModel):
    mailboxIds: List[str] = Field(default_factory=list)


class EditRequest(BaseModel):
    firstName: str
    lastName: str
    username: str
    recoveryEmail: Optional[str] = None


class RecoveryEmailRequest(MailboxIdsRequest):
    recoveryEmail: str


class ExportRequest(MailboxIdsRequest):
    platform: str
    platformUrl: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    workspace: Optional[str] = None
    notes: Optional[str] = None


class PurchaseRequest(BaseModel):
    numberOfMailboxes: int
    paymentMethod: str = "stripe"
    amount: Optional[float] = None


@router.get("")
def list_mailboxes(db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    return MailboxService(db).list_for_user(current_user["id"])


@router.get("/pricing")
def get_pricing(user_id: Optional[str] = None, db: Session = Depends(get_db),
                current_user: CurrentUser = Depends(get_current_user)):
    target = user_id or current_user["id"]
    email = current_user.get("email") if target == current_user["id"] else None
    return mailbox_unit_price(db, target, email)


@router.post("/assign")
def assign_mailboxes(body: AssignRequest, db: Session = Depends(get_db),
                     current_user: CurrentUser = Depends(get_current_user)):
    created = MailboxService(db).assign(current_user["id"], [m.model_dump() for m in body.mailboxes])
    db.commit()
    return {"message": "Mailboxes assigned", "mailboxes": [m.email for m in created]}


@router.post("/assignExternal")
def assign_external_mailboxes(body: AssignExternalRequest, db: Session = Depends(get_db),
                              current_user: CurrentUser = Depends(get_current_user)):
    result = MailboxService(db).assign_external(
        current_user["id"],
        [m.model_dump() for m in body.mailboxes],
        external_provider=body.external_provider,
        ext_username=body.username,
        ext_password=body.password,
    )
    db.commit()
    return {"message": "Mailboxes assigned", **result}


@router.delete("/{mailbox_id}")
def delete_mailbox(mailbox_id: str, db: Session = Depends(get_db),
                   current_user: CurrentUser = Depends(get_current_user)):
    mailbox = MailboxService(db).delete(current_user["id"], mailbox_id)
    db.commit()
    return {"message": "Mailbox scheduled for deletion", "email": mailbox.email}


@router.post("/bulkDelete")
def bulk_delete_mailboxes(body: MailboxIdsRequest, db: Session = Depends(get_db),
                          current_user: CurrentUser = Depends(get_current_user)):
    deleted = MailboxService(db).bulk_delete(current_user["id"], body.mailboxIds)
    db.commit()
    return {"message": "Mailboxes scheduled for deletion", "mailboxes": [m.email for m in deleted]}


@router.put("/{mailbox_id}")
def edit_mailbox(mailbox_id: str, body: EditRequest, db: Session = Depends(get_db),
                 current_user: CurrentUser = Depends(get_current_user)):
    mailbox = MailboxService(db).edit(
        current_user["id"],
        mailbox_id,
        first_name=body.firstName,
        last_name=body.lastName,
        username=body.username,
        recovery_email=body.recoveryEmail,
    )
    db.commit()
    return {"message": "Mailbox updated", "email": mailbox.email}


@router.post("/bulkSetRecoveryEmail")
def bulk_set_recovery_email(body: RecoveryEmailRequest, db: Session = Depends(get_db),
                            current_user: CurrentUser = Depends(get_current_user)):
    result = MailboxService(db).bulk_set_recovery_email(current_user["id"], body.mailboxIds, body.recoveryEmail)
    db.commit()
    return {"message": "Recovery email updated", **result}


@router.post("/export/other-platform")
def export_mailboxes(body: ExportRequest, db: Session = Depends(get_db),
                     current_user: CurrentUser = Depends(get_current_user)):
    export = MailboxService(db).export(
        current_user["id"],
        body.mailboxIds,
        platform=body.platform,
        platform_url=body.platformUrl,
        email=body.email,
        password=body.password,
        workspace=body.workspace,
        notes=body.notes,
    )
    db.commit()
    return {"message": "Export requested", "exportId": export.id, "count": export.mailbox_count}


@router.post("/purchase")
def purchase_mailboxes(body: PurchaseRequest, db: Session = Depends(get_db),
                       gateway: StripeGateway = Depends(get_gateway),
                       current_user: CurrentUser = Depends(get_current_user)):
    result = PurchaseService(db, gateway).purchase(
        current_user["id"], current_user.get("email"), body.numberOfMailboxes, body.paymentMethod, body.amount
    )
    db.commit()
    return result


@router.post("/getMailboxsByWallet")
def purchase_mailboxes_by_wallet(body: PurchaseRequest, db: Session = Depends(get_db),
                                 current_user: CurrentUser = Depends(get_current_user)):
    sub = PurchaseService(db).purchase_mailboxes_with_wallet(
        current_user["id"], current_user.get("email"), body.numberOfMailboxes, body.amount
    )
    db.commit()
    return {
        "message": "Mailbox add-on successful",
        "subscription_id": sub.id,
        "mailboxCount": sub.number_of_mailboxes,
        "renewsOn": sub.renews_on,
    }
