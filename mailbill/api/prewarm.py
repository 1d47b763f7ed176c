from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from mailbill.api.auth import CurrentUser, get_current_user
from mailbill.api.deps import get_db
from mailbill.services.gateway import StripeGateway, get_gateway
from mailbill.services.prewarm import PrewarmService
from mailbill.services.purchases import PurchaseService

router = APIRouter(prefix="/api/prewarm-mailboxes", tags=["prewarm"])


class PrewarmPurchaseRequest(BaseModel):
    selectedMailboxes: List[str] = Field(default_factory=list)
    promoCode: Optional[str] = None


class PrewarmExportRequest(BaseModel):
    mailboxIds: List[str] = Field(default_factory=list)
    platform: str
    platformUrl: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    workspace: Optional[str] = None
    notes: Optional[str] = None


@router.get("")
def list_pool(db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    return {"mailboxes": PrewarmService(db).list_pool(current_user.get("email"))}


@router.get("/user")
def list_user_prewarm(db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    return PrewarmService(db).list_for_user(current_user["id"])


@router.post("/purchase/domain-based")
def purchase_prewarm(body: PrewarmPurchaseRequest, db: Session = Depends(get_db),
                     gateway: StripeGateway = Depends(get_gateway),
                     current_user: CurrentUser = Depends(get_current_user)):
    result = PurchaseService(db, gateway).prewarm_checkout(
        current_user["id"], current_user.get("email"), body.selectedMailboxes, body.promoCode
    )
    db.commit()
    return result


@router.post("/export/other-platform")
def export_prewarm(body: PrewarmExportRequest, db: Session = Depends(get_db),
                   current_user: CurrentUser = Depends(get_current_user)):
    export = PrewarmService(db).export(
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
