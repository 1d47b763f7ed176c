from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from mailbill.api.auth import CurrentUser, get_current_user
from mailbill.api.deps import get_db
from mailbill.api.deps_async import get_db_async
from mailbill.api.domains import DomainItem
from mailbill.services.accounts import AccountService
from mailbill.services.gateway import StripeGateway, get_gateway
from mailbill.services.purchases import PurchaseService

router = APIRouter(prefix="/api/payments", tags=["payments"])


class DomainCheckoutRequest(BaseModel):
    domains: List[DomainItem] = Field(default_factory=list)


class TopUpRequest(BaseModel):
    amount: float


@router.post("/createPaymentIntent")
def create_domain_checkout(body: DomainCheckoutRequest, db: Session = Depends(get_db),
                           gateway: StripeGateway = Depends(get_gateway),
                           current_user: CurrentUser = Depends(get_current_user)):
    result = PurchaseService(db, gateway).domain_checkout(
        current_user["id"], current_user.get("email"), [d.model_dump() for d in body.domains]
    )
    db.commit()
    return result


@router.post("/createtopUpWalletPaymentIntent")
def create_topup_checkout(body: TopUpRequest, db: Session = Depends(get_db),
                          gateway: StripeGateway = Depends(get_gateway),
                          current_user: CurrentUser = Depends(get_current_user)):
    result = PurchaseService(db, gateway).wallet_topup_checkout(current_user["id"], current_user.get("email"), body.amount)
    db.commit()
    return result


@router.get("/success")
async def payment_success(session_id: Optional[str] = None, db: AsyncSession = Depends(get_db_async),
                          current_user: CurrentUser = Depends(get_current_user)):
    return await AccountService(db).payment_result(current_user["id"], session_id)
