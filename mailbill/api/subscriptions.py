from dataclasses import asdict

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from mailbill.api.auth import CurrentUser, get_current_user
from mailbill.api.deps import get_db
from mailbill.api.deps_async import get_db_async
from mailbill.services.accounts import AccountService
from mailbill.services.gateway import StripeGateway, get_gateway
from mailbill.services.lifecycle import LifecycleManager
from mailbill.services.purchases import PurchaseService

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])


class PlanRequest(BaseModel):
    planId: str


class ChangePlanRequest(BaseModel):
    newPlanId: str


class CancelRequest(BaseModel):
    subscriptionId: str
    cancelImmediately: bool = False


@router.get("/plans")
async def list_plans(db: AsyncSession = Depends(get_db_async)):
    return {"plans": await AccountService(db).list_plans()}


@router.get("/getAddon")
async def get_addons(db: AsyncSession = Depends(get_db_async), current_user: CurrentUser = Depends(get_current_user)):
    addons = await AccountService(db).list_addons(current_user["id"])
    return {"addons": [asdict(a) for a in addons]}


@router.get("/current")
def current_subscription(db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    return {"subscription": LifecycleManager(db).current_subscription_view(current_user["id"])}


@router.get("/invoice")
def list_invoices(db: Session = Depends(get_db), gateway: StripeGateway = Depends(get_gateway),
                  current_user: CurrentUser = Depends(get_current_user)):
    customer_id = PurchaseService(db).stripe_customer_id(current_user["id"])
    return {"invoices": LifecycleManager(db, gateway).recent_invoices(current_user["id"], customer_id)}


@router.post("/create-subscription")
def create_subscription(body: PlanRequest, db: Session = Depends(get_db),
                        gateway: StripeGateway = Depends(get_gateway),
                        current_user: CurrentUser = Depends(get_current_user)):
    result = PurchaseService(db, gateway).plan_checkout(current_user["id"], current_user.get("email"), body.planId)
    db.commit()
    return result


@router.post("/getSubscriptionByWallet")
def subscribe_with_wallet(body: PlanRequest, db: Session = Depends(get_db),
                          current_user: CurrentUser = Depends(get_current_user)):
    sub = LifecycleManager(db).purchase_plan_with_wallet(current_user["id"], body.planId)
    db.commit()
    return {
        "message": "Subscription successful",
        "subscription_id": sub.id,
        "mailboxCount": sub.number_of_mailboxes,
        "renewsOn": sub.renews_on,
    }


@router.post("/change-plan")
def change_plan(body: ChangePlanRequest, db: Session = Depends(get_db),
                gateway: StripeGateway = Depends(get_gateway),
                current_user: CurrentUser = Depends(get_current_user)):
    result = LifecycleManager(db, gateway).change_plan(current_user["id"], body.newPlanId)
    db.commit()
    return result


@router.post("/customer-portal")
def customer_portal(db: Session = Depends(get_db), gateway: StripeGateway = Depends(get_gateway),
                    current_user: CurrentUser = Depends(get_current_user)):
    customer_id = PurchaseService(db).stripe_customer_id(current_user["id"])
    return {"url": LifecycleManager(db, gateway).portal_url(customer_id)}


@router.post("/cancel")
def cancel_subscription(body: CancelRequest, db: Session = Depends(get_db),
                        gateway: StripeGateway = Depends(get_gateway),
                        current_user: CurrentUser = Depends(get_current_user)):
    result = LifecycleManager(db, gateway).cancel(
        current_user["id"], body.subscriptionId, immediate=body.cancelImmediately
    )
    db.commit()
    return result
