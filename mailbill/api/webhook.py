import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from mailbill.api.deps import get_db
from mailbill.services.gateway import StripeGateway, get_gateway
from mailbill.services.registrar import NamecheapRegistrar, get_registrar
from mailbill.services.webhooks import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhook"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    registrar: NamecheapRegistrar = Depends(get_registrar),
):
    """Verify the signature, then always acknowledge; handler failures are logged and alerted."""
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        event = gateway.construct_event(payload, signature)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning("Rejected webhook: %s", e)
        raise HTTPException(status_code=400, detail=f"Invalid webhook: {e}")

    reconciler = WebhookReconciler(db, gateway, registrar)
    await run_in_threadpool(reconciler.handle, event)
    return {"received": True}
