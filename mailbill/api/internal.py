import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from mailbill.api.deps import get_db
from mailbill.core.config import settings
from mailbill.services.lifecycle import LifecycleManager

router = APIRouter(prefix="/api/internal", tags=["internal"])


def require_internal_token(x_internal_token: Optional[str] = Header(default=None)) -> None:
    if not settings.internal_api_token:
        raise HTTPException(status_code=404, detail="Not found")
    if not x_internal_token or not hmac.compare_digest(x_internal_token, settings.internal_api_token):
        raise HTTPException(status_code=401, detail="Invalid internal token")


@router.post("/subscriptions/renew-due", dependencies=[Depends(require_internal_token)])
def renew_due_subscriptions(db: Session = Depends(get_db)):
    """Scheduler hook for wallet-paid renewals; commits per subscription."""
    return LifecycleManager(db).renew_due_wallet_subscriptions()
