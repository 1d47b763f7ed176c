from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from mailbill.api.auth import CurrentUser, get_current_user
from mailbill.api.deps import get_db
from mailbill.services.dns import ZoneManager, get_zone_manager
from mailbill.services.domains import DomainService, domain_to_dict
from mailbill.services.purchases import PurchaseService
from mailbill.services.registrar import NamecheapRegistrar, get_registrar

router = APIRouter(prefix="/api/domains", tags=["domains"])


class DomainItem(BaseModel):
    domain: str
    year: int = 1
    price: int  # USD cents


class WalletPurchaseRequest(BaseModel):
    domains: List[DomainItem] = Field(default_factory=list)


class DomainNamesRequest(BaseModel):
    domainName: List[str] = Field(default_factory=list)


class RedirectRequest(BaseModel):
    domainIds: List[str] = Field(default_factory=list)
    redirectUrl: Optional[str] = None


@router.get("")
def list_domains(db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    return {"domains": [domain_to_dict(d) for d in DomainService(db).list_domains(current_user["id"])]}


@router.get("/check")
def check_domain(domain: str = "", registrar: NamecheapRegistrar = Depends(get_registrar),
                 db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    return DomainService(db, registrar=registrar).check_availability(domain)


@router.post("/wallet-purchase")
def wallet_purchase(body: WalletPurchaseRequest, db: Session = Depends(get_db),
                    registrar: NamecheapRegistrar = Depends(get_registrar),
                    current_user: CurrentUser = Depends(get_current_user)):
    # Commits itself: the debit is committed before any registrar call
    return PurchaseService(db).purchase_domains_with_wallet(
        current_user["id"], [d.model_dump() for d in body.domains], registrar
    )


@router.post("/connect-domain")
def connect_domain(body: DomainNamesRequest, db: Session = Depends(get_db),
                   current_user: CurrentUser = Depends(get_current_user)):
    result = DomainService(db).connect(current_user["id"], body.domainName)
    db.commit()
    return result


@router.post("/clear-connect-domain")
def clear_connect_domain(body: DomainNamesRequest, db: Session = Depends(get_db),
                         zones: ZoneManager = Depends(get_zone_manager),
                         current_user: CurrentUser = Depends(get_current_user)):
    result = DomainService(db, zones=zones).clear(current_user["id"], body.domainName)
    db.commit()
    return result


@router.get("/check-connect-domain")
def check_connect_domain(db: Session = Depends(get_db), zones: ZoneManager = Depends(get_zone_manager),
                         current_user: CurrentUser = Depends(get_current_user)):
    results = DomainService(db, zones=zones).check_connected(current_user["id"])
    db.commit()
    return {"domains": results}


@router.post("/recheck-connect-domain")
def recheck_connect_domain(body: DomainNamesRequest, db: Session = Depends(get_db),
                           zones: ZoneManager = Depends(get_zone_manager),
                           current_user: CurrentUser = Depends(get_current_user)):
    results = DomainService(db, zones=zones).recheck(current_user["id"], body.domainName)
    db.commit()
    return {"domains": results}


@router.post("/add-redirect")
def add_redirect(body: RedirectRequest, db: Session = Depends(get_db),
                 current_user: CurrentUser = Depends(get_current_user)):
    result = DomainService(db).set_redirect(current_user["id"], body.domainIds, body.redirectUrl)
    db.commit()
    return result
