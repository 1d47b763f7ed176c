from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from mailbill.api.auth import CurrentUser, get_current_user
from mailbill.api.deps_async import get_db_async
from mailbill.services.accounts import AccountService

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


@router.get("/getWallet")
async def get_wallet(db: AsyncSession = Depends(get_db_async), current_user: CurrentUser = Depends(get_current_user)):
    dto = await AccountService(db).get_wallet(current_user["id"])
    return asdict(dto)
