"""Token account, ledger history and purchase router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.amounts import as_float
from services.purchases import get_token_price, purchase_tokens
from services.token_ledger import get_token_account_summary, list_token_transactions
from services.users import ensure_user

router = APIRouter()
logger = logging.getLogger(__name__)


class PurchaseRequest(BaseModel):
    user_id: Optional[int] = None
    token_qty: int = Field(ge=1, le=10000)
    voucher_code: Optional[str] = Field(default=None, max_length=50)


@router.get("/account")
async def token_account(
    user_id: Optional[int] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    summary = await get_token_account_summary(db, scoped_user_id)
    summary["token_price"] = as_float(get_token_price())
    return summary


@router.get("/price")
async def token_price(auth: AuthContext = Depends(get_auth_context)):
    return {"price": as_float(get_token_price())}


@router.get("/transactions")
async def token_transactions(
    user_id: Optional[int] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    return await list_token_transactions(db, scoped_user_id, page=page, limit=limit)


@router.post("/purchase")
async def purchase(
    request: PurchaseRequest,
    _rate_limit: None = Depends(rate_limit("token_purchase", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_user(db, scoped_user_id, auth.email)
    return await purchase_tokens(
        db,
        user_id=scoped_user_id,
        token_qty=request.token_qty,
        voucher_code=request.voucher_code or None,
    )
