"""Voucher validation router."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.errors import VoucherError
from services.purchases import get_token_price
from services.vouchers import serialize_quote, validate_voucher

router = APIRouter()


class VoucherValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    purchase_amount: Optional[Decimal] = Field(default=None, gt=0)
    token_qty: Optional[int] = Field(default=None, ge=1, le=10000)


@router.post("/validate")
async def validate_voucher_code(
    request: VoucherValidateRequest,
    _rate_limit: None = Depends(rate_limit("voucher_validate", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    purchase_amount = request.purchase_amount
    if purchase_amount is None and request.token_qty is not None:
        purchase_amount = get_token_price() * request.token_qty
    if purchase_amount is None:
        return JSONResponse(
            status_code=422,
            content={"valid": False, "error": "purchase_amount_required", "detail": "Provide purchase_amount or token_qty."},
        )

    try:
        quote = await validate_voucher(db, request.code, purchase_amount, user_id=auth.user_id)
    except VoucherError as exc:
        return JSONResponse(
            status_code=400,
            content={"valid": False, "error": exc.code, "detail": exc.to_dict()},
        )
    return serialize_quote(quote)
