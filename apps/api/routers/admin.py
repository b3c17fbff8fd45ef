"""Admin router: token grants, pricing, vouchers, module grants and sweeps."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, require_admin
from services.amounts import as_float
from services.module_activation import grant_module, revoke_module, sweep_expired_activations
from services.module_registry import serialize_module, set_module_enabled
from services.purchases import set_token_price
from services.sweep_queue import enqueue_expiration_sweep
from services.token_ledger import grant_tokens, reconcile_token_account, set_token_balance
from services.users import ensure_user
from services.vouchers import (
    create_voucher,
    deactivate_voucher,
    get_voucher_usage_stats,
    list_vouchers,
    serialize_voucher,
    update_voucher,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class TokenGrantRequest(BaseModel):
    user_id: int
    amount: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    reason: Optional[str] = Field(default=None, max_length=500)


class TokenBalanceRequest(BaseModel):
    user_id: int
    balance: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    reason: Optional[str] = Field(default=None, max_length=500)


class TokenPriceRequest(BaseModel):
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)


class VoucherCreateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=255)
    discount_percentage: int = Field(default=0, ge=0, le=100)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    minimum_purchase: Optional[Decimal] = Field(default=None, ge=0)
    max_uses: Optional[int] = Field(default=None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None


class VoucherUpdateRequest(BaseModel):
    description: Optional[str] = Field(default=None, max_length=255)
    discount_percentage: Optional[int] = Field(default=None, ge=0, le=100)
    discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    minimum_purchase: Optional[Decimal] = Field(default=None, ge=0)
    max_uses: Optional[int] = Field(default=None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None


class ModuleGrantRequest(BaseModel):
    user_id: int
    module_key: str = Field(min_length=1, max_length=50)


class ModuleToggleRequest(BaseModel):
    enabled: bool


@router.post("/tokens/grant")
async def admin_grant_tokens(
    request: TokenGrantRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, request.user_id)
    return await grant_tokens(
        db,
        user_id=request.user_id,
        amount=request.amount,
        processed_by=admin.user_id,
        reason=request.reason,
    )


@router.put("/tokens/balance")
async def admin_set_balance(
    request: TokenBalanceRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, request.user_id)
    return await set_token_balance(
        db,
        user_id=request.user_id,
        balance=request.balance,
        processed_by=admin.user_id,
        reason=request.reason,
    )


@router.put("/tokens/price")
async def admin_set_token_price(
    request: TokenPriceRequest,
    admin: AuthContext = Depends(require_admin),
):
    price = set_token_price(request.price)
    logger.info("admin_token_price admin=%s price=%s", admin.user_id, price)
    return {"price": as_float(price)}


@router.get("/tokens/{user_id}/reconcile")
async def admin_reconcile_account(
    user_id: int,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await reconcile_token_account(db, user_id)


@router.get("/vouchers")
async def admin_list_vouchers(
    is_active: Optional[bool] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=50),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    vouchers = await list_vouchers(db, is_active=is_active, search=search)
    return {"count": len(vouchers), "items": [serialize_voucher(voucher) for voucher in vouchers]}


@router.post("/vouchers")
async def admin_create_voucher(
    request: VoucherCreateRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, admin.user_id, admin.email)
    voucher = await create_voucher(db, created_by=admin.user_id, **request.model_dump())
    return serialize_voucher(voucher)


@router.patch("/vouchers/{voucher_id}")
async def admin_update_voucher(
    voucher_id: int,
    request: VoucherUpdateRequest,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    voucher = await update_voucher(db, voucher_id, request.model_dump(exclude_unset=True))
    return serialize_voucher(voucher)


@router.delete("/vouchers/{voucher_id}")
async def admin_deactivate_voucher(
    voucher_id: int,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    voucher = await deactivate_voucher(db, voucher_id)
    return serialize_voucher(voucher)


@router.get("/vouchers/{voucher_id}/stats")
async def admin_voucher_stats(
    voucher_id: int,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await get_voucher_usage_stats(db, voucher_id)


@router.post("/modules/grant")
async def admin_grant_module(
    request: ModuleGrantRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, request.user_id)
    return await grant_module(
        db,
        user_id=request.user_id,
        module_key=request.module_key,
        granted_by=admin.user_id,
    )


@router.post("/modules/revoke")
async def admin_revoke_module(
    request: ModuleGrantRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await revoke_module(
        db,
        user_id=request.user_id,
        module_key=request.module_key,
        revoked_by=admin.user_id,
    )


@router.patch("/modules/{module_key}")
async def admin_toggle_module(
    module_key: str,
    request: ModuleToggleRequest,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    module = await set_module_enabled(db, module_key, request.enabled)
    return serialize_module(module)


@router.post("/modules/sweep")
async def admin_sweep_expirations(
    background: bool = Query(default=False),
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if background:
        try:
            job = enqueue_expiration_sweep()
        except Exception as exc:
            logger.warning("Expiration sweep enqueue failed: %s", exc)
            raise HTTPException(status_code=503, detail="Sweep queue is unavailable.") from exc
        return {"queued": True, "job_id": job.id}

    expired = await sweep_expired_activations(db)
    logger.info("admin_sweep admin=%s expired=%s", admin.user_id, expired)
    return {"queued": False, "expired_count": expired}
