"""Module entitlement router: status, activation and deactivation."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.module_access import (
    active_activations_for,
    active_modules_for,
    available_modules_for,
    has_module_access,
)
from services.module_activation import activate_module, deactivate_module, serialize_activation
from services.token_ledger import get_token_account_summary
from services.users import ensure_user

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("")
async def my_modules_overview(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    activations = await active_activations_for(db, auth.user_id)
    return {
        "modules": await active_modules_for(db, auth.user_id),
        "active_modules": [serialize_activation(activation) for activation in activations],
        "token_account": await get_token_account_summary(db, auth.user_id),
    }


@router.get("/available")
async def available_modules(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await available_modules_for(db, auth.user_id)


@router.get("/my-modules")
async def my_active_modules(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    activations = await active_activations_for(db, auth.user_id)
    return [serialize_activation(activation) for activation in activations]


@router.get("/{module_key}/access")
async def module_access(
    module_key: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"module_key": module_key, "has_access": await has_module_access(db, auth.user_id, module_key)}


@router.post("/{module_key}/activate")
async def activate(
    module_key: str,
    _rate_limit: None = Depends(rate_limit("module_activate", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, auth.user_id, auth.email)
    result = await activate_module(db, user_id=auth.user_id, module_key=module_key)
    result["message"] = f"Module {module_key} activated successfully"
    return result


@router.post("/{module_key}/deactivate")
async def deactivate(
    module_key: str,
    _rate_limit: None = Depends(rate_limit("module_deactivate", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await deactivate_module(db, user_id=auth.user_id, module_key=module_key)
    if result["refunded"]:
        result["message"] = f"Module {module_key} deactivated. {result['refund_amount']} tokens refunded."
    else:
        result["message"] = f"Module {module_key} deactivated. No refund (used for {settings.REFUND_WINDOW_DAYS}+ days)."
    return result
