"""Module activation engine.

Per (user, module) a module is Inactive -> Active -> Expired/Deactivated.
Re-activation inserts a new row; ended rows are kept as history.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.attributes import set_committed_value

from config import settings
from database import async_session_maker
from models.module_activation import ModuleActivation
from models.token_transaction import (
    REFERENCE_MODULE_ACTIVATION,
    REFERENCE_MODULE_DEACTIVATION,
    TRANSACTION_DEDUCTION,
    TRANSACTION_REFUND,
)
from services.amounts import ZERO, as_float, to_amount
from services.clock import add_calendar_month, elapsed_whole_days, ensure_utc, utc_now
from services.errors import (
    AlreadyActive,
    FreeModuleNotToggleable,
    InsufficientTokens,
    NotActive,
)
from services.module_registry import get_registry_module
from services.token_ledger import (
    apply_balance_change,
    lock_token_account,
    run_ledger_write,
    serialize_account,
    serialize_transaction,
)


logger = logging.getLogger(__name__)


def serialize_activation(activation: ModuleActivation) -> Dict[str, Any]:
    activated_at = ensure_utc(activation.activated_at)
    expires_at = ensure_utc(activation.expires_at)
    return {
        "id": activation.id,
        "module_key": activation.module_key,
        "activated_at": activated_at.isoformat() if activated_at else None,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "activation_order": activation.activation_order,
        "is_active": bool(activation.is_active),
        "token_used": as_float(to_amount(activation.token_used)),
    }


def refund_for_deactivation(activation: ModuleActivation, now: datetime) -> Decimal:
    """Full token_used back before the refund window closes, nothing after."""
    token_used = to_amount(activation.token_used)
    if token_used <= 0:
        return ZERO
    if elapsed_whole_days(activation.activated_at, now) < int(settings.REFUND_WINDOW_DAYS):
        return token_used
    return ZERO


async def _flagged_activations(
    db: AsyncSession,
    user_id: int,
    module_key: str,
) -> List[ModuleActivation]:
    result = await db.execute(
        select(ModuleActivation)
        .where(
            ModuleActivation.user_id == user_id,
            ModuleActivation.module_key == module_key,
            ModuleActivation.is_active.is_(True),
        )
        .order_by(ModuleActivation.activated_at.desc(), ModuleActivation.id.desc())
        .with_for_update()
    )
    return list(result.scalars().all())


async def _close_activation(db: AsyncSession, activation: ModuleActivation, now: datetime) -> bool:
    """Compare-and-set is_active true -> false; False when another writer got there first."""
    result = await db.execute(
        update(ModuleActivation)
        .where(ModuleActivation.id == activation.id, ModuleActivation.is_active.is_(True))
        .values(is_active=False, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    set_committed_value(activation, "is_active", False)
    set_committed_value(activation, "updated_at", now)
    return True


async def _ensure_not_active(
    db: AsyncSession,
    user_id: int,
    module_key: str,
    now: datetime,
) -> None:
    """Raise AlreadyActive for a live row; expire rows whose period already ended."""
    for activation in await _flagged_activations(db, user_id, module_key):
        expires_at = ensure_utc(activation.expires_at)
        if expires_at > now:
            raise AlreadyActive(
                f"Module {module_key} is already active.",
                module_key=module_key,
                expires_at=expires_at,
            )
        await _close_activation(db, activation, now)


async def _next_activation_order(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        select(func.coalesce(func.max(ModuleActivation.activation_order), 0)).where(
            ModuleActivation.user_id == user_id
        )
    )
    return int(result.scalar() or 0) + 1


def _new_activation(
    user_id: int,
    module_key: str,
    order: int,
    token_used: Decimal,
    now: datetime,
) -> ModuleActivation:
    return ModuleActivation(
        user_id=user_id,
        module_key=module_key,
        activated_at=now,
        expires_at=add_calendar_month(now),
        activation_order=order,
        is_active=True,
        token_used=token_used,
        updated_at=now,
    )


async def activate_module(
    db: AsyncSession,
    *,
    user_id: int,
    module_key: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Debit the activation cost and open a one-month activation."""
    cost = to_amount(settings.MODULE_ACTIVATION_TOKEN_COST)

    async def _activate():
        module = await get_registry_module(db, module_key)
        if module.is_free:
            raise AlreadyActive(f"Module {module_key} is free and always active.", module_key=module_key)

        account = await lock_token_account(db, user_id, now=now)
        # Taken after the lock; ledger rows order by created_at.
        timestamp = ensure_utc(now) or utc_now()
        await _ensure_not_active(db, user_id, module_key, timestamp)

        available = to_amount(account.balance) if account is not None else ZERO
        if account is None or available < cost:
            raise InsufficientTokens(required=cost, available=available)

        activation = _new_activation(
            user_id,
            module_key,
            await _next_activation_order(db, user_id),
            cost,
            timestamp,
        )
        db.add(activation)
        await db.flush()

        entry = await apply_balance_change(
            db,
            account,
            amount=-cost,
            transaction_type=TRANSACTION_DEDUCTION,
            description=f"Module {module.name} activation",
            reference_type=REFERENCE_MODULE_ACTIVATION,
            reference_id=activation.id,
            now=timestamp,
        )
        return activation, account, entry

    activation, account, entry = await run_ledger_write(db, user_id, _activate, label="module_activate")
    logger.info(
        "module_activate user=%s module=%s activation=%s order=%s expires=%s",
        user_id, module_key, activation.id, activation.activation_order, activation.expires_at,
    )
    return {
        "activation": serialize_activation(activation),
        "transaction": serialize_transaction(entry),
        "token_account": serialize_account(account),
    }


async def deactivate_module(
    db: AsyncSession,
    *,
    user_id: int,
    module_key: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """End the live activation early, refunding it inside the refund window."""

    async def _deactivate():
        module = await get_registry_module(db, module_key, require_enabled=False)
        if module.is_free:
            raise FreeModuleNotToggleable(module_key)

        account = await lock_token_account(db, user_id, now=now)
        timestamp = ensure_utc(now) or utc_now()
        live = [
            activation
            for activation in await _flagged_activations(db, user_id, module_key)
            if ensure_utc(activation.expires_at) > timestamp
        ]
        if not live:
            raise NotActive(module_key)
        activation = live[0]
        if not await _close_activation(db, activation, timestamp):
            raise NotActive(module_key)

        refund = refund_for_deactivation(activation, timestamp)
        entry = None
        if refund > 0:
            if account is None:
                account = await lock_token_account(db, user_id, create=True, now=timestamp)
            entry = await apply_balance_change(
                db,
                account,
                amount=refund,
                transaction_type=TRANSACTION_REFUND,
                description=f"Early deactivation refund for {module.name}",
                reference_type=REFERENCE_MODULE_DEACTIVATION,
                reference_id=activation.id,
                now=timestamp,
            )
        return activation, account, entry, refund

    activation, account, entry, refund = await run_ledger_write(
        db, user_id, _deactivate, label="module_deactivate"
    )
    logger.info(
        "module_deactivate user=%s module=%s activation=%s refund=%s",
        user_id, module_key, activation.id, refund,
    )
    return {
        "refunded": refund > 0,
        "refund_amount": as_float(refund),
        "activation": serialize_activation(activation),
        "transaction": serialize_transaction(entry) if entry is not None else None,
        "token_account": serialize_account(account),
    }


async def grant_module(
    db: AsyncSession,
    *,
    user_id: int,
    module_key: str,
    granted_by: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Admin bypass: open an activation without debiting tokens (token_used = 0)."""

    async def _grant():
        module = await get_registry_module(db, module_key)
        if module.is_free:
            raise AlreadyActive(f"Module {module_key} is free and always active.", module_key=module_key)
        timestamp = ensure_utc(now) or utc_now()
        await _ensure_not_active(db, user_id, module_key, timestamp)
        activation = _new_activation(
            user_id,
            module_key,
            await _next_activation_order(db, user_id),
            ZERO,
            timestamp,
        )
        db.add(activation)
        await db.flush()
        return activation

    activation = await run_ledger_write(db, user_id, _grant, label="module_grant")
    logger.info("module_grant user=%s module=%s by=%s activation=%s", user_id, module_key, granted_by, activation.id)
    return {"activation": serialize_activation(activation)}


async def revoke_module(
    db: AsyncSession,
    *,
    user_id: int,
    module_key: str,
    revoked_by: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Admin revoke: close every flagged activation for the pair without refund."""

    async def _revoke():
        await get_registry_module(db, module_key, require_enabled=False)
        timestamp = ensure_utc(now) or utc_now()
        revoked = 0
        for activation in await _flagged_activations(db, user_id, module_key):
            if await _close_activation(db, activation, timestamp):
                revoked += 1
        return revoked

    revoked = await run_ledger_write(db, user_id, _revoke, label="module_revoke")
    logger.info("module_revoke user=%s module=%s by=%s revoked=%s", user_id, module_key, revoked_by, revoked)
    return {"revoked": revoked}


async def sweep_expired_activations(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> int:
    """Flip every still-flagged activation whose period has ended. Never refunds.

    Safe to re-run and to run next to user deactivations: each flip is a
    compare-and-set on is_active.
    """
    timestamp = ensure_utc(now) or utc_now()
    limit = max(int(batch_size or settings.EXPIRATION_SWEEP_BATCH_SIZE), 1)
    expired = 0
    while True:
        result = await db.execute(
            select(ModuleActivation.id)
            .where(
                ModuleActivation.is_active.is_(True),
                ModuleActivation.expires_at <= timestamp,
            )
            .order_by(
                ModuleActivation.expires_at.asc(),
                ModuleActivation.activation_order.asc(),
                ModuleActivation.id.asc(),
            )
            .limit(limit)
        )
        ids = list(result.scalars().all())
        if not ids:
            break
        flipped = await db.execute(
            update(ModuleActivation)
            .where(ModuleActivation.id.in_(ids), ModuleActivation.is_active.is_(True))
            .values(is_active=False, updated_at=timestamp)
            .execution_options(synchronize_session="fetch")
        )
        await db.commit()
        expired += int(flipped.rowcount or 0)
        if len(ids) < limit:
            break
    if expired:
        logger.info("module_expiration_sweep expired=%s now=%s", expired, timestamp.isoformat())
    return expired


async def run_expiration_sweep(now: Optional[datetime] = None) -> int:
    """Sweep with a dedicated session (periodic task / worker entrypoint)."""
    async with async_session_maker() as db:
        return await sweep_expired_activations(db, now=now)


def run_expiration_sweep_job(now_iso: Optional[str] = None) -> int:
    """RQ worker entrypoint for expiration sweeps."""
    now = datetime.fromisoformat(now_iso) if now_iso else None
    return asyncio.run(run_expiration_sweep(now=now))
