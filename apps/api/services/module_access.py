"""Read-only projections of module entitlements for a user."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.module import MODULE_CATEGORY_FREE, Module
from models.module_activation import ModuleActivation
from services.clock import ensure_utc, utc_now
from services.module_activation import serialize_activation
from services.module_registry import list_registry_modules


async def active_activations_for(
    db: AsyncSession,
    user_id: int,
    *,
    now: Optional[datetime] = None,
) -> List[ModuleActivation]:
    """Live activations of enabled modules, oldest activation first."""
    timestamp = ensure_utc(now) or utc_now()
    result = await db.execute(
        select(ModuleActivation)
        .join(Module, Module.module_key == ModuleActivation.module_key)
        .where(
            ModuleActivation.user_id == user_id,
            ModuleActivation.is_active.is_(True),
            ModuleActivation.expires_at > timestamp,
            Module.is_active.is_(True),
        )
        .order_by(ModuleActivation.activation_order.asc(), ModuleActivation.expires_at.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def active_modules_for(
    db: AsyncSession,
    user_id: int,
    *,
    now: Optional[datetime] = None,
) -> List[str]:
    """Enabled free modules plus premium modules with a live activation."""
    free = await db.execute(
        select(Module.module_key)
        .where(Module.category == MODULE_CATEGORY_FREE, Module.is_active.is_(True))
        .order_by(Module.display_order.asc(), Module.name.asc())
    )
    module_keys = list(free.scalars().all())
    for activation in await active_activations_for(db, user_id, now=now):
        if activation.module_key not in module_keys:
            module_keys.append(activation.module_key)
    return module_keys


async def has_module_access(
    db: AsyncSession,
    user_id: int,
    module_key: str,
    *,
    now: Optional[datetime] = None,
) -> bool:
    return module_key in await active_modules_for(db, user_id, now=now)


async def available_modules_for(
    db: AsyncSession,
    user_id: int,
    *,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Every enabled registry module with this user's activation status."""
    timestamp = ensure_utc(now) or utc_now()
    modules = await list_registry_modules(db)
    live = {activation.module_key: activation for activation in await active_activations_for(db, user_id, now=timestamp)}
    refund_window = timedelta(days=int(settings.REFUND_WINDOW_DAYS))

    statuses: List[Dict[str, Any]] = []
    for module in modules:
        activation = live.get(module.module_key)
        entry: Dict[str, Any] = {
            "module_key": module.module_key,
            "name": module.name,
            "description": module.description,
            "category": module.category,
            "display_order": module.display_order,
            "is_active": module.is_free or activation is not None,
            "activated_at": None,
            "expires_at": None,
            "activation_order": None,
            "refund_eligible_until": None,
            "can_activate": not module.is_free and activation is None,
            "can_deactivate": not module.is_free and activation is not None,
        }
        if activation is not None:
            serialized = serialize_activation(activation)
            entry["activated_at"] = serialized["activated_at"]
            entry["expires_at"] = serialized["expires_at"]
            entry["activation_order"] = serialized["activation_order"]
            if serialized["token_used"] and serialized["token_used"] > 0:
                refund_until = ensure_utc(activation.activated_at) + refund_window
                entry["refund_eligible_until"] = refund_until.isoformat()
        statuses.append(entry)
    return statuses
