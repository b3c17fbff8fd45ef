"""Static catalog of purchasable feature modules."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.module import MODULE_CATEGORY_FREE, MODULE_CATEGORY_PREMIUM, Module
from services.errors import ModuleNotFound


logger = logging.getLogger(__name__)

DEFAULT_MODULES: List[Dict[str, Any]] = [
    {
        "module_key": "dashboard",
        "name": "Dashboard",
        "description": "Household overview and key figures",
        "category": MODULE_CATEGORY_FREE,
        "display_order": 0,
    },
    {
        "module_key": "settings",
        "name": "Settings",
        "description": "Account, security and preference settings",
        "category": MODULE_CATEGORY_FREE,
        "display_order": 0,
    },
    {
        "module_key": "family_members",
        "name": "Family Members",
        "description": "Manage household members and invitations",
        "category": MODULE_CATEGORY_FREE,
        "display_order": 0,
    },
    {
        "module_key": "income",
        "name": "Income Management",
        "description": "Track and manage income sources, transactions, and financial records",
        "category": MODULE_CATEGORY_PREMIUM,
        "display_order": 1,
    },
    {
        "module_key": "assets",
        "name": "Assets Management",
        "description": "Manage and track your assets, valuations, and ownership",
        "category": MODULE_CATEGORY_PREMIUM,
        "display_order": 2,
    },
    {
        "module_key": "expenses",
        "name": "Expenses Management",
        "description": "Track and manage household expenses",
        "category": MODULE_CATEGORY_PREMIUM,
        "display_order": 3,
    },
]


def serialize_module(module: Module) -> Dict[str, Any]:
    return {
        "module_key": module.module_key,
        "name": module.name,
        "description": module.description,
        "category": module.category,
        "display_order": module.display_order,
        "enabled": bool(module.is_active),
    }


async def list_registry_modules(db: AsyncSession, *, include_disabled: bool = False) -> List[Module]:
    query = select(Module)
    if not include_disabled:
        query = query.where(Module.is_active.is_(True))
    result = await db.execute(query.order_by(Module.display_order.asc(), Module.name.asc()))
    return list(result.scalars().all())


async def get_registry_module(
    db: AsyncSession,
    module_key: str,
    *,
    require_enabled: bool = True,
) -> Module:
    """Return a registry entry or raise ModuleNotFound."""
    result = await db.execute(select(Module).where(Module.module_key == module_key))
    module: Optional[Module] = result.scalar_one_or_none()
    if module is None or (require_enabled and not module.is_active):
        raise ModuleNotFound(module_key)
    return module


async def seed_module_registry(db: AsyncSession) -> int:
    """Insert missing default modules; existing rows are left untouched."""
    result = await db.execute(select(Module.module_key))
    existing = set(result.scalars().all())
    created = 0
    for entry in DEFAULT_MODULES:
        if entry["module_key"] in existing:
            continue
        db.add(Module(is_active=True, **entry))
        created += 1
    if created:
        await db.commit()
        logger.info("module_registry_seed created=%s", created)
    return created


async def set_module_enabled(db: AsyncSession, module_key: str, enabled: bool) -> Module:
    """Registry-level kill switch. Modules are never deleted."""
    module = await get_registry_module(db, module_key, require_enabled=False)
    module.is_active = bool(enabled)
    await db.commit()
    logger.info("module_registry_toggle module=%s enabled=%s", module_key, enabled)
    return module
