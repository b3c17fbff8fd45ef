"""Voucher validation, discount computation and admin management."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.attributes import set_committed_value

from config import settings
from models.voucher import VoucherCode, VoucherUsage
from services.amounts import ZERO, as_float, to_amount
from services.clock import ensure_utc, utc_now
from services.errors import (
    DuplicateVoucherCode,
    InvalidTokenAmount,
    InvalidVoucherDefinition,
    MinimumPurchaseNotMet,
    VoucherAlreadyRedeemed,
    VoucherExhausted,
    VoucherExpired,
    VoucherNotFound,
)


logger = logging.getLogger(__name__)

VOUCHER_UPDATABLE_FIELDS = (
    "description",
    "discount_percentage",
    "discount_amount",
    "minimum_purchase",
    "max_uses",
    "valid_from",
    "valid_until",
    "is_active",
)

NON_NULL_VOUCHER_FIELDS = ("discount_percentage", "discount_amount", "valid_from", "is_active")


@dataclass
class VoucherQuote:
    voucher: VoucherCode
    original_price: Decimal
    discount: Decimal
    final_price: Decimal


def normalize_voucher_code(code: str) -> str:
    return (code or "").strip().upper()


def compute_voucher_discount(voucher: VoucherCode, purchase_amount: Decimal) -> Decimal:
    """Percentage plus fixed discount, capped at the purchase amount."""
    amount = to_amount(purchase_amount)
    percentage = Decimal(int(voucher.discount_percentage or 0))
    discount = amount * percentage / Decimal(100) + to_amount(voucher.discount_amount)
    return to_amount(min(amount, max(discount, ZERO)))


def evaluate_voucher(
    voucher: Optional[VoucherCode],
    code: str,
    purchase_amount: Decimal,
    *,
    now: Optional[datetime] = None,
) -> VoucherQuote:
    """Check a loaded voucher row in order: existence, window, usage cap, minimum."""
    if voucher is None or not voucher.is_active:
        raise VoucherNotFound(code)

    current = ensure_utc(now) or utc_now()
    valid_from = ensure_utc(voucher.valid_from)
    valid_until = ensure_utc(voucher.valid_until)
    if valid_from is not None and current < valid_from:
        raise VoucherExpired("Voucher code is not yet valid.", voucher_code=voucher.code, valid_from=valid_from)
    if valid_until is not None and current > valid_until:
        raise VoucherExpired("Voucher code has expired.", voucher_code=voucher.code, valid_until=valid_until)

    if voucher.max_uses is not None and int(voucher.used_count or 0) >= int(voucher.max_uses):
        raise VoucherExhausted(voucher.code, int(voucher.max_uses))

    amount = to_amount(purchase_amount)
    if voucher.minimum_purchase is not None and amount < to_amount(voucher.minimum_purchase):
        raise MinimumPurchaseNotMet(voucher.code, to_amount(voucher.minimum_purchase), amount)

    discount = compute_voucher_discount(voucher, amount)
    return VoucherQuote(
        voucher=voucher,
        original_price=amount,
        discount=discount,
        final_price=max(ZERO, amount - discount),
    )


async def find_voucher(db: AsyncSession, code: str, *, for_update: bool = False) -> Optional[VoucherCode]:
    query = select(VoucherCode).where(VoucherCode.code == normalize_voucher_code(code))
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def has_redeemed_voucher(db: AsyncSession, voucher_id: int, user_id: int) -> bool:
    result = await db.execute(
        select(VoucherUsage.id).where(VoucherUsage.voucher_id == voucher_id, VoucherUsage.user_id == user_id).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def check_voucher_redemption(db: AsyncSession, quote: VoucherQuote, user_id: Optional[int]) -> None:
    if user_id is None or not settings.VOUCHER_ONE_REDEMPTION_PER_USER:
        return
    if await has_redeemed_voucher(db, quote.voucher.id, user_id):
        raise VoucherAlreadyRedeemed(quote.voucher.code, user_id)


async def claim_voucher_use(db: AsyncSession, voucher: VoucherCode) -> None:
    """Increment used_count only while the cap still allows it."""
    statement = (
        update(VoucherCode)
        .where(VoucherCode.id == voucher.id)
        .where(
            or_(
                VoucherCode.max_uses.is_(None),
                VoucherCode.used_count < VoucherCode.max_uses,
            )
        )
        .values(used_count=VoucherCode.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(statement)
    if result.rowcount != 1:
        raise VoucherExhausted(voucher.code, int(voucher.max_uses or 0))
    set_committed_value(voucher, "used_count", int(voucher.used_count or 0) + 1)


async def validate_voucher(
    db: AsyncSession,
    code: str,
    purchase_amount: Decimal,
    *,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> VoucherQuote:
    """Read-only validation; never increments used_count."""
    amount = to_amount(purchase_amount)
    if amount <= 0:
        raise InvalidTokenAmount("Purchase amount must be greater than 0.", purchase_amount=amount)
    voucher = await find_voucher(db, code)
    quote = evaluate_voucher(voucher, normalize_voucher_code(code), amount, now=now)
    await check_voucher_redemption(db, quote, user_id)
    return quote


def serialize_voucher(voucher: VoucherCode) -> Dict[str, Any]:
    valid_from = ensure_utc(voucher.valid_from)
    valid_until = ensure_utc(voucher.valid_until)
    return {
        "id": voucher.id,
        "code": voucher.code,
        "description": voucher.description,
        "discount_percentage": int(voucher.discount_percentage or 0),
        "discount_amount": as_float(to_amount(voucher.discount_amount)),
        "minimum_purchase": as_float(voucher.minimum_purchase),
        "max_uses": voucher.max_uses,
        "used_count": int(voucher.used_count or 0),
        "valid_from": valid_from.isoformat() if valid_from else None,
        "valid_until": valid_until.isoformat() if valid_until else None,
        "is_active": bool(voucher.is_active),
        "created_by": voucher.created_by,
    }


def serialize_quote(quote: VoucherQuote) -> Dict[str, Any]:
    return {
        "valid": True,
        "voucher": {
            "code": quote.voucher.code,
            "description": quote.voucher.description,
            "discount_percentage": int(quote.voucher.discount_percentage or 0),
            "discount_amount": as_float(to_amount(quote.voucher.discount_amount)),
        },
        "original_price": as_float(quote.original_price),
        "discount": as_float(quote.discount),
        "final_price": as_float(quote.final_price),
    }


def _check_discount_fields(fields: Dict[str, Any]) -> None:
    percentage = fields.get("discount_percentage")
    if percentage is not None and not 0 <= int(percentage) <= 100:
        raise InvalidVoucherDefinition("discount_percentage must be between 0 and 100.", discount_percentage=percentage)
    for key in ("discount_amount", "minimum_purchase"):
        value = fields.get(key)
        if value is not None and to_amount(value) < 0:
            raise InvalidVoucherDefinition(f"{key} must not be negative.", **{key: value})
    max_uses = fields.get("max_uses")
    if max_uses is not None and int(max_uses) < 1:
        raise InvalidVoucherDefinition("max_uses must be at least 1.", max_uses=max_uses)


def _check_validity_window(valid_from: Optional[datetime], valid_until: Optional[datetime]) -> None:
    if valid_from is None:
        raise InvalidVoucherDefinition("valid_from is required.")
    if valid_until is not None and valid_until < valid_from:
        raise InvalidVoucherDefinition(
            "valid_until must not be earlier than valid_from.",
            valid_from=valid_from,
            valid_until=valid_until,
        )


async def create_voucher(
    db: AsyncSession,
    *,
    code: str,
    created_by: Optional[int],
    valid_from: Optional[datetime] = None,
    valid_until: Optional[datetime] = None,
    description: Optional[str] = None,
    discount_percentage: int = 0,
    discount_amount: Decimal = ZERO,
    minimum_purchase: Optional[Decimal] = None,
    max_uses: Optional[int] = None,
) -> VoucherCode:
    normalized = normalize_voucher_code(code)
    if not normalized:
        raise InvalidVoucherDefinition("Voucher code is required.")
    _check_discount_fields(
        {
            "discount_percentage": discount_percentage,
            "discount_amount": discount_amount,
            "minimum_purchase": minimum_purchase,
            "max_uses": max_uses,
        }
    )
    window_start = ensure_utc(valid_from) or utc_now()
    window_end = ensure_utc(valid_until)
    _check_validity_window(window_start, window_end)
    voucher = VoucherCode(
        code=normalized,
        description=description,
        discount_percentage=int(discount_percentage or 0),
        discount_amount=to_amount(discount_amount),
        minimum_purchase=to_amount(minimum_purchase) if minimum_purchase is not None else None,
        max_uses=max_uses,
        used_count=0,
        valid_from=window_start,
        valid_until=window_end,
        is_active=True,
        created_by=created_by,
    )
    db.add(voucher)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise DuplicateVoucherCode(normalized) from exc
    logger.info("voucher_created code=%s by=%s", normalized, created_by)
    return voucher


async def get_voucher_by_id(db: AsyncSession, voucher_id: int) -> VoucherCode:
    result = await db.execute(select(VoucherCode).where(VoucherCode.id == voucher_id))
    voucher = result.scalar_one_or_none()
    if voucher is None:
        raise VoucherNotFound(str(voucher_id))
    return voucher


async def update_voucher(db: AsyncSession, voucher_id: int, updates: Dict[str, Any]) -> VoucherCode:
    fields = {key: value for key, value in updates.items() if key in VOUCHER_UPDATABLE_FIELDS}
    if not fields:
        raise InvalidVoucherDefinition("No fields to update.")
    cleared = [key for key in NON_NULL_VOUCHER_FIELDS if key in fields and fields[key] is None]
    if cleared:
        raise InvalidVoucherDefinition(f"{cleared[0]} cannot be cleared.", fields=cleared)
    _check_discount_fields(fields)

    voucher = await get_voucher_by_id(db, voucher_id)
    _check_validity_window(
        ensure_utc(fields["valid_from"]) if "valid_from" in fields else ensure_utc(voucher.valid_from),
        ensure_utc(fields["valid_until"]) if "valid_until" in fields else ensure_utc(voucher.valid_until),
    )
    for key, value in fields.items():
        if key in ("discount_amount",):
            value = to_amount(value)
        elif key == "minimum_purchase" and value is not None:
            value = to_amount(value)
        elif key in ("valid_from", "valid_until"):
            value = ensure_utc(value)
        setattr(voucher, key, value)
    await db.commit()
    logger.info("voucher_updated id=%s fields=%s", voucher_id, sorted(fields))
    return voucher


async def deactivate_voucher(db: AsyncSession, voucher_id: int) -> VoucherCode:
    voucher = await get_voucher_by_id(db, voucher_id)
    voucher.is_active = False
    await db.commit()
    logger.info("voucher_deactivated id=%s", voucher_id)
    return voucher


async def list_vouchers(
    db: AsyncSession,
    *,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
) -> List[VoucherCode]:
    query = select(VoucherCode)
    if is_active is not None:
        query = query.where(VoucherCode.is_active.is_(is_active))
    if search:
        pattern = f"%{search.strip().upper()}%"
        query = query.where(
            or_(
                func.upper(VoucherCode.code).like(pattern),
                func.upper(VoucherCode.description).like(pattern),
            )
        )
    result = await db.execute(query.order_by(VoucherCode.id.desc()))
    return list(result.scalars().all())


async def get_voucher_usage_stats(db: AsyncSession, voucher_id: int) -> Dict[str, Any]:
    voucher = await get_voucher_by_id(db, voucher_id)
    totals = await db.execute(
        select(
            func.count(VoucherUsage.id),
            func.coalesce(func.sum(VoucherUsage.discount_applied), 0),
            func.coalesce(func.sum(VoucherUsage.final_price), 0),
        ).where(VoucherUsage.voucher_id == voucher_id)
    )
    total_uses, total_discount, total_revenue = totals.one()

    recent = await db.execute(
        select(VoucherUsage)
        .where(VoucherUsage.voucher_id == voucher_id)
        .order_by(VoucherUsage.used_at.desc(), VoucherUsage.id.desc())
        .limit(10)
    )
    return {
        "voucher": serialize_voucher(voucher),
        "total_uses": int(total_uses or 0),
        "total_discount_given": as_float(to_amount(total_discount)),
        "total_revenue": as_float(to_amount(total_revenue)),
        "recent_usages": [serialize_voucher_usage(usage) for usage in recent.scalars().all()],
    }


def serialize_voucher_usage(usage: VoucherUsage) -> Dict[str, Any]:
    used_at = ensure_utc(usage.used_at)
    return {
        "id": usage.id,
        "voucher_id": usage.voucher_id,
        "user_id": usage.user_id,
        "tokens_purchased": usage.tokens_purchased,
        "original_price": as_float(to_amount(usage.original_price)),
        "discount_applied": as_float(to_amount(usage.discount_applied)),
        "final_price": as_float(to_amount(usage.final_price)),
        "used_at": used_at.isoformat() if used_at else None,
    }
