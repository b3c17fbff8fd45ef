"""Token purchase flow: price, optional voucher, credit and ledger in one unit."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.token_transaction import REFERENCE_PURCHASE, TRANSACTION_PURCHASE
from models.voucher import VoucherUsage
from services.amounts import ZERO, as_float, to_amount
from services.clock import ensure_utc, utc_now
from services.errors import InvalidTokenAmount
from services.token_ledger import (
    apply_balance_change,
    lock_token_account,
    run_ledger_write,
    serialize_account,
    serialize_transaction,
)
from services.vouchers import (
    check_voucher_redemption,
    claim_voucher_use,
    evaluate_voucher,
    find_voucher,
    normalize_voucher_code,
    serialize_voucher_usage,
)


logger = logging.getLogger(__name__)


def get_token_price() -> Decimal:
    return to_amount(settings.TOKEN_PRICE)


def set_token_price(price: Decimal) -> Decimal:
    """Change the process-wide unit price used for new purchases."""
    value = to_amount(price)
    if value < 0:
        raise InvalidTokenAmount("Token price must not be negative.", price=value)
    settings.TOKEN_PRICE = value
    logger.info("token_price_updated price=%s", value)
    return value


def _purchase_description(token_qty: int, voucher_code: Optional[str], discount: Decimal) -> str:
    description = f"Purchased {token_qty} token{'s' if token_qty != 1 else ''}"
    if voucher_code:
        description += f" with voucher {voucher_code} (-{discount})"
    return description


async def purchase_tokens(
    db: AsyncSession,
    *,
    user_id: int,
    token_qty: int,
    voucher_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if isinstance(token_qty, bool) or int(token_qty) != token_qty or int(token_qty) <= 0:
        raise InvalidTokenAmount("token_qty must be a positive whole number.", token_qty=token_qty)
    quantity = int(token_qty)
    unit_price = get_token_price()
    original_price = to_amount(unit_price * quantity)
    code = normalize_voucher_code(voucher_code) if voucher_code else None

    async def _purchase():
        account = await lock_token_account(db, user_id, create=True, now=now)
        timestamp = ensure_utc(now) or utc_now()
        voucher = None
        discount = ZERO
        if code:
            # Re-validated under the row lock so concurrent redemptions cannot exceed max_uses.
            voucher_row = await find_voucher(db, code, for_update=True)
            quote = evaluate_voucher(voucher_row, code, original_price, now=timestamp)
            await check_voucher_redemption(db, quote, user_id)
            voucher = quote.voucher
            discount = quote.discount

        final_price = max(ZERO, original_price - discount)

        usage = None
        if voucher is not None:
            await claim_voucher_use(db, voucher)
            usage = VoucherUsage(
                voucher_id=voucher.id,
                user_id=user_id,
                tokens_purchased=quantity,
                original_price=original_price,
                discount_applied=discount,
                final_price=final_price,
                used_at=timestamp,
            )
            db.add(usage)
            await db.flush()

        entry = await apply_balance_change(
            db,
            account,
            amount=Decimal(quantity),
            transaction_type=TRANSACTION_PURCHASE,
            description=_purchase_description(quantity, code if voucher is not None else None, discount),
            reference_type=REFERENCE_PURCHASE,
            reference_id=usage.id if usage is not None else None,
            voucher_id=voucher.id if voucher is not None else None,
            voucher_discount=discount,
            count_as_purchase=True,
            now=timestamp,
        )
        return account, entry, usage, discount, final_price

    account, entry, usage, discount, final_price = await run_ledger_write(
        db, user_id, _purchase, label="purchase"
    )
    logger.info(
        "token_purchase user=%s qty=%s price=%s discount=%s voucher=%s",
        user_id, quantity, original_price, discount, code,
    )
    return {
        "transaction": serialize_transaction(entry),
        "new_balance": as_float(to_amount(account.balance)),
        "token_account": serialize_account(account),
        "unit_price": as_float(unit_price),
        "original_price": as_float(original_price),
        "discount": as_float(discount),
        "final_price": as_float(final_price),
        "voucher_usage": serialize_voucher_usage(usage) if usage is not None else None,
    }
