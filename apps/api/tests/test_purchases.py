import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from conftest import MEMBER_USER_ID, OTHER_USER_ID
from models.token_transaction import TokenTransaction
from models.voucher import VoucherCode, VoucherUsage
from services.errors import InvalidTokenAmount, VoucherAlreadyRedeemed, VoucherExhausted, VoucherNotFound
from services.purchases import get_token_price, purchase_tokens, set_token_price
from services.token_ledger import get_token_account, reconcile_token_account
from services.vouchers import create_voucher


NOW = datetime(2026, 4, 2, 8, 30, tzinfo=timezone.utc)


async def _count(session, model, *criteria):
    result = await session.execute(select(func.count(model.id)).where(*criteria))
    return int(result.scalar() or 0)


@pytest.mark.asyncio
async def test_purchase_with_percentage_voucher(db):
    voucher = await create_voucher(
        db, code="SPRING20", created_by=None, discount_percentage=20, valid_from=NOW - timedelta(days=1)
    )

    result = await purchase_tokens(db, user_id=MEMBER_USER_ID, token_qty=5, voucher_code="spring20", now=NOW)

    assert result["unit_price"] == 10.0
    assert result["original_price"] == 50.0
    assert result["discount"] == 10.0
    assert result["final_price"] == 40.0
    assert result["new_balance"] == 5.0
    assert result["token_account"] == {"balance": 5.0, "total_purchased": 5.0}

    entry = result["transaction"]
    assert entry["transaction_type"] == "purchase"
    assert entry["amount"] == 5.0
    assert entry["voucher_id"] == voucher.id
    assert entry["voucher_discount"] == 10.0
    assert entry["reference_id"] == result["voucher_usage"]["id"]

    await db.refresh(voucher)
    assert voucher.used_count == 1
    assert await _count(db, VoucherUsage, VoucherUsage.voucher_id == voucher.id) == 1


@pytest.mark.asyncio
async def test_purchase_without_voucher_uses_runtime_price(db):
    set_token_price(Decimal("2.50"))
    assert get_token_price() == Decimal("2.50")

    result = await purchase_tokens(db, user_id=MEMBER_USER_ID, token_qty=3, now=NOW)
    assert result["original_price"] == 7.5
    assert result["final_price"] == 7.5
    assert result["discount"] == 0.0
    assert result["voucher_usage"] is None
    assert result["transaction"]["voucher_id"] is None


@pytest.mark.asyncio
async def test_purchase_rejects_bad_quantities(db):
    for quantity in (0, -2, 1.5, True):
        with pytest.raises(InvalidTokenAmount):
            await purchase_tokens(db, user_id=MEMBER_USER_ID, token_qty=quantity, now=NOW)
    assert await get_token_account(db, MEMBER_USER_ID) is None


@pytest.mark.asyncio
async def test_failed_voucher_leaves_no_trace(db):
    with pytest.raises(VoucherNotFound):
        await purchase_tokens(db, user_id=MEMBER_USER_ID, token_qty=2, voucher_code="UNKNOWN", now=NOW)

    assert await get_token_account(db, MEMBER_USER_ID) is None
    assert await _count(db, TokenTransaction, TokenTransaction.user_id == MEMBER_USER_ID) == 0


@pytest.mark.asyncio
async def test_voucher_redeems_once_per_user(db):
    await create_voucher(db, code="WELCOME", created_by=None, discount_amount=Decimal("5"), valid_from=NOW - timedelta(days=1))

    await purchase_tokens(db, user_id=MEMBER_USER_ID, token_qty=1, voucher_code="WELCOME", now=NOW)
    with pytest.raises(VoucherAlreadyRedeemed):
        await purchase_tokens(db, user_id=MEMBER_USER_ID, token_qty=1, voucher_code="WELCOME", now=NOW)

    other = await purchase_tokens(db, user_id=OTHER_USER_ID, token_qty=1, voucher_code="WELCOME", now=NOW)
    assert other["discount"] == 5.0
    assert other["final_price"] == 5.0

    report = await reconcile_token_account(db, MEMBER_USER_ID)
    assert report["stored_balance"] == 1.0
    assert report["transaction_count"] == 1


@pytest.mark.asyncio
async def test_voucher_usage_cap_holds_under_concurrent_purchases(session_maker):
    async with session_maker() as session:
        voucher = await create_voucher(
            session, code="LIMITED", created_by=None, discount_percentage=50, max_uses=1,
            valid_from=NOW - timedelta(days=1),
        )
        voucher_id = voucher.id

    async def attempt(user_id):
        async with session_maker() as session:
            try:
                return await purchase_tokens(session, user_id=user_id, token_qty=2, voucher_code="LIMITED", now=NOW)
            except VoucherExhausted as exc:
                return exc

    outcomes = await asyncio.gather(attempt(MEMBER_USER_ID), attempt(OTHER_USER_ID))
    succeeded = [outcome for outcome in outcomes if isinstance(outcome, dict)]
    rejected = [outcome for outcome in outcomes if isinstance(outcome, VoucherExhausted)]
    assert len(succeeded) == 1
    assert len(rejected) == 1

    async with session_maker() as session:
        stored = (await session.execute(select(VoucherCode).where(VoucherCode.id == voucher_id))).scalar_one()
        assert stored.used_count == 1
        assert await _count(session, VoucherUsage, VoucherUsage.voucher_id == voucher_id) == 1
