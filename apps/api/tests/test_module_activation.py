import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from conftest import MEMBER_USER_ID, OTHER_USER_ID
from models.module_activation import ModuleActivation
from models.token_transaction import TokenTransaction
from services.clock import add_calendar_month
from services.errors import (
    AlreadyActive,
    FreeModuleNotToggleable,
    InsufficientTokens,
    ModuleNotFound,
    NotActive,
)
from services.module_activation import (
    activate_module,
    deactivate_module,
    grant_module,
    revoke_module,
    sweep_expired_activations,
)
from services.module_registry import set_module_enabled
from services.purchases import purchase_tokens
from services.token_ledger import get_token_account_summary, grant_tokens, reconcile_token_account


T0 = datetime(2026, 1, 10, 10, 0, tzinfo=timezone.utc)


async def _fund(db, user_id=MEMBER_USER_ID, amount="3"):
    await grant_tokens(db, user_id=user_id, amount=Decimal(amount), now=T0 - timedelta(days=1))


async def _transaction_types(db, user_id=MEMBER_USER_ID):
    result = await db.execute(
        select(TokenTransaction.transaction_type)
        .where(TokenTransaction.user_id == user_id)
        .order_by(TokenTransaction.created_at.asc(), TokenTransaction.id.asc())
    )
    return list(result.scalars().all())


def test_calendar_month_clamps_to_month_end():
    assert add_calendar_month(datetime(2026, 1, 31, 9, 0)) == datetime(2026, 2, 28, 9, 0)
    assert add_calendar_month(datetime(2028, 1, 31, 9, 0)) == datetime(2028, 2, 29, 9, 0)
    assert add_calendar_month(datetime(2026, 12, 15, 9, 0)) == datetime(2027, 1, 15, 9, 0)


@pytest.mark.asyncio
async def test_activation_debits_one_token_for_one_month(db):
    await _fund(db)

    result = await activate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0)

    activation = result["activation"]
    assert activation["module_key"] == "income"
    assert activation["is_active"] is True
    assert activation["token_used"] == 1.0
    assert activation["activation_order"] == 1
    assert activation["expires_at"] == datetime(2026, 2, 10, 10, 0, tzinfo=timezone.utc).isoformat()

    entry = result["transaction"]
    assert entry["transaction_type"] == "deduction"
    assert entry["amount"] == -1.0
    assert entry["reference_type"] == "module_activation"
    assert entry["reference_id"] == activation["id"]
    assert result["token_account"]["balance"] == 2.0


@pytest.mark.asyncio
async def test_activation_requires_tokens(db):
    with pytest.raises(InsufficientTokens):
        await activate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0)

    await _fund(db, amount="0.5")
    with pytest.raises(InsufficientTokens) as exc_info:
        await activate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0)
    assert exc_info.value.to_dict()["available"] == 0.5
    assert await _transaction_types(db) == ["admin_grant"]


@pytest.mark.asyncio
async def test_second_activation_of_live_module_is_rejected(db):
    await _fund(db)
    await activate_module(db, user_id=MEMBER_USER_ID, module_key="assets", now=T0)

    with pytest.raises(AlreadyActive) as exc_info:
        await activate_module(db, user_id=MEMBER_USER_ID, module_key="assets", now=T0 + timedelta(days=3))
    assert "expires_at" in exc_info.value.to_dict()
    assert (await get_token_account_summary(db, MEMBER_USER_ID))["balance"] == 2.0


@pytest.mark.asyncio
async def test_free_and_unknown_modules_are_not_toggleable(db):
    await _fund(db)
    with pytest.raises(AlreadyActive):
        await activate_module(db, user_id=MEMBER_USER_ID, module_key="dashboard", now=T0)
    with pytest.raises(FreeModuleNotToggleable):
        await deactivate_module(db, user_id=MEMBER_USER_ID, module_key="dashboard", now=T0)
    with pytest.raises(ModuleNotFound):
        await activate_module(db, user_id=MEMBER_USER_ID, module_key="payroll", now=T0)

    await set_module_enabled(db, "expenses", False)
    with pytest.raises(ModuleNotFound):
        await activate_module(db, user_id=MEMBER_USER_ID, module_key="expenses", now=T0)
    assert await _transaction_types(db) == ["admin_grant"]


@pytest.mark.asyncio
async def test_deactivation_inside_refund_window_refunds_in_full(db):
    await _fund(db)
    await activate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0)

    result = await deactivate_module(
        db, user_id=MEMBER_USER_ID, module_key="income", now=T0 + timedelta(days=14, hours=23)
    )

    assert result["refunded"] is True
    assert result["refund_amount"] == 1.0
    assert result["activation"]["is_active"] is False
    assert result["transaction"]["transaction_type"] == "refund"
    assert result["transaction"]["reference_type"] == "module_deactivation"
    assert result["token_account"]["balance"] == 3.0
    assert await _transaction_types(db) == ["admin_grant", "deduction", "refund"]


@pytest.mark.asyncio
async def test_deactivation_after_refund_window_writes_no_ledger_row(db):
    await _fund(db)
    await activate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0)

    result = await deactivate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0 + timedelta(days=15))

    assert result["refunded"] is False
    assert result["refund_amount"] == 0.0
    assert result["transaction"] is None
    assert result["token_account"]["balance"] == 2.0
    assert await _transaction_types(db) == ["admin_grant", "deduction"]


@pytest.mark.asyncio
async def test_deactivating_twice_reports_not_active(db):
    await _fund(db)
    with pytest.raises(NotActive):
        await deactivate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0)

    await activate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0)
    await deactivate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0 + timedelta(days=1))
    with pytest.raises(NotActive):
        await deactivate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0 + timedelta(days=2))
    assert (await get_token_account_summary(db, MEMBER_USER_ID))["balance"] == 3.0


@pytest.mark.asyncio
async def test_reactivation_keeps_history_and_advances_order(db):
    await _fund(db)
    await activate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0)
    await activate_module(db, user_id=MEMBER_USER_ID, module_key="assets", now=T0 + timedelta(minutes=5))
    await deactivate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0 + timedelta(days=20))

    again = await activate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0 + timedelta(days=21))
    assert again["activation"]["activation_order"] == 3

    rows = (
        await db.execute(
            select(ModuleActivation)
            .where(ModuleActivation.user_id == MEMBER_USER_ID, ModuleActivation.module_key == "income")
            .order_by(ModuleActivation.id.asc())
        )
    ).scalars().all()
    assert [row.is_active for row in rows] == [False, True]


@pytest.mark.asyncio
async def test_activation_after_lapse_closes_stale_row(db):
    await _fund(db)
    await activate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0)

    later = T0 + timedelta(days=45)
    result = await activate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=later)
    assert result["activation"]["is_active"] is True

    flagged = await db.execute(
        select(func.count(ModuleActivation.id)).where(
            ModuleActivation.user_id == MEMBER_USER_ID,
            ModuleActivation.is_active.is_(True),
        )
    )
    assert flagged.scalar() == 1


@pytest.mark.asyncio
async def test_sweep_expires_lapsed_rows_once_and_never_refunds(db):
    await _fund(db)
    await _fund(db, user_id=OTHER_USER_ID)
    await activate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=T0)
    await activate_module(db, user_id=OTHER_USER_ID, module_key="income", now=T0 + timedelta(days=10))

    sweep_at = datetime(2026, 2, 12, tzinfo=timezone.utc)
    assert await sweep_expired_activations(db, now=sweep_at, batch_size=1) == 1
    assert await sweep_expired_activations(db, now=sweep_at, batch_size=1) == 0

    assert await _transaction_types(db) == ["admin_grant", "deduction"]
    assert (await get_token_account_summary(db, MEMBER_USER_ID))["balance"] == 2.0
    with pytest.raises(NotActive):
        await deactivate_module(db, user_id=MEMBER_USER_ID, module_key="income", now=sweep_at)

    assert await sweep_expired_activations(db, now=datetime(2026, 3, 1, tzinfo=timezone.utc)) == 1


@pytest.mark.asyncio
async def test_sweep_handles_more_rows_than_one_batch(db):
    for user_id in (MEMBER_USER_ID, OTHER_USER_ID):
        await _fund(db, user_id=user_id)
        for module_key in ("income", "assets", "expenses"):
            await activate_module(db, user_id=user_id, module_key=module_key, now=T0)

    assert await sweep_expired_activations(db, now=T0 + timedelta(days=40), batch_size=4) == 6


@pytest.mark.asyncio
async def test_concurrent_activations_debit_once(session_maker):
    async with session_maker() as session:
        await _fund(session)

    async def attempt():
        async with session_maker() as session:
            try:
                return await activate_module(session, user_id=MEMBER_USER_ID, module_key="income", now=T0)
            except AlreadyActive as exc:
                return exc

    outcomes = await asyncio.gather(attempt(), attempt())
    assert sum(1 for outcome in outcomes if isinstance(outcome, dict)) == 1
    assert sum(1 for outcome in outcomes if isinstance(outcome, AlreadyActive)) == 1

    async with session_maker() as session:
        report = await reconcile_token_account(session, MEMBER_USER_ID)
        assert report["consistent"] is True
        assert report["stored_balance"] == 2.0


@pytest.mark.asyncio
async def test_concurrent_activations_with_exactly_one_token(session_maker):
    async with session_maker() as session:
        await _fund(session, amount="1")

    async def attempt():
        async with session_maker() as session:
            try:
                return await activate_module(session, user_id=MEMBER_USER_ID, module_key="income", now=T0)
            except (AlreadyActive, InsufficientTokens) as exc:
                return exc

    outcomes = await asyncio.gather(attempt(), attempt())
    assert sum(1 for outcome in outcomes if isinstance(outcome, dict)) == 1
    assert sum(1 for outcome in outcomes if isinstance(outcome, AlreadyActive)) == 1

    async with session_maker() as session:
        report = await reconcile_token_account(session, MEMBER_USER_ID)
        assert report["consistent"] is True
        assert report["stored_balance"] == 0.0
        assert report["transaction_count"] == 2
        live = await session.execute(
            select(func.count(ModuleActivation.id)).where(
                ModuleActivation.user_id == MEMBER_USER_ID, ModuleActivation.is_active.is_(True)
            )
        )
        assert live.scalar() == 1


@pytest.mark.asyncio
async def test_purchase_and_activation_race_for_one_user(session_maker):
    async with session_maker() as session:
        await _fund(session, amount="1")

    async def buy():
        async with session_maker() as session:
            return await purchase_tokens(session, user_id=MEMBER_USER_ID, token_qty=2)

    async def activate():
        async with session_maker() as session:
            return await activate_module(session, user_id=MEMBER_USER_ID, module_key="income")

    purchase, activation = await asyncio.gather(buy(), activate())
    assert purchase["token_account"]["total_purchased"] == 2.0
    assert activation["activation"]["token_used"] == 1.0

    async with session_maker() as session:
        report = await reconcile_token_account(session, MEMBER_USER_ID)
        assert report["consistent"] is True
        assert report["stored_balance"] == 2.0
        assert report["transaction_count"] == 3
        assert sorted(await _transaction_types(session)) == ["admin_grant", "deduction", "purchase"]


@pytest.mark.asyncio
async def test_granted_module_costs_nothing_and_refunds_nothing(db):
    granted = await grant_module(db, user_id=MEMBER_USER_ID, module_key="assets", granted_by=900, now=T0)
    assert granted["activation"]["token_used"] == 0.0

    result = await deactivate_module(db, user_id=MEMBER_USER_ID, module_key="assets", now=T0 + timedelta(days=1))
    assert result["refunded"] is False
    assert await _transaction_types(db) == []


@pytest.mark.asyncio
async def test_revoke_closes_activation_without_refund(db):
    await _fund(db)
    await activate_module(db, user_id=MEMBER_USER_ID, module_key="expenses", now=T0)

    assert (await revoke_module(db, user_id=MEMBER_USER_ID, module_key="expenses", now=T0 + timedelta(days=1)))["revoked"] == 1
    assert (await revoke_module(db, user_id=MEMBER_USER_ID, module_key="expenses", now=T0 + timedelta(days=1)))["revoked"] == 0
    assert (await get_token_account_summary(db, MEMBER_USER_ID))["balance"] == 2.0
