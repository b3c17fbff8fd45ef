from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import ADMIN_USER_ID, MEMBER_USER_ID, auth_header
from models.voucher import VoucherCode
from services.errors import (
    DuplicateVoucherCode,
    InvalidTokenAmount,
    InvalidVoucherDefinition,
    MinimumPurchaseNotMet,
    VoucherExhausted,
    VoucherExpired,
    VoucherNotFound,
)
from services.vouchers import (
    compute_voucher_discount,
    create_voucher,
    deactivate_voucher,
    list_vouchers,
    update_voucher,
    validate_voucher,
)


NOW = datetime(2026, 5, 10, 12, 0, tzinfo=timezone.utc)


def _voucher(**overrides) -> VoucherCode:
    fields = {
        "code": "SAVE",
        "discount_percentage": 0,
        "discount_amount": Decimal("0"),
        "used_count": 0,
        "is_active": True,
        "valid_from": NOW - timedelta(days=1),
    }
    fields.update(overrides)
    return VoucherCode(**fields)


def test_discount_combines_percentage_and_fixed_amount():
    voucher = _voucher(discount_percentage=10, discount_amount=Decimal("2.50"))
    assert compute_voucher_discount(voucher, Decimal("50")) == Decimal("7.50")


def test_discount_is_capped_at_purchase_amount():
    voucher = _voucher(discount_percentage=50, discount_amount=Decimal("30"))
    assert compute_voucher_discount(voucher, Decimal("40")) == Decimal("40.00")


@pytest.mark.asyncio
async def test_validate_normalizes_code_and_never_consumes_a_use(db):
    voucher = await create_voucher(
        db, code=" save20 ", created_by=ADMIN_USER_ID, discount_percentage=20, valid_from=NOW - timedelta(days=1)
    )
    assert voucher.code == "SAVE20"

    quote = await validate_voucher(db, "save20", Decimal("50"), now=NOW)
    assert quote.discount == Decimal("10.00")
    assert quote.final_price == Decimal("40.00")

    await db.refresh(voucher)
    assert voucher.used_count == 0


@pytest.mark.asyncio
async def test_validate_checks_run_in_order(db):
    await create_voucher(
        db,
        code="WINDOW",
        created_by=None,
        discount_amount=Decimal("5"),
        minimum_purchase=Decimal("100"),
        valid_from=NOW + timedelta(days=1),
    )
    with pytest.raises(VoucherNotFound):
        await validate_voucher(db, "MISSING", Decimal("10"), now=NOW)
    with pytest.raises(VoucherExpired):
        await validate_voucher(db, "WINDOW", Decimal("10"), now=NOW)
    with pytest.raises(MinimumPurchaseNotMet):
        await validate_voucher(db, "WINDOW", Decimal("10"), now=NOW + timedelta(days=2))
    quote = await validate_voucher(db, "WINDOW", Decimal("100"), now=NOW + timedelta(days=2))
    assert quote.final_price == Decimal("95.00")


@pytest.mark.asyncio
async def test_validate_rejects_expired_exhausted_and_inactive(db):
    expired = await create_voucher(
        db, code="OLD", created_by=None, discount_percentage=5,
        valid_from=NOW - timedelta(days=30), valid_until=NOW - timedelta(days=1),
    )
    used_up = await create_voucher(db, code="ONCE", created_by=None, discount_percentage=5, max_uses=1, valid_from=NOW - timedelta(days=1))
    used_up.used_count = 1
    await db.commit()

    with pytest.raises(VoucherExpired):
        await validate_voucher(db, "OLD", Decimal("10"), now=NOW)
    with pytest.raises(VoucherExhausted):
        await validate_voucher(db, "ONCE", Decimal("10"), now=NOW)

    await deactivate_voucher(db, expired.id)
    with pytest.raises(VoucherNotFound):
        await validate_voucher(db, "OLD", Decimal("10"), now=NOW)


@pytest.mark.asyncio
async def test_validate_requires_positive_amount(db):
    with pytest.raises(InvalidTokenAmount):
        await validate_voucher(db, "ANY", Decimal("0"), now=NOW)


@pytest.mark.asyncio
async def test_admin_definitions_are_checked(db):
    await create_voucher(db, code="DUP", created_by=None, discount_percentage=10)
    with pytest.raises(DuplicateVoucherCode):
        await create_voucher(db, code="dup", created_by=None, discount_percentage=10)
    with pytest.raises(InvalidVoucherDefinition):
        await create_voucher(db, code="BAD", created_by=None, discount_percentage=150)

    voucher = (await list_vouchers(db, search="dup"))[0]
    with pytest.raises(InvalidVoucherDefinition):
        await update_voucher(db, voucher.id, {"max_uses": 0})
    updated = await update_voucher(db, voucher.id, {"description": "Spring promo", "code": "IGNORED"})
    assert updated.description == "Spring promo"
    assert updated.code == "DUP"


@pytest.mark.asyncio
async def test_list_vouchers_filters_by_state(db):
    first = await create_voucher(db, code="ALPHA", created_by=None, discount_percentage=5)
    await create_voucher(db, code="BETA", created_by=None, discount_percentage=5)
    await deactivate_voucher(db, first.id)

    active = await list_vouchers(db, is_active=True)
    assert [voucher.code for voucher in active] == ["BETA"]
    inactive = await list_vouchers(db, is_active=False)
    assert [voucher.code for voucher in inactive] == ["ALPHA"]


@pytest.mark.asyncio
async def test_validate_endpoint_quotes_from_token_quantity(client, db):
    await create_voucher(db, code="TWENTY", created_by=None, discount_percentage=20, valid_from=NOW - timedelta(days=365))

    response = await client.post(
        "/vouchers/validate",
        json={"code": "twenty", "token_qty": 5},
        headers=auth_header(MEMBER_USER_ID),
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["valid"] is True
    assert payload["original_price"] == 50.0
    assert payload["discount"] == 10.0
    assert payload["final_price"] == 40.0


@pytest.mark.asyncio
async def test_validate_endpoint_reports_voucher_errors(client):
    response = await client.post(
        "/vouchers/validate",
        json={"code": "NOPE", "purchase_amount": 10},
        headers=auth_header(MEMBER_USER_ID),
    )
    assert response.status_code == 400
    payload = response.json()
    assert payload["valid"] is False
    assert payload["error"] == "voucher_not_found"

    missing_amount = await client.post(
        "/vouchers/validate",
        json={"code": "NOPE"},
        headers=auth_header(MEMBER_USER_ID),
    )
    assert missing_amount.status_code == 422


@pytest.mark.asyncio
async def test_validity_window_must_not_be_inverted(db):
    with pytest.raises(InvalidVoucherDefinition):
        await create_voucher(
            db,
            code="BACKWARDS",
            created_by=None,
            discount_percentage=10,
            valid_from=NOW,
            valid_until=NOW - timedelta(days=1),
        )
    assert await list_vouchers(db, search="BACKWARDS") == []

    voucher = await create_voucher(
        db, code="WINDOW", created_by=None, discount_percentage=10, valid_from=NOW, valid_until=NOW + timedelta(days=30)
    )
    with pytest.raises(InvalidVoucherDefinition):
        await update_voucher(db, voucher.id, {"valid_until": NOW - timedelta(days=1)})
    with pytest.raises(InvalidVoucherDefinition):
        await update_voucher(db, voucher.id, {"valid_from": NOW + timedelta(days=31)})

    open_ended = await update_voucher(db, voucher.id, {"valid_until": None})
    assert open_ended.valid_until is None


@pytest.mark.asyncio
async def test_required_voucher_fields_cannot_be_cleared(db):
    voucher = await create_voucher(db, code="KEEP", created_by=None, discount_percentage=10, valid_from=NOW)
    for field in ("valid_from", "discount_percentage", "discount_amount", "is_active"):
        with pytest.raises(InvalidVoucherDefinition):
            await update_voucher(db, voucher.id, {field: None})

    cleared = await update_voucher(db, voucher.id, {"minimum_purchase": None, "max_uses": None})
    assert cleared.minimum_purchase is None
    assert cleared.max_uses is None
