"""Token account and append-only ledger.

Every balance mutation runs through ``apply_balance_change`` inside
``run_ledger_write``:

- the user's writes are serialized by a process-local lock and by
  ``SELECT ... FOR UPDATE`` on the account row,
- the account row carries a version column, so a lost update across
  processes surfaces as ``StaleDataError`` and is retried,
- the balance write and its ledger row are committed together or not at all.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from models.token_account import TokenAccount
from models.token_transaction import (
    REFERENCE_ADMIN,
    TRANSACTION_ADMIN_GRANT,
    TRANSACTION_BALANCE_ADJUSTMENT,
    TokenTransaction,
)
from services.amounts import ZERO, as_float, to_amount
from services.clock import ensure_utc, utc_now
from services.errors import (
    ConcurrentModificationConflict,
    InsufficientTokens,
    InvalidTokenAmount,
    TokenLedgerError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

_user_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()


def _is_unique_violation(exc: IntegrityError) -> bool:
    """Unique-key collisions are write races; other integrity errors are not retried."""
    orig = getattr(exc, "orig", None)
    if getattr(orig, "sqlstate", None) == "23505" or getattr(orig, "pgcode", None) == "23505":
        return True
    message = str(orig if orig is not None else exc).lower()
    return "unique" in message or "duplicate key" in message


@asynccontextmanager
async def user_ledger_lock(user_id: int):
    """Serialize ledger writes for one user within this process."""
    lock = _user_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _user_locks[user_id] = lock
    async with lock:
        yield


async def run_ledger_write(
    db: AsyncSession,
    user_id: int,
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
) -> T:
    """Run ``operation`` as one committed unit, retrying bounded write conflicts.

    ``operation`` must re-read everything it needs; it is called again from
    scratch after a rollback.
    """
    attempts = max(int(settings.LEDGER_WRITE_MAX_ATTEMPTS), 1)
    async with user_ledger_lock(user_id):
        for attempt in range(1, attempts + 1):
            try:
                result = await operation()
                await db.commit()
                return result
            except TokenLedgerError:
                await db.rollback()
                raise
            except (StaleDataError, IntegrityError) as exc:
                await db.rollback()
                if isinstance(exc, IntegrityError) and not _is_unique_violation(exc):
                    logger.exception("ledger_write_integrity_error op=%s user=%s", label, user_id)
                    raise
                logger.warning(
                    "ledger_write_conflict op=%s user=%s attempt=%s/%s: %s",
                    label, user_id, attempt, attempts, exc,
                )
            except OperationalError:
                await db.rollback()
                if attempt >= attempts:
                    logger.exception("ledger_write_failed op=%s user=%s attempts=%s", label, user_id, attempts)
                    raise
                logger.warning("ledger_write_retry op=%s user=%s attempt=%s/%s", label, user_id, attempt, attempts)
            except Exception:
                await db.rollback()
                raise
    raise ConcurrentModificationConflict(user_id=user_id, attempts=attempts)


async def lock_token_account(
    db: AsyncSession,
    user_id: int,
    *,
    create: bool = False,
    now: Optional[datetime] = None,
) -> Optional[TokenAccount]:
    """Load the user's account row for update, creating it lazily when asked."""
    result = await db.execute(
        select(TokenAccount).where(TokenAccount.user_id == user_id).with_for_update()
    )
    account = result.scalar_one_or_none()
    if account is not None or not create:
        return account

    timestamp = ensure_utc(now) or utc_now()
    account = TokenAccount(
        user_id=user_id,
        balance=ZERO,
        total_purchased=ZERO,
        created_at=timestamp,
        updated_at=timestamp,
    )
    db.add(account)
    await db.flush()
    return account


async def apply_balance_change(
    db: AsyncSession,
    account: TokenAccount,
    *,
    amount: Decimal,
    transaction_type: str,
    description: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    voucher_id: Optional[int] = None,
    voucher_discount: Decimal = ZERO,
    processed_by: Optional[int] = None,
    count_as_purchase: bool = False,
    now: Optional[datetime] = None,
) -> TokenTransaction:
    """Write the new balance and its paired ledger row. Caller holds the account lock."""
    delta = to_amount(amount)
    balance_before = to_amount(account.balance)
    balance_after = balance_before + delta
    if balance_after < 0:
        raise InsufficientTokens(required=-delta, available=balance_before)

    timestamp = ensure_utc(now) or utc_now()
    account.balance = balance_after
    if count_as_purchase:
        account.total_purchased = to_amount(account.total_purchased) + delta
    account.updated_at = timestamp

    entry = TokenTransaction(
        user_id=account.user_id,
        transaction_type=transaction_type,
        amount=delta,
        balance_before=balance_before,
        balance_after=balance_after,
        reference_type=reference_type,
        reference_id=reference_id,
        voucher_id=voucher_id,
        voucher_discount=to_amount(voucher_discount),
        description=description,
        processed_by=processed_by,
        created_at=timestamp,
    )
    db.add(entry)
    await db.flush()
    return entry


def serialize_account(account: Optional[TokenAccount]) -> Dict[str, Any]:
    if account is None:
        return {"balance": 0.0, "total_purchased": 0.0}
    return {
        "balance": as_float(to_amount(account.balance)),
        "total_purchased": as_float(to_amount(account.total_purchased)),
    }


def serialize_transaction(entry: TokenTransaction) -> Dict[str, Any]:
    created_at = ensure_utc(entry.created_at)
    return {
        "id": entry.id,
        "transaction_type": entry.transaction_type,
        "amount": as_float(to_amount(entry.amount)),
        "balance_before": as_float(to_amount(entry.balance_before)),
        "balance_after": as_float(to_amount(entry.balance_after)),
        "reference_type": entry.reference_type,
        "reference_id": entry.reference_id,
        "voucher_id": entry.voucher_id,
        "voucher_discount": as_float(to_amount(entry.voucher_discount)),
        "description": entry.description,
        "processed_by": entry.processed_by,
        "created_at": created_at.isoformat() if created_at else None,
    }


async def get_token_account(db: AsyncSession, user_id: int) -> Optional[TokenAccount]:
    result = await db.execute(select(TokenAccount).where(TokenAccount.user_id == user_id))
    return result.scalar_one_or_none()


async def get_token_account_summary(db: AsyncSession, user_id: int) -> Dict[str, Any]:
    """Balance and lifetime purchases; an absent account reads as zero."""
    account = await get_token_account(db, user_id)
    return serialize_account(account)


async def list_token_transactions(
    db: AsyncSession,
    user_id: int,
    *,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), max(int(settings.TRANSACTIONS_PAGE_MAX_LIMIT), 1))

    total_result = await db.execute(
        select(func.count(TokenTransaction.id)).where(TokenTransaction.user_id == user_id)
    )
    total = int(total_result.scalar() or 0)

    result = await db.execute(
        select(TokenTransaction)
        .where(TokenTransaction.user_id == user_id)
        .order_by(TokenTransaction.created_at.desc(), TokenTransaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    entries = result.scalars().all()
    return {
        "page": page,
        "limit": limit,
        "total_count": total,
        "items": [serialize_transaction(entry) for entry in entries],
    }


async def reconcile_token_account(db: AsyncSession, user_id: int) -> Dict[str, Any]:
    """Replay the ledger from zero and compare it with the stored balance."""
    account = await get_token_account(db, user_id)
    result = await db.execute(
        select(TokenTransaction)
        .where(TokenTransaction.user_id == user_id)
        .order_by(TokenTransaction.created_at.asc(), TokenTransaction.id.asc())
    )
    entries = result.scalars().all()

    running = ZERO
    broken_links = []
    for entry in entries:
        before = to_amount(entry.balance_before)
        after = to_amount(entry.balance_after)
        delta = to_amount(entry.amount)
        if before != running or after != before + delta:
            broken_links.append(entry.id)
        running = running + delta

    stored = to_amount(account.balance) if account is not None else ZERO
    consistent = running == stored and not broken_links
    if not consistent:
        logger.warning(
            "ledger_reconcile_mismatch user=%s stored=%s replayed=%s broken=%s",
            user_id, stored, running, broken_links[:20],
        )
    return {
        "user_id": user_id,
        "stored_balance": as_float(stored),
        "ledger_balance": as_float(running),
        "transaction_count": len(entries),
        "broken_links": broken_links,
        "consistent": consistent,
    }


async def grant_tokens(
    db: AsyncSession,
    *,
    user_id: int,
    amount: Decimal,
    processed_by: Optional[int] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Admin credit; not counted toward lifetime purchases."""
    grant = to_amount(amount)
    if grant <= 0:
        raise InvalidTokenAmount("Granted token amount must be greater than 0.", amount=grant)

    async def _grant():
        account = await lock_token_account(db, user_id, create=True, now=now)
        entry = await apply_balance_change(
            db,
            account,
            amount=grant,
            transaction_type=TRANSACTION_ADMIN_GRANT,
            description=reason or f"Admin grant of {grant} tokens",
            reference_type=REFERENCE_ADMIN,
            processed_by=processed_by,
            now=now,
        )
        return account, entry

    account, entry = await run_ledger_write(db, user_id, _grant, label="admin_grant")
    logger.info("token_admin_grant user=%s amount=%s by=%s", user_id, grant, processed_by)
    return {"transaction": serialize_transaction(entry), "token_account": serialize_account(account)}


async def set_token_balance(
    db: AsyncSession,
    *,
    user_id: int,
    balance: Decimal,
    processed_by: Optional[int] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Admin correction to an exact balance, recorded as the difference."""
    target = to_amount(balance)
    if target < 0:
        raise InvalidTokenAmount("Token balance cannot be negative.", balance=target)

    async def _adjust():
        account = await lock_token_account(db, user_id, create=True, now=now)
        delta = target - to_amount(account.balance)
        entry = await apply_balance_change(
            db,
            account,
            amount=delta,
            transaction_type=TRANSACTION_BALANCE_ADJUSTMENT,
            description=reason or f"Balance set to {target} tokens",
            reference_type=REFERENCE_ADMIN,
            processed_by=processed_by,
            now=now,
        )
        return account, entry

    account, entry = await run_ledger_write(db, user_id, _adjust, label="balance_adjustment")
    logger.info("token_balance_adjustment user=%s balance=%s by=%s", user_id, target, processed_by)
    return {"transaction": serialize_transaction(entry), "token_account": serialize_account(account)}
