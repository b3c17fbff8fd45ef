"""Domain errors raised by the token ledger and module entitlement services."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class TokenLedgerError(Exception):
    """Base class for user-facing, recoverable ledger errors."""

    code = "token_ledger_error"
    status_code = 400

    def __init__(self, message: str, **fields: Any) -> None:
        super().__init__(message)
        self.message = message
        self.fields = fields

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        for key, value in self.fields.items():
            payload[key] = _jsonable(value)
        return payload


class InsufficientTokens(TokenLedgerError):
    code = "insufficient_tokens"
    status_code = 402

    def __init__(self, required: Decimal, available: Decimal) -> None:
        super().__init__(
            f"Insufficient tokens. Required: {required}, available: {available}.",
            required=required,
            available=available,
        )
        self.required = required
        self.available = available


class InvalidTokenAmount(TokenLedgerError):
    code = "invalid_token_amount"
    status_code = 422


class ConcurrentModificationConflict(TokenLedgerError):
    code = "concurrent_modification_conflict"
    status_code = 409

    def __init__(self, user_id: int, attempts: int) -> None:
        super().__init__(
            "Token account was modified concurrently. Retry the request.",
            user_id=user_id,
            attempts=attempts,
        )


class ModuleNotFound(TokenLedgerError):
    code = "module_not_found"
    status_code = 404

    def __init__(self, module_key: str) -> None:
        super().__init__(f"Module {module_key} not found or inactive.", module_key=module_key)


class AlreadyActive(TokenLedgerError):
    code = "already_active"
    status_code = 409


class NotActive(TokenLedgerError):
    code = "not_active"
    status_code = 409

    def __init__(self, module_key: str) -> None:
        super().__init__(f"No active activation found for module {module_key}.", module_key=module_key)


class FreeModuleNotToggleable(TokenLedgerError):
    code = "free_module_not_toggleable"
    status_code = 409

    def __init__(self, module_key: str) -> None:
        super().__init__(f"Module {module_key} is free and always active.", module_key=module_key)


class VoucherError(TokenLedgerError):
    """Base for voucher validation failures."""


class VoucherNotFound(VoucherError):
    code = "voucher_not_found"
    status_code = 404

    def __init__(self, code: str) -> None:
        super().__init__("Voucher code not found.", voucher_code=code)


class VoucherExpired(VoucherError):
    code = "voucher_expired"
    status_code = 400


class VoucherExhausted(VoucherError):
    code = "voucher_exhausted"
    status_code = 409

    def __init__(self, code: str, max_uses: int) -> None:
        super().__init__("Voucher code has reached maximum uses.", voucher_code=code, max_uses=max_uses)


class MinimumPurchaseNotMet(VoucherError):
    code = "minimum_purchase_not_met"
    status_code = 400

    def __init__(self, code: str, minimum_purchase: Decimal, purchase_amount: Decimal) -> None:
        super().__init__(
            f"Minimum purchase of {minimum_purchase} required for this voucher.",
            voucher_code=code,
            minimum_purchase=minimum_purchase,
            purchase_amount=purchase_amount,
        )


class VoucherAlreadyRedeemed(VoucherError):
    code = "voucher_already_redeemed"
    status_code = 409

    def __init__(self, code: str, user_id: int) -> None:
        super().__init__("Voucher code was already redeemed by this user.", voucher_code=code, user_id=user_id)


class InvalidVoucherDefinition(TokenLedgerError):
    code = "invalid_voucher_definition"
    status_code = 422


class DuplicateVoucherCode(TokenLedgerError):
    code = "duplicate_voucher_code"
    status_code = 409

    def __init__(self, code: str) -> None:
        super().__init__("Voucher code already exists.", voucher_code=code)
