"""Models package."""

from .user import User
from .module import Module
from .token_account import TokenAccount
from .token_transaction import TokenTransaction
from .module_activation import ModuleActivation
from .voucher import VoucherCode, VoucherUsage
