"""Routers package."""

from . import (
    health,
    tokens,
    vouchers,
    modules,
    admin,
)
