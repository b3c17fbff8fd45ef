"""seed module registry

Revision ID: 20261005_000002
Revises: 20261005_000001
Create Date: 2026-10-05 00:00:02.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261005_000002"
down_revision: Union[str, None] = "20261005_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


MODULE_KEYS = ("dashboard", "settings", "family_members", "income", "assets", "expenses")


def upgrade() -> None:
    modules = sa.table(
        "modules",
        sa.column("module_key", sa.String),
        sa.column("name", sa.String),
        sa.column("description", sa.Text),
        sa.column("category", sa.String),
        sa.column("display_order", sa.Integer),
        sa.column("is_active", sa.Boolean),
    )
    op.bulk_insert(
        modules,
        [
            {"module_key": "dashboard", "name": "Dashboard", "description": "Household overview and key figures", "category": "free", "display_order": 0, "is_active": True},
            {"module_key": "settings", "name": "Settings", "description": "Account, security and preference settings", "category": "free", "display_order": 0, "is_active": True},
            {"module_key": "family_members", "name": "Family Members", "description": "Manage household members and invitations", "category": "free", "display_order": 0, "is_active": True},
            {"module_key": "income", "name": "Income Management", "description": "Track and manage income sources, transactions, and financial records", "category": "premium", "display_order": 1, "is_active": True},
            {"module_key": "assets", "name": "Assets Management", "description": "Manage and track your assets, valuations, and ownership", "category": "premium", "display_order": 2, "is_active": True},
            {"module_key": "expenses", "name": "Expenses Management", "description": "Track and manage household expenses", "category": "premium", "display_order": 3, "is_active": True},
        ],
    )


def downgrade() -> None:
    modules = sa.table("modules", sa.column("module_key", sa.String))
    op.execute(modules.delete().where(modules.c.module_key.in_(MODULE_KEYS)))
