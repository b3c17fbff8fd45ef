"""create users, module registry and token ledger schema

Revision ID: 20261005_000001
Revises:
Create Date: 2026-10-05 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261005_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "modules",
        sa.Column("module_key", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("module_key"),
    )

    op.create_table(
        "user_token_account",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("balance", sa.Numeric(10, 2), nullable=False),
        sa.Column("total_purchased", sa.Numeric(10, 2), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("balance >= 0", name="ck_user_token_account_balance_non_negative"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_user_token_account_user_id"), "user_token_account", ["user_id"], unique=True)

    op.create_table(
        "voucher_codes",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("code", sa.String(length=50), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("discount_percentage", sa.Integer(), nullable=False),
        sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("minimum_purchase", sa.Numeric(10, 2), nullable=True),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("used_count", sa.Integer(), nullable=False),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_voucher_codes_code"), "voucher_codes", ["code"], unique=True)
    op.create_index("ix_voucher_codes_active_valid_until", "voucher_codes", ["is_active", "valid_until"], unique=False)

    op.create_table(
        "voucher_usages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("voucher_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("tokens_purchased", sa.Integer(), nullable=False),
        sa.Column("original_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("discount_applied", sa.Numeric(10, 2), nullable=False),
        sa.Column("final_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["voucher_id"], ["voucher_codes.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_voucher_usages_user_id"), "voucher_usages", ["user_id"], unique=False)
    op.create_index("ix_voucher_usages_voucher_user", "voucher_usages", ["voucher_id", "user_id"], unique=False)

    op.create_table(
        "token_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(length=50), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("balance_before", sa.Numeric(10, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(10, 2), nullable=False),
        sa.Column("reference_type", sa.String(length=50), nullable=True),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("voucher_id", sa.Integer(), nullable=True),
        sa.Column("voucher_discount", sa.Numeric(10, 2), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("processed_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["voucher_id"], ["voucher_codes.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["processed_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_token_transactions_user_id"), "token_transactions", ["user_id"], unique=False)
    op.create_index(op.f("ix_token_transactions_transaction_type"), "token_transactions", ["transaction_type"], unique=False)
    op.create_index(op.f("ix_token_transactions_created_at"), "token_transactions", ["created_at"], unique=False)
    op.create_index("ix_token_transactions_user_created", "token_transactions", ["user_id", "created_at"], unique=False)

    op.create_table(
        "module_activations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("module_key", sa.String(length=50), nullable=False),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("activation_order", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("token_used", sa.Numeric(10, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["module_key"], ["modules.module_key"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_module_activations_user_id"), "module_activations", ["user_id"], unique=False)
    op.create_index(op.f("ix_module_activations_module_key"), "module_activations", ["module_key"], unique=False)
    op.create_index(op.f("ix_module_activations_expires_at"), "module_activations", ["expires_at"], unique=False)
    op.create_index(
        "ix_module_activations_user_active_expires",
        "module_activations",
        ["user_id", "is_active", "expires_at"],
        unique=False,
    )
    op.create_index(
        "ix_module_activations_user_module_expires",
        "module_activations",
        ["user_id", "module_key", "expires_at"],
        unique=False,
    )
    op.create_index(
        "uq_module_activations_user_module_active",
        "module_activations",
        ["user_id", "module_key"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )


def downgrade() -> None:
    op.drop_index("uq_module_activations_user_module_active", table_name="module_activations")
    op.drop_index("ix_module_activations_user_module_expires", table_name="module_activations")
    op.drop_index("ix_module_activations_user_active_expires", table_name="module_activations")
    op.drop_index(op.f("ix_module_activations_expires_at"), table_name="module_activations")
    op.drop_index(op.f("ix_module_activations_module_key"), table_name="module_activations")
    op.drop_index(op.f("ix_module_activations_user_id"), table_name="module_activations")
    op.drop_table("module_activations")
    op.drop_index("ix_token_transactions_user_created", table_name="token_transactions")
    op.drop_index(op.f("ix_token_transactions_created_at"), table_name="token_transactions")
    op.drop_index(op.f("ix_token_transactions_transaction_type"), table_name="token_transactions")
    op.drop_index(op.f("ix_token_transactions_user_id"), table_name="token_transactions")
    op.drop_table("token_transactions")
    op.drop_index("ix_voucher_usages_voucher_user", table_name="voucher_usages")
    op.drop_index(op.f("ix_voucher_usages_user_id"), table_name="voucher_usages")
    op.drop_table("voucher_usages")
    op.drop_index("ix_voucher_codes_active_valid_until", table_name="voucher_codes")
    op.drop_index(op.f("ix_voucher_codes_code"), table_name="voucher_codes")
    op.drop_table("voucher_codes")
    op.drop_index(op.f("ix_user_token_account_user_id"), table_name="user_token_account")
    op.drop_table("user_token_account")
    op.drop_table("modules")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
