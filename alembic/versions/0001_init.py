"""init tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


UTC_NOW = sa.text("timezone('utc', now())")

ENUMS = {
    "split_type": ("equal", "percentage", "custom"),
    "settlement_status": ("pending", "confirmed", "disputed"),
    "payment_method": ("cash", "upi", "card", "bank_transfer", "other"),
    "friendship_status": ("pending", "accepted", "declined", "blocked", "archived"),
    "pair_direction": ("first_owes", "second_owes", "settled"),
}


def _enum(name: str) -> postgresql.ENUM:
    # Created explicitly below with checkfirst=True, never implicitly by table DDL.
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    bind = op.get_bind()
    for name in ENUMS:
        _enum(name).create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("username", sa.String(length=64), nullable=True),
        sa.Column("tg_user_id", sa.BigInteger(), nullable=True),
        sa.Column("notifications_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=UTC_NOW, nullable=False),
        sa.UniqueConstraint("tg_user_id", name="uq_users_tg_user_id"),
    )

    op.create_table(
        "friendships",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("requester_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("recipient_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", _enum("friendship_status"), server_default="pending", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=UTC_NOW, nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("requester_id", "recipient_id", name="uq_friendships_pair"),
    )
    op.create_index("ix_friendships_recipient_status", "friendships", ["recipient_id", "status"])

    op.create_table(
        "groups",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("created_by_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("total_expenses", sa.Numeric(12, 2), server_default="0", nullable=False),
        sa.Column("is_settled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=UTC_NOW, nullable=False),
    )

    op.create_table(
        "group_members",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("group_id", sa.BigInteger(), sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("net_balance", sa.Numeric(12, 2), server_default="0", nullable=False),
        sa.Column("balance_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("joined_at", sa.DateTime(timezone=True), server_default=UTC_NOW, nullable=False),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_members_group_user"),
    )
    op.create_index("ix_group_members_user_id", "group_members", ["user_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=UTC_NOW, nullable=False),
        sa.Column("is_deleted", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_shared", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("paid_by_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("split_type", _enum("split_type"), nullable=True),
        sa.Column("group_id", sa.BigInteger(), sa.ForeignKey("groups.id", ondelete="SET NULL"), nullable=True),
    )
    op.create_index("ix_transactions_paid_by_id", "transactions", ["paid_by_id"])
    op.create_index("ix_transactions_group_id", "transactions", ["group_id"])

    op.create_table(
        "split_shares",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "transaction_id",
            sa.BigInteger(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=True),
        sa.Column("external_name", sa.String(length=255), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("percentage", sa.Numeric(7, 4), nullable=True),
        sa.Column("settled", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("(user_id IS NULL) != (external_name IS NULL)", name="ck_split_shares_identity"),
    )
    op.create_index("ix_split_shares_transaction_id", "split_shares", ["transaction_id"])
    op.create_index("ix_split_shares_user_id", "split_shares", ["user_id"])

    op.create_table(
        "settlements",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("payer_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("recipient_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("payment_method", _enum("payment_method"), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", _enum("settlement_status"), server_default="pending", nullable=False),
        sa.Column("date", sa.DateTime(timezone=True), server_default=UTC_NOW, nullable=False),
        sa.Column("group_id", sa.BigInteger(), sa.ForeignKey("groups.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=UTC_NOW, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=UTC_NOW, nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_by_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("dispute_reason", sa.String(length=500), nullable=True),
        sa.Column("disputed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disputed_by_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=True),
        sa.CheckConstraint("payer_id != recipient_id", name="ck_settlements_distinct_parties"),
        sa.CheckConstraint("amount > 0", name="ck_settlements_positive_amount"),
    )
    op.create_index("ix_settlements_pair", "settlements", ["payer_id", "recipient_id"])
    op.create_index("ix_settlements_recipient_status", "settlements", ["recipient_id", "status"])
    op.create_index("ix_settlements_group_id", "settlements", ["group_id"])

    op.create_table(
        "settlement_transactions",
        sa.Column(
            "settlement_id",
            sa.BigInteger(),
            sa.ForeignKey("settlements.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "transaction_id",
            sa.BigInteger(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )

    op.create_table(
        "pair_balances",
        sa.Column("first_user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("second_user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("amount", sa.Numeric(12, 2), server_default="0", nullable=False),
        sa.Column("direction", _enum("pair_direction"), server_default="settled", nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), server_default=UTC_NOW, nullable=False),
        sa.CheckConstraint("first_user_id < second_user_id", name="ck_pair_balances_canonical"),
    )


def downgrade() -> None:
    op.drop_table("pair_balances")
    op.drop_table("settlement_transactions")

    op.drop_index("ix_settlements_group_id", table_name="settlements")
    op.drop_index("ix_settlements_recipient_status", table_name="settlements")
    op.drop_index("ix_settlements_pair", table_name="settlements")
    op.drop_table("settlements")

    op.drop_index("ix_split_shares_user_id", table_name="split_shares")
    op.drop_index("ix_split_shares_transaction_id", table_name="split_shares")
    op.drop_table("split_shares")

    op.drop_index("ix_transactions_group_id", table_name="transactions")
    op.drop_index("ix_transactions_paid_by_id", table_name="transactions")
    op.drop_table("transactions")

    op.drop_index("ix_group_members_user_id", table_name="group_members")
    op.drop_table("group_members")
    op.drop_table("groups")

    op.drop_index("ix_friendships_recipient_status", table_name="friendships")
    op.drop_table("friendships")
    op.drop_table("users")

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        _enum(name).drop(bind, checkfirst=True)
