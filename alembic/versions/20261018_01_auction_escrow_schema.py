"""auction and escrow schema

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name: str, nullable: bool = False, **kwargs) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=nullable, **kwargs)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_id", "users", ["id"], unique=False)
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "seller_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("processor_account_id", sa.String(length=255), nullable=True),
        sa.Column("payouts_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sales_count", sa.Integer(), nullable=False, server_default="0"),
        _money("total_revenue", server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_seller_accounts_id", "seller_accounts", ["id"], unique=False)

    op.create_table(
        "auctions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        _money("starting_bid"),
        _money("current_bid", nullable=True),
        sa.Column("current_bidder_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("bid_count", sa.Integer(), nullable=False, server_default="0"),
        _money("minimum_bid_increment", server_default="1"),
        _money("reserve_price", nullable=True),
        sa.Column("reserve_met", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("mode", sa.String(length=20), nullable=False, server_default="normal"),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("original_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("timer_extensions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_timer_extensions", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("winner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_auctions_id", "auctions", ["id"], unique=False)
    op.create_index("ix_auctions_seller_id", "auctions", ["seller_id"], unique=False)
    op.create_index("ix_auctions_status", "auctions", ["status"], unique=False)
    op.create_index("ix_auctions_ends_at", "auctions", ["ends_at"], unique=False)

    op.create_table(
        "bids",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("auction_id", sa.Integer(), sa.ForeignKey("auctions.id"), nullable=False),
        sa.Column("bidder_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        _money("amount"),
        sa.Column("is_winning", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_proxy", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_bids_id", "bids", ["id"], unique=False)
    op.create_index("ix_bids_auction_id", "bids", ["auction_id"], unique=False)
    op.create_index("ix_bids_bidder_id", "bids", ["bidder_id"], unique=False)
    op.create_index("ix_bids_created_at", "bids", ["created_at"], unique=False)

    op.create_table(
        "proxy_bids",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("auction_id", sa.Integer(), sa.ForeignKey("auctions.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        _money("max_amount"),
        _money("current_proxy_amount", nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("auction_id", "user_id", name="uq_proxy_bids_auction_user"),
    )
    op.create_index("ix_proxy_bids_id", "proxy_bids", ["id"], unique=False)
    op.create_index("ix_proxy_bids_auction_id", "proxy_bids", ["auction_id"], unique=False)
    op.create_index("ix_proxy_bids_user_id", "proxy_bids", ["user_id"], unique=False)

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("auction_id", sa.Integer(), sa.ForeignKey("auctions.id"), nullable=True, unique=True),
        _money("total"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("processor_payment_ref", sa.String(length=255), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_orders_id", "orders", ["id"], unique=False)
    op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"], unique=False)
    op.create_index("ix_orders_seller_id", "orders", ["seller_id"], unique=False)

    op.create_table(
        "escrow_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        _money("amount"),
        _money("platform_fee"),
        _money("seller_amount"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("processor_hold_ref", sa.String(length=255), nullable=False),
        sa.Column("processor_transfer_ref", sa.String(length=255), nullable=True),
        sa.Column("processor_refund_ref", sa.String(length=255), nullable=True),
        sa.Column("held_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("release_scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("release_reason", sa.String(length=100), nullable=True),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("dispute_ref", sa.String(length=255), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_escrow_transactions_id", "escrow_transactions", ["id"], unique=False)
    op.create_index("ix_escrow_transactions_order_id", "escrow_transactions", ["order_id"], unique=False)
    op.create_index("ix_escrow_transactions_buyer_id", "escrow_transactions", ["buyer_id"], unique=False)
    op.create_index("ix_escrow_transactions_seller_id", "escrow_transactions", ["seller_id"], unique=False)
    op.create_index("ix_escrow_transactions_status", "escrow_transactions", ["status"], unique=False)
    op.create_index(
        "ix_escrow_transactions_processor_hold_ref",
        "escrow_transactions",
        ["processor_hold_ref"],
        unique=True,
    )
    op.create_index(
        "ix_escrow_transactions_release_scheduled_at",
        "escrow_transactions",
        ["release_scheduled_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("escrow_transactions")
    op.drop_table("orders")
    op.drop_table("proxy_bids")
    op.drop_table("bids")
    op.drop_table("auctions")
    op.drop_table("seller_accounts")
    op.drop_table("users")
