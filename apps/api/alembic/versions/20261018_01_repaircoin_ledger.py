"""Create customer, shop, ledger and redemption session tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


transaction_type = sa.Enum("mint", "redeem", name="transaction_type")
transaction_status = sa.Enum("pending", "confirmed", "failed", name="transaction_status")
transaction_origin = sa.Enum("shop_reward", "wallet_direct_mint", "redemption", name="transaction_origin")
redemption_session_status = sa.Enum(
    "pending", "approved", "used", "expired", "rejected", name="redemption_session_status"
)


def upgrade() -> None:
    op.create_table(
        "shops",
        sa.Column("shop_id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("wallet_address", sa.String(64), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "customers",
        sa.Column("address", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("lifetime_earnings", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total_redemptions", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("pending_mint_balance", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("daily_earnings", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("monthly_earnings", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("last_earned_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("address = lower(address)", name="ck_customers_address_lowercase"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("status", transaction_status, nullable=False, server_default="confirmed"),
        sa.Column("origin", transaction_origin, nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column(
            "customer_address",
            sa.String(64),
            sa.ForeignKey("customers.address", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("shop_id", sa.String(64), sa.ForeignKey("shops.shop_id"), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("transaction_hash", sa.String(128), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("amount >= 0", name="ck_transactions_amount_non_negative"),
    )
    op.create_index("ix_transactions_customer_address", "transactions", ["customer_address"])
    op.create_index("ix_transactions_shop_id", "transactions", ["shop_id"])
    op.create_index(
        "ix_transactions_customer_type_status",
        "transactions",
        ["customer_address", "type", "status"],
    )

    op.create_table(
        "redemption_sessions",
        sa.Column("session_id", sa.String(64), primary_key=True),
        sa.Column(
            "customer_address",
            sa.String(64),
            sa.ForeignKey("customers.address", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("shop_id", sa.String(64), sa.ForeignKey("shops.shop_id"), nullable=False),
        sa.Column("max_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("status", redemption_session_status, nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signature", sa.String(256), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
    )
    op.create_index("ix_redemption_sessions_customer_address", "redemption_sessions", ["customer_address"])
    op.create_index("ix_redemption_sessions_shop_id", "redemption_sessions", ["shop_id"])
    op.create_index(
        "ix_redemption_sessions_customer_shop_status",
        "redemption_sessions",
        ["customer_address", "shop_id", "status"],
    )


def downgrade() -> None:
    op.drop_index("ix_redemption_sessions_customer_shop_status", table_name="redemption_sessions")
    op.drop_index("ix_redemption_sessions_shop_id", table_name="redemption_sessions")
    op.drop_index("ix_redemption_sessions_customer_address", table_name="redemption_sessions")
    op.drop_table("redemption_sessions")
    op.drop_index("ix_transactions_customer_type_status", table_name="transactions")
    op.drop_index("ix_transactions_shop_id", table_name="transactions")
    op.drop_index("ix_transactions_customer_address", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("customers")
    op.drop_table("shops")
    bind = op.get_bind()
    redemption_session_status.drop(bind, checkfirst=True)
    transaction_origin.drop(bind, checkfirst=True)
    transaction_status.drop(bind, checkfirst=True)
    transaction_type.drop(bind, checkfirst=True)
