"""Initial schema: nonces, receipts and the spend ledger.

Revision ID: 20261018_initial
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_initial"
down_revision = None
branch_labels = None
depends_on = None

USD = sa.Numeric(18, 6)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "used_nonces",
        *_timestamps(),
        sa.Column("nonce", sa.String(length=128), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("nonce"),
    )
    op.create_index("ix_used_nonces_expires_at", "used_nonces", ["expires_at"])

    op.create_table(
        "receipts",
        *_timestamps(),
        sa.Column("receipt_id", sa.String(length=64), nullable=False),
        sa.Column("call_id", sa.String(length=64), nullable=False),
        sa.Column("payment_ref", sa.String(length=64), nullable=False),
        sa.Column("endpoint", sa.String(length=512), nullable=False),
        sa.Column("amount_usd", USD, nullable=False),
        sa.Column("asset", sa.String(length=128), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("seller", sa.String(length=128), nullable=False),
        sa.Column("buyer", sa.String(length=128), nullable=False),
        sa.Column("nonce", sa.String(length=128), nullable=False),
        sa.Column("expiry", sa.DateTime(timezone=True), nullable=False),
        sa.Column("signature", sa.String(length=1024), nullable=False),
        sa.Column("request_hash", sa.String(length=64), nullable=False),
        sa.Column("response_hash", sa.String(length=64), nullable=False),
        sa.Column("settlement_ref", sa.String(length=128), nullable=True),
        sa.Column("verified", sa.Boolean(), nullable=False),
        sa.UniqueConstraint("receipt_id"),
        sa.UniqueConstraint("payment_ref"),
        sa.CheckConstraint("amount_usd >= 0", name="ck_receipts_non_negative_amount"),
    )
    op.create_index("ix_receipts_call_id", "receipts", ["call_id"])
    op.create_index("ix_receipts_created_at", "receipts", ["created_at"])
    op.create_index("ix_receipts_buyer", "receipts", ["buyer"])

    op.create_table(
        "calls",
        *_timestamps(),
        sa.Column("call_id", sa.String(length=64), nullable=False),
        sa.Column("caller_id", sa.String(length=128), nullable=False),
        sa.Column("endpoint", sa.String(length=512), nullable=False),
        sa.Column("method", sa.String(length=10), nullable=False),
        sa.Column("price_usd", USD, nullable=False),
        sa.Column("spend_date", sa.Date(), nullable=False),
        sa.Column("paid", sa.Boolean(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("BLOCKED", "ALLOWED", "RESERVED", "PAID", "RELEASED", name="call_status"),
            nullable=False,
        ),
        sa.Column("nonce", sa.String(length=128), nullable=True),
        sa.Column("payment_ref", sa.String(length=64), nullable=True),
        sa.UniqueConstraint("call_id"),
        sa.CheckConstraint("price_usd >= 0", name="ck_calls_non_negative_price"),
    )
    op.create_index("ix_calls_caller_day", "calls", ["caller_id", "spend_date"])
    op.create_index("ix_calls_endpoint", "calls", ["endpoint"])

    op.create_table(
        "policy_decisions",
        *_timestamps(),
        sa.Column("call_id", sa.String(length=64), sa.ForeignKey("calls.call_id"), nullable=False),
        sa.Column("caller_id", sa.String(length=128), nullable=False),
        sa.Column("policy_id", sa.String(length=128), nullable=False),
        sa.Column("allowed", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("rule_id", sa.String(length=64), nullable=False),
        sa.Column("projected_spend_usd", USD, nullable=False),
        sa.Column("daily_spent_usd", USD, nullable=False),
        sa.Column("weekly_spent_usd", USD, nullable=False),
        sa.Column("trace", sa.JSON(), nullable=False),
    )
    op.create_index("ix_policy_decisions_call_id", "policy_decisions", ["call_id"])
    op.create_index("ix_policy_decisions_caller_id", "policy_decisions", ["caller_id"])
    op.create_index("ix_policy_decisions_allowed", "policy_decisions", ["allowed"])

    op.create_table(
        "daily_spend",
        *_timestamps(),
        sa.Column("caller_id", sa.String(length=128), nullable=False),
        sa.Column("spend_date", sa.Date(), nullable=False),
        sa.Column("total_usd", USD, nullable=False),
        sa.Column("reserved_usd", USD, nullable=False),
        sa.Column("call_count", sa.Integer(), nullable=False),
        sa.Column("blocked_count", sa.Integer(), nullable=False),
        sa.UniqueConstraint("caller_id", "spend_date", name="uq_daily_spend_caller_date"),
        sa.CheckConstraint("total_usd >= 0", name="ck_daily_spend_non_negative_total"),
    )
    op.create_index("ix_daily_spend_caller_id", "daily_spend", ["caller_id"])
    op.create_index("ix_daily_spend_spend_date", "daily_spend", ["spend_date"])


def downgrade() -> None:
    op.drop_index("ix_daily_spend_spend_date", table_name="daily_spend")
    op.drop_index("ix_daily_spend_caller_id", table_name="daily_spend")
    op.drop_table("daily_spend")

    op.drop_index("ix_policy_decisions_allowed", table_name="policy_decisions")
    op.drop_index("ix_policy_decisions_caller_id", table_name="policy_decisions")
    op.drop_index("ix_policy_decisions_call_id", table_name="policy_decisions")
    op.drop_table("policy_decisions")

    op.drop_index("ix_calls_endpoint", table_name="calls")
    op.drop_index("ix_calls_caller_day", table_name="calls")
    op.drop_table("calls")
    sa.Enum(name="call_status").drop(op.get_bind(), checkfirst=True)

    op.drop_index("ix_receipts_buyer", table_name="receipts")
    op.drop_index("ix_receipts_created_at", table_name="receipts")
    op.drop_index("ix_receipts_call_id", table_name="receipts")
    op.drop_table("receipts")

    op.drop_index("ix_used_nonces_expires_at", table_name="used_nonces")
    op.drop_table("used_nonces")
