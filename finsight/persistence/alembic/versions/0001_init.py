"""init quota and retention schema

Revision ID: 0001_init
Revises:
Create Date: 2026-09-14 09:30:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from finsight.core.config import SYSTEM_ACTOR_ID

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), **kwargs)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="user"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        _ts("marked_for_deletion_at", nullable=True),
        _ts("inactivity_warning_date", nullable=True),
        sa.Column("deletion_reason", sa.Text(), nullable=True),
        sa.Column("data_retention_preferences", postgresql.JSONB(), nullable=True),
        sa.Column("two_factor_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("last_login_at", nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        # Status and mark timestamp move together.
        sa.CheckConstraint(
            "(marked_for_deletion_at IS NULL) = (status <> 'marked_for_deletion')",
            name="ck_users_mark_consistent",
        ),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_status", "users", ["status"])

    op.create_table(
        "clients",
        sa.Column("client_id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("api_key_hash", sa.String(), nullable=True, unique=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("status_reason", sa.Text(), nullable=True),
        _ts("status_changed_at", nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_quota", sa.Integer(), nullable=False, server_default="1000"),
        _ts("reset_date", nullable=False),
        _ts("last_reset_date", nullable=True),
        _ts("last_used_at", nullable=True),
        sa.Column("last_notified_threshold", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("previous_usage", sa.Integer(), nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        sa.CheckConstraint("usage_count >= 0", name="ck_clients_usage_count_non_negative"),
        sa.CheckConstraint("usage_quota >= 0", name="ck_clients_usage_quota_non_negative"),
    )
    op.create_index("ix_clients_user_id", "clients", ["user_id"])
    op.create_index("ix_clients_status_reset_date", "clients", ["status", "reset_date"])

    op.create_table(
        "auth_tokens",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("client_id", sa.String(), sa.ForeignKey("clients.client_id"), nullable=True),
        sa.Column("token_hash", sa.String(), nullable=False),
        sa.Column("token_type", sa.String(), nullable=False, server_default="access"),
        sa.Column("two_factor_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("expires_at", nullable=True),
        _ts("revoked_at", nullable=True),
        _ts("created_at", server_default=sa.func.now()),
    )
    op.create_index("ix_auth_tokens_token_hash", "auth_tokens", ["token_hash"], unique=True)
    op.create_index("ix_auth_tokens_user_id", "auth_tokens", ["user_id"])
    op.create_index("ix_auth_tokens_client_id", "auth_tokens", ["client_id"])

    op.create_table(
        "plaid_items",
        sa.Column("item_id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("institution_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("access_token_hash", sa.String(), nullable=True),
        _ts("disconnected_at", nullable=True),
        _ts("deletion_scheduled_at", nullable=True),
        _ts("created_at", server_default=sa.func.now()),
    )
    op.create_index("ix_plaid_items_user_id", "plaid_items", ["user_id"])

    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("plaid_item_id", sa.String(), sa.ForeignKey("plaid_items.item_id"), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("account_type", sa.String(), nullable=True),
        sa.Column("current_balance", sa.Numeric(14, 2), nullable=True),
        _ts("created_at", server_default=sa.func.now()),
    )
    op.create_index("ix_accounts_user_id", "accounts", ["user_id"])
    op.create_index("ix_accounts_plaid_item_id", "accounts", ["plaid_item_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        _ts("posted_at", nullable=False),
    )
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"])
    op.create_index("ix_transactions_account_id", "transactions", ["account_id"])
    op.create_index("ix_transactions_posted_at", "transactions", ["posted_at"])

    op.create_table(
        "insight_metrics",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("client_id", sa.String(), nullable=True),
        sa.Column("query_type", sa.String(), nullable=True),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        _ts("generated_at", nullable=False),
    )
    op.create_index("ix_insight_metrics_user_id", "insight_metrics", ["user_id"])
    op.create_index("ix_insight_metrics_generated_at", "insight_metrics", ["generated_at"])

    op.create_table(
        "spending_patterns",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("monthly_average", sa.Numeric(14, 2), nullable=True),
        _ts("computed_at", nullable=False),
    )
    op.create_index("ix_spending_patterns_user_id", "spending_patterns", ["user_id"])

    # Append-only audit tables; user_id on retention_logs outlives the user it names.
    op.create_table(
        "retention_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("actor_id", sa.String(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        _ts("timestamp", nullable=False),
    )
    op.create_index("ix_retention_logs_action", "retention_logs", ["action"])
    op.create_index("ix_retention_logs_timestamp", "retention_logs", ["timestamp"])
    op.create_index("ix_retention_logs_user_id", "retention_logs", ["user_id"])

    op.create_table(
        "admin_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("admin_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("target_type", sa.String(), nullable=True),
        sa.Column("target_id", sa.String(), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        _ts("timestamp", nullable=False),
    )
    op.create_index("ix_admin_logs_action", "admin_logs", ["action"])
    op.create_index("ix_admin_logs_timestamp", "admin_logs", ["timestamp"])
    op.create_index("ix_admin_logs_admin_id", "admin_logs", ["admin_id"])

    # Seed the sentinel that inherits audit rows of purged actors.
    op.execute(
        sa.text(
            "INSERT INTO users (id, email, name, role, status) "
            "VALUES (:id, 'system@finsight.internal', 'System', 'admin', 'inactive') "
            "ON CONFLICT (id) DO NOTHING"
        ).bindparams(id=SYSTEM_ACTOR_ID)
    )


def downgrade() -> None:
    op.drop_table("admin_logs")
    op.drop_table("retention_logs")
    op.drop_table("spending_patterns")
    op.drop_table("insight_metrics")
    op.drop_table("transactions")
    op.drop_table("accounts")
    op.drop_table("plaid_items")
    op.drop_table("auth_tokens")
    op.drop_table("clients")
    op.drop_table("users")
