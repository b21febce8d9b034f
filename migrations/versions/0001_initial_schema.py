"""initial schema: accounts, link requests, subscriptions, tracked events, macros

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Tables:
- accounts: one row per (user, nickname) with the OAuth credential
- link_requests: single-use OAuth state tokens
- subscriptions: watch channels keyed by channel ID; at most one active per account and calendar
- tracked_events: last seen version of each invite, for de-duplication
- macros: channel or conversation scoped text snippets
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables."""
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("nickname", sa.String(length=64), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scopes", sa.Text(), nullable=True),
        sa.Column("calendar_id", sa.String(length=255), nullable=True),
        sa.Column("subscription_lapsed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "nickname", name="uq_accounts_user_nickname"),
    )
    op.create_index("ix_accounts_user_id", "accounts", ["user_id"])

    op.create_table(
        "link_requests",
        sa.Column("token", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("nickname", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "subscriptions",
        sa.Column("channel_id", sa.String(length=64), primary_key=True),
        sa.Column(
            "account_id",
            sa.String(length=36),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("calendar_id", sa.String(length=255), nullable=False),
        sa.Column("resource_id", sa.String(length=255), nullable=True),
        sa.Column("verification_token", sa.String(length=128), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("renewal_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sync_token", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_account_id", "subscriptions", ["account_id"])
    op.create_index("ix_subscriptions_expires_at", "subscriptions", ["expires_at"])
    # Partial unique index: superseded rows may coexist with the active one during renewal
    op.create_index(
        "uq_subscriptions_active_account_calendar",
        "subscriptions",
        ["account_id", "calendar_id"],
        unique=True,
        sqlite_where=sa.text("status = 'active'"),
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "tracked_events",
        sa.Column(
            "account_id",
            sa.String(length=36),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("event_id", sa.String(length=1024), primary_key=True),
        sa.Column("updated", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
    )

    op.create_table(
        "macros",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("channel_name", sa.String(length=255), nullable=False),
        sa.Column("is_conv", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("macro_name", sa.String(length=255), nullable=False),
        sa.Column("macro_message", sa.Text(), nullable=False),
        sa.UniqueConstraint("channel_name", "is_conv", "macro_name", name="uq_macros_scope_name"),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("macros")
    op.drop_table("tracked_events")
    op.drop_index("uq_subscriptions_active_account_calendar", table_name="subscriptions")
    op.drop_index("ix_subscriptions_expires_at", table_name="subscriptions")
    op.drop_index("ix_subscriptions_account_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("link_requests")
    op.drop_index("ix_accounts_user_id", table_name="accounts")
    op.drop_table("accounts")
