"""Initial panel schema

Revision ID: 5c2e9a1f7b30
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5c2e9a1f7b30"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create every panel table."""

    # --- accounts ---
    op.create_table(
        "custom_users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("username", sa.String(100), nullable=True),
        sa.Column("password_hash", sa.Text, nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="user"),
        sa.Column("email_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("banned", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("ban_reason", sa.Text, nullable=True),
        sa.Column("discord_id", sa.String(32), nullable=True),
        sa.Column("discord_username", sa.String(100), nullable=True),
        sa.Column("last_login", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_custom_users_role", "custom_users", ["role"])

    op.create_table(
        "user_sessions",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.String(36),
            sa.ForeignKey("custom_users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("session_token", sa.String(128), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        _created_at(),
        sa.Column(
            "last_accessed", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_user_sessions_user", "user_sessions", ["user_id"])
    op.create_index("ix_user_sessions_expires", "user_sessions", ["expires_at"])

    op.create_table(
        "email_verification_tokens",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.String(36),
            sa.ForeignKey("custom_users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("token", sa.String(128), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
    )

    # --- staff roles & permissions ---
    op.create_table(
        "staff_roles",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(50), nullable=False, unique=True),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("color", sa.String(7), nullable=True),
        sa.Column("hierarchy_level", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_table(
        "permissions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
    )
    op.create_table(
        "role_permissions",
        sa.Column(
            "role_id", sa.Integer,
            sa.ForeignKey("staff_roles.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "permission_id", sa.Integer,
            sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True,
        ),
    )
    op.create_table(
        "user_role_assignments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.String(36),
            sa.ForeignKey("custom_users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "role_id", sa.Integer,
            sa.ForeignKey("staff_roles.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("assigned_by", sa.String(36), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column(
            "assigned_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("user_id", "role_id", name="uq_user_role_assignment"),
    )

    # --- applications ---
    op.create_table(
        "application_types",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("form_fields", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_table(
        "applications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.String(36),
            sa.ForeignKey("custom_users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "application_type_id", sa.Integer,
            sa.ForeignKey("application_types.id"), nullable=False,
        ),
        sa.Column("steam_name", sa.String(100), nullable=True),
        sa.Column("discord_name", sa.String(100), nullable=True),
        sa.Column("fivem_name", sa.String(100), nullable=True),
        sa.Column("form_data", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("review_notes", sa.Text, nullable=True),
        sa.Column("reviewed_by", sa.String(36), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_by", sa.String(36), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_applications_status", "applications", ["status", "created_at"])
    op.create_index("ix_applications_user", "applications", ["user_id", "application_type_id"])

    op.create_table(
        "application_rate_limits",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("ip_address", sa.String(45), nullable=False),
        sa.Column("submission_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column(
            "window_start", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_application_rate_limits_ip", "application_rate_limits", ["ip_address", "window_start"],
    )

    # --- site content ---
    op.create_table(
        "rules",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("category", sa.String(100), nullable=False, server_default="General"),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        sa.Column("order_index", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(36), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_table(
        "partners",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("logo_url", sa.Text, nullable=True),
        sa.Column("website_url", sa.Text, nullable=True),
        sa.Column("discord_url", sa.Text, nullable=True),
        sa.Column("order_index", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(36), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_table(
        "team_members",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("role", sa.String(100), nullable=False, server_default=""),
        sa.Column(
            "staff_role_id", sa.Integer,
            sa.ForeignKey("staff_roles.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("bio", sa.Text, nullable=True),
        sa.Column("image_url", sa.Text, nullable=True),
        sa.Column("discord", sa.String(100), nullable=True),
        sa.Column("order_index", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at(),
        _updated_at(),
    )
    op.create_table(
        "packages",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("price_amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("interval", sa.String(10), nullable=False, server_default="month"),
        sa.Column("features", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("image_url", sa.Text, nullable=True),
        sa.Column("order_index", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(36), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_table(
        "twitch_streamers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(50), nullable=False, unique=True),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("avatar_url", sa.Text, nullable=True),
        sa.Column("order_index", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(36), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_table(
        "canned_responses",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(100), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
        sa.Column("order_index", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(36), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_table(
        "email_templates",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("template_type", sa.String(50), nullable=False, unique=True),
        sa.Column("subject", sa.String(200), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(36), nullable=True),
        _created_at(),
        _updated_at(),
    )

    # --- live chat ---
    op.create_table(
        "chat_sessions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(36), nullable=True),
        sa.Column("visitor_name", sa.String(100), nullable=True),
        sa.Column("visitor_email", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="waiting"),
        sa.Column("assigned_to", sa.String(36), nullable=True),
        _created_at(),
        _updated_at(),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_chat_sessions_status_created", "chat_sessions", ["status", "created_at"])

    op.create_table(
        "chat_messages",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "session_id", sa.Integer,
            sa.ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("sender_type", sa.String(20), nullable=False),
        sa.Column("sender_id", sa.String(36), nullable=True),
        sa.Column("message", sa.Text, nullable=False),
        _created_at(),
    )
    op.create_table(
        "missed_chats",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "session_id", sa.Integer,
            sa.ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("visitor_name", sa.String(100), nullable=True),
        sa.Column("visitor_email", sa.String(255), nullable=True),
        sa.Column("wait_time_minutes", sa.Integer, nullable=False),
        sa.Column("notified_staff", sa.Boolean, nullable=False, server_default=sa.false()),
        _created_at(),
        sa.UniqueConstraint("session_id", name="uq_missed_chats_session"),
    )
    op.create_table(
        "chat_analytics",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.Integer, nullable=True),
        sa.Column("metric_type", sa.String(50), nullable=False),
        sa.Column("metric_value", sa.Float, nullable=False, server_default="0"),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        _created_at(),
    )
    op.create_index("ix_chat_analytics_type_time", "chat_analytics", ["metric_type", "created_at"])

    # --- settings & server state ---
    op.create_table(
        "server_settings",
        sa.Column("setting_key", sa.String(100), primary_key=True),
        sa.Column("setting_value", postgresql.JSONB, nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("updated_by", sa.String(36), nullable=True),
        _updated_at(),
    )
    op.create_table(
        "server_stats",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("players_online", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_players", sa.Integer, nullable=False, server_default="0"),
        sa.Column("queue_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("uptime_percentage", sa.Float, nullable=False, server_default="0"),
        sa.Column("ping", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "last_updated", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_table(
        "server_performance_metrics",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("players_online", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_players", sa.Integer, nullable=False, server_default="0"),
        sa.Column("queue_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("ping", sa.Integer, nullable=False, server_default="0"),
        sa.Column("online", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "recorded_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_server_performance_recorded", "server_performance_metrics", ["recorded_at"])

    # --- security ---
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(36), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("resource_type", sa.String(50), nullable=False),
        sa.Column("resource_id", sa.String(100), nullable=True),
        sa.Column("old_values", postgresql.JSONB, nullable=True),
        sa.Column("new_values", postgresql.JSONB, nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        _created_at(),
    )
    op.create_index("ix_audit_logs_user_time", "audit_logs", ["user_id", "created_at"])
    op.create_index(
        "ix_audit_logs_resource", "audit_logs", ["resource_type", "resource_id", "created_at"],
    )

    op.create_table(
        "failed_login_attempts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("ip_address", sa.String(45), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("first_attempt", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_attempt", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("blocked_until", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_failed_login_ip_first", "failed_login_attempts", ["ip_address", "first_attempt"])

    # --- votes ---
    op.create_table(
        "community_votes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("options", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(36), nullable=True),
        _created_at(),
    )
    op.create_table(
        "community_vote_responses",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "vote_id", sa.Integer,
            sa.ForeignKey("community_votes.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("selected_option", sa.String(200), nullable=False),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("vote_id", "user_id", name="uq_vote_response_user"),
    )

    # --- finance ---
    op.create_table(
        "financial_metrics",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("metric_type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("stripe_payment_id", sa.String(100), nullable=True),
        sa.Column("customer_email", sa.String(255), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        sa.Column(
            "recorded_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("stripe_payment_id", "metric_type", name="uq_financial_stripe_type"),
    )
    op.create_index(
        "ix_financial_metrics_type_time", "financial_metrics", ["metric_type", "recorded_at"],
    )

    # --- durable auth / throttle state ---
    op.create_table(
        "oauth_states",
        sa.Column("state", sa.String(128), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        _created_at(),
    )
    op.create_index("ix_oauth_states_created_at", "oauth_states", ["created_at"])

    op.create_table(
        "staff_rate_limit_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("staff_id", sa.String(64), nullable=False),
        sa.Column(
            "timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_staff_rate_limit_staff_ts",
        "staff_rate_limit_events",
        ["staff_id", sa.text("timestamp DESC")],
    )
    op.create_index("ix_staff_rate_limit_ts", "staff_rate_limit_events", ["timestamp"])


def downgrade() -> None:
    """Drop every panel table, children first."""
    for table in (
        "staff_rate_limit_events",
        "oauth_states",
        "financial_metrics",
        "community_vote_responses",
        "community_votes",
        "failed_login_attempts",
        "audit_logs",
        "server_performance_metrics",
        "server_stats",
        "server_settings",
        "chat_analytics",
        "missed_chats",
        "chat_messages",
        "chat_sessions",
        "email_templates",
        "canned_responses",
        "twitch_streamers",
        "packages",
        "team_members",
        "partners",
        "rules",
        "application_rate_limits",
        "applications",
        "application_types",
        "user_role_assignments",
        "role_permissions",
        "permissions",
        "staff_roles",
        "email_verification_tokens",
        "user_sessions",
        "custom_users",
    ):
        op.drop_table(table)
