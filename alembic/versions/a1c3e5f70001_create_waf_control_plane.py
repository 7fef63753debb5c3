"""create waf control plane tables

Revision ID: a1c3e5f70001
Revises:
Create Date: 2026-10-19 11:02:13.418220

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "a1c3e5f70001"
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _rule_table(name: str, subject_col: sa.Column) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("action", sa.String(length=8), nullable=False, server_default="deny"),
        subject_col,
        sa.Column("note", sa.String(length=255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("modified_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def upgrade() -> None:
    # --- reglas ---
    _rule_table("waf_ip_rules", sa.Column("ip_cidr", sa.String(length=64), nullable=False))
    op.create_index("ix_waf_ip_rules_enabled_action", "waf_ip_rules", ["enabled", "action"])
    op.create_index("ix_waf_ip_rules_ip_cidr_action", "waf_ip_rules", ["ip_cidr", "action"])

    _rule_table("waf_country_rules", sa.Column("country_code", sa.String(length=2), nullable=False))
    op.create_index("ix_waf_country_rules_enabled_action", "waf_country_rules", ["enabled", "action"])
    op.create_index("ix_waf_country_rules_country_action", "waf_country_rules", ["country_code", "action"])

    # --- settings (singleton id=1) ---
    op.create_table(
        "waf_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("bot_defense_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ddos_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sqli_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auth_bypass_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("log_retention_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("ddos_rate_rps", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("ddos_burst", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("ddos_conn_limit", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("bot_ua_tokens", sa.Text(), nullable=True),
        sa.Column("bot_path_tokens", sa.Text(), nullable=True),
        sa.Column("sqli_threshold", sa.Integer(), nullable=False, server_default="8"),
        sa.Column("sqli_max_body", sa.Integer(), nullable=False, server_default="65536"),
        sa.Column("sqli_probe_min_score", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("sqli_probe_ban_score", sa.Integer(), nullable=False, server_default="20"),
        sa.Column("sqli_probe_window_sec", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("authfail_threshold", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("authfail_window_sec", sa.Integer(), nullable=False, server_default="180"),
        sa.Column("authfail_ban_hours", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("autoban_threshold", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("autoban_window_sec", sa.Integer(), nullable=False, server_default="180"),
        sa.Column("autoban_ban_hours", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("trusted_proxy_ranges", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("modified_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # --- eventos ---
    op.create_table(
        "waf_attack_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("attack_type", sa.String(length=16), nullable=False),
        sa.Column("ip", sa.String(length=64), nullable=False),
        sa.Column("host", sa.String(length=255), nullable=True),
        sa.Column("method", sa.String(length=16), nullable=True),
        sa.Column("uri", sa.Text(), nullable=True),
        sa.Column("status", sa.Integer(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("referer", sa.Text(), nullable=True),
        sa.Column("authenticated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("country_code", sa.String(length=8), nullable=True),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("fingerprint", name="uq_waf_attack_events_fingerprint"),
    )
    op.create_index("ix_waf_attack_events_occurred_at", "waf_attack_events", ["occurred_at"])
    op.create_index("ix_waf_attack_events_type_occurred_at", "waf_attack_events", ["attack_type", "occurred_at"])
    op.create_index("ix_waf_attack_events_ip_occurred_at", "waf_attack_events", ["ip", "occurred_at"])

    op.create_table(
        "waf_threat_events",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("app_id", sa.Integer(), nullable=True),
        sa.Column("route_id", sa.Integer(), nullable=True),
        sa.Column("category", sa.String(length=16), nullable=False),
        sa.Column("rule_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=8), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=False),
        sa.Column("src_ip", sa.String(length=45), nullable=True),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("meta", _json(), nullable=True),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.UniqueConstraint("fingerprint", name="uq_waf_threat_events_fingerprint"),
    )
    op.create_index("ix_waf_threat_events_ts", "waf_threat_events", ["ts"])
    op.create_index("ix_waf_threat_events_app_ts", "waf_threat_events", ["app_id", "ts"])
    op.create_index("ix_waf_threat_events_category_ts", "waf_threat_events", ["category", "ts"])

    op.create_table(
        "waf_ingest_cursors",
        sa.Column("log_path", sa.String(length=512), primary_key=True),
        sa.Column("inode", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("byte_offset", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("modified_at", sa.DateTime(timezone=True), nullable=True),
    )

    # --- politicas ---
    op.create_table(
        "waf_policy_sets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("scope", sa.String(length=16), nullable=False),
        sa.Column("app_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_waf_policy_sets_app_id", "waf_policy_sets", ["app_id"])
    op.create_index("ix_waf_policy_sets_scope_app", "waf_policy_sets", ["scope", "app_id"])

    op.create_table(
        "waf_policy_versions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "policy_set_id",
            sa.Integer(),
            sa.ForeignKey("waf_policy_sets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("policy_json", _json(), nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("policy_set_id", "version", name="uq_waf_policy_versions_set_version"),
    )
    op.create_index("ix_waf_policy_versions_set_active", "waf_policy_versions", ["policy_set_id", "is_active"])

    op.create_table(
        "waf_policy_bindings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("app_id", sa.Integer(), nullable=False),
        sa.Column(
            "policy_set_id",
            sa.Integer(),
            sa.ForeignKey("waf_policy_sets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_waf_policy_bindings_app_enabled", "waf_policy_bindings", ["app_id", "enabled"])


def downgrade() -> None:
    op.drop_index("ix_waf_policy_bindings_app_enabled", table_name="waf_policy_bindings")
    op.drop_table("waf_policy_bindings")
    op.drop_index("ix_waf_policy_versions_set_active", table_name="waf_policy_versions")
    op.drop_table("waf_policy_versions")
    op.drop_index("ix_waf_policy_sets_scope_app", table_name="waf_policy_sets")
    op.drop_index("ix_waf_policy_sets_app_id", table_name="waf_policy_sets")
    op.drop_table("waf_policy_sets")

    op.drop_table("waf_ingest_cursors")
    op.drop_index("ix_waf_threat_events_category_ts", table_name="waf_threat_events")
    op.drop_index("ix_waf_threat_events_app_ts", table_name="waf_threat_events")
    op.drop_index("ix_waf_threat_events_ts", table_name="waf_threat_events")
    op.drop_table("waf_threat_events")
    op.drop_index("ix_waf_attack_events_ip_occurred_at", table_name="waf_attack_events")
    op.drop_index("ix_waf_attack_events_type_occurred_at", table_name="waf_attack_events")
    op.drop_index("ix_waf_attack_events_occurred_at", table_name="waf_attack_events")
    op.drop_table("waf_attack_events")

    op.drop_table("waf_settings")

    op.drop_index("ix_waf_country_rules_country_action", table_name="waf_country_rules")
    op.drop_index("ix_waf_country_rules_enabled_action", table_name="waf_country_rules")
    op.drop_table("waf_country_rules")
    op.drop_index("ix_waf_ip_rules_ip_cidr_action", table_name="waf_ip_rules")
    op.drop_index("ix_waf_ip_rules_enabled_action", table_name="waf_ip_rules")
    op.drop_table("waf_ip_rules")
