"""Create customers, punch card ledger, redemptions, settings, and referrals."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20250119_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid() -> sa.types.TypeEngine:
    return postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "customers",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("phone_number", sa.String(32), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("email", name=op.f("uq_customers_email")),
    )
    op.create_index(op.f("ix_customers_email"), "customers", ["email"])

    op.create_table(
        "customer_loyalty",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "customer_id",
            _uuid(),
            sa.ForeignKey("customers.id", ondelete="CASCADE", name=op.f("fk_customer_loyalty_customer_id_customers")),
            nullable=False,
        ),
        sa.Column("current_punches", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_visits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("free_rewards_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("free_rewards_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("threshold_override", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("customer_id", name=op.f("uq_customer_loyalty_customer_id")),
        sa.CheckConstraint("current_punches >= 0", name=op.f("ck_customer_loyalty_current_punches_non_negative")),
        sa.CheckConstraint("total_visits >= 0", name=op.f("ck_customer_loyalty_total_visits_non_negative")),
        sa.CheckConstraint("free_rewards_earned >= 0", name=op.f("ck_customer_loyalty_rewards_earned_non_negative")),
        sa.CheckConstraint(
            "free_rewards_redeemed >= 0", name=op.f("ck_customer_loyalty_rewards_redeemed_non_negative")
        ),
        sa.CheckConstraint(
            "free_rewards_redeemed <= free_rewards_earned",
            name=op.f("ck_customer_loyalty_rewards_redeemed_within_earned"),
        ),
        sa.CheckConstraint(
            "threshold_override IS NULL OR threshold_override > 0",
            name=op.f("ck_customer_loyalty_threshold_override_positive"),
        ),
    )

    op.create_table(
        "loyalty_punches",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "customer_id",
            _uuid(),
            sa.ForeignKey("customers.id", ondelete="CASCADE", name=op.f("fk_loyalty_punches_customer_id_customers")),
            nullable=False,
        ),
        sa.Column(
            "account_id",
            _uuid(),
            sa.ForeignKey(
                "customer_loyalty.id",
                ondelete="CASCADE",
                name=op.f("fk_loyalty_punches_account_id_customer_loyalty"),
            ),
            nullable=False,
        ),
        sa.Column("event_id", _uuid(), nullable=False),
        sa.Column("cycle_number", sa.Integer(), nullable=False),
        sa.Column("punch_sequence", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("punch_sequence > 0", name=op.f("ck_loyalty_punches_punch_sequence_positive")),
        sa.CheckConstraint("cycle_number > 0", name=op.f("ck_loyalty_punches_cycle_number_positive")),
    )
    op.create_index(op.f("ix_loyalty_punches_customer_id"), "loyalty_punches", ["customer_id"])
    op.create_index(op.f("ix_loyalty_punches_event_id"), "loyalty_punches", ["event_id"])
    op.create_index("ix_loyalty_punches_account_cycle", "loyalty_punches", ["account_id", "cycle_number"])

    redemption_status = sa.Enum("pending", "redeemed", "expired", name="loyalty_redemption_status")
    op.create_table(
        "loyalty_redemptions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "account_id",
            _uuid(),
            sa.ForeignKey(
                "customer_loyalty.id",
                ondelete="CASCADE",
                name=op.f("fk_loyalty_redemptions_account_id_customer_loyalty"),
            ),
            nullable=False,
        ),
        sa.Column("cycle_number", sa.Integer(), nullable=False),
        sa.Column("status", redemption_status, nullable=False, server_default="pending"),
        sa.Column("appointment_id", _uuid(), nullable=True),
        sa.Column("redemption_value", sa.Numeric(10, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "uq_loyalty_redemptions_pending_cycle",
        "loyalty_redemptions",
        ["account_id", "cycle_number"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "loyalty_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("punch_threshold", sa.Integer(), nullable=False, server_default="9"),
        sa.Column("first_visit_bonus", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("minimum_spend", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("qualifying_service_ids", sa.JSON(), nullable=False),
        sa.Column("eligible_service_ids", sa.JSON(), nullable=False),
        sa.Column("expiration_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_value", sa.Numeric(10, 2), nullable=True),
        sa.Column("referral_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("referrer_bonus_punches", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("referee_bonus_punches", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("referral_code_max_uses", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("id = 1", name=op.f("ck_loyalty_settings_singleton")),
    )

    op.create_table(
        "referral_codes",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "customer_id",
            _uuid(),
            sa.ForeignKey("customers.id", ondelete="CASCADE", name=op.f("fk_referral_codes_customer_id_customers")),
            nullable=False,
        ),
        sa.Column("code", sa.String(16), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("uses_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("code", name=op.f("uq_referral_codes_code")),
    )
    op.create_index(op.f("ix_referral_codes_customer_id"), "referral_codes", ["customer_id"])
    op.create_index(op.f("ix_referral_codes_code"), "referral_codes", ["code"])

    referral_status = sa.Enum("pending", "completed", "cancelled", name="referral_status")
    op.create_table(
        "referrals",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "referrer_id",
            _uuid(),
            sa.ForeignKey("customers.id", ondelete="CASCADE", name=op.f("fk_referrals_referrer_id_customers")),
            nullable=False,
        ),
        sa.Column(
            "referee_id",
            _uuid(),
            sa.ForeignKey("customers.id", ondelete="CASCADE", name=op.f("fk_referrals_referee_id_customers")),
            nullable=False,
        ),
        sa.Column(
            "referral_code_id",
            _uuid(),
            sa.ForeignKey(
                "referral_codes.id", ondelete="SET NULL", name=op.f("fk_referrals_referral_code_id_referral_codes")
            ),
            nullable=True,
        ),
        sa.Column("status", referral_status, nullable=False, server_default="pending"),
        sa.Column("referrer_bonus_awarded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("referee_bonus_awarded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("appointment_id", _uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("referee_id", name=op.f("uq_referrals_referee_id")),
    )
    op.create_index(op.f("ix_referrals_referrer_id"), "referrals", ["referrer_id"])


def downgrade() -> None:
    op.drop_index(op.f("ix_referrals_referrer_id"), table_name="referrals")
    op.drop_table("referrals")
    op.drop_index(op.f("ix_referral_codes_code"), table_name="referral_codes")
    op.drop_index(op.f("ix_referral_codes_customer_id"), table_name="referral_codes")
    op.drop_table("referral_codes")
    op.drop_table("loyalty_settings")
    op.drop_index("uq_loyalty_redemptions_pending_cycle", table_name="loyalty_redemptions")
    op.drop_table("loyalty_redemptions")
    op.drop_index("ix_loyalty_punches_account_cycle", table_name="loyalty_punches")
    op.drop_index(op.f("ix_loyalty_punches_event_id"), table_name="loyalty_punches")
    op.drop_index(op.f("ix_loyalty_punches_customer_id"), table_name="loyalty_punches")
    op.drop_table("loyalty_punches")
    op.drop_table("customer_loyalty")
    op.drop_index(op.f("ix_customers_email"), table_name="customers")
    op.drop_table("customers")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        sa.Enum(name="referral_status").drop(bind, checkfirst=True)
        sa.Enum(name="loyalty_redemption_status").drop(bind, checkfirst=True)
