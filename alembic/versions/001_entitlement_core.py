"""entitlement core schema

Revision ID: 001_entitlement_core
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

revision = "001_entitlement_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Products
    op.create_table(
        "products",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # Plans
    op.create_table(
        "plans",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("product_id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("external_price_id", sa.String(length=255), nullable=True),
        sa.Column("usage_limit", sa.Integer(), nullable=False),
        sa.Column("soft_limit_percent", sa.Numeric(5, 4), nullable=True),
        sa.Column("feature_flags", sa.JSON(), nullable=True),
        sa.Column(
            "billing_period",
            sa.Enum("month", "year", "one_time", name="billingperiod"),
            nullable=False,
        ),
        sa.Column("price_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_price_id", name="uq_plans_external_price_id"),
    )
    op.create_index("ix_plans_product_id", "plans", ["product_id"])

    # Customers
    op.create_table(
        "customers",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("external_customer_id", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_customers_user_id"),
        sa.UniqueConstraint(
            "external_customer_id", name="uq_customers_external_customer_id"
        ),
    )

    # Subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("tenant_id", sa.String(length=255), nullable=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("plan_id", sa.UUID(), nullable=True),
        sa.Column("external_subscription_id", sa.String(length=255), nullable=False),
        sa.Column("external_customer_id", sa.String(length=255), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "incomplete",
                "trialing",
                "active",
                "past_due",
                "canceled",
                "unpaid",
                name="subscriptionstatus",
            ),
            nullable=False,
        ),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "external_subscription_id",
            name="uq_subscriptions_external_subscription_id",
        ),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index(
        "ix_subscriptions_external_customer_id",
        "subscriptions",
        ["external_customer_id"],
    )

    # Payments
    op.create_table(
        "payments",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("subscription_id", sa.UUID(), nullable=True),
        sa.Column("external_invoice_id", sa.String(length=255), nullable=False),
        sa.Column("external_payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("amount_paid", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "status",
            sa.Enum("succeeded", "failed", "refunded", name="paymentstatus"),
            nullable=False,
        ),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "external_invoice_id", name="uq_payments_external_invoice_id"
        ),
    )
    op.create_index("ix_payments_user_id", "payments", ["user_id"])

    # Processed events (idempotency guard)
    op.create_table(
        "processed_events",
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=120), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index(
        "ix_processed_events_event_type", "processed_events", ["event_type"]
    )
    op.create_index(
        "ix_processed_events_processed_at", "processed_events", ["processed_at"]
    )

    # Entitlements
    op.create_table(
        "entitlements",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("product_id", sa.UUID(), nullable=False),
        sa.Column("plan_id", sa.UUID(), nullable=True),
        sa.Column("subscription_id", sa.UUID(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "active", "suspended", "expired", "revoked", name="entitlementstatus"
            ),
            nullable=False,
        ),
        sa.Column("feature_flags", sa.JSON(), nullable=True),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("soft_limit", sa.Integer(), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False),
        sa.Column("usage_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.id"]),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_entitlements_user_id", "entitlements", ["user_id"])
    op.create_index(
        "ix_entitlements_subscription_id", "entitlements", ["subscription_id"]
    )
    op.create_index(
        "uq_entitlements_active_user_product",
        "entitlements",
        ["user_id", "product_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    # Entitlement audit log
    op.create_table(
        "entitlement_audit_log",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("entitlement_id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("product_id", sa.UUID(), nullable=False),
        sa.Column(
            "action",
            sa.Enum("granted", "revoked", name="entitlementauditaction"),
            nullable=False,
        ),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("performed_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["entitlement_id"], ["entitlements.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_entitlement_audit_log_entitlement_id",
        "entitlement_audit_log",
        ["entitlement_id"],
    )

    # Usage events
    op.create_table(
        "usage_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("product_id", sa.UUID(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("usage_type", sa.String(length=120), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_usage_events_user_id", "usage_events", ["user_id"])


def downgrade() -> None:
    op.drop_table("usage_events")
    op.drop_table("entitlement_audit_log")
    op.drop_index("uq_entitlements_active_user_product", table_name="entitlements")
    op.drop_table("entitlements")
    op.drop_table("processed_events")
    op.drop_table("payments")
    op.drop_table("subscriptions")
    op.drop_table("customers")
    op.drop_table("plans")
    op.drop_table("products")
    sa.Enum(name="entitlementauditaction").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="entitlementstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="paymentstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="subscriptionstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="billingperiod").drop(op.get_bind(), checkfirst=True)
