"""Create purchase ledger and entitlement summary tables

Revision ID: 3f9c2d71ab04
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f9c2d71ab04"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ENVIRONMENT_VALUES = ("production", "sandbox")
PRODUCT_TYPE_VALUES = ("lifetime", "subscription")


def upgrade() -> None:
    """Upgrade database schema."""

    # ------------------------------------------------------------------
    # 1. Enum types
    # ------------------------------------------------------------------
    storeenvironment_enum = postgresql.ENUM(
        *ENVIRONMENT_VALUES, name="storeenvironment", create_type=False
    )
    storeenvironment_enum.create(op.get_bind(), checkfirst=True)

    producttype_enum = postgresql.ENUM(
        *PRODUCT_TYPE_VALUES, name="producttype", create_type=False
    )
    producttype_enum.create(op.get_bind(), checkfirst=True)

    # ------------------------------------------------------------------
    # 2. Ledger
    # ------------------------------------------------------------------
    op.create_table(
        "purchase_records",
        sa.Column("transaction_id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("original_transaction_id", sa.String(length=64), nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("app_account_token", sa.Uuid(), nullable=True),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("original_purchase_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revocation_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_notification_type", sa.String(length=64), nullable=False),
        sa.Column("last_notification_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("environment", storeenvironment_enum, nullable=False),
        sa.Column("raw_transaction", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_purchase_records_user_id", "purchase_records", ["user_id"])
    op.create_index(
        "ix_purchase_records_original_transaction_id",
        "purchase_records",
        ["original_transaction_id"],
    )
    op.create_index(
        "ix_purchase_records_user_active",
        "purchase_records",
        ["user_id", "is_active"],
    )

    # ------------------------------------------------------------------
    # 3. Summary
    # ------------------------------------------------------------------
    op.create_table(
        "entitlement_summaries",
        sa.Column("user_id", sa.Uuid(), primary_key=True),
        sa.Column("ad_free", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("product_type", producttype_enum, nullable=True),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_purchase_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("premium_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recomputed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    # ------------------------------------------------------------------
    # 4. Row level security: owners read their own summary, only the
    #    service role writes (Supabase)
    # ------------------------------------------------------------------
    op.execute("ALTER TABLE entitlement_summaries ENABLE ROW LEVEL SECURITY")
    op.execute(
        "CREATE POLICY entitlement_summaries_owner_read ON entitlement_summaries "
        "FOR SELECT USING (auth.uid() = user_id)"
    )
    op.execute("ALTER TABLE purchase_records ENABLE ROW LEVEL SECURITY")
    op.execute(
        "CREATE POLICY purchase_records_owner_read ON purchase_records "
        "FOR SELECT USING (auth.uid() = user_id)"
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.execute("DROP POLICY IF EXISTS purchase_records_owner_read ON purchase_records")
    op.execute("DROP POLICY IF EXISTS entitlement_summaries_owner_read ON entitlement_summaries")
    op.drop_table("entitlement_summaries")
    op.drop_index("ix_purchase_records_user_active", table_name="purchase_records")
    op.drop_index("ix_purchase_records_original_transaction_id", table_name="purchase_records")
    op.drop_index("ix_purchase_records_user_id", table_name="purchase_records")
    op.drop_table("purchase_records")
    op.execute("DROP TYPE IF EXISTS producttype")
    op.execute("DROP TYPE IF EXISTS storeenvironment")
