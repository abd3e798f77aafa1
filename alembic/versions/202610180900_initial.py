"""initial personal cpi schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=50), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("bls_series_id", sa.String(length=50), nullable=True),
    )

    op.create_table(
        "receipts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("store_name", sa.String(length=200), nullable=False),
        sa.Column("purchase_date", sa.Date(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_receipts_amount_positive"),
    )
    op.create_index("ix_receipts_user_date", "receipts", ["user_id", "purchase_date"])
    op.create_index(
        "ix_receipts_user_category_date",
        "receipts",
        ["user_id", "category_id", "purchase_date"],
    )

    op.create_table(
        "personal_cpi_monthly",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column("total_spending", sa.Numeric(10, 2), nullable=False),
        sa.Column("mom_change_percent", sa.Numeric(10, 2), nullable=True),
        sa.Column("yoy_change_percent", sa.Numeric(10, 2), nullable=True),
        sa.Column("calculated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "total_spending >= 0", name="ck_personal_cpi_spending_positive"
        ),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_personal_cpi_month"),
    )
    op.create_index(
        "ix_personal_cpi_user_month", "personal_cpi_monthly", ["user_id", "year", "month"]
    )

    op.create_table(
        "official_cpi_data",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column("index_value", sa.Numeric(10, 3), nullable=False),
        sa.Column("mom_change_percent", sa.Numeric(10, 2), nullable=True),
        sa.Column("yoy_change_percent", sa.Numeric(10, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_official_cpi_month"),
    )
    op.create_index("ix_official_cpi_month", "official_cpi_data", ["year", "month"])

    # Enforce uniqueness for the overall rows where category_id is NULL.
    op.execute(
        "CREATE UNIQUE INDEX uq_personal_cpi_user_month_category "
        "ON personal_cpi_monthly(user_id, year, month, coalesce(category_id, -1))"
    )
    op.execute(
        "CREATE UNIQUE INDEX uq_official_cpi_month_category "
        "ON official_cpi_data(year, month, coalesce(category_id, -1))"
    )


def downgrade() -> None:
    op.drop_index("uq_official_cpi_month_category", table_name="official_cpi_data")
    op.drop_index("uq_personal_cpi_user_month_category", table_name="personal_cpi_monthly")
    op.drop_index("ix_official_cpi_month", table_name="official_cpi_data")
    op.drop_table("official_cpi_data")
    op.drop_index("ix_personal_cpi_user_month", table_name="personal_cpi_monthly")
    op.drop_table("personal_cpi_monthly")
    op.drop_index("ix_receipts_user_category_date", table_name="receipts")
    op.drop_index("ix_receipts_user_date", table_name="receipts")
    op.drop_table("receipts")
    op.drop_table("categories")
