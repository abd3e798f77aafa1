from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


MONEY = Numeric(10, 2)
PERCENT = Numeric(10, 2)
INDEX_VALUE = Numeric(10, 3)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Category(Base):
    """Reference table of tracked spending categories.

    ``bls_series_id`` links a category to the official CPI item series used
    for comparison. Categories without one are not ingested.
    """

    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    bls_series_id: Mapped[Optional[str]] = mapped_column(String(50))


class Receipt(Base):
    __tablename__ = "receipts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    store_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    purchase_date: Mapped[date] = mapped_column(Date, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_receipts_user_date", "user_id", "purchase_date"),
        Index(
            "ix_receipts_user_category_date", "user_id", "category_id", "purchase_date"
        ),
        CheckConstraint("amount >= 0", name="ck_receipts_amount_positive"),
    )


class PersonalCpiMonthly(Base):
    """Monthly spending totals of one user with their MoM/YoY changes.

    A NULL ``category_id`` marks the overall row for the month.
    """

    __tablename__ = "personal_cpi_monthly"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    total_spending: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    mom_change_percent: Mapped[Optional[Decimal]] = mapped_column(PERCENT)
    yoy_change_percent: Mapped[Optional[Decimal]] = mapped_column(PERCENT)
    calculated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_personal_cpi_user_month", "user_id", "year", "month"),
        CheckConstraint(
            "total_spending >= 0", name="ck_personal_cpi_spending_positive"
        ),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_personal_cpi_month"),
    )


class OfficialCpiData(Base, TimestampMixin):
    __tablename__ = "official_cpi_data"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    index_value: Mapped[Decimal] = mapped_column(INDEX_VALUE, nullable=False)
    mom_change_percent: Mapped[Optional[Decimal]] = mapped_column(PERCENT)
    yoy_change_percent: Mapped[Optional[Decimal]] = mapped_column(PERCENT)

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_official_cpi_month", "year", "month"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_official_cpi_month"),
    )


# Enforce uniqueness where category_id is NULL (the overall row).
Index(
    "uq_personal_cpi_user_month_category",
    PersonalCpiMonthly.user_id,
    PersonalCpiMonthly.year,
    PersonalCpiMonthly.month,
    func.coalesce(PersonalCpiMonthly.category_id, -1),
    unique=True,
)
Index(
    "uq_official_cpi_month_category",
    OfficialCpiData.year,
    OfficialCpiData.month,
    func.coalesce(OfficialCpiData.category_id, -1),
    unique=True,
)
