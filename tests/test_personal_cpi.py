from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import PersonalCpiMonthly, Receipt
from periods import InvalidPeriod
from services import (
    CategoryRef,
    CPIDataNotFound,
    PersonalCPIService,
    StaticCategoryCatalog,
    percent_change,
    seed_default_categories,
)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)
    seed_default_categories(session)
    return session


def add_receipt(
    session: Session,
    on: date,
    amount: str,
    category_id: int | None = 1,
    user_id: int = 1,
) -> Receipt:
    receipt = Receipt(
        user_id=user_id,
        store_name="Store",
        purchase_date=on,
        category_id=category_id,
        amount=Decimal(amount),
    )
    session.add(receipt)
    session.commit()
    return receipt


def stored_rows(session: Session, user_id: int, year: int, month: int):
    rows = session.scalars(
        select(PersonalCpiMonthly)
        .where(
            PersonalCpiMonthly.user_id == user_id,
            PersonalCpiMonthly.year == year,
            PersonalCpiMonthly.month == month,
        )
        .order_by(PersonalCpiMonthly.category_id)
    ).all()
    return [
        (
            row.category_id,
            row.total_spending,
            row.mom_change_percent,
            row.yoy_change_percent,
        )
        for row in rows
    ]


class FakeAggregator:
    def __init__(self, spending: dict[tuple[int, int, int], str]) -> None:
        self.spending = spending

    def sum_spending(self, user_id, category_id, start, end) -> Decimal:
        return Decimal(self.spending.get((start.year, start.month, category_id), "0"))

    def earliest_transaction_date(self, user_id):
        return None


def test_percent_change_rounds_half_up() -> None:
    assert percent_change(Decimal("150"), Decimal("100")) == Decimal("50.00")
    assert percent_change(Decimal("100"), Decimal("150")) == Decimal("-33.33")
    # 1/3 -> 0.3333 before scaling, never 33.3333...
    assert percent_change(Decimal("4"), Decimal("3")) == Decimal("33.33")
    assert percent_change(Decimal("100"), Decimal("0")) is None
    assert percent_change(Decimal("100"), None) is None


def test_calculation_writes_category_and_overall_rows() -> None:
    session = make_session()
    add_receipt(session, date(2025, 1, 3), "60.00", category_id=1)
    add_receipt(session, date(2025, 1, 20), "40.00", category_id=1)
    add_receipt(session, date(2025, 1, 31), "25.50", category_id=3)
    add_receipt(session, date(2025, 2, 1), "999.00", category_id=3)

    rows = PersonalCPIService(session).calculate_monthly_personal_cpi(1, 2025, 1)

    assert len(rows) == 3
    assert stored_rows(session, 1, 2025, 1) == [
        (None, Decimal("125.50"), None, None),
        (1, Decimal("100.00"), None, None),
        (3, Decimal("25.50"), None, None),
    ]


def test_calculation_is_idempotent() -> None:
    session = make_session()
    add_receipt(session, date(2024, 12, 10), "80.00", category_id=2)
    add_receipt(session, date(2025, 1, 10), "100.00", category_id=2)
    add_receipt(session, date(2025, 1, 11), "10.10", category_id=4)
    service = PersonalCPIService(session)
    service.calculate_monthly_personal_cpi(1, 2024, 12)

    service.calculate_monthly_personal_cpi(1, 2025, 1)
    first = stored_rows(session, 1, 2025, 1)
    service.calculate_monthly_personal_cpi(1, 2025, 1)
    second = stored_rows(session, 1, 2025, 1)

    assert first == second
    assert len(second) == 3


def test_zero_spending_month_removes_stale_rows() -> None:
    session = make_session()
    receipt = add_receipt(session, date(2025, 3, 5), "42.00", category_id=5)
    service = PersonalCPIService(session)
    service.calculate_monthly_personal_cpi(1, 2025, 3)
    assert len(stored_rows(session, 1, 2025, 3)) == 2

    session.delete(receipt)
    session.commit()
    rows = service.calculate_monthly_personal_cpi(1, 2025, 3)

    assert rows == []
    assert stored_rows(session, 1, 2025, 3) == []


def test_month_over_month_change() -> None:
    session = make_session()
    add_receipt(session, date(2025, 1, 15), "100.00")
    add_receipt(session, date(2025, 2, 15), "150.00")
    add_receipt(session, date(2025, 3, 15), "100.00")
    service = PersonalCPIService(session)

    for month in (1, 2, 3):
        service.calculate_monthly_personal_cpi(1, 2025, month)

    assert stored_rows(session, 1, 2025, 2)[0][2] == Decimal("50.00")
    assert stored_rows(session, 1, 2025, 3)[0][2] == Decimal("-33.33")
    assert stored_rows(session, 1, 2025, 3)[1][2] == Decimal("-33.33")


def test_january_compares_against_previous_december() -> None:
    session = make_session()
    add_receipt(session, date(2024, 12, 28), "200.00")
    add_receipt(session, date(2025, 1, 2), "250.00")
    service = PersonalCPIService(session)
    service.calculate_monthly_personal_cpi(1, 2024, 12)

    service.calculate_monthly_personal_cpi(1, 2025, 1)

    overall = service.get_overall_personal_cpi(1, 2025, 1)
    assert overall.mom_change_percent == Decimal("25.00")


def test_year_over_year_change() -> None:
    session = make_session()
    add_receipt(session, date(2024, 6, 1), "200.00", category_id=6)
    add_receipt(session, date(2025, 6, 1), "250.00", category_id=6)
    service = PersonalCPIService(session)
    service.calculate_monthly_personal_cpi(1, 2024, 6)

    service.calculate_monthly_personal_cpi(1, 2025, 6)

    rows = stored_rows(session, 1, 2025, 6)
    assert rows == [
        (None, Decimal("250.00"), None, Decimal("25.00")),
        (6, Decimal("250.00"), None, Decimal("25.00")),
    ]


def test_changes_absent_without_prior_spending_in_category() -> None:
    session = make_session()
    add_receipt(session, date(2025, 4, 2), "30.00", category_id=1)
    add_receipt(session, date(2025, 5, 2), "30.00", category_id=1)
    add_receipt(session, date(2025, 5, 3), "70.00", category_id=7)
    service = PersonalCPIService(session)
    service.calculate_monthly_personal_cpi(1, 2025, 4)

    service.calculate_monthly_personal_cpi(1, 2025, 5)

    rows = {row[0]: row for row in stored_rows(session, 1, 2025, 5)}
    assert rows[1][2] == Decimal("0.00")
    assert rows[7][2] is None
    assert rows[None][2] == Decimal("233.33")


def test_uncategorized_and_other_users_receipts_are_ignored() -> None:
    session = make_session()
    add_receipt(session, date(2025, 7, 1), "10.00", category_id=1)
    add_receipt(session, date(2025, 7, 1), "500.00", category_id=None)
    add_receipt(session, date(2025, 7, 1), "300.00", category_id=1, user_id=2)

    PersonalCPIService(session).calculate_monthly_personal_cpi(1, 2025, 7)

    assert stored_rows(session, 1, 2025, 7) == [
        (None, Decimal("10.00"), None, None),
        (1, Decimal("10.00"), None, None),
    ]


def test_fractional_amounts_sum_to_cents() -> None:
    session = make_session()
    add_receipt(session, date(2025, 8, 1), "10.10", category_id=2)
    add_receipt(session, date(2025, 8, 2), "20.20", category_id=2)

    PersonalCPIService(session).calculate_monthly_personal_cpi(1, 2025, 8)

    assert stored_rows(session, 1, 2025, 8)[0][1] == Decimal("30.30")


def test_injected_catalog_defines_category_universe() -> None:
    session = make_session()
    aggregator = FakeAggregator(
        {(2025, 1, 1): "40.00", (2025, 1, 2): "60.00", (2025, 1, 9): "900.00"}
    )
    catalog = StaticCategoryCatalog([CategoryRef(1, "Food"), CategoryRef(2, "Dining")])
    service = PersonalCPIService(session, aggregator=aggregator, catalog=catalog)

    service.calculate_monthly_personal_cpi(1, 2025, 1)

    assert stored_rows(session, 1, 2025, 1) == [
        (None, Decimal("100.00"), None, None),
        (1, Decimal("40.00"), None, None),
        (2, Decimal("60.00"), None, None),
    ]


@pytest.mark.parametrize("month", [0, 13, -1])
def test_invalid_month_is_rejected(month: int) -> None:
    session = make_session()
    with pytest.raises(InvalidPeriod):
        PersonalCPIService(session).calculate_monthly_personal_cpi(1, 2025, month)


def test_breakdown_carries_names_and_weights() -> None:
    session = make_session()
    add_receipt(session, date(2025, 9, 1), "75.00", category_id=1)
    add_receipt(session, date(2025, 9, 2), "25.00", category_id=4)
    service = PersonalCPIService(session)
    service.calculate_monthly_personal_cpi(1, 2025, 9)

    breakdown = service.get_personal_cpi_breakdown(1, 2025, 9)

    assert breakdown.total_spending == Decimal("100.00")
    assert [(c.category_id, c.category_name, c.weight_percent) for c in breakdown.categories] == [
        (1, "Food at Home", Decimal("75.00")),
        (4, "Transportation", Decimal("25.00")),
    ]


def test_breakdown_without_data_raises_not_found() -> None:
    session = make_session()
    with pytest.raises(CPIDataNotFound):
        PersonalCPIService(session).get_personal_cpi_breakdown(1, 2025, 9)


def test_summary_lists_overall_first() -> None:
    session = make_session()
    add_receipt(session, date(2025, 10, 1), "5.00", category_id=8)
    add_receipt(session, date(2025, 10, 1), "5.00", category_id=2)
    service = PersonalCPIService(session)
    service.calculate_monthly_personal_cpi(1, 2025, 10)

    summary = service.get_personal_cpi_summary(1, 2025, 10)

    assert [row.category_id for row in summary] == [None, 2, 8]
    assert service.get_personal_cpi_summary(1, 2025, 11) == []
    assert service.get_overall_personal_cpi(1, 2025, 11) is None
